"""
Bracket tables and the federal tax estimate.
"""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from cryptotax.services.tax_tables import (
    BracketTaxEstimator,
    FilingTable,
    TaxTableError,
    bracket_tax,
    load_tax_tables,
    net_short_long,
    table_for_year,
)


def estimate(income, st, lt, year=2024, status="single"):
    estimator = BracketTaxEstimator.for_filer(year, status, Decimal(income))
    return estimator.estimate(Decimal(st), Decimal(lt))


def test_bundled_tables_cover_every_filing_status():
    tables = load_tax_tables()
    for year in (2023, 2024, 2025):
        assert set(tables[year]) == {"single", "married-joint", "married-separate", "head-of-household"}


def test_short_term_taxed_at_ordinary_rates_on_top_of_income():
    # 50000 - 14600 deduction = 35400; +10000 stays in the 12% bracket
    assert estimate("50000", "10000", "0") == Decimal("1200.00")


def test_long_term_rates_from_zero_income():
    # 0% up to 47025, 15% on the remaining 52975
    assert estimate("0", "0", "100000") == Decimal("7946.25")


def test_long_term_inside_zero_bracket():
    assert estimate("50000", "0", "10000") == Decimal("0.00")


def test_net_loss_means_no_tax():
    assert estimate("80000", "-5000", "-1000") == Decimal("0.00")


def test_short_term_loss_offsets_long_term_gain():
    assert net_short_long(Decimal("-5000"), Decimal("20000")) == (Decimal("0"), Decimal("15000"))
    assert net_short_long(Decimal("3000"), Decimal("-1000")) == (Decimal("2000"), Decimal("0"))
    assert net_short_long(Decimal("-1"), Decimal("-1")) == (Decimal("0"), Decimal("0"))


def test_bracket_tax_walks_the_brackets():
    table = table_for_year(2024, "single")
    # 11600 * 10% + (20000 - 11600) * 12%
    assert bracket_tax(Decimal("20000"), table.ordinary_brackets) == Decimal("2168.00")
    assert bracket_tax(Decimal("0"), table.ordinary_brackets) == 0


def test_missing_year_falls_back_to_latest_earlier_table():
    assert table_for_year(2031, "single") == table_for_year(2025, "single")


def test_year_before_every_table_is_an_error():
    with pytest.raises(TaxTableError):
        table_for_year(1999, "single")


def test_unknown_filing_status_is_an_error():
    with pytest.raises(TaxTableError):
        table_for_year(2024, "widowed")


def test_table_validation_rejects_capped_top_bracket():
    with pytest.raises(ValidationError):
        FilingTable.model_validate({
            "standard_deduction": 100,
            "ordinary_brackets": [{"up_to": 10, "rate": "0.1"}],
            "long_term_brackets": [{"up_to": None, "rate": "0"}],
        })


def test_table_validation_rejects_bad_rate():
    with pytest.raises(ValidationError):
        FilingTable.model_validate({
            "standard_deduction": 100,
            "ordinary_brackets": [{"up_to": None, "rate": "1.5"}],
            "long_term_brackets": [{"up_to": None, "rate": "0"}],
        })


def test_custom_tables_file(tmp_path):
    path = tmp_path / "brackets.json"
    path.write_text(
        '{"2024": {"single": {"standard_deduction": 0,'
        ' "ordinary_brackets": [{"up_to": null, "rate": "0.5"}],'
        ' "long_term_brackets": [{"up_to": null, "rate": "0.25"}]}}}'
    )
    tables = load_tax_tables(str(path))

    estimator = BracketTaxEstimator.for_filer(2024, "single", Decimal("0"), tables)
    assert estimator.estimate(Decimal("100"), Decimal("100")) == Decimal("75.00")
