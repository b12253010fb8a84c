"""
Form 8949 rows and CSV export.
"""

import csv
import io

from cryptotax.services.form_8949 import CSV_HEADERS, build_form_8949_rows, generate_form_8949_csv
from cryptotax.services.lot_matcher import match
from cryptotax.tests.factories import ltx, utc


def sample_matches():
    btc = match(1, "BTC", "FIFO", [
        ltx(1, utc(2023, 1, 15), "buy", "0.5", "10000.40"),
        ltx(2, utc(2024, 3, 10), "sell", "0.5", "30000.50"),
    ]).matches
    eth = match(1, "ETH", "FIFO", [
        ltx(3, utc(2024, 1, 1), "buy", "1", "2000", asset="ETH"),
        ltx(4, utc(2024, 2, 1), "sell", "1", "1500", asset="ETH"),
    ]).matches
    return btc + eth


def test_rows_short_term_first_and_whole_dollars():
    rows = build_form_8949_rows(sample_matches(), 2024)

    assert [r.description for r in rows] == ["1 ETH", "0.5 BTC"]
    short, long_ = rows
    assert short.term == "Short-term"
    assert (str(short.proceeds), str(short.cost_basis), str(short.gain_loss)) == ("1500", "2000", "-500")
    assert long_.term == "Long-term"
    assert (str(long_.proceeds), str(long_.cost_basis), str(long_.gain_loss)) == ("30001", "10000", "20001")
    assert long_.date_acquired == "01/15/2023"
    assert long_.date_sold == "03/10/2024"


def test_rows_outside_the_year_are_dropped():
    assert build_form_8949_rows(sample_matches(), 2023) == []


def test_csv_layout():
    text = generate_form_8949_csv(sample_matches(), 2024)
    rows = list(csv.reader(io.StringIO(text)))

    assert rows[0] == CSV_HEADERS
    assert rows[1] == ["1 ETH", "01/01/2024", "02/01/2024", "1500", "2000", "", "0", "-500", "Short-term", "2024"]
    assert rows[2] == ["0.5 BTC", "01/15/2023", "03/10/2024", "30001", "10000", "", "0", "20001", "Long-term", "2024"]
    assert len(rows) == 3


def test_csv_header_only_when_nothing_was_sold():
    assert generate_form_8949_csv([], 2024).splitlines() == [",".join(CSV_HEADERS)]
