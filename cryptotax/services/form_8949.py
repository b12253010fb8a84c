"""
cryptotax/services/form_8949.py

Form 8949 rows built from disposal matches, exported as CSV.
One row per DisposalMatch. Dates are MM/DD/YYYY and amounts are whole dollars
(the IRS allows rounding); column (h) is recomputed from the rounded (d) and (e)
so every row adds up on its own.
"""

import csv
import io
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List

from cryptotax.services.aggregator import matches_for_year
from cryptotax.services.lot_matcher import DisposalMatch, TermType

logger = logging.getLogger(__name__)

DOLLAR = Decimal("1")

CSV_HEADERS = [
    "Description",
    "Date Acquired",
    "Date Sold",
    "Proceeds",
    "Cost Basis",
    "Adjustment Code",
    "Adjustment Amount",
    "Gain or Loss",
    "Term",
    "Tax Year",
]


def _dollars(amount: Decimal) -> Decimal:
    return amount.quantize(DOLLAR, rounding=ROUND_HALF_UP)


def _quantity(amount: Decimal) -> str:
    return format(amount.normalize(), "f")


@dataclass(frozen=True)
class Form8949Row:
    """
    (a) description  (b) date acquired  (c) date sold  (d) proceeds
    (e) cost basis   (f) code           (g) adjustment (h) gain or loss
    """

    description: str
    date_acquired: str
    date_sold: str
    proceeds: Decimal
    cost_basis: Decimal
    adjustment_code: str
    adjustment_amount: Decimal
    gain_loss: Decimal
    term: str
    tax_year: int

    @classmethod
    def from_match(cls, match: DisposalMatch, tax_year: int) -> "Form8949Row":
        proceeds = _dollars(match.proceeds_usd)
        cost = _dollars(match.cost_basis_usd)
        return cls(
            description=f"{_quantity(match.quantity_matched)} {match.asset}",
            date_acquired=match.acquired_at.strftime("%m/%d/%Y"),
            date_sold=match.disposed_at.strftime("%m/%d/%Y"),
            proceeds=proceeds,
            cost_basis=cost,
            adjustment_code="",
            adjustment_amount=Decimal("0"),
            gain_loss=proceeds - cost,
            term="Long-term" if match.term_type is TermType.LONG else "Short-term",
            tax_year=tax_year,
        )

    def as_csv_row(self) -> List[str]:
        return [
            self.description,
            self.date_acquired,
            self.date_sold,
            str(self.proceeds),
            str(self.cost_basis),
            self.adjustment_code,
            str(self.adjustment_amount),
            str(self.gain_loss),
            self.term,
            str(self.tax_year),
        ]


def build_form_8949_rows(matches: Iterable[DisposalMatch], tax_year: int) -> List[Form8949Row]:
    """Short-term rows first (Part I), then long-term (Part II), each in disposal order."""
    selected = matches_for_year(matches, tax_year)
    short = [Form8949Row.from_match(m, tax_year) for m in selected if m.term_type is TermType.SHORT]
    long_ = [Form8949Row.from_match(m, tax_year) for m in selected if m.term_type is TermType.LONG]
    return short + long_


def generate_form_8949_csv(matches: Iterable[DisposalMatch], tax_year: int) -> str:
    rows = build_form_8949_rows(matches, tax_year)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for row in rows:
        writer.writerow(row.as_csv_row())
    logger.info(f"Form 8949 CSV for {tax_year}: {len(rows)} rows")
    return buffer.getvalue()
