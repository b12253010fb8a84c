"""
cryptotax/services/tax_tables.py

Federal bracket tables and the bracket-based tax estimator.

The tables are configuration data (cryptotax/data/tax_brackets.json, or the
file named by TAX_TABLES_FILE), keyed by tax year and filing status, and are
validated with pydantic on load.

Estimation mirrors the usual worksheet:
  1) net short-term against long-term,
  2) baseline = ordinary income minus the standard deduction,
  3) net short-term is taxed at ordinary rates on top of the baseline,
  4) net long-term is taxed at 0/15/20% stacked on top of both.
"""

import json
import logging
import os
from decimal import Decimal, ROUND_HALF_DOWN
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, field_validator

from cryptotax.constants import USD_QUANT

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

DEFAULT_TAX_TABLES_FILE = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data", "tax_brackets.json"
)


class TaxTableError(Exception):
    pass


# --------------------------------------------------------------------------
# Table schema
# --------------------------------------------------------------------------
class Bracket(BaseModel):
    # None = no cap (top bracket)
    up_to: Optional[Decimal] = None
    rate: Decimal

    @field_validator("rate")
    @classmethod
    def validate_rate(cls, value: Decimal) -> Decimal:
        if value < 0 or value > 1:
            raise ValueError(f"Bracket rate must be between 0 and 1, got {value}")
        return value


class FilingTable(BaseModel):
    standard_deduction: Decimal
    ordinary_brackets: List[Bracket]
    long_term_brackets: List[Bracket]

    @field_validator("ordinary_brackets", "long_term_brackets")
    @classmethod
    def validate_brackets(cls, brackets: List[Bracket]) -> List[Bracket]:
        if not brackets:
            raise ValueError("At least one bracket is required")
        if brackets[-1].up_to is not None:
            raise ValueError("The top bracket must be uncapped (up_to = null)")
        caps = [b.up_to for b in brackets[:-1]]
        if any(cap is None for cap in caps) or caps != sorted(caps):
            raise ValueError("Bracket caps must be ascending with only the last one uncapped")
        return brackets


TaxTables = Dict[int, Dict[str, FilingTable]]


# --------------------------------------------------------------------------
# Loading
# --------------------------------------------------------------------------
@lru_cache(maxsize=8)
def _load_tax_tables_file(path: str) -> TaxTables:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    tables = {
        int(year): {status: FilingTable.model_validate(table) for status, table in statuses.items()}
        for year, statuses in raw.items()
    }
    logger.info(f"Loaded tax tables for years {sorted(tables)} from {path}")
    return tables


def load_tax_tables(path: Optional[str] = None) -> TaxTables:
    return _load_tax_tables_file(path or os.getenv("TAX_TABLES_FILE") or DEFAULT_TAX_TABLES_FILE)


def table_for_year(year: int, filing_status: str, tables: Optional[TaxTables] = None) -> FilingTable:
    """
    Exact year if present, otherwise the latest earlier year (brackets are
    published late, so the current year often lags). A year older than every
    table raises TaxTableError.
    """
    tables = tables if tables is not None else load_tax_tables()
    if year in tables:
        by_status = tables[year]
    else:
        earlier = [y for y in tables if y < year]
        if not earlier:
            raise TaxTableError(f"No tax table for {year} or any earlier year")
        fallback = max(earlier)
        logger.warning(f"No tax table for {year}; using {fallback}")
        by_status = tables[fallback]

    if filing_status not in by_status:
        raise TaxTableError(f"Unknown filing status '{filing_status}'")
    return by_status[filing_status]


# --------------------------------------------------------------------------
# Bracket math
# --------------------------------------------------------------------------
def bracket_tax(taxable: Decimal, brackets: List[Bracket]) -> Decimal:
    """Tax on 'taxable' dollars run through the brackets from zero."""
    if taxable <= 0:
        return ZERO
    tax = ZERO
    lower = ZERO
    for bracket in brackets:
        if bracket.up_to is None or taxable <= bracket.up_to:
            tax += (taxable - lower) * bracket.rate
            break
        tax += (bracket.up_to - lower) * bracket.rate
        lower = bracket.up_to
    return tax


def incremental_tax(baseline: Decimal, added: Decimal, brackets: List[Bracket]) -> Decimal:
    """Extra tax from stacking 'added' on top of 'baseline' taxable income."""
    if added <= 0:
        return ZERO
    base = max(ZERO, baseline)
    return bracket_tax(base + added, brackets) - bracket_tax(base, brackets)


def net_short_long(short_term_net: Decimal, long_term_net: Decimal) -> Tuple[Decimal, Decimal]:
    """
    Net a loss in one term against a gain in the other. Returns the taxable
    (short, long) amounts, never negative.
    """
    st, lt = short_term_net, long_term_net
    if st < 0 < lt:
        lt, st = max(ZERO, lt + st), ZERO
    elif lt < 0 < st:
        st, lt = max(ZERO, st + lt), ZERO
    return max(ZERO, st), max(ZERO, lt)


# --------------------------------------------------------------------------
# Estimator
# --------------------------------------------------------------------------
class BracketTaxEstimator:
    """Federal estimate on realized crypto gains for one filer."""

    def __init__(self, table: FilingTable, ordinary_income: Decimal = ZERO):
        self.table = table
        self.ordinary_income = Decimal(ordinary_income or 0)

    @classmethod
    def for_filer(
        cls,
        tax_year: int,
        filing_status: str,
        ordinary_income: Decimal = ZERO,
        tables: Optional[TaxTables] = None,
    ) -> "BracketTaxEstimator":
        return cls(table_for_year(tax_year, filing_status, tables), ordinary_income)

    def estimate(self, short_term_net: Decimal, long_term_net: Decimal) -> Decimal:
        st, lt = net_short_long(short_term_net, long_term_net)
        baseline = max(ZERO, self.ordinary_income - self.table.standard_deduction)

        st_tax = incremental_tax(baseline, st, self.table.ordinary_brackets)
        lt_tax = incremental_tax(baseline + st, lt, self.table.long_term_brackets)
        return (st_tax + lt_tax).quantize(USD_QUANT, rounding=ROUND_HALF_DOWN)
