"""
cryptotax/services/aggregator.py

Folds DisposalMatch records into the read-side views:
  - summarize(...)   -> Summary for one tax year
  - pnl_history(...) -> per-day realized P&L with a running total

Pure and deterministic: same matches in, same output out (the input order of
the matches does not matter). Nothing here touches the database.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, timezone
from decimal import Decimal, ROUND_HALF_DOWN
from typing import Iterable, List, Optional, Protocol, Tuple

from cryptotax.constants import USD_QUANT
from cryptotax.services.lot_matcher import DisposalMatch, TaxMethod, TermType

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _cents(value: Decimal) -> Decimal:
    return value.quantize(USD_QUANT, rounding=ROUND_HALF_DOWN)


def _disposal_date(match: DisposalMatch) -> date:
    disposed_at = match.disposed_at
    if disposed_at.tzinfo is not None:
        disposed_at = disposed_at.astimezone(timezone.utc)
    return disposed_at.date()


def matches_for_year(matches: Iterable[DisposalMatch], tax_year: int) -> List[DisposalMatch]:
    """Matches whose disposal falls in the UTC calendar year, in stream order."""
    selected = [m for m in matches if _disposal_date(m).year == tax_year]
    return sorted(selected, key=lambda m: m.sort_key)


# --------------------------------------------------------------------------
# Tax estimation hook
# --------------------------------------------------------------------------
class TaxEstimator(Protocol):
    def estimate(self, short_term_net: Decimal, long_term_net: Decimal) -> Decimal:
        ...


class ZeroTaxEstimator:
    """Used when no tax profile / table applies."""

    def estimate(self, short_term_net: Decimal, long_term_net: Decimal) -> Decimal:
        return ZERO


# --------------------------------------------------------------------------
# Summary
# --------------------------------------------------------------------------
@dataclass(frozen=True)
class Summary:
    tax_year: int
    method: TaxMethod
    total_gains: Decimal
    total_losses: Decimal
    net_gain_loss: Decimal
    estimated_tax: Decimal
    short_term_gains: Decimal
    short_term_losses: Decimal
    long_term_gains: Decimal
    long_term_losses: Decimal
    taxable_events_count: int
    transaction_count: int = 0
    warnings: Tuple[str, ...] = field(default_factory=tuple)


def summarize(
    matches: Iterable[DisposalMatch],
    tax_year: int,
    method=TaxMethod.FIFO,
    estimator: Optional[TaxEstimator] = None,
    transaction_count: int = 0,
    warnings: Iterable[str] = (),
) -> Summary:
    """
    Gains and losses are split by term; losses are reported as magnitudes.
    Each component is rounded to cents first and the totals are built from the
    rounded parts, so net = gains - losses holds to the cent.
    """
    st_gains = st_losses = lt_gains = lt_losses = ZERO
    disposal_ids = set()

    for m in matches_for_year(matches, tax_year):
        disposal_ids.add(m.disposal_transaction_id)
        if m.term_type is TermType.LONG:
            if m.gain_loss >= 0:
                lt_gains += m.gain_loss
            else:
                lt_losses += -m.gain_loss
        else:
            if m.gain_loss >= 0:
                st_gains += m.gain_loss
            else:
                st_losses += -m.gain_loss

    st_gains, st_losses = _cents(st_gains), _cents(st_losses)
    lt_gains, lt_losses = _cents(lt_gains), _cents(lt_losses)
    total_gains = st_gains + lt_gains
    total_losses = st_losses + lt_losses

    estimator = estimator or ZeroTaxEstimator()
    estimated_tax = _cents(estimator.estimate(st_gains - st_losses, lt_gains - lt_losses))

    logger.debug(
        f"Summary {tax_year}: {len(disposal_ids)} taxable events, "
        f"gains={total_gains} losses={total_losses} tax={estimated_tax}"
    )
    return Summary(
        tax_year=tax_year,
        method=TaxMethod.parse(method),
        total_gains=total_gains,
        total_losses=total_losses,
        net_gain_loss=total_gains - total_losses,
        estimated_tax=estimated_tax,
        short_term_gains=st_gains,
        short_term_losses=st_losses,
        long_term_gains=lt_gains,
        long_term_losses=lt_losses,
        taxable_events_count=len(disposal_ids),
        transaction_count=transaction_count,
        warnings=tuple(warnings),
    )


# --------------------------------------------------------------------------
# P&L history
# --------------------------------------------------------------------------
@dataclass(frozen=True)
class PnlPoint:
    date: date
    pnl: Decimal
    cumulative_pnl: Decimal


@dataclass(frozen=True)
class PnlHistory:
    tax_year: int
    method: TaxMethod
    data_points: Tuple[PnlPoint, ...]
    total_pnl: Decimal
    start_date: Optional[date]
    end_date: Optional[date]


def pnl_history(matches: Iterable[DisposalMatch], tax_year: int, method=TaxMethod.FIFO) -> PnlHistory:
    """One point per calendar day with realized gains, plus a running total."""
    per_day = OrderedDict()
    for m in matches_for_year(matches, tax_year):
        day = _disposal_date(m)
        per_day[day] = per_day.get(day, ZERO) + m.gain_loss

    points = []
    running = ZERO
    for day, pnl in per_day.items():
        pnl = _cents(pnl)
        running += pnl
        points.append(PnlPoint(date=day, pnl=pnl, cumulative_pnl=running))

    return PnlHistory(
        tax_year=tax_year,
        method=TaxMethod.parse(method),
        data_points=tuple(points),
        total_pnl=running,
        start_date=points[0].date if points else None,
        end_date=points[-1].date if points else None,
    )
