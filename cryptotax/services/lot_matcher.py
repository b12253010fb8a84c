"""
cryptotax/services/lot_matcher.py

Tax-lot matching engine. This file is pure logic (no DB calls, no network, no
wall clock): give it one user's ordered transaction stream for a single asset
and get back
  - the DisposalMatch records (realized gain/loss per lot slice),
  - the lots still open after the last transaction,
  - the transactions that could not be processed and need review.

Supported methods: FIFO, LIFO, HIFO and SpecificID (caller-selected lots).

Errors for individual transactions are raised internally and collected in
MatchResult.issues, so one bad row never aborts the whole run. A disposal whose
lots cannot be planned leaves lot state untouched; an unpriced disposal still
consumes its lots so later disposals see the right inventory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from cryptotax.constants import (
    ACQUISITION_TYPES,
    CATEGORY_SELF_TRANSFER,
    CATEGORY_UNCATEGORIZED,
    DISPOSAL_TYPES,
    LONG_TERM_THRESHOLD_DAYS,
    TX_GIFT_SENT,
    TX_SELF_TRANSFER,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class TaxMethod(str, Enum):
    FIFO = "FIFO"
    LIFO = "LIFO"
    HIFO = "HIFO"
    SPECIFIC_ID = "SpecificID"

    @classmethod
    def parse(cls, value) -> "TaxMethod":
        """
        Accepts 'fifo', 'HIFO', 'SpecificID', 'specific_id', 'specific-id', ...
        """
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().replace("_", "").replace("-", "").lower()
        for method in cls:
            if method.value.lower() == key:
                return method
        raise ValueError(f"Unknown tax method: {value!r}")


class TermType(str, Enum):
    SHORT = "short"
    LONG = "long"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class LedgerTransaction:
    """
    One row of the matcher's input stream. 'amount' is always positive;
    the direction comes from 'type'. 'sequence' is the ingestion order and
    breaks ties between rows with the same date.
    """

    id: int
    user_id: int
    date: datetime
    type: str
    asset: str
    amount: Decimal
    value_usd: Optional[Decimal]
    fee_usd: Optional[Decimal] = None
    category: str = CATEGORY_UNCATEGORIZED
    sequence: Optional[int] = None

    def __post_init__(self):
        if self.sequence is None:
            object.__setattr__(self, "sequence", self.id)

    @property
    def is_self_transfer(self) -> bool:
        return self.type == TX_SELF_TRANSFER or self.category == CATEGORY_SELF_TRANSFER

    @property
    def is_acquisition(self) -> bool:
        return self.type in ACQUISITION_TYPES

    @property
    def is_disposal(self) -> bool:
        return self.type in DISPOSAL_TYPES


@dataclass
class Lot:
    """
    A quantity of one asset acquired at a known USD cost basis.
    The lot id is the id of the acquisition transaction that opened it.
    """

    id: int
    user_id: int
    asset: str
    opened_at: datetime
    quantity: Decimal
    quantity_remaining: Decimal
    cost_basis_usd_per_unit: Decimal
    cost_basis_remaining_usd: Decimal
    source_transaction_id: int
    sequence: int

    @property
    def is_open(self) -> bool:
        return self.quantity_remaining > 0


@dataclass(frozen=True)
class DisposalMatch:
    lot_id: int
    disposal_transaction_id: int
    asset: str
    quantity_matched: Decimal
    proceeds_usd: Decimal
    cost_basis_usd: Decimal
    gain_loss: Decimal
    holding_period_days: int
    term_type: TermType
    acquired_at: datetime
    disposed_at: datetime
    disposal_sequence: int
    slice_index: int

    @property
    def sort_key(self) -> Tuple[datetime, int, int]:
        return (self.disposed_at, self.disposal_sequence, self.slice_index)


@dataclass(frozen=True)
class LotSelection:
    """SpecificID instruction: take from 'lot_id' (all that is needed if quantity is None)."""

    lot_id: int
    quantity: Optional[Decimal] = None


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class LotMatchingError(Exception):
    code = "lot_matching_error"

    def __init__(self, message: str, *, transaction: Optional[LedgerTransaction] = None) -> None:
        super().__init__(message)
        self.transaction = transaction

    @property
    def transaction_id(self) -> Optional[int]:
        return self.transaction.id if self.transaction is not None else None

    @property
    def asset(self) -> Optional[str]:
        return self.transaction.asset if self.transaction is not None else None


class InvalidAmountError(LotMatchingError):
    code = "invalid_amount"


class UnpricedAcquisitionError(LotMatchingError):
    code = "unpriced_acquisition"


class UnpricedDisposalError(LotMatchingError):
    code = "unpriced_disposal"


class InsufficientLotsError(LotMatchingError):
    code = "insufficient_lots"

    def __init__(
        self,
        message: str,
        *,
        transaction: Optional[LedgerTransaction] = None,
        quantity_needed: Decimal = ZERO,
        quantity_available: Decimal = ZERO,
    ) -> None:
        super().__init__(message, transaction=transaction)
        self.quantity_needed = quantity_needed
        self.quantity_available = quantity_available


class LotNotFoundError(LotMatchingError):
    code = "lot_not_found"

    def __init__(
        self,
        message: str,
        *,
        transaction: Optional[LedgerTransaction] = None,
        lot_id: Optional[int] = None,
    ) -> None:
        super().__init__(message, transaction=transaction)
        self.lot_id = lot_id


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------
@dataclass
class MatchResult:
    user_id: int
    asset: str
    method: TaxMethod
    matches: List[DisposalMatch] = field(default_factory=list)
    open_lots: List[Lot] = field(default_factory=list)
    issues: List[LotMatchingError] = field(default_factory=list)

    @property
    def needs_review_ids(self) -> List[int]:
        return sorted({issue.transaction_id for issue in self.issues if issue.transaction_id is not None})


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------
class LotMatcher:
    """Match disposals to lots for one (user, asset) stream."""

    def __init__(
        self,
        method,
        lot_selections: Optional[Mapping[int, Sequence[LotSelection]]] = None,
    ) -> None:
        self.method = TaxMethod.parse(method)
        self._lot_selections = dict(lot_selections or {})

    def match(self, user_id: int, asset: str, transactions: Iterable[LedgerTransaction]) -> MatchResult:
        """Caller must provide transactions sorted by (date, sequence)."""
        result = MatchResult(user_id=user_id, asset=asset, method=self.method)
        lots: List[Lot] = []
        lots_by_id: dict[int, Lot] = {}
        previous_key = None

        for tx in transactions:
            if tx.asset != asset:
                raise ValueError(f"Transaction {tx.id} is {tx.asset}, expected {asset}")
            key = (tx.date, tx.sequence)
            if previous_key is not None and key < previous_key:
                raise ValueError(
                    f"Transaction {tx.id} out of order: {tx.date.isoformat()} after {previous_key[0].isoformat()}"
                )
            previous_key = key

            if tx.is_self_transfer:
                continue

            try:
                if tx.amount is None or tx.amount <= 0:
                    raise InvalidAmountError(
                        f"Transaction {tx.id} has non-positive amount {tx.amount}", transaction=tx
                    )
                if tx.is_acquisition:
                    lot = self._open_lot(user_id, tx)
                    lots.append(lot)
                    lots_by_id[lot.id] = lot
                elif tx.is_disposal:
                    result.matches.extend(self._dispose(tx, lots, lots_by_id))
                else:
                    logger.debug(f"Transaction {tx.id} type={tx.type} neither opens nor consumes lots")
            except LotMatchingError as exc:
                logger.warning(f"[{asset}] user={user_id} tx={tx.id}: {exc}")
                result.issues.append(exc)

        result.open_lots = [replace(lot) for lot in lots if lot.is_open]
        return result

    # -- acquisitions --------------------------------------------------------
    def _open_lot(self, user_id: int, tx: LedgerTransaction) -> Lot:
        if tx.value_usd is None:
            raise UnpricedAcquisitionError(
                f"Acquisition {tx.id} of {tx.amount} {tx.asset} has no USD value", transaction=tx
            )
        basis = tx.value_usd + (tx.fee_usd or ZERO)
        return Lot(
            id=tx.id,
            user_id=user_id,
            asset=tx.asset,
            opened_at=tx.date,
            quantity=tx.amount,
            quantity_remaining=tx.amount,
            cost_basis_usd_per_unit=basis / tx.amount,
            cost_basis_remaining_usd=basis,
            source_transaction_id=tx.id,
            sequence=tx.sequence,
        )

    # -- disposals -----------------------------------------------------------
    def _dispose(self, tx: LedgerTransaction, lots: List[Lot], lots_by_id: dict) -> List[DisposalMatch]:
        plan = self._plan(tx, lots, lots_by_id)
        consumed = [(lot, qty, self._consume(lot, qty)) for lot, qty in plan]

        if tx.value_usd is None:
            raise UnpricedDisposalError(
                f"Disposal {tx.id} of {tx.amount} {tx.asset} has no USD value; lots consumed, gain unknown",
                transaction=tx,
            )

        total_proceeds = tx.value_usd - (tx.fee_usd or ZERO)
        allocated = ZERO
        matches = []
        for index, (lot, qty, cost) in enumerate(consumed):
            if tx.type == TX_GIFT_SENT:
                proceeds = cost
            elif index == len(consumed) - 1:
                proceeds = total_proceeds - allocated
            else:
                proceeds = total_proceeds * qty / tx.amount
            allocated += proceeds

            days_held = (tx.date - lot.opened_at).days
            matches.append(DisposalMatch(
                lot_id=lot.id,
                disposal_transaction_id=tx.id,
                asset=tx.asset,
                quantity_matched=qty,
                proceeds_usd=proceeds,
                cost_basis_usd=cost,
                gain_loss=proceeds - cost,
                holding_period_days=days_held,
                term_type=TermType.LONG if days_held > LONG_TERM_THRESHOLD_DAYS else TermType.SHORT,
                acquired_at=lot.opened_at,
                disposed_at=tx.date,
                disposal_sequence=tx.sequence,
                slice_index=index,
            ))
        return matches

    def _plan(self, tx: LedgerTransaction, lots: List[Lot], lots_by_id: dict) -> List[Tuple[Lot, Decimal]]:
        """
        Decide which lots cover the disposal without touching them yet,
        so a failed disposal leaves no partial consumption behind.
        """
        if self.method is TaxMethod.SPECIFIC_ID and tx.id in self._lot_selections:
            return self._plan_specific(tx, lots_by_id, self._lot_selections[tx.id])

        remaining = tx.amount
        plan = []
        for lot in self._ordered_candidates(lots):
            if remaining <= 0:
                break
            take = min(lot.quantity_remaining, remaining)
            plan.append((lot, take))
            remaining -= take

        if remaining > 0:
            available = tx.amount - remaining
            raise InsufficientLotsError(
                f"Disposal {tx.id} needs {tx.amount} {tx.asset} but only {available} is open",
                transaction=tx,
                quantity_needed=tx.amount,
                quantity_available=available,
            )
        return plan

    def _plan_specific(
        self,
        tx: LedgerTransaction,
        lots_by_id: dict,
        selections: Sequence[LotSelection],
    ) -> List[Tuple[Lot, Decimal]]:
        remaining = tx.amount
        plan = []
        seen = set()
        for selection in selections:
            if remaining <= 0:
                break
            lot = lots_by_id.get(selection.lot_id)
            if lot is None:
                raise LotNotFoundError(
                    f"Disposal {tx.id} selects lot {selection.lot_id}, which was not opened before it",
                    transaction=tx,
                    lot_id=selection.lot_id,
                )
            if selection.lot_id in seen:
                raise LotNotFoundError(
                    f"Disposal {tx.id} selects lot {selection.lot_id} twice",
                    transaction=tx,
                    lot_id=selection.lot_id,
                )
            seen.add(selection.lot_id)

            if selection.quantity is None:
                wanted = min(lot.quantity_remaining, remaining)
            else:
                wanted = min(selection.quantity, remaining)
            if wanted <= 0 or lot.quantity_remaining < wanted:
                raise LotNotFoundError(
                    f"Lot {lot.id} has {lot.quantity_remaining} {tx.asset} left, "
                    f"disposal {tx.id} asked for {selection.quantity or remaining}",
                    transaction=tx,
                    lot_id=lot.id,
                )
            plan.append((lot, wanted))
            remaining -= wanted

        if remaining > 0:
            raise LotNotFoundError(
                f"Selected lots cover {tx.amount - remaining} of {tx.amount} {tx.asset} for disposal {tx.id}",
                transaction=tx,
            )
        return plan

    def _ordered_candidates(self, lots: List[Lot]) -> List[Lot]:
        open_lots = [lot for lot in lots if lot.is_open]
        if self.method is TaxMethod.LIFO:
            return sorted(open_lots, key=lambda lot: (lot.opened_at, lot.sequence), reverse=True)
        if self.method is TaxMethod.HIFO:
            return sorted(open_lots, key=lambda lot: (-lot.cost_basis_usd_per_unit, lot.opened_at, lot.sequence))
        # FIFO, and SpecificID disposals without explicit selections
        return sorted(open_lots, key=lambda lot: (lot.opened_at, lot.sequence))

    @staticmethod
    def _consume(lot: Lot, quantity: Decimal) -> Decimal:
        """Decrement the lot and return the cost basis released."""
        if quantity == lot.quantity_remaining:
            cost = lot.cost_basis_remaining_usd
            lot.quantity_remaining = ZERO
            lot.cost_basis_remaining_usd = ZERO
        else:
            cost = lot.cost_basis_usd_per_unit * quantity
            lot.quantity_remaining -= quantity
            lot.cost_basis_remaining_usd -= cost
        return cost


def match(
    user_id: int,
    asset: str,
    method,
    transactions: Iterable[LedgerTransaction],
    lot_selections: Optional[Mapping[int, Sequence[LotSelection]]] = None,
) -> MatchResult:
    """Convenience wrapper around LotMatcher(...).match(...)."""
    return LotMatcher(method, lot_selections).match(user_id, asset, transactions)
