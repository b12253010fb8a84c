"""
cryptotax/services/transfer_matcher.py

Detects moves between the user's own sources (exchange -> wallet and so on).
A transfer-out and a transfer-in of the same asset from different sources are
a pair when
  1) they carry the same on-chain tx hash, or
  2) they are within one hour of each other and the amounts agree within
     0.01% (either gross, or net of the withdrawal fee).

Paired rows are re-categorized as self-transfer, which the lot matcher skips
so the cost basis carries over untouched.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from cryptotax.constants import (
    CATEGORY_SELF_TRANSFER,
    TRANSFER_AMOUNT_TOLERANCE,
    TRANSFER_TIME_WINDOW_SECONDS,
    TX_TRANSFER_IN,
    TX_TRANSFER_OUT,
)
from cryptotax.models.transaction import Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferLeg:
    id: int
    source_id: Optional[int]
    asset: str
    date: datetime
    amount: Decimal
    fee: Optional[Decimal] = None
    tx_hash: Optional[str] = None


def amounts_match(sent: Decimal, received: Decimal, tolerance: Decimal = TRANSFER_AMOUNT_TOLERANCE) -> bool:
    largest = max(abs(sent), abs(received))
    if largest == 0:
        return True
    return abs(sent - received) / largest <= tolerance


def _compatible(out: TransferLeg, inc: TransferLeg) -> bool:
    return out.asset == inc.asset and out.source_id != inc.source_id


def find_transfer_pairs(
    outs: Iterable[TransferLeg],
    ins: Iterable[TransferLeg],
    window_seconds: int = TRANSFER_TIME_WINDOW_SECONDS,
    tolerance: Decimal = TRANSFER_AMOUNT_TOLERANCE,
) -> List[Tuple[int, int]]:
    """
    Returns (transfer_out_id, transfer_in_id) pairs. Each leg is used at most
    once; hash matches are taken first, then the closest-in-time candidate.
    """
    outs = sorted(outs, key=lambda leg: (leg.date, leg.id))
    ins = sorted(ins, key=lambda leg: (leg.date, leg.id))
    used_out, used_in = set(), set()
    pairs = []

    # 1) same tx hash
    for out in outs:
        if not out.tx_hash:
            continue
        for inc in ins:
            if inc.id in used_in or not _compatible(out, inc):
                continue
            if inc.tx_hash and inc.tx_hash.lower() == out.tx_hash.lower():
                pairs.append((out.id, inc.id))
                used_out.add(out.id)
                used_in.add(inc.id)
                break

    # 2) time window + amount
    for out in outs:
        if out.id in used_out:
            continue
        net = out.amount - (out.fee or Decimal("0"))
        best = None
        best_gap = None
        for inc in ins:
            if inc.id in used_in or not _compatible(out, inc):
                continue
            gap = abs((inc.date - out.date).total_seconds())
            if gap > window_seconds:
                continue
            if not (amounts_match(out.amount, inc.amount, tolerance) or amounts_match(net, inc.amount, tolerance)):
                continue
            if best is None or gap < best_gap:
                best, best_gap = inc, gap
        if best is not None:
            pairs.append((out.id, best.id))
            used_out.add(out.id)
            used_in.add(best.id)

    return sorted(pairs)


def _leg(tx: Transaction) -> TransferLeg:
    return TransferLeg(
        id=tx.id,
        source_id=tx.source_id,
        asset=tx.asset,
        date=tx.date,
        amount=tx.amount,
        fee=tx.fee,
        tx_hash=tx.tx_hash,
    )


def match_transfers(db: Session, user_id: int) -> List[Tuple[int, int]]:
    candidates = (
        db.query(Transaction)
        .filter(
            Transaction.user_id == user_id,
            Transaction.type.in_([TX_TRANSFER_OUT, TX_TRANSFER_IN]),
            Transaction.category != CATEGORY_SELF_TRANSFER,
        )
        .all()
    )
    by_id = {tx.id: tx for tx in candidates}
    outs = [_leg(tx) for tx in candidates if tx.type == TX_TRANSFER_OUT]
    ins = [_leg(tx) for tx in candidates if tx.type == TX_TRANSFER_IN]

    pairs = find_transfer_pairs(outs, ins)
    for out_id, in_id in pairs:
        for tx_id in (out_id, in_id):
            by_id[tx_id].category = CATEGORY_SELF_TRANSFER
            by_id[tx_id].is_categorized = True
    db.commit()

    logger.info(f"match_transfers user={user_id}: {len(pairs)} self-transfer pairs")
    return pairs
