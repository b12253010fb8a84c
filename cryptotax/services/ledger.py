"""
cryptotax/services/ledger.py

Ledger ingest: turns adapter output (RawTransaction) into Transaction rows and
reads them back as per-asset streams for the lot matcher.

Rules:
  - Only crypto legs become rows; USD, stablecoins and other fiat never open
    or consume lots.
  - A trade against a USD-like quote is priced by the quote amount; anything
    else is stored unpriced (value_usd = None) for the pricing service.
  - A crypto/crypto trade emits two rows: the base leg and a ':quote' leg
    moving the quote asset the other way.
  - Re-ingesting the same (source_id, external_id) is a no-op.
  - Rows are inserted in chronological order so the autoincrement id works as
    the ingestion sequence.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from cryptotax.constants import (
    CATEGORY_UNCATEGORIZED,
    TX_BUY,
    TX_EXPENSE,
    TX_INCOME,
    TX_SELL,
    TX_STAKING,
    TX_TRANSFER_IN,
    TX_TRANSFER_OUT,
    USD_LIKE_ASSETS,
    is_cash_asset,
)
from cryptotax.models.transaction import Transaction
from cryptotax.services.exchanges.base import RawTransaction
from cryptotax.services.lot_matcher import LedgerTransaction

logger = logging.getLogger(__name__)

SIMPLE_KINDS = {
    "deposit": TX_TRANSFER_IN,
    "withdrawal": TX_TRANSFER_OUT,
    "income": TX_INCOME,
    "staking": TX_STAKING,
    "fee": TX_EXPENSE,
}


@dataclass
class IngestReport:
    inserted: int = 0
    duplicates: int = 0
    skipped_cash: int = 0
    unpriced: int = 0


# --------------------------------------------------------------------------
# 1) Normalization
# --------------------------------------------------------------------------
def _row(raw: RawTransaction, external_id: str, tx_type: str, asset: str, amount: Decimal,
         value_usd: Optional[Decimal], fee: Optional[Decimal] = None,
         fee_usd: Optional[Decimal] = None, description: Optional[str] = None) -> dict:
    return {
        "external_id": external_id,
        "tx_hash": raw.tx_hash,
        "date": raw.date,
        "type": tx_type,
        "asset": asset,
        "amount": amount,
        "value_usd": value_usd,
        "fee": fee,
        "fee_usd": fee_usd,
        "description": description,
    }


def _normalize_trade(raw: RawTransaction) -> List[dict]:
    buying = raw.side == "buy"
    base, quote = raw.base_asset, raw.quote_asset
    base_amount, quote_amount = raw.base_amount, raw.quote_amount or Decimal("0")
    fee_asset, fee_amount = raw.fee_asset, raw.fee_amount or Decimal("0")

    value_usd = quote_amount if quote in USD_LIKE_ASSETS else None
    fee_usd = None
    rows = []

    # Fees paid in one of the traded assets change the quantity that moved
    if fee_amount and fee_asset in USD_LIKE_ASSETS:
        fee_usd = fee_amount
    elif fee_amount and fee_asset == base:
        base_amount = base_amount - fee_amount if buying else base_amount + fee_amount
    elif fee_amount and fee_asset == quote:
        quote_amount = quote_amount + fee_amount if buying else quote_amount - fee_amount
    elif fee_amount and fee_asset and not is_cash_asset(fee_asset):
        # e.g. BNB commission: spending it is a disposal of its own
        rows.append(_row(raw, f"{raw.external_id}:fee", TX_EXPENSE, fee_asset, fee_amount, None,
                         description=f"Trading fee for {raw.external_id}"))

    if not is_cash_asset(base):
        rows.append(_row(raw, raw.external_id, TX_BUY if buying else TX_SELL, base, base_amount,
                         value_usd, fee_usd=fee_usd,
                         description=f"{raw.side} {base}/{quote}"))
    if quote and not is_cash_asset(quote) and quote_amount > 0:
        rows.append(_row(raw, f"{raw.external_id}:quote", TX_SELL if buying else TX_BUY, quote,
                         quote_amount, None, description=f"{raw.side} {base}/{quote} (quote leg)"))
    return rows


def normalize_raw_transaction(raw: RawTransaction) -> List[dict]:
    """
    Translate one RawTransaction into zero or more Transaction column dicts.
    """
    if raw.kind == "trade":
        return _normalize_trade(raw)

    if is_cash_asset(raw.base_asset):
        return []

    tx_type = SIMPLE_KINDS[raw.kind]
    amount = raw.base_amount
    fee = raw.fee_amount if raw.fee_amount and raw.fee_asset == raw.base_asset else None
    fee_usd = raw.fee_amount if raw.fee_asset in USD_LIKE_ASSETS and raw.fee_amount else None

    if raw.kind == "withdrawal" and fee and raw.fee_asset == raw.base_asset:
        # gross quantity that left the source; the transfer matcher compares net
        amount = amount + fee

    return [_row(raw, raw.external_id, tx_type, raw.base_asset, amount, raw.value_usd,
                 fee=fee, fee_usd=fee_usd)]


# --------------------------------------------------------------------------
# 2) Ingest
# --------------------------------------------------------------------------
def ingest_raw_transactions(
    db: Session,
    user_id: int,
    source_id: int,
    raws: Iterable[RawTransaction],
) -> IngestReport:
    report = IngestReport()
    rows = []
    for raw in raws:
        normalized = normalize_raw_transaction(raw)
        if not normalized:
            report.skipped_cash += 1
        rows.extend(normalized)

    rows.sort(key=lambda r: (r["date"], r["external_id"]))

    existing = {
        ext for (ext,) in db.query(Transaction.external_id)
        .filter(Transaction.source_id == source_id, Transaction.external_id.isnot(None))
    }

    for row in rows:
        if row["external_id"] in existing:
            report.duplicates += 1
            continue
        existing.add(row["external_id"])

        priced = row["value_usd"] is not None
        if not priced:
            report.unpriced += 1
        db.add(Transaction(
            user_id=user_id,
            source_id=source_id,
            category=CATEGORY_UNCATEGORIZED,
            is_categorized=False,
            is_priced=priced,
            needs_review=False,
            **row,
        ))
        # flush per row so ids follow the chronological order
        db.flush()
        report.inserted += 1

    db.commit()
    logger.info(
        f"Ingested source={source_id} user={user_id}: inserted={report.inserted} "
        f"duplicates={report.duplicates} cash_only={report.skipped_cash} unpriced={report.unpriced}"
    )
    return report


# --------------------------------------------------------------------------
# 3) Read back for the matcher
# --------------------------------------------------------------------------
def to_ledger_transaction(tx: Transaction) -> LedgerTransaction:
    return LedgerTransaction(
        id=tx.id,
        user_id=tx.user_id,
        date=tx.date,
        type=tx.type,
        asset=tx.asset,
        amount=tx.amount,
        value_usd=tx.value_usd,
        fee_usd=tx.fee_usd,
        category=tx.category,
        sequence=tx.id,
    )


def load_ledger(db: Session, user_id: int, asset: Optional[str] = None) -> Dict[str, List[LedgerTransaction]]:
    """
    Per-asset streams sorted by (date, id). Sorted in Python: the stored
    timestamps are strings and do not all sort correctly as text.
    """
    query = db.query(Transaction).filter(Transaction.user_id == user_id)
    if asset is not None:
        query = query.filter(Transaction.asset == asset)

    streams: Dict[str, List[LedgerTransaction]] = defaultdict(list)
    for tx in sorted(query.all(), key=lambda t: (t.date, t.id)):
        streams[tx.asset].append(to_ledger_transaction(tx))
    return dict(streams)
