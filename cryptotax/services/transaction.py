"""
cryptotax/services/transaction.py

CRUD for ledger rows and SpecificID lot selections.

Unlike a lot store, editing a row here never patches derived state: lots and
gains are rebuilt from the rows by the lot matcher on the next read, so a
backdated insert or an edit is picked up without any "recalculate" step.
"""

import logging
from typing import List, Optional

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cryptotax.constants import CATEGORY_UNCATEGORIZED, DISPOSAL_TYPES
from cryptotax.models.source import Source
from cryptotax.models.transaction import LotSelection, Transaction
from cryptotax.schemas.transaction import LotSelectionItem, TransactionCreate, TransactionUpdate

logger = logging.getLogger(__name__)


def list_transactions(
    db: Session,
    user_id: int,
    asset: Optional[str] = None,
    tx_type: Optional[str] = None,
    needs_review: Optional[bool] = None,
    year: Optional[int] = None,
) -> List[Transaction]:
    query = db.query(Transaction).filter(Transaction.user_id == user_id)
    if asset:
        query = query.filter(Transaction.asset == asset.upper())
    if tx_type:
        query = query.filter(Transaction.type == tx_type)
    if needs_review is not None:
        query = query.filter(Transaction.needs_review == needs_review)

    rows = sorted(query.all(), key=lambda t: (t.date, t.id))
    if year is not None:
        rows = [t for t in rows if t.date.year == year]
    return rows


def get_transaction(db: Session, user_id: int, transaction_id: int) -> Transaction | None:
    return (
        db.query(Transaction)
        .filter(Transaction.id == transaction_id, Transaction.user_id == user_id)
        .first()
    )


def _check_source(db: Session, user_id: int, source_id: Optional[int]) -> None:
    if source_id is None:
        return
    source = db.query(Source).filter(Source.id == source_id, Source.user_id == user_id).first()
    if not source:
        raise HTTPException(status_code=400, detail=f"Source {source_id} not found.")


def create_transaction(db: Session, user_id: int, tx_data: TransactionCreate) -> Transaction:
    _check_source(db, user_id, tx_data.source_id)
    data = tx_data.model_dump()
    new_tx = Transaction(
        user_id=user_id,
        is_priced=data["value_usd"] is not None,
        is_categorized=data["category"] != CATEGORY_UNCATEGORIZED,
        needs_review=False,
        **data,
    )
    db.add(new_tx)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=409,
            detail=f"Transaction with external id '{tx_data.external_id}' already exists for this source.",
        )
    db.refresh(new_tx)
    logger.info(f"Created transaction id={new_tx.id} {new_tx.type} {new_tx.amount} {new_tx.asset}")
    return new_tx


# Fields that feed cost basis and proceeds; frozen once a row is priced
PRICED_LOCKED_FIELDS = ("date", "type", "asset", "amount", "value_usd", "fee", "fee_usd")


def update_transaction(db: Session, tx: Transaction, tx_data: TransactionUpdate) -> Transaction:
    """
    Apply a partial update. A priced row keeps its economic fields: changing
    any of PRICED_LOCKED_FIELDS is a 409 (delete and re-create instead).
    Labels (category, description, tx_hash) stay editable, and an unpriced
    row can be edited freely, including filling in its USD value by hand.
    """
    changes = tx_data.model_dump(exclude_unset=True)
    if tx.is_priced:
        locked = sorted(
            field for field in PRICED_LOCKED_FIELDS
            if field in changes and changes[field] != getattr(tx, field)
        )
        if locked:
            raise HTTPException(
                status_code=409,
                detail=f"Transaction {tx.id} is priced; {', '.join(locked)} cannot be changed.",
            )

    for field, value in changes.items():
        if field in ("date", "type", "asset", "amount", "category") and value is None:
            raise HTTPException(status_code=400, detail=f"'{field}' cannot be null.")
        setattr(tx, field, value)

    if "value_usd" in changes:
        tx.is_priced = tx.value_usd is not None
    if "category" in changes:
        tx.is_categorized = tx.category != CATEGORY_UNCATEGORIZED
    if tx.type not in DISPOSAL_TYPES and tx.lot_selections:
        tx.lot_selections.clear()

    db.commit()
    db.refresh(tx)
    logger.info(f"Updated transaction id={tx.id}: {sorted(changes)}")
    return tx


def delete_transaction(db: Session, tx: Transaction) -> None:
    db.delete(tx)
    db.commit()
    logger.info(f"Deleted transaction id={tx.id}")


def replace_lot_selections(db: Session, tx: Transaction, items: List[LotSelectionItem]) -> List[LotSelection]:
    """
    Store the SpecificID instructions for one disposal, replacing any earlier
    ones. Whether the lots exist and cover the quantity is checked by the
    matcher at read time (LotNotFound), since the ledger can change later.
    """
    if tx.type not in DISPOSAL_TYPES:
        raise HTTPException(status_code=400, detail="Lot selections only apply to disposals.")
    lot_ids = [item.lot_id for item in items]
    if len(set(lot_ids)) != len(lot_ids):
        raise HTTPException(status_code=400, detail="Each lot can be selected once per disposal.")
    if tx.id in lot_ids:
        raise HTTPException(status_code=400, detail="A disposal cannot select itself as a lot.")

    tx.lot_selections.clear()
    db.flush()
    for position, item in enumerate(items):
        tx.lot_selections.append(LotSelection(lot_id=item.lot_id, quantity=item.quantity, position=position))
    db.commit()
    db.refresh(tx)
    return list(tx.lot_selections)
