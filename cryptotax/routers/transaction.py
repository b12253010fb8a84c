"""
cryptotax/routers/transaction.py

Transaction endpoints: ledger CRUD plus the read side of the tax engine.

  GET    /                      list rows (filters: asset, type, needsReview, year)
  POST   /                      create a row
  GET    /summary               Summary for ?year=&method=
  GET    /pnl-history           per-day realized P&L for ?year=&method=
  GET    /lots                  open lots for ?method=&asset=
  POST   /recompute             transfer matching + persist needsReview flags
  POST   /price                 price unpriced rows from CoinGecko
  GET    /{id}                  one row
  PATCH  /{id}                  partial update
  DELETE /{id}                  delete
  GET    /{id}/lot-selections   SpecificID instructions of a disposal
  PUT    /{id}/lot-selections   replace them

The fixed paths are declared before '/{transaction_id}' so they are not
swallowed by it. GETs never write: needsReview is persisted only by /recompute.
"""

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from cryptotax.database import get_db
from cryptotax.models.user import User
from cryptotax.schemas.summary import (
    PnlHistoryRead,
    PricingRead,
    RecomputeRead,
    TransactionSummaryRead,
)
from cryptotax.schemas.transaction import (
    LotRead,
    LotSelectionRead,
    LotSelectionsUpdate,
    TransactionCreate,
    TransactionRead,
    TransactionUpdate,
)
from cryptotax.services import gains
from cryptotax.services import transaction as tx_service
from cryptotax.services.lot_matcher import TaxMethod
from cryptotax.services.pricing import CoinGeckoPriceSource, PriceSourceError, price_unpriced_transactions
from cryptotax.services.transfer_matcher import match_transfers
from cryptotax.utils.auth import get_current_user

router = APIRouter(tags=["transactions"])


def resolve_method(method: Optional[str], user: User) -> TaxMethod:
    try:
        return TaxMethod.parse(method or user.default_tax_method)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown method '{method}'. Use FIFO, LIFO, HIFO or SpecificID.")


def resolve_year(year: Optional[int]) -> int:
    return year if year is not None else datetime.now(timezone.utc).year


def get_price_source():
    """One price source per request; its HTTP client is closed afterwards."""
    with CoinGeckoPriceSource() as source:
        yield source


# ---------------------------------------------------------
# Collection
# ---------------------------------------------------------
@router.get("/", response_model=List[TransactionRead])
def list_transactions(
    asset: Optional[str] = None,
    type: Optional[str] = None,
    needs_review: Optional[bool] = Query(None, alias="needsReview"),
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Rows in ledger order (date, then ingestion sequence)."""
    return tx_service.list_transactions(db, current_user.id, asset, type, needs_review, year)


@router.post("/", response_model=TransactionRead, status_code=201)
def create_transaction(
    tx: TransactionCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return tx_service.create_transaction(db, current_user.id, tx)


# ---------------------------------------------------------
# Read side of the tax engine
# ---------------------------------------------------------
@router.get("/summary", response_model=TransactionSummaryRead)
def get_summary(
    year: Optional[int] = None,
    method: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Realized gains/losses for the tax year, split by term, with an estimated
    federal tax from the user's tax profile. Per-asset matching problems
    (unpriced rows, insufficient lots, bad lot selections) come back in
    'warnings' instead of failing the request.
    """
    summary = gains.transaction_summary(db, current_user, resolve_year(year), resolve_method(method, current_user))
    return TransactionSummaryRead.from_summary(summary)


@router.get("/pnl-history", response_model=PnlHistoryRead)
def get_pnl_history(
    year: Optional[int] = None,
    method: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    history = gains.pnl_history(db, current_user.id, resolve_year(year), resolve_method(method, current_user))
    return PnlHistoryRead.from_history(history)


@router.get("/lots", response_model=List[LotRead])
def get_open_lots(
    method: Optional[str] = None,
    asset: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Lots still open after the whole ledger is matched; ids are usable as SpecificID selections."""
    return gains.open_lots(db, current_user.id, resolve_method(method, current_user), asset.upper() if asset else None)


@router.post("/recompute", response_model=RecomputeRead)
def recompute(
    method: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    tax_method = resolve_method(method, current_user)
    pairs = match_transfers(db, current_user.id)
    flagged = gains.flag_needs_review(db, current_user.id, tax_method)
    return RecomputeRead(
        method=tax_method.value,
        needs_review_ids=flagged,
        transfer_pairs=[list(pair) for pair in pairs],
    )


@router.post("/price", response_model=PricingRead)
def price_transactions(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    price_source: CoinGeckoPriceSource = Depends(get_price_source),
):
    try:
        report = price_unpriced_transactions(db, current_user.id, price_source)
    except PriceSourceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return PricingRead(priced=report.priced, unknown=report.unknown)


# ---------------------------------------------------------
# Single row
# ---------------------------------------------------------
def _get_owned(db: Session, user: User, transaction_id: int):
    tx = tx_service.get_transaction(db, user.id, transaction_id)
    if not tx:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return tx


@router.get("/{transaction_id}", response_model=TransactionRead)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _get_owned(db, current_user, transaction_id)


@router.patch("/{transaction_id}", response_model=TransactionRead)
def update_transaction(
    transaction_id: int,
    tx: TransactionUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return tx_service.update_transaction(db, _get_owned(db, current_user, transaction_id), tx)


@router.delete("/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    tx_service.delete_transaction(db, _get_owned(db, current_user, transaction_id))


@router.get("/{transaction_id}/lot-selections", response_model=List[LotSelectionRead])
def get_lot_selections(
    transaction_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _get_owned(db, current_user, transaction_id).lot_selections


@router.put("/{transaction_id}/lot-selections", response_model=List[LotSelectionRead])
def put_lot_selections(
    transaction_id: int,
    body: LotSelectionsUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    SpecificID: which lots (acquisition transaction ids) this disposal draws
    from, in order. Used when the summary is requested with method=SpecificID.
    """
    tx = _get_owned(db, current_user, transaction_id)
    return tx_service.replace_lot_selections(db, tx, body.selections)
