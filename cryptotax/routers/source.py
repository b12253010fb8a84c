"""
cryptotax/routers/source.py

Sources and exchange connectivity. Credentials are part of each request body
and are never persisted.

  POST /                         create a source
  GET  /                         list sources
  POST /{id}/test-connection     -> {ok}
  POST /{id}/balances            current exchange balances
  POST /{id}/sync                pull + ingest transactions, then transfer matching
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from cryptotax.database import get_db
from cryptotax.models.user import User
from cryptotax.schemas.source import (
    BalanceRead,
    ConnectionRead,
    CredentialsIn,
    SourceCreate,
    SourceRead,
    SyncRead,
    SyncRequest,
)
from cryptotax.services import source as source_service
from cryptotax.services.exchanges.base import ExchangeAPIError, ExchangeAuthError
from cryptotax.services.exchanges.factory import get_exchange_adapter
from cryptotax.utils.auth import get_current_user

router = APIRouter(tags=["sources"])


def get_adapter_factory():
    """Overridden in tests to hand out fake adapters."""
    return get_exchange_adapter


def _get_owned(db: Session, user: User, source_id: int):
    source = source_service.get_source(db, user.id, source_id)
    if not source:
        raise HTTPException(status_code=404, detail="Source not found")
    return source


@router.post("/", response_model=SourceRead, status_code=201)
def create_source(
    body: SourceCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return source_service.create_source(db, current_user.id, body)


@router.get("/", response_model=List[SourceRead])
def list_sources(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return source_service.list_sources(db, current_user.id)


@router.post("/{source_id}/test-connection", response_model=ConnectionRead)
def test_connection(
    source_id: int,
    credentials: CredentialsIn,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    adapter_factory=Depends(get_adapter_factory),
):
    source = _get_owned(db, current_user, source_id)
    with adapter_factory(source_service.require_exchange(source)) as adapter:
        try:
            ok = adapter.test_connection(credentials.to_credentials())
        except ExchangeAPIError as e:
            raise HTTPException(status_code=502, detail=str(e))
    return ConnectionRead(ok=ok)


@router.post("/{source_id}/balances", response_model=List[BalanceRead])
def get_balances(
    source_id: int,
    credentials: CredentialsIn,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    adapter_factory=Depends(get_adapter_factory),
):
    source = _get_owned(db, current_user, source_id)
    with adapter_factory(source_service.require_exchange(source)) as adapter:
        try:
            return adapter.sync_accounts(credentials.to_credentials())
        except ExchangeAuthError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ExchangeAPIError as e:
            raise HTTPException(status_code=502, detail=str(e))


@router.post("/{source_id}/sync", response_model=SyncRead)
def sync_source(
    source_id: int,
    body: SyncRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    adapter_factory=Depends(get_adapter_factory),
):
    source = _get_owned(db, current_user, source_id)
    with adapter_factory(source_service.require_exchange(source)) as adapter:
        try:
            report, pairs = source_service.sync_source(
                db, source, adapter, body.credentials.to_credentials(), body.start, body.end
            )
        except ExchangeAuthError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ExchangeAPIError as e:
            raise HTTPException(status_code=502, detail=str(e))

    return SyncRead(
        inserted=report.inserted,
        duplicates=report.duplicates,
        skipped_cash=report.skipped_cash,
        unpriced=report.unpriced,
        transfer_pairs=pairs,
    )
