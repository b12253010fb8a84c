"""
cryptotax/services/source.py

Sources and exchange sync. A sync pulls RawTransactions from the adapter,
ingests them idempotently, then re-runs transfer matching so moves between the
user's own sources become self-transfers.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from cryptotax.models.source import Source
from cryptotax.schemas.source import SourceCreate
from cryptotax.services.exchanges.base import BaseExchangeAdapter, ExchangeCredentials
from cryptotax.services.ledger import IngestReport, ingest_raw_transactions
from cryptotax.services.transfer_matcher import match_transfers

logger = logging.getLogger(__name__)


def list_sources(db: Session, user_id: int) -> List[Source]:
    return db.query(Source).filter(Source.user_id == user_id).order_by(Source.id).all()


def get_source(db: Session, user_id: int, source_id: int) -> Source | None:
    return db.query(Source).filter(Source.id == source_id, Source.user_id == user_id).first()


def create_source(db: Session, user_id: int, data: SourceCreate) -> Source:
    source = Source(user_id=user_id, name=data.name, kind=data.kind, exchange=data.exchange)
    db.add(source)
    db.commit()
    db.refresh(source)
    logger.info(f"Created source id={source.id} kind={source.kind} exchange={source.exchange}")
    return source


def require_exchange(source: Source) -> str:
    if source.kind != "exchange" or not source.exchange:
        raise HTTPException(status_code=400, detail="Source is not a connected exchange.")
    return source.exchange


def sync_source(
    db: Session,
    source: Source,
    adapter: BaseExchangeAdapter,
    credentials: ExchangeCredentials,
    start: datetime,
    end: Optional[datetime] = None,
) -> tuple[IngestReport, int]:
    """Returns (ingest report, number of new self-transfer pairs)."""
    end = end or datetime.now(timezone.utc)
    if start >= end:
        raise HTTPException(status_code=400, detail="'start' must be before 'end'.")

    raws = adapter.sync_transactions(credentials, start, end)
    report = ingest_raw_transactions(db, source.user_id, source.id, raws)
    pairs = match_transfers(db, source.user_id)

    source.last_synced_at = datetime.now(timezone.utc)
    db.commit()
    return report, len(pairs)
