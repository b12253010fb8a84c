"""
cryptotax/schemas/source.py

Sources (exchange / wallet / manual) plus the bodies of the connection test
and sync calls. API credentials travel in the request body only.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import field_validator, model_validator

from cryptotax.constants import SOURCE_KINDS, SUPPORTED_EXCHANGES
from cryptotax.schemas.common import CamelModel, force_utc
from cryptotax.services.exchanges.base import ExchangeCredentials


class SourceCreate(CamelModel):
    name: str
    kind: str = "manual"
    exchange: Optional[str] = None

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v not in SOURCE_KINDS:
            raise ValueError(f"Source kind must be one of {', '.join(SOURCE_KINDS)}.")
        return v

    @field_validator("exchange")
    @classmethod
    def validate_exchange(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.lower()
        if v not in SUPPORTED_EXCHANGES:
            raise ValueError(f"Exchange must be one of {', '.join(SUPPORTED_EXCHANGES)}.")
        return v

    @model_validator(mode="after")
    def exchange_required_for_exchange_kind(self):
        if self.kind == "exchange" and not self.exchange:
            raise ValueError("An exchange source needs 'exchange'.")
        return self


class SourceRead(CamelModel):
    id: int
    name: str
    kind: str
    exchange: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    created_at: datetime


class CredentialsIn(CamelModel):
    api_key: str
    api_secret: str
    passphrase: Optional[str] = None

    def to_credentials(self) -> ExchangeCredentials:
        return ExchangeCredentials(api_key=self.api_key, api_secret=self.api_secret, passphrase=self.passphrase)


class SyncRequest(CamelModel):
    credentials: CredentialsIn
    start: datetime
    end: Optional[datetime] = None

    @field_validator("start", "end")
    @classmethod
    def force_utc_bounds(cls, v: Optional[datetime]) -> Optional[datetime]:
        return force_utc(v)


class ConnectionRead(CamelModel):
    ok: bool


class BalanceRead(CamelModel):
    id: str
    currency: str
    balance: Decimal
    available: Decimal
    hold: Decimal


class SyncRead(CamelModel):
    inserted: int
    duplicates: int
    skipped_cash: int
    unpriced: int
    transfer_pairs: int
