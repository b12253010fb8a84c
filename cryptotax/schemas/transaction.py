"""
cryptotax/schemas/transaction.py

Request/response bodies for ledger rows, SpecificID lot selections and the
open-lot view. Quantities stay Decimal end to end (serialized as strings so
18-decimal amounts survive JSON); USD values are bounded to cents.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import field_validator

from cryptotax.constants import TRANSACTION_CATEGORIES, TRANSACTION_TYPES
from cryptotax.schemas.common import (
    CamelModel,
    force_utc,
    validate_asset_decimal,
    validate_usd_decimal,
)


def _check_type(v: Optional[str]) -> Optional[str]:
    if v is not None and v not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown transaction type '{v}'.")
    return v


def _check_category(v: Optional[str]) -> Optional[str]:
    if v is not None and v not in TRANSACTION_CATEGORIES:
        raise ValueError(f"Unknown category '{v}'.")
    return v


def _check_asset(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip().upper()
    if not v:
        raise ValueError("Asset cannot be empty.")
    return v


def _check_amount(v: Optional[Decimal]) -> Optional[Decimal]:
    if v is not None and v <= 0:
        raise ValueError("Amount must be positive; the direction comes from 'type'.")
    return validate_asset_decimal(v)


def _check_fee(v: Optional[Decimal]) -> Optional[Decimal]:
    if v is not None and v < 0:
        raise ValueError("Fee cannot be negative.")
    return validate_asset_decimal(v)


def _check_usd(v: Optional[Decimal]) -> Optional[Decimal]:
    if v is not None and v < 0:
        raise ValueError("USD values cannot be negative.")
    return validate_usd_decimal(v)


# -------------------------------------------------
# TRANSACTIONS
# -------------------------------------------------
class TransactionCreate(CamelModel):
    date: datetime
    type: str
    asset: str
    amount: Decimal
    value_usd: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    fee_usd: Optional[Decimal] = None
    category: str = "uncategorized"
    source_id: Optional[int] = None
    external_id: Optional[str] = None
    tx_hash: Optional[str] = None
    description: Optional[str] = None

    @field_validator("date")
    @classmethod
    def force_utc_date(cls, v: datetime) -> datetime:
        return force_utc(v)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        return _check_type(v)

    @field_validator("category")
    @classmethod
    def validate_category(cls, v: str) -> str:
        return _check_category(v)

    @field_validator("asset")
    @classmethod
    def upper_asset(cls, v: str) -> str:
        return _check_asset(v)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        return _check_amount(v)

    @field_validator("fee")
    @classmethod
    def validate_fee(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _check_fee(v)

    @field_validator("value_usd", "fee_usd")
    @classmethod
    def validate_usd_fields(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _check_usd(v)


class TransactionUpdate(CamelModel):
    """
    Partial update; only the fields present in the body are applied, with
    the same checks as TransactionCreate.
    """

    date: Optional[datetime] = None
    type: Optional[str] = None
    asset: Optional[str] = None
    amount: Optional[Decimal] = None
    value_usd: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    fee_usd: Optional[Decimal] = None
    category: Optional[str] = None
    tx_hash: Optional[str] = None
    description: Optional[str] = None

    @field_validator("date")
    @classmethod
    def force_utc_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return force_utc(v)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: Optional[str]) -> Optional[str]:
        return _check_type(v)

    @field_validator("category")
    @classmethod
    def validate_category(cls, v: Optional[str]) -> Optional[str]:
        return _check_category(v)

    @field_validator("asset")
    @classmethod
    def upper_asset(cls, v: Optional[str]) -> Optional[str]:
        return _check_asset(v)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _check_amount(v)

    @field_validator("fee")
    @classmethod
    def validate_fee(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _check_fee(v)

    @field_validator("value_usd", "fee_usd")
    @classmethod
    def validate_usd_fields(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _check_usd(v)


class TransactionRead(CamelModel):
    id: int
    user_id: int
    source_id: Optional[int] = None
    external_id: Optional[str] = None
    tx_hash: Optional[str] = None
    date: datetime
    type: str
    asset: str
    amount: Decimal
    value_usd: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    fee_usd: Optional[Decimal] = None
    category: str
    is_categorized: bool
    is_priced: bool
    needs_review: bool
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# -------------------------------------------------
# SPECIFIC ID
# -------------------------------------------------
class LotSelectionItem(CamelModel):
    lot_id: int
    quantity: Optional[Decimal] = None

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v <= 0:
            raise ValueError("Selected quantity must be positive.")
        return validate_asset_decimal(v)


class LotSelectionsUpdate(CamelModel):
    selections: List[LotSelectionItem]


class LotSelectionRead(CamelModel):
    lot_id: int
    quantity: Optional[Decimal] = None
    position: int


# -------------------------------------------------
# OPEN LOTS
# -------------------------------------------------
class LotRead(CamelModel):
    id: int
    asset: str
    opened_at: datetime
    quantity: Decimal
    quantity_remaining: Decimal
    cost_basis_usd_per_unit: float
    cost_basis_remaining_usd: float
    source_transaction_id: int
