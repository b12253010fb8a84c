"""
cryptotax/schemas/user.py

Pydantic schemas for registration, the current-user view and the tax profile.
The raw password is only ever accepted on input; hashing happens in the model.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, field_validator

from cryptotax.constants import FILING_STATUSES
from cryptotax.models.user import BCRYPT_MAX_PASSWORD_BYTES
from cryptotax.schemas.common import CamelModel, validate_usd_decimal
from cryptotax.services.lot_matcher import TaxMethod


class UserCreate(BaseModel):
    username: str
    password: str

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Username cannot be empty.")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if not v:
            raise ValueError("Password cannot be empty.")
        if len(v.encode("utf-8")) > BCRYPT_MAX_PASSWORD_BYTES:
            raise ValueError(f"Password cannot exceed {BCRYPT_MAX_PASSWORD_BYTES} bytes.")
        return v


class LoginRequest(BaseModel):
    username: str
    password: str


class TaxProfileUpdate(CamelModel):
    filing_status: Optional[str] = None
    ordinary_income_usd: Optional[Decimal] = None
    default_tax_method: Optional[str] = None

    @field_validator("filing_status")
    @classmethod
    def validate_filing_status(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower().replace("_", "-")
        if v not in FILING_STATUSES:
            raise ValueError(f"Filing status must be one of {', '.join(FILING_STATUSES)}.")
        return v

    @field_validator("ordinary_income_usd")
    @classmethod
    def validate_income(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v < 0:
            raise ValueError("Ordinary income cannot be negative.")
        return validate_usd_decimal(v)

    @field_validator("default_tax_method")
    @classmethod
    def validate_method(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return TaxMethod.parse(v).value


class UserRead(CamelModel):
    id: int
    username: str
    filing_status: str
    ordinary_income_usd: float
    default_tax_method: str
    created_at: datetime
