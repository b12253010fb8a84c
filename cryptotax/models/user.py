"""
cryptotax/models/user.py

A user of the tax engine. Each user owns Sources and Transactions and carries
the tax profile used by the bracket estimator (filing status, ordinary income)
plus the default lot-selection method.
"""

from __future__ import annotations
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, TYPE_CHECKING

import bcrypt
from sqlalchemy import Integer, String
from sqlalchemy.orm import relationship, Mapped, mapped_column

from cryptotax.constants import FILING_SINGLE
from cryptotax.database import Base, DecimalString, UTCDateTime

if TYPE_CHECKING:
    from cryptotax.models.source import Source
    from cryptotax.models.transaction import Transaction

# bcrypt only looks at the first 72 bytes
BCRYPT_MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> str:
    raw = password.encode("utf-8")
    if len(raw) > BCRYPT_MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {BCRYPT_MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


class User(Base):
    """Login identity (username + bcrypt hash) plus the tax profile."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    filing_status: Mapped[str] = mapped_column(String(32), nullable=False, default=FILING_SINGLE)
    ordinary_income_usd: Mapped[Decimal] = mapped_column(
        DecimalString, nullable=False, default=Decimal("0")
    )
    default_tax_method: Mapped[str] = mapped_column(String(16), nullable=False, default="FIFO")

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=lambda: datetime.now(timezone.utc), nullable=False
    )

    sources: Mapped[List[Source]] = relationship(
        "Source", back_populates="user", cascade="all, delete-orphan"
    )
    transactions: Mapped[List[Transaction]] = relationship(
        "Transaction", back_populates="user", cascade="all, delete-orphan"
    )

    def set_password(self, password: str) -> None:
        self.password_hash = hash_password(password)

    def verify_password(self, password: str) -> bool:
        raw = password.encode("utf-8")
        if len(raw) > BCRYPT_MAX_PASSWORD_BYTES:
            return False
        return bcrypt.checkpw(raw, self.password_hash.encode("utf-8"))

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username})>"
