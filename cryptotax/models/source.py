"""
cryptotax/models/source.py

A Source is where transactions come from: a connected exchange, an on-chain
wallet, or manual entry. Transfer matching requires the two legs of a transfer
to come from different sources.
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import ForeignKey, Integer, String
from sqlalchemy.orm import relationship, Mapped, mapped_column

from cryptotax.database import Base, UTCDateTime

if TYPE_CHECKING:
    from cryptotax.models.user import User
    from cryptotax.models.transaction import Transaction


class Source(Base):
    __tablename__ = "sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # 'exchange', 'wallet' or 'manual'
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="manual")

    # 'binance' / 'kraken' for kind='exchange'
    exchange: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    last_synced_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=lambda: datetime.now(timezone.utc), nullable=False
    )

    user: Mapped[User] = relationship("User", back_populates="sources")
    transactions: Mapped[List[Transaction]] = relationship(
        "Transaction", back_populates="source"
    )

    def __repr__(self) -> str:
        return f"<Source(id={self.id}, name={self.name}, kind={self.kind}, exchange={self.exchange})>"
