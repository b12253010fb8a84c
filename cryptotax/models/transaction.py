"""
cryptotax/models/transaction.py

Two tables:
1) Transaction   - one normalized ledger row (amount always positive, the
                   direction comes from 'type'). The autoincrement id doubles
                   as the ingestion sequence used to break same-timestamp ties.
2) LotSelection  - SpecificID instructions: which lots a disposal should draw
                   from, in order, and optionally how much from each.

Lots and disposal matches are NOT persisted; the lot matcher rebuilds them
from the Transaction rows on every read.
"""

from __future__ import annotations
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from cryptotax.constants import CATEGORY_UNCATEGORIZED
from cryptotax.database import Base, DecimalString, UTCDateTime

if TYPE_CHECKING:
    from cryptotax.models.user import User
    from cryptotax.models.source import Source


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ------------------------------------------------------------------------
# TRANSACTION
# ------------------------------------------------------------------------
class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("source_id", "external_id", name="uq_transactions_source_external"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    source_id: Mapped[Optional[int]] = mapped_column(ForeignKey("sources.id"), nullable=True)

    # Exchange trade id / ledger ref, used to make re-syncs idempotent
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    asset: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    amount: Mapped[Decimal] = mapped_column(DecimalString, nullable=False)
    value_usd: Mapped[Optional[Decimal]] = mapped_column(DecimalString, nullable=True)

    # 'fee' is in units of 'asset'; 'fee_usd' is the USD value of that fee
    fee: Mapped[Optional[Decimal]] = mapped_column(DecimalString, nullable=True)
    fee_usd: Mapped[Optional[Decimal]] = mapped_column(DecimalString, nullable=True)

    category: Mapped[str] = mapped_column(String(32), nullable=False, default=CATEGORY_UNCATEGORIZED)
    is_categorized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_priced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    description: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    user: Mapped[User] = relationship("User", back_populates="transactions")
    source: Mapped[Optional[Source]] = relationship("Source", back_populates="transactions")
    lot_selections: Mapped[List[LotSelection]] = relationship(
        "LotSelection",
        back_populates="disposal",
        cascade="all, delete-orphan",
        order_by="LotSelection.position",
        foreign_keys="LotSelection.disposal_transaction_id",
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, type={self.type}, asset={self.asset}, "
            f"amount={self.amount}, value_usd={self.value_usd}, date={self.date})>"
        )


# ------------------------------------------------------------------------
# LOT SELECTION (SpecificID)
# ------------------------------------------------------------------------
class LotSelection(Base):
    __tablename__ = "lot_selections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    disposal_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # The lot id is the acquisition transaction id. Not a foreign key: the lot
    # may have been deleted since, which the matcher reports as LotNotFound.
    lot_id: Mapped[int] = mapped_column(Integer, nullable=False)

    # None means "as much as the disposal still needs"
    quantity: Mapped[Optional[Decimal]] = mapped_column(DecimalString, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    disposal: Mapped[Transaction] = relationship(
        "Transaction", back_populates="lot_selections", foreign_keys=[disposal_transaction_id]
    )

    def __repr__(self) -> str:
        return f"<LotSelection(disposal={self.disposal_transaction_id}, lot={self.lot_id}, qty={self.quantity})>"
