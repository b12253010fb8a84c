"""
cryptotax/schemas/summary.py

Read-API payloads for the tax summary and the P&L history. USD figures go out
as JSON numbers (already rounded to cents by the aggregator).
"""

from typing import List, Optional

from cryptotax.schemas.common import CamelModel
from cryptotax.services.aggregator import PnlHistory, Summary


class TransactionSummaryRead(CamelModel):
    total_gains: float
    total_losses: float
    net_gain_loss: float
    estimated_tax: float
    short_term_gains: float
    short_term_losses: float
    long_term_gains: float
    long_term_losses: float
    transaction_count: int
    taxable_events_count: int
    tax_year: int
    method: str
    warnings: List[str] = []

    @classmethod
    def from_summary(cls, summary: Summary) -> "TransactionSummaryRead":
        return cls(
            total_gains=float(summary.total_gains),
            total_losses=float(summary.total_losses),
            net_gain_loss=float(summary.net_gain_loss),
            estimated_tax=float(summary.estimated_tax),
            short_term_gains=float(summary.short_term_gains),
            short_term_losses=float(summary.short_term_losses),
            long_term_gains=float(summary.long_term_gains),
            long_term_losses=float(summary.long_term_losses),
            transaction_count=summary.transaction_count,
            taxable_events_count=summary.taxable_events_count,
            tax_year=summary.tax_year,
            method=summary.method.value,
            warnings=list(summary.warnings),
        )


class PnlPointRead(CamelModel):
    date: str
    pnl: float
    cumulative_pnl: float


class PnlHistoryRead(CamelModel):
    data_points: List[PnlPointRead]
    total_pnl: float
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    tax_year: int
    method: str

    @classmethod
    def from_history(cls, history: PnlHistory) -> "PnlHistoryRead":
        return cls(
            data_points=[
                PnlPointRead(date=p.date.isoformat(), pnl=float(p.pnl), cumulative_pnl=float(p.cumulative_pnl))
                for p in history.data_points
            ],
            total_pnl=float(history.total_pnl),
            start_date=history.start_date.isoformat() if history.start_date else None,
            end_date=history.end_date.isoformat() if history.end_date else None,
            tax_year=history.tax_year,
            method=history.method.value,
        )


class RecomputeRead(CamelModel):
    method: str
    needs_review_ids: List[int]
    transfer_pairs: List[List[int]]


class PricingRead(CamelModel):
    priced: int
    unknown: int
