"""
cryptotax/services/gains.py

Glue between the database and the pure engines:

  load_ledger -> LotMatcher (one task per asset, in a thread pool)
              -> aggregator.summarize / aggregator.pnl_history

Each (user, asset) stream is matched sequentially inside its own task; the
assets run in parallel. Results are cached per (user_id, asset, method) along
with a fingerprint of the ledger rows and SpecificID selections they were built
from, so an unchanged ledger is not re-matched and any edit simply misses the
cache. Overlapping recomputes for the same key store the same deterministic
result; whichever finishes last is kept.

Nothing here writes to the database except flag_needs_review().
"""

import hashlib
import logging
import os
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from cryptotax.models.transaction import LotSelection as LotSelectionRow, Transaction
from cryptotax.models.user import User
from cryptotax.services.aggregator import (
    PnlHistory,
    Summary,
    ZeroTaxEstimator,
    pnl_history as build_pnl_history,
    summarize,
)
from cryptotax.services.ledger import load_ledger
from cryptotax.services.lot_matcher import (
    DisposalMatch,
    LedgerTransaction,
    Lot,
    LotMatcher,
    LotSelection,
    MatchResult,
    TaxMethod,
)
from cryptotax.services.tax_tables import BracketTaxEstimator, TaxTableError

logger = logging.getLogger(__name__)

MATCHER_MAX_WORKERS = int(os.getenv("MATCHER_MAX_WORKERS", "4"))

_executor = ThreadPoolExecutor(max_workers=MATCHER_MAX_WORKERS, thread_name_prefix="lot-matcher")

CacheKey = Tuple[int, str, TaxMethod]


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------
def ledger_fingerprint(
    transactions: Sequence[LedgerTransaction],
    selections: Optional[Dict[int, List[LotSelection]]] = None,
) -> str:
    digest = hashlib.sha256()
    for tx in transactions:
        digest.update(repr((
            tx.id, tx.date.isoformat(), tx.type, str(tx.amount),
            str(tx.value_usd), str(tx.fee_usd), tx.category,
        )).encode("utf-8"))
    for disposal_id in sorted(selections or {}):
        for sel in selections[disposal_id]:
            digest.update(repr((disposal_id, sel.lot_id, str(sel.quantity))).encode("utf-8"))
    return digest.hexdigest()


class MatchResultCache:
    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[CacheKey, Tuple[str, MatchResult]] = {}

    def get(self, key: CacheKey, fingerprint: str) -> Optional[MatchResult]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None or entry[0] != fingerprint:
            return None
        return entry[1]

    def put(self, key: CacheKey, fingerprint: str, result: MatchResult) -> None:
        with self._lock:
            self._entries[key] = (fingerprint, result)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


match_cache = MatchResultCache()


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------
def load_lot_selections(db: Session, user_id: int) -> Dict[int, List[LotSelection]]:
    rows = (
        db.query(LotSelectionRow)
        .join(Transaction, Transaction.id == LotSelectionRow.disposal_transaction_id)
        .filter(Transaction.user_id == user_id)
        .order_by(LotSelectionRow.disposal_transaction_id, LotSelectionRow.position, LotSelectionRow.id)
        .all()
    )
    selections: Dict[int, List[LotSelection]] = defaultdict(list)
    for row in rows:
        selections[row.disposal_transaction_id].append(LotSelection(lot_id=row.lot_id, quantity=row.quantity))
    return dict(selections)


def compute_matches(
    db: Session,
    user_id: int,
    method,
    asset: Optional[str] = None,
    cache: Optional[MatchResultCache] = None,
) -> Dict[str, MatchResult]:
    """Recompute (or reuse) the MatchResult of every asset the user holds."""
    method = TaxMethod.parse(method)
    cache = cache if cache is not None else match_cache
    streams = load_ledger(db, user_id, asset)
    selections = load_lot_selections(db, user_id) if method is TaxMethod.SPECIFIC_ID else {}

    results: Dict[str, MatchResult] = {}
    pending = {}
    for asset_name, transactions in streams.items():
        asset_selections = {tx.id: selections[tx.id] for tx in transactions if tx.id in selections}
        fingerprint = ledger_fingerprint(transactions, asset_selections)
        key = (user_id, asset_name, method)

        cached = cache.get(key, fingerprint)
        if cached is not None:
            results[asset_name] = cached
            continue

        matcher = LotMatcher(method, asset_selections)
        pending[asset_name] = (key, fingerprint, _executor.submit(matcher.match, user_id, asset_name, transactions))

    for asset_name, (key, fingerprint, future) in pending.items():
        result = future.result()
        cache.put(key, fingerprint, result)
        results[asset_name] = result

    logger.debug(
        f"compute_matches user={user_id} method={method.value}: "
        f"{len(results)} assets, {len(pending)} recomputed"
    )
    return dict(sorted(results.items()))


def collect_matches(results: Dict[str, MatchResult]) -> List[DisposalMatch]:
    return [m for result in results.values() for m in result.matches]


def collect_warnings(results: Dict[str, MatchResult]) -> List[str]:
    warnings = []
    for asset_name, result in results.items():
        for issue in result.issues:
            warnings.append(f"{asset_name}: [{issue.code}] {issue}")
    return warnings


# ---------------------------------------------------------------------------
# Read API payloads
# ---------------------------------------------------------------------------
def _estimator_for(user: User, tax_year: int, warnings: List[str]):
    try:
        return BracketTaxEstimator.for_filer(tax_year, user.filing_status, user.ordinary_income_usd)
    except TaxTableError as e:
        logger.warning(f"No tax estimate for user={user.id} year={tax_year}: {e}")
        warnings.append(f"estimatedTax unavailable: {e}")
        return ZeroTaxEstimator()


def count_transactions_in_year(db: Session, user_id: int, tax_year: int) -> int:
    dates = db.query(Transaction.date).filter(Transaction.user_id == user_id).all()
    return sum(1 for (d,) in dates if d.year == tax_year)


def transaction_summary(db: Session, user: User, tax_year: int, method) -> Summary:
    results = compute_matches(db, user.id, method)
    warnings = collect_warnings(results)
    estimator = _estimator_for(user, tax_year, warnings)
    return summarize(
        collect_matches(results),
        tax_year,
        method=method,
        estimator=estimator,
        transaction_count=count_transactions_in_year(db, user.id, tax_year),
        warnings=warnings,
    )


def pnl_history(db: Session, user_id: int, tax_year: int, method) -> PnlHistory:
    results = compute_matches(db, user_id, method)
    return build_pnl_history(collect_matches(results), tax_year, method)


def open_lots(db: Session, user_id: int, method, asset: Optional[str] = None) -> List[Lot]:
    results = compute_matches(db, user_id, method, asset=asset)
    lots = [lot for result in results.values() for lot in result.open_lots]
    return sorted(lots, key=lambda lot: (lot.asset, lot.opened_at, lot.sequence))


def flag_needs_review(db: Session, user_id: int, method) -> List[int]:
    """
    Persist needs_review from a fresh match: flagged rows are set, every
    other row of the user is cleared.
    """
    results = compute_matches(db, user_id, method)
    flagged = set()
    for result in results.values():
        flagged.update(result.needs_review_ids)

    for tx in db.query(Transaction).filter(Transaction.user_id == user_id):
        tx.needs_review = tx.id in flagged
    db.commit()
    logger.info(f"flag_needs_review user={user_id}: {len(flagged)} transactions need review")
    return sorted(flagged)
