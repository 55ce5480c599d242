"""
Suppression ledger shared by every engine process.

Records "an alert for dedup key K was delivered and must not fire again until
T". The ledger lives in the shared database, never in process memory, so all
evaluator instances agree on what was already sent.

Atomicity:
- try_acquire() first INSERTs relying on the unique dedup_key constraint.
  Concurrent inserts of the same key serialize in the database; exactly one
  commits.
- If the key exists, a single conditional UPDATE takes it over only when the
  existing record has expired. The WHERE clause is re-evaluated under the row
  lock, so two processes racing for an expired key cannot both win.

peek() is for diagnostics only. Gating on peek() would reintroduce a
check-then-act race.
"""

import hashlib
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from alert_engine.models import SuppressionRecord
from alert_engine.services.exceptions import TransientInfraError
from alert_engine.utils.logging_config import get_logger


logger = get_logger("services")


def compute_dedup_key(
    kind: str,
    budget_id: str,
    category_id: Optional[str],
    period_start: datetime,
    period_end: datetime,
    tier: int,
) -> str:
    """
    Deterministic identifier of "this condition, this period, this tier".

    Returns:
        64-character SHA-256 hex digest
    """
    tier_bucket = f"{period_start.isoformat()}/{period_end.isoformat()}/{tier}"
    material = "|".join([kind, budget_id, category_id or "-", tier_bucket])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def _is_transient(error: Exception) -> bool:
    if isinstance(error, OperationalError):
        return True
    return isinstance(error, DBAPIError) and bool(error.connection_invalidated)


class SuppressionLedger:
    """
    Atomic create-if-absent-with-TTL store for dedup keys.

    Each call opens its own short-lived session and commits immediately, so
    the acquire is visible to other processes regardless of the caller's
    transaction.

    Usage:
        >>> ledger = SuppressionLedger(SessionLocal)
        >>> ledger.try_acquire(key, timedelta(hours=12))
        True
        >>> ledger.try_acquire(key, timedelta(hours=12))
        False
    """

    MAX_RETRIES = 3
    INITIAL_BACKOFF = 0.1  # seconds
    BACKOFF_MULTIPLIER = 2

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize the ledger.

        Args:
            session_factory: Callable returning a new SQLAlchemy session
            clock: Returns the current naive-UTC time
        """
        self.session_factory = session_factory
        self.clock = clock

    def try_acquire(self, dedup_key: str, ttl: timedelta) -> bool:
        """
        Atomically create the record for dedup_key if no live record exists.

        Args:
            dedup_key: Key to acquire
            ttl: How long the key stays suppressed

        Returns:
            True if this caller won the key, False if it is already held

        Raises:
            TransientInfraError: If the database stays unreachable
        """
        acquired = self._with_retry(
            "try_acquire", lambda: self._try_acquire_once(dedup_key, ttl)
        )
        logger.debug(
            "Ledger acquire",
            extra={"dedup_key": dedup_key[:12], "acquired": acquired},
        )
        return acquired

    def _try_acquire_once(self, dedup_key: str, ttl: timedelta) -> bool:
        now = self.clock()
        expires_at = now + ttl
        with self.session_factory() as db:
            try:
                db.add(SuppressionRecord(
                    dedup_key=dedup_key,
                    delivered_at=now,
                    expires_at=expires_at,
                ))
                db.commit()
                return True
            except IntegrityError:
                db.rollback()

            # Key exists: take it over only if the record has expired
            result = db.execute(
                update(SuppressionRecord)
                .where(
                    SuppressionRecord.dedup_key == dedup_key,
                    SuppressionRecord.expires_at <= now,
                )
                .values(delivered_at=now, expires_at=expires_at)
            )
            db.commit()
            return result.rowcount == 1

    def peek(self, dedup_key: str) -> Optional[Dict[str, Any]]:
        """
        Diagnostic view of a ledger record.

        Never use this to decide whether to send; use try_acquire().
        """
        def _peek():
            with self.session_factory() as db:
                record = (
                    db.query(SuppressionRecord)
                    .filter(SuppressionRecord.dedup_key == dedup_key)
                    .first()
                )
                if record is None:
                    return None
                return {
                    "dedup_key": record.dedup_key,
                    "delivered_at": record.delivered_at,
                    "expires_at": record.expires_at,
                    "live": record.is_live(self.clock()),
                }

        return self._with_retry("peek", _peek)

    def purge_expired(self, older_than: Optional[datetime] = None) -> int:
        """
        Garbage-collect expired records.

        Args:
            older_than: Cutoff (default: now)

        Returns:
            Number of records deleted
        """
        cutoff = older_than or self.clock()

        def _purge():
            with self.session_factory() as db:
                result = db.execute(
                    delete(SuppressionRecord).where(SuppressionRecord.expires_at <= cutoff)
                )
                db.commit()
                return result.rowcount

        count = self._with_retry("purge_expired", _purge)
        if count:
            logger.info("Purged expired suppression records", extra={"count": count})
        return count

    def _with_retry(self, operation: str, func: Callable[[], Any]) -> Any:
        """Run func, retrying transient database errors with exponential backoff."""
        last_error: Optional[Exception] = None
        for attempt in range(self.MAX_RETRIES):
            try:
                return func()
            except DBAPIError as e:
                if not _is_transient(e):
                    raise
                last_error = e
                if attempt < self.MAX_RETRIES - 1:
                    backoff = self.INITIAL_BACKOFF * (self.BACKOFF_MULTIPLIER ** attempt)
                    logger.warning(
                        f"Ledger {operation} attempt {attempt + 1} failed, "
                        f"retrying in {backoff}s error={e}"
                    )
                    time.sleep(backoff)

        logger.error(
            f"Ledger {operation} failed after {self.MAX_RETRIES} attempts",
            extra={"operation": operation},
        )
        raise TransientInfraError(operation, self.MAX_RETRIES, last_error)
