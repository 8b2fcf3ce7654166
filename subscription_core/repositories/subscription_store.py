"""Subscription store - per-user subscription state.

Holds at most one record per user. Absence of a record is the NONE state.
Every operation is serialized per user; different users never share a lock
(a short global lock only guards lock creation and the snapshot file).
"""

import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from pydantic import BaseModel, Field, ValidationError

from subscription_core.logging_config import get_logger
from subscription_core.models.subscription import SubscriptionRecord, SubscriptionState

logger = get_logger(__name__)

# Job ids only mean something to the running scheduler
SNAPSHOT_EXCLUDE = {"records": {"__all__": {"job_ids"}}}


class SubscriptionError(Exception):
    """Base exception for subscription eligibility errors."""

    pass


class AlreadySubscribedError(SubscriptionError):
    """Raised when a user with an active subscription tries to buy another one."""

    pass


class AlreadyPendingError(SubscriptionError):
    """Raised when an invoice is already outstanding for the user."""

    pass


class NotSubscribedError(SubscriptionError):
    """Raised when an operation requires an active subscription."""

    pass


class StoreUnavailableError(Exception):
    """Raised when subscription state cannot be persisted or loaded."""

    pass


class StoreSnapshot(BaseModel):
    """On-disk representation of the store."""

    records: List[SubscriptionRecord] = Field(default_factory=list)


class SubscriptionStore:
    """Storage for per-user subscription records.

    Records are kept in memory. When a snapshot path is given, every state
    change rewrites a JSON snapshot (write to temp file, then rename) before it
    is committed in memory, and the snapshot is loaded on construction.
    Scheduler job ids are process-local and never written to the snapshot;
    restore_schedules() recreates the jobs after a restart.

    Records returned by the store are copies; state only changes through the
    store's operations.
    """

    def __init__(self, snapshot_path: Optional[Path] = None):
        """Initialize subscription store.

        Args:
            snapshot_path: Optional JSON snapshot file for persistence

        Raises:
            StoreUnavailableError: If an existing snapshot cannot be read
        """
        self._records: Dict[str, SubscriptionRecord] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._snapshot_path = Path(snapshot_path) if snapshot_path else None
        self._snapshot_lock = threading.Lock()

        if self._snapshot_path is not None:
            self._load_snapshot()

    # Locking

    def _lock_for(self, user_id: str) -> threading.RLock:
        lock = self._locks.get(user_id)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(user_id, threading.RLock())
        return lock

    @contextmanager
    def user_lock(self, user_id: str) -> Iterator[None]:
        """Hold the user's lock across several store operations.

        The lock is re-entrant, so store operations may be called while it is
        held by the same thread.
        """
        _require_user(user_id)
        with self._lock_for(user_id):
            yield

    # Persistence

    def _load_snapshot(self) -> None:
        if not self._snapshot_path.exists():
            return
        try:
            raw = self._snapshot_path.read_text(encoding="utf-8")
            snapshot = StoreSnapshot.model_validate_json(raw) if raw.strip() else StoreSnapshot()
        except (OSError, ValidationError) as e:
            raise StoreUnavailableError(f"Cannot load store snapshot {self._snapshot_path}: {e}") from e

        self._records = {record.user_id: record for record in snapshot.records}
        logger.info("store_snapshot_loaded", path=str(self._snapshot_path), records=len(self._records))

    def _write_snapshot(self, records: List[SubscriptionRecord]) -> None:
        tmp_path = self._snapshot_path.with_name(self._snapshot_path.name + ".tmp")
        try:
            self._snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            payload = StoreSnapshot(records=records).model_dump_json(exclude=SNAPSHOT_EXCLUDE)
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, self._snapshot_path)
        except OSError as e:
            logger.error("store_snapshot_write_failed", path=str(self._snapshot_path), error=str(e))
            raise StoreUnavailableError(f"Cannot persist store snapshot: {e}") from e

    def _commit(self, user_id: str, record: Optional[SubscriptionRecord]) -> None:
        """Store (or delete, when record is None) a user's record."""
        if self._snapshot_path is None:
            if record is None:
                self._records.pop(user_id, None)
            else:
                self._records[user_id] = record
            return

        with self._snapshot_lock:
            candidate = dict(self._records)
            if record is None:
                candidate.pop(user_id, None)
            else:
                candidate[user_id] = record
            self._write_snapshot(list(candidate.values()))
            self._records = candidate

    def _current(self, user_id: str) -> Optional[SubscriptionRecord]:
        record = self._records.get(user_id)
        return record.model_copy(deep=True) if record is not None else None

    # Operations

    def get(self, user_id: str) -> SubscriptionRecord:
        """Get the user's subscription record.

        Never fails for a valid user id: absence is returned as a NONE record.

        Args:
            user_id: User identity

        Returns:
            Copy of the stored SubscriptionRecord, or a NONE record
        """
        with self.user_lock(user_id):
            record = self._current(user_id)
            return record if record is not None else SubscriptionRecord(user_id=user_id)

    def set_pending(
            self,
            user_id: str,
            invoice_id: str,
            tier_id: str,
            expires_at_millis: int,
    ) -> SubscriptionRecord:
        """Transition NONE -> PENDING with an open invoice.

        Raises:
            AlreadySubscribedError: If the user is ACTIVE
            AlreadyPendingError: If the user is already PENDING
            StoreUnavailableError: If the change cannot be persisted
        """
        with self.user_lock(user_id):
            current = self._current(user_id)
            if current is not None and current.state == SubscriptionState.ACTIVE:
                raise AlreadySubscribedError(f"User {user_id} already has an active subscription")
            if current is not None and current.state == SubscriptionState.PENDING:
                raise AlreadyPendingError(
                    f"User {user_id} already has an outstanding invoice {current.pending_invoice_id}"
                )

            record = SubscriptionRecord(
                user_id=user_id,
                pending_invoice_id=invoice_id,
                pending_tier_id=tier_id,
                pending_expiry_time_millis=expires_at_millis,
            )
            record.set_state(SubscriptionState.PENDING, reason=f"Invoice {invoice_id} created")
            self._commit(user_id, record)
            return record.model_copy(deep=True)

    def set_pending_renewal(
            self,
            user_id: str,
            invoice_id: str,
            tier_id: str,
            expires_at_millis: int,
    ) -> SubscriptionRecord:
        """Attach a renewal invoice to an ACTIVE subscription.

        The user stays ACTIVE; the invoice is tracked alongside the expiry.

        Raises:
            NotSubscribedError: If the user is not ACTIVE
            AlreadyPendingError: If a renewal invoice is already outstanding
            StoreUnavailableError: If the change cannot be persisted
        """
        with self.user_lock(user_id):
            record = self._current(user_id)
            if record is None or record.state != SubscriptionState.ACTIVE:
                raise NotSubscribedError(f"User {user_id} has no active subscription to renew")
            if record.has_pending_invoice:
                raise AlreadyPendingError(
                    f"User {user_id} already has an outstanding invoice {record.pending_invoice_id}"
                )

            record.pending_invoice_id = invoice_id
            record.pending_tier_id = tier_id
            record.pending_expiry_time_millis = expires_at_millis
            self._commit(user_id, record)

            logger.info(
                "renewal_invoice_attached",
                user_id=user_id,
                invoice_id=invoice_id,
                tier_id=tier_id,
            )
            return record.model_copy(deep=True)

    def activate(
            self,
            user_id: str,
            tier_id: str,
            invoice_id: str,
            expiry_time_millis: int,
            now_millis: int,
    ) -> SubscriptionRecord:
        """Transition to ACTIVE with the given expiry.

        Overwrites any pending invoice unconditionally: payment confirmation
        always wins. Outstanding job ids are kept; the caller replaces them.

        Raises:
            StoreUnavailableError: If the change cannot be persisted
        """
        with self.user_lock(user_id):
            record = self._current(user_id) or SubscriptionRecord(user_id=user_id)
            renewing = record.state == SubscriptionState.ACTIVE

            record.tier_id = tier_id
            record.invoice_id = invoice_id
            record.activated_time_millis = now_millis
            if renewing:
                record.renewal_count += 1
            record.clear_pending()
            record.set_expiry(expiry_time_millis, reason="renewal" if renewing else "activation")
            record.set_state(SubscriptionState.ACTIVE, reason=f"Invoice {invoice_id} paid")

            self._commit(user_id, record)
            return record.model_copy(deep=True)

    def clear(self, user_id: str) -> bool:
        """Transition to NONE. Idempotent.

        Returns:
            True if a record was removed, False if the user was already NONE

        Raises:
            StoreUnavailableError: If the change cannot be persisted
        """
        with self.user_lock(user_id):
            record = self._current(user_id)
            if record is None:
                return False
            self._commit(user_id, None)
            record.set_state(SubscriptionState.NONE, reason="cleared")
            return True

    def end_period(self, user_id: str) -> SubscriptionRecord:
        """End the paid period of an ACTIVE subscription.

        Without an open renewal invoice the user goes to NONE. With one, the
        user goes to PENDING on that invoice, so a payment arriving after the
        period ended still activates through the normal pending path.

        Returns:
            The resulting record (a NONE record when nothing is left)

        Raises:
            StoreUnavailableError: If the change cannot be persisted
        """
        with self.user_lock(user_id):
            current = self._current(user_id)
            if current is None or current.state != SubscriptionState.ACTIVE:
                return current or SubscriptionRecord(user_id=user_id)

            if not current.has_pending_invoice:
                self._commit(user_id, None)
                current.set_state(SubscriptionState.NONE, reason="Subscription period ended")
                return SubscriptionRecord(user_id=user_id)

            record = SubscriptionRecord(
                user_id=user_id,
                state=SubscriptionState.ACTIVE,
                renewal_count=current.renewal_count,
                pending_invoice_id=current.pending_invoice_id,
                pending_tier_id=current.pending_tier_id,
                pending_expiry_time_millis=current.pending_expiry_time_millis,
                job_ids=current.job_ids,
            )
            record.set_state(
                SubscriptionState.PENDING,
                reason=f"Subscription period ended, renewal invoice {current.pending_invoice_id} open",
            )
            self._commit(user_id, record)
            return record.model_copy(deep=True)

    def clear_pending(self, user_id: str, invoice_id: str) -> bool:
        """Drop an open invoice if it is still the outstanding one.

        A PENDING user returns to NONE; an ACTIVE user keeps the subscription
        and only loses the renewal invoice.

        Returns:
            True if the invoice was dropped, False if it no longer matched
        """
        with self.user_lock(user_id):
            record = self._current(user_id)
            if record is None or record.pending_invoice_id != invoice_id:
                return False

            if record.state == SubscriptionState.PENDING:
                self._commit(user_id, None)
                record.set_state(SubscriptionState.NONE, reason=f"Invoice {invoice_id} lapsed")
            else:
                record.clear_pending()
                self._commit(user_id, record)
                logger.info("renewal_invoice_dropped", user_id=user_id, invoice_id=invoice_id)
            return True

    def set_job_ids(self, user_id: str, job_ids: set[str]) -> None:
        """Record the user's outstanding scheduler job ids.

        In memory only: never touches the snapshot, so it cannot fail once the
        state change it follows has been committed. A no-op for NONE users.
        """
        with self.user_lock(user_id):
            record = self._current(user_id)
            if record is None or record.job_ids == job_ids:
                return
            record.job_ids = set(job_ids)
            with self._snapshot_lock:
                self._records[user_id] = record

    # Queries

    def all(self) -> List[SubscriptionRecord]:
        """Get copies of all stored (non-NONE) records."""
        return [record.model_copy(deep=True) for record in self._records.copy().values()]

    def get_with_pending_invoice(self) -> List[SubscriptionRecord]:
        """Get all records that carry an open invoice."""
        return [record for record in self.all() if record.has_pending_invoice]

    def count(self) -> int:
        return len(self._records)

    def count_by_state(self, state: SubscriptionState) -> int:
        return sum(1 for record in self._records.copy().values() if record.state == state)

    def get_statistics(self) -> Dict[str, int]:
        """Get store statistics.

        Returns:
            Dictionary with total, pending, active and pending_renewals counts
        """
        records = list(self._records.copy().values())
        return {
            "total": len(records),
            "pending": sum(1 for r in records if r.state == SubscriptionState.PENDING),
            "active": sum(1 for r in records if r.state == SubscriptionState.ACTIVE),
            "pending_renewals": sum(
                1 for r in records if r.state == SubscriptionState.ACTIVE and r.has_pending_invoice
            ),
        }

    def reset(self) -> None:
        """Remove all records.

        Warning: This removes all data, including the snapshot contents.
        """
        if self._snapshot_path is None:
            self._records = {}
            return
        with self._snapshot_lock:
            self._write_snapshot([])
            self._records = {}

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._records

    def __repr__(self) -> str:
        return f"SubscriptionStore(subscriptions={self.count()})"


def _require_user(user_id: str) -> None:
    if not user_id or not isinstance(user_id, str):
        raise ValueError("user_id must be a non-empty string")
