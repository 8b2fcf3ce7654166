"""State change logging for subscriptions and expiration jobs.

Tracks transitions with before/after values for debugging and auditing.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from subscription_core.logging_config import get_logger

logger = get_logger(__name__)


def _iso(millis: Optional[int]) -> Optional[str]:
    if millis is None:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).isoformat()


def log_subscription_state_change(
    user_id: str,
    old_state: Any,
    new_state: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log subscription state change.

    Args:
        user_id: User identity
        old_state: Previous state value
        new_state: New state value
        reason: Reason for state change
        **extra_context: Additional context (tier_id, invoice_id, etc.)
    """
    logger.info(
        "subscription_state_changed",
        user_id=user_id,
        old_state=str(old_state),
        new_state=str(new_state),
        reason=reason,
        **extra_context,
    )


def log_expiry_change(
    user_id: str,
    old_expiry_millis: Optional[int],
    new_expiry_millis: int,
    reason: str,
    **extra_context: Any,
) -> None:
    """Log subscription expiry time change.

    Args:
        user_id: User identity
        old_expiry_millis: Previous expiry time, None on first activation
        new_expiry_millis: New expiry time
        reason: Reason for change (activation, renewal)
        **extra_context: Additional context
    """
    logger.info(
        "expiry_changed",
        user_id=user_id,
        old_expiry=_iso(old_expiry_millis),
        new_expiry=_iso(new_expiry_millis),
        reason=reason,
        **extra_context,
    )


def log_job_state_change(
    job_id: str,
    user_id: str,
    kind: Any,
    old_state: Any,
    new_state: Any,
    run_at_millis: Optional[int] = None,
    **extra_context: Any,
) -> None:
    """Log scheduled job transition (SCHEDULED -> FIRED / CANCELLED).

    Args:
        job_id: Scheduler job id
        user_id: User the job belongs to
        kind: Job kind
        old_state: Previous job state
        new_state: New job state
        run_at_millis: Target instant of the job
        **extra_context: Additional context
    """
    logger.info(
        "expiration_job_state_changed",
        job_id=job_id,
        user_id=user_id,
        kind=str(kind),
        old_state=str(old_state),
        new_state=str(new_state),
        run_at=_iso(run_at_millis),
        **extra_context,
    )
