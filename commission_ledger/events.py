"""
Post-commit collaborators: the audit-event sink and the claim notifier.

Both are called only after the ledger transaction has committed. A failure
in either is logged and swallowed; it never fails the ledger operation.
"""

import logging
from typing import Callable

from .models import AuditEvent, ClaimResult

logger = logging.getLogger(__name__)


class AuditSink:
    def emit(self, event: AuditEvent) -> None:
        logger.info(
            f"ADMIN_AUDIT: {event.actor or 'system'} {event.action} {event.subject_id}",
            extra={"audit": event.model_dump(mode="json")},
        )


class NotificationDispatcher:
    def commissions_claimed(self, user_id: str, phone_number: str, result: ClaimResult) -> None:
        logger.info(
            f"Claim confirmation for user {user_id} ({phone_number}): "
            f"{result.claimed_count} splits, {result.claimed_earnings} earnings"
        )


def fire_and_forget(description: str, callback: Callable[[], None]) -> bool:
    try:
        callback()
        return True
    except Exception:
        logger.exception(f"Post-commit side effect failed: {description}")
        return False
