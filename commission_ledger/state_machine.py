"""
Commission State Machine

All commission status changes go through this module, together with the
link/program rollup counters that must move with them.

    pending -> processed -> paid
    pending | processed -> refunded | duplicate | fraud | canceled
    refunded | duplicate | fraud | canceled -> pending

paid is terminal.
"""

import logging
from typing import Dict, FrozenSet, List

from sqlalchemy.orm import Session

from .db import CommissionRow, LinkRow, ProgramRow, utcnow
from .errors import ConflictError, InvalidStateTransitionError, NotFoundError
from .models import CommissionStatus

logger = logging.getLogger(__name__)


# =============================================================================
# STATUS DEFINITIONS
# =============================================================================

# Statuses that do not count toward link/program stats
INVALID_STATUSES: FrozenSet[CommissionStatus] = frozenset({
    CommissionStatus.DUPLICATE,
    CommissionStatus.FRAUD,
    CommissionStatus.CANCELED,
    CommissionStatus.REFUNDED,
})

# Statuses a commission may hold while attached to a payout
PAYOUT_LINKED_STATUSES: FrozenSet[CommissionStatus] = frozenset({
    CommissionStatus.PROCESSED,
    CommissionStatus.PAID,
})


# =============================================================================
# TRANSITION RULES
# =============================================================================

COMMISSION_TRANSITIONS: Dict[CommissionStatus, FrozenSet[CommissionStatus]] = {
    CommissionStatus.PENDING: frozenset({
        CommissionStatus.PROCESSED,
        CommissionStatus.REFUNDED,
        CommissionStatus.DUPLICATE,
        CommissionStatus.FRAUD,
        CommissionStatus.CANCELED,
    }),
    CommissionStatus.PROCESSED: frozenset({
        CommissionStatus.PENDING,
        CommissionStatus.PAID,
        CommissionStatus.REFUNDED,
        CommissionStatus.DUPLICATE,
        CommissionStatus.FRAUD,
        CommissionStatus.CANCELED,
    }),
    CommissionStatus.PAID: frozenset(),
    CommissionStatus.REFUNDED: frozenset({CommissionStatus.PENDING}),
    CommissionStatus.DUPLICATE: frozenset({CommissionStatus.PENDING}),
    CommissionStatus.FRAUD: frozenset({CommissionStatus.PENDING}),
    CommissionStatus.CANCELED: frozenset({CommissionStatus.PENDING}),
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def is_valid_status(status: CommissionStatus) -> bool:
    """A status counts toward stats unless it is duplicate, fraud, canceled or refunded."""
    return CommissionStatus(status) not in INVALID_STATUSES


def can_transition(current_status: CommissionStatus, new_status: CommissionStatus) -> bool:
    return CommissionStatus(new_status) in COMMISSION_TRANSITIONS.get(CommissionStatus(current_status), frozenset())


def get_allowed_transitions(current_status: CommissionStatus) -> List[CommissionStatus]:
    return sorted(COMMISSION_TRANSITIONS.get(CommissionStatus(current_status), frozenset()), key=lambda s: s.value)


def rollup_delta(source: CommissionStatus, target: CommissionStatus) -> int:
    """+1 when a commission starts counting toward stats, -1 when it stops, else 0."""
    was_valid = is_valid_status(source)
    is_valid = is_valid_status(target)
    if was_valid and not is_valid:
        return -1
    if not was_valid and is_valid:
        return 1
    return 0


def apply_rollup(db: Session, commission: CommissionRow, delta: int) -> None:
    """
    Move the link and program counters for one commission by ``delta``.

    This is the only place counter math happens. Updates are column
    expressions so concurrent writers never overwrite each other.
    """
    if delta == 0:
        return

    db.query(LinkRow).filter(LinkRow.id == commission.link_id).update(
        {
            LinkRow.sales: LinkRow.sales + delta,
            LinkRow.sale_amount: LinkRow.sale_amount + delta * commission.amount,
        },
        synchronize_session=False,
    )
    db.query(ProgramRow).filter(ProgramRow.id == commission.program_id).update(
        {ProgramRow.sales_usage: ProgramRow.sales_usage + delta * commission.amount},
        synchronize_session=False,
    )
    logger.debug(
        f"Rollup {delta:+d} applied for commission {commission.id} "
        f"(link {commission.link_id}, amount {commission.amount})"
    )


def load_commission(db: Session, commission_id: str, for_update: bool = True) -> CommissionRow:
    query = db.query(CommissionRow).filter(CommissionRow.id == commission_id)
    if for_update:
        query = query.with_for_update()
    commission = query.first()
    if not commission:
        raise NotFoundError(f"Commission {commission_id} not found")
    return commission


def validate_transition(commission: CommissionRow, target: CommissionStatus) -> None:
    """
    Precondition check for a caller-facing transition. Raises before any write.
    """
    current = CommissionStatus(commission.status)
    target = CommissionStatus(target)

    if current == CommissionStatus.PAID:
        raise InvalidStateTransitionError(
            f"Commission {commission.id} is paid and cannot change status",
            {"current_status": current.value, "target_status": target.value},
        )

    if current == target:
        return

    if not can_transition(current, target):
        raise InvalidStateTransitionError(
            f"Cannot transition commission {commission.id} from {current.value} to {target.value}",
            {
                "current_status": current.value,
                "target_status": target.value,
                "allowed": [s.value for s in get_allowed_transitions(current)],
            },
        )

    if target == CommissionStatus.PAID and commission.payout_id is None:
        raise InvalidStateTransitionError(
            f"Commission {commission.id} is not attached to a payout and cannot be paid"
        )

    if commission.payout_id is not None and target not in PAYOUT_LINKED_STATUSES:
        raise ConflictError(
            f"Commission {commission.id} is attached to payout {commission.payout_id}; "
            f"fail or cancel the payout first",
            {"payout_id": commission.payout_id},
        )


def write_status(db: Session, commission: CommissionRow, target: CommissionStatus) -> bool:
    """
    Write a status and its rollup side effect in the caller's transaction.

    Returns True when the rollup counters moved.
    """
    current = CommissionStatus(commission.status)
    target = CommissionStatus(target)
    if current == target:
        return False

    delta = rollup_delta(current, target)
    commission.status = target.value
    commission.updated_at = utcnow()
    db.flush()
    apply_rollup(db, commission, delta)
    return delta != 0


def transition_commission(db: Session, commission_id: str, target: CommissionStatus) -> CommissionRow:
    commission = load_commission(db, commission_id)
    try:
        validate_transition(commission, target)
    except (InvalidStateTransitionError, ConflictError) as e:
        logger.warning(f"Rejected transition of commission {commission_id} to {target}: {e}")
        raise

    source = commission.status
    if write_status(db, commission, target):
        logger.info(f"Commission {commission_id} {source} -> {CommissionStatus(target).value} (rollup adjusted)")
    else:
        logger.info(f"Commission {commission_id} {source} -> {CommissionStatus(target).value}")
    return commission


def validate_deletion(commission: CommissionRow) -> None:
    """Deletion is a move to a virtual terminal state, never from paid or while attached."""
    if CommissionStatus(commission.status) == CommissionStatus.PAID:
        raise InvalidStateTransitionError(f"Commission {commission.id} is paid and cannot be deleted")
    if commission.payout_id is not None:
        raise ConflictError(
            f"Commission {commission.id} is part of payout {commission.payout_id}; "
            f"remove it from the payout before deleting",
            {"payout_id": commission.payout_id},
        )
