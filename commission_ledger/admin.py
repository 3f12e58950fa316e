"""
Admin Correction Operations

Privileged mutations that bypass the caller-facing transition table but
still keep rollup counters and payout amounts consistent.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from .db import CommissionRow, CommissionSplitRow, PayoutRow
from .errors import InvalidStateTransitionError
from .models import Commission, CommissionStatus, PayoutStatus
from .payouts import RELEASING_STATUSES, load_payout, settle_payout
from .state_machine import (
    PAYOUT_LINKED_STATUSES,
    apply_rollup,
    is_valid_status,
    load_commission,
    validate_deletion,
    write_status,
)

logger = logging.getLogger(__name__)


def force_commission_status(
    db: Session,
    commission_id: str,
    target: CommissionStatus,
) -> tuple[CommissionRow, bool, Optional[str]]:
    """
    Returns the commission, whether rollups moved, and the payout it was
    detached from (if any).
    """
    target = CommissionStatus(target)
    commission = load_commission(db, commission_id)

    if CommissionStatus(commission.status) == CommissionStatus.PAID:
        raise InvalidStateTransitionError(f"Cannot change the status of paid commission {commission_id}")
    if target == CommissionStatus.PAID and commission.payout_id is None:
        raise InvalidStateTransitionError(
            f"Commission {commission_id} is not attached to a payout and cannot be paid"
        )

    detached_from = None
    if commission.payout_id is not None and target not in PAYOUT_LINKED_STATUSES:
        payout = load_payout(db, commission.payout_id)
        payout.amount = payout.amount - commission.earnings
        detached_from = payout.id
        commission.payout_id = None
        logger.info(f"Commission {commission_id} detached from payout {payout.id}, amount now {payout.amount}")

    rollup_applied = write_status(db, commission, target)
    db.flush()
    return commission, rollup_applied, detached_from


def delete_commission(db: Session, commission_id: str) -> tuple[Commission, bool]:
    commission = load_commission(db, commission_id)
    validate_deletion(commission)

    snapshot = Commission.model_validate(commission)
    rollback_applied = is_valid_status(CommissionStatus(commission.status))
    if rollback_applied:
        apply_rollup(db, commission, -1)

    db.query(CommissionSplitRow).filter(CommissionSplitRow.commission_id == commission_id).delete(
        synchronize_session=False
    )
    db.delete(commission)
    db.flush()
    return snapshot, rollback_applied


def force_payout_status(
    db: Session,
    payout_id: str,
    target: PayoutStatus,
    now: datetime,
    external_transfer_id: Optional[str] = None,
) -> PayoutRow:
    target = PayoutStatus(target)
    payout = load_payout(db, payout_id)
    current = PayoutStatus(payout.status)

    if current == PayoutStatus.COMPLETED and target != PayoutStatus.COMPLETED:
        raise InvalidStateTransitionError(f"Payout {payout_id} is completed and cannot change status")
    # Released payouts hold no commissions, there is nothing left to pay
    if current in RELEASING_STATUSES and target == PayoutStatus.COMPLETED:
        raise InvalidStateTransitionError(
            f"Payout {payout_id} is {current.value} and cannot be completed",
            {"current_status": current.value, "target_status": target.value},
        )
    if current == target:
        if external_transfer_id:
            payout.external_transfer_id = external_transfer_id
        return payout

    settle_payout(db, payout, target, now, external_transfer_id)
    return payout
