"""
Payout Aggregator

Builds payouts from cleared (processed, unallocated) commissions and settles
them. A payout's amount always equals the summed earnings of the commissions
pointing at it, and a commission points at a payout only while that payout
is pending, processing or completed.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from .balances import available_filter, month_bounds
from .db import CommissionRow, PartnerRow, PayoutRow, ProgramEnrollmentRow, ProgramRow
from .errors import (
    ConflictError,
    InvalidPayoutAmountError,
    InvalidStateTransitionError,
    LedgerValidationError,
    MissingProgramError,
    NotFoundError,
)
from .ids import create_id
from .models import ByProgram, ByWorkspace, CommissionStatus, PayoutStatus, Scope
from .scopes import payout_scope_filter

logger = logging.getLogger(__name__)


PAYOUT_TRANSITIONS: Dict[PayoutStatus, FrozenSet[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({
        PayoutStatus.PROCESSING,
        PayoutStatus.COMPLETED,
        PayoutStatus.FAILED,
        PayoutStatus.CANCELED,
    }),
    PayoutStatus.PROCESSING: frozenset({
        PayoutStatus.COMPLETED,
        PayoutStatus.FAILED,
        PayoutStatus.CANCELED,
    }),
    PayoutStatus.COMPLETED: frozenset(),
    PayoutStatus.FAILED: frozenset(),
    PayoutStatus.CANCELED: frozenset(),
}

RELEASING_STATUSES = frozenset({PayoutStatus.FAILED, PayoutStatus.CANCELED})


def load_payout(db: Session, payout_id: str) -> PayoutRow:
    payout = db.query(PayoutRow).filter(PayoutRow.id == payout_id).with_for_update().first()
    if not payout:
        raise NotFoundError(f"Payout {payout_id} not found")
    return payout


def _attach(db: Session, commission_ids: list[str], payout_id: str) -> None:
    """
    Point commissions at a payout with one compare-and-set update.

    Any row that changed underneath us (already allocated, no longer
    processed) makes the whole allocation fail and roll back.
    """
    updated = (
        db.query(CommissionRow)
        .filter(
            CommissionRow.id.in_(commission_ids),
            CommissionRow.status == CommissionStatus.PROCESSED.value,
            CommissionRow.payout_id.is_(None),
        )
        .update({CommissionRow.payout_id: payout_id}, synchronize_session=False)
    )
    if updated != len(commission_ids):
        raise ConflictError(
            f"Commissions changed while allocating payout {payout_id}",
            {"expected": len(commission_ids), "updated": updated},
        )


def create_payout(
    db: Session,
    partner_id: str,
    commission_ids: list[str],
    now: datetime,
    currency: str,
    description: Optional[str] = None,
    program_id: Optional[str] = None,
    actor: Optional[str] = None,
) -> PayoutRow:
    if not commission_ids or any(not cid or not cid.strip() for cid in commission_ids):
        raise LedgerValidationError("commission_ids must be a non-empty list of ids")
    if not db.query(PartnerRow.id).filter(PartnerRow.id == partner_id).first():
        raise NotFoundError(f"Partner {partner_id} not found")

    # Rows not matching all three filters are dropped, not rejected
    commissions = (
        db.query(CommissionRow)
        .filter(
            CommissionRow.id.in_(set(commission_ids)),
            CommissionRow.partner_id == partner_id,
            CommissionRow.status == CommissionStatus.PROCESSED.value,
            CommissionRow.payout_id.is_(None),
        )
        .order_by(CommissionRow.created_at, CommissionRow.id)
        .all()
    )

    total_amount = sum(c.earnings for c in commissions)
    if total_amount <= 0:
        raise InvalidPayoutAmountError(
            "Cannot create a payout with zero or negative amount",
            {"eligible_commissions": len(commissions)},
        )

    resolved_program_id = program_id or commissions[0].program_id
    if not db.query(ProgramRow.id).filter(ProgramRow.id == resolved_program_id).first():
        raise MissingProgramError(f"No valid program could be determined ({resolved_program_id})")

    payout = PayoutRow(
        id=create_id("po_"),
        program_id=resolved_program_id,
        partner_id=partner_id,
        amount=total_amount,
        currency=currency,
        status=PayoutStatus.PENDING.value,
        description=description or (f"Admin initiated payout by {actor}" if actor else "Ad hoc payout"),
        period_start=now,
        period_end=now,
        created_at=now,
    )
    db.add(payout)
    db.flush()
    _attach(db, [c.id for c in commissions], payout.id)

    logger.info(
        f"Payout {payout.id} created for partner {partner_id}: "
        f"{len(commissions)} commissions, amount {total_amount}"
    )
    return payout


def settle_payout(
    db: Session,
    payout: PayoutRow,
    target: PayoutStatus,
    now: datetime,
    external_transfer_id: Optional[str] = None,
) -> None:
    """
    Write a payout status and cascade it to the linked commissions.

    Releasing (failed/canceled) returns processed commissions to pending.
    A payout that already has paid commissions cannot be released.
    """
    target = PayoutStatus(target)
    linked = db.query(CommissionRow).filter(CommissionRow.payout_id == payout.id)

    if target in RELEASING_STATUSES:
        paid_count = linked.filter(CommissionRow.status == CommissionStatus.PAID.value).count()
        if paid_count:
            raise ConflictError(
                f"Payout {payout.id} has {paid_count} paid commissions and cannot be {target.value}",
                {"payout_id": payout.id, "paid_commissions": paid_count},
            )

    payout.status = target.value
    if external_transfer_id:
        payout.external_transfer_id = external_transfer_id

    if target == PayoutStatus.COMPLETED:
        payout.paid_at = now
        paid = linked.update(
            {CommissionRow.status: CommissionStatus.PAID.value, CommissionRow.updated_at: now},
            synchronize_session=False,
        )
        logger.info(f"Payout {payout.id} completed, {paid} commissions marked paid")
    elif target in RELEASING_STATUSES:
        released = linked.filter(CommissionRow.status == CommissionStatus.PROCESSED.value).update(
            {
                CommissionRow.status: CommissionStatus.PENDING.value,
                CommissionRow.payout_id: None,
                CommissionRow.updated_at: now,
            },
            synchronize_session=False,
        )
        logger.info(
            f"Payout {payout.id} {target.value}, {released} commissions released "
            f"(amount {payout.amount} -> 0)"
        )
        payout.amount = 0
    db.flush()


def validate_payout_transition(payout: PayoutRow, target: PayoutStatus) -> bool:
    """Returns False for a same-status no-op, raises on an illegal move."""
    current = PayoutStatus(payout.status)
    target = PayoutStatus(target)
    terminal = not PAYOUT_TRANSITIONS[current]

    if current == target and not terminal:
        return False
    if target not in PAYOUT_TRANSITIONS[current]:
        raise InvalidStateTransitionError(
            f"Cannot transition payout {payout.id} from {current.value} to {target.value}",
            {"current_status": current.value, "target_status": target.value},
        )
    return True


def transition_payout(
    db: Session,
    payout_id: str,
    target: PayoutStatus,
    now: datetime,
    external_transfer_id: Optional[str] = None,
) -> PayoutRow:
    payout = load_payout(db, payout_id)
    try:
        changed = validate_payout_transition(payout, target)
    except InvalidStateTransitionError as e:
        logger.warning(f"Rejected payout transition: {e}")
        raise
    if changed:
        settle_payout(db, payout, target, now, external_transfer_id)
    return payout


def ensure_default_partner(db: Session, program_id: str, email_domain: str) -> PartnerRow:
    """
    Partner that receives withdrawals for a program.

    Uses the oldest approved enrollment; otherwise provisions a system
    partner and enrolls it. Safe to call repeatedly.
    """
    program = db.query(ProgramRow).filter(ProgramRow.id == program_id).first()
    if not program:
        raise MissingProgramError(f"Program {program_id} not found")

    enrollment = (
        db.query(ProgramEnrollmentRow)
        .filter(
            ProgramEnrollmentRow.program_id == program_id,
            ProgramEnrollmentRow.status == "approved",
        )
        .order_by(ProgramEnrollmentRow.created_at, ProgramEnrollmentRow.id)
        .first()
    )
    if enrollment:
        return db.query(PartnerRow).filter(PartnerRow.id == enrollment.partner_id).one()

    email = f"system-partner-{program.workspace_id}@{email_domain}"
    partner = db.query(PartnerRow).filter(PartnerRow.email == email).first()
    if not partner:
        partner = PartnerRow(id=create_id("pn_"), name="System Partner", email=email)
        db.add(partner)
        db.flush()
        logger.info(f"Provisioned system partner {partner.id} for workspace {program.workspace_id}")

    db.add(ProgramEnrollmentRow(
        id=create_id("pge_"),
        program_id=program_id,
        partner_id=partner.id,
        status="approved",
    ))
    db.flush()
    logger.info(f"Enrolled partner {partner.id} in program {program_id}")
    return partner


def resolve_withdraw_program(db: Session, scope: Scope, program_id: Optional[str] = None) -> str:
    if not isinstance(scope, (ByWorkspace, ByProgram)):
        raise LedgerValidationError("Withdrawals are scoped to a workspace or a program")

    if program_id is None and isinstance(scope, ByProgram):
        program_id = scope.program_id

    if program_id is not None:
        program = db.query(ProgramRow).filter(ProgramRow.id == program_id).first()
        if not program:
            raise MissingProgramError(f"Program {program_id} not found")
        if isinstance(scope, ByWorkspace) and program.workspace_id != scope.workspace_id:
            raise MissingProgramError(f"Program {program_id} does not belong to workspace {scope.workspace_id}")
        return program.id

    program = (
        db.query(ProgramRow)
        .filter(ProgramRow.workspace_id == scope.workspace_id)
        .order_by(ProgramRow.created_at, ProgramRow.id)
        .first()
    )
    if not program:
        raise MissingProgramError(f"No program found for workspace {scope.workspace_id}")
    return program.id


def withdrawal_filter(scope: Scope, program_id: Optional[str] = None) -> ColumnElement:
    clause = available_filter(scope)
    if program_id is not None:
        clause = and_(clause, CommissionRow.program_id == program_id)
    return clause


def check_withdrawal_amount(db: Session, scope: Scope, amount: int, program_id: Optional[str] = None) -> int:
    if amount <= 0:
        raise LedgerValidationError("Withdrawal amount must be positive")

    eligible = db.query(CommissionRow.earnings).filter(withdrawal_filter(scope, program_id)).all()
    available = sum(e for (e,) in eligible)
    if amount > available:
        raise InvalidPayoutAmountError(
            "Withdrawal amount exceeds available balance",
            {"requested": amount, "available_amount": available},
        )
    return available


def withdraw(
    db: Session,
    scope: Scope,
    amount: int,
    program_id: str,
    partner_id: str,
    now: datetime,
    tz,
    currency: str,
    description: Optional[str] = None,
    restrict_to_program: bool = False,
) -> PayoutRow:
    """
    Allocate cleared commissions, oldest first, until they cover ``amount``.

    Commissions are indivisible so the payout may exceed the request by less
    than one commission's earnings; the payout amount is always the sum of
    what was allocated.
    """
    eligible_program = program_id if restrict_to_program else None
    check_withdrawal_amount(db, scope, amount, eligible_program)

    if not db.query(PartnerRow.id).filter(PartnerRow.id == partner_id).first():
        raise NotFoundError(f"Partner {partner_id} not found")

    eligible = (
        db.query(CommissionRow)
        .filter(withdrawal_filter(scope, eligible_program))
        .order_by(CommissionRow.created_at, CommissionRow.id)
        .all()
    )

    allocated: list[CommissionRow] = []
    running = 0
    for commission in eligible:
        if running >= amount:
            break
        allocated.append(commission)
        running += commission.earnings

    period_start, period_end = month_bounds(now, tz)
    payout = PayoutRow(
        id=create_id("po_"),
        program_id=program_id,
        partner_id=partner_id,
        amount=running,
        currency=currency,
        status=PayoutStatus.PENDING.value,
        description=description or f"Withdrawal initiated on {now.astimezone(tz).date().isoformat()}",
        period_start=period_start,
        period_end=period_end,
        created_at=now,
    )
    db.add(payout)
    db.flush()
    _attach(db, [c.id for c in allocated], payout.id)

    logger.info(
        f"Withdrawal payout {payout.id}: requested {amount}, allocated {running} "
        f"across {len(allocated)} commissions"
    )
    return payout


def list_payouts(db: Session, scope: Scope, status: Optional[PayoutStatus] = None) -> list[PayoutRow]:
    query = db.query(PayoutRow).filter(payout_scope_filter(scope))
    if status is not None:
        query = query.filter(PayoutRow.status == PayoutStatus(status).value)
    return query.order_by(PayoutRow.created_at.desc(), PayoutRow.id).all()
