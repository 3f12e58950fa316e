from sqlalchemy import false, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from .db import CommissionRow, LinkRow, PartnerUserRow, PayoutRow, ProgramRow, UserRow
from .errors import LedgerValidationError, NotFoundError
from .models import ByPartnerIds, ByProgram, ByWorkspace, Scope


def _workspace_program_ids(workspace_id: str):
    return select(ProgramRow.id).where(ProgramRow.workspace_id == workspace_id)


def commission_scope_filter(scope: Scope) -> ColumnElement:
    if isinstance(scope, ByWorkspace):
        workspace_links = select(LinkRow.id).where(LinkRow.workspace_id == scope.workspace_id)
        return or_(
            CommissionRow.program_id.in_(_workspace_program_ids(scope.workspace_id)),
            CommissionRow.link_id.in_(workspace_links),
        )
    if isinstance(scope, ByProgram):
        return CommissionRow.program_id == scope.program_id
    if isinstance(scope, ByPartnerIds):
        if not scope.partner_ids:
            return false()
        return CommissionRow.partner_id.in_(scope.partner_ids)
    raise LedgerValidationError(f"Unsupported scope: {scope!r}")


def payout_scope_filter(scope: Scope) -> ColumnElement:
    if isinstance(scope, ByWorkspace):
        return PayoutRow.program_id.in_(_workspace_program_ids(scope.workspace_id))
    if isinstance(scope, ByProgram):
        return PayoutRow.program_id == scope.program_id
    if isinstance(scope, ByPartnerIds):
        if not scope.partner_ids:
            return false()
        return PayoutRow.partner_id.in_(scope.partner_ids)
    raise LedgerValidationError(f"Unsupported scope: {scope!r}")


def user_partner_ids(db: Session, user_id: str) -> list[str]:
    user = db.query(UserRow).filter(UserRow.id == user_id).first()
    if not user:
        raise NotFoundError(f"User {user_id} not found")

    partner_ids = [
        row.partner_id
        for row in db.query(PartnerUserRow)
        .filter(PartnerUserRow.user_id == user_id)
        .order_by(PartnerUserRow.created_at)
    ]
    if user.default_partner_id and user.default_partner_id not in partner_ids:
        partner_ids.insert(0, user.default_partner_id)
    return partner_ids


def scope_for_user(db: Session, user_id: str) -> ByPartnerIds:
    return ByPartnerIds(partner_ids=user_partner_ids(db, user_id))
