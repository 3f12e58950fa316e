import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import sessionmaker

from . import admin, balances, claims, payouts, recording, scopes, state_machine
from .config import Settings, get_settings
from .db import PayoutRow, get_session_factory, transaction, utcnow
from .errors import (
    ConflictError,
    InternalLedgerError,
    InvalidPayoutAmountError,
    InvalidStateTransitionError,
    LedgerServiceError,
    LedgerValidationError,
    MissingProgramError,
    NotFoundError,
)
from .events import AuditSink, NotificationDispatcher, fire_and_forget
from .models import (
    AuditEvent,
    Balances,
    ByPartnerIds,
    ClaimResult,
    Commission,
    CommissionDeletion,
    CommissionFilters,
    CommissionSplit,
    CommissionStatus,
    Granularity,
    Payout,
    PayoutStatus,
    PendingVerification,
    RecordCommissionRequest,
    Scope,
    SortField,
    SortOrder,
    TimeseriesGroupBy,
    TimeseriesPoint,
    UnclaimedSummary,
    WithdrawRequest,
)

logger = logging.getLogger(__name__)

__all__ = [
    "LedgerService",
    "LedgerServiceError",
    "ConflictError",
    "InternalLedgerError",
    "InvalidPayoutAmountError",
    "InvalidStateTransitionError",
    "LedgerValidationError",
    "MissingProgramError",
    "NotFoundError",
]


class LedgerService:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        settings: Optional[Settings] = None,
        audit_sink: Optional[AuditSink] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.audit_sink = audit_sink or AuditSink()
        self.notifier = notifier or NotificationDispatcher()

    # Commissions

    def record_commission(self, request: RecordCommissionRequest) -> Commission:
        with transaction(self.session_factory) as db:
            row = recording.record_commission(db, request, utcnow(), self.settings.DEFAULT_CURRENCY)
            return Commission.model_validate(row)

    def get_commission(self, commission_id: str) -> Commission:
        with transaction(self.session_factory) as db:
            row = state_machine.load_commission(db, commission_id, for_update=False)
            return Commission.model_validate(row)

    def list_commissions(
        self,
        scope: Scope,
        filters: Optional[CommissionFilters] = None,
        limit: int = 50,
        offset: int = 0,
        sort_by: SortField = SortField.CREATED_AT,
        sort_order: SortOrder = SortOrder.DESC,
    ) -> list[Commission]:
        with transaction(self.session_factory) as db:
            rows = balances.list_commissions(db, scope, filters, limit, offset, sort_by, sort_order)
            return [Commission.model_validate(r) for r in rows]

    def get_commission_splits(self, commission_id: str) -> list[CommissionSplit]:
        with transaction(self.session_factory) as db:
            row = state_machine.load_commission(db, commission_id, for_update=False)
            return [
                CommissionSplit.model_validate(s)
                for s in sorted(row.splits, key=lambda s: (s.created_at, s.id))
            ]

    def transition_commission(self, commission_id: str, target_status: CommissionStatus) -> Commission:
        with transaction(self.session_factory) as db:
            row = state_machine.transition_commission(db, commission_id, target_status)
            return Commission.model_validate(row)

    # Payouts

    def create_payout(
        self,
        partner_id: str,
        commission_ids: list[str],
        description: Optional[str] = None,
        program_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Payout:
        with transaction(self.session_factory) as db:
            row = payouts.create_payout(
                db,
                partner_id,
                commission_ids,
                now=utcnow(),
                currency=self.settings.DEFAULT_CURRENCY,
                description=description,
                program_id=program_id,
                actor=actor,
            )
            payout = Payout.model_validate(row)

        if actor:
            self._audit("payout.created", actor, payout.id, {
                "partner_id": partner_id,
                "amount": payout.amount,
                "commission_ids": commission_ids,
            })
        return payout

    def get_payout(self, payout_id: str) -> Payout:
        with transaction(self.session_factory) as db:
            row = db.query(PayoutRow).filter(PayoutRow.id == payout_id).first()
            if not row:
                raise NotFoundError(f"Payout {payout_id} not found")
            return Payout.model_validate(row)

    def list_payouts(self, scope: Scope, status: Optional[PayoutStatus] = None) -> list[Payout]:
        with transaction(self.session_factory) as db:
            return [Payout.model_validate(r) for r in payouts.list_payouts(db, scope, status)]

    def transition_payout(
        self,
        payout_id: str,
        target_status: PayoutStatus,
        external_transfer_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Payout:
        with transaction(self.session_factory) as db:
            row = payouts.transition_payout(db, payout_id, target_status, utcnow(), external_transfer_id)
            payout = Payout.model_validate(row)

        if actor:
            self._audit("payout.status_changed", actor, payout_id, {"status": payout.status.value})
        return payout

    def ensure_default_partner(self, program_id: str) -> str:
        with transaction(self.session_factory) as db:
            partner = payouts.ensure_default_partner(db, program_id, self.settings.SYSTEM_PARTNER_EMAIL_DOMAIN)
            return partner.id

    def withdraw(self, scope: Scope, request: WithdrawRequest, timezone: Optional[str] = None) -> Payout:
        tz = balances.resolve_timezone(timezone or self.settings.DEFAULT_TIMEZONE)

        with transaction(self.session_factory) as db:
            program_id = payouts.resolve_withdraw_program(db, scope, request.program_id)
            restrict = request.program_id is not None
            payouts.check_withdrawal_amount(db, scope, request.amount, program_id if restrict else None)

        partner_id = request.partner_id or self.ensure_default_partner(program_id)

        with transaction(self.session_factory) as db:
            row = payouts.withdraw(
                db,
                scope,
                request.amount,
                program_id=program_id,
                partner_id=partner_id,
                now=utcnow(),
                tz=tz,
                currency=self.settings.DEFAULT_CURRENCY,
                description=request.description,
                restrict_to_program=restrict,
            )
            return Payout.model_validate(row)

    # Balances

    def get_balances(
        self,
        scope: Scope,
        timezone: Optional[str] = None,
        now: Optional[datetime] = None,
        filters: Optional[CommissionFilters] = None,
    ) -> Balances:
        with transaction(self.session_factory) as db:
            return balances.compute_balances(db, scope, timezone or self.settings.DEFAULT_TIMEZONE, now, filters)

    def earnings_timeseries(
        self,
        scope: Scope,
        granularity: Granularity = Granularity.DAY,
        timezone: Optional[str] = None,
        filters: Optional[CommissionFilters] = None,
        group_by: Optional[TimeseriesGroupBy] = None,
        now: Optional[datetime] = None,
    ) -> list[TimeseriesPoint]:
        with transaction(self.session_factory) as db:
            return balances.earnings_timeseries(
                db,
                scope,
                granularity,
                timezone or self.settings.DEFAULT_TIMEZONE,
                filters=filters,
                group_by=group_by,
                now=now,
            )

    def scope_for_user(self, user_id: str) -> ByPartnerIds:
        with transaction(self.session_factory) as db:
            return scopes.scope_for_user(db, user_id)

    # Claims

    def claim_commissions(
        self,
        phone_number: str,
        user_id: str,
        verification_token: Optional[str] = None,
    ) -> ClaimResult:
        phone_number = claims.normalize_phone_number(phone_number)
        if not user_id or not user_id.strip():
            raise LedgerValidationError("user_id is required")

        now = utcnow()
        with transaction(self.session_factory) as db:
            advertised = None
            if verification_token:
                pending = claims.load_pending_verification(db, verification_token, now)
                if pending.phone_number != phone_number:
                    raise LedgerValidationError("Verification token does not belong to this phone number")
                advertised = pending.unclaimed_earnings

            claimed, partner_id = claims.claim_splits(db, phone_number, user_id, now)
            result = ClaimResult(
                claimed_count=len(claimed),
                claimed_earnings=sum(s.earnings for s in claimed),
                splits=[CommissionSplit.model_validate(s) for s in claimed],
                partner_id=partner_id,
                advertised_earnings=advertised,
            )

        if advertised is not None and advertised != result.claimed_earnings:
            logger.warning(
                f"Claim for {phone_number} advertised {advertised} but claimed {result.claimed_earnings}"
            )
        if result.claimed_count:
            fire_and_forget(
                f"claim notification for {user_id}",
                lambda: self.notifier.commissions_claimed(user_id, phone_number, result),
            )
            self._audit("commission_splits.claimed", user_id, phone_number, {
                "partner_id": partner_id,
                "claimed_count": result.claimed_count,
                "claimed_earnings": result.claimed_earnings,
            })
        return result

    def record_phone_verification(self, phone_number: str) -> PendingVerification:
        phone_number = claims.normalize_phone_number(phone_number)
        with transaction(self.session_factory) as db:
            row = claims.record_phone_verification(
                db, phone_number, self.settings.PENDING_VERIFICATION_TTL_HOURS, utcnow()
            )
            return PendingVerification.model_validate(row)

    def get_pending_verification(self, token: str) -> PendingVerification:
        with transaction(self.session_factory) as db:
            return claims.load_pending_verification(db, token, utcnow())

    def get_unclaimed_summary(self, phone_number: str) -> UnclaimedSummary:
        phone_number = claims.normalize_phone_number(phone_number)
        with transaction(self.session_factory) as db:
            splits = [CommissionSplit.model_validate(s) for s in claims.find_unclaimed_splits(db, phone_number)]
        return UnclaimedSummary(
            phone_number=phone_number,
            count=len(splits),
            earnings=sum(s.earnings for s in splits),
            splits=splits,
        )

    # Admin corrections

    def force_commission_status(self, commission_id: str, target_status: CommissionStatus, actor: str) -> Commission:
        with transaction(self.session_factory) as db:
            row, rollup_applied, detached_from = admin.force_commission_status(db, commission_id, target_status)
            commission = Commission.model_validate(row)

        logger.info(f"Admin {actor} forced commission {commission_id} to {commission.status.value}")
        self._audit("commission.status_forced", actor, commission_id, {
            "status": commission.status.value,
            "rollup_applied": rollup_applied,
            "detached_from_payout": detached_from,
            "amount": commission.amount,
            "earnings": commission.earnings,
        })
        return commission

    def delete_commission(self, commission_id: str, actor: str) -> CommissionDeletion:
        with transaction(self.session_factory) as db:
            deleted, rollback_applied = admin.delete_commission(db, commission_id)

        logger.info(f"Admin {actor} deleted commission {commission_id}")
        self._audit("commission.deleted", actor, commission_id, {
            "link_id": deleted.link_id,
            "program_id": deleted.program_id,
            "partner_id": deleted.partner_id,
            "customer_id": deleted.customer_id,
            "amount": deleted.amount,
            "earnings": deleted.earnings,
            "status": deleted.status.value,
            "rollback_applied": rollback_applied,
        })
        return CommissionDeletion(deleted_commission=deleted, rollback_applied=rollback_applied)

    def force_payout_status(
        self,
        payout_id: str,
        target_status: PayoutStatus,
        actor: str,
        external_transfer_id: Optional[str] = None,
    ) -> Payout:
        with transaction(self.session_factory) as db:
            row = admin.force_payout_status(db, payout_id, target_status, utcnow(), external_transfer_id)
            payout = Payout.model_validate(row)

        logger.info(f"Admin {actor} set payout {payout_id} to {payout.status.value}")
        self._audit("payout.status_forced", actor, payout_id, {
            "status": payout.status.value,
            "amount": payout.amount,
            "external_transfer_id": payout.external_transfer_id,
        })
        return payout

    def reset_claimed_splits(self, actor: str, phone_number: Optional[str] = None) -> int:
        if phone_number is not None:
            phone_number = claims.normalize_phone_number(phone_number)
        with transaction(self.session_factory) as db:
            reset = claims.reset_claimed_splits(db, phone_number)

        logger.info(f"Admin {actor} reset {reset} claimed splits")
        self._audit("commission_splits.reset", actor, phone_number or "*", {"reset_count": reset})
        return reset

    def _audit(self, action: str, actor: Optional[str], subject_id: str, details: dict) -> None:
        event = AuditEvent(
            action=action,
            actor=actor,
            subject_id=subject_id,
            occurred_at=utcnow(),
            details=details,
        )
        fire_and_forget(f"audit {action} {subject_id}", lambda: self.audit_sink.emit(event))
