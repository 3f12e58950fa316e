from datetime import datetime, timezone
from typing import Optional

import pytest

from commission_ledger.config import Settings
from commission_ledger.db import (
    CommissionRow,
    CommissionSplitRow,
    CustomerRow,
    LinkRow,
    PartnerRow,
    PayoutRow,
    ProgramEnrollmentRow,
    ProgramRow,
    UserRow,
    build_engine,
    build_session_factory,
    init_db,
    transaction,
)
from commission_ledger.events import AuditSink, NotificationDispatcher
from commission_ledger.ids import create_id
from commission_ledger.models import (
    AuditEvent,
    Commission,
    CommissionStatus,
    CommissionType,
    RecordCommissionRequest,
    SplitConfig,
)
from commission_ledger.service import LedgerService

WORKSPACE_ID = "ws_acme"
OTHER_WORKSPACE_ID = "ws_globex"


class RecordingAuditSink(AuditSink):
    def __init__(self):
        self.events: list[AuditEvent] = []

    def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [e.action for e in self.events]


class RecordingNotifier(NotificationDispatcher):
    def __init__(self):
        self.calls = []

    def commissions_claimed(self, user_id, phone_number, result) -> None:
        self.calls.append((user_id, phone_number, result.claimed_count))


class LedgerSeeder:
    """Writes reference rows directly and records commissions through the service."""

    def __init__(self, session_factory, service: LedgerService):
        self.session_factory = session_factory
        self.service = service

    def program(self, workspace_id: str = WORKSPACE_ID, name: str = "Referral Program",
                created_at: Optional[datetime] = None) -> str:
        program_id = create_id("prog_")
        with transaction(self.session_factory) as db:
            row = ProgramRow(id=program_id, workspace_id=workspace_id, name=name)
            if created_at:
                row.created_at = created_at
            db.add(row)
        return program_id

    def partner(self, name: str = "Acme Partner", email: Optional[str] = None,
                phone_number: Optional[str] = None) -> str:
        partner_id = create_id("pn_")
        with transaction(self.session_factory) as db:
            db.add(PartnerRow(id=partner_id, name=name, email=email, phone_number=phone_number))
        return partner_id

    def enroll(self, program_id: str, partner_id: str, created_at: Optional[datetime] = None) -> None:
        with transaction(self.session_factory) as db:
            row = ProgramEnrollmentRow(
                id=create_id("pge_"), program_id=program_id, partner_id=partner_id, status="approved"
            )
            if created_at:
                row.created_at = created_at
            db.add(row)

    def link(self, program_id: Optional[str] = None, partner_id: Optional[str] = None,
             workspace_id: str = WORKSPACE_ID) -> str:
        link_id = create_id("link_")
        with transaction(self.session_factory) as db:
            db.add(LinkRow(
                id=link_id,
                workspace_id=workspace_id,
                program_id=program_id,
                partner_id=partner_id,
                key="spring-sale",
                url="https://acme.example.com",
            ))
        return link_id

    def user(self, user_id: Optional[str] = None, name: str = "Dana Reyes",
             default_partner_id: Optional[str] = None) -> str:
        user_id = user_id or create_id("user_")
        with transaction(self.session_factory) as db:
            db.add(UserRow(id=user_id, name=name, default_partner_id=default_partner_id))
        return user_id

    def customer(self, workspace_id: str = WORKSPACE_ID, name: str = "Sam Okafor") -> str:
        customer_id = create_id("cus_")
        with transaction(self.session_factory) as db:
            db.add(CustomerRow(id=customer_id, workspace_id=workspace_id, name=name))
        return customer_id

    def commission(
        self,
        program_id: str,
        link_id: str,
        partner_id: Optional[str] = None,
        amount: int = 10000,
        earnings: int = 1000,
        status: CommissionStatus = CommissionStatus.PENDING,
        commission_type: CommissionType = CommissionType.SALE,
        splits: tuple = (),
        created_at: Optional[datetime] = None,
        customer_id: Optional[str] = None,
    ) -> Commission:
        commission = self.service.record_commission(RecordCommissionRequest(
            program_id=program_id,
            link_id=link_id,
            partner_id=partner_id,
            customer_id=customer_id,
            type=commission_type,
            amount=amount,
            earnings=earnings,
            splits=[SplitConfig(phone_number=phone, split_percent=pct) for phone, pct in splits],
        ))
        if created_at:
            self.backdate(commission.id, created_at)
        if status != CommissionStatus.PENDING:
            commission = self.service.transition_commission(commission.id, status)
        return commission

    def backdate(self, commission_id: str, created_at: datetime) -> None:
        with transaction(self.session_factory) as db:
            db.query(CommissionRow).filter(CommissionRow.id == commission_id).update(
                {CommissionRow.created_at: created_at}, synchronize_session=False
            )

    def link_row(self, link_id: str) -> LinkRow:
        with transaction(self.session_factory) as db:
            return db.query(LinkRow).filter(LinkRow.id == link_id).one()

    def program_row(self, program_id: str) -> ProgramRow:
        with transaction(self.session_factory) as db:
            return db.query(ProgramRow).filter(ProgramRow.id == program_id).one()

    def commission_row(self, commission_id: str) -> Optional[CommissionRow]:
        with transaction(self.session_factory) as db:
            return db.query(CommissionRow).filter(CommissionRow.id == commission_id).first()

    def payout_row(self, payout_id: str) -> PayoutRow:
        with transaction(self.session_factory) as db:
            return db.query(PayoutRow).filter(PayoutRow.id == payout_id).one()

    def split_rows(self, commission_id: str) -> list[CommissionSplitRow]:
        with transaction(self.session_factory) as db:
            return (
                db.query(CommissionSplitRow)
                .filter(CommissionSplitRow.commission_id == commission_id)
                .order_by(CommissionSplitRow.split_percent.desc())
                .all()
            )

    def user_row(self, user_id: str) -> UserRow:
        with transaction(self.session_factory) as db:
            return db.query(UserRow).filter(UserRow.id == user_id).one()


@pytest.fixture
def settings():
    return Settings(DATABASE_URL="sqlite://", DEFAULT_TIMEZONE="UTC")


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(session_factory, settings, audit_sink, notifier):
    return LedgerService(
        session_factory=session_factory,
        settings=settings,
        audit_sink=audit_sink,
        notifier=notifier,
    )


@pytest.fixture
def seed(session_factory, service):
    return LedgerSeeder(session_factory, service)


@pytest.fixture
def program_setup(seed):
    """One program in the default workspace with an enrolled partner and a link."""
    program_id = seed.program(created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    partner_id = seed.partner()
    seed.enroll(program_id, partner_id)
    link_id = seed.link(program_id, partner_id)
    return program_id, partner_id, link_id
