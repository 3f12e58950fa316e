"""
Relational ledger store.

Tables for commissions, commission splits and payouts plus the reference data
the ledger reads (programs, partners, links, users, customers). Every public
ledger operation runs inside ``transaction()``: one session, one BEGIN/COMMIT,
rolled back as a whole on any error.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Iterator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import get_settings
from .errors import InternalLedgerError

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC. SQLite drops offsets otherwise."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            if value.tzinfo is None:
                raise ValueError("naive datetime passed to a UTC column")
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class ProgramRow(Base):
    __tablename__ = "programs"

    id = Column(String(64), primary_key=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    name = Column(String(190), nullable=False)
    sales_usage = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class PartnerRow(Base):
    __tablename__ = "partners"

    id = Column(String(64), primary_key=True)
    name = Column(String(190), nullable=False)
    email = Column(String(190), nullable=True, unique=True)
    phone_number = Column(String(32), nullable=True, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class ProgramEnrollmentRow(Base):
    __tablename__ = "program_enrollments"

    id = Column(String(64), primary_key=True)
    program_id = Column(String(64), ForeignKey("programs.id"), nullable=False, index=True)
    partner_id = Column(String(64), ForeignKey("partners.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="approved")
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    name = Column(String(190), nullable=True)
    email = Column(String(190), nullable=True, unique=True)
    default_partner_id = Column(String(64), ForeignKey("partners.id"), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class PartnerUserRow(Base):
    __tablename__ = "partner_users"

    user_id = Column(String(64), ForeignKey("users.id"), primary_key=True)
    partner_id = Column(String(64), ForeignKey("partners.id"), primary_key=True)
    role = Column(String(20), nullable=False, default="owner")
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class LinkRow(Base):
    __tablename__ = "links"

    id = Column(String(64), primary_key=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    program_id = Column(String(64), ForeignKey("programs.id"), nullable=True)
    partner_id = Column(String(64), ForeignKey("partners.id"), nullable=True)
    key = Column(String(190), nullable=True)
    url = Column(Text, nullable=True)
    sales = Column(Integer, nullable=False, default=0)
    sale_amount = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class CustomerRow(Base):
    __tablename__ = "customers"

    id = Column(String(64), primary_key=True)
    workspace_id = Column(String(64), nullable=True)
    name = Column(String(190), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class CommissionRow(Base):
    __tablename__ = "commissions"

    id = Column(String(64), primary_key=True)
    program_id = Column(String(64), ForeignKey("programs.id"), nullable=False, index=True)
    partner_id = Column(String(64), ForeignKey("partners.id"), nullable=True, index=True)
    link_id = Column(String(64), ForeignKey("links.id"), nullable=False, index=True)
    customer_id = Column(String(64), ForeignKey("customers.id"), nullable=True)
    type = Column(String(10), nullable=False)
    amount = Column(Integer, nullable=False, default=0)
    earnings = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String(20), nullable=False, default="pending", index=True)
    payout_id = Column(String(64), ForeignKey("payouts.id"), nullable=True, index=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=True, onupdate=utcnow)

    splits = relationship("CommissionSplitRow", back_populates="commission")


class CommissionSplitRow(Base):
    __tablename__ = "commission_splits"

    id = Column(String(64), primary_key=True)
    commission_id = Column(String(64), ForeignKey("commissions.id"), nullable=False, index=True)
    phone_number = Column(String(32), nullable=True, index=True)
    split_percent = Column(Integer, nullable=False)
    earnings = Column(Integer, nullable=False, default=0)
    claimed = Column(Boolean, nullable=False, default=False)
    claimed_at = Column(UTCDateTime, nullable=True)
    claimed_by_user_id = Column(String(64), ForeignKey("users.id"), nullable=True)
    claimed_by_partner_id = Column(String(64), ForeignKey("partners.id"), nullable=True)
    partner_id = Column(String(64), ForeignKey("partners.id"), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    commission = relationship("CommissionRow", back_populates="splits")


class PayoutRow(Base):
    __tablename__ = "payouts"

    id = Column(String(64), primary_key=True)
    program_id = Column(String(64), ForeignKey("programs.id"), nullable=False, index=True)
    partner_id = Column(String(64), ForeignKey("partners.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String(20), nullable=False, default="pending")
    period_start = Column(UTCDateTime, nullable=False)
    period_end = Column(UTCDateTime, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    paid_at = Column(UTCDateTime, nullable=True)
    external_transfer_id = Column(String(190), nullable=True)


class PhoneVerificationRow(Base):
    __tablename__ = "phone_verifications"

    token = Column(String(64), primary_key=True)
    phone_number = Column(String(32), nullable=False, index=True)
    unclaimed_count = Column(Integer, nullable=False, default=0)
    unclaimed_earnings = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False)


def build_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


@lru_cache
def get_session_factory() -> sessionmaker:
    settings = get_settings()
    engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
    init_db(engine)
    masked = settings.DATABASE_URL.split("@")[-1]
    logger.info(f"Ledger store ready at {masked}")
    return build_session_factory(engine)


@contextmanager
def transaction(session_factory: sessionmaker) -> Iterator[Session]:
    """
    Run a block in one database transaction.

    Ledger errors raised inside the block roll back and propagate unchanged.
    Database errors roll back and surface as InternalLedgerError.
    """
    session = session_factory()
    try:
        with session.begin():
            yield session
    except SQLAlchemyError as e:
        logger.error(f"Ledger transaction rolled back: {e}")
        raise InternalLedgerError("Ledger store failure, transaction rolled back") from e
    finally:
        session.close()
