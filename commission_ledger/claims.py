"""
Claim Reconciliation Protocol

Binds commission splits that were provisionally owed to a phone number to
the partner of a verified user. Each split is consumed exactly once: the
claim is a conditional UPDATE on ``claimed = false``, so a double-submitted
claim can never credit the same split twice.
"""

import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .db import (
    CommissionSplitRow,
    PartnerRow,
    PartnerUserRow,
    PhoneVerificationRow,
    UserRow,
)
from .errors import LedgerValidationError, NotFoundError
from .ids import create_id
from .models import PendingVerification

logger = logging.getLogger(__name__)

NON_DIGITS = re.compile(r"\D")


def normalize_phone_number(phone_number: Optional[str]) -> str:
    """Strip formatting and return ``+<digits>``."""
    if not phone_number or not phone_number.strip():
        raise LedgerValidationError("Phone number is required")
    digits = NON_DIGITS.sub("", phone_number)
    if not 7 <= len(digits) <= 15:
        raise LedgerValidationError(f"Invalid phone number: {phone_number}")
    return f"+{digits}"


def find_unclaimed_splits(db: Session, phone_number: str) -> list[CommissionSplitRow]:
    return (
        db.query(CommissionSplitRow)
        .filter(
            CommissionSplitRow.phone_number == phone_number,
            CommissionSplitRow.claimed.is_(False),
        )
        .order_by(CommissionSplitRow.created_at, CommissionSplitRow.id)
        .all()
    )


def unclaimed_totals(db: Session, phone_number: str) -> tuple[int, int]:
    count, earnings = (
        db.query(func.count(CommissionSplitRow.id), func.coalesce(func.sum(CommissionSplitRow.earnings), 0))
        .filter(
            CommissionSplitRow.phone_number == phone_number,
            CommissionSplitRow.claimed.is_(False),
        )
        .one()
    )
    return int(count), int(earnings)


def load_user(db: Session, user_id: str) -> UserRow:
    user = db.query(UserRow).filter(UserRow.id == user_id).with_for_update().first()
    if not user:
        raise NotFoundError(f"User {user_id} not found")
    return user


def _ensure_membership(db: Session, user_id: str, partner_id: str) -> None:
    existing = (
        db.query(PartnerUserRow)
        .filter(PartnerUserRow.user_id == user_id, PartnerUserRow.partner_id == partner_id)
        .first()
    )
    if not existing:
        db.add(PartnerUserRow(user_id=user_id, partner_id=partner_id, role="owner"))
        logger.info(f"Associated user {user_id} with partner {partner_id}")


def resolve_claiming_partner(db: Session, user: UserRow, phone_number: str) -> PartnerRow:
    """
    Partner that receives the claimed splits.

    Order: the user's default partner, the user's first partner membership,
    a partner already registered with this phone number, else a new partner
    named after the user. The result becomes the user's default partner.
    """
    partner = None
    if user.default_partner_id:
        partner = db.query(PartnerRow).filter(PartnerRow.id == user.default_partner_id).first()

    if partner is None:
        membership = (
            db.query(PartnerUserRow)
            .filter(PartnerUserRow.user_id == user.id)
            .order_by(PartnerUserRow.created_at)
            .first()
        )
        if membership:
            partner = db.query(PartnerRow).filter(PartnerRow.id == membership.partner_id).first()

    if partner is None:
        partner = (
            db.query(PartnerRow)
            .filter(PartnerRow.phone_number == phone_number)
            .order_by(PartnerRow.created_at, PartnerRow.id)
            .first()
        )

    if partner is None:
        partner = PartnerRow(
            id=create_id("pn_"),
            name=user.name or user.email or "Partner",
            phone_number=phone_number,
        )
        db.add(partner)
        db.flush()
        logger.info(f"Created partner {partner.id} for user {user.id}")

    if partner.phone_number is None:
        partner.phone_number = phone_number
    if user.default_partner_id is None:
        user.default_partner_id = partner.id
    _ensure_membership(db, user.id, partner.id)
    db.flush()
    return partner


def claim_splits(
    db: Session,
    phone_number: str,
    user_id: str,
    now: datetime,
) -> tuple[list[CommissionSplitRow], Optional[str]]:
    """
    Claim every unclaimed split for ``phone_number`` on behalf of ``user_id``.

    Returns the newly claimed splits and the claiming partner id. Splits
    claimed concurrently by another request are skipped, not double-counted.
    """
    user = load_user(db, user_id)

    candidate_ids = [
        split_id
        for (split_id,) in db.query(CommissionSplitRow.id)
        .filter(
            CommissionSplitRow.phone_number == phone_number,
            CommissionSplitRow.claimed.is_(False),
        )
        .order_by(CommissionSplitRow.created_at, CommissionSplitRow.id)
    ]
    if not candidate_ids:
        logger.info(f"No unclaimed splits for {phone_number}")
        return [], user.default_partner_id

    partner = resolve_claiming_partner(db, user, phone_number)

    claimed_ids = []
    for split_id in candidate_ids:
        updated = (
            db.query(CommissionSplitRow)
            .filter(
                CommissionSplitRow.id == split_id,
                CommissionSplitRow.claimed.is_(False),
            )
            .update(
                {
                    CommissionSplitRow.claimed: True,
                    CommissionSplitRow.claimed_at: now,
                    CommissionSplitRow.claimed_by_user_id: user.id,
                    CommissionSplitRow.claimed_by_partner_id: partner.id,
                    CommissionSplitRow.partner_id: partner.id,
                },
                synchronize_session=False,
            )
        )
        if updated == 1:
            claimed_ids.append(split_id)
        else:
            logger.warning(f"Split {split_id} was claimed concurrently, skipping")

    claimed = []
    if claimed_ids:
        claimed = (
            db.query(CommissionSplitRow)
            .filter(CommissionSplitRow.id.in_(claimed_ids))
            .order_by(CommissionSplitRow.created_at, CommissionSplitRow.id)
            .populate_existing()
            .all()
        )
    logger.info(f"User {user.id} claimed {len(claimed)} splits for {phone_number} as partner {partner.id}")
    return claimed, partner.id


def record_phone_verification(db: Session, phone_number: str, ttl_hours: int, now: datetime) -> PhoneVerificationRow:
    count, earnings = unclaimed_totals(db, phone_number)
    record = PhoneVerificationRow(
        token=secrets.token_urlsafe(24),
        phone_number=phone_number,
        unclaimed_count=count,
        unclaimed_earnings=earnings,
        created_at=now,
        expires_at=now + timedelta(hours=ttl_hours),
    )
    db.add(record)
    db.flush()
    logger.info(f"Pending verification recorded for {phone_number}: {count} splits, {earnings} earnings")
    return record


def load_pending_verification(db: Session, token: str, now: datetime) -> PendingVerification:
    record = db.query(PhoneVerificationRow).filter(PhoneVerificationRow.token == token).first()
    if not record:
        raise NotFoundError("Pending verification not found")
    pending = PendingVerification.model_validate(record)
    if pending.is_expired(now):
        raise NotFoundError("Pending verification has expired")
    return pending


def reset_claimed_splits(db: Session, phone_number: Optional[str] = None) -> int:
    query = db.query(CommissionSplitRow).filter(CommissionSplitRow.claimed.is_(True))
    if phone_number is not None:
        query = query.filter(CommissionSplitRow.phone_number == phone_number)
    return query.update(
        {
            CommissionSplitRow.claimed: False,
            CommissionSplitRow.claimed_at: None,
            CommissionSplitRow.claimed_by_user_id: None,
            CommissionSplitRow.claimed_by_partner_id: None,
            CommissionSplitRow.partner_id: None,
        },
        synchronize_session=False,
    )
