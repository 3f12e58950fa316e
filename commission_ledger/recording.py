import logging
from datetime import datetime

from sqlalchemy.orm import Session

from .claims import normalize_phone_number
from .db import CommissionRow, CommissionSplitRow, CustomerRow, LinkRow, PartnerRow, ProgramRow
from .errors import NotFoundError
from .ids import create_id
from .models import CommissionStatus, RecordCommissionRequest
from .state_machine import apply_rollup

logger = logging.getLogger(__name__)


def _require(db: Session, model, row_id: str, label: str) -> None:
    if not db.query(model.id).filter(model.id == row_id).first():
        raise NotFoundError(f"{label} {row_id} not found")


def record_commission(
    db: Session,
    request: RecordCommissionRequest,
    now: datetime,
    default_currency: str,
) -> CommissionRow:
    """
    Insert a pending commission, its phone-number splits and its rollups.

    Each split gets floor(earnings * percent / 100); the creator keeps the
    remainder, so splits plus creator share always equal ``earnings``.
    """
    _require(db, ProgramRow, request.program_id, "Program")
    _require(db, LinkRow, request.link_id, "Link")
    if request.partner_id:
        _require(db, PartnerRow, request.partner_id, "Partner")
    if request.customer_id:
        _require(db, CustomerRow, request.customer_id, "Customer")

    commission = CommissionRow(
        id=create_id("cm_"),
        program_id=request.program_id,
        partner_id=request.partner_id,
        link_id=request.link_id,
        customer_id=request.customer_id,
        type=request.type.value,
        amount=request.amount,
        earnings=request.earnings,
        currency=(request.currency or default_currency).lower(),
        status=CommissionStatus.PENDING.value,
        created_at=now,
    )
    db.add(commission)
    db.flush()

    split_total = 0
    for split in request.splits:
        split_earnings = request.earnings * split.split_percent // 100
        split_total += split_earnings
        db.add(CommissionSplitRow(
            id=create_id("cms_"),
            commission_id=commission.id,
            phone_number=normalize_phone_number(split.phone_number),
            split_percent=split.split_percent,
            earnings=split_earnings,
            created_at=now,
        ))

    apply_rollup(db, commission, 1)
    db.flush()
    logger.info(
        f"Commission {commission.id} recorded on link {request.link_id}: amount {request.amount}, "
        f"earnings {request.earnings}, {len(request.splits)} splits ({split_total} split, "
        f"{request.earnings - split_total} creator share)"
    )
    return commission
