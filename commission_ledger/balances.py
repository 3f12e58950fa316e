import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import and_, case, func
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from .db import CommissionRow, utcnow
from .errors import LedgerValidationError
from .models import (
    Balances,
    CommissionFilters,
    CommissionStatus,
    Granularity,
    Scope,
    SortField,
    SortOrder,
    StatusTotals,
    TimeseriesGroupBy,
    TimeseriesPoint,
)
from .scopes import commission_scope_filter

logger = logging.getLogger(__name__)

# Statuses counted as earned for the monthly figure
EARNED_STATUSES = (CommissionStatus.PENDING, CommissionStatus.PROCESSED, CommissionStatus.PAID)

DEFAULT_TIMESERIES_DAYS = 30
MAX_TIMESERIES_BUCKETS = 1000


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise LedgerValidationError(f"Unknown timezone: {name}")


def bucket_floor(moment: datetime, tz: ZoneInfo, granularity: Granularity) -> datetime:
    """Start of the local hour/day/month containing ``moment``, in ``tz``."""
    local = moment.astimezone(tz)
    if granularity == Granularity.HOUR:
        return local.replace(minute=0, second=0, microsecond=0)
    if granularity == Granularity.DAY:
        return local.replace(hour=0, minute=0, second=0, microsecond=0)
    return local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def next_bucket(start: datetime, granularity: Granularity) -> datetime:
    if granularity == Granularity.HOUR:
        # Hours step in absolute time so DST days get 23 or 25 buckets
        return (start.astimezone(timezone.utc) + timedelta(hours=1)).astimezone(start.tzinfo)
    if granularity == Granularity.DAY:
        return start + timedelta(days=1)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def month_bounds(now: datetime, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """First instant of the local calendar month and of the next one, in UTC."""
    start = bucket_floor(now, tz, Granularity.MONTH)
    end = next_bucket(start, Granularity.MONTH)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def monetary_filter(scope: Scope) -> ColumnElement:
    # Zero-earning rows (plain clicks) never contribute to money aggregates
    return and_(commission_scope_filter(scope), CommissionRow.earnings > 0)


def available_filter(scope: Scope) -> ColumnElement:
    return and_(
        monetary_filter(scope),
        CommissionRow.status == CommissionStatus.PROCESSED.value,
        CommissionRow.payout_id.is_(None),
    )


def filter_clauses(filters: Optional[CommissionFilters]) -> list[ColumnElement]:
    if filters is None:
        return []

    clauses = []
    if filters.status is not None:
        clauses.append(CommissionRow.status == filters.status.value)
    if filters.type is not None:
        clauses.append(CommissionRow.type == filters.type.value)
    if filters.link_id is not None:
        clauses.append(CommissionRow.link_id == filters.link_id)
    if filters.customer_id is not None:
        clauses.append(CommissionRow.customer_id == filters.customer_id)
    if filters.payout_id is not None:
        clauses.append(CommissionRow.payout_id == filters.payout_id)
    if filters.start is not None:
        clauses.append(CommissionRow.created_at >= filters.start)
    if filters.end is not None:
        clauses.append(CommissionRow.created_at < filters.end)
    return clauses


def compute_balances(
    db: Session,
    scope: Scope,
    tz_name: str,
    now: Optional[datetime] = None,
    filters: Optional[CommissionFilters] = None,
) -> Balances:
    tz = resolve_timezone(tz_name)
    now = now or utcnow()
    base = and_(monetary_filter(scope), *filter_clauses(filters))

    rows = (
        db.query(
            CommissionRow.status,
            func.count(CommissionRow.id),
            func.coalesce(func.sum(CommissionRow.amount), 0),
            func.coalesce(func.sum(CommissionRow.earnings), 0),
            func.coalesce(
                func.sum(case((CommissionRow.payout_id.is_(None), CommissionRow.earnings), else_=0)),
                0,
            ),
        )
        .filter(base)
        .group_by(CommissionRow.status)
        .all()
    )

    counts = {status: StatusTotals() for status in CommissionStatus}
    unallocated_processed = 0
    for status, count, amount, earnings, unallocated in rows:
        status = CommissionStatus(status)
        counts[status] = StatusTotals(count=count, amount=int(amount), earnings=int(earnings))
        if status == CommissionStatus.PROCESSED:
            unallocated_processed = int(unallocated)

    all_totals = StatusTotals(
        count=sum(t.count for t in counts.values()),
        amount=sum(t.amount for t in counts.values()),
        earnings=sum(t.earnings for t in counts.values()),
    )

    month_start, next_month_start = month_bounds(now, tz)
    monthly = (
        db.query(func.coalesce(func.sum(CommissionRow.earnings), 0))
        .filter(
            base,
            CommissionRow.status.in_([s.value for s in EARNED_STATUSES]),
            CommissionRow.created_at >= month_start,
            CommissionRow.created_at < next_month_start,
        )
        .scalar()
    )

    processed_earnings = counts[CommissionStatus.PROCESSED].earnings
    return Balances(
        counts=counts,
        all=all_totals,
        monthly_earnings=int(monthly or 0),
        available_balance=unallocated_processed,
        pending_earnings=counts[CommissionStatus.PENDING].earnings,
        allocated_earnings=processed_earnings - unallocated_processed,
        paid_earnings=counts[CommissionStatus.PAID].earnings,
    )


def earnings_timeseries(
    db: Session,
    scope: Scope,
    granularity: Granularity,
    tz_name: str,
    filters: Optional[CommissionFilters] = None,
    group_by: Optional[TimeseriesGroupBy] = None,
    now: Optional[datetime] = None,
) -> list[TimeseriesPoint]:
    """
    Earnings summed per local hour, day or month over ``[start, end)``.

    Every bucket in the range is returned, empty ones with zero earnings.
    The range defaults to the last 30 days. With ``group_by`` each point
    also carries per-link or per-type earnings in ``data``.

    Rows are selected with one filtered query and bucketed here, so the
    timezone handling is the same on every database backend.
    """
    tz = resolve_timezone(tz_name)
    granularity = Granularity(granularity)
    filters = filters or CommissionFilters()
    end = filters.end or now or utcnow()
    start = filters.start or end - timedelta(days=DEFAULT_TIMESERIES_DAYS)
    if start >= end:
        raise LedgerValidationError("start must be before end")

    buckets = []
    cursor = bucket_floor(start, tz, granularity)
    while cursor < end:
        buckets.append(cursor)
        if len(buckets) > MAX_TIMESERIES_BUCKETS:
            raise LedgerValidationError(
                f"Range too large for {granularity.value} granularity",
                {"max_buckets": MAX_TIMESERIES_BUCKETS},
            )
        cursor = next_bucket(cursor, granularity)

    columns = [CommissionRow.created_at, CommissionRow.earnings]
    if group_by is not None:
        group_by = TimeseriesGroupBy(group_by)
        columns.append(CommissionRow.link_id if group_by == TimeseriesGroupBy.LINK_ID else CommissionRow.type)

    range_filters = filters.model_copy(update={"start": start, "end": end})
    rows = db.query(*columns).filter(monetary_filter(scope), *filter_clauses(range_filters)).all()

    totals = {b.astimezone(timezone.utc): 0 for b in buckets}
    grouped: dict[datetime, dict[str, int]] = {key: {} for key in totals}
    for row in rows:
        key = bucket_floor(row[0], tz, granularity).astimezone(timezone.utc)
        if key not in totals:
            continue
        totals[key] += row[1]
        if group_by is not None:
            grouped[key][row[2]] = grouped[key].get(row[2], 0) + row[1]

    logger.debug(f"Timeseries over {len(buckets)} {granularity.value} buckets from {len(rows)} commissions")
    return [
        TimeseriesPoint(
            start=bucket,
            earnings=totals[bucket.astimezone(timezone.utc)],
            data=grouped[bucket.astimezone(timezone.utc)] if group_by is not None else None,
        )
        for bucket in buckets
    ]


def list_commissions(
    db: Session,
    scope: Scope,
    filters: Optional[CommissionFilters] = None,
    limit: int = 50,
    offset: int = 0,
    sort_by: SortField = SortField.CREATED_AT,
    sort_order: SortOrder = SortOrder.DESC,
) -> list[CommissionRow]:
    if limit <= 0 or offset < 0:
        raise LedgerValidationError("limit must be positive and offset non-negative")

    column = getattr(CommissionRow, SortField(sort_by).value)
    ordering = column.asc() if SortOrder(sort_order) == SortOrder.ASC else column.desc()
    return (
        db.query(CommissionRow)
        .filter(monetary_filter(scope), *filter_clauses(filters))
        .order_by(ordering, CommissionRow.id)
        .offset(offset)
        .limit(limit)
        .all()
    )
