from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import and_, case, distinct, func
from sqlalchemy.orm import Session

from vibecoder.core.admin import require_admin
from vibecoder.core.clock import ensure_utc, utcnow
from vibecoder.db.session import get_db
from vibecoder.models.transaction import Transaction, TransactionStatus
from vibecoder.models.user import User
from vibecoder.schemas.admin import (
    GrowthBlock,
    MetricsSummaryOut,
    MetricsWindowOut,
    RevenueBlock,
)
from vibecoder.schemas.common import Envelope

router = APIRouter(prefix="/admin", tags=["admin"])

# money that was captured and not handed back
_EARNING = (TransactionStatus.COMPLETED.value, TransactionStatus.REFUNDED.value)
_NET_AMOUNT = Transaction.amount - case(
    (
        Transaction.status == TransactionStatus.REFUNDED.value,
        func.coalesce(Transaction.refund_amount, Transaction.amount),
    ),
    else_=0,
)


def _pct(delta: int, prev: int) -> float | None:
    if prev <= 0:
        return None
    return (delta / prev) * 100.0


def _growth(current: int, previous: int) -> GrowthBlock:
    d = current - previous
    return GrowthBlock(current=current, previous=previous, delta=d, pct=_pct(d, previous))


def _revenue(current: int, previous: int) -> RevenueBlock:
    d = current - previous
    return RevenueBlock(current=current, previous=previous, delta=d, pct=_pct(d, previous))


def _range_prev(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    span = end - start
    return start - span, start


def _earning_filter(start: datetime | None = None, end: datetime | None = None):
    conds = [Transaction.status.in_(_EARNING), Transaction.completed_at.isnot(None)]
    if start is not None and end is not None:
        conds += [Transaction.completed_at >= start, Transaction.completed_at < end]
    return and_(*conds)


def _new_users_in(db: Session, start: datetime, end: datetime) -> int:
    return int(
        db.query(func.count(User.id))
        .filter(and_(User.created_at >= start, User.created_at < end))
        .scalar()
        or 0
    )


def _paying_buyers(db: Session, start=None, end=None) -> int:
    return int(
        db.query(func.count(distinct(Transaction.buyer_id)))
        .filter(_earning_filter(start, end))
        .scalar()
        or 0
    )


def _net_revenue(db: Session, start=None, end=None) -> int:
    return int(
        db.query(func.coalesce(func.sum(_NET_AMOUNT), 0))
        .filter(_earning_filter(start, end))
        .scalar()
        or 0
    )


def _platform_fees(db: Session, start=None, end=None) -> int:
    # fully refunded sales earn no fee
    q = db.query(func.coalesce(func.sum(Transaction.platform_fee), 0)).filter(
        _earning_filter(start, end), _NET_AMOUNT > 0
    )
    return int(q.scalar() or 0)


@router.get("/metrics", response_model=Envelope[MetricsSummaryOut])
def metrics(
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    start_utc: datetime | None = None,
    end_utc: datetime | None = None,
):
    """
    Uses UTC for all windows.
    Optional custom range: pass start_utc & end_utc (ISO timestamps).
    """
    all_time_users = int(db.query(func.count(User.id)).scalar() or 0)

    now = utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    windows: list[tuple[str, datetime, datetime]] = [
        ("today", today, today + timedelta(days=1)),
        ("last_7_days", now - timedelta(days=7), now),
        ("last_30_days", now - timedelta(days=30), now),
        ("last_365_days", now - timedelta(days=365), now),
    ]

    if start_utc or end_utc:
        if not (start_utc and end_utc):
            raise HTTPException(
                status_code=400, detail="Provide both start_utc and end_utc"
            )
        start_utc = ensure_utc(start_utc).astimezone(timezone.utc)
        end_utc = ensure_utc(end_utc).astimezone(timezone.utc)
        if end_utc <= start_utc:
            raise HTTPException(status_code=400, detail="end_utc must be after start_utc")
        windows.append(("custom", start_utc, end_utc))

    out_windows: list[MetricsWindowOut] = []
    for label, start, end in windows:
        prev_start, prev_end = _range_prev(start, end)
        out_windows.append(
            MetricsWindowOut(
                label=label,
                start_utc=start,
                end_utc=end,
                users_total=all_time_users,
                new_users=_growth(
                    _new_users_in(db, start, end), _new_users_in(db, prev_start, prev_end)
                ),
                paying_buyers=_growth(
                    _paying_buyers(db, start, end), _paying_buyers(db, prev_start, prev_end)
                ),
                net_revenue=_revenue(
                    _net_revenue(db, start, end), _net_revenue(db, prev_start, prev_end)
                ),
                platform_fees=_revenue(
                    _platform_fees(db, start, end), _platform_fees(db, prev_start, prev_end)
                ),
            )
        )

    return Envelope(
        message="Metrics retrieved successfully",
        data=MetricsSummaryOut(
            all_time_users=all_time_users,
            all_time_paying_buyers=_paying_buyers(db),
            all_time_net_revenue=_net_revenue(db),
            all_time_platform_fees=_platform_fees(db),
            windows=out_windows,
        ),
    )
