"""
Payment orders and the local transaction ledger.

The ledger is the source of truth. The gateway is treated as a correspondent
that may retry, replay or deliver out of order, so every mutating entry point
funnels through ``_transition`` and is a no-op when the row is already in the
requested state.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vibecoder.core.clock import utcnow
from vibecoder.core.config import settings
from vibecoder.core.errors import (
    Conflict,
    InvalidInput,
    NotFound,
    SignatureInvalid,
    UpstreamFailure,
)
from vibecoder.core.gateway import RazorpayGateway
from vibecoder.core.permissions import require_buyer_or_admin, require_transaction_party
from vibecoder.models.project import Project, ProjectStatus
from vibecoder.models.transaction import PaymentMethod, Transaction, TransactionStatus
from vibecoder.models.user import User

logger = logging.getLogger("vibecoder.payments")

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    TransactionStatus.PENDING.value: {
        TransactionStatus.COMPLETED.value,
        TransactionStatus.FAILED.value,
    },
    TransactionStatus.COMPLETED.value: {TransactionStatus.REFUNDED.value},
}


class InvalidTransition(Conflict):
    pass


def _transition(tx: Transaction, target: TransactionStatus) -> bool:
    """Move tx to target. False when it is already there; raises when illegal."""
    current = getattr(tx.status, "value", tx.status)
    if current == target.value:
        return False
    if target.value not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(
            f"Transaction cannot move from {current} to {target.value}"
        )
    tx.status = target.value
    return True


def platform_fee(amount: int) -> int:
    # integer half-up rounding
    return (amount * settings.PLATFORM_FEE_PERCENT + 50) // 100


RECEIPT_PREFIX = "vbc_"


def new_receipt_id() -> str:
    # Razorpay caps receipts at 40 chars
    return f"{RECEIPT_PREFIX}{uuid.uuid4().hex[:24]}"


def to_minor_units(amount: int) -> int:
    return amount * 100


def normalize_method(method: str | None) -> str:
    if method:
        m = method.strip().upper()
        if m in PaymentMethod.__members__:
            return m
    return PaymentMethod.CARD.value


def _locked_by_order(db: Session, order_id: str) -> Transaction:
    tx = (
        db.query(Transaction)
        .filter(Transaction.gateway_order_id == order_id)
        .with_for_update()
        .first()
    )
    if not tx:
        raise NotFound("Transaction not found")
    return tx


# ---- order creation ----


def create_payment_order(
    db: Session,
    gateway: RazorpayGateway,
    *,
    project_id: str,
    buyer: User,
    amount: int,
    currency: str | None = None,
    description: str | None = None,
) -> tuple[dict[str, Any], Transaction]:
    if amount is None or amount <= 0:
        raise InvalidInput("Amount must be greater than 0")

    project = db.get(Project, project_id)
    if not project:
        raise NotFound("Project not found")
    if project.status != ProjectStatus.APPROVED:
        raise InvalidInput("Project is not available for purchase")
    if project.seller_id == buyer.id:
        raise InvalidInput("You cannot purchase your own project")

    already = (
        db.query(Transaction.id)
        .filter(
            Transaction.project_id == project_id,
            Transaction.buyer_id == buyer.id,
            Transaction.status == TransactionStatus.COMPLETED.value,
        )
        .first()
    )
    if already:
        raise InvalidInput("You have already purchased this project")

    if amount != project.price:
        raise InvalidInput("Payment amount does not match project price")

    currency = (currency or project.currency or settings.DEFAULT_CURRENCY).upper()
    receipt = new_receipt_id()

    # Remote first: a local PENDING row must always have a remote order behind it.
    order = gateway.create_order(
        to_minor_units(amount),
        currency,
        receipt,
        notes={
            "project_id": project.id,
            "buyer_id": buyer.id,
            "seller_id": project.seller_id,
        },
    )
    order_id = order.get("id")
    if not order_id:
        raise UpstreamFailure("Payment gateway returned an order without an id")

    fee = platform_fee(amount)
    tx = Transaction(
        project_id=project.id,
        buyer_id=buyer.id,
        seller_id=project.seller_id,
        amount=amount,
        currency=currency,
        status=TransactionStatus.PENDING.value,
        gateway=gateway.name,
        gateway_order_id=order_id,
        receipt_id=receipt,
        description=description or f"Purchase of {project.title}",
        platform_fee=fee,
        seller_payout=amount - fee,
    )
    db.add(tx)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error(
            "Ledger insert failed after gateway order %s was created; needs reconciliation",
            order_id,
        )
        raise
    db.refresh(tx)

    logger.info(
        "Payment order created order_id=%s tx=%s amount=%s %s",
        order_id,
        tx.id,
        amount,
        currency,
    )
    return order, tx


# ---- completion / failure ----


def _mark_completed(
    db: Session,
    tx: Transaction,
    payment_id: str | None,
    method: str | None,
    signature: str | None = None,
) -> Transaction:
    if not _transition(tx, TransactionStatus.COMPLETED):
        logger.info("Transaction %s already completed; replay ignored", tx.id)
        db.commit()  # release the row lock
        return tx

    tx.gateway_payment_id = payment_id or tx.gateway_payment_id
    if signature:
        tx.gateway_signature = signature
    tx.payment_method = normalize_method(method)
    tx.completed_at = utcnow()
    db.add(tx)
    db.commit()
    db.refresh(tx)
    logger.info("Transaction %s completed payment_id=%s", tx.id, tx.gateway_payment_id)
    return tx


def _mark_failed(
    db: Session,
    tx: Transaction,
    payment_id: str | None,
    error_code: str | None,
    error_description: str | None,
) -> Transaction:
    if not _transition(tx, TransactionStatus.FAILED):
        logger.info("Transaction %s already failed; replay ignored", tx.id)
        db.commit()
        return tx

    if payment_id:
        tx.gateway_payment_id = payment_id
    tx.failure_code = (error_code or "")[:80] or None
    tx.failure_reason = (error_description or "")[:400] or None
    tx.failed_at = utcnow()
    db.add(tx)
    db.commit()
    db.refresh(tx)
    logger.info("Transaction %s failed code=%s", tx.id, tx.failure_code)
    return tx


def process_successful_payment(
    db: Session,
    gateway: RazorpayGateway,
    order_id: str,
    payment_id: str,
    signature: str,
    payment_method: str | None = None,
    actor: User | None = None,
) -> Transaction:
    # Nothing is read or written until the signature checks out.
    if not gateway.verify_payment_signature(order_id, payment_id, signature):
        logger.warning("Payment signature mismatch order_id=%s", order_id)
        raise SignatureInvalid("We could not verify this payment")

    tx = _locked_by_order(db, order_id)
    if actor is not None:
        require_buyer_or_admin(tx, actor)
    return _mark_completed(db, tx, payment_id, payment_method, signature)


def process_failed_payment(
    db: Session,
    order_id: str,
    payment_id: str | None = None,
    error_code: str | None = None,
    error_description: str | None = None,
    actor: User | None = None,
) -> Transaction:
    tx = _locked_by_order(db, order_id)
    if actor is not None:
        require_buyer_or_admin(tx, actor)
    return _mark_failed(db, tx, payment_id, error_code, error_description)


def get_payment_status(db: Session, order_id: str, user: User) -> Transaction:
    tx = db.query(Transaction).filter(Transaction.gateway_order_id == order_id).first()
    if not tx:
        raise NotFound("Transaction not found")
    return require_transaction_party(tx, user)


# ---- refunds ----


def initiate_refund(
    db: Session,
    gateway: RazorpayGateway,
    transaction_id: str,
    amount: int | None = None,
    reason: str | None = None,
) -> Transaction:
    tx = (
        db.query(Transaction)
        .filter(Transaction.id == transaction_id)
        .with_for_update()
        .first()
    )
    if not tx:
        raise NotFound("Transaction not found")

    if tx.status == TransactionStatus.REFUNDED:
        raise Conflict("Transaction has already been refunded")
    if tx.status != TransactionStatus.COMPLETED:
        raise InvalidInput("Only completed transactions can be refunded")
    if not tx.gateway_payment_id:
        raise InvalidInput("Payment ID not found for refund")

    refund_amount = tx.amount if amount is None else amount
    if refund_amount <= 0 or refund_amount > tx.amount:
        raise InvalidInput("Refund amount must be between 1 and the original amount")

    reason = reason or "Customer requested refund"
    refund = gateway.refund_payment(
        tx.gateway_payment_id,
        to_minor_units(refund_amount),
        notes={"reason": reason[:250], "transaction_id": tx.id},
    )

    _transition(tx, TransactionStatus.REFUNDED)
    tx.refund_amount = refund_amount
    tx.refund_reason = reason
    tx.gateway_refund_id = refund.get("id")
    tx.refunded_at = utcnow()
    db.add(tx)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error(
            "Refund %s issued at gateway but ledger update failed for tx=%s",
            refund.get("id"),
            tx.id,
        )
        raise
    db.refresh(tx)
    logger.info("Transaction %s refunded amount=%s", tx.id, refund_amount)
    return tx


# ---- webhook ----


def apply_webhook_event(db: Session, event: dict[str, Any]) -> tuple[str, str | None]:
    """
    Apply an already-verified webhook body to the ledger.
    Returns (status, error) for the event row: processed | ignored | error.
    """
    event_type = event.get("event")
    payload = event.get("payload") or {}
    payment = (payload.get("payment") or {}).get("entity") or {}
    order = (payload.get("order") or {}).get("entity") or {}

    if event_type not in ("payment.captured", "order.paid", "payment.failed"):
        return "ignored", None

    order_id = payment.get("order_id") or order.get("id")
    if not order_id:
        return "error", "missing order id"

    tx = (
        db.query(Transaction)
        .filter(Transaction.gateway_order_id == order_id)
        .with_for_update()
        .first()
    )
    if not tx:
        db.rollback()
        return "error", "transaction not found"

    if event_type == "payment.failed":
        _mark_failed(
            db,
            tx,
            payment.get("id"),
            payment.get("error_code"),
            payment.get("error_description"),
        )
        return "processed", None

    # Validate amount to prevent mismatches
    paid_minor = payment.get("amount", order.get("amount_paid"))
    if paid_minor is not None and int(paid_minor) != to_minor_units(tx.amount):
        db.rollback()
        return "error", "amount mismatch"

    _mark_completed(db, tx, payment.get("id"), payment.get("method"))
    return "processed", None


# ---- reconciliation ----


@dataclass
class ReconcileReport:
    checked: int = 0
    completed: int = 0
    failed: int = 0
    unchanged: int = 0
    orphaned: int = 0
    orphaned_paid: int = 0


def _orphaned_gateway_orders(
    db: Session, gateway: RazorpayGateway, created_from: datetime, created_to: datetime
) -> list[dict]:
    """Our gateway orders in the window that never got a ledger row."""
    ours = [
        o
        for o in gateway.list_orders(created_from, created_to)
        if str(o.get("receipt") or "").startswith(RECEIPT_PREFIX)
    ]
    if not ours:
        return []
    known = {
        row.gateway_order_id
        for row in db.query(Transaction.gateway_order_id)
        .filter(Transaction.gateway_order_id.in_([o["id"] for o in ours]))
        .all()
    }
    return [o for o in ours if o["id"] not in known]


def reconcile_pending_transactions(
    db: Session, gateway: RazorpayGateway, older_than: timedelta | None = None
) -> ReconcileReport:
    """Settle PENDING rows the callbacks never reached, using the gateway's view."""
    if older_than is None:
        older_than = timedelta(minutes=settings.RECONCILE_AFTER_MIN)
    cutoff = utcnow() - older_than

    ids = [
        row.id
        for row in db.query(Transaction.id)
        .filter(
            Transaction.status == TransactionStatus.PENDING.value,
            Transaction.created_at < cutoff,
        )
        .all()
    ]

    report = ReconcileReport()
    for tx_id in ids:
        report.checked += 1
        tx = db.query(Transaction).filter(Transaction.id == tx_id).with_for_update().first()
        if not tx or tx.status != TransactionStatus.PENDING:
            db.rollback()
            report.unchanged += 1
            continue

        try:
            order = gateway.fetch_order(tx.gateway_order_id)
            payments = (
                gateway.fetch_order_payments(tx.gateway_order_id)
                if order.get("status") in ("paid", "attempted")
                else []
            )
        except UpstreamFailure:
            # stays PENDING; next run tries again
            db.rollback()
            report.unchanged += 1
            continue

        captured = [p for p in payments if p.get("status") == "captured"]
        if order.get("status") == "paid" and captured:
            _mark_completed(db, tx, captured[0].get("id"), captured[0].get("method"))
            report.completed += 1
        elif (
            order.get("status") == "attempted"
            and payments
            and all(p.get("status") == "failed" for p in payments)
        ):
            last = payments[0]
            _mark_failed(
                db,
                tx,
                last.get("id"),
                last.get("error_code"),
                last.get("error_description"),
            )
            report.failed += 1
        else:
            db.rollback()
            report.unchanged += 1

    # orders whose ledger insert failed; the client never saw their id
    try:
        orphans = _orphaned_gateway_orders(
            db, gateway, cutoff - timedelta(hours=settings.RECONCILE_LOOKBACK_HOURS), cutoff
        )
    except UpstreamFailure:
        logger.warning("Could not list gateway orders; orphan check skipped")
        orphans = []
    for order in orphans:
        report.orphaned += 1
        if order.get("status") == "paid":
            report.orphaned_paid += 1
            logger.error(
                "Gateway order %s (receipt %s) was paid but has no ledger row; "
                "refund it manually",
                order["id"],
                order.get("receipt"),
            )
        else:
            logger.warning(
                "Gateway order %s (receipt %s) has no ledger row and was never paid",
                order["id"],
                order.get("receipt"),
            )

    logger.info(
        "Reconciled pending transactions checked=%s completed=%s failed=%s orphaned=%s",
        report.checked,
        report.completed,
        report.failed,
        report.orphaned,
    )
    return report


# ---- history / analytics ----


def get_user_transactions(
    db: Session, user: User, role: str, page: int, limit: int
) -> tuple[list[Transaction], int]:
    column = Transaction.buyer_id if role == "buyer" else Transaction.seller_id
    q = db.query(Transaction).filter(column == user.id)
    total = q.count()
    rows = (
        q.order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return rows, total


def payment_analytics(db: Session, seller_id: str | None) -> dict[str, Any]:
    base = db.query(Transaction)
    if seller_id:
        base = base.filter(Transaction.seller_id == seller_id)

    by_status = dict(
        base.with_entities(Transaction.status, func.count(Transaction.id))
        .group_by(Transaction.status)
        .all()
    )
    completed = base.filter(Transaction.status == TransactionStatus.COMPLETED.value)
    earnings = int(
        completed.with_entities(
            func.coalesce(func.sum(Transaction.seller_payout), 0)
        ).scalar()
        or 0
    )
    avg = completed.with_entities(func.avg(Transaction.amount)).scalar()
    methods = dict(
        base.filter(Transaction.payment_method.isnot(None))
        .with_entities(Transaction.payment_method, func.count(Transaction.id))
        .group_by(Transaction.payment_method)
        .all()
    )

    return {
        "total_earnings": earnings,
        "total_transactions": int(sum(by_status.values())),
        "successful_transactions": int(by_status.get("COMPLETED", 0)),
        "failed_transactions": int(by_status.get("FAILED", 0)),
        "refunded_transactions": int(by_status.get("REFUNDED", 0)),
        "pending_transactions": int(by_status.get("PENDING", 0)),
        "average_order_value": round(float(avg or 0), 2),
        "payment_methods": {k: int(v) for k, v in methods.items()},
    }
