import logging
from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from vibecoder.core.admin import require_admin, require_seller_or_admin
from vibecoder.core.deps import get_current_user
from vibecoder.core.gateway import RazorpayGateway, get_gateway
from vibecoder.db.session import get_db
from vibecoder.models.transaction import Transaction
from vibecoder.models.user import User, UserRole
from vibecoder.schemas.common import Envelope, paginate
from vibecoder.schemas.payment import (
    CreateOrderIn,
    CreateOrderOut,
    OrderOut,
    PaymentAnalyticsOut,
    PaymentFailureIn,
    ReconcileOut,
    RefundIn,
    RefundOut,
    RefundResult,
    TransactionBrief,
    TransactionOut,
    TransactionPage,
    TransactionResult,
    VerifyPaymentIn,
)
from vibecoder.services import payments

logger = logging.getLogger("vibecoder.routers.payments")
router = APIRouter(prefix="/payments", tags=["payments"])


def _tx_result(tx: Transaction) -> TransactionResult:
    return TransactionResult(transaction=TransactionOut.model_validate(tx))


@router.post("/orders", response_model=Envelope[CreateOrderOut], status_code=201)
def create_order(
    payload: CreateOrderIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    order, tx = payments.create_payment_order(
        db,
        gateway,
        project_id=payload.project_id,
        buyer=user,
        amount=payload.amount,
        currency=payload.currency,
        description=payload.description,
    )
    return Envelope(
        message="Payment order created successfully",
        data=CreateOrderOut(
            order=OrderOut(
                id=order["id"],
                amount=int(order.get("amount") or payments.to_minor_units(tx.amount)),
                currency=order.get("currency") or tx.currency,
                receipt=order.get("receipt") or tx.receipt_id,
            ),
            transaction=TransactionBrief.model_validate(tx),
            gateway_key_id=gateway.key_id,
        ),
    )


@router.post("/verify", response_model=Envelope[TransactionResult])
def verify_payment(
    payload: VerifyPaymentIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    tx = payments.process_successful_payment(
        db,
        gateway,
        payload.razorpay_order_id,
        payload.razorpay_payment_id,
        payload.razorpay_signature,
        payload.payment_method,
        actor=user,
    )
    return Envelope(message="Payment verified successfully", data=_tx_result(tx))


@router.post("/failure", response_model=Envelope[TransactionResult])
def report_failure(
    payload: PaymentFailureIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    tx = payments.process_failed_payment(
        db,
        payload.order_id,
        payload.payment_id,
        payload.error_code,
        payload.error_description,
        actor=user,
    )
    return Envelope(message="Payment failure recorded", data=_tx_result(tx))


@router.get("/orders/{order_id}/status", response_model=Envelope[TransactionResult])
def order_status(
    order_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    tx = payments.get_payment_status(db, order_id, user)
    return Envelope(message="Payment status retrieved successfully", data=_tx_result(tx))


@router.get("/transactions", response_model=Envelope[TransactionPage])
def transaction_history(
    type: Literal["buyer", "seller"] = Query("buyer"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    rows, total = payments.get_user_transactions(db, user, type, page, limit)
    return Envelope(
        message="Transaction history retrieved successfully",
        data=TransactionPage(
            transactions=[TransactionOut.model_validate(r) for r in rows],
            pagination=paginate(page, limit, total),
        ),
    )


@router.get("/analytics", response_model=Envelope[PaymentAnalyticsOut])
def analytics(
    db: Session = Depends(get_db),
    user: User = Depends(require_seller_or_admin),
):
    seller_id = None if user.role == UserRole.ADMIN else user.id
    return Envelope(
        message="Payment analytics retrieved successfully",
        data=PaymentAnalyticsOut(**payments.payment_analytics(db, seller_id)),
    )


@router.post("/refund", response_model=Envelope[RefundResult])
def refund(
    payload: RefundIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    tx = payments.initiate_refund(
        db, gateway, payload.transaction_id, payload.amount, payload.reason
    )
    logger.info("Refund by admin=%s tx=%s", admin.id, tx.id)
    return Envelope(
        message="Refund initiated successfully",
        data=RefundResult(
            refund=RefundOut(
                transaction_id=tx.id,
                amount=tx.refund_amount,
                original_amount=tx.amount,
                status=tx.status,
                reason=tx.refund_reason,
                gateway_refund_id=tx.gateway_refund_id,
                refunded_at=tx.refunded_at,
            )
        ),
    )


@router.post("/reconcile", response_model=Envelope[ReconcileOut])
def reconcile(
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    report = payments.reconcile_pending_transactions(db, gateway)
    return Envelope(
        message="Pending transactions reconciled",
        data=ReconcileOut(
            checked=report.checked,
            completed=report.completed,
            failed=report.failed,
            unchanged=report.unchanged,
            orphaned=report.orphaned,
            orphaned_paid=report.orphaned_paid,
        ),
    )
