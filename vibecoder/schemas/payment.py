from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from vibecoder.schemas.common import CamelModel, Pagination

PaymentMethodIn = Literal["CARD", "UPI", "NETBANKING", "WALLET", "EMI"]


class CreateOrderIn(CamelModel):
    project_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    description: str | None = Field(default=None, max_length=400)


# Razorpay checkout hands these back verbatim, so keep its field names.
class VerifyPaymentIn(BaseModel):
    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)
    payment_method: PaymentMethodIn | None = None


class PaymentFailureIn(BaseModel):
    order_id: str = Field(min_length=1)
    payment_id: str | None = None
    error_code: str | None = None
    error_description: str | None = None


class RefundIn(CamelModel):
    transaction_id: str = Field(min_length=1)
    amount: int | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=400)


class OrderOut(CamelModel):
    id: str
    amount: int
    currency: str
    receipt: str | None = None


class TransactionBrief(CamelModel):
    id: str
    amount: int
    status: str
    project_id: str


class CreateOrderOut(CamelModel):
    order: OrderOut
    transaction: TransactionBrief
    gateway_key_id: str | None


class TransactionOut(CamelModel):
    id: str
    project_id: str
    buyer_id: str
    seller_id: str
    amount: int
    currency: str
    status: str
    payment_method: str | None
    gateway_order_id: str
    gateway_payment_id: str | None
    platform_fee: int
    seller_payout: int
    refund_amount: int | None
    created_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None
    refunded_at: datetime | None


class TransactionResult(CamelModel):
    transaction: TransactionOut


class RefundOut(CamelModel):
    transaction_id: str
    amount: int
    original_amount: int
    status: str
    reason: str | None
    gateway_refund_id: str | None
    refunded_at: datetime | None


class RefundResult(CamelModel):
    refund: RefundOut


class TransactionPage(CamelModel):
    transactions: list[TransactionOut]
    pagination: Pagination


class PaymentAnalyticsOut(CamelModel):
    total_earnings: int
    total_transactions: int
    successful_transactions: int
    failed_transactions: int
    refunded_transactions: int
    pending_transactions: int
    average_order_value: float
    payment_methods: dict[str, int]


class ReconcileOut(CamelModel):
    checked: int
    completed: int
    failed: int
    unchanged: int
    orphaned: int
    orphaned_paid: int
