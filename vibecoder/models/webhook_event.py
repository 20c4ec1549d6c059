import uuid
from datetime import datetime
from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from vibecoder.db.base import Base


class GatewayWebhookEvent(Base):
    __tablename__ = "gateway_webhook_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # X-Razorpay-Event-Id, or sha256 of the raw body when the header is absent
    event_id: Mapped[str] = mapped_column(
        String(120), unique=True, index=True, nullable=False
    )
    event_type: Mapped[str | None] = mapped_column(String(64), nullable=True)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    status: Mapped[str] = mapped_column(
        String(24), nullable=False, server_default="received"
    )  # received|processed|ignored|error
    error: Mapped[str | None] = mapped_column(String(400), nullable=True)
