import hashlib
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vibecoder.core.clock import utcnow
from vibecoder.core.errors import AppError
from vibecoder.core.gateway import RazorpayGateway, get_gateway
from vibecoder.db.session import get_db
from vibecoder.models.webhook_event import GatewayWebhookEvent
from vibecoder.services.payments import apply_webhook_event

logger = logging.getLogger("vibecoder.webhooks")
router = APIRouter(prefix="/payments", tags=["webhooks"])


def _mark_event(db: Session, event_id: str, status_: str, error: str | None = None):
    db.query(GatewayWebhookEvent).filter(GatewayWebhookEvent.event_id == event_id).update(
        {"status": status_, "processed_at": utcnow(), "error": error}
    )
    db.commit()


@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    if not gateway.webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook not configured",
        )
    # 1) raw payload; the signature covers these exact bytes
    payload = await request.body()
    sig_header = request.headers.get("x-razorpay-signature")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing X-Razorpay-Signature")

    # 2) verify signature
    if not gateway.verify_webhook_signature(payload, sig_header):
        logger.warning("Webhook signature mismatch")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook payload")

    event_id = (
        request.headers.get("x-razorpay-event-id")
        or hashlib.sha256(payload).hexdigest()
    )
    event_type = event.get("event")

    # 3) idempotency: store event_id with unique constraint
    try:
        db.add(
            GatewayWebhookEvent(
                event_id=event_id, event_type=event_type, status="received"
            )
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        # already processed (or being processed); acknowledge to stop retries
        return {"success": True, "duplicate": True}

    # 4) apply; always acknowledge so the gateway does not retry-storm
    try:
        outcome, error = apply_webhook_event(db, event)
    except AppError as e:
        db.rollback()
        outcome, error = "error", e.message
    except Exception as e:
        db.rollback()
        logger.exception("Webhook %s processing failed", event_id)
        outcome, error = "error", str(e)

    _mark_event(db, event_id, outcome, error[:400] if error else None)
    logger.info("Webhook %s type=%s outcome=%s", event_id, event_type, outcome)

    body = {"success": True}
    if outcome == "ignored":
        body["ignored"] = True
    return body
