"""
Thin client over the Razorpay REST API.

Only what the purchase flow needs: create/fetch orders, list an order's
payments, refund a payment, and the two HMAC checks Razorpay uses to sign
checkout callbacks and webhook deliveries.
"""

import hashlib
import hmac
import logging
import threading
from datetime import datetime
from functools import lru_cache
from typing import Any

import requests

from vibecoder.core.config import settings
from vibecoder.core.errors import UpstreamFailure

logger = logging.getLogger("vibecoder.gateway")


class GatewayTimeout(UpstreamFailure):
    pass


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _signature_matches(expected: str, given: str | None) -> bool:
    if not given:
        return False
    return hmac.compare_digest(expected.encode("ascii"), given.strip().encode("utf-8"))


class RazorpayGateway:
    name = "RAZORPAY"

    def __init__(
        self,
        key_id: str | None,
        key_secret: str | None,
        webhook_secret: str | None = None,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._shared_session = session
        if session is not None and key_id and key_secret:
            session.auth = (key_id, key_secret)
        # requests.Session is not thread-safe; sync routes run on a threadpool
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        if self._shared_session is not None:
            return self._shared_session
        s = getattr(self._local, "session", None)
        if s is None:
            s = requests.Session()
            if self.configured:
                s.auth = (self.key_id, self.key_secret)
            self._local.session = s
        return s

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not self.configured:
            raise UpstreamFailure("Payment gateway is not configured")

        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method, url, json=payload, params=params, timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            logger.warning("Gateway timeout %s %s", method, path)
            raise GatewayTimeout("Payment gateway timed out") from e
        except requests.exceptions.RequestException as e:
            logger.warning("Gateway unreachable %s %s: %s", method, path, e)
            raise UpstreamFailure("Payment gateway unreachable") from e

        if resp.status_code >= 400:
            detail = _error_description(resp)
            logger.warning(
                "Gateway error %s %s status=%s: %s", method, path, resp.status_code, detail
            )
            raise UpstreamFailure(f"Payment gateway rejected the request: {detail}")

        return resp.json()

    # ---- orders ----

    def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            "/orders",
            {
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt,
                "notes": notes or {},
            },
        )

    def fetch_order(self, order_id: str) -> dict[str, Any]:
        return self._request("GET", f"/orders/{order_id}")

    def fetch_order_payments(self, order_id: str) -> list[dict[str, Any]]:
        body = self._request("GET", f"/orders/{order_id}/payments")
        return list(body.get("items") or [])

    def list_orders(
        self, created_from: datetime, created_to: datetime, page_size: int = 100
    ) -> list[dict[str, Any]]:
        """All orders created in the window, following Razorpay's count/skip paging."""
        orders: list[dict[str, Any]] = []
        while True:
            body = self._request(
                "GET",
                "/orders",
                params={
                    "from": int(created_from.timestamp()),
                    "to": int(created_to.timestamp()),
                    "count": page_size,
                    "skip": len(orders),
                },
            )
            page = list(body.get("items") or [])
            orders.extend(page)
            if len(page) < page_size:
                return orders

    # ---- refunds ----

    def refund_payment(
        self, payment_id: str, amount_minor: int, notes: dict[str, str] | None = None
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/payments/{payment_id}/refund",
            {"amount": amount_minor, "notes": notes or {}},
        )

    # ---- signatures ----

    def verify_payment_signature(
        self, order_id: str, payment_id: str, signature: str | None
    ) -> bool:
        """Checkout callback: HMAC-SHA256(key_secret, "<order_id>|<payment_id>")."""
        if not self.key_secret:
            return False
        expected = hmac_sha256_hex(
            self.key_secret, f"{order_id}|{payment_id}".encode("utf-8")
        )
        return _signature_matches(expected, signature)

    def verify_webhook_signature(self, body: bytes, signature: str | None) -> bool:
        """Webhook delivery: HMAC-SHA256(webhook_secret, raw request body)."""
        if not self.webhook_secret:
            return False
        return _signature_matches(hmac_sha256_hex(self.webhook_secret, body), signature)


def _error_description(resp: requests.Response) -> str:
    try:
        err = (resp.json() or {}).get("error") or {}
        return str(err.get("description") or err.get("code") or resp.status_code)
    except ValueError:
        return str(resp.status_code)


@lru_cache
def get_gateway() -> RazorpayGateway:
    return RazorpayGateway(
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=settings.RAZORPAY_KEY_SECRET,
        webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
        base_url=settings.RAZORPAY_API_BASE,
        timeout=settings.GATEWAY_TIMEOUT_SEC,
    )
