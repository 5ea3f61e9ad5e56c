from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict

import requests
from django.conf import settings
from django.utils.module_loading import import_string

from core.errors import ExternalServiceFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str
    raw_response: Dict[str, Any]


class BasePaymentGateway:
    provider_code: str = "base"

    def refund(self, order) -> RefundResult:  # pragma: no cover - interface
        raise NotImplementedError


class HttpPaymentGateway(BasePaymentGateway):
    provider_code = "http"

    def __init__(self, base_url: str = None, secret_key: str = None, timeout: int = None):
        self.base_url = settings.PAYMENT_GATEWAY_BASE_URL if base_url is None else base_url
        self.secret_key = settings.PAYMENT_GATEWAY_SECRET_KEY if secret_key is None else secret_key
        self.timeout = settings.PAYMENT_GATEWAY_TIMEOUT if timeout is None else timeout

    def refund(self, order) -> RefundResult:
        payload = {
            "reference": order.reference,
            "amount": str(order.total_amount),
            "reason": f"Order #{order.reference} cancelled",
        }

        # Without a configured gateway keep a deterministic mock flow for local/dev.
        if not self.base_url:
            refund_id = f"MOCK-RF-{uuid.uuid4().hex[:12].upper()}"
            logger.info("Mock refund %s for order=%s", refund_id, order.reference)
            return RefundResult(refund_id=refund_id, status="SUCCESS", raw_response={"mock": True, **payload})

        headers = {"Content-Type": "application/json"}
        if self.secret_key:
            headers["Authorization"] = f"Bearer {self.secret_key}"

        try:
            response = requests.post(
                f"{self.base_url.rstrip('/')}/refunds",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ExternalServiceFailure(f"Refund request failed: {exc}") from exc

        if not response.ok:
            try:
                details = response.json()
            except ValueError:
                details = {"text": response.text}
            raise ExternalServiceFailure(f"Refund rejected by gateway: {details}")

        data = response.json()
        logger.info("Refund accepted for order=%s", order.reference)
        return RefundResult(
            refund_id=str(data.get("refund_id") or data.get("id") or ""),
            status=str(data.get("status") or "SUCCESS").upper(),
            raw_response=data,
        )


def get_payment_gateway() -> BasePaymentGateway:
    return import_string(settings.PAYMENT_GATEWAY_CLASS)()
