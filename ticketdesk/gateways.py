from abc import ABC, abstractmethod
from typing import Optional, Tuple
import hashlib
import hmac
import json
import logging

from .errors import InvalidSignature, ValidationError

logger = logging.getLogger(__name__)


# ----------------------------
# Payment Gateway Adapter Interface
# ----------------------------
class GatewayAdapter(ABC):
    name: str
    signature_header: str

    def __init__(self, secret: str) -> None:
        self.secret = secret

    def sign(self, payload: bytes) -> str:
        return hmac.new(
            self.secret.encode(), payload, hashlib.sha512
        ).hexdigest()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        """Check the HMAC over the raw body, then parse it. Nothing else
        may look at the payload before this returns."""
        sig = headers.get(self.signature_header)
        if not self.secret or not sig:
            logger.warning("%s webhook without signature or secret", self.name)
            raise InvalidSignature()
        if not hmac.compare_digest(self.sign(payload), sig.strip().lower()):
            logger.warning("%s webhook signature mismatch", self.name)
            raise InvalidSignature()
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationError("Invalid JSON")
        if not isinstance(event, dict):
            raise ValidationError("Invalid webhook payload")
        return event

    # "succeeded" | "failed" | "ignored"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (reference, failure reason)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...


# ----------------------------
# Paystack
# ----------------------------
class Paystack(GatewayAdapter):
    name = "paystack"
    signature_header = "x-paystack-signature"

    def event_kind(self, event: dict) -> str:
        return {
            "charge.success": "succeeded",
            "charge.failed": "failed",
        }.get(event.get("event", ""), "ignored")

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        data = event.get("data") or {}
        return (
            data.get("reference", ""),
            data.get("gateway_response"),
        )


# ----------------------------
# OPay
# ----------------------------
class OPay(GatewayAdapter):
    name = "opay"
    signature_header = "signature"

    def event_kind(self, event: dict) -> str:
        return {
            "SUCCESS": "succeeded",
            "FAILED": "failed",
        }.get(event.get("status", ""), "ignored")

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
            event.get("reference", ""),
            event.get("failureReason") or event.get("message"),
        )
