from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping, Optional
import base64
import hashlib
import hmac
import json
import logging

from .errors import InvalidSignature, MalformedEvent
from .helpers import parse_ts

log = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_PENDING = "pending"


@dataclass(frozen=True)
class PaymentEvent:
    order_id: str
    amount: int
    status: str
    payment_method: Optional[str] = None
    completed_at: Optional[float] = None


def _first(body: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        v = body.get(k)
        if v is not None and v != "":
            return v
    return None


def _amount(value: Any) -> int:
    if isinstance(value, bool):
        raise MalformedEvent("amount must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise MalformedEvent(f"amount must be an integer, got {value!r}")


def parse_event(body: Mapping[str, Any]) -> PaymentEvent:
    """
    Build a PaymentEvent from a decoded gateway notification. Accepts the
    gateway's snake_case keys and camelCase aliases.
    """
    if not isinstance(body, Mapping):
        raise MalformedEvent("event body must be a JSON object")

    order_id = _first(body, "order_id", "orderId")
    amount = _first(body, "amount")
    status = _first(body, "status")
    missing = [
        name for name, v in (
            ("order_id", order_id), ("amount", amount), ("status", status)
        ) if v is None
    ]
    if missing:
        raise MalformedEvent(f"missing required fields: {', '.join(missing)}")

    try:
        completed_at = parse_ts(_first(body, "completed_at", "completedAt"))
    except ValueError as exc:
        raise MalformedEvent(f"invalid completed_at: {exc}") from exc

    method = _first(body, "payment_method", "paymentMethod")
    return PaymentEvent(
        order_id=str(order_id),
        amount=_amount(amount),
        status=str(status).strip().lower(),
        payment_method=str(method) if method is not None else None,
        completed_at=completed_at,
    )


def sign_payload(payload: bytes, secret: str) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    # raw body + lower-cased headers -> decoded JSON object
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    @abstractmethod
    def parse(self, event: dict) -> PaymentEvent: ...


# ----------------------------
# HMAC-signed JSON webhook
# ----------------------------
class SignedJsonAdapter(PaymentAdapter):
    """
    Body is JSON; the signature header carries
    base64(HMAC-SHA256(secret, raw body)). Without a secret, verification
    is skipped.
    """

    def __init__(self, secret: Optional[str],
                 header: str = "x-webhook-signature"):
        self.secret = secret
        self.header = header.lower()

    @property
    def verifies(self) -> bool:
        return bool(self.secret)

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        if self.secret:
            sig = headers.get(self.header)
            expected = sign_payload(payload, self.secret)
            if not sig or not hmac.compare_digest(expected, sig):
                raise InvalidSignature("invalid signature")
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedEvent("invalid JSON") from exc
        if not isinstance(event, dict):
            raise MalformedEvent("event body must be a JSON object")
        return event

    def parse(self, event: dict) -> PaymentEvent:
        return parse_event(event)
