from __future__ import annotations

import hashlib
import hmac
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum

from app.domain.errors import NormalizationError, VerificationError

CENTS = Decimal("0.01")


class CanonicalEventType(StrEnum):
    PURCHASE_APPROVED = "purchase_approved"
    SUBSCRIPTION_CREATED = "subscription_created"
    PAYMENT_FAILED = "payment_failed"
    REFUND = "refund"
    CHARGEBACK = "chargeback"
    CANCELLATION = "cancellation"
    CHECKOUT_STARTED = "checkout_started"
    UNMAPPED = "unmapped"


ACTIVATION_EVENT_TYPES = {
    CanonicalEventType.PURCHASE_APPROVED.value,
    CanonicalEventType.SUBSCRIPTION_CREATED.value,
}
REVOCATION_EVENT_TYPES = {
    CanonicalEventType.REFUND.value,
    CanonicalEventType.CHARGEBACK.value,
    CanonicalEventType.CANCELLATION.value,
}
BILLING_EVENT_TYPES = ACTIVATION_EVENT_TYPES | REVOCATION_EVENT_TYPES


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    reason: str | None = None


@dataclass(frozen=True)
class CanonicalEvent:
    event_type: str
    provider_event_type: str
    customer_email: str | None
    customer_name: str | None
    external_order_id: str | None
    external_subscription_id: str | None
    plan_identifier: str | None
    amount: Decimal | None
    currency: str | None
    occurred_at: datetime | None

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["amount"] = str(self.amount) if self.amount is not None else None
        payload["occurred_at"] = self.occurred_at.isoformat() if self.occurred_at is not None else None
        return payload


@dataclass(frozen=True)
class ProviderAdapter:
    provider: str
    verify: Callable[..., VerificationResult]
    normalize: Callable[[dict], CanonicalEvent]
    derive_idempotency_key: Callable[[dict, Mapping[str, str]], str]
    build_test_request: Callable[[str | None], tuple[dict[str, str], bytes]]


def header(headers: Mapping[str, str], *names: str) -> str | None:
    lowered = {str(key).lower(): value for key, value in headers.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def hmac_sha256_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_hmac_hex_signature(*, secret: str | None, signature: str | None, body: bytes) -> VerificationResult:
    if not secret:
        return VerificationResult(verified=False, reason="secret_not_configured")
    if not signature:
        return VerificationResult(verified=False, reason="missing_signature")
    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac_sha256_hex(secret, body)
    if not hmac.compare_digest(expected, provided.lower()):
        return VerificationResult(verified=False, reason="invalid_signature")
    return VerificationResult(verified=True)


def verify_static_token(*, secret: str | None, provided: str | None) -> VerificationResult:
    if not secret:
        return VerificationResult(verified=False, reason="secret_not_configured")
    if not provided:
        return VerificationResult(verified=False, reason="missing_signature")
    if not hmac.compare_digest(secret.encode("utf-8"), provided.encode("utf-8")):
        return VerificationResult(verified=False, reason="invalid_signature")
    return VerificationResult(verified=True)


def check_millisecond_timestamp(raw: str | None, *, now: datetime, tolerance_seconds: int) -> None:
    """Replay guard for providers that send an epoch-milliseconds timestamp header."""
    if raw is None:
        return
    try:
        sent_at_ms = int(raw)
    except ValueError as exc:
        raise VerificationError("Invalid timestamp header", error_code="invalid_timestamp") from exc
    age_seconds = abs(now.timestamp() * 1000 - sent_at_ms) / 1000
    if age_seconds > max(1, tolerance_seconds):
        raise VerificationError("Timestamp outside replay window", error_code="stale_timestamp")


def fallback_idempotency_key(order_id: str, event_type: str) -> str:
    return hashlib.sha256(f"{order_id}|{event_type}".encode("utf-8")).hexdigest()


def as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def clean_str(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def clean_email(value) -> str | None:
    text = clean_str(value)
    return text.lower() if text else None


def decimal_amount(value) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(CENTS)
    except InvalidOperation as exc:
        raise NormalizationError(f"Unparseable amount: {value!r}", error_code="invalid_amount") from exc


def minor_units_amount(value) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return (Decimal(int(str(value))) / 100).quantize(CENTS)
    except (InvalidOperation, ValueError) as exc:
        raise NormalizationError(f"Unparseable minor-unit amount: {value!r}", error_code="invalid_amount") from exc


def parse_timestamp(value) -> datetime | None:
    """Accepts ISO-8601 strings, epoch seconds or epoch milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        number = float(value)
        if number > 10**11:
            number = number / 1000
        return datetime.fromtimestamp(number, tz=UTC)
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def upper_currency(value) -> str | None:
    text = clean_str(value)
    return text.upper() if text else None


def require_object(payload) -> dict:
    if not isinstance(payload, dict):
        raise NormalizationError("Payload must be a JSON object", error_code="invalid_shape")
    return payload


FLAT_EVENT_TYPE_MAP = {
    "purchase.completed": CanonicalEventType.PURCHASE_APPROVED,
    "purchase.approved": CanonicalEventType.PURCHASE_APPROVED,
    "payment.succeeded": CanonicalEventType.PURCHASE_APPROVED,
    "subscription.renewed": CanonicalEventType.PURCHASE_APPROVED,
    "subscription.created": CanonicalEventType.SUBSCRIPTION_CREATED,
    "payment.failed": CanonicalEventType.PAYMENT_FAILED,
    "purchase.refunded": CanonicalEventType.REFUND,
    "refund.created": CanonicalEventType.REFUND,
    "purchase.chargeback": CanonicalEventType.CHARGEBACK,
    "chargeback.created": CanonicalEventType.CHARGEBACK,
    "subscription.canceled": CanonicalEventType.CANCELLATION,
    "subscription.cancelled": CanonicalEventType.CANCELLATION,
    "checkout.started": CanonicalEventType.CHECKOUT_STARTED,
}


def normalize_flat_payload(payload: dict, *, provider_event_type: str, event_type_map: Mapping) -> CanonicalEvent:
    """Shared shape: ``{event_type, id, created_at, data: {customer_email, amount, ...}}``."""
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise NormalizationError("'data' must be an object", error_code="invalid_shape")
    event_type = event_type_map.get(provider_event_type, CanonicalEventType.UNMAPPED)
    return CanonicalEvent(
        event_type=event_type.value,
        provider_event_type=provider_event_type,
        customer_email=clean_email(data.get("customer_email") or as_dict(data.get("customer")).get("email")),
        customer_name=clean_str(data.get("customer_name") or as_dict(data.get("customer")).get("name")),
        external_order_id=clean_str(data.get("order_id") or data.get("transaction_id")),
        external_subscription_id=clean_str(data.get("subscription_id")),
        plan_identifier=clean_str(data.get("plan_slug") or data.get("product_id")),
        amount=decimal_amount(data.get("amount")),
        currency=upper_currency(data.get("currency")),
        occurred_at=parse_timestamp(payload.get("created_at") or payload.get("timestamp")),
    )
