import logging
from collections.abc import Mapping
from datetime import UTC, datetime

from app.core.config import settings
from app.domain.errors import UnknownProviderError
from app.domain.models.inbound_event import Provider
from app.integrations.providers import caktor, generic, hotmart, kiwify, stripe
from app.integrations.providers.base import CanonicalEvent, ProviderAdapter, VerificationResult

logger = logging.getLogger(__name__)

_ADAPTERS: dict[Provider, ProviderAdapter] = {
    Provider.HOTMART: hotmart.ADAPTER,
    Provider.KIWIFY: kiwify.ADAPTER,
    Provider.CAKTOR: caktor.ADAPTER,
    Provider.STRIPE: stripe.ADAPTER,
    Provider.GENERIC: generic.ADAPTER,
}


def resolve_provider(value: str) -> Provider:
    try:
        return Provider(str(value).strip().lower())
    except ValueError as exc:
        raise UnknownProviderError(f"Unknown webhook provider '{value}'") from exc


def get_provider_adapter(provider: str | Provider) -> ProviderAdapter:
    return _ADAPTERS[resolve_provider(provider)]


def configured_secret(provider: str | Provider) -> str | None:
    resolved = resolve_provider(provider)
    return {
        Provider.HOTMART: settings.hotmart_webhook_token,
        Provider.KIWIFY: settings.kiwify_webhook_secret,
        Provider.CAKTOR: settings.caktor_webhook_secret,
        Provider.STRIPE: settings.stripe_webhook_secret,
        Provider.GENERIC: settings.generic_webhook_secret,
    }[resolved]


def _tolerance_seconds(provider: Provider) -> int:
    if provider == Provider.STRIPE:
        return settings.stripe_webhook_tolerance_seconds
    return settings.webhook_replay_window_seconds


def verify_request(
    provider: str | Provider,
    headers: Mapping[str, str],
    body: bytes,
    *,
    now: datetime | None = None,
    secret: str | None = None,
) -> VerificationResult:
    resolved = resolve_provider(provider)
    adapter = _ADAPTERS[resolved]
    result = adapter.verify(
        headers,
        body,
        secret if secret is not None else configured_secret(resolved),
        now=now or datetime.now(UTC),
        tolerance_seconds=_tolerance_seconds(resolved),
    )
    if not result.verified:
        logger.warning("webhook_verification_failed provider=%s reason=%s", resolved.value, result.reason)
    return result


def normalize_payload(provider: str | Provider, payload: dict) -> CanonicalEvent:
    return get_provider_adapter(provider).normalize(payload)


def derive_idempotency_key(provider: str | Provider, payload: dict, headers: Mapping[str, str]) -> str:
    return get_provider_adapter(provider).derive_idempotency_key(payload, headers)


def build_test_request(provider: str | Provider) -> tuple[dict[str, str], bytes]:
    return get_provider_adapter(provider).build_test_request(configured_secret(provider))
