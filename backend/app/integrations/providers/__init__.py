from app.integrations.providers.base import (
    CanonicalEvent,
    CanonicalEventType,
    ProviderAdapter,
    VerificationResult,
)
from app.integrations.providers.registry import (
    build_test_request,
    configured_secret,
    derive_idempotency_key,
    get_provider_adapter,
    normalize_payload,
    resolve_provider,
    verify_request,
)

__all__ = [
    "CanonicalEvent",
    "CanonicalEventType",
    "ProviderAdapter",
    "VerificationResult",
    "build_test_request",
    "configured_secret",
    "derive_idempotency_key",
    "get_provider_adapter",
    "normalize_payload",
    "resolve_provider",
    "verify_request",
]
