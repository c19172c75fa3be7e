from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

from app.application.services.inbound_event_service import redact_headers
from app.domain.errors import NormalizationError
from app.integrations.providers import (
    build_test_request,
    derive_idempotency_key,
    normalize_payload,
    resolve_provider,
    verify_request,
)
from app.integrations.providers.base import BILLING_EVENT_TYPES

logger = logging.getLogger(__name__)


def run_test_event(provider: str) -> dict:
    """Dry run of a synthetic provider delivery through verification, keying and normalization.

    Nothing is written to the ledger.
    """
    resolved = resolve_provider(provider)
    headers, body = build_test_request(resolved)
    payload = json.loads(body.decode("utf-8"))
    verification = verify_request(resolved, headers, body, now=datetime.now(UTC))

    result = {
        "provider": resolved.value,
        "headers": redact_headers(headers),
        "payload": payload,
        "verification": {"verified": verification.verified, "reason": verification.reason},
        "idempotency_key": None,
        "canonical_event": None,
        "billing_effect": False,
        "error": None,
    }
    try:
        result["idempotency_key"] = derive_idempotency_key(resolved, payload, headers)
        canonical = normalize_payload(resolved, payload)
    except NormalizationError as exc:
        result["error"] = {"error_code": exc.error_code, "message": str(exc)}
        return result

    result["canonical_event"] = canonical.to_dict()
    result["billing_effect"] = canonical.event_type in BILLING_EVENT_TYPES
    logger.info(
        "test_event_run provider=%s verified=%s event_type=%s",
        resolved.value,
        verification.verified,
        canonical.event_type,
    )
    return result
