import json
import logging
from uuid import uuid4

from app.infrastructure.logging.context import reset_correlation_id, set_correlation_id
from app.infrastructure.logging.json_formatter import JsonLogFormatter


def _record(message: str, *args, **extra) -> logging.LogRecord:
    record = logging.LogRecord("app.pipeline", logging.WARNING, __file__, 1, message, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_pipeline_fields_and_correlation():
    event_id = uuid4()
    token = set_correlation_id("evt-correlation")
    try:
        line = JsonLogFormatter().format(_record("webhook_received provider=%s", "kiwify", provider="kiwify", event_id=event_id))
    finally:
        reset_correlation_id(token)

    payload = json.loads(line)
    assert payload["message"] == "webhook_received provider=kiwify"
    assert payload["level"] == "WARNING"
    assert payload["logger"] == "app.pipeline"
    assert payload["correlation_id"] == "evt-correlation"
    assert payload["provider"] == "kiwify"
    assert payload["event_id"] == str(event_id)
    assert "delivery_id" not in payload
