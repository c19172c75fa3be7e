import json
import logging
from datetime import UTC, datetime

from app.infrastructure.logging.context import get_correlation_id, get_request_id

# Passed through ``extra=`` by pipeline code that wants them as first-class fields.
PIPELINE_FIELDS = ("provider", "event_id", "domain_event_id", "delivery_id", "subscription_id")


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": get_request_id(),
            "correlation_id": get_correlation_id(),
        }
        for field_name in PIPELINE_FIELDS:
            value = getattr(record, field_name, None)
            if value is not None:
                payload[field_name] = str(value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)
