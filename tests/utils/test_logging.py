import json
import logging

from cortex_pathways.config.settings import LoggingSettings
from cortex_pathways.utils.logging import (
    JsonFormatter,
    bind_request_id,
    configure_logging,
    get_request_id,
    reset_request_id,
)


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("pathways", logging.INFO, __file__, 1, "processed", (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_scrubs_nested_fields():
    formatter = JsonFormatter(scrub_fields=["api-key"])
    payload = json.loads(
        formatter.format(_record(headers={"api-key": "secret", "accept": "json"}, detail="ok"))
    )
    assert payload["message"] == "processed"
    assert payload["headers"] == {"api-key": "***", "accept": "json"}
    assert payload["detail"] == "ok"


def test_bind_and_reset_request_id():
    assert get_request_id() is None
    token = bind_request_id("req-1")
    assert get_request_id() == "req-1"
    payload = json.loads(JsonFormatter().format(_record()))
    assert payload["request_id"] == "req-1"
    reset_request_id(token)
    assert get_request_id() is None


def test_structured_logging_includes_request_id(caplog):
    configure_logging(settings=LoggingSettings(scrub_fields=["token"]))
    token = bind_request_id("req-123")
    logging.getLogger("pathways").info("processed", extra={"token": "super-secret"})
    reset_request_id(token)
    assert '"request_id": "req-123"' in caplog.text
    assert '"token": "***"' in caplog.text
