import json
import logging

from jamf_bridge.common.logging import (
    JsonLogFormatter,
    bind_request_id,
    describe_payload,
    get_request_id,
    log_event,
)


def _record(logger_name: str = "jamf_bridge.test", **extra) -> logging.LogRecord:
    record = logging.LogRecord(logger_name, logging.INFO, __file__, 1, "write.sent", None, None)
    for k, v in extra.items():
        setattr(record, k, v)
    return record


def test_formatter_emits_core_fields_and_redacts_secrets():
    fmt = JsonLogFormatter(service="jamf-bridge", env="test", version="1.0")
    line = fmt.format(
        _record(event_type="write.sent", password="pw", script_contents="echo hi", fields=["name"], field_count=1)
    )
    out = json.loads(line)

    for k in ("timestamp", "severity", "service", "env", "version", "request_id", "event_type", "message", "logger"):
        assert k in out
    assert out["service"] == "jamf-bridge"
    assert out["event_type"] == "write.sent"
    assert out["password"] == "***REDACTED***"
    assert out["script_contents"] == "***REDACTED***"
    assert out["fields"] == ["name"]
    assert "echo hi" not in line


def test_request_id_is_bound_for_the_block():
    assert get_request_id() is None
    with bind_request_id(request_id="abc") as rid:
        assert rid == "abc"
        out = json.loads(JsonLogFormatter(service="s", env="e", version="v").format(_record()))
        assert out["request_id"] == "abc"
    assert get_request_id() is None

    with bind_request_id() as generated:
        assert len(generated) == 32


def test_describe_payload_keeps_names_only():
    summary = describe_payload({"script_contents": "rm -rf /", "name": "x"})
    assert summary == {"fields": ["name", "script_contents"], "field_count": 2}
    assert describe_payload(None) == {"fields": [], "field_count": 0}


def test_log_event_sets_event_type_and_level(caplog):
    caplog.set_level(logging.DEBUG)
    log_event(logging.getLogger("jamf_bridge.test"), "retry.scheduled", severity="WARNING", attempt=2)

    rec = caplog.records[-1]
    assert rec.levelno == logging.WARNING
    assert rec.event_type == "retry.scheduled"
    assert rec.attempt == 2
