import pytest

from jamf_bridge.common.config import Settings
from jamf_bridge.common.errors import ConfigurationError, WriteDisabled
from jamf_bridge.common.write_guard import WriteGuard

from .conftest import make_settings


def test_url_is_stripped_and_alias_accepted(monkeypatch):
    monkeypatch.delenv("JAMF_URL", raising=False)
    monkeypatch.setenv("JAMF_BASE_URL", " https://jamf.example.test/ ")
    s = Settings(_env_file=None)
    assert s.base_url == "https://jamf.example.test"


def test_durations_are_exposed_in_seconds():
    s = make_settings(JAMF_CONFLICT_RETRY_DELAY_MS=250, JAMF_VERIFY_DELAY_MS=1500, JAMF_CIRCUIT_RESET_TIMEOUT_MS=60000)
    assert s.conflict_retry_delay_s == 0.25
    assert s.verify_delay_s == 1.5
    assert s.circuit_reset_timeout_s == 60.0


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({}, (False, None)),
        ({"JAMF_READ_ONLY": True}, (True, "env:JAMF_READ_ONLY")),
        ({"MCP_MODE": True}, (True, "automation:MCP_MODE")),
        ({"MCP_MODE": True, "JAMF_WRITE_ENABLED": False}, (True, "automation:MCP_MODE")),
        ({"MCP_MODE": True, "JAMF_WRITE_ENABLED": True}, (False, None)),
        ({"MCP_MODE": True, "JAMF_WRITE_ENABLED": True, "JAMF_READ_ONLY": True}, (True, "env:JAMF_READ_ONLY")),
    ],
)
def test_read_only_state_sources(overrides, expected):
    assert make_settings(**overrides).read_only_state() == expected


def test_env_flags_are_parsed(monkeypatch):
    monkeypatch.setenv("JAMF_READ_ONLY", "true")
    s = Settings(_env_file=None, JAMF_URL="https://jamf.example.test")
    assert s.read_only is True


def test_validate_for_client_rejects_bad_configs():
    with pytest.raises(ConfigurationError, match="JAMF_URL is not set"):
        make_settings(JAMF_URL="").validate_for_client()
    with pytest.raises(ConfigurationError, match="http"):
        make_settings(JAMF_URL="jamf.example.test").validate_for_client()

    only_basic = make_settings(JAMF_CLIENT_ID=None, JAMF_CLIENT_SECRET=None)
    only_basic.validate_for_client()
    assert only_basic.has_oauth2 is False
    assert only_basic.has_basic_auth is True


def test_secrets_do_not_render_in_repr():
    s = make_settings()
    assert "client-secret-value" not in repr(s)
    assert "hunter2-password" not in repr(s)


def test_write_guard_blocks_with_source():
    guard = WriteGuard.from_settings(make_settings(MCP_MODE=True))
    with pytest.raises(WriteDisabled) as excinfo:
        guard.require_writable(operation="update policy", context={"resource_id": "7"})
    assert "automation:MCP_MODE" in excinfo.value.message

    WriteGuard.from_settings(make_settings()).require_writable(operation="update policy")
