from __future__ import annotations

import pytest

from jamf_bridge.common.errors import ApiRequestError, ConflictExceeded
from jamf_bridge.resilience.conflict import ConflictRetryPolicy

from .conftest import FakeJamf, make_client


def _flaky_write(conflicts: int, *, status: int = 409):
    calls = {"n": 0}

    async def write() -> str:
        calls["n"] += 1
        if calls["n"] <= conflicts:
            raise ApiRequestError(method="PUT", path="/api/v1/policies/7", status_code=status)
        return "ok"

    return write, calls


async def _no_sleep(_: float) -> None:
    return None


@pytest.mark.asyncio
async def test_two_conflicts_then_success_within_budget():
    write, calls = _flaky_write(2)
    policy = ConflictRetryPolicy(max_retries=2, retry_delay_s=0.5)
    assert await policy.run(write, sleep=_no_sleep) == "ok"
    assert calls["n"] == 3


@pytest.mark.asyncio
async def test_conflicts_past_budget_raise_conflict_exceeded_with_last_error():
    write, calls = _flaky_write(2)
    policy = ConflictRetryPolicy(max_retries=1, retry_delay_s=0.5)
    with pytest.raises(ConflictExceeded) as excinfo:
        await policy.run(write, sleep=_no_sleep)

    assert calls["n"] == 2
    assert excinfo.value.attempts == 2
    assert excinfo.value.last_error.status_code == 409
    assert excinfo.value.message == excinfo.value.last_error.message


@pytest.mark.asyncio
async def test_non_conflict_errors_propagate_immediately():
    write, calls = _flaky_write(1, status=400)
    slept: list[float] = []

    async def sleep(s: float) -> None:
        slept.append(s)

    with pytest.raises(ApiRequestError) as excinfo:
        await ConflictRetryPolicy(max_retries=5).run(write, sleep=sleep)
    assert excinfo.value.status_code == 400
    assert calls["n"] == 1
    assert slept == []


@pytest.mark.asyncio
async def test_delay_is_applied_between_conflict_attempts():
    write, _ = _flaky_write(2)
    slept: list[float] = []

    async def sleep(s: float) -> None:
        slept.append(s)

    await ConflictRetryPolicy(max_retries=3, retry_delay_s=0.25).run(write, sleep=sleep)
    assert slept == [0.25, 0.25]


@pytest.mark.asyncio
async def test_update_retries_conflicts_end_to_end(fake_jamf: FakeJamf):
    rid = fake_jamf.seed("policy", {"name": "Nightly", "enabled": False})
    fake_jamf.pending_conflicts = 2
    async with make_client(fake_jamf, JAMF_CONFLICT_RETRY_MAX=2) as client:
        resp = await client.update("policy", rid, {"enabled": True})

    assert resp.success, resp.error
    assert len(fake_jamf.calls_to(f"/api/v1/policies/{rid}", "PUT")) == 3
    assert fake_jamf.resources[("policy", rid)]["enabled"] is True


@pytest.mark.asyncio
async def test_update_conflict_exhaustion_surfaces_in_envelope(fake_jamf: FakeJamf):
    rid = fake_jamf.seed("policy", {"name": "Nightly"})
    fake_jamf.pending_conflicts = 5
    async with make_client(fake_jamf, JAMF_CONFLICT_RETRY_MAX=1) as client:
        resp = await client.update("policy", rid, {"name": "Weekly"})

    assert resp.success is False
    assert resp.error.code == "CONFLICT_EXCEEDED"
    assert resp.error.status_code == 409
    # Conflicts are business rejections: no Legacy fallback.
    assert not fake_jamf.calls_to("/JSSResource/policies", "PUT")
