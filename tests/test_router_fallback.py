"""
Dual-path routing against the fake backend: Modern first, Legacy on
404/501/transport failure, never on business rejections.
"""

from __future__ import annotations

import logging

import httpx
import pytest

from jamf_bridge.client import JamfBridgeClient
from jamf_bridge.common.logging import JsonLogFormatter

from .conftest import FakeJamf, make_client, make_settings

SCRIPT_BODY = "#!/bin/bash\necho CANARY-SCRIPT-BODY-7f3a\n"


def _rendered_logs(caplog) -> str:
    fmt = JsonLogFormatter(service="test", env="test", version="test")
    return "\n".join(fmt.format(r) for r in caplog.records)


@pytest.mark.asyncio
async def test_script_create_falls_back_to_legacy_and_reads_back(fake_jamf: FakeJamf, caplog):
    caplog.set_level(logging.DEBUG)
    fake_jamf.modern_types.discard("script")

    async with make_client(fake_jamf) as client:
        resp = await client.create(
            "script",
            {"name": "Rosetta", "priority": "before", "script_contents": SCRIPT_BODY},
        )

    assert resp.success, resp.error
    assert resp.data.served_by == "legacy"
    assert resp.data.id == "1"
    assert resp.data.fields["script_contents"] == SCRIPT_BODY
    assert resp.data.fields["priority"] == "Before"
    assert resp.data.verification["verified"] is True

    modern_post = fake_jamf.calls_to("/api/v1/scripts", "POST")
    legacy_post = fake_jamf.calls_to("/JSSResource/scripts/id/0", "POST")
    assert len(modern_post) == 1 and len(legacy_post) == 1
    assert legacy_post[0].headers["content-type"] == "application/xml"

    xml_reads = [c for c in fake_jamf.calls_to("/JSSResource/scripts/id/1", "GET") if "xml" in c.accept]
    assert xml_reads
    assert all(c.headers.get("cache-control") == "no-cache" and "_ts" in c.params for c in xml_reads)

    stored = fake_jamf.resources[("script", "1")]
    assert stored["script_contents"] == SCRIPT_BODY

    logs = _rendered_logs(caplog)
    assert "CANARY-SCRIPT-BODY" not in logs
    assert "route.fallback" in logs
    assert "script_contents" in logs  # field names are fine, values are not


@pytest.mark.asyncio
async def test_modern_serves_when_available(fake_jamf: FakeJamf):
    async with make_client(fake_jamf) as client:
        resp = await client.create("package", {"name": "Firefox", "filename": "Firefox.pkg"})

    assert resp.success, resp.error
    assert resp.data.served_by == "modern"
    assert all(c.method == "GET" for c in fake_jamf.calls_to("/JSSResource/packages"))
    assert not fake_jamf.calls_to("/JSSResource/packages/id/0", "POST")


@pytest.mark.asyncio
async def test_business_rejection_does_not_fall_back(fake_jamf: FakeJamf):
    rid = fake_jamf.seed("script", {"name": "x"})

    def forbidding(request: httpx.Request) -> httpx.Response:
        if request.method == "PUT" and request.url.path.startswith("/api/v1/scripts/"):
            return httpx.Response(403)
        return fake_jamf.handler(request)

    async with JamfBridgeClient(make_settings(), http_transport=httpx.MockTransport(forbidding)) as client:
        resp = await client.update("script", rid, {"name": "y"})

    assert resp.success is False
    assert resp.error.code == "FORBIDDEN"
    assert not fake_jamf.calls_to("/JSSResource/scripts", "PUT")


@pytest.mark.asyncio
async def test_transport_failure_on_modern_falls_back(fake_jamf: FakeJamf):
    rid = fake_jamf.seed("policy", {"name": "Old"})

    def flaky(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/api/v1/policies"):
            raise httpx.ConnectError("connection refused", request=request)
        return fake_jamf.handler(request)

    async with JamfBridgeClient(make_settings(JAMF_MAX_RETRIES=0), http_transport=httpx.MockTransport(flaky)) as client:
        resp = await client.update("policy", rid, {"name": "New", "frequency": "weekly"})

    assert resp.success, resp.error
    assert resp.data.served_by == "legacy"
    assert fake_jamf.resources[("policy", rid)]["frequency"] == "Once per week"


@pytest.mark.asyncio
async def test_legacy_only_fields_route_directly_to_legacy(fake_jamf: FakeJamf):
    rid = fake_jamf.seed("policy", {"name": "Window"})
    async with make_client(fake_jamf) as client:
        resp = await client.update("policy", rid, {"no_execute_start": "1:00 AM"})

    assert resp.success, resp.error
    assert resp.data.served_by == "legacy"
    assert not fake_jamf.calls_to(f"/api/v1/policies/{rid}", "PUT")
    assert fake_jamf.resources[("policy", rid)]["no_execute_start"] == "1:00 AM"


@pytest.mark.asyncio
async def test_modern_only_fields_cannot_fall_back(fake_jamf: FakeJamf):
    rid = fake_jamf.seed("computer_group", {"name": "Lab"})
    fake_jamf.modern_types.discard("computer_group")
    async with make_client(fake_jamf) as client:
        resp = await client.update("computer_group", rid, {"description": "only on modern"})

    assert resp.success is False
    assert resp.error.code == "ENDPOINT_UNSUPPORTED"
    assert not fake_jamf.calls_to("/JSSResource/computergroups", "PUT")


@pytest.mark.asyncio
async def test_missing_resource_surfaces_legacy_not_found(fake_jamf: FakeJamf):
    async with make_client(fake_jamf) as client:
        resp = await client.read("script", 999)

    assert resp.success is False
    assert resp.error.code == "NOT_FOUND"
    assert resp.error.status_code == 404
    assert fake_jamf.calls_to("/JSSResource/scripts/id/999")


@pytest.mark.asyncio
async def test_stale_xml_view_fails_verification(fake_jamf: FakeJamf):
    rid = fake_jamf.seed("computer_group", {"name": "Lab", "computer_ids": [1]})
    fake_jamf.xml_overrides = {"computer_ids": [1]}
    async with make_client(
        fake_jamf, JAMF_VERIFY_ATTEMPTS=2, JAMF_VERIFY_REQUIRED_CONSISTENT_READS=1
    ) as client:
        resp = await client.update("computer_group", rid, {"computer_ids": [1, 2]})

    assert resp.success is False
    assert resp.error.code == "VERIFICATION_FAILED"
    assert resp.error.details["attempts"] == 2
    assert resp.error.details["mismatches"] == [{"field": "computer_ids", "representation": "legacy_xml"}]


@pytest.mark.asyncio
async def test_delete_is_routed_but_not_verified(fake_jamf: FakeJamf):
    rid = fake_jamf.seed("package", {"name": "Old.pkg"})
    fake_jamf.modern_types.discard("package")
    async with make_client(fake_jamf) as client:
        resp = await client.delete("package", rid, confirm=True)

    assert resp.success, resp.error
    assert resp.data.served_by == "legacy"
    assert resp.data.verification is None
    assert ("package", rid) not in fake_jamf.resources
    assert not [c for c in fake_jamf.calls_to(f"/JSSResource/packages/id/{rid}") if c.method == "GET"]


@pytest.mark.asyncio
async def test_dropped_legacy_only_field_fails_verification_without_xml_check(fake_jamf: FakeJamf):
    rid = fake_jamf.seed("policy", {"name": "Window"})
    fake_jamf.legacy_ignored_fields = {"no_execute_start"}
    async with make_client(
        fake_jamf, JAMF_VERIFY_REQUIRE_XML=False, JAMF_VERIFY_REQUIRED_CONSISTENT_READS=1, JAMF_VERIFY_ATTEMPTS=2
    ) as client:
        resp = await client.update("policy", rid, {"no_execute_start": "1:00 AM"})

    assert resp.success is False
    assert resp.error.code == "VERIFICATION_FAILED"
    assert resp.error.details["mismatches"] == [{"field": "no_execute_start", "representation": "legacy_json"}]
    assert not [c for c in fake_jamf.calls_to(f"/JSSResource/policies/id/{rid}", "GET") if "xml" in c.accept]


@pytest.mark.asyncio
async def test_legacy_only_field_is_checked_in_legacy_json_without_xml_check(fake_jamf: FakeJamf):
    rid = fake_jamf.seed("policy", {"name": "Window"})
    async with make_client(fake_jamf, JAMF_VERIFY_REQUIRE_XML=False) as client:
        resp = await client.update("policy", rid, {"no_execute_start": "1:00 AM"})

    assert resp.success, resp.error
    assert resp.data.verification["fields_checked"] == ["no_execute_start"]


@pytest.mark.asyncio
async def test_create_holds_new_id_key_while_verifying(fake_jamf: FakeJamf):
    held: list[int] = []

    def observing(request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and request.url.path == "/api/v1/scripts/1":
            held.append(client.queue.pending("script:1"))
        return fake_jamf.handler(request)

    async with JamfBridgeClient(make_settings(), http_transport=httpx.MockTransport(observing)) as client:
        resp = await client.create("script", {"name": "Fresh"})
        assert client.queue.pending("script:1") == 0

    assert resp.success, resp.error
    assert resp.data.id == "1"
    assert held and all(n == 1 for n in held)
