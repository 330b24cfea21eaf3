from __future__ import annotations

import base64
import itertools
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import pytest

from jamf_bridge.client import JamfBridgeClient
from jamf_bridge.common.config import Settings
from jamf_bridge.routing.families import EndpointFamily
from jamf_bridge.routing.schema import SCHEMAS, ResourceSchema
from jamf_bridge.routing.translate import (
    from_legacy_xml,
    from_modern,
    to_legacy_document,
    to_legacy_xml,
    to_modern_payload,
)

BASE_URL = "https://jamf.example.test"
USERNAME = "api-user"
PASSWORD = "hunter2-password"
TOKEN_PATHS = ("/api/oauth/token", "/api/v1/auth/token", "/api/v1/auth/keep-alive")


@dataclass
class Call:
    method: str
    path: str
    authorization: str
    accept: str
    params: dict[str, str]
    headers: dict[str, str]

    @property
    def family(self) -> EndpointFamily:
        return EndpointFamily.LEGACY if "/JSSResource/" in self.path else EndpointFamily.MODERN


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 1, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def _modern_match(schema: ResourceSchema, path: str) -> tuple[bool, Optional[str]]:
    if not schema.serves_modern:
        return False, None
    if path == schema.modern_collection:
        return True, None
    prefix, _, suffix = schema.modern_item("\0").partition("\0")
    if path.startswith(prefix) and path.endswith(suffix):
        rid = path[len(prefix):len(path) - len(suffix)]
        if rid and "/" not in rid:
            return True, rid
    return False, None


class FakeJamf:
    """
    In-process Jamf Pro stand-in for httpx.MockTransport.

    Resources are stored as canonical fields and rendered per family with the
    production field tables, so only routing and lifecycle behavior is faked.
    """

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self.resources: dict[tuple[str, str], dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self._tokens = itertools.count(1)
        self.valid_tokens: set[str] = set()
        # Resource types the Modern API serves; everything else answers 404.
        self.modern_types: set[str] = set(SCHEMAS)
        self.pending_conflicts = 0
        # Fields forced onto the Legacy XML view (simulates a lagging replica).
        self.xml_overrides: dict[str, Any] = {}
        # Fields Legacy writes accept but silently do not persist.
        self.legacy_ignored_fields: set[str] = set()
        self.oauth_status = 200
        self.basic_status = 200
        self.keep_alive_status = 200
        self.oauth_ttl_s = 1200
        self.basic_expires: Any = 1800

    # --- helpers -----------------------------------------------------------

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def seed(self, resource_type: str, fields: dict[str, Any]) -> str:
        rid = str(next(self._ids))
        self.resources[(resource_type, rid)] = dict(fields)
        return rid

    def revoke_all_tokens(self) -> None:
        self.valid_tokens.clear()

    def calls_to(self, prefix: str, method: Optional[str] = None) -> list[Call]:
        return [c for c in self.calls if c.path.startswith(prefix) and (method is None or c.method == method)]

    def resource_calls(self) -> list[Call]:
        return [c for c in self.calls if c.path not in TOKEN_PATHS]

    def _issue(self, prefix: str) -> str:
        token = f"{prefix}-{next(self._tokens)}"
        self.valid_tokens.add(token)
        return token

    # --- routing -----------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(
            Call(
                method=request.method,
                path=path,
                authorization=request.headers.get("Authorization", ""),
                accept=request.headers.get("Accept", ""),
                params=dict(request.url.params),
                headers={k.lower(): v for k, v in request.headers.items()},
            )
        )

        if path == "/api/oauth/token":
            if self.oauth_status != 200:
                return httpx.Response(self.oauth_status, json={"error": "invalid_client"})
            return httpx.Response(200, json={"access_token": self._issue("oauth"), "expires_in": self.oauth_ttl_s})

        if path == "/api/v1/auth/keep-alive":
            presented = request.headers.get("Authorization", "")[len("Bearer "):]
            if self.keep_alive_status != 200 or presented not in self.valid_tokens:
                return httpx.Response(self.keep_alive_status if self.keep_alive_status != 200 else 401)
            self.valid_tokens.discard(presented)
            return httpx.Response(200, json={"token": self._issue("basic"), "expires": self.basic_expires})

        if path == "/api/v1/auth/token":
            expected = "Basic " + base64.b64encode(f"{USERNAME}:{PASSWORD}".encode()).decode()
            if self.basic_status != 200 or request.headers.get("Authorization") != expected:
                return httpx.Response(self.basic_status if self.basic_status != 200 else 401)
            return httpx.Response(200, json={"token": self._issue("basic"), "expires": self.basic_expires})

        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer ") or auth[len("Bearer "):] not in self.valid_tokens:
            return httpx.Response(401)

        for schema in SCHEMAS.values():
            matched, rid = _modern_match(schema, path)
            if matched:
                if schema.resource_type not in self.modern_types:
                    return httpx.Response(404, json={"httpStatus": 404})
                return self._modern(schema, request, rid)
            if path.startswith(schema.legacy_collection + "/id/"):
                rid = path[len(schema.legacy_collection) + len("/id/"):]
                return self._legacy(schema, request, rid)
        return httpx.Response(404)

    def _conflict(self) -> Optional[httpx.Response]:
        if self.pending_conflicts > 0:
            self.pending_conflicts -= 1
            return httpx.Response(409, json={"errors": [{"code": "OPTIMISTIC_LOCK_FAILED"}]})
        return None

    def _modern(self, schema: ResourceSchema, request: httpx.Request, rid: Optional[str]) -> httpx.Response:
        key = (schema.resource_type, rid or "")
        if request.method == "POST" and rid is None:
            if (resp := self._conflict()) is not None:
                return resp
            new_id = self.seed(schema.resource_type, from_modern(schema, json.loads(request.content)))
            return httpx.Response(201, json={"id": new_id, "href": f"{schema.modern_collection}/{new_id}"})
        if key not in self.resources:
            return httpx.Response(404, json={"httpStatus": 404})
        if request.method == "GET":
            return httpx.Response(200, json={"id": rid, **to_modern_payload(schema, self.resources[key])})
        if request.method == "PUT":
            if (resp := self._conflict()) is not None:
                return resp
            self.resources[key].update(from_modern(schema, json.loads(request.content)))
            return httpx.Response(200, json={"id": rid})
        if request.method == "DELETE":
            del self.resources[key]
            return httpx.Response(204)
        return httpx.Response(405)

    def _legacy_persisted(self, schema: ResourceSchema, content: bytes) -> dict[str, Any]:
        fields = from_legacy_xml(schema, content)
        return {k: v for k, v in fields.items() if k not in self.legacy_ignored_fields}

    def _legacy(self, schema: ResourceSchema, request: httpx.Request, rid: str) -> httpx.Response:
        root = schema.legacy_root
        if request.method == "POST" and rid == "0":
            if (resp := self._conflict()) is not None:
                return resp
            new_id = self.seed(schema.resource_type, self._legacy_persisted(schema, request.content))
            return httpx.Response(
                201,
                content=f"<?xml version=\"1.0\" encoding=\"UTF-8\"?><{root}><id>{new_id}</id></{root}>",
                headers={"Content-Type": "application/xml", "Location": f"{BASE_URL}{schema.legacy_item(new_id)}"},
            )
        key = (schema.resource_type, rid)
        if key not in self.resources:
            return httpx.Response(404, content=b"<html><body>Not Found</body></html>")
        if request.method == "GET":
            if "xml" in request.headers.get("Accept", ""):
                view = {**self.resources[key], **self.xml_overrides}
                body = to_legacy_xml(schema, view).replace(f"<{root}>", f"<{root}><id>{rid}</id>", 1)
                return httpx.Response(200, content=body, headers={"Content-Type": "application/xml"})
            doc = to_legacy_document(schema, self.resources[key])
            doc[root]["id"] = int(rid)
            return httpx.Response(200, json=doc)
        if request.method == "PUT":
            if (resp := self._conflict()) is not None:
                return resp
            self.resources[key].update(self._legacy_persisted(schema, request.content))
            return httpx.Response(201, content=f"<{root}><id>{rid}</id></{root}>")
        if request.method == "DELETE":
            del self.resources[key]
            return httpx.Response(200, content=f"<{root}><id>{rid}</id></{root}>")
        return httpx.Response(405)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "JAMF_URL": BASE_URL,
        "JAMF_CLIENT_ID": "client-id",
        "JAMF_CLIENT_SECRET": "client-secret-value",
        "JAMF_USERNAME": USERNAME,
        "JAMF_PASSWORD": PASSWORD,
        "JAMF_CONFLICT_RETRY_MAX": 3,
        "JAMF_CONFLICT_RETRY_DELAY_MS": 0,
        "JAMF_VERIFY_ATTEMPTS": 3,
        "JAMF_VERIFY_DELAY_MS": 0,
        "JAMF_VERIFY_REQUIRED_CONSISTENT_READS": 2,
        "JAMF_MAX_RETRIES": 1,
        "JAMF_RETRY_DELAY": 0,
        "JAMF_RETRY_MAX_DELAY": 0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_client(fake: FakeJamf, **overrides: Any) -> JamfBridgeClient:
    clock = overrides.pop("now_fn", None)
    kwargs: dict[str, Any] = {"http_transport": fake.transport()}
    if clock is not None:
        kwargs["now_fn"] = clock
    return JamfBridgeClient(make_settings(**overrides), **kwargs)


@pytest.fixture
def fake_jamf() -> FakeJamf:
    return FakeJamf()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """
    Ambient automation flags on a developer machine must not change test outcomes.
    """
    for name in ("MCP_MODE", "JAMF_READ_ONLY", "JAMF_WRITE_ENABLED"):
        monkeypatch.delenv(name, raising=False)
