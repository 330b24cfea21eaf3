"""
Bearer credential lifecycle.

Two independent credentials are kept, one per `CredentialKind`:
- OAUTH2: client-credentials token from /api/oauth/token (Modern API only)
- BASIC_DERIVED: bearer token minted from username/password via /api/v1/auth/token
  and extended through /api/v1/auth/keep-alive while it is still valid

Invariants:
- At most one live credential per kind.
- A refresh replaces the whole `Credential`; fields are never mutated.
- Concurrent callers that observe staleness await one shared refresh task.
- A failed refresh leaves the prior credential in place.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

import httpx

from ..common.errors import AuthenticationRequired, JamfBridgeError, TransportError
from ..common.logging import log_event
from ..common.timeutils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

OAUTH2_TOKEN_PATH = "/api/oauth/token"
BASIC_TOKEN_PATH = "/api/v1/auth/token"
KEEP_ALIVE_PATH = "/api/v1/auth/keep-alive"

DEFAULT_OAUTH2_TTL_S = 20 * 60
DEFAULT_BASIC_TTL_S = 30 * 60


class CredentialKind(str, Enum):
    OAUTH2 = "oauth2"
    BASIC_DERIVED = "basic_derived"


@dataclass(frozen=True)
class Credential:
    token: str = field(repr=False)
    issued_at: datetime
    expires_at: datetime
    ttl_seconds: int
    kind: CredentialKind

    @classmethod
    def issue(cls, *, token: str, ttl_seconds: int, kind: CredentialKind, now: datetime) -> "Credential":
        return cls(
            token=token,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            ttl_seconds=int(ttl_seconds),
            kind=kind,
        )

    def remaining_seconds(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds()

    def is_expired(self, now: datetime) -> bool:
        return self.remaining_seconds(now) <= 0

    def needs_refresh(self, now: datetime, buffer_s: float) -> bool:
        return self.remaining_seconds(now) <= buffer_s

    def authorization_header(self) -> str:
        return f"Bearer {self.token}"


class TokenProvider(Protocol):
    kind: CredentialKind

    async def fetch(self, http: httpx.AsyncClient, *, now: datetime) -> Credential: ...


def _json_body(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class OAuth2TokenProvider:
    kind = CredentialKind.OAUTH2

    def __init__(self, *, client_id: str, client_secret: str) -> None:
        self._client_id = client_id
        self._client_secret = client_secret

    async def fetch(self, http: httpx.AsyncClient, *, now: datetime) -> Credential:
        try:
            resp = await http.post(
                OAUTH2_TOKEN_PATH,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"OAuth2 token request failed: {type(e).__name__}") from e
        if resp.status_code >= 400:
            raise AuthenticationRequired(
                f"OAuth2 token request failed with HTTP {resp.status_code}", status_code=resp.status_code
            )
        body = _json_body(resp)
        token = str(body.get("access_token") or "").strip()
        if not token:
            raise AuthenticationRequired("OAuth2 token response did not include access_token")
        ttl = int(body.get("expires_in") or DEFAULT_OAUTH2_TTL_S)
        return Credential.issue(token=token, ttl_seconds=ttl, kind=self.kind, now=now)


class BasicTokenProvider:
    kind = CredentialKind.BASIC_DERIVED

    def __init__(self, *, username: str, password: str) -> None:
        self._auth = httpx.BasicAuth(username, password)

    async def fetch(self, http: httpx.AsyncClient, *, now: datetime) -> Credential:
        try:
            resp = await http.post(BASIC_TOKEN_PATH, auth=self._auth, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise TransportError(f"Bearer token request failed: {type(e).__name__}") from e
        if resp.status_code >= 400:
            raise AuthenticationRequired(
                f"Basic Auth to bearer token failed with HTTP {resp.status_code}", status_code=resp.status_code
            )
        return self._credential(_json_body(resp), now)

    async def extend(self, http: httpx.AsyncClient, credential: Credential, *, now: datetime) -> Credential:
        """
        Trade a still-valid bearer token for a new one without resending the password.
        """
        try:
            resp = await http.post(
                KEEP_ALIVE_PATH,
                headers={"Accept": "application/json", "Authorization": credential.authorization_header()},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Bearer keep-alive failed: {type(e).__name__}") from e
        if resp.status_code >= 400:
            raise AuthenticationRequired(
                f"Bearer keep-alive failed with HTTP {resp.status_code}", status_code=resp.status_code
            )
        return self._credential(_json_body(resp), now)

    def _credential(self, body: Mapping[str, Any], now: datetime) -> Credential:
        token = str(body.get("token") or "").strip()
        if not token:
            raise AuthenticationRequired("Bearer token response did not include token")
        return Credential.issue(token=token, ttl_seconds=_ttl_from_expires(body.get("expires"), now), kind=self.kind, now=now)


def _ttl_from_expires(expires: Any, now: datetime) -> int:
    """
    The server reports `expires` either as seconds or as an ISO-8601 instant.
    """
    if expires is None or expires == "":
        return DEFAULT_BASIC_TTL_S
    if isinstance(expires, (int, float)) and not isinstance(expires, bool):
        return max(0, int(expires))
    try:
        return max(0, int((parse_timestamp(expires) - now).total_seconds()))
    except (TypeError, ValueError):
        return DEFAULT_BASIC_TTL_S


class TokenStore:
    def __init__(
        self,
        *,
        http: httpx.AsyncClient,
        providers: Mapping[CredentialKind, TokenProvider],
        refresh_buffer_s: float = 300.0,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._http = http
        self._providers: Dict[CredentialKind, TokenProvider] = dict(providers)
        self._buffer_s = float(refresh_buffer_s)
        self._now = now_fn
        self._credentials: Dict[CredentialKind, Credential] = {}
        self._inflight: Dict[CredentialKind, "asyncio.Future[Credential]"] = {}
        self.refresh_counts: Dict[CredentialKind, int] = {k: 0 for k in CredentialKind}
        self.keep_alive_counts: Dict[CredentialKind, int] = {k: 0 for k in CredentialKind}

    def is_configured(self, kind: CredentialKind) -> bool:
        return kind in self._providers

    def peek(self, kind: CredentialKind) -> Optional[Credential]:
        return self._credentials.get(kind)

    async def get(self, kind: CredentialKind) -> Credential:
        """
        Return a non-expired credential of `kind`, refreshing first when it is
        inside the refresh buffer.
        """
        if kind not in self._providers:
            raise AuthenticationRequired(f"{kind.value} credentials are not configured")

        current = self._credentials.get(kind)
        if current is not None and not current.needs_refresh(self._now(), self._buffer_s):
            return current

        renewable = current if current is not None and not current.is_expired(self._now()) else None
        try:
            return await self._refresh(kind, renew=renewable)
        except JamfBridgeError:
            if current is not None and not current.is_expired(self._now()):
                log_event(
                    logger,
                    "auth.refresh_failed_using_prior",
                    severity="WARNING",
                    kind=kind.value,
                    remaining_s=int(current.remaining_seconds(self._now())),
                )
                return current
            raise

    async def force_refresh(self, kind: CredentialKind, *, stale: Optional[Credential] = None) -> Credential:
        """
        Refresh after the server rejected `stale` (HTTP 401).

        If another caller already replaced `stale`, the newer credential is
        returned without a second refresh.
        """
        if kind not in self._providers:
            raise AuthenticationRequired(f"{kind.value} credentials are not configured")
        current = self._credentials.get(kind)
        if stale is not None and current is not None and current is not stale:
            return current
        return await self._refresh(kind)

    async def _refresh(self, kind: CredentialKind, *, renew: Optional[Credential] = None) -> Credential:
        task = self._inflight.get(kind)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_replace(kind, renew))
            self._inflight[kind] = task
            task.add_done_callback(functools.partial(self._clear_inflight, kind))
        return await asyncio.shield(task)

    def _clear_inflight(self, kind: CredentialKind, task: "asyncio.Future[Credential]") -> None:
        if self._inflight.get(kind) is task:
            del self._inflight[kind]

    async def _fetch_and_replace(self, kind: CredentialKind, renew: Optional[Credential] = None) -> Credential:
        provider = self._providers[kind]
        self.refresh_counts[kind] += 1
        extend = getattr(provider, "extend", None)
        if renew is not None and extend is not None:
            self.keep_alive_counts[kind] += 1
            try:
                credential = await extend(self._http, renew, now=self._now())
            except JamfBridgeError as exc:
                log_event(logger, "auth.keep_alive_failed", severity="WARNING", kind=kind.value, error_code=exc.code)
            else:
                self._credentials[kind] = credential
                log_event(logger, "auth.kept_alive", kind=kind.value, ttl_seconds=credential.ttl_seconds)
                return credential

        try:
            credential = await provider.fetch(self._http, now=self._now())
        except JamfBridgeError as exc:
            log_event(logger, "auth.refresh_failed", severity="WARNING", kind=kind.value, error_code=exc.code)
            raise
        self._credentials[kind] = credential
        log_event(logger, "auth.refreshed", kind=kind.value, ttl_seconds=credential.ttl_seconds)
        return credential

    def status(self) -> dict[str, Any]:
        now = self._now()
        out: dict[str, Any] = {}
        for kind in CredentialKind:
            cred = self._credentials.get(kind)
            out[kind.value] = {
                "configured": kind in self._providers,
                "available": bool(cred is not None and not cred.is_expired(now)),
                "issued_at": cred.issued_at.isoformat() if cred else None,
                "expires_at": cred.expires_at.isoformat() if cred else None,
                "ttl_seconds": cred.ttl_seconds if cred else None,
            }
        return out
