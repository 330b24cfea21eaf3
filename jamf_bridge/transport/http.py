from __future__ import annotations

import logging
import time
from typing import Any, Mapping, Optional

import httpx

from ..auth.selector import CredentialSelector
from ..auth.tokens import Credential
from ..common.errors import ApiRequestError, ResourceNotFound, TransportError
from ..common.logging import log_event
from ..resilience.circuit_breaker import BreakerRegistry
from ..resilience.retry import RetryOptions, retry_with_backoff
from ..routing.families import EndpointFamily, classify_path

logger = logging.getLogger(__name__)

IDEMPOTENT_METHODS = frozenset({"GET", "PUT", "DELETE"})

JSON_HEADERS = {"Accept": "application/json"}
XML_HEADERS = {"Accept": "application/xml", "Content-Type": "application/xml"}


def _retry_after_s(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def _error_for(method: str, path: str, resp: httpx.Response) -> ApiRequestError:
    cls = ResourceNotFound if resp.status_code == 404 else ApiRequestError
    return cls(
        method=method,
        path=path,
        status_code=resp.status_code,
        response_excerpt=resp.text[:500] if resp.content else "",
        retry_after_s=_retry_after_s(resp),
    )


class JamfTransport:
    """
    One HTTP seam for both API families.

    Per request:
    - attaches the credential chosen for the path's family
    - re-authenticates once on 401 and replays the request
    - runs through the breaker for `breaker_key`
    - retries transient failures for idempotent methods only
    """

    def __init__(
        self,
        *,
        http: httpx.AsyncClient,
        selector: CredentialSelector,
        breakers: BreakerRegistry,
        retry: Optional[RetryOptions] = None,
    ) -> None:
        self._http = http
        self._selector = selector
        self._breakers = breakers
        self._retry = retry or RetryOptions()

    @property
    def breakers(self) -> BreakerRegistry:
        return self._breakers

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        content: str | bytes | None = None,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, Any] | None = None,
        fresh: bool = False,
        breaker_key: Optional[str] = None,
    ) -> httpx.Response:
        method = method.upper()
        family = classify_path(path)
        key = breaker_key or f"{family.value}:{path}"

        async def _attempt() -> httpx.Response:
            return await self._breakers.call(
                key,
                lambda: self._send_authenticated(
                    method, path, family, json=json, content=content, headers=headers, params=params, fresh=fresh
                ),
            )

        if method in IDEMPOTENT_METHODS:
            return await retry_with_backoff(_attempt, self._retry, label=key)
        return await _attempt()

    async def _send_authenticated(
        self,
        method: str,
        path: str,
        family: EndpointFamily,
        **kwargs: Any,
    ) -> httpx.Response:
        credential = await self._selector.get_credential(family)
        resp = await self._send(method, path, credential, family, **kwargs)
        if resp.status_code == 401:
            credential = await self._selector.reauthenticate(family, credential)
            resp = await self._send(method, path, credential, family, **kwargs)
        if resp.status_code >= 400:
            raise _error_for(method, path, resp)
        return resp

    async def _send(
        self,
        method: str,
        path: str,
        credential: Credential,
        family: EndpointFamily,
        *,
        json: Any = None,
        content: str | bytes | None = None,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, Any] | None = None,
        fresh: bool = False,
    ) -> httpx.Response:
        hdrs = {**JSON_HEADERS, **dict(headers or {}), "Authorization": credential.authorization_header()}
        query = dict(params or {})
        if fresh:
            hdrs["Cache-Control"] = "no-cache"
            hdrs["Pragma"] = "no-cache"
            query["_ts"] = int(time.time() * 1000)

        started = time.perf_counter()
        try:
            resp = await self._http.request(
                method, path, json=json, content=content, headers=hdrs, params=query or None
            )
        except httpx.HTTPError as e:
            log_event(
                logger,
                "http.transport_error",
                severity="WARNING",
                method=method,
                path=path,
                family=family.value,
                error_type=type(e).__name__,
            )
            raise TransportError(f"{method} {path} failed: {type(e).__name__}", context={"path": path}) from e

        log_event(
            logger,
            "http.response",
            severity="DEBUG",
            method=method,
            path=path,
            family=family.value,
            credential_kind=credential.kind.value,
            status_code=resp.status_code,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return resp
