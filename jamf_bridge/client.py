"""
Client facade.

Builds the component graph once from an immutable `Settings` and exposes one
entry point, `handle()`, that always answers with the
`{success, data, error}` envelope. Exceptions never escape `handle()`.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Union

import httpx
from pydantic import ValidationError

from .auth.selector import CredentialSelector
from .auth.tokens import BasicTokenProvider, CredentialKind, OAuth2TokenProvider, TokenProvider, TokenStore
from .common.config import Settings, get_settings
from .common.errors import ConfirmationRequired, JamfBridgeError, normalize_error
from .common.logging import bind_request_id, log_event
from .common.timeutils import utc_now
from .common.write_guard import WriteGuard
from .contracts.operations import ErrorInfo, OperationRequest, OperationResponse
from .execution.write_queue import WriteSerializationQueue
from .resilience.circuit_breaker import BreakerOptions, BreakerRegistry
from .resilience.conflict import ConflictRetryPolicy
from .resilience.retry import RetryOptions, with_timeout
from .routing.router import EndpointRouter
from .transport.http import JamfTransport
from .verification.engine import VerificationRequirement

logger = logging.getLogger(__name__)

RequestLike = Union[OperationRequest, Mapping[str, Any]]


def _validation_message(exc: ValidationError) -> str:
    # Field locations and messages only; input values may hold script bodies.
    parts = []
    for err in exc.errors(include_input=False):
        loc = ".".join(str(p) for p in err.get("loc", ())) or "request"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "Invalid operation request: " + "; ".join(parts)


def _failure(err: JamfBridgeError) -> OperationResponse:
    info = err.to_dict()
    return OperationResponse(
        success=False,
        error=ErrorInfo(
            message=info["message"],
            code=info["code"],
            suggestions=info["suggestions"],
            status_code=info.get("status_code"),
            details=info.get("details"),
        ),
    )


class JamfBridgeClient:
    def __init__(
        self,
        settings: Settings,
        *,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        now_fn: Callable[[], datetime] = utc_now,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings.validate_for_client()
        self.settings = settings
        self._http = httpx.AsyncClient(
            base_url=settings.base_url,
            verify=settings.tls_verify,
            timeout=settings.JAMF_HTTP_TIMEOUT_S,
            transport=http_transport,
        )

        providers: dict[CredentialKind, TokenProvider] = {}
        if settings.has_oauth2:
            providers[CredentialKind.OAUTH2] = OAuth2TokenProvider(
                client_id=str(settings.JAMF_CLIENT_ID),
                client_secret=settings.JAMF_CLIENT_SECRET.get_secret_value(),  # type: ignore[union-attr]
            )
        if settings.has_basic_auth:
            providers[CredentialKind.BASIC_DERIVED] = BasicTokenProvider(
                username=str(settings.JAMF_USERNAME),
                password=settings.JAMF_PASSWORD.get_secret_value(),  # type: ignore[union-attr]
            )

        self.tokens = TokenStore(
            http=self._http,
            providers=providers,
            refresh_buffer_s=settings.JAMF_TOKEN_REFRESH_BUFFER_S,
            now_fn=now_fn,
        )
        self.selector = CredentialSelector(self.tokens)
        self.breakers = BreakerRegistry(
            BreakerOptions.from_settings(settings),
            enabled=settings.JAMF_ENABLE_CIRCUIT_BREAKER,
            clock=clock,
        )
        self.transport = JamfTransport(
            http=self._http,
            selector=self.selector,
            breakers=self.breakers,
            retry=RetryOptions.from_settings(settings),
        )
        self.guard = WriteGuard.from_settings(settings)
        self.queue = WriteSerializationQueue()
        self.router = EndpointRouter(
            transport=self.transport,
            queue=self.queue,
            guard=self.guard,
            conflict_policy=ConflictRetryPolicy.from_settings(settings),
            requirement=VerificationRequirement.from_settings(settings),
        )

        log_event(
            logger,
            "client.initialized",
            base_url=settings.base_url,
            oauth2=settings.has_oauth2,
            basic_auth=settings.has_basic_auth,
            read_only=self.guard.read_only,
            read_only_source=self.guard.source,
            tls_verify=settings.tls_verify,
        )

    @classmethod
    def from_env(cls, **kwargs: Any) -> "JamfBridgeClient":
        return cls(get_settings(), **kwargs)

    async def __aenter__(self) -> "JamfBridgeClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def handle(self, request: RequestLike, *, timeout_s: Optional[float] = None) -> OperationResponse:
        with bind_request_id():
            try:
                req = request if isinstance(request, OperationRequest) else OperationRequest.model_validate(request)
            except ValidationError as e:
                return _failure(JamfBridgeError(_validation_message(e), code="INVALID_REQUEST"))

            ctx = {"resource_type": req.resource_type, "verb": req.verb, "resource_id": req.identifier}
            if req.is_destructive and not req.confirm:
                log_event(logger, "operation.confirmation_required", severity="WARNING", **ctx)
                return _failure(
                    ConfirmationRequired(
                        f"{req.verb} {req.resource_type} {req.identifier} is destructive and requires confirm=true"
                    )
                )

            started = time.perf_counter()
            try:
                work = self.router.execute(req.to_logical())
                if timeout_s is not None:
                    result = await with_timeout(work, timeout_s, operation=f"{req.verb} {req.resource_type}")
                else:
                    result = await work
            except Exception as exc:
                err = normalize_error(exc, context=ctx)
                log_event(
                    logger,
                    "operation.failed",
                    severity="WARNING",
                    error_code=err.code,
                    status_code=err.status_code,
                    duration_ms=int((time.perf_counter() - started) * 1000),
                    **ctx,
                )
                return _failure(err)

            log_event(
                logger,
                "operation.completed",
                served_by=result.served_by,
                duration_ms=int((time.perf_counter() - started) * 1000),
                **{**ctx, "resource_id": result.id},
            )
            return OperationResponse(success=True, data=result)

    async def create(self, resource_type: str, payload: Mapping[str, Any], **kw: Any) -> OperationResponse:
        return await self.handle({"resource_type": resource_type, "verb": "create", "payload": dict(payload)}, **kw)

    async def read(self, resource_type: str, identifier: Union[str, int], **kw: Any) -> OperationResponse:
        return await self.handle({"resource_type": resource_type, "verb": "read", "identifier": identifier}, **kw)

    async def update(
        self, resource_type: str, identifier: Union[str, int], payload: Mapping[str, Any], **kw: Any
    ) -> OperationResponse:
        return await self.handle(
            {"resource_type": resource_type, "verb": "update", "identifier": identifier, "payload": dict(payload)},
            **kw,
        )

    async def delete(
        self, resource_type: str, identifier: Union[str, int], *, confirm: bool = False, **kw: Any
    ) -> OperationResponse:
        return await self.handle(
            {"resource_type": resource_type, "verb": "delete", "identifier": identifier, "confirm": confirm},
            **kw,
        )

    def token_status(self) -> dict[str, Any]:
        return self.tokens.status()

    def circuit_status(self) -> dict[str, Any]:
        return {"enabled": self.breakers.enabled, "breakers": self.breakers.snapshot()}

    def status(self) -> dict[str, Any]:
        return {
            "base_url": self.settings.base_url,
            "read_only": self.guard.read_only,
            "read_only_source": self.guard.source,
            "tokens": self.token_status(),
            "circuit_breakers": self.circuit_status(),
        }
