"""
Dual-path executor.

Every logical operation is tried against the Modern API first. When the
Modern endpoint cannot serve it (404/501, transport failure, open breaker)
the canonical fields are re-expressed for the Legacy API and the operation is
attempted once more there. Business rejections (400/403/409...) never fall
back.

Writes run inside the per-resource serialization queue as one unit:
write (conflict-retried) followed by post-write verification.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

import httpx

from ..common.errors import (
    ApiRequestError,
    CircuitOpen,
    EndpointUnsupported,
    JamfBridgeError,
    TransportError,
    UnsupportedOperation,
)
from ..common.logging import describe_payload, log_event
from ..common.write_guard import WriteGuard
from ..contracts.operations import LogicalOperation, NormalizedResult
from ..execution.write_queue import WriteSerializationQueue
from ..resilience.conflict import ConflictRetryPolicy
from ..transport.http import XML_HEADERS, JamfTransport
from ..verification.engine import VerificationEngine, VerificationRequirement
from .families import EndpointFamily
from .schema import ResourceSchema, get_schema
from .translate import (
    PayloadError,
    canonicalize_payload,
    fields_not_carried,
    from_legacy_json,
    from_legacy_xml,
    from_modern,
    legacy_created_id,
    modern_id,
    to_legacy_xml,
    to_modern_payload,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

FALLBACK_STATUSES = frozenset({404, 501})


def _json(resp: httpx.Response) -> Any:
    if not resp.content:
        return {}
    try:
        return resp.json()
    except ValueError as e:
        raise JamfBridgeError(
            f"Response from {resp.request.url.path} is not valid JSON",
            code="INVALID_RESPONSE",
        ) from e


async def attempt_modern(fn: Callable[[], Awaitable[T]], *, what: str) -> T:
    """
    Run a Modern call, converting "this endpoint cannot serve it" failures
    into EndpointUnsupported.
    """
    try:
        return await fn()
    except ApiRequestError as exc:
        if exc.status_code in FALLBACK_STATUSES:
            raise EndpointUnsupported(f"Modern API cannot serve {what} (HTTP {exc.status_code})", cause=exc) from exc
        raise
    except (TransportError, CircuitOpen) as exc:
        raise EndpointUnsupported(f"Modern API unreachable for {what} ({exc.code})", cause=exc) from exc


class EndpointRouter:
    def __init__(
        self,
        *,
        transport: JamfTransport,
        queue: WriteSerializationQueue,
        guard: WriteGuard,
        conflict_policy: ConflictRetryPolicy,
        requirement: VerificationRequirement,
        verifier: Optional[VerificationEngine] = None,
    ) -> None:
        self._transport = transport
        self._queue = queue
        self._guard = guard
        self._conflict = conflict_policy
        self._requirement = requirement
        self._verifier = verifier or VerificationEngine(self)

    # --- reads ---------------------------------------------------------------

    async def read_canonical(
        self, schema: ResourceSchema, resource_id: str, *, fresh: bool = False
    ) -> tuple[EndpointFamily, dict[str, Any]]:
        if not schema.serves_modern:
            return EndpointFamily.LEGACY, await self.read_legacy_json(schema, resource_id, fresh=fresh)
        try:
            resp = await attempt_modern(
                lambda: self._transport.request(
                    "GET",
                    schema.modern_item(resource_id),
                    fresh=fresh,
                    breaker_key=schema.breaker_key(EndpointFamily.MODERN),
                ),
                what=f"read {schema.resource_type}",
            )
            return EndpointFamily.MODERN, from_modern(schema, _json(resp))
        except EndpointUnsupported as exc:
            log_event(
                logger,
                "route.fallback",
                resource_type=schema.resource_type,
                verb="read",
                resource_id=resource_id,
                reason=exc.message,
            )

        return EndpointFamily.LEGACY, await self.read_legacy_json(schema, resource_id, fresh=fresh)

    async def read_legacy_json(
        self, schema: ResourceSchema, resource_id: str, *, fresh: bool = True
    ) -> dict[str, Any]:
        resp = await self._transport.request(
            "GET",
            schema.legacy_item(resource_id),
            fresh=fresh,
            breaker_key=schema.breaker_key(EndpointFamily.LEGACY),
        )
        return from_legacy_json(schema, _json(resp))

    async def read_legacy_xml(self, schema: ResourceSchema, resource_id: str) -> dict[str, Any]:
        resp = await self._transport.request(
            "GET",
            schema.legacy_item(resource_id),
            headers={"Accept": "application/xml"},
            fresh=True,
            breaker_key=schema.breaker_key(EndpointFamily.LEGACY),
        )
        return from_legacy_xml(schema, resp.content)

    async def read(self, schema: ResourceSchema, resource_id: str) -> NormalizedResult:
        family, fields = await self.read_canonical(schema, resource_id)
        return NormalizedResult(
            resource_type=schema.resource_type,
            id=str(resource_id),
            served_by=family.value,
            fields=fields,
        )

    # --- writes --------------------------------------------------------------

    async def execute(self, op: LogicalOperation) -> NormalizedResult:
        schema = get_schema(op.resource_type)
        if not schema.allows(op.verb):
            raise UnsupportedOperation(
                f"{schema.resource_type} does not support {op.verb}",
                suggestions=[f"Supported operations: {', '.join(sorted(schema.verbs))}"],
            )
        if not op.is_write:
            return await self.read(schema, str(op.identifier))

        self._guard.require_writable(
            operation=f"{op.verb} {schema.resource_type}",
            context={"resource_type": schema.resource_type, "resource_id": op.identifier},
        )

        canonical: dict[str, Any] = {}
        if op.verb in ("create", "update"):
            canonical, unknown = canonicalize_payload(schema, op.payload)
            if unknown:
                log_event(
                    logger,
                    "route.unknown_fields_omitted",
                    severity="WARNING",
                    resource_type=schema.resource_type,
                    omitted=unknown,
                )
            if not canonical:
                raise PayloadError(f"No supported {schema.resource_type} fields in payload")

        key = self._queue_key(schema, op, canonical)
        return await self._queue.run_exclusive(
            key, lambda: self._write_and_verify(schema, op.verb, op.identifier, canonical)
        )

    @staticmethod
    def _queue_key(schema: ResourceSchema, op: LogicalOperation, canonical: Mapping[str, Any]) -> str:
        if op.identifier:
            return f"{schema.resource_type}:{op.identifier}"
        # Creates have no id yet; same-name creates are serialized with each other.
        return f"{schema.resource_type}:new:{canonical.get('name', '')}"

    async def _write_and_verify(
        self,
        schema: ResourceSchema,
        verb: str,
        identifier: Optional[str],
        canonical: Mapping[str, Any],
    ) -> NormalizedResult:
        family, resource_id = await self._dual_path_write(schema, verb, identifier, canonical)
        if verb == "delete":
            return NormalizedResult(resource_type=schema.resource_type, id=resource_id, served_by=family.value)

        if verb == "create":
            # The new id is live; updates to it wait until the create is verified.
            outcome = await self._queue.run_exclusive(
                f"{schema.resource_type}:{resource_id}",
                lambda: self._verifier.verify(schema, resource_id, canonical, self._requirement),
            )
        else:
            outcome = await self._verifier.verify(schema, resource_id, canonical, self._requirement)
        fields = dict(outcome.snapshot.json_fields) if outcome.snapshot else dict(canonical)
        return NormalizedResult(
            resource_type=schema.resource_type,
            id=resource_id,
            served_by=family.value,
            fields=fields,
            verification=outcome.summary(),
        )

    async def _dual_path_write(
        self,
        schema: ResourceSchema,
        verb: str,
        identifier: Optional[str],
        canonical: Mapping[str, Any],
    ) -> tuple[EndpointFamily, str]:
        legacy_only = fields_not_carried(schema, canonical, EndpointFamily.MODERN)
        modern_only = fields_not_carried(schema, canonical, EndpointFamily.LEGACY)
        if legacy_only and modern_only:
            raise PayloadError(
                f"Fields {legacy_only} and {modern_only} cannot be written in one {schema.resource_type} request"
            )

        if legacy_only or not schema.serves_modern:
            log_event(
                logger,
                "route.legacy_direct",
                resource_type=schema.resource_type,
                verb=verb,
                resource_id=identifier,
                legacy_only_fields=legacy_only,
            )
        else:
            try:
                resource_id = await attempt_modern(
                    lambda: self._conflict.run(
                        lambda: self._modern_write(schema, verb, identifier, canonical),
                        label=schema.breaker_key(EndpointFamily.MODERN),
                    ),
                    what=f"{verb} {schema.resource_type}",
                )
                return EndpointFamily.MODERN, resource_id
            except EndpointUnsupported as exc:
                log_event(
                    logger,
                    "route.fallback",
                    resource_type=schema.resource_type,
                    verb=verb,
                    resource_id=identifier,
                    reason=exc.message,
                    sensitive_fields=sorted(schema.sensitive_fields() & set(canonical)),
                    **describe_payload(canonical),
                )
                if modern_only:
                    raise EndpointUnsupported(
                        f"Modern API unavailable and {modern_only} have no Legacy equivalent",
                        cause=exc,
                    ) from exc

        resource_id = await self._conflict.run(
            lambda: self._legacy_write(schema, verb, identifier, canonical),
            label=schema.breaker_key(EndpointFamily.LEGACY),
        )
        return EndpointFamily.LEGACY, resource_id

    async def _modern_write(
        self,
        schema: ResourceSchema,
        verb: str,
        identifier: Optional[str],
        canonical: Mapping[str, Any],
    ) -> str:
        key = schema.breaker_key(EndpointFamily.MODERN)
        if verb == "delete":
            await self._transport.request("DELETE", schema.modern_item(str(identifier)), breaker_key=key)
            return str(identifier)

        body = to_modern_payload(schema, canonical)
        if verb == "create":
            resp = await self._transport.request("POST", schema.modern_collection, json=body, breaker_key=key)
            new_id = modern_id(_json(resp))
            if not new_id:
                raise JamfBridgeError(
                    f"Modern create of {schema.resource_type} returned no id", code="INVALID_RESPONSE"
                )
            log_event(logger, "route.created", resource_type=schema.resource_type, resource_id=new_id, served_by="modern")
            return new_id

        await self._transport.request("PUT", schema.modern_item(str(identifier)), json=body, breaker_key=key)
        return str(identifier)

    async def _legacy_write(
        self,
        schema: ResourceSchema,
        verb: str,
        identifier: Optional[str],
        canonical: Mapping[str, Any],
    ) -> str:
        key = schema.breaker_key(EndpointFamily.LEGACY)
        if verb == "delete":
            await self._transport.request("DELETE", schema.legacy_item(str(identifier)), breaker_key=key)
            return str(identifier)

        document = to_legacy_xml(schema, canonical).encode("utf-8")
        if verb == "create":
            resp = await self._transport.request(
                "POST", schema.legacy_item("0"), content=document, headers=XML_HEADERS, breaker_key=key
            )
            new_id = legacy_created_id(resp.content, resp.headers.get("Location"))
            if not new_id:
                raise JamfBridgeError(
                    f"Legacy create of {schema.resource_type} returned no id", code="INVALID_RESPONSE"
                )
            log_event(logger, "route.created", resource_type=schema.resource_type, resource_id=new_id, served_by="legacy")
            return new_id

        await self._transport.request(
            "PUT", schema.legacy_item(str(identifier)), content=document, headers=XML_HEADERS, breaker_key=key
        )
        return str(identifier)
