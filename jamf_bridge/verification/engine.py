"""
Post-write verification.

The backend is eventually consistent and its JSON and XML views can disagree
for a while after a write. A write is only reported as successful once
`required_consistent_reads` consecutive snapshots agree with every requested
field in every checked representation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from ..common.errors import VerificationFailed
from ..common.logging import log_event
from ..routing.families import EndpointFamily
from ..routing.schema import ResourceSchema
from .compare import LEGACY_XML, NOT_COMPARED, fields_compared, find_mismatches, json_representation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationRequirement:
    required_consistent_reads: int = 2
    max_attempts: int = 5
    delay_s: float = 1.0
    require_xml_match: bool = True
    # Empty means: every requested field.
    fields_to_check: tuple[str, ...] = ()
    count_immediate_read: bool = False

    @classmethod
    def from_settings(cls, settings: Any, *, fields_to_check: tuple[str, ...] = ()) -> "VerificationRequirement":
        return cls(
            required_consistent_reads=int(settings.JAMF_VERIFY_REQUIRED_CONSISTENT_READS),
            max_attempts=int(settings.JAMF_VERIFY_ATTEMPTS),
            delay_s=float(settings.verify_delay_s),
            require_xml_match=bool(settings.JAMF_VERIFY_REQUIRE_XML),
            fields_to_check=tuple(fields_to_check),
            count_immediate_read=bool(settings.JAMF_VERIFY_COUNT_IMMEDIATE_READ),
        )


@dataclass(frozen=True)
class ResourceSnapshot:
    attempt: int
    json_family: EndpointFamily
    json_fields: Mapping[str, Any]
    xml_fields: Optional[Mapping[str, Any]]
    mismatches: tuple[tuple[str, str], ...]
    # Requested fields that at least one representation in this snapshot carried.
    compared: frozenset[str] = frozenset()

    @property
    def consistent(self) -> bool:
        return not self.mismatches


@dataclass(frozen=True)
class VerificationOutcome:
    verified: bool
    attempts: int
    consistent_reads: int
    fields_checked: tuple[str, ...]
    snapshot: Optional[ResourceSnapshot] = None

    def summary(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "attempts": self.attempts,
            "consistent_reads": self.consistent_reads,
            "fields_checked": list(self.fields_checked),
        }


class ResourceReader(Protocol):
    async def read_canonical(
        self, schema: ResourceSchema, resource_id: str, *, fresh: bool = False
    ) -> tuple[EndpointFamily, dict[str, Any]]: ...

    async def read_legacy_json(self, schema: ResourceSchema, resource_id: str) -> dict[str, Any]: ...

    async def read_legacy_xml(self, schema: ResourceSchema, resource_id: str) -> dict[str, Any]: ...


class VerificationEngine:
    def __init__(
        self,
        reader: ResourceReader,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._reader = reader
        self._sleep = sleep

    async def _snapshot(
        self,
        schema: ResourceSchema,
        resource_id: str,
        requested: Mapping[str, Any],
        *,
        attempt: int,
        include_xml: bool,
        supplement_legacy: bool = True,
    ) -> ResourceSnapshot:
        """
        Every requested field is compared in at least one representation.

        Fields the serving JSON family cannot carry are read from the Legacy
        XML view when it is part of the snapshot, otherwise from Legacy JSON.
        The uncounted diagnostic read skips both supplementary reads.
        A field no representation carried is reported as NOT_COMPARED.
        """
        family, json_fields = await self._reader.read_canonical(schema, resource_id, fresh=True)
        mismatches = find_mismatches(
            schema, requested, json_fields, family=family, representation=json_representation(family)
        )
        compared = fields_compared(schema, requested, family)

        xml_fields = None
        if include_xml:
            xml_fields = await self._reader.read_legacy_xml(schema, resource_id)
            mismatches += find_mismatches(
                schema, requested, xml_fields, family=EndpointFamily.LEGACY, representation=LEGACY_XML
            )
            compared |= fields_compared(schema, requested, EndpointFamily.LEGACY)

        uncovered = {n: v for n, v in requested.items() if n not in compared}
        needs_legacy = fields_compared(schema, uncovered, EndpointFamily.LEGACY)
        if supplement_legacy and family is EndpointFamily.MODERN and needs_legacy:
            legacy_fields = await self._reader.read_legacy_json(schema, resource_id)
            mismatches += find_mismatches(
                schema,
                uncovered,
                legacy_fields,
                family=EndpointFamily.LEGACY,
                representation=json_representation(EndpointFamily.LEGACY),
            )
            compared |= fields_compared(schema, uncovered, EndpointFamily.LEGACY)

        mismatches += [(name, NOT_COMPARED) for name in sorted(requested) if name not in compared]
        return ResourceSnapshot(
            attempt=attempt,
            json_family=family,
            json_fields=json_fields,
            xml_fields=xml_fields,
            mismatches=tuple(mismatches),
            compared=frozenset(compared),
        )

    async def verify(
        self,
        schema: ResourceSchema,
        resource_id: str,
        requested_fields: Mapping[str, Any],
        requirement: VerificationRequirement,
    ) -> VerificationOutcome:
        """
        Raises VerificationFailed when the run of consistent reads is never
        reached, naming the pairs still mismatched on the final attempt. A 404
        on any read propagates immediately.
        """
        names = requirement.fields_to_check or tuple(requested_fields)
        requested = {n: requested_fields[n] for n in names if n in requested_fields}

        # Diagnostic read straight after the write; counted only when configured.
        immediate = await self._snapshot(
            schema,
            resource_id,
            requested,
            attempt=0,
            include_xml=requirement.count_immediate_read and requirement.require_xml_match,
            supplement_legacy=requirement.count_immediate_read,
        )
        log_event(
            logger,
            "verify.immediate_read",
            resource_type=schema.resource_type,
            resource_id=resource_id,
            served_by=immediate.json_family.value,
            mismatched_fields=sorted({f for f, _ in immediate.mismatches}),
        )
        if not requested:
            return VerificationOutcome(verified=True, attempts=1, consistent_reads=1, fields_checked=(), snapshot=immediate)

        consecutive = 1 if (requirement.count_immediate_read and immediate.consistent) else 0
        if consecutive >= requirement.required_consistent_reads:
            return VerificationOutcome(
                verified=True,
                attempts=0,
                consistent_reads=consecutive,
                fields_checked=tuple(sorted(immediate.compared)),
                snapshot=immediate,
            )

        final = immediate
        for attempt in range(1, requirement.max_attempts + 1):
            final = await self._snapshot(
                schema, resource_id, requested, attempt=attempt, include_xml=requirement.require_xml_match
            )
            consecutive = consecutive + 1 if final.consistent else 0
            log_event(
                logger,
                "verify.read",
                resource_type=schema.resource_type,
                resource_id=resource_id,
                attempt=attempt,
                consistent=final.consistent,
                consecutive=consecutive,
                mismatches=[f"{f}@{rep}" for f, rep in final.mismatches],
            )
            if consecutive >= requirement.required_consistent_reads:
                return VerificationOutcome(
                    verified=True,
                    attempts=attempt,
                    consistent_reads=consecutive,
                    fields_checked=tuple(sorted(final.compared)),
                    snapshot=final,
                )
            if attempt < requirement.max_attempts:
                await self._sleep(requirement.delay_s)

        log_event(
            logger,
            "verify.failed",
            severity="WARNING",
            resource_type=schema.resource_type,
            resource_id=resource_id,
            attempts=requirement.max_attempts,
            consistent_reads=consecutive,
            mismatches=[f"{f}@{rep}" for f, rep in final.mismatches],
        )
        raise VerificationFailed(
            resource_type=schema.resource_type,
            resource_id=resource_id,
            mismatches=final.mismatches,
            attempts=requirement.max_attempts,
            consistent_reads=consecutive,
            required_consistent_reads=requirement.required_consistent_reads,
        )
