from __future__ import annotations

from typing import Any, Mapping

from ..common.timeutils import normalize_time_of_day
from ..routing.families import EndpointFamily
from ..routing.schema import FieldKind, FieldSpec, ResourceSchema
from ..routing.translate import coerce_value

LEGACY_XML = "legacy_xml"
# Marks a requested field that no representation read in a snapshot could carry.
NOT_COMPARED = "not_compared"


def json_representation(family: EndpointFamily) -> str:
    return f"{family.value}_json"


def _normalize_text(value: Any) -> str:
    return str(value).replace("\r\n", "\n").strip()


def values_equal(spec: FieldSpec, expected: Any, actual: Any) -> bool:
    """
    Type-aware equality between the requested value and what a read returned.

    - time-of-day compares on normalized 24h "HH:MM"
    - sets and names compare order-insensitively, records in order
    - booleans/ints are coerced from their string forms first
    """
    if expected is None or actual is None:
        return expected is None and actual is None
    if spec.kind is FieldKind.TIME:
        return normalize_time_of_day(expected) == normalize_time_of_day(actual)
    exp = coerce_value(spec, expected)
    act = coerce_value(spec, actual)
    if spec.kind in (FieldKind.SET, FieldKind.NAMES):
        return sorted(map(str, exp)) == sorted(map(str, act))
    if spec.kind is FieldKind.RECORDS:
        return exp == act
    if spec.kind in (FieldKind.BOOL, FieldKind.INT):
        return exp == act
    return _normalize_text(exp) == _normalize_text(act)


def find_mismatches(
    schema: ResourceSchema,
    requested: Mapping[str, Any],
    observed: Mapping[str, Any],
    *,
    family: EndpointFamily,
    representation: str,
) -> list[tuple[str, str]]:
    """
    (field, representation) pairs where `observed` disagrees with `requested`.

    Fields the representation's family cannot carry are not compared.
    """
    out: list[tuple[str, str]] = []
    for name, expected in requested.items():
        spec = schema.field(name)
        if spec is None or not spec.carried_by(family):
            continue
        if name not in observed or not values_equal(spec, expected, observed[name]):
            out.append((name, representation))
    return out


def fields_compared(schema: ResourceSchema, requested: Mapping[str, Any], family: EndpointFamily) -> set[str]:
    return {name for name in requested if (spec := schema.field(name)) is not None and spec.carried_by(family)}
