"""
Canonical <-> Modern JSON / Legacy JSON / Legacy XML translation.

All functions are pure and driven by a `ResourceSchema`. Fields the target
representation cannot carry are omitted; absent fields stay absent.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Any, Iterable, Mapping, Optional

from ..common.errors import JamfBridgeError
from .families import EndpointFamily
from .schema import FieldKind, FieldSpec, ResourceSchema

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

_MISSING = object()

COLLECTION_KINDS = frozenset({FieldKind.SET, FieldKind.NAMES, FieldKind.RECORDS})


class PayloadError(JamfBridgeError):
    code = "INVALID_PAYLOAD"
    default_suggestions = ("Check field types against the resource schema",)


def _coerce_bool(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).strip().lower()
    if s in {"true", "1", "yes", "y", "on"}:
        return True
    if s in {"false", "0", "no", "n", "off"}:
        return False
    return value


def _coerce_int(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return value


def _coerce_items(value: Any, *, item_key: str, item_tag: Optional[str] = None, as_int: bool = True) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, Mapping):
        # Legacy JSON sometimes wraps the list: {"computer": [...]} or a single item.
        inner = value.get(item_tag) if item_tag else None
        if inner is None and item_key in value:
            inner = [value]
        value = inner if inner is not None else []
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        value = [value]
    out: list[Any] = []
    for item in value:
        if isinstance(item, Mapping):
            item = item.get(item_key)
        if item is None or item == "":
            continue
        out.append(_coerce_int(item) if as_int else str(item).strip())
    return out


def _coerce_records(value: Any, *, item_tag: Optional[str], item_fields: tuple[str, ...]) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, Mapping):
        inner = value.get(item_tag) if item_tag else None
        if inner is None and any(k in value for k in item_fields):
            inner = [value]
        value = inner if inner is not None else []
        if isinstance(value, Mapping):
            value = [value]
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        return [value]
    out: list[Any] = []
    for record in value:
        if not isinstance(record, Mapping):
            out.append(record)
            continue
        out.append({k: _xml_text(record[k]).strip() for k in item_fields if record.get(k) is not None})
    return out


def coerce_value(spec: FieldSpec, value: Any) -> Any:
    """
    Bring a raw value into its canonical type. Unconvertible values are kept
    as-is so comparisons report them instead of hiding them.
    """
    if value is None:
        return None
    if spec.kind is FieldKind.BOOL:
        return _coerce_bool(value)
    if spec.kind is FieldKind.INT:
        return _coerce_int(value)
    if spec.kind is FieldKind.SET:
        return _coerce_items(value, item_key=spec.item_key, item_tag=spec.item_tag)
    if spec.kind is FieldKind.NAMES:
        return _coerce_items(value, item_key=spec.item_key, item_tag=spec.item_tag, as_int=False)
    if spec.kind is FieldKind.RECORDS:
        return _coerce_records(value, item_tag=spec.item_tag, item_fields=spec.item_fields)
    if isinstance(value, str):
        return value.strip() if spec.kind is FieldKind.TIME else value
    return str(value)


def _get_path(doc: Any, path: str) -> Any:
    cur = doc
    for part in path.split("/"):
        if not isinstance(cur, Mapping) or part not in cur:
            return _MISSING
        cur = cur[part]
    return cur


def _set_path(doc: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split("/")
    cur = doc
    for part in parts[:-1]:
        nxt = cur.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[part] = nxt
        cur = nxt
    cur[parts[-1]] = value


def canonicalize_payload(schema: ResourceSchema, payload: Mapping[str, Any] | None) -> tuple[dict[str, Any], list[str]]:
    """
    Returns (canonical_fields, unknown_field_names).

    Enum aliases are normalized here so both families receive the same value.
    """
    canonical: dict[str, Any] = {}
    unknown: list[str] = []
    for key, raw in (payload or {}).items():
        spec = schema.field(str(key))
        if spec is None:
            unknown.append(str(key))
            continue
        if raw is None:
            continue
        value = spec.normalizer(raw) if spec.normalizer else raw
        if value is None:
            continue
        value = coerce_value(spec, value)
        if spec.kind is FieldKind.BOOL and not isinstance(value, bool):
            raise PayloadError(f"{schema.resource_type}.{spec.canonical} must be a boolean")
        if spec.kind is FieldKind.INT and not isinstance(value, int):
            raise PayloadError(f"{schema.resource_type}.{spec.canonical} must be an integer")
        if spec.kind is FieldKind.SET and not all(isinstance(v, int) for v in value):
            raise PayloadError(f"{schema.resource_type}.{spec.canonical} must be a list of integer ids")
        if spec.kind is FieldKind.RECORDS and not all(isinstance(v, dict) for v in value):
            raise PayloadError(f"{schema.resource_type}.{spec.canonical} must be a list of objects")
        canonical[spec.canonical] = value
    return canonical, sorted(unknown)


def fields_not_carried(schema: ResourceSchema, canonical: Mapping[str, Any], family: EndpointFamily) -> list[str]:
    out = []
    for name in canonical:
        spec = schema.field(name)
        if spec is not None and not spec.carried_by(family):
            out.append(name)
    return sorted(out)


# --- Modern JSON -------------------------------------------------------------


def to_modern_payload(schema: ResourceSchema, canonical: Mapping[str, Any]) -> dict[str, Any]:
    body: dict[str, Any] = {}
    for name, value in canonical.items():
        spec = schema.field(name)
        if spec is None or spec.modern is None:
            continue
        if spec.kind in COLLECTION_KINDS:
            value = list(value)
        _set_path(body, spec.modern, spec.to_modern_value(value))
    return body


def from_modern(schema: ResourceSchema, body: Mapping[str, Any] | None) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for spec in schema.fields:
        if spec.modern is None:
            continue
        raw = _get_path(body or {}, spec.modern)
        if raw is _MISSING:
            continue
        out[spec.canonical] = coerce_value(spec, spec.from_modern_value(raw))
    return out


def modern_id(body: Any) -> Optional[str]:
    if isinstance(body, Mapping) and body.get("id") not in (None, ""):
        return str(body["id"])
    return None


# --- Legacy JSON -------------------------------------------------------------


def to_legacy_document(schema: ResourceSchema, canonical: Mapping[str, Any]) -> dict[str, Any]:
    """
    Nested dict form of the Legacy document, rooted at `legacy_root`.
    Sets and names become lists of `{item_key: value}` objects.
    """
    inner: dict[str, Any] = {}
    for name, value in canonical.items():
        spec = schema.field(name)
        if spec is None or spec.legacy is None:
            continue
        if spec.kind in (FieldKind.SET, FieldKind.NAMES):
            value = [{spec.item_key: v} for v in value]
        elif spec.kind is FieldKind.RECORDS:
            value = [dict(r) for r in value]
        _set_path(inner, spec.legacy, value)
    return {schema.legacy_root: inner}


def from_legacy_json(schema: ResourceSchema, body: Mapping[str, Any] | None) -> dict[str, Any]:
    doc = body or {}
    inner: Any = {}
    if isinstance(doc, Mapping):
        inner = doc
        for root in (schema.legacy_root, *schema.legacy_root_aliases):
            if root in doc:
                inner = doc[root]
                break
    out: dict[str, Any] = {}
    for spec in schema.fields:
        if spec.legacy is None:
            continue
        raw = _get_path(inner, spec.legacy)
        if raw is _MISSING:
            continue
        out[spec.canonical] = coerce_value(spec, raw)
    return out


# --- Legacy XML --------------------------------------------------------------


def _xml_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def _child(parent: ET.Element, tag: str) -> ET.Element:
    existing = parent.find(tag)
    if existing is not None:
        return existing
    return ET.SubElement(parent, tag)


def to_legacy_xml(schema: ResourceSchema, canonical: Mapping[str, Any]) -> str:
    root = ET.Element(schema.legacy_root)
    for name, value in canonical.items():
        spec = schema.field(name)
        if spec is None or spec.legacy is None:
            continue
        node = root
        for part in spec.legacy.split("/"):
            node = _child(node, part)
        if spec.kind in (FieldKind.SET, FieldKind.NAMES):
            for item in value:
                entry = ET.SubElement(node, spec.item_tag or "item")
                ET.SubElement(entry, spec.item_key).text = _xml_text(item)
        elif spec.kind is FieldKind.RECORDS:
            for record in value:
                entry = ET.SubElement(node, spec.item_tag or "item")
                for key in spec.item_fields:
                    if key in record:
                        ET.SubElement(entry, key).text = _xml_text(record[key])
        else:
            node.text = _xml_text(value)
    return XML_DECLARATION + ET.tostring(root, encoding="unicode")


def _parse_xml(text: str | bytes) -> ET.Element:
    try:
        return ET.fromstring(text)
    except ET.ParseError as e:
        raise JamfBridgeError(
            "Legacy API returned malformed XML",
            code="INVALID_RESPONSE",
            suggestions=["Retry the read; the server may have returned an error page"],
        ) from e


def from_legacy_xml(schema: ResourceSchema, text: str | bytes) -> dict[str, Any]:
    root = _parse_xml(text)
    out: dict[str, Any] = {}
    for spec in schema.fields:
        if spec.legacy is None:
            continue
        node = root.find(spec.legacy)
        if node is None:
            continue
        if spec.kind in (FieldKind.SET, FieldKind.NAMES):
            ids = [entry.findtext(spec.item_key) for entry in node.findall(spec.item_tag or "item")]
            out[spec.canonical] = coerce_value(spec, [i for i in ids if i])
        elif spec.kind is FieldKind.RECORDS:
            entries = node.findall(spec.item_tag or "item")
            records = [{k: entry.findtext(k) for k in spec.item_fields} for entry in entries]
            out[spec.canonical] = coerce_value(spec, records)
        else:
            out[spec.canonical] = coerce_value(spec, node.text or "")
    return out


def legacy_created_id(text: str | bytes | None, location: Optional[str]) -> Optional[str]:
    """
    A Legacy create answers with `<root><id>N</id></root>` and/or a Location
    header ending in `/id/N`.
    """
    if text:
        try:
            found = ET.fromstring(text).findtext("id")
        except ET.ParseError:
            found = None
        if found and found.strip() and found.strip() != "0":
            return found.strip()
    if location:
        tail = location.rstrip("/").rsplit("/", 1)[-1]
        if tail and tail != "0":
            return tail
    return None
