"""
Per-resource field tables.

Every routed resource type declares how each canonical field is spelled on
the Modern JSON API and where it lives in the Legacy document. Paths are
`/`-separated for nesting on both sides (`general/frequency`).

A field with no Modern path is Legacy-only and vice versa. Translation omits
fields the target family cannot carry; it never invents defaults. A schema with
no Modern collection is served by the Legacy API alone, and `verbs` limits
which logical operations a type accepts.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from ..common.errors import JamfBridgeError
from .families import EndpointFamily
from .normalize import normalize_network_requirements, normalize_policy_frequency, normalize_script_priority


class FieldKind(str, Enum):
    TEXT = "text"
    BOOL = "bool"
    INT = "int"
    TIME = "time"
    # Unordered collection of integer ids.
    SET = "set"
    # Unordered collection of names.
    NAMES = "names"
    # Ordered list of small records (search criteria).
    RECORDS = "records"


class Direction(str, Enum):
    BIDIRECTIONAL = "bidirectional"
    MODERN_ONLY = "modern_only"
    LEGACY_ONLY = "legacy_only"


@dataclass(frozen=True)
class FieldSpec:
    canonical: str
    modern: Optional[str]
    legacy: Optional[str]
    kind: FieldKind = FieldKind.TEXT
    sensitive: bool = False
    # Legacy collections: <container><item_tag><item_key>..</item_key></item_tag></container>
    item_tag: Optional[str] = None
    item_key: str = "id"
    normalizer: Optional[Callable[[Any], Any]] = None
    # Canonical value -> Modern enum spelling, where the two APIs disagree.
    modern_values: Optional[Mapping[str, str]] = None
    # Keys kept on each RECORDS entry, in document order.
    item_fields: tuple[str, ...] = ()

    @property
    def direction(self) -> Direction:
        if self.modern and self.legacy:
            return Direction.BIDIRECTIONAL
        return Direction.MODERN_ONLY if self.modern else Direction.LEGACY_ONLY

    def path_for(self, family: EndpointFamily) -> Optional[str]:
        return self.modern if family is EndpointFamily.MODERN else self.legacy

    def carried_by(self, family: EndpointFamily) -> bool:
        return self.path_for(family) is not None

    def to_modern_value(self, value: Any) -> Any:
        if self.modern_values and isinstance(value, str):
            return self.modern_values.get(value, value)
        return value

    def from_modern_value(self, value: Any) -> Any:
        if self.modern_values and isinstance(value, str):
            for canonical, modern in self.modern_values.items():
                if modern == value:
                    return canonical
        return value


ALL_VERBS = frozenset({"create", "read", "update", "delete"})
READ_ONLY = frozenset({"read"})


@dataclass(frozen=True)
class ResourceSchema:
    resource_type: str
    # None for types only the Legacy API serves.
    modern_collection: Optional[str]
    legacy_collection: str
    legacy_root: str
    fields: tuple[FieldSpec, ...]
    # Item path with an `{id}` placeholder when it is not `<collection>/<id>`.
    modern_item_path: Optional[str] = None
    # Other root keys the Legacy JSON document has been seen under.
    legacy_root_aliases: tuple[str, ...] = ()
    verbs: frozenset[str] = ALL_VERBS

    @property
    def serves_modern(self) -> bool:
        return self.modern_collection is not None

    def allows(self, verb: str) -> bool:
        return verb in self.verbs

    def field(self, canonical: str) -> Optional[FieldSpec]:
        for spec in self.fields:
            if spec.canonical == canonical:
                return spec
        return None

    def sensitive_fields(self) -> frozenset[str]:
        return frozenset(f.canonical for f in self.fields if f.sensitive)

    def modern_item(self, resource_id: str) -> str:
        if self.modern_item_path:
            return self.modern_item_path.format(id=resource_id)
        return f"{self.modern_collection}/{resource_id}"

    def legacy_item(self, resource_id: str) -> str:
        return f"{self.legacy_collection}/id/{resource_id}"

    def breaker_key(self, family: EndpointFamily) -> str:
        return f"{family.value}:{self.resource_type}"


def _parameters(prefix_modern: str = "", prefix_legacy: str = "parameters/") -> tuple[FieldSpec, ...]:
    return tuple(
        FieldSpec(f"parameter{n}", f"{prefix_modern}parameter{n}", f"{prefix_legacy}parameter{n}")
        for n in range(4, 12)
    )


SCRIPT = ResourceSchema(
    resource_type="script",
    modern_collection="/api/v1/scripts",
    legacy_collection="/JSSResource/scripts",
    legacy_root="script",
    fields=(
        FieldSpec("name", "name", "name"),
        FieldSpec("category_name", "categoryName", "category"),
        FieldSpec("info", "info", "info"),
        FieldSpec("notes", "notes", "notes"),
        FieldSpec(
            "priority",
            "priority",
            "priority",
            normalizer=normalize_script_priority,
            modern_values={"Before": "BEFORE", "After": "AFTER", "At Reboot": "AT_REBOOT"},
        ),
        FieldSpec("os_requirements", "osRequirements", "os_requirements"),
        *_parameters(),
        FieldSpec("script_contents", "scriptContents", "script_contents", sensitive=True),
    ),
)

POLICY = ResourceSchema(
    resource_type="policy",
    modern_collection="/api/v1/policies",
    legacy_collection="/JSSResource/policies",
    legacy_root="policy",
    fields=(
        FieldSpec("name", "general/name", "general/name"),
        FieldSpec("enabled", "general/enabled", "general/enabled", kind=FieldKind.BOOL),
        FieldSpec("frequency", "general/frequency", "general/frequency", normalizer=normalize_policy_frequency),
        FieldSpec("trigger_checkin", "general/triggerCheckin", "general/trigger_checkin", kind=FieldKind.BOOL),
        FieldSpec("trigger_other", "general/triggerOther", "general/trigger_other"),
        FieldSpec("retry_attempts", "general/retryAttempts", "general/retry_attempts", kind=FieldKind.INT),
        FieldSpec("category_name", "general/categoryName", "general/category/name"),
        FieldSpec(
            "network_requirements",
            "general/networkRequirements",
            "general/network_requirements",
            normalizer=normalize_network_requirements,
        ),
        FieldSpec(
            "no_execute_start",
            None,
            "general/date_time_limitations/no_execute_start",
            kind=FieldKind.TIME,
        ),
        FieldSpec(
            "no_execute_end",
            None,
            "general/date_time_limitations/no_execute_end",
            kind=FieldKind.TIME,
        ),
        FieldSpec("all_computers", "scope/allComputers", "scope/all_computers", kind=FieldKind.BOOL),
        FieldSpec("computer_ids", "scope/computerIds", "scope/computers", kind=FieldKind.SET, item_tag="computer"),
        FieldSpec(
            "computer_group_ids",
            "scope/computerGroupIds",
            "scope/computer_groups",
            kind=FieldKind.SET,
            item_tag="computer_group",
        ),
        FieldSpec(
            "self_service",
            "selfService/useForSelfService",
            "self_service/use_for_self_service",
            kind=FieldKind.BOOL,
        ),
        FieldSpec(
            "self_service_display_name",
            "selfService/displayName",
            "self_service/self_service_display_name",
        ),
        FieldSpec("package_ids", None, "package_configuration/packages", kind=FieldKind.SET, item_tag="package"),
        FieldSpec("script_ids", None, "scripts", kind=FieldKind.SET, item_tag="script"),
    ),
)

COMPUTER_GROUP = ResourceSchema(
    resource_type="computer_group",
    modern_collection="/api/v2/computer-groups/static-groups",
    legacy_collection="/JSSResource/computergroups",
    legacy_root="computer_group",
    fields=(
        FieldSpec("name", "name", "name"),
        FieldSpec("site_id", "siteId", "site/id", kind=FieldKind.INT),
        FieldSpec("description", "description", None),
        FieldSpec("computer_ids", "computerIds", "computers", kind=FieldKind.SET, item_tag="computer"),
    ),
)

PACKAGE = ResourceSchema(
    resource_type="package",
    modern_collection="/api/v1/packages",
    legacy_collection="/JSSResource/packages",
    legacy_root="package",
    fields=(
        FieldSpec("name", "packageName", "name"),
        FieldSpec("filename", "fileName", "filename"),
        FieldSpec("info", "info", "info"),
        FieldSpec("notes", "notes", "notes"),
        FieldSpec("priority", "priority", "priority", kind=FieldKind.INT),
        FieldSpec("reboot_required", "rebootRequired", "reboot_required", kind=FieldKind.BOOL),
        FieldSpec("fill_user_template", "fillUserTemplate", "fill_user_template", kind=FieldKind.BOOL),
        FieldSpec("os_requirements", "osRequirements", "os_requirements"),
        FieldSpec("category_id", "categoryId", None, kind=FieldKind.INT),
    ),
)

COMPUTER = ResourceSchema(
    resource_type="computer",
    modern_collection="/api/v1/computers-inventory",
    modern_item_path="/api/v1/computers-inventory-detail/{id}",
    legacy_collection="/JSSResource/computers",
    legacy_root="computer",
    verbs=READ_ONLY,
    fields=(
        FieldSpec("name", "general/name", "general/name"),
        FieldSpec("serial_number", "hardware/serialNumber", "general/serial_number"),
        FieldSpec("udid", "udid", "general/udid"),
        FieldSpec("mac_address", "hardware/macAddress", "general/mac_address"),
        FieldSpec("ip_address", "general/lastIpAddress", "general/ip_address"),
        FieldSpec("last_contact_time", "general/lastContactTime", "general/last_contact_time"),
        FieldSpec("os_version", "operatingSystem/version", "hardware/os_version"),
        FieldSpec("model", "hardware/model", "hardware/model"),
        FieldSpec(
            "managed",
            "general/remoteManagement/managed",
            "general/remote_management/managed",
            kind=FieldKind.BOOL,
        ),
        FieldSpec("username", "userAndLocation/username", "location/username"),
        FieldSpec("site_id", "general/site/id", "general/site/id", kind=FieldKind.INT),
    ),
)

MOBILE_DEVICE = ResourceSchema(
    resource_type="mobile_device",
    modern_collection="/api/v2/mobile-devices",
    modern_item_path="/api/v2/mobile-devices/{id}/detail",
    legacy_collection="/JSSResource/mobiledevices",
    legacy_root="mobile_device",
    verbs=READ_ONLY,
    fields=(
        FieldSpec("name", "name", "general/name"),
        FieldSpec("serial_number", "serialNumber", "general/serial_number"),
        FieldSpec("udid", "udid", "general/udid"),
        FieldSpec("wifi_mac_address", "wifiMacAddress", "general/wifi_mac_address"),
        FieldSpec("ip_address", "ipAddress", "general/ip_address"),
        FieldSpec("os_version", "osVersion", "general/os_version"),
        FieldSpec("model", "model", "general/model"),
        FieldSpec("managed", "managed", "general/managed", kind=FieldKind.BOOL),
        FieldSpec("last_inventory_update", "lastInventoryUpdateTimestamp", "general/last_inventory_update"),
        FieldSpec("username", "location/username", "location/username"),
    ),
)

MOBILE_DEVICE_GROUP = ResourceSchema(
    resource_type="mobile_device_group",
    modern_collection="/api/v1/mobile-device-groups",
    legacy_collection="/JSSResource/mobiledevicegroups",
    legacy_root="mobile_device_group",
    verbs=READ_ONLY,
    fields=(
        FieldSpec("name", "name", "name"),
        FieldSpec("is_smart", "isSmartGroup", "is_smart", kind=FieldKind.BOOL),
        FieldSpec("site_id", "siteId", "site/id", kind=FieldKind.INT),
        FieldSpec("mobile_device_ids", None, "mobile_devices", kind=FieldKind.SET, item_tag="mobile_device"),
    ),
)

COMPUTER_CONFIGURATION_PROFILE = ResourceSchema(
    resource_type="computer_configuration_profile",
    modern_collection="/api/v2/computer-configuration-profiles",
    legacy_collection="/JSSResource/osxconfigurationprofiles",
    legacy_root="os_x_configuration_profile",
    legacy_root_aliases=("osx_configuration_profile",),
    verbs=READ_ONLY,
    fields=(
        FieldSpec("name", "name", "general/name"),
        FieldSpec("description", "description", "general/description"),
        FieldSpec("level", "level", "general/level"),
        FieldSpec("distribution_method", "distributionMethod", "general/distribution_method"),
        FieldSpec("category_name", "categoryName", "general/category/name"),
        FieldSpec("all_computers", "scope/allComputers", "scope/all_computers", kind=FieldKind.BOOL),
        FieldSpec("computer_ids", "scope/computerIds", "scope/computers", kind=FieldKind.SET, item_tag="computer"),
        FieldSpec(
            "computer_group_ids",
            "scope/computerGroupIds",
            "scope/computer_groups",
            kind=FieldKind.SET,
            item_tag="computer_group",
        ),
        # Payload plists can embed certificates and passwords.
        FieldSpec("payloads", None, "general/payloads", sensitive=True),
    ),
)

MOBILE_DEVICE_CONFIGURATION_PROFILE = ResourceSchema(
    resource_type="mobile_device_configuration_profile",
    modern_collection="/api/v2/mobile-device-configuration-profiles",
    legacy_collection="/JSSResource/mobiledeviceconfigurationprofiles",
    legacy_root="configuration_profile",
    legacy_root_aliases=("mobiledeviceconfigurationprofile",),
    verbs=READ_ONLY,
    fields=(
        FieldSpec("name", "name", "general/name"),
        FieldSpec("description", "description", "general/description"),
        FieldSpec("level", "level", "general/level"),
        FieldSpec("deployment_method", "deploymentMethod", "general/deployment_method"),
        FieldSpec("category_name", "categoryName", "general/category/name"),
        FieldSpec("all_mobile_devices", "scope/allMobileDevices", "scope/all_mobile_devices", kind=FieldKind.BOOL),
        FieldSpec(
            "mobile_device_ids",
            "scope/mobileDeviceIds",
            "scope/mobile_devices",
            kind=FieldKind.SET,
            item_tag="mobile_device",
        ),
        FieldSpec(
            "mobile_device_group_ids",
            "scope/mobileDeviceGroupIds",
            "scope/mobile_device_groups",
            kind=FieldKind.SET,
            item_tag="mobile_device_group",
        ),
        FieldSpec("payloads", None, "general/payloads", sensitive=True),
    ),
)

ADVANCED_COMPUTER_SEARCH = ResourceSchema(
    resource_type="advanced_computer_search",
    modern_collection=None,
    legacy_collection="/JSSResource/advancedcomputersearches",
    legacy_root="advanced_computer_search",
    verbs=frozenset({"create", "read", "delete"}),
    fields=(
        FieldSpec("name", None, "name"),
        FieldSpec("view_as", None, "view_as"),
        FieldSpec("site_id", None, "site/id", kind=FieldKind.INT),
        FieldSpec(
            "criteria",
            None,
            "criteria",
            kind=FieldKind.RECORDS,
            item_tag="criterion",
            item_fields=("name", "priority", "and_or", "search_type", "value"),
        ),
        FieldSpec(
            "display_fields",
            None,
            "display_fields",
            kind=FieldKind.NAMES,
            item_tag="display_field",
            item_key="name",
        ),
    ),
)

SCHEMAS: Mapping[str, ResourceSchema] = {
    s.resource_type: s
    for s in (
        SCRIPT,
        POLICY,
        COMPUTER_GROUP,
        PACKAGE,
        COMPUTER,
        MOBILE_DEVICE,
        MOBILE_DEVICE_GROUP,
        COMPUTER_CONFIGURATION_PROFILE,
        MOBILE_DEVICE_CONFIGURATION_PROFILE,
        ADVANCED_COMPUTER_SEARCH,
    )
}


def get_schema(resource_type: str) -> ResourceSchema:
    try:
        return SCHEMAS[str(resource_type)]
    except KeyError:
        raise JamfBridgeError(
            f"Unsupported resource type: {resource_type}",
            code="UNSUPPORTED_RESOURCE_TYPE",
            suggestions=[f"Supported types: {', '.join(sorted(SCHEMAS))}"],
        ) from None
