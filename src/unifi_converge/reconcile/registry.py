"""Schema Registry: versioned field and enum descriptors.

Descriptors are extracted out of band from a running controller and laid out
as one directory per controller version::

    schemas/
      9.0.114/
        fields.json   # {collection: {field: type | {type, enum, required}}}
        enums.json    # {key: [values]} or {key: {values: [...]}}

JSON and YAML are both accepted. With no extracted versions at all, "latest"
resolves to a built-in descriptor carrying the fallback enum sets.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from ..errors import SchemaNotFound

logger = logging.getLogger(__name__)

LATEST = "latest"
DEFAULT_VERSION = "builtin"

FIELDS_FILES = ("fields.json", "fields.yaml", "fields.yml")
ENUMS_FILES = ("enums.json", "enums.yaml", "enums.yml", "generated/enums.json")

# Used when a descriptor does not discover a value set
DEFAULT_ENUMS: dict[str, list[str]] = {
    "zone_keys": ["internal", "external", "gateway", "vpn", "hotspot", "dmz"],
    "network_purposes": [
        "corporate", "guest", "wan", "vlan-only", "remote-user-vpn", "site-vpn",
    ],
    "network_groups": ["LAN", "WAN", "WAN2"],
    "wifi_security": ["open", "wpapsk", "wpaeap", "wep"],
    "wifi_pmf_modes": ["disabled", "optional", "required"],
    "wifi_bands": ["2g", "5g", "6g"],
    "wifi_mac_filter_policies": ["allow", "deny"],
    "firewall_actions": ["allow", "block", "reject", "ALLOW", "BLOCK", "REJECT"],
    "protocols": ["all", "tcp_udp", "tcp", "udp", "icmp", "icmpv6"],
    "ip_versions": ["both", "ipv4", "ipv6", "BOTH", "IPV4", "IPV6"],
    "connection_states": [
        "ALL", "ESTABLISHED", "INVALID", "NEW", "RELATED", "RETURN_TRAFFIC",
    ],
    "matching_targets": ["any", "network", "ip", "mac", "device", "ANY", "NETWORK", "IP"],
    "port_forward_protocols": ["tcp", "udp", "tcp_udp"],
    "traffic_actions": ["BLOCK", "ALLOW", "QOS_RATE_LIMIT"],
    "traffic_matching_targets": [
        "INTERNET", "LOCAL_NETWORK", "IP", "NETWORK", "DOMAIN", "REGION",
    ],
    "schedule_modes": ["ALWAYS", "CUSTOM", "EVERY_DAY", "EVERY_WEEK", "ONE_TIME_ONLY"],
    "firewall_group_types": ["address-group", "port-group", "ipv6-address-group"],
    "port_profile_forwards": ["all", "native", "disabled", "customize"],
    "poe_modes": ["auto", "off", "pasv24", "passthrough"],
    "port_speeds": ["autoneg", "10", "100", "1000", "2500", "10000"],
    "vpn_types": ["ipsec", "openvpn", "wireguard"],
    "ike_versions": ["1", "2"],
}

# Accepted spellings of descriptor field types
TYPE_ALIASES = {
    "str": "string", "string": "string",
    "int": "int", "integer": "int", "number": "number", "float": "number",
    "bool": "bool", "boolean": "bool",
    "list": "list", "array": "list",
    "dict": "object", "object": "object", "map": "object",
    "any": "any",
}


@dataclass
class CollectionDescriptor:
    """Fields of one controller collection as extracted."""
    name: str
    fields: dict[str, str] = field(default_factory=dict)
    enums: dict[str, list[str]] = field(default_factory=dict)
    required: set[str] = field(default_factory=set)

    def has_field(self, name: str) -> bool:
        return name in self.fields

    def field_type(self, name: str) -> Optional[str]:
        return self.fields.get(name)


@dataclass
class SchemaDescriptor:
    """Resolved schema for one controller version."""
    version: str
    collections: dict[str, CollectionDescriptor] = field(default_factory=dict)
    enums: dict[str, list[str]] = field(default_factory=dict)
    source: Optional[Path] = None

    @property
    def is_default(self) -> bool:
        return self.source is None

    def has_collection(self, name: str) -> bool:
        return name in self.collections

    def collection(self, name: str) -> Optional[CollectionDescriptor]:
        return self.collections.get(name)

    def enum_values(self, key: str) -> list[str]:
        """Discovered values for ``key``, else the built-in fallback."""
        discovered = self.enums.get(key)
        if discovered:
            return list(discovered)
        return list(DEFAULT_ENUMS.get(key, []))


def _version_key(version: str) -> tuple:
    """Numeric ordering: 9.0.114 > 9.0.9 > 8.6.10."""
    parts = []
    for part in version.replace("-", ".").split("."):
        if part.isdigit():
            parts.append((int(part), ""))
        else:
            parts.append((-1, part))
    return tuple(parts)


def _enum_list(raw: Any) -> list[str]:
    """Accept both the list format and the {values: [...]} format."""
    if isinstance(raw, list):
        values = raw
    elif isinstance(raw, dict) and isinstance(raw.get("values"), list):
        values = raw["values"]
    else:
        return []
    return [str(v) for v in values]


class SchemaRegistry:
    """Resolve schema versions to descriptors from a directory."""

    def __init__(self, schema_dir: Union[str, Path, None] = None):
        self.schema_dir = Path(schema_dir) if schema_dir else None
        self._cache: dict[str, SchemaDescriptor] = {}

    def versions(self) -> list[str]:
        """Extracted versions, highest first."""
        if self.schema_dir is None or not self.schema_dir.is_dir():
            return []
        found = [
            p.name for p in self.schema_dir.iterdir()
            if p.is_dir() and self._has_descriptor(p)
        ]
        return sorted(found, key=_version_key, reverse=True)

    def resolve(self, version: Optional[str] = LATEST) -> SchemaDescriptor:
        """
        Resolve a pinned version or "latest" to a descriptor.

        Raises:
            SchemaNotFound: If a pinned version has no extracted descriptor
        """
        version = version or LATEST
        if version in self._cache:
            return self._cache[version]

        if version == LATEST:
            available = self.versions()
            if not available:
                logger.info("No extracted schema found, using built-in defaults")
                descriptor = self.default()
            else:
                descriptor = self.resolve(available[0])
        else:
            path = self.schema_dir / version if self.schema_dir else None
            if path is None or not path.is_dir() or not self._has_descriptor(path):
                raise SchemaNotFound(version, str(self.schema_dir) if self.schema_dir else None)
            descriptor = self._load(version, path)
            logger.debug(
                f"Loaded schema {version}: {len(descriptor.collections)} collections, "
                f"{len(descriptor.enums)} enums"
            )

        self._cache[version] = descriptor
        return descriptor

    @staticmethod
    def default() -> SchemaDescriptor:
        return SchemaDescriptor(version=DEFAULT_VERSION)

    @staticmethod
    def _has_descriptor(path: Path) -> bool:
        return any((path / name).is_file() for name in FIELDS_FILES + ENUMS_FILES)

    def _load(self, version: str, path: Path) -> SchemaDescriptor:
        enums: dict[str, list[str]] = {}
        for name in ENUMS_FILES:
            raw = self._read(path / name)
            if isinstance(raw, dict):
                # Later files (generated/) take precedence
                for key, value in raw.items():
                    values = _enum_list(value)
                    if values:
                        enums[key] = values

        collections: dict[str, CollectionDescriptor] = {}
        for name in FIELDS_FILES:
            raw = self._read(path / name)
            if isinstance(raw, dict):
                for collection, fields in raw.items():
                    collections[collection] = self._collection(collection, fields)

        return SchemaDescriptor(
            version=version, collections=collections, enums=enums, source=path
        )

    @staticmethod
    def _read(path: Path) -> Any:
        if not path.is_file():
            return None
        with open(path, encoding="utf-8") as f:
            # YAML is a superset of JSON
            return yaml.safe_load(f)

    @staticmethod
    def _collection(name: str, raw: Any) -> CollectionDescriptor:
        descriptor = CollectionDescriptor(name=name)
        if isinstance(raw, list):
            # Bare field list, types unknown
            descriptor.fields = {str(f): "any" for f in raw}
            return descriptor
        if not isinstance(raw, dict):
            return descriptor

        for field_name, entry in raw.items():
            if isinstance(entry, dict):
                type_name = str(entry.get("type", "any")).lower()
                values = _enum_list(entry.get("enum"))
                if values:
                    descriptor.enums[field_name] = values
                if entry.get("required"):
                    descriptor.required.add(field_name)
            else:
                type_name = str(entry).lower() if entry is not None else "any"
            descriptor.fields[field_name] = TYPE_ALIASES.get(type_name, "any")
        return descriptor
