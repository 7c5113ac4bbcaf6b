"""Canonical entity model.

Each entity is identified inside its collection by a logical ``name`` and
renders itself to a controller document with ``to_fields()``. Reference
fields in those documents hold logical names; they are only translated to
device ids by the Apply Engine right before a controller call.
"""
import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Optional, Union


# Written on create only, never compared or updated afterwards
MANAGEMENT_MARKER_FIELD = "managed_by"
MANAGEMENT_MARKER_VALUE = "unifi-converge"


class Collection(str, Enum):
    """Named collections, declared in dependency order."""
    NETWORK = "networkconf"
    FIREWALL_ZONE = "firewall_zone"
    FIREWALL_GROUP = "firewallgroup"
    RADIUS_PROFILE = "radiusprofile"
    WIFI = "wlanconf"
    PORT_PROFILE = "portconf"
    TRAFFIC_RULE = "traffic_rule"
    FIREWALL_POLICY = "firewall_policy"
    WIREGUARD_SERVER = "wireguard_server"
    WIREGUARD_PEER = "wireguard_peer"
    SITE_TO_SITE_VPN = "site_to_site_vpn"
    PORT_FORWARD = "portforward"
    DHCP_RESERVATION = "dhcp_reservation"
    GLOBAL_SETTING = "setting"

    @property
    def label(self) -> str:
        return COLLECTION_LABELS[self]


COLLECTION_ORDER: tuple[Collection, ...] = tuple(Collection)

COLLECTION_LABELS = {
    Collection.NETWORK: "Network",
    Collection.FIREWALL_ZONE: "FirewallZone",
    Collection.FIREWALL_GROUP: "FirewallGroup",
    Collection.RADIUS_PROFILE: "RadiusProfile",
    Collection.WIFI: "WifiNetwork",
    Collection.PORT_PROFILE: "PortProfile",
    Collection.TRAFFIC_RULE: "TrafficRule",
    Collection.FIREWALL_POLICY: "FirewallPolicy",
    Collection.WIREGUARD_SERVER: "WireGuardServer",
    Collection.WIREGUARD_PEER: "WireGuardPeer",
    Collection.SITE_TO_SITE_VPN: "SiteToSiteVpn",
    Collection.PORT_FORWARD: "PortForward",
    Collection.DHCP_RESERVATION: "DhcpReservation",
    Collection.GLOBAL_SETTING: "GlobalSetting",
}


def collection_label(collection: str) -> str:
    """Human label for a named or schema-backed collection."""
    try:
        return Collection(collection).label
    except ValueError:
        return collection


# --- Secrets ---

@dataclass(frozen=True)
class SecretLiteral:
    """A secret given inline (or already resolved)."""
    value: str

    def __repr__(self) -> str:
        return "SecretLiteral(******)"


@dataclass(frozen=True)
class SecretReference:
    """A secret held by an external backend, addressed by path."""
    path: str

    def __str__(self) -> str:
        return f"<secret:{self.path}>"


SecretRef = Union[SecretLiteral, SecretReference]


def render_secret(value: Optional[SecretRef]) -> Any:
    """Render a SecretRef into a document value.

    Unresolved references stay as SecretReference objects so the diff can
    tell an unknown value from a real one.
    """
    if isinstance(value, SecretLiteral):
        return value.value
    return value


# --- References ---

@dataclass(frozen=True)
class ReferenceField:
    """A field of a controller document that points at another entity."""
    path: tuple[str, ...]
    target: Collection
    many: bool = False
    # Field name as written in the desired-state document, for errors
    label: str = ""

    @property
    def dotted(self) -> str:
        return ".".join(self.path)


REFERENCE_FIELDS: dict[str, tuple[ReferenceField, ...]] = {
    Collection.FIREWALL_ZONE.value: (
        ReferenceField(("network_ids",), Collection.NETWORK, many=True, label="networks"),
    ),
    Collection.WIFI.value: (
        ReferenceField(("networkconf_id",), Collection.NETWORK, label="network"),
        ReferenceField(("radiusprofile_id",), Collection.RADIUS_PROFILE, label="radiusProfile"),
    ),
    Collection.PORT_PROFILE.value: (
        ReferenceField(("native_networkconf_id",), Collection.NETWORK, label="nativeNetwork"),
        ReferenceField(("tagged_networkconf_ids",), Collection.NETWORK, many=True,
                       label="taggedNetworks"),
    ),
    Collection.TRAFFIC_RULE.value: (
        ReferenceField(("network_id",), Collection.NETWORK, label="network"),
    ),
    Collection.FIREWALL_POLICY.value: (
        ReferenceField(("source", "zone_id"), Collection.FIREWALL_ZONE, label="sourceZone"),
        ReferenceField(("source", "network_ids"), Collection.NETWORK, many=True,
                       label="sourceNetworks"),
        ReferenceField(("source", "port_group_id"), Collection.FIREWALL_GROUP,
                       label="sourcePortGroup"),
        ReferenceField(("destination", "zone_id"), Collection.FIREWALL_ZONE,
                       label="destinationZone"),
        ReferenceField(("destination", "network_ids"), Collection.NETWORK, many=True,
                       label="destinationNetworks"),
        ReferenceField(("destination", "port_group_id"), Collection.FIREWALL_GROUP,
                       label="destinationPortGroup"),
    ),
    Collection.WIREGUARD_PEER.value: (
        ReferenceField(("server_id",), Collection.WIREGUARD_SERVER, label="server"),
    ),
    Collection.DHCP_RESERVATION.value: (
        ReferenceField(("network_id",), Collection.NETWORK, label="network"),
    ),
}

# Controller field holding the logical name, when it is not "name"
NAME_FIELDS: dict[str, str] = {
    Collection.TRAFFIC_RULE.value: "description",
    Collection.GLOBAL_SETTING.value: "key",
}


# Documents the controller keeps for the lifetime of the site; never deleted
RETAINED_COLLECTIONS = frozenset({Collection.GLOBAL_SETTING.value})


def logical_name_of(collection: str, doc: dict[str, Any]) -> Optional[str]:
    """Extract the logical name from a controller document."""
    if collection == Collection.FIREWALL_ZONE.value and doc.get("zone_key"):
        # Built-in zones are addressed by their key
        return doc["zone_key"]
    return doc.get(NAME_FIELDS.get(collection, "name"))


def _upper(value: Any) -> Any:
    """Controller casing for enum values; anything else is left for the validator."""
    return value.upper() if isinstance(value, str) else value


def get_path(doc: dict[str, Any], path: tuple[str, ...]) -> Any:
    current: Any = doc
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _set_path(doc: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    current = doc
    for key in path[:-1]:
        current = current.setdefault(key, {})
    current[path[-1]] = value


def _copy_path(doc: dict[str, Any], path: tuple[str, ...]) -> dict[str, Any]:
    """Shallow-copy the dicts along ``path`` so the caller can write into it."""
    result = dict(doc)
    current = result
    for key in path[:-1]:
        nested = current.get(key)
        if not isinstance(nested, dict):
            return result
        current[key] = dict(nested)
        current = current[key]
    return result


def references_of(collection: str, fields: dict[str, Any]) -> list[tuple[str, str]]:
    """List the (collection, logical name) pairs a document refers to."""
    refs: list[tuple[str, str]] = []
    for ref in REFERENCE_FIELDS.get(collection, ()):
        value = get_path(fields, ref.path)
        if value is None:
            continue
        values = value if ref.many and isinstance(value, list) else [value]
        for item in values:
            if isinstance(item, str) and item:
                refs.append((ref.target.value, item))
    return refs


def translate_references(
    collection: str,
    fields: dict[str, Any],
    table: dict[tuple[str, str], str],
) -> tuple[dict[str, Any], list[tuple[str, str]]]:
    """Swap reference values through ``table``.

    Used both ways: names to ids before a controller call, and ids to names
    when reading live state. Returns the translated copy and the list of
    (collection, value) pairs missing from the table; missing values are
    left untouched.
    """
    result = dict(fields)
    missing: list[tuple[str, str]] = []

    def lookup(target: str, value: Any) -> Any:
        if not isinstance(value, str) or not value:
            return value
        key = (target, value)
        if key in table:
            return table[key]
        missing.append(key)
        return value

    for ref in REFERENCE_FIELDS.get(collection, ()):
        value = get_path(result, ref.path)
        if value is None:
            continue
        result = _copy_path(result, ref.path)
        if ref.many and isinstance(value, list):
            translated = [lookup(ref.target.value, v) for v in value]
        else:
            translated = lookup(ref.target.value, value)
        _set_path(result, ref.path, translated)

    return result, missing


# --- Entities ---

@dataclass
class DhcpSettings:
    enabled: bool = False
    start: Optional[str] = None
    end: Optional[str] = None
    dns: list[str] = field(default_factory=list)
    lease_time: int = 86400


@dataclass
class Network:
    collection: ClassVar[Collection] = Collection.NETWORK

    name: str
    subnet: Optional[str] = None
    vlan: Optional[int] = None
    enabled: bool = True
    purpose: str = "corporate"
    network_group: str = "LAN"
    dhcp: DhcpSettings = field(default_factory=DhcpSettings)
    isolate: bool = False
    internet_access: bool = True
    mdns: bool = True
    igmp_snooping: bool = False

    def dhcp_range(self) -> tuple[Optional[str], Optional[str]]:
        """DHCP range, defaulting to .6 through the last usable host."""
        start, end = self.dhcp.start, self.dhcp.end
        if (start is None or end is None) and self.subnet:
            try:
                net = ipaddress.ip_interface(self.subnet).network
            except (TypeError, ValueError):
                return start, end
            if net.num_addresses > 8:
                start = start or str(net.network_address + 6)
                end = end or str(net.broadcast_address - 1)
        return start, end

    def to_fields(self) -> dict[str, Any]:
        start, end = self.dhcp_range()
        dns = list(self.dhcp.dns[:4])
        doc: dict[str, Any] = {
            "name": self.name,
            "enabled": self.enabled,
            "purpose": self.purpose,
            "networkgroup": self.network_group,
            "ip_subnet": self.subnet,
            "vlan_enabled": self.vlan is not None,
            "dhcpd_enabled": self.dhcp.enabled,
            "dhcpd_start": start,
            "dhcpd_stop": end,
            "dhcpd_leasetime": self.dhcp.lease_time,
            "dhcpd_dns_enabled": bool(dns),
            "internet_access_enabled": self.internet_access,
            "network_isolation_enabled": self.isolate,
            "mdns_enabled": self.mdns,
            "igmp_snooping": self.igmp_snooping,
        }
        if self.vlan is not None:
            doc["vlan"] = self.vlan
        for i in range(4):
            doc[f"dhcpd_dns_{i + 1}"] = dns[i] if i < len(dns) else ""
        return doc


@dataclass
class FirewallZone:
    collection: ClassVar[Collection] = Collection.FIREWALL_ZONE

    name: str
    networks: list[str] = field(default_factory=list)

    def to_fields(self) -> dict[str, Any]:
        return {"name": self.name, "network_ids": list(self.networks)}


@dataclass
class FirewallGroup:
    collection: ClassVar[Collection] = Collection.FIREWALL_GROUP

    name: str
    type: str = "address-group"
    members: list[str] = field(default_factory=list)

    def to_fields(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "group_type": self.type,
            "group_members": [str(m) for m in self.members],
        }


@dataclass
class RadiusServer:
    ip: Optional[str] = None
    port: int = 1812
    secret: Optional[SecretRef] = None

    def to_fields(self) -> dict[str, Any]:
        return {"ip": self.ip, "port": self.port, "x_secret": render_secret(self.secret)}


@dataclass
class RadiusProfile:
    collection: ClassVar[Collection] = Collection.RADIUS_PROFILE

    name: str
    auth_servers: list[RadiusServer] = field(default_factory=list)
    acct_servers: list[RadiusServer] = field(default_factory=list)

    def to_fields(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "auth_servers": [s.to_fields() for s in self.auth_servers],
            "acct_servers": [s.to_fields() for s in self.acct_servers],
            "accounting_enabled": bool(self.acct_servers),
        }


@dataclass
class MacFilter:
    enabled: bool = False
    policy: str = "allow"
    macs: list[str] = field(default_factory=list)


@dataclass
class WifiNetwork:
    """A WLAN. The logical name is the SSID, as on the controller."""
    collection: ClassVar[Collection] = Collection.WIFI

    name: str
    network: Optional[str] = None
    passphrase: Optional[SecretRef] = None
    enabled: bool = True
    security: str = "wpapsk"
    wpa3: bool = False
    wpa3_transition: bool = True
    pmf: str = "optional"
    bands: list[str] = field(default_factory=lambda: ["2g", "5g"])
    hidden: bool = False
    client_isolation: bool = False
    guest: bool = False
    multicast_enhance: bool = False
    fast_roaming: bool = False
    bss_transition: bool = True
    min_rate_2g: int = 1000
    min_rate_5g: int = 6000
    mac_filter: MacFilter = field(default_factory=MacFilter)
    radius_profile: Optional[str] = None

    def to_fields(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "name": self.name,
            "enabled": self.enabled,
            "security": self.security,
            "wpa_mode": "wpa3" if self.wpa3 else "wpa2",
            "wpa3_support": self.wpa3,
            "wpa3_transition": self.wpa3 and self.wpa3_transition,
            "pmf_mode": self.pmf,
            "networkconf_id": self.network,
            "hide_ssid": self.hidden,
            "l2_isolation": self.client_isolation,
            "is_guest": self.guest,
            "mcastenhance_enabled": self.multicast_enhance,
            "wlan_bands": list(self.bands),
            "minrate_ng_data_rate_kbps": self.min_rate_2g,
            "minrate_na_data_rate_kbps": self.min_rate_5g,
            "fast_roaming_enabled": self.fast_roaming,
            "bss_transition": self.bss_transition,
            "mac_filter_enabled": self.mac_filter.enabled,
            "mac_filter_policy": self.mac_filter.policy,
            "mac_filter_list": [str(m).lower() for m in self.mac_filter.macs],
        }
        if self.passphrase is not None:
            doc["x_passphrase"] = render_secret(self.passphrase)
        if self.radius_profile is not None:
            doc["radiusprofile_id"] = self.radius_profile
        return doc


@dataclass
class StormControl:
    enabled: bool = False
    rate: int = 100


@dataclass
class PortProfile:
    collection: ClassVar[Collection] = Collection.PORT_PROFILE

    name: str
    forward: str = "all"
    native_network: Optional[str] = None
    tagged_networks: list[str] = field(default_factory=list)
    poe_mode: str = "auto"
    speed: str = "autoneg"
    storm_control: StormControl = field(default_factory=StormControl)
    isolation: bool = False

    def to_fields(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "forward": self.forward,
            "native_networkconf_id": self.native_network,
            "tagged_networkconf_ids": list(self.tagged_networks),
            "poe_mode": self.poe_mode,
            "speed": self.speed,
            "stormctrl_enabled": self.storm_control.enabled,
            "stormctrl_rate": self.storm_control.rate,
            "isolation": self.isolation,
        }


@dataclass
class TrafficRule:
    collection: ClassVar[Collection] = Collection.TRAFFIC_RULE

    name: str
    action: str = "BLOCK"
    matching_target: str = "INTERNET"
    enabled: bool = True
    network: Optional[str] = None
    download_limit: Optional[int] = None
    upload_limit: Optional[int] = None
    schedule_mode: str = "ALWAYS"
    index: int = 4000

    def to_fields(self) -> dict[str, Any]:
        limited = self.download_limit is not None or self.upload_limit is not None
        return {
            "description": self.name,
            "enabled": self.enabled,
            "action": self.action,
            "matching_target": self.matching_target,
            "network_id": self.network,
            "bandwidth_limit": {
                "enabled": limited,
                "download_limit_kbps": self.download_limit,
                "upload_limit_kbps": self.upload_limit,
            },
            "schedule": {"mode": self.schedule_mode},
            "index": self.index,
        }


@dataclass
class PolicyEndpoint:
    zone: str = "internal"
    type: str = "any"
    networks: list[str] = field(default_factory=list)
    ips: list[str] = field(default_factory=list)
    port: Optional[Union[int, str]] = None
    port_group: Optional[str] = None

    def to_fields(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "zone_id": self.zone,
            "matching_target": _upper(self.type),
            "network_ids": list(self.networks),
            "ips": list(self.ips),
        }
        if self.port is not None:
            doc["port"] = str(self.port)
        if self.port_group is not None:
            doc["port_group_id"] = self.port_group
        return doc


@dataclass
class FirewallPolicy:
    collection: ClassVar[Collection] = Collection.FIREWALL_POLICY

    name: str
    action: str = "block"
    index: int = 10000
    enabled: bool = True
    description: str = ""
    source: PolicyEndpoint = field(default_factory=PolicyEndpoint)
    destination: PolicyEndpoint = field(default_factory=PolicyEndpoint)
    protocol: str = "all"
    ip_version: str = "both"
    connection_state: str = "ALL"
    logging: bool = False

    def to_fields(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "enabled": self.enabled,
            "description": self.description,
            "action": _upper(self.action),
            "index": self.index,
            "source": self.source.to_fields(),
            "destination": self.destination.to_fields(),
            "protocol": self.protocol,
            "ip_version": _upper(self.ip_version),
            "connection_state_type": self.connection_state,
            "logging": self.logging,
        }


@dataclass
class WireGuardServer:
    collection: ClassVar[Collection] = Collection.WIREGUARD_SERVER

    name: str = "wireguard"
    enabled: bool = False
    port: int = 51820
    network: str = "192.168.2.0/24"
    dns: list[str] = field(default_factory=list)
    allowed_networks: list[str] = field(default_factory=lambda: ["0.0.0.0/0"])

    def to_fields(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "purpose": "remote-user-vpn",
            "vpn_type": "wireguard-server",
            "enabled": self.enabled,
            "wireguard_local_port": self.port,
            "ip_subnet": self.network,
            "dns_servers": list(self.dns),
            "allowed_networks": list(self.allowed_networks),
        }


@dataclass
class WireGuardPeer:
    collection: ClassVar[Collection] = Collection.WIREGUARD_PEER

    name: str
    public_key: Optional[str] = None
    allowed_ips: list[str] = field(default_factory=list)
    preshared_key: Optional[SecretRef] = None
    server: str = "wireguard"

    def to_fields(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "name": self.name,
            "public_key": self.public_key,
            "allowed_ips": list(self.allowed_ips),
            "server_id": self.server,
        }
        if self.preshared_key is not None:
            doc["x_preshared_key"] = render_secret(self.preshared_key)
        return doc


@dataclass
class IpsecSettings:
    ike_version: int = 2
    encryption: str = "aes256"
    hash: str = "sha256"
    dh_group: int = 14


@dataclass
class SiteToSiteVpn:
    collection: ClassVar[Collection] = Collection.SITE_TO_SITE_VPN

    name: str
    remote_host: Optional[str] = None
    preshared_key: Optional[SecretRef] = None
    enabled: bool = True
    type: str = "ipsec"
    remote_networks: list[str] = field(default_factory=list)
    local_networks: list[str] = field(default_factory=list)
    ipsec: IpsecSettings = field(default_factory=IpsecSettings)

    def to_fields(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "purpose": "site-vpn",
            "vpn_type": self.type,
            "enabled": self.enabled,
            "remote_host": self.remote_host,
            "remote_vpn_subnets": list(self.remote_networks),
            "local_vpn_subnets": list(self.local_networks),
            "x_ipsec_pre_shared_key": render_secret(self.preshared_key),
            "ipsec_key_exchange": f"ikev{self.ipsec.ike_version}",
            "ipsec_encryption": self.ipsec.encryption,
            "ipsec_hash": self.ipsec.hash,
            "ipsec_dh_group": self.ipsec.dh_group,
        }


@dataclass
class PortForward:
    collection: ClassVar[Collection] = Collection.PORT_FORWARD

    name: str
    src_port: Optional[Union[int, str]] = None
    dst_ip: Optional[str] = None
    dst_port: Optional[Union[int, str]] = None
    protocol: str = "tcp_udp"
    src_ip: Optional[str] = None
    enabled: bool = True
    log: bool = False

    def to_fields(self) -> dict[str, Any]:
        dst_port = self.dst_port if self.dst_port is not None else self.src_port
        return {
            "name": self.name,
            "enabled": self.enabled,
            "proto": self.protocol,
            "dst_port": None if self.src_port is None else str(self.src_port),
            "fwd": self.dst_ip,
            "fwd_port": None if dst_port is None else str(dst_port),
            "src": self.src_ip or "any",
            "log": self.log,
        }


@dataclass
class DhcpReservation:
    collection: ClassVar[Collection] = Collection.DHCP_RESERVATION

    name: str
    mac: Optional[str] = None
    ip: Optional[str] = None
    network: Optional[str] = None

    def to_fields(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "mac": self.mac.lower() if isinstance(self.mac, str) else self.mac,
            "use_fixedip": True,
            "fixed_ip": self.ip,
            "network_id": self.network,
        }


@dataclass
class GlobalSetting:
    """One site setting document (``mgmt``, ``ntp``, ``country`` ...), keyed by ``key``."""
    collection: ClassVar[Collection] = Collection.GLOBAL_SETTING

    name: str
    fields: dict[str, Any] = field(default_factory=dict)

    def to_fields(self) -> dict[str, Any]:
        doc = {k: render_secret(v) if isinstance(v, SecretLiteral) else v
               for k, v in self.fields.items()}
        doc["key"] = self.name
        return doc


@dataclass
class SchemaBackedEntity:
    """An entity of a collection only known through the schema registry."""
    collection_name: str
    name: str
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def collection(self) -> str:  # type: ignore[override]
        return self.collection_name

    def to_fields(self) -> dict[str, Any]:
        doc = {k: render_secret(v) if isinstance(v, SecretLiteral) else v
               for k, v in self.fields.items()}
        doc["name"] = self.name
        return doc


Entity = Union[
    Network,
    FirewallZone,
    FirewallGroup,
    RadiusProfile,
    WifiNetwork,
    PortProfile,
    TrafficRule,
    FirewallPolicy,
    WireGuardServer,
    WireGuardPeer,
    SiteToSiteVpn,
    PortForward,
    DhcpReservation,
    GlobalSetting,
    SchemaBackedEntity,
]


def collection_of(entity: Entity) -> str:
    collection = entity.collection
    return collection.value if isinstance(collection, Collection) else collection
