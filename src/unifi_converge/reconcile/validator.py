"""Pre-flight validation for desired state.

Catches every structural and referential problem before any controller
communication. Validation never stops at the first problem: one run
surfaces the complete list.
"""
import ipaddress
import re
from itertools import combinations
from typing import Any, Optional

from ..errors import DanglingReferenceError, ValidationError
from .entities import (
    REFERENCE_FIELDS,
    Collection,
    FirewallGroup,
    FirewallPolicy,
    FirewallZone,
    GlobalSetting,
    Network,
    PortForward,
    PortProfile,
    RadiusProfile,
    SchemaBackedEntity,
    SecretLiteral,
    SecretReference,
    SiteToSiteVpn,
    TrafficRule,
    WifiNetwork,
    WireGuardPeer,
    WireGuardServer,
    DhcpReservation,
    collection_of,
    get_path,
)
from .registry import SchemaDescriptor, SchemaRegistry
from .schema import DesiredState, ValidationResult

MAC_PATTERN = re.compile(r"^([0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}$")

# Numeric bounds: (min, max)
VLAN_RANGE = (1, 4094)
PORT_RANGE = (1, 65535)
DH_GROUPS = {1, 2, 5, 14, 15, 16, 19, 20, 21}
LEASE_TIME_RANGE = (60, 31536000)
INDEX_RANGE = (1, 2147483647)
SSID_LENGTH = (1, 32)
PSK_LENGTH = (8, 63)
MAX_DNS_SERVERS = 4

_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "int": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "bool": lambda v: isinstance(v, bool),
    "list": lambda v: isinstance(v, list),
    "object": lambda v: isinstance(v, dict),
}


class _Report:
    """Error/warning accumulator."""

    def __init__(self):
        self.errors: list[ValidationError] = []
        self.warnings: list[str] = []

    def error(
        self,
        collection: str,
        name: Optional[str],
        field: Optional[str],
        message: str,
        kind: str = "invalid",
    ) -> None:
        self.errors.append(ValidationError(collection, name, field, message, kind))


class ConfigValidator:
    """Validate desired state for structural and referential errors."""

    def __init__(self, schema: Optional[SchemaDescriptor] = None):
        """
        Initialize validator.

        Args:
            schema: Resolved schema descriptor; defaults to the built-in one
        """
        self.schema = schema or SchemaRegistry.default()

    def validate(self, desired: DesiredState) -> ValidationResult:
        """
        Validate a desired state.

        Performs pre-flight checks:
        - Required fields, numeric ranges and enum values
        - CIDR, IP and MAC formats
        - Referential integrity (every name reference resolves)
        - Uniqueness of logical names, VLAN ids and rule indices
        - Subnet overlap and DHCP ranges
        - Schema-backed collections against the descriptor

        Args:
            desired: Parsed desired state

        Returns:
            ValidationResult with valid flag, errors, warnings and state
        """
        report = _Report()
        report.errors.extend(desired.parse_errors)

        self._check_unique_names(desired, report)

        for entity in desired:
            check = getattr(self, f"_validate_{type(entity).__name__}", None)
            if check is not None:
                check(entity, report)

        self._check_references(desired, report)
        self._check_unique_vlans(desired, report)
        self._check_unique_index(desired, Collection.FIREWALL_POLICY, report)
        self._check_unique_index(desired, Collection.TRAFFIC_RULE, report)
        self._check_subnet_overlap(desired, report)

        return ValidationResult(
            valid=len(report.errors) == 0,
            errors=report.errors,
            warnings=report.warnings,
            state=desired,
        )

    def validate_resolved(self, desired: DesiredState) -> ValidationResult:
        """
        Value checks that need resolved secrets.

        - WPA-PSK passphrase length 8-63
        - RADIUS server secrets non-empty
        - Site-to-site pre-shared keys non-empty

        Unresolved references are skipped (dry-run planning).
        """
        report = _Report()
        for wifi in desired.get(Collection.WIFI.value):
            if wifi.security == "wpapsk" and isinstance(wifi.passphrase, SecretLiteral):
                length = len(wifi.passphrase.value)
                low, high = PSK_LENGTH
                if not low <= length <= high:
                    report.error(
                        Collection.WIFI.value, wifi.name, "passphrase",
                        f"must be {low}-{high} characters, got {length}", kind="range",
                    )
        for profile in desired.get(Collection.RADIUS_PROFILE.value):
            servers = [("authServers", s) for s in profile.auth_servers]
            servers += [("acctServers", s) for s in profile.acct_servers]
            counters: dict[str, int] = {}
            for label, server in servers:
                i = counters.get(label, 0)
                counters[label] = i + 1
                if isinstance(server.secret, SecretLiteral) and not server.secret.value:
                    report.error(
                        Collection.RADIUS_PROFILE.value, profile.name,
                        f"{label}[{i}].secret", "must not be empty",
                    )
        for tunnel in desired.get(Collection.SITE_TO_SITE_VPN.value):
            if isinstance(tunnel.preshared_key, SecretLiteral) and not tunnel.preshared_key.value:
                report.error(
                    Collection.SITE_TO_SITE_VPN.value, tunnel.name, "presharedKey",
                    "must not be empty",
                )
        return ValidationResult(
            valid=len(report.errors) == 0,
            errors=report.errors,
            warnings=report.warnings,
            state=desired,
        )

    # --- field helpers ---

    def _enum(
        self, report: _Report, collection: str, name: str, field: str, value: Any, key: str
    ) -> None:
        allowed = self.schema.enum_values(key)
        if not allowed or value is None:
            return
        if str(value) not in allowed:
            report.error(
                collection, name, field,
                f"'{value}' is not one of: {', '.join(allowed)}", kind="enum",
            )

    @staticmethod
    def _int_range(
        report: _Report,
        collection: str,
        name: str,
        field: str,
        value: Any,
        bounds: tuple[int, int],
    ) -> bool:
        low, high = bounds
        if isinstance(value, bool) or not isinstance(value, int):
            report.error(collection, name, field, f"must be an integer, got {value!r}")
            return False
        if not low <= value <= high:
            report.error(
                collection, name, field,
                f"{value} is out of range ({low}-{high})", kind="range",
            )
            return False
        return True

    def _port(
        self, report: _Report, collection: str, name: str, field: str, value: Any
    ) -> None:
        """A port, a range "8000-8080" or a comma list "80,443"."""
        if value is None:
            return
        if isinstance(value, int) and not isinstance(value, bool):
            self._int_range(report, collection, name, field, value, PORT_RANGE)
            return
        if not isinstance(value, str) or not value.strip():
            report.error(collection, name, field, f"invalid port {value!r}")
            return
        for part in value.split(","):
            bounds = part.strip().split("-")
            if len(bounds) > 2 or not all(b.strip().isdigit() for b in bounds):
                report.error(collection, name, field, f"invalid port {value!r}")
                return
            numbers = [int(b) for b in bounds]
            for number in numbers:
                if not self._int_range(report, collection, name, field, number, PORT_RANGE):
                    return
            if len(numbers) == 2 and numbers[0] > numbers[1]:
                report.error(collection, name, field, f"port range {part.strip()} is reversed")
                return

    @staticmethod
    def _cidr(
        report: _Report, collection: str, name: str, field: str, value: Any
    ) -> Optional[ipaddress.IPv4Interface]:
        if not isinstance(value, str):
            report.error(collection, name, field, f"invalid CIDR {value!r}")
            return None
        try:
            if "/" not in value:
                raise ValueError("missing prefix length")
            return ipaddress.ip_interface(value)
        except ValueError:
            report.error(collection, name, field, f"invalid CIDR '{value}'")
            return None

    @staticmethod
    def _ip(report: _Report, collection: str, name: str, field: str, value: Any):
        if not isinstance(value, str):
            report.error(collection, name, field, f"invalid IP address {value!r}")
            return None
        try:
            return ipaddress.ip_address(value)
        except ValueError:
            report.error(collection, name, field, f"invalid IP address '{value}'")
            return None

    @staticmethod
    def _ip_or_cidr(report: _Report, collection: str, name: str, field: str, value: Any) -> None:
        try:
            if not isinstance(value, str):
                raise ValueError(value)
            if "/" in value:
                ipaddress.ip_network(value, strict=False)
            else:
                ipaddress.ip_address(value)
        except ValueError:
            report.error(collection, name, field, f"invalid IP or CIDR {value!r}")

    @staticmethod
    def _mac(report: _Report, collection: str, name: str, field: str, value: Any) -> None:
        if not isinstance(value, str) or not MAC_PATTERN.match(value):
            report.error(collection, name, field, f"invalid MAC address {value!r}")

    # --- per-entity checks ---

    def _validate_Network(self, net: Network, report: _Report) -> None:
        c = Collection.NETWORK.value
        if net.vlan is not None:
            self._int_range(report, c, net.name, "vlan", net.vlan, VLAN_RANGE)
        self._enum(report, c, net.name, "purpose", net.purpose, "network_purposes")
        self._enum(report, c, net.name, "networkGroup", net.network_group, "network_groups")

        iface = None
        if net.subnet is not None:
            iface = self._cidr(report, c, net.name, "subnet", net.subnet)
            if iface is not None and iface.ip == iface.network.network_address \
                    and iface.network.num_addresses > 2:
                report.error(
                    c, net.name, "subnet",
                    f"'{net.subnet}' must use the gateway address, not the network address",
                )

        dhcp = net.dhcp
        self._int_range(report, c, net.name, "dhcp.leasetime", dhcp.lease_time, LEASE_TIME_RANGE)
        if len(dhcp.dns) > MAX_DNS_SERVERS:
            report.warnings.append(
                f"{c} '{net.name}': {len(dhcp.dns)} DHCP DNS servers given, "
                f"only the first {MAX_DNS_SERVERS} are used"
            )
        for i, server in enumerate(dhcp.dns):
            self._ip(report, c, net.name, f"dhcp.dns[{i}]", server)

        if not dhcp.enabled or iface is None:
            return
        start = self._ip(report, c, net.name, "dhcp.start", dhcp.start) if dhcp.start else None
        end = self._ip(report, c, net.name, "dhcp.end", dhcp.end) if dhcp.end else None
        if (dhcp.start and start is None) or (dhcp.end and end is None):
            return
        start_s, end_s = net.dhcp_range()
        if start_s is None or end_s is None:
            return
        start, end = ipaddress.ip_address(start_s), ipaddress.ip_address(end_s)
        for label, addr in (("dhcp.start", start), ("dhcp.end", end)):
            if addr not in iface.network:
                report.error(c, net.name, label, f"{addr} is outside subnet {iface.network}")
        if start >= end:
            report.error(c, net.name, "dhcp.start", f"start {start} must be before end {end}")

    def _validate_FirewallZone(self, zone: FirewallZone, report: _Report) -> None:
        if zone.name in self.schema.enum_values("zone_keys"):
            return
        if not zone.networks:
            report.warnings.append(
                f"{Collection.FIREWALL_ZONE.value} '{zone.name}' has no member networks"
            )

    def _validate_FirewallGroup(self, group: FirewallGroup, report: _Report) -> None:
        c = Collection.FIREWALL_GROUP.value
        self._enum(report, c, group.name, "type", group.type, "firewall_group_types")
        for i, member in enumerate(group.members):
            where = f"members[{i}]"
            if group.type == "port-group":
                self._port(report, c, group.name, where, member)
            elif group.type in ("address-group", "ipv6-address-group"):
                self._ip_or_cidr(report, c, group.name, where, member)

    def _validate_RadiusProfile(self, profile: RadiusProfile, report: _Report) -> None:
        c = Collection.RADIUS_PROFILE.value
        if not profile.auth_servers:
            report.error(c, profile.name, "authServers", "at least one server is required",
                         kind="missing")
        for label, servers in (("authServers", profile.auth_servers),
                               ("acctServers", profile.acct_servers)):
            for i, server in enumerate(servers):
                self._ip(report, c, profile.name, f"{label}[{i}].ip", server.ip)
                self._int_range(report, c, profile.name, f"{label}[{i}].port", server.port,
                                PORT_RANGE)

    def _validate_WifiNetwork(self, wifi: WifiNetwork, report: _Report) -> None:
        c = Collection.WIFI.value
        name = wifi.name if isinstance(wifi.name, str) else str(wifi.name)
        if not isinstance(wifi.name, str):
            report.error(c, name, "ssid", "must be a string")
        else:
            low, high = SSID_LENGTH
            length = len(wifi.name.encode("utf-8"))
            if not low <= length <= high:
                report.error(c, name, "ssid", f"must be {low}-{high} bytes, got {length}",
                             kind="range")
        self._enum(report, c, name, "security", wifi.security, "wifi_security")
        self._enum(report, c, name, "pmf", wifi.pmf, "wifi_pmf_modes")
        for band in wifi.bands:
            self._enum(report, c, name, "bands", band, "wifi_bands")
        if not wifi.bands:
            report.error(c, name, "bands", "at least one band is required", kind="missing")
        if wifi.wpa3 and wifi.pmf == "disabled":
            report.error(c, name, "pmf", "WPA3 requires PMF optional or required")
        if wifi.security == "wpaeap" and wifi.radius_profile is None:
            report.error(c, name, "radiusProfile", "required for wpaeap security",
                         kind="missing")
        self._enum(report, c, name, "macFilter.policy", wifi.mac_filter.policy,
                   "wifi_mac_filter_policies")
        for i, mac in enumerate(wifi.mac_filter.macs):
            self._mac(report, c, name, f"macFilter.list[{i}]", mac)

    def _validate_PortProfile(self, profile: PortProfile, report: _Report) -> None:
        c = Collection.PORT_PROFILE.value
        self._enum(report, c, profile.name, "forward", profile.forward, "port_profile_forwards")
        self._enum(report, c, profile.name, "poeMode", profile.poe_mode, "poe_modes")
        self._enum(report, c, profile.name, "speed", profile.speed, "port_speeds")
        if profile.storm_control.enabled:
            self._int_range(report, c, profile.name, "stormControl.rate",
                            profile.storm_control.rate, (1, 100))

    def _validate_TrafficRule(self, rule: TrafficRule, report: _Report) -> None:
        c = Collection.TRAFFIC_RULE.value
        self._enum(report, c, rule.name, "action", rule.action, "traffic_actions")
        self._enum(report, c, rule.name, "matchingTarget", rule.matching_target,
                   "traffic_matching_targets")
        self._enum(report, c, rule.name, "schedule.mode", rule.schedule_mode, "schedule_modes")
        self._int_range(report, c, rule.name, "index", rule.index, INDEX_RANGE)
        for label, value in (("bandwidthLimit.download", rule.download_limit),
                             ("bandwidthLimit.upload", rule.upload_limit)):
            if value is not None:
                self._int_range(report, c, rule.name, label, value, (1, 10_000_000))
        if rule.action == "QOS_RATE_LIMIT" and rule.download_limit is None \
                and rule.upload_limit is None:
            report.error(c, rule.name, "bandwidthLimit", "required for QOS_RATE_LIMIT",
                         kind="missing")

    def _validate_FirewallPolicy(self, policy: FirewallPolicy, report: _Report) -> None:
        c = Collection.FIREWALL_POLICY.value
        self._enum(report, c, policy.name, "action", policy.action, "firewall_actions")
        self._enum(report, c, policy.name, "protocol", policy.protocol, "protocols")
        self._enum(report, c, policy.name, "ipVersion", policy.ip_version, "ip_versions")
        self._enum(report, c, policy.name, "connectionState", policy.connection_state,
                   "connection_states")
        self._int_range(report, c, policy.name, "index", policy.index, INDEX_RANGE)
        for prefix, endpoint in (("source", policy.source), ("destination", policy.destination)):
            self._enum(report, c, policy.name, f"{prefix}Type", endpoint.type, "matching_targets")
            for i, ip in enumerate(endpoint.ips):
                self._ip_or_cidr(report, c, policy.name, f"{prefix}IPs[{i}]", ip)
            self._port(report, c, policy.name, f"{prefix}Port", endpoint.port)
            if endpoint.port is not None and endpoint.port_group is not None:
                report.error(c, policy.name, f"{prefix}Port",
                             f"cannot be combined with {prefix}PortGroup")

    def _validate_WireGuardServer(self, server: WireGuardServer, report: _Report) -> None:
        c = Collection.WIREGUARD_SERVER.value
        self._int_range(report, c, server.name, "port", server.port, PORT_RANGE)
        self._cidr(report, c, server.name, "network", server.network)
        for i, dns in enumerate(server.dns):
            self._ip(report, c, server.name, f"dns[{i}]", dns)
        for i, net in enumerate(server.allowed_networks):
            self._ip_or_cidr(report, c, server.name, f"allowedNetworks[{i}]", net)

    def _validate_WireGuardPeer(self, peer: WireGuardPeer, report: _Report) -> None:
        c = Collection.WIREGUARD_PEER.value
        if peer.public_key is not None and (
            not isinstance(peer.public_key, str) or len(peer.public_key) != 44
        ):
            report.error(c, peer.name, "publicKey", "must be a 44-character base64 key")
        for i, ip in enumerate(peer.allowed_ips):
            self._ip_or_cidr(report, c, peer.name, f"allowedIPs[{i}]", ip)

    def _validate_SiteToSiteVpn(self, tunnel: SiteToSiteVpn, report: _Report) -> None:
        c = Collection.SITE_TO_SITE_VPN.value
        self._enum(report, c, tunnel.name, "type", tunnel.type, "vpn_types")
        self._enum(report, c, tunnel.name, "ipsec.ikeVersion", tunnel.ipsec.ike_version,
                   "ike_versions")
        dh_group = tunnel.ipsec.dh_group
        if isinstance(dh_group, bool) or not isinstance(dh_group, int) \
                or dh_group not in DH_GROUPS:
            report.error(
                c, tunnel.name, "ipsec.dhGroup",
                f"{tunnel.ipsec.dh_group!r} is not a supported DH group "
                f"({', '.join(str(g) for g in sorted(DH_GROUPS))})",
                kind="range",
            )
        for label, nets in (("remoteNetworks", tunnel.remote_networks),
                            ("localNetworks", tunnel.local_networks)):
            for i, net in enumerate(nets):
                self._ip_or_cidr(report, c, tunnel.name, f"{label}[{i}]", net)
        if not tunnel.remote_networks:
            report.error(c, tunnel.name, "remoteNetworks", "at least one network is required",
                         kind="missing")

    def _validate_PortForward(self, forward: PortForward, report: _Report) -> None:
        c = Collection.PORT_FORWARD.value
        self._enum(report, c, forward.name, "protocol", forward.protocol,
                   "port_forward_protocols")
        if forward.src_port is not None:
            self._port(report, c, forward.name, "srcPort", forward.src_port)
        self._port(report, c, forward.name, "dstPort", forward.dst_port)
        if forward.dst_ip is not None:
            self._ip(report, c, forward.name, "dstIP", forward.dst_ip)
        if forward.src_ip is not None and forward.src_ip != "any":
            self._ip_or_cidr(report, c, forward.name, "srcIP", forward.src_ip)

    def _validate_DhcpReservation(self, reservation: DhcpReservation, report: _Report) -> None:
        c = Collection.DHCP_RESERVATION.value
        if reservation.mac is not None:
            self._mac(report, c, reservation.name, "mac", reservation.mac)
        if reservation.ip is not None:
            self._ip(report, c, reservation.name, "ip", reservation.ip)

    def _validate_GlobalSetting(self, setting: GlobalSetting, report: _Report) -> None:
        c = Collection.GLOBAL_SETTING.value
        if not isinstance(setting.name, str) or not setting.name:
            report.error(c, str(setting.name), "key", "must be a non-empty string")
            return
        for owned in ("_id", "site_id"):
            if owned in setting.fields:
                report.error(c, setting.name, owned, "is assigned by the controller")

    def _validate_SchemaBackedEntity(self, entity: SchemaBackedEntity, report: _Report) -> None:
        c = entity.collection
        descriptor = self.schema.collection(c)
        if descriptor is None:
            report.error(
                c, entity.name, None,
                f"unknown collection for schema {self.schema.version}",
            )
            return
        for field_name, value in entity.fields.items():
            if not descriptor.has_field(field_name):
                report.error(c, entity.name, field_name, "unknown field")
                continue
            if isinstance(value, (SecretLiteral, SecretReference)):
                continue
            type_name = descriptor.field_type(field_name)
            check = _TYPE_CHECKS.get(type_name or "any")
            if check is not None and value is not None and not check(value):
                report.error(c, entity.name, field_name,
                             f"expected {type_name}, got {type(value).__name__}")
                continue
            allowed = descriptor.enums.get(field_name)
            if allowed and value is not None and str(value) not in allowed:
                report.error(c, entity.name, field_name,
                             f"'{value}' is not one of: {', '.join(allowed)}", kind="enum")
        for field_name in sorted(descriptor.required - set(entity.fields)):
            report.error(c, entity.name, field_name, "required field is missing",
                         kind="missing")

    # --- cross-entity checks ---

    @staticmethod
    def _check_unique_names(desired: DesiredState, report: _Report) -> None:
        for collection in desired.collections():
            seen: set = set()
            for entity in desired.get(collection):
                try:
                    duplicate = entity.name in seen
                    seen.add(entity.name)
                except TypeError:
                    report.error(collection, str(entity.name), "name", "must be a string")
                    continue
                if duplicate:
                    report.error(collection, entity.name, "name",
                                 "duplicate logical name", kind="duplicate")

    def _check_references(self, desired: DesiredState, report: _Report) -> None:
        builtin_zones = set(self.schema.enum_values("zone_keys"))
        for entity in desired:
            collection = collection_of(entity)
            doc = entity.to_fields()
            for ref in REFERENCE_FIELDS.get(collection, ()):
                value = get_path(doc, ref.path)
                if value is None:
                    continue
                values = value if ref.many and isinstance(value, list) else [value]
                known = desired.names(ref.target.value)
                if ref.target == Collection.FIREWALL_ZONE:
                    known = known | builtin_zones
                for target in values:
                    if not isinstance(target, str) or target not in known:
                        report.errors.append(DanglingReferenceError(
                            collection, entity.name, ref.label or ref.dotted,
                            ref.target.label, str(target),
                        ))

    @staticmethod
    def _check_unique_vlans(desired: DesiredState, report: _Report) -> None:
        owners: dict[int, str] = {}
        for net in desired.get(Collection.NETWORK.value):
            if not isinstance(net.vlan, int):
                continue
            if net.vlan in owners:
                report.error(
                    Collection.NETWORK.value, net.name, "vlan",
                    f"duplicate VLAN id {net.vlan} shared by "
                    f"'{owners[net.vlan]}' and '{net.name}'",
                    kind="duplicate",
                )
            else:
                owners[net.vlan] = net.name

    @staticmethod
    def _check_unique_index(desired: DesiredState, collection: Collection, report: _Report) -> None:
        owners: dict[Any, str] = {}
        for entity in desired.get(collection.value):
            try:
                previous = owners.get(entity.index)
            except TypeError:
                continue
            if previous is not None:
                report.error(
                    collection.value, entity.name, "index",
                    f"duplicate index {entity.index} shared by "
                    f"'{previous}' and '{entity.name}'",
                    kind="duplicate",
                )
            else:
                owners[entity.index] = entity.name

    @staticmethod
    def _check_subnet_overlap(desired: DesiredState, report: _Report) -> None:
        subnets = []
        for net in desired.get(Collection.NETWORK.value):
            try:
                subnets.append((net.name, ipaddress.ip_interface(net.subnet).network))
            except (TypeError, ValueError):
                continue
        for (name_a, a), (name_b, b) in combinations(subnets, 2):
            if a.version == b.version and a.overlaps(b):
                report.error(
                    Collection.NETWORK.value, name_b, "subnet",
                    f"{b} overlaps {a} of '{name_a}'",
                )
