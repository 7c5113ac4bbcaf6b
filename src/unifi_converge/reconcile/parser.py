"""Parser for the desired-state document.

Converts the evaluated configuration document (JSON/YAML mapping, camelCase
option names) into a canonical DesiredState. The parser is lenient: values
are carried as given and problems are collected in
``DesiredState.parse_errors`` so the validator can report everything in one
pass. Only a document that is not a mapping at all raises ParseError.
"""
import hashlib
import json
import logging
from typing import Any, Callable, Optional

from ..errors import ParseError, ValidationError
from .entities import (
    Collection,
    DhcpReservation,
    DhcpSettings,
    FirewallGroup,
    FirewallPolicy,
    FirewallZone,
    GlobalSetting,
    IpsecSettings,
    MacFilter,
    Network,
    PolicyEndpoint,
    PortForward,
    PortProfile,
    RadiusProfile,
    RadiusServer,
    SchemaBackedEntity,
    SecretLiteral,
    SecretReference,
    SecretRef,
    SiteToSiteVpn,
    StormControl,
    TrafficRule,
    WifiNetwork,
    WireGuardPeer,
    WireGuardServer,
)
from .schema import DesiredState

logger = logging.getLogger(__name__)

SECRET_KEY = "_secret"

TOP_LEVEL_KEYS = {
    "host", "site", "schemaVersion",
    "networks", "wifi", "firewall", "trafficRules", "radiusProfiles",
    "portProfiles", "vpn", "portForwards", "dhcpReservations", "globalSettings",
    "schemaCollections",
}


def parse_secret(value: Any) -> Optional[SecretRef]:
    """Turn a document value into a SecretRef.

    ``"text"`` is a literal, ``{"_secret": "wifi/main"}`` a reference.
    Returns None for None; raises ValueError for anything else.
    """
    if value is None:
        return None
    if isinstance(value, (SecretLiteral, SecretReference)):
        return value
    if isinstance(value, str):
        return SecretLiteral(value)
    if isinstance(value, dict) and set(value) == {SECRET_KEY} and isinstance(value[SECRET_KEY], str):
        return SecretReference(value[SECRET_KEY])
    raise ValueError(f"expected a string or {{'{SECRET_KEY}': path}}, got {value!r}")


class _Context:
    """Collects parse errors for one entity."""

    def __init__(self, state: DesiredState, collection: str, name: str):
        self.state = state
        self.collection = collection
        self.name = name

    def error(self, field: Optional[str], message: str, kind: str = "invalid") -> None:
        self.state.parse_errors.append(
            ValidationError(self.collection, self.name, field, message, kind)
        )

    def section(self, raw: dict, key: str, allowed: set[str]) -> dict:
        value = raw.get(key)
        if value is None:
            return {}
        if not isinstance(value, dict):
            self.error(key, f"must be a mapping, got {type(value).__name__}")
            return {}
        self.check_keys(value, allowed, prefix=f"{key}.")
        return value

    def check_keys(self, raw: dict, allowed: set[str], prefix: str = "") -> None:
        for key in raw:
            if key not in allowed:
                self.error(f"{prefix}{key}", "unknown option")

    def secret(self, raw: dict, key: str, field: Optional[str] = None) -> Optional[SecretRef]:
        try:
            return parse_secret(raw.get(key))
        except ValueError as e:
            self.error(field or key, str(e))
            return None

    def str_list(self, raw: dict, key: str, default: Optional[list] = None) -> list:
        value = raw.get(key)
        if value is None:
            return list(default or [])
        if isinstance(value, (str, int)):
            return [value]
        if not isinstance(value, list):
            self.error(key, f"must be a list, got {type(value).__name__}")
            return []
        return list(value)


class ConfigParser:
    """Parse desired state from the evaluated document."""

    def parse(self, config: dict[str, Any]) -> DesiredState:
        """
        Parse a configuration document into a DesiredState.

        Args:
            config: Evaluated document, optionally wrapped in ``{"unifi": ...}``

        Returns:
            DesiredState with entities in declaration order

        Raises:
            ParseError: If the document is not a mapping
        """
        if not isinstance(config, dict):
            raise ParseError(
                f"Desired state must be a mapping, got {type(config).__name__}"
            )
        if set(config) == {"unifi"} and isinstance(config["unifi"], dict):
            config = config["unifi"]

        state = DesiredState(
            host=config.get("host"),
            site=config.get("site") or "default",
            schema_version=config.get("schemaVersion"),
        )

        for key in config:
            if key not in TOP_LEVEL_KEYS and not key.startswith("_"):
                state.parse_errors.append(
                    ValidationError("document", None, key, "unknown section")
                )

        self._parse_named(state, config, "networks", Collection.NETWORK, self._network)
        firewall = self._mapping(state, config, "firewall", "document")
        self._parse_named(state, firewall, "zones", Collection.FIREWALL_ZONE, self._zone)
        self._parse_named(state, firewall, "groups", Collection.FIREWALL_GROUP, self._group)
        self._parse_named(
            state, config, "radiusProfiles", Collection.RADIUS_PROFILE, self._radius
        )
        self._parse_named(state, config, "wifi", Collection.WIFI, self._wifi)
        self._parse_named(
            state, config, "portProfiles", Collection.PORT_PROFILE, self._port_profile
        )
        self._parse_named(
            state, config, "trafficRules", Collection.TRAFFIC_RULE, self._traffic_rule
        )
        self._parse_named(
            state, firewall, "policies", Collection.FIREWALL_POLICY, self._policy
        )
        for key in firewall:
            if key not in ("zones", "groups", "policies"):
                state.parse_errors.append(
                    ValidationError("firewall", None, key, "unknown section")
                )

        vpn = self._mapping(state, config, "vpn", "document")
        self._parse_vpn(state, vpn)
        self._parse_named(
            state, config, "portForwards", Collection.PORT_FORWARD, self._port_forward
        )
        self._parse_named(
            state, config, "dhcpReservations", Collection.DHCP_RESERVATION,
            self._dhcp_reservation,
        )
        self._parse_named(
            state, config, "globalSettings", Collection.GLOBAL_SETTING, self._global_setting
        )
        self._parse_schema_collections(state, config.get("schemaCollections"))

        logger.debug(
            f"Parsed {len(state)} entities "
            f"({len(state.parse_errors)} parse problems)"
        )
        return state

    # --- helpers ---

    def _mapping(self, state: DesiredState, config: dict, key: str, where: str) -> dict:
        value = config.get(key)
        if value is None:
            return {}
        if not isinstance(value, dict):
            state.parse_errors.append(
                ValidationError(where, None, key, "must be a mapping")
            )
            return {}
        return value

    def _parse_named(
        self,
        state: DesiredState,
        config: dict,
        key: str,
        collection: Collection,
        build: Callable[[_Context, str, dict], Any],
    ) -> None:
        """Parse a named map of entities, keeping declaration order."""
        section = self._mapping(state, config, key, "document")
        for entity_key, raw in section.items():
            ctx = _Context(state, collection.value, str(entity_key))
            if raw is None:
                raw = {}
            if not isinstance(raw, dict):
                ctx.error(None, f"must be a mapping, got {type(raw).__name__}")
                continue
            entity = build(ctx, str(entity_key), raw)
            state.add(entity)

    # --- collections ---

    def _network(self, ctx: _Context, key: str, raw: dict) -> Network:
        ctx.check_keys(raw, {
            "name", "enable", "vlan", "subnet", "purpose", "networkGroup", "dhcp",
            "isolate", "internetAccess", "mdns", "igmpSnooping",
        })
        dhcp = ctx.section(raw, "dhcp", {"enable", "start", "end", "dns", "leasetime"})
        if "subnet" not in raw:
            ctx.error("subnet", "required field is missing", kind="missing")
        return Network(
            name=raw.get("name", key),
            subnet=raw.get("subnet"),
            vlan=raw.get("vlan"),
            enabled=raw.get("enable", True),
            purpose=raw.get("purpose", "corporate"),
            network_group=raw.get("networkGroup", "LAN"),
            dhcp=DhcpSettings(
                enabled=dhcp.get("enable", False),
                start=dhcp.get("start"),
                end=dhcp.get("end"),
                dns=ctx.str_list(dhcp, "dns"),
                lease_time=dhcp.get("leasetime", 86400),
            ),
            isolate=raw.get("isolate", False),
            internet_access=raw.get("internetAccess", True),
            mdns=raw.get("mdns", True),
            igmp_snooping=raw.get("igmpSnooping", False),
        )

    def _zone(self, ctx: _Context, key: str, raw: dict) -> FirewallZone:
        ctx.check_keys(raw, {"name", "networks"})
        return FirewallZone(name=raw.get("name", key), networks=ctx.str_list(raw, "networks"))

    def _group(self, ctx: _Context, key: str, raw: dict) -> FirewallGroup:
        ctx.check_keys(raw, {"name", "type", "members"})
        return FirewallGroup(
            name=raw.get("name", key),
            type=raw.get("type", "address-group"),
            members=ctx.str_list(raw, "members"),
        )

    def _radius(self, ctx: _Context, key: str, raw: dict) -> RadiusProfile:
        ctx.check_keys(raw, {"name", "authServers", "acctServers"})

        def servers(field: str, default_port: int) -> list[RadiusServer]:
            result = []
            for i, server in enumerate(ctx.str_list(raw, field)):
                where = f"{field}[{i}]"
                if not isinstance(server, dict):
                    ctx.error(where, "must be a mapping")
                    continue
                ctx.check_keys(server, {"ip", "port", "secret"}, prefix=f"{where}.")
                if "secret" not in server:
                    ctx.error(f"{where}.secret", "required field is missing", kind="missing")
                result.append(RadiusServer(
                    ip=server.get("ip"),
                    port=server.get("port", default_port),
                    secret=ctx.secret(server, "secret", f"{where}.secret"),
                ))
            return result

        return RadiusProfile(
            name=raw.get("name", key),
            auth_servers=servers("authServers", 1812),
            acct_servers=servers("acctServers", 1813),
        )

    def _wifi(self, ctx: _Context, key: str, raw: dict) -> WifiNetwork:
        ctx.check_keys(raw, {
            "enable", "ssid", "passphrase", "network", "hidden", "security", "wpa3",
            "pmf", "clientIsolation", "multicastEnhance", "bands", "minRate",
            "guestMode", "fastRoaming", "bssTransition", "macFilter", "radiusProfile",
        })
        # The controller identifies WLANs by SSID
        ssid = raw.get("ssid", key)
        ctx.name = ssid if isinstance(ssid, str) else key
        wpa3 = ctx.section(raw, "wpa3", {"enable", "transition"})
        min_rate = ctx.section(raw, "minRate", {"2g", "5g"})
        mac_filter = ctx.section(raw, "macFilter", {"enable", "policy", "list"})
        if "network" not in raw:
            ctx.error("network", "required field is missing", kind="missing")
        security = raw.get("security", "wpapsk")
        if security == "wpapsk" and raw.get("passphrase") is None:
            ctx.error("passphrase", "required for wpapsk security", kind="missing")
        return WifiNetwork(
            name=ssid,
            network=raw.get("network"),
            passphrase=ctx.secret(raw, "passphrase"),
            enabled=raw.get("enable", True),
            security=security,
            wpa3=wpa3.get("enable", False),
            wpa3_transition=wpa3.get("transition", True),
            pmf=raw.get("pmf", "optional"),
            bands=ctx.str_list(raw, "bands", ["2g", "5g"]),
            hidden=raw.get("hidden", False),
            client_isolation=raw.get("clientIsolation", False),
            guest=raw.get("guestMode", False),
            multicast_enhance=raw.get("multicastEnhance", False),
            fast_roaming=raw.get("fastRoaming", False),
            bss_transition=raw.get("bssTransition", True),
            min_rate_2g=min_rate.get("2g", 1000),
            min_rate_5g=min_rate.get("5g", 6000),
            mac_filter=MacFilter(
                enabled=mac_filter.get("enable", False),
                policy=mac_filter.get("policy", "allow"),
                macs=ctx.str_list(mac_filter, "list"),
            ),
            radius_profile=raw.get("radiusProfile"),
        )

    def _port_profile(self, ctx: _Context, key: str, raw: dict) -> PortProfile:
        ctx.check_keys(raw, {
            "name", "forward", "nativeNetwork", "taggedNetworks", "poeMode", "speed",
            "stormControl", "isolation",
        })
        storm = ctx.section(raw, "stormControl", {"enable", "rate"})
        return PortProfile(
            name=raw.get("name", key),
            forward=raw.get("forward", "all"),
            native_network=raw.get("nativeNetwork"),
            tagged_networks=ctx.str_list(raw, "taggedNetworks"),
            poe_mode=raw.get("poeMode", "auto"),
            speed=str(raw.get("speed", "autoneg")),
            storm_control=StormControl(
                enabled=storm.get("enable", False),
                rate=storm.get("rate", 100),
            ),
            isolation=raw.get("isolation", False),
        )

    def _traffic_rule(self, ctx: _Context, key: str, raw: dict) -> TrafficRule:
        ctx.check_keys(raw, {
            "enable", "name", "description", "action", "matchingTarget", "network",
            "networkId", "bandwidthLimit", "schedule", "index",
        })
        limit = ctx.section(raw, "bandwidthLimit", {"download", "upload"})
        schedule = ctx.section(raw, "schedule", {"mode"})
        return TrafficRule(
            name=raw.get("name", key),
            action=raw.get("action", "BLOCK"),
            matching_target=raw.get("matchingTarget", "INTERNET"),
            enabled=raw.get("enable", True),
            network=raw.get("network", raw.get("networkId")),
            download_limit=limit.get("download"),
            upload_limit=limit.get("upload"),
            schedule_mode=schedule.get("mode", "ALWAYS"),
            index=raw.get("index", 4000),
        )

    def _policy(self, ctx: _Context, key: str, raw: dict) -> FirewallPolicy:
        endpoint_keys = ("Zone", "Type", "Networks", "IPs", "Port", "PortGroup")
        ctx.check_keys(raw, {
            "enable", "name", "description", "action", "protocol", "ipVersion",
            "connectionState", "logging", "index",
            *(f"source{k}" for k in endpoint_keys),
            *(f"destination{k}" for k in endpoint_keys),
        })

        def endpoint(prefix: str) -> PolicyEndpoint:
            return PolicyEndpoint(
                zone=raw.get(f"{prefix}Zone", "internal"),
                type=raw.get(f"{prefix}Type", "any"),
                networks=ctx.str_list(raw, f"{prefix}Networks"),
                ips=ctx.str_list(raw, f"{prefix}IPs"),
                port=raw.get(f"{prefix}Port"),
                port_group=raw.get(f"{prefix}PortGroup"),
            )

        name = raw.get("name", key)
        ctx.name = name
        return FirewallPolicy(
            name=name,
            action=raw.get("action", "block"),
            index=raw.get("index", 10000),
            enabled=raw.get("enable", True),
            description=raw.get("description", ""),
            source=endpoint("source"),
            destination=endpoint("destination"),
            protocol=raw.get("protocol", "all"),
            ip_version=raw.get("ipVersion", "both"),
            connection_state=raw.get("connectionState", "ALL"),
            logging=raw.get("logging", False),
        )

    def _parse_vpn(self, state: DesiredState, vpn: dict) -> None:
        for key in vpn:
            if key not in ("wireguard", "siteToSite"):
                state.parse_errors.append(ValidationError("vpn", None, key, "unknown section"))

        wireguard = self._mapping(state, vpn, "wireguard", "vpn")
        server_raw = wireguard.get("server")
        if server_raw is not None:
            ctx = _Context(state, Collection.WIREGUARD_SERVER.value, "wireguard")
            if isinstance(server_raw, dict):
                ctx.check_keys(server_raw, {"enable", "port", "network", "dns", "allowedNetworks"})
                state.add(WireGuardServer(
                    enabled=server_raw.get("enable", False),
                    port=server_raw.get("port", 51820),
                    network=server_raw.get("network", "192.168.2.0/24"),
                    dns=ctx.str_list(server_raw, "dns"),
                    allowed_networks=ctx.str_list(server_raw, "allowedNetworks", ["0.0.0.0/0"]),
                ))
            else:
                ctx.error(None, "must be a mapping")
        self._parse_named(state, wireguard, "peers", Collection.WIREGUARD_PEER, self._peer)
        self._parse_named(state, vpn, "siteToSite", Collection.SITE_TO_SITE_VPN, self._tunnel)

    def _peer(self, ctx: _Context, key: str, raw: dict) -> WireGuardPeer:
        ctx.check_keys(raw, {"name", "publicKey", "allowedIPs", "presharedKey"})
        if "publicKey" not in raw:
            ctx.error("publicKey", "required field is missing", kind="missing")
        return WireGuardPeer(
            name=raw.get("name", key),
            public_key=raw.get("publicKey"),
            allowed_ips=ctx.str_list(raw, "allowedIPs"),
            preshared_key=ctx.secret(raw, "presharedKey"),
        )

    def _tunnel(self, ctx: _Context, key: str, raw: dict) -> SiteToSiteVpn:
        ctx.check_keys(raw, {
            "enable", "name", "type", "remoteHost", "remoteNetworks", "localNetworks",
            "presharedKey", "ipsec",
        })
        ipsec = ctx.section(raw, "ipsec", {"ikeVersion", "encryption", "hash", "dhGroup"})
        for required in ("remoteHost", "presharedKey"):
            if required not in raw:
                ctx.error(required, "required field is missing", kind="missing")
        return SiteToSiteVpn(
            name=raw.get("name", key),
            remote_host=raw.get("remoteHost"),
            preshared_key=ctx.secret(raw, "presharedKey"),
            enabled=raw.get("enable", True),
            type=raw.get("type", "ipsec"),
            remote_networks=ctx.str_list(raw, "remoteNetworks"),
            local_networks=ctx.str_list(raw, "localNetworks"),
            ipsec=IpsecSettings(
                ike_version=ipsec.get("ikeVersion", 2),
                encryption=ipsec.get("encryption", "aes256"),
                hash=ipsec.get("hash", "sha256"),
                dh_group=ipsec.get("dhGroup", 14),
            ),
        )

    def _port_forward(self, ctx: _Context, key: str, raw: dict) -> PortForward:
        ctx.check_keys(raw, {
            "enable", "name", "protocol", "srcPort", "dstIP", "dstPort", "srcIP", "log",
        })
        for required in ("srcPort", "dstIP"):
            if required not in raw:
                ctx.error(required, "required field is missing", kind="missing")
        return PortForward(
            name=raw.get("name", key),
            src_port=raw.get("srcPort"),
            dst_ip=raw.get("dstIP"),
            dst_port=raw.get("dstPort"),
            protocol=raw.get("protocol", "tcp_udp"),
            src_ip=raw.get("srcIP"),
            enabled=raw.get("enable", True),
            log=raw.get("log", False),
        )

    def _dhcp_reservation(self, ctx: _Context, key: str, raw: dict) -> DhcpReservation:
        ctx.check_keys(raw, {"name", "mac", "ip", "network"})
        for required in ("mac", "ip", "network"):
            if required not in raw:
                ctx.error(required, "required field is missing", kind="missing")
        return DhcpReservation(
            name=raw.get("name", key),
            mac=raw.get("mac"),
            ip=raw.get("ip"),
            network=raw.get("network"),
        )

    def _global_setting(self, ctx: _Context, key: str, raw: dict) -> GlobalSetting:
        # Fields pass through in controller naming, like schema-backed documents
        fields = {}
        for field_name, value in raw.items():
            if field_name == "key":
                continue
            if isinstance(value, dict) and SECRET_KEY in value:
                fields[field_name] = ctx.secret(raw, field_name)
            else:
                fields[field_name] = value
        return GlobalSetting(name=raw.get("key", key), fields=fields)

    def _parse_schema_collections(self, state: DesiredState, section: Any) -> None:
        if section is None:
            return
        if not isinstance(section, dict):
            state.parse_errors.append(
                ValidationError("document", None, "schemaCollections", "must be a mapping")
            )
            return

        named = {c.value for c in Collection}
        for collection, entities in section.items():
            if collection in named:
                state.parse_errors.append(ValidationError(
                    collection, None, None,
                    "has a dedicated section and cannot be schema-backed",
                ))
                continue
            if not isinstance(entities, dict):
                state.parse_errors.append(
                    ValidationError(collection, None, None, "must be a mapping of named entities")
                )
                continue
            for name, fields in entities.items():
                ctx = _Context(state, collection, str(name))
                if not isinstance(fields, dict):
                    ctx.error(None, "must be a mapping of fields")
                    continue
                converted = {}
                for field_name, value in fields.items():
                    if isinstance(value, dict) and SECRET_KEY in value:
                        converted[field_name] = ctx.secret(fields, field_name)
                    else:
                        converted[field_name] = value
                state.add(SchemaBackedEntity(
                    collection_name=collection,
                    name=str(name),
                    fields=converted,
                ))


def compute_checksum(config: dict[str, Any]) -> str:
    """
    Compute SHA256 checksum of a config document.

    Printed with plans so two runs can be matched to the same input.
    """
    config_str = json.dumps(config, sort_keys=True, separators=(",", ":"), default=str)
    hash_bytes = hashlib.sha256(config_str.encode()).hexdigest()
    return f"sha256:{hash_bytes[:16]}"
