"""Tests for the controller adapters."""
import json

import httpx
import pytest

from unifi_converge.controller import ControllerConfig, InMemoryController, UniFiController
from unifi_converge.controller.unifi import endpoint_for
from unifi_converge.errors import RetryableAPIError, TerminalAPIError
from unifi_converge.reconcile import MANAGEMENT_MARKER_FIELD, MANAGEMENT_MARKER_VALUE

REST = "/proxy/network/api/s/default/rest"
V2 = "/proxy/network/v2/api/site/default"


def ok(data):
    return httpx.Response(200, json={"meta": {"rc": "ok"}, "data": data})


class FakeUniFi:
    """Minimal UniFi OS Network API served through httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.logins = 0
        self.expire_next = False
        self.fail: dict[tuple[str, str], httpx.Response] = {}
        self.docs = {
            f"{REST}/networkconf": [
                {"_id": "n1", "name": "LAN", "purpose": "corporate", "vlan_enabled": False},
                {"_id": "n2", "name": "IoT", "purpose": "corporate", "vlan": 10,
                 MANAGEMENT_MARKER_FIELD: MANAGEMENT_MARKER_VALUE},
                {"_id": "s1", "name": "wireguard", "purpose": "remote-user-vpn"},
                {"_id": "t1", "name": "office", "purpose": "site-vpn"},
            ],
            f"{REST}/wlanconf": [
                {"_id": "w1", "name": "Home", "networkconf_id": "n1"},
            ],
            f"{REST}/user": [
                {"_id": "c1", "name": "printer", "mac": "aa:bb:cc:dd:ee:ff",
                 "use_fixedip": True, "fixed_ip": "10.0.0.50", "network_id": "n1"},
                {"_id": "c2", "name": "phone", "mac": "11:22:33:44:55:66"},
            ],
            f"{V2}/firewall/zone": [
                {"_id": "z1", "name": "Internal", "zone_key": "internal", "network_ids": ["n1"]},
                {"_id": "z2", "name": "External", "zone_key": "external", "network_ids": []},
            ],
            f"{V2}/firewall-policies": [
                {"_id": "p1", "name": "allow-dns", "action": "ALLOW", "index": 10000,
                 "source": {"zone_id": "z1"}, "destination": {"zone_id": "z2"}},
            ],
            f"{REST}/firewallgroup": [],
            f"{REST}/setting": [
                {"_id": "g1", "key": "ntp", "site_id": "site1", "ntp_server_1": "pool.ntp.org"},
            ],
            f"{V2}/wireguard/s1/users": [
                {"_id": "u1", "name": "laptop", "public_key": "k" * 43 + "="},
            ],
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        method = request.method

        if path == "/api/auth/login":
            self.logins += 1
            return httpx.Response(200, json={"username": "admin"},
                                  headers={"X-CSRF-Token": f"token-{self.logins}"})
        if self.expire_next:
            self.expire_next = False
            return httpx.Response(401, json={"meta": {"rc": "error", "msg": "api.err.LoginRequired"}})
        if (method, path) in self.fail:
            return self.fail[(method, path)]

        if method == "GET":
            data = self.docs.get(path, [])
            return httpx.Response(200, json=data) if path.startswith(V2) else ok(data)
        if method == "POST":
            body = json.loads(request.content)
            return ok([{**body, "_id": "new1"}]) if path.startswith(REST) else \
                httpx.Response(200, json={**body, "_id": "new1"})
        if method in ("PUT", "DELETE"):
            return ok([]) if path.startswith(REST) else httpx.Response(200, json={})
        return httpx.Response(405)

    def last(self, method: str) -> httpx.Request:
        return [r for r in self.requests if r.method == method][-1]


@pytest.fixture
def fake():
    return FakeUniFi()


@pytest.fixture
async def controller(fake):
    config = ControllerConfig(host="udm.test", password="pw")
    async with UniFiController(config, transport=httpx.MockTransport(fake)) as ctrl:
        yield ctrl


def body(request: httpx.Request) -> dict:
    return json.loads(request.content)


class TestControllerConfig:
    """Tests for ControllerConfig."""

    def test_base_url(self):
        assert ControllerConfig(host="10.0.0.1").base_url == "https://10.0.0.1"
        assert ControllerConfig(host="10.0.0.1", port=8443).base_url == "https://10.0.0.1:8443"
        assert ControllerConfig(host="http://ctrl:8080/").base_url == "http://ctrl:8080"

    def test_password_from_env(self, monkeypatch):
        monkeypatch.setenv("MY_UNIFI_PW", "from-env")

        assert ControllerConfig(host="x", password_env="MY_UNIFI_PW").get_password() == "from-env"
        assert ControllerConfig(host="x", password="inline").get_password() == "inline"


class TestUniFiSession:
    """Login and session handling."""

    @pytest.mark.asyncio
    async def test_login_sets_csrf_token(self, fake, controller):
        """The CSRF token from login is sent on later requests."""
        await controller.list("networkconf")

        login = fake.requests[0]
        assert login.url.path == "/api/auth/login"
        assert body(login) == {"username": "admin", "password": "pw", "remember": True}
        assert fake.last("GET").headers["X-CSRF-Token"] == "token-1"
        assert controller.is_connected

    @pytest.mark.asyncio
    async def test_standalone_controller_paths(self, fake):
        """Without UniFi OS there is no /proxy/network prefix."""
        config = ControllerConfig(host="ctrl.test", port=8443, password="pw", unifi_os=False)
        async with UniFiController(config, transport=httpx.MockTransport(fake)) as ctrl:
            await ctrl.list("wlanconf")

        assert fake.requests[0].url.path == "/api/login"
        assert fake.requests[1].url.path == "/api/s/default/rest/wlanconf"

    @pytest.mark.asyncio
    async def test_expired_session_logs_in_again(self, fake, controller):
        fake.expire_next = True

        entities = await controller.list("wlanconf")

        assert fake.logins == 2
        assert [e.name for e in entities] == ["Home"]

    @pytest.mark.asyncio
    async def test_rejected_login(self, fake):
        def deny(request):
            return httpx.Response(403, json={"meta": {"rc": "error", "msg": "denied"}})

        config = ControllerConfig(host="udm.test", password="wrong")
        ctrl = UniFiController(config, transport=httpx.MockTransport(deny))

        with pytest.raises(TerminalAPIError) as exc:
            await ctrl.connect()

        assert exc.value.status == 403
        await ctrl.disconnect()

    @pytest.mark.asyncio
    async def test_not_connected(self):
        ctrl = UniFiController(ControllerConfig(host="udm.test"))

        with pytest.raises(TerminalAPIError):
            await ctrl.list("networkconf")


class TestUniFiList:
    """Listing live entities."""

    @pytest.mark.asyncio
    async def test_networks_exclude_vpn_documents(self, controller):
        names = [e.name for e in await controller.list("networkconf")]

        assert names == ["LAN", "IoT"]

    @pytest.mark.asyncio
    async def test_vpn_collections_share_networkconf(self, controller):
        servers = await controller.list("wireguard_server")
        tunnels = await controller.list("site_to_site_vpn")

        assert [s.name for s in servers] == ["wireguard"]
        assert [t.name for t in tunnels] == ["office"]

    @pytest.mark.asyncio
    async def test_management_marker(self, controller):
        managed = {e.name: e.managed for e in await controller.list("networkconf")}

        assert managed == {"LAN": False, "IoT": True}

    @pytest.mark.asyncio
    async def test_references_mapped_to_names(self, controller):
        """Reference ids come back as logical names."""
        wifi = (await controller.list("wlanconf"))[0]

        assert wifi.id == "w1"
        assert wifi.fields["networkconf_id"] == "LAN"

    @pytest.mark.asyncio
    async def test_nested_references_and_zone_keys(self, controller):
        policy = (await controller.list("firewall_policy"))[0]
        zones = [z.name for z in await controller.list("firewall_zone")]

        assert policy.fields["source"]["zone_id"] == "internal"
        assert policy.fields["destination"]["zone_id"] == "external"
        assert zones == ["internal", "external"]

    @pytest.mark.asyncio
    async def test_dhcp_reservations_are_fixed_ip_clients(self, controller):
        reservations = await controller.list("dhcp_reservation")

        assert [r.name for r in reservations] == ["printer"]
        assert reservations[0].fields["network_id"] == "LAN"

    @pytest.mark.asyncio
    async def test_wireguard_peers_nested_under_server(self, fake, controller):
        peers = await controller.list("wireguard_peer")

        assert [p.name for p in peers] == ["laptop"]
        assert peers[0].fields["server_id"] == "wireguard"
        assert any(r.url.path == f"{V2}/wireguard/s1/users" for r in fake.requests)

    @pytest.mark.asyncio
    async def test_documents_cached_until_write(self, fake, controller):
        await controller.list("wlanconf")
        await controller.list("networkconf")
        gets = len([r for r in fake.requests if r.method == "GET"])

        await controller.list("networkconf")
        assert len([r for r in fake.requests if r.method == "GET"]) == gets

        await controller.update("networkconf", "n1", {"name": "LAN", "vlan_enabled": True})
        await controller.list("networkconf")
        assert len([r for r in fake.requests if r.method == "GET"]) == gets + 1


class TestUniFiWrites:
    """Create, update and delete."""

    @pytest.mark.asyncio
    async def test_create_returns_id(self, fake, controller):
        device_id = await controller.create("networkconf", {"name": "Cameras", "vlan": 30})

        assert device_id == "new1"
        request = fake.last("POST")
        assert request.url.path == f"{REST}/networkconf"
        assert body(request) == {"name": "Cameras", "vlan": 30}

    @pytest.mark.asyncio
    async def test_v1_update_is_partial(self, fake, controller):
        await controller.update("networkconf", "n2", {"vlan": 11})

        request = fake.last("PUT")
        assert request.url.path == f"{REST}/networkconf/n2"
        assert body(request) == {"vlan": 11}

    @pytest.mark.asyncio
    async def test_v2_update_sends_whole_document(self, fake, controller):
        await controller.update("firewall_policy", "p1", {"action": "BLOCK"})

        request = fake.last("PUT")
        assert request.url.path == f"{V2}/firewall-policies/p1"
        sent = body(request)
        assert sent["action"] == "BLOCK"
        assert sent["name"] == "allow-dns"
        assert sent["source"] == {"zone_id": "z1"}

    @pytest.mark.asyncio
    async def test_delete(self, fake, controller):
        await controller.delete("networkconf", "n2")

        request = fake.last("DELETE")
        assert request.url.path == f"{REST}/networkconf/n2"

    @pytest.mark.asyncio
    async def test_dhcp_reservation_delete_clears_fixed_ip(self, fake, controller):
        """Clients are not removed, only their reservation."""
        await controller.delete("dhcp_reservation", "c1")

        request = fake.last("PUT")
        assert request.url.path == f"{REST}/user/c1"
        assert body(request) == {"use_fixedip": False, "fixed_ip": ""}

    @pytest.mark.asyncio
    async def test_wireguard_peer_delete_uses_parent(self, fake, controller):
        await controller.list("wireguard_peer")

        await controller.delete("wireguard_peer", "u1")

        assert fake.last("DELETE").url.path == f"{V2}/wireguard/s1/users/u1"

    @pytest.mark.asyncio
    async def test_setting_update_addressed_by_key(self, fake, controller):
        """Settings are written at rest/setting/{key}/{id} without key or site_id."""
        await controller.update("setting", "g1", {"ntp_server_1": "time.example", "key": "ntp"})

        request = fake.last("PUT")
        assert request.url.path == f"{REST}/setting/ntp/g1"
        assert body(request) == {"ntp_server_1": "time.example"}

    @pytest.mark.asyncio
    async def test_setting_create_addressed_by_key(self, fake, controller):
        await controller.create("setting", {"key": "country", "code": 276})

        request = fake.last("POST")
        assert request.url.path == f"{REST}/setting/country"
        assert body(request) == {"key": "country", "code": 276}

    @pytest.mark.asyncio
    async def test_settings_listed_by_key(self, controller):
        settings = await controller.list("setting")

        assert [(s.name, s.id) for s in settings] == [("ntp", "g1")]
        assert not settings[0].managed

    @pytest.mark.asyncio
    async def test_client_error_is_terminal(self, fake, controller):
        fake.fail[("POST", f"{REST}/networkconf")] = httpx.Response(
            400, json={"meta": {"rc": "error", "msg": "api.err.VlanUsed"}, "data": []}
        )

        with pytest.raises(TerminalAPIError) as exc:
            await controller.create("networkconf", {"name": "IoT2", "vlan": 10})

        assert exc.value.status == 400
        assert exc.value.name == "IoT2"
        assert "api.err.VlanUsed" in str(exc.value)

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self, fake, controller):
        fake.fail[("PUT", f"{REST}/networkconf/n1")] = httpx.Response(502, text="bad gateway")

        with pytest.raises(RetryableAPIError) as exc:
            await controller.update("networkconf", "n1", {"vlan": 3})

        assert exc.value.status == 502

    @pytest.mark.asyncio
    async def test_error_envelope_on_200(self, fake, controller):
        fake.fail[("DELETE", f"{REST}/networkconf/n2")] = httpx.Response(
            200, json={"meta": {"rc": "error", "msg": "api.err.InUse"}, "data": []}
        )

        with pytest.raises(TerminalAPIError):
            await controller.delete("networkconf", "n2")

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self, fake):
        def flaky(request):
            if request.url.path == "/api/auth/login":
                return httpx.Response(200, json={})
            raise httpx.ConnectError("connection refused")

        config = ControllerConfig(host="udm.test", password="pw")
        async with UniFiController(config, transport=httpx.MockTransport(flaky)) as ctrl:
            with pytest.raises(RetryableAPIError):
                await ctrl.list("networkconf")


class TestEndpoints:
    def test_schema_backed_collections_map_one_to_one(self):
        endpoint = endpoint_for("dynamicdns")

        assert endpoint.path == "dynamicdns"
        assert not endpoint.v2

    def test_v2_collections(self):
        assert endpoint_for("firewall_policy").v2
        assert endpoint_for("traffic_rule").path == "trafficrules"


class TestInMemoryController:
    """Tests for the in-memory controller."""

    @pytest.mark.asyncio
    async def test_seed_and_list_by_name(self):
        ctrl = InMemoryController()
        lan = ctrl.seed("networkconf", {"name": "LAN"})
        ctrl.seed("wlanconf", {"name": "Home", "networkconf_id": "LAN"})

        wifi = (await ctrl.list("wlanconf"))[0]

        assert ctrl.get("wlanconf", "Home")["networkconf_id"] == lan
        assert wifi.fields["networkconf_id"] == "LAN"
        assert not wifi.managed

    @pytest.mark.asyncio
    async def test_from_documents_orders_dependencies(self):
        """Snapshots may list dependents first."""
        ctrl = InMemoryController.from_documents({
            "wlanconf": [{"name": "Home", "networkconf_id": "LAN"}],
            "networkconf": [{"name": "LAN"}],
        })

        assert ctrl.get("wlanconf", "Home")["networkconf_id"] == ctrl.id_of("networkconf", "LAN")

    @pytest.mark.asyncio
    async def test_unknown_reference_rejected(self):
        ctrl = InMemoryController()

        with pytest.raises(TerminalAPIError):
            await ctrl.create("wlanconf", {"name": "Home", "networkconf_id": "deadbeef"})

    @pytest.mark.asyncio
    async def test_delete_in_use_rejected(self):
        ctrl = InMemoryController()
        lan = ctrl.seed("networkconf", {"name": "LAN"})
        ctrl.seed("wlanconf", {"name": "Home", "networkconf_id": "LAN"})

        with pytest.raises(TerminalAPIError) as exc:
            await ctrl.delete("networkconf", lan)

        assert "in use by wlanconf 'Home'" in str(exc.value)

    @pytest.mark.asyncio
    async def test_fail_on_counts_down(self):
        ctrl = InMemoryController()
        ctrl.fail_on("networkconf", "LAN", RetryableAPIError("busy"), times=1)

        with pytest.raises(RetryableAPIError):
            await ctrl.create("networkconf", {"name": "LAN"})
        device_id = await ctrl.create("networkconf", {"name": "LAN"})

        assert ctrl.id_of("networkconf", "LAN") == device_id
        assert ctrl.mutations() == [("create", "networkconf", "LAN")] * 2

    def test_known_collections(self):
        """Every collection holding documents can be enumerated."""
        ctrl = InMemoryController()
        ctrl.seed("networkconf", {"name": "LAN"})
        ctrl.seed("dynamicdns", {"name": "ddns1"})

        assert ctrl.known_collections() == ["dynamicdns", "networkconf"]
