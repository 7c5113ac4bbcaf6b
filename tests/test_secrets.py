"""Tests for secret backends and batched resolution."""
import pytest

from unifi_converge.errors import SecretNotFound, SecretResolutionError
from unifi_converge.reconcile import (
    ChainSecretBackend,
    ConfigParser,
    EnvSecretBackend,
    FileSecretBackend,
    SecretLiteral,
    SecretReference,
    SecretResolver,
    StaticSecretBackend,
    default_backend,
)


def parse(document):
    return ConfigParser().parse(document)


class TestBackends:
    """Tests for the secret backends."""

    def test_env_variable_name(self):
        """Paths map to upper-case variable names."""
        backend = EnvSecretBackend()

        assert backend.variable_name("wifi/main") == "WIFI_MAIN"
        assert backend.variable_name("vpn/site-a.psk") == "VPN_SITE_A_PSK"

    def test_env_resolve(self):
        backend = EnvSecretBackend(environ={"WIFI_MAIN": "s3cret-pass"})

        assert backend.resolve("wifi/main") == "s3cret-pass"

    def test_env_missing(self):
        """Missing variables name the variable in the hint."""
        with pytest.raises(SecretNotFound) as exc:
            EnvSecretBackend(environ={}).resolve("wifi/main")

        assert exc.value.path == "wifi/main"
        assert "WIFI_MAIN" in str(exc.value)

    def test_file_backend_strips_newline(self, tmp_path):
        (tmp_path / "wifi").mkdir()
        (tmp_path / "wifi" / "main").write_text("from-a-file\n")

        assert FileSecretBackend(tmp_path).resolve("wifi/main") == "from-a-file"

    def test_file_backend_rejects_traversal(self, tmp_path):
        """Paths may not leave the secrets directory."""
        secrets = tmp_path / "secrets"
        secrets.mkdir()
        (tmp_path / "outside").write_text("nope")

        with pytest.raises(SecretNotFound):
            FileSecretBackend(secrets).resolve("../outside")

    def test_chain_falls_through(self, tmp_path):
        """The first backend that knows the path wins."""
        backend = ChainSecretBackend(
            FileSecretBackend(tmp_path),
            StaticSecretBackend({"wifi/main": "from-static"}),
        )

        assert backend.resolve("wifi/main") == "from-static"
        with pytest.raises(SecretNotFound):
            backend.resolve("wifi/other")

    def test_default_backend(self, tmp_path):
        """Files first when a directory is configured."""
        assert isinstance(default_backend(), EnvSecretBackend)
        assert isinstance(default_backend(tmp_path), ChainSecretBackend)


class TestSecretResolver:
    """Tests for SecretResolver."""

    DOCUMENT = {
        "networks": {"LAN": {"subnet": "192.168.1.1/24"}},
        "wifi": {
            "main": {"network": "LAN", "passphrase": {"_secret": "wifi/main"}},
            "guest": {"network": "LAN", "passphrase": {"_secret": "wifi/guest"}},
            "lab": {"network": "LAN", "passphrase": "inline-literal"},
        },
        "radiusProfiles": {
            "corp": {"authServers": [{"ip": "10.0.0.5", "secret": {"_secret": "radius"}}]},
        },
    }

    def test_references_are_listed(self):
        """Every reference is found with its location."""
        refs = SecretResolver(StaticSecretBackend()).references(parse(self.DOCUMENT))

        found = {(c, n, f, r.path) for c, n, f, r in refs}
        assert ("wlanconf", "main", "passphrase", "wifi/main") in found
        assert ("wlanconf", "guest", "passphrase", "wifi/guest") in found
        assert ("radiusprofile", "corp", "auth_servers[0].secret", "radius") in found
        assert len(found) == 3

    def test_resolve_all_substitutes_copy(self):
        """Resolution returns a new state and leaves the input alone."""
        state = parse(self.DOCUMENT)
        backend = StaticSecretBackend({
            "wifi/main": "main-pass-1", "wifi/guest": "guest-pass", "radius": "r4d1us",
        })

        resolved = SecretResolver(backend).resolve_all(state)

        wifi = {w.name: w for w in resolved.get("wlanconf")}
        assert wifi["main"].passphrase == SecretLiteral("main-pass-1")
        assert wifi["lab"].passphrase == SecretLiteral("inline-literal")
        assert resolved.get("radiusprofile")[0].auth_servers[0].secret == SecretLiteral("r4d1us")
        assert state.get("wlanconf")[0].passphrase == SecretReference("wifi/main")

    def test_all_failures_reported_together(self):
        """One run reports every unresolved reference."""
        backend = StaticSecretBackend({"wifi/main": "main-pass-1"})

        with pytest.raises(SecretResolutionError) as exc:
            SecretResolver(backend).resolve_all(parse(self.DOCUMENT))

        failed = {(c, n) for c, n, _, _ in exc.value.failures}
        assert failed == {("wlanconf", "guest"), ("radiusprofile", "corp")}

    def test_each_path_resolved_once(self):
        """Shared paths hit the backend once."""
        calls = []

        class Counting(StaticSecretBackend):
            def resolve(self, path):
                calls.append(path)
                return super().resolve(path)

        document = {
            "networks": {"LAN": {"subnet": "192.168.1.1/24"}},
            "wifi": {
                "a": {"network": "LAN", "passphrase": {"_secret": "shared"}},
                "b": {"network": "LAN", "passphrase": {"_secret": "shared"}},
            },
        }
        SecretResolver(Counting({"shared": "same-pass"})).resolve_all(parse(document))

        assert calls == ["shared"]

    def test_schema_backed_fields(self):
        """References in schema-backed collections are resolved too."""
        state = parse({
            "schemaCollections": {"dynamicdns": {"home": {"x_password": {"_secret": "ddns"}}}}
        })

        resolved = SecretResolver(StaticSecretBackend({"ddns": "pw"})).resolve_all(state)

        assert resolved.get("dynamicdns")[0].to_fields()["x_password"] == "pw"
