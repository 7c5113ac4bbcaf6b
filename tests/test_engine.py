"""End-to-end tests for the converge engine."""
import json

import pytest

from unifi_converge.controller import InMemoryController
from unifi_converge.errors import ConfigValidationFailed, ParseError, SchemaNotFound
from unifi_converge.reconcile import (
    ConvergeEngine,
    ExecuteOptions,
    OperationStatus,
    SchemaRegistry,
    StaticSecretBackend,
    load_document,
)

FAST = ExecuteOptions(min_wait=0, max_wait=0)


def engine_for(controller, secrets=None, **kwargs):
    return ConvergeEngine(
        controller,
        secrets=StaticSecretBackend(secrets or {}),
        options=FAST,
        **kwargs,
    )


class TestConverge:
    """Tests for ConvergeEngine.converge."""

    @pytest.mark.asyncio
    async def test_scenario_a_end_to_end(self, scenario_a, memory):
        """Apply converges and a second run finds nothing to do."""
        engine = engine_for(memory)

        first = await engine.converge(scenario_a)

        assert first.success, first.error
        assert first.changeset.total_changes == 3
        assert first.checksum.startswith("sha256:")

        second = await engine.converge(scenario_a)

        assert second.success
        assert second.changeset.no_change
        assert second.report.results == []

    @pytest.mark.asyncio
    async def test_plan_never_mutates(self, scenario_a, memory):
        result = await engine_for(memory).plan(scenario_a)

        assert result.dry_run
        assert result.success
        assert {r.status for r in result.report.results} == {OperationStatus.PLANNED}
        assert memory.mutations() == []

    @pytest.mark.asyncio
    async def test_validation_failure_makes_no_calls(self, memory):
        """Referential errors stop the run before any controller call."""
        document = {"wifi": {"iot": {"network": "Nowhere", "passphrase": "abcdefgh"}}}

        result = await engine_for(memory).converge(document)

        assert not result.success
        assert not result.validation.valid
        assert result.changeset is None
        assert memory.calls == []

    @pytest.mark.asyncio
    async def test_duplicate_index_gives_no_changeset(self, memory):
        """Scenario C."""
        document = {
            "firewall": {
                "policies": {
                    "a": {"action": "allow", "index": 5000},
                    "b": {"action": "block", "index": 5000},
                }
            }
        }

        result = await engine_for(memory).converge(document)

        assert result.changeset is None
        assert "Validation failed" in result.error
        assert memory.calls == []

    @pytest.mark.asyncio
    async def test_secrets_resolved_before_apply(self, scenario_a, memory):
        scenario_a["wifi"]["iot"]["passphrase"] = {"_secret": "wifi/iot"}

        result = await engine_for(memory, {"wifi/iot": "from-the-vault"}).converge(scenario_a)

        assert result.success
        assert memory.get("wlanconf", "iot")["x_passphrase"] == "from-the-vault"

    @pytest.mark.asyncio
    async def test_missing_secret_aborts_real_run(self, scenario_a, memory):
        """No mutation happens when a secret cannot be resolved."""
        scenario_a["wifi"]["iot"]["passphrase"] = {"_secret": "wifi/iot"}

        result = await engine_for(memory).converge(scenario_a)

        assert not result.success
        assert "unresolved secret" in result.error
        assert "wifi/iot" in result.error
        assert memory.calls == []

    @pytest.mark.asyncio
    async def test_missing_secret_is_warning_in_dry_run(self, scenario_a, memory):
        scenario_a["wifi"]["iot"]["passphrase"] = {"_secret": "wifi/iot"}

        result = await engine_for(memory).converge(scenario_a, dry_run=True)

        assert result.success
        assert result.changeset.total_changes == 3
        assert any("treated as unknown" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_short_resolved_passphrase_rejected(self, scenario_a, memory):
        """Passphrase length is checked on the resolved value."""
        scenario_a["wifi"]["iot"]["passphrase"] = {"_secret": "wifi/iot"}

        result = await engine_for(memory, {"wifi/iot": "short"}).converge(scenario_a)

        assert not result.success
        assert result.validation.errors[-1].field == "passphrase"
        assert memory.mutations() == []

    @pytest.mark.asyncio
    async def test_parse_error_reported(self, memory):
        result = await engine_for(memory).converge(["not", "a", "mapping"])

        assert not result.success
        assert result.error.startswith("Parse error")

    @pytest.mark.asyncio
    async def test_pinned_schema_missing(self, scenario_a, memory, tmp_path):
        engine = engine_for(memory, registry=SchemaRegistry(tmp_path), schema_version="9.9.9")

        with pytest.raises(SchemaNotFound):
            await engine.converge(scenario_a)

    @pytest.mark.asyncio
    async def test_document_schema_version(self, scenario_a, memory, tmp_path):
        """The document may pin its own schema version."""
        (tmp_path / "9.0.114").mkdir()
        (tmp_path / "9.0.114" / "enums.json").write_text(json.dumps({"wifi_bands": ["2g"]}))
        scenario_a["schemaVersion"] = "9.0.114"
        engine = engine_for(memory, registry=SchemaRegistry(tmp_path))

        result = await engine.converge(scenario_a, dry_run=True)

        assert not result.success
        assert result.validation.errors[0].kind == "enum"

    @pytest.mark.asyncio
    async def test_managed_orphan_in_undeclared_collection_deleted(self, memory):
        """A managed document goes away even when its collection left the document."""
        memory.seed("dynamicdns", {"name": "ddns1"}, managed=True)

        result = await engine_for(memory).plan({})

        assert result.success, result.error
        assert [(op.change_type.value, op.collection, op.name) for op in result.changeset] == [
            ("delete", "dynamicdns", "ddns1"),
        ]

    @pytest.mark.asyncio
    async def test_schema_collections_are_fetched(self, tmp_path):
        """Collections from the schema descriptor are diffed without being declared."""

        class OpaqueController(InMemoryController):
            def known_collections(self):
                return []

        controller = OpaqueController()
        controller.seed("dynamicdns", {"name": "ddns1"}, managed=True)
        (tmp_path / "9.0.114").mkdir()
        (tmp_path / "9.0.114" / "fields.json").write_text(
            json.dumps({"dynamicdns": {"service": "string"}})
        )
        engine = engine_for(controller, registry=SchemaRegistry(tmp_path))

        result = await engine.converge({})

        assert result.success, result.error
        assert controller.documents("dynamicdns") == []

    @pytest.mark.asyncio
    async def test_global_settings_converge(self, memory):
        """Settings are updated in place and a second run finds nothing to do."""
        memory.seed("setting", {"key": "ntp", "site_id": "site1", "ntp_server_1": "a"})
        document = {"globalSettings": {"ntp": {"ntp_server_1": "pool.ntp.org"}}}
        engine = engine_for(memory)

        first = await engine.converge(document)
        second = await engine.converge({})

        assert first.success, first.error
        assert memory.get("setting", "ntp")["ntp_server_1"] == "pool.ntp.org"
        assert second.success
        assert second.changeset.no_change

    @pytest.mark.asyncio
    async def test_result_to_dict_masks_secrets(self, scenario_a, memory):
        result = await engine_for(memory).plan(scenario_a)

        text = json.dumps(result.to_dict(), default=str)

        assert "correct-horse" not in text
        assert '"total": 3' in text


class TestCheck:
    """Tests for ConvergeEngine.check."""

    def test_valid_document_returns_state(self, scenario_a, memory):
        desired = engine_for(memory).check(scenario_a)

        assert len(desired) == 3

    def test_invalid_document_raises(self, memory):
        document = {"wifi": {"iot": {"network": "Nowhere", "passphrase": "abcdefgh"}}}

        with pytest.raises(ConfigValidationFailed) as exc:
            engine_for(memory).check(document)

        assert len(exc.value.errors) == 1
        assert "Nowhere" in str(exc.value)
        assert memory.calls == []

    def test_parse_error_propagates(self, memory):
        with pytest.raises(ParseError):
            engine_for(memory).check(["not", "a", "mapping"])


class TestLoadDocument:
    """Tests for load_document."""

    def test_yaml(self, tmp_path):
        path = tmp_path / "site.yaml"
        path.write_text("networks:\n  LAN:\n    subnet: 10.0.0.1/24\n")

        assert load_document(path) == {"networks": {"LAN": {"subnet": "10.0.0.1/24"}}}

    def test_json(self, tmp_path):
        path = tmp_path / "site.json"
        path.write_text(json.dumps({"site": "lab"}))

        assert load_document(path) == {"site": "lab"}

    def test_missing_file(self, tmp_path):
        with pytest.raises(ParseError):
            load_document(tmp_path / "missing.yaml")

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ParseError):
            load_document(path)
