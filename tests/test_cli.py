"""Tests for the command line."""
import json

import pytest

from unifi_converge.cli import EXIT_CHANGES, EXIT_ERROR, EXIT_OK, main
from unifi_converge.config.settings import ENV_OVERRIDES

DOCUMENT = """
firewall:
  groups:
    web:
      type: port-group
      members: ["80", "443"]
"""

MATCHING_SNAPSHOT = {
    "firewallgroup": [
        {"name": "web", "group_type": "port-group", "group_members": ["443", "80"]},
    ]
}


@pytest.fixture(autouse=True)
def workdir(tmp_path, monkeypatch):
    for var in ENV_OVERRIDES:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def document(workdir):
    path = workdir / "site.yaml"
    path.write_text(DOCUMENT)
    return str(path)


def snapshot(workdir, documents):
    path = workdir / "snapshot.json"
    path.write_text(json.dumps(documents))
    return str(path)


def run(*argv):
    return main(["--no-log-file", *argv])


class TestValidate:
    """Tests for `validate`."""

    def test_valid(self, document, capsys):
        assert run("validate", document) == EXIT_OK
        assert "valid (1 entities)" in capsys.readouterr().out

    def test_invalid(self, workdir, capsys):
        path = workdir / "bad.yaml"
        path.write_text("firewall:\n  groups:\n    web:\n      type: port-group\n"
                        "      members: ['99999']\n")

        assert run("validate", str(path)) == EXIT_CHANGES
        out = capsys.readouterr().out
        assert "error:" in out
        assert "invalid" in out

    def test_json_output(self, document, capsys):
        assert run("validate", document, "--json") == EXIT_OK
        assert json.loads(capsys.readouterr().out)["valid"] is True

    def test_missing_file(self, workdir):
        assert run("validate", str(workdir / "missing.yaml")) == EXIT_ERROR

    def test_pinned_schema_missing(self, document, workdir):
        assert run("validate", document, "--schema-dir", str(workdir),
                   "--schema-version", "9.9.9") == EXIT_ERROR


class TestDiff:
    """Tests for `diff` against snapshots."""

    def test_changes_exit_one(self, document, workdir, capsys):
        path = snapshot(workdir, {})

        assert run("diff", document, "udm", "--snapshot", path) == EXIT_CHANGES
        assert "[+] create FirewallGroup web" in capsys.readouterr().out

    def test_in_sync_exit_zero(self, document, workdir, capsys):
        """Member order does not count as drift."""
        path = snapshot(workdir, MATCHING_SNAPSHOT)

        assert run("diff", document, "udm", "--snapshot", path) == EXIT_OK
        assert "No changes" in capsys.readouterr().out

    def test_invalid_document_exit_two(self, workdir, capsys):
        bad = workdir / "bad.yaml"
        bad.write_text("wifi:\n  home:\n    network: Nowhere\n    passphrase: abcdefgh\n")
        path = snapshot(workdir, {})

        assert run("diff", str(bad), "udm", "--snapshot", path) == EXIT_ERROR
        assert "Validation failed" in capsys.readouterr().out

    def test_json(self, document, workdir, capsys):
        path = snapshot(workdir, {})

        run("diff", document, "udm", "--snapshot", path, "--json")

        data = json.loads(capsys.readouterr().out)
        assert data["changeset"]["total"] == 1


class TestDeployAndHistory:
    """Tests for `deploy` and `history`."""

    def test_deploy_then_history(self, document, workdir, capsys):
        path = snapshot(workdir, {})
        audit = str(workdir / "audit")

        assert run("deploy", document, "udm", "--snapshot", path, "--audit-dir", audit) == EXIT_OK
        assert "[ok] create FirewallGroup web" in capsys.readouterr().out

        assert run("history", "--audit-dir", audit) == EXIT_OK
        out = capsys.readouterr().out
        assert "udm/default create firewallgroup 'web' ok" in out

    def test_dry_run_writes_no_audit(self, document, workdir, capsys):
        path = snapshot(workdir, {})
        audit = workdir / "audit"

        assert run("deploy", document, "udm", "--snapshot", path,
                   "--audit-dir", str(audit), "--dry-run") == EXIT_OK
        assert "[..] create FirewallGroup web" in capsys.readouterr().out
        assert not audit.exists()

    def test_history_json_filters(self, document, workdir, capsys):
        path = snapshot(workdir, {})
        audit = str(workdir / "audit")
        run("deploy", document, "udm", "--snapshot", path, "--audit-dir", audit)
        capsys.readouterr()

        run("history", "--audit-dir", audit, "--collection", "wlanconf", "--json")

        assert json.loads(capsys.readouterr().out) == {"records": []}
