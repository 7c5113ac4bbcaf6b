"""Shared fixtures."""
import pytest

from unifi_converge.controller import InMemoryController
from unifi_converge.reconcile import SchemaRegistry
from unifi_converge.utils.audit_log import audit_logger

BUILTIN_ZONES = ("internal", "external", "gateway", "vpn")


@pytest.fixture(autouse=True)
def _detach_audit_log():
    """Keep audit handlers installed by one test from leaking into the next."""
    yield
    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def registry():
    """Registry without extracted schemas (built-in descriptor)."""
    return SchemaRegistry()


@pytest.fixture
def memory():
    """In-memory controller with the built-in firewall zones present."""
    controller = InMemoryController()
    for key in BUILTIN_ZONES:
        controller.seed("firewall_zone", {"name": key.title(), "zone_key": key})
    return controller


@pytest.fixture
def scenario_a():
    """Two networks and a WLAN on the isolated one."""
    return {
        "networks": {
            "Default": {"subnet": "192.168.1.1/24"},
            "IoT": {"vlan": 10, "subnet": "192.168.10.1/24", "isolate": True},
        },
        "wifi": {
            "iot": {"network": "IoT", "passphrase": "correct-horse"},
        },
    }

