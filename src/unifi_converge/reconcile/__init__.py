"""Reconciliation core - declarative UniFi controller configuration.

Send desired state, not individual API calls:
- Schema-aware validation that reports every problem at once
- Batched secret resolution before any mutation
- Minimal, dependency-ordered changesets that never delete unmanaged entities
- Concurrent staged apply with retries and per-operation reporting

Usage:
    from unifi_converge.reconcile import ConvergeEngine, SchemaRegistry

    async with UniFiController(config) as controller:
        engine = ConvergeEngine(controller, SchemaRegistry("schemas"))
        result = await engine.converge({
            "networks": {
                "IoT": {"vlan": 20, "subnet": "192.168.20.1/24"},
            },
            "wifi": {
                "iot": {"ssid": "Home-IoT", "network": "IoT",
                        "passphrase": {"_secret": "wifi/iot"}},
            },
        }, dry_run=True)
"""

from .engine import ConvergeEngine, load_document
from .entities import (
    Collection,
    COLLECTION_ORDER,
    MANAGEMENT_MARKER_FIELD,
    MANAGEMENT_MARKER_VALUE,
    GlobalSetting,
    SecretLiteral,
    SecretReference,
    SchemaBackedEntity,
)
from .schema import (
    DesiredState,
    ValidationResult,
    ChangeType,
    Operation,
    Changeset,
    ExecuteOptions,
    OperationStatus,
    OperationResult,
    Report,
    ConvergeResult,
)
from .parser import ConfigParser, compute_checksum
from .registry import SchemaRegistry, SchemaDescriptor, CollectionDescriptor
from .secrets import (
    SecretBackend,
    EnvSecretBackend,
    FileSecretBackend,
    StaticSecretBackend,
    ChainSecretBackend,
    SecretResolver,
    default_backend,
)
from .validator import ConfigValidator
from .diff import DiffEngine, summarize_changeset
from .executor import ConfigExecutor, summarize_report

__all__ = [
    # Main engine
    "ConvergeEngine",
    "load_document",
    # Entities
    "Collection",
    "COLLECTION_ORDER",
    "MANAGEMENT_MARKER_FIELD",
    "MANAGEMENT_MARKER_VALUE",
    "GlobalSetting",
    "SecretLiteral",
    "SecretReference",
    "SchemaBackedEntity",
    # Schema classes
    "DesiredState",
    "ValidationResult",
    "ChangeType",
    "Operation",
    "Changeset",
    "ExecuteOptions",
    "OperationStatus",
    "OperationResult",
    "Report",
    "ConvergeResult",
    # Parser
    "ConfigParser",
    "compute_checksum",
    # Schema registry
    "SchemaRegistry",
    "SchemaDescriptor",
    "CollectionDescriptor",
    # Secrets
    "SecretBackend",
    "EnvSecretBackend",
    "FileSecretBackend",
    "StaticSecretBackend",
    "ChainSecretBackend",
    "SecretResolver",
    "default_backend",
    # Components (for advanced use)
    "ConfigValidator",
    "DiffEngine",
    "summarize_changeset",
    "ConfigExecutor",
    "summarize_report",
]
