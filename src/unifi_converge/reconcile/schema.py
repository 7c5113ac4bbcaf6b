"""Schema definitions for the reconciliation core.

Defines the desired state container, the changeset and the apply report.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

from ..errors import ValidationError
from .entities import (
    COLLECTION_ORDER,
    Entity,
    SecretReference,
    collection_label,
    collection_of,
    references_of,
)


class ChangeType(str, Enum):
    """Type of change in a changeset."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(str, Enum):
    """Outcome of a single operation in a report."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    PLANNED = "planned"
    CANCELLED = "cancelled"


# --- Desired state ---

@dataclass
class DesiredState:
    """Canonical desired state for one site, references still by name."""
    entities: dict[str, list[Entity]] = field(default_factory=dict)
    host: Optional[str] = None
    site: str = "default"
    schema_version: Optional[str] = None
    # Problems found while normalizing the document
    parse_errors: list[ValidationError] = field(default_factory=list)

    def add(self, entity: Entity) -> None:
        self.entities.setdefault(collection_of(entity), []).append(entity)

    def get(self, collection: str) -> list[Entity]:
        return self.entities.get(collection, [])

    def names(self, collection: str) -> set[str]:
        return {e.name for e in self.get(collection)}

    def collections(self) -> list[str]:
        """Collections in dependency order, schema-backed ones last."""
        named = [c.value for c in COLLECTION_ORDER]
        extra = sorted(c for c in self.entities if c not in named)
        return named + extra

    def schema_backed_collections(self) -> list[str]:
        named = {c.value for c in COLLECTION_ORDER}
        return sorted(c for c in self.entities if c not in named)

    def __iter__(self) -> Iterator[Entity]:
        for collection in self.collections():
            yield from self.get(collection)

    def __len__(self) -> int:
        return sum(len(v) for v in self.entities.values())


# --- Validation ---

@dataclass
class ValidationResult:
    """Result of config validation."""
    valid: bool
    errors: list[ValidationError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    state: Optional[DesiredState] = None

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": self.warnings,
        }


# --- Changeset ---

@dataclass
class Operation:
    """A single create/update/delete against one collection."""
    collection: str
    change_type: ChangeType
    name: str
    fields: dict[str, Any] = field(default_factory=dict)
    # Device-assigned id for updates and deletes
    device_id: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.collection, self.name)

    def references(self) -> list[tuple[str, str]]:
        """Entities this operation's document points at, by logical name."""
        return references_of(self.collection, self.fields)

    def to_dict(self, mask_secrets: bool = True) -> dict:
        return {
            "collection": self.collection,
            "kind": self.change_type.value,
            "name": self.name,
            "fields": mask(self.fields) if mask_secrets else self.fields,
            "device_id": self.device_id,
        }

    def __str__(self) -> str:
        return f"{self.change_type.value} {collection_label(self.collection)} {self.name}"


@dataclass
class Changeset:
    """Ordered operations converging live state toward desired state."""
    operations: list[Operation] = field(default_factory=list)
    # (collection, logical name) -> device id, rebuilt from the live snapshot
    identities: dict[tuple[str, str], str] = field(default_factory=dict)

    @property
    def no_change(self) -> bool:
        return len(self.operations) == 0

    @property
    def total_changes(self) -> int:
        return len(self.operations)

    def count(self, change_type: ChangeType) -> int:
        return sum(1 for op in self.operations if op.change_type == change_type)

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def to_dict(self) -> dict:
        return {
            "total": self.total_changes,
            "create": self.count(ChangeType.CREATE),
            "update": self.count(ChangeType.UPDATE),
            "delete": self.count(ChangeType.DELETE),
            "operations": [op.to_dict() for op in self.operations],
        }


def mask(value: Any, key: str = "") -> Any:
    """Mask secret values (``x_`` fields and unresolved references)."""
    if isinstance(value, SecretReference):
        return str(value)
    if isinstance(value, dict):
        return {k: mask(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [mask(v, key) for v in value]
    if key.startswith("x_") and value:
        return "******"
    return value


# --- Execution ---

@dataclass
class ExecuteOptions:
    """Options for changeset execution."""
    dry_run: bool = False
    concurrency: int = 4
    max_attempts: int = 3
    min_wait: float = 0.5
    max_wait: float = 8.0
    # Seconds; once elapsed no new operation starts
    timeout: Optional[float] = None
    cancel_event: Optional[asyncio.Event] = None
    audit_context: str = ""
    user: Optional[str] = None


@dataclass
class OperationResult:
    """Outcome of one operation."""
    operation: Operation
    status: OperationStatus
    cause: Optional[str] = None
    error: Optional[Exception] = None
    device_id: Optional[str] = None
    attempts: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "operation": str(self.operation),
            "collection": self.operation.collection,
            "name": self.operation.name,
            "kind": self.operation.change_type.value,
            "status": self.status.value,
            "cause": self.cause,
            "device_id": self.device_id,
            "attempts": self.attempts,
        }


@dataclass
class Report:
    """Per-operation outcome of an apply."""
    dry_run: bool = False
    results: list[OperationResult] = field(default_factory=list)

    def by_status(self, status: OperationStatus) -> list[OperationResult]:
        return [r for r in self.results if r.status == status]

    @property
    def failed(self) -> list[OperationResult]:
        return self.by_status(OperationStatus.FAILED)

    @property
    def skipped(self) -> list[OperationResult]:
        return self.by_status(OperationStatus.SKIPPED)

    @property
    def cancelled(self) -> list[OperationResult]:
        return self.by_status(OperationStatus.CANCELLED)

    @property
    def success(self) -> bool:
        """No failed, skipped or cancelled operations."""
        bad = (OperationStatus.FAILED, OperationStatus.SKIPPED, OperationStatus.CANCELLED)
        return not any(r.status in bad for r in self.results)

    def to_dict(self) -> dict:
        counts: dict[str, int] = {}
        for r in self.results:
            counts[r.status.value] = counts.get(r.status.value, 0) + 1
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "counts": counts,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class ConvergeResult:
    """Outcome of a full validate -> resolve -> diff -> apply run."""
    dry_run: bool = False
    validation: Optional[ValidationResult] = None
    changeset: Optional[Changeset] = None
    report: Optional[Report] = None
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    checksum: Optional[str] = None

    @property
    def success(self) -> bool:
        if self.error is not None:
            return False
        if self.validation is not None and not self.validation.valid:
            return False
        return self.report is None or self.report.success

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "checksum": self.checksum,
            "error": self.error,
            "warnings": self.warnings,
            "validation": self.validation.to_dict() if self.validation else None,
            "changeset": self.changeset.to_dict() if self.changeset else None,
            "report": self.report.to_dict() if self.report else None,
        }
