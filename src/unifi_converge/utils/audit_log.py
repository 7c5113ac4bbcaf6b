"""Audit logging for controller changes.

Every create/update/delete the Apply Engine sends to a controller is
recorded as one JSON line, with secret fields masked. Dry runs write
nothing.
"""
import json
import logging
import os
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

# Dedicated audit logger, does not propagate to the console
audit_logger = logging.getLogger("unifi_converge.audit")
audit_logger.propagate = False


def default_audit_dir() -> str:
    return os.environ.get(
        "UNIFI_CONVERGE_AUDIT_DIR", os.path.expanduser("~/.unifi-converge")
    )


def setup_audit_logging(log_dir: Optional[str] = None) -> Path:
    """Configure audit logging to file.

    Args:
        log_dir: Directory for audit logs. Defaults to ~/.unifi-converge/

    Returns:
        Path of the audit log file
    """
    if log_dir is None:
        log_dir = default_audit_dir()

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    audit_file = Path(log_dir) / "audit.log"

    audit_logger.setLevel(logging.INFO)
    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
        handler.close()

    handler = RotatingFileHandler(
        audit_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=10,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.propagate = False
    return audit_file


@dataclass
class ChangeRecord:
    """Record of one applied operation."""
    timestamp: str
    host: str
    site: str
    collection: str
    name: str
    operation: str  # create, update, delete
    user: str
    success: bool
    status: str
    attempts: int
    fields: dict
    device_id: Optional[str] = None
    context: str = ""
    error: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=None, default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "ChangeRecord":
        return cls(**json.loads(json_str))


def log_change(
    host: str,
    site: str,
    collection: str,
    name: str,
    operation: str,
    fields: dict[str, Any],
    success: bool,
    status: str,
    attempts: int = 0,
    device_id: Optional[str] = None,
    error: Optional[str] = None,
    user: Optional[str] = None,
    context: str = "",
) -> ChangeRecord:
    """Write one audit record.

    ``fields`` must already be masked by the caller.

    Returns:
        The ChangeRecord that was logged
    """
    record = ChangeRecord(
        timestamp=datetime.now(timezone.utc).isoformat(),
        host=host,
        site=site,
        collection=collection,
        name=name,
        operation=operation,
        user=user or os.environ.get("USER", "system"),
        success=success,
        status=status,
        attempts=attempts,
        fields=fields,
        device_id=device_id,
        context=context,
        error=error,
    )
    audit_logger.info(record.to_json())
    return record


def get_recent_changes(
    log_file: Optional[str] = None,
    collection: Optional[str] = None,
    name: Optional[str] = None,
    limit: int = 100,
) -> list[ChangeRecord]:
    """Read recent changes from the audit log.

    Args:
        log_file: Path to audit log. Defaults to ~/.unifi-converge/audit.log
        collection: Filter by collection
        name: Filter by logical name
        limit: Maximum number of records to return

    Returns:
        List of ChangeRecords, most recent first
    """
    if log_file is None:
        log_file = os.path.join(default_audit_dir(), "audit.log")

    if not os.path.exists(log_file):
        return []

    records = []
    with open(log_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = ChangeRecord.from_json(line)
            except (json.JSONDecodeError, TypeError):
                continue  # Skip malformed lines

            if collection and record.collection != collection:
                continue
            if name and record.name != name:
                continue
            records.append(record)

    return list(reversed(records[-limit:]))
