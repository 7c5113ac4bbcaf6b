"""Executor for applying changesets to a controller.

Operations run in changeset order, grouped into stages of consecutive
operations on the same collection and phase (create/update or delete).
A stage starts only after the previous one finished; inside a stage the
operations run concurrently, bounded by ``ExecuteOptions.concurrency``.

A failed operation never aborts the run. Operations that depend on it are
skipped with a ReconciliationError naming the cause, independent ones
continue.
"""
import asyncio
import logging
import time
from itertools import groupby
from typing import TYPE_CHECKING, Optional

from ..errors import APIError, ReconciliationError
from ..utils.audit_log import log_change
from ..utils.connection import RETRYABLE_EXCEPTIONS, call_with_retry
from ..utils.logging_config import timed_section
from .entities import SecretReference, collection_label, translate_references
from .schema import (
    ChangeType,
    Changeset,
    ExecuteOptions,
    Operation,
    OperationResult,
    OperationStatus,
    Report,
    mask,
)

if TYPE_CHECKING:
    from ..controller.base import LiveAPI

logger = logging.getLogger(__name__)

# Statuses that make an operation's dependents unrunnable
_UNSETTLED = (OperationStatus.FAILED, OperationStatus.SKIPPED, OperationStatus.CANCELLED)


def _contains_unresolved_secret(value) -> bool:
    if isinstance(value, SecretReference):
        return True
    if isinstance(value, dict):
        return any(_contains_unresolved_secret(v) for v in value.values())
    if isinstance(value, list):
        return any(_contains_unresolved_secret(v) for v in value)
    return False


def _describe(key: tuple[str, str]) -> str:
    collection, name = key
    return f"{collection_label(collection)} '{name}'"


class _Run:
    """Mutable state of one execute() call."""

    def __init__(self, changeset: Changeset, options: ExecuteOptions):
        self.options = options
        # (collection, name) -> device id; creates add to it
        self.identities = dict(changeset.identities)
        # (collection, name) -> cause, for operations that did not succeed
        self.unsettled: dict[tuple[str, str], str] = {}
        # Delete targets still referenced by an entity whose delete did not happen
        self.blocked: dict[tuple[str, str], tuple[tuple[str, str], str]] = {}
        self.deadline: Optional[float] = None
        if options.timeout is not None:
            self.deadline = time.monotonic() + options.timeout

    def cancelled(self) -> Optional[str]:
        event = self.options.cancel_event
        if event is not None and event.is_set():
            return "cancelled"
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return f"timeout after {self.options.timeout}s"
        return None


class ConfigExecutor:
    """Apply changesets through a LiveAPI."""

    def __init__(
        self,
        options: Optional[ExecuteOptions] = None,
        host: str = "",
        site: str = "default",
    ):
        """
        Initialize executor.

        Args:
            options: Execution options (dry_run, concurrency, retries, ...)
            host: Controller host, recorded in the audit log
            site: Controller site, recorded in the audit log
        """
        self.options = options or ExecuteOptions()
        self.host = host
        self.site = site

    async def execute(self, changeset: Changeset, api: "LiveAPI") -> Report:
        """
        Execute a changeset.

        Args:
            changeset: Ordered operations from the DiffEngine
            api: Controller write side

        Returns:
            Report with one result per operation, in changeset order
        """
        options = self.options
        report = Report(dry_run=options.dry_run)

        if options.dry_run:
            report.results = [
                OperationResult(operation=op, status=OperationStatus.PLANNED)
                for op in changeset
            ]
            logger.info(f"DRY RUN: {len(report.results)} operation(s) planned")
            return report

        run = _Run(changeset, options)
        semaphore = asyncio.Semaphore(max(1, options.concurrency))

        stages = groupby(
            changeset.operations,
            key=lambda op: (op.collection, op.change_type == ChangeType.DELETE),
        )
        for (collection, is_delete), group in stages:
            stage = list(group)
            phase = "delete" if is_delete else "apply"
            logger.debug(f"Stage {phase} {collection}: {len(stage)} operation(s)")

            async with timed_section(f"stage_{phase}", target=collection, operations=len(stage)):
                results = await asyncio.gather(
                    *(self._run_operation(op, api, run, semaphore) for op in stage)
                )

            for result in results:
                self._settle(result, run)
            report.results.extend(results)

        logger.info(
            f"Applied changeset: {len(report.by_status(OperationStatus.SUCCEEDED))} succeeded, "
            f"{len(report.failed)} failed, {len(report.skipped)} skipped, "
            f"{len(report.cancelled)} cancelled"
        )
        return report

    def _settle(self, result: OperationResult, run: _Run) -> None:
        """Record the outcome so later stages can see it."""
        op = result.operation
        if result.status not in _UNSETTLED:
            return
        run.unsettled[op.key] = result.cause or result.status.value
        if op.change_type == ChangeType.DELETE:
            # Whatever the surviving entity references must survive too
            for ref in op.references():
                run.blocked.setdefault(ref, (op.key, result.cause or result.status.value))

    def _blocking_dependency(
        self, op: Operation, run: _Run
    ) -> Optional[tuple[tuple[str, str], str]]:
        if op.change_type == ChangeType.DELETE:
            return run.blocked.get(op.key)
        for ref in op.references():
            if ref in run.unsettled:
                return ref, run.unsettled[ref]
        return None

    async def _run_operation(
        self,
        op: Operation,
        api: "LiveAPI",
        run: _Run,
        semaphore: asyncio.Semaphore,
    ) -> OperationResult:
        """Run one operation, never raising for controller failures."""
        # Nothing starts after the signal, dependents of cancelled work included
        reason = run.cancelled()
        if reason is not None:
            return OperationResult(operation=op, status=OperationStatus.CANCELLED, cause=reason)

        dependency = self._blocking_dependency(op, run)
        if dependency is not None:
            dep_key, dep_cause = dependency
            error = ReconciliationError(op.collection, op.name, dep_key, dep_cause)
            logger.warning(str(error))
            return OperationResult(
                operation=op,
                status=OperationStatus.SKIPPED,
                cause=f"dependency {_describe(dep_key)} not applied: {dep_cause}",
                error=error,
            )

        async with semaphore:
            reason = run.cancelled()
            if reason is not None:
                return OperationResult(operation=op, status=OperationStatus.CANCELLED, cause=reason)
            return await self._call(op, api, run)

    async def _call(self, op: Operation, api: "LiveAPI", run: _Run) -> OperationResult:
        options = self.options
        fields = op.fields
        if op.change_type != ChangeType.DELETE:
            fields, missing = translate_references(op.collection, op.fields, run.identities)
            if missing:
                cause = "unresolved reference: " + ", ".join(_describe(m) for m in missing)
                return self._finish(op, OperationStatus.FAILED, cause=cause)
            if _contains_unresolved_secret(fields):
                return self._finish(op, OperationStatus.FAILED, cause="unresolved secret")

        attempts = 0

        def count(attempt: int) -> None:
            nonlocal attempts
            attempts = attempt

        retry_kwargs = dict(
            max_attempts=options.max_attempts,
            min_wait=options.min_wait,
            max_wait=options.max_wait,
            exceptions=RETRYABLE_EXCEPTIONS,
            on_attempt=count,
        )

        start = time.perf_counter()
        device_id = op.device_id
        try:
            if op.change_type == ChangeType.CREATE:
                device_id = await call_with_retry(api.create, op.collection, fields, **retry_kwargs)
                run.identities[op.key] = device_id
            elif op.change_type == ChangeType.UPDATE:
                await call_with_retry(api.update, op.collection, op.device_id, fields, **retry_kwargs)
            else:
                await call_with_retry(api.delete, op.collection, op.device_id, **retry_kwargs)
                run.identities.pop(op.key, None)
        except APIError as e:
            logger.error(f"{op} failed after {attempts} attempt(s): {e}")
            return self._finish(
                op, OperationStatus.FAILED, cause=str(e), error=e, attempts=attempts,
                device_id=device_id, start=start,
            )
        except Exception as e:
            logger.exception(f"{op} raised: {e}")
            return self._finish(
                op, OperationStatus.FAILED, cause=f"unexpected error: {e}", error=e,
                attempts=attempts, device_id=device_id, start=start,
            )

        logger.info(f"{op}: ok")
        return self._finish(
            op, OperationStatus.SUCCEEDED, attempts=attempts, device_id=device_id, start=start,
        )

    def _finish(
        self,
        op: Operation,
        status: OperationStatus,
        cause: Optional[str] = None,
        error: Optional[Exception] = None,
        attempts: int = 0,
        device_id: Optional[str] = None,
        start: Optional[float] = None,
    ) -> OperationResult:
        """Build the result and write the audit record."""
        duration = (time.perf_counter() - start) * 1000 if start is not None else 0.0
        result = OperationResult(
            operation=op,
            status=status,
            cause=cause,
            error=error,
            device_id=device_id or op.device_id,
            attempts=attempts,
            duration_ms=duration,
        )
        log_change(
            host=self.host,
            site=self.site,
            collection=op.collection,
            name=op.name,
            operation=op.change_type.value,
            fields=mask(op.fields) if op.change_type != ChangeType.DELETE else {},
            success=status == OperationStatus.SUCCEEDED,
            status=status.value,
            attempts=attempts,
            device_id=result.device_id,
            error=cause,
            user=self.options.user,
            context=self.options.audit_context,
        )
        return result


def summarize_report(report: Report) -> str:
    """
    Create a human-readable summary of an apply report.
    """
    if not report.results:
        return "Nothing to apply"

    symbols = {
        OperationStatus.SUCCEEDED: "[ok]",
        OperationStatus.FAILED: "[!!]",
        OperationStatus.SKIPPED: "[--]",
        OperationStatus.PLANNED: "[..]",
        OperationStatus.CANCELLED: "[xx]",
    }
    header = "Planned operations" if report.dry_run else "Applied operations"
    lines = [f"{header} ({len(report.results)} total):", ""]
    for result in report.results:
        line = f"  {symbols[result.status]} {result.operation}"
        if result.cause:
            line += f" - {result.cause}"
        if result.attempts > 1:
            line += f" ({result.attempts} attempts)"
        lines.append(line)

    lines.append("")
    lines.append("Result: " + ("success" if report.success else "incomplete"))
    return "\n".join(lines)
