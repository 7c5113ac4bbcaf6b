"""Converge Engine - orchestrates the full reconciliation workflow.

Provides a single entry point for:
1. Parsing the desired-state document
2. Validating it against the resolved schema
3. Resolving secrets (hard precondition of any mutation)
4. Calculating the changeset against live state
5. Applying it (or planning it in dry-run)
"""
import logging
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Union

import yaml

from ..errors import APIError, ConfigValidationFailed, ParseError, SecretResolutionError
from .diff import DiffEngine, summarize_changeset
from .executor import ConfigExecutor
from .parser import ConfigParser, compute_checksum
from .registry import LATEST, SchemaDescriptor, SchemaRegistry
from .schema import ConvergeResult, DesiredState, ExecuteOptions, ValidationResult
from .secrets import EnvSecretBackend, SecretBackend, SecretResolver
from .validator import ConfigValidator

if TYPE_CHECKING:
    from ..controller.base import Controller

logger = logging.getLogger(__name__)


def load_document(path: Union[str, Path]) -> dict[str, Any]:
    """
    Load a desired-state document from a JSON or YAML file.

    Raises:
        ParseError: If the file cannot be read or is not a mapping
    """
    try:
        with open(path, encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except OSError as e:
        raise ParseError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ParseError(f"Cannot parse {path}: {e}") from e
    if not isinstance(document, dict):
        raise ParseError(f"{path}: desired state must be a mapping")
    return document


class ConvergeEngine:
    """
    Converge one controller site toward a desired-state document.

    Usage:
        async with UniFiController(config) as controller:
            engine = ConvergeEngine(controller, SchemaRegistry("schemas"))
            result = await engine.converge(document, dry_run=True)
    """

    def __init__(
        self,
        controller: "Controller",
        registry: Optional[SchemaRegistry] = None,
        secrets: Optional[SecretBackend] = None,
        options: Optional[ExecuteOptions] = None,
        schema_version: Optional[str] = None,
    ):
        """
        Initialize the Converge Engine.

        Args:
            controller: Live-state fetcher and API for the target site
            registry: Schema registry; built-in defaults when omitted
            secrets: Secret backend; environment variables when omitted
            options: Apply options (concurrency, retries, timeout, ...)
            schema_version: Pinned version, overrides the document's own
        """
        self.controller = controller
        self.registry = registry or SchemaRegistry()
        self.resolver = SecretResolver(secrets or EnvSecretBackend())
        self.options = options or ExecuteOptions()
        self.schema_version = schema_version
        self.parser = ConfigParser()
        self.diff_engine = DiffEngine()

    def parse(self, config: dict[str, Any]) -> DesiredState:
        """Parse a document to DesiredState (for external use)."""
        return self.parser.parse(config)

    def schema_for(self, desired: DesiredState) -> SchemaDescriptor:
        """
        Resolve the schema for a desired state.

        Raises:
            SchemaNotFound: If a pinned version is not available
        """
        version = self.schema_version or desired.schema_version or LATEST
        return self.registry.resolve(version)

    def validate(self, desired: DesiredState) -> ValidationResult:
        """Validate a DesiredState (for external use)."""
        return ConfigValidator(self.schema_for(desired)).validate(desired)

    def check(self, config: dict[str, Any]) -> DesiredState:
        """
        Parse and validate a document, raising instead of returning a result.

        Raises:
            ParseError: If the document is not a mapping
            ConfigValidationFailed: If validation finds any error
        """
        desired = self.parse(config)
        validation = self.validate(desired)
        if not validation.valid:
            raise ConfigValidationFailed(validation.errors)
        return desired

    async def converge(
        self,
        config: dict[str, Any],
        dry_run: Optional[bool] = None,
    ) -> ConvergeResult:
        """
        Converge the controller to a desired-state document.

        Validation and secret resolution complete before any mutating
        call. In dry-run, unresolvable secrets become warnings and the
        affected fields are treated as unknown by the diff.

        Args:
            config: Desired-state document
            dry_run: Overrides ``ExecuteOptions.dry_run`` when given

        Returns:
            ConvergeResult with validation, changeset and report
        """
        if dry_run is None:
            dry_run = self.options.dry_run
        result = ConvergeResult(dry_run=dry_run)
        if isinstance(config, dict):
            result.checksum = compute_checksum(config)

        # Step 1: Parse
        logger.info("Parsing desired state")
        try:
            desired = self.parser.parse(config)
        except ParseError as e:
            result.error = f"Parse error: {e}"
            return result

        # Step 2: Validate
        schema = self.schema_for(desired)
        logger.info(f"Validating {len(desired)} entities against schema {schema.version}")
        validator = ConfigValidator(schema)
        validation = validator.validate(desired)
        result.validation = validation
        result.warnings.extend(validation.warnings)
        if not validation.valid:
            result.error = f"Validation failed with {len(validation.errors)} error(s)"
            for error in validation.errors:
                logger.error(f"  {error}")
            return result

        # Step 3: Secrets
        try:
            desired = self.resolver.resolve_all(desired)
        except SecretResolutionError as e:
            if not dry_run:
                result.error = str(e)
                return result
            result.warnings.extend(
                f"{collection} '{name}' field '{field}': {err} (treated as unknown)"
                for collection, name, field, err in e.failures
            )

        resolved = validator.validate_resolved(desired)
        if not resolved.valid:
            validation.errors.extend(resolved.errors)
            validation.valid = False
            result.error = f"Validation failed with {len(resolved.errors)} error(s)"
            return result

        # Step 4: Diff
        logger.info("Calculating changeset against live state")
        try:
            # Managed orphans can sit in collections the document no longer mentions
            changeset = await self.diff_engine.calculate(
                desired,
                self.controller,
                extra_collections=[*schema.collections, *self.controller.known_collections()],
            )
        except APIError as e:
            result.error = f"Failed to read live state: {e}"
            return result
        result.changeset = changeset

        if changeset.no_change:
            logger.info("No changes needed")
        else:
            logger.info(f"Found {changeset.total_changes} changes")
            logger.debug(summarize_changeset(changeset))

        # Step 5: Apply
        options = replace(self.options, dry_run=dry_run)
        executor = ConfigExecutor(options, host=self.controller.host, site=self.controller.site)
        result.report = await executor.execute(changeset, self.controller)
        return result

    async def plan(self, config: dict[str, Any]) -> ConvergeResult:
        """Validate and diff without mutating anything."""
        return await self.converge(config, dry_run=True)
