"""Exception hierarchy shared by the reconciliation core and the adapters.

Every error carries enough context (collection, logical name, field) to
locate the cause without reading the logs.
"""
from typing import Optional


class ConvergeError(Exception):
    """Base class for all unifi-converge errors."""
    pass


class ParseError(ConvergeError):
    """The desired-state document is not structurally usable."""
    pass


class ValidationError(ConvergeError):
    """A field-level problem in the desired state.

    ``kind`` is one of: missing, invalid, range, enum, duplicate, reference.
    """

    def __init__(
        self,
        collection: str,
        name: Optional[str],
        field: Optional[str],
        message: str,
        kind: str = "invalid",
    ):
        self.collection = collection
        self.name = name
        self.field = field
        self.message = message
        self.kind = kind
        super().__init__(str(self))

    def __str__(self) -> str:
        where = self.collection
        if self.name is not None:
            where += f" '{self.name}'"
        if self.field:
            where += f" field '{self.field}'"
        return f"{where}: {self.message}"

    def to_dict(self) -> dict:
        return {
            "collection": self.collection,
            "name": self.name,
            "field": self.field,
            "kind": self.kind,
            "message": self.message,
        }


class DanglingReferenceError(ValidationError):
    """A reference field names an entity that is not in the desired state."""

    def __init__(
        self,
        collection: str,
        name: Optional[str],
        field: str,
        target_collection: str,
        target: str,
    ):
        self.target_collection = target_collection
        self.target = target
        super().__init__(
            collection,
            name,
            field,
            f"references unknown {target_collection} '{target}'",
            kind="reference",
        )


class ConfigValidationFailed(ConvergeError):
    """Raised by callers that want an exception instead of a result."""

    def __init__(self, errors: list[ValidationError]):
        self.errors = errors
        super().__init__(
            f"{len(errors)} validation error(s): "
            + "; ".join(str(e) for e in errors)
        )


class SchemaNotFound(ConvergeError):
    """A pinned schema version has no extracted descriptor."""

    def __init__(self, version: str, searched: Optional[str] = None):
        self.version = version
        self.searched = searched
        msg = f"No schema descriptor for version '{version}'"
        if searched:
            msg += f" (searched {searched})"
        super().__init__(msg)


class SecretNotFound(ConvergeError):
    """A secret backend could not resolve a path."""

    def __init__(self, path: str, hint: str = ""):
        self.path = path
        self.hint = hint
        msg = f"Secret '{path}' not found"
        if hint:
            msg += f" ({hint})"
        super().__init__(msg)


class SecretResolutionError(ConvergeError):
    """One or more secret references could not be resolved.

    ``failures`` holds (collection, name, field, SecretNotFound) tuples.
    """

    def __init__(self, failures: list[tuple[str, str, str, SecretNotFound]]):
        self.failures = failures
        details = "; ".join(
            f"{collection} '{name}' field '{field}': {err}"
            for collection, name, field, err in failures
        )
        super().__init__(f"{len(failures)} unresolved secret(s): {details}")


class APIError(ConvergeError):
    """The controller rejected or failed a request."""

    retryable = False

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        name: Optional[str] = None,
        status: Optional[int] = None,
    ):
        self.collection = collection
        self.name = name
        self.status = status
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        parts = []
        if self.status is not None:
            parts.append(f"HTTP {self.status}")
        if self.collection:
            target = self.collection
            if self.name:
                target += f" '{self.name}'"
            parts.append(target)
        parts.append(self.message)
        return ": ".join(parts)


class RetryableAPIError(APIError):
    """Timeouts, transport failures and 5xx responses."""

    retryable = True


class TerminalAPIError(APIError):
    """4xx responses: the controller refused the document."""

    retryable = False


class ReconciliationError(ConvergeError):
    """An operation was not attempted because a dependency failed."""

    def __init__(
        self,
        collection: str,
        name: str,
        dependency: tuple[str, str],
        cause: str,
    ):
        self.collection = collection
        self.name = name
        self.dependency = dependency
        self.cause = cause
        dep_collection, dep_name = dependency
        super().__init__(
            f"{collection} '{name}' skipped: depends on "
            f"{dep_collection} '{dep_name}' ({cause})"
        )
