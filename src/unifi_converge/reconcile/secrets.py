"""Secret resolution.

Secret values never appear in the desired-state document itself; the
document carries ``{"_secret": "wifi/main"}`` references that a backend
resolves right before diffing. All references of a document are resolved
in one pass and every failure is reported together.
"""
import copy
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import fields, is_dataclass
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Union

from ..errors import SecretNotFound, SecretResolutionError
from .entities import SecretLiteral, SecretReference, collection_of
from .schema import DesiredState

logger = logging.getLogger(__name__)


class SecretBackend(ABC):
    """Resolves a secret path to its value."""

    @abstractmethod
    def resolve(self, path: str) -> str:
        """
        Resolve one secret.

        Raises:
            SecretNotFound: If the backend has no value for ``path``
        """
        pass

    def describe(self) -> str:
        return type(self).__name__


class EnvSecretBackend(SecretBackend):
    """Environment variables: ``wifi/main`` -> ``WIFI_MAIN``."""

    def __init__(self, prefix: str = "", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def variable_name(self, path: str) -> str:
        name = path.strip("/").upper()
        for sep in ("/", "-", ".", " "):
            name = name.replace(sep, "_")
        return f"{self.prefix}{name}"

    def resolve(self, path: str) -> str:
        var = self.variable_name(path)
        value = self._environ.get(var)
        if value is None:
            raise SecretNotFound(path, f"environment variable {var} is not set")
        return value

    def describe(self) -> str:
        return "environment"


class FileSecretBackend(SecretBackend):
    """One file per secret below a directory, trailing newline stripped."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory).expanduser()

    def resolve(self, path: str) -> str:
        root = self.directory.resolve()
        target = (root / path).resolve()
        if root != target and root not in target.parents:
            raise SecretNotFound(path, "path escapes the secrets directory")
        if not target.is_file():
            raise SecretNotFound(path, f"no file {target}")
        return target.read_text(encoding="utf-8").rstrip("\r\n")

    def describe(self) -> str:
        return f"files in {self.directory}"


class StaticSecretBackend(SecretBackend):
    """Fixed mapping of path to value."""

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self.values = dict(values or {})

    def resolve(self, path: str) -> str:
        if path not in self.values:
            raise SecretNotFound(path)
        return self.values[path]


class ChainSecretBackend(SecretBackend):
    """Try backends in order; the first one that knows the path wins."""

    def __init__(self, *backends: SecretBackend):
        self.backends = list(backends)

    def resolve(self, path: str) -> str:
        hints = []
        for backend in self.backends:
            try:
                return backend.resolve(path)
            except SecretNotFound as e:
                hints.append(e.hint or backend.describe())
        raise SecretNotFound(path, "; ".join(hints))

    def describe(self) -> str:
        return " -> ".join(b.describe() for b in self.backends)


def default_backend(secrets_dir: Optional[Union[str, Path]] = None) -> SecretBackend:
    """Secrets directory first (when configured), then the environment."""
    if secrets_dir:
        return ChainSecretBackend(FileSecretBackend(secrets_dir), EnvSecretBackend())
    return EnvSecretBackend()


def _walk(value: Any, path: str) -> Iterator[tuple[str, Any]]:
    """Yield (field path, SecretRef) for every secret inside ``value``."""
    if isinstance(value, (SecretLiteral, SecretReference)):
        yield path, value
    elif is_dataclass(value) and not isinstance(value, type):
        for f in fields(value):
            if f.name in ("collection", "collection_name", "name"):
                continue
            yield from _walk(getattr(value, f.name), f"{path}.{f.name}" if path else f.name)
    elif isinstance(value, list):
        for i, item in enumerate(value):
            yield from _walk(item, f"{path}[{i}]")
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from _walk(item, f"{path}.{key}" if path else str(key))


def _substitute(value: Any, resolved: dict[str, str]) -> Any:
    """Replace SecretReference objects in place (on a copy) with literals."""
    if isinstance(value, SecretReference):
        return SecretLiteral(resolved[value.path])
    if isinstance(value, SecretLiteral):
        return value
    if is_dataclass(value) and not isinstance(value, type):
        for f in fields(value):
            setattr(value, f.name, _substitute(getattr(value, f.name), resolved))
        return value
    if isinstance(value, list):
        return [_substitute(item, resolved) for item in value]
    if isinstance(value, dict):
        return {key: _substitute(item, resolved) for key, item in value.items()}
    return value


class SecretResolver:
    """Resolve every SecretReference in a desired state."""

    def __init__(self, backend: SecretBackend):
        self.backend = backend

    def references(self, state: DesiredState) -> list[tuple[str, str, str, SecretReference]]:
        """All unresolved references as (collection, name, field, ref)."""
        found = []
        for entity in state:
            for field_path, ref in _walk(entity, ""):
                if isinstance(ref, SecretReference):
                    found.append((collection_of(entity), entity.name, field_path, ref))
        return found

    def resolve_all(self, state: DesiredState) -> DesiredState:
        """
        Resolve all references at once.

        Returns:
            A copy of ``state`` with every SecretReference replaced by a
            SecretLiteral. The input state is left untouched.

        Raises:
            SecretResolutionError: Listing every reference that failed
        """
        refs = self.references(state)
        if not refs:
            return state

        resolved: dict[str, str] = {}
        missing: dict[str, SecretNotFound] = {}
        for path in dict.fromkeys(ref.path for _, _, _, ref in refs):
            try:
                resolved[path] = self.backend.resolve(path)
            except SecretNotFound as e:
                missing[path] = e

        if missing:
            failures = [
                (collection, name, field_path, missing[ref.path])
                for collection, name, field_path, ref in refs
                if ref.path in missing
            ]
            raise SecretResolutionError(failures)

        logger.debug(
            f"Resolved {len(resolved)} secret(s) for {len(refs)} field(s) "
            f"via {self.backend.describe()}"
        )
        result = copy.deepcopy(state)
        result.entities = {
            collection: [_substitute(e, resolved) for e in entities]
            for collection, entities in result.entities.items()
        }
        return result
