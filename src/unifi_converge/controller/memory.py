"""In-memory controller.

Behaves like a UniFi controller for one site: documents get hex ids,
reference fields hold ids, deleting an entity that is still referenced is
rejected. Used by the tests and for offline planning against a saved
snapshot (``unifi-converge diff --snapshot``).
"""
import asyncio
import logging
from typing import Any, Optional

from ..errors import APIError, TerminalAPIError
from ..reconcile.entities import (
    COLLECTION_ORDER,
    MANAGEMENT_MARKER_FIELD,
    MANAGEMENT_MARKER_VALUE,
    REFERENCE_FIELDS,
    logical_name_of,
    references_of,
    translate_references,
)
from .base import Controller, ControllerConfig, LiveEntity

logger = logging.getLogger(__name__)


class InMemoryController(Controller):
    """Dict-backed controller with injectable failures."""

    def __init__(self, host: str = "memory", site: str = "default", latency: float = 0.0):
        super().__init__(ControllerConfig(host=host, site=site))
        # collection -> device id -> document (references as ids)
        self._store: dict[str, dict[str, dict[str, Any]]] = {}
        self._counter = 0
        # (collection, name) -> [exception, remaining count or None for always]
        self._failures: dict[tuple[str, str], list] = {}
        self.latency = latency
        # (method, collection, logical name) for every call
        self.calls: list[tuple[str, str, Optional[str]]] = []
        self._in_flight = 0
        self.max_in_flight = 0

    @classmethod
    def from_documents(
        cls, documents: dict[str, list[dict[str, Any]]], **kwargs: Any
    ) -> "InMemoryController":
        """Build a controller from a snapshot with references by name."""
        controller = cls(**kwargs)
        named = [c.value for c in COLLECTION_ORDER]
        ordered = [c for c in named if c in documents]
        ordered += sorted(c for c in documents if c not in named)
        for collection in ordered:
            for doc in documents[collection]:
                controller.seed(collection, doc)
        return controller

    # --- test helpers ---

    def seed(self, collection: str, fields: dict[str, Any], managed: bool = False) -> str:
        """Insert a document directly; references may be given by name."""
        doc, _ = translate_references(collection, fields, self._id_table())
        doc = dict(doc)
        if managed:
            doc[MANAGEMENT_MARKER_FIELD] = MANAGEMENT_MARKER_VALUE
        return self._insert(collection, doc)

    def fail_on(
        self,
        collection: str,
        name: str,
        exc: APIError,
        times: Optional[int] = 1,
    ) -> None:
        """Make calls touching (collection, name) raise ``exc``.

        ``times=None`` fails every call.
        """
        self._failures[(collection, name)] = [exc, times]

    def documents(self, collection: str) -> list[dict[str, Any]]:
        """Stored documents, references as ids."""
        return [dict(d) for d in self._store.get(collection, {}).values()]

    def get(self, collection: str, name: str) -> Optional[dict[str, Any]]:
        for doc in self._store.get(collection, {}).values():
            if logical_name_of(collection, doc) == name:
                return dict(doc)
        return None

    def id_of(self, collection: str, name: str) -> Optional[str]:
        doc = self.get(collection, name)
        return doc["_id"] if doc else None

    def mutations(self) -> list[tuple[str, str, Optional[str]]]:
        return [c for c in self.calls if c[0] != "list"]

    # --- internals ---

    def _insert(self, collection: str, doc: dict[str, Any]) -> str:
        self._counter += 1
        device_id = f"{self._counter:024x}"
        doc["_id"] = device_id
        self._store.setdefault(collection, {})[device_id] = doc
        return device_id

    def _id_table(self) -> dict[tuple[str, str], str]:
        """(collection, logical name) -> id."""
        table = {}
        for collection, docs in self._store.items():
            for device_id, doc in docs.items():
                name = logical_name_of(collection, doc)
                if name:
                    table[(collection, name)] = device_id
        return table

    def _name_table(self) -> dict[tuple[str, str], str]:
        """(collection, id) -> logical name."""
        return {(c, i): n for (c, n), i in self._id_table().items()}

    def _check_failure(self, collection: str, name: Optional[str]) -> None:
        entry = self._failures.get((collection, name))
        if entry is None:
            return
        exc, remaining = entry
        if remaining is not None:
            if remaining <= 0:
                return
            entry[1] = remaining - 1
        raise exc

    def _check_references(self, collection: str, doc: dict[str, Any], name: Optional[str]) -> None:
        ids = {(c, i) for c, docs in self._store.items() for i in docs}
        for target in references_of(collection, doc):
            if target not in ids:
                raise TerminalAPIError(
                    f"unknown {target[0]} id '{target[1]}'", collection, name, status=400
                )

    async def _enter(self, method: str, collection: str, name: Optional[str]) -> None:
        self.calls.append((method, collection, name))
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            self._check_failure(collection, name)
        except BaseException:
            self._in_flight -= 1
            raise

    def _leave(self) -> None:
        self._in_flight -= 1

    # --- LiveStateFetcher ---

    def known_collections(self) -> list[str]:
        return sorted(self._store)

    async def list(self, collection: str) -> list[LiveEntity]:
        self.calls.append(("list", collection, None))
        table = self._name_table()
        entities = []
        for device_id, doc in self._store.get(collection, {}).items():
            name = logical_name_of(collection, doc)
            if not name:
                continue
            fields, _ = translate_references(collection, doc, table)
            entities.append(LiveEntity(name=name, id=device_id, fields=fields))
        return entities

    # --- LiveAPI ---

    async def create(self, collection: str, fields: dict[str, Any]) -> str:
        name = logical_name_of(collection, fields)
        await self._enter("create", collection, name)
        try:
            self._check_references(collection, fields, name)
            device_id = self._insert(collection, dict(fields))
        finally:
            self._leave()
        logger.debug(f"memory: created {collection} '{name}' as {device_id}")
        return device_id

    async def update(self, collection: str, device_id: str, fields: dict[str, Any]) -> None:
        current = self._store.get(collection, {}).get(device_id)
        name = logical_name_of(collection, current) if current else None
        await self._enter("update", collection, name)
        try:
            if current is None:
                raise TerminalAPIError(f"no entity with id {device_id}", collection, status=404)
            self._check_references(collection, fields, name)
            current.update(fields)
        finally:
            self._leave()

    async def delete(self, collection: str, device_id: str) -> None:
        current = self._store.get(collection, {}).get(device_id)
        name = logical_name_of(collection, current) if current else None
        await self._enter("delete", collection, name)
        try:
            if current is None:
                raise TerminalAPIError(f"no entity with id {device_id}", collection, status=404)
            for other_collection, docs in self._store.items():
                if not REFERENCE_FIELDS.get(other_collection):
                    continue
                for doc in docs.values():
                    if (collection, device_id) in references_of(other_collection, doc):
                        raise TerminalAPIError(
                            f"in use by {other_collection} "
                            f"'{logical_name_of(other_collection, doc)}'",
                            collection, name, status=400,
                        )
            del self._store[collection][device_id]
        finally:
            self._leave()
