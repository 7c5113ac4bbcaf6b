"""Diff engine for calculating changes between desired and live state.

Computes the minimal, ordered set of operations needed to reach the
desired state. Only entities carrying the management marker are ever
deleted; live entities the tool did not create are left alone.
"""
import logging
from collections import Counter
from typing import TYPE_CHECKING, Any, Iterable, Optional

from .entities import (
    MANAGEMENT_MARKER_FIELD,
    MANAGEMENT_MARKER_VALUE,
    RETAINED_COLLECTIONS,
    SecretReference,
)
from .schema import ChangeType, Changeset, DesiredState, Operation, mask

if TYPE_CHECKING:
    from ..controller.base import LiveEntity, LiveStateFetcher

logger = logging.getLogger(__name__)


async def fetch_live(
    fetcher: "LiveStateFetcher", collections: Iterable[str]
) -> "dict[str, list[LiveEntity]]":
    """Fetch the live entities of every given collection."""
    live = {}
    for collection in collections:
        live[collection] = await fetcher.list(collection)
        logger.debug(f"Fetched {len(live[collection])} live {collection} entities")
    return live


def values_match(desired: Any, live: Any) -> bool:
    """Whether a live value satisfies a desired one.

    Dicts compare as "desired is a subset of live", lists of scalars
    ignore order, unresolved secrets match anything.
    """
    if isinstance(desired, SecretReference):
        return True
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return not desired and live is None
        return all(values_match(v, live.get(k)) for k, v in desired.items())
    if isinstance(desired, list):
        if live is None:
            return not desired
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        if all(not isinstance(v, (dict, list)) for v in desired + live):
            try:
                return Counter(desired) == Counter(live)
            except TypeError:
                return sorted(map(repr, desired)) == sorted(map(repr, live))
        return all(values_match(d, v) for d, v in zip(desired, live))
    return desired == live


class DiffEngine:
    """Calculate differences between desired and live state."""

    async def calculate(
        self,
        desired: DesiredState,
        fetcher: "LiveStateFetcher",
        extra_collections: Iterable[str] = (),
    ) -> Changeset:
        """
        Fetch live state and calculate the changeset.

        Args:
            desired: Validated desired state
            fetcher: Source of live entities
            extra_collections: Collections to fetch even when the desired
                state declares nothing in them, so managed orphans there
                are deleted

        Returns:
            Changeset with all operations needed
        """
        collections = desired.collections()
        collections += sorted(set(extra_collections) - set(collections))
        live = await fetch_live(fetcher, collections)
        return self.compute(desired, live)

    def compute(
        self,
        desired: DesiredState,
        live: "dict[str, list[LiveEntity]]",
    ) -> Changeset:
        """
        Calculate the changeset from an already fetched snapshot.

        Pure: the same inputs always give the same changeset.
        """
        collections = desired.collections()
        collections += sorted(c for c in live if c not in collections)

        changeset = Changeset()
        deletes: list[list[Operation]] = []

        for collection in collections:
            live_by_name = self._index_live(collection, live.get(collection, []))
            for name, entity in live_by_name.items():
                changeset.identities[(collection, name)] = entity.id

            desired_names = set()
            for entity in desired.get(collection):
                desired_names.add(entity.name)
                op = self._diff_entity(collection, entity.name, entity.to_fields(),
                                       live_by_name.get(entity.name))
                if op is not None:
                    changeset.operations.append(op)

            if collection in RETAINED_COLLECTIONS:
                continue
            stale = [
                Operation(
                    collection=collection,
                    change_type=ChangeType.DELETE,
                    name=name,
                    fields=dict(current.fields),
                    device_id=current.id,
                )
                for name, current in sorted(live_by_name.items())
                if name not in desired_names and current.managed
            ]
            deletes.append(stale)

        # Deletes run after every create/update, dependents first
        for stale in reversed(deletes):
            changeset.operations.extend(stale)

        logger.debug(
            f"Changeset: {changeset.count(ChangeType.CREATE)} create, "
            f"{changeset.count(ChangeType.UPDATE)} update, "
            f"{changeset.count(ChangeType.DELETE)} delete"
        )
        return changeset

    @staticmethod
    def _index_live(collection: str, entities: "list[LiveEntity]") -> "dict[str, LiveEntity]":
        by_name = {}
        for entity in entities:
            if entity.name is None:
                continue
            if entity.name in by_name:
                # Prefer the entity this tool manages
                logger.warning(
                    f"Live {collection} has more than one entity named '{entity.name}'"
                )
                if not by_name[entity.name].managed and entity.managed:
                    by_name[entity.name] = entity
                continue
            by_name[entity.name] = entity
        return by_name

    @staticmethod
    def _diff_entity(
        collection: str,
        name: str,
        fields: dict[str, Any],
        current: Optional["LiveEntity"],
    ) -> Optional[Operation]:
        """
        Calculate the operation for a single entity.

        Returns None if the live entity already matches.
        """
        if current is None:
            created = dict(fields)
            if collection not in RETAINED_COLLECTIONS:
                created[MANAGEMENT_MARKER_FIELD] = MANAGEMENT_MARKER_VALUE
            return Operation(
                collection=collection,
                change_type=ChangeType.CREATE,
                name=name,
                fields=created,
            )

        changed = {
            key: value
            for key, value in fields.items()
            if key != MANAGEMENT_MARKER_FIELD
            and not values_match(value, current.fields.get(key))
        }
        if not changed:
            return None
        return Operation(
            collection=collection,
            change_type=ChangeType.UPDATE,
            name=name,
            fields=changed,
            device_id=current.id,
        )


def summarize_changeset(changeset: Changeset) -> str:
    """
    Create a human-readable summary of a changeset.

    Secret values are masked. Useful for dry-run output and logging.
    """
    if changeset.no_change:
        return "No changes needed - live state matches desired state"

    lines = [f"Changes to apply ({changeset.total_changes} total):", ""]
    symbols = {
        ChangeType.CREATE: "[+]",
        ChangeType.UPDATE: "[~]",
        ChangeType.DELETE: "[-]",
    }

    for op in changeset:
        lines.append(f"  {symbols[op.change_type]} {op}")
        if op.change_type == ChangeType.DELETE:
            continue
        for key, value in mask(op.fields).items():
            if key == MANAGEMENT_MARKER_FIELD:
                continue
            lines.append(f"      {key}: {value}")

    return "\n".join(lines)
