from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .datastructures import frozendict


KeyTuple = tuple[Any, ...]


def row_key(row: Mapping[str, Any], fields: Sequence[str]) -> KeyTuple | None:
    """Project *fields* from *row*; ``None`` if any component is null (nulls never join)."""
    key = tuple(row.get(name) for name in fields)
    if any(value is None for value in key):
        return None

    return key


def extract_keys(rows: Iterable[Mapping[str, Any]], fields: Sequence[str]) -> tuple[KeyTuple, ...]:
    """Distinct non-null key tuples of *rows* over *fields*, in first-seen order.

    Example:
        >>> extract_keys([{"id": 1}, {"id": 2}, {"id": 1}, {"id": None}], ("id",))
        ((1,), (2,))
    """
    seen: dict[KeyTuple, None] = {}
    for row in rows:
        if (key := row_key(row, fields)) is not None:
            seen.setdefault(key, None)

    return tuple(seen)


@dataclass(frozen=True, slots=True)
class PartitionedKeys:
    """Polymorphic ids grouped by discriminator value.

    ``by_type`` only holds registered types; ``unregistered`` collects the
    discriminator values found in the data without a target table.
    """

    by_type: frozendict[str, tuple[Any, ...]] = field(default_factory=frozendict)
    unregistered: frozenset[Any] = frozenset()


def partition_by_type(
    rows: Iterable[Mapping[str, Any]],
    type_column: str,
    id_column: str,
    targets: Mapping[str, Any],
) -> PartitionedKeys:
    """Group distinct non-null ids of *rows* by their ``type_column`` value.

    Rows with a null discriminator or id are ignored.
    """
    by_type: dict[str, dict[Any, None]] = {}
    unregistered: set[Any] = set()
    for row in rows:
        type_value, id_value = row.get(type_column), row.get(id_column)
        if type_value is None or id_value is None:
            continue
        if type_value not in targets:
            unregistered.add(type_value)
            continue
        by_type.setdefault(type_value, {}).setdefault(id_value, None)

    return PartitionedKeys(
        frozendict({type_value: tuple(ids) for type_value, ids in by_type.items()}),
        frozenset(unregistered),
    )
