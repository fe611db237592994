"""Relation descriptors: immutable values describing one named association.

Four kinds exist and together form the closed :data:`Relation` union:

* :class:`Direct` -- one/many through local/target column pairs;
* :class:`ThroughJunction` -- many-to-many via an intermediate table;
* :class:`PolymorphicBelongsTo` -- single target picked by a type discriminator;
* :class:`PolymorphicHasMany` -- plural target filtered by a fixed discriminator.

Descriptors validate themselves on construction and raise
:class:`~sqla_relations.exceptions.InvalidDescriptor` when malformed.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import ClassVar, Union

import sqlalchemy as sa

from .datastructures import frozendict
from .exceptions import InvalidDescriptor
from .tools import get_primary_key, get_table_name


def _check_arity(name: str, left: Sequence[str], right: Sequence[str], what: str) -> None:
    if not left or not right:
        raise InvalidDescriptor(f"Relation {name!r}: {what} must not be empty")
    if len(left) != len(right):
        raise InvalidDescriptor(
            f"Relation {name!r}: {what} arity mismatch ({len(left)} != {len(right)})"
        )


def _check_columns(name: str, table: sa.Table, keys: Sequence[str]) -> None:
    missing = [key for key in keys if key not in table.c]
    if missing:
        raise InvalidDescriptor(
            f"Relation {name!r}: column(s) {missing} not found on {get_table_name(table)!r}"
        )


@dataclass(frozen=True, slots=True, kw_only=True)
class _RelationBase:
    source_table: sa.Table
    name: str
    display_name: str | None = field(default=None, compare=False)

    def _check_name(self) -> None:
        if not self.name or ":" in self.name or "." in self.name:
            raise InvalidDescriptor(
                f"Invalid relation name {self.name!r}: must be non-empty without ':' or '.'"
            )

    @property
    def display_key(self) -> str:
        """Key the relation attaches under when the caller gives no alias."""
        return self.display_name or self.name


@dataclass(frozen=True, slots=True, kw_only=True)
class Direct(_RelationBase):
    """One-to-one, many-to-one or one-to-many over equal-length column tuples."""

    target_table: sa.Table
    local_fields: tuple[str, ...]
    target_fields: tuple[str, ...]
    is_plural: bool = False

    def __post_init__(self) -> None:
        self._check_name()
        _check_arity(self.name, self.local_fields, self.target_fields, "local/target fields")
        _check_columns(self.name, self.source_table, self.local_fields)
        _check_columns(self.name, self.target_table, self.target_fields)

    @property
    def parent_fields(self) -> tuple[str, ...]:
        """Source columns a parent row is matched on."""
        return self.local_fields

    @property
    def target_tables(self) -> tuple[sa.Table, ...]:
        return (self.target_table,)


@dataclass(frozen=True, slots=True, kw_only=True)
class ThroughJunction(_RelationBase):
    """Many-to-many: ``source.local_fields -> junction -> target.target_key_fields``."""

    is_plural: ClassVar[bool] = True

    target_table: sa.Table
    local_fields: tuple[str, ...]
    junction_table: sa.Table
    junction_local_fields: tuple[str, ...]
    junction_target_fields: tuple[str, ...]
    target_key_fields: tuple[str, ...]

    def __post_init__(self) -> None:
        self._check_name()
        _check_arity(
            self.name, self.local_fields, self.junction_local_fields, "source/junction fields"
        )
        _check_arity(
            self.name,
            self.junction_target_fields,
            self.target_key_fields,
            "junction/target fields",
        )
        _check_columns(self.name, self.source_table, self.local_fields)
        _check_columns(
            self.name,
            self.junction_table,
            (*self.junction_local_fields, *self.junction_target_fields),
        )
        _check_columns(self.name, self.target_table, self.target_key_fields)

    @property
    def parent_fields(self) -> tuple[str, ...]:
        return self.local_fields

    @property
    def target_tables(self) -> tuple[sa.Table, ...]:
        return (self.target_table,)


@dataclass(frozen=True, slots=True, kw_only=True)
class PolymorphicBelongsTo(_RelationBase):
    """Belongs-to whose target table is chosen per row by ``type_column``.

    ``id_column`` refers to the (single-column) primary key of each target.
    """

    is_plural: ClassVar[bool] = False

    type_column: str
    id_column: str
    targets: frozendict[str, sa.Table]

    def __post_init__(self) -> None:
        self._check_name()
        if not self.targets:
            raise InvalidDescriptor(f"Relation {self.name!r}: targets must not be empty")
        _check_columns(self.name, self.source_table, (self.type_column, self.id_column))
        for type_value, table in self.targets.items():
            if not isinstance(type_value, str) or not type_value:
                raise InvalidDescriptor(
                    f"Relation {self.name!r}: invalid discriminator value {type_value!r}"
                )
            if len(get_primary_key(table)) != 1:
                raise InvalidDescriptor(
                    f"Relation {self.name!r}: target {get_table_name(table)!r} for "
                    f"{type_value!r} needs a single-column primary key"
                )

    @property
    def parent_fields(self) -> tuple[str, ...]:
        return (self.type_column, self.id_column)

    @property
    def target_tables(self) -> tuple[sa.Table, ...]:
        return tuple(self.targets.values())

    def target_key(self, type_value: str) -> str:
        """Primary-key column the ``id_column`` points at for *type_value*."""
        return get_primary_key(self.targets[type_value])[0]


@dataclass(frozen=True, slots=True, kw_only=True)
class PolymorphicHasMany(_RelationBase):
    """Has-many over a polymorphic child table, fixed to one ``type_value``.

    ``type_column`` and ``id_column`` live on the target table;
    ``source_key_fields`` on the source table is matched against ``id_column``.
    """

    is_plural: ClassVar[bool] = True

    target_table: sa.Table
    type_column: str
    id_column: str
    type_value: str
    source_key_fields: tuple[str, ...]

    def __post_init__(self) -> None:
        self._check_name()
        if not self.type_value:
            raise InvalidDescriptor(f"Relation {self.name!r}: type_value must not be empty")
        _check_arity(self.name, self.source_key_fields, (self.id_column,), "source key/id column")
        _check_columns(self.name, self.source_table, self.source_key_fields)
        _check_columns(self.name, self.target_table, (self.type_column, self.id_column))

    @property
    def parent_fields(self) -> tuple[str, ...]:
        return self.source_key_fields

    @property
    def target_tables(self) -> tuple[sa.Table, ...]:
        return (self.target_table,)


Relation = Union[Direct, ThroughJunction, PolymorphicBelongsTo, PolymorphicHasMany]
"""Closed union of every relation kind; the fetcher matches on it exhaustively."""

RELATION_TYPES: tuple[type, ...] = (Direct, ThroughJunction, PolymorphicBelongsTo, PolymorphicHasMany)
