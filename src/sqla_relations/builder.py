from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Union, final

import sqlalchemy as sa

from .datastructures import frozendict
from .descriptors import Direct, PolymorphicBelongsTo, PolymorphicHasMany, Relation, ThroughJunction
from .exceptions import InvalidDescriptor
from .tools import FieldLike, TableLike, as_table, column_key, column_keys, get_primary_key, get_table_name


_FieldsArg = Union[FieldLike, Sequence[FieldLike], None]


@dataclass(frozen=True, slots=True)
class PendingRelation:
    """A relation declared through :class:`RelationBuilder`, still waiting for its name.

    :meth:`RelationRegistry.define` names it after the key it is returned under.
    """

    kind: type[Relation]
    params: frozendict[str, Any]

    def build(self, name: str) -> Relation:
        return self.kind(name=name, **self.params)


def _foreign_key_pairs(
    from_table: sa.Table, to_table: sa.Table
) -> list[tuple[tuple[str, ...], tuple[str, ...]]]:
    """Return ``(from_cols, to_cols)`` for every FK constraint on *from_table* targeting *to_table*.

    Targets are matched by name, so constraints pointing at tables outside
    the metadata never need resolving.
    """
    target_name = get_table_name(to_table)
    by_name = {col.name: col.key for col in to_table.c}
    pairs = []
    for constraint in from_table.foreign_key_constraints:
        elements = constraint.elements
        referred = {element.target_fullname.rpartition(".")[0] for element in elements}
        if referred != {target_name}:
            continue

        to_cols = tuple(
            by_name.get(element.target_fullname.rpartition(".")[2], "") for element in elements
        )
        if all(to_cols):
            pairs.append((tuple(element.parent.key for element in elements), to_cols))

    return pairs


def _single_pair(
    from_table: sa.Table, to_table: sa.Table, *, what: str
) -> tuple[tuple[str, ...], tuple[str, ...]] | None:
    pairs = _foreign_key_pairs(from_table, to_table)
    if len(pairs) > 1:
        raise InvalidDescriptor(
            f"Ambiguous {what}: {get_table_name(from_table)!r} has {len(pairs)} foreign keys "
            f"to {get_table_name(to_table)!r}; pass the fields explicitly"
        )

    return pairs[0] if pairs else None


def _keys(table: sa.Table, fields: _FieldsArg) -> tuple[str, ...] | None:
    return None if fields is None else column_keys(table, fields)


@final
class RelationBuilder:
    """Helpers handed to the :meth:`RelationRegistry.define` callback.

    Each helper returns a :class:`PendingRelation`; the registry names and
    validates it. Omitted join fields are inferred from ``ForeignKey``
    metadata when exactly one candidate constraint exists.

    Example::

        registry.define(users, lambda r: {
            "posts": r.many(posts),
            "profile": r.one(profiles),
            "roles": r.many(roles, through=user_roles),
        })
    """

    __slots__ = ("source_table",)

    def __init__(self, source_table: TableLike) -> None:
        self.source_table = as_table(source_table)

    def one(
        self,
        target: TableLike,
        *,
        fields: _FieldsArg = None,
        references: _FieldsArg = None,
        display_name: str | None = None,
    ) -> PendingRelation:
        """Declare a singular relation (many-to-one or one-to-one).

        Args:
            target: Target table.
            fields: Columns on the source table.
            references: Matching columns on the target table.
            display_name: Default attachment key.

        Without fields, a foreign key from source to target is tried first
        (many-to-one), then one from target to source (one-to-one).
        """
        target_table = as_table(target)
        local = _keys(self.source_table, fields)
        remote = _keys(target_table, references)

        if local is None and remote is None:
            if pair := _single_pair(self.source_table, target_table, what="one()"):
                local, remote = pair
            elif pair := _single_pair(target_table, self.source_table, what="one()"):
                remote, local = pair
            else:
                raise InvalidDescriptor(
                    f"Cannot infer one() from {get_table_name(self.source_table)!r} to "
                    f"{get_table_name(target_table)!r}: no foreign key; pass fields/references"
                )
        elif local is None or remote is None:
            raise InvalidDescriptor("one() needs both fields and references, or neither")

        return PendingRelation(
            Direct,
            frozendict(
                source_table=self.source_table,
                target_table=target_table,
                local_fields=local,
                target_fields=remote,
                is_plural=False,
                display_name=display_name,
            ),
        )

    def many(
        self,
        target: TableLike,
        *,
        fields: _FieldsArg = None,
        references: _FieldsArg = None,
        through: TableLike | None = None,
        through_fields: _FieldsArg = None,
        target_fields: _FieldsArg = None,
        target_references: _FieldsArg = None,
        display_name: str | None = None,
    ) -> PendingRelation:
        """Declare a plural relation (one-to-many, or many-to-many with *through*).

        Args:
            target: Target table.
            fields: Columns on the source table (default: inferred, else primary key).
            references: Columns on the target table (one-to-many only).
            through: Junction table for many-to-many.
            through_fields: Junction columns referencing the source.
            target_fields: Junction columns referencing the target.
            target_references: Target columns the junction points at
                (default: inferred, else primary key).
            display_name: Default attachment key.
        """
        target_table = as_table(target)
        if through is not None:
            return self._many_through(
                target_table,
                as_table(through),
                fields=fields,
                through_fields=through_fields,
                target_fields=target_fields,
                target_references=target_references,
                display_name=display_name,
            )

        local = _keys(self.source_table, fields)
        remote = _keys(target_table, references)
        if local is None and remote is None:
            pair = _single_pair(target_table, self.source_table, what="many()")
            if pair is None:
                raise InvalidDescriptor(
                    f"Cannot infer many() from {get_table_name(self.source_table)!r} to "
                    f"{get_table_name(target_table)!r}: no foreign key; pass fields/references"
                )
            remote, local = pair
        elif local is None:
            local = get_primary_key(self.source_table)
        elif remote is None:
            raise InvalidDescriptor("many() needs references when fields are given")

        return PendingRelation(
            Direct,
            frozendict(
                source_table=self.source_table,
                target_table=target_table,
                local_fields=local,
                target_fields=remote,
                is_plural=True,
                display_name=display_name,
            ),
        )

    def _many_through(
        self,
        target_table: sa.Table,
        junction: sa.Table,
        *,
        fields: _FieldsArg,
        through_fields: _FieldsArg,
        target_fields: _FieldsArg,
        target_references: _FieldsArg,
        display_name: str | None,
    ) -> PendingRelation:
        local, junction_local = self._junction_side(
            junction, self.source_table, fields, through_fields, what="source"
        )
        target_key, junction_target = self._junction_side(
            junction, target_table, target_references, target_fields, what="target"
        )

        return PendingRelation(
            ThroughJunction,
            frozendict(
                source_table=self.source_table,
                target_table=target_table,
                local_fields=local,
                junction_table=junction,
                junction_local_fields=junction_local,
                junction_target_fields=junction_target,
                target_key_fields=target_key,
                display_name=display_name,
            ),
        )

    @staticmethod
    def _junction_side(
        junction: sa.Table,
        table: sa.Table,
        table_fields: _FieldsArg,
        junction_fields: _FieldsArg,
        *,
        what: str,
    ) -> tuple[tuple[str, ...], tuple[str, ...]]:
        """Resolve ``(table columns, junction columns)`` for one side of a junction."""
        table_keys = _keys(table, table_fields)
        junction_keys = _keys(junction, junction_fields)

        if junction_keys is None:
            pair = _single_pair(junction, table, what=f"junction {what} side")
            if pair is None:
                raise InvalidDescriptor(
                    f"Cannot infer the {what} side of junction {get_table_name(junction)!r}: "
                    f"no foreign key to {get_table_name(table)!r}"
                )
            junction_keys = pair[0]
            table_keys = table_keys or pair[1]
        elif table_keys is None:
            table_keys = get_primary_key(table)

        return table_keys, junction_keys

    def one_polymorphic(
        self,
        *,
        type_column: FieldLike,
        id_column: FieldLike,
        targets: Mapping[str, TableLike],
        display_name: str | None = None,
    ) -> PendingRelation:
        """Declare a polymorphic belongs-to.

        Args:
            type_column: Source column holding the discriminator.
            id_column: Source column holding the target's primary key.
            targets: Discriminator value to target table.
            display_name: Default attachment key.
        """
        return PendingRelation(
            PolymorphicBelongsTo,
            frozendict(
                source_table=self.source_table,
                type_column=column_key(self.source_table, type_column),
                id_column=column_key(self.source_table, id_column),
                targets=frozendict({key: as_table(table) for key, table in targets.items()}),
                display_name=display_name,
            ),
        )

    def many_polymorphic(
        self,
        target: TableLike,
        *,
        type_column: FieldLike,
        id_column: FieldLike,
        type_value: str,
        references: _FieldsArg = None,
        display_name: str | None = None,
    ) -> PendingRelation:
        """Declare a polymorphic has-many.

        Args:
            target: The polymorphic child table.
            type_column: Target column holding the discriminator.
            id_column: Target column holding the parent id.
            type_value: Discriminator value identifying the source table.
            references: Source columns matched against *id_column*
                (default: source primary key).
            display_name: Default attachment key.
        """
        target_table = as_table(target)

        return PendingRelation(
            PolymorphicHasMany,
            frozendict(
                source_table=self.source_table,
                target_table=target_table,
                type_column=column_key(target_table, type_column),
                id_column=column_key(target_table, id_column),
                type_value=type_value,
                source_key_fields=(
                    _keys(self.source_table, references) or get_primary_key(self.source_table)
                ),
                display_name=display_name,
            ),
        )
