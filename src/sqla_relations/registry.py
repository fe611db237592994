from __future__ import annotations

import logging
import warnings
from collections.abc import Callable, Iterator, Mapping
from dataclasses import replace
from typing import Any, final

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.sql import visitors

from .builder import PendingRelation, RelationBuilder
from .datastructures import frozendict
from .descriptors import RELATION_TYPES, Direct, Relation, ThroughJunction
from .exceptions import InvalidDescriptor, UnknownRelation
from .tools import TableLike, as_table, get_table_name


logger = logging.getLogger(__name__)

DefineCallback = Callable[[RelationBuilder], Mapping[str, Any]]


@final
class RelationRegistry:
    """Holds ``(source table, relation name) -> descriptor`` for an application.

    Populate it once at startup, through :meth:`define` (or
    :meth:`from_declarative` for ORM models), then :meth:`freeze` it and pass
    it to :func:`~sqla_relations.resolve`. There is no global instance.
    """

    __slots__ = ("_frozen", "_relations")

    def __init__(self) -> None:
        self._relations: dict[str, dict[str, Relation]] = {}
        self._frozen = False

    def register(self, source: TableLike, name: str, descriptor: Relation) -> None:
        """Store *descriptor* as relation *name* of *source*, replacing any previous one.

        Raises:
            InvalidDescriptor: If *descriptor* is not a relation descriptor, or
                was built for another name or source table.
            RuntimeError: If the registry has been frozen.
        """
        if self._frozen:
            raise RuntimeError("RelationRegistry is frozen; register relations at startup")

        if not isinstance(descriptor, RELATION_TYPES):
            raise InvalidDescriptor(f"Relation {name!r}: expected a descriptor, got {descriptor!r}")

        table_name = get_table_name(source)
        if descriptor.name != name:
            raise InvalidDescriptor(
                f"Descriptor named {descriptor.name!r} registered as {name!r}"
            )
        if get_table_name(descriptor.source_table) != table_name:
            raise InvalidDescriptor(
                f"Relation {name!r} is declared on {get_table_name(descriptor.source_table)!r}, "
                f"not {table_name!r}"
            )

        table_relations = self._relations.setdefault(table_name, {})
        if name in table_relations:
            logger.debug("Replacing relation %s.%s", table_name, name)
        table_relations[name] = descriptor

    def define(self, source: TableLike, callback: DefineCallback) -> Mapping[str, Relation]:
        """Declare the relations of *source* through a :class:`RelationBuilder`.

        Args:
            source: Source table or mapped class.
            callback: Receives the builder, returns ``{name: r.one(...) | r.many(...) | ...}``.

        Returns:
            The registered descriptors by name.

        Example:
            >>> registry.define(posts, lambda r: {
            ...     "author": r.one(users),
            ...     "comments": r.many(comments),
            ...     "tags": r.many(tags, through=post_tags),
            ... })
        """
        definitions = callback(RelationBuilder(source))
        if not isinstance(definitions, Mapping):
            raise InvalidDescriptor(
                f"define() callback must return a mapping, got {type(definitions).__name__}"
            )

        defined: dict[str, Relation] = {}
        for name, definition in definitions.items():
            if isinstance(definition, PendingRelation):
                descriptor = definition.build(name)
            elif isinstance(definition, RELATION_TYPES):
                descriptor = definition if definition.name == name else replace(definition, name=name)
            else:
                raise InvalidDescriptor(
                    f"Invalid relation definition for {name!r}: expected a builder result "
                    f"or a descriptor, got {definition!r}"
                )
            self.register(source, name, descriptor)
            defined[name] = descriptor

        logger.debug("Defined %d relation(s) on %s", len(defined), get_table_name(source))

        return frozendict(defined)

    def get(self, source: TableLike, name: str) -> Relation | None:
        """Get a relation, returning ``None`` if not registered."""
        return self._relations.get(get_table_name(source), {}).get(name)

    def lookup(self, source: TableLike, name: str) -> Relation:
        """Look up a relation, raising :class:`UnknownRelation` if not registered."""
        if (descriptor := self.get(source, name)) is None:
            raise UnknownRelation(get_table_name(source), name)

        return descriptor

    def relations(self, source: TableLike) -> Mapping[str, Relation]:
        """All relations declared on *source* (read-only)."""
        return frozendict(self._relations.get(get_table_name(source), {}))

    def tables(self) -> tuple[str, ...]:
        """Names of every table with at least one relation."""
        return tuple(self._relations)

    def freeze(self) -> RelationRegistry:
        """Make the registry read-only. Returns ``self`` for chaining."""
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, item: object) -> bool:
        if not isinstance(item, tuple) or len(item) != 2:  # noqa: PLR2004
            return False

        source, name = item
        return self.get(source, name) is not None

    def __iter__(self) -> Iterator[Relation]:
        for table_relations in self._relations.values():
            yield from table_relations.values()

    def __len__(self) -> int:
        return sum(len(table_relations) for table_relations in self._relations.values())

    def __repr__(self) -> str:
        state = "frozen" if self._frozen else "open"
        return f"<{type(self).__name__} {len(self)} relation(s) on {len(self._relations)} table(s), {state}>"

    @classmethod
    def from_declarative(cls, base: type[orm.DeclarativeBase]) -> RelationRegistry:
        """Build a registry from every relationship mapped under a declarative base.

        Plain foreign-key relationships become :class:`Direct` descriptors and
        ``secondary`` ones become :class:`ThroughJunction`. Relationships whose
        join carries literal criteria (polymorphic ``and_(..., type == 'post')``
        joins) cannot be expressed that way and are skipped with a warning;
        declare them with :meth:`RelationBuilder.many_polymorphic` instead.

        Raises:
            AssertionError: If *base* is not a subclass of ``orm.DeclarativeBase``.
        """
        assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
            "base must be a subclass of orm.DeclarativeBase"
        )

        orm.configure_mappers()

        registry = cls()
        for mapper in base.registry.mappers:
            source = mapper.local_table
            for relationship in mapper.relationships.values():
                descriptor = _descriptor_from_relationship(source, relationship)
                if descriptor is not None:
                    registry.register(source, relationship.key, descriptor)

        return registry


def _has_literal_criteria(*clauses: sa.ColumnElement[Any] | None) -> bool:
    return any(
        isinstance(element, sa.BindParameter)
        for clause in clauses
        if clause is not None
        for element in visitors.iterate(clause)
    )


def _descriptor_from_relationship(
    source: sa.FromClause,
    relationship: orm.RelationshipProperty[Any],
) -> Relation | None:
    """Translate one ORM relationship, or return ``None`` (with a warning) if it can't be."""
    where = f"{relationship.parent.class_.__name__}.{relationship.key}"
    if _has_literal_criteria(relationship.primaryjoin, relationship.secondaryjoin):
        warnings.warn(
            f"Skipping {where}: join has literal criteria; declare it explicitly",
            RuntimeWarning,
            stacklevel=3,
        )
        return None

    try:
        source_table = as_table(source)
        target_table = as_table(relationship.mapper.local_table)
        if relationship.secondary is not None:
            if not relationship.synchronize_pairs or not relationship.secondary_synchronize_pairs:
                raise InvalidDescriptor("junction column pairs could not be determined")

            return ThroughJunction(
                source_table=source_table,
                name=relationship.key,
                target_table=target_table,
                local_fields=tuple(local.key for local, _ in relationship.synchronize_pairs),
                junction_table=as_table(relationship.secondary),
                junction_local_fields=tuple(
                    junction.key for _, junction in relationship.synchronize_pairs
                ),
                junction_target_fields=tuple(
                    junction.key for _, junction in relationship.secondary_synchronize_pairs
                ),
                target_key_fields=tuple(
                    target.key for target, _ in relationship.secondary_synchronize_pairs
                ),
            )

        return Direct(
            source_table=source_table,
            name=relationship.key,
            target_table=target_table,
            local_fields=tuple(local.key for local, _ in relationship.local_remote_pairs),
            target_fields=tuple(remote.key for _, remote in relationship.local_remote_pairs),
            is_plural=bool(relationship.uselist),
        )
    except InvalidDescriptor as exc:
        warnings.warn(f"Skipping {where}: {exc}", RuntimeWarning, stacklevel=3)
        return None
