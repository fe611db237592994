from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from functools import lru_cache
from typing import Any, TypeVar

import sqlalchemy as sa
from sqlalchemy.sql import visitors

from .exceptions import InvalidDescriptor


_S = TypeVar("_S", bound=sa.Select[Any])

TableLike = Any
"""A ``sa.Table`` or an ORM-mapped class (anything exposing ``__table__``)."""

FieldLike = Any
"""A column name, a ``sa.Column`` or an ORM instrumented attribute."""


def as_rows(result: sa.Result[Any]) -> list[dict[str, Any]]:
    """Shorthand for ``[dict(m) for m in result.mappings()]``.

    Rows handed to :func:`~sqla_relations.resolve` must be mutable mappings,
    since eager-loaded data is attached under each requested alias.

    Example (sync)::

        posts = as_rows(conn.execute(sa.select(posts_table)))

    Example (async)::

        posts = as_rows(await session.execute(sa.select(posts_table)))
    """
    return [dict(mapping) for mapping in result.mappings()]


@lru_cache
def _as_table(obj: TableLike) -> sa.Table:
    """Return the ``sa.Table`` behind *obj* (cached)."""
    if isinstance(obj, sa.Table):
        return obj

    table = getattr(obj, "__table__", None)
    if isinstance(table, sa.Table):
        return table

    raise InvalidDescriptor(f"Expected a Table or a mapped class, got {obj!r}")


@lru_cache
def _get_table_name(table: sa.Table) -> str:
    """Return the (schema-qualified) registry name of *table* (cached)."""
    if not table.name:
        raise ValueError(f"Cannot determine tablename for {table!r}")

    return f"{table.schema}.{table.name}" if table.schema else table.name


@lru_cache
def _get_primary_key(table: sa.Table) -> tuple[str, ...]:
    """Return the primary-key column keys of *table* (cached)."""
    return tuple(col.key for col in table.primary_key)


def as_table(obj: TableLike) -> sa.Table:
    """Normalise a table reference to a ``sa.Table``.

    Args:
        obj: ``sa.Table`` or ORM-mapped class.

    Raises:
        InvalidDescriptor: If *obj* is neither.
    """
    return _as_table(obj)


def get_table_name(obj: TableLike) -> str:
    """Get the name a table is registered under (``schema.name`` when schema-bound)."""
    return _get_table_name(as_table(obj))


def get_primary_key(obj: TableLike) -> tuple[str, ...]:
    """Get the primary-key column keys of a table, in declaration order."""
    return _get_primary_key(as_table(obj))


def column_key(table: sa.Table, field: FieldLike) -> str:
    """Resolve *field* to a column key on *table*.

    Accepts ``"author_id"``, ``posts.c.author_id`` or ``Post.author_id``.

    Raises:
        InvalidDescriptor: If the column does not exist on *table*, or the
            given column object belongs to another table.
    """
    if isinstance(field, str):
        key = field
    else:
        clause = field.__clause_element__() if hasattr(field, "__clause_element__") else field
        key = getattr(clause, "key", None)
        owner = getattr(clause, "table", None)
        if not isinstance(key, str):
            raise InvalidDescriptor(f"Cannot resolve {field!r} to a column")
        if isinstance(owner, sa.Table) and _get_table_name(owner) != _get_table_name(table):
            raise InvalidDescriptor(
                f"Column {key!r} belongs to {_get_table_name(owner)!r}, "
                f"not {_get_table_name(table)!r}"
            )

    if key not in table.c:
        raise InvalidDescriptor(
            f"Column {key!r} not found on {_get_table_name(table)!r}. "
            f"Available: {[c.key for c in table.c]}"
        )

    return key


def column_keys(table: sa.Table, fields: FieldLike | Iterable[FieldLike]) -> tuple[str, ...]:
    """Resolve one field or a sequence of fields to column keys on *table*."""
    if (
        isinstance(fields, (str, sa.ColumnElement))
        or hasattr(fields, "__clause_element__")
        or not isinstance(fields, Iterable)
    ):
        fields = (fields,)

    return tuple(column_key(table, field) for field in fields)


def add_conditions(
    *conditions: sa.ColumnExpressionArgument[bool],
) -> Callable[[_S], _S]:
    """Create a ``where`` callable for load options.

    Args:
        *conditions: SQLAlchemy column expressions that evaluate to boolean.

    Returns:
        A function that takes a select and returns it with added conditions.

    Example:
        >>> resolve(
        ...     users,
        ...     {"roles": {"where": add_conditions(roles.c.level > 3)}},
        ...     registry=registry,
        ...     source=users_table,
        ...     executor=conn,
        ... )
    """

    def _add(query: _S) -> _S:
        return query.where(*conditions)

    return _add


def references_table(clause: sa.ColumnElement[Any], table: sa.FromClause) -> bool:
    """Whether *clause* mentions a column of *table* (ORM attributes included)."""
    return any(
        isinstance(element, sa.ColumnClause) and table.corresponding_column(element) is not None
        for element in visitors.iterate(clause)
    )


def in_clause(
    table: sa.FromClause, keys: Sequence[str], values: Sequence[tuple[Any, ...]]
) -> sa.ColumnElement[bool]:
    """Build ``col IN (...)`` or ``(a, b) IN ((...), ...)`` for batched key tuples."""
    if len(keys) == 1:
        return table.c[keys[0]].in_([value[0] for value in values])

    return sa.tuple_(*(table.c[key] for key in keys)).in_(values)


def parse_order_by(
    table: sa.FromClause, order_by: Sequence[Any]
) -> list[sa.ColumnElement[Any]]:
    """Turn ``("-created_at", "id")`` style specs into ORDER BY clauses.

    SQLAlchemy expressions are passed through unchanged.
    """
    clauses: list[sa.ColumnElement[Any]] = []
    for spec in order_by:
        if isinstance(spec, str):
            descending = spec.startswith("-")
            name = spec.lstrip("-")
            if name not in table.c:
                raise InvalidDescriptor(f"Cannot order by unknown column {name!r}")
            column = table.c[name]
            clauses.append(column.desc() if descending else column.asc())
        else:
            clauses.append(spec)

    return clauses
