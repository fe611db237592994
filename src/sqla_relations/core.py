from __future__ import annotations

import logging
import sys
import warnings
from collections.abc import Callable, Iterator, Mapping, MutableMapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Final, Literal


if sys.version_info >= (3, 11):
    from typing import Required, TypedDict, Unpack, assert_never
else:
    from typing_extensions import Required, TypedDict, Unpack, assert_never

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import operators
from sqlalchemy.sql.elements import UnaryExpression

from .descriptors import Direct, PolymorphicBelongsTo, PolymorphicHasMany, ThroughJunction
from .exceptions import QueryExecutionFailed, UnregisteredDiscriminatorValue
from .executor import ConnectionExecutor, QueryExecutor, as_executor
from .keys import KeyTuple, extract_keys, partition_by_type, row_key
from .plan import Condition, LoadOptions, LoadPlanNode, Where, WithSpec, parse_with_spec
from .tools import (
    TableLike,
    get_primary_key,
    get_table_name,
    in_clause,
    parse_order_by,
    references_table,
)


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

    from .registry import RelationRegistry


logger = logging.getLogger(__name__)

Row = MutableMapping[str, Any]
LimitStrategy = Literal["slice", "window"]

DEFAULT_IN_CHUNK_SIZE: Final[int] = 5000
DEFAULT_LIMIT_STRATEGY: Final[LimitStrategy] = "slice"
PIVOT_KEY: Final[str] = "_pivot"

_LIMIT_STRATEGIES: Final[frozenset[str]] = frozenset({"slice", "window"})
_ROW_NUMBER: Final[str] = "_sqla_relations_rn"
_ORDER_KEY: Final[str] = "_sqla_relations_ob"
_NULLS_OPS: Final = (operators.nulls_first_op, operators.nulls_last_op)
_DIRECTION_OPS: Final = (operators.asc_op, operators.desc_op)


@dataclass(slots=True)
class _Fetched:
    """Fetched rows grouped by the key a parent row is matched on."""

    index: dict[Any, list[Row]]
    parent_key: Callable[[Row], Any]
    statements: int = 0


_Staged = list[tuple[Row, str, Any]]


def _chunks(keys: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(keys), size):
        yield keys[start : start + size]


def _select_columns(
    table: sa.Table, columns: tuple[str, ...] | None, required: Sequence[str]
) -> list[sa.Column[Any]]:
    """Requested columns of *table*, always including the ones assembly needs."""
    if columns is None:
        return list(table.c)

    keys = dict.fromkeys(key for key in (*columns, *required) if key in table.c)
    return [table.c[key] for key in keys]


def _apply_where(query: sa.Select[Any], where: Condition | None) -> sa.Select[Any]:
    if where is None:
        return query
    if isinstance(where, sa.ColumnElement):
        return query.where(where)

    return where(query)


def _target_where(where: Where | None, type_value: str, table: sa.Table) -> Condition | None:
    """The part of a belongs-to ``where`` that applies to one target table."""
    if where is None:
        return None
    if isinstance(where, Mapping):
        return where.get(type_value)
    if isinstance(where, sa.ColumnElement) and not references_table(where, table):
        return None

    return where


def _order_clauses(table: sa.Table, options: LoadOptions) -> list[sa.ColumnElement[Any]]:
    """Caller ordering, else primary key ascending so results are stable."""
    if options.order_by:
        return parse_order_by(table, options.order_by)

    return [table.c[key].asc() for key in get_primary_key(table)]


def _order_terms(
    order: Sequence[sa.ColumnElement[Any]],
) -> list[tuple[sa.ColumnElement[Any], bool]]:
    """``(expression, descending)`` for each ORDER BY clause."""
    terms: list[tuple[sa.ColumnElement[Any], bool]] = []
    for clause in order:
        if isinstance(clause, UnaryExpression) and clause.modifier in _NULLS_OPS:
            clause = clause.element
        descending = False
        if isinstance(clause, UnaryExpression) and clause.modifier in _DIRECTION_OPS:
            descending = clause.modifier is operators.desc_op
            clause = clause.element
        terms.append((clause, descending))

    return terms


def _sort_rows(rows: list[Row], labels: Sequence[tuple[str, bool]]) -> None:
    """Stable in-place sort on labelled order columns; nulls sort as largest."""
    for label, descending in reversed(labels):
        rows.sort(key=lambda row: (row[label] is None, row[label]), reverse=descending)
    for row in rows:
        for label, _ in labels:
            del row[label]


def _windowed(
    table: sa.Table,
    columns: list[sa.Column[Any]],
    condition: sa.ColumnElement[bool],
    options: LoadOptions,
    partition_by: Sequence[str],
) -> sa.Select[Any]:
    """Keep the first ``limit`` rows of every partition with ``ROW_NUMBER()``.

    The outer query orders by the row number, which keeps the requested
    order within each partition without selecting the order columns.
    """
    row_number = (
        sa.func.row_number()
        .over(
            partition_by=[table.c[key] for key in partition_by],
            order_by=_order_clauses(table, options) or None,
        )
        .label(_ROW_NUMBER)
    )
    inner = _apply_where(sa.select(*columns, row_number).where(condition), options.where).subquery()

    return (
        sa.select(*(inner.c[col.key] for col in columns))
        .where(inner.c[_ROW_NUMBER] <= options.limit)
        .order_by(inner.c[_ROW_NUMBER])
    )


@lru_cache(maxsize=256)
def _cached_plan(
    registry: RelationRegistry, source: TableLike, spec: tuple[str, ...]
) -> tuple[LoadPlanNode, ...]:
    """Plans for dotted-path specs against a frozen registry (cached)."""
    return parse_with_spec(registry, source, spec)


class Resolver:
    """Eager-loads relations onto rows already fetched by the caller.

    Each plan level costs a fixed number of statements no matter how many
    parent rows there are: one per :class:`Direct` or
    :class:`PolymorphicHasMany` node, two per :class:`ThroughJunction`, and
    one per discriminator value present for :class:`PolymorphicBelongsTo`.
    Key sets larger than ``in_chunk_size`` are split into several ``IN``
    lists.

    Nothing is written to the rows until every statement has succeeded, so
    a failing call leaves them untouched.

    Args:
        registry: Relation registry, usually frozen.
        executor: Where statements run (see :func:`as_executor`).
        strict_discriminators: Raise :class:`UnregisteredDiscriminatorValue`
            instead of skipping polymorphic rows with an unknown type.
        limit_strategy: ``"slice"`` (fetch everything, cut per parent in
            Python) or ``"window"`` (``ROW_NUMBER()`` filter in SQL for
            direct and polymorphic has-many relations).
        in_chunk_size: Maximum keys per ``IN`` list.
        max_workers: Fetch sibling relations in a thread pool when > 1.
            Requires an executor with ``concurrent_safe = True``.

    Example:
        >>> resolver = Resolver(registry, EngineExecutor(engine))
        >>> resolver.resolve(posts, rows, {"writer:author": True, "tags": {"limit": 3}})
    """

    __slots__ = (
        "executor",
        "in_chunk_size",
        "limit_strategy",
        "max_workers",
        "registry",
        "strict_discriminators",
    )

    def __init__(
        self,
        registry: RelationRegistry,
        executor: QueryExecutor,
        *,
        strict_discriminators: bool = False,
        limit_strategy: LimitStrategy = DEFAULT_LIMIT_STRATEGY,
        in_chunk_size: int = DEFAULT_IN_CHUNK_SIZE,
        max_workers: int = 1,
    ) -> None:
        if limit_strategy not in _LIMIT_STRATEGIES:
            raise ValueError(
                f"Unknown limit_strategy {limit_strategy!r}, expected one of {sorted(_LIMIT_STRATEGIES)}"
            )
        if in_chunk_size < 1:
            raise ValueError(f"in_chunk_size must be positive, got {in_chunk_size}")
        if max_workers < 1:
            raise ValueError(f"max_workers must be positive, got {max_workers}")
        if max_workers > 1 and not getattr(executor, "concurrent_safe", False):
            raise ValueError(
                f"max_workers > 1 needs a thread-safe executor such as EngineExecutor, "
                f"got {type(executor).__name__}"
            )

        self.registry = registry
        self.executor = executor
        self.strict_discriminators = strict_discriminators
        self.limit_strategy = limit_strategy
        self.in_chunk_size = in_chunk_size
        self.max_workers = max_workers

    def plan(self, source: TableLike, with_spec: WithSpec) -> tuple[LoadPlanNode, ...]:
        """Parse *with_spec* against *source* without running anything."""
        if (
            self.registry.frozen
            and isinstance(with_spec, tuple)
            and all(isinstance(path, str) for path in with_spec)
        ):
            nodes = _cached_plan(self.registry, source, with_spec)
        else:
            nodes = parse_with_spec(self.registry, source, with_spec)

        if self.limit_strategy == "window" and any(
            node.options.limit is not None and isinstance(node.descriptor, ThroughJunction)
            for root in nodes
            for node in root.walk()
        ):
            warnings.warn(
                "limit_strategy='window' is not applied to junction relations; "
                "their limits are sliced after fetching",
                UserWarning,
                stacklevel=3,
            )

        logger.debug(
            "Planned %d relation(s) on %s: %s",
            sum(1 for root in nodes for _ in root.walk()),
            get_table_name(source),
            ", ".join(node.alias for node in nodes),
        )

        return nodes

    def resolve(self, source: TableLike, rows: Sequence[Row], with_spec: WithSpec) -> list[Row]:
        """Attach the relations in *with_spec* to *rows* and return them.

        Args:
            source: Table the rows were selected from.
            rows: Mutable mappings (see :func:`as_rows`).
            with_spec: Relations to load.

        Returns:
            The same row objects, with every requested alias set: a row or
            ``None`` for singular relations, a list for plural ones.

        Raises:
            UnknownRelation: Before any statement runs.
            QueryExecutionFailed: A statement failed; no row was modified.
            UnregisteredDiscriminatorValue: Only with ``strict_discriminators``.
        """
        rows = list(rows)
        for row in rows:
            if not isinstance(row, MutableMapping):
                raise TypeError(f"Rows must be mutable mappings, got {type(row).__name__}")

        nodes = self.plan(source, with_spec)
        if not rows or not nodes:
            return rows

        staged: _Staged = []
        if self.max_workers > 1:
            with ThreadPoolExecutor(self.max_workers, thread_name_prefix="sqla_relations") as pool:
                self._resolve_level(rows, nodes, staged, pool)
        else:
            self._resolve_level(rows, nodes, staged, None)

        for parent, alias, value in staged:
            parent[alias] = value

        return rows

    def _resolve_level(
        self,
        parents: list[Row],
        nodes: Sequence[LoadPlanNode],
        staged: _Staged,
        pool: ThreadPoolExecutor | None,
    ) -> None:
        if not parents or not nodes:
            return

        if pool is not None and len(nodes) > 1:
            fetched = list(pool.map(lambda node: self._fetch(node, parents), nodes))
        else:
            fetched = [self._fetch(node, parents) for node in nodes]

        for node, result in zip(nodes, fetched):
            attached = self._assemble(node, parents, result, staged)
            if isinstance(node.descriptor, PolymorphicBelongsTo):
                for type_value, children in node.children_by_type.items():
                    self._resolve_level(attached.get(type_value, []), children, staged, pool)
            else:
                self._resolve_level(attached.get(None, []), node.children, staged, pool)

    def _execute(self, statement: sa.Select[Any]) -> list[Row]:
        try:
            return self.executor.execute(statement)
        except QueryExecutionFailed:
            raise
        except SQLAlchemyError as exc:
            raise QueryExecutionFailed(statement, exc) from exc

    def _fetch(self, node: LoadPlanNode, parents: list[Row]) -> _Fetched:
        descriptor = node.descriptor
        match descriptor:
            case Direct():
                fetched = self._fetch_direct(descriptor, node, parents)
            case ThroughJunction():
                fetched = self._fetch_through(descriptor, node, parents)
            case PolymorphicBelongsTo():
                fetched = self._fetch_belongs_to(descriptor, node, parents)
            case PolymorphicHasMany():
                fetched = self._fetch_has_many(descriptor, node, parents)
            case _:
                assert_never(descriptor)

        logger.debug(
            "Fetched %s.%s (%s): %d statement(s), %d matched key(s)",
            get_table_name(descriptor.source_table),
            descriptor.name,
            type(descriptor).__name__,
            fetched.statements,
            len(fetched.index),
        )

        return fetched

    def _fetch_keyed(
        self,
        table: sa.Table,
        options: LoadOptions,
        match_fields: Sequence[str],
        keys: Sequence[KeyTuple],
        *,
        required: Sequence[str] = (),
        extra: sa.ColumnElement[bool] | None = None,
        windowed: bool = False,
        global_order: bool = False,
    ) -> tuple[list[Row], int]:
        """Select rows of *table* whose *match_fields* are in *keys*, chunked.

        Every chunk is ordered on its own. With *global_order*, rows from
        several chunks are merged back into one ``order_by`` sequence, for
        callers whose parents draw on more than one chunk.
        """
        columns = _select_columns(table, options.columns, (*match_fields, *required))
        order = _order_clauses(table, options)
        chunks = list(_chunks(keys, self.in_chunk_size))

        labels: list[tuple[str, bool]] = []
        order_columns: list[sa.Label[Any]] = []
        if global_order and len(chunks) > 1:
            for position, (term, descending) in enumerate(_order_terms(order)):
                labels.append((f"{_ORDER_KEY}{position}", descending))
                order_columns.append(term.label(labels[-1][0]))

        rows: list[Row] = []
        for chunk in chunks:
            condition = in_clause(table, match_fields, chunk)
            if extra is not None:
                condition = sa.and_(extra, condition)

            if windowed and options.limit is not None:
                statement = _windowed(table, columns, condition, options, match_fields)
            else:
                statement = _apply_where(
                    sa.select(*columns, *order_columns).where(condition), options.where
                )
                if order:
                    statement = statement.order_by(*order)

            rows.extend(self._execute(statement))

        if labels:
            _sort_rows(rows, labels)

        return rows, len(chunks)

    def _fetch_direct(self, descriptor: Direct, node: LoadPlanNode, parents: list[Row]) -> _Fetched:
        fetched = _Fetched({}, lambda parent: row_key(parent, descriptor.local_fields))
        if not (keys := extract_keys(parents, descriptor.local_fields)):
            return fetched

        rows, fetched.statements = self._fetch_keyed(
            descriptor.target_table,
            node.options,
            descriptor.target_fields,
            keys,
            required=node.child_fields(),
            windowed=self.limit_strategy == "window" and descriptor.is_plural,
        )
        for row in rows:
            fetched.index.setdefault(row_key(row, descriptor.target_fields), []).append(row)

        return fetched

    def _fetch_through(
        self, descriptor: ThroughJunction, node: LoadPlanNode, parents: list[Row]
    ) -> _Fetched:
        options = node.options
        fetched = _Fetched({}, lambda parent: row_key(parent, descriptor.local_fields))
        if not (keys := extract_keys(parents, descriptor.local_fields)):
            return fetched

        junction = descriptor.junction_table
        junction_columns = (
            list(junction.c)
            if options.pivot
            else _select_columns(
                junction,
                (),
                (*descriptor.junction_local_fields, *descriptor.junction_target_fields),
            )
        )
        links: list[Row] = []
        for chunk in _chunks(keys, self.in_chunk_size):
            statement = sa.select(*junction_columns).where(
                in_clause(junction, descriptor.junction_local_fields, chunk)
            )
            links.extend(self._execute(statement))
            fetched.statements += 1

        if not (target_keys := extract_keys(links, descriptor.junction_target_fields)):
            return fetched

        targets, statements = self._fetch_keyed(
            descriptor.target_table,
            options,
            descriptor.target_key_fields,
            target_keys,
            required=node.child_fields(),
            global_order=True,
        )
        fetched.statements += statements

        by_target: dict[KeyTuple | None, list[tuple[int, Row]]] = {}
        for position, row in enumerate(targets):
            by_target.setdefault(row_key(row, descriptor.target_key_fields), []).append(
                (position, row)
            )

        grouped: dict[KeyTuple | None, list[tuple[int, Row]]] = {}
        for link in links:
            source_key = row_key(link, descriptor.junction_local_fields)
            for position, row in by_target.get(row_key(link, descriptor.junction_target_fields), ()):
                if options.pivot:
                    row = {**row, PIVOT_KEY: dict(link)}
                grouped.setdefault(source_key, []).append((position, row))

        # Fetch order carries order_by; junction order does not.
        for source_key, matches in grouped.items():
            matches.sort(key=lambda match: match[0])
            fetched.index[source_key] = [row for _, row in matches]

        return fetched

    def _fetch_belongs_to(
        self, descriptor: PolymorphicBelongsTo, node: LoadPlanNode, parents: list[Row]
    ) -> _Fetched:
        def parent_key(parent: Row) -> tuple[Any, Any] | None:
            key = (parent.get(descriptor.type_column), parent.get(descriptor.id_column))
            return None if None in key else key

        options = node.options
        fetched = _Fetched({}, parent_key)
        partitions = partition_by_type(
            parents, descriptor.type_column, descriptor.id_column, descriptor.targets
        )
        if partitions.unregistered:
            if self.strict_discriminators:
                raise UnregisteredDiscriminatorValue(descriptor.name, partitions.unregistered)

            logger.debug(
                "Skipping %s.%s rows with unregistered type(s) %s",
                get_table_name(descriptor.source_table),
                descriptor.name,
                sorted(map(str, partitions.unregistered)),
            )

        for type_value, ids in partitions.by_type.items():
            table = descriptor.targets[type_value]
            primary_key = descriptor.target_key(type_value)
            columns = _select_columns(
                table, options.columns, (primary_key, *node.child_fields(type_value))
            )
            where = _target_where(options.where, type_value, table)
            for chunk in _chunks(ids, self.in_chunk_size):
                statement = _apply_where(
                    sa.select(*columns).where(table.c[primary_key].in_(chunk)), where
                )
                for row in self._execute(statement):
                    fetched.index.setdefault((type_value, row[primary_key]), []).append(row)
                fetched.statements += 1

        return fetched

    def _fetch_has_many(
        self, descriptor: PolymorphicHasMany, node: LoadPlanNode, parents: list[Row]
    ) -> _Fetched:
        fetched = _Fetched({}, lambda parent: row_key(parent, descriptor.source_key_fields))
        if not (keys := extract_keys(parents, descriptor.source_key_fields)):
            return fetched

        table = descriptor.target_table
        rows, fetched.statements = self._fetch_keyed(
            table,
            node.options,
            (descriptor.id_column,),
            keys,
            required=node.child_fields(),
            extra=table.c[descriptor.type_column] == descriptor.type_value,
            windowed=self.limit_strategy == "window",
        )
        for row in rows:
            fetched.index.setdefault(row_key(row, (descriptor.id_column,)), []).append(row)

        return fetched

    def _assemble(
        self,
        node: LoadPlanNode,
        parents: list[Row],
        fetched: _Fetched,
        staged: _Staged,
    ) -> dict[str | None, list[Row]]:
        """Stage each parent's attachment; return attached rows for the next level.

        Attached rows are de-duplicated by identity and grouped by
        discriminator value for polymorphic belongs-to (``None`` otherwise).
        """
        limit = node.options.limit
        polymorphic = isinstance(node.descriptor, PolymorphicBelongsTo)
        attached: dict[str | None, dict[int, Row]] = {}

        for parent in parents:
            key = fetched.parent_key(parent)
            matches = fetched.index.get(key, []) if key is not None else []
            group = attached.setdefault(key[0] if polymorphic and key else None, {})

            if node.is_plural:
                value: Any = matches[:limit] if limit is not None else list(matches)
                for row in value:
                    group[id(row)] = row
            else:
                value = matches[0] if matches else None
                if value is not None:
                    group[id(value)] = value

            staged.append((parent, node.alias, value))

        return {group: list(rows.values()) for group, rows in attached.items()}


class _ResolveOptionsType(TypedDict, total=False):
    strict_discriminators: bool
    limit_strategy: LimitStrategy
    in_chunk_size: int
    max_workers: int


class _ResolveParamsType(_ResolveOptionsType, total=False):
    registry: Required[RelationRegistry]
    source: Required[TableLike]
    executor: Required[Any]


class _AsyncResolveParamsType(_ResolveOptionsType, total=False):
    registry: Required[RelationRegistry]
    source: Required[TableLike]


def resolve(
    rows: Sequence[Row],
    with_spec: WithSpec,
    **params: Unpack[_ResolveParamsType],
) -> list[Row]:
    """Eager-load *with_spec* onto *rows* in a bounded number of queries.

    Args:
        rows: Parent rows as mutable mappings, e.g. from :func:`as_rows`.
        with_spec: Mapping of ``"[alias:]relation"`` to ``True``, an options
            dict or :class:`LoadOptions`; or dotted paths like
            ``("author", "comments.reactions")``.
        registry: RelationRegistry
            Where relation names are looked up.
        source: Table or mapped class
            The table *rows* come from.
        executor: Engine, Connection, Session or QueryExecutor
            Where statements run.
        strict_discriminators: bool
            Raise on unregistered polymorphic types. Defaults to False (skip).
        limit_strategy: "slice" | "window"
            How per-parent limits are applied. Defaults to "slice".
        in_chunk_size: int
            Maximum keys per IN list. Defaults to 5000.
        max_workers: int
            Sibling relations fetched concurrently. Defaults to 1.

    Returns:
        The same rows with related data attached under each alias.

    Examples:
        Direct and aliased relations::

            posts = as_rows(conn.execute(sa.select(posts_table)))
            resolve(
                posts,
                {"writer:author": True, "comments": {"order_by": ("-id",), "limit": 5}},
                registry=registry,
                source=posts_table,
                executor=conn,
            )

        Nested loads with the dotted shorthand::

            resolve(users, ("posts.comments", "roles"), registry=registry, source=users_table, executor=engine)
    """
    registry = params.pop("registry")
    source = params.pop("source")
    executor = as_executor(params.pop("executor"))

    return Resolver(registry, executor, **params).resolve(source, rows, with_spec)


async def async_resolve(
    bind: AsyncConnection | AsyncSession,
    rows: Sequence[Row],
    with_spec: WithSpec,
    **params: Unpack[_AsyncResolveParamsType],
) -> list[Row]:
    """Async variant of :func:`resolve`, running it through ``run_sync``.

    Example::

        async with engine.connect() as conn:
            users = as_rows(await conn.execute(sa.select(users_table)))
            await async_resolve(conn, users, {"posts": True}, registry=registry, source=users_table)
    """

    def _resolve(sync_bind: Any) -> list[Row]:
        return resolve(rows, with_spec, executor=ConnectionExecutor(sync_bind), **params)

    return await bind.run_sync(_resolve)


def sqla_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    from .plan import _split_key
    from .tools import _as_table, _get_primary_key, _get_table_name

    return {
        fn.__name__: fn.cache_info()
        for fn in (_cached_plan, _split_key, _as_table, _get_primary_key, _get_table_name)
    }


def sqla_cache_clear() -> None:
    """Clear all internal LRU caches."""
    from .plan import _split_key
    from .tools import _as_table, _get_primary_key, _get_table_name

    for fn in (_cached_plan, _split_key, _as_table, _get_primary_key, _get_table_name):
        fn.cache_clear()
