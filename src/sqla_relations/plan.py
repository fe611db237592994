"""With-spec parsing: caller eager-load requests to a validated load plan.

A *with spec* is either a mapping::

    {
        "author": True,
        "writer:author": {"with": {"comments": True}},
        "comments": {"where": comments.c.approved, "order_by": ("-id",), "limit": 5},
    }

or the dotted-path shorthand ``("author", "comments.reactions")``. Keys use
``alias:relation_name`` to attach a relation under another name.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Final, Union

import sqlalchemy as sa

from .datastructures import frozendict
from .descriptors import PolymorphicBelongsTo, Relation, ThroughJunction
from .exceptions import InvalidDescriptor, UnknownRelation
from .tools import TableLike, get_table_name, references_table


if TYPE_CHECKING:
    from .registry import RelationRegistry

Condition = Union[sa.ColumnElement[bool], Callable[[sa.Select[Any]], sa.Select[Any]]]
Where = Union[Condition, Mapping[str, Condition]]
WithSpec = Union[Mapping[str, Any], Iterable[str], str, None]

_OPTION_KEYS: Final[frozenset[str]] = frozenset(
    {"where", "order_by", "limit", "columns", "pivot", "with", "nested"}
)


@dataclass(frozen=True, slots=True, eq=False)
class LoadOptions:
    """Per-relation load options.

    ``alias`` and ``relation_name`` are filled from the with-spec key when
    left empty, so ``{"posts": LoadOptions(limit=3)}`` works as expected.
    """

    relation_name: str = ""
    alias: str = ""
    where: Where | None = None
    order_by: tuple[Any, ...] = ()
    limit: int | None = None
    columns: tuple[str, ...] | None = None
    pivot: bool = False
    nested: WithSpec = None


@dataclass(frozen=True, slots=True, eq=False)
class LoadPlanNode:
    """A resolved relation fetch: descriptor, options and nested nodes.

    Polymorphic belongs-to nodes keep their nested nodes per discriminator
    value in ``children_by_type``, since each target table has its own relations.
    """

    descriptor: Relation
    options: LoadOptions
    children: tuple[LoadPlanNode, ...] = ()
    children_by_type: frozendict[str, tuple[LoadPlanNode, ...]] = field(
        default_factory=frozendict
    )

    @property
    def alias(self) -> str:
        return self.options.alias

    @property
    def is_plural(self) -> bool:
        return self.descriptor.is_plural

    def child_fields(self, type_value: str | None = None) -> tuple[str, ...]:
        """Target columns the nested nodes match their own parents on.

        Fetches must select these even when ``columns`` narrows the target rows.
        """
        children = self.children if type_value is None else self.children_by_type.get(type_value, ())
        return tuple(dict.fromkeys(key for child in children for key in child.descriptor.parent_fields))

    def walk(self) -> Iterator[LoadPlanNode]:
        """Yield this node and every nested node, depth-first."""
        yield self
        for child in self.children:
            yield from child.walk()
        for children in self.children_by_type.values():
            for child in children:
                yield from child.walk()


@lru_cache(maxsize=1024)
def _split_key(key: str) -> tuple[str, str]:
    """``"writer:author"`` -> ``("writer", "author")``; ``"posts"`` -> ``("", "posts")``."""
    alias, sep, name = key.partition(":")
    if not sep:
        return "", key
    if not alias or not name:
        raise InvalidDescriptor(f"Invalid with-spec key {key!r}: expected 'alias:relation'")

    return alias, name


def _expand_dotted(paths: Iterable[str]) -> dict[str, Any]:
    """Turn ``("posts.comments", "posts.tags", "profile")`` into a nested with-spec mapping."""
    tree: dict[str, Any] = {}
    for path in paths:
        if not isinstance(path, str) or not path:
            raise InvalidDescriptor(f"Invalid with-spec path {path!r}")

        level = tree
        head, *rest = path.split(".")
        while True:
            if not head:
                raise InvalidDescriptor(f"Invalid with-spec path {path!r}")
            if not rest:
                level.setdefault(head, True)
                break
            entry = level.get(head)
            if not isinstance(entry, dict):
                entry = level[head] = {"with": {}}
            level = entry["with"]
            head, *rest = rest

    return tree


def as_spec_mapping(spec: WithSpec) -> Mapping[str, Any]:
    """Normalise any accepted with-spec form to the mapping form."""
    if spec is None:
        return {}
    if isinstance(spec, Mapping):
        return spec
    if isinstance(spec, str):
        return _expand_dotted((spec,))
    if isinstance(spec, Iterable):
        return _expand_dotted(spec)

    raise InvalidDescriptor(f"Invalid with-spec {spec!r}: expected a mapping or dotted paths")


def _check_columns(descriptor: Relation, columns: tuple[str, ...]) -> None:
    available = {col.key for table in descriptor.target_tables for col in table.c}
    if missing := [name for name in columns if name not in available]:
        raise InvalidDescriptor(
            f"Relation {descriptor.name!r}: cannot select unknown column(s) {missing}"
        )


def _options_from_mapping(values: Mapping[str, Any]) -> LoadOptions:
    if unknown := set(values) - _OPTION_KEYS:
        raise InvalidDescriptor(f"Unknown load option(s) {sorted(unknown)}")
    if "with" in values and "nested" in values:
        raise InvalidDescriptor("Use either 'with' or 'nested', not both")

    order_by = values.get("order_by") or ()
    columns = values.get("columns")

    return LoadOptions(
        where=values.get("where"),
        order_by=(order_by,) if isinstance(order_by, str) else tuple(order_by),
        limit=values.get("limit"),
        columns=None if columns is None else tuple(columns),
        pivot=bool(values.get("pivot", False)),
        nested=values.get("with", values.get("nested")),
    )


def _is_condition(value: Any) -> bool:
    return callable(value) or isinstance(value, sa.ColumnElement)


def _check_where(key: str, descriptor: Relation, where: Any) -> Where | None:
    """Validate *where*; polymorphic belongs-to conditions must name a target.

    A belongs-to relation queries each target table separately, so it takes
    either a mapping of discriminator value to condition, or an expression
    that is applied to the targets it references.
    """
    if where is None:
        return None

    if isinstance(where, Mapping):
        if not isinstance(descriptor, PolymorphicBelongsTo):
            raise InvalidDescriptor(
                f"Invalid where for {key!r}: per-type conditions need a polymorphic belongs-to"
            )
        if unknown := sorted(set(where) - set(descriptor.targets)):
            raise InvalidDescriptor(f"Invalid where for {key!r}: no target for type(s) {unknown}")
        if not all(_is_condition(value) for value in where.values()):
            raise InvalidDescriptor(f"Invalid where for {key!r}: {where!r}")
        return frozendict(where)

    if not _is_condition(where):
        raise InvalidDescriptor(f"Invalid where for {key!r}: {where!r}")

    if isinstance(descriptor, PolymorphicBelongsTo) and isinstance(where, sa.ColumnElement):
        if not any(references_table(where, table) for table in descriptor.target_tables):
            raise InvalidDescriptor(
                f"Invalid where for {key!r}: the condition references none of "
                f"{[get_table_name(table) for table in descriptor.target_tables]}"
            )

    return where


def _build_options(key: str, alias: str, descriptor: Relation, value: Any) -> LoadOptions:
    if value is True:
        options = LoadOptions()
    elif isinstance(value, LoadOptions):
        options = value
    elif isinstance(value, Mapping):
        options = _options_from_mapping(value)
    else:
        raise InvalidDescriptor(
            f"Invalid load spec for {key!r}: expected True, a mapping or LoadOptions, got {value!r}"
        )

    limit = options.limit
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 0):
        raise InvalidDescriptor(f"Invalid limit for {key!r}: {limit!r}")
    if limit is not None and not descriptor.is_plural:
        raise InvalidDescriptor(f"limit is only valid on plural relations, not {key!r}")
    if options.pivot and not isinstance(descriptor, ThroughJunction):
        raise InvalidDescriptor(f"pivot is only valid on junction relations, not {key!r}")
    where = _check_where(key, descriptor, options.where)
    if options.columns is not None:
        _check_columns(descriptor, options.columns)

    return replace(
        options,
        where=where,
        relation_name=descriptor.name,
        alias=alias or options.alias or descriptor.display_key,
    )


def _polymorphic_children(
    registry: RelationRegistry,
    descriptor: PolymorphicBelongsTo,
    nested: Mapping[str, Any],
) -> frozendict[str, tuple[LoadPlanNode, ...]]:
    """Parse *nested* once per target table; each name must exist on at least one target."""
    names = {key: _split_key(key)[1] for key in nested}
    found: set[str] = set()
    by_type: dict[str, tuple[LoadPlanNode, ...]] = {}

    for type_value, table in descriptor.targets.items():
        own = {key: value for key, value in nested.items() if registry.get(table, names[key])}
        found.update(own)
        by_type[type_value] = parse_with_spec(registry, table, own)

    if missing := [key for key in nested if key not in found and nested[key]]:
        alias, name = _split_key(missing[0])
        raise UnknownRelation(
            "|".join(get_table_name(table) for table in descriptor.targets.values()),
            name,
            alias,
        )

    return frozendict(by_type)


def parse_with_spec(
    registry: RelationRegistry,
    source: TableLike,
    spec: WithSpec,
) -> tuple[LoadPlanNode, ...]:
    """Build the load plan for *spec* against *source*.

    Args:
        registry: Where relation names are looked up.
        source: Table the requested relations are declared on.
        spec: Mapping, dotted path(s) or ``None``.

    Returns:
        Sibling plan nodes in request order. Keys mapped to ``False``/``None``
        are skipped.

    Raises:
        UnknownRelation: A key names no registered relation (before any query runs).
        InvalidDescriptor: Malformed keys or options.
    """
    nodes: list[LoadPlanNode] = []
    for key, value in as_spec_mapping(spec).items():
        if value is False or value is None:
            continue

        alias, name = _split_key(key)
        descriptor = registry.get(source, name)
        if descriptor is None:
            raise UnknownRelation(get_table_name(source), name, alias or None)

        options = _build_options(key, alias, descriptor, value)
        nested = as_spec_mapping(options.nested)

        if isinstance(descriptor, PolymorphicBelongsTo):
            node = LoadPlanNode(
                descriptor,
                options,
                children_by_type=_polymorphic_children(registry, descriptor, nested),
            )
        else:
            node = LoadPlanNode(
                descriptor,
                options,
                children=parse_with_spec(registry, descriptor.target_table, nested),
            )
        nodes.append(node)

    aliases = [node.alias for node in nodes]
    if duplicates := sorted({alias for alias in aliases if aliases.count(alias) > 1}):
        raise InvalidDescriptor(f"Duplicate attachment alias(es) {duplicates}")

    return tuple(nodes)
