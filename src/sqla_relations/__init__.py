"""Batched eager loading of declared relations for SQLAlchemy Core rows.

sqla_relations attaches related rows to rows you already fetched, in a fixed
number of ``SELECT`` statements per relation instead of one per row.  Declare
relations once on a ``RelationRegistry`` with ``registry.define(table, ...)``,
then call ``resolve(rows, {"author": True, "tags": {"limit": 3}}, ...)`` --
direct, junction and polymorphic relations, aliases, nested loads and
per-parent limits are all handled.
"""

from ._version import __version__, __version_tuple__
from .builder import PendingRelation, RelationBuilder
from .core import (
    DEFAULT_IN_CHUNK_SIZE,
    DEFAULT_LIMIT_STRATEGY,
    PIVOT_KEY,
    Resolver,
    async_resolve,
    resolve,
    sqla_cache_clear,
    sqla_cache_info,
)
from .datastructures import frozendict
from .descriptors import Direct, PolymorphicBelongsTo, PolymorphicHasMany, Relation, ThroughJunction
from .exceptions import (
    InvalidDescriptor,
    QueryExecutionFailed,
    RelationError,
    UnknownRelation,
    UnregisteredDiscriminatorValue,
)
from .executor import ConnectionExecutor, EngineExecutor, QueryExecutor, as_executor
from .keys import PartitionedKeys, extract_keys, partition_by_type
from .plan import LoadOptions, LoadPlanNode, parse_with_spec
from .registry import RelationRegistry
from .tools import add_conditions, as_rows, as_table, get_primary_key, get_table_name


__all__ = (
    "DEFAULT_IN_CHUNK_SIZE",
    "DEFAULT_LIMIT_STRATEGY",
    "PIVOT_KEY",
    "ConnectionExecutor",
    "Direct",
    "EngineExecutor",
    "InvalidDescriptor",
    "LoadOptions",
    "LoadPlanNode",
    "PartitionedKeys",
    "PendingRelation",
    "PolymorphicBelongsTo",
    "PolymorphicHasMany",
    "QueryExecutionFailed",
    "QueryExecutor",
    "Relation",
    "RelationBuilder",
    "RelationError",
    "RelationRegistry",
    "Resolver",
    "ThroughJunction",
    "UnknownRelation",
    "UnregisteredDiscriminatorValue",
    "__version__",
    "__version_tuple__",
    "add_conditions",
    "as_executor",
    "as_rows",
    "as_table",
    "async_resolve",
    "extract_keys",
    "frozendict",
    "get_primary_key",
    "get_table_name",
    "parse_with_spec",
    "partition_by_type",
    "resolve",
    "sqla_cache_clear",
    "sqla_cache_info",
)
