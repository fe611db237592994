from __future__ import annotations

from typing import Any


class RelationError(Exception):
    """Base class for every error raised by sqla_relations."""


class UnknownRelation(RelationError, LookupError):
    """A relation name (or ``alias:name`` key) is not registered for a table."""

    def __init__(self, table: str, name: str, alias: str | None = None) -> None:
        self.table = table
        self.name = name
        self.alias = alias or name
        shown = self.alias if self.alias == name else f"{self.alias}:{name}"
        super().__init__(f"No relation {shown!r} registered on table {table!r}")


class InvalidDescriptor(RelationError, ValueError):
    """A relation descriptor or load option is malformed."""


class QueryExecutionFailed(RelationError):
    """A batched fetch failed; the whole resolve call is aborted.

    The underlying driver/SQLAlchemy error is chained as ``__cause__`` and kept
    on ``orig``.
    """

    def __init__(self, statement: Any, orig: BaseException) -> None:
        self.statement = statement
        self.orig = orig
        super().__init__(f"Eager-load query failed: {orig}")


class UnregisteredDiscriminatorValue(RelationError):
    """A polymorphic row names a type with no registered target table.

    Only raised when the resolver runs with ``strict_discriminators=True``.
    """

    def __init__(self, relation: str, values: frozenset[Any]) -> None:
        self.relation = relation
        self.values = values
        super().__init__(
            f"Relation {relation!r} has no target for discriminator value(s) "
            f"{sorted(map(str, values))}"
        )
