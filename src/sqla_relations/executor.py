"""Query execution: the seam between the resolver and a live database.

The resolver only ever calls :meth:`QueryExecutor.execute` with a
``sa.Select`` and expects plain row dicts back, so any object with that
method and a ``query_count`` can stand in (handy for tests and for routing
reads to a replica).
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, Protocol, final, runtime_checkable

import sqlalchemy as sa
from sqlalchemy import orm

from .tools import as_rows


@runtime_checkable
class QueryExecutor(Protocol):
    """Anything that can run a SELECT and count how many it ran."""

    @property
    def query_count(self) -> int: ...

    def execute(self, statement: sa.Select[Any]) -> list[dict[str, Any]]: ...


class _CountingExecutor(ABC):
    """Counts statements; subclasses implement ``_run``."""

    __slots__ = ("_count", "_lock")

    concurrent_safe: bool = False
    """Whether statements may be issued from several threads at once."""

    def __init__(self) -> None:
        self._count = 0
        self._lock = threading.Lock()

    @property
    def query_count(self) -> int:
        """Statements issued through this executor so far."""
        return self._count

    def reset(self) -> None:
        with self._lock:
            self._count = 0

    def execute(self, statement: sa.Select[Any]) -> list[dict[str, Any]]:
        with self._lock:
            self._count += 1

        return self._run(statement)

    @abstractmethod
    def _run(self, statement: sa.Select[Any]) -> list[dict[str, Any]]: ...


@final
class ConnectionExecutor(_CountingExecutor):
    """Runs statements on one ``Connection`` or ORM ``Session``, sequentially.

    Inside ``AsyncConnection.run_sync`` / ``AsyncSession.run_sync`` the
    callback receives exactly such a sync object.
    """

    __slots__ = ("bind",)

    def __init__(self, bind: sa.Connection | orm.Session) -> None:
        super().__init__()
        self.bind = bind

    def _run(self, statement: sa.Select[Any]) -> list[dict[str, Any]]:
        return as_rows(self.bind.execute(statement))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.bind!r} queries={self.query_count}>"


@final
class EngineExecutor(_CountingExecutor):
    """Checks a connection out of the engine's pool for every statement.

    Safe to share between threads, which makes it the only built-in executor
    allowed with ``max_workers > 1``.
    """

    __slots__ = ("engine",)

    concurrent_safe = True

    def __init__(self, engine: sa.Engine) -> None:
        super().__init__()
        self.engine = engine

    def _run(self, statement: sa.Select[Any]) -> list[dict[str, Any]]:
        with self.engine.connect() as conn:
            return as_rows(conn.execute(statement))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.engine.url!r} queries={self.query_count}>"


def as_executor(obj: Any) -> QueryExecutor:
    """Wrap an ``Engine``, ``Connection`` or ``Session``; pass executors through.

    Raises:
        TypeError: For anything else.
    """
    if isinstance(obj, sa.Engine):
        return EngineExecutor(obj)
    if isinstance(obj, (sa.Connection, orm.Session)):
        return ConnectionExecutor(obj)
    if isinstance(obj, QueryExecutor):
        return obj

    raise TypeError(
        f"Expected an Engine, Connection, Session or QueryExecutor, got {type(obj).__name__}"
    )
