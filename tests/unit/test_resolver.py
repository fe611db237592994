from __future__ import annotations

from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy import orm

from sqla_relations import (
    ConnectionExecutor,
    EngineExecutor,
    QueryExecutor,
    RelationRegistry,
    Resolver,
    UnknownRelation,
    as_executor,
    resolve,
)
from sqla_relations.executor import _CountingExecutor

from ..models import Post, User


class RecordingExecutor:
    """Answers every statement with no rows and remembers what it was asked."""

    concurrent_safe = True

    def __init__(self) -> None:
        self.statements: list[sa.Select[Any]] = []

    @property
    def query_count(self) -> int:
        return len(self.statements)

    def execute(self, statement: sa.Select[Any]) -> list[dict[str, Any]]:
        self.statements.append(statement)
        return []


class TestResolverConfig:
    def test_unknown_limit_strategy(self, registry: RelationRegistry) -> None:
        with pytest.raises(ValueError, match="Unknown limit_strategy 'lateral'"):
            Resolver(registry, RecordingExecutor(), limit_strategy="lateral")  # type: ignore[arg-type]

    @pytest.mark.parametrize("option", ["in_chunk_size", "max_workers"])
    def test_non_positive(self, registry: RelationRegistry, option: str) -> None:
        with pytest.raises(ValueError, match=f"{option} must be positive"):
            Resolver(registry, RecordingExecutor(), **{option: 0})

    def test_workers_need_thread_safe_executor(self, registry: RelationRegistry) -> None:
        engine = sa.create_engine("sqlite://")
        with engine.connect() as conn, pytest.raises(ValueError, match="thread-safe executor"):
            Resolver(registry, ConnectionExecutor(conn), max_workers=4)

    def test_workers_with_engine_executor(self, registry: RelationRegistry) -> None:
        resolver = Resolver(registry, EngineExecutor(sa.create_engine("sqlite://")), max_workers=4)
        assert resolver.max_workers == 4


class TestCountingExecutor:
    def test_base_is_abstract(self) -> None:
        with pytest.raises(TypeError, match="abstract"):
            _CountingExecutor()  # type: ignore[abstract]

    def test_counts_and_resets(self) -> None:
        engine = sa.create_engine("sqlite://")
        with engine.connect() as conn:
            executor = ConnectionExecutor(conn)
            assert executor.execute(sa.select(sa.literal(1).label("one"))) == [{"one": 1}]
            assert executor.query_count == 1

            executor.reset()
            assert executor.query_count == 0


class TestAsExecutor:
    def test_engine(self) -> None:
        assert isinstance(as_executor(sa.create_engine("sqlite://")), EngineExecutor)

    def test_connection_and_session(self) -> None:
        engine = sa.create_engine("sqlite://")
        with engine.connect() as conn:
            assert isinstance(as_executor(conn), ConnectionExecutor)
        with orm.Session(engine) as session:
            assert isinstance(as_executor(session), ConnectionExecutor)

    def test_custom_executor_passthrough(self) -> None:
        executor = RecordingExecutor()
        assert isinstance(executor, QueryExecutor)
        assert as_executor(executor) is executor

    def test_rejects_other(self) -> None:
        with pytest.raises(TypeError, match="got str"):
            as_executor("sqlite://")


class TestResolveWithoutData:
    def test_no_rows_no_queries(self, registry: RelationRegistry) -> None:
        executor = RecordingExecutor()
        assert resolve([], {"author": True}, registry=registry, source=Post, executor=executor) == []
        assert executor.query_count == 0

    def test_empty_spec_returns_rows_untouched(self, registry: RelationRegistry) -> None:
        executor = RecordingExecutor()
        rows = [{"id": 1, "author_id": 1}]

        assert resolve(rows, {}, registry=registry, source=Post, executor=executor) == [{"id": 1, "author_id": 1}]
        assert executor.query_count == 0

    def test_null_keys_issue_no_statement(self, registry: RelationRegistry) -> None:
        executor = RecordingExecutor()
        rows = resolve(
            [{"id": 5, "author_id": None}],
            {"author": True},
            registry=registry,
            source=Post,
            executor=executor,
        )

        assert rows == [{"id": 5, "author_id": None, "author": None}]
        assert executor.query_count == 0

    def test_unknown_relation_before_any_query(self, registry: RelationRegistry) -> None:
        executor = RecordingExecutor()
        rows = [{"id": 1, "author_id": 1}]
        with pytest.raises(UnknownRelation):
            resolve(rows, {"author": True, "reviewer": True}, registry=registry, source=Post, executor=executor)

        assert executor.query_count == 0
        assert rows == [{"id": 1, "author_id": 1}]

    def test_rows_must_be_mutable(self, registry: RelationRegistry) -> None:
        with pytest.raises(TypeError, match="mutable mappings"):
            resolve([(1, 1)], {"author": True}, registry=registry, source=User, executor=RecordingExecutor())

    def test_in_chunks(self, registry: RelationRegistry) -> None:
        executor = RecordingExecutor()
        rows = [{"id": i, "name": str(i), "active": True} for i in range(1, 26)]
        resolve(rows, {"posts": True}, registry=registry, source=User, executor=executor, in_chunk_size=10)

        assert executor.query_count == 3
        assert all(row["posts"] == [] for row in rows)
