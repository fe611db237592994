from __future__ import annotations

import os
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    create_async_engine,
)

from sqla_relations import (
    ConnectionExecutor,
    RelationRegistry,
    Resolver,
    as_rows,
    sqla_cache_clear,
)

from .models import (
    Attachment,
    Base,
    Category,
    Comment,
    Message,
    MultiKeyChild,
    MultiKeyParent,
    Post,
    PostTag,
    Profile,
    Reaction,
    Role,
    Tag,
    User,
    Video,
    user_roles,
)


pytestmark = pytest.mark.anyio

Rows = list[dict[str, Any]]
LoadFn = Callable[..., Awaitable[tuple[Rows, int]]]


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["postgres", "mysql", "mariadb", "sqlite"],
        help="Database backend to test against",
    )


def build_registry() -> RelationRegistry:
    """Relations of the test schema, declared through the builder."""
    registry = RelationRegistry()
    registry.define(User, lambda r: {
        "posts": r.many(Post),
        "roles": r.many(Role, through=user_roles),
        "profile": r.one(Profile),
        "videos": r.many(Video),
        "sent_messages": r.many(Message, fields=User.id, references=Message.from_user_id),
        "received_messages": r.many(Message, fields="id", references="to_user_id"),
    })
    registry.define(Post, lambda r: {
        "author": r.one(User),
        "comments": r.many(Comment),
        "tags": r.many(Tag, through=PostTag),
        "attachments": r.many_polymorphic(
            Attachment,
            type_column="attachable_type",
            id_column="attachable_id",
            type_value="post",
        ),
    })
    registry.define(Tag, lambda r: {"posts": r.many(Post, through=PostTag)})
    registry.define(Comment, lambda r: {
        "post": r.one(Post, display_name="parent_post"),
        "reactions": r.many(Reaction),
        "attachments": r.many_polymorphic(
            Attachment,
            type_column=Attachment.attachable_type,
            id_column=Attachment.attachable_id,
            type_value="comment",
        ),
    })
    registry.define(Reaction, lambda r: {"comment": r.one(Comment)})
    registry.define(Role, lambda r: {"users": r.many(User, through=user_roles)})
    registry.define(Category, lambda r: {
        "parent": r.one(Category, fields="parent_id", references="id"),
        "children": r.many(Category, fields="id", references="parent_id"),
    })
    registry.define(Message, lambda r: {
        "from_user": r.one(User, fields="from_user_id", references="id"),
        "to_user": r.one(User, fields="to_user_id", references="id"),
    })
    registry.define(Profile, lambda r: {"user": r.one(User)})
    registry.define(Video, lambda r: {
        "owner": r.one(User),
        "attachments": r.many_polymorphic(
            Attachment,
            type_column="attachable_type",
            id_column="attachable_id",
            type_value="video",
        ),
    })
    registry.define(Attachment, lambda r: {
        "attachable": r.one_polymorphic(
            type_column="attachable_type",
            id_column="attachable_id",
            targets={"post": Post, "comment": Comment, "video": Video},
        ),
    })
    registry.define(MultiKeyParent, lambda r: {"children": r.many(MultiKeyChild)})
    registry.define(MultiKeyChild, lambda r: {"parent": r.one(MultiKeyParent)})

    return registry.freeze()


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session")
def registry() -> RelationRegistry:
    """Frozen registry for the test schema.

    Sync, no DB needed -- safe to use in unit tests.
    """
    return build_registry()


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+asyncpg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "mysql":
            from testcontainers.mysql import MySqlContainer

            my = MySqlContainer(image="mysql:8.0")
            if os.name == "nt":
                my.get_container_host_ip = lambda: "127.0.0.1"
            with my:
                host = my.get_container_host_ip()
                port = my.get_exposed_port(my.port)
                dsn = (
                    f"mysql+asyncmy://{my.username}:{my.password}"
                    f"@{host}:{port}/{my.dbname}"
                )
                yield dsn

        case "mariadb":
            from testcontainers.mysql import MySqlContainer as MariaDBContainer

            ma = MariaDBContainer(image="mariadb:latest")
            if os.name == "nt":
                ma.get_container_host_ip = lambda: "127.0.0.1"
            with ma:
                host = ma.get_container_host_ip()
                port = ma.get_exposed_port(ma.port)
                dsn = (
                    f"mysql+asyncmy://{ma.username}:{ma.password}"
                    f"@{host}:{port}/{ma.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    return create_async_engine(db_config, echo=False)


@pytest.fixture(scope="session")
async def _create_tables(engine: AsyncEngine) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def connection(
    engine: AsyncEngine, _create_tables: None
) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


@pytest.fixture
async def session(connection: AsyncConnection) -> AsyncIterator[AsyncSession]:
    sess = AsyncSession(bind=connection, expire_on_commit=False)
    yield sess
    await sess.close()


@pytest.fixture
async def seed_data(session: AsyncSession) -> None:
    session.add_all([
        User(id=1, name="alice", active=True),
        User(id=2, name="bob", active=True),
        User(id=3, name="charlie", active=False),
    ])
    await session.flush()

    session.add_all([
        Post(id=1, title="Alice Post 1", body="body1", author_id=1),
        Post(id=2, title="Alice Post 2", body="body2", author_id=1),
        Post(id=3, title="Alice Post 3", body="body3", author_id=1),
        Post(id=4, title="Bob Post 1", body="body4", author_id=2),
        Post(id=5, title="Orphan Post", body="body5", author_id=None),
    ])
    await session.flush()

    session.add_all([
        Tag(id=1, name="python"),
        Tag(id=2, name="sqlalchemy"),
        Tag(id=3, name="testing"),
    ])
    await session.flush()

    session.add_all([
        PostTag(post_id=1, tag_id=1, position=2),
        PostTag(post_id=1, tag_id=2, position=1),
        PostTag(post_id=2, tag_id=1, position=1),
        PostTag(post_id=4, tag_id=3, position=1),
    ])
    await session.flush()

    session.add_all([
        Comment(id=1, text="Great post!", post_id=1),
        Comment(id=2, text="Nice work", post_id=1),
        Comment(id=3, text="Spam", approved=False, post_id=1),
        Comment(id=4, text="First!", post_id=2),
        Comment(id=5, text="Interesting", post_id=4),
    ])
    await session.flush()

    session.add_all([
        Reaction(id=1, emoji="\U0001f44d", comment_id=1),
        Reaction(id=2, emoji="❤️", comment_id=1),
        Reaction(id=3, emoji="\U0001f389", comment_id=4),
    ])
    await session.flush()

    session.add_all([
        Role(id=1, name="admin", level=10),
        Role(id=2, name="editor", level=5),
        Role(id=3, name="viewer", level=1),
    ])
    await session.flush()

    await session.execute(
        user_roles.insert().values([
            {"user_id": 1, "role_id": 1},
            {"user_id": 1, "role_id": 2},
            {"user_id": 2, "role_id": 2},
            {"user_id": 2, "role_id": 3},
        ])
    )
    await session.flush()

    session.add_all([
        Category(id=1, name="root", parent_id=None),
        Category(id=2, name="child_1", parent_id=1),
        Category(id=3, name="child_2", parent_id=1),
        Category(id=4, name="grandchild", parent_id=2),
    ])
    await session.flush()

    session.add_all([
        Message(id=1, content="Hello Bob", from_user_id=1, to_user_id=2),
        Message(id=2, content="Hi Alice", from_user_id=2, to_user_id=1),
        Message(id=3, content="Hey Charlie", from_user_id=1, to_user_id=3),
    ])
    await session.flush()

    session.add_all([
        Profile(id=1, bio="Alice bio", user_id=1),
        Profile(id=2, bio="Bob bio", user_id=2),
    ])
    await session.flush()

    session.add_all([
        Video(id=9, url="https://example.com/v9.mp4", owner_id=2),
        Video(id=10, url="https://example.com/v10.mp4", owner_id=1),
    ])
    await session.flush()

    session.add_all([
        Attachment(id=1, url="https://example.com/post1_img1.jpg", attachable_type="post", attachable_id=1),
        Attachment(id=2, url="https://example.com/post1_img2.jpg", attachable_type="post", attachable_id=1),
        Attachment(id=3, url="https://example.com/comment1_file.pdf", attachable_type="comment", attachable_id=1),
        Attachment(id=4, url="https://example.com/video9_thumb.jpg", attachable_type="video", attachable_id=9),
        Attachment(id=5, url="https://example.com/post4_img.jpg", attachable_type="post", attachable_id=4),
        Attachment(id=6, url="https://example.com/legacy.gif", attachable_type="photo", attachable_id=1),
        Attachment(id=7, url="https://example.com/detached.png", attachable_type="post", attachable_id=None),
    ])
    await session.flush()

    session.add_all([
        MultiKeyParent(region="eu", number=1, label="eu-1"),
        MultiKeyParent(region="us", number=1, label="us-1"),
        MultiKeyParent(region="us", number=2, label="us-2"),
    ])
    await session.flush()

    session.add_all([
        MultiKeyChild(id=1, parent_region="eu", parent_number=1, note="a"),
        MultiKeyChild(id=2, parent_region="us", parent_number=1, note="b"),
        MultiKeyChild(id=3, parent_region="us", parent_number=1, note="c"),
    ])
    await session.flush()

    session.expunge_all()


@pytest.fixture
def fetch_rows(connection: AsyncConnection) -> Callable[..., Awaitable[Rows]]:
    """``await fetch_rows(Post)`` -> every post as a dict, ordered by primary key."""

    async def _fetch(model: Any, *criteria: Any) -> Rows:
        table = model.__table__
        query = sa.select(table).where(*criteria).order_by(*table.primary_key)
        return as_rows(await connection.execute(query))

    return _fetch


@pytest.fixture
def load(connection: AsyncConnection, registry: RelationRegistry) -> LoadFn:
    """``rows, queries = await load(Post, rows, {"author": True})``.

    Runs the resolver on the test connection and reports how many statements
    it issued.
    """

    async def _load(source: Any, rows: Rows, with_spec: Any, **options: Any) -> tuple[Rows, int]:
        def _run(sync_conn: sa.Connection) -> tuple[Rows, int]:
            executor = ConnectionExecutor(sync_conn)
            resolver = Resolver(registry, executor, **options)
            return resolver.resolve(source, rows, with_spec), executor.query_count

        return await connection.run_sync(_run)

    return _load


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    sqla_cache_clear()
