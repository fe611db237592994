"""Basic sqla-relations usage examples.

Demonstrates declaring relations, simple and aliased loads, dotted paths,
filters, per-parent limits, junction pivots and polymorphic relations.

NOTE: This file is illustrative; the functions expect a database that
already holds data for the tables in ``tables.py``.
"""

from __future__ import annotations

from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine

from sqla_relations import (
    RelationRegistry,
    UnregisteredDiscriminatorValue,
    add_conditions,
    as_rows,
    async_resolve,
    resolve,
)

from .tables import attachments, comments, metadata, post_tags, posts, tags, users, videos


Rows = list[dict[str, Any]]


# ── 1. Declare relations once at startup ─────────────────────────────

registry = RelationRegistry()
registry.define(users, lambda r: {"posts": r.many(posts)})
registry.define(posts, lambda r: {
    "author": r.one(users),
    "comments": r.many(comments),
    "tags": r.many(tags, through=post_tags),
    "attachments": r.many_polymorphic(
        attachments, type_column="attachable_type", id_column="attachable_id", type_value="post"
    ),
})
registry.define(comments, lambda r: {"post": r.one(posts, display_name="parent_post")})
registry.define(tags, lambda r: {"posts": r.many(posts, through=post_tags)})
registry.define(attachments, lambda r: {
    "attachable": r.one_polymorphic(
        type_column=attachments.c.attachable_type,
        id_column=attachments.c.attachable_id,
        targets={"post": posts, "comment": comments, "video": videos},
    ),
})
registry.freeze()

engine = create_async_engine("sqlite+aiosqlite:///:memory:")


async def setup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


# ── 2. Simple and aliased loads ──────────────────────────────────────


async def get_posts_with_author(conn: AsyncConnection) -> Rows:
    rows = as_rows(await conn.execute(sa.select(posts)))
    return await async_resolve(conn, rows, {"author": True}, registry=registry, source=posts)


async def get_posts_with_writer(conn: AsyncConnection) -> Rows:
    # each post gets a "writer" key instead of "author"
    rows = as_rows(await conn.execute(sa.select(posts)))
    return await async_resolve(conn, rows, {"writer:author": True}, registry=registry, source=posts)


# ── 3. Dotted / nested paths ─────────────────────────────────────────


async def get_users_deep(conn: AsyncConnection) -> Rows:
    rows = as_rows(await conn.execute(sa.select(users)))
    return await async_resolve(
        conn, rows, ("posts.comments", "posts.tags"), registry=registry, source=users
    )


# ── 4. Filters, ordering and per-parent limits ───────────────────────


async def get_posts_latest_approved_comments(conn: AsyncConnection) -> Rows:
    rows = as_rows(await conn.execute(sa.select(posts)))
    return await async_resolve(
        conn,
        rows,
        {"comments": {"where": comments.c.approved, "order_by": "-id", "limit": 3}},
        registry=registry,
        source=posts,
    )


async def get_posts_windowed(conn: AsyncConnection) -> Rows:
    # the limit is applied in SQL with ROW_NUMBER() instead of after fetching
    rows = as_rows(await conn.execute(sa.select(posts)))
    return await async_resolve(
        conn,
        rows,
        {"comments": {"where": add_conditions(comments.c.approved), "limit": 3}},
        registry=registry,
        source=posts,
        limit_strategy="window",
    )


# ── 5. Junction pivot columns ────────────────────────────────────────


async def get_posts_with_tag_positions(conn: AsyncConnection) -> Rows:
    # every tag row carries its post_tags row under "_pivot"
    rows = as_rows(await conn.execute(sa.select(posts)))
    return await async_resolve(
        conn,
        rows,
        {"tags": {"pivot": True, "order_by": "name"}},
        registry=registry,
        source=posts,
    )


# ── 6. Polymorphic relations ─────────────────────────────────────────


async def get_attachments_with_parent(conn: AsyncConnection) -> Rows:
    # one SELECT per discriminator value present; unknown types attach None
    rows = as_rows(await conn.execute(sa.select(attachments)))
    return await async_resolve(
        conn,
        rows,
        {"attachable": {"with": {"comments": True}}},
        registry=registry,
        source=attachments,
    )


async def get_attachments_strict(conn: AsyncConnection) -> Rows | None:
    rows = as_rows(await conn.execute(sa.select(attachments)))
    try:
        return await async_resolve(
            conn,
            rows,
            {"attachable": True},
            registry=registry,
            source=attachments,
            strict_discriminators=True,
        )
    except UnregisteredDiscriminatorValue as exc:
        print(f"bad attachable_type values: {sorted(exc.values)}")
        return None


# ── 7. Sync usage with an Engine ─────────────────────────────────────


def get_users_sync(sync_engine: sa.Engine) -> Rows:
    with sync_engine.connect() as conn:
        rows = as_rows(conn.execute(sa.select(users)))

    # an Engine executor checks out a connection per statement,
    # so sibling relations may be fetched from worker threads
    return resolve(
        rows,
        {"posts": {"with": {"comments": True, "tags": True}}},
        registry=registry,
        source=users,
        executor=sync_engine,
        max_workers=4,
    )
