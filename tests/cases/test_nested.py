from __future__ import annotations

import copy

import pytest

from ..conftest import LoadFn
from ..models import Attachment, Comment, Post, User


pytestmark = pytest.mark.anyio


def _shape(value: object) -> object:
    """Keys that hold relations, recursively; column values are dropped."""
    if isinstance(value, list):
        return [_shape(item) for item in value]
    if isinstance(value, dict):
        return {key: _shape(item) for key, item in value.items() if isinstance(item, (dict, list))}
    return value


@pytest.mark.usefixtures("seed_data")
class TestScenarioD:
    async def test_alias_with_nested(self, load: LoadFn, fetch_rows) -> None:
        posts, queries = await load(
            Post, await fetch_rows(Post, Post.id == 4), {"writer:author": {"nested": {"posts": True}}}
        )

        assert queries == 2
        (post,) = posts
        assert "author" not in post
        assert post["writer"]["name"] == "bob"
        assert [p["id"] for p in post["writer"]["posts"]] == [4]


@pytest.mark.usefixtures("seed_data")
class TestDeepLoading:
    async def test_three_levels(self, load: LoadFn, fetch_rows) -> None:
        users, queries = await load(User, await fetch_rows(User, User.id == 1), ("posts.comments.reactions",))

        assert queries == 3
        comments = users[0]["posts"][0]["comments"]
        assert [c["id"] for c in comments] == [1, 2, 3]
        assert [r["id"] for r in comments[0]["reactions"]] == [1, 2]
        assert comments[1]["reactions"] == []

    async def test_siblings_at_every_level(self, load: LoadFn, fetch_rows) -> None:
        users, queries = await load(
            User,
            await fetch_rows(User),
            {
                "posts": {"with": {"comments": True, "tags": True}},
                "roles": True,
                "profile": True,
            },
        )

        # posts + comments + tags(2) + roles(2) + profile
        assert queries == 7
        assert [t["name"] for t in users[0]["posts"][0]["tags"]] == ["python", "sqlalchemy"]

    async def test_display_name_nested(self, load: LoadFn, fetch_rows) -> None:
        comments, _ = await load(
            Comment, await fetch_rows(Comment, Comment.id == 4), {"post": {"with": {"author": True}}}
        )
        assert comments[0]["parent_post"]["author"]["name"] == "alice"

    async def test_same_relation_under_two_aliases(self, load: LoadFn, fetch_rows) -> None:
        users, queries = await load(
            User,
            await fetch_rows(User, User.id == 1),
            {"posts": True, "latest:posts": {"order_by": "-id", "limit": 1}},
        )

        assert queries == 2
        assert [p["id"] for p in users[0]["posts"]] == [1, 2, 3]
        assert [p["id"] for p in users[0]["latest"]] == [3]

    async def test_shared_child_loaded_once(self, load: LoadFn, fetch_rows) -> None:
        posts, queries = await load(Post, await fetch_rows(Post), {"author": {"with": {"profile": True}}})

        assert queries == 2
        assert posts[0]["author"]["profile"]["bio"] == "Alice bio"
        assert posts[4]["author"] is None


@pytest.mark.usefixtures("seed_data")
class TestShapeAndIdempotence:
    spec = {"author": {"with": {"profile": True, "roles": True}}, "comments": {"with": {"reactions": True}}}

    async def test_shape_matches_spec(self, load: LoadFn, fetch_rows) -> None:
        posts, _ = await load(Post, await fetch_rows(Post, Post.id == 1), self.spec)

        assert _shape(posts[0]) == {
            "author": {"profile": {}, "roles": [{}, {}]},
            "comments": [{"reactions": [{}, {}]}, {"reactions": []}, {"reactions": []}],
        }

    async def test_shape_independent_of_data(self, load: LoadFn, fetch_rows) -> None:
        posts, _ = await load(Post, await fetch_rows(Post, Post.id == 5), self.spec)
        assert posts[0]["author"] is None
        assert posts[0]["comments"] == []

    async def test_twice_same_result(self, load: LoadFn, fetch_rows) -> None:
        first, _ = await load(Post, await fetch_rows(Post), self.spec)
        second, _ = await load(Post, await fetch_rows(Post), copy.deepcopy(self.spec))

        assert first == second


@pytest.mark.usefixtures("seed_data")
class TestNarrowedColumns:
    async def test_keeps_keys_nested_loads_need(self, load: LoadFn, fetch_rows) -> None:
        posts, queries = await load(
            Post,
            await fetch_rows(Post, Post.id == 1),
            {"comments": {"columns": ["text"], "with": {"reactions": True}}},
        )

        assert queries == 2
        comments = posts[0]["comments"]
        assert [len(c["reactions"]) for c in comments] == [2, 0, 0]
        assert set(comments[0]) == {"id", "text", "post_id", "reactions"}

    async def test_keeps_discriminator_for_nested_belongs_to(self, load: LoadFn, fetch_rows) -> None:
        posts, _ = await load(
            Post,
            await fetch_rows(Post, Post.id == 1),
            {"attachments": {"columns": ["url"], "with": {"attachable": True}}},
        )

        attachments = posts[0]["attachments"]
        assert [a["attachable"]["title"] for a in attachments] == ["Alice Post 1", "Alice Post 1"]
        assert set(attachments[0]) == {"url", "attachable_type", "attachable_id", "attachable"}

    async def test_keeps_keys_per_polymorphic_target(self, load: LoadFn, fetch_rows) -> None:
        attachments, _ = await load(
            Attachment,
            await fetch_rows(Attachment, Attachment.id.in_([1, 4])),
            {"attachable": {"columns": ["title", "url"], "with": {"author": True, "owner": True}}},
        )

        post, video = (a["attachable"] for a in attachments)
        assert post["author"]["name"] == "alice"
        assert set(post) == {"id", "title", "author_id", "author"}
        assert video["owner"]["name"] == "bob"
        assert set(video) == {"id", "url", "owner_id", "owner"}
