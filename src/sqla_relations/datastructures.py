from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any, TypeVar


K = TypeVar("K")
V = TypeVar("V")

_UNSET: Any = object()


class frozendict(Mapping[K, V]):  # noqa: N801
    """Read-only, hashable mapping.

    Relation descriptors are frozen dataclasses and take part in LRU-cached
    lookups, so every mapping they hold (polymorphic ``targets``, a table's
    relation set) must be hashable too. Insertion order is preserved.

    Example:
        >>> targets = frozendict(post=posts, video=videos)
        >>> targets["post"] is posts
        True
        >>> targets | {"photo": photos}
        <frozendict {'post': ..., 'video': ..., 'photo': ...}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int = _UNSET

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __or__(self, other: Mapping[K, V]) -> frozendict[K, V]:
        """Return a new frozendict with *other*'s items added or replaced."""
        if not isinstance(other, Mapping):
            return NotImplemented

        return type(self)({**self._dict, **other})

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        # Computed on first use: values such as ``sa.Table`` hash by identity.
        if self._hash is _UNSET:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash
