"""Who belongs to which family, as far as spending requests are concerned."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Protocol, Set, Tuple

from .exceptions import NotFoundError


class FamilyDirectory(Protocol):
    def family_of_child(self, child_id: str) -> str:
        """Return the family owning ``child_id`` or raise :class:`NotFoundError`."""
        ...

    def is_parent(self, user_id: str, family_id: str) -> bool:
        ...

    def parents_of(self, family_id: str) -> Tuple[str, ...]:
        ...


class InMemoryFamilyDirectory:
    """Dictionary backed directory used by tests and the reference wiring."""

    def __init__(self) -> None:
        self._child_family: Dict[str, str] = {}
        self._parents: Dict[str, Set[str]] = defaultdict(set)

    def add_parent(self, family_id: str, parent_id: str) -> None:
        self._parents[family_id].add(parent_id)

    def add_child(self, family_id: str, child_id: str) -> None:
        self._child_family[child_id] = family_id

    def family_of_child(self, child_id: str) -> str:
        try:
            return self._child_family[child_id]
        except KeyError as exc:
            raise NotFoundError(f"Child '{child_id}' does not exist.") from exc

    def is_parent(self, user_id: str, family_id: str) -> bool:
        return user_id in self._parents.get(family_id, ())

    def parents_of(self, family_id: str) -> Tuple[str, ...]:
        return tuple(sorted(self._parents.get(family_id, ())))


__all__ = ["FamilyDirectory", "InMemoryFamilyDirectory"]
