"""Keyed collection of child entities owned by a volume group."""

from __future__ import annotations

from typing import Callable, Dict, Generic, Iterator, List, Optional, Protocol, TypeVar


class NamedEntity(Protocol):
    name: str


E = TypeVar("E", bound=NamedEntity)


class EntityTable(Generic[E]):
    """Owning table of entities keyed by name.

    Membership is ownership: an entity removed from the table is unpublished
    through ``on_remove`` before the table drops its reference.
    """

    def __init__(self, on_remove: Optional[Callable[[E], None]] = None) -> None:
        self._entries: Dict[str, E] = {}
        self._on_remove = on_remove

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[E]:
        return iter(list(self._entries.values()))

    def get(self, name: str) -> Optional[E]:
        return self._entries.get(name)

    def names(self) -> List[str]:
        return list(self._entries)

    def insert(self, entity: E) -> E:
        if entity.name in self._entries:
            raise ValueError(f"Entity {entity.name!r} is already present")
        self._entries[entity.name] = entity
        return entity

    def remove(self, name: str) -> Optional[E]:
        entity = self._entries.get(name)
        if entity is None:
            return None
        if self._on_remove is not None:
            self._on_remove(entity)
        del self._entries[name]
        return entity

    def clear(self) -> None:
        for name in list(self._entries):
            self.remove(name)
