"""
ChangeSet: the ordered field-level operations produced by a commit.

Operations render to a MongoDB update document:

    Set / FullReplace  -> $set
    Unset              -> $unset
    ArrayAppend        -> $push with $each (appends to one path are combined)
    ArrayPopFirst      -> $pop -1
    ArrayPopLast       -> $pop 1
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List


@dataclass(frozen=True)
class UpdateOperation:
    path: str


@dataclass(frozen=True)
class Set(UpdateOperation):
    value: Any


@dataclass(frozen=True)
class Unset(UpdateOperation):
    pass


@dataclass(frozen=True)
class ArrayAppend(UpdateOperation):
    value: Any


@dataclass(frozen=True)
class ArrayPopFirst(UpdateOperation):
    pass


@dataclass(frozen=True)
class ArrayPopLast(UpdateOperation):
    pass


@dataclass(frozen=True)
class FullReplace(UpdateOperation):
    value: Any


class ChangeSet:
    """Sink that wrappers write their pending changes into."""

    def __init__(self):
        self._operations: List[UpdateOperation] = []

    @property
    def operations(self) -> List[UpdateOperation]:
        return list(self._operations)

    def add(self, operation: UpdateOperation) -> None:
        self._operations.append(operation)

    def set(self, path: str, value: Any) -> None:
        self.add(Set(path, value))

    def unset(self, path: str) -> None:
        self.add(Unset(path))

    def append(self, path: str, value: Any) -> None:
        self.add(ArrayAppend(path, value))

    def pop_first(self, path: str) -> None:
        self.add(ArrayPopFirst(path))

    def pop_last(self, path: str) -> None:
        self.add(ArrayPopLast(path))

    def full_replace(self, path: str, value: Any) -> None:
        self.add(FullReplace(path, value))

    @property
    def paths(self) -> List[str]:
        return [op.path for op in self._operations]

    def is_empty(self) -> bool:
        return not self._operations

    def __len__(self) -> int:
        return len(self._operations)

    def __iter__(self) -> Iterator[UpdateOperation]:
        return iter(list(self._operations))

    def __repr__(self) -> str:
        return f"ChangeSet({self._operations!r})"

    def to_update_document(self) -> Dict[str, Dict[str, Any]]:
        """Render the operations as a MongoDB update document ({} when empty)."""
        update: Dict[str, Dict[str, Any]] = {}

        for op in self._operations:
            if isinstance(op, (Set, FullReplace)):
                update.setdefault("$set", {})[op.path] = op.value
            elif isinstance(op, Unset):
                update.setdefault("$unset", {})[op.path] = ""
            elif isinstance(op, ArrayAppend):
                push = update.setdefault("$push", {})
                push.setdefault(op.path, {"$each": []})["$each"].append(op.value)
            elif isinstance(op, ArrayPopFirst):
                update.setdefault("$pop", {})[op.path] = -1
            elif isinstance(op, ArrayPopLast):
                update.setdefault("$pop", {})[op.path] = 1
            else:
                raise TypeError(f"Unknown update operation {type(op).__name__}")

        return update
