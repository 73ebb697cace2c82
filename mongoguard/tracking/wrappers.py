"""
Change-tracking wrappers.

TrackedObject wraps a mapped entity and TrackedList wraps a list. Reads go
through to the wrapped value; nested entities and lists come back wrapped
(attached lazily, one child per attribute) so that mutations anywhere in the
graph are observed:

    tracked = TrackedObject(user)
    tracked.name = "new"            # dirty leaf: Set("name", "new")
    tracked.address.city = "Paris"  # child change: Set("address.city", "Paris")
    tracked.tags.append("y")        # list op: ArrayAppend("tags", "y")

Mutations made on the plain entity behind the wrapper's back are only seen
for tuples, bytes, arrays and dicts, which are compared against a snapshot
taken at attach/clear time.
"""

import copy
import logging
import threading
from collections.abc import MutableSequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..common.errors import ContractViolation, UnmappedMemberError
from .base import ChangeMonitor, join_path, unwrap
from .changeset import ChangeSet
from .mapping import class_map, element_name, is_array_like, is_wrappable, to_document

logger = logging.getLogger(__name__)


def attach(value: Any) -> Optional[ChangeMonitor]:
    """Wrap value if it is a mapped entity or a list, else return None."""
    if isinstance(value, ChangeMonitor):
        return value
    if isinstance(value, list):
        return TrackedList(value)
    if is_wrappable(value):
        return TrackedObject(value)
    return None


def arrays_equal(left: Any, right: Any) -> bool:
    """
    Value equality for snapshot comparison.

    Two arrays are the same only if they have the same length and every
    element compares equal; a missing side is always different.
    """
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, dict) or isinstance(right, dict):
        return left == right
    if len(left) != len(right):
        return False
    return all(a == b for a, b in zip(left, right))


def _is_reordered(old_items: list, new_items: list) -> bool:
    # an instance already in the list at another index cannot be merged in place
    positions = {id(item): index for index, item in enumerate(old_items) if is_wrappable(item)}
    return any(positions.get(id(item), index) != index for index, item in enumerate(new_items))


class _ValueResult(Enum):
    CHANGED = "changed"
    NOT_CHANGED = "not_changed"


class TrackedObject(ChangeMonitor):
    """
    Attribute-level change tracking for a mapped entity.

    Setting a mapped attribute records it as dirty unless the new value equals
    the old one. When old and new are both entities, fields are copied from
    new into old one by one instead, so only leaf-level differences end up in
    the ChangeSet. Setting an unmapped attribute raises UnmappedMemberError.
    """

    __slots__ = ("_target", "_type", "_members", "_lock", "_dirty", "_children", "_snapshots", "_disposed")

    def __init__(self, target: Any):
        target = unwrap(target)
        members = class_map(type(target))
        if not members:
            raise ContractViolation(f"Type {type(target).__qualname__} has no class map and cannot be tracked")

        object.__setattr__(self, "_target", target)
        object.__setattr__(self, "_type", type(target))
        object.__setattr__(self, "_members", members)
        object.__setattr__(self, "_lock", threading.RLock())
        # attribute -> None; a dict keeps the order attributes became dirty
        object.__setattr__(self, "_dirty", {})
        object.__setattr__(self, "_children", {})
        object.__setattr__(self, "_snapshots", {})
        object.__setattr__(self, "_disposed", False)
        self._take_snapshots()

    # ===== ChangeMonitor =====

    @property
    def target(self) -> Any:
        return self._target

    @property
    def dirty_attributes(self) -> List[str]:
        with self._lock:
            return list(self._dirty)

    @property
    def has_changes(self) -> bool:
        if self._disposed:
            return False

        with self._lock:
            if self._dirty:
                return True
            snapshots = list(self._snapshots.items())

        for attribute, snapshot in snapshots:
            if not arrays_equal(getattr(self._target, attribute, None), snapshot):
                return True

        return any(child.has_changes for _, child in self._live_children())

    def set_changes(self, path: Optional[str], sink: ChangeSet) -> None:
        if self._disposed:
            return

        with self._lock:
            dirty = list(self._dirty)
            snapshots = list(self._snapshots.items())

        # 1. dirty leaves
        for attribute in dirty:
            field_path = join_path(path, element_name(self._type, attribute))
            value = getattr(self._target, attribute, None)
            if value is None:
                sink.unset(field_path)
            else:
                sink.set(field_path, to_document(value))

        # 2. arrays compared against their snapshot
        for attribute, snapshot in snapshots:
            if attribute in dirty:
                continue
            value = getattr(self._target, attribute, None)
            if arrays_equal(value, snapshot):
                continue
            field_path = join_path(path, element_name(self._type, attribute))
            if value is None:
                sink.unset(field_path)
            else:
                sink.full_replace(field_path, to_document(value))

        # 3. children still attached to the current value
        for attribute, child in self._live_children():
            if attribute in dirty:
                continue
            child.set_changes(join_path(path, element_name(self._type, attribute)), sink)

    def clear_changes(self) -> None:
        with self._lock:
            self._dirty.clear()
            children = list(self._children.items())
        for attribute, child in children:
            if getattr(self._target, attribute, None) is child.target:
                child.clear_changes()
            else:
                self._drop_child(attribute, child)
        self._take_snapshots()

    def dispose(self) -> None:
        with self._lock:
            children = list(self._children.values())
            self._children.clear()
            self._dirty.clear()
            self._snapshots.clear()
            object.__setattr__(self, "_disposed", True)
        for child in children:
            child.dispose()

    # ===== attribute interception =====

    def __getattr__(self, name: str) -> Any:
        # only called for names that are not slots
        if name in TrackedObject.__slots__ or (name.startswith("__") and name.endswith("__")):
            raise AttributeError(name)

        value = getattr(self._target, name)
        if name not in self._members or self._disposed:
            return value

        child = self._child_for(name, value)
        return child if child is not None else value

    def __setattr__(self, name: str, value: Any) -> None:
        if name not in self._members:
            raise UnmappedMemberError(f"{self._type.__module__}.{self._type.__qualname__}", name)
        if self._disposed:
            raise ContractViolation(f"Cannot set '{name}' on a disposed tracked {self._type.__qualname__}")

        new_value = unwrap(value)
        if isinstance(new_value, list) and any(isinstance(item, ChangeMonitor) for item in new_value):
            new_value = [unwrap(item) for item in new_value]
        old_value = getattr(self._target, name, None)

        if self._compare_and_merge(name, old_value, new_value) is _ValueResult.NOT_CHANGED:
            return

        with self._lock:
            self._dirty[name] = None
            child = self._children.get(name)
        if child is not None:
            self._drop_child(name, child)
        setattr(self._target, name, new_value)

    def __delattr__(self, name: str) -> None:
        raise ContractViolation(f"Cannot delete '{name}' from a tracked {self._type.__qualname__}; set it to None")

    def __eq__(self, other: Any) -> bool:
        return self._target == unwrap(other)

    __hash__ = None

    def __repr__(self) -> str:
        return f"TrackedObject({self._target!r})"

    def assign_from(self, source: Any) -> None:
        """Copy every mapped attribute of source into the tracked entity."""
        source = unwrap(source)
        for attribute in self._members:
            if hasattr(source, attribute):
                setattr(self, attribute, getattr(source, attribute))

    # ===== internals =====

    def _compare_and_merge(self, name: str, old_value: Any, new_value: Any) -> _ValueResult:
        if old_value is new_value or old_value == new_value:
            return _ValueResult.NOT_CHANGED

        if old_value is None or new_value is None:
            return _ValueResult.CHANGED

        if is_wrappable(new_value) and is_wrappable(old_value):
            # copy field by field into the existing instance
            child = self._child_for(name, old_value)
            child.assign_from(new_value)
            return _ValueResult.NOT_CHANGED

        if isinstance(old_value, list) and isinstance(new_value, list):
            if len(old_value) != len(new_value) or _is_reordered(old_value, new_value):
                return _ValueResult.CHANGED
            child = self._child_for(name, old_value)
            for index, item in enumerate(new_value):
                child[index] = item
            return _ValueResult.NOT_CHANGED

        return _ValueResult.CHANGED

    def _child_for(self, name: str, value: Any) -> Optional[ChangeMonitor]:
        if value is None:
            return None

        with self._lock:
            child = self._children.get(name)
            if child is not None and child.target is value:
                return child

            if child is not None:
                # replaced on the plain entity; the old child is stale
                self._children.pop(name, None)
            new_child = attach(value) if not is_array_like(value) else None
            if new_child is not None:
                self._children[name] = new_child

        if child is not None:
            child.dispose()
        return new_child

    def _drop_child(self, name: str, child: ChangeMonitor) -> None:
        with self._lock:
            if self._children.get(name) is child:
                del self._children[name]
        child.dispose()

    def _live_children(self) -> List[tuple]:
        with self._lock:
            children = list(self._children.items())
        return [
            (attribute, child)
            for attribute, child in children
            if getattr(self._target, attribute, None) is child.target
        ]

    def _take_snapshots(self) -> None:
        snapshots = {}
        for attribute in self._members:
            value = getattr(self._target, attribute, None)
            if is_array_like(value):
                snapshots[attribute] = copy.deepcopy(value)
        with self._lock:
            self._snapshots.clear()
            self._snapshots.update(snapshots)


class ListOperationType(str, Enum):
    APPEND = "append"
    POP_FIRST = "pop_first"
    POP_LAST = "pop_last"
    INDEX_SET = "index_set"


@dataclass(frozen=True)
class ListOperation:
    kind: ListOperationType
    value: Any = None
    index: Optional[int] = None


class TrackedList(MutableSequence, ChangeMonitor):
    """
    Change tracking for a list.

    append/extend queue appends, pop() queues a pop-last, removing index 0
    queues a pop-first and assigning an index queues an index set (or merges
    field by field when old and new items are both entities). Any other
    structural change (insert, clear, remove, removing another index, slice
    assignment, sort, reverse) drops the queued operations in favour of a
    single full replace of the list.
    """

    def __init__(self, target: List[Any]):
        target = unwrap(target)
        if not isinstance(target, list):
            raise ContractViolation(f"TrackedList needs a list, got {type(target).__qualname__}")

        self._target = target
        self._lock = threading.RLock()
        self._operations: List[ListOperation] = []
        self._full_replace = False
        # id(item) -> child; the child keeps the item alive so ids stay unique
        self._children: Dict[int, ChangeMonitor] = {}
        self._disposed = False

    # ===== ChangeMonitor =====

    @property
    def target(self) -> List[Any]:
        return self._target

    @property
    def pending_operations(self) -> List[ListOperation]:
        with self._lock:
            return list(self._operations)

    @property
    def has_full_replace(self) -> bool:
        with self._lock:
            return self._full_replace

    @property
    def has_changes(self) -> bool:
        if self._disposed:
            return False
        with self._lock:
            if self._full_replace or self._operations:
                return True
        return any(child.has_changes for _, child in self._live_children())

    def set_changes(self, path: Optional[str], sink: ChangeSet) -> None:
        if self._disposed:
            return
        if not path:
            raise ContractViolation("A tracked list can only commit under a field path")

        with self._lock:
            full_replace = self._full_replace
            operations = list(self._operations)

        changed_items = [] if full_replace else [
            (index, child) for index, child in self._live_children() if child.has_changes
        ]

        if full_replace or self._conflicting(operations, changed_items):
            sink.full_replace(path, to_document(self._target))
            return

        replaced = {op.index for op in operations if op.kind is ListOperationType.INDEX_SET}
        for index, child in changed_items:
            if index not in replaced:
                child.set_changes(join_path(path, str(index)), sink)

        for op in operations:
            if op.kind is ListOperationType.APPEND:
                sink.append(path, to_document(op.value))
            elif op.kind is ListOperationType.POP_FIRST:
                sink.pop_first(path)
            elif op.kind is ListOperationType.POP_LAST:
                sink.pop_last(path)
            else:
                index_path = join_path(path, str(op.index))
                if op.value is None:
                    sink.unset(index_path)
                else:
                    sink.set(index_path, to_document(op.value))

    @staticmethod
    def _conflicting(operations: List[ListOperation], changed_items: List[tuple]) -> bool:
        """True if the operations cannot be sent as one update without path conflicts."""
        kinds = {op.kind for op in operations}
        if changed_items:
            kinds.add(ListOperationType.INDEX_SET)
        if len(kinds) > 1:
            return True
        pops = sum(1 for op in operations if op.kind in (ListOperationType.POP_FIRST, ListOperationType.POP_LAST))
        return pops > 1

    def clear_changes(self) -> None:
        with self._lock:
            self._operations.clear()
            self._full_replace = False
            live = dict((id(child.target), child) for _, child in self._live_children_unlocked())
            stale = [child for key, child in self._children.items() if key not in live]
            self._children = live
        for child in live.values():
            child.clear_changes()
        for child in stale:
            child.dispose()

    def dispose(self) -> None:
        with self._lock:
            children = list(self._children.values())
            self._children.clear()
            self._operations.clear()
            self._full_replace = False
            self._disposed = True
        for child in children:
            child.dispose()

    # ===== MutableSequence =====

    def __len__(self) -> int:
        return len(self._target)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return self._target[index]

        value = self._target[index]
        if self._disposed or value is None:
            return value
        child = self._child_for(value)
        return child if child is not None else value

    def __iter__(self):
        for index in range(len(self._target)):
            yield self[index]

    def __setitem__(self, index, value) -> None:
        if isinstance(index, slice):
            self._enqueue_full_replace()
            self._target[index] = [unwrap(v) for v in value]
            return

        index = self._normalize(index)
        new_value = unwrap(value)
        old_value = self._target[index]

        if old_value is new_value or old_value == new_value:
            return

        if (
            old_value is not None
            and new_value is not None
            and is_wrappable(old_value)
            and is_wrappable(new_value)
            and not any(item is new_value for item in self._target)
        ):
            self._child_for(old_value).assign_from(new_value)
            return

        self._enqueue(ListOperation(ListOperationType.INDEX_SET, new_value, index))
        self._target[index] = new_value

    def __delitem__(self, index) -> None:
        if isinstance(index, slice):
            self._enqueue_full_replace()
            del self._target[index]
            return

        index = self._normalize(index)
        if index == 0:
            self._enqueue(ListOperation(ListOperationType.POP_FIRST))
        else:
            self._enqueue_full_replace()
        del self._target[index]

    def insert(self, index: int, value: Any) -> None:
        self._enqueue_full_replace()
        self._target.insert(index, unwrap(value))

    def append(self, value: Any) -> None:
        value = unwrap(value)
        self._enqueue(ListOperation(ListOperationType.APPEND, value))
        self._target.append(value)

    def pop(self, index: int = -1) -> Any:
        if index == -1 and self._target:
            value = self._target[-1]
            self._enqueue(ListOperation(ListOperationType.POP_LAST))
            self._target.pop()
            return value
        value = self._target[index]
        del self[index]
        return value

    def remove(self, value: Any) -> None:
        index = self._target.index(unwrap(value))
        self._enqueue_full_replace()
        del self._target[index]

    def clear(self) -> None:
        self._enqueue_full_replace()
        self._target.clear()

    def reverse(self) -> None:
        self._enqueue_full_replace()
        self._target.reverse()

    def sort(self, *args, **kwargs) -> None:
        self._enqueue_full_replace()
        self._target.sort(*args, **kwargs)

    def __eq__(self, other: Any) -> bool:
        return self._target == unwrap(other)

    __hash__ = None

    def __repr__(self) -> str:
        return f"TrackedList({self._target!r})"

    # ===== internals =====

    def _normalize(self, index: int) -> int:
        length = len(self._target)
        normalized = index + length if index < 0 else index
        if not 0 <= normalized < length:
            raise IndexError("list index out of range")
        return normalized

    def _enqueue(self, operation: ListOperation) -> None:
        if self._disposed:
            raise ContractViolation("Cannot modify a disposed tracked list")
        with self._lock:
            if not self._full_replace:
                self._operations.append(operation)

    def _enqueue_full_replace(self) -> None:
        if self._disposed:
            raise ContractViolation("Cannot modify a disposed tracked list")
        with self._lock:
            self._operations.clear()
            self._full_replace = True

    def _child_for(self, value: Any) -> Optional[ChangeMonitor]:
        with self._lock:
            child = self._children.get(id(value))
            if child is not None and child.target is value:
                return child
            child = attach(value) if not is_array_like(value) else None
            if child is not None:
                self._children[id(value)] = child
            return child

    def _live_children_unlocked(self) -> Iterable[tuple]:
        for index, item in enumerate(self._target):
            child = self._children.get(id(item))
            if child is not None and child.target is item:
                yield index, child

    def _live_children(self) -> List[tuple]:
        with self._lock:
            return list(self._live_children_unlocked())
