"""
Change tracking for entities: observe in-place mutations and turn them into
the minimal set of field-level update operations.
"""

from .base import ChangeMonitor
from .changeset import (
    ArrayAppend,
    ArrayPopFirst,
    ArrayPopLast,
    ChangeSet,
    FullReplace,
    Set,
    Unset,
    UpdateOperation,
)
from .mapping import (
    class_map,
    element_name,
    from_document,
    mapped_field,
    register_class_map,
    to_document,
)
from .tracker import (
    attach_change_tracking,
    clear_changes,
    commit_changes,
    dispose,
    get_monitor,
    has_changes,
    is_tracked,
    untracked,
)
from .wrappers import TrackedList, TrackedObject, arrays_equal

__all__ = [
    "ArrayAppend",
    "ArrayPopFirst",
    "ArrayPopLast",
    "ChangeMonitor",
    "ChangeSet",
    "FullReplace",
    "Set",
    "TrackedList",
    "TrackedObject",
    "Unset",
    "UpdateOperation",
    "arrays_equal",
    "attach_change_tracking",
    "class_map",
    "clear_changes",
    "commit_changes",
    "dispose",
    "element_name",
    "from_document",
    "get_monitor",
    "has_changes",
    "is_tracked",
    "mapped_field",
    "register_class_map",
    "to_document",
    "untracked",
]
