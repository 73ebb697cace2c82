"""
Public change-tracking operations used by repositories.

    tracked = attach_change_tracking(user)
    tracked.name = "new"
    changes = commit_changes(tracked)      # ChangeSet([Set("name", "new")])
    collection.update_one({"_id": tracked.id}, changes.to_update_document())
    clear_changes(tracked)
"""

from typing import Any, Optional, TypeVar

from ..common.errors import ContractViolation
from .base import ChangeMonitor, unwrap
from .changeset import ChangeSet
from .wrappers import attach

T = TypeVar("T")


def attach_change_tracking(entity: T) -> Optional[Any]:
    """
    Wrap entity so its mutations are recorded.

    Already-tracked values are returned unchanged; None stays None.

    Raises:
        ContractViolation: If entity is neither a mapped entity nor a list
    """
    if entity is None:
        return None

    tracked = attach(entity)
    if tracked is None:
        raise ContractViolation(
            f"Cannot track {type(entity).__qualname__}: not a mapped entity or list"
        )
    return tracked


def get_monitor(value: Any) -> Optional[ChangeMonitor]:
    """The ChangeMonitor for value, or None if value is not tracked."""
    return value if isinstance(value, ChangeMonitor) else None


def is_tracked(value: Any) -> bool:
    return isinstance(value, ChangeMonitor)


def commit_changes(
    tracked: ChangeMonitor,
    parent_path: Optional[str] = None,
    sink: Optional[ChangeSet] = None,
) -> ChangeSet:
    """
    Write the pending changes of tracked into sink (a new ChangeSet by default).

    Changes are not cleared; call clear_changes() once the update succeeded.
    """
    monitor = get_monitor(tracked)
    if monitor is None:
        raise ContractViolation(f"{type(tracked).__qualname__} is not change-tracked")

    sink = sink if sink is not None else ChangeSet()
    monitor.set_changes(parent_path, sink)
    return sink


def has_changes(tracked: Any) -> bool:
    monitor = get_monitor(tracked)
    return monitor is not None and monitor.has_changes


def clear_changes(tracked: Any) -> None:
    monitor = get_monitor(tracked)
    if monitor is not None:
        monitor.clear_changes()


def dispose(tracked: Any) -> None:
    """Release a wrapper and all its children; later mutations through it raise."""
    monitor = get_monitor(tracked)
    if monitor is not None:
        monitor.dispose()


def untracked(value: Any) -> Any:
    """The plain value behind a wrapper."""
    return unwrap(value)
