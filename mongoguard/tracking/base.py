"""Common interface of change-tracking wrappers."""

from abc import ABC, abstractmethod
from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .changeset import ChangeSet


class ChangeMonitor(ABC):
    """
    A wrapper that observes mutations of the value it wraps.

    Subclasses record deltas since the last clear_changes() and write them
    into a ChangeSet on set_changes().
    """

    @property
    @abstractmethod
    def target(self) -> Any:
        """The wrapped (plain) value."""

    @property
    @abstractmethod
    def has_changes(self) -> bool:
        pass

    @abstractmethod
    def set_changes(self, path: Optional[str], sink: "ChangeSet") -> None:
        """Write pending changes to sink, with paths prefixed by path."""

    @abstractmethod
    def clear_changes(self) -> None:
        pass

    @abstractmethod
    def dispose(self) -> None:
        """Release children and pending changes."""


def unwrap(value: Any) -> Any:
    """Return the plain value behind a tracking wrapper (or value itself)."""
    while isinstance(value, ChangeMonitor):
        value = value.target
    return value


def join_path(parent: Optional[str], name: str) -> str:
    return name if not parent else f"{parent}.{name}"
