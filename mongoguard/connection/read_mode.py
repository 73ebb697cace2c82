"""Read modes and the repository-facing read preference."""

from enum import Enum
from typing import Optional

from pymongo import ReadPreference as ServerReadPreference


class ReadMode(str, Enum):
    """Class of node a read targets. None means "whatever the URL says"."""
    PRIMARY = "primary"
    SECONDARY_PREFERRED = "secondaryPreferred"

    def to_pymongo(self):
        if self is ReadMode.PRIMARY:
            return ServerReadPreference.PRIMARY
        return ServerReadPreference.SECONDARY_PREFERRED


class ReadPreference(str, Enum):
    """How committed the data a repository reads must be."""
    DEFAULT = "default"
    MUST_BE_COMMITTED = "must_be_committed"
    DIRTY_OK = "dirty_ok"

    @property
    def read_mode(self) -> Optional[ReadMode]:
        if self is ReadPreference.MUST_BE_COMMITTED:
            return ReadMode.PRIMARY
        if self is ReadPreference.DIRTY_OK:
            return ReadMode.SECONDARY_PREFERRED
        return None


def read_mode_tag(read_mode: Optional[ReadMode]) -> str:
    """Label used in cache keys and log prefixes."""
    return read_mode.value if read_mode is not None else "default"
