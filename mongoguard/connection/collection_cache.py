"""Memo of collections known to exist, keyed by connection string."""

import threading
from typing import Set, Tuple

CollectionKey = Tuple[str, str, str]


class CollectionExistenceCache:
    """
    Thread-safe record of (connection string, database, collection) triples
    that exist or were created.

    Cleared for a connection string when failover re-resolves credentials,
    since the collection list may have been read under different credentials.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._known: Set[CollectionKey] = set()

    def exists(self, connection_string: str, database: str, collection: str) -> bool:
        with self._lock:
            return (connection_string, database, collection) in self._known

    def mark(self, connection_string: str, database: str, collection: str) -> None:
        with self._lock:
            self._known.add((connection_string, database, collection))

    def clear(self, connection_string: str) -> None:
        with self._lock:
            self._known = {key for key in self._known if key[0] != connection_string}

    def clear_all(self) -> None:
        with self._lock:
            self._known.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._known)
