"""
Driver seam between the resolver and pymongo.

The resolver only needs a handful of driver calls (connect, count instances,
list/create/get collections, close). Keeping them behind DatabaseDriver lets
tests inject a fake driver while production uses PyMongoDriver.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from pymongo import MongoClient
from pymongo.errors import AutoReconnect, CollectionInvalid

from .read_mode import ReadMode
from .url import MongoUrl

logger = logging.getLogger(__name__)

# AutoReconnect messages raised when the server closes the socket mid-read
_END_OF_STREAM_MESSAGES = ("connection closed", "connection reset", "unexpected eof")


def is_end_of_stream(exc: BaseException) -> bool:
    """True if exc means the network stream ended unexpectedly."""
    if isinstance(exc, EOFError):
        return True
    if isinstance(exc, AutoReconnect):
        message = str(exc).lower()
        return any(m in message for m in _END_OF_STREAM_MESSAGES)
    return False


class DatabaseDriver(ABC):
    """Operations the resolver needs from a MongoDB driver."""

    @abstractmethod
    def connect(self, url: MongoUrl, read_mode: Optional[ReadMode]) -> Any:
        """Create a client for url. May be lazy; errors can surface on first use."""
        pass

    @abstractmethod
    def get_database(self, client: Any, name: str, read_mode: Optional[ReadMode]) -> Any:
        pass

    @abstractmethod
    def server_instances(self, client: Any) -> int:
        """Force a round trip and return the number of known server instances."""
        pass

    @abstractmethod
    def collection_names(self, database: Any) -> List[str]:
        pass

    @abstractmethod
    def create_collection(self, database: Any, name: str) -> None:
        pass

    @abstractmethod
    def get_collection(self, database: Any, name: str) -> Any:
        pass

    @abstractmethod
    def close(self, client: Any) -> None:
        pass


class PyMongoDriver(DatabaseDriver):
    """DatabaseDriver backed by pymongo.MongoClient."""

    def __init__(self, **client_options):
        self._client_options = client_options

    def connect(self, url: MongoUrl, read_mode: Optional[ReadMode]) -> MongoClient:
        options = dict(self._client_options)
        if read_mode is not None:
            # read preference was cut out of the URL, so setting it here is safe
            options["readPreference"] = read_mode.value
        return MongoClient(str(url), **options)

    def get_database(self, client: MongoClient, name: str, read_mode: Optional[ReadMode]):
        if read_mode is None:
            return client.get_database(name)
        return client.get_database(name, read_preference=read_mode.to_pymongo())

    def server_instances(self, client: MongoClient) -> int:
        client.admin.command("ping")
        return max(len(client.nodes), 1)

    def collection_names(self, database) -> List[str]:
        return database.list_collection_names()

    def create_collection(self, database, name: str) -> None:
        try:
            database.create_collection(name)
        except CollectionInvalid:
            # created concurrently by another process
            logger.debug(f"Collection '{name}' already exists")

    def get_collection(self, database, name: str):
        return database.get_collection(name)

    def close(self, client: MongoClient) -> None:
        client.close()
