"""
Connection resolver and failover state machine.

Turns a logical connection string (literal URL or configured name) plus an
optional read mode into a live ConnectionHandle. When the replica set is
degraded (mid-election, no writable primary, credentials rejected while a
member is recovering) the resolver walks through three connection
strategies before giving up:

    FIRST_ATTEMPT    -> URL as configured (decrypted password if possible)
    RETRY_NO_AUTH    -> same URL with the credentials stripped
    RETRY_WITH_AUTH  -> caches cleared, URL re-resolved from source

A failure in RETRY_WITH_AUTH is fatal and surfaces as FatalConnectionError
carrying the server list, database, user and durability mode.

Separately, an unexpected end of stream during FIRST_ATTEMPT resets only the
handle and starts over, at most END_OF_STREAM_RETRIES times.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

from pymongo.errors import PyMongoError

from ..common.config import Config
from ..common.error_handling import ErrorContext
from ..common.errors import ConfigurationError, FatalConnectionError
from .collection_cache import CollectionExistenceCache
from .driver import DatabaseDriver, PyMongoDriver, is_end_of_stream
from .read_mode import ReadMode, read_mode_tag
from .url import MongoUrl
from .url_cache import UrlCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

END_OF_STREAM_RETRIES = 3
END_OF_STREAM_SLEEP_SECONDS = 0.1


class FailoverState(str, Enum):
    """Connection strategy currently being tried."""
    FIRST_ATTEMPT = "first_attempt"
    RETRY_NO_AUTH = "retry_no_auth"
    RETRY_WITH_AUTH = "retry_with_auth"


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Everything needed to (re)build a handle for one read mode."""

    connection_string: str
    url: MongoUrl
    read_mode: Optional[ReadMode] = None
    socket_timeout: Optional[float] = None

    @property
    def user(self) -> Optional[str]:
        return self.url.username


@dataclass(frozen=True)
class ConnectionHandle:
    """A live client and database for one descriptor. Rebuilt, never mutated."""

    descriptor: ConnectionDescriptor
    client: Any
    database: Any

    @property
    def read_mode(self) -> Optional[ReadMode]:
        return self.descriptor.read_mode


class ConnectionResolver:
    """
    Resolves a logical connection string into live handles, one per read mode.

    Handles are built on first use through resolve_handle()/act_on_database()
    and dropped on every failover transition, timeout change or invalidate().
    A dropped handle may still be in use by another thread, so its client is
    only retired; retired clients are closed by close().
    The URL cache and the collection-existence cache are injected so every
    resolver for the same connection string can share them.
    """

    def __init__(
        self,
        connection_string: str,
        driver: Optional[DatabaseDriver] = None,
        url_cache: Optional[UrlCache] = None,
        collection_cache: Optional[CollectionExistenceCache] = None,
        database: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not connection_string:
            raise ConfigurationError("Connection string or name is required")

        self._connection_string = connection_string
        self._driver = driver or PyMongoDriver()
        self._url_cache = url_cache if url_cache is not None else UrlCache()
        self._collection_cache = collection_cache if collection_cache is not None else CollectionExistenceCache()
        self._database_name = database
        self._sleep = sleep

        self._lock = threading.RLock()
        self._handles: Dict[Optional[ReadMode], ConnectionHandle] = {}
        self._retired: List[ConnectionHandle] = []
        self._server_instances: Optional[int] = None
        self._timeout: Optional[float] = None

    @property
    def connection_string(self) -> str:
        return self._connection_string

    @property
    def url_cache(self) -> UrlCache:
        return self._url_cache

    @property
    def collection_cache(self) -> CollectionExistenceCache:
        return self._collection_cache

    @property
    def timeout(self) -> Optional[float]:
        """Per-call socket timeout in seconds (None = driver default)."""
        return self._timeout

    @timeout.setter
    def timeout(self, value: Optional[float]) -> None:
        if value == self._timeout:
            return
        self._timeout = value
        self.invalidate()

    @property
    def server_instances(self) -> int:
        """Number of server instances in the topology (cached until the next reset)."""
        if self._server_instances is None:
            self._server_instances = self.act_on_database(
                lambda handle: self._driver.server_instances(handle.client)
            )
        return self._server_instances

    def is_connected(self, read_mode: Optional[ReadMode] = None) -> bool:
        with self._lock:
            return read_mode in self._handles

    def resolve_handle(self, read_mode: Optional[ReadMode] = None) -> ConnectionHandle:
        """Return a live handle for read_mode, connecting (with failover) if needed."""
        return self.act_on_database(lambda handle: handle, read_mode)

    def get_collection(self, name: str, read_mode: Optional[ReadMode] = None) -> Any:
        """
        Get a collection, creating it the first time it is seen.

        Creation is memoized in the collection-existence cache so the
        collection list is only read once per connection string.
        """
        return self.act_on_database(lambda handle: self._ensure_collection(handle, name), read_mode)

    def act_on_database(self, act: Callable[[ConnectionHandle], T], read_mode: Optional[ReadMode] = None) -> T:
        """
        Run act against a live handle, walking the failover state machine on
        driver errors.

        Raises:
            FatalConnectionError: When every failover branch failed
            ConfigurationError: When the connection string cannot be resolved
        """
        url: Optional[MongoUrl] = None
        state = FailoverState.FIRST_ATTEMPT
        end_of_stream_count = 0

        while True:
            try:
                handle = self._get_handle(read_mode)
                if handle is None:
                    if url is None:
                        url = self._url_cache.get_url(self._connection_string, read_mode, self._timeout)
                    handle = self._build_handle(url, read_mode)
                elif url is None:
                    url = handle.descriptor.url

                result = act(handle)

                if state is not FailoverState.FIRST_ATTEMPT:
                    # skip the failed branches on subsequent calls
                    self._url_cache.update_url(self._connection_string, read_mode, url)
                    logger.info(
                        f"Connected to {','.join(url.servers)} after failover "
                        f"({state.value}, [{read_mode_tag(read_mode)}])"
                    )

                return result

            except (PyMongoError, EOFError) as e:
                if url is None:
                    raise

                if is_end_of_stream(e):
                    if state is FailoverState.FIRST_ATTEMPT and end_of_stream_count < END_OF_STREAM_RETRIES:
                        logger.warning(
                            f"Stream ended unexpectedly talking to {','.join(url.servers)}, "
                            f"resetting connection (attempt {end_of_stream_count + 1}/{END_OF_STREAM_RETRIES})"
                        )
                        self._reset(read_mode)
                        self._sleep(end_of_stream_count * END_OF_STREAM_SLEEP_SECONDS)
                        end_of_stream_count += 1
                        continue
                    raise

                if state is FailoverState.FIRST_ATTEMPT:
                    state = FailoverState.RETRY_NO_AUTH
                    url = url.without_credentials()
                elif state is FailoverState.RETRY_NO_AUTH:
                    state = FailoverState.RETRY_WITH_AUTH
                    self._collection_cache.clear(self._connection_string)
                    self._url_cache.clear(self._connection_string, read_mode)
                    url = self._url_cache.get_url(self._connection_string, read_mode, self._timeout)
                else:
                    context = self._error_context(url, state)
                    logger.error(f"Failover exhausted: {context.to_dict()}")
                    raise FatalConnectionError(context) from e

                logger.warning(
                    f"Connection to {','.join(url.servers)} failed "
                    f"({type(e).__name__}: {e}), trying {state.value} [{read_mode_tag(read_mode)}]"
                )
                self._reset(read_mode)

    def invalidate(self) -> None:
        """Drop every handle and cached topology metadata; rebuilt on next use."""
        with self._lock:
            self._retired.extend(self._handles.values())
            self._handles.clear()
            self._server_instances = None

    def close(self) -> None:
        """Close every client this resolver has built, live or retired."""
        self.invalidate()
        with self._lock:
            retired, self._retired = self._retired, []
        for handle in retired:
            self._close_client(handle)

    def __enter__(self) -> "ConnectionResolver":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _get_handle(self, read_mode: Optional[ReadMode]) -> Optional[ConnectionHandle]:
        with self._lock:
            return self._handles.get(read_mode)

    def _build_handle(self, url: MongoUrl, read_mode: Optional[ReadMode]) -> ConnectionHandle:
        descriptor = ConnectionDescriptor(
            connection_string=self._connection_string,
            url=url,
            read_mode=read_mode,
            socket_timeout=self._timeout,
        )
        client = self._driver.connect(url, read_mode)
        handle = ConnectionHandle(
            descriptor=descriptor,
            client=client,
            database=self._driver.get_database(client, self._resolve_database_name(url), read_mode),
        )

        with self._lock:
            previous = self._handles.get(read_mode)
            self._handles[read_mode] = handle
            if previous is not None:
                self._retired.append(previous)

        logger.debug(f"Built connection handle [{read_mode_tag(read_mode)}] for {url.redacted()}")
        return handle

    def _resolve_database_name(self, url: MongoUrl) -> str:
        name = self._database_name or url.database or Config.MONGODB_DATABASE
        if not name:
            raise ConfigurationError(
                f"No database name in connection string {url.redacted()} and MONGODB_DATABASE is not set"
            )
        return name

    def _reset(self, read_mode: Optional[ReadMode]) -> None:
        with self._lock:
            handle = self._handles.pop(read_mode, None)
            self._server_instances = None
            if handle is not None:
                self._retired.append(handle)

    def _close_client(self, handle: ConnectionHandle) -> None:
        try:
            self._driver.close(handle.client)
        except PyMongoError as e:
            logger.debug(f"Error closing client for {handle.descriptor.url.redacted()}: {e}")

    def _ensure_collection(self, handle: ConnectionHandle, name: str) -> Any:
        database_name = self._resolve_database_name(handle.descriptor.url)
        if not self._collection_cache.exists(self._connection_string, database_name, name):
            if name not in self._driver.collection_names(handle.database):
                logger.info(f"Creating collection {database_name}.{name}")
                self._driver.create_collection(handle.database, name)
            self._collection_cache.mark(self._connection_string, database_name, name)
        return self._driver.get_collection(handle.database, name)

    def _error_context(self, url: MongoUrl, state: FailoverState) -> ErrorContext:
        return ErrorContext(
            servers=url.servers,
            database=self._database_name or url.database or Config.MONGODB_DATABASE or None,
            user=url.username,
            durability=url.durability,
            connection_string=url.redacted(),
            state=state.value,
        )
