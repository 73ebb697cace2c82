"""
Connection string to URL cache.

One UrlCache is normally shared by every resolver in a process (see
repositories.config.get_repository), but it is an ordinary object: tests and
callers needing isolation construct their own.
"""

import logging
import threading
from typing import Dict, Optional, Tuple

from .read_mode import ReadMode, read_mode_tag
from .secrets import SecretDecryptor
from .url import MongoUrl, remove_read_preference, resolve_connection_string

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, Optional[ReadMode]]


class UrlCache:
    """
    Thread-safe (connection string x read mode) -> MongoUrl cache.

    Every read-modify-write happens under a single lock. Cached MongoUrl
    objects are immutable, so the same instance is handed to every caller.
    """

    def __init__(self, decryptor: Optional[SecretDecryptor] = None):
        self._decryptor = decryptor
        self._lock = threading.Lock()
        self._urls: Dict[CacheKey, MongoUrl] = {}

    def get_url(
        self,
        connection_string: str,
        read_mode: Optional[ReadMode] = None,
        socket_timeout: Optional[float] = None,
    ) -> MongoUrl:
        """
        Get the URL for a connection string and read mode, parsing it once.

        Args:
            connection_string: Literal mongodb:// URL or a configured name
            read_mode: Read mode the URL will be used with (None = URL default)
            socket_timeout: Per-call socket timeout override in seconds

        Returns:
            The cached MongoUrl, or a derived copy when socket_timeout is given
            (derived copies are never cached)
        """
        key = (connection_string, read_mode)
        with self._lock:
            url = self._urls.get(key)
            if url is None:
                url = self._load(connection_string, read_mode)
                self._urls[key] = url

        if socket_timeout is not None:
            return url.with_socket_timeout(socket_timeout)
        return url

    def _load(self, connection_string: str, read_mode: Optional[ReadMode]) -> MongoUrl:
        raw = resolve_connection_string(connection_string)
        if read_mode is not None:
            # re-applied structurally by the driver
            raw = remove_read_preference(raw)

        url = MongoUrl.parse(raw)
        if self._decryptor is not None and url.username and url.password:
            url = url.with_credentials(url.username, self._decrypt(url.username, url.password))

        logger.debug(f"Resolved URL for [{read_mode_tag(read_mode)}]: {url.redacted()}")
        return url

    def _decrypt(self, username: str, secret: str) -> str:
        try:
            return self._decryptor.decrypt(username, secret)
        except Exception as e:
            # plain-text passwords are valid too
            logger.debug(f"Password for user '{username}' not decrypted, using as-is: {type(e).__name__}")
            return secret

    def update_url(
        self,
        connection_string: str,
        read_mode: Optional[ReadMode],
        url: MongoUrl,
    ) -> None:
        """Remember the URL variant that connected (socket timeout removed)."""
        stored = url.with_socket_timeout(None) if url.socket_timeout is not None else url
        with self._lock:
            self._urls[(connection_string, read_mode)] = stored
        logger.debug(f"Updated cached URL for [{read_mode_tag(read_mode)}]: {stored.redacted()}")

    def clear(self, connection_string: str, read_mode: Optional[ReadMode] = None) -> None:
        """Drop one cache entry so the next get_url re-resolves from source."""
        with self._lock:
            self._urls.pop((connection_string, read_mode), None)

    def invalidate(self, connection_string: str) -> None:
        """Drop every read-mode entry for a connection string."""
        with self._lock:
            for key in [k for k in self._urls if k[0] == connection_string]:
                del self._urls[key]

    def clear_all(self) -> None:
        with self._lock:
            self._urls.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._urls)

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._urls
