"""
Repository Configuration and Factory

Provides factory functions returning repositories that share one URL cache,
one collection-existence cache and one resolver per connection string.
"""

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Type

from ..common.config import Config
from ..common.logger import setup_logging
from ..connection.collection_cache import CollectionExistenceCache
from ..connection.resolver import ConnectionResolver
from ..connection.secrets import FernetSecretDecryptor
from ..connection.url_cache import UrlCache
from .mongo_repository import MongoRepository

logger = logging.getLogger(__name__)


@dataclass
class RepositoryConfig:
    """
    Configuration for repository initialization.

    Loaded from environment variables with sensible defaults.
    """
    # Connection string or configured connection name (required)
    connection_string: str

    database: Optional[str] = None
    secret_key: Optional[str] = None
    socket_timeout: Optional[float] = None

    auto_commit: bool = True
    enable_change_tracking: bool = True
    delete_batch_size: int = 100

    # root logging is left alone unless a level is configured
    log_level: Optional[str] = None
    log_format: str = "simple"

    @classmethod
    def from_env(cls) -> "RepositoryConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - MONGODB_URI (required): connection string or connection name
        - MONGODB_DATABASE: database name when the URI has none
        - MONGOGUARD_SECRET_KEY: Fernet key for encrypted passwords
        - MONGOGUARD_SOCKET_TIMEOUT: per-call socket timeout in seconds
        - MONGOGUARD_AUTO_COMMIT: apply writes immediately (true/false)
        - MONGOGUARD_ENABLE_CHANGE_TRACKING: track entities returned by reads
        - MONGOGUARD_DELETE_BATCH_SIZE: keys per batched delete
        - MONGOGUARD_LOG_LEVEL: configure root logging at this level
        - MONGOGUARD_LOG_FORMAT: "simple" or "json"

        Returns:
            RepositoryConfig instance

        Raises:
            ValueError: If MONGODB_URI is not set
        """
        connection_string = os.getenv("MONGODB_URI")
        if not connection_string:
            raise ValueError("MONGODB_URI environment variable is required")

        timeout_str = os.getenv("MONGOGUARD_SOCKET_TIMEOUT", "")
        try:
            socket_timeout = float(timeout_str) if timeout_str else None
        except ValueError:
            logger.warning(f"Invalid MONGOGUARD_SOCKET_TIMEOUT '{timeout_str}', using the driver default")
            socket_timeout = None

        batch_size_str = os.getenv("MONGOGUARD_DELETE_BATCH_SIZE", "100")
        try:
            delete_batch_size = int(batch_size_str)
        except ValueError:
            logger.warning(f"Invalid MONGOGUARD_DELETE_BATCH_SIZE '{batch_size_str}', defaulting to 100")
            delete_batch_size = 100

        return cls(
            connection_string=connection_string,
            database=os.getenv("MONGODB_DATABASE") or None,
            secret_key=os.getenv("MONGOGUARD_SECRET_KEY") or None,
            socket_timeout=socket_timeout,
            auto_commit=os.getenv("MONGOGUARD_AUTO_COMMIT", "true").lower() == "true",
            enable_change_tracking=os.getenv("MONGOGUARD_ENABLE_CHANGE_TRACKING", "true").lower() == "true",
            delete_batch_size=delete_batch_size,
            log_level=os.getenv("MONGOGUARD_LOG_LEVEL") or None,
            log_format=os.getenv("MONGOGUARD_LOG_FORMAT", "simple"),
        )


_lock = threading.Lock()
_url_cache: Optional[UrlCache] = None
_collection_cache: Optional[CollectionExistenceCache] = None
_resolvers: Dict[str, ConnectionResolver] = {}
_repositories: Dict[Tuple[str, str, Optional[type]], MongoRepository] = {}


def get_shared_caches(secret_key: Optional[str] = None) -> Tuple[UrlCache, CollectionExistenceCache]:
    """Process-wide URL and collection-existence caches used by the factory."""
    global _url_cache, _collection_cache

    with _lock:
        if _url_cache is None:
            key = secret_key or Config.SECRET_KEY or None
            _url_cache = UrlCache(decryptor=FernetSecretDecryptor(key) if key else None)
        if _collection_cache is None:
            _collection_cache = CollectionExistenceCache()
        return _url_cache, _collection_cache


def get_resolver(config: Optional[RepositoryConfig] = None) -> ConnectionResolver:
    """Get the shared resolver for a connection string."""
    config = config or RepositoryConfig.from_env()
    url_cache, collection_cache = get_shared_caches(config.secret_key)

    with _lock:
        resolver = _resolvers.get(config.connection_string)
        if resolver is None:
            if config.log_level:
                setup_logging(config.log_level, config.log_format)
            resolver = ConnectionResolver(
                config.connection_string,
                url_cache=url_cache,
                collection_cache=collection_cache,
                database=config.database,
            )
            resolver.timeout = config.socket_timeout
            _resolvers[config.connection_string] = resolver
            logger.info(f"Initialized connection resolver ({len(_resolvers)} active)")
        return resolver


def get_repository(
    collection_name: str,
    entity_type: Optional[Type[Any]] = None,
    config: Optional[RepositoryConfig] = None,
) -> MongoRepository:
    """
    Get the repository for a collection.

    Uses one instance per (connection string, collection, entity type) so
    that callers share handles and pending-write queues.

    Raises:
        ValueError: If MongoDB URI is not configured
    """
    config = config or RepositoryConfig.from_env()
    key = (config.connection_string, collection_name, entity_type)

    with _lock:
        repository = _repositories.get(key)
    if repository is not None:
        return repository

    resolver = get_resolver(config)
    repository = MongoRepository(
        resolver,
        collection_name,
        entity_type=entity_type,
        auto_commit=config.auto_commit,
        enable_change_tracking=config.enable_change_tracking,
        batch_size=config.delete_batch_size,
    )

    with _lock:
        repository = _repositories.setdefault(key, repository)
    logger.info(f"Initialized repository for collection '{collection_name}'")
    return repository


def reset_repository() -> None:
    """
    Reset every repository, resolver and shared cache.

    Used for testing or when configuration changes.
    """
    global _url_cache, _collection_cache

    with _lock:
        resolvers = list(_resolvers.values())
        _resolvers.clear()
        _repositories.clear()
        _url_cache = None
        _collection_cache = None

    for resolver in resolvers:
        resolver.close()
    logger.info("Repository singletons reset")
