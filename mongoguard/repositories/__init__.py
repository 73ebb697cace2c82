"""
Repository Pattern for MongoDB Operations

Public API:
- get_repository(): Factory returning a shared MongoRepository per collection
- reset_repository(): Drop all repositories, resolvers and caches
- MongoRepository: Retrying, change-tracking repository implementation
- RepositoryInterface: Abstract interface for repositories
- WriteResult: Result dataclass for write operations

Usage:
    from mongoguard.repositories import get_repository

    users = get_repository("users", User)
    user = users.find_by_id("5f0c...")
    user.name = "new"
    users.update(user)       # sends {"$set": {"name": "new", ...}}
"""

from .base import RepositoryInterface, WriteResult
from .config import (
    RepositoryConfig,
    get_repository,
    get_resolver,
    get_shared_caches,
    reset_repository,
)
from .mongo_repository import MongoRepository

__all__ = [
    "MongoRepository",
    "RepositoryConfig",
    "RepositoryInterface",
    "WriteResult",
    "get_repository",
    "get_resolver",
    "get_shared_caches",
    "reset_repository",
]
