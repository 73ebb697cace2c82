"""
Repository Interface Definitions

Defines the abstract interface for entity repository operations so that
callers depend on the contract rather than on MongoRepository itself.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional


@dataclass
class WriteResult:
    """
    Result of a write operation.

    Attributes:
        matched_count: Number of documents that matched the filter
        modified_count: Number of documents actually modified
        upserted_id: ID of the inserted/upserted document (if any)
        deleted_count: Number of documents deleted
        acknowledged: False for unacknowledged (w=0) writes
    """
    matched_count: int = 0
    modified_count: int = 0
    upserted_id: Optional[str] = None
    deleted_count: int = 0
    acknowledged: bool = True

    def __add__(self, other: "WriteResult") -> "WriteResult":
        return WriteResult(
            matched_count=self.matched_count + other.matched_count,
            modified_count=self.modified_count + other.modified_count,
            upserted_id=self.upserted_id or other.upserted_id,
            deleted_count=self.deleted_count + other.deleted_count,
            acknowledged=self.acknowledged and other.acknowledged,
        )


class RepositoryInterface(ABC):
    """
    Abstract interface for one collection of entities.

    Reads and writes are retried on transient replica-set errors. Writes are
    either applied immediately (auto_commit) or queued until commit().
    """

    @abstractmethod
    def find_by_id(self, key: Any) -> Optional[Any]:
        """
        Find an entity by its key.

        Args:
            key: Value of the _id element

        Returns:
            Entity (change-tracked when tracking is enabled) or None
        """
        pass

    @abstractmethod
    def find_one(self, filter: Dict[str, Any]) -> Optional[Any]:
        """
        Find a single entity.

        Args:
            filter: MongoDB query filter

        Returns:
            Entity if found, None otherwise
        """
        pass

    @abstractmethod
    def find(
        self,
        filter: Dict[str, Any],
        projection: Optional[Dict[str, Any]] = None,
        sort: Optional[List[tuple]] = None,
        limit: int = 0,
        skip: int = 0,
    ) -> List[Any]:
        """
        Find multiple entities.

        Args:
            filter: MongoDB query filter
            projection: Fields to include/exclude
            sort: Sort order as list of (field, direction) tuples
            limit: Maximum documents to return (0 = no limit)
            skip: Number of documents to skip

        Returns:
            List of matching entities
        """
        pass

    @abstractmethod
    def count(self, filter: Optional[Dict[str, Any]] = None) -> int:
        """Count documents matching the filter."""
        pass

    @abstractmethod
    def add(self, entity: Any) -> Optional[WriteResult]:
        """
        Insert an entity, generating its key if it has none.

        Returns:
            WriteResult, or None when the write is queued or collapsed
            into an earlier successful attempt
        """
        pass

    @abstractmethod
    def update(self, entity: Any) -> Optional[WriteResult]:
        """
        Update an entity.

        Change-tracked entities send only their ChangeSet; plain entities
        replace the whole document.

        Returns:
            WriteResult, or None when there was nothing to update or the
            write is queued
        """
        pass

    @abstractmethod
    def upsert(self, entity: Any) -> Optional[WriteResult]:
        """Update an entity, inserting it if it does not exist."""
        pass

    @abstractmethod
    def delete(self, entity_or_key: Any) -> Optional[WriteResult]:
        """Delete an entity by entity or key."""
        pass

    @abstractmethod
    def delete_many(self, keys: Iterable[Any], batch_size: Optional[int] = None) -> Optional[WriteResult]:
        """
        Delete entities by key in batches.

        Args:
            keys: Keys to delete
            batch_size: Keys per delete statement (default: repository batch size)

        Returns:
            Combined WriteResult, or None when the deletes are queued
        """
        pass

    @abstractmethod
    def commit(self) -> None:
        """Apply queued writes in order."""
        pass
