"""
MongoDB repository over the resilient access layer.

Every call runs through RetryExecutor, asks the ConnectionResolver for the
collection on each attempt (so failover can swap the handle underneath) and
is timed. Updates of change-tracked entities send only the ChangeSet.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Type

from bson import ObjectId
from pymongo import WriteConcern

from ..common.config import Config
from ..common.error_handling import log_on_exception
from ..common.errors import ContractViolation, FatalQueryError
from ..common.logger import RepositoryLogger
from ..common.metrics import timed_operation
from ..connection.read_mode import ReadMode, ReadPreference, read_mode_tag
from ..connection.resolver import ConnectionResolver
from ..retry.executor import RetryExecutor
from ..tracking import (
    attach_change_tracking,
    clear_changes,
    commit_changes,
    from_document,
    get_monitor,
    has_changes,
    to_document,
    untracked,
)
from ..tracking.mapping import class_map
from .base import RepositoryInterface, WriteResult

logger = logging.getLogger(__name__)

KEY_ELEMENT = "_id"

# w=2 once the topology has a secondary to acknowledge
MAJORITY_WRITE_CONCERN = WriteConcern(w=2, wtimeout=15000)
SINGLE_WRITE_CONCERN = WriteConcern(w=1)
ASYNC_WRITE_CONCERN = WriteConcern(w=0)


class MongoRepository(RepositoryInterface):
    """
    Repository for one collection.

    Connection Management:
    - The resolver owns the handles; repositories sharing a resolver share
      its connection pool
    - The collection is re-obtained on every attempt, so a failover between
      attempts is picked up

    Error Handling:
    - Transient errors are retried by the executor
    - Everything else propagates to the caller
    """

    def __init__(
        self,
        resolver: ConnectionResolver,
        collection_name: str,
        entity_type: Optional[Type[Any]] = None,
        executor: Optional[RetryExecutor] = None,
        auto_commit: Optional[bool] = None,
        enable_change_tracking: Optional[bool] = None,
        batch_size: Optional[int] = None,
    ):
        if not collection_name:
            raise ValueError("collection_name is required")

        self._resolver = resolver
        self._collection_name = collection_name
        self._entity_type = entity_type
        self._executor = executor or RetryExecutor(name=collection_name)
        self.auto_commit = Config.AUTO_COMMIT if auto_commit is None else auto_commit
        self.enable_change_tracking = (
            Config.ENABLE_CHANGE_TRACKING if enable_change_tracking is None else enable_change_tracking
        )
        self.default_batch_size = batch_size or Config.DELETE_BATCH_SIZE

        self._read_preference = ReadPreference.DEFAULT
        self._sync_write_concern: Optional[WriteConcern] = None
        self._pending: List[Tuple[str, Callable[[], Any]]] = []
        self._source = f"{type(self).__name__}[{collection_name}]"
        self._log = RepositoryLogger(__name__, repository=collection_name)

    # ===== settings =====

    @property
    def collection_name(self) -> str:
        return self._collection_name

    @property
    def resolver(self) -> ConnectionResolver:
        return self._resolver

    @property
    def read_preference(self) -> ReadPreference:
        return self._read_preference

    @read_preference.setter
    def read_preference(self, value: ReadPreference) -> None:
        self._read_preference = ReadPreference(value)

    @contextmanager
    def read_preference_scope(self, preference: ReadPreference) -> Iterator["MongoRepository"]:
        """
        Temporarily change the read preference, e.g. to opt into dirty reads:

            with repo.read_preference_scope(ReadPreference.DIRTY_OK):
                repo.find({"status": "open"})
        """
        previous = self._read_preference
        self.read_preference = preference
        try:
            yield self
        finally:
            self._read_preference = previous

    @property
    def timeout(self) -> Optional[float]:
        return self._resolver.timeout

    @timeout.setter
    def timeout(self, seconds: Optional[float]) -> None:
        self._resolver.timeout = seconds
        self._sync_write_concern = None

    @property
    def sync_write_concern(self) -> WriteConcern:
        if self._sync_write_concern is None:
            instances = self._resolver.server_instances
            self._sync_write_concern = MAJORITY_WRITE_CONCERN if instances > 1 else SINGLE_WRITE_CONCERN
            self._log.debug(f"Using w={self._sync_write_concern.document.get('w')} for {instances} instance(s)")
        return self._sync_write_concern

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ===== collections =====

    def _collection(self, read_mode: Optional[ReadMode]):
        return self._resolver.get_collection(self._collection_name, read_mode)

    @property
    def query(self):
        """Collection for reads, chosen by the current read preference."""
        return self._collection(self._read_preference.read_mode)

    def _write_collection(self, write_concern: WriteConcern):
        return self._collection(ReadMode.PRIMARY).with_options(write_concern=write_concern)

    # ===== reads =====

    def perform_query(self, name: str, query: Callable[[Any], Any]) -> Any:
        """
        Run a custom read against the collection with retries and timing.

        Args:
            name: Query name for logs and timings
            query: Callable receiving the collection; must fully evaluate
                   cursors (e.g. return list(cursor)) so retries cover them
        """
        return self._read(name, lambda: query(self.query))

    def find_by_id(self, key: Any) -> Optional[Any]:
        document = self._read("find_by_id", lambda: self.query.find_one({KEY_ELEMENT: key}))
        return self._to_entity(document)

    def find_one(self, filter: Dict[str, Any]) -> Optional[Any]:
        document = self._read("find_one", lambda: self.query.find_one(filter))
        return self._to_entity(document)

    def find(
        self,
        filter: Dict[str, Any],
        projection: Optional[Dict[str, Any]] = None,
        sort: Optional[List[tuple]] = None,
        limit: int = 0,
        skip: int = 0,
    ) -> List[Any]:
        if limit < 0 or skip < 0:
            raise FatalQueryError(f"limit and skip must not be negative (limit={limit}, skip={skip})")

        def run():
            cursor = self.query.find(filter, projection)
            if sort:
                cursor = cursor.sort(sort)
            if skip > 0:
                cursor = cursor.skip(skip)
            if limit > 0:
                cursor = cursor.limit(limit)
            return list(cursor)

        return [self._to_entity(document) for document in self._read("find", run)]

    def count(self, filter: Optional[Dict[str, Any]] = None) -> int:
        return self._read("count", lambda: self.query.count_documents(filter or {}))

    def _read(self, name: str, operation: Callable[[], Any]) -> Any:
        log = self._log.for_read_mode(read_mode_tag(self._read_preference.read_mode))
        with log_on_exception(log, name):
            result, _ = timed_operation(
                self._source,
                name,
                lambda: self._executor.execute(operation, is_read_only=True, operation_name=name),
            )
        return result

    def _to_entity(self, document: Optional[Dict[str, Any]]) -> Optional[Any]:
        if document is None or self._entity_type is None:
            return document

        entity = from_document(self._entity_type, document)
        if self.enable_change_tracking:
            return attach_change_tracking(entity)
        return entity

    # ===== writes =====

    def add(self, entity: Any) -> Optional[WriteResult]:
        return self._add(entity, self.sync_write_concern)

    def add_many(self, entities: Iterable[Any]) -> List[Optional[WriteResult]]:
        return [self.add(entity) for entity in entities or []]

    def async_add(self, entity: Any) -> Optional[WriteResult]:
        return self._add(entity, ASYNC_WRITE_CONCERN)

    def update(self, entity: Any) -> Optional[WriteResult]:
        return self._update(entity, upsert=False, write_concern=self.sync_write_concern)

    def async_update(self, entity: Any) -> Optional[WriteResult]:
        return self._update(entity, upsert=False, write_concern=ASYNC_WRITE_CONCERN)

    def upsert(self, entity: Any) -> Optional[WriteResult]:
        return self._update(entity, upsert=True, write_concern=self.sync_write_concern)

    def delete(self, entity_or_key: Any) -> Optional[WriteResult]:
        return self._delete(self._key_or_entity_key(entity_or_key), self.sync_write_concern)

    def async_delete(self, entity_or_key: Any) -> Optional[WriteResult]:
        return self._delete(self._key_or_entity_key(entity_or_key), ASYNC_WRITE_CONCERN)

    def delete_many(self, keys: Iterable[Any], batch_size: Optional[int] = None) -> Optional[WriteResult]:
        batch_size = batch_size or self.default_batch_size
        if batch_size <= 0:
            raise FatalQueryError(f"batch_size must be positive, got {batch_size}")

        keys = [self._key_or_entity_key(k) for k in keys or []]
        write_concern = self.sync_write_concern
        results: List[Optional[WriteResult]] = []

        for start in range(0, len(keys), batch_size):
            batch = keys[start:start + batch_size]

            def remove(batch=batch):
                result = self._write_collection(write_concern).delete_many({KEY_ELEMENT: {"$in": batch}})
                return self._delete_result(result)

            results.append(self._commit_action("delete_many", remove))

        if not self.auto_commit:
            return None
        total = WriteResult()
        for result in results:
            if result is not None:
                total = total + result
        return total

    def update_field_in_place(
        self,
        entity_id: Any,
        field_name: str,
        value: Any,
        and_also: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Set (or unset, when value is None) one field directly, bypassing
        change tracking.

        Returns:
            Number of documents modified
        """
        if not field_name:
            raise FatalQueryError("field_name is required")

        query: Dict[str, Any] = {KEY_ELEMENT: entity_id}
        if and_also:
            query = {"$and": [query, and_also]}

        if value is None:
            statement = {"$unset": {field_name: ""}}
        else:
            statement = {"$set": {field_name: to_document(value)}}

        write_concern = self.sync_write_concern
        result = self._write(
            "update_field_in_place",
            lambda: self._write_collection(write_concern).update_one(query, statement),
        )
        return result.modified_count if result is not None else 0

    def commit(self) -> None:
        """
        Run queued writes in order.

        A failing write stops the commit; it and the writes after it stay
        queued.
        """
        while self._pending:
            name, action = self._pending[0]
            with log_on_exception(logger, f"commit {name} on {self._collection_name}", level=logging.ERROR):
                self._write(name, action)
            self._pending.pop(0)

    def discard_pending(self) -> None:
        self._pending.clear()

    def close(self) -> None:
        if self._pending:
            self._log.warning(f"Closing with {len(self._pending)} uncommitted write(s)")
        self._pending.clear()

    def __enter__(self) -> "MongoRepository":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # ===== write internals =====

    def _add(self, entity: Any, write_concern: WriteConcern) -> Optional[WriteResult]:
        key = self._ensure_key(entity)
        self._set_update_date(entity)
        document = to_document(entity)

        def insert():
            result = self._write_collection(write_concern).insert_one(document)
            clear_changes(entity)
            return WriteResult(
                upserted_id=str(result.inserted_id) if result.inserted_id is not None else str(key),
                acknowledged=result.acknowledged,
            )

        return self._commit_action("add", insert)

    def _update(self, entity: Any, upsert: bool, write_concern: WriteConcern) -> Optional[WriteResult]:
        key = self._key_of(entity)
        monitor = get_monitor(entity)

        if monitor is not None:
            if not has_changes(entity):
                self._log.debug(f"Nothing to update for {key}")
                return None

            self._set_update_date(entity)

            def apply_changes():
                # built at write time so changes made while queued are included
                update = commit_changes(entity).to_update_document()
                if not update:
                    return None
                result = self._write_collection(write_concern).update_one(
                    {KEY_ELEMENT: key}, update, upsert=upsert
                )
                clear_changes(entity)
                return self._update_result(result)

            return self._commit_action("update", apply_changes)

        self._set_update_date(entity)
        document = to_document(entity)

        def replace():
            result = self._write_collection(write_concern).replace_one(
                {KEY_ELEMENT: key}, document, upsert=upsert
            )
            return self._update_result(result)

        return self._commit_action("replace", replace)

    def _delete(self, key: Any, write_concern: WriteConcern) -> Optional[WriteResult]:
        def remove():
            result = self._write_collection(write_concern).delete_one({KEY_ELEMENT: key})
            return self._delete_result(result)

        return self._commit_action("delete", remove)

    def _commit_action(self, name: str, action: Callable[[], Any]) -> Optional[Any]:
        if self.auto_commit:
            return self._write(name, action)
        self._pending.append((name, action))
        return None

    def _write(self, name: str, action: Callable[[], Any]) -> Optional[Any]:
        with log_on_exception(self._log.for_read_mode(read_mode_tag(ReadMode.PRIMARY)), name):
            result, _ = timed_operation(
                self._source,
                name,
                lambda: self._executor.execute(
                    action,
                    is_read_only=False,
                    revalidate=lambda: self._collection(ReadMode.PRIMARY),
                    operation_name=name,
                ),
            )
        return result

    @staticmethod
    def _update_result(result) -> WriteResult:
        acknowledged = getattr(result, "acknowledged", True)
        if not acknowledged:
            return WriteResult(acknowledged=False)
        return WriteResult(
            matched_count=result.matched_count,
            modified_count=result.modified_count,
            upserted_id=str(result.upserted_id) if result.upserted_id is not None else None,
        )

    @staticmethod
    def _delete_result(result) -> WriteResult:
        acknowledged = getattr(result, "acknowledged", True)
        if not acknowledged:
            return WriteResult(acknowledged=False)
        return WriteResult(
            matched_count=result.deleted_count,
            modified_count=result.deleted_count,
            deleted_count=result.deleted_count,
        )

    # ===== entity helpers =====

    @staticmethod
    def _key_attribute(entity: Any) -> str:
        for attribute, element in class_map(type(untracked(entity))).items():
            if element == KEY_ELEMENT:
                return attribute
        raise ContractViolation(f"{type(untracked(entity)).__qualname__} has no member mapped to {KEY_ELEMENT}")

    def _key_of(self, entity: Any) -> Any:
        plain = untracked(entity)
        if isinstance(plain, dict):
            return plain.get(KEY_ELEMENT)
        return getattr(plain, self._key_attribute(plain))

    def _key_or_entity_key(self, value: Any) -> Any:
        plain = untracked(value)
        if isinstance(plain, dict) or class_map(type(plain)):
            return self._key_of(plain)
        return plain

    def _ensure_key(self, entity: Any) -> Any:
        key = self._key_of(entity)
        if key is not None:
            return key

        key = str(ObjectId()).lower()
        plain = untracked(entity)
        if isinstance(plain, dict):
            plain[KEY_ELEMENT] = key
        else:
            setattr(entity, self._key_attribute(plain), key)
        return key

    @staticmethod
    def _set_update_date(entity: Any) -> None:
        plain = untracked(entity)
        if isinstance(plain, dict) or not hasattr(plain, "update_date"):
            return

        now = datetime.now(timezone.utc)
        setattr(entity, "update_date", now)
        if hasattr(plain, "create_date") and getattr(plain, "create_date") is None:
            setattr(entity, "create_date", now)
