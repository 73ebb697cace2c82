"""
Global fixtures for all unit tests.

This conftest provides autouse fixtures that prevent real external service calls:
- MongoDB connection attempts (would cause 5-30s timeout per test)
- Environment variable isolation (prevents credential leakage)
- Global registries (metrics, repository singletons) reset between tests

These fixtures apply automatically to ALL tests in tests/unit/.
"""

from typing import Any, List, Optional
from unittest.mock import MagicMock, patch

import pytest

from mongoguard.common.metrics import reset_retry_metrics
from mongoguard.connection.driver import DatabaseDriver
from mongoguard.connection.read_mode import ReadMode
from mongoguard.connection.url import MongoUrl
from mongoguard.repositories import reset_repository


@pytest.fixture(autouse=True)
def mock_mongodb():
    """
    Prevent MongoDB connection attempts in all unit tests.

    MongoClient("") defaults to localhost:27017, causing 5-30s timeout per test.
    """
    with patch("mongoguard.connection.driver.MongoClient") as mock_client:
        mock_instance = MagicMock()
        mock_db = MagicMock()
        mock_collection = MagicMock()

        # Setup chain: client["db"]["collection"]
        mock_instance.__getitem__ = MagicMock(return_value=mock_db)
        mock_db.__getitem__ = MagicMock(return_value=mock_collection)
        mock_collection.find_one = MagicMock(return_value=None)
        mock_collection.find = MagicMock(return_value=[])

        mock_client.return_value = mock_instance
        yield mock_client


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """
    Isolate test environment from real credentials and configurations.
    """
    for name in (
        "MONGODB_URI",
        "MONGODB_DATABASE",
        "MONGOGUARD_SECRET_KEY",
        "MONGOGUARD_SOCKET_TIMEOUT",
        "MONGOGUARD_AUTO_COMMIT",
        "MONGOGUARD_ENABLE_CHANGE_TRACKING",
        "MONGOGUARD_DELETE_BATCH_SIZE",
        "MONGOGUARD_LOG_LEVEL",
        "MONGOGUARD_LOG_FORMAT",
        "MONGOGUARD_DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("mongoguard.common.config.Config.MONGODB_DATABASE", "")


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset metric counters and repository singletons around each test."""
    reset_retry_metrics()
    reset_repository()
    yield
    reset_retry_metrics()
    reset_repository()


class FakeDriver(DatabaseDriver):
    """
    In-memory DatabaseDriver.

    Records every connect() and hands out MagicMock clients whose database is
    a shared MagicMock, so tests can script failures in the act callbacks.
    """

    def __init__(self, instances: int = 1, collections: Optional[List[str]] = None):
        self.instances = instances
        self.connected_urls: List[MongoUrl] = []
        self.read_modes: List[Optional[ReadMode]] = []
        self.closed: List[Any] = []
        self.created: List[str] = []
        self.collections = list(collections or [])
        self.database = MagicMock(name="database")
        self.collection = MagicMock(name="collection")
        # with_options(write_concern=...) keeps pointing at the same mock
        self.collection.with_options.return_value = self.collection
        self.connect_error: Optional[BaseException] = None

    def connect(self, url, read_mode):
        self.connected_urls.append(url)
        self.read_modes.append(read_mode)
        if self.connect_error is not None:
            raise self.connect_error
        client = MagicMock(name="client")
        client.url = url
        return client

    def get_database(self, client, name, read_mode):
        self.database.name = name
        return self.database

    def server_instances(self, client):
        return self.instances

    def collection_names(self, database):
        return list(self.collections)

    def create_collection(self, database, name):
        self.created.append(name)
        self.collections.append(name)

    def get_collection(self, database, name):
        return self.collection

    def close(self, client):
        self.closed.append(client)


@pytest.fixture
def fake_driver():
    return FakeDriver()


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""
    delays: List[float] = []

    def sleep(seconds):
        delays.append(seconds)

    sleep.delays = delays
    return sleep
