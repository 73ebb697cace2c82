"""
Unit tests for mongoguard/connection/resolver.py

Tests the connection failover state machine including:
- Handle reuse per read mode
- FIRST_ATTEMPT -> RETRY_NO_AUTH -> RETRY_WITH_AUTH -> fatal
- URL cache update after a successful failover
- End-of-stream sub-retry with linear sleep
- Collection creation memoized in the existence cache
- Timeout changes and invalidation
"""

import pytest
from pymongo.errors import AutoReconnect, ConnectionFailure, ServerSelectionTimeoutError

from mongoguard.common.errors import ConfigurationError, FatalConnectionError
from mongoguard.connection.collection_cache import CollectionExistenceCache
from mongoguard.connection.read_mode import ReadMode
from mongoguard.connection.resolver import ConnectionResolver, FailoverState
from mongoguard.connection.url_cache import UrlCache

CS = "mongodb://app:pw@h1:27017,h2:27017/shop?slaveOk=true&w=majority"


def scripted(*errors):
    """Act callback raising the given errors in turn, then returning 'ok'."""
    calls = []

    def act(handle):
        calls.append(handle)
        if len(calls) <= len(errors):
            raise errors[len(calls) - 1]
        return "ok"

    act.calls = calls
    return act


@pytest.fixture
def url_cache():
    return UrlCache()


@pytest.fixture
def collection_cache():
    return CollectionExistenceCache()


@pytest.fixture
def resolver(fake_driver, url_cache, collection_cache, no_sleep):
    return ConnectionResolver(
        CS,
        driver=fake_driver,
        url_cache=url_cache,
        collection_cache=collection_cache,
        sleep=no_sleep,
    )


class TestHandles:
    """Tests for handle creation and reuse."""

    def test_requires_connection_string(self, fake_driver):
        """Should reject an empty connection string."""
        with pytest.raises(ConfigurationError):
            ConnectionResolver("", driver=fake_driver)

    def test_handle_is_reused(self, resolver, fake_driver):
        """Should connect once and reuse the handle."""
        first = resolver.resolve_handle()
        second = resolver.resolve_handle()

        assert first is second
        assert len(fake_driver.connected_urls) == 1
        assert resolver.is_connected()

    def test_database_from_url(self, resolver, fake_driver):
        """Should take the database name from the connection string."""
        resolver.resolve_handle()

        assert fake_driver.database.name == "shop"

    def test_explicit_database_wins(self, fake_driver):
        """Should prefer the database given to the resolver."""
        resolver = ConnectionResolver(CS, driver=fake_driver, database="other")
        resolver.resolve_handle()

        assert fake_driver.database.name == "other"

    def test_missing_database(self, fake_driver):
        """Should raise ConfigurationError when no database can be found."""
        resolver = ConnectionResolver("mongodb://h1", driver=fake_driver)

        with pytest.raises(ConfigurationError):
            resolver.resolve_handle()

    def test_one_handle_per_read_mode(self, resolver, fake_driver):
        """Should build separate handles with the read preference cut from the URL."""
        default = resolver.resolve_handle()
        primary = resolver.resolve_handle(ReadMode.PRIMARY)

        assert default is not primary
        assert fake_driver.read_modes == [None, ReadMode.PRIMARY]
        assert fake_driver.connected_urls[0].option("slaveOk") == "true"
        assert fake_driver.connected_urls[1].option("slaveOk") is None

    def test_timeout_change_rebuilds_handle(self, resolver, fake_driver):
        """Should drop handles and connect with socketTimeoutMS after a timeout change."""
        old = resolver.resolve_handle()

        resolver.timeout = 2
        handle = resolver.resolve_handle()

        assert handle is not old
        assert fake_driver.closed == []
        assert handle.descriptor.socket_timeout == 2
        assert fake_driver.connected_urls[-1].option("socketTimeoutMS") == "2000"

    def test_same_timeout_keeps_handle(self, resolver, fake_driver):
        """Should not reconnect when the timeout is unchanged."""
        resolver.resolve_handle()
        resolver.timeout = None

        assert fake_driver.closed == []

    def test_server_instances_cached_until_invalidate(self, resolver, fake_driver):
        """Should cache the instance count until the handles are reset."""
        fake_driver.instances = 3
        assert resolver.server_instances == 3

        fake_driver.instances = 5
        assert resolver.server_instances == 3

        resolver.invalidate()
        assert resolver.server_instances == 5

    def test_context_manager_closes_clients(self, fake_driver):
        """Should close every client on exit."""
        with ConnectionResolver(CS, driver=fake_driver) as resolver:
            resolver.resolve_handle()
            resolver.resolve_handle(ReadMode.PRIMARY)

        assert len(fake_driver.closed) == 2

    def test_dropped_clients_stay_open_until_close(self, resolver, fake_driver):
        """Should keep replaced clients usable and close them all on close()."""
        in_use = resolver.resolve_handle()

        resolver.timeout = 5
        resolver.invalidate()
        current = resolver.resolve_handle()

        assert in_use.client not in fake_driver.closed
        assert in_use.database is fake_driver.database

        resolver.close()

        assert in_use.client in fake_driver.closed
        assert current.client in fake_driver.closed
        assert len(fake_driver.closed) == 2

        resolver.close()
        assert len(fake_driver.closed) == 2


class TestCollections:
    """Tests for get_collection()."""

    def test_creates_missing_collection_once(self, resolver, fake_driver, collection_cache):
        """Should create the collection the first time and remember it."""
        resolver.get_collection("users")
        resolver.get_collection("users")

        assert fake_driver.created == ["users"]
        assert collection_cache.exists(CS, "shop", "users")

    def test_existing_collection_not_created(self, resolver, fake_driver):
        """Should not create a collection the server already has."""
        fake_driver.collections = ["users"]

        collection = resolver.get_collection("users")

        assert fake_driver.created == []
        assert collection is fake_driver.collection


class TestFailover:
    """Tests for the failover state machine."""

    def test_first_attempt_success_keeps_cache(self, resolver, fake_driver, url_cache):
        """Should not touch the URL cache when the first attempt works."""
        cached = url_cache.get_url(CS)

        assert resolver.act_on_database(scripted()) == "ok"
        assert url_cache.get_url(CS) is cached
        assert fake_driver.connected_urls[0].username == "app"

    def test_retry_without_credentials(self, resolver, fake_driver, url_cache):
        """Should strip credentials after the first failure and cache the working URL."""
        act = scripted(ServerSelectionTimeoutError("auth failed"))

        assert resolver.act_on_database(act) == "ok"

        first, second = fake_driver.connected_urls
        assert first.username == "app"
        assert second.username is None
        assert second.password is None
        assert fake_driver.closed == []
        assert url_cache.get_url(CS).username is None

    def test_retry_with_auth_clears_caches(self, resolver, fake_driver, url_cache, collection_cache):
        """Should re-resolve the URL and forget known collections on the second failure."""
        collection_cache.mark(CS, "shop", "users")
        act = scripted(
            ServerSelectionTimeoutError("first"),
            ServerSelectionTimeoutError("second"),
        )

        assert resolver.act_on_database(act) == "ok"

        urls = fake_driver.connected_urls
        assert [u.username for u in urls] == ["app", None, "app"]
        assert urls[2].password == "pw"
        assert not collection_cache.exists(CS, "shop", "users")
        assert url_cache.get_url(CS).username == "app"

    def test_third_failure_is_fatal(self, resolver, fake_driver):
        """Should raise FatalConnectionError with diagnostic context."""
        last = ServerSelectionTimeoutError("third")
        act = scripted(
            ServerSelectionTimeoutError("first"),
            ServerSelectionTimeoutError("second"),
            last,
        )

        with pytest.raises(FatalConnectionError) as exc_info:
            resolver.act_on_database(act)

        context = exc_info.value.context
        assert context.servers == ["h1:27017", "h2:27017"]
        assert context.database == "shop"
        assert context.user == "app"
        assert context.durability == "majority"
        assert context.state == FailoverState.RETRY_WITH_AUTH.value
        assert exc_info.value.__cause__ is last
        assert "pw" not in context.connection_string
        assert context.to_dict()["connection_string"] == context.connection_string
        assert "h1:27017,h2:27017" in str(exc_info.value)

    def test_connect_failure_walks_states(self, resolver, fake_driver):
        """Should fail over when the client itself cannot be created."""
        fake_driver.connect_error = ConnectionFailure("refused")

        with pytest.raises(FatalConnectionError):
            resolver.resolve_handle()

        assert len(fake_driver.connected_urls) == 3

    def test_non_driver_error_propagates(self, resolver, fake_driver):
        """Should not fail over on application errors."""
        with pytest.raises(KeyError):
            resolver.act_on_database(scripted(KeyError("boom")))

        assert len(fake_driver.connected_urls) == 1


class TestEndOfStream:
    """Tests for the end-of-stream sub-retry."""

    def test_resets_handle_and_keeps_url(self, resolver, fake_driver, no_sleep):
        """Should reconnect with the same URL, sleeping 0s then 0.1s."""
        act = scripted(AutoReconnect("connection closed"), EOFError())

        assert resolver.act_on_database(act) == "ok"

        assert len(fake_driver.connected_urls) == 3
        assert all(u.username == "app" for u in fake_driver.connected_urls)
        assert no_sleep.delays == pytest.approx([0.0, 0.1])

    def test_gives_up_after_three_resets(self, resolver, fake_driver, no_sleep):
        """Should rethrow the fourth end-of-stream error."""
        act = scripted(*[EOFError("eof")] * 4)

        with pytest.raises(EOFError):
            resolver.act_on_database(act)

        assert len(act.calls) == 4
        assert no_sleep.delays == pytest.approx([0.0, 0.1, 0.2])

    def test_only_during_first_attempt(self, resolver, fake_driver, no_sleep):
        """Should rethrow end-of-stream errors once failover has started."""
        act = scripted(ServerSelectionTimeoutError("first"), EOFError("eof"))

        with pytest.raises(EOFError):
            resolver.act_on_database(act)

        assert no_sleep.delays == []
