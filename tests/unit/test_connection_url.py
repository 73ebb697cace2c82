"""
Unit tests for mongoguard/connection/url.py and url_cache.py

Tests connection string handling including:
- Read preference excision (slaveOk / readPreference)
- MongoUrl parsing, serialization and derivations
- Named connection string resolution
- UrlCache identity, timeout copies, update and invalidation
- Embedded password decryption (and its silent fallback)
"""

import pytest
from cryptography.fernet import Fernet

from mongoguard.common.errors import ConfigurationError
from mongoguard.connection.read_mode import ReadMode
from mongoguard.connection.secrets import FernetSecretDecryptor, SecretDecryptor
from mongoguard.connection.url import MongoUrl, remove_read_preference, resolve_connection_string
from mongoguard.connection.url_cache import UrlCache


class TestRemoveReadPreference:
    """Tests for remove_read_preference()."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("mongodb://h1/db?slaveOk=true&w=1", "mongodb://h1/db?w=1"),
            ("mongodb://h1/db?w=1&slaveOk=true", "mongodb://h1/db?w=1"),
            ("mongodb://h1/db?a=1&readPreference=secondary&b=2", "mongodb://h1/db?a=1&b=2"),
            ("mongodb://h1/db?slaveOk=false", "mongodb://h1/db"),
            ("mongodb://h1/db?a=1;SLAVEOK=true;b=2", "mongodb://h1/db?a=1;b=2"),
            ("mongodb://h1/db?slaveOk=true&readPreference=primary&w=1", "mongodb://h1/db?w=1"),
        ],
    )
    def test_removes_option_and_keeps_separators(self, raw, expected):
        """Should cut the option out while preserving neighbouring separators."""
        assert remove_read_preference(raw) == expected

    @pytest.mark.parametrize(
        "raw",
        [
            "mongodb://u:p@h1,h2/db?slaveOk=true",
            "mongodb://h1/db?w=1&readPreference=secondaryPreferred&replicaSet=rs0",
            "mongodb://h1/db?ReadPreference=nearest&slaveok=1&SlaveOk=0",
        ],
    )
    def test_result_never_contains_read_preference(self, raw):
        """Should leave no slaveok=/readpreference= behind, case-insensitively."""
        result = str(MongoUrl.parse(remove_read_preference(raw))).lower()

        assert "slaveok=" not in result
        assert "readpreference=" not in result

    def test_leaves_unrelated_options_alone(self):
        """Should not touch readPreferenceTags or strings without the option."""
        raw = "mongodb://h1/db?readPreferenceTags=dc:ny&w=1"
        assert remove_read_preference(raw) == raw


class TestMongoUrl:
    """Tests for MongoUrl parsing and derivation."""

    RAW = "mongodb://user:p%40ss@h1:27017,h2:27017/app?replicaSet=rs0&w=majority"

    def test_parse_components(self):
        """Should split credentials, hosts, database and options."""
        url = MongoUrl.parse(self.RAW)

        assert url.username == "user"
        assert url.password == "p@ss"
        assert url.hosts == ("h1:27017", "h2:27017")
        assert url.database == "app"
        assert url.option("replicaset") == "rs0"
        assert url.durability == "majority"

    def test_round_trip_string(self):
        """Should re-serialize to the original string."""
        assert str(MongoUrl.parse(self.RAW)) == self.RAW

    def test_without_credentials(self):
        """Should drop user and password, returning a new object."""
        url = MongoUrl.parse(self.RAW)
        stripped = url.without_credentials()

        assert stripped.username is None
        assert stripped.password is None
        assert url.username == "user"
        assert str(stripped) == "mongodb://h1:27017,h2:27017/app?replicaSet=rs0&w=majority"

    def test_socket_timeout_derivation(self):
        """Should add and remove socketTimeoutMS."""
        url = MongoUrl.parse("mongodb://h1/app")

        with_timeout = url.with_socket_timeout(2.5)
        assert with_timeout.socket_timeout == 2.5
        assert "socketTimeoutMS=2500" in str(with_timeout)
        assert with_timeout.with_socket_timeout(None) == url

    def test_redacted_hides_password(self):
        """Should mask the password for logs."""
        redacted = MongoUrl.parse(self.RAW).redacted()

        assert "p%40ss" not in redacted
        assert "user:***@" in redacted

    def test_default_durability(self):
        """Should report acknowledged when no w option is present."""
        assert MongoUrl.parse("mongodb://h1/app").durability == "acknowledged"

    def test_no_database(self):
        """Should allow options straight after the host list."""
        url = MongoUrl.parse("mongodb://h1?w=1")

        assert url.database is None
        assert url.option("w") == "1"

    @pytest.mark.parametrize("raw", ["", "http://h1/app", "mongodb:///app"])
    def test_invalid_strings(self, raw):
        """Should raise ConfigurationError for non-mongodb or host-less strings."""
        with pytest.raises(ConfigurationError):
            MongoUrl.parse(raw)


class TestResolveConnectionString:
    """Tests for resolve_connection_string()."""

    def test_literal_url_is_returned(self):
        """Should return literal URLs unchanged."""
        assert resolve_connection_string("mongodb://h1/app") == "mongodb://h1/app"

    def test_named_connection_from_env(self, monkeypatch):
        """Should look named connections up in MONGOGUARD_CONNECTION_<NAME>."""
        monkeypatch.setenv("MONGOGUARD_CONNECTION_ORDERS_DB", "mongodb://orders/db")

        assert resolve_connection_string("orders-db") == "mongodb://orders/db"

    def test_unknown_name(self):
        """Should raise ConfigurationError for unconfigured names."""
        with pytest.raises(ConfigurationError, match="nope"):
            resolve_connection_string("nope")


class TestUrlCache:
    """Tests for UrlCache."""

    CS = "mongodb://user:secret@h1,h2/app?slaveOk=true&w=1"

    def test_returns_identical_object(self):
        """Should parse once and hand out the same MongoUrl."""
        cache = UrlCache()

        first = cache.get_url(self.CS, ReadMode.PRIMARY)
        second = cache.get_url(self.CS, ReadMode.PRIMARY)

        assert first is second
        assert len(cache) == 1

    def test_keyed_by_read_mode(self):
        """Should keep one entry per read mode."""
        cache = UrlCache()

        default = cache.get_url(self.CS)
        primary = cache.get_url(self.CS, ReadMode.PRIMARY)

        assert default is not primary
        assert default.option("slaveOk") == "true"
        assert primary.option("slaveOk") is None

    def test_timeout_override_is_not_cached(self):
        """Should return a derived copy for a timeout and keep the cached URL clean."""
        cache = UrlCache()

        timed = cache.get_url(self.CS, None, socket_timeout=5)
        plain = cache.get_url(self.CS)

        assert timed.socket_timeout == 5
        assert plain.socket_timeout is None
        assert timed is not plain

    def test_invalidate_forces_reparse(self):
        """Should re-resolve after invalidate()."""
        cache = UrlCache()
        first = cache.get_url(self.CS)

        cache.invalidate(self.CS)

        assert cache.get_url(self.CS) is not first

    def test_update_url_stores_working_variant(self):
        """Should store the URL that connected, without the timeout."""
        cache = UrlCache()
        working = cache.get_url(self.CS, socket_timeout=3).without_credentials()

        cache.update_url(self.CS, None, working)
        stored = cache.get_url(self.CS)

        assert stored.username is None
        assert stored.socket_timeout is None

    def test_clear_only_drops_one_read_mode(self):
        """Should leave other read modes cached."""
        cache = UrlCache()
        cache.get_url(self.CS)
        cache.get_url(self.CS, ReadMode.SECONDARY_PREFERRED)

        cache.clear(self.CS, None)

        assert (self.CS, ReadMode.SECONDARY_PREFERRED) in cache
        assert (self.CS, None) not in cache

    def test_decrypts_embedded_password(self):
        """Should replace an encrypted password with its plain text."""
        key = Fernet.generate_key().decode()
        decryptor = FernetSecretDecryptor(key)
        token = decryptor.encrypt("s3cret")
        cache = UrlCache(decryptor=decryptor)

        url = cache.get_url(f"mongodb://app:{token}@h1/app")

        assert url.password == "s3cret"

    def test_decrypt_failure_uses_raw_value(self):
        """Should swallow decryption errors and keep the raw password."""

        class Failing(SecretDecryptor):
            def decrypt(self, username, secret):
                raise ValueError("bad token")

        cache = UrlCache(decryptor=Failing())

        assert cache.get_url("mongodb://app:plain@h1/app").password == "plain"
