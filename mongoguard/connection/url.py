"""
MongoDB connection URL parsing and derivation.

Connection strings follow the shape

    mongodb://[user:pass@]host[,host...]/db[?opts]

MongoUrl is immutable; every derivation (credentials stripped, timeout
overridden, option removed) produces a new instance so cached URLs are
never altered in place.
"""

import re
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple
from urllib.parse import quote_plus, unquote_plus

from ..common.config import Config
from ..common.errors import ConfigurationError

SCHEME = "mongodb://"
SRV_SCHEME = "mongodb+srv://"

SOCKET_TIMEOUT_OPTION = "socketTimeoutMS"
WRITE_CONCERN_OPTION = "w"

# Matches an option separator (or the "?" that opens the option list), then a
# slaveOk/readPreference option, then the next separator or end of string.
_READ_PREFERENCE_OPTION = re.compile(
    r"(?P<start>[;&?])"
    r"(?P<remove>(?:slaveok|readpreference)=[^;&]*)"
    r"(?P<end>[;&]|$)",
    re.IGNORECASE,
)


def is_connection_url(value: str) -> bool:
    """True if value is a literal connection string rather than a name."""
    lowered = value.lower()
    return lowered.startswith(SCHEME) or lowered.startswith(SRV_SCHEME)


def remove_read_preference(raw: str) -> str:
    """
    Remove every "slaveOk" and "readPreference" option from a connection string.

    The driver refuses a programmatic read preference when one is already
    present in the string form, so the option is cut out here and re-applied
    structurally by the resolver. Neighbouring separators are preserved:

        ?slaveOk=true&w=1   -> ?w=1
        ?w=1&slaveOk=true   -> ?w=1
        ?a=1&slaveOk=true&b=2 -> ?a=1&b=2
        ?slaveOk=true       -> (option list removed)
    """
    result = raw
    while True:
        match = _READ_PREFERENCE_OPTION.search(result)
        if match is None:
            return result

        start, end = match.group("start"), match.group("end")
        if start == "?":
            # first option: keep the "?" only if another option follows
            replacement = "?" if end else ""
        else:
            replacement = end
        result = result[:match.start()] + replacement + result[match.end():]


@dataclass(frozen=True)
class MongoUrl:
    """A parsed MongoDB connection URL."""

    scheme: str
    hosts: Tuple[str, ...]
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    options: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def parse(cls, raw: str) -> "MongoUrl":
        """
        Parse a connection string.

        Raises:
            ConfigurationError: If the string is not a mongodb:// URL or has no hosts
        """
        if not raw or not is_connection_url(raw):
            raise ConfigurationError(
                "Connection string must start with 'mongodb://' or 'mongodb+srv://'"
            )

        scheme = SRV_SCHEME if raw.lower().startswith(SRV_SCHEME) else SCHEME
        rest = raw[len(scheme):]

        # options may follow the host list directly when no path is given
        location, _, query = rest.partition("?")
        authority, _, path = location.partition("/")

        username = password = None
        if "@" in authority:
            userinfo, _, authority = authority.rpartition("@")
            user, sep, secret = userinfo.partition(":")
            username = unquote_plus(user) if user else None
            password = unquote_plus(secret) if sep else None

        hosts = tuple(h for h in authority.split(",") if h)
        if not hosts:
            raise ConfigurationError(f"Connection string has no hosts: {cls._redact(raw)}")

        return cls(
            scheme=scheme,
            hosts=hosts,
            database=unquote_plus(path) if path else None,
            username=username,
            password=password,
            options=cls._parse_options(query),
        )

    @staticmethod
    def _parse_options(query: str) -> Tuple[Tuple[str, str], ...]:
        options: List[Tuple[str, str]] = []
        for part in re.split(r"[&;]", query):
            if not part:
                continue
            name, _, value = part.partition("=")
            options.append((name, value))
        return tuple(options)

    @staticmethod
    def _redact(raw: str) -> str:
        return re.sub(r"//[^@/]*@", "//***@", raw)

    def __str__(self) -> str:
        return self._render(quote_plus(self.password) if self.password is not None else None)

    def _render(self, password: Optional[str]) -> str:
        """Serialize with an already-encoded password (or a mask)."""
        userinfo = ""
        if self.username is not None:
            userinfo = quote_plus(self.username)
            if password is not None:
                userinfo += ":" + password
            userinfo += "@"

        url = f"{self.scheme}{userinfo}{','.join(self.hosts)}/"
        if self.database:
            url += quote_plus(self.database)
        if self.options:
            url += "?" + "&".join(f"{name}={value}" for name, value in self.options)
        return url

    def redacted(self) -> str:
        """String form with the password masked, safe for logs."""
        return self._render("***" if self.password is not None else None)

    @property
    def servers(self) -> List[str]:
        return list(self.hosts)

    @property
    def has_credentials(self) -> bool:
        return self.username is not None

    def option(self, name: str) -> Optional[str]:
        """Case-insensitive option lookup (last occurrence wins)."""
        value = None
        for key, v in self.options:
            if key.lower() == name.lower():
                value = v
        return value

    @property
    def durability(self) -> str:
        """Write concern requested by the URL, for diagnostics."""
        return self.option(WRITE_CONCERN_OPTION) or "acknowledged"

    @property
    def socket_timeout(self) -> Optional[float]:
        """Socket timeout in seconds, if the URL sets one."""
        raw = self.option(SOCKET_TIMEOUT_OPTION)
        return int(raw) / 1000 if raw else None

    def without_credentials(self) -> "MongoUrl":
        return replace(self, username=None, password=None)

    def with_credentials(self, username: Optional[str], password: Optional[str]) -> "MongoUrl":
        return replace(self, username=username, password=password)

    def without_option(self, name: str) -> "MongoUrl":
        return replace(
            self,
            options=tuple((k, v) for k, v in self.options if k.lower() != name.lower()),
        )

    def with_option(self, name: str, value: str) -> "MongoUrl":
        stripped = self.without_option(name)
        return replace(stripped, options=stripped.options + ((name, value),))

    def with_socket_timeout(self, seconds: Optional[float]) -> "MongoUrl":
        """Derived copy with a socket timeout (None restores the driver default)."""
        if seconds is None:
            return self.without_option(SOCKET_TIMEOUT_OPTION)
        return self.with_option(SOCKET_TIMEOUT_OPTION, str(int(seconds * 1000)))

    def without_read_preference(self) -> "MongoUrl":
        return MongoUrl.parse(remove_read_preference(str(self)))


def resolve_connection_string(name_or_url: str) -> str:
    """
    Resolve a connection string or a named connection string to a raw URL.

    Literal mongodb:// strings are returned unchanged; anything else is looked
    up as MONGOGUARD_CONNECTION_<NAME>.

    Raises:
        ConfigurationError: If the name is empty or not configured
    """
    if not name_or_url:
        raise ConfigurationError("Connection string or name is required")

    if is_connection_url(name_or_url):
        return name_or_url

    raw = Config.named_connection_string(name_or_url)
    if raw is None:
        raise ConfigurationError(f"No connection string configured for name '{name_or_url}'")
    return raw
