#Filename: structures.py
"""
CORE DATA STRUCTURES
Single Source of Truth (SSOT) for the relay engine.
Header multimap, target/route value objects, per-relay state and the
observable record handed to access-log observers.
"""

import enum
import time
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple, Any

# -- Constants --

TARGET_PARAM: str = "target"

# Headers describing the caller's browser context; never forwarded.
STRIPPED_REQUEST_HEADERS: FrozenSet[str] = frozenset({'origin', 'referer'})

# RFC 9110 Section 7.6.1: connection-specific fields owned by each hop.
# Framing headers (content-length, transfer-encoding) are handled explicitly.
HOP_BY_HOP_HEADERS: FrozenSet[str] = frozenset({
    'connection', 'keep-alive', 'proxy-connection', 'proxy-authenticate',
    'proxy-authorization', 'te', 'trailer', 'upgrade'
})

CORS_ALLOW_ORIGIN: str = 'access-control-allow-origin'

# -- Types --

class HeaderMultiDict:
    """
    Ordered, case-insensitive header multimap.
    Preserves the original spelling and position of every field and keeps
    duplicate keys (Set-Cookie, Vary, ...) as separate entries.
    """
    __slots__ = ('_items',)

    def __init__(self, items: Optional[Iterable[Tuple[str, str]]] = None) -> None:
        self._items: List[Tuple[str, str]] = []
        if items:
            for k, v in items:
                self.append(k, v)

    def has(self, key: str) -> bool:
        """True if at least one field named key exists."""
        k_lower = key.lower()
        return any(k.lower() == k_lower for k, _ in self._items)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Returns the first value for key, or default."""
        k_lower = key.lower()
        for k, v in self._items:
            if k.lower() == k_lower:
                return v
        return default

    def get_all(self, key: str) -> List[str]:
        """Returns every value stored under key, in order."""
        k_lower = key.lower()
        return [v for k, v in self._items if k.lower() == k_lower]

    def set(self, key: str, value: str) -> None:
        """
        Replaces all fields named key with a single one.
        The new field takes the position of the first removed field, or the end.
        """
        k_lower = key.lower()
        out: List[Tuple[str, str]] = []
        placed = False
        for k, v in self._items:
            if k.lower() == k_lower:
                if not placed:
                    out.append((key, value))
                    placed = True
                continue
            out.append((k, v))
        if not placed:
            out.append((key, value))
        self._items = out

    def append(self, key: str, value: str) -> None:
        """Adds a field, keeping any existing fields with the same name."""
        self._items.append((str(key), str(value)))

    def remove(self, key: str) -> None:
        """Drops every field named key."""
        k_lower = key.lower()
        self._items = [(k, v) for k, v in self._items if k.lower() != k_lower]

    def copy(self) -> 'HeaderMultiDict':
        return HeaderMultiDict(self._items)

    def items(self) -> List[Tuple[str, str]]:
        return list(self._items)

    def tokens(self, key: str) -> List[str]:
        """Comma-separated tokens across all values of key, lower-cased."""
        out = []
        for value in self.get_all(key):
            out.extend(t.strip().lower() for t in value.split(',') if t.strip())
        return out

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"<HeaderMultiDict {self._items!r}>"


class TargetURL:
    """
    A validated absolute destination URL.
    The authority (scheme, host, port) is only used to open the connection.
    """
    __slots__ = ('raw', 'scheme', 'host', 'port', 'path', 'query', 'query_params')

    def __init__(
        self,
        raw: str,
        scheme: str,
        host: str,
        port: int,
        path: str,
        query: str,
        query_params: List[Tuple[str, str]]
    ) -> None:
        self.raw = raw
        self.scheme = scheme
        self.host = host
        self.port = port
        self.path = path
        self.query = query
        self.query_params = query_params

    @property
    def is_tls(self) -> bool:
        return self.scheme in ('https', 'wss')

    @property
    def default_port(self) -> int:
        return 443 if self.is_tls else 80

    @property
    def host_header(self) -> str:
        """Host header value for the outbound request."""
        host = f"[{self.host}]" if ':' in self.host else self.host
        if self.port != self.default_port:
            return f"{host}:{self.port}"
        return host

    @property
    def authority(self) -> Tuple[str, int]:
        return self.host, self.port

    def __repr__(self) -> str:
        return f"<TargetURL {self.scheme}://{self.host}:{self.port}{self.path}>"


class MergedRoute:
    """Outbound path plus the single merged query string."""
    __slots__ = ('path', 'query')

    def __init__(self, path: str, query: str) -> None:
        self.path = path
        self.query = query

    @property
    def request_target(self) -> str:
        """The origin-form request target written on the request line."""
        return f"{self.path}?{self.query}" if self.query else self.path

    def __repr__(self) -> str:
        return f"<MergedRoute {self.request_target}>"


class RelayState(enum.Enum):
    """Lifecycle of one relay. DONE and ERROR are terminal."""
    INIT = 0
    RESOLVED = 1
    CONNECTING = 2
    STREAMING_REQUEST = 3
    AWAITING_RESPONSE = 4
    STREAMING_RESPONSE = 5
    DONE = 6
    ERROR = 7

    @property
    def is_terminal(self) -> bool:
        return self in (RelayState.DONE, RelayState.ERROR)


class InvalidStateTransition(RuntimeError):
    """Raised when a relay tries to move backwards or leave a terminal state."""


class RelayRequest:
    """
    The unit of work for one inbound call.
    Lives only for the duration of a single request/response or duplex session.
    """
    __slots__ = (
        'method', 'path', 'headers', 'query_params', 'body', 'target',
        'state', 'timestamp_start', 'headers_sent', 'bytes_sent', 'status'
    )

    def __init__(
        self,
        method: str,
        path: str,
        headers: HeaderMultiDict,
        query_params: List[Tuple[str, str]],
        body: Any = None,
        target: Optional[TargetURL] = None
    ) -> None:
        if not isinstance(headers, HeaderMultiDict):
            raise TypeError(f"headers must be HeaderMultiDict, got {type(headers).__name__}")
        self.method = method
        self.path = path
        self.headers = headers
        self.query_params = query_params
        self.body = body
        self.target = target
        self.state = RelayState.INIT
        self.timestamp_start = time.monotonic()
        self.headers_sent = False
        self.bytes_sent = 0
        self.status = 0

    def advance(self, new_state: RelayState) -> None:
        """
        Moves the relay forward. States are never revisited, terminal states
        are final, and ERROR is reachable from any non-terminal state.
        """
        if self.state.is_terminal:
            raise InvalidStateTransition(f"{self.state.name} is terminal")
        if new_state is not RelayState.ERROR and new_state.value <= self.state.value:
            raise InvalidStateTransition(f"{self.state.name} -> {new_state.name}")
        self.state = new_state

    def fail(self) -> None:
        """Moves to ERROR unless the relay already finished."""
        if not self.state.is_terminal:
            self.state = RelayState.ERROR

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.timestamp_start) * 1000

    def __repr__(self) -> str:
        return f"<RelayRequest {self.method} {self.target.raw if self.target else '-'} {self.state.name}>"


class RelayRecord:
    """
    Observable summary of a completed call, handed to access-log observers.
    Optimized __slots__ - one instance per request.
    """
    __slots__ = ('method', 'path', 'target', 'status', 'duration_ms', 'state', 'bytes_sent')

    def __init__(
        self,
        method: str,
        path: str,
        status: int,
        duration_ms: float,
        target: Optional[str] = None,
        state: Optional[RelayState] = None,
        bytes_sent: int = 0
    ) -> None:
        self.method = method
        self.path = path
        self.target = target
        self.status = status
        self.duration_ms = duration_ms
        self.state = state
        self.bytes_sent = bytes_sent

    def to_dict(self) -> Dict[str, Any]:
        """Converts the record to a dictionary for logging or storage."""
        return {
            'method': self.method,
            'path': self.path,
            'target': self.target,
            'status': self.status,
            'duration_ms': self.duration_ms,
            'state': self.state.name if self.state else None,
            'bytes_sent': self.bytes_sent
        }

    def display_str(self) -> str:
        return f"{self.method} {self.path} -> {self.status} ({self.duration_ms:.0f}ms)"

    def __str__(self) -> str:
        return self.display_str()

    def __repr__(self) -> str:
        return f"<RelayRecord {self.display_str()}>"
