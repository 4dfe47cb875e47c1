#Filename: relay_common.py
"""
RELAY COMMON DEFINITIONS
Shared logic, constants, and base classes for the Relay Engine.
Error taxonomy + Error Mapper, response head rendering, CORS injection
and upstream connection management.
"""

import asyncio
import datetime
import json
import os
import re
import socket
import ssl
import traceback
from http import HTTPStatus
from typing import Any, Callable, Dict, List, Optional, Tuple

from structures import HeaderMultiDict, CORS_ALLOW_ORIGIN

# -- Constants --

STRICT_HEADER_PATTERN = re.compile(rb'^([!#$%&\'*+\-.^_`|~0-9a-zA-Z]+):[ \t]*(.*)$')
IDLE_TIMEOUT = 60.0
COMPACTION_THRESHOLD = 65536
PROXY_ERROR_TAG = "Proxy error"
INTERNAL_ERROR_MESSAGE = "Internal server error"
PREFLIGHT_ALLOW_METHODS = "GET,HEAD,PUT,PATCH,POST,DELETE"

# -- Error Taxonomy --

class RelayError(Exception):
    """Base exception for relay operations."""


class TargetValidationError(RelayError):
    """Destination missing or malformed. Detected before any outbound I/O."""
    status = 400
    tag = "Invalid target URL"

    def payload(self) -> Dict[str, Any]:
        return {"error": self.tag}


class MissingTargetError(TargetValidationError):
    """No destination indicator on the request."""
    tag = "Missing target parameter"


class InvalidTargetError(TargetValidationError):
    """Destination present but not an absolute http(s)/ws(s) URL."""


class UpstreamError(RelayError):
    """Connection-level failure talking to the destination (DNS, refused, reset)."""


class UpstreamTimeoutError(UpstreamError):
    """The relay deadline elapsed."""


class ClientDisconnected(RelayError):
    """The caller went away mid-relay."""


class FramingError(RelayError):
    """Malformed HTTP/1.1 on the inbound connection."""


# -- Error Mapper --

def map_error(
    exc: BaseException,
    target: Optional[str] = None,
    production: bool = False
) -> Tuple[int, Dict[str, Any]]:
    """
    Maps a failure onto (status, JSON payload).
    Validation -> 400, connection/timeout -> 502, anything else -> 500 with
    diagnostics only outside production.
    """
    if isinstance(exc, TargetValidationError):
        return exc.status, exc.payload()

    if isinstance(exc, FramingError):
        return 400, {"error": "Malformed request body", "message": str(exc)}

    if isinstance(exc, UpstreamError):
        message = str(exc) or type(exc).__name__
        return 502, {"error": PROXY_ERROR_TAG, "message": message, "target": target or ""}

    message = (str(exc) or type(exc).__name__) if not production else INTERNAL_ERROR_MESSAGE
    payload: Dict[str, Any] = {"error": message}
    if not production:
        payload["stack"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    return 500, payload


def describe_connect_failure(exc: BaseException, host: str, port: int) -> str:
    """Human readable message for a failed connect."""
    if isinstance(exc, socket.gaierror):
        return f"getaddrinfo failed for {host}: {exc.strerror or exc}"
    if isinstance(exc, ConnectionRefusedError):
        return f"connect ECONNREFUSED {host}:{port}"
    if isinstance(exc, ssl.SSLError):
        return f"TLS handshake with {host}:{port} failed: {exc}"
    return f"Upstream connection failed: {exc}"


# -- Response Rendering --

def reason_phrase(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return "Unknown"


def render_head(status: int, headers: HeaderMultiDict, reason: Optional[str] = None) -> bytes:
    """Serializes a status line and header block."""
    # [VECTOR OPTIMIZATION] Batch header writes to minimize syscalls
    buf = [f"HTTP/1.1 {status} {reason or reason_phrase(status)}\r\n".encode('latin-1')]
    for k, v in headers:
        buf.append(f"{k}: {v}\r\n".encode('latin-1'))
    buf.append(b"\r\n")
    return b"".join(buf)


def inject_cors(headers: HeaderMultiDict) -> HeaderMultiDict:
    """Adds a wildcard allow-origin header unless the destination set one."""
    if not headers.has(CORS_ALLOW_ORIGIN):
        headers.append('Access-Control-Allow-Origin', '*')
    return headers


def render_json_response(
    status: int,
    payload: Optional[Dict[str, Any]],
    keep_alive: bool = False,
    extra_headers: Optional[List[Tuple[str, str]]] = None
) -> bytes:
    """Full response for the gateway's own endpoints, CORS policy included."""
    body = json.dumps(payload).encode('utf-8') if payload is not None else b""
    headers = HeaderMultiDict([('Access-Control-Allow-Origin', '*')])
    for k, v in extra_headers or []:
        headers.append(k, v)
    if payload is not None:
        headers.append('Content-Type', 'application/json; charset=utf-8')
    headers.append('Content-Length', str(len(body)))
    headers.append('Connection', 'keep-alive' if keep_alive else 'close')
    return render_head(status, headers) + body


def utc_timestamp() -> str:
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class BaseRelayHandler:
    """
    Base class containing shared logic for the gateway handlers.
    Manages upstream connections and logging.
    """
    __slots__ = ('config', 'callback', 'client_addr')

    def __init__(
        self,
        config: Any,
        manager_callback: Optional[Callable[[str, object], None]],
        client_addr: Optional[Tuple[str, int]] = None
    ):
        """Initializes the BaseRelayHandler with connection parameters."""
        self.config = config
        self.callback = manager_callback
        self.client_addr = client_addr

    def log(self, level: str, msg: object) -> None:
        """Emits a log message via the callback."""
        if self.callback:
            try:
                self.callback(level, msg)
            except Exception: # pylint: disable=broad-exception-caught
                pass

    def _upstream_ssl_context(self) -> ssl.SSLContext:
        ctx = ssl.create_default_context()
        # Session keys for packet captures of outbound TLS
        keylog = os.environ.get("SSLKEYLOGFILE")
        if keylog:
            ctx.keylog_filename = keylog

        if self.config.verify_upstream_tls:
            ctx.verify_mode = ssl.CERT_REQUIRED
            ctx.check_hostname = True
        else:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        try:
            ctx.set_alpn_protocols(["http/1.1"])
        except NotImplementedError:
            pass
        return ctx

    async def _connect_upstream(
        self,
        host: str,
        port: int,
        use_tls: bool
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """
        Opens the outbound connection to the destination authority.
        Deadline enforcement is the caller's job; this only classifies failures.
        """
        ctx = self._upstream_ssl_context() if use_tls else None
        try:
            reader, writer = await asyncio.open_connection(
                host, port, ssl=ctx,
                server_hostname=host if ctx else None,
                limit=self.config.max_header_size
            )
        except (OSError, ssl.SSLError) as e:
            raise UpstreamError(describe_connect_failure(e, host, port)) from e

        try:
            sock = writer.get_extra_info('socket')
            if sock:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass
        return reader, writer
