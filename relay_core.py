#Filename: relay_core.py
"""
ASYNC RELAY CORE - HTTP FORWARDING GATEWAY
Orchestrator for the Relay Engine.
Parses inbound HTTP/1.1, serves the gateway's own routes and relays
/proxy calls to the destination named by the `target` parameter.
"""

import asyncio
import time
from typing import Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import urlsplit

from structures import (
    HeaderMultiDict, RelayRequest, RelayRecord, RelayState, MergedRoute,
    HOP_BY_HOP_HEADERS, STRIPPED_REQUEST_HEADERS
)
from relay_common import (
    BaseRelayHandler, TargetValidationError, UpstreamError, ClientDisconnected,
    FramingError, STRICT_HEADER_PATTERN, IDLE_TIMEOUT, COMPACTION_THRESHOLD,
    PREFLIGHT_ALLOW_METHODS, map_error, render_head, render_json_response, inject_cors,
    utc_timestamp
)
from routing import resolve_target, merge_route, split_query
from streams import ByteStream, Deadline, EmptyStream, content_length, make_body_stream, pump
from upgrade import UpgradeSession, is_upgrade_request

RELAY_PATH = "/proxy"
HEALTH_PATH = "/api/health"
HELLO_PATH = "/api/hello"

# Destination response fields that belong to the upstream hop only.
RESPONSE_HOP_HEADERS = frozenset({'connection', 'keep-alive', 'proxy-connection'})


class ResponseHead:
    """Status line and headers of a destination response."""
    __slots__ = ('version', 'status', 'reason', 'headers')

    def __init__(self, version: str, status: int, reason: str, headers: HeaderMultiDict) -> None:
        self.version = version
        self.status = status
        self.reason = reason
        self.headers = headers

    @property
    def is_interim(self) -> bool:
        return 100 <= self.status < 200 and self.status != 101

    def __repr__(self) -> str:
        return f"<ResponseHead {self.status} {self.reason}>"


def parse_response_head(raw: bytes) -> ResponseHead:
    """Parses a CRLF-delimited status line and header block."""
    lines = raw.decode('latin-1').split('\r\n')
    status_line = lines[0]
    parts = status_line.split(' ', 2)
    if len(parts) < 2 or not parts[0].startswith('HTTP/'):
        raise UpstreamError(f"Malformed status line from destination: {status_line[:64]!r}")
    try:
        status = int(parts[1])
    except ValueError as exc:
        raise UpstreamError(f"Malformed status code from destination: {parts[1][:16]!r}") from exc
    if not 100 <= status <= 999:
        raise UpstreamError(f"Status code out of range: {status}")

    headers = HeaderMultiDict()
    pending: Optional[Tuple[str, str]] = None
    for line in lines[1:]:
        if not line:
            continue
        if line[0] in (' ', '\t') and pending:
            # obs-fold: join the continuation onto the previous field
            pending = (pending[0], f"{pending[1]} {line.strip()}")
            continue
        if pending:
            headers.append(*pending)
        name, sep, value = line.partition(':')
        if not sep or not name or name != name.strip():
            raise UpstreamError(f"Malformed header from destination: {line[:64]!r}")
        pending = (name, value.strip())
    if pending:
        headers.append(*pending)

    return ResponseHead(parts[0], status, parts[2] if len(parts) > 2 else "", headers)


async def read_response_head(reader: asyncio.StreamReader) -> ResponseHead:
    """Reads one response head off the outbound connection."""
    try:
        raw = await reader.readuntil(b"\r\n\r\n")
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            raise UpstreamError("socket hang up") from e
        raise UpstreamError("Destination closed the connection mid-header") from e
    except asyncio.LimitOverrunError as e:
        raise UpstreamError("Response head exceeded max size") from e
    except (ConnectionError, OSError) as e:
        raise UpstreamError(f"Read failed: {e}") from e
    return parse_response_head(raw[:-4])


def build_upstream_head(relay: RelayRequest, route: MergedRoute, upgrade: bool = False) -> bytes:
    """
    Request line + headers for the destination.
    Caller browser context (origin, referer) and hop-by-hop fields are dropped,
    Host is rewritten to the destination and X-Forwarded-Host records the caller's.
    """
    target = relay.target
    assert target is not None
    conn_tokens = set(relay.headers.tokens('connection'))

    headers = HeaderMultiDict([('Host', target.host_header)])
    for k, v in relay.headers:
        k_lower = k.lower()
        if (
            k_lower == 'host'
            or k_lower in STRIPPED_REQUEST_HEADERS
            or k_lower in HOP_BY_HOP_HEADERS
            or k_lower in conn_tokens
        ):
            continue
        headers.append(k, v)
    headers.set('X-Forwarded-Host', relay.headers.get('host') or "")

    if upgrade:
        headers.append('Connection', 'Upgrade')
        headers.append('Upgrade', relay.headers.get('upgrade') or "")
    else:
        headers.append('Connection', 'close')

    # [VECTOR OPTIMIZATION] Batch header writes to minimize syscalls
    buf = [f"{relay.method} {route.request_target} HTTP/1.1\r\n".encode('latin-1')]
    for k, v in headers:
        buf.append(f"{k}: {v}\r\n".encode('latin-1'))
    buf.append(b"\r\n")
    return b"".join(buf)


def build_relay_response_headers(head: ResponseHead) -> HeaderMultiDict:
    """Destination headers verbatim, minus its hop fields, plus CORS and our Connection."""
    headers = HeaderMultiDict(
        (k, v) for k, v in head.headers if k.lower() not in RESPONSE_HOP_HEADERS
    )
    inject_cors(headers)
    headers.append('Connection', 'close')
    return headers


def normalize_route(path: str) -> str:
    """Route matching ignores case and a single trailing slash."""
    path = (path or "/").lower()
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return path


def response_has_body(method: str, status: int) -> bool:
    """RFC 9112 Section 6.3: HEAD, 1xx, 204 and 304 responses carry no content."""
    return not (method == 'HEAD' or 100 <= status < 200 or status in (204, 304))


class Http11GatewayHandler(BaseRelayHandler):
    """
    Handles one inbound HTTP/1.1 connection: request parsing, the local
    routes, and relaying (including upgrade passthrough).
    """
    __slots__ = (
        'reader', 'writer', 'buffer', '_buffer_offset', '_previous_byte_was_cr',
        'in_flight', '_client_gone'
    )

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        config,
        manager_callback: Optional[Callable[[str, object], None]],
        initial_data: bytes = b""
    ):
        """Initializes the Http11GatewayHandler."""
        raw_addr = writer.get_extra_info('peername')
        client_addr = (
            (str(raw_addr[0]), int(raw_addr[1]))
            if isinstance(raw_addr, tuple) and len(raw_addr) >= 2 else None
        )
        super().__init__(config, manager_callback, client_addr)

        self.reader = reader
        self.writer = writer
        self.buffer = bytearray(initial_data)
        self._buffer_offset = 0
        self._previous_byte_was_cr = False
        self.in_flight = False
        self._client_gone = False

    async def _read_strict_line(self) -> bytes:
        """
        Reads a single line from the buffer/stream, strictly adhering to RFC limits.
        Detects excessive length.
        """
        while True:
            lf_index = self.buffer.find(b'\n', self._buffer_offset)
            if lf_index == -1:
                if len(self.buffer) - self._buffer_offset > 0:
                    self._previous_byte_was_cr = self.buffer[-1] == 0x0D
                if (len(self.buffer) - self._buffer_offset) > self.config.max_header_size:
                    raise FramingError("Header Line Exceeded Max Length")

                # Buffer compaction
                if (
                    self._buffer_offset > COMPACTION_THRESHOLD
                    and self._buffer_offset > (len(self.buffer) // 2)
                ):
                    del self.buffer[:self._buffer_offset]
                    self._buffer_offset = 0

                try:
                    data = await asyncio.wait_for(
                        self.reader.read(self.config.chunk_size), timeout=IDLE_TIMEOUT
                    )
                except asyncio.TimeoutError as exc:
                    raise FramingError("Read Timeout (Idle)") from exc

                if not data:
                    if len(self.buffer) - self._buffer_offset > 0:
                        raise FramingError("Incomplete message")
                    return b""
                self.buffer.extend(data)
                continue

            line_len = lf_index - self._buffer_offset
            if line_len > self.config.max_header_size:
                raise FramingError("Header Line Exceeded Max Length")

            is_crlf = False
            if lf_index > self._buffer_offset:
                if self.buffer[lf_index - 1] == 0x0D:
                    is_crlf = True
            elif lf_index == self._buffer_offset:
                if self._previous_byte_was_cr:
                    is_crlf = True

            line_end = lf_index - 1 if is_crlf else lf_index
            if line_end > self._buffer_offset:
                line = bytes(self.buffer[self._buffer_offset:line_end])
            else:
                line = b""

            self._buffer_offset = lf_index + 1
            self._previous_byte_was_cr = False
            return line

    def _take_buffered(self) -> bytes:
        """Hands over bytes read past the request head and resets the buffer."""
        rem = bytes(self.buffer[self._buffer_offset:])
        del self.buffer[:]
        self._buffer_offset = 0
        return rem

    async def run(self) -> None:
        """Main loop handling HTTP/1.1 request processing."""
        try:
            while True:
                start_ts = time.monotonic()
                try:
                    line = await self._read_strict_line()
                except FramingError as e:
                    self.log("ERROR", f"Framing Error: {e}")
                    if "Timeout" not in str(e) and "Incomplete" not in str(e):
                        await self._send_error(400, "Bad Request")
                    return

                if not line:
                    break

                try:
                    parts = line.split(b' ', 2)
                    if len(parts) != 3 or not parts[2].startswith(b'HTTP/1.'):
                        raise ValueError
                    method_b, target_b, version_b = parts
                    method = method_b.decode('ascii')
                    target = target_b.decode('ascii')
                except (ValueError, UnicodeDecodeError):
                    await self._send_error(400, "Malformed Request Line")
                    return

                headers = HeaderMultiDict()
                try:
                    while True:
                        h_line = await self._read_strict_line()
                        if not h_line:
                            break
                        if h_line[0] in (0x20, 0x09):
                            raise FramingError("Obsolete Line Folding Rejected")
                        match = STRICT_HEADER_PATTERN.match(h_line)
                        if not match:
                            raise FramingError("Invalid Header Syntax")
                        headers.append(
                            match.group(1).decode('ascii'),
                            match.group(2).decode('latin-1').strip()
                        )
                except FramingError as e:
                    await self._send_error(400, str(e))
                    return

                # Transfer-Encoding & Content-Length handling
                te = headers.tokens('transfer-encoding')
                if te:
                    # RFC 9112 Section 6.1: TE overrides CL; never forward both.
                    headers.remove('content-length')
                    if te[-1] != 'chunked':
                        await self._send_error(400, "Bad Transfer-Encoding")
                        return
                elif headers.has('content-length'):
                    try:
                        content_length(headers)
                    except FramingError:
                        await self._send_error(400, "Invalid Content-Length")
                        return

                keep_alive = await self._dispatch(method, target, version_b, headers, start_ts)
                if not keep_alive:
                    break
        except Exception as e: # pylint: disable=broad-exception-caught
            self.log("ERROR", f"HTTP/1.1 Gateway Error: {e}")
        finally:
            if not self.writer.is_closing():
                self.writer.close()

    def _wants_keep_alive(self, version_b: bytes, headers: HeaderMultiDict) -> bool:
        conn = headers.tokens('connection')
        if version_b == b'HTTP/1.0':
            return 'keep-alive' in conn
        if 'close' in conn:
            return False
        # A body we never read would desync the next request on this connection.
        if headers.has('transfer-encoding'):
            return False
        length = headers.get('content-length')
        return not length or length.strip() == '0'

    async def _dispatch(
        self, method: str, target: str, version_b: bytes,
        headers: HeaderMultiDict, start_ts: float
    ) -> bool:
        """Routes one request. Returns True if the connection may be reused."""
        parts = urlsplit(target)
        path = normalize_route(parts.path)
        query_params = split_query(parts.query)
        keep_alive = self._wants_keep_alive(version_b, headers)

        if path == RELAY_PATH:
            return await self._handle_relay(method, path, headers, query_params, keep_alive, start_ts)

        if path == HEALTH_PATH and method in ('GET', 'HEAD'):
            status, payload = 200, {"status": "healthy", "timestamp": utc_timestamp()}
        elif path == HELLO_PATH and method in ('GET', 'HEAD'):
            status, payload = 200, {"message": "Hello from proxy API!"}
        else:
            status, payload = 404, {"error": "Endpoint not found"}

        await self._send_json(status, payload, keep_alive, head_only=(method == 'HEAD'))
        self._emit_access(RelayRecord(method, path, status, (time.monotonic() - start_ts) * 1000))
        return keep_alive

    async def _handle_relay(
        self, method: str, path: str, headers: HeaderMultiDict,
        query_params: List[Tuple[str, str]], keep_alive: bool, start_ts: float
    ) -> bool:
        """Resolves, relays and maps failures for one /proxy call."""
        relay = RelayRequest(method, path, headers, query_params)
        relay.timestamp_start = start_ts

        try:
            target = resolve_target(method, query_params)
        except TargetValidationError as e:
            relay.fail()
            relay.status, payload = map_error(e, production=self.config.production)
            await self._send_json(relay.status, payload, keep_alive)
            self._emit_relay(relay)
            return keep_alive

        if target is None:
            relay.advance(RelayState.DONE)
            relay.status = 204
            await self._send_preflight(headers, keep_alive)
            self._emit_relay(relay)
            return keep_alive

        relay.target = target
        relay.advance(RelayState.RESOLVED)
        route = merge_route(target, query_params)
        upgrade = is_upgrade_request(headers)
        self.log("DEBUG", f"[PROXY] Proxying request to: {target.raw}")

        self.in_flight = True
        try:
            if upgrade:
                relay.body = EmptyStream(self.reader)
                await self._relay(relay, route, client_initial=self._take_buffered())
            else:
                relay.body = make_body_stream(
                    headers, self.reader, is_response=False,
                    chunk_size=self.config.chunk_size, initial=self._take_buffered()
                )
                await self._relay(relay, route)
        except asyncio.CancelledError:
            if not self._client_gone:
                relay.fail()
                raise
            # Our own watcher cancelled the relay; the server is not shutting down.
            current = asyncio.current_task()
            if current is not None:
                current.uncancel()
            relay.fail()
            self.log("DEBUG", f"[PROXY] Caller disconnected, aborted relay to {target.raw}")
        except ClientDisconnected as e:
            relay.fail()
            self.log("DEBUG", f"[PROXY] Caller disconnected: {e}")
        except Exception as e: # pylint: disable=broad-exception-caught
            relay.fail()
            self.log("ERROR", f"[PROXY ERROR] {e}")
            if relay.headers_sent:
                # Headers are committed; a structured error body is impossible.
                self._abort()
            else:
                relay.status, payload = map_error(e, target.raw, self.config.production)
                await self._send_json(relay.status, payload, False)
        finally:
            self.in_flight = False
            self._emit_relay(relay)
        return False

    async def _relay(
        self, relay: RelayRequest, route: MergedRoute, client_initial: bytes = b""
    ) -> None:
        """
        One end-to-end relay. Connects, streams the request body out while
        waiting for the response head, then streams the response back.
        The Deadline covers everything and is re-armed on every chunk.
        """
        target = relay.target
        assert target is not None
        upgrade = is_upgrade_request(relay.headers)
        relay_task = asyncio.current_task()
        tasks: Set[asyncio.Task] = set()
        u_w: Optional[asyncio.StreamWriter] = None

        async with Deadline(self.config.relay_timeout) as deadline:
            try:
                relay.advance(RelayState.CONNECTING)
                u_r, u_w = await self._connect_upstream(target.host, target.port, target.is_tls)

                try:
                    u_w.write(build_upstream_head(relay, route, upgrade))
                    await u_w.drain()
                except (ConnectionError, OSError) as e:
                    raise UpstreamError(f"Write failed: {e}") from e
                relay.advance(RelayState.STREAMING_REQUEST)
                self.log("DEBUG", f"[PROXY REQ] {relay.method} -> {target.raw}")

                upload = asyncio.create_task(
                    self._upload(relay, u_w, deadline, relay_task, watch=not upgrade)
                )
                head_task = asyncio.create_task(read_response_head(u_r))
                tasks.update((upload, head_task))

                head = await self._await_head(upload, head_task)
                deadline.rearm()
                while head.is_interim:
                    await self._write_client(render_head(head.status, head.headers, head.reason))
                    head_task = asyncio.create_task(read_response_head(u_r))
                    tasks.add(head_task)
                    head = await head_task
                    deadline.rearm()

                self.log("DEBUG", f"[PROXY RES] {head.status} from {target.raw}")
                if relay.state is not RelayState.AWAITING_RESPONSE:
                    relay.advance(RelayState.AWAITING_RESPONSE)
                relay.advance(RelayState.STREAMING_RESPONSE)
                relay.status = head.status

                if upgrade and head.status == 101:
                    await self._write_client(render_head(101, head.headers, head.reason))
                    relay.headers_sent = True
                    # Duplex sessions idle legitimately; the deadline only guarded the handshake.
                    deadline.disarm()
                    session = UpgradeSession(
                        self.reader, self.writer, u_r, u_w,
                        chunk_size=self.config.chunk_size, client_initial=client_initial
                    )
                    relay.bytes_sent = await session.run()
                    relay.advance(RelayState.DONE)
                    return

                out_headers = build_relay_response_headers(head)
                await self._write_client(render_head(head.status, out_headers, head.reason))
                relay.headers_sent = True

                body = make_body_stream(
                    head.headers, u_r, is_response=True,
                    no_body=not response_has_body(relay.method, head.status),
                    chunk_size=self.config.chunk_size
                )
                relay.bytes_sent = await pump(body, self.writer, deadline, write_exc=ClientDisconnected)
                relay.advance(RelayState.DONE)
            finally:
                for t in tasks:
                    if not t.done():
                        t.cancel()
                if tasks:
                    await asyncio.gather(*tasks, return_exceptions=True)
                if u_w is not None and not u_w.is_closing():
                    u_w.close()

    async def _upload(
        self, relay: RelayRequest, u_w: asyncio.StreamWriter, deadline: Deadline,
        relay_task: Optional[asyncio.Task], watch: bool
    ) -> None:
        """Streams the caller's body to the destination, then watches for caller hang-up."""
        body: ByteStream = relay.body
        await pump(body, u_w, deadline, write_exc=UpstreamError)
        if relay.state is RelayState.STREAMING_REQUEST:
            relay.advance(RelayState.AWAITING_RESPONSE)
        if watch and relay_task is not None:
            await self._watch_client(relay_task)

    async def _watch_client(self, relay_task: asyncio.Task) -> None:
        """Cancels the relay as soon as the caller closes its side."""
        try:
            data = await self.reader.read(1)
        except (ConnectionError, OSError):
            data = b""
        if not data and not relay_task.done():
            self._client_gone = True
            relay_task.cancel()

    @staticmethod
    async def _await_head(upload: asyncio.Task, head_task: asyncio.Task):
        """
        Waits for the response head while the upload runs. A destination may
        answer before reading the whole body, so an upload failing on the
        destination side does not pre-empt a head that still arrives.
        """
        done, _ = await asyncio.wait({upload, head_task}, return_when=asyncio.FIRST_COMPLETED)
        if head_task not in done:
            exc = upload.exception()
            if exc is not None and not isinstance(exc, UpstreamError):
                raise exc
        return await head_task

    async def _write_client(self, data: bytes) -> None:
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionError, OSError) as e:
            raise ClientDisconnected(f"Write failed: {e}") from e

    def _abort(self) -> None:
        transport = self.writer.transport
        if transport is not None:
            transport.abort()

    async def _send_json(
        self, status: int, payload: Optional[Dict], keep_alive: bool, head_only: bool = False
    ) -> None:
        data = render_json_response(status, payload, keep_alive)
        if head_only:
            data = data.split(b"\r\n\r\n", 1)[0] + b"\r\n\r\n"
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionError, OSError):
            pass

    async def _send_preflight(self, headers: HeaderMultiDict, keep_alive: bool) -> None:
        """Answers a CORS preflight aimed at the gateway itself."""
        extra = [('Access-Control-Allow-Methods', PREFLIGHT_ALLOW_METHODS)]
        requested = headers.get('access-control-request-headers')
        if requested:
            extra.append(('Access-Control-Allow-Headers', requested))
            extra.append(('Vary', 'Access-Control-Request-Headers'))
        try:
            self.writer.write(render_json_response(204, None, keep_alive, extra))
            await self.writer.drain()
        except (ConnectionError, OSError):
            pass

    async def _send_error(self, code: int, message: str) -> None:
        """Sends a framing-level HTTP error response to the client."""
        try:
            body = message.encode('utf-8')
            resp = (
                f"HTTP/1.1 {code} {message}\r\n"
                "Connection: close\r\nContent-Type: text/plain\r\n"
                f"Content-Length: {len(body)}\r\n\r\n"
            ).encode('latin-1', 'replace') + body
            self.writer.write(resp)
            await self.writer.drain()
        except (ConnectionError, OSError):
            pass

    def _emit_relay(self, relay: RelayRequest) -> None:
        self._emit_access(RelayRecord(
            relay.method, relay.path, relay.status, relay.elapsed_ms,
            target=relay.target.raw if relay.target else None,
            state=relay.state, bytes_sent=relay.bytes_sent
        ))

    def _emit_access(self, record: RelayRecord) -> None:
        self.log("ACCESS", record)


async def _drain_connections(
    active: Dict[asyncio.Task, Http11GatewayHandler], grace: float
) -> None:
    """Cuts idle connections, lets in-flight relays finish for up to grace seconds."""
    for task, handler in list(active.items()):
        if not handler.in_flight:
            task.cancel()
    pending = [t for t in active if not t.done()]
    if pending:
        _, still = await asyncio.wait(pending, timeout=grace)
        for t in still:
            t.cancel()
    if active:
        await asyncio.gather(*active, return_exceptions=True)


async def start_gateway_server(
    config,
    manager_callback: Callable[[str, object], None],
    ready_event: Optional[asyncio.Event] = None
) -> None:
    """
    Starts the TCP server on the configured host/port and serves until
    cancelled, then drains in-flight relays.
    """
    active: Dict[asyncio.Task, Http11GatewayHandler] = {}

    async def _handle(r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        handler = Http11GatewayHandler(r, w, config, manager_callback)
        task = asyncio.current_task()
        if task is not None:
            active[task] = handler
        try:
            await handler.run()
        finally:
            if task is not None:
                active.pop(task, None)

    server = await asyncio.start_server(_handle, config.host, config.port)
    manager_callback("SYSTEM", f"Relay gateway listening on {config.host}:{config.port}")
    manager_callback("SYSTEM", f"Usage: http://{config.host}:{config.port}{RELAY_PATH}?target=<url>")
    if ready_event is not None:
        ready_event.set()

    async with server:
        try:
            await server.serve_forever()
        except asyncio.CancelledError:
            pass
        finally:
            server.close()
            await _drain_connections(active, config.relay_timeout)
            manager_callback("SYSTEM", "Gateway stopped")
