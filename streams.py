#Filename: streams.py
"""
STREAMING PRIMITIVES
Cancellable byte streams over asyncio readers, HTTP/1.1 body framing,
the backpressured pump, and the re-armable relay Deadline.
Memory per stream stays bounded by one chunk regardless of body size.
"""

import asyncio
from typing import AsyncIterator, Optional, Type

from structures import HeaderMultiDict
from relay_common import (
    RelayError, FramingError, UpstreamError, UpstreamTimeoutError, ClientDisconnected
)

READ_CHUNK_SIZE = 65536

# -- Cancellation & Deadlines --

class CancelToken:
    """One-shot cancellation signal shared by the streams of a relay."""
    __slots__ = ('_event', 'reason')

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class Deadline:
    """
    Single relay deadline. Armed on entry, re-armed after every transferred
    chunk so it also bounds inactivity. Expiry surfaces as UpstreamTimeoutError.
    """
    __slots__ = ('seconds', '_cm')

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self._cm: Optional[asyncio.Timeout] = None

    async def __aenter__(self) -> 'Deadline':
        self._cm = asyncio.timeout(self.seconds)
        await self._cm.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> Optional[bool]:
        assert self._cm is not None
        try:
            return await self._cm.__aexit__(exc_type, exc, tb)
        except TimeoutError as e:
            raise UpstreamTimeoutError(
                f"Relay timed out after {round(self.seconds * 1000)}ms"
            ) from e

    def rearm(self) -> None:
        if self._cm is not None:
            self._cm.reschedule(asyncio.get_running_loop().time() + self.seconds)

    def disarm(self) -> None:
        if self._cm is not None:
            self._cm.reschedule(None)

    @property
    def expired(self) -> bool:
        return self._cm is not None and self._cm.expired()


# -- Byte Streams --

class ByteStream:
    """
    Cancellable asynchronous byte source.
    next_chunk() returns at most chunk_size bytes and b"" once the stream is
    exhausted, closed, or its token was cancelled. The base class reads until
    the peer closes the connection.
    """
    __slots__ = ('reader', 'chunk_size', 'token', 'truncated_exc', '_prefix', '_closed', 'eof')

    def __init__(
        self,
        reader: asyncio.StreamReader,
        chunk_size: int = READ_CHUNK_SIZE,
        token: Optional[CancelToken] = None,
        initial: bytes = b"",
        truncated_exc: Type[RelayError] = FramingError
    ) -> None:
        self.reader = reader
        self.chunk_size = chunk_size
        self.token = token
        self.truncated_exc = truncated_exc
        self._prefix = bytes(initial)
        self._closed = False
        self.eof = False

    async def next_chunk(self) -> bytes:
        if self.eof or self._closed:
            return b""
        if self.token is not None and self.token.cancelled:
            self._closed = True
            return b""
        chunk = await self._read_chunk()
        if not chunk:
            self.eof = True
        return chunk

    def close(self) -> None:
        self._closed = True
        self._prefix = b""

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.next_chunk()
            if not chunk:
                return
            yield chunk

    async def _read_chunk(self) -> bytes:
        return await self._read(self.chunk_size)

    # -- Buffered primitives (prefix first, then the socket) --

    async def _read(self, n: int) -> bytes:
        if self._prefix:
            data, self._prefix = self._prefix[:n], self._prefix[n:]
            return data
        try:
            return await self.reader.read(n)
        except (ConnectionError, OSError) as e:
            raise self.truncated_exc(f"Connection lost: {e}") from e

    async def _readline(self) -> bytes:
        if b"\n" in self._prefix:
            idx = self._prefix.index(b"\n") + 1
            line, self._prefix = self._prefix[:idx], self._prefix[idx:]
            return line
        head, self._prefix = self._prefix, b""
        try:
            return head + await self.reader.readline()
        except ValueError as e:
            raise FramingError("Line exceeded max length") from e
        except (ConnectionError, OSError) as e:
            raise self.truncated_exc(f"Connection lost: {e}") from e


class EmptyStream(ByteStream):
    """A body with no bytes (GET without framing, HEAD/204/304 responses)."""
    __slots__ = ()

    async def _read_chunk(self) -> bytes:
        return b""


class FixedLengthStream(ByteStream):
    """Body framed by Content-Length."""
    __slots__ = ('remaining',)

    def __init__(self, reader: asyncio.StreamReader, length: int, **kwargs) -> None:
        super().__init__(reader, **kwargs)
        self.remaining = length

    async def _read_chunk(self) -> bytes:
        if self.remaining <= 0:
            return b""
        data = await self._read(min(self.chunk_size, self.remaining))
        if not data:
            raise self.truncated_exc(
                f"Connection closed with {self.remaining} body bytes outstanding"
            )
        self.remaining -= len(data)
        return data


class ChunkedStream(ByteStream):
    """
    Transfer-Encoding: chunked body, passed through without re-encoding.
    Chunk framing is parsed only to find the end of the message; the bytes
    yielded are the exact wire bytes, size lines and trailers included.
    """
    __slots__ = ('_chunk_left', '_done')

    def __init__(self, reader: asyncio.StreamReader, **kwargs) -> None:
        super().__init__(reader, **kwargs)
        self._chunk_left = 0
        self._done = False

    async def _read_chunk(self) -> bytes:
        if self._done:
            return b""

        if self._chunk_left > 0:
            data = await self._read(min(self.chunk_size, self._chunk_left))
            if not data:
                raise self.truncated_exc("Connection closed inside a chunk")
            self._chunk_left -= len(data)
            return data

        line = await self._readline()
        if not line.endswith(b"\n"):
            raise self.truncated_exc("Connection closed before chunk size")
        size_field = line.split(b";", 1)[0].strip()
        try:
            if not size_field or size_field.startswith((b"-", b"+")):
                raise ValueError
            size = int(size_field, 16)
        except ValueError as exc:
            raise FramingError("Invalid chunk size") from exc

        if size > 0:
            # Data plus its trailing CRLF.
            self._chunk_left = size + 2
            return line

        parts = [line]
        while True:
            t = await self._readline()
            if not t.endswith(b"\n"):
                raise self.truncated_exc("Connection closed inside trailers")
            parts.append(t)
            if t in (b"\r\n", b"\n"):
                break
        self._done = True
        return b"".join(parts)


def content_length(headers: HeaderMultiDict) -> Optional[int]:
    """Parses Content-Length; identical repeats are tolerated, conflicts are not."""
    values = headers.get_all('content-length')
    if not values:
        return None
    candidates = {v.strip() for value in values for v in value.split(',')}
    if len(candidates) != 1:
        raise FramingError("Conflicting Content-Length")
    raw = candidates.pop()
    if not raw.isdigit():
        raise FramingError("Invalid Content-Length")
    return int(raw)


def make_body_stream(
    headers: HeaderMultiDict,
    reader: asyncio.StreamReader,
    *,
    is_response: bool,
    no_body: bool = False,
    chunk_size: int = READ_CHUNK_SIZE,
    token: Optional[CancelToken] = None,
    initial: bytes = b""
) -> ByteStream:
    """
    Picks the framing for a message body (RFC 9112 Section 6.3).
    Request bodies without framing are empty; response bodies without
    framing run until the destination closes the connection.
    """
    truncated_exc: Type[RelayError] = UpstreamError if is_response else ClientDisconnected
    kwargs = {
        'chunk_size': chunk_size, 'token': token,
        'initial': initial, 'truncated_exc': truncated_exc
    }
    if no_body:
        return EmptyStream(reader, **kwargs)

    te = headers.tokens('transfer-encoding')
    if te:
        if te[-1] == 'chunked':
            return ChunkedStream(reader, **kwargs)
        if not is_response:
            raise FramingError("Bad Transfer-Encoding")
        return ByteStream(reader, **kwargs)

    length = content_length(headers)
    if length is not None:
        if length == 0:
            return EmptyStream(reader, **kwargs)
        return FixedLengthStream(reader, length, **kwargs)

    if is_response:
        return ByteStream(reader, **kwargs)
    return EmptyStream(reader, **kwargs)


async def pump(
    source: ByteStream,
    writer: asyncio.StreamWriter,
    deadline: Optional[Deadline] = None,
    write_exc: Type[RelayError] = ClientDisconnected
) -> int:
    """
    Copies source into writer chunk by chunk. drain() after every write
    propagates the slower side's pace, so at most one chunk is in flight.
    Returns the number of bytes written.
    """
    total = 0
    while True:
        chunk = await source.next_chunk()
        if not chunk:
            return total
        try:
            writer.write(chunk)
            await writer.drain()
        except (ConnectionError, OSError) as e:
            source.close()
            raise write_exc(f"Write failed: {e}") from e
        total += len(chunk)
        if deadline is not None:
            deadline.rearm()
