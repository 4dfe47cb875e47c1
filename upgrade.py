#Filename: upgrade.py
"""
PROTOCOL UPGRADE PASSTHROUGH
Once the destination accepts an upgrade (101 Switching Protocols) the
relay becomes an opaque duplex byte pipe. Two ByteStream pumps share one
CancelToken; whichever direction ends first tears down the other.
"""

import asyncio
from typing import Optional

from structures import HeaderMultiDict
from relay_common import ClientDisconnected, UpstreamError, RelayError
from streams import ByteStream, CancelToken, pump, READ_CHUNK_SIZE


def is_upgrade_request(headers: HeaderMultiDict) -> bool:
    """True when the caller asks to switch protocols (WebSocket and friends)."""
    return 'upgrade' in headers.tokens('connection') and bool(headers.get('upgrade'))


class UpgradeSession:
    """Bidirectional pump between caller and destination after a 101."""
    __slots__ = (
        'client_reader', 'client_writer', 'upstream_reader', 'upstream_writer',
        'token', 'chunk_size', 'client_initial', 'bytes_to_client', 'bytes_to_upstream'
    )

    def __init__(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        upstream_reader: asyncio.StreamReader,
        upstream_writer: asyncio.StreamWriter,
        chunk_size: int = READ_CHUNK_SIZE,
        client_initial: bytes = b"",
        token: Optional[CancelToken] = None
    ) -> None:
        self.client_reader = client_reader
        self.client_writer = client_writer
        self.upstream_reader = upstream_reader
        self.upstream_writer = upstream_writer
        self.chunk_size = chunk_size
        self.client_initial = client_initial
        self.token = token or CancelToken()
        self.bytes_to_client = 0
        self.bytes_to_upstream = 0

    async def run(self) -> int:
        """Pumps until either side closes or fails. Returns bytes sent to the caller."""
        from_client = ByteStream(
            self.client_reader, self.chunk_size, self.token,
            initial=self.client_initial, truncated_exc=ClientDisconnected
        )
        from_upstream = ByteStream(
            self.upstream_reader, self.chunk_size, self.token,
            truncated_exc=UpstreamError
        )
        tasks = {
            asyncio.create_task(self._to_upstream(from_client)),
            asyncio.create_task(self._to_client(from_upstream)),
        }
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self.token.cancel("peer closed")
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._close(self.upstream_writer)
            await self._close(self.client_writer)
        return self.bytes_to_client

    async def _to_upstream(self, source: ByteStream) -> None:
        try:
            self.bytes_to_upstream = await pump(source, self.upstream_writer, write_exc=UpstreamError)
        except RelayError:
            pass

    async def _to_client(self, source: ByteStream) -> None:
        try:
            self.bytes_to_client = await pump(source, self.client_writer, write_exc=ClientDisconnected)
        except RelayError:
            pass

    @staticmethod
    async def _close(writer: asyncio.StreamWriter) -> None:
        try:
            if not writer.is_closing():
                writer.close()
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass
