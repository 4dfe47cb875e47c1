# conftest.py
import sys
import os
import asyncio
import pytest
import pytest_asyncio
from unittest.mock import MagicMock, AsyncMock

TESTS = os.path.dirname(os.path.abspath(__file__))
ROOT = os.path.dirname(TESTS)
for path in (ROOT, TESTS):
    if path not in sys.path:
        sys.path.insert(0, path)

from config import GatewayConfig
from relay_core import start_gateway_server
from lab.fixture_server import FixtureServer


@pytest.fixture
def mock_writer():
    writer = MagicMock()
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    writer.is_closing.return_value = False
    writer.get_extra_info.return_value = ("127.0.0.1", 50000)
    return writer


@pytest.fixture
def gateway_config():
    return GatewayConfig(host="127.0.0.1", port=0, relay_timeout=2.0)


@pytest_asyncio.fixture
async def fixture_server():
    server = await FixtureServer().start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def gateway_factory(unused_tcp_port_factory):
    """
    Starts live gateways. Each call returns (base_url, events) where events
    collects every (level, payload) the handlers emitted.
    """
    tasks = []

    async def _start(**overrides):
        port = unused_tcp_port_factory()
        events = []
        settings = {"host": "127.0.0.1", "port": port, "relay_timeout": 2.0}
        settings.update(overrides)
        config = GatewayConfig(**settings)
        ready = asyncio.Event()
        task = asyncio.create_task(
            start_gateway_server(config, lambda level, msg: events.append((level, msg)), ready_event=ready)
        )
        tasks.append(task)
        try:
            await asyncio.wait_for(ready.wait(), timeout=2.0)
        except asyncio.TimeoutError:
            task.cancel()
            pytest.fail(f"Gateway failed to start on port {port}")
        return f"http://127.0.0.1:{port}", events

    yield _start
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


@pytest_asyncio.fixture
async def gateway(gateway_factory):
    return await gateway_factory()
