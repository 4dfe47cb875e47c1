# gateway_manager.py

"""
Gateway Manager.
Owns the relay server task, routes handler events onto the logging
module and fans completed-relay records out to observers.
"""

import asyncio
import logging
from typing import Any, Callable, List, Optional

import relay_core
from config import GatewayConfig
from structures import RelayRecord

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] [%(name)s] %(message)s", datefmt="%H:%M:%S")
log = logging.getLogger("GatewayManager")

RelayObserver = Callable[[RelayRecord], None]


class GatewayManager:
    def __init__(self, config: GatewayConfig, external_callback: Optional[Callable[[str, Any], None]] = None):
        self.config = config
        self.external_callback = external_callback
        self.observers: List[RelayObserver] = []
        self.count = 0
        self.stop_event = asyncio.Event()
        self.ready_event = asyncio.Event()
        self.server_task: Optional[asyncio.Task] = None

    def add_observer(self, observer: RelayObserver) -> None:
        """Registers a callable invoked with every RelayRecord once a call completes."""
        self.observers.append(observer)

    def unified_callback(self, level: str, payload: Any):
        if level == "ACCESS" and isinstance(payload, RelayRecord):
            self.count += 1
            if payload.path == relay_core.RELAY_PATH:
                log.info(f"[PROXY] {payload.display_str()}")
            else:
                log.debug(payload.display_str())
            for observer in self.observers:
                try:
                    observer(payload)
                except Exception as e:
                    log.warning(f"Relay observer failed: {e}")
        elif level == "DEBUG":
            if not self.config.production:
                log.debug(str(payload))
        elif level == "SYSTEM":
            log.info(f"[SYSTEM] {payload}")
        elif level == "ERROR":
            log.error(f"[ERROR] {payload}")

        if self.external_callback:
            try:
                self.external_callback(level, payload)
            except Exception:
                pass

    async def run(self):
        log.info("=== Starting Relay Gateway ===")
        self.server_task = asyncio.create_task(relay_core.start_gateway_server(
            self.config, self.unified_callback, ready_event=self.ready_event))

        stop_waiter = asyncio.create_task(self.stop_event.wait())
        try:
            done, _ = await asyncio.wait({self.server_task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
            if self.server_task in done:
                # Surfaces bind failures (address in use, permission denied).
                self.server_task.result()
        except asyncio.CancelledError:
            pass
        finally:
            stop_waiter.cancel()
            if self.server_task and not self.server_task.done():
                self.server_task.cancel()
                try:
                    await self.server_task
                except asyncio.CancelledError:
                    pass

    def stop(self):
        self.stop_event.set()
