# gateway.py
"""
Relay Gateway -- HTTP forwarding gateway for browser code.

ARCHITECTURE:
- CLI: argparse + colorama console feedback.
- MANAGER: Delegates to 'gateway_manager.py' (server lifecycle, logging).
- CORE: 'relay_core.py' (HTTP/1.1 relay), 'upgrade.py' (duplex passthrough).
"""

import sys
import asyncio
import argparse
import logging
import signal
from typing import Any, List, Optional

from colorama import Fore, Style, init as colorama_init

# Network & Performance
try:
    import uvloop
except ImportError:
    uvloop = None

from config import GatewayConfig, load_config
from gateway_manager import GatewayManager
from structures import RelayRecord

BANNER = r"""
{Fore.CYAN}
    ____  ________    ___  __  __
   / __ \/ ____/ /   /   | \ \/ /
  / /_/ / __/ / /   / /| |  \  /
 / _, _/ /___/ /___/ ___ |  / /
/_/ |_/_____/_____/_/  |_| /_/
{Fore.YELLOW}     [ RELAY GATEWAY ]{Style.RESET_ALL}
"""


def status_color(status: int) -> str:
    if 200 <= status < 300:
        return Fore.GREEN
    if status >= 500 or status == 0:
        return Fore.RED
    return Fore.YELLOW


class GatewayApp:
    """Console front-end around the GatewayManager."""

    def __init__(self, config: GatewayConfig, quiet: bool = False):
        self.config = config
        self.quiet = quiet
        self.mgr: Optional[GatewayManager] = None

    def _handler(self, level: str, data: Any):
        """Callback hooked into GatewayManager."""
        if self.quiet:
            return
        if level == "ACCESS" and isinstance(data, RelayRecord):
            color = status_color(data.status)
            print(f"{color}[{data.status or '---'}]{Style.RESET_ALL} {data.method:<7} "
                  f"{data.target or data.path} ({data.duration_ms:.0f}ms)")
        elif level == "ERROR":
            print(f"{Fore.RED}[ERR] {data}{Style.RESET_ALL}")

    async def run(self):
        print(BANNER.format(Fore=Fore, Style=Style))
        print(f"{Fore.YELLOW}[*] Starting gateway on {self.config.host}:{self.config.port} "
              f"({'production' if self.config.production else 'development'}, "
              f"timeout {self.config.relay_timeout:.0f}s){Style.RESET_ALL}")

        self.mgr = GatewayManager(self.config, external_callback=self._handler)

        loop = asyncio.get_running_loop()
        if sys.platform != "win32":
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self.mgr.stop)

        await self.mgr.run()
        print(f"{Fore.CYAN}[*] Gateway stopped.{Style.RESET_ALL}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Relay Gateway - HTTP forwarding gateway")
    parser.add_argument("-p", "--port", type=int, default=None, help="Listen port (env PORT, default: 3000)")
    parser.add_argument("--host", default=None, help="Bind address (env GATEWAY_HOST, default: 0.0.0.0)")
    parser.add_argument("-t", "--timeout-ms", type=int, default=None, help="Relay deadline in ms (env GATEWAY_TIMEOUT_MS, default: 30000)")
    parser.add_argument("--production", action="store_true", default=None, help="Hide diagnostics and debug logging")
    parser.add_argument("--verify-tls", action="store_true", default=None, help="Verify destination TLS certificates")
    parser.add_argument("-q", "--quiet", action="store_true", help="No colour access lines on stdout")
    return parser


def config_from_args(args: argparse.Namespace, base: Optional[GatewayConfig] = None) -> GatewayConfig:
    base = base or load_config()
    return base.with_overrides(
        port=args.port,
        host=args.host,
        relay_timeout=(args.timeout_ms / 1000.0) if args.timeout_ms is not None else None,
        production=args.production,
        verify_upstream_tls=args.verify_tls,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = config_from_args(args)
    except ValueError as e:
        print(f"{Fore.RED}[CRITICAL] {e}{Style.RESET_ALL}")
        return 2

    colorama_init(autoreset=True)
    logging.getLogger().setLevel(logging.INFO if config.production else logging.DEBUG)

    if uvloop is not None and sys.platform != "win32":
        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())

    try:
        asyncio.run(GatewayApp(config, quiet=args.quiet).run())
    except KeyboardInterrupt:
        pass
    except OSError as e:
        print(f"{Fore.RED}[CRITICAL] Cannot start gateway: {e}{Style.RESET_ALL}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
