#!/usr/bin/env python3
"""
Relay Server - Main Entry Point

This server lets a headset tele-operate a robot over WebRTC:
- Robot/headset handshake and roster discovery
- WebRTC offer/answer/candidate forwarding
- Safety gate on every motion, viewport and button command
- Heartbeat sweep of dead connections

Environment Variables:
    RELAY_HOST: Bind address (default: 0.0.0.0)
    PORT: Bind port (default: 3000)
    RELAY_PING_INTERVAL: Heartbeat sweep interval in seconds (default: 15)
    RELAY_SEND_QUEUE: Max queued outbound messages per connection (default: 256)
    RELAY_STATIC_DIR: Directory served under /static (default: unset)
    RELAY_LOG_LEVEL: Log level (default: INFO)

Usage:
    PORT=3000 python -m relay_server.main
"""

import asyncio
import logging
import signal
import sys

import uvicorn

from .config import RelayConfig
from .ws_server import RelayServer

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_uvicorn_config(server: RelayServer) -> uvicorn.Config:
    """uvicorn settings; protocol pings run at the heartbeat interval."""
    return uvicorn.Config(
        server.app,
        host=server.config.host,
        port=server.config.port,
        log_level=server.config.log_level.lower(),
        access_log=True,
        ws_ping_interval=server.config.ping_interval,
        ws_ping_timeout=server.config.ping_interval,
    )


async def run_server(server: RelayServer) -> None:
    """Run the relay with uvicorn."""
    await uvicorn.Server(build_uvicorn_config(server)).serve()


async def main_async() -> None:
    """Async main entry point."""
    try:
        config = RelayConfig.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    logging.getLogger().setLevel(config.log_level)

    server = RelayServer(config=config)
    logger.info(f"Relay listening on {config.host}:{config.port}")

    # Setup signal handlers
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    server_task = asyncio.create_task(run_server(server))
    shutdown_task = asyncio.create_task(shutdown_event.wait())

    try:
        done, pending = await asyncio.wait(
            [server_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        # Cancel pending tasks
        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
    except Exception as e:
        logger.error(f"Server error: {e}")
    finally:
        logger.info("Relay stopped")


def main() -> None:
    """Main entry point."""
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
