#!/usr/bin/env python3
"""
Relay Client - Main Entry Point

Runs a simulated robot or headset against a relay server.

Usage:
    python -m relay_client.main robot --server ws://127.0.0.1:3000/ws --robot-id r1
    python -m relay_client.main headset --server ws://127.0.0.1:3000/ws --robot-id r1 --rate 30
"""

import argparse
import asyncio
import logging
import signal
import sys

from .simulators import STREAM_MODES, SimulatedHeadset, SimulatedRobot

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_client(args: argparse.Namespace):
    """Create the simulator selected on the command line."""
    if args.role == "robot":
        return SimulatedRobot(
            server_url=args.server,
            robot_id=args.robot_id,
            name=args.name,
            stream_mode=args.stream_mode,
            telemetry_rate=args.telemetry_rate,
        )
    return SimulatedHeadset(
        server_url=args.server,
        client_id=args.client_id,
        robot_id=args.robot_id,
        rate=args.rate,
    )


async def run_until_shutdown(client, shutdown_event: asyncio.Event) -> None:
    """Run the client until it finishes or shutdown_event is set."""
    run_task = asyncio.create_task(client.run())
    shutdown_task = asyncio.create_task(shutdown_event.wait())

    done, pending = await asyncio.wait(
        [run_task, shutdown_task],
        return_when=asyncio.FIRST_COMPLETED,
    )

    for task in pending:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    if run_task in done:
        run_task.result()


async def main_async(args: argparse.Namespace) -> None:
    """Async main entry point."""
    client = build_client(args)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await client.start()
        await run_until_shutdown(client, shutdown_event)
    except Exception as e:
        logger.error(f"Client error: {e}")
    finally:
        await client.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Simulated robot/headset for the signaling relay",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    sub = parser.add_subparsers(dest="role", required=True)

    robot = sub.add_parser("robot", help="Run a simulated robot")
    robot.add_argument(
        "--server",
        type=str,
        default="ws://127.0.0.1:3000/ws",
        help="Relay WebSocket URL",
    )
    robot.add_argument(
        "--robot-id",
        type=str,
        required=True,
        help="Robot id to register",
    )
    robot.add_argument(
        "--name",
        type=str,
        default="Python Robot Sim",
        help="Display name sent as meta.name",
    )
    robot.add_argument(
        "--stream-mode",
        choices=STREAM_MODES,
        default="flat2d",
        help="Stream mode to announce",
    )
    robot.add_argument(
        "--telemetry-rate",
        type=float,
        default=1.0,
        help="Telemetry rate (Hz)",
    )

    headset = sub.add_parser("headset", help="Run a simulated headset")
    headset.add_argument(
        "--server",
        type=str,
        default="ws://127.0.0.1:3000/ws",
        help="Relay WebSocket URL",
    )
    headset.add_argument(
        "--client-id",
        type=str,
        default=None,
        help="Client id to claim (relay generates one if omitted)",
    )
    headset.add_argument(
        "--robot-id",
        type=str,
        default=None,
        help="Robot to select (first in roster if omitted)",
    )
    headset.add_argument(
        "--rate",
        type=float,
        default=30.0,
        help="Command rate (Hz)",
    )
    return parser


def main() -> None:
    """Main entry point."""
    args = build_parser().parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        asyncio.run(main_async(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
