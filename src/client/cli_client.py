"""Command-line client for azancast.

Subcommands:
    relay            Run the WebSocket relay (with /health on port + 1)
    broadcast        Authorize as broadcaster and control the broadcast
    listen           Authorize as listener (or restore) and play the broadcast
    rotate-key       Force a new session key (operator action)
    forget-listener  Drop this device's remembered listener authorization
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from src.azancast.auth import AuthorizationManager
from src.azancast.config import AppConfig
from src.azancast.errors import WrongKeyOrNoBroadcastYetError, WrongSecretError
from src.azancast.factory import AzancastClient
from src.azancast.models import Role, SessionSnapshot
from src.azancast.relay.server import run_relay
from src.azancast.utils.logging import setup_logging

logger = logging.getLogger(__name__)

BROADCAST_HELP = """
Commands:
  /start  - Start broadcasting
  /stop   - Stop broadcasting
  /status - Show session status
  /quit   - Exit client
  /help   - Show this help
"""

LISTEN_HELP = """
Commands:
  /play   - Start playback if autoplay was blocked
  /stop   - Stop listening
  /status - Show session status
  /quit   - Exit client
  /help   - Show this help
"""


def print_snapshot(snapshot: SessionSnapshot) -> None:
    """Status line observer."""
    print(f"\n[{snapshot.role.value}/{snapshot.state.value}] {snapshot.status_line}")


class CLIClient:
    """Interactive broadcaster or listener session on stdin."""

    def __init__(self, config: AppConfig, role: Role) -> None:
        """Initialize CLI client.

        Args:
            config: Application configuration
            role: Role this session will request
        """
        self.config = config
        self.role = role
        self.client = AzancastClient(config)
        self.controller = self.client.controller
        self.running = True

    async def _prompt(self, prompt: str) -> str:
        loop = asyncio.get_running_loop()
        text: str = await loop.run_in_executor(None, input, prompt)
        return text.strip()

    async def authorize(self, secret: str | None) -> bool:
        """Authorize for ``self.role``, re-prompting after a rejected secret.

        Returns:
            False if the user gave up (EOF)
        """
        if self.controller.snapshot.role is self.role:
            print(f"Restored {self.role.value} authorization for key {self.controller.snapshot.session_key}")
            return True

        label = "Broadcaster secret: " if self.role is Role.BROADCASTER else "Session key: "
        while True:
            candidate = secret if secret is not None else await self._prompt(label)
            secret = None
            try:
                if self.role is Role.BROADCASTER:
                    session_key = await self.controller.submit_broadcaster_secret(candidate)
                    print(f"Session key: {session_key} (share it with your listeners)")
                else:
                    await self.controller.submit_listener_key(candidate)
                return True
            except (WrongSecretError, WrongKeyOrNoBroadcastYetError) as e:
                logger.debug(f"Authorization rejected: {e}")
            except ValueError as e:
                print(f"{e}. Run 'azancast forget-listener' to clear it.")
                return False

    async def input_loop(self) -> None:
        """Handle user commands from stdin."""
        help_text = BROADCAST_HELP if self.role is Role.BROADCASTER else LISTEN_HELP
        print(help_text)

        while self.running:
            try:
                text = await self._prompt("> ")
            except EOFError:
                self.running = False
                break

            if not text:
                continue
            command = text.lstrip("/").lower()

            if command == "quit":
                self.running = False
                print("\nGoodbye!")
                break
            elif command == "help":
                print(help_text)
            elif command == "status":
                print_snapshot(self.controller.snapshot)
            elif command == "stop":
                await self.controller.stop_broadcast()
            elif command == "start" and self.role is Role.BROADCASTER:
                await self.controller.start_broadcast()
            elif command == "play" and self.role is Role.LISTENER:
                await self.controller.resume_playback()
            else:
                print(f"Unknown command: {command}")
                print("Type /help for available commands")

    async def run(self, secret: str | None = None) -> None:
        """Run the interactive session until /quit, EOF or a signal."""
        await self.client.initialize()
        unsubscribe = self.controller.subscribe(print_snapshot)

        loop = asyncio.get_running_loop()
        input_task: asyncio.Task[None] | None = None

        def signal_handler() -> None:
            self.running = False
            if input_task is not None:
                input_task.cancel()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        try:
            if await self.authorize(secret):
                input_task = asyncio.create_task(self.input_loop())
                await input_task
        except (EOFError, asyncio.CancelledError):
            pass
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            unsubscribe()
            if self.controller.snapshot.role is Role.BROADCASTER:
                await self.controller.stop_broadcast()
            await self.client.shutdown()


async def rotate_key(config: AppConfig) -> str:
    """Generate and persist a new session key."""
    client = AzancastClient(config)
    auth: AuthorizationManager = client.auth
    try:
        await client.initialize()
        return await auth.rotate_session_key()
    finally:
        await client.shutdown()


async def forget_listener(config: AppConfig) -> None:
    """Clear the persisted listener authorization."""
    client = AzancastClient(config)
    try:
        await client.initialize()
        await client.auth.revoke_listener()
    finally:
        await client.shutdown()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live azan broadcast with session-key authorization")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML config file (default: built-in defaults plus environment)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    relay = subparsers.add_parser("relay", help="Run the WebSocket relay server")
    relay.add_argument("--host", type=str, default=None, help="Bind host (default: relay.host)")
    relay.add_argument("--port", type=int, default=None, help="Bind port (default: relay.port)")

    broadcast = subparsers.add_parser("broadcast", help="Broadcast microphone audio")
    broadcast.add_argument("--secret", type=str, default=None, help="Broadcaster secret")
    broadcast.add_argument("--tone", action="store_true", help="Broadcast a test tone instead of the microphone")

    listen = subparsers.add_parser("listen", help="Listen to the broadcast")
    listen.add_argument("--key", type=str, default=None, help="Session key")

    subparsers.add_parser("rotate-key", help="Force a new session key")
    subparsers.add_parser("forget-listener", help="Forget this device's listener authorization")

    return parser


def main() -> None:
    """Main entry point for the azancast CLI."""
    load_dotenv()
    args = build_parser().parse_args()

    config = AppConfig.from_yaml_with_defaults(args.config)
    setup_logging("DEBUG" if args.verbose else config.log_level, json_format=config.log_json)

    try:
        if args.command == "relay":
            asyncio.run(
                run_relay(
                    host=args.host or config.relay.host,
                    port=args.port or config.relay.port,
                    max_peers=config.relay.max_peers,
                    health_enabled=config.relay.health_enabled,
                )
            )
        elif args.command == "broadcast":
            if args.tone:
                config.audio.capture = "tone"
            asyncio.run(CLIClient(config, Role.BROADCASTER).run(secret=args.secret))
        elif args.command == "listen":
            asyncio.run(CLIClient(config, Role.LISTENER).run(secret=args.key))
        elif args.command == "rotate-key":
            print(f"New session key: {asyncio.run(rotate_key(config))}")
        elif args.command == "forget-listener":
            asyncio.run(forget_listener(config))
            print("Listener authorization cleared")
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
