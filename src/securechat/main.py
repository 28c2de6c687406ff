"""
SecureChat - Command line entry point.

Runs a two-peer demonstration over the in-memory loopback network: both
peers join, one connects to the other, the key exchange runs in-band and
the given messages are exchanged. Both chat logs are printed at the end.
"""

import argparse
import asyncio
import logging
import logging.handlers
import sys
import time
from pathlib import Path
from typing import Callable, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .client import ChatClient
from .config import Config
from .connection_fsm import SessionState
from .constants import APP_NAME, LOG_BACKUP_COUNT, LOG_DATE_FORMAT, LOG_FORMAT, LOG_MAX_BYTES
from .errors import SecureChatError
from .message import MessageOrigin
from .transport import LoopbackNetwork
from .utils import format_timestamp, truncate_string

logger = logging.getLogger(__name__)

DEFAULT_DEMO_MESSAGES = ["hello", "hi there", "this channel is end-to-end encrypted"]


def setup_logging(config: Config, debug: bool = False, console: Optional[Console] = None) -> None:
    """Configure the root logger from the [logging] config section."""
    level_name = "DEBUG" if debug else str(config.get("logging", "level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if config.get("logging", "console_logging", True):
        console_handler = RichHandler(console=console, show_path=debug, rich_tracebacks=True)
        console_handler.setLevel(level)
        root.addHandler(console_handler)

    log_file = config.get("logging", "log_file", "")
    if config.get("logging", "file_logging", False) and log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        root.addHandler(file_handler)


async def _wait_for(condition: Callable[[], bool], timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


def render_chat_log(name: str, client: ChatClient) -> Table:
    """Render one client's chat log as a table."""
    table = Table(title=f"{name} ({client.peer_id})", show_header=True, header_style="bold cyan")
    table.add_column("Time", style="dim", width=10)
    table.add_column("From", style="yellow", width=8)
    table.add_column("Message", style="white")
    table.add_column("Lock", width=4)

    for message in client.chat_log:
        if message.origin == MessageOrigin.SYSTEM:
            table.add_row(format_timestamp(message.timestamp), "system", f"[dim]{message.text}[/]", "")
            continue
        sender = "me" if message.origin == MessageOrigin.LOCAL else "peer"
        lock = "[green]yes[/]" if message.encrypted else "[red]no[/]"
        table.add_row(format_timestamp(message.timestamp), sender, truncate_string(message.text, 60), lock)

    return table


async def run_demo(
    config: Config,
    messages: List[str],
    legacy_peer: bool = False,
    console: Optional[Console] = None,
    legacy_config: Optional[Config] = None,
) -> int:
    """
    Run the loopback demo.

    Returns:
        Process exit code (0 on success, 1 if a session failed)
    """
    console = console or Console()
    network = LoopbackNetwork()

    if legacy_peer:
        legacy_config = legacy_config or Config(config.config_path)
        legacy_config.set("handshake", "enabled", False)

    alice = ChatClient(network.create_peer, config)
    bob = ChatClient(network.create_peer, legacy_config if legacy_peer else config)
    connect_timeout = float(config.get("network", "connect_timeout", 15))
    handshake_timeout = float(config.get("handshake", "timeout", 10))

    try:
        alice.start()
        bob.start()

        if not await _wait_for(lambda: alice.peer_ready and bob.peer_ready, connect_timeout):
            console.print("[red]Peers did not join the network[/]")
            return 1

        console.print(f"alice fingerprint: [bold]{alice.fingerprint}[/]")
        console.print(f"bob fingerprint:   [bold]{bob.fingerprint}[/]")

        alice.connect(bob.peer_id)
        connected = await _wait_for(
            lambda: alice.is_connected and bob.is_connected
            or alice.session.state == SessionState.ERROR,
            connect_timeout,
        )
        if not connected or alice.session.state == SessionState.ERROR:
            console.print(f"[red]Connection failed: {alice.error}[/]")
            return 1

        if not legacy_peer:
            await _wait_for(lambda: alice.encrypted and bob.encrypted, handshake_timeout)

        for index, text in enumerate(messages):
            sender = alice if index % 2 == 0 else bob
            sender.send(text)
            await asyncio.sleep(0.05)

        await alice.session.drain()
        await bob.session.drain()

        failed = [
            name
            for name, client in (("alice", alice), ("bob", bob))
            if client.session is not None and client.session.state == SessionState.ERROR
        ]

        console.print(render_chat_log("alice", alice))
        console.print(render_chat_log("bob", bob))

        if failed:
            console.print(f"[red]Session failed for: {', '.join(failed)}[/]")
            return 1
        return 0
    finally:
        alice.stop()
        bob.stop()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the securechat command."""
    parser = argparse.ArgumentParser(
        prog="securechat",
        description=f"{APP_NAME} - End-to-end encrypted two-party chat session layer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  securechat demo                           # Exchange the default demo messages
  securechat demo --message hi --message yo # Exchange custom messages
  securechat demo --legacy-peer             # Peer without encryption support
  securechat init-config ~/.securechat/config.toml
        """,
    )
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {__version__}")

    subparsers = parser.add_subparsers(dest="command")

    demo = subparsers.add_parser("demo", help="Run a two-peer loopback demo")
    demo.add_argument(
        "--message",
        action="append",
        dest="messages",
        default=None,
        help="Message to send; repeat to send several (alternating senders)",
    )
    demo.add_argument(
        "--legacy-peer",
        action="store_true",
        help="Second peer does not support the key exchange",
    )
    demo.add_argument("--config", type=str, default=None, help="Path to a TOML config file")
    demo.add_argument("--debug", action="store_true", help="Enable debug logging")

    init_config = subparsers.add_parser("init-config", help="Write an example config file")
    init_config.add_argument("path", type=str, help="Where to write the config file")

    args = parser.parse_args(argv)
    console = Console()

    if args.command == "init-config":
        try:
            Config.create_example(Path(args.path).expanduser())
        except SecureChatError as e:
            console.print(f"[red]{e}[/]")
            return 1
        console.print(f"Example configuration written to {args.path}")
        return 0

    if args.command != "demo":
        parser.print_help()
        return 0

    try:
        config = Config(Path(args.config).expanduser() if args.config else None)
    except SecureChatError as e:
        console.print(f"[red]{e}[/]")
        return 1

    setup_logging(config, args.debug, console)
    messages = args.messages or DEFAULT_DEMO_MESSAGES
    return asyncio.run(run_demo(config, messages, args.legacy_peer, console))


if __name__ == "__main__":
    sys.exit(main())
