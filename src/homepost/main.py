"""
Homepost - Command line entry point.

Runs the messenger against a directory of homeservers. Pointing several
users at the same --storage-root (for example a synced folder) lets them
exchange messages without any server.
"""

import argparse
import asyncio
import getpass
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .client import Messenger
from .config import Config
from .constants import (
    CONFIG_FILENAME,
    DEVICE_KEY_FILENAME,
    HOMESERVERS_DIR,
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
    SESSION_FILENAME,
)
from .errors import HomepostError, SessionInvalid
from .session import DeviceKeyStore, SessionToken
from .storage import DirectoryStorage
from .utils import (
    format_fingerprint,
    format_timestamp,
    format_timestamp_relative,
    short_key,
    truncate_string,
    validate_public_key_hex,
)

logger = logging.getLogger(__name__)

CURSORS_FILENAME = "cursors.json"
PREVIEW_LENGTH = 200

console = Console()


def configure_logging(config: Config, data_dir: Path, debug: bool = False) -> None:
    """Configure root logging from the [logging] config section."""
    level_name = "DEBUG" if debug else str(config.get("logging", "level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)

    if config.get("logging", "file_logging", True):
        logs_dir = data_dir / LOGS_DIR
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            logs_dir / LOG_FILENAME, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if debug or config.get("logging", "console_logging", False):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)


class CliState:
    """Files the command line keeps in the data directory."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.session_file = data_dir / SESSION_FILENAME
        self.cursors_file = data_dir / CURSORS_FILENAME

    def save_session(self, token: SessionToken) -> None:
        temp_file = self.session_file.with_suffix(".tmp")
        temp_file.write_text(token.to_json(), encoding="utf-8")
        temp_file.replace(self.session_file)

    def load_session(self) -> Optional[SessionToken]:
        if not self.session_file.exists():
            return None
        return SessionToken.from_json(self.session_file.read_text(encoding="utf-8"))

    def clear_session(self) -> None:
        if self.session_file.exists():
            self.session_file.unlink()

    def load_cursors(self) -> Dict[str, Optional[tuple]]:
        if not self.cursors_file.exists():
            return {}
        try:
            data = json.loads(self.cursors_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring corrupted cursors file: {e}")
            return {}
        return {
            key: (value[0], bytes.fromhex(value[1])) if value else None
            for key, value in data.items()
        }

    def save_cursors(self, cursors: Dict[str, Optional[tuple]]) -> None:
        data = {
            key: [value[0], value[1].hex()] if value else None for key, value in cursors.items()
        }
        self.cursors_file.write_text(json.dumps(data, indent=2), encoding="utf-8")


async def _restore(messenger: Messenger, state: CliState) -> bool:
    try:
        token = state.load_session()
        if token is None:
            console.print("[red]Not signed in.[/red] Run 'homepost sign-in' first.")
            return False
        await messenger.restore_session(token)
    except SessionInvalid as e:
        logger.warning(f"Stored session rejected: {e}")
        state.clear_session()
        console.print("[red]Session expired or invalid.[/red] Sign in with your recovery file.")
        return False
    return True


def _key_arguments(args: argparse.Namespace) -> List[str]:
    if args.command == "send":
        return [args.recipient]
    if args.command == "read":
        return [args.counterpart]
    if args.command == "poll":
        return list(args.counterparts)
    return []


async def _run(args: argparse.Namespace, config: Config, data_dir: Path) -> int:
    for key in _key_arguments(args):
        if not validate_public_key_hex(key):
            console.print(f"[red]Error:[/red] not a public key: {escape(key)}")
            return 1

    state = CliState(data_dir)
    device_key = DeviceKeyStore(data_dir / DEVICE_KEY_FILENAME).load_or_create()
    storage_root = Path(args.storage_root).expanduser() if args.storage_root else data_dir / HOMESERVERS_DIR
    messenger = Messenger(DirectoryStorage(storage_root), device_key, config)
    await messenger.init()

    try:
        if args.command == "new-identity":
            passphrase = getpass.getpass("New passphrase: ")
            if passphrase != getpass.getpass("Repeat passphrase: "):
                console.print("[red]Passphrases do not match.[/red]")
                return 1
            material, identity, token = await messenger.create_account(passphrase)
            Path(args.out).write_text(material + "\n", encoding="utf-8")
            state.save_session(token)
            console.print(f"Recovery file written to [bold]{args.out}[/bold]")
            console.print(f"Public key: [bold]{identity.public_key_hex()}[/bold]")
            return 0

        if args.command == "sign-in":
            material = Path(args.recovery_file).read_text(encoding="utf-8").strip()
            passphrase = getpass.getpass("Passphrase: ")
            identity, token = await messenger.sign_in(material, passphrase)
            state.save_session(token)
            console.print(f"Signed in as [bold]{identity.public_key_hex()}[/bold]")
            return 0

        if args.command == "sign-out":
            state.clear_session()
            console.print("Signed out.")
            return 0

        if not await _restore(messenger, state):
            return 1

        if args.command == "whoami":
            profile = messenger.get_user_profile()
            console.print(f"Public key:  {profile['public_key']}")
            console.print(f"Fingerprint: {format_fingerprint(profile['fingerprint'])}")
        elif args.command == "send":
            record = await messenger.send_message(args.recipient, args.message)
            console.print(f"Message sent at {format_timestamp(record.timestamp)}")
        elif args.command == "read":
            view = await messenger.get_conversation_view(args.counterpart)
            table = Table(title=f"Conversation with {short_key(args.counterpart)}")
            table.add_column("Time")
            table.add_column("From")
            table.add_column("Message")
            table.add_column("Verified")
            for message in view.messages:
                table.add_row(
                    format_timestamp(message.timestamp),
                    "me" if message.is_own_message else short_key(message.sender),
                    escape(message.content),
                    "yes" if message.verified else "[red]NO[/red]",
                )
            console.print(table)
            if view.partial:
                console.print("[yellow]One homeserver was unreachable; conversation is partial.[/yellow]")
        elif args.command == "poll":
            cursors = state.load_cursors()
            result = await messenger.get_new_messages(args.counterparts, cursors)
            for message in result.messages:
                flag = "" if message.verified else " [red](unverified)[/red]"
                console.print(
                    f"\\[{format_timestamp_relative(message.timestamp)}] "
                    f"{short_key(message.sender)}: "
                    f"{escape(truncate_string(message.content, PREVIEW_LENGTH))}{flag}"
                )
            for counterpart in result.unavailable:
                console.print(f"[yellow]{short_key(counterpart)} unreachable[/yellow]")
            cursors.update(result.cursors)
            state.save_cursors(cursors)
        return 0
    finally:
        await messenger.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Homepost - encrypted messaging over personal homeservers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  homepost new-identity --out recovery.txt
  homepost send <public key> "hello"
  homepost read <public key>
  homepost poll <public key> [<public key> ...]
        """,
    )
    parser.add_argument("--version", action="version", version=f"Homepost {__version__}")
    parser.add_argument("--data-dir", type=str, default=None, help="Data directory")
    parser.add_argument(
        "--storage-root", type=str, default=None, help="Directory holding the homeservers"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    new_identity = sub.add_parser("new-identity", help="Create an identity and recovery file")
    new_identity.add_argument("--out", default="homepost-recovery.txt", help="Recovery file path")

    sign_in = sub.add_parser("sign-in", help="Sign in with a recovery file")
    sign_in.add_argument("recovery_file", help="Path to the recovery file")

    sub.add_parser("sign-out", help="Forget the stored session")
    sub.add_parser("whoami", help="Show the signed-in identity")

    send = sub.add_parser("send", help="Send a message")
    send.add_argument("recipient", help="Recipient public key (hex)")
    send.add_argument("message", help="Message text")

    read = sub.add_parser("read", help="Show a conversation")
    read.add_argument("counterpart", help="Counterpart public key (hex)")

    poll = sub.add_parser("poll", help="Show messages received since the last poll")
    poll.add_argument("counterparts", nargs="+", help="Counterpart public keys (hex)")

    return parser


def main(argv=None) -> int:
    """Main entry point for the homepost command."""
    args = build_parser().parse_args(argv)

    data_dir = Path(args.data_dir).expanduser().resolve() if args.data_dir else None
    config = Config(data_dir / CONFIG_FILENAME if data_dir else None)
    if data_dir is None:
        data_dir = config.data_dir.resolve()
    data_dir.mkdir(parents=True, exist_ok=True)

    configure_logging(config, data_dir, args.debug)

    try:
        return asyncio.run(_run(args, config, data_dir))
    except HomepostError as e:
        logger.error(f"Command failed: {e}")
        console.print(f"[red]Error:[/red] {escape(e.message)}")
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
