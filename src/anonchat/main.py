"""
AnonChat - Main entry point for the command line client.
"""

import argparse
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.prompt import Prompt
from rich.table import Table

from . import __version__
from .client import ChatClient
from .config import Config
from .constants import (
    ACCOUNT_FILENAME,
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
)
from .conversation import ConversationSync
from .crypto import generate_fingerprint
from .errors import AnonChatError, KeyFormatError, SendError
from .message import Message
from .utils import format_fingerprint, format_timestamp, truncate_string

logger = logging.getLogger(__name__)

QUIT_COMMANDS = ("/quit", "/exit")


def setup_logging(config: Config, data_dir: Path, debug: bool = False) -> None:
    """
    Configure the anonchat logger from the [logging] config section.

    File logs rotate under <data_dir>/logs. Console logs go to stderr
    through rich and stay at WARNING unless debugging, so they do not
    interleave with chat output.
    """
    level_name = str(config.get("logging", "level", "INFO")).upper()
    level = logging.DEBUG if debug else getattr(logging, level_name, logging.INFO)

    package_logger = logging.getLogger("anonchat")
    package_logger.setLevel(level)
    package_logger.handlers.clear()
    package_logger.propagate = False

    if config.get("logging", "file_logging", True):
        logs_dir = data_dir / LOGS_DIR
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            logs_dir / LOG_FILENAME,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        package_logger.addHandler(file_handler)

    if config.get("logging", "console_logging", True):
        console_handler = RichHandler(
            console=Console(stderr=True), show_path=False, rich_tracebacks=debug
        )
        console_handler.setLevel(level if debug else max(level, logging.WARNING))
        package_logger.addHandler(console_handler)


def _resolve_data_dir(value: Optional[str]) -> Path:
    return Path(value or DEFAULT_DATA_DIR).expanduser().resolve()


def _ask_password(confirm: bool = False) -> str:
    password = Prompt.ask("Password", password=True)
    if confirm and Prompt.ask("Repeat password", password=True) != password:
        raise ValueError("Passwords do not match")
    return password


def cmd_whoami(client: ChatClient, args, console: Console) -> int:
    if args.set:
        if not args.set.strip():
            console.print("[red]Identity cannot be blank[/red]")
            return 1
        client.label_store.set(args.set)
    my_id = client.my_id
    if not my_id:
        console.print("[yellow]No identity set. Use: anonchat whoami --set ID[/yellow]")
        return 1
    console.print(my_id)
    return 0


def cmd_keygen(client: ChatClient, args, console: Console) -> int:
    if client.keypair_store.exists() and not args.force:
        console.print(
            "[yellow]A key pair already exists. Generating a new one makes messages "
            "encrypted with the old key unreadable. Use --force to replace it.[/yellow]"
        )
        return 1
    keypair = client.keypair_store.generate()
    console.print("[green]Key pair generated.[/green] Share this public key with your peers:")
    console.print(keypair.public_jwk, markup=False, soft_wrap=True)
    console.print(f"Fingerprint: {format_fingerprint(keypair.fingerprint())}")
    return 0


def cmd_pubkey(client: ChatClient, args, console: Console) -> int:
    public_key = client.keypair_store.get_public_key()
    if not public_key:
        console.print("[yellow]No key pair. Use: anonchat keygen[/yellow]")
        return 1
    console.print(public_key, markup=False, soft_wrap=True)
    console.print(f"Fingerprint: {format_fingerprint(generate_fingerprint(public_key))}")
    return 0


def cmd_peers(client: ChatClient, args, console: Console) -> int:
    records = client.peer_key_store.get_all_records()
    if not records:
        console.print("No saved peer keys.")
        return 0

    table = Table(title="Saved peer keys")
    table.add_column("Peer")
    table.add_column("Fingerprint")
    for record in records:
        try:
            fingerprint = format_fingerprint(generate_fingerprint(record.public_key))
        except KeyFormatError:
            fingerprint = "[red]invalid key[/red]"
        table.add_row(escape(record.peer_identity), fingerprint)
    console.print(table)
    return 0


def cmd_forget(client: ChatClient, args, console: Console) -> int:
    if client.peer_key_store.remove_peer_key(args.peer):
        console.print(f"Forgot key for {escape(args.peer)}")
        return 0
    console.print(f"[yellow]No saved key for {escape(args.peer)}[/yellow]")
    return 1


def cmd_export(client: ChatClient, args, console: Console) -> int:
    password = _ask_password(confirm=True) if args.password else None
    export = client.accounts.export_to(args.file, password)
    console.print(f"[green]Account {escape(export.my_id)} exported to {escape(args.file)}[/green]")
    if export.has_keypair and not password:
        console.print("[yellow]The file contains your private key. Keep it safe.[/yellow]")
    return 0


def cmd_import(client: ChatClient, args, console: Console) -> int:
    password = _ask_password() if args.password else None
    export = client.accounts.import_from(args.file, password)
    console.print(
        f"[green]Account {escape(export.my_id)} restored "
        f"({len(export.peer_keys)} peer keys, key pair "
        f"{'imported' if export.has_keypair else 'unchanged'})[/green]"
    )
    return 0


def _print_message(console: Console, message: Message, local_identity: str) -> None:
    when = format_timestamp(message.created_at, "%H:%M")
    if message.is_outgoing(local_identity):
        who = "[green]you[/green]"
    else:
        who = f"[cyan]{escape(truncate_string(message.sender_identity, 24))}[/cyan]"
    console.print(f"[dim]{escape(when)}[/dim] {who}: {escape(message.payload)}")


async def _stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def _chat_loop(conversation: ConversationSync, console: Console) -> None:
    reader = await _stdin_reader()
    while True:
        line = await reader.readline()
        if not line:
            break
        text = line.decode("utf-8", errors="replace").rstrip("\n")
        if text.strip() in QUIT_COMMANDS:
            break
        if not text.strip():
            continue
        try:
            await conversation.send(text)
        except SendError as e:
            console.print(f"[red]Not sent: {escape(e.message)}[/red]")


async def _run_chat(client: ChatClient, args, console: Console) -> int:
    peer_key = args.peer_key
    if args.peer_key_file:
        peer_key = Path(args.peer_key_file).expanduser().read_text(encoding="utf-8")
    elif args.plain:
        peer_key = ""

    async with client:
        conversation = await client.open_conversation(
            args.peer, peer_key, local_identity=args.as_identity
        )
        local = conversation.local_identity

        if conversation.encryption_active:
            mode = "[green]encrypted[/green]"
        else:
            mode = "[yellow]not encrypted[/yellow]"
        console.rule(f"{escape(local)} <-> {escape(conversation.peer_identity)} ({mode})")
        for message in conversation.messages:
            _print_message(console, message, local)
        if conversation.failed_messages:
            console.print(
                f"[red]{len(conversation.failed_messages)} message(s) could not be decrypted[/red]"
            )
        console.print("[dim]Type a message and press Enter. /quit to leave.[/dim]")

        conversation.on_message = lambda message: _print_message(console, message, local)
        await _chat_loop(conversation, console)
    return 0


def cmd_chat(client: ChatClient, args, console: Console) -> int:
    try:
        return asyncio.run(_run_chat(client, args, console))
    except KeyboardInterrupt:
        return 130


COMMANDS = {
    "whoami": cmd_whoami,
    "keygen": cmd_keygen,
    "pubkey": cmd_pubkey,
    "peers": cmd_peers,
    "forget": cmd_forget,
    "export": cmd_export,
    "import": cmd_import,
    "chat": cmd_chat,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="anonchat",
        description="AnonChat - messenger with optional end-to-end encryption",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  anonchat whoami --set alice          # Choose the identity peers write to
  anonchat keygen                      # Create your encryption key pair
  anonchat chat bob --peer-key-file bob.jwk
  anonchat --server https://chat.example.org chat bob
        """,
    )
    parser.add_argument("--version", action="version", version=f"AnonChat {__version__}")
    parser.add_argument(
        "--data-dir",
        type=str,
        default=None,
        help=f"Data directory for the key pair, identity and peer keys (default: {DEFAULT_DATA_DIR})",
    )
    parser.add_argument("--server", type=str, default=None, help="Message store base URL")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", metavar="command")
    sub.required = True

    whoami = sub.add_parser("whoami", help="Show or set your identity")
    whoami.add_argument("--set", metavar="ID", default=None, help="New identity")

    keygen = sub.add_parser("keygen", help="Generate an encryption key pair")
    keygen.add_argument("--force", action="store_true", help="Replace an existing key pair")

    sub.add_parser("pubkey", help="Print your public key")
    sub.add_parser("peers", help="List saved peer keys")

    forget = sub.add_parser("forget", help="Forget a saved peer key")
    forget.add_argument("peer")

    export = sub.add_parser("export", help="Export your account to a file")
    export.add_argument(
        "file", nargs="?", default=ACCOUNT_FILENAME, help=f"Target file (default: {ACCOUNT_FILENAME})"
    )
    export.add_argument("--password", action="store_true", help="Protect the file with a password")

    imp = sub.add_parser("import", help="Restore an account file")
    imp.add_argument(
        "file", nargs="?", default=ACCOUNT_FILENAME, help=f"Account file (default: {ACCOUNT_FILENAME})"
    )
    imp.add_argument("--password", action="store_true", help="The file is password protected")

    chat = sub.add_parser("chat", help="Open a conversation")
    chat.add_argument("peer")
    chat.add_argument("--as", dest="as_identity", default=None, help="Identity to chat as")
    key_group = chat.add_mutually_exclusive_group()
    key_group.add_argument("--peer-key", default=None, help="Peer public key (JWK)")
    key_group.add_argument("--peer-key-file", default=None, help="File holding the peer public key")
    key_group.add_argument(
        "--plain", action="store_true", help="Do not encrypt, even if a key is saved"
    )

    return parser


def main(argv=None) -> int:
    """Main entry point for the AnonChat command line client."""
    args = build_parser().parse_args(argv)
    console = Console()

    data_dir = _resolve_data_dir(args.data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)

    try:
        config = Config(data_dir / CONFIG_FILENAME)
    except AnonChatError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        return 2
    if args.server:
        config.set("server", "base_url", args.server)

    setup_logging(config, data_dir, args.debug)
    logger.debug(f"Data directory: {data_dir}")

    client = ChatClient(data_dir, config)
    try:
        return COMMANDS[args.command](client, args, console)
    except AnonChatError as e:
        logger.debug(f"Command {args.command} failed: {e.to_dict()}")
        console.print(f"[red]{escape(str(e))}[/red]")
        return 1
    except (ValueError, OSError) as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
