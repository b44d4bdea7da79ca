"""Shared utilities for all CLI command modules.

Provides the Rich console, the option set every command takes and the
helpers that open a StoreService and report failed results.
"""

from __future__ import annotations

import functools
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from .. import SKPASS_HOME
from ..codec import EntryCodec, GpgCodec
from ..config import PassphraseMethod, StoreConfig, load_config
from ..errors import ErrorKind
from ..models import NodeKind, OperationResult, ReadResult, ListResult
from ..service import StoreService

logger = logging.getLogger("skpass.cli")

console = Console()
err_console = Console(stderr=True)


def store_options(func):
    """Add --home and --store to a command."""

    @click.option("--home", default=SKPASS_HOME, type=click.Path(), help="skpass home (config, audit log).")
    @click.option("--store", default=None, type=click.Path(), help="Password store directory.")
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return func(*args, **kwargs)

    return wrapper


def build_codec(config: StoreConfig) -> EntryCodec:
    """GpgCodec for the configured passphrase method."""
    provider = None
    if config.passphrase_method == PassphraseMethod.LOOPBACK:
        def provider() -> str:
            return click.prompt("GPG passphrase", hide_input=True, err=True)
    return GpgCodec(
        gpg_binary=config.gpg_binary,
        armor=config.armor,
        passphrase_method=config.passphrase_method,
        passphrase_provider=provider,
        default_timeout=config.decrypt_timeout,
    )


def open_service(home: str, store: Optional[str] = None) -> StoreService:
    home_path = Path(home).expanduser()
    config = load_config(home_path)
    store_dir = Path(store).expanduser() if store else None
    return StoreService(
        config=config,
        codec=build_codec(config),
        home=home_path,
        store_dir=store_dir,
    )


def kind_label(kind: NodeKind) -> str:
    return {
        NodeKind.FOLDER: "[bold blue]folder[/]",
        NodeKind.ENTRY: "[green]entry[/]",
        NodeKind.UNSUPPORTED: "[bold yellow]unsupported[/]",
    }.get(kind, "[dim]?[/]")


_HINTS = {
    ErrorKind.NOT_EMPTY: "use --recursive to remove a folder with content",
    ErrorKind.RECIPIENT_UNAVAILABLE: "run skpass init <gpg-id> first",
    ErrorKind.KEY_UNAVAILABLE: "is gpg-agent running and the secret key imported?",
    ErrorKind.SYNC_UNAVAILABLE: "the store is still usable offline",
    ErrorKind.SYNC_STALE: "the remote keeps moving; try again shortly",
}


def fail(result: OperationResult | ReadResult | ListResult) -> None:
    """Print a failed result and exit with status 1."""
    kind = result.error.value if result.error else "error"
    err_console.print(f"[bold red]{kind}:[/] {result.message}")
    hint = _HINTS.get(result.error)
    if hint:
        err_console.print(f"  [dim]{hint}[/]")
    sys.exit(1)
