"""
skpass CLI -- the password store from the command line.

The main Click group is defined here; each command family lives in
its own module and is attached through a register function.

Entry point: skpass.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="skpass")
@click.option("-v", "--verbose", is_flag=True, help="Log engine activity to stderr.")
def main(verbose):
    """skpass -- GPG-encrypted password store with Git sync.

    Compatible with the pass layout in ~/.password-store.
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .store_cmd import register_store_commands
from .entries import register_entry_commands
from .sync_cmd import register_sync_commands

register_store_commands(main)
register_entry_commands(main)
register_sync_commands(main)
