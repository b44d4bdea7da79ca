"""Store commands: init, clone."""

from __future__ import annotations

import click

from ._common import console, fail, open_service, store_options


def register_store_commands(main: click.Group) -> None:
    """Register the store setup commands."""

    @main.command("init")
    @click.argument("gpg_ids", nargs=-1)
    @click.option("-p", "--path", "subfolder", default="", help="Set recipients for a subfolder only.")
    @click.option("--git", "with_git", is_flag=True, help="Also create a git repository.")
    @store_options
    def init(gpg_ids, subfolder, with_git, home, store):
        """Set the GPG recipients for the store or a subfolder.

        Existing entries are re-encrypted for the new recipients. With no
        GPG_IDS and --path, the subfolder goes back to inheriting.
        """
        with open_service(home, store) as service:
            result = service.init_store(list(gpg_ids), path=subfolder, git=with_git)
            root = service.root
        if not result.ok:
            fail(result)
        console.print(f"\n  [green]{result.message}[/] in [cyan]{root}[/]")
        reencrypted = result.details.get("reencrypted", 0)
        if reencrypted:
            console.print(f"  [dim]{reencrypted} entr{'y' if reencrypted == 1 else 'ies'} re-encrypted[/]")
        console.print()

    @main.command("clone")
    @click.argument("url")
    @store_options
    def clone(url, home, store):
        """Clone a remote store into the store directory."""
        with open_service(home, store) as service:
            result = service.clone_store(url)
            root = service.root
        if not result.ok:
            fail(result)
        console.print(f"[green]Cloned[/] {url} into [cyan]{root}[/] ({len(result.changes)} entries)")
