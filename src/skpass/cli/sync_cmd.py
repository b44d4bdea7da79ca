"""Sync commands: sync, status."""

from __future__ import annotations

import sys

import click
from rich.panel import Panel
from rich.table import Table

from ..errors import ErrorKind
from ..sync import Resolution
from ._common import console, err_console, fail, open_service, store_options

_CHOICES = [r.value for r in Resolution]


def _parse_resolutions(pairs: tuple[str, ...]) -> dict[str, str]:
    resolutions = {}
    for pair in pairs:
        path, sep, choice = pair.rpartition("=")
        if not sep or not path or choice not in _CHOICES:
            raise click.BadParameter(
                f"expected PATH={'|'.join(_CHOICES)}, got '{pair}'", param_hint="--resolve"
            )
        resolutions[path] = choice
    return resolutions


def _side_label(conflict, side: str) -> str:
    if conflict.folder_side == side:
        return "[blue]folder[/]"
    deleted = conflict.deleted_locally if side == "local" else conflict.deleted_remotely
    return "[red]deleted[/]" if deleted else "modified"


def register_sync_commands(main: click.Group) -> None:
    """Register the sync commands."""

    @main.command("sync")
    @click.option("--resolve", "resolve_pairs", multiple=True, metavar="PATH=CHOICE",
                  help="Resolve one conflict: keep-local, keep-remote or keep-both.")
    @click.option("--strategy", type=click.Choice(_CHOICES), default=None,
                  help="Resolve every pending conflict the same way.")
    @store_options
    def sync(resolve_pairs, strategy, home, store):
        """Fetch, merge, commit and push the store."""
        resolutions = _parse_resolutions(resolve_pairs)
        with open_service(home, store) as service:
            if strategy:
                for conflict in service.sync_state().conflicts:
                    resolutions.setdefault(conflict.path, strategy)
            console.print("\n  Synchronizing...", end=" ")
            result = service.synchronize(resolutions)

        if result.error == ErrorKind.CONFLICT:
            console.print("[yellow]conflicts[/]")
            table = Table(show_header=True, header_style="bold")
            table.add_column("Entry", style="cyan")
            table.add_column("Local")
            table.add_column("Remote")
            for c in result.conflicts:
                table.add_row(c.path, _side_label(c, "local"), _side_label(c, "remote"))
            console.print(table)
            err_console.print(
                "  [dim]Re-run with --resolve PATH=keep-local|keep-remote|keep-both "
                "or --strategy.[/]\n"
            )
            sys.exit(1)
        if not result.ok:
            console.print("[red]failed[/]")
            fail(result)

        console.print("[green]done[/]")
        for change in result.changes:
            console.print(f"    [dim]{change.kind.value:>8}[/] {change.path}")
        pushed = "pushed" if result.details.get("pushed") else "nothing to push"
        revision = (result.details.get("revision") or "")[:7]
        console.print(f"  [dim]{revision} {pushed}[/]\n")

    @main.command("status")
    @store_options
    def status(home, store):
        """Show the store's sync state."""
        with open_service(home, store) as service:
            state = service.sync_state()
            root = service.root
            is_repo = service.repo.is_repository()

        lines = [f"Store: [cyan]{root}[/]"]
        if not is_repo:
            lines.append("Git: [yellow]not a repository[/] (sync disabled)")
        else:
            lines.append(f"Phase: [bold]{state.phase.value}[/]")
            lines.append(f"HEAD: {(state.head or 'unborn')[:12]}")
            lines.append(f"Remote: {(state.remote_revision or 'never fetched')[:12]}")
            lines.append(f"Last synced: {(state.last_synced_revision or '-')[:12]}")
            lines.append(f"Local changes: {len(state.local_changes)}")
            if state.conflicts:
                lines.append(f"Conflicts: [bold red]{len(state.conflicts)}[/]")
            if state.last_error:
                lines.append(f"Last error: [red]{state.last_error}[/]")
        console.print()
        console.print(Panel("\n".join(lines), title="skpass status", border_style="bright_blue"))
        for path in state.local_changes:
            console.print(f"  [dim]~[/] {path}")
        console.print()
