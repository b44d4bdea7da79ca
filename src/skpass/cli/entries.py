"""Entry commands: ls, find, show, insert, edit, mv, rm."""

from __future__ import annotations

import sys

import click
from rich.table import Table

from ..models import NodeKind
from ..secret import SecretView
from ._common import console, err_console, fail, kind_label, open_service, store_options


def _read_content(multiline: bool, confirm: bool) -> str:
    if multiline:
        if sys.stdin.isatty():
            err_console.print("[dim]Enter contents, end with Ctrl+D:[/]")
        return click.get_text_stream("stdin").read()
    password = click.prompt("Password", hide_input=True, confirmation_prompt=confirm, err=True)
    return password + "\n"


def register_entry_commands(main: click.Group) -> None:
    """Register the entry commands."""

    @main.command("ls")
    @click.argument("path", default="")
    @store_options
    def ls(path, home, store):
        """List a folder: subfolders first, then entries."""
        with open_service(home, store) as service:
            result = service.list(path)
        if not result.ok:
            fail(result)

        table = Table(title=f"/{result.path}", show_header=True, header_style="bold")
        table.add_column("Name")
        table.add_column("Kind")
        table.add_column("Modified", style="dim")
        for item in result.items:
            name = f"{item.name}/" if item.kind == NodeKind.FOLDER else item.name
            modified = item.modified.strftime("%Y-%m-%d %H:%M") if item.modified else ""
            table.add_row(name, kind_label(item.kind), modified)
        console.print(table)
        unsupported = [i.name for i in result.items if i.kind == NodeKind.UNSUPPORTED]
        if unsupported:
            err_console.print(
                f"[yellow]Not managed (symlink, special file or name clash):[/] {', '.join(unsupported)}"
            )

    @main.command("find")
    @click.argument("terms", nargs=-1, required=True)
    @store_options
    def find(terms, home, store):
        """Find entries whose path contains every TERM. Never decrypts."""
        with open_service(home, store) as service:
            result = service.search(*terms)
        if not result.ok:
            fail(result)
        if not result.items:
            console.print("[dim]No matching entries.[/]")
            return
        for item in result.items:
            if item.kind == NodeKind.UNSUPPORTED:
                console.print(f"{item.path} [yellow](not managed)[/]")
            else:
                console.print(item.path)

    @main.command("show")
    @click.argument("path")
    @click.option("--field", "field_name", default=None, help="Print one key: value field.")
    @click.option("--all", "show_all", is_flag=True, help="Print the whole entry.")
    @click.option("--timeout", type=float, default=None, help="Seconds to wait for the key agent.")
    @store_options
    def show(path, field_name, show_all, timeout, home, store):
        """Decrypt and print an entry's password."""
        with open_service(home, store) as service:
            result = service.get(path, timeout=timeout)
        if not result.ok:
            fail(result)

        with result.secret as secret:
            if show_all:
                click.echo(secret.text, nl=False)
            elif field_name:
                value = secret.fields.get(field_name.lower())
                if value is None:
                    err_console.print(f"[bold red]not_found:[/] no field '{field_name}' in {result.path}")
                    sys.exit(1)
                click.echo(value)
            else:
                click.echo(secret.password)

    @main.command("insert")
    @click.argument("path")
    @click.option("-m", "--multiline", is_flag=True, help="Read the whole entry from stdin.")
    @click.option("-f", "--force", is_flag=True, help="Overwrite an existing entry.")
    @store_options
    def insert(path, multiline, force, home, store):
        """Add a new entry."""
        content = _read_content(multiline, confirm=True)
        with open_service(home, store) as service:
            result = service.write(path, content) if force else service.insert(path, content)
        del content
        if not result.ok:
            fail(result)
        console.print(f"[green]{result.message}[/]")

    @main.command("edit")
    @click.argument("path")
    @click.option("-m", "--multiline", is_flag=True, help="Replace the whole entry from stdin.")
    @store_options
    def edit(path, multiline, home, store):
        """Replace an entry's password, keeping its other lines.

        With --multiline the whole entry is replaced from stdin. No
        plaintext temp file is ever written.
        """
        with open_service(home, store) as service:
            if multiline:
                content = _read_content(True, confirm=False)
                result = service.write(path, content)
            else:
                current = service.get(path)
                if not current.ok:
                    fail(current)
                with current.secret as old:
                    extra = old.extra
                password = click.prompt("New password", hide_input=True, confirmation_prompt=True, err=True)
                with SecretView.from_parts(password, extra) as updated:
                    result = service.write(path, updated)
        if not result.ok:
            fail(result)
        console.print(f"[green]{result.message}[/]")

    @main.command("mv")
    @click.argument("old_path")
    @click.argument("new_path")
    @store_options
    def mv(old_path, new_path, home, store):
        """Rename an entry or folder."""
        with open_service(home, store) as service:
            result = service.rename(old_path, new_path)
        if not result.ok:
            fail(result)
        console.print(f"[green]{result.message}[/]")

    @main.command("rm")
    @click.argument("path")
    @click.option("-r", "--recursive", is_flag=True, help="Remove a folder and everything in it.")
    @click.option("-f", "--force", is_flag=True, help="Do not ask for confirmation.")
    @store_options
    def rm(path, recursive, force, home, store):
        """Remove an entry, or a folder with --recursive."""
        if not force:
            click.confirm(f"Remove {path}?", abort=True, err=True)
        with open_service(home, store) as service:
            result = service.delete(path, recursive=recursive)
        if not result.ok:
            fail(result)
        console.print(f"[green]{result.message}[/]")
