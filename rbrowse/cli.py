import json
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from rbrowse import __version__
from rbrowse.config import DEFAULT_CONFIG, load_config, load_global_config, save_global_config
from rbrowse.credentials import resolve_password, save_credential
from rbrowse.errors import (
    ExportAbortedError,
    InvalidPathError,
    InvalidSnapshotIdError,
    OperationCancelledError,
    RbrowseError,
    RepositoryConfigError,
)
from rbrowse.export import ZipExport
from rbrowse.log import read_logs, write_log
from rbrowse.models import check_snapshot_id, sort_nodes, without_self
from rbrowse.paths import check_safe, download_filename, normalize_dir, normalize_file
from rbrowse.render import format_size
from rbrowse.repos import Binding, RepositoryStore
from rbrowse.source import create_source

console = Console()
err_console = Console(stderr=True)

STDOUT_LABEL = "<stdout>"


@contextmanager
def _errors():
    """Turn rbrowse errors into a red message and an exit status."""
    try:
        yield
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Cancelled.[/yellow]")
        raise SystemExit(130)
    except (InvalidPathError, InvalidSnapshotIdError, RepositoryConfigError) as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise SystemExit(2)
    except OperationCancelledError as e:
        err_console.print(f"[yellow]{escape(str(e))}[/yellow]")
        raise SystemExit(130)
    except ExportAbortedError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        err_console.print("[red]The output is incomplete.[/red]")
        raise SystemExit(130 if isinstance(e.cause, OperationCancelledError) else 1)
    except RbrowseError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise SystemExit(1)
    except OSError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise SystemExit(1)


def _store(ctx):
    if "store" not in ctx.obj:
        ctx.obj["store"] = RepositoryStore.from_config(ctx.obj["config"])
    return ctx.obj["store"]


def _source(ctx):
    try:
        return create_source(ctx.obj["config"])
    except ValueError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise SystemExit(1)


def _when(value):
    return value.strftime("%Y-%m-%d %H:%M") if value else ""


@click.group()
@click.version_option(version=__version__)
@click.pass_context
def main(ctx):
    """rbrowse: read-only browser and ZIP exporter for restic repositories."""
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config()
    except ValueError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise SystemExit(1)


@main.command()
@click.option("--host", default=None, help="Address to listen on.")
@click.option("--port", type=int, default=None, help="Port to listen on.")
@click.pass_context
def serve(ctx, host, port):
    """Run the web browser."""
    from rbrowse.server import BrowserServer

    config = ctx.obj["config"]
    with _errors():
        store = _store(ctx)
    if not store.list():
        console.print("[yellow]No repositories configured yet. Use /config or 'rbrowse repo add'.[/yellow]")
    if not (config["auth_user"] or config["auth_pass"]):
        console.print("[dim]Basic auth disabled (set BASIC_AUTH_USER / BASIC_AUTH_PASS).[/dim]")

    server = BrowserServer(config, store, _source(ctx), host=host, port=port)
    console.print(f"Listening on [bold]{server.url}[/bold]")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        console.print("\n[dim]Shutting down.[/dim]")
    finally:
        server.stop()


# ----------------------------------------------------------------------
# Repository bindings
# ----------------------------------------------------------------------

@main.group()
def repo():
    """Manage repository bindings."""


@repo.command("add")
@click.argument("repo_id")
@click.argument("path")
@click.option("--password-file", default="", help="Read the password from this file.")
@click.option("--lock/--no-lock", "lock", default=None,
              help="Open the repository with or without a restic lock.")
@click.pass_context
def repo_add(ctx, repo_id, path, password_file, lock):
    """Add or update a repository. PATH may be relative to the repo root.

    Example: rbrowse repo add SRV002 srv002
    """
    password = ""
    if not password_file and not resolve_password(repo_id):
        password = click.prompt("  Password", hide_input=True, default="", show_default=False)
    no_lock = ctx.obj["config"]["default_no_lock"] if lock is None else not lock

    with _errors():
        binding = _store(ctx).upsert(Binding(
            id=repo_id, path=path, password=password, password_file=password_file, no_lock=no_lock,
        ))
    console.print(f"Saved [bold cyan]{binding.id}[/bold cyan] → {escape(binding.path)}")


@repo.command("list")
@click.pass_context
def repo_list(ctx):
    """List configured repositories."""
    with _errors():
        bindings = _store(ctx).list()
    if not bindings:
        console.print("[dim]No repositories configured.[/dim]")
        return

    table = Table(title="Repositories")
    table.add_column("ID", style="bold cyan")
    table.add_column("Path")
    table.add_column("Credential", style="dim")
    table.add_column("Lock", style="dim")
    table.add_column("Updated", style="dim")
    for b in bindings:
        if b.password_file:
            credential = f"file {b.password_file}"
        elif b.password:
            credential = "stored"
        else:
            credential = "credentials file"
        table.add_row(b.id, b.path, credential, "no" if b.no_lock else "yes", b.updated_at)
    console.print(table)


@repo.command("remove")
@click.argument("repo_id")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def repo_remove(ctx, repo_id, yes):
    """Remove a repository binding (the repository itself is untouched)."""
    if not yes and not click.confirm(f"Remove {repo_id.upper()}?", default=False):
        console.print("[dim]Cancelled.[/dim]")
        return
    with _errors():
        removed = _store(ctx).remove(repo_id)
    if not removed:
        err_console.print(f"[red]Unknown repository: {escape(repo_id)}[/red]")
        raise SystemExit(1)
    console.print(f"  [red]Removed[/red] {repo_id.upper()}")


@main.command("config")
@click.argument("key", required=False)
@click.argument("value", required=False)
@click.pass_context
def config_cmd(ctx, key, value):
    """Show the effective settings, or save KEY VALUE to ~/.rbrowse/config.json."""
    if key is None:
        table = Table(title="Settings")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for k, v in sorted(ctx.obj["config"].items()):
            shown = "********" if k == "auth_pass" and v else str(v)
            table.add_row(k, escape(shown))
        console.print(table)
        return

    if key not in DEFAULT_CONFIG and key != "repositories_file":
        err_console.print(f"[red]Unknown setting: {escape(key)}[/red]")
        raise SystemExit(2)
    if value is None:
        err_console.print("[red]Missing VALUE.[/red]")
        raise SystemExit(2)

    previous = load_global_config()
    path = save_global_config({key: value})
    try:
        load_config()
    except ValueError as e:
        path.write_text(json.dumps(previous, indent=2) + "\n")
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise SystemExit(2)
    console.print(f"Saved [bold]{escape(key)}[/bold] to {escape(str(path))}")


@main.command()
@click.argument("key")
@click.argument("value")
def auth(key, value):
    """Save a credential. Stored in ~/.rbrowse/credentials.

    Example: rbrowse auth RESTIC_PASSWORD_SRV002 s3cret
    """
    path = save_credential(key, value)
    click.echo(f"Saved {key} to {path}")


# ----------------------------------------------------------------------
# Snapshot access
# ----------------------------------------------------------------------

@main.command()
@click.argument("repo_id")
@click.pass_context
def snapshots(ctx, repo_id):
    """List the snapshots of a repository, newest first."""
    with _errors():
        binding = _store(ctx).require(repo_id)
        snaps = _source(ctx).list_snapshots(binding)

    if not snaps:
        console.print("[dim]No snapshots found.[/dim]")
        return

    table = Table(title=f"Snapshots of {binding.id}")
    table.add_column("ID", style="bold cyan")
    table.add_column("Time", style="dim")
    table.add_column("Host")
    table.add_column("User", style="dim")
    table.add_column("Paths")
    table.add_column("Tags", style="dim")
    for s in snaps:
        table.add_row(s.short_id, _when(s.time), s.hostname, s.username, ", ".join(s.paths), ", ".join(s.tags))
    console.print(table)


@main.command("ls")
@click.argument("repo_id")
@click.argument("snapshot_id")
@click.argument("path", default="/")
@click.pass_context
def ls_cmd(ctx, repo_id, snapshot_id, path):
    """List a directory inside a snapshot."""
    with _errors():
        check_snapshot_id(snapshot_id)
        path = normalize_dir(check_safe(path))
        binding = _store(ctx).require(repo_id)
        nodes = sort_nodes(without_self(_source(ctx).list_directory(binding, snapshot_id, path), path))

    table = Table(title=f"{binding.id} {snapshot_id[:8]} {path}")
    table.add_column("Type", style="dim")
    table.add_column("Name", style="bold")
    table.add_column("Size", justify="right")
    table.add_column("Modified", style="dim")
    for n in nodes:
        name = f"{n.name}/" if n.is_dir else n.name
        table.add_row(n.type, escape(name), format_size(n.size), _when(n.modified))
    console.print(table)


def _open_output(output, default_name):
    """Binary sink for -o; '-' is stdout."""
    if output == "-":
        return click.get_binary_stream("stdout"), STDOUT_LABEL
    target = Path(output or default_name)
    return open(target, "wb"), str(target)


@main.command()
@click.argument("repo_id")
@click.argument("snapshot_id")
@click.argument("path")
@click.option("-o", "--output", default=None, help="Output file ('-' for stdout).")
@click.pass_context
def dump(ctx, repo_id, snapshot_id, path, output):
    """Write one file from a snapshot."""
    with _errors():
        check_snapshot_id(snapshot_id)
        path = normalize_file(check_safe(path))
        binding = _store(ctx).require(repo_id)
        sink, label = _open_output(output, download_filename(path))
        try:
            written = _source(ctx).dump_file(binding, snapshot_id, path, sink)
        finally:
            if label != STDOUT_LABEL:
                sink.close()
            else:
                sink.flush()
    err_console.print(f"Wrote {format_size(written)} to {escape(label)}")


@main.command("export")
@click.argument("repo_id")
@click.argument("snapshot_id")
@click.argument("path", default="/")
@click.option("-o", "--output", default=None, help="Output file ('-' for stdout). Default: <folder>.zip")
@click.pass_context
def export_cmd(ctx, repo_id, snapshot_id, path, output):
    """Export a directory of a snapshot as a ZIP archive."""
    with _errors():
        binding = _store(ctx).require(repo_id)
        export = ZipExport(_source(ctx), binding, snapshot_id, path).prepare()

        entry = {"event": "export", "repo": binding.id, "snapshot": snapshot_id, "path": export.root}
        sink, label = _open_output(output, export.filename)
        try:
            result = export.stream(sink)
        except ExportAbortedError as e:
            write_log({**entry, "result": "failed", "error": str(e.cause)})
            raise
        except KeyboardInterrupt:
            write_log({**entry, "result": "cancelled"})
            raise
        finally:
            if label != STDOUT_LABEL:
                sink.close()
            else:
                sink.flush()
        write_log({**entry, "result": "ok", "entries": result.entries, "bytes": result.bytes})

    err_console.print(
        f"[green]Exported {result.entries} file(s), {format_size(result.bytes)}[/green] to {escape(label)}"
    )


@main.command()
@click.option("-n", "--limit", default=20, help="Number of log entries to show.")
@click.option("--repo", "repo_id", default=None, help="Only show entries for this repository.")
def logs(limit, repo_id):
    """Show the download and export audit log."""
    entries = read_logs(limit, repo=repo_id)
    if not entries:
        console.print("[dim]No logs found.[/dim]")
        return

    table = Table(title="Audit Log")
    table.add_column("Time", style="dim")
    table.add_column("Event", style="bold")
    table.add_column("Repo", style="cyan")
    table.add_column("Snapshot", style="dim")
    table.add_column("Path", max_width=50)
    table.add_column("Result", style="bold")

    for entry in entries:
        ts = entry.get("timestamp", "")
        if ts:
            try:
                ts = datetime.fromisoformat(ts).strftime("%m-%d %H:%M")
            except ValueError:
                pass
        result = entry.get("result", "")
        result_style = {"ok": "[green]ok[/green]", "failed": "[red]failed[/red]"}.get(result, result)
        table.add_row(
            ts,
            entry.get("event", ""),
            entry.get("repo", ""),
            entry.get("snapshot", "")[:8],
            escape(entry.get("path", "")),
            result_style,
        )
    console.print(table)
