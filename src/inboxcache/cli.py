"""inboxcache CLI: inspect and drive a local message cache.

Commands:
    inboxcache init [NAME]              create inbox.toml + .inbox/ dirs
    inboxcache sync FILE                reconcile against a JSON message list
    inboxcache list                     show messages (newest first)
    inboxcache read ID                  mark a message read
    inboxcache delete ID...             soft-delete messages
    inboxcache purge                    drop soft-deleted and expired messages
    inboxcache status                   store path, migration state, counts
"""

from __future__ import annotations

import json
import logging
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from inboxcache.config import InboxConfig, init_config, load_config
from inboxcache.errors import InboxError
from inboxcache.models import MessageFilter
from inboxcache.query import Inbox
from inboxcache.reconciler import Reconciler
from inboxcache.store import open_store

if TYPE_CHECKING:
    from inboxcache.store import StoreHandle

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_cfg() -> InboxConfig:
    try:
        return load_config()
    except Exception as exc:
        raise click.ClickException(str(exc)) from exc


def _open(namespace: str | None) -> StoreHandle:
    cfg = _load_cfg()
    try:
        store = open_store(cfg, namespace)
    except (InboxError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    if store.migration is not None and store.migration.degraded:
        click.echo(f"Warning: {store.migration.warning}", err=True)
    return store


def _read_payloads(path: Path) -> list[Any]:
    """Accept either a bare list or the API shape {"messages": [...]}."""
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Can't read {path}: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("messages", [])
    if not isinstance(data, list):
        raise click.ClickException(f"{path}: expected a list of messages")
    return data


def _fmt_ts(ts: float | None) -> str:
    if ts is None:
        return ""
    return datetime.fromtimestamp(ts, UTC).strftime("%Y-%m-%d %H:%M")


namespace_option = click.option(
    "--namespace", "-n", default=None, help="Store namespace (default: app_key from inbox.toml)",
)

# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="inboxcache")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """inboxcache: local message cache."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(message)s",
    )


@cli.command()
@click.argument("name", required=False)
@click.option("--dir", "root", default=".", show_default=True, help="Project root")
@click.option("--app-key", default="default", show_default=True, help="Default namespace")
def init(name: str | None, root: str, app_key: str) -> None:
    """Create inbox.toml and the .inbox/ directory."""
    root_path = Path(root).resolve()
    try:
        config_path = init_config(root_path, name=name, app_key=app_key)
        click.echo(f"Created {config_path}")
    except FileExistsError:
        click.echo("inbox.toml already exists — skipping init")
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    cfg = load_config(root_path)
    cfg.ensure_dirs()
    click.echo(f"Data dir : {cfg.data_dir}")
    click.echo(f"Store    : {cfg.store_path()}")


@cli.command()
@click.argument("payload_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--source-ts", type=float, default=None,
    help="When the list was fetched (epoch seconds; default: now)",
)
@namespace_option
def sync(payload_file: Path, source_ts: float | None, namespace: str | None) -> None:
    """Reconcile the store against a JSON message list."""
    payloads = _read_payloads(payload_file)
    cfg = _load_cfg()
    with _open(namespace) as store:
        try:
            summary = Reconciler(store, cfg).apply(
                payloads, time.time() if source_ts is None else source_ts,
            )
        except InboxError as exc:
            raise click.ClickException(str(exc)) from exc
    counts = {k: v for k, v in summary.to_dict().items() if k != "failed_ids" and v}
    click.echo(", ".join(f"{k}={v}" for k, v in counts.items()) or "no changes")
    for mid in summary.failed_ids:
        click.echo(f"  failed: {mid}", err=True)


@cli.command("list")
@click.option("--unread", is_flag=True, help="Only unread messages")
@click.option("--all", "include_all", is_flag=True, help="Include deleted and expired messages")
@namespace_option
def list_cmd(unread: bool, include_all: bool, namespace: str | None) -> None:
    """Show messages, newest first."""
    from rich.console import Console
    from rich.markup import escape
    from rich.table import Table

    with _open(namespace) as store:
        messages = Inbox(store).list(
            unread_only=unread, include_deleted=include_all, include_expired=include_all,
        )

    table = Table(show_header=True, header_style="bold")
    table.add_column("Id", no_wrap=True)
    table.add_column("Sent", style="dim", no_wrap=True)
    table.add_column("Title")
    table.add_column("Flags", no_wrap=True)
    for m in messages:
        flags = []
        if m.unread:
            flags.append("[bold]unread[/bold]")
        if m.deleted:
            flags.append("[red]deleted[/red]")
        if m.orphaned:
            flags.append("[yellow]orphaned[/yellow]")
        table.add_row(escape(m.id), _fmt_ts(m.sent_at), escape(m.title), " ".join(flags))
    Console().print(table)


@cli.command()
@click.argument("message_id")
@namespace_option
def read(message_id: str, namespace: str | None) -> None:
    """Mark a message read."""
    with _open(namespace) as store:
        if not Inbox(store).mark_read(message_id):
            raise click.ClickException(f"No message {message_id}")
    click.echo(f"Read {message_id}")


@cli.command()
@click.argument("message_ids", nargs=-1, required=True)
@namespace_option
def delete(message_ids: tuple[str, ...], namespace: str | None) -> None:
    """Soft-delete messages (hidden until purged)."""
    with _open(namespace) as store:
        result = Inbox(store).mark_deleted(message_ids)
    for r in result.results:
        if r.ok:
            click.echo(f"Deleted {r.op.id}")
        else:
            click.echo(f"  not found: {r.op.id}", err=True)


@cli.command()
@namespace_option
def purge(namespace: str | None) -> None:
    """Remove soft-deleted and expired messages for good."""
    with _open(namespace) as store:
        inbox = Inbox(store)
        n_deleted = inbox.purge_deleted()
        n_expired = inbox.purge_expired()
    click.echo(f"Purged {n_deleted} deleted, {n_expired} expired")


@cli.command()
@namespace_option
def status(namespace: str | None) -> None:
    """Show store location, migration state and message counts."""
    from rich.console import Console
    from rich.table import Table

    cfg = _load_cfg()
    with _open(namespace) as store:
        total = store.count()
        live = store.count(MessageFilter())
        unread = store.count(MessageFilter(unread_only=True))
        orphaned = store.count(MessageFilter(include_deleted=True, orphaned_only=True))
        migration = store.migration
        db_path = store.db_path

    table = Table(title=f"inboxcache — {cfg.name}", show_header=True, header_style="bold")
    table.add_column("Metric", style="dim", no_wrap=True)
    table.add_column("Value", justify="right")
    table.add_row("Namespace", store.namespace)
    table.add_row("Store", str(db_path))
    if migration is not None:
        state = migration.state.value
        if migration.degraded:
            state = f"[yellow]{state} (degraded)[/yellow]"
        table.add_row("Migration", state)
    table.add_row("", "")
    table.add_row("Messages", str(total))
    table.add_row("  Visible", str(live))
    table.add_row("  Unread", str(unread))
    table.add_row("  Deleted", str(total - live))
    if orphaned:
        table.add_row("  Orphaned", f"[yellow]{orphaned}[/yellow]")
    table.add_row("Orphan grace", f"{cfg.reconcile.orphan_grace_seconds:g}s")
    Console().print(table)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    cli(standalone_mode=True)


if __name__ == "__main__":
    main()
