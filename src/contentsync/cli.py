"""Command line interface for contentsync."""

from __future__ import annotations

import difflib
import time
from pathlib import Path
from typing import Any, Optional

import click
import yaml
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table
from rich.tree import Tree

from contentsync.autoscan import AutoscanDirectory, ScanMode
from contentsync.config import (
    AutoscanEntry,
    ConfigError,
    ConfigManager,
    ContentSyncConfig,
    resolve_with_precedence,
)
from contentsync.content import ContentError, ContentManager
from contentsync.log import configure_logging
from contentsync.store import DEFAULT_SNAPSHOT_NAME, ObjectStore, StoreError
from contentsync.store.models import INVALID_OBJECT_ID, ROOT_ID

console = Console()


def _handle_cli_error(
    message: str,
    *,
    code: str,
    json_output: bool,
    details: Any | None = None,
    original: Exception | None = None,
) -> None:
    """Emit a standardized error and terminate the command appropriately.

    Args:
        message: Human-readable error message.
        code: Machine-readable error identifier.
        json_output: Indicates whether JSON mode is active.
        details: Optional structured details to include in the payload.
        original: Original exception for chaining when not using JSON.

    Raises:
        SystemExit: When emitting JSON output to terminate the command.
        click.ClickException: For non-JSON flows to surface the error.
    """

    if json_output:
        payload: dict[str, Any] = {"error": {"code": code, "message": message}}
        if details is not None:
            payload["error"]["details"] = details
        console.print_json(data=payload)
        raise SystemExit(1)

    if isinstance(original, click.ClickException):
        raise original

    raise click.ClickException(message) from original


def _emit_message(message: Any, *, mode: str, quiet: bool, summary_only: bool) -> None:
    """Conditionally print CLI output according to quiet/summary settings.

    Args:
        message: Renderable or string to emit.
        mode: Output mode identifier (`detail`, `summary`, `warning`, or `error`).
        quiet: Whether quiet mode is active.
        summary_only: Whether only summary lines should be emitted.
    """

    if quiet and mode != "error":
        return
    if summary_only and mode not in {"summary", "warning", "error"}:
        return
    console.print(message)


def _format_summary_line(command: str, root: Path | str, metrics: dict[str, Any]) -> str:
    parts = ", ".join(f"{key}={value}" for key, value in metrics.items())
    return f"[green]{command} summary for {root}: {parts}.[/green]"


def _assign_nested(target: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a nested value within a dictionary for a dotted path.

    Raises:
        ConfigError: If a non-mapping value is encountered along the path.
    """

    node = target
    for segment in path[:-1]:
        existing = node.get(segment)
        if existing is None:
            existing = {}
            node[segment] = existing
        elif not isinstance(existing, dict):
            raise ConfigError(
                f"Cannot assign into '{segment}' because it is not a mapping in the config file."
            )
        node = existing
    node[path[-1]] = value


def _load_environment(
    json_output: bool, cli_overrides: Optional[dict[str, Any]] = None
) -> tuple[ContentSyncConfig, Path, ObjectStore]:
    """Load configuration, configure logging and restore the store snapshot."""
    try:
        config = ConfigManager().load(cli_overrides=cli_overrides)
    except ConfigError as exc:
        _handle_cli_error(str(exc), code="config_error", json_output=json_output, original=exc)
        raise  # pragma: no cover

    home = Path(config.server.home).expanduser()
    configure_logging(config.logging, home=home)
    try:
        store = ObjectStore.load(home / DEFAULT_SNAPSHOT_NAME)
    except StoreError as exc:
        _handle_cli_error(str(exc), code="store_error", json_output=json_output, original=exc)
        raise  # pragma: no cover
    return config, home, store


def _count_below(store: ObjectStore, container_id: int) -> dict[str, int]:
    counts = {"items": 0, "containers": 0}
    pending = [container_id]
    while pending:
        for child in store.get_children(pending.pop()):
            if child.is_container:
                counts["containers"] += 1
                pending.append(child.id)
            else:
                counts["items"] += 1
    return counts


def _tree_payload(store: ObjectStore, object_id: int) -> dict[str, Any]:
    obj = store.load_object(object_id)
    payload: dict[str, Any] = {"id": obj.id, "title": obj.title, "class": obj.upnp_class}
    if obj.is_container:
        payload["children"] = [_tree_payload(store, child.id) for child in store.get_children(obj.id)]
    elif obj.location:
        payload["location"] = obj.location
    return payload


def _build_tree(store: ObjectStore, node: Tree, container_id: int) -> None:
    for child in store.get_children(container_id):
        if child.is_container:
            branch = node.add(f"[bold]{child.title}[/bold] [dim]#{child.id}[/dim]")
            _build_tree(store, branch, child.id)
        else:
            suffix = " [cyan](ref)[/cyan]" if child.virtual else ""
            node.add(f"{child.title} [dim]#{child.id}[/dim]{suffix}")


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="contentsync")
def cli() -> None:
    """Keep monitored directories synchronized with a virtual content tree."""


@cli.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=str))
@click.option("-r", "--recursive", is_flag=True, help="Include all subdirectories.")
@click.option("--hidden", is_flag=True, help="Import dotfiles as well.")
@click.option("--json", "json_output", is_flag=True, help="Emit a JSON summary.")
@click.option("--summary", "summary_mode", is_flag=True, help="Only emit summary lines.")
@click.option("--quiet", is_flag=True, help="Suppress non-error output.")
@click.option("--timeout", type=float, default=None, help="Give up waiting after N seconds.")
def scan(
    path: str,
    recursive: bool,
    hidden: bool,
    json_output: bool,
    summary_mode: bool,
    quiet: bool,
    timeout: Optional[float],
) -> None:
    """Import or incrementally rescan PATH into the stored content tree.

    PATH is registered as a manual autoscan (no interval) so repeated scans
    only re-import files modified since the previous run.
    """
    overrides = {"scan": {"autoscan": {"use_inotify": False}}}
    config, home, store = _load_environment(json_output, overrides)
    quiet = quiet or config.cli.quiet_default
    summary_mode = summary_mode or config.cli.summary_default
    root = Path(path).expanduser().resolve()

    content = ContentManager(config, store)
    content.scheduler.start()
    try:
        content.load_autoscans()
        adir = content.get_autoscan_directory_by_location(root)
        if adir is None:
            adir = content.set_autoscan_directory(
                AutoscanDirectory(root, ScanMode.TIMED, recursive, hidden, interval=0)
            )
        elif adir.recursive != recursive or adir.hidden != hidden:
            adir = content.set_autoscan_directory(
                AutoscanDirectory(
                    root,
                    adir.mode,
                    recursive,
                    hidden,
                    adir.interval,
                    adir.persistent,
                    object_id=adir.object_id,
                )
            )
            content.trigger_autoscan(adir)
        else:
            content.trigger_autoscan(adir)
        finished = content.scheduler.wait_until_idle(timeout)
    except (ContentError, StoreError) as exc:
        content.shutdown()
        _handle_cli_error(str(exc), code="scan_error", json_output=json_output, original=exc)
        return
    content.shutdown()
    store.save(home / DEFAULT_SNAPSHOT_NAME)

    object_id = store.find_object_id_by_path(root)
    counts = _count_below(store, object_id) if object_id != INVALID_OBJECT_ID else {}
    metrics = {"objects": len(store), **counts, "complete": finished}
    if json_output:
        console.print_json(data={"path": str(root), "object_id": object_id, **metrics})
        return
    _emit_message(
        _format_summary_line("Scan", root, metrics),
        mode="summary",
        quiet=quiet,
        summary_only=summary_mode,
    )


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True, file_okay=False, path_type=str))
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in ScanMode]),
    default=ScanMode.INOTIFY.value,
    show_default=True,
    help="Rescan periodically or on change notifications.",
)
@click.option("--interval", type=int, default=1800, show_default=True, help="Seconds between timed rescans.")
@click.option("-r", "--recursive", is_flag=True, help="Include subdirectories.")
@click.option("--hidden", is_flag=True, help="Import dotfiles as well.")
@click.option("--once", is_flag=True, help="Register, scan once and exit.")
@click.option("--quiet", is_flag=True, help="Suppress non-error output.")
def watch(
    paths: tuple[str, ...],
    mode: str,
    interval: int,
    recursive: bool,
    hidden: bool,
    once: bool,
    quiet: bool,
) -> None:
    """Register PATHS as autoscan directories and keep them synchronized."""
    config, home, store = _load_environment(False)
    content = ContentManager(config, store)
    try:
        content.run()
        for raw in paths:
            root = Path(raw).expanduser().resolve()
            adir = content.set_autoscan_directory(
                AutoscanDirectory(root, ScanMode(mode), recursive, hidden, interval)
            )
            _emit_message(
                f"[cyan]Watching {root} ({adir.mode.value}).[/cyan]",
                mode="detail",
                quiet=quiet,
                summary_only=False,
            )
        if once:
            content.scheduler.wait_until_idle()
        else:
            _emit_message(
                "[cyan]Press Ctrl+C to stop.[/cyan]", mode="detail", quiet=quiet, summary_only=False
            )
            while True:
                time.sleep(1)
    except KeyboardInterrupt:
        _emit_message("[yellow]Stopping.[/yellow]", mode="warning", quiet=quiet, summary_only=False)
    except (ContentError, StoreError) as exc:
        _handle_cli_error(str(exc), code="watch_error", json_output=False, original=exc)
    finally:
        content.shutdown()
        store.save(home / DEFAULT_SNAPSHOT_NAME)

    _emit_message(
        _format_summary_line("Watch", ", ".join(paths), {"objects": len(store)}),
        mode="summary",
        quiet=quiet,
        summary_only=False,
    )


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Emit the tree as JSON.")
def tree(json_output: bool) -> None:
    """Show the stored content tree."""
    _, _, store = _load_environment(json_output)
    if json_output:
        console.print_json(data=_tree_payload(store, ROOT_ID))
        return
    root = store.load_object(ROOT_ID)
    node = Tree(f"[bold]{root.title}[/bold] [dim]#{root.id}[/dim]")
    _build_tree(store, node, ROOT_ID)
    console.print(node)


@cli.group()
def autoscan() -> None:
    """Manage autoscan directories."""


@autoscan.command("list")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON.")
def autoscan_list(json_output: bool) -> None:
    """List persisted autoscan directories."""
    _, _, store = _load_environment(json_output)
    records = [
        record for mode in ScanMode for record in store.get_autoscan_list(mode.value)
    ]
    if json_output:
        console.print_json(data={"autoscans": [record.model_dump(mode="json") for record in records]})
        return
    if not records:
        console.print("[yellow]No autoscan directories registered.[/yellow]")
        return
    table = Table(title="Autoscan directories")
    table.add_column("Location")
    table.add_column("Mode")
    table.add_column("Interval", justify="right")
    table.add_column("Recursive")
    table.add_column("Hidden")
    table.add_column("Persistent")
    table.add_column("Container", justify="right")
    for record in records:
        table.add_row(
            record.location,
            record.mode,
            str(record.interval),
            "yes" if record.recursive else "no",
            "yes" if record.hidden else "no",
            "yes" if record.persistent else "no",
            str(record.object_id),
        )
    console.print(table)


@autoscan.command("add")
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=str))
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in ScanMode]),
    default=ScanMode.TIMED.value,
    show_default=True,
    help="Rescan periodically or on change notifications.",
)
@click.option("--interval", type=int, default=1800, show_default=True, help="Seconds between timed rescans.")
@click.option("--no-recursive", is_flag=True, help="Only scan the top-level directory.")
@click.option("--hidden", is_flag=True, help="Import dotfiles as well.")
@click.option("--persistent", is_flag=True, help="Keep the autoscan when the directory disappears.")
def autoscan_add(
    path: str, mode: str, interval: int, no_recursive: bool, hidden: bool, persistent: bool
) -> None:
    """Declare PATH as an autoscan directory in the configuration file.

    The entry is picked up by the next `contentsync watch` run.
    """
    manager = ConfigManager()
    manager.ensure_exists()
    entry = AutoscanEntry(
        location=str(Path(path).expanduser().resolve()),
        mode=mode,  # type: ignore[arg-type]
        interval=interval,
        recursive=not no_recursive,
        hidden_files=hidden,
        persistent=persistent,
    )
    try:
        replaced = manager.add_autoscan(entry)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    verb = "Updated" if replaced else "Added"
    console.print(f"[green]{verb} {entry.mode} autoscan {entry.location}.[/green]")


@autoscan.command("remove")
@click.argument("path", type=click.Path(path_type=str))
def autoscan_remove(path: str) -> None:
    """Remove the configured autoscan for PATH."""
    manager = ConfigManager()
    manager.ensure_exists()
    location = str(Path(path).expanduser().resolve())
    try:
        removed = manager.remove_autoscan(location)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if not removed:
        raise click.ClickException(f"No configured autoscan for {location}.")
    console.print(f"[green]Removed autoscan {location}.[/green]")


@cli.group()
def config() -> None:
    """Manage contentsync configuration."""


@config.command("view")
@click.option("--no-env", is_flag=True, help="Ignore environment overrides when displaying output.")
def config_view(no_env: bool) -> None:
    """Display the effective configuration after applying precedence rules.

    Raises:
        click.ClickException: If configuration cannot be loaded.
    """
    manager = ConfigManager()
    try:
        manager.ensure_exists()
        loaded = manager.load(include_env=not no_env)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    yaml_text = yaml.safe_dump(loaded.model_dump(mode="python"), sort_keys=False)
    console.print(Syntax(yaml_text, "yaml", word_wrap=True))


@config.command("set")
@click.argument("key")
@click.option("--value", required=True, help="Value to assign to KEY.")
def config_set(key: str, value: str) -> None:
    """Persist a configuration value expressed as a dotted KEY.

    Raises:
        click.ClickException: If parsing, assignment, or validation fails.
    """
    manager = ConfigManager()
    manager.ensure_exists()

    before = manager.read_text().splitlines()
    segments = [segment.strip() for segment in key.split(".") if segment.strip()]
    if not segments:
        raise click.ClickException("KEY must specify a dotted path such as 'scan.hidden_files'.")

    try:
        parsed_value = yaml.safe_load(value)
    except yaml.YAMLError as exc:
        raise click.ClickException(f"Unable to parse value: {exc}") from exc

    file_data = manager.load_file_overrides()
    try:
        _assign_nested(file_data, segments, parsed_value)
        resolve_with_precedence(defaults=ContentSyncConfig(), file_overrides=file_data)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    manager.save(file_data)
    after = manager.read_text().splitlines()
    diff = list(
        difflib.unified_diff(
            before,
            after,
            fromfile="config.yaml (before)",
            tofile="config.yaml (after)",
            lineterm="",
        )
    )
    if not diff:
        console.print("[yellow]No changes applied; value already up to date.[/yellow]")
        return
    console.print(Syntax("\n".join(diff), "diff", word_wrap=False))
    console.print(f"[green]Updated {'.'.join(segments)}.[/green]")


def main() -> None:
    """Invoke the Click CLI as the console script entry point."""
    cli()


if __name__ == "__main__":
    main()
