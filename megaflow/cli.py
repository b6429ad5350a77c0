from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable

import typer
from rich import filesize
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from megaflow.catalog import CatalogClient
from megaflow.client import fetch_nodes
from megaflow.config import MegaFlowConfig, config_path, load_config, save_config
from megaflow.exceptions import InvalidArgumentsError, MegaFlowError, NotFoundError
from megaflow.filters import build_path_filter
from megaflow.flatten import flatten_forest, flatten_subtree
from megaflow.follow import ChangeNotice, follow_events
from megaflow.models import HANDLE_PREFIX, Node, NodeKind, Nodes
from megaflow.paths import construct_full_path, resolve_reference, validate_node_name
from megaflow.scheduler import DownloadRunner, TransferScheduler
from megaflow.transfer import perform_upload
from megaflow.transfer_ui import make_progress
from megaflow.verify import compare_local


app = typer.Typer(help="MegaFlow CLI")
config_app = typer.Typer(help="Inspect the MegaFlow configuration.")
app.add_typer(config_app, name="config")
console = Console()
logger = logging.getLogger(__name__)

LINK_HELP = "Shared link to operate on instead of your own tree."
PASSWORD_HELP = "Password of a protected shared link."


@dataclass(slots=True)
class CliState:
    store: Path | None = None
    interactive: bool = False


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


@app.callback()
def main(
    ctx: typer.Context,
    store: Path | None = typer.Option(
        None,
        "--store",
        envvar="MEGAFLOW_STORE",
        help="Catalog store directory. Overrides the configured store.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    no_progress: bool = typer.Option(
        False,
        "--no-progress",
        help="Never render progress bars, only print result lines.",
    ),
) -> None:
    _configure_logging(verbose)
    ctx.obj = CliState(store=store, interactive=console.is_terminal and not no_progress)


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj if isinstance(ctx.obj, CliState) else CliState()


def _settings(state: CliState) -> MegaFlowConfig:
    config = load_config()
    if state.store is not None:
        config.store = str(state.store)
    return config


def _client(state: CliState) -> CatalogClient:
    return CatalogClient.from_config(_settings(state))


def _run(label: str, body: Awaitable[int]) -> None:
    try:
        code = asyncio.run(body)
    except KeyboardInterrupt:
        console.print(f"[yellow]{label} interrupted.[/yellow] Local files may be partial.")
        code = 130
    except (MegaFlowError, ValueError) as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        code = 1
    except Exception as exc:
        logger.debug("%s failed", label, exc_info=True)
        console.print(f"[red]{label} failed:[/red] {escape(str(exc))}")
        code = 1
    raise typer.Exit(code=code)


def _render_path_summary(title: str, paths: list[str], style: str) -> None:
    if not paths:
        return
    console.print(Text(f"{title} ({len(paths)}):", style=style))
    for path in paths:
        console.print(Text(f"  {path}"))


def _default_root(nodes: Nodes) -> Node:
    roots = nodes.roots()
    for node in roots:
        if node.kind is NodeKind.ROOT:
            return node
    if roots:
        return roots[0]
    raise NotFoundError("the snapshot contains no root node")


def _resolve_or_default(nodes: Nodes, reference: str | None) -> Node:
    if reference is None:
        return _default_root(nodes)
    return resolve_reference(nodes, reference)


def _split_parent(reference: str) -> tuple[str, str]:
    parent, _, name = reference.rstrip("/").rpartition("/")
    if not parent or not name:
        raise InvalidArgumentsError(f"expected a path below a root folder, got `{reference}`")
    return parent, name


@app.command()
def init(
    ctx: typer.Context,
    store: Path | None = typer.Argument(None, help="Store directory. Defaults to the configured store."),
) -> None:
    """Create a catalog store and remember it in the config file."""
    state = _state(ctx)

    async def _init_async() -> int:
        config = _settings(state)
        if store is not None:
            config.store = str(store)
        config.store = str(config.store_path)
        await CatalogClient.from_config(config).initialize()
        saved = save_config(config)
        console.print(f"[green]Initialized MegaFlow store[/green] at {config.store_path}")
        console.print(f"Config: {saved}")
        return 0

    _run("Init", _init_async())


async def _get_async(
    state: CliState,
    reference: str | None,
    output: Path | None,
    download_all: bool,
    link: str | None,
    password: str | None,
    parallel: int | None,
    include: tuple[str, ...],
    exclude: tuple[str, ...],
    fail_fast: bool,
) -> int:
    if download_all and reference is not None:
        raise InvalidArgumentsError("`--all` cannot be combined with a PATH")
    if not download_all and reference is None and link is None:
        raise InvalidArgumentsError("expected a PATH to download, or `--all` for everything")

    config = _settings(state)
    client = CatalogClient.from_config(config)
    nodes = await fetch_nodes(client, link, password)
    path_filter = build_path_filter(include, exclude)

    if download_all:
        jobs = flatten_forest(nodes, output or Path.cwd(), path_filter=path_filter)
    else:
        root = _resolve_or_default(nodes, reference)
        if output is None:
            output = Path.cwd() / validate_node_name(root.name)
        jobs = flatten_subtree(nodes, root, output, path_filter=path_filter)

    if not jobs:
        console.print("[yellow]Nothing to download.[/yellow]")
        return 0

    overall_total = len(jobs) if len(jobs) > 1 else None
    with make_progress(
        console,
        interactive=state.interactive,
        overall_total=overall_total,
        overall_label="files",
    ) as progress:
        scheduler = TransferScheduler(
            DownloadRunner(client, nodes),
            parallel=parallel if parallel is not None else config.parallel,
            progress=progress,
            fail_fast=fail_fast,
        )
        result = await scheduler.run(jobs)

    console.print(
        f"Downloaded: {len(result.transferred_paths)} | Skipped unchanged: {len(result.skipped_paths)}"
    )
    if result.ok:
        return 0
    _render_path_summary("Failed", result.failed_paths, "red")
    console.print(f"[red]Download failed:[/red] {escape(str(result.first_error))}")
    return 1


@app.command()
def get(
    ctx: typer.Context,
    reference: str | None = typer.Argument(None, help="Remote path (/Root/docs) or handle (H:<handle>)."),
    output: Path | None = typer.Option(None, "--output", "-o", help="Local destination."),
    download_all: bool = typer.Option(False, "--all", "-a", help="Download every root."),
    link: str | None = typer.Option(None, "--link", "-l", help=LINK_HELP),
    password: str | None = typer.Option(None, "--password", "-p", help=PASSWORD_HELP),
    parallel: int | None = typer.Option(None, "--parallel", "-P", help="Concurrent transfers (default from config)."),
    include: list[str] | None = typer.Option(
        None,
        "--include",
        help="Include glob pattern(s) for paths to download (repeatable).",
    ),
    exclude: list[str] | None = typer.Option(
        None,
        "--exclude",
        help="Exclude glob pattern(s) for paths to skip (repeatable).",
    ),
    fail_fast: bool = typer.Option(False, "--fail-fast", help="Cancel the whole batch on the first failure."),
) -> None:
    """Download a file or folder, skipping files that are already identical."""
    _run(
        "Download",
        _get_async(
            _state(ctx),
            reference,
            output,
            download_all,
            link,
            password,
            parallel,
            tuple(include or ()),
            tuple(exclude or ()),
            fail_fast,
        ),
    )


async def _put_async(state: CliState, source: Path, destination: str) -> int:
    if not source.is_file():
        raise InvalidArgumentsError(f"`{source}` is not a file")

    client = _client(state)
    nodes = await client.fetch_own_nodes()
    if destination.endswith("/"):
        parent = resolve_reference(nodes, destination.rstrip("/"))
        name = source.name
    else:
        parent_ref, name = _split_parent(destination)
        parent = resolve_reference(nodes, parent_ref)
    validate_node_name(name)
    if parent.kind.is_file():
        raise InvalidArgumentsError(f"`{construct_full_path(nodes, parent)}` is not a folder")

    remote_path = f"{construct_full_path(nodes, parent)}/{name}"
    with make_progress(console, interactive=state.interactive) as progress:
        handle = progress.add_transfer(action="PUT", path=remote_path, total_bytes=None)
        try:
            node = await perform_upload(client, parent, name, source, progress=progress, handle=handle)
        finally:
            progress.remove(handle)
        progress.report_success(f"uploaded `{source}` to `{remote_path}` ({HANDLE_PREFIX}{node.handle})")
    return 0


@app.command()
def put(
    ctx: typer.Context,
    source: Path = typer.Argument(..., help="Local file to upload."),
    destination: str = typer.Argument(
        ...,
        help="Remote file path. A trailing `/` uploads into that folder under the local name.",
    ),
) -> None:
    """Upload one local file."""
    _run("Upload", _put_async(_state(ctx), source, destination))


def _sorted_children(nodes: Nodes, node: Node) -> list[Node]:
    return sorted(nodes.children_of(node), key=lambda child: (child.kind.is_file(), child.name))


def _format_modified(node: Node) -> str:
    if node.modified_at is None:
        return ""
    return node.modified_at.strftime("%Y-%m-%d %H:%M:%S")


async def _list_async(
    state: CliState,
    reference: str | None,
    show_handles: bool,
    link: str | None,
    password: str | None,
) -> int:
    nodes = await fetch_nodes(_client(state), link, password)
    node = _resolve_or_default(nodes, reference)
    entries = [node] if node.kind.is_file() else _sorted_children(nodes, node)

    table = Table(title=construct_full_path(nodes, node))
    table.add_column("Name")
    table.add_column("Size", justify="right")
    table.add_column("Modified")
    if show_handles:
        table.add_column("Handle")

    for entry in entries:
        name = entry.name if entry.kind.is_file() else f"{entry.name}/"
        size = filesize.decimal(entry.size) if entry.kind.is_file() else ""
        row = [Text(name, style="" if entry.kind.is_file() else "bold blue"), size, _format_modified(entry)]
        if show_handles:
            row.append(f"{HANDLE_PREFIX}{entry.handle}")
        table.add_row(*row)

    console.print(table)
    if not entries:
        console.print("[yellow]Folder is empty.[/yellow]")
    return 0


@app.command("list")
def list_nodes(
    ctx: typer.Context,
    reference: str | None = typer.Argument(None, help="Folder to list. Defaults to the Root folder."),
    show_handles: bool = typer.Option(False, "--handles", "-H", help="Show node handles."),
    link: str | None = typer.Option(None, "--link", "-l", help=LINK_HELP),
    password: str | None = typer.Option(None, "--password", "-p", help=PASSWORD_HELP),
) -> None:
    """List the content of a remote folder."""
    _run("List", _list_async(_state(ctx), reference, show_handles, link, password))


def _tree_label(node: Node, show_handles: bool) -> Text:
    if node.kind.is_file():
        label = Text(node.name)
        label.append(f" ({filesize.decimal(node.size)})", style="dim")
    else:
        label = Text(f"{node.name}/", style="bold blue")
    if show_handles:
        label.append(f" {HANDLE_PREFIX}{node.handle}", style="cyan")
    return label


def build_tree(nodes: Nodes, root: Node, *, show_handles: bool = False) -> Tree:
    tree = Tree(_tree_label(root, show_handles))
    stack = [(root, tree)]
    seen = {root.handle}
    while stack:
        node, branch = stack.pop()
        for child in _sorted_children(nodes, node):
            if child.handle in seen:
                continue
            seen.add(child.handle)
            stack.append((child, branch.add(_tree_label(child, show_handles))))
    return tree


async def _tree_async(
    state: CliState,
    reference: str | None,
    show_handles: bool,
    link: str | None,
    password: str | None,
) -> int:
    nodes = await fetch_nodes(_client(state), link, password)
    if reference is None and link is None:
        for root in nodes.roots():
            console.print(build_tree(nodes, root, show_handles=show_handles))
        return 0
    console.print(build_tree(nodes, _resolve_or_default(nodes, reference), show_handles=show_handles))
    return 0


@app.command()
def tree(
    ctx: typer.Context,
    reference: str | None = typer.Argument(None, help="Subtree to render. Defaults to every root."),
    show_handles: bool = typer.Option(False, "--show-handles", help="Show node handles."),
    link: str | None = typer.Option(None, "--link", "-l", help=LINK_HELP),
    password: str | None = typer.Option(None, "--password", "-p", help=PASSWORD_HELP),
) -> None:
    """Render the remote tree."""
    _run("Tree", _tree_async(_state(ctx), reference, show_handles, link, password))


async def _wait_for_node(client: CatalogClient, nodes: Nodes, handle: str) -> Node:
    while handle not in nodes:
        nodes.apply_events(await client.wait_events(nodes))
    node = nodes.get_node_by_handle(handle)
    if node is None:
        raise NotFoundError(f"could not find node (by handle): {handle}")
    return node


async def make_folders(client: CatalogClient, nodes: Nodes, path: str, *, parents: bool) -> Node:
    """Create the folder at ``path``; with ``parents`` missing ancestors are created first."""
    parts = [part for part in path.split("/") if part]
    if len(parts) < 2:
        raise InvalidArgumentsError(f"expected a path below a root folder, got `{path}`")
    for name in parts[1:]:
        validate_node_name(name)

    current = next((node for node in nodes.roots() if node.name == parts[0]), None)
    if current is None:
        raise NotFoundError(f"could not find node (by path): /{parts[0]}")

    for depth, name in enumerate(parts[1:], start=2):
        is_last = depth == len(parts)
        child = next((node for node in nodes.children_of(current) if node.name == name), None)
        if child is not None:
            if child.kind.is_file():
                raise InvalidArgumentsError(f"`/{'/'.join(parts[:depth])}` is a file")
            if is_last and not parents:
                raise InvalidArgumentsError(f"`{path}` already exists")
            current = child
            continue
        if not is_last and not parents:
            raise NotFoundError(f"could not find node (by path): /{'/'.join(parts[:depth])}")

        created = await client.create_folder(current, name)
        logger.debug("created folder %s, waiting for its creation event", created.handle)
        current = await _wait_for_node(client, nodes, created.handle)
    return current


async def _mkdir_async(state: CliState, path: str, parents: bool) -> int:
    client = _client(state)
    nodes = await client.fetch_own_nodes()
    folder = await make_folders(client, nodes, path, parents=parents)
    console.print(f"[green]Created[/green] {construct_full_path(nodes, folder)} ({HANDLE_PREFIX}{folder.handle})")
    return 0


@app.command()
def mkdir(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Remote folder path, eg. /Root/photos/2024."),
    parents: bool = typer.Option(False, "--parents", "-p", help="Create missing parent folders."),
) -> None:
    """Create a remote folder."""
    _run("Mkdir", _mkdir_async(_state(ctx), path, parents))


async def _rename_async(state: CliState, reference: str, name: str) -> int:
    validate_node_name(name)
    client = _client(state)
    nodes = await client.fetch_own_nodes()
    node = resolve_reference(nodes, reference)
    if node.parent is None:
        raise InvalidArgumentsError(f"cannot rename root node `{node.name}`")
    await client.rename_node(node, name)
    console.print(f"[green]Renamed[/green] {construct_full_path(nodes, node)} -> {name}")
    return 0


@app.command()
def rename(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Remote path or handle."),
    name: str = typer.Argument(..., help="New name."),
) -> None:
    """Rename a remote file or folder."""
    _run("Rename", _rename_async(_state(ctx), reference, name))


async def _delete_async(state: CliState, reference: str, soft: bool) -> int:
    client = _client(state)
    nodes = await client.fetch_own_nodes()
    node = resolve_reference(nodes, reference)
    full_path = construct_full_path(nodes, node)
    if node.parent is None:
        raise InvalidArgumentsError(f"cannot delete root node `{node.name}`")

    if not soft:
        await client.delete_node(node)
        console.print(f"[green]Deleted[/green] {full_path}")
        return 0

    rubbish_bin = nodes.rubbish_bin()
    if rubbish_bin is None:
        raise NotFoundError("could not find the Rubbish Bin")
    if nodes.is_ancestor(rubbish_bin.handle, node.handle):
        raise InvalidArgumentsError(f"`{full_path}` is already in the Rubbish Bin")
    await client.move_node(node, rubbish_bin)
    console.print(f"[green]Moved to Rubbish Bin[/green] {full_path}")
    return 0


@app.command()
def delete(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Remote path or handle."),
    soft: bool = typer.Option(False, "--soft", help="Move to the Rubbish Bin instead of deleting."),
) -> None:
    """Delete a remote file or folder."""
    _run("Delete", _delete_async(_state(ctx), reference, soft))


def _print_notice(notice: ChangeNotice) -> None:
    styles = {"created": "green", "updated": "cyan", "deleted": "red"}
    style = styles.get(notice.action, "white")
    console.print(
        f"[{style}]{notice.action}[/{style}] {escape(notice.name)} ({HANDLE_PREFIX}{notice.handle})"
    )


async def _follow_async(state: CliState, link: str | None, password: str | None) -> int:
    client = _client(state)
    nodes = await fetch_nodes(client, link, password)
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False

    console.print(f"Following changes from cursor {nodes.cursor}. Press Ctrl-C to stop.")
    try:
        await follow_events(
            client,
            nodes,
            cancel,
            on_change=_print_notice,
            on_waiting=lambda: logger.debug("waiting for events past cursor %s", nodes.cursor),
        )
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
    console.print(f"[yellow]Stopped following[/yellow] at cursor {nodes.cursor}.")
    return 0


@app.command()
def follow(
    ctx: typer.Context,
    link: str | None = typer.Option(None, "--link", "-l", help=LINK_HELP),
    password: str | None = typer.Option(None, "--password", "-p", help=PASSWORD_HELP),
) -> None:
    """Print remote changes as they happen until interrupted."""
    _run("Follow", _follow_async(_state(ctx), link, password))


async def _compare_async(
    state: CliState,
    reference: str,
    local: Path,
    link: str | None,
    password: str | None,
) -> int:
    client = _client(state)
    nodes = await fetch_nodes(client, link, password)
    node = resolve_reference(nodes, reference)
    if not node.kind.is_file():
        raise InvalidArgumentsError(f"`{construct_full_path(nodes, node)}` is not a file")

    with make_progress(console, interactive=state.interactive) as progress:
        handle = progress.add_transfer(action="CMP", path=str(local), total_bytes=None)
        try:
            equal = await compare_local(client, node, local, progress=progress, handle=handle)
        finally:
            progress.remove(handle)

    if equal:
        console.print(f"[green]`{escape(str(local))}` matches the remote file.[/green]")
        return 0
    console.print(f"[red]`{escape(str(local))}` differs from the remote file.[/red]")
    return 1


@app.command()
def compare(
    ctx: typer.Context,
    remote: str = typer.Option(..., "--remote", help="Remote file path or handle."),
    local: Path = typer.Option(..., "--local", help="Local file to compare."),
    link: str | None = typer.Option(None, "--link", "-l", help=LINK_HELP),
    password: str | None = typer.Option(None, "--password", "-p", help=PASSWORD_HELP),
) -> None:
    """Check whether a local file is identical to a remote file."""
    _run("Compare", _compare_async(_state(ctx), remote, local, link, password))


async def _share_async(state: CliState, reference: str, password: str | None) -> int:
    client = _client(state)
    nodes = await client.fetch_own_nodes()
    node = resolve_reference(nodes, reference)
    link = await client.share_node(node, password)
    console.print(f"Shared {construct_full_path(nodes, node)}")
    console.print(Text(link, style="bold"))
    if password is not None:
        console.print("[yellow]This link requires the password to open.[/yellow]")
    return 0


@app.command()
def share(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Remote path or handle."),
    password: str | None = typer.Option(None, "--password", help="Protect the link with a password."),
) -> None:
    """Create a shared link for a file or folder."""
    _run("Share", _share_async(_state(ctx), reference, password))


@config_app.command("path")
def show_config_path() -> None:
    """Print the location of the config file."""
    console.print(Text(str(config_path())))
