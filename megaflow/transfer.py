from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from megaflow.client import RemoteStorageClient
from megaflow.exceptions import CastOverflow, LocalIOFailed
from megaflow.models import Node
from megaflow.pipe import (
    LocalFileReader,
    PipeWriter,
    copy_stream,
    copy_to_file,
    join_transfer,
    pipe,
    report_progress,
)
from megaflow.transfer_ui import ProgressObserver, TransferTaskHandle


logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def datetime_to_ns(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    try:
        delta = value - EPOCH
    except OverflowError as exc:
        raise CastOverflow(f"timestamp out of range: {value!r}") from exc
    return (delta.days * 86_400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1_000


def ns_to_datetime(value: int) -> datetime:
    try:
        seconds, nanos = divmod(value, 1_000_000_000)
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=nanos // 1_000)
    except (OverflowError, OSError, ValueError) as exc:
        raise CastOverflow(f"could not convert timestamp {value} to a date") from exc


def restore_modified_time(path: Path, modified_at: datetime) -> None:
    """Set ``path``'s mtime to ``modified_at``, keeping its access time."""
    mtime_ns = datetime_to_ns(modified_at)
    try:
        atime_ns = path.stat().st_atime_ns
        os.utime(path, ns=(atime_ns, mtime_ns))
    except (OverflowError, ValueError) as exc:
        raise CastOverflow(f"could not represent mtime {modified_at} for `{path}`") from exc
    except OSError as exc:
        raise LocalIOFailed(f"could not restore last modification date of `{path}`: {exc}") from exc


def _progress_callback(progress: ProgressObserver | None, handle: TransferTaskHandle | None):
    if progress is None or handle is None:
        return None

    def callback(position: int) -> None:
        progress.set_completed(handle, position)

    return callback


async def perform_download(
    client: RemoteStorageClient,
    node: Node,
    local_path: Path,
    *,
    progress: ProgressObserver | None = None,
    handle: TransferTaskHandle | None = None,
) -> None:
    """Stream ``node`` into ``local_path`` and restore its modification date.

    Partially written output is left in place when the transfer fails.
    """
    try:
        local_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise LocalIOFailed(f"could not create `{local_path.parent}`: {exc}") from exc

    reader, writer = pipe()
    if progress is not None and handle is not None:
        progress.set_total(handle, node.size)
        progress.start(handle, state="downloading")

    async def network_side() -> None:
        try:
            await client.download_node(node, writer)
        except BaseException as exc:
            await writer.abort(exc)
            raise
        await writer.close()

    async def disk_side() -> int:
        try:
            return await copy_to_file(reader, local_path)
        except OSError as exc:
            error = LocalIOFailed(f"could not write `{local_path}`: {exc}")
            await reader.abort(error)
            raise error from exc

    async with report_progress(lambda: reader.bytes_read, _progress_callback(progress, handle)):
        await join_transfer(network_side(), disk_side())

    if node.modified_at is not None:
        restore_modified_time(local_path, node.modified_at)
    logger.debug("downloaded %s into %s", node.handle, local_path)


async def perform_upload(
    client: RemoteStorageClient,
    parent: Node,
    name: str,
    local_path: Path,
    *,
    progress: ProgressObserver | None = None,
    handle: TransferTaskHandle | None = None,
) -> Node:
    """Stream ``local_path`` into a new file ``name`` under ``parent``."""
    try:
        stat = local_path.stat()
    except OSError as exc:
        raise LocalIOFailed(f"could not open `{local_path}`: {exc}") from exc
    last_modified = ns_to_datetime(stat.st_mtime_ns)
    try:
        fh = local_path.open("rb")
    except OSError as exc:
        raise LocalIOFailed(f"could not open `{local_path}`: {exc}") from exc

    reader, writer = pipe()
    if progress is not None and handle is not None:
        progress.set_total(handle, stat.st_size)
        progress.start(handle, state="uploading")

    with fh:
        source = LocalFileReader(fh)

        async def network_side() -> Node:
            try:
                return await client.upload_node(parent, name, stat.st_size, reader, last_modified)
            except BaseException as exc:
                await reader.abort(exc)
                raise

        async def disk_side() -> None:
            await _feed(source, writer, local_path)

        async with report_progress(lambda: source.bytes_read, _progress_callback(progress, handle)):
            return await join_transfer(network_side(), disk_side())


async def _feed(source: LocalFileReader, writer: PipeWriter, local_path: Path) -> None:
    try:
        await copy_stream(source, writer)
    except OSError as exc:
        error = LocalIOFailed(f"could not read `{local_path}`: {exc}")
        await writer.abort(error)
        raise error from exc
    await writer.close()
