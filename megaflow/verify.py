from __future__ import annotations

import logging
from pathlib import Path

from megaflow.client import ZERO_IV, RemoteStorageClient
from megaflow.exceptions import LocalIOFailed, MegaFlowError
from megaflow.models import Node
from megaflow.pipe import LocalFileReader, report_progress
from megaflow.transfer_ui import ProgressObserver, TransferTaskHandle


logger = logging.getLogger(__name__)


async def _local_mac(
    client: RemoteStorageClient,
    node: Node,
    local_path: Path,
    size: int,
    *,
    progress: ProgressObserver | None,
    handle: TransferTaskHandle | None,
) -> bytes:
    callback = None
    if progress is not None and handle is not None:
        progress.set_total(handle, size)
        progress.start(handle, state="checking")

        def callback(position: int) -> None:
            progress.set_completed(handle, position)

    with local_path.open("rb") as fh:
        reader = LocalFileReader(fh)
        async with report_progress(lambda: reader.bytes_read, callback):
            return await client.compute_condensed_mac(reader, size, node.key, node.iv or ZERO_IV)


async def already_synced(
    client: RemoteStorageClient,
    node: Node,
    local_path: Path,
    *,
    progress: ProgressObserver | None = None,
    handle: TransferTaskHandle | None = None,
) -> bool:
    """Returns whether the local file is byte-identical to the remote file."""
    if not local_path.is_file():
        return False
    if node.condensed_mac is None:
        logger.debug("%s carries no content MAC, cannot verify", node.handle)
        return False

    try:
        size = local_path.stat().st_size
        if size != node.size:
            return False
        local_mac = await _local_mac(client, node, local_path, size, progress=progress, handle=handle)
    except OSError as exc:
        raise LocalIOFailed(f"could not read `{local_path}`: {exc}") from exc

    return local_mac == node.condensed_mac


async def compare_local(
    client: RemoteStorageClient,
    node: Node,
    local_path: Path,
    *,
    progress: ProgressObserver | None = None,
    handle: TransferTaskHandle | None = None,
) -> bool:
    """Standalone comparison: unlike ``already_synced``, missing inputs are errors."""
    if node.condensed_mac is None:
        raise MegaFlowError(f"remote node `{node.name}` carries no content MAC")
    try:
        size = local_path.stat().st_size
        local_mac = await _local_mac(client, node, local_path, size, progress=progress, handle=handle)
    except OSError as exc:
        raise LocalIOFailed(f"could not read `{local_path}`: {exc}") from exc
    return local_mac == node.condensed_mac
