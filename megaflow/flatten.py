from __future__ import annotations

import logging
from collections import deque
from pathlib import Path
from typing import Iterable, Iterator

from megaflow.filters import PathFilter
from megaflow.models import Node, Nodes, TransferJob
from megaflow.paths import is_safe_name


logger = logging.getLogger(__name__)

# a file node and the names leading to it, the node's own name last
_Located = tuple[Node, tuple[str, ...]]


def _walk_files(nodes: Nodes, starts: Iterable[_Located]) -> Iterator[_Located]:
    """Breadth-first walk yielding file nodes; folders are expanded, never yielded."""
    queue: deque[_Located] = deque(starts)
    seen: set[str] = set()
    while queue:
        node, parts = queue.popleft()
        if node.handle in seen:
            logger.warning("skipping %s: reached twice while walking the tree", node.handle)
            continue
        seen.add(node.handle)

        if node.kind.is_file():
            yield node, parts
            continue

        for handle in node.children:
            child = nodes.get_node_by_handle(handle)
            if child is None:
                logger.debug("skipping unresolved child %s of %s", handle, node.handle)
                continue
            queue.append((child, (*parts, child.name)))


def _collect(
    files: Iterator[_Located],
    output: Path,
    *,
    remote_root: str,
    local_start: int,
    path_filter: PathFilter | None,
) -> list[TransferJob]:
    jobs: list[TransferJob] = []
    claimed: set[Path] = set()
    base = output.resolve()
    for node, parts in files:
        remote_path = remote_root + "/".join(parts)
        local_parts = parts[local_start:]
        relative = "/".join(local_parts)
        if path_filter is not None and not path_filter.matches(relative):
            continue
        unsafe = [part for part in local_parts if not is_safe_name(part)]
        if unsafe:
            logger.warning("skipping %s: %r cannot be used as a local name", remote_path, unsafe[0])
            continue
        local_path = output.joinpath(*local_parts)
        if not local_path.resolve().is_relative_to(base):
            logger.warning("skipping %s: %s escapes %s", remote_path, local_path, output)
            continue
        if local_path in claimed:
            logger.warning("skipping %s: %s is already claimed by another node", remote_path, local_path)
            continue
        claimed.add(local_path)
        jobs.append(TransferJob(handle=node.handle, remote_path=remote_path, local_path=local_path))
    return jobs


def flatten_subtree(
    nodes: Nodes,
    root: Node,
    output: Path,
    *,
    path_filter: PathFilter | None = None,
) -> list[TransferJob]:
    """Turn ``root`` into one transfer job per file below it.

    A file root maps directly onto ``output``. For a folder root, ``output``
    plays the role of the folder itself: ``Root/docs/a.txt`` flattened from
    ``Root`` lands in ``output/docs/a.txt``. Empty folders produce no job.
    Files whose names would place them outside ``output`` are skipped.
    """
    if root.kind.is_file():
        if path_filter is not None and not path_filter.matches(root.name):
            return []
        return [TransferJob(handle=root.handle, remote_path=root.name, local_path=output)]

    return _collect(
        _walk_files(nodes, [(root, (root.name,))]),
        output,
        remote_root="",
        local_start=1,
        path_filter=path_filter,
    )


def flatten_forest(
    nodes: Nodes,
    output: Path,
    *,
    path_filter: PathFilter | None = None,
) -> list[TransferJob]:
    """Flatten every root; local paths mirror the full remote path under ``output``."""
    return _collect(
        _walk_files(nodes, [(root, (root.name,)) for root in nodes.roots()]),
        output,
        remote_root="/",
        local_start=0,
        path_filter=path_filter,
    )
