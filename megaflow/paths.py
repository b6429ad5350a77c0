from __future__ import annotations

import os

from megaflow.exceptions import InvalidArgumentsError, NotFoundError
from megaflow.models import HANDLE_PREFIX, Node, Nodes


def resolve_reference(nodes: Nodes, reference: str) -> Node:
    """Resolve ``H:<handle>`` or a slash-separated path (``/Root/folder``) to a node."""
    if reference.startswith(HANDLE_PREFIX):
        handle = reference[len(HANDLE_PREFIX):]
        node = nodes.get_node_by_handle(handle)
        if node is None:
            raise NotFoundError(f"could not find node (by handle): {handle}")
        return node

    node = nodes.get_node_by_path(reference)
    if node is None:
        raise NotFoundError(f"could not find node (by path): {reference}")
    return node


def _ancestry(nodes: Nodes, node: Node, *, stop_at: str | None = None) -> list[Node]:
    # Walks up iteratively; a repeated handle ends the walk so a looping
    # parent chain still yields a finite path.
    chain = [node]
    seen = {node.handle}
    current = node
    while current.handle != stop_at and current.parent is not None:
        parent = nodes.get_node_by_handle(current.parent)
        if parent is None or parent.handle in seen:
            break
        seen.add(parent.handle)
        chain.append(parent)
        current = parent
    chain.reverse()
    return chain


def construct_full_path(nodes: Nodes, node: Node) -> str:
    return "/" + "/".join(item.name for item in _ancestry(nodes, node))


def construct_relative_path(nodes: Nodes, root: Node, node: Node) -> str:
    """Path of ``node`` starting at ``root`` (inclusive), eg. ``Root/docs/a.txt``."""
    return "/".join(item.name for item in _ancestry(nodes, node, stop_at=root.handle))


def is_safe_name(name: str) -> bool:
    """Whether ``name`` can be used as a single local path component."""
    if not name or name in (".", ".."):
        return False
    separators = {"/", "\0", os.sep, *([os.altsep] if os.altsep else [])}
    return not any(sep in name for sep in separators)


def validate_node_name(name: str) -> str:
    if not is_safe_name(name):
        raise InvalidArgumentsError(f"invalid node name: `{name}`")
    return name
