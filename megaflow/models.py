from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterator, Union


logger = logging.getLogger(__name__)

HANDLE_PREFIX = "H:"


class NodeKind(str, Enum):
    FILE = "file"
    FOLDER = "folder"
    ROOT = "root"
    INBOX = "inbox"
    RUBBISH_BIN = "rubbish_bin"

    def is_file(self) -> bool:
        return self is NodeKind.FILE

    def is_folder(self) -> bool:
        return self is not NodeKind.FILE


@dataclass(slots=True)
class Node:
    handle: str
    name: str
    kind: NodeKind
    size: int = 0
    parent: str | None = None
    children: list[str] = field(default_factory=list)
    key: bytes = b""
    iv: bytes | None = None
    condensed_mac: bytes | None = None
    modified_at: datetime | None = None


@dataclass(slots=True)
class NodeAttributes:
    """Attribute delta carried by an update event. ``None`` means unchanged."""

    handle: str
    name: str | None = None
    parent: str | None = None
    modified_at: datetime | None = None


@dataclass(slots=True)
class NodeCreated:
    nodes: list[Node]


@dataclass(slots=True)
class NodeUpdated:
    attrs: NodeAttributes


@dataclass(slots=True)
class NodeDeleted:
    handle: str


Event = Union[NodeCreated, NodeUpdated, NodeDeleted]


@dataclass(slots=True)
class EventBatch:
    events: list[Event]
    cursor: int


@dataclass(frozen=True, slots=True)
class TransferJob:
    handle: str
    remote_path: str
    local_path: Path


class Nodes:
    """In-memory tree snapshot, kept current by applying change events."""

    def __init__(self, nodes: list[Node] | None = None, *, cursor: int = 0) -> None:
        self._nodes: dict[str, Node] = {}
        self._roots: list[str] = []
        self.cursor = cursor
        for node in nodes or []:
            self._nodes[node.handle] = node
        for node in self._nodes.values():
            if node.parent is None:
                self._roots.append(node.handle)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, handle: object) -> bool:
        return handle in self._nodes

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes.values())

    def get_node_by_handle(self, handle: str) -> Node | None:
        return self._nodes.get(handle)

    def roots(self) -> list[Node]:
        return [self._nodes[handle] for handle in self._roots if handle in self._nodes]

    def children_of(self, node: Node) -> list[Node]:
        return [
            child
            for handle in node.children
            for child in [self._nodes.get(handle)]
            if child is not None
        ]

    def rubbish_bin(self) -> Node | None:
        for node in self.roots():
            if node.kind is NodeKind.RUBBISH_BIN:
                return node
        return None

    def get_node_by_path(self, path: str) -> Node | None:
        parts = [part for part in path.split("/") if part]
        if not parts:
            return None

        current = next((node for node in self.roots() if node.name == parts[0]), None)
        for name in parts[1:]:
            if current is None:
                return None
            current = next(
                (child for child in self.children_of(current) if child.name == name),
                None,
            )
        return current

    def is_ancestor(self, ancestor: str, handle: str) -> bool:
        """Whether ``ancestor`` appears on the parent chain of ``handle`` (inclusive)."""
        seen: set[str] = set()
        current: str | None = handle
        while current is not None and current not in seen:
            if current == ancestor:
                return True
            seen.add(current)
            node = self._nodes.get(current)
            current = node.parent if node is not None else None
        return False

    def apply_events(self, batch: EventBatch) -> None:
        for event in batch.events:
            self.apply_event(event)
        self.cursor = max(self.cursor, batch.cursor)

    def apply_event(self, event: Event) -> None:
        if isinstance(event, NodeCreated):
            for node in event.nodes:
                self._insert(node)
        elif isinstance(event, NodeUpdated):
            self._update(event.attrs)
        elif isinstance(event, NodeDeleted):
            self._delete(event.handle)
        else:
            raise TypeError(f"unsupported event: {event!r}")

    def _insert(self, node: Node) -> None:
        if node.parent is not None and self.is_ancestor(node.handle, node.parent):
            logger.warning("ignoring creation of %s: parent chain loops back", node.handle)
            return

        existing = self._nodes.get(node.handle)
        if existing is not None:
            self._detach(existing)
            # keep children already known locally, the creation payload may omit them
            known = [child for child in existing.children if child not in node.children]
            node.children = [*node.children, *known]

        self._nodes[node.handle] = node
        self._attach(node)

        # children created before their parent arrive as orphans, adopt them now
        for other in self._nodes.values():
            if other.parent == node.handle and other.handle not in node.children:
                node.children.append(other.handle)

    def _update(self, attrs: NodeAttributes) -> None:
        node = self._nodes.get(attrs.handle)
        if node is None:
            logger.debug("dropping update for unknown node %s", attrs.handle)
            return

        moved = attrs.parent is not None and attrs.parent != node.parent
        if moved and self.is_ancestor(node.handle, attrs.parent):
            logger.warning(
                "ignoring update of %s: moving it under %s would create a cycle",
                node.handle,
                attrs.parent,
            )
            return

        if attrs.name is not None:
            node.name = attrs.name
        if attrs.modified_at is not None:
            node.modified_at = attrs.modified_at
        if moved:
            self._detach(node)
            node.parent = attrs.parent
            self._attach(node)

    def _delete(self, handle: str) -> None:
        node = self._nodes.get(handle)
        if node is None:
            return

        self._detach(node)
        stack = [handle]
        while stack:
            current = self._nodes.pop(stack.pop(), None)
            if current is None:
                continue
            stack.extend(current.children)

    def _attach(self, node: Node) -> None:
        if node.parent is None:
            if node.handle not in self._roots:
                self._roots.append(node.handle)
            return
        parent = self._nodes.get(node.parent)
        if parent is None:
            logger.debug("node %s is orphaned (unknown parent %s)", node.handle, node.parent)
            return
        if node.handle not in parent.children:
            parent.children.append(node.handle)

    def _detach(self, node: Node) -> None:
        if node.parent is None:
            if node.handle in self._roots:
                self._roots.remove(node.handle)
            return
        parent = self._nodes.get(node.parent)
        if parent is not None and node.handle in parent.children:
            parent.children.remove(node.handle)
