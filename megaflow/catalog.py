"""SQLite-backed storage catalog implementing the remote storage client.

Layout of a store directory::

    <store>/catalog.db     nodes, append-only change log, shared links
    <store>/blobs/<handle> file contents

Every mutation appends to the ``events`` table; its sequence number is the
cursor a snapshot carries, and ``wait_events`` polls for rows past it.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import secrets
import sqlite3
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import aiosqlite

from megaflow.exceptions import MegaFlowError, RemoteOperationFailed
from megaflow.models import (
    Event,
    EventBatch,
    Node,
    NodeAttributes,
    NodeCreated,
    NodeDeleted,
    NodeKind,
    NodeUpdated,
    Nodes,
)
from megaflow.paths import validate_node_name
from megaflow.pipe import CHUNK_SIZE, AsyncReader, AsyncWriter
from megaflow.transfer import datetime_to_ns, ns_to_datetime


logger = logging.getLogger(__name__)

CATALOG_FILENAME = "catalog.db"
BLOB_DIRNAME = "blobs"
LINK_SCHEME = "mf://"
ROOT_NAMES = (
    (NodeKind.ROOT, "Root"),
    (NodeKind.INBOX, "Inbox"),
    (NodeKind.RUBBISH_BIN, "Rubbish Bin"),
)
PASSWORD_ITERATIONS = 100_000
EVENT_BATCH_LIMIT = 1000
T = TypeVar("T")

NODES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS nodes (
    handle TEXT PRIMARY KEY,
    parent TEXT,
    name TEXT NOT NULL,
    kind TEXT NOT NULL,
    size INTEGER NOT NULL DEFAULT 0,
    key BLOB NOT NULL,
    iv BLOB,
    mac BLOB,
    modified_ns INTEGER
);
"""

EVENTS_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL
);
"""

SHARES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS shares (
    link TEXT PRIMARY KEY,
    handle TEXT NOT NULL,
    salt BLOB NOT NULL,
    password_hash BLOB,
    created_at INTEGER NOT NULL
);
"""

NODE_COLUMNS = "handle, parent, name, kind, size, key, iv, mac, modified_ns"


def _new_handle() -> str:
    return secrets.token_urlsafe(6)


def _mac_hasher(key: bytes, iv: bytes):
    return hashlib.blake2b(digest_size=16, key=key[:64], salt=iv[:16].ljust(16, b"\0"))


def _hash_password(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PASSWORD_ITERATIONS)


def _is_busy_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return isinstance(exc, sqlite3.OperationalError) and ("locked" in message or "busy" in message)


def _node_from_row(row: Any) -> Node:
    return Node(
        handle=str(row["handle"]),
        name=str(row["name"]),
        kind=NodeKind(row["kind"]),
        size=int(row["size"]),
        parent=None if row["parent"] is None else str(row["parent"]),
        key=bytes(row["key"]),
        iv=None if row["iv"] is None else bytes(row["iv"]),
        condensed_mac=None if row["mac"] is None else bytes(row["mac"]),
        modified_at=None if row["modified_ns"] is None else ns_to_datetime(int(row["modified_ns"])),
    )


def _node_to_payload(node: Node) -> dict[str, Any]:
    return {
        "handle": node.handle,
        "parent": node.parent,
        "name": node.name,
        "kind": node.kind.value,
        "size": node.size,
        "key": node.key.hex(),
        "iv": None if node.iv is None else node.iv.hex(),
        "mac": None if node.condensed_mac is None else node.condensed_mac.hex(),
        "modified_ns": None if node.modified_at is None else datetime_to_ns(node.modified_at),
    }


def _node_from_payload(data: dict[str, Any]) -> Node:
    return Node(
        handle=data["handle"],
        name=data["name"],
        kind=NodeKind(data["kind"]),
        size=int(data["size"]),
        parent=data.get("parent"),
        key=bytes.fromhex(data["key"]),
        iv=None if data.get("iv") is None else bytes.fromhex(data["iv"]),
        condensed_mac=None if data.get("mac") is None else bytes.fromhex(data["mac"]),
        modified_at=None if data.get("modified_ns") is None else ns_to_datetime(int(data["modified_ns"])),
    )


def _event_from_row(kind: str, payload: str) -> Event:
    data = json.loads(payload)
    if kind == "created":
        return NodeCreated(nodes=[_node_from_payload(item) for item in data["nodes"]])
    if kind == "updated":
        modified_ns = data.get("modified_ns")
        return NodeUpdated(
            attrs=NodeAttributes(
                handle=data["handle"],
                name=data.get("name"),
                parent=data.get("parent"),
                modified_at=None if modified_ns is None else ns_to_datetime(int(modified_ns)),
            )
        )
    if kind == "deleted":
        return NodeDeleted(handle=data["handle"])
    raise RemoteOperationFailed(f"unknown event kind in catalog: {kind}")


def _build_snapshot(nodes: list[Node], cursor: int) -> Nodes:
    by_handle = {node.handle: node for node in nodes}
    for node in nodes:
        if node.parent is not None and node.parent in by_handle:
            by_handle[node.parent].children.append(node.handle)
    return Nodes(nodes, cursor=cursor)


def _subtree(nodes: list[Node], root_handle: str) -> list[Node]:
    children: dict[str, list[Node]] = {}
    for node in nodes:
        if node.parent is not None:
            children.setdefault(node.parent, []).append(node)

    selected: list[Node] = []
    queue = deque(node for node in nodes if node.handle == root_handle)
    seen: set[str] = set()
    while queue:
        node = queue.popleft()
        if node.handle in seen:
            continue
        seen.add(node.handle)
        selected.append(node)
        queue.extend(children.get(node.handle, []))
    return selected


class CatalogClient:
    """Storage client over a local catalog store; see the module docstring."""

    def __init__(
        self,
        store: Path,
        *,
        max_retries: int = 10,
        min_retry_delay: float = 0.01,
        max_retry_delay: float = 5.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.store = Path(store)
        self._max_retries = max_retries
        self._min_retry_delay = min_retry_delay
        self._max_retry_delay = max_retry_delay
        self._poll_interval = poll_interval

    @classmethod
    def from_config(cls, config) -> "CatalogClient":
        return cls(
            config.store_path,
            max_retries=config.max_retries,
            min_retry_delay=config.min_retry_delay,
            max_retry_delay=config.max_retry_delay,
            poll_interval=config.poll_interval,
        )

    @property
    def db_path(self) -> Path:
        return self.store / CATALOG_FILENAME

    @property
    def blob_dir(self) -> Path:
        return self.store / BLOB_DIRNAME

    def _blob_path(self, handle: str) -> Path:
        return self.blob_dir / handle

    async def _retry_on_busy(self, func: Callable[[], Awaitable[T]], *, operation: str) -> T:
        attempt = 1
        while True:
            try:
                return await func()
            except MegaFlowError:
                raise
            except sqlite3.Error as exc:
                if attempt > self._max_retries or not _is_busy_error(exc):
                    raise RemoteOperationFailed(f"could not {operation}: {exc}") from exc
                delay = min(self._max_retry_delay, self._min_retry_delay * (2 ** (attempt - 1)))
                logger.debug("catalog busy during %s, retrying in %.3fs", operation, delay)
                await asyncio.sleep(delay)
                attempt += 1
            except OSError as exc:
                raise RemoteOperationFailed(f"could not {operation}: {exc}") from exc

    def _connect(self) -> aiosqlite.Connection:
        if not self.db_path.exists():
            raise RemoteOperationFailed(
                f"no catalog found at {self.store}. Run `mf init` first."
            )
        return aiosqlite.connect(self.db_path)

    async def initialize(self) -> None:
        """Create the store and its three roots; a no-op on an existing store."""
        self.blob_dir.mkdir(parents=True, exist_ok=True)

        async def _call() -> None:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(NODES_SCHEMA_SQL)
                await db.execute(EVENTS_SCHEMA_SQL)
                await db.execute(SHARES_SCHEMA_SQL)
                cursor = await db.execute("SELECT COUNT(*) FROM nodes")
                (count,) = await cursor.fetchone()
                await cursor.close()
                if count == 0:
                    await db.executemany(
                        "INSERT INTO nodes (handle, parent, name, kind, key) VALUES (?, NULL, ?, ?, ?)",
                        [(_new_handle(), name, kind.value, b"") for kind, name in ROOT_NAMES],
                    )
                await db.commit()

        await self._retry_on_busy(_call, operation="initialize the catalog")

    async def _load(self) -> tuple[list[Node], int]:
        async def _call() -> tuple[list[Node], int]:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(f"SELECT {NODE_COLUMNS} FROM nodes ORDER BY rowid")
                rows = await cursor.fetchall()
                await cursor.close()
                cursor = await db.execute("SELECT COALESCE(MAX(seq), 0) AS seq FROM events")
                row = await cursor.fetchone()
                await cursor.close()
            return [_node_from_row(item) for item in rows], int(row["seq"])

        return await self._retry_on_busy(_call, operation="fetch nodes")

    async def fetch_own_nodes(self) -> Nodes:
        nodes, cursor = await self._load()
        return _build_snapshot(nodes, cursor)

    async def fetch_public_nodes(self, link: str) -> Nodes:
        return await self._fetch_shared(link, None)

    async def fetch_protected_nodes(self, link: str, password: str) -> Nodes:
        return await self._fetch_shared(link, password)

    async def _fetch_shared(self, link: str, password: str | None) -> Nodes:
        token = link.strip()
        if not token.startswith(LINK_SCHEME):
            token = LINK_SCHEME + token

        async def _call():
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT handle, salt, password_hash FROM shares WHERE link = ?",
                    (token,),
                )
                row = await cursor.fetchone()
                await cursor.close()
            return row

        share = await self._retry_on_busy(_call, operation="resolve the shared link")
        if share is None:
            raise RemoteOperationFailed(f"unknown shared link: {link}")

        expected = share["password_hash"]
        if expected is not None:
            if password is None:
                raise RemoteOperationFailed("this shared link is password-protected (use `--password`)")
            if not hmac.compare_digest(bytes(expected), _hash_password(password, bytes(share["salt"]))):
                raise RemoteOperationFailed("invalid password for shared link")

        nodes, cursor = await self._load()
        selected = _subtree(nodes, str(share["handle"]))
        if not selected:
            raise RemoteOperationFailed("the shared node no longer exists")
        selected[0].parent = None
        return _build_snapshot(selected, cursor)

    async def share_node(self, node: Node, password: str | None = None) -> str:
        link = LINK_SCHEME + secrets.token_urlsafe(12)
        salt = secrets.token_bytes(16)
        password_hash = None if password is None else _hash_password(password, salt)

        async def _call() -> None:
            async with self._connect() as db:
                await self._require(db, node.handle)
                await db.execute(
                    """
                    INSERT INTO shares (link, handle, salt, password_hash, created_at)
                    VALUES (?, ?, ?, ?, strftime('%s','now'))
                    """,
                    (link, node.handle, salt, password_hash),
                )
                await db.commit()

        await self._retry_on_busy(_call, operation="share the node")
        return link

    async def _require(self, db: aiosqlite.Connection, handle: str) -> None:
        cursor = await db.execute("SELECT 1 FROM nodes WHERE handle = ?", (handle,))
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            raise RemoteOperationFailed(f"node {handle} no longer exists")

    async def _append_event(self, db: aiosqlite.Connection, kind: str, payload: dict[str, Any]) -> None:
        await db.execute(
            "INSERT INTO events (kind, payload) VALUES (?, ?)",
            (kind, json.dumps(payload)),
        )

    async def _insert_node(self, node: Node) -> None:
        async def _call() -> None:
            async with self._connect() as db:
                if node.parent is not None:
                    await self._require(db, node.parent)
                await db.execute(
                    f"INSERT INTO nodes ({NODE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        node.handle,
                        node.parent,
                        node.name,
                        node.kind.value,
                        node.size,
                        node.key,
                        node.iv,
                        node.condensed_mac,
                        None if node.modified_at is None else datetime_to_ns(node.modified_at),
                    ),
                )
                await self._append_event(db, "created", {"nodes": [_node_to_payload(node)]})
                await db.commit()

        await self._retry_on_busy(_call, operation=f"create `{node.name}`")

    async def download_node(self, node: Node, writer: AsyncWriter) -> None:
        if not node.kind.is_file():
            raise RemoteOperationFailed(f"`{node.name}` is not a file")
        blob = self._blob_path(node.handle)
        try:
            fh = blob.open("rb")
        except OSError as exc:
            raise RemoteOperationFailed(f"no content stored for `{node.name}`") from exc

        with fh:
            while True:
                try:
                    chunk = await asyncio.to_thread(fh.read, CHUNK_SIZE)
                except OSError as exc:
                    raise RemoteOperationFailed(f"could not read content of `{node.name}`") from exc
                if not chunk:
                    return
                await writer.write(chunk)

    async def upload_node(
        self,
        parent: Node,
        name: str,
        size: int,
        reader: AsyncReader,
        last_modified: datetime | None = None,
    ) -> Node:
        validate_node_name(name)
        if parent.kind.is_file():
            raise RemoteOperationFailed(f"`{parent.name}` is not a folder")

        node = Node(
            handle=_new_handle(),
            name=name,
            kind=NodeKind.FILE,
            size=size,
            parent=parent.handle,
            key=secrets.token_bytes(16),
            iv=secrets.token_bytes(8),
            modified_at=last_modified,
        )
        hasher = _mac_hasher(node.key, node.iv or b"")
        partial = self.blob_dir / f".{node.handle}.part"
        received = 0
        try:
            with partial.open("wb") as fh:
                while True:
                    chunk = await reader.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    hasher.update(chunk)
                    await asyncio.to_thread(fh.write, chunk)
                    received += len(chunk)
            if received != size:
                raise RemoteOperationFailed(
                    f"upload of `{name}` declared {size} byte(s) but received {received}"
                )
            partial.replace(self._blob_path(node.handle))
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise RemoteOperationFailed(f"could not store content of `{name}`: {exc}") from exc
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        node.condensed_mac = hasher.digest()
        try:
            await self._insert_node(node)
        except BaseException:
            self._blob_path(node.handle).unlink(missing_ok=True)
            raise
        return node

    async def compute_condensed_mac(
        self, reader: AsyncReader, size: int, key: bytes, iv: bytes
    ) -> bytes:
        hasher = _mac_hasher(key, iv)
        while True:
            chunk = await reader.read(CHUNK_SIZE)
            if not chunk:
                return hasher.digest()
            hasher.update(chunk)

    async def wait_events(self, nodes: Nodes) -> EventBatch:
        async def _call():
            async with self._connect() as db:
                cursor = await db.execute(
                    "SELECT seq, kind, payload FROM events WHERE seq > ? ORDER BY seq LIMIT ?",
                    (nodes.cursor, EVENT_BATCH_LIMIT),
                )
                rows = await cursor.fetchall()
                await cursor.close()
            return rows

        while True:
            rows = await self._retry_on_busy(_call, operation="poll for events")
            if rows:
                events = [_event_from_row(kind, payload) for _, kind, payload in rows]
                return EventBatch(events=events, cursor=int(rows[-1][0]))
            await asyncio.sleep(self._poll_interval)

    async def create_folder(self, parent: Node, name: str) -> Node:
        validate_node_name(name)
        if parent.kind.is_file():
            raise RemoteOperationFailed(f"`{parent.name}` is not a folder")
        node = Node(
            handle=_new_handle(),
            name=name,
            kind=NodeKind.FOLDER,
            parent=parent.handle,
            key=secrets.token_bytes(16),
        )
        await self._insert_node(node)
        return node

    async def rename_node(self, node: Node, name: str) -> None:
        validate_node_name(name)
        async def _call() -> None:
            async with self._connect() as db:
                await self._require(db, node.handle)
                await db.execute("UPDATE nodes SET name = ? WHERE handle = ?", (name, node.handle))
                await self._append_event(db, "updated", {"handle": node.handle, "name": name})
                await db.commit()

        await self._retry_on_busy(_call, operation=f"rename `{node.name}`")

    async def move_node(self, node: Node, new_parent: Node) -> None:
        async def _call() -> None:
            async with self._connect() as db:
                await self._require(db, node.handle)
                await self._require(db, new_parent.handle)
                current: str | None = new_parent.handle
                seen: set[str] = set()
                while current is not None and current not in seen:
                    if current == node.handle:
                        raise RemoteOperationFailed(f"cannot move `{node.name}` into itself")
                    seen.add(current)
                    cursor = await db.execute("SELECT parent FROM nodes WHERE handle = ?", (current,))
                    row = await cursor.fetchone()
                    await cursor.close()
                    current = None if row is None else row[0]

                await db.execute(
                    "UPDATE nodes SET parent = ? WHERE handle = ?",
                    (new_parent.handle, node.handle),
                )
                await self._append_event(
                    db, "updated", {"handle": node.handle, "parent": new_parent.handle}
                )
                await db.commit()

        await self._retry_on_busy(_call, operation=f"move `{node.name}`")

    async def delete_node(self, node: Node) -> None:
        if node.parent is None:
            raise RemoteOperationFailed(f"cannot delete root node `{node.name}`")

        async def _call() -> list[str]:
            async with self._connect() as db:
                await self._require(db, node.handle)
                removed: list[str] = []
                stack = [node.handle]
                while stack:
                    handle = stack.pop()
                    removed.append(handle)
                    cursor = await db.execute("SELECT handle FROM nodes WHERE parent = ?", (handle,))
                    stack.extend(str(row[0]) for row in await cursor.fetchall())
                    await cursor.close()
                await db.executemany("DELETE FROM nodes WHERE handle = ?", [(h,) for h in removed])
                await db.executemany("DELETE FROM shares WHERE handle = ?", [(h,) for h in removed])
                await self._append_event(db, "deleted", {"handle": node.handle})
                await db.commit()
            return removed

        removed = await self._retry_on_busy(_call, operation=f"delete `{node.name}`")
        for handle in removed:
            self._blob_path(handle).unlink(missing_ok=True)
