from __future__ import annotations

from datetime import datetime
from typing import Protocol

from megaflow.exceptions import InvalidArgumentsError
from megaflow.models import EventBatch, Node, Nodes
from megaflow.pipe import AsyncReader, AsyncWriter


ZERO_IV = bytes(8)


class RemoteStorageClient(Protocol):
    """Capabilities the transfer engine consumes from a remote storage backend."""

    async def fetch_own_nodes(self) -> Nodes: ...

    async def fetch_public_nodes(self, link: str) -> Nodes: ...

    async def fetch_protected_nodes(self, link: str, password: str) -> Nodes: ...

    async def download_node(self, node: Node, writer: AsyncWriter) -> None: ...

    async def upload_node(
        self,
        parent: Node,
        name: str,
        size: int,
        reader: AsyncReader,
        last_modified: datetime | None = None,
    ) -> Node: ...

    async def compute_condensed_mac(
        self, reader: AsyncReader, size: int, key: bytes, iv: bytes
    ) -> bytes: ...

    async def wait_events(self, nodes: Nodes) -> EventBatch: ...

    async def create_folder(self, parent: Node, name: str) -> Node: ...

    async def rename_node(self, node: Node, name: str) -> None: ...

    async def move_node(self, node: Node, new_parent: Node) -> None: ...

    async def delete_node(self, node: Node) -> None: ...


async def fetch_nodes(
    client: RemoteStorageClient,
    link: str | None = None,
    password: str | None = None,
) -> Nodes:
    """Fetch the snapshot for the account, a public link or a protected link."""
    if link is None and password is None:
        return await client.fetch_own_nodes()
    if link is None:
        raise InvalidArgumentsError("a password was given without a shared link (`--link`)")
    if password is None:
        return await client.fetch_public_nodes(link)
    return await client.fetch_protected_nodes(link, password)
