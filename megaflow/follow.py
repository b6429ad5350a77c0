from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from megaflow.client import RemoteStorageClient
from megaflow.models import (
    Event,
    EventBatch,
    NodeCreated,
    NodeDeleted,
    NodeUpdated,
    Nodes,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChangeNotice:
    action: str
    handle: str
    name: str


def describe_event(nodes: Nodes, event: Event) -> list[ChangeNotice]:
    """Notices for ``event`` as seen from the snapshot *before* it is applied."""
    if isinstance(event, NodeCreated):
        return [ChangeNotice("created", node.handle, node.name) for node in event.nodes]

    handle = event.attrs.handle if isinstance(event, NodeUpdated) else event.handle
    node = nodes.get_node_by_handle(handle)
    if node is None:
        return []
    action = "updated" if isinstance(event, NodeUpdated) else "deleted"
    return [ChangeNotice(action, node.handle, node.name)]


async def _next_batch(
    client: RemoteStorageClient, nodes: Nodes, cancel: asyncio.Event
) -> EventBatch | None:
    """Wait for either the next batch or cancellation; cancellation wins ties."""
    if cancel.is_set():
        return None

    events_task = asyncio.create_task(client.wait_events(nodes))
    cancel_task = asyncio.create_task(cancel.wait())
    try:
        await asyncio.wait({events_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (events_task, cancel_task):
            task.cancel()
        await asyncio.gather(events_task, cancel_task, return_exceptions=True)

    if cancel.is_set():
        return None
    return events_task.result()


async def follow_events(
    client: RemoteStorageClient,
    nodes: Nodes,
    cancel: asyncio.Event,
    *,
    on_change: Callable[[ChangeNotice], None] | None = None,
    on_waiting: Callable[[], None] | None = None,
) -> None:
    """Keep ``nodes`` current with the remote change feed until ``cancel`` is set.

    Cancellation is only honoured between batches, so a batch is either applied
    completely or not at all.
    """
    while True:
        if on_waiting is not None:
            on_waiting()
        batch = await _next_batch(client, nodes, cancel)
        if batch is None:
            logger.debug("follow loop cancelled at cursor %s", nodes.cursor)
            return

        for event in batch.events:
            if on_change is not None:
                for notice in describe_event(nodes, event):
                    on_change(notice)
            nodes.apply_event(event)
        nodes.cursor = max(nodes.cursor, batch.cursor)
        logger.debug("applied %d event(s), cursor now %s", len(batch.events), nodes.cursor)
