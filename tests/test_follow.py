"""Tests for the live sync loop."""

from __future__ import annotations

import asyncio

import pytest

from megaflow.follow import ChangeNotice, describe_event, follow_events
from megaflow.models import (
    EventBatch,
    NodeAttributes,
    NodeCreated,
    NodeDeleted,
    Nodes,
    NodeUpdated,
)
from tests.factories import FakeClient, file_node, folder_node


class TestDescribeEvent:
    """Tests for describe_event."""

    def test_created(self, nodes: Nodes) -> None:
        notices = describe_event(nodes, NodeCreated(nodes=[folder_node("g", "new", "r")]))
        assert notices == [ChangeNotice("created", "g", "new")]

    def test_deleted_uses_name_before_removal(self, nodes: Nodes) -> None:
        assert describe_event(nodes, NodeDeleted(handle="a")) == [ChangeNotice("deleted", "a", "a.txt")]

    def test_updated(self, nodes: Nodes) -> None:
        event = NodeUpdated(attrs=NodeAttributes(handle="b", name="c.txt"))
        assert describe_event(nodes, event) == [ChangeNotice("updated", "b", "b.txt")]

    def test_unknown_handle_has_no_notice(self, nodes: Nodes) -> None:
        assert describe_event(nodes, NodeDeleted(handle="missing")) == []
        assert describe_event(nodes, NodeUpdated(attrs=NodeAttributes(handle="missing"))) == []


class TestFollowEvents:
    """Tests for follow_events."""

    @pytest.mark.asyncio
    async def test_applies_batches_until_cancelled(self, fake_client: FakeClient, nodes: Nodes) -> None:
        """Each batch is applied in full and advances the cursor."""
        cancel = asyncio.Event()
        notices: list[ChangeNotice] = []

        def on_change(notice: ChangeNotice) -> None:
            notices.append(notice)
            if notice.action == "deleted":
                cancel.set()

        fake_client.batches.put_nowait(
            EventBatch(events=[NodeCreated(nodes=[file_node("c", "c.txt", "d", b"c")])], cursor=4)
        )
        fake_client.batches.put_nowait(
            EventBatch(
                events=[NodeDeleted(handle="n"), NodeUpdated(attrs=NodeAttributes(handle="a", name="z.txt"))],
                cursor=9,
            )
        )

        await asyncio.wait_for(follow_events(fake_client, nodes, cancel, on_change=on_change), timeout=5)

        assert [notice.action for notice in notices] == ["created", "deleted", "updated"]
        assert nodes.cursor == 9
        assert "c" in nodes
        assert "n" not in nodes
        assert nodes.get_node_by_handle("a").name == "z.txt"

    @pytest.mark.asyncio
    async def test_cancelled_before_waiting(self, fake_client: FakeClient, nodes: Nodes) -> None:
        """A cancel set up front means no wait and no change."""
        cancel = asyncio.Event()
        cancel.set()
        fake_client.batches.put_nowait(EventBatch(events=[NodeDeleted(handle="a")], cursor=3))

        await follow_events(fake_client, nodes, cancel)

        assert fake_client.wait_calls == 0
        assert "a" in nodes
        assert nodes.cursor == 0

    @pytest.mark.asyncio
    async def test_cancel_wins_over_ready_batch(self, nodes: Nodes) -> None:
        """A batch that arrives together with cancellation is dropped unapplied."""
        cancel = asyncio.Event()

        class _RacingClient(FakeClient):
            async def wait_events(self, snapshot: Nodes) -> EventBatch:
                cancel.set()
                return EventBatch(events=[NodeDeleted(handle="a")], cursor=5)

        await asyncio.wait_for(follow_events(_RacingClient(), nodes, cancel), timeout=5)

        assert "a" in nodes
        assert nodes.cursor == 0

    @pytest.mark.asyncio
    async def test_cancel_while_waiting(self, fake_client: FakeClient, nodes: Nodes) -> None:
        """Cancelling during a long wait returns promptly and stops the wait."""
        cancel = asyncio.Event()
        waiting = asyncio.Event()

        follower = asyncio.create_task(follow_events(fake_client, nodes, cancel, on_waiting=waiting.set))
        await asyncio.wait_for(waiting.wait(), timeout=5)
        await asyncio.sleep(0)
        cancel.set()
        await asyncio.wait_for(follower, timeout=5)

        fake_client.batches.put_nowait(EventBatch(events=[NodeDeleted(handle="a")], cursor=2))
        await asyncio.sleep(0)
        assert "a" in nodes
        assert fake_client.batches.qsize() == 1

    @pytest.mark.asyncio
    async def test_unknown_handles_are_tolerated(self, fake_client: FakeClient, nodes: Nodes) -> None:
        """Events about nodes outside the snapshot are skipped silently."""
        cancel = asyncio.Event()
        notices: list[ChangeNotice] = []
        fake_client.batches.put_nowait(
            EventBatch(
                events=[NodeUpdated(attrs=NodeAttributes(handle="zzz", name="x")), NodeDeleted(handle="yyy")],
                cursor=2,
            )
        )

        def on_waiting() -> None:
            if fake_client.wait_calls == 1:
                cancel.set()

        await asyncio.wait_for(
            follow_events(fake_client, nodes, cancel, on_change=notices.append, on_waiting=on_waiting),
            timeout=5,
        )

        assert notices == []
        assert nodes.cursor == 2
