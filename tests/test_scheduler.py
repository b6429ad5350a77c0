"""Tests for the bounded-concurrency transfer scheduler."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from megaflow.exceptions import InvalidArgumentsError, NotFoundError, RemoteOperationFailed
from megaflow.models import NodeKind, Nodes, TransferJob
from megaflow.scheduler import BatchResult, DownloadRunner, JobStatus, TransferScheduler
from megaflow.transfer_ui import ProgressObserver, TransferTaskHandle
from tests.factories import FakeClient, RecordingProgress, build_nodes, file_node, folder_node


def _wide_tree(count: int) -> tuple[Nodes, dict[str, bytes]]:
    contents = {f"f{index}": f"file number {index}".encode() for index in range(count)}
    nodes = build_nodes(
        folder_node("r", "Root", None, NodeKind.ROOT),
        *(file_node(handle, f"{handle}.txt", "r", data) for handle, data in contents.items()),
    )
    return nodes, contents


def _jobs(nodes: Nodes, output: Path) -> list[TransferJob]:
    return [
        TransferJob(handle=node.handle, remote_path=f"Root/{node.name}", local_path=output / node.name)
        for node in nodes.children_of(nodes.get_node_by_handle("r"))
    ]


class _CountingRunner:
    """Runner recording how many jobs run at the same time."""

    action = "TEST"

    def __init__(self, delay: float = 0.01, failing: set[str] | None = None) -> None:
        self.delay = delay
        self.failing = failing or set()
        self.active = 0
        self.max_active = 0
        self.started: list[str] = []

    async def __call__(
        self,
        job: TransferJob,
        *,
        progress: ProgressObserver | None,
        handle: TransferTaskHandle | None,
    ) -> JobStatus:
        self.started.append(job.handle)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if job.handle in self.failing:
                raise RemoteOperationFailed(f"boom {job.handle}")
        finally:
            self.active -= 1
        return JobStatus.TRANSFERRED


def _job(handle: str) -> TransferJob:
    return TransferJob(handle=handle, remote_path=handle, local_path=Path(handle))


class TestSchedulerConcurrency:
    """Tests for the concurrency bound."""

    def test_parallel_must_be_positive(self) -> None:
        with pytest.raises(InvalidArgumentsError):
            TransferScheduler(_CountingRunner(), parallel=0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("parallel", [1, 4, 16])
    async def test_never_exceeds_parallel(self, parallel: int) -> None:
        """At most `parallel` jobs run at once, and that many are used."""
        runner = _CountingRunner()
        jobs = [_job(f"j{index}") for index in range(20)]

        result = await TransferScheduler(runner, parallel=parallel).run(jobs)

        assert runner.max_active == parallel
        assert len(result.results) == 20
        assert sorted(result.transferred_paths) == sorted(job.remote_path for job in jobs)
        assert result.ok

    @pytest.mark.asyncio
    async def test_fewer_jobs_than_workers(self) -> None:
        runner = _CountingRunner()
        result = await TransferScheduler(runner, parallel=8).run([_job("a"), _job("b")])
        assert runner.max_active == 2
        assert len(result.results) == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self) -> None:
        result = await TransferScheduler(_CountingRunner()).run([])
        assert result == BatchResult()
        assert result.ok

    @pytest.mark.asyncio
    async def test_every_job_runs_once(self) -> None:
        runner = _CountingRunner(delay=0)
        jobs = [_job(f"j{index}") for index in range(50)]
        await TransferScheduler(runner, parallel=4).run(jobs)
        assert sorted(runner.started) == sorted(job.handle for job in jobs)


class TestSchedulerFailures:
    """Tests for failure handling."""

    @pytest.mark.asyncio
    async def test_failing_worker_stops_others_drain(self) -> None:
        """By default only the failing worker stops, the rest finish the batch."""
        runner = _CountingRunner(failing={"j0"})
        jobs = [_job(f"j{index}") for index in range(6)]

        result = await TransferScheduler(runner, parallel=2).run(jobs)

        assert len(result.results) == 6
        assert result.failed_paths == ["j0"]
        assert len(result.transferred_paths) == 5
        assert not result.ok
        assert isinstance(result.first_error, RemoteOperationFailed)

    @pytest.mark.asyncio
    async def test_all_workers_failing_does_not_hang(self) -> None:
        """With every worker stopped, queued jobs are abandoned instead of blocking."""
        runner = _CountingRunner(failing={"j0"})
        jobs = [_job(f"j{index}") for index in range(10)]

        result = await asyncio.wait_for(TransferScheduler(runner, parallel=1).run(jobs), timeout=5)

        assert [item.job.handle for item in result.results] == ["j0"]
        assert runner.started == ["j0"]

    @pytest.mark.asyncio
    async def test_fail_fast_cancels_batch(self) -> None:
        """With fail_fast the first error cancels in-flight and queued jobs."""
        runner = _CountingRunner(delay=0.2, failing=set())
        failing = _CountingRunner(delay=0, failing={"bad"})

        async def dispatch(job: TransferJob, **kwargs) -> JobStatus:
            if job.handle == "bad":
                return await failing(job, **kwargs)
            return await runner(job, **kwargs)

        jobs = [_job("bad"), *(_job(f"slow{index}") for index in range(8))]
        result = await asyncio.wait_for(
            TransferScheduler(dispatch, parallel=2, fail_fast=True).run(jobs), timeout=5
        )

        assert result.failed_paths == ["bad"]
        assert result.transferred_paths == []
        assert len(runner.started) < 8
        assert runner.active == 0

    @pytest.mark.asyncio
    async def test_first_error_is_earliest(self) -> None:
        runner = _CountingRunner(delay=0, failing={"j0", "j1"})
        result = await TransferScheduler(runner, parallel=1).run([_job("j0"), _job("j1")])
        assert str(result.first_error) == "boom j0"


class TestSchedulerProgress:
    """Tests for progress reporting."""

    @pytest.mark.asyncio
    async def test_one_task_per_job(self, progress: RecordingProgress) -> None:
        """Each job opens and removes one task and advances the overall counter."""
        jobs = [_job(f"j{index}") for index in range(5)]
        await TransferScheduler(_CountingRunner(), parallel=2, progress=progress).run(jobs)
        assert sorted(progress.added) == sorted(progress.removed) == sorted(job.remote_path for job in jobs)
        assert progress.overall == 5
        assert len(progress.successes) == 5

    @pytest.mark.asyncio
    async def test_failure_line(self, progress: RecordingProgress) -> None:
        await TransferScheduler(_CountingRunner(failing={"j0"}), progress=progress).run([_job("j0")])
        assert progress.failures == ["failed `j0`: boom j0"]

    @pytest.mark.asyncio
    async def test_skipped_line(self, progress: RecordingProgress) -> None:
        class _Skipping(_CountingRunner):
            async def __call__(self, job, *, progress, handle) -> JobStatus:
                return JobStatus.SKIPPED

        result = await TransferScheduler(_Skipping(), progress=progress).run([_job("j0")])
        assert result.ok
        assert progress.successes == ["`j0` is already up to date"]


class TestDownloadRunner:
    """Tests for the download job body."""

    @pytest.mark.asyncio
    async def test_downloads_then_skips(self, tmp_path: Path) -> None:
        """A second run over identical files transfers nothing."""
        nodes, contents = _wide_tree(6)
        client = FakeClient(nodes, contents)
        jobs = _jobs(nodes, tmp_path)

        first = await TransferScheduler(DownloadRunner(client, nodes), parallel=3).run(jobs)
        second = await TransferScheduler(DownloadRunner(client, nodes), parallel=3).run(jobs)

        assert len(first.transferred_paths) == 6
        assert len(second.skipped_paths) == 6
        for job in jobs:
            assert job.local_path.read_bytes() == contents[job.handle]

    @pytest.mark.asyncio
    async def test_network_concurrency_bounded(self, tmp_path: Path) -> None:
        nodes, contents = _wide_tree(12)
        client = FakeClient(nodes, contents)
        client.delays = {handle: 0.01 for handle in contents}
        await TransferScheduler(DownloadRunner(client, nodes), parallel=4).run(_jobs(nodes, tmp_path))
        assert client.max_active == 4

    @pytest.mark.asyncio
    async def test_vanished_handle_fails_job(self, tmp_path: Path) -> None:
        """A job whose node left the snapshot fails with NotFoundError."""
        nodes, contents = _wide_tree(2)
        client = FakeClient(nodes, contents)
        jobs = [*_jobs(nodes, tmp_path), _job("ghost")]

        result = await TransferScheduler(DownloadRunner(client, nodes), parallel=1).run(jobs)

        assert result.failed_paths == ["ghost"]
        assert isinstance(result.first_error, NotFoundError)
        assert len(result.transferred_paths) == 2

    @pytest.mark.asyncio
    async def test_remote_failure_is_isolated(self, tmp_path: Path) -> None:
        """A failing download does not corrupt sibling jobs."""
        nodes, contents = _wide_tree(4)
        client = FakeClient(nodes, contents)
        client.failures["f1"] = RemoteOperationFailed("nope")

        result = await TransferScheduler(DownloadRunner(client, nodes), parallel=2).run(_jobs(nodes, tmp_path))

        assert result.failed_paths == ["Root/f1.txt"]
        for handle in ("f0", "f2", "f3"):
            assert (tmp_path / f"{handle}.txt").read_bytes() == contents[handle]
