"""Bounded-concurrency execution of flattened transfer jobs.

A fixed number of workers share one bounded queue whose capacity equals the
number of workers. The producer enqueues every job, then one close marker per
worker. Each job runs in its own task and comes back as a tagged
:class:`JobResult`, so one failing job cannot disturb a sibling's state.

Failure policy: by default a worker that hits an error stops claiming jobs
while the other workers keep draining the queue (best-effort batch). With
``fail_fast=True`` the first error cancels every worker and whatever is still
queued. In both cases :attr:`BatchResult.first_error` holds the earliest error.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, Sequence

from megaflow.client import RemoteStorageClient
from megaflow.exceptions import InvalidArgumentsError, NotFoundError
from megaflow.models import Nodes, TransferJob
from megaflow.transfer import perform_download
from megaflow.transfer_ui import ProgressObserver, TransferTaskHandle
from megaflow.verify import already_synced


logger = logging.getLogger(__name__)

DEFAULT_PARALLEL = 4
_CLOSED = object()


class JobStatus(str, Enum):
    TRANSFERRED = "transferred"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True)
class JobResult:
    job: TransferJob
    status: JobStatus
    error: BaseException | None = None


@dataclass(slots=True)
class BatchResult:
    results: list[JobResult] = field(default_factory=list)

    def _paths(self, status: JobStatus) -> list[str]:
        return [result.job.remote_path for result in self.results if result.status is status]

    @property
    def transferred_paths(self) -> list[str]:
        return self._paths(JobStatus.TRANSFERRED)

    @property
    def skipped_paths(self) -> list[str]:
        return self._paths(JobStatus.SKIPPED)

    @property
    def failed_paths(self) -> list[str]:
        return self._paths(JobStatus.FAILED)

    @property
    def first_error(self) -> BaseException | None:
        for result in self.results:
            if result.error is not None:
                return result.error
        return None

    @property
    def ok(self) -> bool:
        return self.first_error is None


class JobRunner(Protocol):
    async def __call__(
        self,
        job: TransferJob,
        *,
        progress: ProgressObserver | None,
        handle: TransferTaskHandle | None,
    ) -> JobStatus: ...


class DownloadRunner:
    """Per-job body of a download: resolve, skip if identical, else fetch."""

    action = "GET"

    def __init__(self, client: RemoteStorageClient, nodes: Nodes) -> None:
        self._client = client
        self._nodes = nodes

    async def __call__(
        self,
        job: TransferJob,
        *,
        progress: ProgressObserver | None,
        handle: TransferTaskHandle | None,
    ) -> JobStatus:
        node = self._nodes.get_node_by_handle(job.handle)
        if node is None:
            raise NotFoundError(f"could not get node by handle: {job.handle}")

        if await already_synced(self._client, node, job.local_path, progress=progress, handle=handle):
            logger.debug("%s already matches %s", job.local_path, job.remote_path)
            return JobStatus.SKIPPED

        await perform_download(self._client, node, job.local_path, progress=progress, handle=handle)
        return JobStatus.TRANSFERRED


class TransferScheduler:
    def __init__(
        self,
        runner: JobRunner,
        *,
        parallel: int = DEFAULT_PARALLEL,
        progress: ProgressObserver | None = None,
        fail_fast: bool = False,
    ) -> None:
        if parallel < 1:
            raise InvalidArgumentsError("the number of parallel transfers must be at least 1")
        self._runner = runner
        self._parallel = parallel
        self._progress = progress
        self._fail_fast = fail_fast
        self._action = getattr(runner, "action", "XFER")

    async def run(self, jobs: Sequence[TransferJob]) -> BatchResult:
        batch = BatchResult()
        if not jobs:
            return batch

        queue: asyncio.Queue[object] = asyncio.Queue(maxsize=self._parallel)
        workers = {
            asyncio.create_task(self._worker(queue, batch), name=f"megaflow-worker-{index}")
            for index in range(self._parallel)
        }
        producer = asyncio.create_task(self._produce(queue, jobs), name="megaflow-producer")

        try:
            pending = workers
            while pending:
                _, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if self._fail_fast and not batch.ok:
                    logger.info("cancelling %d worker(s) after the first failure", len(pending))
                    await _cancel_all(pending)
                    break
        finally:
            await _cancel_all(workers)
            # every worker may have stopped with jobs still queued
            await _cancel_all({producer})

        return batch

    async def _produce(self, queue: asyncio.Queue[object], jobs: Sequence[TransferJob]) -> None:
        for job in jobs:
            await queue.put(job)
        for _ in range(self._parallel):
            await queue.put(_CLOSED)

    async def _worker(self, queue: asyncio.Queue[object], batch: BatchResult) -> None:
        while True:
            job = await queue.get()
            if not isinstance(job, TransferJob):
                return

            handle = None
            if self._progress is not None:
                handle = self._progress.add_transfer(
                    action=self._action, path=job.remote_path, total_bytes=None
                )
            try:
                result = await asyncio.create_task(self._execute(job, handle))
            finally:
                if self._progress is not None and handle is not None:
                    self._progress.remove(handle)

            batch.results.append(result)
            if self._progress is not None:
                self._progress.advance_overall()
                _report(self._progress, result)

            if result.error is not None:
                return

    async def _execute(self, job: TransferJob, handle: TransferTaskHandle | None) -> JobResult:
        try:
            status = await self._runner(job, progress=self._progress, handle=handle)
        except Exception as exc:
            logger.debug("job %s failed", job.remote_path, exc_info=True)
            return JobResult(job=job, status=JobStatus.FAILED, error=exc)
        return JobResult(job=job, status=status)


def _report(progress: ProgressObserver, result: JobResult) -> None:
    job = result.job
    if result.status is JobStatus.FAILED:
        progress.report_failure(f"failed `{job.remote_path}`: {result.error}")
    elif result.status is JobStatus.SKIPPED:
        progress.report_success(f"`{job.remote_path}` is already up to date")
    else:
        progress.report_success(f"transferred `{job.remote_path}` ({job.local_path})")


async def _cancel_all(tasks: set[asyncio.Task]) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
