from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Protocol

from rich.console import Console, Group
from rich.live import Live
from rich.markup import escape
from rich.progress import (
    BarColumn,
    DownloadColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)


@dataclass(slots=True)
class TransferTaskHandle:
    task_id: TaskID | None
    total: int | None
    path: str


class ProgressObserver(Protocol):
    """What the transfer engine reports to; rendering is up to the implementation."""

    def add_transfer(self, *, action: str, path: str, total_bytes: int | None) -> TransferTaskHandle: ...

    def start(self, handle: TransferTaskHandle, state: str = "running") -> None: ...

    def set_total(self, handle: TransferTaskHandle, total_bytes: int) -> None: ...

    def set_completed(self, handle: TransferTaskHandle, completed: int) -> None: ...

    def remove(self, handle: TransferTaskHandle) -> None: ...

    def advance_overall(self) -> None: ...

    def report_success(self, message: str) -> None: ...

    def report_failure(self, message: str) -> None: ...


class PlainReporter:
    """Non-interactive observer: no bars, only the per-job result lines."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console(highlight=False)

    def __enter__(self) -> "PlainReporter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def add_transfer(self, *, action: str, path: str, total_bytes: int | None) -> TransferTaskHandle:
        return TransferTaskHandle(task_id=None, total=total_bytes, path=path)

    def start(self, handle: TransferTaskHandle, state: str = "running") -> None:
        return None

    def set_total(self, handle: TransferTaskHandle, total_bytes: int) -> None:
        handle.total = total_bytes

    def set_completed(self, handle: TransferTaskHandle, completed: int) -> None:
        return None

    def remove(self, handle: TransferTaskHandle) -> None:
        return None

    def advance_overall(self) -> None:
        return None

    def report_success(self, message: str) -> None:
        self._console.print(f"[green]{escape(message)}[/green]")

    def report_failure(self, message: str) -> None:
        self._console.print(f"[red]{escape(message)}[/red]")


class TransferProgressUI:
    """Rich bars: one per in-flight transfer, plus an optional job counter on top."""

    def __init__(
        self,
        console: Console | None = None,
        *,
        overall_total: int | None = None,
        overall_label: str = "",
    ) -> None:
        self._lock = threading.Lock()
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.fields[action]}"),
            TextColumn("{task.fields[path]}"),
            BarColumn(),
            DownloadColumn(binary_units=True),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            TextColumn("{task.fields[state]}"),
            console=console,
            expand=True,
        )
        self._overall_progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
        )
        self._overall: TaskID | None = None
        if overall_total is not None:
            self._overall = self._overall_progress.add_task(overall_label, total=overall_total)
        self._live = Live(
            Group(self._overall_progress, self._progress),
            console=console,
            transient=True,
            refresh_per_second=10,
        )

    def __enter__(self) -> "TransferProgressUI":
        self._live.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._live.__exit__(exc_type, exc, tb)

    def add_transfer(self, *, action: str, path: str, total_bytes: int | None) -> TransferTaskHandle:
        with self._lock:
            task_id = self._progress.add_task(
                description=path,
                total=total_bytes,
                completed=0,
                start=False,
                action=action,
                path=path,
                state="queued",
            )
        return TransferTaskHandle(task_id=task_id, total=total_bytes, path=path)

    def start(self, handle: TransferTaskHandle, state: str = "running") -> None:
        with self._lock:
            self._progress.start_task(handle.task_id)
            self._progress.reset(handle.task_id, total=handle.total, state=state)

    def set_completed(self, handle: TransferTaskHandle, completed: int) -> None:
        with self._lock:
            if handle.total is not None:
                completed = min(completed, handle.total)
            self._progress.update(handle.task_id, completed=completed)

    def set_total(self, handle: TransferTaskHandle, total_bytes: int) -> None:
        with self._lock:
            handle.total = total_bytes
            self._progress.update(handle.task_id, total=total_bytes)

    def remove(self, handle: TransferTaskHandle) -> None:
        with self._lock:
            self._progress.remove_task(handle.task_id)

    def advance_overall(self) -> None:
        if self._overall is None:
            return
        with self._lock:
            self._overall_progress.advance(self._overall, 1)

    def report_success(self, message: str) -> None:
        self._live.console.print(f"[green]{escape(message)}[/green]")

    def report_failure(self, message: str) -> None:
        self._live.console.print(f"[red]{escape(message)}[/red]")


def make_progress(
    console: Console,
    *,
    interactive: bool,
    overall_total: int | None = None,
    overall_label: str = "",
) -> TransferProgressUI | PlainReporter:
    if interactive:
        return TransferProgressUI(console, overall_total=overall_total, overall_label=overall_label)
    return PlainReporter(console)
