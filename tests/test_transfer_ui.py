"""Tests for progress observers."""

from __future__ import annotations

import io

from rich.console import Console

from megaflow.transfer_ui import PlainReporter, TransferProgressUI, make_progress


def _console(terminal: bool) -> tuple[Console, io.StringIO]:
    buffer = io.StringIO()
    return Console(file=buffer, force_terminal=terminal, width=120), buffer


class TestMakeProgress:
    """Tests for make_progress."""

    def test_interactive_gets_bars(self) -> None:
        console, _ = _console(True)
        assert isinstance(make_progress(console, interactive=True), TransferProgressUI)

    def test_non_interactive_gets_plain_lines(self) -> None:
        console, _ = _console(False)
        assert isinstance(make_progress(console, interactive=False), PlainReporter)


class TestPlainReporter:
    """Tests for PlainReporter."""

    def test_prints_result_lines_only(self) -> None:
        console, buffer = _console(False)
        with PlainReporter(console) as reporter:
            handle = reporter.add_transfer(action="GET", path="Root/a.txt", total_bytes=None)
            reporter.set_total(handle, 10)
            reporter.start(handle, state="downloading")
            reporter.set_completed(handle, 10)
            reporter.remove(handle)
            reporter.advance_overall()
            reporter.report_success("transferred `Root/a.txt` [x]")
            reporter.report_failure("failed `Root/b.txt`")

        assert handle.total == 10
        assert buffer.getvalue().splitlines() == [
            "transferred `Root/a.txt` [x]",
            "failed `Root/b.txt`",
        ]


class TestTransferProgressUI:
    """Tests for the rich progress UI."""

    def test_full_task_lifecycle(self) -> None:
        """A task can be opened, driven and removed while messages go to the console."""
        console, buffer = _console(True)
        with TransferProgressUI(console, overall_total=2, overall_label="files") as ui:
            handle = ui.add_transfer(action="GET", path="Root/a.txt", total_bytes=None)
            ui.set_total(handle, 100)
            ui.start(handle, state="downloading")
            ui.set_completed(handle, 250)
            ui.remove(handle)
            ui.advance_overall()
            ui.report_success("transferred `Root/a.txt`")

        assert handle.total == 100
        assert "transferred `Root/a.txt`" in buffer.getvalue()

    def test_without_overall_counter(self) -> None:
        console, _ = _console(True)
        with TransferProgressUI(console) as ui:
            ui.advance_overall()
