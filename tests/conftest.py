"""Shared fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from megaflow.models import Nodes
from tests.factories import FakeClient, RecordingProgress, sample_tree


@pytest.fixture
def tree() -> tuple[Nodes, dict[str, bytes]]:
    """Fresh sample snapshot and the content of its files."""
    return sample_tree()


@pytest.fixture
def nodes(tree: tuple[Nodes, dict[str, bytes]]) -> Nodes:
    return tree[0]


@pytest.fixture
def fake_client(tree: tuple[Nodes, dict[str, bytes]]) -> FakeClient:
    """In-memory client serving the sample snapshot."""
    return FakeClient(*tree)


@pytest.fixture
def progress() -> RecordingProgress:
    return RecordingProgress()


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    out = tmp_path / "out"
    out.mkdir()
    return out
