"""Tests for configuration loading and duration parsing."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from megaflow.config import (
    MegaFlowConfig,
    config_path,
    format_duration,
    load_config,
    parse_duration,
    save_config,
)


@pytest.fixture
def config_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the config directory at a temporary location."""
    directory = tmp_path / "config"
    monkeypatch.setenv("MEGAFLOW_CONFIG_DIR", str(directory))
    return directory


class TestParseDuration:
    """Tests for parse_duration."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (250, 0.25),
            (0, 0.0),
            ("10ms", 0.01),
            ("5s", 5.0),
            ("1.5s", 1.5),
            ("2min", 120.0),
            ("1h", 3600.0),
            ("500us", 0.0005),
        ],
    )
    def test_valid(self, value: int | str, expected: float) -> None:
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "fast", "5", "-1s", "1 day"])
    def test_invalid_strings(self, value: str) -> None:
        with pytest.raises(ValueError):
            parse_duration(value)

    def test_negative_number(self) -> None:
        with pytest.raises(ValueError):
            parse_duration(-5)

    def test_bool_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            parse_duration(True)

    def test_format(self) -> None:
        assert format_duration(5.0) == "5s"
        assert format_duration(0.01) == "10ms"
        assert format_duration(1.5) == "1500ms"


class TestLoadConfig:
    """Tests for loading and saving the config file."""

    def test_config_path_honours_env(self, config_dir: Path) -> None:
        assert config_path() == config_dir / "config.json"

    def test_missing_file_gives_defaults(self, config_dir: Path) -> None:
        config = load_config()
        assert config.parallel == 4
        assert config.max_retries == 10
        assert config.min_retry_delay == pytest.approx(0.01)
        assert config.max_retry_delay == pytest.approx(5.0)
        assert config.poll_interval == pytest.approx(1.0)
        assert config.store_path == (config_dir / "store").resolve()

    def test_save_and_load(self, config_dir: Path, tmp_path: Path) -> None:
        """Durations are written in readable units and read back as seconds."""
        config = MegaFlowConfig(store=str(tmp_path / "s"), parallel=8, poll_interval=0.25)
        path = save_config(config)

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["poll_interval"] == "250ms"
        assert data["max_retry_delay"] == "5s"
        loaded = load_config()
        assert loaded.store == config.store
        assert loaded.parallel == 8
        assert loaded.poll_interval == pytest.approx(0.25)
        assert loaded.min_retry_delay == pytest.approx(0.01)

    def test_partial_file(self, config_dir: Path) -> None:
        """Missing keys fall back to defaults, numbers are milliseconds."""
        config_dir.mkdir(parents=True)
        (config_dir / "config.json").write_text(json.dumps({"parallel": 2, "poll_interval": 50}))
        config = load_config()
        assert config.parallel == 2
        assert config.poll_interval == pytest.approx(0.05)
        assert config.max_retries == 10
