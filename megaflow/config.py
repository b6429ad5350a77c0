from __future__ import annotations

import json
import os
import re
from dataclasses import asdict, dataclass
from pathlib import Path


CONFIG_DIR_ENV = "MEGAFLOW_CONFIG_DIR"
CONFIG_FILENAME = "config.json"
DEFAULT_STORE_DIRNAME = "store"

_DURATION_RE = re.compile(r"^\s*(?P<number>\d+(?:\.\d+)?)\s*(?P<unit>ns|us|µs|ms|s|min|h)\s*$")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "min": 60.0,
    "h": 3600.0,
}


@dataclass(slots=True)
class MegaFlowConfig:
    store: str
    parallel: int = 4
    max_retries: int = 10
    min_retry_delay: float = 0.01
    max_retry_delay: float = 5.0
    poll_interval: float = 1.0

    @property
    def store_path(self) -> Path:
        return Path(self.store).expanduser().resolve()


def config_dir() -> Path:
    override = os.getenv(CONFIG_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    xdg = os.getenv("XDG_CONFIG_HOME", "").strip()
    base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / "megaflow"


def config_path() -> Path:
    return config_dir() / CONFIG_FILENAME


def default_config() -> MegaFlowConfig:
    return MegaFlowConfig(store=str(config_dir() / DEFAULT_STORE_DIRNAME))


def parse_duration(value: int | float | str) -> float:
    """Seconds from a millisecond count or a string such as ``250ms`` or ``5s``."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"duration must not be negative: {value!r}")
        return value / 1000.0

    match = _DURATION_RE.match(value)
    if match is None:
        raise ValueError(
            f"invalid duration {value!r}: expected a number followed by ns, us, ms, s, min or h"
        )
    return float(match.group("number")) * _DURATION_UNITS[match.group("unit")]


def format_duration(seconds: float) -> str:
    if seconds >= 1 and float(seconds).is_integer():
        return f"{int(seconds)}s"
    return f"{round(seconds * 1000, 3):g}ms"


def load_config(path: Path | None = None) -> MegaFlowConfig:
    path = path or config_path()
    if not path.exists():
        return default_config()

    with path.open("r", encoding="utf-8") as fh:
        data = json.load(fh)

    defaults = default_config()
    return MegaFlowConfig(
        store=str(data.get("store") or defaults.store),
        parallel=int(data.get("parallel", defaults.parallel)),
        max_retries=int(data.get("max_retries", defaults.max_retries)),
        min_retry_delay=_duration_field(data, "min_retry_delay", defaults.min_retry_delay),
        max_retry_delay=_duration_field(data, "max_retry_delay", defaults.max_retry_delay),
        poll_interval=_duration_field(data, "poll_interval", defaults.poll_interval),
    )


def _duration_field(data: dict, key: str, default: float) -> float:
    if key not in data:
        return default
    return parse_duration(data[key])


def save_config(config: MegaFlowConfig, path: Path | None = None) -> Path:
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = asdict(config)
    for key in ("min_retry_delay", "max_retry_delay", "poll_interval"):
        payload[key] = format_duration(payload[key])
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
        fh.write("\n")
    return path
