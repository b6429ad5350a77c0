from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath


def _clean(pattern: str) -> str:
    cleaned = pattern.strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned.lstrip("/")


def _glob_match(path: str, pattern: str) -> bool:
    if not pattern:
        return False
    candidate = PurePosixPath(path.lstrip("/"))
    if pattern.endswith("/"):
        # folder patterns select everything below that folder
        return f"/{candidate.as_posix()}".find(f"/{pattern}") != -1
    return candidate.match(pattern) or candidate.match(f"**/{pattern}")


@dataclass(slots=True)
class PathFilter:
    """Include/exclude globs applied to remote paths while flattening."""

    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.include_patterns and not self.exclude_patterns

    def matches(self, remote_path: str) -> bool:
        if self.include_patterns and not any(
            _glob_match(remote_path, pattern) for pattern in self.include_patterns
        ):
            return False
        return not any(_glob_match(remote_path, pattern) for pattern in self.exclude_patterns)


def build_path_filter(
    include_patterns: list[str] | tuple[str, ...] | None = None,
    exclude_patterns: list[str] | tuple[str, ...] | None = None,
) -> PathFilter:
    return PathFilter(
        include_patterns=tuple(_clean(p) for p in (include_patterns or []) if p.strip()),
        exclude_patterns=tuple(_clean(p) for p in (exclude_patterns or []) if p.strip()),
    )
