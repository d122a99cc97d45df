"""Runtime configuration of the interop engine.

Values default from environment variables:

- ``NATIVEINTEROP_PATH``: extra mapping directories, separated by ``os.pathsep``
- ``NATIVEINTEROP_ENCODING``: encoding of native strings
- ``NATIVEINTEROP_OUT_STRING_CAPACITY``: default buffer size of by-reference strings
- ``NATIVEINTEROP_USER_DIR``: user-level mapping directory
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

#: Suffix of mapping files: ``<library>.ekko.json``.
MAPPING_SUFFIX = ".ekko.json"

USER_LIBRARY_DIR = os.path.join(os.path.expanduser("~"), ".nativeinterop", "native-libraries")


def _env_search_dirs() -> tuple[str, ...]:
    raw = os.getenv("NATIVEINTEROP_PATH", "")
    return tuple(part for part in raw.split(os.pathsep) if part)


@dataclass(frozen=True)
class InteropConfig:
    search_dirs: tuple[str, ...] = field(default_factory=_env_search_dirs)
    string_encoding: str = field(
        default_factory=lambda: os.getenv("NATIVEINTEROP_ENCODING", "utf-8")
    )
    out_string_capacity: int = field(
        default_factory=lambda: int(os.getenv("NATIVEINTEROP_OUT_STRING_CAPACITY", "256"))
    )
    user_dir: str = field(
        default_factory=lambda: os.getenv("NATIVEINTEROP_USER_DIR", USER_LIBRARY_DIR)
    )
    mapping_suffix: str = MAPPING_SUFFIX

    def mapping_file_name(self, library: str) -> str:
        return f"{library}{self.mapping_suffix}"

    def candidate_paths(self, library: str, cwd: str | None = None) -> list[Path]:
        """Ordered mapping file locations for ``library``; the first existing one wins."""
        base = Path(cwd or os.getcwd())
        file_name = self.mapping_file_name(library)
        paths = [
            base / file_name,
            base / "native-libraries" / library / file_name,
        ]
        for directory in self.search_dirs:
            paths.append(Path(directory) / library / file_name)
            paths.append(Path(directory) / file_name)
        paths.append(Path(self.user_dir) / file_name)
        return paths
