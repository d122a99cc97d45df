"""Selection of the platform specific library file declared by a mapping."""
from __future__ import annotations

import platform
import sys

from ._schema import MappingSchema
from ._types import POINTER_SIZE
from .errors import UnsupportedPlatform

_OS_NAMES = {
    "win32": "windows",
    "cygwin": "windows",
    "linux": "linux",
    "darwin": "darwin",
}

_ARCH_NAMES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "i386": "x86",
    "i486": "x86",
    "i586": "x86",
    "i686": "x86",
    "x86": "x86",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "arm": "arm",
}

# 32-bit interpreters on 64-bit hardware load 32-bit libraries.
_NARROW = {"x64": "x86", "arm64": "arm"}


def current_os() -> str:
    name = sys.platform
    for prefix, mapped in _OS_NAMES.items():
        if name.startswith(prefix):
            return mapped
    return name


def current_arch() -> str:
    machine = platform.machine().lower()
    arch = _ARCH_NAMES.get(machine, machine)
    if POINTER_SIZE == 4:
        arch = _NARROW.get(arch, arch)
    return arch


def current_platform() -> tuple[str, str]:
    """Return ``(os, arch)`` of the running interpreter, e.g. ``("linux", "x64")``."""
    return current_os(), current_arch()


def resolve(schema: MappingSchema, os_name: str, arch: str, library: str | None = None) -> str:
    """Return the library file name declared for ``os_name``/``arch``.

    Raises:
        UnsupportedPlatform: If the mapping has no entry for the pair.
    """
    file_name = schema.library.get(os_name.lower(), {}).get(arch.lower())
    if file_name is None:
        raise UnsupportedPlatform(os_name, arch, library)
    return file_name


def library_path(schema: MappingSchema, os_name: str, arch: str, library: str | None = None) -> str:
    """Return what to hand to the OS loader for ``os_name``/``arch``.

    The declared file name is resolved against the mapping file's directory.
    When no such file exists the declared name is returned unchanged so the
    loader applies its own search rules (``libm.so.6``, ``kernel32.dll``).
    """
    file_name = resolve(schema, os_name, arch, library)
    base_dir = schema.base_dir
    if base_dir is not None:
        candidate = base_dir / file_name
        if candidate.exists():
            return str(candidate.resolve())
    return file_name
