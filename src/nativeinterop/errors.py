"""Exception hierarchy for the native interop engine.

Every error raised by nativeinterop derives from :class:`InteropError`. Each
exception carries a human readable ``message`` and a ``context`` dict naming
the library, export, struct, field or parameter involved, so that hosts can
log structured information without parsing messages.

Load-time errors (:class:`MappingNotFound` through :class:`EntryPointNotFound`
and :class:`TypeResolutionError`) abort the ``load`` call and leave nothing
cached. Invocation-time errors (:class:`MarshalingError`,
:class:`NativeInvocationError`) are local to one call; the binding stays
usable afterwards.

Note:
    A native fault the platform cannot turn into a Python exception (for
    example a segmentation fault inside the callee) terminates the process.
    That is an inherent risk of calling native code and is not handled here.
"""
from __future__ import annotations

from typing import Any


class InteropError(Exception):
    """Base class for all nativeinterop errors.

    Attributes:
        message: Human readable description.
        context: Names identifying the offending library/export/struct/
            field/parameter. Keys are only present when known.
    """

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, context={self.context!r})"


class MappingNotFound(InteropError):
    """No mapping file exists at any of the candidate paths."""

    def __init__(self, library: str, searched: list[str]) -> None:
        super().__init__(
            f"mapping file not found for library '{library}' (searched: {', '.join(searched)})",
            library=library,
            searched=searched,
        )
        self.searched = searched


class SchemaError(InteropError):
    """Base for errors found while parsing or validating a mapping file."""


class MappingParseError(SchemaError):
    """The mapping file is malformed or violates a structural rule."""


class TypeResolutionError(SchemaError):
    """A type reference is unresolved, misplaced, or part of a struct cycle."""


class UnsupportedPlatform(InteropError):
    """The mapping declares no library for the requested (os, arch) pair."""

    def __init__(self, os_name: str, arch: str, library: str | None = None) -> None:
        super().__init__(
            f"no library defined for {os_name}/{arch}"
            + (f" in mapping for '{library}'" if library else ""),
            os=os_name,
            arch=arch,
            library=library,
        )


class LibraryLoadFailure(InteropError):
    """The OS loader rejected the shared library."""


class EntryPointNotFound(InteropError):
    """An export's entry point symbol is missing from the shared library."""

    def __init__(self, library: str, export: str, entry_point: str) -> None:
        super().__init__(
            f"entry point '{entry_point}' for export '{export}' not found in library '{library}'",
            library=library,
            export=export,
            entry_point=entry_point,
        )


class MarshalingError(InteropError):
    """A host value could not be converted for, or from, a native call."""


class NativeInvocationError(InteropError):
    """A catchable fault occurred on the native side of a call."""


class UseAfterUnload(InteropError):
    """A binding was invoked after its library was unloaded."""

    def __init__(self, library: str, export: str) -> None:
        super().__init__(
            f"cannot call '{export}': library '{library}' has been unloaded",
            library=library,
            export=export,
        )
