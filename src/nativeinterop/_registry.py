"""Process-wide cache of loaded native libraries.

``load(name)`` goes through these steps, all of which must succeed before
anything is cached:

1. find ``<name>.ekko.json`` at the first existing candidate path
2. parse and validate the mapping
3. pick the library file for the running os/architecture
4. compute struct layouts and declare everything to a fresh ``cffi.FFI``
5. open the library with the OS loader
6. bind every export (missing symbols abort the load and close the handle)

Loads of the same name are serialised by a per-name lock; loads of different
names proceed independently.
"""
from __future__ import annotations

import atexit
import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from enum import Enum
from pathlib import Path
from typing import Any

from cffi import FFI

from ._binding import CallBinding, CallBindingFactory
from ._ffi import close_library, create_ffi, open_library
from ._layout import StructLayout, build_layouts
from ._marshal import Marshaler, StructType
from ._platform import current_platform, library_path
from ._schema import MappingSchema, load_schema
from .config import InteropConfig
from .errors import MappingNotFound

logger = logging.getLogger(__name__)

Opener = Callable[[FFI, str], Any]
Closer = Callable[[FFI, Any], None]


class LibraryState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"


class ExportSurface:
    """What a loaded library exposes to its caller.

    Exported functions and struct constructors are reachable as attributes
    and by item access::

        mathlib = registry.load("mathlib")
        mathlib.add(2, 3)
        mathlib["Point"](x=1.0, y=2.0)

    Exports and structs take precedence over the surface's own properties:
    a library exporting ``version`` exposes that function as
    ``surface.version``, and the mapping version stays reachable through
    ``LoadedLibrary.schema``.
    """

    def __init__(self, library: str, version: str, functions: dict[str, CallBinding],
                 structs: dict[str, StructType]):
        self._library = library
        self._version = version
        self._functions = functions
        self._structs = structs
        self._members: dict[str, Any] = {**functions, **structs}

    @property
    def library_name(self) -> str:
        return self._library

    @property
    def version(self) -> str:
        return self._version

    @property
    def functions(self) -> dict[str, CallBinding]:
        return dict(self._functions)

    @property
    def structs(self) -> dict[str, StructType]:
        return dict(self._structs)

    def __getattribute__(self, name: str) -> Any:
        if not name.startswith("_"):
            members = object.__getattribute__(self, "_members")
            if name in members:
                return members[name]
        return object.__getattribute__(self, name)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        raise AttributeError(f"library '{self._library}' exports no '{name}'")

    def __getitem__(self, name: str) -> Any:
        return self._members[name]

    def __contains__(self, name: object) -> bool:
        return name in self._members

    def __iter__(self) -> Iterator[str]:
        return iter(self._members)

    def __len__(self) -> int:
        return len(self._members)

    def __dir__(self) -> list[str]:
        return sorted(set(super().__dir__()) | set(self._members))

    def __repr__(self) -> str:
        return (f"<ExportSurface {self._library} functions={sorted(self._functions)} "
                f"structs={sorted(self._structs)}>")


class LoadedLibrary:
    """An opened shared library with its layouts and bindings.

    The OS handle is closed exactly once, by :meth:`close`. Bindings check
    :attr:`is_loaded` on every call and fail with ``UseAfterUnload`` once the
    library is closed.
    """

    def __init__(self, name: str, path: str, schema: MappingSchema, ffi: FFI, handle: Any,
                 layouts: dict[str, StructLayout], config: InteropConfig, closer: Closer = close_library):
        self.name = name
        self.path = path
        self.schema = schema
        self.ffi = ffi
        self.handle = handle
        self.layouts = layouts
        self._closer = closer
        self._state = LibraryState.LOADING
        self._state_lock = threading.Lock()

        struct_types: dict[str, StructType] = {}
        for struct_name, layout in layouts.items():
            struct_types[struct_name] = StructType(layout, struct_types, config.string_encoding)
        self.struct_types = struct_types

        marshaler = Marshaler(ffi, struct_types, schema.callbacks, config.string_encoding,
                              config.out_string_capacity)
        self.bindings = CallBindingFactory(self, marshaler).build_all()
        self.exports = ExportSurface(name, schema.version, self.bindings, struct_types)
        self._state = LibraryState.LOADED

    @property
    def state(self) -> LibraryState:
        return self._state

    @property
    def is_loaded(self) -> bool:
        return self._state is LibraryState.LOADED

    def close(self) -> bool:
        """Close the OS handle. Returns False if it was already closed."""
        with self._state_lock:
            if self._state is LibraryState.UNLOADED:
                return False
            self._state = LibraryState.UNLOADED
        self._closer(self.ffi, self.handle)
        return True

    def __repr__(self) -> str:
        return f"<LoadedLibrary {self.name} {self._state.value} path={self.path!r}>"


class LibraryRegistry:
    """Cache of loaded libraries keyed by library name.

    Args:
        config: Engine configuration; read from the environment if omitted.
        candidates: Maps a library name to its ordered candidate mapping file
            paths. Defaults to ``config.candidate_paths``.
        platform: ``(os, arch)`` to resolve library files for. Defaults to
            the running interpreter's platform.
        opener: Opens a library file, ``(ffi, path) -> handle``.
        closer: Closes a handle returned by ``opener``.
    """

    def __init__(self, config: InteropConfig | None = None,
                 candidates: Callable[[str], Iterable[str | Path]] | None = None,
                 platform: tuple[str, str] | None = None,
                 opener: Opener = open_library, closer: Closer = close_library):
        self.config = config or InteropConfig()
        self._candidates = candidates or self.config.candidate_paths
        self._platform = platform
        self._opener = opener
        self._closer = closer
        self._libraries: dict[str, LoadedLibrary] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._open_counts: dict[str, int] = {}
        self._loading: set[str] = set()

    @property
    def platform(self) -> tuple[str, str]:
        return self._platform or current_platform()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    def find_mapping(self, name: str) -> Path:
        """Return the first existing candidate mapping file for ``name``."""
        searched = []
        for candidate in self._candidates(name):
            path = Path(candidate)
            searched.append(str(path))
            if path.is_file():
                return path
        raise MappingNotFound(name, searched)

    def load(self, name: str) -> ExportSurface:
        """Load ``name`` (once) and return its export surface."""
        with self._lock_for(name):
            library = self._libraries.get(name)
            if library is not None:
                logger.debug("Library already loaded: %s", name)
                return library.exports
            with self._guard:
                self._loading.add(name)
            try:
                library = self._load(name)
            except Exception as exc:
                logger.warning("Loading native library %s failed: %s", name, exc)
                raise
            finally:
                with self._guard:
                    self._loading.discard(name)
            with self._guard:
                self._libraries[name] = library
            return library.exports

    def _load(self, name: str) -> LoadedLibrary:
        mapping_path = self.find_mapping(name)
        logger.debug("Found mapping file for %s: %s", name, mapping_path)
        schema = load_schema(mapping_path)

        os_name, arch = self.platform
        path = library_path(schema, os_name, arch, name)
        logger.debug("Library path for %s on %s/%s: %s", name, os_name, arch, path)

        layouts = build_layouts(schema.structs)
        ffi = create_ffi(schema, layouts, os_name, arch, name)

        handle = self._opener(ffi, path)
        with self._guard:
            self._open_counts[name] = self._open_counts.get(name, 0) + 1
        try:
            library = LoadedLibrary(name, path, schema, ffi, handle, layouts, self.config, self._closer)
        except Exception:
            self._closer(ffi, handle)
            raise
        logger.info("Loaded native library %s from %s (%d exports, %d structs)",
                    name, path, len(library.bindings), len(library.struct_types))
        return library

    def unload(self, name: str) -> bool:
        """Close ``name``'s handle. Returns False if it was not loaded.

        Calls still running inside the library when it is unloaded have
        undefined behaviour; the host must not unload a library in use.
        """
        with self._lock_for(name):
            with self._guard:
                library = self._libraries.pop(name, None)
            if library is None:
                return False
            library.close()
            logger.info("Unloaded native library %s", name)
            return True

    def shutdown(self) -> None:
        """Unload every library."""
        for name in self.loaded_names():
            self.unload(name)

    def get(self, name: str) -> LoadedLibrary | None:
        with self._guard:
            return self._libraries.get(name)

    def is_loaded(self, name: str) -> bool:
        return self.get(name) is not None

    def state(self, name: str) -> LibraryState:
        with self._guard:
            if name in self._libraries:
                return LibraryState.LOADED
            if name in self._loading:
                return LibraryState.LOADING
        return LibraryState.UNLOADED

    def loaded_names(self) -> list[str]:
        with self._guard:
            return list(self._libraries)

    def open_count(self, name: str) -> int:
        """How many times the OS loader opened ``name``."""
        with self._guard:
            return self._open_counts.get(name, 0)

    def __enter__(self) -> LibraryRegistry:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()


_default_registry: LibraryRegistry | None = None
_default_lock = threading.Lock()


def default_registry() -> LibraryRegistry:
    """Return the process-wide registry, creating it on first use."""
    global _default_registry
    with _default_lock:
        if _default_registry is None:
            _default_registry = LibraryRegistry()
            atexit.register(_default_registry.shutdown)
        return _default_registry


def load(name: str) -> ExportSurface:
    return default_registry().load(name)


def unload(name: str) -> bool:
    return default_registry().unload(name)
