"""nativeinterop: call native shared libraries described by JSON mappings.

A library is described by a ``<name>.ekko.json`` mapping file that lists the
library file to load per operating system and architecture, the exported
functions with their parameter and return types, and the structs and
callbacks those functions use. Loading a library builds callable bindings
for every export at runtime; no compile step or generated code is involved.

Core Components:
    LibraryRegistry: Finds mapping files, loads libraries once, unloads them.
    MappingSchema: Validated in-memory form of a mapping file.
    StructLayoutBuilder: Computes struct sizes, alignments and field offsets.
    Marshaler: Converts host values to native arguments and back.
    CallBindingFactory: Builds the invocable binding of each export.

Example:
    >>> import nativeinterop
    >>> mathlib = nativeinterop.load("mathlib")
    >>> mathlib.add(2, 3)
    5
    >>> mathlib.distance(mathlib.Point(x=0.0, y=0.0), mathlib.Point(x=3.0, y=4.0))
    5.0
    >>> nativeinterop.unload("mathlib")
    True
"""
import logging

from ._binding import CallBinding, CallBindingFactory
from ._layout import FieldLayout, StructLayout, StructLayoutBuilder, build_layouts
from ._marshal import CallScope, Marshaler, Ref, StructType, StructValue
from ._platform import current_platform, library_path, resolve
from ._registry import (
    ExportSurface,
    LibraryRegistry,
    LibraryState,
    LoadedLibrary,
    default_registry,
    load,
    unload,
)
from ._schema import (
    CallbackDefinition,
    CallingConvention,
    FieldDefinition,
    FunctionDefinition,
    LayoutMode,
    MappingSchema,
    Ownership,
    ParameterDefinition,
    StructDefinition,
    load_schema,
    parse_schema,
)
from ._types import NativeType, TypeKind, parse_type
from .config import InteropConfig
from .errors import (
    EntryPointNotFound,
    InteropError,
    LibraryLoadFailure,
    MappingNotFound,
    MappingParseError,
    MarshalingError,
    NativeInvocationError,
    SchemaError,
    TypeResolutionError,
    UnsupportedPlatform,
    UseAfterUnload,
)

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Registry
    "LibraryRegistry",
    "LoadedLibrary",
    "LibraryState",
    "ExportSurface",
    "default_registry",
    "load",
    "unload",
    "InteropConfig",
    # Mapping schema
    "MappingSchema",
    "FunctionDefinition",
    "ParameterDefinition",
    "StructDefinition",
    "FieldDefinition",
    "CallbackDefinition",
    "CallingConvention",
    "LayoutMode",
    "Ownership",
    "NativeType",
    "TypeKind",
    "parse_type",
    "parse_schema",
    "load_schema",
    # Platform
    "current_platform",
    "resolve",
    "library_path",
    # Layout
    "StructLayoutBuilder",
    "StructLayout",
    "FieldLayout",
    "build_layouts",
    # Marshaling and calls
    "Marshaler",
    "CallScope",
    "Ref",
    "StructType",
    "StructValue",
    "CallBinding",
    "CallBindingFactory",
    # Errors
    "InteropError",
    "MappingNotFound",
    "SchemaError",
    "MappingParseError",
    "TypeResolutionError",
    "UnsupportedPlatform",
    "LibraryLoadFailure",
    "EntryPointNotFound",
    "MarshalingError",
    "NativeInvocationError",
    "UseAfterUnload",
]
