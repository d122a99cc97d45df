"""CFFI declarations generated from a mapping schema.

Each loaded library gets its own :class:`cffi.FFI` instance. The schema's
structs, callbacks and exports are rendered into a C declaration string and
handed to ``ffi.cdef``; ``ffi.dlopen`` then binds the entry points lazily by
symbol name. Calls are dispatched by libffi from the declared signature, so no
compile step is involved.

Struct declarations:
    Sequential structs are declared field by field so that by-value passing
    follows the platform's aggregate classification rules. Explicit structs
    (possibly overlapping fields) are declared as an opaque block of words of
    the struct's alignment; their field access goes through
    :class:`~nativeinterop._marshal.StructValue`, never through cffi.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from cffi import CDefError, FFI, FFIError

from ._layout import StructLayout
from ._schema import CallbackDefinition, CallingConvention, FunctionDefinition, LayoutMode, MappingSchema
from ._types import NativeType, TypeKind
from .errors import LibraryLoadFailure, MappingParseError, TypeResolutionError

logger = logging.getLogger(__name__)

_STORAGE_WORDS = {1: "uint8_t", 2: "uint16_t", 4: "uint32_t", 8: "uint64_t"}


def callback_typedef(name: str) -> str:
    return f"_cb_{name}"


def c_type_of(ntype: NativeType) -> str:
    """C spelling of ``ntype`` as used in a declaration."""
    if ntype.kind is TypeKind.STRUCT:
        return f"struct {ntype.name}"
    if ntype.kind is TypeKind.CALLBACK:
        return callback_typedef(ntype.name)
    if ntype.kind is TypeKind.ARRAY:
        return pointer_to(c_type_of(ntype.element))
    if ntype.kind is TypeKind.VOID:
        return "void"
    return ntype.primitive.c_type


def pointer_to(c_type: str) -> str:
    return f"{c_type} *"


def parameter_c_type(ntype: NativeType, writes_back: bool) -> str:
    c_type = c_type_of(ntype)
    # Arrays decay to a pointer to their first element; by-reference strings
    # are a mutable char buffer the callee writes into.
    if writes_back and not (ntype.is_array or ntype.kind is TypeKind.STRING):
        return pointer_to(c_type)
    return c_type


def convention_keyword(convention: CallingConvention, os_name: str, arch: str, export: str = "") -> str:
    """Return the cdef qualifier for ``convention`` on the target platform.

    Only 32-bit Windows distinguishes calling conventions; everywhere else
    all of them are the platform's single C convention.
    """
    if os_name != "windows" or arch != "x86" or convention is CallingConvention.CDECL:
        return ""
    if convention is CallingConvention.STDCALL:
        return "__stdcall "
    raise LibraryLoadFailure(
        f"calling convention '{convention.value}' of export '{export}' is not supported on {os_name}/{arch}",
        export=export,
    )


def declare_struct(layout: StructLayout) -> str:
    if layout.mode is LayoutMode.EXPLICIT:
        word = _STORAGE_WORDS[layout.alignment]
        return f"struct {layout.name} {{\n    {word} _storage[{layout.size // layout.alignment}];\n}};"
    lines = [f"    {c_type_of(fl.type)} {fl.name};" for fl in layout.fields]
    return f"struct {layout.name} {{\n" + "\n".join(lines) + "\n};"


def _argument_list(parameters) -> str:
    if not parameters:
        return "void"
    return ", ".join(f"{parameter_c_type(p.type, p.writes_back)} {p.name}" for p in parameters)


def declare_callback(callback: CallbackDefinition) -> str:
    return (f"typedef {c_type_of(callback.returns)} (*{callback_typedef(callback.name)})"
            f"({_argument_list(callback.parameters)});")


def declare_function(func: FunctionDefinition, keyword: str = "") -> str:
    return f"{c_type_of(func.returns)} {keyword}{func.entry_point}({_argument_list(func.parameters)});"


def build_cdef(schema: MappingSchema, layouts: Mapping[str, StructLayout], os_name: str, arch: str) -> str:
    """Render the C declarations for ``schema``.

    Structs are emitted in dependency order; an entry point bound by several
    exports is declared once.
    """
    parts = [declare_struct(layouts[name]) for name in schema.structs]
    parts.extend(declare_callback(cb) for cb in schema.callbacks.values())
    declared: set[str] = set()
    for func in schema.exports.values():
        if func.entry_point in declared:
            continue
        declared.add(func.entry_point)
        keyword = convention_keyword(func.calling_convention, os_name, arch, func.name)
        parts.append(declare_function(func, keyword))
    return "\n".join(parts)


def create_ffi(schema: MappingSchema, layouts: Mapping[str, StructLayout], os_name: str, arch: str,
               library: str | None = None) -> FFI:
    """Create an :class:`FFI` holding the declarations of ``schema``."""
    source = build_cdef(schema, layouts, os_name, arch)
    logger.debug("cdef for %s:\n%s", library, source)
    ffi = FFI()
    try:
        ffi.cdef(source)
    except (CDefError, FFIError) as exc:
        raise MappingParseError(f"cannot declare mapping of '{library}' to cffi: {exc}", library=library) from exc
    check_layouts(ffi, layouts, library)
    return ffi


def check_layouts(ffi: FFI, layouts: Mapping[str, StructLayout], library: str | None = None) -> None:
    """Cross-check computed sequential layouts against cffi's own."""
    for layout in layouts.values():
        c_name = f"struct {layout.name}"
        if ffi.sizeof(c_name) != layout.size:
            raise TypeResolutionError(
                f"struct '{layout.name}' size mismatch: computed {layout.size}, ABI {ffi.sizeof(c_name)}",
                library=library, struct=layout.name)
        if layout.mode is LayoutMode.EXPLICIT:
            continue
        for fl in layout.fields:
            abi_offset = ffi.offsetof(c_name, fl.name)
            if abi_offset != fl.offset:
                raise TypeResolutionError(
                    f"field '{fl.name}' of struct '{layout.name}' offset mismatch: "
                    f"computed {fl.offset}, ABI {abi_offset}",
                    library=library, struct=layout.name, field=fl.name)


def open_library(ffi: FFI, path: str) -> Any:
    """Open ``path`` with the OS loader.

    Raises:
        LibraryLoadFailure: If the loader rejects the file.
    """
    try:
        return ffi.dlopen(path)
    except OSError as exc:
        raise LibraryLoadFailure(f"cannot load native library {path}: {exc}", path=path) from exc


def close_library(ffi: FFI, handle: Any) -> None:
    ffi.dlclose(handle)
