"""Native type grammar understood by mapping files.

Primitive sizes and alignments are taken from the ABI of the running
interpreter by asking cffi, so layouts computed here agree with what the
loaded library was compiled against.
"""
from __future__ import annotations

from collections.abc import Container
from dataclasses import dataclass
from enum import Enum
from typing import Any

from cffi import FFI

from .errors import TypeResolutionError

_sizing_ffi = FFI()


class TypeKind(str, Enum):
    VOID = "void"
    BOOL = "bool"
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    UINT64 = "uint64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    STRING = "string"
    POINTER = "pointer"
    STRUCT = "struct"
    ARRAY = "array"
    CALLBACK = "callback"


@dataclass(frozen=True)
class Primitive:
    """ABI facts about a fixed-size native type."""

    c_type: str
    size: int
    alignment: int
    signed: bool | None = None
    floating: bool = False

    @property
    def is_integer(self) -> bool:
        return self.signed is not None

    @property
    def min_value(self) -> int:
        return -(1 << (self.size * 8 - 1)) if self.signed else 0

    @property
    def max_value(self) -> int:
        bits = self.size * 8 - (1 if self.signed else 0)
        return (1 << bits) - 1


def _primitive(c_type: str, signed: bool | None = None, floating: bool = False) -> Primitive:
    return Primitive(c_type, _sizing_ffi.sizeof(c_type), _sizing_ffi.alignof(c_type), signed, floating)


PRIMITIVES: dict[TypeKind, Primitive] = {
    TypeKind.BOOL: _primitive("_Bool"),
    TypeKind.INT8: _primitive("int8_t", signed=True),
    TypeKind.INT16: _primitive("int16_t", signed=True),
    TypeKind.INT32: _primitive("int32_t", signed=True),
    TypeKind.INT64: _primitive("int64_t", signed=True),
    TypeKind.UINT8: _primitive("uint8_t", signed=False),
    TypeKind.UINT16: _primitive("uint16_t", signed=False),
    TypeKind.UINT32: _primitive("uint32_t", signed=False),
    TypeKind.UINT64: _primitive("uint64_t", signed=False),
    TypeKind.FLOAT32: _primitive("float", floating=True),
    TypeKind.FLOAT64: _primitive("double", floating=True),
    TypeKind.STRING: _primitive("char *"),
    TypeKind.POINTER: _primitive("void *"),
}

#: Machine word size of the running interpreter, in bytes.
POINTER_SIZE: int = PRIMITIVES[TypeKind.POINTER].size

# Canonical names plus the spellings used by existing mapping files.
ALIASES: dict[str, TypeKind] = {kind.value: kind for kind in TypeKind
                                if kind not in (TypeKind.STRUCT, TypeKind.ARRAY, TypeKind.CALLBACK)}
ALIASES.update({
    "sbyte": TypeKind.INT8,
    "byte": TypeKind.UINT8,
    "short": TypeKind.INT16,
    "ushort": TypeKind.UINT16,
    "int": TypeKind.INT32,
    "uint": TypeKind.UINT32,
    "long": TypeKind.INT64,
    "ulong": TypeKind.UINT64,
    "float": TypeKind.FLOAT32,
    "double": TypeKind.FLOAT64,
    "ptr": TypeKind.POINTER,
    "IntPtr": TypeKind.POINTER,
    "UIntPtr": TypeKind.POINTER,
})


@dataclass(frozen=True)
class NativeType:
    """A resolved type reference.

    ``name`` is set for struct and callback types, ``element`` for arrays.
    """

    kind: TypeKind
    name: str | None = None
    element: NativeType | None = None

    @property
    def primitive(self) -> Primitive | None:
        return PRIMITIVES.get(self.kind)

    @property
    def is_void(self) -> bool:
        return self.kind is TypeKind.VOID

    @property
    def is_numeric(self) -> bool:
        prim = self.primitive
        return prim is not None and (prim.is_integer or prim.floating)

    @property
    def is_integer(self) -> bool:
        prim = self.primitive
        return prim is not None and prim.is_integer

    @property
    def is_struct(self) -> bool:
        return self.kind is TypeKind.STRUCT

    @property
    def is_array(self) -> bool:
        return self.kind is TypeKind.ARRAY

    @property
    def is_callback(self) -> bool:
        return self.kind is TypeKind.CALLBACK

    def __str__(self) -> str:
        if self.kind is TypeKind.ARRAY:
            return f"{self.element}[]"
        if self.name is not None:
            return self.name
        return self.kind.value


VOID = NativeType(TypeKind.VOID)


def parse_type(
    text: Any,
    structs: Container[str],
    callbacks: Container[str] = (),
    where: str = "",
    **context: Any,
) -> NativeType:
    """Resolve a type spelling from a mapping file.

    Args:
        text: Type spelling, e.g. ``"int"``, ``"double[]"`` or a struct name.
        structs: Names of declared structs.
        callbacks: Names of declared callbacks.
        where: Human readable location used in error messages.

    Raises:
        TypeResolutionError: If the spelling names nothing known.
    """
    if not isinstance(text, str) or not text.strip():
        raise TypeResolutionError(f"missing or invalid type {text!r} in {where}", **context)
    text = text.strip()
    if text.endswith("[]"):
        element = parse_type(text[:-2], structs, callbacks, where, **context)
        if element.is_array:
            raise TypeResolutionError(f"nested array type '{text}' in {where}", **context)
        if element.is_void or element.is_callback:
            raise TypeResolutionError(f"invalid array element type '{element}' in {where}", **context)
        return NativeType(TypeKind.ARRAY, element=element)
    kind = ALIASES.get(text)
    if kind is not None:
        return VOID if kind is TypeKind.VOID else NativeType(kind)
    if text in structs:
        return NativeType(TypeKind.STRUCT, name=text)
    if text in callbacks:
        return NativeType(TypeKind.CALLBACK, name=text)
    raise TypeResolutionError(f"unresolved type '{text}' in {where}", **context)
