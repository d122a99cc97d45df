"""Native memory layout of declared structs."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from ._schema import LayoutMode, StructDefinition
from ._types import NativeType
from .errors import TypeResolutionError


def align_up(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


@dataclass(frozen=True)
class FieldLayout:
    name: str
    type: NativeType
    offset: int
    size: int
    alignment: int


@dataclass(frozen=True)
class StructLayout:
    """Size, alignment and per-field offsets of one struct."""

    name: str
    size: int
    alignment: int
    fields: tuple[FieldLayout, ...]
    mode: LayoutMode = LayoutMode.SEQUENTIAL

    def field(self, name: str) -> FieldLayout:
        for fl in self.fields:
            if fl.name == name:
                return fl
        raise KeyError(name)

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(fl.name for fl in self.fields)

    @property
    def offsets(self) -> dict[str, int]:
        return {fl.name: fl.offset for fl in self.fields}


class StructLayoutBuilder:
    """Compute :class:`StructLayout` objects for a set of struct definitions.

    Nested struct fields are resolved recursively and memoised. Cycles are
    normally rejected by schema validation already; they are detected here
    as well so the builder is safe on hand-built definitions.
    """

    def __init__(self, structs: Mapping[str, StructDefinition]):
        self._structs = structs
        self._layouts: dict[str, StructLayout] = {}
        self._building: list[str] = []

    def build_all(self) -> dict[str, StructLayout]:
        return {name: self.layout(name) for name in self._structs}

    def layout(self, name: str) -> StructLayout:
        cached = self._layouts.get(name)
        if cached is not None:
            return cached
        definition = self._structs.get(name)
        if definition is None:
            raise TypeResolutionError(f"unresolved struct '{name}'", struct=name)
        if name in self._building:
            cycle = self._building[self._building.index(name):] + [name]
            raise TypeResolutionError(f"struct cycle: {' -> '.join(cycle)}", struct=name)
        self._building.append(name)
        try:
            result = self._compute(definition)
        finally:
            self._building.pop()
        self._layouts[name] = result
        return result

    def size_and_alignment(self, ntype: NativeType) -> tuple[int, int]:
        if ntype.is_struct:
            nested = self.layout(ntype.name)
            return nested.size, nested.alignment
        prim = ntype.primitive
        if prim is None:
            raise TypeResolutionError(f"type '{ntype}' has no fixed native size")
        return prim.size, prim.alignment

    def _compute(self, definition: StructDefinition) -> StructLayout:
        fields: list[FieldLayout] = []
        max_align = 1
        end = 0
        cursor = 0
        for fd in definition.fields:
            size, alignment = self.size_and_alignment(fd.type)
            if definition.layout is LayoutMode.EXPLICIT:
                offset = fd.offset
            else:
                offset = align_up(cursor, alignment)
                cursor = offset + size
            max_align = max(max_align, alignment)
            end = max(end, offset + size)
            fields.append(FieldLayout(fd.name, fd.type, offset, size, alignment))
        return StructLayout(
            name=definition.name,
            size=align_up(end, max_align),
            alignment=max_align,
            fields=tuple(fields),
            mode=definition.layout,
        )


def build_layouts(structs: Mapping[str, StructDefinition]) -> dict[str, StructLayout]:
    return StructLayoutBuilder(structs).build_all()
