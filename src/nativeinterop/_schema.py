"""Parsed and validated form of a mapping file.

A mapping file describes one shared library:

    {
      "library": {"linux": {"x64": "libmathlib.so"}, "windows": {"x64": "mathlib.dll"}},
      "version": "1.0.0",
      "exports": {
        "add": {"entryPoint": "add", "returns": "int",
                "parameters": [{"name": "a", "type": "int"}, {"name": "b", "type": "int"}]}
      },
      "structs": {"Point": {"fields": [{"name": "x", "type": "double"},
                                       {"name": "y", "type": "double"}]}},
      "callbacks": {}
    }

Property names are matched case-insensitively. All structural and type rules
are checked here, so a schema that parses is safe to lay out and bind.
"""
from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ._types import NativeType, TypeKind, parse_type
from .errors import MappingParseError, TypeResolutionError

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Names that would break the generated C declarations.
_C_KEYWORDS = frozenset("""
    auto break case char const continue default do double else enum extern float for goto if
    inline int long register restrict return short signed sizeof static struct switch typedef
    union unsigned void volatile while _Bool _Complex _Imaginary bool
""".split())


class CallingConvention(str, Enum):
    CDECL = "cdecl"
    STDCALL = "stdcall"
    FASTCALL = "fastcall"


class LayoutMode(str, Enum):
    SEQUENTIAL = "sequential"
    EXPLICIT = "explicit"


class Ownership(str, Enum):
    """Who owns a buffer returned by a native function."""

    BORROWED = "borrowed"
    CALLER = "caller"


@dataclass(frozen=True)
class ParameterDefinition:
    name: str
    type: NativeType
    by_ref: bool = False
    out: bool = False

    @property
    def writes_back(self) -> bool:
        return self.by_ref or self.out


@dataclass(frozen=True)
class FunctionDefinition:
    name: str
    entry_point: str
    returns: NativeType
    parameters: tuple[ParameterDefinition, ...] = ()
    calling_convention: CallingConvention = CallingConvention.CDECL
    ownership: Ownership | None = None
    free_with: str | None = None
    return_length: str | None = None

    def parameter(self, name: str) -> ParameterDefinition | None:
        for param in self.parameters:
            if param.name == name:
                return param
        return None

    def signature(self) -> tuple:
        return (
            self.returns,
            tuple((p.type, p.writes_back) for p in self.parameters),
            self.calling_convention,
        )


@dataclass(frozen=True)
class FieldDefinition:
    name: str
    type: NativeType
    offset: int | None = None


@dataclass(frozen=True)
class StructDefinition:
    name: str
    fields: tuple[FieldDefinition, ...]
    layout: LayoutMode = LayoutMode.SEQUENTIAL

    def struct_dependencies(self) -> list[str]:
        return [f.type.name for f in self.fields if f.type.is_struct]


@dataclass(frozen=True)
class CallbackDefinition:
    name: str
    returns: NativeType
    parameters: tuple[ParameterDefinition, ...] = ()


@dataclass(frozen=True)
class MappingSchema:
    """In-memory form of a mapping file.

    Attributes:
        library: ``{os: {arch: file name}}`` with lower-cased keys.
        version: Free-form version string of the described library.
        exports: Export name to function definition.
        structs: Struct name to definition, in dependency order.
        callbacks: Callback name to definition.
        source: Path the schema was read from, if any.
    """

    library: dict[str, dict[str, str]]
    version: str = ""
    exports: dict[str, FunctionDefinition] = field(default_factory=dict)
    structs: dict[str, StructDefinition] = field(default_factory=dict)
    callbacks: dict[str, CallbackDefinition] = field(default_factory=dict)
    source: Path | None = None

    def platforms(self) -> list[tuple[str, str]]:
        return [(os_name, arch) for os_name, archs in self.library.items() for arch in archs]

    @property
    def base_dir(self) -> Path | None:
        return self.source.parent if self.source is not None else None


def _lookup(obj: Mapping[str, Any], key: str, default: Any = None) -> Any:
    if key in obj:
        return obj[key]
    wanted = key.lower()
    for k, v in obj.items():
        if isinstance(k, str) and k.lower() == wanted:
            return v
    return default


def _require_mapping(value: Any, where: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise MappingParseError(f"{where} must be an object, got {type(value).__name__}")
    return value


def _check_identifier(name: Any, what: str, **context: Any) -> str:
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise MappingParseError(f"{what} {name!r} is not a valid identifier", **context)
    if name in _C_KEYWORDS:
        raise MappingParseError(f"{what} '{name}' is a reserved C keyword", **context)
    return name


def _parse_bool(value: Any, what: str, **context: Any) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise MappingParseError(f"{what} must be true or false, got {value!r}", **context)
    return value


def _parse_library_table(raw: Any) -> dict[str, dict[str, str]]:
    table: dict[str, dict[str, str]] = {}
    for os_name, archs in _require_mapping(raw, "'library'").items():
        archs = _require_mapping(archs, f"'library.{os_name}'")
        for arch, file_name in archs.items():
            if not isinstance(file_name, str) or not file_name:
                raise MappingParseError(f"library file for {os_name}/{arch} must be a non-empty string")
            table.setdefault(str(os_name).lower(), {})[str(arch).lower()] = file_name
    if not table:
        raise MappingParseError("'library' must declare at least one os/architecture entry")
    return table


def _parse_struct(name: str, raw: Any, struct_names: set[str], callback_names: set[str]) -> StructDefinition:
    raw = _require_mapping(raw, f"struct '{name}'")
    raw_fields = _lookup(raw, "fields")
    if not isinstance(raw_fields, list) or not raw_fields:
        raise MappingParseError(f"struct '{name}' must declare a non-empty 'fields' list", struct=name)

    fields: list[FieldDefinition] = []
    seen: set[str] = set()
    for raw_field in raw_fields:
        raw_field = _require_mapping(raw_field, f"field of struct '{name}'")
        field_name = _check_identifier(_lookup(raw_field, "name"), "field name", struct=name)
        if field_name in seen:
            raise MappingParseError(f"duplicate field '{field_name}' in struct '{name}'",
                                    struct=name, field=field_name)
        seen.add(field_name)
        where = f"struct '{name}' field '{field_name}'"
        ftype = parse_type(_lookup(raw_field, "type"), struct_names, callback_names, where,
                           struct=name, field=field_name)
        if ftype.is_void or ftype.is_array or ftype.is_callback:
            raise TypeResolutionError(f"type '{ftype}' is not allowed for {where}",
                                      struct=name, field=field_name)
        offset = _lookup(raw_field, "offset")
        if offset is not None and (isinstance(offset, bool) or not isinstance(offset, int) or offset < 0):
            raise MappingParseError(f"offset of {where} must be a non-negative integer",
                                    struct=name, field=field_name)
        fields.append(FieldDefinition(field_name, ftype, offset))

    with_offsets = sum(1 for f in fields if f.offset is not None)
    layout_raw = _lookup(raw, "layout")
    if layout_raw is None:
        layout = LayoutMode.EXPLICIT if with_offsets else LayoutMode.SEQUENTIAL
    else:
        mode = str(layout_raw).lower()
        if mode == "auto":
            mode = LayoutMode.SEQUENTIAL.value
        try:
            layout = LayoutMode(mode)
        except ValueError:
            raise MappingParseError(f"unknown layout {layout_raw!r} for struct '{name}'", struct=name) from None

    if layout is LayoutMode.EXPLICIT and with_offsets != len(fields):
        raise MappingParseError(
            f"struct '{name}' uses explicit layout: every field needs an offset", struct=name)
    if layout is LayoutMode.SEQUENTIAL and with_offsets:
        raise MappingParseError(
            f"struct '{name}' uses sequential layout but declares field offsets", struct=name)
    return StructDefinition(name, tuple(fields), layout)


def _order_structs(structs: dict[str, StructDefinition]) -> dict[str, StructDefinition]:
    """Return structs with dependencies first, rejecting cycles."""
    ordered: dict[str, StructDefinition] = {}
    visiting: list[str] = []

    def visit(name: str) -> None:
        if name in ordered:
            return
        if name in visiting:
            cycle = visiting[visiting.index(name):] + [name]
            raise TypeResolutionError(f"struct cycle: {' -> '.join(cycle)}", struct=name)
        visiting.append(name)
        for dep in structs[name].struct_dependencies():
            visit(dep)
        visiting.pop()
        ordered[name] = structs[name]

    for name in structs:
        visit(name)
    return ordered


def _parse_parameters(raw: Any, owner: str, struct_names: set[str], callback_names: set[str],
                      **context: Any) -> tuple[ParameterDefinition, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise MappingParseError(f"'parameters' of {owner} must be a list", **context)
    params: list[ParameterDefinition] = []
    seen: set[str] = set()
    for raw_param in raw:
        raw_param = _require_mapping(raw_param, f"parameter of {owner}")
        pname = _check_identifier(_lookup(raw_param, "name"), "parameter name", **context)
        if pname in seen:
            raise MappingParseError(f"duplicate parameter '{pname}' in {owner}", parameter=pname, **context)
        seen.add(pname)
        where = f"{owner} parameter '{pname}'"
        ptype = parse_type(_lookup(raw_param, "type"), struct_names, callback_names, where,
                           parameter=pname, **context)
        if ptype.is_void:
            raise TypeResolutionError(f"'void' is not a valid type for {where}", parameter=pname, **context)
        by_ref = _parse_bool(_lookup(raw_param, "ref"), f"'ref' of {where}", parameter=pname, **context)
        out = _parse_bool(_lookup(raw_param, "out"), f"'out' of {where}", parameter=pname, **context)
        if ptype.is_callback and (by_ref or out):
            raise MappingParseError(f"callback {where} cannot be passed by reference",
                                    parameter=pname, **context)
        params.append(ParameterDefinition(pname, ptype, by_ref, out))
    return tuple(params)


_CALLBACK_KINDS = frozenset(
    kind for kind in TypeKind if kind not in (TypeKind.STRUCT, TypeKind.ARRAY, TypeKind.CALLBACK)
)


def _parse_callback(name: str, raw: Any, struct_names: set[str], callback_names: set[str]) -> CallbackDefinition:
    raw = _require_mapping(raw, f"callback '{name}'")
    owner = f"callback '{name}'"
    returns = parse_type(_lookup(raw, "returns", "void"), struct_names, callback_names,
                         f"{owner} return type", callback=name)
    if returns.kind not in _CALLBACK_KINDS or returns.kind is TypeKind.STRING:
        raise TypeResolutionError(f"return type '{returns}' is not supported for {owner}", callback=name)
    params = _parse_parameters(_lookup(raw, "parameters"), owner, struct_names, callback_names, callback=name)
    for param in params:
        if param.type.kind not in _CALLBACK_KINDS or param.writes_back:
            raise TypeResolutionError(
                f"parameter '{param.name}' of {owner} has unsupported type '{param.type}'",
                callback=name, parameter=param.name)
    return CallbackDefinition(name, returns, params)


def _parse_export(name: str, raw: Any, struct_names: set[str], callback_names: set[str]) -> FunctionDefinition:
    raw = _require_mapping(raw, f"export '{name}'")
    owner = f"export '{name}'"
    entry_point = _check_identifier(_lookup(raw, "entryPoint") or name, "entry point", export=name)
    returns = parse_type(_lookup(raw, "returns", "void"), struct_names, callback_names,
                         f"{owner} return type", export=name)
    if returns.is_callback:
        raise TypeResolutionError(f"{owner} cannot return a callback", export=name)
    params = _parse_parameters(_lookup(raw, "parameters"), owner, struct_names, callback_names, export=name)

    convention_raw = _lookup(raw, "callingConvention")
    try:
        convention = CallingConvention(str(convention_raw).lower()) if convention_raw else CallingConvention.CDECL
    except ValueError:
        raise MappingParseError(f"unknown calling convention {convention_raw!r} for {owner}",
                                export=name) from None

    ownership_raw = _lookup(raw, "ownership")
    ownership = None
    if ownership_raw is not None:
        try:
            ownership = Ownership(str(ownership_raw).lower())
        except ValueError:
            raise MappingParseError(f"unknown ownership {ownership_raw!r} for {owner}", export=name) from None
    if returns.kind in (TypeKind.STRING, TypeKind.ARRAY) and ownership is None:
        raise MappingParseError(
            f"{owner} returns '{returns}' and must declare 'ownership' (borrowed or caller)", export=name)
    free_with = _lookup(raw, "freeWith")
    if ownership is Ownership.CALLER and not free_with:
        raise MappingParseError(f"{owner} declares caller ownership but no 'freeWith' export", export=name)
    if free_with is not None:
        _check_identifier(free_with, f"'freeWith' of {owner}", export=name)

    return_length = _lookup(raw, "returnLength")
    if return_length is not None:
        _check_identifier(return_length, f"'returnLength' of {owner}", export=name)
    if returns.is_array:
        length_param = next((p for p in params if p.name == return_length), None)
        if length_param is None or not length_param.type.is_integer:
            raise MappingParseError(
                f"{owner} returns an array and 'returnLength' must name an integer parameter", export=name)

    return FunctionDefinition(
        name=name,
        entry_point=entry_point,
        returns=returns,
        parameters=params,
        calling_convention=convention,
        ownership=ownership,
        free_with=free_with,
        return_length=return_length,
    )


def _check_exports(exports: dict[str, FunctionDefinition]) -> None:
    by_entry: dict[str, FunctionDefinition] = {}
    for export in exports.values():
        other = by_entry.setdefault(export.entry_point, export)
        if other is not export and other.signature() != export.signature():
            raise MappingParseError(
                f"exports '{other.name}' and '{export.name}' bind entry point "
                f"'{export.entry_point}' with different signatures", export=export.name)
        if export.free_with is None:
            continue
        releaser = exports.get(export.free_with)
        if releaser is None:
            raise MappingParseError(
                f"export '{export.name}' names unknown 'freeWith' export '{export.free_with}'",
                export=export.name)
        if (len(releaser.parameters) != 1 or releaser.parameters[0].writes_back
                or releaser.parameters[0].type.kind not in (TypeKind.POINTER, TypeKind.STRING)):
            raise MappingParseError(
                f"'freeWith' export '{releaser.name}' must take exactly one pointer parameter",
                export=export.name)


def parse_schema(data: Any, source: str | Path | None = None) -> MappingSchema:
    """Validate decoded mapping data and build a :class:`MappingSchema`.

    Raises:
        MappingParseError: On structural problems.
        TypeResolutionError: On unresolved, misplaced or cyclic types.
    """
    if not isinstance(data, Mapping):
        raise MappingParseError("mapping file must contain a JSON object")

    library = _parse_library_table(_lookup(data, "library"))
    raw_structs = _require_mapping(_lookup(data, "structs"), "'structs'")
    raw_callbacks = _require_mapping(_lookup(data, "callbacks"), "'callbacks'")
    raw_exports = _require_mapping(_lookup(data, "exports"), "'exports'")

    struct_names = {_check_identifier(n, "struct name", struct=n) for n in raw_structs}
    callback_names = {_check_identifier(n, "callback name", callback=n) for n in raw_callbacks}
    clash = struct_names & callback_names
    if clash:
        raise MappingParseError(f"names declared as both struct and callback: {', '.join(sorted(clash))}")

    structs = {n: _parse_struct(n, raw, struct_names, callback_names) for n, raw in raw_structs.items()}
    callbacks = {n: _parse_callback(n, raw, struct_names, callback_names) for n, raw in raw_callbacks.items()}
    exports = {}
    for name, raw in raw_exports.items():
        _check_identifier(name, "export name", export=name)
        if name in struct_names:
            raise MappingParseError(
                f"export '{name}' and struct '{name}' share a name on the library surface",
                export=name, struct=name)
        exports[name] = _parse_export(name, raw, struct_names, callback_names)
    _check_exports(exports)

    version = _lookup(data, "version", "")
    return MappingSchema(
        library=library,
        version=str(version) if version is not None else "",
        exports=exports,
        structs=_order_structs(structs),
        callbacks=callbacks,
        source=Path(source) if source is not None else None,
    )


def load_schema(path: str | Path) -> MappingSchema:
    """Read and validate a JSON mapping file."""
    path = Path(path)
    logger.debug("Parsing mapping file %s", path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise MappingParseError(f"invalid JSON in mapping file {path}: {exc}", source=str(path)) from exc
    except OSError as exc:
        raise MappingParseError(f"cannot read mapping file {path}: {exc}", source=str(path)) from exc
    return parse_schema(data, source=path)
