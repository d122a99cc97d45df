"""Conversion between Python values and native representations.

Host-side values:
    ============  ===============================================
    native type   Python value
    ============  ===============================================
    bool          ``bool`` (``0``/``1`` accepted)
    intN/uintN    ``int`` (range checked)
    float32/64    ``float`` (``int`` accepted)
    string        ``str`` / ``bytes`` / ``None``
    pointer       ``int`` address / ``None`` / cffi pointer / StructValue
    struct        :class:`StructValue` or a mapping with every field
    array         ``list`` / ``tuple`` of element values
    callback      any callable / ``None``
    ============  ===============================================

By-reference and out parameters take a mutable holder (:class:`Ref`,
:class:`StructValue`, ``dict`` or ``list``) which is updated in place after
the call.
"""
from __future__ import annotations

import math
import numbers
import operator
from collections.abc import Callable, Mapping, MutableMapping, Sequence
from typing import Any

from cffi import FFI

from ._ffi import c_type_of, callback_typedef, parameter_c_type
from ._layout import FieldLayout, StructLayout
from ._schema import CallbackDefinition, FunctionDefinition, Ownership, ParameterDefinition
from ._types import POINTER_SIZE, NativeType, TypeKind
from .errors import MarshalingError

# Host-side buffers (struct values, packed primitives) live in their own FFI
# so they never depend on a particular library's declarations.
_ffi = FFI()

FLOAT32_MAX = 3.4028234663852886e38

_WORD_C_TYPE = "uint64_t" if POINTER_SIZE == 8 else "uint32_t"

_BOOL_STORAGE = {1: "uint8_t", 2: "uint16_t", 4: "uint32_t", 8: "uint64_t"}[
    _ffi.sizeof("_Bool")
]


class Ref:
    """Mutable holder for by-reference and out arguments.

    Example:
        >>> counter = Ref(0)
        >>> lib.increment(counter)
        >>> counter.value
        1

    Attributes:
        value: Value passed in, replaced by the native value after the call.
        capacity: Buffer size in bytes for by-reference strings; defaults to
            the configured ``out_string_capacity``.
    """

    __slots__ = ("value", "capacity")

    def __init__(self, value: Any = None, capacity: int | None = None):
        self.value = value
        self.capacity = capacity

    def __repr__(self) -> str:
        return f"Ref({self.value!r})"


def _type_name(value: Any) -> str:
    return type(value).__name__


def check_scalar(ntype: NativeType, value: Any) -> Any:
    """Validate ``value`` for a bool, integer or floating point type."""
    prim = ntype.primitive
    if ntype.kind is TypeKind.BOOL:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        raise MarshalingError(f"expected bool, got {_type_name(value)} {value!r}")
    if prim.is_integer:
        if isinstance(value, float) or isinstance(value, (str, bytes)):
            raise MarshalingError(f"expected integer for {ntype}, got {_type_name(value)} {value!r}")
        try:
            number = operator.index(value)
        except TypeError:
            raise MarshalingError(f"expected integer for {ntype}, got {_type_name(value)}") from None
        if not prim.min_value <= number <= prim.max_value:
            raise MarshalingError(
                f"value {number} out of range for {ntype} [{prim.min_value}, {prim.max_value}]")
        return number
    if prim.floating:
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise MarshalingError(f"expected number for {ntype}, got {_type_name(value)} {value!r}")
        try:
            number = float(value)
        except OverflowError:
            raise MarshalingError(f"value {value} out of range for {ntype}") from None
        if ntype.kind is TypeKind.FLOAT32 and math.isfinite(number) and abs(number) > FLOAT32_MAX:
            raise MarshalingError(f"value {number!r} out of range for float32")
        return number
    raise MarshalingError(f"type '{ntype}' is not a scalar type")


def pointer_address(value: Any) -> int:
    """Return the integer address designated by a host pointer value."""
    if value is None:
        return 0
    if isinstance(value, StructValue):
        return value.address
    if isinstance(value, FFI.CData):
        try:
            return int(_ffi.cast("uintptr_t", value))
        except TypeError:
            raise MarshalingError(f"cdata {_ffi.typeof(value).cname} is not a pointer") from None
    if isinstance(value, (bool, float, str, bytes)):
        raise MarshalingError(f"expected pointer (int address, None or cdata), got {_type_name(value)}")
    try:
        address = operator.index(value)
    except TypeError:
        raise MarshalingError(f"expected pointer (int address, None or cdata), got {_type_name(value)}") from None
    if not 0 <= address < (1 << (POINTER_SIZE * 8)):
        raise MarshalingError(f"address {address:#x} out of range for a {POINTER_SIZE * 8}-bit pointer")
    return address


def address_or_none(address: int) -> int | None:
    return address or None


def pack(ntype: NativeType, value: Any) -> bytes:
    """Encode a bool, number or pointer into its native byte representation."""
    if ntype.kind is TypeKind.POINTER:
        cell = _ffi.new(f"{_WORD_C_TYPE}[1]", [pointer_address(value)])
    else:
        cell = _ffi.new(f"{ntype.primitive.c_type}[1]", [check_scalar(ntype, value)])
    return _ffi.buffer(cell)[:]


def unpack(ntype: NativeType, data: bytes) -> Any:
    """Decode a bool, number or pointer from its native byte representation."""
    if ntype.kind is TypeKind.POINTER:
        c_type = _WORD_C_TYPE
    elif ntype.kind is TypeKind.BOOL:
        # Overlapping fields can leave any byte value behind a bool; nonzero is true.
        c_type = _BOOL_STORAGE
    else:
        c_type = ntype.primitive.c_type
    cell = _ffi.new(f"{c_type} *")
    size = _ffi.sizeof(c_type)
    if len(data) != size:
        raise MarshalingError(f"expected {size} bytes for {ntype}, got {len(data)}")
    _ffi.memmove(cell, data, size)
    value = cell[0]
    if ntype.kind is TypeKind.POINTER:
        return address_or_none(value)
    if ntype.kind is TypeKind.BOOL:
        return value != 0
    return value


def encode_string(value: Any, encoding: str) -> bytes:
    if isinstance(value, str):
        data = value.encode(encoding)
    elif isinstance(value, (bytes, bytearray)):
        data = bytes(value)
    else:
        raise MarshalingError(f"expected str or bytes, got {_type_name(value)}")
    if b"\0" in data:
        raise MarshalingError("string contains an embedded NUL character")
    return data


def decode_string(ffi: FFI, pointer: Any, encoding: str) -> str | None:
    if pointer == ffi.NULL:
        return None
    try:
        return ffi.string(pointer).decode(encoding)
    except UnicodeDecodeError as exc:
        raise MarshalingError(f"native string is not valid {encoding}: {exc}") from exc


class StructType:
    """Constructor for values of one declared struct.

    Calling the type builds a zero-filled :class:`StructValue` and assigns
    the given fields::

        Point = lib.Point
        p = Point({"x": 3.0, "y": 4.0})
        q = Point(x=3.0, y=4.0)
    """

    def __init__(self, layout: StructLayout, types: Mapping[str, StructType], encoding: str = "utf-8"):
        self.layout = layout
        self._types = types
        self.encoding = encoding

    @property
    def name(self) -> str:
        return self.layout.name

    @property
    def size(self) -> int:
        return self.layout.size

    def __call__(self, values: Mapping[str, Any] | None = None, /, **fields: Any) -> StructValue:
        merged = dict(values or {})
        merged.update(fields)
        value = StructValue(self)
        value.update(merged)
        return value

    def zeroed(self) -> StructValue:
        return StructValue(self)

    def from_bytes(self, raw: bytes) -> StructValue:
        if len(raw) != self.size:
            raise MarshalingError(f"struct '{self.name}' needs {self.size} bytes, got {len(raw)}",
                                  struct=self.name)
        return StructValue(self, raw)

    def nested(self, name: str) -> StructType:
        return self._types[name]

    def coerce(self, value: Any) -> StructValue:
        """Convert a host value into a value of this struct.

        Mappings must provide every declared field and nothing else.
        """
        if isinstance(value, StructValue):
            if value.struct_type.name != self.name:
                raise MarshalingError(
                    f"expected struct '{self.name}', got struct '{value.struct_type.name}'", struct=self.name)
            return value
        if not isinstance(value, Mapping):
            raise MarshalingError(f"expected struct '{self.name}' or mapping, got {_type_name(value)}",
                                  struct=self.name)
        missing = [n for n in self.layout.field_names if n not in value]
        if missing:
            raise MarshalingError(f"value for struct '{self.name}' is missing field '{missing[0]}'",
                                  struct=self.name, field=missing[0])
        return self(value)

    def __repr__(self) -> str:
        return f"<struct {self.name} size={self.size}>"


class StructValue:
    """A struct instance: named, typed accessors over a raw native buffer.

    Fields are reachable by item (``p["x"]``) and attribute (``p.x``) access.
    Attribute access falls back to item access only for names that are not
    already attributes of this class.

    String fields point into host buffers kept in ``_keepalive``. A value
    whose bytes were taken from another value (a copy, or a nested struct
    read from its parent) holds on to that value's buffers as well, through
    ``_keepalive`` and ``_owner``.
    """

    __slots__ = ("_type", "_buffer", "_keepalive", "_owner")

    def __init__(self, struct_type: StructType, raw: bytes | None = None, owner: Any = None):
        object.__setattr__(self, "_type", struct_type)
        object.__setattr__(self, "_buffer", _ffi.new("unsigned char[]", struct_type.size))
        object.__setattr__(self, "_keepalive", {})
        object.__setattr__(self, "_owner", owner)
        if raw is not None:
            _ffi.memmove(self._buffer, raw, struct_type.size)

    @property
    def struct_type(self) -> StructType:
        return self._type

    @property
    def raw(self) -> bytes:
        return _ffi.buffer(self._buffer)[:]

    @property
    def address(self) -> int:
        return int(_ffi.cast("uintptr_t", self._buffer))

    def load(self, raw: bytes) -> None:
        """Replace the whole contents with ``raw`` (native readback)."""
        if len(raw) != self._type.size:
            raise MarshalingError(f"struct '{self._type.name}' needs {self._type.size} bytes, got {len(raw)}")
        _ffi.memmove(self._buffer, raw, len(raw))

    def _field(self, name: str) -> FieldLayout:
        try:
            return self._type.layout.field(name)
        except KeyError:
            raise KeyError(name) from None

    def __getitem__(self, name: str) -> Any:
        fl = self._field(name)
        chunk = _ffi.buffer(self._buffer + fl.offset, fl.size)[:]
        kind = fl.type.kind
        if kind is TypeKind.STRUCT:
            return StructValue(self._type.nested(fl.type.name), chunk, owner=self)
        if kind is TypeKind.STRING:
            address = unpack(NativeType(TypeKind.POINTER), chunk)
            if address is None:
                return None
            return decode_string(_ffi, _ffi.cast("char *", address), self._type.encoding)
        return unpack(fl.type, chunk)

    def __setitem__(self, name: str, value: Any) -> None:
        try:
            fl = self._field(name)
        except KeyError:
            raise MarshalingError(f"struct '{self._type.name}' has no field '{name}'",
                                  struct=self._type.name, field=name) from None
        try:
            self._write(fl, value)
        except MarshalingError as exc:
            raise MarshalingError(f"field '{name}' of struct '{self._type.name}': {exc.message}",
                                  **{**exc.context, "struct": self._type.name, "field": name}) from None

    def _write(self, fl: FieldLayout, value: Any) -> None:
        kind = fl.type.kind
        if kind is TypeKind.STRUCT:
            nested = self._type.nested(fl.type.name).coerce(value)
            data = nested.raw
            self._keepalive[fl.name] = nested
        elif kind is TypeKind.STRING:
            if value is None:
                data = pack(NativeType(TypeKind.POINTER), None)
                self._keepalive.pop(fl.name, None)
            else:
                text = _ffi.new("char[]", encode_string(value, self._type.encoding))
                self._keepalive[fl.name] = text
                data = pack(NativeType(TypeKind.POINTER), text)
        else:
            data = pack(fl.type, value)
        _ffi.memmove(self._buffer + fl.offset, data, fl.size)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self[name]
        except KeyError:
            raise AttributeError(f"struct '{self._type.name}' has no field '{name}'") from None

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self._type.layout.field_names:
            self[name] = value
        else:
            raise AttributeError(f"struct '{self._type.name}' has no field '{name}'")

    def update(self, values: Mapping[str, Any]) -> None:
        for name, value in values.items():
            self[name] = value

    def keys(self) -> tuple[str, ...]:
        return self._type.layout.field_names

    def items(self) -> list[tuple[str, Any]]:
        return [(name, self[name]) for name in self.keys()]

    def to_dict(self) -> dict[str, Any]:
        return {name: value.to_dict() if isinstance(value, StructValue) else value
                for name, value in self.items()}

    def copy(self) -> StructValue:
        clone = StructValue(self._type, self.raw, owner=self._owner)
        clone._keepalive.update(self._keepalive)
        return clone

    def __iter__(self):
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self.keys())

    def __contains__(self, name: object) -> bool:
        return name in self.keys()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, StructValue):
            return self._type.name == other._type.name and self.to_dict() == other.to_dict()
        if isinstance(other, Mapping):
            return self.to_dict() == dict(other)
        return NotImplemented

    __hash__ = None

    def __repr__(self) -> str:
        fields = ", ".join(f"{name}={value!r}" for name, value in self.items())
        return f"{self._type.name}({fields})"


class CallScope:
    """Native memory owned by one call, released on every exit path."""

    def __init__(self, ffi: FFI):
        self.ffi = ffi
        self._owned: list[Any] = []
        self._keepalive: list[Any] = []
        self.callback_errors: list[BaseException] = []

    def new(self, c_type: str, init: Any = None) -> Any:
        cdata = self.ffi.new(c_type, init)
        self._owned.append(cdata)
        return cdata

    def keep(self, obj: Any) -> Any:
        self._keepalive.append(obj)
        return obj

    def __enter__(self) -> CallScope:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        owned, self._owned = self._owned, []
        for cdata in reversed(owned):
            self.ffi.release(cdata)
        self._keepalive.clear()


# An argument plan converts one host value into a native argument, returning
# the argument and an optional readback to run after the call.
ArgumentPlan = Callable[[Any, CallScope], tuple]


class Marshaler:
    """Builds per-parameter and per-return conversion plans for one library."""

    def __init__(self, ffi: FFI, struct_types: Mapping[str, StructType],
                 callbacks: Mapping[str, CallbackDefinition], encoding: str = "utf-8",
                 out_string_capacity: int = 256):
        self.ffi = ffi
        self.struct_types = struct_types
        self.callbacks = callbacks
        self.encoding = encoding
        self.out_string_capacity = out_string_capacity

    # -- host -> native -------------------------------------------------

    def to_pointer(self, value: Any) -> Any:
        if value is None:
            return self.ffi.NULL
        if isinstance(value, FFI.CData):
            return self.ffi.cast("void *", value)
        return self.ffi.cast("void *", pointer_address(value))

    def plan_argument(self, param: ParameterDefinition) -> ArgumentPlan:
        ntype = param.type
        if ntype.is_array:
            return self._array_plan(param)
        if ntype.is_callback:
            return self._callback_plan(param)
        if ntype.is_struct:
            return self._struct_ref_plan(param) if param.writes_back else self._struct_value_plan(param)
        if ntype.kind is TypeKind.STRING:
            return self._string_ref_plan(param) if param.writes_back else self._string_value_plan
        if param.writes_back:
            return self._scalar_ref_plan(param)
        if ntype.kind is TypeKind.POINTER:
            return lambda value, scope: (self.to_pointer(value), None)
        return lambda value, scope: (check_scalar(ntype, value), None)

    @staticmethod
    def _holder(param: ParameterDefinition, value: Any, accepted: tuple[type, ...], what: str) -> Any:
        if not isinstance(value, accepted):
            mode = "out" if param.out else "by-reference"
            raise MarshalingError(f"{mode} parameter needs a {what} holder, got {_type_name(value)}")
        return value

    def _scalar_ref_plan(self, param: ParameterDefinition) -> ArgumentPlan:
        ntype = param.type
        c_type = parameter_c_type(ntype, True)
        is_pointer = ntype.kind is TypeKind.POINTER

        def plan(value: Any, scope: CallScope):
            holder = self._holder(param, value, (Ref,), "Ref")
            initial = holder.value
            if param.out and initial is None:
                cell = scope.new(c_type)
            elif is_pointer:
                cell = scope.new(c_type, self.to_pointer(initial))
            else:
                cell = scope.new(c_type, check_scalar(ntype, initial))

            def readback() -> None:
                if ntype.kind is TypeKind.BOOL:
                    holder.value = unpack(ntype, self.ffi.buffer(cell)[:])
                    return
                result = cell[0]
                holder.value = address_or_none(int(self.ffi.cast("uintptr_t", result))) if is_pointer else result

            return cell, readback

        return plan

    def _string_value_plan(self, value: Any, scope: CallScope):
        if value is None:
            return self.ffi.NULL, None
        return scope.new("char[]", encode_string(value, self.encoding)), None

    def _string_ref_plan(self, param: ParameterDefinition) -> ArgumentPlan:
        def plan(value: Any, scope: CallScope):
            holder = self._holder(param, value, (Ref,), "Ref")
            data = b"" if holder.value is None else encode_string(holder.value, self.encoding)
            capacity = max(len(data) + 1, holder.capacity or self.out_string_capacity)
            buf = scope.new("char[]", capacity)
            self.ffi.memmove(buf, data, len(data))

            def readback() -> None:
                raw = self.ffi.string(buf, capacity)
                holder.value = raw if isinstance(holder.value, bytes) else raw.decode(self.encoding)

            return buf, readback

        return plan

    def _struct_value_plan(self, param: ParameterDefinition) -> ArgumentPlan:
        struct_type = self.struct_types[param.type.name]
        c_type = pointer_to_struct(param.type)

        def plan(value: Any, scope: CallScope):
            sv = scope.keep(struct_type.coerce(value))
            cell = scope.new(c_type)
            self.ffi.memmove(cell, sv.raw, struct_type.size)
            return cell[0], None

        return plan

    def _struct_ref_plan(self, param: ParameterDefinition) -> ArgumentPlan:
        struct_type = self.struct_types[param.type.name]
        c_type = pointer_to_struct(param.type)

        def plan(value: Any, scope: CallScope):
            holder = self._holder(param, value, (StructValue, MutableMapping), f"struct '{struct_type.name}'")
            cell = scope.new(c_type)
            if not (param.out and not isinstance(holder, StructValue)):
                self.ffi.memmove(cell, scope.keep(struct_type.coerce(holder)).raw, struct_type.size)

            def readback() -> None:
                raw = self.ffi.buffer(cell)[:]
                if isinstance(holder, StructValue):
                    holder.load(raw)
                else:
                    holder.update(struct_type.from_bytes(raw).to_dict())

            return cell, readback

        return plan

    def _array_plan(self, param: ParameterDefinition) -> ArgumentPlan:
        element = param.type.element
        c_element = c_type_of(element)
        struct_type = self.struct_types[element.name] if element.is_struct else None

        def convert(item: Any, scope: CallScope) -> Any:
            if element.kind is TypeKind.STRING:
                return self._string_value_plan(item, scope)[0]
            if element.kind is TypeKind.POINTER:
                return self.to_pointer(item)
            return check_scalar(element, item)

        def plan(value: Any, scope: CallScope):
            if param.writes_back:
                items = self._holder(param, value, (list,), "list")
            elif isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
                raise MarshalingError(f"expected a list of {element}, got {_type_name(value)}")
            else:
                items = value
            count = len(items)
            buf = scope.new(f"{c_element}[]", count)
            for index, item in enumerate(items):
                try:
                    if struct_type is not None:
                        if param.out and not isinstance(item, StructValue):
                            continue
                        self.ffi.memmove(buf + index, scope.keep(struct_type.coerce(item)).raw,
                                         struct_type.size)
                    elif not (param.out and item is None):
                        buf[index] = convert(item, scope)
                except MarshalingError as exc:
                    raise MarshalingError(f"element {index}: {exc.message}", **exc.context) from None

            def readback() -> None:
                for index in range(count):
                    items[index] = self._read_element(element, buf, index, items[index], struct_type)

            return buf, (readback if param.writes_back else None)

        return plan

    def _read_element(self, element: NativeType, buf: Any, index: int, previous: Any,
                      struct_type: StructType | None) -> Any:
        if struct_type is not None:
            raw = self.ffi.buffer(buf + index, struct_type.size)[:]
            if isinstance(previous, StructValue):
                previous.load(raw)
                return previous
            if isinstance(previous, MutableMapping):
                previous.update(struct_type.from_bytes(raw).to_dict())
                return previous
            return struct_type.from_bytes(raw)
        return self.from_native(element, buf[index])

    def _callback_plan(self, param: ParameterDefinition) -> ArgumentPlan:
        definition = self.callbacks[param.type.name]
        typedef = callback_typedef(definition.name)

        def plan(value: Any, scope: CallScope):
            if value is None:
                return self.ffi.NULL, None
            if not callable(value):
                raise MarshalingError(f"expected a callable for callback '{definition.name}', "
                                      f"got {_type_name(value)}")
            return scope.keep(self._make_callback(definition, typedef, value, scope)), None

        return plan

    def _make_callback(self, definition: CallbackDefinition, typedef: str, target: Callable[..., Any],
                       scope: CallScope) -> Any:
        returns = definition.returns

        def trampoline(*native_args: Any) -> Any:
            host_args = [self.from_native(p.type, arg) for p, arg in zip(definition.parameters, native_args)]
            result = target(*host_args)
            if returns.is_void:
                return None
            if returns.kind is TypeKind.POINTER:
                return self.to_pointer(result)
            return check_scalar(returns, result)

        def onerror(exc_type, exc_value, tb) -> None:
            scope.callback_errors.append(exc_value)

        return self.ffi.callback(typedef, trampoline, onerror=onerror)

    # -- native -> host -------------------------------------------------

    def from_native(self, ntype: NativeType, value: Any) -> Any:
        """Convert a scalar, string or pointer cdata into a host value."""
        kind = ntype.kind
        if kind is TypeKind.VOID:
            return None
        if kind is TypeKind.STRING:
            return decode_string(self.ffi, value, self.encoding)
        if kind is TypeKind.POINTER:
            return address_or_none(int(self.ffi.cast("uintptr_t", value)))
        if kind is TypeKind.STRUCT:
            struct_type = self.struct_types[ntype.name]
            cell = self.ffi.new(pointer_to_struct(ntype), value)
            try:
                return struct_type.from_bytes(self.ffi.buffer(cell)[:])
            finally:
                self.ffi.release(cell)
        return value

    def plan_result(self, func: FunctionDefinition, releaser: Callable[[Any], Any] | None = None
                    ) -> Callable[[Any, Mapping[str, Any]], Any]:
        """Return a converter for ``func``'s result.

        The converter receives the raw result and the bound host arguments
        (needed for the length of array returns).
        """
        returns = func.returns
        release = releaser if func.ownership is Ownership.CALLER else None

        if returns.is_array:
            element = returns.element
            struct_type = self.struct_types[element.name] if element.is_struct else None
            length_name = func.return_length

            def convert_array(result: Any, arguments: Mapping[str, Any]) -> Any:
                if result == self.ffi.NULL:
                    return None
                length = arguments[length_name]
                count = length.value if isinstance(length, Ref) else length
                try:
                    return [self._read_element(element, result, i, None, struct_type) for i in range(count or 0)]
                finally:
                    if release is not None:
                        release(result)

            return convert_array

        if returns.kind is TypeKind.STRING:
            def convert_string(result: Any, arguments: Mapping[str, Any]) -> Any:
                try:
                    return decode_string(self.ffi, result, self.encoding)
                finally:
                    if release is not None and result != self.ffi.NULL:
                        release(result)

            return convert_string

        return lambda result, arguments: self.from_native(returns, result)


def pointer_to_struct(ntype: NativeType) -> str:
    return f"struct {ntype.name} *"
