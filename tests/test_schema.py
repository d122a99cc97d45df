from __future__ import annotations

import json

import pytest

from nativeinterop import (
    CallingConvention,
    LayoutMode,
    MappingParseError,
    NativeType,
    Ownership,
    SchemaError,
    TypeKind,
    TypeResolutionError,
    load_schema,
    parse_schema,
    parse_type,
)


def _mapping(**overrides) -> dict:
    data = {
        "library": {"linux": {"x64": "libdemo.so"}},
        "version": "1.0",
        "exports": {},
        "structs": {},
        "callbacks": {},
    }
    data.update(overrides)
    return data


class TestParseType:
    @pytest.mark.parametrize(
        "alias, kind",
        [
            ("int", TypeKind.INT32),
            ("uint", TypeKind.UINT32),
            ("long", TypeKind.INT64),
            ("ulong", TypeKind.UINT64),
            ("short", TypeKind.INT16),
            ("byte", TypeKind.UINT8),
            ("sbyte", TypeKind.INT8),
            ("float", TypeKind.FLOAT32),
            ("double", TypeKind.FLOAT64),
            ("IntPtr", TypeKind.POINTER),
            ("int32", TypeKind.INT32),
            ("float64", TypeKind.FLOAT64),
        ],
    )
    def test_aliases(self, alias, kind):
        assert parse_type(alias, ()).kind is kind

    def test_array_of_struct(self):
        ntype = parse_type("Point[]", {"Point"})
        assert ntype.is_array
        assert ntype.element == NativeType(TypeKind.STRUCT, name="Point")
        assert str(ntype) == "Point[]"

    def test_nested_array_rejected(self):
        with pytest.raises(TypeResolutionError, match="nested array"):
            parse_type("int[][]", ())

    def test_unresolved_name(self):
        with pytest.raises(TypeResolutionError, match="unresolved type 'Vector3'"):
            parse_type("Vector3", {"Point"}, where="export 'f'")


class TestParseSchema:
    def test_minimal(self):
        schema = parse_schema(_mapping(exports={
            "add": {"returns": "int", "parameters": [{"name": "a", "type": "int"}, {"name": "b", "type": "int"}]},
        }))
        add = schema.exports["add"]
        assert add.entry_point == "add"
        assert add.calling_convention is CallingConvention.CDECL
        assert [p.name for p in add.parameters] == ["a", "b"]
        assert schema.version == "1.0"
        assert schema.platforms() == [("linux", "x64")]

    def test_keys_are_case_insensitive(self):
        schema = parse_schema({
            "Library": {"Linux": {"X64": "libdemo.so"}},
            "EXPORTS": {
                "add": {
                    "EntryPoint": "demo_add",
                    "Returns": "int",
                    "Parameters": [{"Name": "a", "Type": "int"}],
                },
            },
        })
        assert schema.library == {"linux": {"x64": "libdemo.so"}}
        assert schema.exports["add"].entry_point == "demo_add"
        assert schema.exports["add"].parameters[0].type.kind is TypeKind.INT32

    def test_json_errors_are_parse_errors(self, tmp_path):
        path = tmp_path / "broken.ekko.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(MappingParseError) as excinfo:
            load_schema(path)
        assert excinfo.value.context["source"] == str(path)

    def test_load_records_source(self, tmp_path):
        path = tmp_path / "demo.ekko.json"
        path.write_text(json.dumps(_mapping()), encoding="utf-8")
        schema = load_schema(path)
        assert schema.base_dir == tmp_path

    def test_empty_library_table(self):
        with pytest.raises(MappingParseError, match="at least one"):
            parse_schema(_mapping(library={}))

    def test_unknown_calling_convention(self):
        with pytest.raises(MappingParseError, match="calling convention"):
            parse_schema(_mapping(exports={"f": {"returns": "void", "callingConvention": "pascal"}}))

    def test_ref_parameter(self):
        schema = parse_schema(_mapping(exports={
            "f": {"returns": "void", "parameters": [{"name": "n", "type": "int", "ref": True}]},
        }))
        assert schema.exports["f"].parameters[0].writes_back

    def test_void_parameter_rejected(self):
        with pytest.raises(TypeResolutionError):
            parse_schema(_mapping(exports={"f": {"parameters": [{"name": "x", "type": "void"}]}}))

    def test_reserved_identifier(self):
        with pytest.raises(MappingParseError, match="reserved"):
            parse_schema(_mapping(exports={"f": {"parameters": [{"name": "int", "type": "int"}]}}))

    def test_errors_share_base(self):
        assert issubclass(MappingParseError, SchemaError)
        assert issubclass(TypeResolutionError, SchemaError)


class TestStructs:
    def test_forward_reference_ordered(self):
        schema = parse_schema(_mapping(structs={
            "Rect": {"fields": [{"name": "origin", "type": "Point"}, {"name": "w", "type": "double"}]},
            "Point": {"fields": [{"name": "x", "type": "double"}, {"name": "y", "type": "double"}]},
        }))
        assert list(schema.structs) == ["Point", "Rect"]

    def test_cycle_rejected(self):
        with pytest.raises(TypeResolutionError, match="struct cycle: A -> B -> A"):
            parse_schema(_mapping(structs={
                "A": {"fields": [{"name": "b", "type": "B"}]},
                "B": {"fields": [{"name": "a", "type": "A"}]},
            }))

    def test_self_reference_rejected(self):
        with pytest.raises(TypeResolutionError, match="Node -> Node"):
            parse_schema(_mapping(structs={"Node": {"fields": [{"name": "next", "type": "Node"}]}}))

    def test_offsets_infer_explicit_layout(self):
        schema = parse_schema(_mapping(structs={
            "U": {"fields": [{"name": "i", "type": "int", "offset": 0}, {"name": "f", "type": "float", "offset": 0}]},
        }))
        assert schema.structs["U"].layout is LayoutMode.EXPLICIT

    def test_mixed_offsets_rejected(self):
        with pytest.raises(MappingParseError, match="every field needs an offset"):
            parse_schema(_mapping(structs={
                "U": {"fields": [{"name": "i", "type": "int", "offset": 0}, {"name": "f", "type": "float"}]},
            }))

    def test_sequential_with_offsets_rejected(self):
        with pytest.raises(MappingParseError, match="sequential"):
            parse_schema(_mapping(structs={
                "U": {"layout": "sequential", "fields": [{"name": "i", "type": "int", "offset": 4}]},
            }))

    def test_empty_struct_rejected(self):
        with pytest.raises(MappingParseError, match="non-empty"):
            parse_schema(_mapping(structs={"Empty": {"fields": []}}))

    def test_duplicate_field(self):
        with pytest.raises(MappingParseError, match="duplicate field 'x'"):
            parse_schema(_mapping(structs={
                "P": {"fields": [{"name": "x", "type": "int"}, {"name": "x", "type": "int"}]},
            }))


class TestOwnership:
    def test_string_return_requires_ownership(self):
        with pytest.raises(MappingParseError, match="ownership"):
            parse_schema(_mapping(exports={"name": {"returns": "string"}}))

    def test_caller_ownership_requires_free_with(self):
        with pytest.raises(MappingParseError, match="freeWith"):
            parse_schema(_mapping(exports={"name": {"returns": "string", "ownership": "caller"}}))

    def test_free_with_must_exist(self):
        with pytest.raises(MappingParseError, match="unknown 'freeWith'"):
            parse_schema(_mapping(exports={
                "name": {"returns": "string", "ownership": "caller", "freeWith": "release"},
            }))

    def test_caller_ownership(self):
        schema = parse_schema(_mapping(exports={
            "name": {"returns": "string", "ownership": "caller", "freeWith": "release"},
            "release": {"returns": "void", "parameters": [{"name": "p", "type": "pointer"}]},
        }))
        assert schema.exports["name"].ownership is Ownership.CALLER
        assert schema.exports["name"].free_with == "release"

    def test_array_return_requires_length(self):
        with pytest.raises(MappingParseError, match="returnLength"):
            parse_schema(_mapping(exports={
                "values": {"returns": "int[]", "ownership": "borrowed",
                           "parameters": [{"name": "n", "type": "int"}]},
            }))

    def test_free_with_must_be_a_name(self):
        with pytest.raises(MappingParseError, match="not a valid identifier"):
            parse_schema(_mapping(exports={
                "name": {"returns": "string", "ownership": "caller", "freeWith": ["release"]},
                "release": {"returns": "void", "parameters": [{"name": "p", "type": "pointer"}]},
            }))

    def test_return_length_must_be_a_name(self):
        with pytest.raises(MappingParseError, match="not a valid identifier"):
            parse_schema(_mapping(exports={
                "values": {"returns": "int[]", "ownership": "borrowed", "returnLength": 5,
                           "parameters": [{"name": "n", "type": "int"}]},
            }))

    def test_conflicting_entry_points(self):
        with pytest.raises(MappingParseError, match="different signatures"):
            parse_schema(_mapping(exports={
                "a": {"entryPoint": "impl", "returns": "int"},
                "b": {"entryPoint": "impl", "returns": "double"},
            }))


class TestCallbacks:
    def test_callback_parameter(self):
        schema = parse_schema(_mapping(
            callbacks={"binary_op": {"returns": "int", "parameters": [{"name": "a", "type": "int"}]}},
            exports={"apply": {"returns": "int", "parameters": [{"name": "op", "type": "binary_op"}]}},
        ))
        assert schema.exports["apply"].parameters[0].type.is_callback

    def test_callback_by_ref_rejected(self):
        with pytest.raises(MappingParseError, match="by reference"):
            parse_schema(_mapping(
                callbacks={"cb": {"returns": "void"}},
                exports={"f": {"parameters": [{"name": "c", "type": "cb", "ref": True}]}},
            ))

    def test_name_clash(self):
        with pytest.raises(MappingParseError, match="both struct and callback"):
            parse_schema(_mapping(
                structs={"X": {"fields": [{"name": "v", "type": "int"}]}},
                callbacks={"X": {"returns": "void"}},
            ))

    def test_export_and_struct_share_a_name(self):
        with pytest.raises(MappingParseError, match="share a name") as excinfo:
            parse_schema(_mapping(
                structs={"Point": {"fields": [{"name": "x", "type": "double"}]}},
                exports={"Point": {"returns": "int"}},
            ))
        assert excinfo.value.context["export"] == "Point"
