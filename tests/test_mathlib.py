"""End-to-end calls into the compiled mathlib fixture."""
from __future__ import annotations

import pytest

from nativeinterop import MarshalingError, NativeInvocationError, Ref, UseAfterUnload


class TestArithmetic:
    def test_integers(self, mathlib):
        assert mathlib.add(2, 3) == 5
        assert mathlib.subtract(10, 4) == 6
        assert mathlib.add(-(2 ** 31), 0) == -(2 ** 31)

    def test_doubles(self, mathlib):
        assert mathlib.multiplyDouble(3.5, 2.0) == 7.0
        assert mathlib.divideDouble(10.0, 2.5) == 4.0
        assert mathlib.multiplyDouble(2.5, 4.0) == 10.0
        assert mathlib.divideDouble(1.0, 0.0) == 0.0

    def test_int64_boundaries(self, mathlib):
        assert mathlib.addLong(2 ** 63 - 2, 1) == 2 ** 63 - 1
        assert mathlib.addLong(-(2 ** 63) + 1, -1) == -(2 ** 63)

    def test_out_parameter(self, mathlib):
        remainder = Ref()
        assert mathlib.divideWithRemainder(17, 5, remainder) == 3
        assert remainder.value == 2

    def test_range_checked_before_call(self, mathlib):
        with pytest.raises(MarshalingError, match="out of range"):
            mathlib.add(2 ** 31, 1)
        assert mathlib.add(1, 1) == 2

    def test_unconvertible_argument_then_success(self, mathlib):
        with pytest.raises(MarshalingError, match="parameter 'a'"):
            mathlib.add("2", 3)
        assert mathlib.add(2, 3) == 5


class TestStrings:
    def test_borrowed_return(self, mathlib):
        assert mathlib.getVersion() == "MathLib v1.0.0"

    def test_string_argument(self, mathlib):
        assert mathlib.stringLength("hello") == 5
        assert mathlib.stringLength("") == 0
        assert mathlib.stringLength(None) == -1
        assert mathlib.stringLength("hé") == 3

    def test_by_ref_string(self, mathlib):
        text = Ref("native")
        mathlib.reverseString(text)
        assert text.value == "evitan"

    def test_caller_owned_return(self, mathlib):
        assert mathlib.repeatString("ab", 3) == "ababab"
        assert mathlib.repeatString("ab", -1) is None


class TestStructs:
    def test_distance(self, mathlib):
        p1 = mathlib.Point(x=0.0, y=0.0)
        p2 = mathlib.Point(x=3.0, y=4.0)
        assert mathlib.distance(p1, p2) == 5.0

    def test_distance_with_mappings(self, mathlib):
        assert mathlib.distance({"x": 1.0, "y": 1.0}, {"x": 4.0, "y": 5.0}) == 5.0

    def test_translate_point_in_place(self, mathlib):
        point = mathlib.Point(x=1.0, y=2.0)
        mathlib.translatePoint(point, 0.5, -2.0)
        assert point.to_dict() == {"x": 1.5, "y": 0.0}

    def test_by_value(self, mathlib):
        assert mathlib.pointNorm(mathlib.Point(x=3.0, y=4.0)) == 5.0
        assert mathlib.pointNorm({"x": 6.0, "y": 8.0}) == 10.0

    def test_struct_return(self, mathlib):
        point = mathlib.makePoint(1.5, -2.5)
        assert point == {"x": 1.5, "y": -2.5}

    def test_nested(self, mathlib):
        rect = mathlib.Rect(origin={"x": 1.0, "y": 1.0}, width=2.0, height=3.5)
        assert mathlib.rectArea(rect) == 7.0

    def test_incomplete_mapping_rejected(self, mathlib):
        with pytest.raises(MarshalingError, match="missing field 'y'"):
            mathlib.pointNorm({"x": 1.0})


class TestCallbacks:
    def test_apply_operation(self, mathlib):
        assert mathlib.applyOperation(6, 7, lambda a, b: a * b) == 42
        assert mathlib.applyOperation(6, 7, None) == 0

    def test_callback_exception(self, mathlib):
        def failing(a, b):
            raise RuntimeError("callback failed")

        with pytest.raises(NativeInvocationError, match="RuntimeError") as excinfo:
            mathlib.applyOperation(1, 2, failing)
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert mathlib.applyOperation(1, 2, lambda a, b: a + b) == 3


class TestArrays:
    def test_sum_array(self, mathlib):
        values = [1, 1, 2, 3, 5, 8, 13, 21]
        assert mathlib.sumArray(values, 8) == 54

    def test_double_array_in_place(self, mathlib):
        values = [1, 2, 3]
        mathlib.doubleArray(values, 3)
        assert values == [2, 4, 6]

    def test_array_return(self, mathlib):
        assert mathlib.makeRange(4) == [0, 1, 2, 3]
        assert mathlib.makeRange(0) is None


class TestLifecycle:
    def test_unload(self, mathlib_registry):
        add = mathlib_registry.load("mathlib").add
        mathlib_registry.unload("mathlib")
        with pytest.raises(UseAfterUnload):
            add(1, 2)
        assert mathlib_registry.load("mathlib").add(1, 2) == 3
        assert mathlib_registry.open_count("mathlib") == 2
