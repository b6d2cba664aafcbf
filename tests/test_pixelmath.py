"""
Tests for the pixelmath module.

Tests cover:
- Expression and program validation
- Parsing, operator precedence and built-in functions
- Program application, layer variables and error descriptors
"""

import math

import numpy as np
import pytest

from astrocomp import pixelmath
from astrocomp.config import PixelMathProgram
from astrocomp.errors import CompileError, ValidationError
from astrocomp.pixelmath import (
    Builtin,
    PixelMathInput,
    apply_pixel_math_program,
    build_allowed_variables,
    compile_expression,
    validate_pixel_math_expression,
    validate_pixel_math_program,
)


def _eval(expression, **variables):
    env = {k: np.atleast_1d(np.asarray(v, dtype=np.float64)) for k, v in variables.items()}
    size = max([v.size for v in env.values()], default=1)
    allowed = set(variables) | {"R", "G", "B"}
    return compile_expression(expression, allowed).evaluate(env, size)


def _input(r, g=None, b=None, width=None, height=1, monos=(), rgbs=()):
    r = np.asarray(r, dtype=np.float32)
    return PixelMathInput(
        width=width or r.size,
        height=height,
        r=r,
        g=np.asarray(g if g is not None else r, dtype=np.float32),
        b=np.asarray(b if b is not None else r, dtype=np.float32),
        layer_monos=list(monos),
        layer_rgbs=list(rgbs),
    )


class TestValidation:
    """Tests for expression validation."""

    def test_program_flags_only_bad_channel(self):
        """An unknown identifier in b is the only error."""
        errors = validate_pixel_math_program(
            PixelMathProgram(r="R+G", g="G", b="unknown+B"), layer_count=2
        )
        assert len(errors) == 1
        assert errors[0].channel == "b"
        assert errors[0].kind == "validation"
        assert errors[0].index == 0

    def test_empty_expression(self):
        """Blank expressions are rejected."""
        error = validate_pixel_math_expression("   ", {"R"})
        assert error is not None
        assert "empty" in error.message

    @pytest.mark.parametrize("expression", ["(R + G", "R + G)", ")R("])
    def test_unbalanced_parentheses(self, expression):
        """Parentheses must balance."""
        error = validate_pixel_math_expression(expression, {"R", "G"})
        assert error is not None
        assert "Parentheses" in error.message

    def test_disallowed_character(self):
        """Characters outside the operator set are rejected at their index."""
        error = validate_pixel_math_expression("R $ G", {"R", "G"})
        assert error.index == 2
        assert "unsupported" in error.message

    def test_unknown_identifier_index(self):
        """The error index points at the offending identifier."""
        error = validate_pixel_math_expression("R + foo", {"R"})
        assert error.index == 4
        assert "foo" in error.message

    def test_builtins_and_constants_allowed(self):
        """Built-in functions and constants need no declaration."""
        assert validate_pixel_math_expression("clamp(sqrt(R) * PI / E)", {"R"}) is None

    def test_layer_variables(self):
        """Per-layer variables exist for 1..layer_count only."""
        allowed = build_allowed_variables(2)
        assert {"R", "G", "B", "L1", "R1", "G1", "B1", "L2", "B2"} <= allowed
        assert validate_pixel_math_expression("L1 + R2", allowed) is None
        assert validate_pixel_math_expression("L3", allowed) is not None

    def test_exponent_literal_is_not_identifier(self):
        """Scientific notation is a number, not an identifier."""
        assert validate_pixel_math_expression("R * 1e-3", {"R"}) is None


class TestParser:
    """Tests for parsing and evaluation semantics."""

    @pytest.mark.parametrize(
        "expression,expected",
        [
            ("2 + 3 * 4", 14),
            ("(2 + 3) * 4", 20),
            ("-2^2", -4),
            ("2^3^2", 512),
            ("2^-1", 0.5),
            ("2 ** 3", 8),
            ("7 % 3", 1),
            ("-7 % 3", -1),
            ("1 < 2 && 3 > 4", 0),
            ("1 < 2 || 3 > 4", 1),
            ("!0", 1),
            ("!2", 0),
            ("1 == 1", 1),
            ("1 === 1", 1),
            ("1 != 2", 1),
            ("2 >= 2", 1),
            ("0 ? 1 : 0 ? 2 : 3", 3),
            ("1 + 1 > 1 ? 10 : 20", 10),
        ],
    )
    def test_operators(self, expression, expected):
        """Precedence and associativity follow the grammar."""
        assert _eval(expression)[0] == pytest.approx(expected)

    @pytest.mark.parametrize(
        "expression,expected",
        [
            ("sqrt(-4)", 0.0),
            ("sqrt(9)", 3.0),
            ("log(0)", 0.0),
            ("log(E - 1)", 1.0),
            ("ln(0)", math.log(1e-10)),
            ("log10(1000)", 3.0),
            ("exp(100)", math.exp(20)),
            ("round(2.5)", 3.0),
            ("round(1.234, 100)", 1.23),
            ("iif(1, 5)", 5.0),
            ("iif(0, 5)", 0.0),
            ("iif(-1, 2, 3)", 3.0),
            ("clamp(5)", 1.0),
            ("clamp(5, 0, 10)", 5.0),
            ("clamp(-1)", 0.0),
            ("avg(1, 3)", 2.0),
            ("min(3, 1, 2)", 1.0),
            ("max(4)", 4.0),
            ("abs(-2)", 2.0),
            ("floor(1.7) + ceil(1.2)", 3.0),
            ("atan2(1, 1)", math.pi / 4),
            ("pow(2, 10)", 1024.0),
            ("cos(PI)", -1.0),
        ],
    )
    def test_builtins(self, expression, expected):
        """Built-in functions guard their domains."""
        assert _eval(expression)[0] == pytest.approx(expected)

    def test_vectorized_ternary(self):
        """Conditionals select per pixel."""
        result = _eval("R > 0.5 ? R : 0", R=[0.2, 0.7, 0.9])
        assert np.allclose(result, [0, 0.7, 0.9])

    def test_nan_is_false(self):
        """NaN conditions take the false branch."""
        assert _eval("R ? 1 : 2", R=[np.nan])[0] == 2

    @pytest.mark.parametrize(
        "expression",
        ["R +", "R = G", "R(1)", "sqrt", "clamp()", "max()", "atan2(1)", "R ? G", "1 2", "R ,G"],
    )
    def test_compile_errors(self, expression):
        """Malformed but well-formed-looking text fails to compile."""
        with pytest.raises(CompileError):
            compile_expression(expression, {"R", "G"})

    def test_compile_validates_first(self):
        """Compilation rejects unknown identifiers as validation errors."""
        with pytest.raises(ValidationError):
            compile_expression("nope + 1", {"R"})

    def test_referenced_variables(self):
        """The compiled expression records the variables it reads."""
        compiled = compile_expression("R1 * 2 + L1 + PI", build_allowed_variables(1))
        assert compiled.variables == frozenset({"R1", "L1"})


class TestApplyProgram:
    """Tests for whole-program application."""

    def test_clamp_shift(self):
        """clamp(R + 0.1) on R = 0.1 yields 0.2."""
        result = apply_pixel_math_program(
            _input([0.1, 0.1]), PixelMathProgram(r="clamp(R+0.1)")
        )
        assert result.error is None
        assert result.r.dtype == np.float32
        assert np.allclose(result.r, 0.2)
        assert np.allclose(result.g, 0.1)

    def test_non_finite_written_as_zero(self):
        """Infinite or NaN results become 0."""
        result = apply_pixel_math_program(
            _input([1.0, 0.0]), PixelMathProgram(r="R / 0", g="0 / 0", b="B")
        )
        assert np.array_equal(result.r, [0, 0])
        assert np.array_equal(result.g, [0, 0])

    def test_layer_variables_and_fallback(self):
        """R{n} falls back to the mono buffer when a layer has no RGB."""
        mono1 = np.array([0.3, 0.4], dtype=np.float32)
        mono2 = np.array([0.5, 0.6], dtype=np.float32)
        rgb2 = tuple(np.array([v, v], dtype=np.float32) for v in (0.1, 0.2, 0.7))
        data = _input([0, 0], monos=[mono1, mono2], rgbs=[None, rgb2])
        result = apply_pixel_math_program(data, PixelMathProgram(r="R1", g="G2", b="L2 + B2"))
        assert result.error is None
        assert np.allclose(result.r, mono1)
        assert np.allclose(result.g, 0.2)
        assert np.allclose(result.b, mono2 + 0.7)

    def test_keeps_2d_shape(self):
        """Output buffers keep the layout of the base channels."""
        r = np.full((2, 3), 0.25, dtype=np.float32)
        result = apply_pixel_math_program(_input(r, width=3, height=2), PixelMathProgram(r="R * 2"))
        assert result.r.shape == (2, 3)
        assert np.allclose(result.r, 0.5)

    def test_validation_error_returns_inputs(self):
        """A validation failure leaves the base buffers untouched."""
        data = _input([0.1, 0.2])
        result = apply_pixel_math_program(data, PixelMathProgram(g="L5"))
        assert result.error.kind == "validation"
        assert result.error.channel == "g"
        assert result.r is data.r
        assert result.g is data.g

    def test_compile_error_reports_channel(self):
        """Compile failures name the channel that failed."""
        data = _input([0.1, 0.2])
        result = apply_pixel_math_program(data, PixelMathProgram(b="B +"))
        assert result.error.kind == "compile"
        assert result.error.channel == "b"
        assert result.error.expression == "B +"
        assert result.b is data.b

    def test_execution_error_location(self, monkeypatch):
        """Execution failures carry the first failing row and column."""
        def _strict(x):
            if np.any(x > 0.5):
                raise ValueError("value out of range")
            return x

        monkeypatch.setitem(pixelmath.BUILTIN_FUNCTIONS, "sqrt", Builtin("sqrt", 1, 1, _strict))
        data = _input([0.1, 0.2, 0.9, 0.3], width=2, height=2)
        result = apply_pixel_math_program(data, PixelMathProgram(g="sqrt(G)"))
        assert result.error.kind == "execution"
        assert result.error.channel == "g"
        assert (result.error.row, result.error.column) == (2, 1)
        assert result.r is data.r
