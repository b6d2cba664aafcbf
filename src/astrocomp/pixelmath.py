"""
Per-pixel expression language for composite post-processing.

An expression is parsed into a tree of small numpy closures; identifiers are
resolved against an allow-list (channel variables, per-layer variables,
built-in functions and constants) while parsing, so nothing outside that
list can ever be evaluated. Evaluation is vectorized over the whole image.

Grammar, lowest precedence first::

    expr     := or ('?' expr ':' expr)?
    or       := and ('||' and)*
    and      := eq ('&&' eq)*
    eq       := rel (('==' | '!=') rel)*
    rel      := add (('<' | '<=' | '>' | '>=') add)*
    add      := mul (('+' | '-') mul)*
    mul      := unary (('*' | '/' | '%') unary)*
    unary    := ('-' | '+' | '!') unary | power
    power    := primary ('^' unary)?
    primary  := number | constant | variable | name '(' args ')' | '(' expr ')'

``^`` (alias ``**``) is right-associative exponentiation. Comparisons and
logical operators produce 1 or 0; a value is true when it is non-zero and
not NaN. ``%`` keeps the sign of the dividend.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Callable

import numpy as np

from .config import Channel, PixelMathError, PixelMathProgram
from .errors import CompileError, ExecutionError, ValidationError
from .utils import as_buffer

logger = logging.getLogger(__name__)

Evaluator = Callable[[dict], np.ndarray]

DISALLOWED_CHARS = re.compile(r"[^0-9A-Za-z_\s+\-*/%^().,<>!=&|?:]")
TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||\*\*|[-+*/%^()<>!?:,])
    """,
    re.VERBOSE,
)
LAYER_VARIABLE_RE = re.compile(r"^([LRGB])([1-9][0-9]*)$")


# ---------------------------------------------------------------------------
# Built-ins
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Builtin:
    """A built-in function with its accepted argument count."""

    name: str
    min_args: int
    max_args: int | None
    impl: Callable[..., np.ndarray]


def _variadic(reducer):
    def _apply(*args):
        return reducer.reduce(np.broadcast_arrays(*args), axis=0)
    return _apply


def _clamp(v, lo=0.0, hi=1.0):
    return np.maximum(lo, np.minimum(hi, v))


def _round(v, precision=1.0):
    return np.floor(v * precision + 0.5) / precision


def _iif(cond, if_true, if_false=0.0):
    return np.where(cond > 0, if_true, if_false)


BUILTIN_FUNCTIONS: dict[str, Builtin] = {
    b.name: b
    for b in (
        Builtin("min", 1, None, _variadic(np.minimum)),
        Builtin("max", 1, None, _variadic(np.maximum)),
        Builtin("abs", 1, 1, np.abs),
        Builtin("sqrt", 1, 1, lambda x: np.sqrt(np.maximum(0.0, x))),
        Builtin("log", 1, 1, lambda x: np.log1p(np.maximum(0.0, x))),
        Builtin("ln", 1, 1, lambda x: np.log(np.maximum(1e-10, x))),
        Builtin("log10", 1, 1, lambda x: np.log10(np.maximum(1e-10, x))),
        Builtin("exp", 1, 1, lambda x: np.exp(np.minimum(20.0, x))),
        Builtin("sin", 1, 1, np.sin),
        Builtin("cos", 1, 1, np.cos),
        Builtin("tan", 1, 1, np.tan),
        Builtin("atan2", 2, 2, np.arctan2),
        Builtin("pow", 2, 2, np.power),
        Builtin("clamp", 1, 3, _clamp),
        Builtin("avg", 2, 2, lambda a, b: (a + b) * 0.5),
        Builtin("floor", 1, 1, np.floor),
        Builtin("ceil", 1, 1, np.ceil),
        Builtin("round", 1, 2, _round),
        Builtin("iif", 2, 3, _iif),
    )
}

CONSTANTS: dict[str, float] = {"PI": math.pi, "E": math.e}

CHANNEL_VARIABLES = ("R", "G", "B")


def build_allowed_variables(layer_count: int) -> set[str]:
    """Variables visible to a program over ``layer_count`` contributing layers."""
    allowed = set(CHANNEL_VARIABLES)
    for n in range(1, layer_count + 1):
        allowed.update((f"L{n}", f"R{n}", f"G{n}", f"B{n}"))
    return allowed


def _truthy(value: np.ndarray) -> np.ndarray:
    return (value != 0) & ~np.isnan(value)


# ---------------------------------------------------------------------------
# Lexing and validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Token:
    kind: str  # "number", "name", "op" or "end"
    text: str
    index: int


def tokenize(expression: str) -> list[Token]:
    """Split an expression into tokens. Raises ``CompileError`` on a stray character."""
    tokens: list[Token] = []
    pos = 0
    while pos < len(expression):
        match = TOKEN_RE.match(expression, pos)
        if match is None:
            raise CompileError(f"Unexpected character '{expression[pos]}'", index=pos)
        kind = match.lastgroup
        if kind != "ws":
            text = match.group()
            if kind == "op" and text == "**":
                text = "^"
            elif kind == "op" and text in ("===", "!=="):
                text = text[:2]
            tokens.append(Token(kind, text, match.start()))
        pos = match.end()
    tokens.append(Token("end", "", len(expression)))
    return tokens


def _identifiers(expression: str):
    pos = 0
    while pos < len(expression):
        match = TOKEN_RE.match(expression, pos)
        if match is None:
            pos += 1
            continue
        if match.lastgroup == "name":
            yield match.group(), match.start()
        pos = match.end()


def check_expression(expression: str, allowed_variables: set[str] | frozenset[str]) -> None:
    """
    Raise ``ValidationError`` if an expression is malformed.

    Checks, in order: empty expression, unbalanced parentheses, characters
    outside the allowed set, identifiers that are neither built-ins nor
    allowed variables (the error index points at the identifier).
    """
    if expression.strip() == "":
        raise ValidationError("Expression is empty", index=0)

    depth = 0
    for index, char in enumerate(expression):
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise ValidationError("Parentheses are not balanced", index=index)
    if depth != 0:
        raise ValidationError("Parentheses are not balanced", index=expression.rfind("("))

    bad = DISALLOWED_CHARS.search(expression)
    if bad is not None:
        raise ValidationError("Expression contains unsupported characters", index=bad.start())

    for name, index in _identifiers(expression):
        if name in BUILTIN_FUNCTIONS or name in CONSTANTS or name in allowed_variables:
            continue
        raise ValidationError(f"Unknown identifier: {name}", index=index)


def validate_pixel_math_expression(
    expression: str,
    allowed_variables: set[str] | frozenset[str],
    channel: Channel = "r",
) -> PixelMathError | None:
    """Return a validation descriptor for ``expression``, or None if it is well formed."""
    try:
        check_expression(expression, allowed_variables)
    except ValidationError as exc:
        return PixelMathError(
            kind="validation",
            channel=channel,
            message=exc.message,
            expression=expression,
            index=exc.index,
        )
    return None


def validate_pixel_math_program(program: PixelMathProgram, layer_count: int) -> list[PixelMathError]:
    """Validate the three channel expressions and collect every failure."""
    allowed = build_allowed_variables(layer_count)
    errors = []
    for channel, expression in program.channels():
        error = validate_pixel_math_expression(expression, allowed, channel)
        if error is not None:
            errors.append(error)
    return errors


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _const(value: float) -> Evaluator:
    return lambda env: np.float64(value)


def _binary(op: Callable, left: Evaluator, right: Evaluator) -> Evaluator:
    return lambda env: op(left(env), right(env))


def _as_flag(values) -> np.ndarray:
    return np.asarray(values, dtype=np.float64)


_BINARY_OPS: dict[str, Callable] = {
    "+": np.add,
    "-": np.subtract,
    "*": np.multiply,
    "/": np.true_divide,
    "%": np.fmod,
    "^": np.power,
    "<": lambda a, b: _as_flag(np.less(a, b)),
    "<=": lambda a, b: _as_flag(np.less_equal(a, b)),
    ">": lambda a, b: _as_flag(np.greater(a, b)),
    ">=": lambda a, b: _as_flag(np.greater_equal(a, b)),
    "==": lambda a, b: _as_flag(np.equal(a, b)),
    "!=": lambda a, b: _as_flag(np.not_equal(a, b)),
    "&&": lambda a, b: _as_flag(_truthy(a) & _truthy(b)),
    "||": lambda a, b: _as_flag(_truthy(a) | _truthy(b)),
}


class _Parser:
    def __init__(self, expression: str, allowed_variables: set[str] | frozenset[str]):
        self.tokens = tokenize(expression)
        self.pos = 0
        self.allowed = allowed_variables
        self.variables: set[str] = set()

    @property
    def current(self) -> Token:
        return self.tokens[self.pos]

    def _accept(self, *ops: str) -> Token | None:
        token = self.current
        if token.kind == "op" and token.text in ops:
            self.pos += 1
            return token
        return None

    def _expect(self, op: str) -> Token:
        token = self._accept(op)
        if token is None:
            raise CompileError(f"Expected '{op}' but found {self._describe(self.current)}", self.current.index)
        return token

    @staticmethod
    def _describe(token: Token) -> str:
        return "end of expression" if token.kind == "end" else f"'{token.text}'"

    def parse(self) -> Evaluator:
        node = self.expression()
        if self.current.kind != "end":
            raise CompileError(f"Unexpected {self._describe(self.current)}", self.current.index)
        return node

    def expression(self) -> Evaluator:
        condition = self.logical_or()
        if self._accept("?"):
            if_true = self.expression()
            self._expect(":")
            if_false = self.expression()
            return lambda env: np.where(_truthy(condition(env)), if_true(env), if_false(env))
        return condition

    def _left_assoc(self, operand: Callable[[], Evaluator], ops: tuple[str, ...]) -> Evaluator:
        node = operand()
        while True:
            token = self._accept(*ops)
            if token is None:
                return node
            node = _binary(_BINARY_OPS[token.text], node, operand())

    def logical_or(self) -> Evaluator:
        return self._left_assoc(self.logical_and, ("||",))

    def logical_and(self) -> Evaluator:
        return self._left_assoc(self.equality, ("&&",))

    def equality(self) -> Evaluator:
        return self._left_assoc(self.relational, ("==", "!="))

    def relational(self) -> Evaluator:
        return self._left_assoc(self.additive, ("<", "<=", ">", ">="))

    def additive(self) -> Evaluator:
        return self._left_assoc(self.multiplicative, ("+", "-"))

    def multiplicative(self) -> Evaluator:
        return self._left_assoc(self.unary, ("*", "/", "%"))

    def unary(self) -> Evaluator:
        token = self._accept("-", "+", "!")
        if token is None:
            return self.power()
        operand = self.unary()
        if token.text == "-":
            return lambda env: np.negative(operand(env))
        if token.text == "!":
            return lambda env: _as_flag(~_truthy(operand(env)))
        return operand

    def power(self) -> Evaluator:
        base = self.primary()
        if self._accept("^"):
            return _binary(np.power, base, self.unary())
        return base

    def primary(self) -> Evaluator:
        token = self.current
        if token.kind == "number":
            self.pos += 1
            return _const(float(token.text))
        if token.kind == "name":
            self.pos += 1
            if self._accept("("):
                return self.call(token)
            return self.identifier(token)
        if self._accept("("):
            node = self.expression()
            self._expect(")")
            return node
        raise CompileError(f"Unexpected {self._describe(token)}", token.index)

    def identifier(self, token: Token) -> Evaluator:
        name = token.text
        if name in CONSTANTS:
            return _const(CONSTANTS[name])
        if name in BUILTIN_FUNCTIONS:
            raise CompileError(f"Function '{name}' must be called", token.index)
        if name not in self.allowed:
            raise CompileError(f"Unknown identifier: {name}", token.index)
        self.variables.add(name)
        return lambda env: env[name]

    def call(self, token: Token) -> Evaluator:
        name = token.text
        builtin = BUILTIN_FUNCTIONS.get(name)
        if builtin is None:
            raise CompileError(f"'{name}' is not a function", token.index)
        args: list[Evaluator] = []
        if not self._accept(")"):
            while True:
                args.append(self.expression())
                if self._accept(")"):
                    break
                self._expect(",")
        if len(args) < builtin.min_args or (builtin.max_args is not None and len(args) > builtin.max_args):
            expected = (
                f"{builtin.min_args}" if builtin.min_args == builtin.max_args
                else f"{builtin.min_args}+" if builtin.max_args is None
                else f"{builtin.min_args}-{builtin.max_args}"
            )
            raise CompileError(
                f"{name}() takes {expected} arguments, got {len(args)}", token.index
            )
        return lambda env: builtin.impl(*(arg(env) for arg in args))


@dataclass
class CompiledExpression:
    """An expression tree ready for vectorized evaluation."""

    source: str
    variables: frozenset[str]
    root: Evaluator = field(repr=False)

    def evaluate(self, env: dict[str, np.ndarray], size: int) -> np.ndarray:
        """Evaluate over ``size`` pixels; scalar results are broadcast."""
        with np.errstate(all="ignore"):
            result = np.asarray(self.root(env), dtype=np.float64)
        return np.broadcast_to(result, (size,))


def compile_expression(
    expression: str,
    allowed_variables: set[str] | frozenset[str] | None = None,
) -> CompiledExpression:
    """
    Validate and parse an expression.

    Parameters
    ----------
    expression : str
        Source text.
    allowed_variables : set[str], optional
        Variable allow-list; defaults to ``R``, ``G``, ``B`` only.

    Raises
    ------
    ValidationError
        Malformed text (see ``check_expression``).
    CompileError
        Well-formed text that does not parse (stray operator, wrong number
        of function arguments, a variable used as a function, ...).
    """
    allowed = build_allowed_variables(0) if allowed_variables is None else allowed_variables
    check_expression(expression, allowed)
    parser = _Parser(expression, allowed)
    root = parser.parse()
    return CompiledExpression(source=expression, variables=frozenset(parser.variables), root=root)


# ---------------------------------------------------------------------------
# Program application
# ---------------------------------------------------------------------------


@dataclass
class PixelMathInput:
    """
    Buffers visible to a program.

    ``layer_monos[i]`` is layer ``i+1``'s normalized mono buffer and
    ``layer_rgbs[i]`` its tinted (r, g, b) buffers, or None for layers that
    only have a mono buffer (the mono values then stand in for R/G/B).
    """

    width: int
    height: int
    r: np.ndarray
    g: np.ndarray
    b: np.ndarray
    layer_monos: list[np.ndarray | None] = field(default_factory=list)
    layer_rgbs: list[tuple[np.ndarray, np.ndarray, np.ndarray] | None] = field(default_factory=list)

    @property
    def layer_count(self) -> int:
        return max(len(self.layer_monos), len(self.layer_rgbs))


@dataclass
class PixelMathResult:
    r: np.ndarray
    g: np.ndarray
    b: np.ndarray
    error: PixelMathError | None = None


def _flat64(buffer) -> np.ndarray:
    return as_buffer(buffer).ravel().astype(np.float64)


def _variable_buffer(data: PixelMathInput, name: str, size: int) -> np.ndarray:
    if name in CHANNEL_VARIABLES:
        return _flat64(getattr(data, name.lower()))
    match = LAYER_VARIABLE_RE.match(name)
    kind, index = match.group(1), int(match.group(2)) - 1
    mono = data.layer_monos[index] if index < len(data.layer_monos) else None
    rgb = data.layer_rgbs[index] if index < len(data.layer_rgbs) else None
    if kind != "L" and rgb is not None:
        return _flat64(rgb["RGB".index(kind)])
    if mono is not None:
        return _flat64(mono)
    return np.zeros(size, dtype=np.float64)


def _locate_failure(compiled: CompiledExpression, env: dict[str, np.ndarray], size: int) -> int:
    """Index of the first pixel whose scalar evaluation raises (0 if none does)."""
    for i in range(size):
        pixel_env = {name: values[i:i + 1] for name, values in env.items()}
        try:
            compiled.evaluate(pixel_env, 1)
        except (ArithmeticError, ValueError, TypeError, IndexError):
            return i
    return 0


def apply_pixel_math_program(data: PixelMathInput, program: PixelMathProgram) -> PixelMathResult:
    """
    Evaluate a three-channel program over every pixel.

    The program is validated, compiled, then evaluated. Non-finite results
    are written as 0. On any validation, compile or execution failure the
    untouched base buffers are returned together with an error descriptor
    naming the failing channel; execution failures also carry the 1-indexed
    row and column of the first failing pixel.
    """
    base = PixelMathResult(r=data.r, g=data.g, b=data.b)

    errors = validate_pixel_math_program(program, data.layer_count)
    if errors:
        logger.warning("Pixel math rejected (%s): %s", errors[0].channel, errors[0].message)
        base.error = errors[0]
        return base

    allowed = build_allowed_variables(data.layer_count)
    compiled: dict[str, CompiledExpression] = {}
    for channel, expression in program.channels():
        try:
            compiled[channel] = compile_expression(expression, allowed)
        except (ValidationError, CompileError) as exc:
            logger.warning("Pixel math compile error (%s): %s", channel, exc.message)
            base.error = PixelMathError(
                kind="compile",
                channel=channel,
                message=exc.message,
                expression=expression,
                index=exc.index,
            )
            return base

    size = data.width * data.height
    names = set().union(*(c.variables for c in compiled.values()))
    env = {name: _variable_buffer(data, name, size) for name in names}

    outputs = {}
    for channel, expression in program.channels():
        try:
            values = compiled[channel].evaluate(env, size)
        except (ArithmeticError, ValueError, TypeError, IndexError) as exc:
            index = _locate_failure(compiled[channel], env, size)
            failure = ExecutionError(str(exc) or "Pixel math execution failed",
                                     row=index // data.width + 1, column=index % data.width + 1)
            logger.warning(
                "Pixel math execution error (%s) at row %d, column %d: %s",
                channel, failure.row, failure.column, failure.message,
            )
            base.error = PixelMathError(
                kind="execution",
                channel=channel,
                message=failure.message,
                expression=expression,
                index=0,
                row=failure.row,
                column=failure.column,
            )
            return base
        out = np.where(np.isfinite(values), values, 0.0).astype(np.float32)
        outputs[channel] = out.reshape(np.shape(getattr(data, channel)))

    return PixelMathResult(r=outputs["r"], g=outputs["g"], b=outputs["b"])
