"""
Exception hierarchy for the astrocomp numeric core.

Validation, compile and execution failures describe a computation that
could not run; cancellation describes a caller that stopped asking for it.
The two families never share a base beyond ``AstrocompError`` so callers can
tell "the user cancelled" from "the computation failed".
"""

from __future__ import annotations


class AstrocompError(Exception):
    """Base class for all errors raised by astrocomp."""


class ValidationError(AstrocompError, ValueError):
    """
    Input rejected before any arithmetic ran.

    Raised for buffer dimension mismatches and for malformed pixel-math
    expressions (empty, unbalanced parentheses, unsupported characters,
    unknown identifiers).

    Parameters
    ----------
    message : str
        Human readable description.
    index : int, default 0
        Character offset of the offending token, for expression errors.
    """

    def __init__(self, message: str, index: int = 0):
        super().__init__(message)
        self.message = message
        self.index = index


class CompileError(AstrocompError):
    """A lexically valid pixel-math expression could not be built into a tree."""

    def __init__(self, message: str, index: int = 0):
        super().__init__(message)
        self.message = message
        self.index = index


class ExecutionError(AstrocompError):
    """
    Per-pixel evaluation failed.

    ``row`` and ``column`` are 1-indexed and point at the first failing pixel
    in row-major order.
    """

    def __init__(self, message: str, row: int = 0, column: int = 0):
        super().__init__(message)
        self.message = message
        self.row = row
        self.column = column


class CancellationError(AstrocompError):
    """The operation was cancelled through its cancellation token."""

    def __init__(self, message: str = "Aborted"):
        super().__init__(message)
        self.message = message
