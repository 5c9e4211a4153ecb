"""
Exception types raised by the Rill parser and evaluator.

Both families carry the message plus the source position of the node or
token that triggered them. The script runner is the only place that turns
them into a user-facing error result.
"""
from typing import Optional


class RillError(Exception):
    """Base class for every diagnosable Rill failure."""
    def __init__(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column

    @property
    def kind(self) -> str:
        return type(self).__name__

    def at(self, line: Optional[int], column: Optional[int]) -> 'RillError':
        """Fill in a position if none was recorded where the error was raised."""
        if self.line is None and line:
            self.line = line
            self.column = column
        return self

    def __str__(self) -> str:
        if self.line is not None:
            return f"{self.kind}: {self.message} (line {self.line}, col {self.column})"
        return f"{self.kind}: {self.message}"


# =================================================================
# Parse errors
# =================================================================

class RillParseError(RillError):
    pass


class UnexpectedToken(RillParseError):
    pass


class ExpectedToken(RillParseError):
    pass


class UnterminatedConstruct(RillParseError):
    pass


# =================================================================
# Runtime errors
# =================================================================

class RillRuntimeError(RillError):
    pass


class UndefinedVariable(RillRuntimeError):
    pass


class UndefinedFunction(RillRuntimeError):
    pass


class ReassignImmutable(RillRuntimeError):
    pass


class ArityMismatch(RillRuntimeError):
    pass


class TypeMismatch(RillRuntimeError):
    pass


class UnsupportedOperation(RillRuntimeError):
    pass


class UnknownStruct(RillRuntimeError):
    pass


class UnknownField(RillRuntimeError):
    pass


class MissingField(RillRuntimeError):
    pass


class UnexpectedField(RillRuntimeError):
    pass


class Unsupported(RillRuntimeError):
    pass


class ModuleNotFound(RillRuntimeError):
    pass


class UnknownSymbol(RillRuntimeError):
    pass
