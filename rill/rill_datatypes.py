"""
Defines the runtime data types for the Rill language.

Plain values map onto Python types: Number is fractions.Fraction, String is
str, Bool is bool, List is list and Void is None. The classes below cover
the values Python has no native counterpart for, plus the declared-type
descriptor used by annotations.
"""
from enum import Enum
from fractions import Fraction
from typing import Any, Dict, List, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from rill.rill_environment import Environment


class Mutability(Enum):
    MUTABLE = "mutable"
    IMMUTABLE = "immutable"


# =================================================================
# Declared types
# =================================================================

class ValueType:
    """A declared type such as `Number`, `List<String>` or a struct name."""

    PRIMITIVES = ("Number", "String", "Bool", "Void", "Any", "Lambda", "Function")
    GENERICS = {"List": 1, "Option": 1, "Result": 2}

    def __init__(self, name: str, args: Tuple['ValueType', ...] = ()):
        self.name = name
        self.args = tuple(args)

    @property
    def is_struct(self) -> bool:
        return self.name not in self.PRIMITIVES and self.name not in self.GENERICS

    def matches(self, value: Any) -> bool:
        match self.name:
            case "Any":
                return True
            case "Number":
                return isinstance(value, Fraction)
            case "String":
                return isinstance(value, str)
            case "Bool":
                return isinstance(value, bool)
            case "Void":
                return value is None
            case "Lambda":
                return isinstance(value, Lambda)
            case "Function":
                return isinstance(value, (Lambda, FunctionMarker))
            case "List":
                if not isinstance(value, list):
                    return False
                inner = self.args[0] if self.args else ANY
                return all(inner.matches(v) for v in value)
            case "Option":
                return value is None or (not self.args or self.args[0].matches(value))
            case "Result":
                return any(arg.matches(value) for arg in self.args) if self.args else True
            case _:
                return isinstance(value, StructInstance) and value.struct_name == self.name

    def __eq__(self, other):
        return isinstance(other, ValueType) and self.name == other.name and self.args == other.args

    def __hash__(self):
        return hash((self.name, self.args))

    def __repr__(self) -> str:
        if self.args:
            return f"{self.name}<{', '.join(repr(a) for a in self.args)}>"
        return self.name


NUMBER = ValueType("Number")
STRING = ValueType("String")
BOOL = ValueType("Bool")
VOID = ValueType("Void")
ANY = ValueType("Any")
LAMBDA = ValueType("Lambda")
FUNCTION = ValueType("Function")


def list_of(inner: ValueType) -> ValueType:
    return ValueType("List", (inner,))


# =================================================================
# Runtime values
# =================================================================

class ReturnValue:
    """Control-flow sentinel produced by `return`.

    Blocks, loops and branches propagate it untouched; function and lambda
    call sites unwrap it. It never escapes as a final result.
    """
    def __init__(self, value: Any):
        self.value = value

    def __repr__(self) -> str:
        return f"ReturnValue({self.value!r})"

    def __eq__(self, other):
        return isinstance(other, ReturnValue) and self.value == other.value


class FunctionMarker:
    """The value of a named function declaration."""
    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return f"<function {self.name}>"

    def __eq__(self, other):
        return isinstance(other, FunctionMarker) and self.name == other.name

    def __hash__(self):
        return hash(("fn", self.name))


class Lambda:
    """An anonymous function with the environment snapshot taken at creation."""
    def __init__(self, params: List[Any], body: Any, env: 'Environment'):
        self.params = params
        self.body = body
        self.env = env

    def __repr__(self) -> str:
        names = ", ".join(p.name for p in self.params)
        return f"<lambda |{names}|>"

    def __eq__(self, other):
        if not isinstance(other, Lambda):
            return NotImplemented
        # NOTE: the captured environment is not part of equality.
        return self.params == other.params and self.body == other.body


class StructInstance:
    """An instance of a user struct; owns its field mapping."""
    def __init__(self, struct_name: str, fields: Dict[str, Any]):
        self.struct_name = struct_name
        self.fields = fields

    def copy(self) -> 'StructInstance':
        return StructInstance(self.struct_name, {k: copy_value(v) for k, v in self.fields.items()})

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}: {v!r}" for k, v in self.fields.items())
        return f"{self.struct_name} {{ {inner} }}"

    def __eq__(self, other):
        if not isinstance(other, StructInstance):
            return NotImplemented
        return self.struct_name == other.struct_name and self.fields == other.fields


def copy_value(value: Any) -> Any:
    """Copy a value so struct instances and lists are never aliased."""
    if isinstance(value, StructInstance):
        return value.copy()
    if isinstance(value, list):
        return [copy_value(v) for v in value]
    return value


def type_of(value: Any) -> ValueType:
    """The runtime type of a value, used for dispatch and error messages."""
    if value is None:
        return VOID
    if isinstance(value, bool):
        return BOOL
    if isinstance(value, Fraction):
        return NUMBER
    if isinstance(value, str):
        return STRING
    if isinstance(value, list):
        return ValueType("List")
    if isinstance(value, Lambda):
        return LAMBDA
    if isinstance(value, FunctionMarker):
        return FUNCTION
    if isinstance(value, StructInstance):
        return ValueType(value.struct_name)
    return ANY


def to_number(value: Any) -> Fraction:
    """Coerce a native Python number into a Rill Number."""
    if isinstance(value, Fraction):
        return value
    if isinstance(value, bool):
        raise TypeError("booleans are not numbers")
    if isinstance(value, int):
        return Fraction(value)
    if isinstance(value, float):
        # Read through the decimal text so 0.1 stays 1/10.
        return Fraction(repr(value))
    raise TypeError(f"not a number: {value!r}")
