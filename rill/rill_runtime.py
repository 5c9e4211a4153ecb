import inspect
import os
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Callable, Dict, List, Literal, Optional

import yaml

from rill.rill_datatypes import StructInstance, type_of
from rill.rill_environment import Environment
from rill.rill_errors import RillError, RillParseError, TypeMismatch, UnsupportedOperation
from rill.rill_interpreter import Evaluator, render_template
from rill.rill_modules import ModuleRegistry
from rill.rill_parser import parse
from rill.rill_printer import Printer
from rill.rill_serialize import serialize, deserialize


def _require_list(name: str, value: Any) -> list:
    if not isinstance(value, list):
        raise TypeMismatch(f"{name} expects a List, got {type_of(value)!r}")
    return value


def _require_str(name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise TypeMismatch(f"{name} expects a String, got {type_of(value)!r}")
    return value


def _require_whole(name: str, value: Any) -> int:
    if not isinstance(value, Fraction) or value.denominator != 1:
        raise TypeMismatch(f"{name} expects a whole Number, got {type_of(value)!r}")
    return value.numerator


class StdLib:
    """Contains Python implementations for all Rill built-ins.

    Every `_name` method is exposed to scripts as `name`; its arity is the
    method's parameter count.
    """
    def __init__(self, evaluator):
        self.evaluator = evaluator
        self.printer = Printer()

    # --- Output ---
    def _print(self, value):
        """Generates a stdout side-effect event for the host application."""
        event = {"topics": ["stdout"], "message": self.printer.display(value)}
        if self.evaluator:
            self.evaluator.side_effects.append(event)
        return None

    # --- Lists and strings ---
    def _len(self, collection):
        if isinstance(collection, (list, str)):
            return Fraction(len(collection))
        raise TypeMismatch(f"len expects a List or String, got {type_of(collection)!r}")

    def _push(self, items, value):
        return _require_list("push", items) + [value]

    def _first(self, items):
        items = _require_list("first", items)
        if not items:
            raise UnsupportedOperation("first of an empty list")
        return items[0]

    def _rest(self, items): return _require_list("rest", items)[1:]

    def _range(self, start, stop):
        return [Fraction(i) for i in range(_require_whole("range", start), _require_whole("range", stop))]

    def _to_string(self, value): return self.printer.display(value)

    # --- Templates ---
    def _format(self, template, context):
        """Render a Mustache template; struct fields are the context, anything else is `value`."""
        template = _require_str("format", template)
        data = context if isinstance(context, StructInstance) else {"value": context}
        try:
            return render_template(template, data)
        except Exception as e:
            raise UnsupportedOperation(f"cannot render template: {e}") from e

    # --- Serialization ---
    def _to_json(self, value):
        try:
            return serialize(value, fmt='json', pretty=False)
        except ValueError as e:
            raise UnsupportedOperation(str(e)) from e

    def _to_yaml(self, value):
        try:
            return serialize(value, fmt='yaml')
        except ValueError as e:
            raise UnsupportedOperation(str(e)) from e

    def _from_json(self, text):
        try:
            return deserialize(_require_str("from_json", text), fmt='json')
        except yaml.YAMLError as e:
            raise UnsupportedOperation(f"invalid JSON: {e}") from e
        except ValueError as e:
            raise UnsupportedOperation(str(e)) from e

    def _from_yaml(self, text):
        try:
            return deserialize(_require_str("from_yaml", text), fmt='yaml')
        except yaml.YAMLError as e:
            raise UnsupportedOperation(f"invalid YAML: {e}") from e
        except ValueError as e:
            raise UnsupportedOperation(str(e)) from e


@dataclass
class Builtin:
    name: str
    arity: int
    fn: Callable[..., Any]


class BuiltinRegistry:
    """Name -> fixed-arity native callable."""
    def __init__(self):
        self._table: Dict[str, Builtin] = {}

    def register(self, name: str, fn: Callable[..., Any], arity: Optional[int] = None):
        if arity is None:
            arity = len(inspect.signature(fn).parameters)
        self._table[name] = Builtin(name, arity, fn)

    def lookup(self, name: str) -> Optional[Builtin]:
        return self._table.get(name)

    def names(self) -> List[str]:
        return sorted(self._table)

    @classmethod
    def from_provider(cls, provider) -> 'BuiltinRegistry':
        registry = cls()
        for name, member in inspect.getmembers(provider):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                registry.register(name[1:], member)
        return registry


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    values: List[Any] = field(default_factory=list)
    error_message: Optional[str] = None
    error_token: Optional[Dict] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and self.error_token.get('line') is not None:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


class ScriptRunner:
    """Parses and executes Rill code against a persistent environment."""

    def __init__(self, source_dir: Optional[str] = None):
        self.source_dir = source_dir  # directory of the current source file, if known
        self.evaluator = Evaluator()  # Each runner has its own evaluator/side_effects
        self.stdlib = StdLib(self.evaluator)
        self.builtins = BuiltinRegistry.from_provider(self.stdlib)
        self.modules = ModuleRegistry(self.builtins, source_dir)
        self.evaluator.modules = self.modules
        self.env = Environment(self.builtins)
        self.printer = Printer()

    def _error_token(self, e: RillError) -> Optional[Dict]:
        if e.line is None:
            return None
        return {'line': e.line, 'col': e.column}

    def _format_parse_error(self, e: RillParseError, source: str) -> str:
        if e.line is not None:
            return f"ParseError: {e.kind}: {e.message} (line {e.line}, col {e.column})\n{self._source_context(source, e.line, e.column)}"
        return f"ParseError: {e.kind}: {e.message}"

    def _format_runtime_error(self, e: Exception, source: str) -> str:
        match e:
            case RillError():
                msg = f"{e.kind}: {e.message}"
                if e.line is not None:
                    context = self._source_context(source, e.line, e.column)
                    msg = f"{msg}\n(line {e.line}, col {e.column})"
                    if context:
                        msg = f"{msg}\n{context}"
            case RecursionError():
                msg = "InternalError: maximum recursion depth exceeded"
            case _:
                msg = f"InternalError: {str(e)}"

        st = self._format_stacktrace()
        if st:
            msg += "\n" + st
        return msg

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_stacktrace(self) -> str:
        stack = self.evaluator.call_stack
        if not stack:
            return ""
        frames = []
        for frame in stack:
            name = frame.get('name') or '<call>'
            args_s = " ".join(self.printer.pformat(a) for a in frame.get('args') or [])
            frames.append(f"({name} {args_s})" if args_s else f"({name})")
        return "Rill stacktrace: " + " ".join(frames)

    def handle_script(self, source_code: str) -> ExecutionResult:
        """The main entry point to execute a script."""
        # Clear side effects for each run
        self.evaluator.side_effects.clear()
        self.evaluator.call_stack.clear()
        self.modules.source_dir = self.source_dir or os.getcwd()

        try:
            program = parse(source_code)
        except RillParseError as e:
            msg = self._format_parse_error(e, source_code)
            self.evaluator.side_effects.append({'topics': ['stderr'], 'message': msg})
            return ExecutionResult(
                status='error',
                error_message=msg,
                error_token=self._error_token(e),
                side_effects=list(self.evaluator.side_effects),
            )

        try:
            values, error = self.evaluator.evals(program, self.env)
        except Exception as e:
            # Failures outside the Rill error hierarchy still become an error result.
            values, error = [], e

        if error is not None:
            msg = self._format_runtime_error(error, source_code)
            self.evaluator.side_effects.append({'topics': ['stderr'], 'message': msg})
            return ExecutionResult(
                status='error',
                values=values,
                error_message=msg,
                error_token=self._error_token(error) if isinstance(error, RillError) else None,
                side_effects=list(self.evaluator.side_effects),
            )

        return ExecutionResult(
            status='success',
            value=values[-1] if values else None,
            values=values,
            side_effects=list(self.evaluator.side_effects),
        )
