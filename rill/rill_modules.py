"""
Module resolution for `import`.

Modules come from two places: native modules written in Python (registered
on the registry, `math` ships by default) and `<name>.rill` source files
found in the runner's source directory or in the directories listed in the
`RILL_PATH` environment variable. Source modules are evaluated once in their
own environment; later imports reuse the cached environment.
"""
import inspect
import math
import os
from fractions import Fraction
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from rill import rill_ast as nodes
from rill.rill_datatypes import NUMBER, type_of
from rill.rill_environment import Environment, FunctionInfo, StructSchema
from rill.rill_errors import ModuleNotFound, RillParseError, TypeMismatch, UnknownSymbol
from rill.rill_parser import parse

Export = Union[FunctionInfo, StructSchema]


def _require_number(name: str, value: Any) -> Fraction:
    if not isinstance(value, Fraction):
        raise TypeMismatch(f"{name} expects a Number, got {type_of(value)!r}")
    return value


class MathModule:
    """The native `math` module; every `_name` method is exported as `name`."""

    def _abs(self, x):
        return abs(_require_number("abs", x))

    def _floor(self, x):
        return Fraction(math.floor(_require_number("floor", x)))

    def _ceil(self, x):
        return Fraction(math.ceil(_require_number("ceil", x)))

    def _min(self, a, b):
        return min(_require_number("min", a), _require_number("min", b))

    def _max(self, a, b):
        return max(_require_number("max", a), _require_number("max", b))

    def _pow(self, base, exponent):
        base = _require_number("pow", base)
        exponent = _require_number("pow", exponent)
        if exponent.denominator != 1:
            raise TypeMismatch("pow expects a whole-number exponent")
        if base == 0 and exponent < 0:
            raise TypeMismatch("pow: zero cannot be raised to a negative power")
        return base ** exponent.numerator


def native_exports(provider) -> Dict[str, FunctionInfo]:
    """Collect the `_name` methods of a provider object as FunctionInfo entries."""
    exports = {}
    for name, member in inspect.getmembers(provider):
        if name.startswith('_') and not name.startswith('__') and callable(member):
            rill_name = name[1:]
            params = [nodes.Variable(p, NUMBER) for p in inspect.signature(member).parameters]
            exports[rill_name] = FunctionInfo(params, native=member, name=rill_name)
    return exports


class ModuleRegistry:
    def __init__(self, builtins=None, source_dir: Optional[str] = None):
        self.builtins = builtins
        self.source_dir = source_dir
        self.native: Dict[str, Dict[str, FunctionInfo]] = {}
        self._cache: Dict[str, Environment] = {}
        self._loading: set = set()
        self.register_native("math", native_exports(MathModule()))

    def register_native(self, module_name: str, exports: Dict[str, FunctionInfo]):
        self.native[module_name] = dict(exports)

    def search_paths(self) -> List[Path]:
        paths = []
        if self.source_dir:
            paths.append(Path(self.source_dir))
        extra = os.environ.get("RILL_PATH", "")
        paths.extend(Path(p) for p in extra.split(os.pathsep) if p)
        return paths

    def find_source(self, module_name: str) -> Optional[Path]:
        for base in self.search_paths():
            candidate = base / f"{module_name}.rill"
            if candidate.is_file():
                return candidate
        return None

    def load(self, module_name: str, evaluator) -> Environment:
        """Evaluate a source module once and return its environment."""
        if module_name in self._cache:
            return self._cache[module_name]
        if module_name in self._loading:
            raise ModuleNotFound(f"cyclic import of module '{module_name}'")
        path = self.find_source(module_name)
        if path is None:
            raise ModuleNotFound(f"module '{module_name}' not found")

        self._loading.add(module_name)
        try:
            try:
                program = parse(path.read_text(encoding="utf-8"))
            except RillParseError as e:
                raise ModuleNotFound(f"module '{module_name}' failed to parse: {e}") from e
            module_env = Environment(self.builtins)
            # The caller's call stack is kept intact for its own error trace.
            saved_stack = list(evaluator.call_stack)
            _, error = evaluator.evals(program, module_env)
            evaluator.call_stack[:] = saved_stack
            if error is not None:
                raise error
        finally:
            self._loading.discard(module_name)
        self._cache[module_name] = module_env
        return module_env

    def resolve(self, module_name: str, symbols: List[str], evaluator) -> Dict[str, Export]:
        """Map each requested symbol to a FunctionInfo or StructSchema."""
        if module_name in self.native:
            table = self.native[module_name]
            out = {}
            for symbol in symbols:
                if symbol not in table:
                    raise UnknownSymbol(f"module '{module_name}' has no symbol '{symbol}'")
                out[symbol] = table[symbol]
            return out

        module_env = self.load(module_name, evaluator)
        out = {}
        for symbol in symbols:
            info = module_env.get_function(symbol)
            if info is not None:
                out[symbol] = info
                continue
            schema = module_env.get_struct(symbol)
            if schema is not None:
                out[symbol] = schema
                continue
            raise UnknownSymbol(f"module '{module_name}' has no symbol '{symbol}'")
        return out

    def struct_methods(self, module_name: str, struct_name: str) -> Dict[str, FunctionInfo]:
        module_env = self._cache.get(module_name)
        if module_env is None:
            return {}
        return module_env.methods_of(struct_name)
