"""
The scope-stack environment shared by every evaluation call.

Frames form an index-addressed stack; frame 0 is the global frame and lives
as long as the session. Function, struct and method definitions live in
flat tables beside the stack.

Call scopes follow a push / merge-back / pop protocol:

  * a call pushes a named frame on the *same* stack, so outer bindings stay
    readable;
  * reassigning an outer binding writes a write-through slot into the
    innermost frame instead of touching the outer slot;
  * when the frame is popped, every slot whose name also resolves in the
    target environment is copied down into that binding, whether it was a
    write-through slot or a local declaration; names that exist only in the
    popped frame are dropped with it.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from rill.rill_datatypes import Mutability, ValueType, ANY, copy_value, type_of
from rill.rill_errors import ReassignImmutable, TypeMismatch, UndefinedVariable


@dataclass
class Slot:
    value: Any
    mutability: Mutability = Mutability.IMMUTABLE
    declared_type: ValueType = ANY


@dataclass
class FunctionInfo:
    """A callable registered in the function or method table.

    `native` is set for functions provided by Python code (native modules);
    `body` is set for functions written in Rill.
    """
    params: List[Any]
    body: Any = None
    return_type: Optional[ValueType] = None
    native: Optional[Callable[..., Any]] = None
    name: str = ""

    @property
    def arity(self) -> int:
        return len(self.params)


@dataclass
class StructSchema:
    name: str
    fields: List[Tuple[str, ValueType]]

    @property
    def field_names(self) -> List[str]:
        return [name for name, _ in self.fields]

    def field_type(self, name: str) -> Optional[ValueType]:
        for field_name, field_type in self.fields:
            if field_name == name:
                return field_type
        return None


class Frame:
    """One level of the scope stack."""
    def __init__(self, label: str):
        self.label = label
        self.slots: Dict[str, Slot] = {}

    def copy(self) -> 'Frame':
        clone = Frame(self.label)
        for name, slot in self.slots.items():
            clone.slots[name] = Slot(copy_value(slot.value), slot.mutability, slot.declared_type)
        return clone

    def __repr__(self) -> str:
        return f"<Frame {self.label} [{', '.join(self.slots)}]>"


class Environment:
    def __init__(self, builtins: Optional[Any] = None):
        self.frames: List[Frame] = [Frame("global")]
        self.functions: Dict[str, FunctionInfo] = {}
        self.structs: Dict[str, StructSchema] = {}
        self.methods: Dict[Tuple[str, str], FunctionInfo] = {}
        self.builtins = builtins

    @property
    def depth(self) -> int:
        return len(self.frames)

    @property
    def global_frame(self) -> Frame:
        return self.frames[0]

    # ------------------------------------------------------------------
    # Scope stack
    # ------------------------------------------------------------------

    def enter_scope(self, label: str) -> int:
        self.frames.append(Frame(label))
        return len(self.frames) - 1

    def leave_scope(self) -> Frame:
        if len(self.frames) == 1:
            raise RuntimeError("cannot leave the global scope")
        return self.frames.pop()

    def push_call_scope(self, label: str) -> int:
        """Push a named call frame and return its index."""
        return self.enter_scope(label)

    def pop_and_merge_call_scope(self, index: int, target: Optional['Environment'] = None):
        """Pop every frame from `index` up and merge the call frame back.

        `target` is the environment receiving the merge; it defaults to this
        environment (named functions, loops). Lambdas run on a snapshot and
        merge into the call-site environment instead.
        """
        frame = self.frames[index]
        del self.frames[index:]
        (target or self).update_global_env(frame)

    def update_global_env(self, child: Frame):
        """Merge-back: propagate the bindings of a popped frame.

        Every binding of the child frame whose name also resolves in this
        environment is propagated, parameters and local declarations
        included. Names that exist only in the child frame are dropped.
        """
        for name, slot in child.slots.items():
            if self.get(name) is None:
                continue
            self._write(name, slot.value)

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------

    def _find(self, name: str, expected_type: Optional[ValueType] = None) -> Optional[Tuple[int, Slot]]:
        for i in range(len(self.frames) - 1, -1, -1):
            slot = self.frames[i].slots.get(name)
            if slot is None:
                continue
            if expected_type is not None and not expected_type.matches(slot.value):
                continue
            return i, slot
        return None

    def get(self, name: str, expected_type: Optional[ValueType] = None) -> Optional[Slot]:
        """Look a name up from the innermost frame outwards.

        With `expected_type`, bindings whose value does not match the type
        are skipped and the search continues outward.
        """
        found = self._find(name, expected_type)
        return found[1] if found else None

    def set(self, name: str, value: Any, mutability: Mutability = Mutability.IMMUTABLE,
            declared_type: Optional[ValueType] = None, is_new: bool = True) -> Any:
        if is_new:
            declared_type = declared_type or ANY
            self._check_type(name, declared_type, value)
            frame = self.frames[-1]
            frame.slots[name] = Slot(value, mutability, declared_type)
            return value

        existing = self.get(name)
        if existing is None:
            raise UndefinedVariable(f"cannot assign to undefined variable '{name}'")
        if existing.mutability == Mutability.IMMUTABLE:
            raise ReassignImmutable(f"Cannot reassign to immutable variable '{name}'")
        self._check_type(name, existing.declared_type, value)
        self._write(name, value)
        return value

    def _write(self, name: str, value: Any):
        """Store into the innermost frame, creating a write-through slot if needed."""
        frame = self.frames[-1]
        slot = frame.slots.get(name)
        if slot is not None:
            slot.value = value
            return
        existing = self.get(name)
        frame.slots[name] = Slot(value, existing.mutability, existing.declared_type)

    def _check_type(self, name: str, declared_type: ValueType, value: Any):
        if not declared_type.matches(value):
            raise TypeMismatch(
                f"'{name}' is declared as {declared_type!r} but got {type_of(value)!r}"
            )

    def flatten(self) -> Dict[str, Any]:
        """All visible bindings, inner frames overriding outer ones."""
        out: Dict[str, Any] = {}
        for frame in self.frames:
            for name, slot in frame.slots.items():
                out[name] = slot.value
        return out

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def register_function(self, name: str, info: FunctionInfo):
        info.name = info.name or name
        self.functions[name] = info

    def get_function(self, name: str) -> Optional[FunctionInfo]:
        return self.functions.get(name)

    def get_builtin(self, name: str):
        if self.builtins is None:
            return None
        return self.builtins.lookup(name)

    def register_struct(self, schema: StructSchema):
        self.structs[schema.name] = schema

    def get_struct(self, name: str) -> Optional[StructSchema]:
        return self.structs.get(name)

    def register_method(self, struct_name: str, method_name: str, info: FunctionInfo):
        info.name = info.name or f"{struct_name}.{method_name}"
        self.methods[(struct_name, method_name)] = info

    def get_method(self, struct_name: str, method_name: str) -> Optional[FunctionInfo]:
        return self.methods.get((struct_name, method_name))

    def methods_of(self, struct_name: str) -> Dict[str, FunctionInfo]:
        return {m: info for (s, m), info in self.methods.items() if s == struct_name}

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self) -> 'Environment':
        """An independent copy of the frame stack for lambda capture.

        Frames and their values are copied; the definition tables and the
        builtin registry are shared with the live environment.
        """
        clone = Environment(self.builtins)
        clone.frames = [frame.copy() for frame in self.frames]
        clone.functions = self.functions
        clone.structs = self.structs
        clone.methods = self.methods
        return clone

    def __repr__(self) -> str:
        return f"<Environment frames={self.frames!r}>"
