"""
The core Rill interpreter: a tree-walking Evaluator over rill_ast nodes.

Every operation takes a node plus the Environment it runs against and
either returns a runtime value or raises a RillRuntimeError. `return` is
modelled as a ReturnValue sentinel: blocks, branches and loops hand it
upwards untouched and call sites unwrap it.
"""
import os
import sys
from fractions import Fraction
from typing import Any, List, Optional, Tuple

import pystache

from rill import rill_ast as nodes
from rill.rill_datatypes import (
    Mutability, ValueType, ANY, LAMBDA,
    FunctionMarker, Lambda, ReturnValue, StructInstance, copy_value, type_of,
)
from rill.rill_environment import Environment, FunctionInfo, StructSchema
from rill.rill_errors import (
    ArityMismatch, MissingField, ModuleNotFound, RillError, RillRuntimeError,
    TypeMismatch, UndefinedFunction, UndefinedVariable, UnexpectedField,
    UnknownField, UnknownStruct, Unsupported, UnsupportedOperation,
)

ARITHMETIC_OPS = ("+", "-", "*", "/")
ORDERING_OPS = ("<", "<=", ">", ">=")
EQUALITY_OPS = ("==", "!=")


def is_return(x) -> bool:
    return isinstance(x, ReturnValue)


def unwrap_return(x):
    return x.value if is_return(x) else x


def _is_number(v) -> bool:
    return isinstance(v, Fraction)


def _tmpl_normalize_value(v):
    """Convert Rill values into plain Python types for Mustache."""
    if isinstance(v, Fraction):
        return v.numerator if v.denominator == 1 else str(v)
    if isinstance(v, StructInstance):
        return {k: _tmpl_normalize_value(val) for k, val in v.fields.items()}
    if isinstance(v, list):
        return [_tmpl_normalize_value(x) for x in v]
    if isinstance(v, dict):
        return {k: _tmpl_normalize_value(val) for k, val in v.items()}
    if v is None:
        return ""
    return v


def render_template(template: str, context) -> str:
    renderer = pystache.Renderer(escape=lambda u: u)
    return renderer.render(template, _tmpl_normalize_value(context))


class Evaluator:
    """The Rill execution engine."""
    def __init__(self, modules=None):
        self.modules = modules
        self.side_effects: List[dict] = []
        self.call_stack: List[dict] = []
        self.current_node = None

    def _push_frame(self, name: str, args: List[Any], call_site_node):
        self.call_stack.append({
            'name': name,
            'args': args,
            'call_site': (getattr(call_site_node, 'line', None), getattr(call_site_node, 'column', None)),
        })

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    def _dbg(self, *parts):
        if os.environ.get("RILL_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def eval(self, node: nodes.Node, env: Environment) -> Any:
        """Public entry point for evaluation. Unwraps return sentinels."""
        return unwrap_return(self._eval(node, env))

    def evals(self, program: List[nodes.Node], env: Environment) -> Tuple[List[Any], Optional[RillRuntimeError]]:
        """Evaluate top-level statements until the first failure.

        Returns the values produced so far and the error that stopped
        evaluation (None when every statement succeeded).
        """
        values = []
        for node in program:
            try:
                values.append(self.eval(node, env))
            except RillRuntimeError as e:
                return values, e
        return values, None

    def _eval(self, node: Any, env: Environment) -> Any:
        self.current_node = node
        try:
            return self._dispatch(node, env)
        except RillError as e:
            raise e.at(getattr(node, 'line', None), getattr(node, 'column', None))

    def _dispatch(self, node: Any, env: Environment) -> Any:
        match node:
            case nodes.Literal():
                return node.value
            case nodes.ListLiteral():
                return [copy_value(self._eval(item, env)) for item in node.items]
            case nodes.Template():
                try:
                    return render_template(node.text, env.flatten())
                except Exception as e:
                    raise UnsupportedOperation(f"cannot render template: {e}") from e
            case nodes.Variable():
                return self._variable(node, env)
            case nodes.Assign():
                return self._assign(node, env)
            case nodes.BinaryOp():
                left = self._eval(node.left, env)
                right = self._eval(node.right, env)
                return self.binary_op(node.op, left, right)
            case nodes.PrefixOp():
                return self.prefix_op(node.op, self._eval(node.expr, env))
            case nodes.Block():
                return self._block(node, env)
            case nodes.Return():
                value = self._eval(node.expr, env)
                return value if is_return(value) else ReturnValue(value)
            case nodes.If():
                return self._if(node, env)
            case nodes.For():
                return self._for(node, env)
            case nodes.Function():
                info = FunctionInfo(list(node.params), node.body, node.return_type)
                env.register_function(node.name, info)
                return FunctionMarker(node.name)
            case nodes.FunctionCall():
                return self._function_call(node, env)
            case nodes.Lambda():
                return Lambda(list(node.params), node.body, env.snapshot())
            case nodes.LambdaCall():
                target = self._eval(node.lambda_, env)
                if not isinstance(target, Lambda):
                    raise TypeMismatch(f"{type_of(target)!r} is not callable")
                args = self._eval_args(node.args, env)
                return self.call_lambda(target, args, env, node)
            case nodes.Struct():
                env.register_struct(StructSchema(node.name, list(node.fields)))
                return None
            case nodes.Impl():
                return self._impl(node, env)
            case nodes.StructInstance():
                return self._struct_instance(node, env)
            case nodes.StructFieldAccess():
                instance = self._struct_operand(node.instance, env)
                if node.field_name not in instance.fields:
                    raise UnknownField(f"{instance.struct_name} has no field '{node.field_name}'")
                return instance.fields[node.field_name]
            case nodes.StructFieldAssign():
                return self._field_assign(node, env)
            case nodes.MethodCall():
                return self._method_call(node, env)
            case nodes.Import():
                return self._import(node, env)
            case nodes.Public():
                return self._eval(node.inner, env)
            case nodes.FunctionCallArgs():
                raise Unsupported("an argument list cannot be used as a value")
            case _:
                raise Unsupported(f"Unsupported ast node: {type(node).__name__}")

    # ------------------------------------------------------------------
    # Variables and assignment
    # ------------------------------------------------------------------

    def _variable(self, node: nodes.Variable, env: Environment) -> Any:
        slot = env.get(node.name)
        if slot is not None:
            return slot.value
        if env.get_function(node.name) is not None:
            return FunctionMarker(node.name)
        raise UndefinedVariable(f"undefined variable '{node.name}'")

    def _assign(self, node: nodes.Assign, env: Environment) -> Any:
        value = self._eval(node.value, env)
        if is_return(value):
            return value
        # Struct instances and lists are copied on assignment.
        value = copy_value(value)
        return env.set(node.name, value, node.mutability, node.declared_type, node.is_new)

    # ------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------

    def binary_op(self, op: str, left: Any, right: Any) -> Any:
        if op in ARITHMETIC_OPS:
            if _is_number(left) and _is_number(right):
                match op:
                    case "+":
                        return left + right
                    case "-":
                        return left - right
                    case "*":
                        return left * right
                    case "/":
                        if right == 0:
                            raise UnsupportedOperation("division by zero")
                        return left / right
            if op == "+" and isinstance(left, str) and isinstance(right, str):
                return left + right
        elif op in ORDERING_OPS:
            if (_is_number(left) and _is_number(right)) or (isinstance(left, str) and isinstance(right, str)):
                match op:
                    case "<":
                        return left < right
                    case "<=":
                        return left <= right
                    case ">":
                        return left > right
                    case ">=":
                        return left >= right
        elif op in EQUALITY_OPS:
            if type_of(left).name == type_of(right).name:
                return (left == right) if op == "==" else (left != right)
        raise UnsupportedOperation(
            f"Unsupported operation: {type_of(left)!r} {op} {type_of(right)!r}"
        )

    def prefix_op(self, op: str, value: Any) -> Any:
        if op != "-":
            raise UnsupportedOperation(f"Unexpected prefix op: {op}")
        if not _is_number(value):
            raise UnsupportedOperation(f"Unsupported operation: -{type_of(value)!r}")
        return -value

    # ------------------------------------------------------------------
    # Control flow
    # ------------------------------------------------------------------

    def _block(self, node: nodes.Block, env: Environment) -> Any:
        for statement in node.nodes:
            result = self._eval(statement, env)
            if is_return(result):
                return result
        return None

    def _if(self, node: nodes.If, env: Environment) -> Any:
        condition = self._eval(node.condition, env)
        if not isinstance(condition, bool):
            raise TypeMismatch(f"if condition must be Bool, got {type_of(condition)!r}")
        if condition:
            return self._eval(node.then, env)
        if node.else_ is not None:
            return self._eval(node.else_, env)
        return None

    def _for(self, node: nodes.For, env: Environment) -> Any:
        iterable = self._eval(node.iterable, env)
        if not isinstance(iterable, list):
            raise TypeMismatch(f"for expects a List, got {type_of(iterable)!r}")
        index = env.enter_scope("for")
        try:
            for item in list(iterable):
                env.set(node.variable, copy_value(item), Mutability.IMMUTABLE, ANY, True)
                result = self._eval(node.body, env)
                if is_return(result):
                    return result
        finally:
            env.pop_and_merge_call_scope(index)
        return None

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _eval_args(self, arg_nodes: List[nodes.Node], env: Environment) -> List[Any]:
        # Arguments are passed by value.
        return [copy_value(self._eval(arg, env)) for arg in arg_nodes]

    def _check_arity(self, name: str, expected: int, got: int):
        if expected != got:
            raise ArityMismatch(
                f"'{name}' expects {expected} argument(s) but got {got}: does not match arguments length"
            )

    def _function_call(self, node: nodes.FunctionCall, env: Environment) -> Any:
        name = node.name
        arg_nodes = node.args.args
        info = env.get_function(name)
        if info is not None:
            self._check_arity(name, info.arity, len(arg_nodes))
            return self.invoke(name, info, self._eval_args(arg_nodes, env), env, node)
        builtin = env.get_builtin(name)
        if builtin is not None:
            self._check_arity(name, builtin.arity, len(arg_nodes))
            return self.call_builtin(builtin, self._eval_args(arg_nodes, env))
        slot = env.get(name, LAMBDA)
        if slot is not None:
            return self.call_lambda(slot.value, self._eval_args(arg_nodes, env), env, node, name)
        raise UndefinedFunction(f"Function is missing: {name}")

    def call_builtin(self, builtin, args: List[Any]) -> Any:
        self._check_arity(builtin.name, builtin.arity, len(args))
        self._dbg("BUILTIN", builtin.name, args)
        return builtin.fn(*args)

    def invoke(self, label: str, info: FunctionInfo, args: List[Any], env: Environment, call_site=None) -> Any:
        """Run a registered function or method with already-evaluated arguments."""
        self._check_arity(label, info.arity, len(args))
        if info.native is not None:
            return info.native(*args)
        self._push_frame(label, args, call_site)
        index = env.push_call_scope(label)
        try:
            for param, arg in zip(info.params, args):
                env.set(param.name, arg, Mutability.IMMUTABLE, param.declared_type or ANY, True)
            result = self._eval(info.body, env)
        finally:
            env.pop_and_merge_call_scope(index)
        # The frame stays on the call stack when an error escapes, for the trace.
        self._pop_frame()
        return unwrap_return(result)

    def call_lambda(self, lam: Lambda, args: List[Any], env: Environment, call_site=None, label: str = "lambda") -> Any:
        """Run a lambda on its captured environment; merge back into the caller's."""
        self._check_arity(label, len(lam.params), len(args))
        captured = lam.env
        self._push_frame(label, args, call_site)
        index = captured.push_call_scope(label)
        try:
            for param, arg in zip(lam.params, args):
                captured.set(param.name, arg, Mutability.IMMUTABLE, param.declared_type or ANY, True)
            result = self._eval(lam.body, captured)
        finally:
            captured.pop_and_merge_call_scope(index, target=env)
        self._pop_frame()
        return unwrap_return(result)

    # ------------------------------------------------------------------
    # Structs
    # ------------------------------------------------------------------

    def _impl(self, node: nodes.Impl, env: Environment) -> Any:
        if env.get_struct(node.target_struct) is None:
            raise UnknownStruct(f"cannot implement unknown struct '{node.target_struct}'")
        receiver = nodes.Variable("self", ValueType(node.target_struct), line=node.line, column=node.column)
        for method in node.methods:
            info = FunctionInfo([receiver] + list(method.params), method.body, method.return_type)
            env.register_method(node.target_struct, method.name, info)
        return None

    def _struct_instance(self, node: nodes.StructInstance, env: Environment) -> StructInstance:
        schema = env.get_struct(node.name)
        if schema is None:
            raise UnknownStruct(f"unknown struct '{node.name}'")
        supplied = {}
        for field_name, expr in node.field_values:
            if field_name not in schema.field_names or field_name in supplied:
                raise UnexpectedField(f"unexpected field '{field_name}' for struct {node.name}")
            supplied[field_name] = expr
        missing = [f for f in schema.field_names if f not in supplied]
        if missing:
            raise MissingField(f"missing field(s) {', '.join(missing)} for struct {node.name}")
        fields = {}
        for field_name, field_type in schema.fields:
            value = copy_value(self._eval(supplied[field_name], env))
            if not field_type.matches(value):
                raise TypeMismatch(
                    f"field '{field_name}' of {node.name} is {field_type!r} but got {type_of(value)!r}"
                )
            fields[field_name] = value
        return StructInstance(node.name, fields)

    def _struct_operand(self, expr: nodes.Node, env: Environment) -> StructInstance:
        instance = self._eval(expr, env)
        if not isinstance(instance, StructInstance):
            raise TypeMismatch(f"expected a struct instance, got {type_of(instance)!r}")
        return instance

    def _field_assign(self, node: nodes.StructFieldAssign, env: Environment) -> Any:
        instance = self._struct_operand(node.instance, env)
        if node.field_name not in instance.fields:
            raise UnknownField(f"{instance.struct_name} has no field '{node.field_name}'")
        value = copy_value(self._eval(node.value, env))
        schema = env.get_struct(instance.struct_name)
        field_type = schema.field_type(node.field_name) if schema else None
        if field_type is not None and not field_type.matches(value):
            raise TypeMismatch(
                f"field '{node.field_name}' of {instance.struct_name} is {field_type!r} but got {type_of(value)!r}"
            )
        instance.fields[node.field_name] = value
        return value

    def _method_call(self, node: nodes.MethodCall, env: Environment) -> Any:
        caller = self._eval(node.caller, env)
        if node.is_builtin:
            builtin = env.get_builtin(node.method_name)
            if builtin is None:
                raise UndefinedFunction(f"no builtin named '{node.method_name}'")
            return self.call_builtin(builtin, [caller] + self._eval_args(node.args, env))
        if not isinstance(caller, StructInstance):
            raise TypeMismatch(f"cannot call method '{node.method_name}' on {type_of(caller)!r}")
        info = env.get_method(caller.struct_name, node.method_name)
        if info is None:
            raise UndefinedFunction(f"{caller.struct_name} has no method '{node.method_name}'")
        self._check_arity(node.method_name, info.arity - 1, len(node.args))
        # The receiver is bound by reference so methods can update its fields.
        args = [caller] + self._eval_args(node.args, env)
        return self.invoke(f"{caller.struct_name}.{node.method_name}", info, args, env, node)

    # ------------------------------------------------------------------
    # Modules
    # ------------------------------------------------------------------

    def _import(self, node: nodes.Import, env: Environment) -> Any:
        if self.modules is None:
            raise ModuleNotFound(f"no module registry available to import '{node.module_name}'")
        exports = self.modules.resolve(node.module_name, node.symbols, self)
        for name, item in exports.items():
            if isinstance(item, StructSchema):
                env.register_struct(item)
                for method_name, info in self.modules.struct_methods(node.module_name, name).items():
                    env.register_method(name, method_name, info)
            else:
                env.register_function(name, item)
        self._dbg("IMPORT", node.module_name, list(exports))
        return None
