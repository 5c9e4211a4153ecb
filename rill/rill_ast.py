"""
AST node types produced by the parser and consumed by the evaluator.

Each node owns its subtrees exclusively. Source positions are carried for
diagnostics only and are left out of equality, so tests can compare parsed
trees against hand-built ones.
"""
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from rill.rill_datatypes import Mutability, ValueType, VOID


@dataclass
class Node:
    line: int = field(default=0, kw_only=True, compare=False)
    column: int = field(default=0, kw_only=True, compare=False)


@dataclass
class Literal(Node):
    value: Any


@dataclass
class ListLiteral(Node):
    items: List[Node]


@dataclass
class Template(Node):
    text: str


@dataclass
class Variable(Node):
    name: str
    declared_type: Optional[ValueType] = None


@dataclass
class BinaryOp(Node):
    left: Node
    op: str
    right: Node


@dataclass
class PrefixOp(Node):
    op: str
    expr: Node


@dataclass
class Assign(Node):
    name: str
    value: Node
    mutability: Mutability = Mutability.MUTABLE
    declared_type: Optional[ValueType] = None
    is_new: bool = False


@dataclass
class Block(Node):
    nodes: List[Node]


@dataclass
class Return(Node):
    expr: Node


@dataclass
class If(Node):
    condition: Node
    then: Node
    else_: Optional[Node] = None


@dataclass
class For(Node):
    variable: str
    iterable: Node
    body: Node


@dataclass
class Function(Node):
    name: str
    params: List[Variable]
    body: Node
    return_type: ValueType = VOID


@dataclass
class FunctionCallArgs(Node):
    args: List[Node]


@dataclass
class FunctionCall(Node):
    name: str
    args: FunctionCallArgs


@dataclass
class Lambda(Node):
    params: List[Variable]
    body: Node


@dataclass
class LambdaCall(Node):
    lambda_: Node
    args: List[Node]


@dataclass
class Struct(Node):
    name: str
    fields: List[Tuple[str, ValueType]]


@dataclass
class Impl(Node):
    target_struct: str
    methods: List[Function]


@dataclass
class StructInstance(Node):
    name: str
    field_values: List[Tuple[str, Node]]


@dataclass
class StructFieldAccess(Node):
    instance: Node
    field_name: str


@dataclass
class StructFieldAssign(Node):
    instance: Node
    field_name: str
    value: Node


@dataclass
class MethodCall(Node):
    method_name: str
    caller: Node
    args: List[Node]
    is_builtin: bool = False


@dataclass
class Import(Node):
    module_name: str
    symbols: List[str]


@dataclass
class Public(Node):
    inner: Node
