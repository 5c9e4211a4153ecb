import pytest
from fractions import Fraction

from rill import rill_ast as nodes
from rill.rill_datatypes import Mutability, NUMBER, ReturnValue, FunctionMarker, Lambda, StructInstance
from rill.rill_environment import Environment
from rill.rill_errors import (
    ArityMismatch, ReassignImmutable, TypeMismatch, UndefinedFunction, Unsupported,
    UnsupportedOperation, UnknownStruct,
)
from rill.rill_interpreter import Evaluator
from rill.rill_parser import parse


@pytest.fixture
def ev():
    return Evaluator()


@pytest.fixture
def env():
    return Environment()


def run(ev, env, src):
    values, error = ev.evals(parse(src), env)
    if error is not None:
        raise error
    return values[-1] if values else None


def lit(v):
    return nodes.Literal(v)


# --- Hand-built trees ---

def test_literal_and_binary_op(ev, env):
    node = nodes.BinaryOp(nodes.PrefixOp("-", lit(Fraction(1))), "+",
                          nodes.BinaryOp(lit(Fraction(2)), "*", lit(Fraction(3))))
    assert ev.eval(node, env) == 5


def test_unknown_prefix_operator(ev, env):
    with pytest.raises(UnsupportedOperation):
        ev.eval(nodes.PrefixOp("+", lit(Fraction(1))), env)


def test_argument_list_is_not_a_value(ev, env):
    with pytest.raises(Unsupported):
        ev.eval(nodes.FunctionCallArgs([lit(Fraction(1))]), env)


def test_unknown_node_type_is_unsupported(ev, env):
    with pytest.raises(Unsupported):
        ev.eval(object(), env)


def test_block_propagates_return_sentinel(ev, env):
    block = nodes.Block([lit(Fraction(1)), nodes.Return(lit(Fraction(2))), lit(Fraction(3))])
    assert ev._eval(block, env) == ReturnValue(Fraction(2))


def test_block_without_return_is_void(ev, env):
    assert ev._eval(nodes.Block([lit(Fraction(1))]), env) is None


def test_top_level_return_is_unwrapped(ev, env):
    values, error = ev.evals([nodes.Return(lit(Fraction(7)))], env)
    assert error is None
    assert values == [7]


def test_assign_reassign_immutable(ev, env):
    ev.eval(nodes.Assign("x", lit(Fraction(1)), Mutability.IMMUTABLE, None, True), env)
    with pytest.raises(ReassignImmutable):
        ev.eval(nodes.Assign("x", lit(Fraction(2))), env)


def test_function_declaration_returns_marker(ev, env):
    fn = nodes.Function("f", [nodes.Variable("a")], nodes.Block([nodes.Return(nodes.Variable("a"))]))
    assert ev.eval(fn, env) == FunctionMarker("f")
    call = nodes.FunctionCall("f", nodes.FunctionCallArgs([lit(Fraction(4))]))
    assert ev.eval(call, env) == 4


def test_evals_stops_at_first_error(ev, env):
    program = [
        nodes.Assign("a", lit(Fraction(1)), Mutability.IMMUTABLE, None, True),
        nodes.Variable("missing"),
        nodes.Assign("b", lit(Fraction(2)), Mutability.IMMUTABLE, None, True),
    ]
    values, error = ev.evals(program, env)
    assert values == [1]
    assert error.kind == "UndefinedVariable"
    assert env.get("b") is None


# --- Arithmetic and operators ---

def test_exact_rational_arithmetic(ev, env):
    assert run(ev, env, "-1 + 2 * 3") == 5
    assert run(ev, env, "1 / 3") == Fraction(1, 3)
    assert run(ev, env, "0.1 + 0.2 == 0.3") is True


def test_division_by_zero(ev, env):
    with pytest.raises(UnsupportedOperation) as exc:
        run(ev, env, "1 / 0")
    assert "division by zero" in exc.value.message


def test_mixed_operand_types_fail(ev, env):
    with pytest.raises(UnsupportedOperation) as exc:
        run(ev, env, '1 + "a"')
    assert "Number + String" in exc.value.message
    with pytest.raises(UnsupportedOperation):
        run(ev, env, 'true < false')
    with pytest.raises(UnsupportedOperation):
        run(ev, env, '1 == "1"')


def test_string_concatenation_and_comparison(ev, env):
    assert run(ev, env, '"ab" + "cd"') == "abcd"
    assert run(ev, env, '"a" < "b"') is True
    assert run(ev, env, '[1, 2] == [1, 2]') is True


# --- Functions and the leak-back rule ---

LEAK_BACK = """
var z = 3
fun f1(x, y) {
    z = 2
    var d = 3
    z = (d = 4)
    return x + y + z
}
f1(2, 0)
"""


def test_leak_back_scenario(ev, env):
    assert run(ev, env, LEAK_BACK) == 6
    assert env.get("z").value == 4
    assert env.get("d") is None
    assert env.depth == 1


def test_locals_and_params_do_not_leak(ev, env):
    run(ev, env, "fun f(p) { val local = p * 2; return local }\nf(3)")
    assert env.get("p") is None
    assert env.get("local") is None


def test_shadowing_local_merges_into_outer_binding(ev, env):
    run(ev, env, "var a = 1\nfun f() { var a = 50; return 0 }\nf()")
    assert env.get("a").value == 50
    run(ev, env, "fun g() { var a = 50; a = 60; return a }\ng()")
    assert env.get("a").value == 60


def test_reassign_then_shadow_keeps_outer_write(ev, env):
    run(ev, env, "var z = 3\nfun f() { z = 2; val z = 9; return 0 }\nf()")
    assert env.get("z").value == 9
    assert env.depth == 1


def test_parameter_named_like_outer_binding_merges_back(ev, env):
    run(ev, env, "var n = 0\nfun f(n) { return n }\nf(7)")
    assert env.get("n").value == 7


def test_scope_popped_after_error(ev, env):
    with pytest.raises(UnsupportedOperation):
        run(ev, env, 'fun f(x) { return x + "a" }\nf(1)')
    assert env.depth == 1


def test_arity_mismatch_regardless_of_types(ev, env):
    run(ev, env, "fun f(a: Number, b: Number) { return a }")
    with pytest.raises(ArityMismatch):
        run(ev, env, "f(1)")
    with pytest.raises(ArityMismatch):
        run(ev, env, 'f("x", "y", "z")')


def test_parameter_types_are_checked(ev, env):
    run(ev, env, "fun f(a: Number) { return a }")
    with pytest.raises(TypeMismatch):
        run(ev, env, 'f("x")')


def test_recursion(ev, env):
    src = "fun fact(n) { if n <= 1 { return 1 }\n return n * fact(n - 1) }\nfact(10)"
    assert run(ev, env, src) == 3628800


def test_undefined_function(ev, env):
    with pytest.raises(UndefinedFunction):
        run(ev, env, "nope(1)")


def test_function_name_evaluates_to_marker(ev, env):
    run(ev, env, "fun f() => 1")
    assert run(ev, env, "f") == FunctionMarker("f")


# --- Lambdas ---

def test_lambda_call_forms(ev, env):
    assert run(ev, env, "(1, 2) -> \\|a, b| => a + b") == 3
    assert run(ev, env, "5 -> \\x => x * 2") == 10
    run(ev, env, "val add = \\|a, b| => a + b")
    assert isinstance(env.get("add").value, Lambda)
    assert run(ev, env, "add(3, 4)") == 7


def test_lambda_snapshot_isolation(ev, env):
    run(ev, env, "var n = 1\nval f = \\x => x + n\nn = 100")
    assert run(ev, env, "f(1)") == 2


def test_lambda_merges_outer_reassignment_into_call_site(ev, env):
    run(ev, env, "var count = 0\nval inc = \\ => { count = count + 1 }\ninc()")
    assert env.get("count").value == 1


def test_lambda_locals_do_not_leak(ev, env):
    run(ev, env, "val f = \\x => { val tmp = x; return tmp }\nf(1)")
    assert env.get("tmp") is None
    assert env.get("x") is None


def test_lambda_arity(ev, env):
    run(ev, env, "val f = \\x => x")
    with pytest.raises(ArityMismatch):
        run(ev, env, "f(1, 2)")


def test_lambda_return_is_unwrapped(ev, env):
    assert run(ev, env, "3 -> \\x => { if x > 2 { return 1 }\n return 0 }") == 1


def test_calling_a_non_lambda_fails(ev, env):
    with pytest.raises(TypeMismatch):
        run(ev, env, "[1](2)")


# --- Structs and methods ---

STRUCTS = """
struct Point { x: Number, y: Number }
impl Point {
    fun sum(): Number { return self.x + self.y }
    fun shift(dx: Number) { self.x = self.x + dx }
}
"""


def test_struct_field_round_trip(ev, env):
    run(ev, env, STRUCTS + "var p = Point { x: 1, y: 2 }\np.x = 10")
    assert run(ev, env, "p.x") == 10
    assert env.get("p").value == StructInstance("Point", {"x": 10, "y": 2})


def test_struct_fields_in_schema_order(ev, env):
    value = run(ev, env, STRUCTS + "Point { y: 2, x: 1 }")
    assert list(value.fields) == ["x", "y"]


def test_methods_mutate_receiver_in_place(ev, env):
    run(ev, env, STRUCTS + "var p = Point { x: 1, y: 2 }\np.shift(5)")
    assert run(ev, env, "p.sum()") == 8


def test_struct_values_are_copied_on_assignment(ev, env):
    run(ev, env, STRUCTS + "val a = Point { x: 1, y: 2 }\nvar b = a\nb.x = 99")
    assert run(ev, env, "a.x") == 1


def test_method_dispatch_by_runtime_struct(ev, env):
    src = """
    struct Circle { r: Number }
    struct Square { s: Number }
    impl Circle { fun area(): Number { return 3 * self.r * self.r } }
    impl Square { fun area(): Number { return self.s * self.s } }
    var total = 0
    for shape in [Circle { r: 1 }, Square { s: 2 }] { total = total + shape.area() }
    total
    """
    assert run(ev, env, src) == 7


def test_impl_for_unknown_struct(ev, env):
    with pytest.raises(UnknownStruct):
        run(ev, env, "impl Ghost { fun f() => 1 }")


def test_method_arity_excludes_receiver(ev, env):
    run(ev, env, STRUCTS + "val p = Point { x: 1, y: 2 }")
    with pytest.raises(ArityMismatch):
        run(ev, env, "p.shift()")


# --- Control flow ---

def test_if_requires_bool(ev, env):
    with pytest.raises(TypeMismatch):
        run(ev, env, "if 1 { 2 }")


def test_if_without_else_is_void(ev, env):
    assert run(ev, env, "if false { 1 }") is None
    assert run(ev, env, "if 1 < 2 { 1 } else { 2 }") is None


def test_for_over_empty_list_is_void(ev, env):
    assert run(ev, env, "for x in [] { x }") is None


def test_return_inside_for_exits_immediately(ev, env):
    src = """
    var seen = 0
    fun find(xs) {
        for x in xs {
            seen = seen + 1
            if x > 2 { return x }
        }
        return 0
    }
    find([1, 3, 5])
    """
    assert run(ev, env, src) == 3
    assert env.get("seen").value == 2
    assert env.depth == 1


def test_for_requires_list(ev, env):
    with pytest.raises(TypeMismatch):
        run(ev, env, "for x in 5 { x }")


def test_loop_variable_does_not_leak(ev, env):
    run(ev, env, "var total = 0\nfor x in [1, 2, 3] { total = total + x }")
    assert env.get("total").value == 6
    assert env.get("x") is None


# --- Templates ---

def test_template_renders_visible_bindings(ev, env):
    assert run(ev, env, 'val name = "Ada"\nval n = 1 / 2\ni"Hi {{name}} {{n}}"') == "Hi Ada 1/2"


# --- Imports without a registry ---

def test_import_without_registry(ev, env):
    from rill.rill_errors import ModuleNotFound
    with pytest.raises(ModuleNotFound):
        run(ev, env, "import math::abs")
