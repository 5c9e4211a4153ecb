import pytest
from fractions import Fraction

from rill.rill_datatypes import Mutability, NUMBER, LAMBDA, STRING, Lambda, StructInstance
from rill.rill_environment import Environment, FunctionInfo
from rill.rill_errors import ReassignImmutable, TypeMismatch, UndefinedVariable


def test_set_and_get_new_binding():
    env = Environment()
    env.set("a", Fraction(1), Mutability.IMMUTABLE, None, True)
    slot = env.get("a")
    assert slot.value == 1
    assert slot.mutability == Mutability.IMMUTABLE
    assert env.get("missing") is None


def test_reassign_immutable_fails():
    env = Environment()
    env.set("a", Fraction(1), Mutability.IMMUTABLE, None, True)
    with pytest.raises(ReassignImmutable) as exc:
        env.set("a", Fraction(2), is_new=False)
    assert "Cannot reassign to immutable variable 'a'" in str(exc.value)
    assert env.get("a").value == 1


def test_reassign_mutable_succeeds():
    env = Environment()
    env.set("a", Fraction(1), Mutability.MUTABLE, None, True)
    env.set("a", Fraction(5), is_new=False)
    assert env.get("a").value == 5


def test_reassign_undefined_fails():
    env = Environment()
    with pytest.raises(UndefinedVariable):
        env.set("nope", Fraction(1), is_new=False)


def test_declared_type_checked_on_declaration_and_reassignment():
    env = Environment()
    with pytest.raises(TypeMismatch):
        env.set("s", Fraction(1), Mutability.MUTABLE, STRING, True)
    env.set("n", Fraction(1), Mutability.MUTABLE, NUMBER, True)
    with pytest.raises(TypeMismatch):
        env.set("n", "one", is_new=False)


def test_inner_scope_shadows_and_reads_outer():
    env = Environment()
    env.set("a", Fraction(1), Mutability.MUTABLE, None, True)
    env.set("b", Fraction(2), Mutability.MUTABLE, None, True)
    index = env.push_call_scope("f")
    env.set("a", Fraction(10), Mutability.IMMUTABLE, None, True)
    assert env.get("a").value == 10
    assert env.get("b").value == 2
    env.pop_and_merge_call_scope(index)
    # The shadowing declaration also exists below, so it is merged down.
    assert env.get("a").value == 10
    assert env.get("b").value == 2
    assert env.depth == 1


def test_merge_back_propagates_outer_names_only():
    env = Environment()
    env.set("z", Fraction(3), Mutability.MUTABLE, None, True)
    index = env.push_call_scope("f1")
    env.set("z", Fraction(2), is_new=False)
    # The outer slot is untouched until the frame is popped.
    assert env.global_frame.slots["z"].value == 3
    env.set("d", Fraction(3), Mutability.MUTABLE, None, True)
    env.set("d", Fraction(4), is_new=False)
    env.set("z", Fraction(4), is_new=False)
    env.pop_and_merge_call_scope(index)
    assert env.get("z").value == 4
    assert env.get("d") is None


def test_merge_back_into_another_environment():
    caller = Environment()
    caller.set("count", Fraction(0), Mutability.MUTABLE, None, True)
    captured = caller.snapshot()
    index = captured.push_call_scope("lambda")
    captured.set("count", Fraction(1), is_new=False)
    captured.set("tmp", Fraction(9), Mutability.IMMUTABLE, None, True)
    captured.pop_and_merge_call_scope(index, target=caller)
    assert caller.get("count").value == 1
    assert caller.get("tmp") is None
    # The snapshot itself keeps its original frame contents.
    assert captured.get("count").value == 0


def test_leave_scope_refuses_to_pop_global():
    env = Environment()
    with pytest.raises(RuntimeError):
        env.leave_scope()


def test_get_with_expected_type_skips_non_matching_bindings():
    env = Environment()
    lam = Lambda([], None, env)
    env.set("f", lam, Mutability.IMMUTABLE, None, True)
    env.enter_scope("inner")
    env.set("f", Fraction(1), Mutability.IMMUTABLE, None, True)
    assert env.get("f").value == 1
    assert env.get("f", LAMBDA).value is lam
    assert env.get("f", STRING) is None


def test_snapshot_is_isolated_from_later_mutation():
    env = Environment()
    env.set("n", Fraction(1), Mutability.MUTABLE, None, True)
    env.set("p", StructInstance("P", {"x": Fraction(1)}), Mutability.MUTABLE, None, True)
    snap = env.snapshot()
    env.set("n", Fraction(100), is_new=False)
    env.get("p").value.fields["x"] = Fraction(50)
    assert snap.get("n").value == 1
    assert snap.get("p").value.fields["x"] == 1


def test_snapshot_shares_definition_tables():
    env = Environment()
    snap = env.snapshot()
    env.register_function("later", FunctionInfo([], None))
    assert snap.get_function("later") is not None


def test_method_table_keyed_by_struct_and_name():
    env = Environment()
    info = FunctionInfo([], None)
    env.register_method("Circle", "area", info)
    assert env.get_method("Circle", "area") is info
    assert env.get_method("Square", "area") is None
    assert env.methods_of("Circle") == {"area": info}
    assert info.name == "Circle.area"


def test_flatten_prefers_inner_bindings():
    env = Environment()
    env.set("a", Fraction(1), Mutability.MUTABLE, None, True)
    env.enter_scope("inner")
    env.set("a", Fraction(2), Mutability.MUTABLE, None, True)
    env.set("b", "x", Mutability.MUTABLE, None, True)
    assert env.flatten() == {"a": 2, "b": "x"}
