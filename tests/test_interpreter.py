"""Tests for evaluation: values, scopes, control flow, builtins."""

import asyncio
import logging
import math
import random

import pytest

from threadweave.errors import JSThrow
from threadweave.instrument import evaluate
from threadweave.interpreter import (
    MAX_CALL_DEPTH,
    Interpreter,
    format_value,
    normalize_number,
    to_number,
    to_string,
    truthy,
    type_of,
)
from threadweave.nodes import EXPRESSION_TYPES, STATEMENT_TYPES, TERMINAL_LINE, UNDEFINED
from threadweave.parser import parse_expression


def test_handler_tables_cover_every_node_kind():
    assert set(Interpreter._STATEMENT_HANDLERS) == set(STATEMENT_TYPES)
    assert set(Interpreter._EXPRESSION_HANDLERS) == set(EXPRESSION_TYPES)


# ---------------------------------------------------------------------------
# Operators and coercion
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("1 + 2 * 3", 7),
        ("7 / 2", 3.5),
        ("6 / 3", 2),
        ("7 % 3", 1),
        ("-7 % 3", -1),
        ("2 ** 10", 1024),
        ('"a" + 1', "a1"),
        ('1 + "2"', "12"),
        ('"3" * "4"', 12),
        ('[1, 2] + ""', "1,2"),
        ("5 & 3", 1),
        ("1 << 31", -2147483648),
        ("-1 >>> 28", 15),
        ("~5", -6),
        ("(1, 2)", 2),
    ],
)
def test_arithmetic(expression, expected):
    value = evaluate(expression, {})
    assert value == expected
    assert type(value) is type(expected)


def test_division_by_zero():
    assert evaluate("1 / 0", {}) == math.inf
    assert evaluate("-1 / 0", {}) == -math.inf
    assert math.isnan(evaluate("0 / 0", {}))
    assert math.isnan(evaluate("1 % 0", {}))


def test_huge_integer_results_become_infinity():
    assert evaluate("10 ** 400", {}) == math.inf
    assert evaluate("(-10) ** 401", {}) == -math.inf
    assert math.isnan(evaluate("10 ** 400 - 10 ** 400", {}))


def test_overflow_does_not_escape_try_catch(run_program):
    source = "try {\n  globals.x = 10 ** 400;\n} catch (e) {\n  globals.caught = true;\n}"
    state, _ = run_program(source)
    assert state == {"x": math.inf}


def test_float_results_stay_floats():
    assert evaluate("0.1 + 0.2", {}) == pytest.approx(0.3)


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("1 === 1", True),
        ('1 == "1"', True),
        ('1 === "1"', False),
        ("null == undefined", True),
        ("null === undefined", False),
        ("NaN === NaN", False),
        ("true == 1", True),
        ("[] == []", False),
        ("globals.items === globals.items", True),
        ('"b" > "a"', True),
        ('"10" < 9', False),
        ('"a" in globals', True),
    ],
)
def test_comparison(expression, expected):
    assert evaluate(expression, {"items": [], "a": 1}) is expected


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("typeof 1", "number"),
        ('typeof "a"', "string"),
        ("typeof undefined", "undefined"),
        ("typeof null", "object"),
        ("typeof missing", "undefined"),
        ("typeof Math.floor", "function"),
        ("typeof globals", "object"),
        ("typeof (() => 1)", "function"),
    ],
)
def test_typeof(expression, expected):
    assert evaluate(expression, {}) == expected


def test_logical_operators_return_operands():
    assert evaluate('0 || "x"', {}) == "x"
    assert evaluate("1 && 0", {}) == 0
    assert evaluate("null ?? 5", {}) == 5
    assert evaluate("0 ?? 5", {}) == 0


def test_conditional_and_template():
    assert evaluate('globals.n > 1 ? "big" : "small"', {"n": 2}) == "big"
    assert evaluate("`n=${globals.n}!`", {"n": 3}) == "n=3!"


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------


def test_update_expressions(run_program):
    state, _ = run_program("let i = 5;\nglobals.post = i++;\nglobals.pre = ++i;")
    assert state == {"post": 5, "pre": 7}


def test_compound_and_logical_assignment(run_program):
    state, _ = run_program('globals.s = "a";\nglobals.s += 1;\nglobals.x ??= 4;\nglobals.x ||= 9;')
    assert state == {"s": "a1", "x": 4}


def test_assigning_past_the_end_of_an_array(run_program):
    state, _ = run_program("const a = [];\na[2] = 1;\nglobals.a = a;")
    assert state["a"] == [UNDEFINED, UNDEFINED, 1]


def test_delete_member(run_program):
    state, _ = run_program("delete globals.a;", {"a": 1, "b": 2})
    assert state == {"b": 2}


def test_assigning_a_constant_throws(run_program):
    with pytest.raises(JSThrow) as excinfo:
        run_program("const a = 1;\na = 2;")
    assert excinfo.value.value == {"name": "TypeError", "message": "Assignment to constant variable."}


def test_let_redeclaration_throws(run_program):
    with pytest.raises(JSThrow, match="SyntaxError"):
        run_program("let x = 1;\nlet x = 2;")


def test_var_redeclaration_is_allowed(run_program):
    state, _ = run_program("var x = 1;\nvar x = 2;\nglobals.x = x;")
    assert state == {"x": 2}


def test_var_is_visible_outside_its_block(run_program):
    state, checkpoints = run_program("if (true) {\n  var x = 1;\n}\nglobals.x = x;")
    assert state == {"x": 1}
    assert (1, {}) in checkpoints
    assert (3, {"x": 1}) in checkpoints


def test_var_is_scoped_to_its_function(run_program):
    source = """\
function f() {
  if (true) {
    var y = 2;
  }
  return y;
}
globals.y = f();
globals.outside = typeof y;"""
    state, _ = run_program(source)
    assert state == {"y": 2, "outside": "undefined"}


def test_for_var_survives_the_loop(run_program):
    state, _ = run_program("for (var i = 0; i < 3; i++) {\n}\nglobals.i = i;")
    assert state == {"i": 3}


def test_undeclared_name_throws_reference_error(run_program):
    with pytest.raises(JSThrow, match="ReferenceError: missing is not defined"):
        run_program("missing + 1;")


def test_reading_through_undefined_throws():
    with pytest.raises(JSThrow, match="TypeError"):
        evaluate("globals.missing.x", {})


def test_calling_a_non_function_throws(run_program):
    with pytest.raises(JSThrow, match="globals.x is not a function"):
        run_program("globals.x();", {"x": 1})


# ---------------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------------


def test_closures_keep_their_scope(run_program):
    source = """\
function counter() {
  let n = 0;
  return () => {
    n++;
    return n;
  };
}
const next = counter();
next();
globals.value = next();"""
    state, _ = run_program(source)
    assert state == {"value": 2}


def test_recursion(run_program):
    source = """\
function fact(n) {
  if (n <= 1) {
    return 1;
  }
  return n * fact(n - 1);
}
globals.result = fact(5);"""
    state, _ = run_program(source)
    assert state == {"result": 120}


def test_call_depth_limit(run_program):
    source = "function f() {\n  return f();\n}\nf();"
    with pytest.raises(JSThrow) as excinfo:
        run_program(source)
    assert excinfo.value.value["name"] == "RangeError"


def test_call_depth_error_can_be_caught(run_program):
    source = """\
function f(n) {
  globals.deepest = n;
  return f(n + 1);
}
try {
  f(1);
} catch (e) {
  globals.name = e.name;
}"""
    state, _ = run_program(source)
    assert state == {"deepest": MAX_CALL_DEPTH, "name": "RangeError"}


def test_missing_arguments_are_undefined(run_program):
    state, _ = run_program("function f(a, b) {\n  return b;\n}\nglobals.b = f(1);")
    assert state == {"b": UNDEFINED}


def test_spread_arguments():
    assert evaluate("Math.max(...globals.xs)", {"xs": [1, 5, 3]}) == 5


def test_top_level_return_ends_the_thread(run_program):
    state, checkpoints = run_program("globals.a = 1;\nreturn;\nglobals.a = 2;")
    assert state == {"a": 1}
    assert [line for line, _ in checkpoints] == [0, 1]


# ---------------------------------------------------------------------------
# Control flow
# ---------------------------------------------------------------------------


def test_try_catch_finally(run_program):
    source = """\
try {
  throw "boom";
} catch (e) {
  globals.caught = e;
} finally {
  globals.cleaned = true;
}"""
    state, _ = run_program(source)
    assert state == {"caught": "boom", "cleaned": True}


def test_finally_runs_on_return(run_program):
    source = """\
function f() {
  try {
    return 1;
  } finally {
    globals.log.push("finally");
  }
}
globals.value = f();"""
    state, _ = run_program(source, {"log": []})
    assert state == {"log": ["finally"], "value": 1}


def test_runtime_errors_are_catchable(run_program):
    source = "try {\n  missing;\n} catch (e) {\n  globals.message = e.message;\n}"
    state, _ = run_program(source)
    assert state == {"message": "missing is not defined"}


def test_for_of_break_and_continue(run_program):
    source = """\
let total = 0;
for (const v of [1, 2, 3, 4, 5]) {
  if (v === 2) {
    continue;
  }
  if (v === 4) {
    break;
  }
  total += v;
}
globals.total = total;"""
    state, _ = run_program(source)
    assert state == {"total": 4}


def test_for_of_reads_the_array_live(run_program):
    source = """\
const items = [1];
let seen = 0;
for (const v of items) {
  seen++;
  if (items.length < 3) {
    items.push(v + 1);
  }
}
globals.seen = seen;"""
    state, _ = run_program(source)
    assert state == {"seen": 3}


def test_for_in_visits_keys(run_program):
    source = "let keys = [];\nfor (const k in globals.obj) {\n  keys.push(k);\n}\nglobals.keys = keys;"
    state, _ = run_program(source, {"obj": {"a": 1, "b": 2}})
    assert state["keys"] == ["a", "b"]


def test_do_while_runs_at_least_once(run_program):
    state, _ = run_program("let n = 0;\ndo {\n  n++;\n} while (false);\nglobals.n = n;")
    assert state == {"n": 1}


def test_for_let_binds_each_iteration(run_program):
    source = """\
const fs = [];
for (let i = 0; i < 3; i++) {
  fs.push(() => i);
}
globals.first = fs[0]();
globals.last = fs[2]();"""
    state, _ = run_program(source)
    assert state == {"first": 0, "last": 2}


def test_with_resolves_names_on_the_object(run_program):
    state, _ = run_program("with (globals.config) {\n  limit = limit + 1;\n}", {"config": {"limit": 1}})
    assert state == {"config": {"limit": 2}}


# ---------------------------------------------------------------------------
# Builtins
# ---------------------------------------------------------------------------


def test_array_methods(run_program):
    source = """\
const items = [3, 1, 2];
items.push(4);
globals.popped = items.pop();
globals.shifted = items.shift();
items.unshift(0);
globals.joined = items.join("-");
globals.has = items.includes(2);
globals.index = items.indexOf(2);
globals.sliced = items.slice(1);
globals.merged = items.concat([9], 10);
globals.length = items.length;"""
    state, _ = run_program(source)
    assert state == {
        "popped": 4,
        "shifted": 3,
        "joined": "0-1-2",
        "has": True,
        "index": 2,
        "sliced": [1, 2],
        "merged": [0, 1, 2, 9, 10],
        "length": 3,
    }


def test_out_of_range_index_is_undefined():
    assert evaluate("globals.items[5]", {"items": [1]}) is UNDEFINED


@pytest.mark.parametrize(
    "expression, expected",
    [
        ('"a,b".split(",")', ["a", "b"]),
        ('" Hi ".trim().toUpperCase()', "HI"),
        ('"hello".slice(1, 3)', "el"),
        ('"abc".indexOf("c")', 2),
        ('"abc".length', 3),
        ("(3.14159).toFixed(2)", "3.14"),
    ],
)
def test_string_and_number_methods(expression, expected):
    assert evaluate(expression, {}) == expected


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("Math.floor(1.7)", 1),
        ("Math.round(2.5)", 3),
        ("Math.round(-2.5)", -2),
        ("Math.abs(-4)", 4),
        ("Math.min()", math.inf),
    ],
)
def test_math(expression, expected):
    assert evaluate(expression, {}) == expected


def test_math_sqrt_of_negative_is_nan():
    assert math.isnan(evaluate("Math.sqrt(-1)", {}))


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("Math.floor(1 / 0)", math.inf),
        ("Math.ceil(-1 / 0)", -math.inf),
        ("Math.trunc(1 / 0)", math.inf),
        ("Math.abs(-1 / 0)", math.inf),
    ],
)
def test_math_keeps_infinities(expression, expected):
    assert evaluate(expression, {}) == expected


def test_math_random_is_seeded_per_thread(run_program):
    first, _ = run_program("globals.r = Math.random();", seed=3)
    again, _ = run_program("globals.r = Math.random();", seed=3)
    other, _ = run_program("globals.r = Math.random();", seed=3, thread_id=1)
    assert first == again
    assert first["r"] == random.Random(3 * 1_000_003).random()
    assert other["r"] != first["r"]


def test_console_log_goes_to_logging(run_program, caplog):
    caplog.set_level(logging.INFO, logger="threadweave.interpreter")
    run_program('console.log("hi", 1, [2]);')
    assert [record.getMessage() for record in caplog.records] == ["[thread 0] hi 1 [2]"]


def test_thread_id_is_bound(run_program):
    state, _ = run_program("globals.who = threadId;", thread_id=4)
    assert state == {"who": 4}


# ---------------------------------------------------------------------------
# Locals
# ---------------------------------------------------------------------------


def test_block_scoped_locals(run_program):
    source = "let a = 1;\n{\n  let b = 2;\n  a = b;\n}\na = 3;"
    _, checkpoints = run_program(source)
    assert checkpoints == [
        (0, {}),
        (2, {"a": 1}),
        (3, {"a": 1, "b": 2}),
        (5, {"a": 2}),
        (TERMINAL_LINE, {"a": 3}),
    ]


def test_inner_binding_shadows_outer(run_program):
    _, checkpoints = run_program("let a = 1;\n{\n  let a = 2;\n  a;\n}")
    assert (3, {"a": 2}) in checkpoints


def test_builtins_are_not_reported_as_locals(run_program):
    _, checkpoints = run_program("let x = globals;")
    assert checkpoints[-1] == (TERMINAL_LINE, {"x": {}})


def test_uninstrumented_call_is_rejected():
    async def checkpoint(thread_id, locals_, line):
        return None

    interpreter = Interpreter(0, {}, checkpoint)
    with pytest.raises(RuntimeError, match="was not instrumented"):
        asyncio.run(interpreter.evaluate_expression(parse_expression("f()")))


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def test_to_string():
    assert to_string(1.5) == "1.5"
    assert to_string(2.0) == "2"
    assert to_string(math.inf) == "Infinity"
    assert to_string([1, None, "a"]) == "1,,a"
    assert to_string(UNDEFINED) == "undefined"


def test_to_number():
    assert to_number("  12 ") == 12
    assert to_number("0x10") == 16
    assert to_number(None) == 0
    assert math.isnan(to_number("abc"))
    assert math.isnan(to_number(UNDEFINED))


@pytest.mark.parametrize("value", ["", 0, math.nan, None, UNDEFINED, False])
def test_falsy_values(value):
    assert not truthy(value)


@pytest.mark.parametrize("value", ["0", 1, [], {}, True])
def test_truthy_values(value):
    assert truthy(value)


def test_format_value():
    assert format_value({"a": [1, "x", None]}) == '{"a": [1, "x", null]}'
    loop = []
    loop.append(loop)
    assert format_value(loop) == "[[Circular]]"


def test_number_helpers():
    assert normalize_number(3.0) == 3
    assert isinstance(normalize_number(2**53 + 1), float)
    assert type_of(True) == "boolean"
    assert type_of([]) == "object"
