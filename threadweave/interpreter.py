"""
Async tree-walking evaluator for instrumented programs.

Each simulated thread gets its own :class:`Interpreter`.  The only place an
interpreter can suspend is a checkpoint: it calls the checkpoint callback
with ``(thread_id, locals, line)`` and awaits whatever that returns.  All
other evaluation runs without yielding to the event loop, so two threads on
the same loop can only interleave at checkpoints.

Values are plain Python objects, chosen so a JSON global-state document can
be used directly:

=============  ==========================================
JavaScript     Python
=============  ==========================================
number         ``int`` (integral values) or ``float``
string         ``str``
boolean        ``bool``
null           ``None``
undefined      :data:`~threadweave.nodes.UNDEFINED`
array          ``list``
object         ``dict`` (only from globals; no literals)
function       :class:`JSFunction` / :class:`BuiltinFunction`
=============  ==========================================
"""

from __future__ import annotations

import inspect
import json
import logging
import math
import random
from collections.abc import Awaitable, Callable, Iterator, Mapping
from contextlib import contextmanager
from functools import partial
from typing import Any

from threadweave.errors import JSThrow, js_error
from threadweave.nodes import (
    UNDEFINED,
    ArrayExpression,
    ArrowFunctionExpression,
    AssignmentExpression,
    AwaitCall,
    BinaryExpression,
    BlockStatement,
    BreakStatement,
    CallExpression,
    Checkpoint,
    Checkpointed,
    ConditionalExpression,
    ContinueStatement,
    DebuggerStatement,
    DoWhileStatement,
    EmptyStatement,
    Expression,
    ExpressionStatement,
    ForInStatement,
    ForOfStatement,
    ForStatement,
    FunctionDeclaration,
    FunctionExpression,
    Identifier,
    IfStatement,
    Literal,
    LogicalExpression,
    MemberExpression,
    ReturnStatement,
    SequenceExpression,
    SpreadElement,
    Statement,
    TemplateLiteral,
    ThrowStatement,
    TryStatement,
    UnaryExpression,
    UpdateExpression,
    VariableDeclaration,
    WhileStatement,
    WithStatement,
)

logger = logging.getLogger(__name__)

CheckpointCallback = Callable[[int, Mapping[str, Any], int], Awaitable[None]]

# Calls nested deeper than this throw a RangeError inside the program.
MAX_CALL_DEPTH = 40

_MAX_SAFE_INTEGER = 2**53


# ---------------------------------------------------------------------------
# Runtime objects
# ---------------------------------------------------------------------------


class JSFunction:
    """A function or arrow closure defined by the program."""

    __slots__ = ("name", "params", "body", "closure", "suspendable")

    def __init__(
        self,
        name: str | None,
        params: tuple[str, ...],
        body: BlockStatement | Expression,
        closure: Scope,
        suspendable: bool,
    ):
        self.name = name
        self.params = params
        self.body = body
        self.closure = closure
        self.suspendable = suspendable

    def __repr__(self) -> str:
        return f"[Function: {self.name or 'anonymous'}]"

    # Snapshots copy data, not code.
    def __copy__(self) -> JSFunction:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> JSFunction:
        return self


class BuiltinFunction:
    """A host function; *impl* receives the evaluated argument list."""

    __slots__ = ("name", "impl")

    def __init__(self, name: str, impl: Callable[[list[Any]], Any]):
        self.name = name
        self.impl = impl

    def __repr__(self) -> str:
        return f"[Function: {self.name}]"

    def __copy__(self) -> BuiltinFunction:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> BuiltinFunction:
        return self


class Scope:
    """One lexical environment.

    ``variables`` lists the names that are reported as locals, in
    declaration order.  A ``with`` statement scope has a *target* mapping
    whose keys resolve before the scope's own bindings.  ``var``
    declarations bind in the nearest scope created with ``function=True``:
    a call's scope or the program's top scope.
    """

    __slots__ = ("parent", "values", "constants", "variables", "target", "function")

    def __init__(
        self,
        parent: Scope | None = None,
        *,
        target: dict[str, Any] | None = None,
        function: bool = False,
    ):
        self.parent = parent
        self.values: dict[str, Any] = {}
        self.constants: set[str] = set()
        self.variables: list[str] = []
        self.target = target
        self.function = function

    def copy(self) -> Scope:
        """A sibling scope holding the same bindings, for per-iteration loop variables."""
        fresh = Scope(self.parent, target=self.target, function=self.function)
        fresh.values.update(self.values)
        fresh.constants.update(self.constants)
        fresh.variables.extend(self.variables)
        return fresh

    def function_scope(self) -> Scope:
        scope = self
        while not scope.function and scope.parent is not None:
            scope = scope.parent
        return scope

    def declare(self, name: str, value: Any, *, kind: str = "let", report: bool = True) -> None:
        if name in self.values and kind != "var" and name in self.variables:
            raise js_error("SyntaxError", f"Identifier '{name}' has already been declared")
        self.values[name] = value
        if kind == "const":
            self.constants.add(name)
        if report and name not in self.variables:
            self.variables.append(name)

    def resolve(self, name: str) -> Scope | None:
        scope: Scope | None = self
        while scope is not None:
            if scope.target is not None and name in scope.target:
                return scope
            if name in scope.values:
                return scope
            scope = scope.parent
        return None


class _BreakSignal(Exception):
    pass


class _ContinueSignal(Exception):
    pass


class _ReturnSignal(Exception):
    def __init__(self, value: Any):
        self.value = value
        super().__init__()


# ---------------------------------------------------------------------------
# Value semantics
# ---------------------------------------------------------------------------


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def normalize_number(value: int | float) -> int | float:
    """Keep integral results as ``int`` and large ones as ``float``."""
    if isinstance(value, float):
        if value.is_integer() and abs(value) <= _MAX_SAFE_INTEGER:
            return int(value)
        return value
    if abs(value) > _MAX_SAFE_INTEGER:
        try:
            return float(value)
        except OverflowError:
            return math.inf if value > 0 else -math.inf
    return value


def type_of(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (JSFunction, BuiltinFunction)):
        return "function"
    return "object"


def truthy(value: Any) -> bool:
    if value is None or value is UNDEFINED:
        return False
    if isinstance(value, bool):
        return value
    if is_number(value):
        return not (value == 0 or math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def to_number(value: Any) -> int | float:
    if isinstance(value, bool):
        return int(value)
    if is_number(value):
        return value
    if value is None:
        return 0
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            if text[:2] in ("0x", "0X"):
                return int(text, 16)
            return normalize_number(float(text))
        except ValueError:
            return math.nan
    if isinstance(value, list):
        return to_number(to_string(value))
    return math.nan


def to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return "null"
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, list):
        return ",".join("" if item is None or item is UNDEFINED else to_string(item) for item in value)
    if isinstance(value, JSFunction):
        return f"function {value.name or ''}() {{ [code] }}"
    if isinstance(value, BuiltinFunction):
        return f"function {value.name}() {{ [native code] }}"
    return "[object Object]"


def format_value(value: Any, _seen: frozenset[int] = frozenset()) -> str:
    """Render a value the way a console would, e.g. ``[1, "a", null]``."""
    if isinstance(value, str):
        return json.dumps(value)
    if isinstance(value, (list, dict)):
        if id(value) in _seen:
            return "[Circular]"
        seen = _seen | {id(value)}
        if isinstance(value, list):
            return "[" + ", ".join(format_value(item, seen) for item in value) + "]"
        items = (f"{json.dumps(str(key))}: {format_value(item, seen)}" for key, item in value.items())
        return "{" + ", ".join(items) + "}"
    if isinstance(value, (JSFunction, BuiltinFunction)):
        return repr(value)
    return to_string(value)


def _to_primitive(value: Any) -> Any:
    if isinstance(value, (list, dict, JSFunction, BuiltinFunction)):
        return to_string(value)
    return value


def _to_int32(value: Any) -> int:
    number = to_number(value)
    if math.isnan(number) or math.isinf(number):
        return 0
    result = int(number) & 0xFFFFFFFF
    return result - 2**32 if result >= 2**31 else result


def _to_integer(value: Any, default: int) -> int:
    if value is UNDEFINED:
        return default
    number = to_number(value)
    if math.isnan(number):
        return 0
    if math.isinf(number):
        return _MAX_SAFE_INTEGER if number > 0 else -_MAX_SAFE_INTEGER
    return int(number)


def strict_equals(left: Any, right: Any) -> bool:
    if is_number(left) and is_number(right):
        return left == right
    if type_of(left) != type_of(right) or (left is None) != (right is None):
        return False
    if isinstance(left, (list, dict, JSFunction, BuiltinFunction)):
        return left is right
    return left == right


def loose_equals(left: Any, right: Any) -> bool:
    left_nullish = left is None or left is UNDEFINED
    right_nullish = right is None or right is UNDEFINED
    if left_nullish or right_nullish:
        return left_nullish and right_nullish
    if type_of(left) == type_of(right):
        return strict_equals(left, right)
    if isinstance(left, bool) or isinstance(right, bool):
        return loose_equals(to_number(left), to_number(right))
    if (is_number(left) and isinstance(right, str)) or (isinstance(left, str) and is_number(right)):
        return to_number(left) == to_number(right)
    return loose_equals(_to_primitive(left), _to_primitive(right)) if _is_object(left) or _is_object(right) else False


def _is_object(value: Any) -> bool:
    return isinstance(value, (list, dict, JSFunction, BuiltinFunction))


def _compare(operator: str, left: Any, right: Any) -> bool:
    left, right = _to_primitive(left), _to_primitive(right)
    if not (isinstance(left, str) and isinstance(right, str)):
        left, right = to_number(left), to_number(right)
        if math.isnan(left) or math.isnan(right):
            return False
    if operator == "<":
        return left < right
    if operator == ">":
        return left > right
    if operator == "<=":
        return left <= right
    return left >= right


def _divide(left: int | float, right: int | float) -> int | float:
    if right == 0:
        if left == 0 or math.isnan(left):
            return math.nan
        return math.copysign(math.inf, left) * math.copysign(1, right)
    return normalize_number(left / right)


def _remainder(left: int | float, right: int | float) -> int | float:
    if right == 0 or math.isinf(left) or math.isnan(left) or math.isnan(right):
        return math.nan
    if math.isinf(right):
        return left
    return normalize_number(math.fmod(left, right))


def _power(left: int | float, right: int | float) -> int | float:
    try:
        result = left**right
    except ZeroDivisionError:
        return math.inf
    except OverflowError:
        return math.inf
    if isinstance(result, complex):
        return math.nan
    return normalize_number(result)


def binary_operation(operator: str, left: Any, right: Any) -> Any:
    """Apply a non-logical binary operator with JavaScript coercions."""
    if operator == "+":
        left, right = _to_primitive(left), _to_primitive(right)
        if isinstance(left, str) or isinstance(right, str):
            return to_string(left) + to_string(right)
        return normalize_number(to_number(left) + to_number(right))
    if operator == "===":
        return strict_equals(left, right)
    if operator == "!==":
        return not strict_equals(left, right)
    if operator == "==":
        return loose_equals(left, right)
    if operator == "!=":
        return not loose_equals(left, right)
    if operator in ("<", ">", "<=", ">="):
        return _compare(operator, left, right)
    if operator == "in":
        return _has_property(right, left)
    if operator in ("&", "|", "^", "<<", ">>", ">>>"):
        return _bitwise(operator, left, right)

    a, b = to_number(left), to_number(right)
    if operator == "-":
        return normalize_number(a - b)
    if operator == "*":
        return normalize_number(a * b)
    if operator == "/":
        return _divide(a, b)
    if operator == "%":
        return _remainder(a, b)
    if operator == "**":
        return _power(a, b)
    raise js_error("SyntaxError", f"Unknown operator {operator}")


def _bitwise(operator: str, left: Any, right: Any) -> int:
    a, b = _to_int32(left), _to_int32(right)
    if operator == "&":
        return _to_int32(a & b)
    if operator == "|":
        return _to_int32(a | b)
    if operator == "^":
        return _to_int32(a ^ b)
    shift = b & 31
    if operator == "<<":
        return _to_int32(a << shift)
    if operator == ">>":
        return a >> shift
    return (a & 0xFFFFFFFF) >> shift


def _has_property(obj: Any, key: Any) -> bool:
    if isinstance(obj, dict):
        return to_string(key) in obj
    if isinstance(obj, list):
        index = _array_index(key)
        return (index is not None and index < len(obj)) or to_string(key) == "length"
    raise js_error("TypeError", f"Cannot use 'in' operator to search for '{to_string(key)}' in {to_string(obj)}")


# ---------------------------------------------------------------------------
# Members and builtin methods
# ---------------------------------------------------------------------------


def _array_index(key: Any) -> int | None:
    if is_number(key) and not math.isnan(key) and not math.isinf(key) and key >= 0 and float(key).is_integer():
        return int(key)
    if isinstance(key, str) and key.isdigit():
        return int(key)
    return None


def _array_push(array: list[Any], args: list[Any]) -> int:
    array.extend(args)
    return len(array)


def _array_pop(array: list[Any], args: list[Any]) -> Any:
    return array.pop() if array else UNDEFINED


def _array_shift(array: list[Any], args: list[Any]) -> Any:
    return array.pop(0) if array else UNDEFINED


def _array_unshift(array: list[Any], args: list[Any]) -> int:
    array[0:0] = args
    return len(array)


def _slice(sequence: list[Any] | str, args: list[Any]) -> list[Any] | str:
    start = _to_integer(args[0], 0) if args else 0
    end = _to_integer(args[1], len(sequence)) if len(args) > 1 else len(sequence)
    return sequence[start:end]


def _index_of(sequence: list[Any] | str, args: list[Any]) -> int:
    needle = args[0] if args else UNDEFINED
    if isinstance(sequence, str):
        return sequence.find(to_string(needle))
    for index, item in enumerate(sequence):
        if strict_equals(item, needle):
            return index
    return -1


def _includes(sequence: list[Any] | str, args: list[Any]) -> bool:
    needle = args[0] if args else UNDEFINED
    if isinstance(sequence, str):
        return to_string(needle) in sequence
    if is_number(needle) and math.isnan(needle):
        return any(is_number(item) and math.isnan(item) for item in sequence)
    return any(strict_equals(item, needle) for item in sequence)


def _array_join(array: list[Any], args: list[Any]) -> str:
    separator = "," if not args or args[0] is UNDEFINED else to_string(args[0])
    return separator.join("" if item is None or item is UNDEFINED else to_string(item) for item in array)


def _array_concat(array: list[Any], args: list[Any]) -> list[Any]:
    result = list(array)
    for arg in args:
        if isinstance(arg, list):
            result.extend(arg)
        else:
            result.append(arg)
    return result


def _string_split(text: str, args: list[Any]) -> list[Any]:
    if not args or args[0] is UNDEFINED:
        return [text]
    separator = to_string(args[0])
    if separator == "":
        return list(text)
    return list(text.split(separator))


_ARRAY_METHODS: dict[str, Callable[[list[Any], list[Any]], Any]] = {
    "push": _array_push,
    "pop": _array_pop,
    "shift": _array_shift,
    "unshift": _array_unshift,
    "slice": _slice,
    "indexOf": _index_of,
    "includes": _includes,
    "join": _array_join,
    "concat": _array_concat,
}

_STRING_METHODS: dict[str, Callable[[str, list[Any]], Any]] = {
    "slice": _slice,
    "indexOf": _index_of,
    "includes": _includes,
    "split": _string_split,
    "toUpperCase": lambda text, args: text.upper(),
    "toLowerCase": lambda text, args: text.lower(),
    "trim": lambda text, args: text.strip(),
}

_NUMBER_METHODS: dict[str, Callable[[int | float, list[Any]], Any]] = {
    "toString": lambda number, args: to_string(number),
    "toFixed": lambda number, args: f"{number:.{_to_integer(args[0], 0) if args else 0}f}",
}


def get_member(obj: Any, key: Any) -> Any:
    if obj is None or obj is UNDEFINED:
        raise js_error("TypeError", f"Cannot read properties of {to_string(obj)} (reading '{to_string(key)}')")
    if isinstance(obj, dict):
        return obj.get(to_string(key), UNDEFINED)
    if isinstance(obj, (list, str)):
        index = _array_index(key)
        if index is not None:
            return obj[index] if index < len(obj) else UNDEFINED
        name = to_string(key)
        if name == "length":
            return len(obj)
        methods: Mapping[str, Callable[[Any, list[Any]], Any]] = (
            _ARRAY_METHODS if isinstance(obj, list) else _STRING_METHODS
        )
        if name in methods:
            return BuiltinFunction(name, partial(methods[name], obj))
        return UNDEFINED
    if is_number(obj) and to_string(key) in _NUMBER_METHODS:
        name = to_string(key)
        return BuiltinFunction(name, partial(_NUMBER_METHODS[name], obj))
    if isinstance(obj, (JSFunction, BuiltinFunction)) and to_string(key) == "name":
        return obj.name or ""
    return UNDEFINED


def set_member(obj: Any, key: Any, value: Any) -> None:
    if isinstance(obj, dict):
        obj[to_string(key)] = value
        return
    if isinstance(obj, list):
        index = _array_index(key)
        if index is not None:
            if index >= len(obj):
                obj.extend([UNDEFINED] * (index - len(obj) + 1))
            obj[index] = value
            return
        if to_string(key) == "length":
            length = _array_index(value)
            if length is None:
                raise js_error("RangeError", "Invalid array length")
            del obj[length:]
            obj.extend([UNDEFINED] * (length - len(obj)))
            return
    if obj is None or obj is UNDEFINED:
        raise js_error("TypeError", f"Cannot set properties of {to_string(obj)} (setting '{to_string(key)}')")
    raise js_error("TypeError", f"Cannot create property '{to_string(key)}' on {type_of(obj)} {format_value(obj)}")


def delete_member(obj: Any, key: Any) -> bool:
    if isinstance(obj, dict):
        obj.pop(to_string(key), None)
        return True
    if isinstance(obj, list):
        index = _array_index(key)
        if index is not None and index < len(obj):
            obj[index] = UNDEFINED
        return True
    if obj is None or obj is UNDEFINED:
        raise js_error("TypeError", f"Cannot convert {to_string(obj)} to object")
    return True


def iterate_values(value: Any) -> list[Any]:
    """Elements produced by spreading *value*."""
    if isinstance(value, list):
        return list(value)
    if isinstance(value, str):
        return list(value)
    raise js_error("TypeError", f"{format_value(value)} is not iterable")


def _math_round(args: list[Any]) -> int | float:
    number = to_number(args[0]) if args else math.nan
    if math.isnan(number) or math.isinf(number):
        return number
    return math.floor(number + 0.5)


def _math_reduce(function: Callable[..., Any], empty: float) -> Callable[[list[Any]], Any]:
    def apply(args: list[Any]) -> Any:
        numbers = [to_number(arg) for arg in args]
        if any(math.isnan(number) for number in numbers):
            return math.nan
        return function(numbers) if numbers else empty

    return apply


def _math_unary(function: Callable[[float], Any]) -> Callable[[list[Any]], Any]:
    def apply(args: list[Any]) -> Any:
        number = to_number(args[0]) if args else math.nan
        if math.isnan(number):
            return math.nan
        try:
            return normalize_number(function(number))
        except OverflowError:
            # floor, ceil and trunc of an infinity
            return number
        except ValueError:
            return math.nan

    return apply


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------


class Interpreter:
    """Runs an instrumented program body for one simulated thread.

    Args:
        thread_id: Bound to the ``threadId`` identifier.
        global_state: Shared mapping bound to the ``globals`` identifier.
        checkpoint: Called as ``checkpoint(thread_id, locals, line)`` before
            each statement; its result is awaited.
        seed: Seeds ``Math.random`` together with *thread_id*, so a replayed
            schedule sees the same random numbers.
    """

    def __init__(
        self,
        thread_id: int,
        global_state: dict[str, Any],
        checkpoint: CheckpointCallback,
        *,
        seed: int = 0,
    ):
        self.thread_id = thread_id
        self.global_state = global_state
        self.checkpoint = checkpoint
        self.random = random.Random(seed * 1_000_003 + thread_id)
        self.depth = 0

        self.builtins = Scope()
        for name, value in self._builtin_bindings().items():
            self.builtins.declare(name, value, kind="const", report=False)
        self.scope = Scope(self.builtins, function=True)

    def _builtin_bindings(self) -> dict[str, Any]:
        math_object = {
            "PI": math.pi,
            "E": math.e,
            "floor": BuiltinFunction("floor", _math_unary(math.floor)),
            "ceil": BuiltinFunction("ceil", _math_unary(math.ceil)),
            "trunc": BuiltinFunction("trunc", _math_unary(math.trunc)),
            "abs": BuiltinFunction("abs", _math_unary(abs)),
            "sqrt": BuiltinFunction("sqrt", _math_unary(math.sqrt)),
            "sign": BuiltinFunction("sign", _math_unary(lambda x: (x > 0) - (x < 0))),
            "round": BuiltinFunction("round", _math_round),
            "min": BuiltinFunction("min", _math_reduce(min, math.inf)),
            "max": BuiltinFunction("max", _math_reduce(max, -math.inf)),
            "random": BuiltinFunction("random", lambda args: self.random.random()),
        }
        console = {
            "log": BuiltinFunction("log", partial(self._console, logging.INFO)),
            "warn": BuiltinFunction("warn", partial(self._console, logging.WARNING)),
            "error": BuiltinFunction("error", partial(self._console, logging.ERROR)),
        }
        return {
            "threadId": self.thread_id,
            "globals": self.global_state,
            "Math": math_object,
            "console": console,
        }

    def _console(self, level: int, args: list[Any]) -> Any:
        message = " ".join(arg if isinstance(arg, str) else format_value(arg) for arg in args)
        logger.log(level, "[thread %d] %s", self.thread_id, message)
        return UNDEFINED

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, body: tuple[Statement, ...], terminal: Checkpoint) -> None:
        """Run a whole program, then issue the terminal checkpoint."""
        self._hoist(body)
        try:
            await self._exec_statements(body)
        except _ReturnSignal:
            return
        except (_BreakSignal, _ContinueSignal) as signal:
            raise self._illegal_jump(signal) from None
        pending = self.checkpoint(self.thread_id, self.snapshot_locals(), terminal.line)
        # The terminal checkpoint is issued but never awaited.
        if inspect.iscoroutine(pending):
            pending.close()

    async def evaluate_expression(self, node: Expression) -> Any:
        return await self.eval(node)

    def snapshot_locals(self) -> dict[str, Any]:
        """Names declared so far in every scope enclosing the current point."""
        chain: list[Scope] = []
        scope: Scope | None = self.scope
        while scope is not None and scope is not self.builtins:
            chain.append(scope)
            scope = scope.parent
        result: dict[str, Any] = {}
        for enclosing in reversed(chain):
            for name in enclosing.variables:
                result[name] = enclosing.values[name]
        return result

    async def _checkpoint(self, line: int) -> None:
        await self.checkpoint(self.thread_id, self.snapshot_locals(), line)

    @contextmanager
    def _scoped(self, scope: Scope) -> Iterator[Scope]:
        previous = self.scope
        self.scope = scope
        try:
            yield scope
        finally:
            self.scope = previous

    @staticmethod
    def _illegal_jump(signal: Exception) -> JSThrow:
        keyword = "break" if isinstance(signal, _BreakSignal) else "continue"
        return js_error("SyntaxError", f"Illegal {keyword} statement")

    # ------------------------------------------------------------------
    # Names
    # ------------------------------------------------------------------

    def lookup(self, name: str) -> Any:
        scope = self.scope.resolve(name)
        if scope is None:
            raise js_error("ReferenceError", f"{name} is not defined")
        if scope.target is not None and name in scope.target:
            return scope.target[name]
        return scope.values[name]

    def assign(self, name: str, value: Any) -> None:
        scope = self.scope.resolve(name)
        if scope is None:
            raise js_error("ReferenceError", f"{name} is not defined")
        if scope.target is not None and name in scope.target:
            scope.target[name] = value
            return
        if name in scope.constants:
            raise js_error("TypeError", "Assignment to constant variable.")
        scope.values[name] = value

    def _hoist(self, body: tuple[Statement, ...]) -> None:
        for node in body:
            if isinstance(node, FunctionDeclaration):
                function = JSFunction(node.name, node.params, node.body, self.scope, node.suspendable)
                self.scope.declare(node.name, function, kind="var", report=False)

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    async def exec(self, node: Statement) -> None:
        handler = self._STATEMENT_HANDLERS.get(type(node))
        if handler is None:
            raise RuntimeError(f"Cannot execute {type(node).__name__}")
        await handler(self, node)

    async def _exec_statements(self, body: tuple[Statement, ...]) -> None:
        for node in body:
            await self.exec(node)

    async def _exec_checkpoint(self, node: Checkpoint) -> None:
        await self._checkpoint(node.line)

    async def _exec_checkpointed(self, node: Checkpointed) -> None:
        await self._checkpoint(node.line)
        await self.exec(node.statement)

    async def _exec_control_checkpoint(self, checkpoint: Checkpoint | None) -> None:
        if checkpoint is not None:
            await self._checkpoint(checkpoint.line)

    async def _exec_expression_statement(self, node: ExpressionStatement) -> None:
        await self.eval(node.expression)

    async def _exec_nothing(self, node: Statement) -> None:
        return None

    async def _exec_return(self, node: ReturnStatement) -> None:
        value = UNDEFINED if node.argument is None else await self.eval(node.argument)
        raise _ReturnSignal(value)

    async def _exec_break(self, node: BreakStatement) -> None:
        raise _BreakSignal()

    async def _exec_continue(self, node: ContinueStatement) -> None:
        raise _ContinueSignal()

    async def _exec_throw(self, node: ThrowStatement) -> None:
        raise JSThrow(await self.eval(node.argument))

    async def _exec_variable_declaration(self, node: VariableDeclaration) -> None:
        target = self.scope.function_scope() if node.kind == "var" else self.scope
        for declarator in node.declarations:
            if declarator.init is None:
                if node.kind == "var" and declarator.name in target.values:
                    continue
                value = UNDEFINED
            else:
                value = await self.eval(declarator.init)
            target.declare(declarator.name, value, kind=node.kind)

    async def _exec_block(self, node: BlockStatement) -> None:
        with self._scoped(Scope(self.scope)):
            self._hoist(node.body)
            await self._exec_statements(node.body)

    async def _exec_function_declaration(self, node: FunctionDeclaration) -> None:
        # Already bound when the enclosing block was entered.
        if node.name not in self.scope.values:
            self._hoist((node,))

    async def _exec_if(self, node: IfStatement) -> None:
        if truthy(await self.eval(node.test)):
            await self.exec(node.consequent)
        elif node.alternate is not None:
            await self.exec(node.alternate)

    async def _exec_with(self, node: WithStatement) -> None:
        target = await self.eval(node.object)
        if not isinstance(target, dict):
            raise js_error("TypeError", f"with() requires an object, got {format_value(target)}")
        with self._scoped(Scope(self.scope, target=target)):
            await self.exec(node.body)

    async def _exec_try(self, node: TryStatement) -> None:
        try:
            await self._exec_block(node.block)
        except JSThrow as thrown:
            if node.handler is None:
                raise
            with self._scoped(Scope(self.scope)) as scope:
                if node.param is not None:
                    scope.declare(node.param, thrown.value)
                self._hoist(node.handler.body)
                await self._exec_statements(node.handler.body)
        finally:
            if node.finalizer is not None:
                await self._exec_block(node.finalizer)

    async def _loop_body(self, body: Statement) -> bool:
        """Run one iteration; returns False when the loop was broken out of."""
        try:
            await self.exec(body)
        except _BreakSignal:
            return False
        except _ContinueSignal:
            pass
        return True

    async def _exec_while(self, node: WhileStatement) -> None:
        while True:
            await self._exec_control_checkpoint(node.test_checkpoint)
            if not truthy(await self.eval(node.test)):
                return
            if not await self._loop_body(node.body):
                return

    async def _exec_do_while(self, node: DoWhileStatement) -> None:
        while True:
            if not await self._loop_body(node.body):
                return
            await self._exec_control_checkpoint(node.test_checkpoint)
            if not truthy(await self.eval(node.test)):
                return

    async def _exec_for(self, node: ForStatement) -> None:
        with self._scoped(Scope(self.scope)):
            if isinstance(node.init, VariableDeclaration):
                await self._exec_variable_declaration(node.init)
            elif node.init is not None:
                await self.eval(node.init)
            while True:
                await self._exec_control_checkpoint(node.test_checkpoint)
                if node.test is not None and not truthy(await self.eval(node.test)):
                    return
                if not await self._loop_body(node.body):
                    return
                # Fresh let/const bindings per iteration.
                self.scope = self.scope.copy()
                if node.update is not None:
                    await self._exec_control_checkpoint(node.update_checkpoint)
                    await self.eval(node.update)

    async def _exec_for_in(self, node: ForInStatement) -> None:
        subject = await self.eval(node.right)
        if subject is None or subject is UNDEFINED:
            keys: list[str] = []
        elif isinstance(subject, dict):
            keys = [str(key) for key in subject]
        elif isinstance(subject, (list, str)):
            keys = [str(index) for index in range(len(subject))]
        else:
            keys = []
        position = 0
        while True:
            await self._exec_control_checkpoint(node.test_checkpoint)
            if position >= len(keys):
                return
            key = keys[position]
            position += 1
            if not await self._iteration(node.kind, node.name, key, node.body):
                return

    async def _exec_for_of(self, node: ForOfStatement) -> None:
        subject = await self.eval(node.right)
        if not isinstance(subject, (list, str)):
            raise js_error("TypeError", f"{format_value(subject)} is not iterable")
        position = 0
        while True:
            await self._exec_control_checkpoint(node.test_checkpoint)
            # Arrays are read live, so elements pushed mid-loop are visited.
            if position >= len(subject):
                return
            item = subject[position]
            position += 1
            if not await self._iteration(node.kind, node.name, item, node.body):
                return

    async def _iteration(self, kind: str | None, name: str, value: Any, body: Statement) -> bool:
        if kind is None:
            self.assign(name, value)
            return await self._loop_body(body)
        if kind == "var":
            self.scope.function_scope().declare(name, value, kind="var")
            return await self._loop_body(body)
        with self._scoped(Scope(self.scope)) as scope:
            scope.declare(name, value, kind=kind)
            return await self._loop_body(body)

    _STATEMENT_HANDLERS: dict[type, Callable[[Interpreter, Any], Awaitable[None]]] = {
        Checkpoint: _exec_checkpoint,
        Checkpointed: _exec_checkpointed,
        ExpressionStatement: _exec_expression_statement,
        EmptyStatement: _exec_nothing,
        DebuggerStatement: _exec_nothing,
        ReturnStatement: _exec_return,
        BreakStatement: _exec_break,
        ContinueStatement: _exec_continue,
        ThrowStatement: _exec_throw,
        VariableDeclaration: _exec_variable_declaration,
        BlockStatement: _exec_block,
        FunctionDeclaration: _exec_function_declaration,
        IfStatement: _exec_if,
        WithStatement: _exec_with,
        TryStatement: _exec_try,
        WhileStatement: _exec_while,
        DoWhileStatement: _exec_do_while,
        ForStatement: _exec_for,
        ForInStatement: _exec_for_in,
        ForOfStatement: _exec_for_of,
    }

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    async def eval(self, node: Expression) -> Any:
        handler = self._EXPRESSION_HANDLERS.get(type(node))
        if handler is None:
            raise RuntimeError(f"Cannot evaluate {type(node).__name__}")
        return await handler(self, node)

    async def _eval_list(self, nodes: tuple[Expression, ...]) -> list[Any]:
        values: list[Any] = []
        for node in nodes:
            if isinstance(node, SpreadElement):
                values.extend(iterate_values(await self.eval(node.argument)))
            else:
                values.append(await self.eval(node))
        return values

    async def _eval_literal(self, node: Literal) -> Any:
        return node.value

    async def _eval_template(self, node: TemplateLiteral) -> str:
        parts = [node.quasis[0]]
        for expression, quasi in zip(node.expressions, node.quasis[1:]):
            parts.append(to_string(await self.eval(expression)))
            parts.append(quasi)
        return "".join(parts)

    async def _eval_identifier(self, node: Identifier) -> Any:
        return self.lookup(node.name)

    async def _eval_spread(self, node: SpreadElement) -> Any:
        raise js_error("SyntaxError", "Spread syntax is only allowed in arrays and calls")

    async def _eval_array(self, node: ArrayExpression) -> list[Any]:
        return await self._eval_list(node.elements)

    async def _member_key(self, node: MemberExpression) -> Any:
        if node.computed:
            return await self.eval(node.property)
        return node.property.value  # type: ignore[attr-defined]

    async def _eval_member(self, node: MemberExpression) -> Any:
        obj = await self.eval(node.object)
        return get_member(obj, await self._member_key(node))

    async def _eval_bare_call(self, node: CallExpression) -> Any:
        raise RuntimeError(f"Call on line {node.line} was not instrumented")

    async def _eval_await_call(self, node: AwaitCall) -> Any:
        call = node.call
        callee = await self.eval(call.callee)
        args = await self._eval_list(call.arguments)
        if isinstance(callee, BuiltinFunction):
            return callee.impl(args)
        if isinstance(callee, JSFunction):
            return await self.call_function(callee, args)
        raise js_error("TypeError", f"{_describe(call.callee)} is not a function")

    async def call_function(self, function: JSFunction, args: list[Any]) -> Any:
        if self.depth >= MAX_CALL_DEPTH:
            raise js_error("RangeError", "Maximum call stack size exceeded")
        scope = Scope(function.closure, function=True)
        for index, name in enumerate(function.params):
            scope.declare(name, args[index] if index < len(args) else UNDEFINED, kind="var")
        self.depth += 1
        try:
            with self._scoped(scope):
                if not isinstance(function.body, BlockStatement):
                    return await self.eval(function.body)
                self._hoist(function.body.body)
                await self._exec_statements(function.body.body)
        except _ReturnSignal as signal:
            return signal.value
        except (_BreakSignal, _ContinueSignal) as signal:
            raise self._illegal_jump(signal) from None
        finally:
            self.depth -= 1
        return UNDEFINED

    async def _eval_function(self, node: FunctionExpression | ArrowFunctionExpression) -> JSFunction:
        name = getattr(node, "name", None)
        return JSFunction(name, node.params, node.body, self.scope, node.suspendable)

    async def _reference(self, target: Expression) -> tuple[Any, Any]:
        """Resolve an assignment target to ``(container, key)``.

        *container* is ``None`` for a plain identifier.
        """
        if isinstance(target, Identifier):
            return None, target.name
        if isinstance(target, MemberExpression):
            return await self.eval(target.object), await self._member_key(target)
        raise js_error("SyntaxError", "Invalid assignment target")

    def _read(self, reference: tuple[Any, Any], target: Expression) -> Any:
        container, key = reference
        if isinstance(target, Identifier):
            return self.lookup(key)
        return get_member(container, key)

    def _write(self, reference: tuple[Any, Any], target: Expression, value: Any) -> None:
        container, key = reference
        if isinstance(target, Identifier):
            self.assign(key, value)
        else:
            set_member(container, key, value)

    async def _eval_assignment(self, node: AssignmentExpression) -> Any:
        reference = await self._reference(node.target)
        operator = node.operator
        if operator == "=":
            value = await self.eval(node.value)
        elif operator in ("&&=", "||=", "??="):
            current = self._read(reference, node.target)
            if operator == "&&=" and not truthy(current):
                return current
            if operator == "||=" and truthy(current):
                return current
            if operator == "??=" and current is not None and current is not UNDEFINED:
                return current
            value = await self.eval(node.value)
        else:
            current = self._read(reference, node.target)
            value = binary_operation(operator[:-1], current, await self.eval(node.value))
        self._write(reference, node.target, value)
        return value

    async def _eval_update(self, node: UpdateExpression) -> Any:
        reference = await self._reference(node.argument)
        old = to_number(self._read(reference, node.argument))
        new = normalize_number(old + 1 if node.operator == "++" else old - 1)
        self._write(reference, node.argument, new)
        return new if node.prefix else old

    async def _eval_unary(self, node: UnaryExpression) -> Any:
        operator = node.operator
        if operator == "typeof" and isinstance(node.argument, Identifier):
            if self.scope.resolve(node.argument.name) is None:
                return "undefined"
        if operator == "delete":
            if isinstance(node.argument, MemberExpression):
                obj = await self.eval(node.argument.object)
                return delete_member(obj, await self._member_key(node.argument))
            await self.eval(node.argument)
            return True
        value = await self.eval(node.argument)
        if operator == "!":
            return not truthy(value)
        if operator == "-":
            return normalize_number(-to_number(value))
        if operator == "+":
            return to_number(value)
        if operator == "~":
            return ~_to_int32(value)
        if operator == "typeof":
            return type_of(value)
        return UNDEFINED  # void

    async def _eval_binary(self, node: BinaryExpression) -> Any:
        left = await self.eval(node.left)
        right = await self.eval(node.right)
        return binary_operation(node.operator, left, right)

    async def _eval_logical(self, node: LogicalExpression) -> Any:
        left = await self.eval(node.left)
        if node.operator == "&&":
            return await self.eval(node.right) if truthy(left) else left
        if node.operator == "||":
            return left if truthy(left) else await self.eval(node.right)
        return await self.eval(node.right) if left is None or left is UNDEFINED else left

    async def _eval_conditional(self, node: ConditionalExpression) -> Any:
        if truthy(await self.eval(node.test)):
            return await self.eval(node.consequent)
        return await self.eval(node.alternate)

    async def _eval_sequence(self, node: SequenceExpression) -> Any:
        value: Any = UNDEFINED
        for expression in node.expressions:
            value = await self.eval(expression)
        return value

    _EXPRESSION_HANDLERS: dict[type, Callable[[Interpreter, Any], Awaitable[Any]]] = {
        Literal: _eval_literal,
        TemplateLiteral: _eval_template,
        Identifier: _eval_identifier,
        SpreadElement: _eval_spread,
        ArrayExpression: _eval_array,
        MemberExpression: _eval_member,
        CallExpression: _eval_bare_call,
        AwaitCall: _eval_await_call,
        FunctionExpression: _eval_function,
        ArrowFunctionExpression: _eval_function,
        AssignmentExpression: _eval_assignment,
        UpdateExpression: _eval_update,
        UnaryExpression: _eval_unary,
        BinaryExpression: _eval_binary,
        LogicalExpression: _eval_logical,
        ConditionalExpression: _eval_conditional,
        SequenceExpression: _eval_sequence,
    }


def _describe(node: Expression) -> str:
    if isinstance(node, Identifier):
        return node.name
    if isinstance(node, MemberExpression):
        if node.computed:
            return f"{_describe(node.object)}[...]"
        return f"{_describe(node.object)}.{node.property.value}"  # type: ignore[attr-defined]
    return "expression"
