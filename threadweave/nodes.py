"""Syntax tree for the threadweave statement subset.

Every node is a frozen dataclass with tuple children, so a tree cannot be
mutated once it has been built.  The node kinds form a closed set:

* ``STATEMENT_TYPES`` and ``EXPRESSION_TYPES`` list every kind the
  evaluator knows how to run.
* :class:`Unsupported` is the one explicit variant for constructs outside
  the subset.  The parser emits it in place of the construct, and the
  validator/instrumenter always reject it.
* :class:`Checkpoint`, :class:`Checkpointed` and :class:`AwaitCall` only
  appear in trees produced by :mod:`threadweave.instrument`.

Node names follow ESTree so error messages name constructs the way
JavaScript tooling does.  ``line`` is always 0-indexed.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any

# Line reported by the checkpoint issued after the last top-level statement.
TERMINAL_LINE = sys.maxsize


class _Undefined:
    """The ``undefined`` value of the simulated language."""

    _instance: _Undefined | None = None

    def __new__(cls) -> _Undefined:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> _Undefined:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> _Undefined:
        return self


UNDEFINED = _Undefined()


@dataclass(frozen=True)
class Node:
    line: int


class Statement(Node):
    pass


class Expression(Node):
    pass


# ---------------------------------------------------------------------------
# Unsupported constructs and module-level syntax
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Unsupported(Statement, Expression):
    """Placeholder for a construct outside the subset, e.g. ``SwitchStatement``."""

    construct: str


@dataclass(frozen=True)
class Directive(Statement):
    """A directive prologue entry such as ``"use strict";``."""

    value: str


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExpressionStatement(Statement):
    expression: Expression


@dataclass(frozen=True)
class EmptyStatement(Statement):
    pass


@dataclass(frozen=True)
class DebuggerStatement(Statement):
    pass


@dataclass(frozen=True)
class ReturnStatement(Statement):
    argument: Expression | None


@dataclass(frozen=True)
class BreakStatement(Statement):
    pass


@dataclass(frozen=True)
class ContinueStatement(Statement):
    pass


@dataclass(frozen=True)
class ThrowStatement(Statement):
    argument: Expression


@dataclass(frozen=True)
class VariableDeclarator(Node):
    name: str
    init: Expression | None


@dataclass(frozen=True)
class VariableDeclaration(Statement):
    kind: str  # "let", "const" or "var"
    declarations: tuple[VariableDeclarator, ...]


@dataclass(frozen=True)
class BlockStatement(Statement):
    body: tuple[Statement, ...]


@dataclass(frozen=True)
class IfStatement(Statement):
    test: Expression
    consequent: Statement
    alternate: Statement | None


@dataclass(frozen=True)
class WithStatement(Statement):
    object: Expression
    body: Statement


@dataclass(frozen=True)
class TryStatement(Statement):
    block: BlockStatement
    param: str | None
    handler: BlockStatement | None
    finalizer: BlockStatement | None


@dataclass(frozen=True)
class FunctionDeclaration(Statement):
    name: str
    params: tuple[str, ...]
    body: BlockStatement
    suspendable: bool = False


@dataclass(frozen=True)
class Checkpoint(Statement):
    """Report position and locals, then wait to be stepped."""


@dataclass(frozen=True)
class Checkpointed(Statement):
    """A leaf statement preceded by its own checkpoint."""

    statement: Statement


# Loops carry the checkpoints for their control evaluations as fields, since
# those evaluations are not statements of their own.


@dataclass(frozen=True)
class WhileStatement(Statement):
    test: Expression
    body: Statement
    test_checkpoint: Checkpoint | None = None


@dataclass(frozen=True)
class DoWhileStatement(Statement):
    body: Statement
    test: Expression
    test_checkpoint: Checkpoint | None = None


@dataclass(frozen=True)
class ForStatement(Statement):
    init: VariableDeclaration | Expression | None
    test: Expression | None
    update: Expression | None
    body: Statement
    test_checkpoint: Checkpoint | None = None
    update_checkpoint: Checkpoint | None = None


@dataclass(frozen=True)
class ForInStatement(Statement):
    kind: str | None  # None when the loop assigns an existing binding
    name: str
    right: Expression
    body: Statement
    test_checkpoint: Checkpoint | None = None


@dataclass(frozen=True)
class ForOfStatement(Statement):
    kind: str | None
    name: str
    right: Expression
    body: Statement
    test_checkpoint: Checkpoint | None = None


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal(Expression):
    value: Any


@dataclass(frozen=True)
class TemplateLiteral(Expression):
    quasis: tuple[str, ...]
    expressions: tuple[Expression, ...]


@dataclass(frozen=True)
class Identifier(Expression):
    name: str


@dataclass(frozen=True)
class SpreadElement(Expression):
    argument: Expression


@dataclass(frozen=True)
class ArrayExpression(Expression):
    elements: tuple[Expression, ...]


@dataclass(frozen=True)
class MemberExpression(Expression):
    object: Expression
    property: Expression
    computed: bool


@dataclass(frozen=True)
class CallExpression(Expression):
    callee: Expression
    arguments: tuple[Expression, ...]


@dataclass(frozen=True)
class AwaitCall(Expression):
    """A call whose result is awaited, so checkpoints inside it suspend."""

    call: CallExpression


@dataclass(frozen=True)
class FunctionExpression(Expression):
    name: str | None
    params: tuple[str, ...]
    body: BlockStatement
    suspendable: bool = False


@dataclass(frozen=True)
class ArrowFunctionExpression(Expression):
    params: tuple[str, ...]
    body: BlockStatement | Expression
    suspendable: bool = False


@dataclass(frozen=True)
class AssignmentExpression(Expression):
    operator: str
    target: Expression
    value: Expression


@dataclass(frozen=True)
class UpdateExpression(Expression):
    operator: str
    prefix: bool
    argument: Expression


@dataclass(frozen=True)
class UnaryExpression(Expression):
    operator: str
    argument: Expression


@dataclass(frozen=True)
class BinaryExpression(Expression):
    operator: str
    left: Expression
    right: Expression


@dataclass(frozen=True)
class LogicalExpression(Expression):
    operator: str
    left: Expression
    right: Expression


@dataclass(frozen=True)
class ConditionalExpression(Expression):
    test: Expression
    consequent: Expression
    alternate: Expression


@dataclass(frozen=True)
class SequenceExpression(Expression):
    expressions: tuple[Expression, ...]


# Leaf statements are the ones that get a checkpoint of their own.
LEAF_STATEMENT_TYPES: tuple[type[Statement], ...] = (
    ExpressionStatement,
    EmptyStatement,
    ReturnStatement,
    BreakStatement,
    ContinueStatement,
    ThrowStatement,
    VariableDeclaration,
    DebuggerStatement,
)

LOOP_STATEMENT_TYPES: tuple[type[Statement], ...] = (
    WhileStatement,
    DoWhileStatement,
    ForStatement,
    ForInStatement,
    ForOfStatement,
)

STATEMENT_TYPES: tuple[type[Statement], ...] = (
    *LEAF_STATEMENT_TYPES,
    *LOOP_STATEMENT_TYPES,
    BlockStatement,
    IfStatement,
    WithStatement,
    TryStatement,
    FunctionDeclaration,
    Checkpoint,
    Checkpointed,
)

FUNCTION_TYPES: tuple[type[Expression], ...] = (FunctionExpression, ArrowFunctionExpression)

EXPRESSION_TYPES: tuple[type[Expression], ...] = (
    Literal,
    TemplateLiteral,
    Identifier,
    SpreadElement,
    ArrayExpression,
    MemberExpression,
    CallExpression,
    AwaitCall,
    *FUNCTION_TYPES,
    AssignmentExpression,
    UpdateExpression,
    UnaryExpression,
    BinaryExpression,
    LogicalExpression,
    ConditionalExpression,
    SequenceExpression,
)
