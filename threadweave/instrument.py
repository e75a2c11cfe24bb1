"""
Instrumentation: turn program text into a steppable program.

The instrumenter walks the validated syntax tree and returns a new frozen
tree in which

* every leaf statement is wrapped in :class:`~threadweave.nodes.Checkpointed`,
  so it reports ``(thread_id, locals, line)`` and waits before running;
* every loop carries a checkpoint for each evaluation of its continuation
  test and, for ``for`` loops, of its update expression, so each iteration
  yields control;
* every function is marked suspension-capable and its body instrumented;
* every call inside an expression is wrapped in
  :class:`~threadweave.nodes.AwaitCall`, so a checkpoint reached inside the
  callee suspends the caller too.

The result is a :class:`Program`, callable as
``program(thread_id, global_state, checkpoint)`` and returning a coroutine::

    program = instrument("let x = 1;\\nx = x + 1;")
    await program(0, {}, checkpoint)

Anything outside the subset raises :class:`~threadweave.errors.UnsupportedSyntax`
here, before any thread runs.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable, Coroutine, Mapping
from dataclasses import dataclass
from typing import Any

from threadweave.errors import UnsupportedSyntax
from threadweave.interpreter import CheckpointCallback, Interpreter
from threadweave.nodes import (
    TERMINAL_LINE,
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
    Node,
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
    VariableDeclarator,
    WhileStatement,
    WithStatement,
)
from threadweave.parser import parse, parse_expression
from threadweave.validator import validate_top_level


@dataclass(frozen=True)
class Program:
    """An instrumented program, ready to be run by many threads.

    Attributes:
        source: The original program text, for position-annotated display.
        body: Instrumented top-level statements.
        terminal: Checkpoint issued (and not awaited) after the last
            top-level statement.
    """

    source: str
    body: tuple[Statement, ...]
    terminal: Checkpoint = Checkpoint(TERMINAL_LINE)

    def __call__(
        self,
        thread_id: int,
        global_state: dict[str, Any],
        checkpoint: CheckpointCallback,
        *,
        seed: int = 0,
    ) -> Coroutine[Any, Any, None]:
        """Start one invocation; the returned coroutine finishes with the thread."""
        interpreter = Interpreter(thread_id, global_state, checkpoint, seed=seed)
        return interpreter.run(self.body, self.terminal)

    @property
    def lines(self) -> list[str]:
        return self.source.split("\n")


def _construct_name(node: Node) -> str:
    return getattr(node, "construct", type(node).__name__)


class Instrumenter:
    """Rewrites a syntax tree, inserting checkpoints and call awaits."""

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def statements(self, body: tuple[Statement, ...]) -> tuple[Statement, ...]:
        return tuple(self.statement(node) for node in body)

    def statement(self, node: Statement) -> Statement:
        handler = self._STATEMENT_HANDLERS.get(type(node))
        if handler is None:
            raise UnsupportedSyntax(_construct_name(node), node.line)
        return handler(self, node)

    def _leaf(self, node: Statement) -> Statement:
        return Checkpointed(node.line, node)

    def _expression_statement(self, node: ExpressionStatement) -> Statement:
        return self._leaf(ExpressionStatement(node.line, self.expression(node.expression)))

    def _return(self, node: ReturnStatement) -> Statement:
        argument = None if node.argument is None else self.expression(node.argument)
        return self._leaf(ReturnStatement(node.line, argument))

    def _throw(self, node: ThrowStatement) -> Statement:
        return self._leaf(ThrowStatement(node.line, self.expression(node.argument)))

    def _declaration(self, node: VariableDeclaration) -> VariableDeclaration:
        declarators = tuple(
            VariableDeclarator(d.line, d.name, None if d.init is None else self.expression(d.init))
            for d in node.declarations
        )
        return VariableDeclaration(node.line, node.kind, declarators)

    def _variable_statement(self, node: VariableDeclaration) -> Statement:
        return self._leaf(self._declaration(node))

    def _block(self, node: BlockStatement) -> BlockStatement:
        return BlockStatement(node.line, self.statements(node.body))

    def _if(self, node: IfStatement) -> Statement:
        alternate = None if node.alternate is None else self.statement(node.alternate)
        return IfStatement(node.line, self.expression(node.test), self.statement(node.consequent), alternate)

    def _with(self, node: WithStatement) -> Statement:
        return WithStatement(node.line, self.expression(node.object), self.statement(node.body))

    def _try(self, node: TryStatement) -> Statement:
        return TryStatement(
            node.line,
            self._block(node.block),
            node.param,
            None if node.handler is None else self._block(node.handler),
            None if node.finalizer is None else self._block(node.finalizer),
        )

    def _function_declaration(self, node: FunctionDeclaration) -> Statement:
        return FunctionDeclaration(node.line, node.name, node.params, self._block(node.body), suspendable=True)

    def _while(self, node: WhileStatement) -> Statement:
        return WhileStatement(
            node.line,
            self.expression(node.test),
            self.statement(node.body),
            test_checkpoint=Checkpoint(node.test.line),
        )

    def _do_while(self, node: DoWhileStatement) -> Statement:
        return DoWhileStatement(
            node.line,
            self.statement(node.body),
            self.expression(node.test),
            test_checkpoint=Checkpoint(node.test.line),
        )

    def _for(self, node: ForStatement) -> Statement:
        init: VariableDeclaration | Expression | None
        if node.init is None:
            init = None
        elif isinstance(node.init, VariableDeclaration):
            init = self._declaration(node.init)
        else:
            init = self.expression(node.init)
        test = None if node.test is None else self.expression(node.test)
        update = None if node.update is None else self.expression(node.update)
        return ForStatement(
            node.line,
            init,
            test,
            update,
            self.statement(node.body),
            # A missing test still gets a checkpoint so `for (;;)` yields.
            test_checkpoint=Checkpoint(node.line if node.test is None else node.test.line),
            update_checkpoint=None if node.update is None else Checkpoint(node.update.line),
        )

    def _for_each(self, node: ForInStatement | ForOfStatement) -> Statement:
        return dataclasses.replace(
            node,
            right=self.expression(node.right),
            body=self.statement(node.body),
            test_checkpoint=Checkpoint(node.line),
        )

    _STATEMENT_HANDLERS: dict[type, Callable[[Instrumenter, Any], Statement]] = {
        ExpressionStatement: _expression_statement,
        EmptyStatement: _leaf,
        DebuggerStatement: _leaf,
        BreakStatement: _leaf,
        ContinueStatement: _leaf,
        ReturnStatement: _return,
        ThrowStatement: _throw,
        VariableDeclaration: _variable_statement,
        BlockStatement: _block,
        IfStatement: _if,
        WithStatement: _with,
        TryStatement: _try,
        FunctionDeclaration: _function_declaration,
        WhileStatement: _while,
        DoWhileStatement: _do_while,
        ForStatement: _for,
        ForInStatement: _for_each,
        ForOfStatement: _for_each,
    }

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def expression(self, node: Expression) -> Expression:
        handler = self._EXPRESSION_HANDLERS.get(type(node))
        if handler is None:
            raise UnsupportedSyntax(_construct_name(node), node.line)
        return handler(self, node)

    def _expressions(self, nodes: tuple[Expression, ...]) -> tuple[Expression, ...]:
        return tuple(self.expression(node) for node in nodes)

    def _unchanged(self, node: Expression) -> Expression:
        return node

    def _template(self, node: TemplateLiteral) -> Expression:
        return TemplateLiteral(node.line, node.quasis, self._expressions(node.expressions))

    def _spread(self, node: SpreadElement) -> Expression:
        return SpreadElement(node.line, self.expression(node.argument))

    def _array(self, node: ArrayExpression) -> Expression:
        return ArrayExpression(node.line, self._expressions(node.elements))

    def _member(self, node: MemberExpression) -> Expression:
        prop = self.expression(node.property) if node.computed else node.property
        return MemberExpression(node.line, self.expression(node.object), prop, node.computed)

    def _call(self, node: CallExpression) -> Expression:
        call = CallExpression(node.line, self.expression(node.callee), self._expressions(node.arguments))
        return AwaitCall(node.line, call)

    def _function_expression(self, node: FunctionExpression) -> Expression:
        return FunctionExpression(node.line, node.name, node.params, self._block(node.body), suspendable=True)

    def _arrow(self, node: ArrowFunctionExpression) -> Expression:
        body: BlockStatement | Expression
        if isinstance(node.body, BlockStatement):
            body = self._block(node.body)
        else:
            body = self.expression(node.body)
        return ArrowFunctionExpression(node.line, node.params, body, suspendable=True)

    def _assignment(self, node: AssignmentExpression) -> Expression:
        return AssignmentExpression(node.line, node.operator, self.expression(node.target), self.expression(node.value))

    def _update(self, node: UpdateExpression) -> Expression:
        return UpdateExpression(node.line, node.operator, node.prefix, self.expression(node.argument))

    def _unary(self, node: UnaryExpression) -> Expression:
        return UnaryExpression(node.line, node.operator, self.expression(node.argument))

    def _binary(self, node: BinaryExpression | LogicalExpression) -> Expression:
        return type(node)(node.line, node.operator, self.expression(node.left), self.expression(node.right))

    def _conditional(self, node: ConditionalExpression) -> Expression:
        return ConditionalExpression(
            node.line,
            self.expression(node.test),
            self.expression(node.consequent),
            self.expression(node.alternate),
        )

    def _sequence(self, node: SequenceExpression) -> Expression:
        return SequenceExpression(node.line, self._expressions(node.expressions))

    _EXPRESSION_HANDLERS: dict[type, Callable[[Instrumenter, Any], Expression]] = {
        Literal: _unchanged,
        Identifier: _unchanged,
        TemplateLiteral: _template,
        SpreadElement: _spread,
        ArrayExpression: _array,
        MemberExpression: _member,
        CallExpression: _call,
        FunctionExpression: _function_expression,
        ArrowFunctionExpression: _arrow,
        AssignmentExpression: _assignment,
        UpdateExpression: _update,
        UnaryExpression: _unary,
        BinaryExpression: _binary,
        LogicalExpression: _binary,
        ConditionalExpression: _conditional,
        SequenceExpression: _sequence,
    }


def instrument(source: str) -> Program:
    """Parse, validate and instrument *source*.

    Raises:
        ProgramSyntaxError: The text does not parse.
        UnsupportedSyntax: The program uses a construct outside the subset.
            No partial program is produced.
    """
    body = parse(source)
    validate_top_level(body)
    return Program(source, Instrumenter().statements(body))


async def _free_running(thread_id: int, locals_: Mapping[str, Any], line: int) -> None:
    return None


def compile_expression(expression: str) -> Expression:
    """Parse and instrument a standalone expression."""
    return Instrumenter().expression(parse_expression(expression))


def evaluate(expression: str | Expression, global_state: dict[str, Any]) -> Any:
    """Evaluate a standalone expression with ``globals`` bound to *global_state*.

    Used for invariants such as ``globals.count === 2``.  Checkpoints reached
    through inline function calls do not wait.  Must not be called from a
    running event loop.
    """
    node = compile_expression(expression) if isinstance(expression, str) else expression
    interpreter = Interpreter(0, global_state, _free_running)
    return asyncio.run(interpreter.evaluate_expression(node))
