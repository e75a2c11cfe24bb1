"""Tokenizer and recursive-descent parser for the threadweave subset.

The grammar is the statement/expression core of JavaScript: declarations,
branches, loops, functions, exceptions and the usual operators.  Constructs
outside the subset (``switch``, object literals, classes, labels, ``new``,
optional chaining ...) are still recognised well enough to be skipped, and
come back as :class:`~threadweave.nodes.Unsupported` nodes so the
validator and instrumenter can report them by name.

Line numbers are 0-indexed, matching the order of lines in the source text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from threadweave.errors import ProgramSyntaxError, UnsupportedSyntax
from threadweave.nodes import (
    UNDEFINED,
    ArrayExpression,
    ArrowFunctionExpression,
    AssignmentExpression,
    BinaryExpression,
    BlockStatement,
    BreakStatement,
    CallExpression,
    ConditionalExpression,
    ContinueStatement,
    DebuggerStatement,
    Directive,
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
    Unsupported,
    UpdateExpression,
    VariableDeclaration,
    VariableDeclarator,
    WhileStatement,
    WithStatement,
)

# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_SPEC = [
    ("newline", r"\n"),
    ("space", r"[ \t\r\f\v\u00a0\ufeff]+"),
    ("comment", r"//[^\n]*|/\*[\s\S]*?\*/"),
    ("num", r"0[xX][0-9a-fA-F]+|(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?"),
    ("str", r'"(?:[^"\\\n]|\\[\s\S])*"|\'(?:[^\'\\\n]|\\[\s\S])*\''),
    ("name", r"[A-Za-z_$][A-Za-z0-9_$]*"),
    (
        "punc",
        r">>>=|\.\.\.|===|!==|\*\*=|<<=|>>=|>>>|&&=|\|\|=|\?\?=|=>|==|!=|<=|>=|&&|\|\||\?\?|\?\."
        r"|\+\+|--|\+=|-=|\*=|/=|%=|&=|\|=|\^=|\*\*|<<|>>|[{}()\[\];,<>+\-*/%&|^!~?:=.]",
    ),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

_ESCAPE_RE = re.compile(r"\\(u\{[0-9a-fA-F]+\}|u[0-9a-fA-F]{4}|x[0-9a-fA-F]{2}|\r\n|[\s\S])")
_SIMPLE_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}

# Largest integer a double represents exactly.
_MAX_SAFE_INTEGER = 2**53


@dataclass(slots=True)
class Token:
    kind: str  # "num", "str", "template", "name", "punc" or "eof"
    value: Any
    line: int
    column: int
    newline_before: bool = False


def _replace_escape(match: re.Match[str]) -> str:
    seq = match.group(1)
    if seq[0] == "u" and len(seq) > 1:
        digits = seq[2:-1] if seq[1] == "{" else seq[1:]
        return chr(int(digits, 16))
    if seq[0] == "x" and len(seq) == 3:
        return chr(int(seq[1:], 16))
    if seq in ("\n", "\r\n"):
        return ""
    return _SIMPLE_ESCAPES.get(seq, seq)


def unescape(text: str) -> str:
    """Resolve backslash escapes in a string or template chunk."""
    return _ESCAPE_RE.sub(_replace_escape, text)


def number_value(text: str) -> int | float:
    """Convert a numeric literal, keeping integral values as ``int``."""
    if text[:2] in ("0x", "0X"):
        return int(text, 16)
    if text.isdigit():
        return int(text)
    value = float(text)
    if value.is_integer() and abs(value) <= _MAX_SAFE_INTEGER:
        return int(value)
    return value


def _read_template(source: str, start: int, line: int) -> tuple[list[tuple[Any, ...]], int]:
    """Scan a template literal starting at the opening backtick.

    Returns the parts, alternating ``("str", text)`` and
    ``("expr", source, line)``, and the index just past the closing
    backtick.
    """
    parts: list[tuple[Any, ...]] = []
    chunk: list[str] = []
    pos = start + 1
    while True:
        if pos >= len(source):
            raise ProgramSyntaxError("Unterminated template literal", line)
        ch = source[pos]
        if ch == "`":
            parts.append(("str", "".join(chunk)))
            return parts, pos + 1
        if ch == "\\":
            match = _ESCAPE_RE.match(source, pos)
            if match is None:
                raise ProgramSyntaxError("Unterminated template literal", line)
            chunk.append(_replace_escape(match))
            pos = match.end()
            continue
        if source.startswith("${", pos):
            parts.append(("str", "".join(chunk)))
            chunk = []
            expr_start = pos + 2
            pos = _find_interpolation_end(source, expr_start, line)
            expr_line = line + source.count("\n", start, expr_start)
            parts.append(("expr", source[expr_start:pos], expr_line))
            pos += 1
            continue
        chunk.append(ch)
        pos += 1


def _find_interpolation_end(source: str, pos: int, line: int) -> int:
    depth = 1
    while pos < len(source):
        ch = source[pos]
        if ch in "\"'`":
            end = pos + 1
            while end < len(source) and source[end] != ch:
                end += 2 if source[end] == "\\" else 1
            pos = end + 1
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return pos
        pos += 1
    raise ProgramSyntaxError("Unterminated template interpolation", line)


def tokenize(source: str, *, first_line: int = 0) -> list[Token]:
    """Split *source* into tokens, tracking 0-indexed lines.

    Args:
        source: Program text.
        first_line: Line number of the first character, used when
            tokenizing an interpolation embedded in a template literal.

    Raises:
        ProgramSyntaxError: On a character that starts no token.
    """
    tokens: list[Token] = []
    pos = 0
    line = first_line
    line_start = 0
    newline_before = False

    while pos < len(source):
        column = pos - line_start
        if source[pos] == "`":
            parts, end = _read_template(source, pos, line)
            tokens.append(Token("template", parts, line, column, newline_before))
            newline_before = False
            newlines = source.count("\n", pos, end)
            if newlines:
                line += newlines
                line_start = source.rindex("\n", pos, end) + 1
            pos = end
            continue

        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise ProgramSyntaxError(f"Unexpected character {source[pos]!r}", line, column)
        kind = match.lastgroup
        text = match.group()

        if kind == "newline":
            line += 1
            line_start = match.end()
            newline_before = True
        elif kind == "comment":
            newlines = text.count("\n")
            if newlines:
                line += newlines
                line_start = pos + text.rindex("\n") + 1
                newline_before = True
        elif kind != "space":
            if kind == "num":
                value: Any = number_value(text)
            elif kind == "str":
                value = unescape(text[1:-1])
            else:
                value = text
            tokens.append(Token(kind, value, line, column, newline_before))  # type: ignore[arg-type]
            newline_before = False
        pos = match.end()

    tokens.append(Token("eof", "", line, pos - line_start, True))
    return tokens


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

_RESERVED = frozenset(
    {
        "break", "case", "catch", "class", "const", "continue", "debugger", "default",
        "delete", "do", "else", "export", "extends", "finally", "for", "function", "if",
        "import", "in", "instanceof", "let", "new", "return", "super", "switch", "this",
        "throw", "try", "typeof", "var", "void", "while", "with", "yield", "await",
    }
)  # fmt: skip

_DECLARATION_KINDS = frozenset({"let", "const", "var"})

_LITERAL_NAMES: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": UNDEFINED,
    "NaN": float("nan"),
    "Infinity": float("inf"),
}

_UNSUPPORTED_PRIMARY = {
    "this": "ThisExpression",
    "super": "Super",
    "import": "ImportExpression",
    "yield": "YieldExpression",
}

_ASSIGNMENT_OPERATORS = frozenset(
    {"=", "+=", "-=", "*=", "/=", "%=", "**=", "<<=", ">>=", ">>>=", "&=", "|=", "^=", "&&=", "||=", "??="}
)

_BINARY_PRECEDENCE = {
    "??": 1,
    "||": 2,
    "&&": 3,
    "|": 4,
    "^": 5,
    "&": 6,
    "==": 7,
    "!=": 7,
    "===": 7,
    "!==": 7,
    "<": 8,
    ">": 8,
    "<=": 8,
    ">=": 8,
    "in": 8,
    "instanceof": 8,
    "<<": 9,
    ">>": 9,
    ">>>": 9,
    "+": 10,
    "-": 10,
    "*": 11,
    "/": 11,
    "%": 11,
    "**": 12,
}
_LOGICAL_OPERATORS = frozenset({"&&", "||", "??"})

_OPENERS = frozenset({"(", "[", "{"})
_CLOSERS = frozenset({")", "]", "}"})


class Parser:
    """Recursive-descent parser producing :mod:`threadweave.nodes` trees."""

    def __init__(self, tokens: list[Token]):
        self.tokens = tokens
        self.pos = 0

    # ------------------------------------------------------------------
    # Token helpers
    # ------------------------------------------------------------------

    def peek(self, offset: int = 0) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def advance(self) -> Token:
        tok = self.tokens[self.pos]
        if tok.kind != "eof":
            self.pos += 1
        return tok

    def _is(self, value: str, offset: int = 0) -> bool:
        tok = self.peek(offset)
        return tok.kind in ("punc", "name") and tok.value == value

    def accept(self, value: str) -> bool:
        if self._is(value):
            self.advance()
            return True
        return False

    def expect(self, value: str) -> Token:
        if not self._is(value):
            raise self._error(f"Expected {value!r}")
        return self.advance()

    def _error(self, message: str, tok: Token | None = None) -> ProgramSyntaxError:
        if tok is None:
            tok = self.peek()
        if tok.kind == "eof":
            message = f"{message} but reached end of input"
        else:
            message = f"{message}, got {tok.value!r}" if tok.kind != "template" else f"{message}, got template"
        return ProgramSyntaxError(message, tok.line, tok.column)

    def _expect_identifier(self) -> Token:
        tok = self.peek()
        if tok.kind != "name" or tok.value in _RESERVED:
            raise self._error("Expected identifier")
        return self.advance()

    def _ends_statement_at(self, offset: int) -> bool:
        tok = self.peek(offset)
        return tok.kind == "eof" or tok.newline_before or (tok.kind == "punc" and tok.value in (";", "}"))

    def _consume_semicolon(self) -> None:
        if self.accept(";"):
            return
        if self._ends_statement_at(0):
            return
        raise self._error("Expected ';'")

    def _skip_balanced(self) -> None:
        """Skip a bracketed region starting at the current opener."""
        depth = 0
        while True:
            tok = self.advance()
            if tok.kind == "eof":
                raise self._error("Unbalanced brackets", tok)
            if tok.kind != "punc":
                continue
            if tok.value in _OPENERS:
                depth += 1
            elif tok.value in _CLOSERS:
                depth -= 1
                if depth == 0:
                    return

    def _skip_statement(self) -> None:
        """Skip tokens up to the end of the current statement."""
        depth = 0
        first = True
        while True:
            tok = self.peek()
            if tok.kind == "eof":
                return
            if depth == 0 and not first and tok.newline_before:
                return
            if tok.kind == "punc":
                if tok.value in _OPENERS:
                    depth += 1
                elif tok.value in _CLOSERS:
                    if depth == 0:
                        return
                    depth -= 1
                elif tok.value == ";" and depth == 0:
                    self.advance()
                    return
            self.advance()
            first = False

    # ------------------------------------------------------------------
    # Program and statements
    # ------------------------------------------------------------------

    def parse_program(self) -> tuple[Statement, ...]:
        body: list[Statement] = []
        in_prologue = True
        while self.peek().kind != "eof":
            tok = self.peek()
            if in_prologue and tok.kind == "str" and self._ends_statement_at(1):
                self.advance()
                self._consume_semicolon()
                body.append(Directive(tok.line, tok.value))
                continue
            in_prologue = False
            body.append(self.parse_statement())
        return tuple(body)

    def parse_statement(self) -> Statement:
        tok = self.peek()
        if tok.kind == "punc":
            if tok.value == "{":
                return self.parse_block()
            if tok.value == ";":
                self.advance()
                return EmptyStatement(tok.line)
        elif tok.kind == "name":
            handler = self._STATEMENT_KEYWORDS.get(tok.value)
            if handler is not None:
                return handler(self)
            if self._is(":", 1):
                self.advance()
                self.advance()
                self.parse_statement()
                return Unsupported(tok.line, "LabeledStatement")
            if tok.value == "async" and self._is("function", 1) and not self.peek(1).newline_before:
                self.advance()
                self._parse_function()
                return Unsupported(tok.line, "AsyncFunctionDeclaration")
        return self._parse_expression_statement()

    def parse_block(self) -> BlockStatement:
        tok = self.expect("{")
        body: list[Statement] = []
        while not self._is("}"):
            if self.peek().kind == "eof":
                raise self._error("Expected '}'")
            body.append(self.parse_statement())
        self.advance()
        return BlockStatement(tok.line, tuple(body))

    def _parse_expression_statement(self) -> Statement:
        line = self.peek().line
        expression = self.parse_expression()
        self._consume_semicolon()
        return ExpressionStatement(line, expression)

    def _parse_variable_statement(self) -> Statement:
        declaration = self._parse_variable_declaration()
        self._consume_semicolon()
        return declaration

    def _parse_variable_declaration(self) -> Statement:
        kind = self.advance()
        declarators: list[VariableDeclarator] = []
        pattern: str | None = None
        while True:
            tok = self.peek()
            if self._is("{") or self._is("["):
                pattern = "ObjectPattern" if tok.value == "{" else "ArrayPattern"
                self._skip_balanced()
                name = ""
            else:
                name = self._expect_identifier().value
            init = None
            if self.accept("="):
                init = self.parse_assignment()
            elif kind.value == "const" and pattern is None:
                raise self._error("Missing initializer in const declaration")
            declarators.append(VariableDeclarator(tok.line, name, init))
            if not self.accept(","):
                break
        if pattern is not None:
            return Unsupported(kind.line, pattern)
        return VariableDeclaration(kind.line, kind.value, tuple(declarators))

    def _parse_function_declaration(self) -> Statement:
        line = self.peek().line
        name, params, body, unsupported = self._parse_function()
        if unsupported is not None:
            return Unsupported(line, unsupported)
        if name is None:
            raise ProgramSyntaxError("Function declaration requires a name", line)
        return FunctionDeclaration(line, name, params, body)

    def _parse_if(self) -> Statement:
        tok = self.advance()
        self.expect("(")
        test = self.parse_expression()
        self.expect(")")
        consequent = self.parse_statement()
        alternate = self.parse_statement() if self.accept("else") else None
        return IfStatement(tok.line, test, consequent, alternate)

    def _parse_while(self) -> Statement:
        tok = self.advance()
        self.expect("(")
        test = self.parse_expression()
        self.expect(")")
        return WhileStatement(tok.line, test, self.parse_statement())

    def _parse_do_while(self) -> Statement:
        tok = self.advance()
        body = self.parse_statement()
        self.expect("while")
        self.expect("(")
        test = self.parse_expression()
        self.expect(")")
        self.accept(";")
        return DoWhileStatement(tok.line, body, test)

    def _parse_for(self) -> Statement:
        tok = self.advance()
        is_await = self.accept("await")
        statement = self._parse_for_rest(tok)
        if is_await:
            return Unsupported(tok.line, "ForAwaitStatement")
        return statement

    def _parse_for_rest(self, tok: Token) -> Statement:
        self.expect("(")
        first = self.peek()
        if (
            first.kind == "name"
            and first.value in _DECLARATION_KINDS
            and self.peek(1).kind == "name"
            and self.peek(2).kind == "name"
            and self.peek(2).value in ("in", "of")
        ):
            kind = self.advance().value
            return self._parse_for_each(tok, kind, self.advance().value)
        if (
            first.kind == "name"
            and first.value not in _RESERVED
            and self.peek(1).kind == "name"
            and self.peek(1).value in ("in", "of")
        ):
            return self._parse_for_each(tok, None, self.advance().value)

        init: Statement | Expression | None = None
        if not self._is(";"):
            if first.kind == "name" and first.value in _DECLARATION_KINDS:
                init = self._parse_variable_declaration()
            else:
                init = self.parse_expression()
        self.expect(";")
        test = None if self._is(";") else self.parse_expression()
        self.expect(";")
        update = None if self._is(")") else self.parse_expression()
        self.expect(")")
        body = self.parse_statement()
        return ForStatement(tok.line, init, test, update, body)  # type: ignore[arg-type]

    def _parse_for_each(self, tok: Token, kind: str | None, name: str) -> Statement:
        operator = self.advance().value
        right = self.parse_expression() if operator == "in" else self.parse_assignment()
        self.expect(")")
        body = self.parse_statement()
        if operator == "in":
            return ForInStatement(tok.line, kind, name, right, body)
        return ForOfStatement(tok.line, kind, name, right, body)

    def _parse_return(self) -> Statement:
        tok = self.advance()
        argument = None
        if not self._ends_statement_at(0):
            argument = self.parse_expression()
        self._consume_semicolon()
        return ReturnStatement(tok.line, argument)

    def _parse_break_continue(self) -> Statement:
        tok = self.advance()
        label = self.peek()
        if label.kind == "name" and not label.newline_before:
            self.advance()
            self._consume_semicolon()
            return Unsupported(tok.line, "LabeledStatement")
        self._consume_semicolon()
        if tok.value == "break":
            return BreakStatement(tok.line)
        return ContinueStatement(tok.line)

    def _parse_throw(self) -> Statement:
        tok = self.advance()
        if self.peek().newline_before:
            raise self._error("Illegal newline after throw")
        argument = self.parse_expression()
        self._consume_semicolon()
        return ThrowStatement(tok.line, argument)

    def _parse_try(self) -> Statement:
        tok = self.advance()
        block = self.parse_block()
        param = None
        handler = None
        finalizer = None
        if self.accept("catch"):
            if self.accept("("):
                param = self._expect_identifier().value
                self.expect(")")
            handler = self.parse_block()
        if self.accept("finally"):
            finalizer = self.parse_block()
        if handler is None and finalizer is None:
            raise self._error("Missing catch or finally after try")
        return TryStatement(tok.line, block, param, handler, finalizer)

    def _parse_with(self) -> Statement:
        tok = self.advance()
        self.expect("(")
        obj = self.parse_expression()
        self.expect(")")
        return WithStatement(tok.line, obj, self.parse_statement())

    def _parse_debugger(self) -> Statement:
        tok = self.advance()
        self._consume_semicolon()
        return DebuggerStatement(tok.line)

    def _parse_switch(self) -> Statement:
        tok = self.advance()
        self.expect("(")
        self.parse_expression()
        self.expect(")")
        if not self._is("{"):
            raise self._error("Expected '{'")
        self._skip_balanced()
        return Unsupported(tok.line, "SwitchStatement")

    def _parse_class(self) -> Statement:
        tok = self.peek()
        self._skip_class()
        return Unsupported(tok.line, "ClassDeclaration")

    def _skip_class(self) -> None:
        self.advance()
        while not self._is("{"):
            if self.peek().kind == "eof":
                raise self._error("Expected class body")
            self.advance()
        self._skip_balanced()

    def _parse_module_item(self) -> Statement:
        tok = self.advance()
        if tok.value == "import":
            construct = "ImportDeclaration"
        elif self._is("default"):
            construct = "ExportDefaultDeclaration"
        else:
            construct = "ExportNamedDeclaration"
        self._skip_statement()
        return Unsupported(tok.line, construct)

    _STATEMENT_KEYWORDS = {
        "let": _parse_variable_statement,
        "const": _parse_variable_statement,
        "var": _parse_variable_statement,
        "function": _parse_function_declaration,
        "if": _parse_if,
        "while": _parse_while,
        "do": _parse_do_while,
        "for": _parse_for,
        "return": _parse_return,
        "break": _parse_break_continue,
        "continue": _parse_break_continue,
        "throw": _parse_throw,
        "try": _parse_try,
        "with": _parse_with,
        "debugger": _parse_debugger,
        "switch": _parse_switch,
        "class": _parse_class,
        "import": _parse_module_item,
        "export": _parse_module_item,
    }

    # ------------------------------------------------------------------
    # Functions
    # ------------------------------------------------------------------

    def _parse_function(self) -> tuple[str | None, tuple[str, ...], BlockStatement, str | None]:
        """Parse ``function [name](params) {body}``.

        Returns ``(name, params, body, unsupported)`` where *unsupported*
        names a construct that makes the whole function unsupported.
        """
        self.expect("function")
        unsupported = "GeneratorFunction" if self.accept("*") else None
        name = None
        if not self._is("("):
            name = self._expect_identifier().value
        params, bad_param = self._parse_params()
        body = self.parse_block()
        return name, params, body, unsupported or bad_param

    def _parse_params(self) -> tuple[tuple[str, ...], str | None]:
        self.expect("(")
        params: list[str] = []
        unsupported = None
        while not self._is(")"):
            if self.accept("..."):
                unsupported = "RestElement"
            if self._is("{") or self._is("["):
                unsupported = "ObjectPattern" if self._is("{") else "ArrayPattern"
                self._skip_balanced()
            else:
                params.append(self._expect_identifier().value)
            if self.accept("="):
                self.parse_assignment()
                unsupported = unsupported or "AssignmentPattern"
            if not self.accept(","):
                break
        self.expect(")")
        return tuple(params), unsupported

    def _is_arrow_params(self, offset: int = 0) -> bool:
        """Look ahead from a ``(`` to see whether ``=>`` follows its match."""
        depth = 0
        i = offset
        while True:
            tok = self.peek(i)
            if tok.kind == "eof":
                return False
            if tok.kind == "punc":
                if tok.value in _OPENERS:
                    depth += 1
                elif tok.value in _CLOSERS:
                    depth -= 1
                    if depth == 0:
                        after = self.peek(i + 1)
                        return after.kind == "punc" and after.value == "=>" and not after.newline_before
            i += 1

    def _parse_arrow(self) -> Expression:
        line = self.peek().line
        if self.peek().kind == "name":
            params: tuple[str, ...] = (self._expect_identifier().value,)
            unsupported = None
        else:
            params, unsupported = self._parse_params()
        self.expect("=>")
        body: BlockStatement | Expression
        if self._is("{"):
            body = self.parse_block()
        else:
            body = self.parse_assignment()
        if unsupported is not None:
            return Unsupported(line, unsupported)
        return ArrowFunctionExpression(line, params, body)

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def parse_expression(self) -> Expression:
        first = self.parse_assignment()
        if not self._is(","):
            return first
        expressions = [first]
        while self.accept(","):
            expressions.append(self.parse_assignment())
        return SequenceExpression(first.line, tuple(expressions))

    def parse_assignment(self) -> Expression:
        tok = self.peek()
        if tok.kind == "name":
            if tok.value not in _RESERVED and self._is("=>", 1) and not self.peek(1).newline_before:
                return self._parse_arrow()
            if tok.value == "async" and not self.peek(1).newline_before:
                if self._is("function", 1) or (self._is("(", 1) and self._is_arrow_params(1)) or self._is("=>", 2):
                    self.advance()
                    if self._is("function"):
                        self._parse_function()
                    else:
                        self._parse_arrow()
                    return Unsupported(tok.line, "AsyncFunctionExpression")
        elif self._is("(") and self._is_arrow_params():
            return self._parse_arrow()

        left = self._parse_conditional()
        op = self.peek()
        if op.kind == "punc" and op.value in _ASSIGNMENT_OPERATORS:
            if isinstance(left, ArrayExpression):
                self.advance()
                self.parse_assignment()
                return Unsupported(left.line, "ArrayPattern")
            if not isinstance(left, (Identifier, MemberExpression, Unsupported)):
                raise self._error("Invalid assignment target", op)
            self.advance()
            value = self.parse_assignment()
            return AssignmentExpression(left.line, op.value, left, value)
        return left

    def _parse_conditional(self) -> Expression:
        test = self._parse_binary(0)
        if not self.accept("?"):
            return test
        consequent = self.parse_assignment()
        self.expect(":")
        alternate = self.parse_assignment()
        return ConditionalExpression(test.line, test, consequent, alternate)

    def _parse_binary(self, min_precedence: int) -> Expression:
        left = self._parse_unary()
        while True:
            tok = self.peek()
            if tok.kind not in ("punc", "name"):
                return left
            precedence = _BINARY_PRECEDENCE.get(tok.value)
            if precedence is None or precedence < min_precedence:
                return left
            self.advance()
            right = self._parse_binary(precedence if tok.value == "**" else precedence + 1)
            if tok.value == "instanceof":
                left = Unsupported(tok.line, "InstanceofExpression")
            elif tok.value in _LOGICAL_OPERATORS:
                left = LogicalExpression(left.line, tok.value, left, right)
            else:
                left = BinaryExpression(left.line, tok.value, left, right)

    def _parse_unary(self) -> Expression:
        tok = self.peek()
        if tok.kind == "punc":
            if tok.value in ("!", "-", "+", "~"):
                self.advance()
                return UnaryExpression(tok.line, tok.value, self._parse_unary())
            if tok.value in ("++", "--"):
                self.advance()
                argument = self._parse_unary()
                self._check_update_target(argument, tok)
                return UpdateExpression(tok.line, tok.value, True, argument)
        elif tok.kind == "name":
            if tok.value in ("typeof", "void", "delete"):
                self.advance()
                return UnaryExpression(tok.line, tok.value, self._parse_unary())
            if tok.value == "await":
                self.advance()
                self._parse_unary()
                return Unsupported(tok.line, "AwaitExpression")
        return self._parse_postfix()

    def _check_update_target(self, target: Expression, tok: Token) -> None:
        if not isinstance(target, (Identifier, MemberExpression, Unsupported)):
            raise self._error("Invalid update target", tok)

    def _parse_postfix(self) -> Expression:
        expr = self._parse_call_member()
        tok = self.peek()
        if tok.kind == "punc" and tok.value in ("++", "--") and not tok.newline_before:
            self._check_update_target(expr, tok)
            self.advance()
            return UpdateExpression(expr.line, tok.value, False, expr)
        return expr

    def _parse_call_member(self) -> Expression:
        tok = self.peek()
        if tok.kind == "name" and tok.value == "new":
            self.advance()
            self._parse_call_member()
            return Unsupported(tok.line, "NewExpression")

        expr = self._parse_primary()
        optional = False
        while True:
            tok = self.peek()
            if self.accept("."):
                expr = self._static_member(expr)
            elif self.accept("?."):
                optional = True
                if self._is("("):
                    expr = CallExpression(expr.line, expr, self._parse_arguments())
                elif self.accept("["):
                    expr = MemberExpression(expr.line, expr, self.parse_expression(), True)
                    self.expect("]")
                else:
                    expr = self._static_member(expr)
            elif self.accept("["):
                expr = MemberExpression(expr.line, expr, self.parse_expression(), True)
                self.expect("]")
            elif self._is("("):
                expr = CallExpression(expr.line, expr, self._parse_arguments())
            elif tok.kind == "template":
                self.advance()
                expr = Unsupported(tok.line, "TaggedTemplateExpression")
            else:
                break
        if optional:
            return Unsupported(expr.line, "ChainExpression")
        return expr

    def _static_member(self, obj: Expression) -> Expression:
        name = self.advance()
        if name.kind != "name":
            raise self._error("Expected property name", name)
        return MemberExpression(obj.line, obj, Literal(name.line, name.value), False)

    def _parse_arguments(self) -> tuple[Expression, ...]:
        self.expect("(")
        arguments: list[Expression] = []
        while not self._is(")"):
            tok = self.peek()
            if self.accept("..."):
                arguments.append(SpreadElement(tok.line, self.parse_assignment()))
            else:
                arguments.append(self.parse_assignment())
            if not self.accept(","):
                break
        self.expect(")")
        return tuple(arguments)

    def _parse_primary(self) -> Expression:
        tok = self.peek()
        if tok.kind in ("num", "str"):
            self.advance()
            return Literal(tok.line, tok.value)
        if tok.kind == "template":
            self.advance()
            return self._template(tok)
        if tok.kind == "name":
            value = tok.value
            if value in _LITERAL_NAMES:
                self.advance()
                return Literal(tok.line, _LITERAL_NAMES[value])
            if value == "function":
                name, params, body, unsupported = self._parse_function()
                if unsupported is not None:
                    return Unsupported(tok.line, unsupported)
                return FunctionExpression(tok.line, name, params, body)
            if value == "class":
                self._skip_class()
                return Unsupported(tok.line, "ClassExpression")
            if value in _UNSUPPORTED_PRIMARY:
                self.advance()
                return Unsupported(tok.line, _UNSUPPORTED_PRIMARY[value])
            return Identifier(tok.line, self._expect_identifier().value)
        if tok.kind == "punc":
            if tok.value == "(":
                self.advance()
                expr = self.parse_expression()
                self.expect(")")
                return expr
            if tok.value == "[":
                return self._parse_array()
            if tok.value == "{":
                self._skip_balanced()
                return Unsupported(tok.line, "ObjectExpression")
            if tok.value in ("/", "/="):
                # Regex bodies cannot be tokenized as ordinary tokens, so
                # there is no way to skip past them.
                raise UnsupportedSyntax("RegExpLiteral", tok.line)
        raise self._error("Unexpected token")

    def _parse_array(self) -> Expression:
        start = self.expect("[")
        elements: list[Expression] = []
        while not self._is("]"):
            tok = self.peek()
            if self.accept(","):
                elements.append(Literal(tok.line, UNDEFINED))
                continue
            if self.accept("..."):
                elements.append(SpreadElement(tok.line, self.parse_assignment()))
            else:
                elements.append(self.parse_assignment())
            if not self._is("]"):
                self.expect(",")
        self.advance()
        return ArrayExpression(start.line, tuple(elements))

    def _template(self, tok: Token) -> Expression:
        quasis: list[str] = []
        expressions: list[Expression] = []
        for part in tok.value:
            if part[0] == "str":
                quasis.append(part[1])
            else:
                expressions.append(_parse_embedded(part[1], part[2]))
        return TemplateLiteral(tok.line, tuple(quasis), tuple(expressions))

    def expect_end(self) -> None:
        if self.peek().kind != "eof":
            raise self._error("Unexpected token")


def _parse_embedded(source: str, line: int) -> Expression:
    parser = Parser(tokenize(source, first_line=line))
    expr = parser.parse_expression()
    parser.expect_end()
    return expr


def parse(source: str) -> tuple[Statement, ...]:
    """Parse program text into top-level statements.

    Raises:
        ProgramSyntaxError: The text is not a well-formed program.
        UnsupportedSyntax: The text contains a regular-expression literal,
            the one unsupported construct the parser cannot skip over.
    """
    parser = Parser(tokenize(source))
    try:
        return parser.parse_program()
    except RecursionError:
        raise ProgramSyntaxError("Program nests too deeply", parser.peek().line) from None


def parse_expression(source: str) -> Expression:
    """Parse a single expression, e.g. an invariant such as ``globals.n === 2``."""
    return _parse_embedded(source, 0)
