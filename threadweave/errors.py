"""Exception hierarchy for threadweave.

Build-time errors (:class:`ProgramSyntaxError`, :class:`UnsupportedSyntax`,
:class:`MalformedGlobalState`) are raised before any simulated thread starts.
:class:`ThreadFailed` is never raised out of the scheduler: it is recorded on
the failing thread's view so sibling threads keep running.
"""

from __future__ import annotations

from typing import Any


class ThreadweaveError(Exception):
    """Base class for every error raised by threadweave."""


class ProgramSyntaxError(ThreadweaveError):
    """The program text does not tokenize or parse."""

    def __init__(self, message: str, line: int, column: int = 0):
        self.message = message
        self.line = line
        self.column = column
        super().__init__(f"line {line}, column {column}: {message}")


class UnsupportedSyntax(ThreadweaveError):
    """The program uses a construct outside the supported subset.

    Attributes:
        construct: ESTree-style name of the rejected construct, e.g.
            ``"SwitchStatement"``.
        line: 0-indexed source line of the construct.
    """

    def __init__(self, construct: str, line: int):
        self.construct = construct
        self.line = line
        super().__init__(f"Unsupported syntax: {construct} (line {line})")


class MalformedGlobalState(ThreadweaveError):
    """The global-state document does not decode to a JSON object."""


class InvalidStepRequest(ThreadweaveError):
    """A step was requested for a thread that cannot take one."""


class ThreadFailed(ThreadweaveError):
    """A simulated thread stopped on an uncaught error.

    Attributes:
        thread_id: The failing thread.
        line: Line of the last checkpoint the thread reported.
        cause: The underlying exception.
    """

    def __init__(self, thread_id: int, line: int | None, cause: BaseException):
        self.thread_id = thread_id
        self.line = line
        self.cause = cause
        super().__init__(f"Thread {thread_id} failed at line {line}: {cause}")


class JSThrow(Exception):  # noqa: N818
    """A value thrown inside the simulated program.

    Runtime errors (``ReferenceError``, ``TypeError`` ...) are thrown as
    ``{"name": ..., "message": ...}`` mappings so user ``catch`` blocks can
    inspect them like error objects.
    """

    def __init__(self, value: Any):
        self.value = value
        super().__init__(describe_thrown(value))


def js_error(name: str, message: str) -> JSThrow:
    """Build a :class:`JSThrow` carrying a runtime error object."""
    return JSThrow({"name": name, "message": message})


def describe_thrown(value: Any) -> str:
    if isinstance(value, dict) and "name" in value and "message" in value:
        return f"{value['name']}: {value['message']}"
    return f"Uncaught {value!r}"
