"""Plain-text rendering of a :class:`~threadweave.scheduler.SimulatorView`.

The layout mirrors a step-through debugger::

    0,1 | let tmp = globals.count;
        | globals.count = tmp + 1;

    Globals
      name   value
      count  0

    Threads
      thread  status     line
      0       suspended  0
      1       suspended  0
"""

from __future__ import annotations

from threadweave.interpreter import format_value
from threadweave.nodes import TERMINAL_LINE
from threadweave.scheduler import SimulatorView


def _line_label(line: int | None) -> str:
    if line is None:
        return "-"
    if line == TERMINAL_LINE:
        return "done"
    return str(line)


def _table(header: list[str], rows: list[list[str]]) -> list[str]:
    widths = [len(cell) for cell in header]
    for row in rows:
        widths = [max(width, len(cell)) for width, cell in zip(widths, row)]
    return ["  " + "  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip() for row in [header, *rows]]


def format_view(view: SimulatorView) -> str:
    """Render program, globals and per-thread locals as text.

    Each program line is prefixed with the ids of the threads positioned at
    it.  The locals table has one column per name declared in any thread,
    sorted; a blank cell means the thread has no such local.
    """
    lines = view.source.split("\n")
    gutters = [",".join(str(thread_id) for thread_id in view.threads_at_line(index)) for index in range(len(lines))]
    width = max((len(gutter) for gutter in gutters), default=0)
    parts = [f"{gutter:>{width}} | {text}".rstrip() for gutter, text in zip(gutters, lines)]

    parts.append("")
    parts.append("Globals")
    parts.extend(_table(["name", "value"], [[str(name), format_value(value)] for name, value in view.globals.items()]))

    names = sorted({name for thread in view.threads for name in thread.locals})
    rows = [
        [
            str(thread.id),
            thread.status.value,
            _line_label(thread.line),
            *(format_value(thread.locals[name]) if name in thread.locals else "" for name in names),
        ]
        for thread in view.threads
    ]
    parts.append("")
    parts.append("Threads")
    parts.extend(_table(["thread", "status", "line", *names], rows))

    failed = [thread for thread in view.threads if thread.failure is not None]
    if failed:
        parts.append("")
        for thread in failed:
            parts.append(f"  {thread.failure}")
    return "\n".join(parts)
