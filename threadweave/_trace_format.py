"""Trace recording, classification, and formatting of interleaving counterexamples.

When exploration finds an invariant violation, the raw counterexample is a
list of thread ids, one per step.  This module turns that into a readable
story of which program lines ran in which order.

The pipeline:
1. **Record** a TraceEvent for each step of the failing run.
2. **Filter** to steps whose statement touches ``globals``.
3. **Classify** the conflict pattern (lost update, write-write).
4. **Format** as an interleaved source-line trace.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TraceEvent:
    """One executed statement."""

    step_index: int
    thread_id: int
    line: int
    source_line: str
    access_type: str | None = None  # "read", "write", "read+write" or None
    attr_name: str | None = None  # e.g. "count"


@dataclass
class ConflictInfo:
    """Description of the conflict pattern found in the trace."""

    pattern: str  # "lost_update", "write_write", "unknown"
    summary: str
    attr_name: str | None = None


# ---------------------------------------------------------------------------
# Access classification
# ---------------------------------------------------------------------------

_TARGET = r"globals(?:\.(?P<attr>\w+)|\[\s*[\"']?(?P<key>\w+)[\"']?\s*\])"
_READ = re.compile(_TARGET)
_WRITES = [
    re.compile(_TARGET + r"\s*(?P<op>>>>=|<<=|>>=|\*\*=|&&=|\|\|=|\?\?=|[-+*/%&|^]=|=)(?!=)"),
    re.compile(r"(?:\+\+|--)\s*" + _TARGET),
    re.compile(_TARGET + r"\s*(?:\+\+|--)"),
    re.compile(_TARGET + r"\.(?:push|pop|shift|unshift)\s*\("),
]


def classify_access(source_line: str) -> tuple[str | None, str | None]:
    """Guess how a statement touches the shared globals.

    Returns:
        ``(access_type, attr_name)``; both None when ``globals`` is not
        mentioned.
    """
    reads = [match.group("attr") or match.group("key") for match in _READ.finditer(source_line)]
    if not reads:
        return None, None
    for pattern in _WRITES:
        match = pattern.search(source_line)
        if match is None:
            continue
        attr = match.group("attr") or match.group("key")
        if match.groupdict().get("op") == "=" and len(reads) == 1:
            return "write", attr
        return "read+write", attr
    return "read", reads[0]


class TraceRecorder:
    """Accumulates TraceEvent objects during a single run."""

    __slots__ = ("events",)

    def __init__(self) -> None:
        self.events: list[TraceEvent] = []

    def record(self, thread_id: int, line: int, source_line: str) -> None:
        access_type, attr_name = classify_access(source_line)
        self.events.append(
            TraceEvent(
                step_index=len(self.events),
                thread_id=thread_id,
                line=line,
                source_line=source_line,
                access_type=access_type,
                attr_name=attr_name,
            )
        )

    @property
    def schedule(self) -> list[int]:
        """Thread ids in the order they were actually stepped."""
        return [event.thread_id for event in self.events]


def filter_to_shared_accesses(events: list[TraceEvent]) -> list[TraceEvent]:
    """Keep only steps that access the shared globals."""
    return [event for event in events if event.access_type is not None]


# ---------------------------------------------------------------------------
# Conflict pattern classification
# ---------------------------------------------------------------------------


def classify_conflict(events: list[TraceEvent]) -> ConflictInfo:
    """Look for a lost update (both threads read before either writes) or a
    write-write conflict on the same global key."""
    if not events:
        return ConflictInfo(pattern="unknown", summary="No shared-state accesses recorded.")

    by_attr: dict[str, list[TraceEvent]] = {}
    for event in events:
        by_attr.setdefault(event.attr_name or "(unknown)", []).append(event)

    for attr, accesses in by_attr.items():
        first_read: dict[int, int] = {}
        first_write: dict[int, int] = {}
        for index, event in enumerate(accesses):
            if event.access_type in ("read", "read+write"):
                first_read.setdefault(event.thread_id, index)
            if event.access_type in ("write", "read+write"):
                first_write.setdefault(event.thread_id, index)

        threads = sorted(first_read.keys() | first_write.keys())
        pairs = [(a, b) for a in threads for b in threads if a < b]
        for a, b in pairs:
            if a in first_write and b in first_write and a in first_read and b in first_read:
                writes_start = min(first_write[a], first_write[b])
                # A read-modify-write on one line cannot lose an update.
                split = {first_read[a], first_read[b]}.isdisjoint({first_write[a], first_write[b]})
                if split and first_read[a] < writes_start and first_read[b] < writes_start:
                    return ConflictInfo(
                        pattern="lost_update",
                        summary=f"Lost update: threads {a} and {b} both read {attr} before either wrote it back.",
                        attr_name=attr,
                    )
        for a, b in pairs:
            if a in first_write and b in first_write:
                return ConflictInfo(
                    pattern="write_write",
                    summary=f"Write-write conflict: threads {a} and {b} both wrote to {attr}.",
                    attr_name=attr,
                )

    involved = sorted({event.thread_id for event in events})
    return ConflictInfo(
        pattern="unknown",
        summary=f"Race condition involving threads {', '.join(map(str, involved))}.",
    )


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_trace(
    events: list[TraceEvent],
    *,
    num_threads: int,
    num_explored: int = 0,
    invariant_desc: str | None = None,
) -> str:
    """Format a trace as an interleaved source-line display.

    Args:
        events: Events from a TraceRecorder.
        num_threads: Total number of threads.
        num_explored: Number of interleavings explored before finding the bug.
        invariant_desc: Description of the violated invariant.

    Returns:
        Multi-line string suitable for printing.
    """
    shared = filter_to_shared_accesses(events)
    parts: list[str] = []
    if num_explored > 0:
        parts.append(f"Invariant violated after {num_explored} interleavings.\n")
    else:
        parts.append("Invariant violated.\n")

    if shared:
        parts.append(f"  {classify_conflict(shared).summary}\n")
    else:
        parts.append("  No shared-state accesses recorded.\n")

    label_width = len(f"Thread {num_threads - 1}")
    for event in shared or events:
        label = f"Thread {event.thread_id}".ljust(label_width)
        location = f"line {event.line}"
        tag = ""
        if event.access_type:
            tag = f"  [{event.access_type} .{event.attr_name}]" if event.attr_name else f"  [{event.access_type}]"
        parts.append(f"  {label} | {location:<10s} {event.source_line}{tag}")

    if invariant_desc:
        parts.append("")
        parts.append(f"  Invariant violated: {invariant_desc}")

    parts.append("")
    return "\n".join(parts)
