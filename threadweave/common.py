"""Shared data structures for threadweave."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from threadweave.errors import MalformedGlobalState


def parse_global_state(text: str) -> dict[str, Any]:
    """Decode a global-state document.

    Raises:
        MalformedGlobalState: *text* is not JSON, or is JSON but not an object.
    """
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedGlobalState(f"Global state is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise MalformedGlobalState(f"Global state must be a JSON object, got {type(value).__name__}")
    return value


class Schedule:
    """An explicit order in which to step threads.

    Each entry is a thread id; replaying the schedule steps those threads in
    that order, one checkpoint per entry.
    """

    def __init__(self, steps: list[int]):
        """Initialize a schedule with a list of thread ids.

        Args:
            steps: Ordered thread ids. May be empty.
        """
        self.steps = list(steps)
        self._validate()

    def _validate(self):
        """Validate that the schedule is well-formed."""
        for step in self.steps:
            if not isinstance(step, int) or isinstance(step, bool) or step < 0:
                raise ValueError(f"Schedule entries must be non-negative thread ids, got {step!r}")

    @classmethod
    def parse(cls, text: str) -> Schedule:
        """Parse a comma-separated schedule such as ``"0,1,1,0"``."""
        entries = [entry.strip() for entry in text.split(",") if entry.strip()]
        try:
            return cls([int(entry) for entry in entries])
        except ValueError:
            raise ValueError(f"Invalid schedule {text!r}: expected comma-separated thread ids") from None

    def __iter__(self):
        return iter(self.steps)

    def __len__(self):
        return len(self.steps)

    def __repr__(self):
        return f"Schedule({self.steps!r})"


@dataclass
class InterleavingResult:
    """Result of exploring interleavings.

    Returned by :func:`~threadweave.explore.explore_interleavings`.

    Attributes:
        property_holds: True if the invariant held under all tested interleavings.
        counterexample: First schedule that violated the invariant (if any).
        num_explored: How many interleavings were tested.
        unique_interleavings: Number of distinct schedule orderings observed.
        final_globals: Global state left behind by the counterexample run.
        explanation: Human-readable interleaved trace of the counterexample,
            or None if no violation was found.
    """

    property_holds: bool
    counterexample: list[int] | None = None
    num_explored: int = 0
    unique_interleavings: int = 0
    final_globals: dict[str, Any] = field(default_factory=dict)
    explanation: str | None = None
