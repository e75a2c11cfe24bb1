"""
Saving pending actions: a check-then-act race
=============================================

Each thread merges ``globals.currActions`` into ``globals.savedActions``
and then clears ``currActions``::

    const allActions = [...globals.savedActions];   // read saved
    for (const action of globals.currActions) {     // read pending
        allActions.push(action);
    }
    globals.savedActions = allActions;              // write saved
    globals.currActions = [];                       // clear pending

Race window::

    Thread 0:  merge, save ["A", "B", "C"]
    Thread 1:  copy saved ["A", "B", "C"], read pending ["B", "C"]
    Thread 0:  clear pending
    Thread 1:  save ["A", "B", "C", "B", "C"]   <- B and C saved twice

Fix: take the pending actions and clear ``currActions`` in one statement,
so no other thread can run between the read and the clear.

This example shows:

1. **Explicit schedule** (deterministic) - step the threads into the window
2. **Random exploration** (automatic) - find a lost counter update

Running::

    python examples/saved_actions_race.py
"""

from __future__ import annotations

import json
from pathlib import Path

from threadweave._view_format import format_view
from threadweave.explore import explore_interleavings
from threadweave.scheduler import SyncSimulator

_HERE = Path(__file__).parent
_SEP = "=" * 70

_INITIAL = {"currActions": ["B", "C"], "savedActions": ["A"]}


# ============================================================================
# Demo 1: Explicit schedule
# ============================================================================


def demo_schedule() -> None:
    print(_SEP)
    print("Demo 1: duplicated actions  (explicit schedule)")
    print(_SEP)
    print()

    source = (_HERE / "saved_actions.js").read_text()
    # Thread 0 runs up to the clear, thread 1 copies, then both finish.
    schedule = [0] * 7 + [1] + [0] + [1] * 7

    with SyncSimulator.from_source(source, json.dumps(_INITIAL), 2) as sim:
        view = sim.start()
        for thread_id in schedule:
            if sim.finished:
                break
            if view.thread(thread_id).finished:
                continue
            view = sim.step(thread_id)

    for line in format_view(view).splitlines():
        print("  " + line)
    print()
    saved = list(view.globals["savedActions"])
    if len(saved) != len(set(saved)):
        print(f"  DUPLICATES confirmed: savedActions = {saved}")
    else:
        print(f"  No duplicates: savedActions = {saved}")
    print()


# ============================================================================
# Demo 2: Random exploration
# ============================================================================


def demo_exploration() -> None:
    print(_SEP)
    print("Demo 2: lost counter update  (random exploration)")
    print(_SEP)
    print()

    source = (_HERE / "counter.js").read_text()
    result = explore_interleavings(
        source,
        {"count": 0},
        2,
        "globals.count === 2",
        max_attempts=50,
        seed=0,
    )

    print(f"  property_holds    : {result.property_holds}")
    print(f"  attempts_explored : {result.num_explored}")
    print(f"  counterexample    : {result.counterexample}")
    print()
    if result.explanation:
        for line in result.explanation.splitlines():
            print("  " + line)
        print()


# ============================================================================
# Entry point
# ============================================================================

if __name__ == "__main__":
    demo_schedule()
    demo_exploration()
