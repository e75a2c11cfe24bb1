"""
Schedule replay and random interleaving exploration.

Replay an explicit schedule and inspect the outcome:

    >>> import asyncio
    >>> from threadweave.explore import run_schedule
    >>> source = "let tmp = globals.count;\\nglobals.count = tmp + 1;"
    >>> view = asyncio.run(run_schedule(source, {"count": 0}, 2, [0, 1, 0, 1]))
    >>> view.globals["count"]
    1

Or search for a schedule that breaks an invariant.  The invariant is either
a Python predicate on the final globals or an expression in the program's
own language:

    >>> result = explore_interleavings(source, {"count": 0}, 2, "globals.count === 2", seed=1)
    >>> result.property_holds
    False
    >>> print(result.explanation)  # doctest: +SKIP

Property-based tests can draw schedules from :func:`schedule_strategy`.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import random
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from threadweave._trace_format import TraceRecorder, format_trace
from threadweave.common import InterleavingResult
from threadweave.instrument import Program, compile_expression, evaluate, instrument
from threadweave.interpreter import truthy
from threadweave.scheduler import Simulator, SimulatorView

logger = logging.getLogger(__name__)

# Runs longer than this are cut off, so schedules over non-terminating
# programs still return.
DEFAULT_MAX_STEPS = 10_000

Invariant = Callable[[Mapping[str, Any]], bool]


def _source_line(program: Program, line: int | None) -> str:
    lines = program.lines
    if line is None or not 0 <= line < len(lines):
        return ""
    return lines[line].strip()


async def run_schedule(
    program: Program | str,
    global_state: Mapping[str, Any],
    thread_count: int,
    schedule: Iterable[int],
    *,
    seed: int = 0,
    max_steps: int = DEFAULT_MAX_STEPS,
    recorder: TraceRecorder | None = None,
) -> SimulatorView:
    """Replay *schedule* against a fresh simulator and return the final view.

    Entries naming a thread that already finished are skipped.  After the
    schedule is exhausted the remaining threads are stepped round-robin until
    every thread finished or *max_steps* steps were taken.

    Args:
        program: An instrumented program, or program text.
        global_state: Initial globals; deep-copied, never mutated.
        thread_count: Number of threads.
        schedule: Thread ids to step, in order.
        seed: Seeds ``Math.random`` in every thread.
        max_steps: Upper bound on the number of steps taken.
        recorder: If given, receives one event per step.

    Raises:
        InvalidStepRequest: The schedule names a thread id out of range.
    """
    if isinstance(program, str):
        program = instrument(program)
    steps = 0

    async with Simulator(program, copy.deepcopy(dict(global_state)), thread_count, seed=seed) as simulator:
        view = await simulator.start()

        async def advance(thread_id: int) -> None:
            nonlocal view, steps
            before = view
            view = await simulator.step(thread_id)
            steps += 1
            if recorder is not None:
                line = before.thread(thread_id).line
                recorder.record(thread_id, line if line is not None else -1, _source_line(program, line))

        for thread_id in schedule:
            if steps >= max_steps:
                break
            if 0 <= thread_id < thread_count and view.thread(thread_id).finished:
                continue
            await advance(thread_id)

        while not simulator.finished and steps < max_steps:
            for thread_id in simulator.suspended_threads:
                if steps >= max_steps:
                    break
                await advance(thread_id)

    if not view.finished:
        logger.warning("Stopped after %d steps with threads %s still running", steps, view.suspended_threads)
    return view


def _compile_invariant(invariant: Invariant | str) -> Invariant:
    if callable(invariant):
        return invariant
    node = compile_expression(invariant)

    def check(state: Mapping[str, Any]) -> bool:
        return truthy(evaluate(node, dict(state)))

    return check


def _random_schedule(rng: random.Random, thread_count: int, max_ops: int) -> list[int]:
    num_rounds = rng.randint(1, max(1, max_ops // thread_count))
    schedule: list[int] = []
    for _ in range(num_rounds):
        round_perm = list(range(thread_count))
        rng.shuffle(round_perm)
        schedule.extend(round_perm)
    return schedule


def explore_interleavings(
    source: Program | str,
    global_state: Mapping[str, Any],
    thread_count: int,
    invariant: Invariant | str,
    *,
    max_attempts: int = 200,
    max_ops: int = 100,
    max_steps: int = DEFAULT_MAX_STEPS,
    seed: int | None = None,
) -> InterleavingResult:
    """Search for step orders that violate an invariant on the final globals.

    Generates random schedules (rounds of thread-id permutations, so no
    thread starves) and replays each against fresh globals.  Returns on the
    first violation.

    Args:
        source: Program text or an instrumented program.
        global_state: Initial globals for every attempt.
        thread_count: Number of threads.
        invariant: Predicate on the final globals, or an expression such as
            ``"globals.count === 2"`` evaluated with ``globals`` bound.
        max_attempts: How many random interleavings to try.
        max_ops: Maximum generated schedule length per attempt.
        max_steps: Step limit per attempt.
        seed: Optional RNG seed for reproducibility.

    Returns:
        InterleavingResult whose ``counterexample`` is the schedule that was
        actually stepped; replaying it with :func:`run_schedule` reproduces
        the violation.
    """
    program = instrument(source) if isinstance(source, str) else source
    check = _compile_invariant(invariant)
    invariant_desc = invariant if isinstance(invariant, str) else getattr(invariant, "__name__", None)
    rng = random.Random(seed)
    result = InterleavingResult(property_holds=True, num_explored=0)
    seen_schedules: set[tuple[int, ...]] = set()

    for _ in range(max_attempts):
        schedule = _random_schedule(rng, thread_count, max_ops)
        recorder = TraceRecorder()
        view = asyncio.run(
            run_schedule(
                program,
                global_state,
                thread_count,
                schedule,
                seed=seed or 0,
                max_steps=max_steps,
                recorder=recorder,
            )
        )
        result.num_explored += 1
        seen_schedules.add(tuple(recorder.schedule))

        if not check(view.globals):
            result.property_holds = False
            result.counterexample = recorder.schedule
            result.final_globals = copy.deepcopy(dict(view.globals))
            result.explanation = format_trace(
                recorder.events,
                num_threads=thread_count,
                num_explored=result.num_explored,
                invariant_desc=invariant_desc,
            )
            break

    result.unique_interleavings = len(seen_schedules)
    return result


def schedule_strategy(thread_count: int, max_ops: int = 100) -> Any:
    """Hypothesis strategy for generating fair schedules.

    Generates schedules as a sequence of rounds, where each round is a
    random permutation of all thread ids.

    For use with the hypothesis ``@given`` decorator:

        >>> from hypothesis import given
        >>> from threadweave.explore import schedule_strategy, run_schedule
        >>>
        >>> @given(schedule=schedule_strategy(2))
        ... def test_counter(schedule):
        ...     view = asyncio.run(run_schedule(source, {"count": 0}, 2, schedule))
        ...     assert view.globals["count"] == 2

    Replays are deterministic, so shrinking works; pass
    ``settings(phases=[Phase.generate])`` to skip it anyway.
    """
    from hypothesis import strategies as st

    max_rounds = max(1, max_ops // thread_count)
    threads = list(range(thread_count))

    @st.composite
    def _fair_schedule(draw: st.DrawFn) -> list[int]:
        num_rounds = draw(st.integers(min_value=1, max_value=max_rounds))
        schedule: list[int] = []
        for _ in range(num_rounds):
            schedule.extend(draw(st.permutations(threads)))
        return schedule

    return _fair_schedule()
