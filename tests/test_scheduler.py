"""Tests for the cooperative scheduler: stepping, views, failures, shutdown."""

import asyncio
import copy
import dataclasses
import logging

import pytest
from hypothesis import given, settings

from tests.racy_programs import (
    ATOMIC_INCREMENT,
    CALL_SPLIT_INCREMENT,
    COUNTER_RACE,
    DEFAULT_GLOBALS,
    DEFAULT_PROGRAM,
    INFINITE_LOOP,
)
from threadweave.errors import InvalidStepRequest, JSThrow, MalformedGlobalState, ThreadFailed, UnsupportedSyntax
from threadweave.explore import schedule_strategy
from threadweave.instrument import instrument
from threadweave.nodes import TERMINAL_LINE
from threadweave.scheduler import Simulator, SyncSimulator, ThreadStatus


def _final_globals(source, global_state, thread_count, schedule):
    """Step *schedule* exactly and return the globals of the last view."""

    async def _test():
        async with Simulator(instrument(source), global_state, thread_count) as sim:
            view = await sim.start()
            for thread_id in schedule:
                view = await sim.step(thread_id)
            assert view.finished
            return dict(view.globals)

    return asyncio.run(_test())


# ---------------------------------------------------------------------------
# Stepping
# ---------------------------------------------------------------------------


def test_single_thread_steps_through_each_statement():
    """Start suspends at line 0; each step moves one statement."""

    async def _test():
        async with Simulator(instrument("let x = 1;\nx = x + 1;"), {}, 1) as sim:
            view = await sim.start()
            assert view.thread(0).status is ThreadStatus.SUSPENDED
            assert (view.thread(0).line, dict(view.thread(0).locals)) == (0, {})

            view = await sim.step(0)
            assert (view.thread(0).line, dict(view.thread(0).locals)) == (1, {"x": 1})

            view = await sim.step(0)
            assert view.thread(0).status is ThreadStatus.COMPLETED
            assert view.thread(0).line == TERMINAL_LINE
            assert dict(view.globals) == {}
            assert view.finished

    asyncio.run(_test())


def test_single_statement_increment_never_races():
    """A statement runs without interruption, so either order gives 2."""
    assert _final_globals(ATOMIC_INCREMENT, {"count": 0}, 2, [0, 1]) == {"count": 2}
    assert _final_globals(ATOMIC_INCREMENT, {"count": 0}, 2, [1, 0]) == {"count": 2}


def test_split_read_and_write_loses_an_update():
    assert _final_globals(COUNTER_RACE, {"count": 0}, 2, [0, 1, 0, 1]) == {"count": 1}
    assert _final_globals(COUNTER_RACE, {"count": 0}, 2, [0, 0, 1, 1]) == {"count": 2}


def test_checkpoint_inside_call_splits_the_statement():
    """Both threads read count, then pause inside tick() before writing."""

    async def _test():
        async with Simulator(instrument(CALL_SPLIT_INCREMENT), {"count": 0}, 2) as sim:
            view = await sim.start()
            assert view.threads_at_line(3) == [0, 1]
            await sim.step(0)
            view = await sim.step(1)
            assert view.threads_at_line(1) == [0, 1]
            await sim.step(0)
            view = await sim.step(1)
            assert dict(view.globals) == {"count": 1}

    asyncio.run(_test())
    assert _final_globals(CALL_SPLIT_INCREMENT, {"count": 0}, 2, [0, 0, 1, 1]) == {"count": 2}


def test_default_program_duplicates_actions():
    """Thread 1 copies savedActions after thread 0 saved but before it cleared."""
    serial = [0] * 8 + [1] * 4
    assert _final_globals(DEFAULT_PROGRAM, copy.deepcopy(DEFAULT_GLOBALS), 2, serial) == {
        "currActions": [],
        "savedActions": ["A", "B", "C"],
    }

    async def _test():
        async with Simulator(instrument(DEFAULT_PROGRAM), copy.deepcopy(DEFAULT_GLOBALS), 2) as sim:
            await sim.start()
            for _ in range(7):
                view = await sim.step(0)
            assert view.thread(0).line == 8
            view = await sim.step(1)
            assert view.thread(1).line == 2
            view = await sim.step(0)
            assert view.thread(0).status is ThreadStatus.COMPLETED
            while not view.finished:
                view = await sim.step(1)
            return dict(view.globals)

    assert asyncio.run(_test()) == {"currActions": [], "savedActions": ["A", "B", "C", "B", "C"]}


def test_each_thread_has_its_own_locals():
    async def _test():
        async with Simulator(instrument("let mine = threadId;\nglobals.last = mine;"), {}, 2) as sim:
            await sim.start()
            await sim.step(0)
            view = await sim.step(1)
            assert dict(view.thread(0).locals) == {"mine": 0}
            assert dict(view.thread(1).locals) == {"mine": 1}

    asyncio.run(_test())


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


def test_views_are_read_only():
    async def _test():
        async with Simulator(instrument(COUNTER_RACE), {"count": 0}, 2) as sim:
            view = await sim.start()
            view = await sim.step(0)
            with pytest.raises(TypeError):
                view.globals["count"] = 5
            with pytest.raises(TypeError):
                view.thread(0).locals["tmp"] = 5
            with pytest.raises(dataclasses.FrozenInstanceError):
                view.threads = ()

    asyncio.run(_test())


def test_earlier_views_do_not_change():
    """Globals in a returned view are a copy, nested containers included."""

    async def _test():
        source = "globals.items.push(threadId);\nglobals.items.push(threadId);"
        async with Simulator(instrument(source), {"items": []}, 1) as sim:
            first = await sim.start()
            second = await sim.step(0)
            third = await sim.step(0)
            assert first.globals["items"] == []
            assert second.globals["items"] == [0]
            assert third.globals["items"] == [0, 0]
            assert first.thread(0).line == 0

    asyncio.run(_test())


def test_globals_are_shared_by_reference():
    state = {"count": 0}
    _final_globals(ATOMIC_INCREMENT, state, 2, [0, 1])
    assert state == {"count": 2}


# ---------------------------------------------------------------------------
# Invalid requests
# ---------------------------------------------------------------------------


def test_step_before_start():
    sim = Simulator(instrument(COUNTER_RACE), {"count": 0}, 2)
    with pytest.raises(InvalidStepRequest, match="not been started"):
        asyncio.run(sim.step(0))


@pytest.mark.parametrize("thread_id", [-1, 2])
def test_step_out_of_range(thread_id):
    async def _test():
        async with Simulator(instrument(COUNTER_RACE), {"count": 0}, 2) as sim:
            await sim.start()
            with pytest.raises(InvalidStepRequest, match="No thread"):
                await sim.step(thread_id)
            # Nothing moved.
            view = sim.view()
            assert view.threads_at_line(0) == [0, 1]

    asyncio.run(_test())


def test_step_completed_thread():
    async def _test():
        async with Simulator(instrument(ATOMIC_INCREMENT), {"count": 0}, 2) as sim:
            await sim.start()
            await sim.step(0)
            with pytest.raises(InvalidStepRequest, match="completed"):
                await sim.step(0)
            view = await sim.step(1)
            assert dict(view.globals) == {"count": 2}

    asyncio.run(_test())


def test_step_thread_that_is_still_running():
    async def _test():
        async with Simulator(instrument(COUNTER_RACE), {"count": 0}, 2) as sim:
            await sim.start()
            pending = asyncio.ensure_future(sim.step(0))
            await asyncio.sleep(0)
            assert sim.view().thread(0).status is ThreadStatus.RUNNABLE
            with pytest.raises(InvalidStepRequest, match="Thread 0 is .*not suspended"):
                await sim.step(0)
            view = await pending
            assert view.thread(0).status is ThreadStatus.SUSPENDED
            assert view.thread(0).line == 1
            assert view.thread(1).line == 0

    asyncio.run(_test())


def test_start_twice():
    async def _test():
        async with Simulator(instrument(ATOMIC_INCREMENT), {"count": 0}, 1) as sim:
            await sim.start()
            with pytest.raises(InvalidStepRequest):
                await sim.start()

    asyncio.run(_test())


def test_constructor_validation():
    program = instrument(ATOMIC_INCREMENT)
    with pytest.raises(ValueError):
        Simulator(program, {}, 0)
    with pytest.raises(MalformedGlobalState):
        Simulator(program, [1], 1)


def test_unsupported_program_fails_before_globals_are_read():
    with pytest.raises(UnsupportedSyntax) as excinfo:
        Simulator.from_source("switch (x) {}", "not json", 2)
    assert excinfo.value.construct == "SwitchStatement"


@pytest.mark.parametrize("document", ["not json", "[1, 2]", '"text"'])
def test_malformed_global_state(document):
    with pytest.raises(MalformedGlobalState):
        Simulator.from_source(ATOMIC_INCREMENT, document, 1)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


def test_failing_thread_does_not_stop_siblings(caplog):
    source = 'if (threadId === 0) {\n  throw "boom";\n}\nglobals.done = true;'

    async def _test():
        async with Simulator(instrument(source), {}, 2) as sim:
            view = await sim.start()
            assert view.thread(0).line == 1
            assert view.thread(1).line == 3

            view = await sim.step(0)
            failed = view.thread(0)
            assert failed.status is ThreadStatus.FAILED
            assert failed.line == 1
            assert isinstance(failed.failure, ThreadFailed)
            assert isinstance(failed.failure.cause, JSThrow)
            assert failed.failure.cause.value == "boom"
            with pytest.raises(InvalidStepRequest):
                await sim.step(0)

            view = await sim.step(1)
            assert view.thread(1).status is ThreadStatus.COMPLETED
            assert dict(view.globals) == {"done": True}
            assert view.finished

    caplog.set_level(logging.ERROR, logger="threadweave.scheduler")
    asyncio.run(_test())
    assert "Thread 0 failed at line 1" in caplog.text


def test_failure_before_first_checkpoint():
    """An error while evaluating a loop subject happens before any report."""

    async def _test():
        async with Simulator(instrument("for (const x of globals.nothing) {\n  x;\n}"), {}, 1) as sim:
            view = await sim.start()
            assert view.thread(0).status is ThreadStatus.FAILED
            assert view.thread(0).line is None
            assert view.finished

    asyncio.run(_test())


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


def test_close_cancels_running_loops():
    async def _test():
        sim = Simulator(instrument(INFINITE_LOOP), {"count": 0}, 2)
        await sim.start()
        for _ in range(4):
            await sim.step(0)
        await sim.close()
        return sim.view()

    view = asyncio.run(_test())
    assert dict(view.globals) == {"count": 2}
    assert view.thread(1).line == 0


def test_close_does_not_run_finally_blocks():
    source = "try {\n  while (true) {\n    globals.count++;\n  }\n} finally {\n  globals.cleanup = true;\n}"

    async def _test():
        async with Simulator(instrument(source), {"count": 0}, 1) as sim:
            await sim.start()
            await sim.step(0)
        return sim.view()

    view = asyncio.run(_test())
    assert "cleanup" not in view.globals


# ---------------------------------------------------------------------------
# SyncSimulator
# ---------------------------------------------------------------------------


def test_sync_simulator():
    with SyncSimulator.from_source(COUNTER_RACE, '{"count": 0}', 2) as sim:
        view = sim.start()
        assert sim.suspended_threads == [0, 1]
        for thread_id in [0, 1, 0, 1]:
            view = sim.step(thread_id)
        assert sim.finished
        assert sim.suspended_threads == []
        assert dict(view.globals) == {"count": 1}
        assert sim.view() == view
    sim.close()


def test_sync_simulator_reports_invalid_steps():
    with SyncSimulator.from_source(ATOMIC_INCREMENT, '{"count": 0}', 1) as sim:
        sim.start()
        with pytest.raises(InvalidStepRequest):
            sim.step(3)
        view = sim.step(0)
        assert view.finished


# ---------------------------------------------------------------------------
# Determinism
# ---------------------------------------------------------------------------


@given(schedule=schedule_strategy(2, max_ops=8))
@settings(max_examples=25, deadline=None)
def test_same_schedule_same_outcome(schedule):
    """Replaying a step order always produces the same globals."""

    def replay():
        async def _test():
            async with Simulator(instrument(COUNTER_RACE), {"count": 0}, 2) as sim:
                view = await sim.start()
                for thread_id in schedule:
                    if view.thread(thread_id).finished:
                        continue
                    view = await sim.step(thread_id)
                while not view.finished:
                    view = await sim.step(view.suspended_threads[0])
                return dict(view.globals)

        return asyncio.run(_test())

    first = replay()
    assert first["count"] in (1, 2)
    assert replay() == first
