"""
Cooperative scheduler stepping N simulated threads over shared globals.

A :class:`Simulator` launches one invocation of an instrumented program per
thread, all on the running event loop and all sharing a single global-state
mapping.  Every invocation stops at each checkpoint on a per-thread *gate*
(an :class:`asyncio.Future`).  ``step(thread_id)`` resolves exactly one gate
and waits on that thread's *arrival* future, which is resolved when the
thread reaches its next checkpoint, completes, or fails.

Because a thread can only yield at a checkpoint, exactly one thread runs
between two scheduler decisions; there is no fairness policy and the caller
picks the order.

Example::

    >>> program = instrument("let x = globals.count;\\nglobals.count = x + 1;")
    >>> async def demo():
    ...     async with Simulator(program, {"count": 0}, 2) as sim:
    ...         await sim.start()
    ...         await sim.step(0)
    ...         await sim.step(1)
    ...         await sim.step(0)
    ...         view = await sim.step(1)
    ...         return view.globals["count"]
    >>> asyncio.run(demo())
    1

For callers without an event loop, :class:`SyncSimulator` drives a
simulator on a private loop.
"""

from __future__ import annotations

import asyncio
import copy
import enum
import logging
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from threadweave.common import parse_global_state
from threadweave.errors import InvalidStepRequest, JSThrow, MalformedGlobalState, ThreadFailed
from threadweave.instrument import Program, instrument
from threadweave.nodes import TERMINAL_LINE

logger = logging.getLogger(__name__)


class ThreadStatus(enum.Enum):
    RUNNABLE = "runnable"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ThreadView:
    """Read-only snapshot of one thread.

    Attributes:
        id: Thread id in ``[0, thread_count)``.
        status: Lifecycle state at snapshot time.
        line: Line of the checkpoint the thread is suspended at,
            :data:`~threadweave.nodes.TERMINAL_LINE` once completed, or the
            last reported line if it failed.  None before the first
            checkpoint.
        locals: Variables visible at ``line``.
        failure: The recorded error when ``status`` is FAILED.
    """

    id: int
    status: ThreadStatus
    line: int | None
    locals: Mapping[str, Any]
    failure: ThreadFailed | None = None

    @property
    def finished(self) -> bool:
        return self.status in (ThreadStatus.COMPLETED, ThreadStatus.FAILED)


@dataclass(frozen=True)
class SimulatorView:
    """Immutable snapshot handed out after every step.

    Later steps never change a view that was already returned.
    """

    threads: tuple[ThreadView, ...]
    globals: Mapping[str, Any]
    source: str

    def thread(self, thread_id: int) -> ThreadView:
        return self.threads[thread_id]

    def threads_at_line(self, line: int) -> list[int]:
        """Ids of threads whose current position is *line*."""
        return [thread.id for thread in self.threads if thread.line == line]

    @property
    def finished(self) -> bool:
        return all(thread.finished for thread in self.threads)

    @property
    def suspended_threads(self) -> list[int]:
        return [thread.id for thread in self.threads if thread.status is ThreadStatus.SUSPENDED]


class _ThreadState:
    __slots__ = ("id", "status", "line", "locals", "gate", "arrival", "task", "failure")

    def __init__(self, thread_id: int):
        self.id = thread_id
        self.status = ThreadStatus.RUNNABLE
        self.line: int | None = None
        self.locals: dict[str, Any] = {}
        self.gate: asyncio.Future[None] | None = None
        self.arrival: asyncio.Future[None] | None = None
        self.task: asyncio.Task[None] | None = None
        self.failure: ThreadFailed | None = None


class Simulator:
    """Steps N invocations of one program, one checkpoint at a time.

    Args:
        program: An instrumented program from :func:`~threadweave.instrument.instrument`.
        global_state: Mapping shared by reference across all threads.  It is
            mutated in place without any locking.
        thread_count: Number of threads; fixed for the simulator's lifetime.
        seed: Seeds each thread's ``Math.random``.
    """

    def __init__(self, program: Program, global_state: dict[str, Any], thread_count: int, *, seed: int = 0):
        if thread_count < 1:
            raise ValueError(f"thread_count must be positive, got {thread_count}")
        if not isinstance(global_state, dict):
            raise MalformedGlobalState(f"Global state must be a mapping, got {type(global_state).__name__}")
        self.program = program
        self.global_state = global_state
        self.thread_count = thread_count
        self.seed = seed
        self._threads = [_ThreadState(thread_id) for thread_id in range(thread_count)]
        self._started = False
        self._closing = False

    @classmethod
    def from_source(cls, source: str, global_state: str, thread_count: int, *, seed: int = 0) -> Simulator:
        """Build a simulator from program text and a JSON global-state document.

        Raises:
            ProgramSyntaxError: The program does not parse.
            UnsupportedSyntax: The program uses an unsupported construct.
            MalformedGlobalState: The document is not a JSON object.
        """
        return cls(instrument(source), parse_global_state(global_state), thread_count, seed=seed)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> SimulatorView:
        """Launch every thread and wait until each reached its first checkpoint."""
        if self._started:
            raise InvalidStepRequest("Simulator has already been started")
        self._started = True
        loop = asyncio.get_running_loop()
        for state in self._threads:
            state.arrival = loop.create_future()
            state.task = asyncio.create_task(self._run(state), name=f"threadweave-{state.id}")
        await asyncio.gather(*(state.arrival for state in self._threads))
        return self.view()

    async def step(self, thread_id: int) -> SimulatorView:
        """Advance *thread_id* by exactly one checkpoint.

        Returns once the thread suspended at its next checkpoint, completed,
        or failed.

        Raises:
            InvalidStepRequest: The simulator was not started, the id is out
                of range, or the thread is not suspended.  No thread moves.
        """
        state = self._steppable(thread_id)
        assert state.gate is not None
        state.arrival = asyncio.get_running_loop().create_future()
        state.status = ThreadStatus.RUNNABLE
        gate, state.gate = state.gate, None
        gate.set_result(None)
        await state.arrival
        return self.view()

    async def close(self) -> None:
        """Cancel every thread that has not finished."""
        self._closing = True
        tasks = [state.task for state in self._threads if state.task is not None and not state.task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def __aenter__(self) -> Simulator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _steppable(self, thread_id: int) -> _ThreadState:
        if not self._started:
            raise InvalidStepRequest("Simulator has not been started")
        if not 0 <= thread_id < self.thread_count:
            raise InvalidStepRequest(f"No thread {thread_id}; valid ids are 0..{self.thread_count - 1}")
        state = self._threads[thread_id]
        if state.status is not ThreadStatus.SUSPENDED:
            raise InvalidStepRequest(f"Thread {thread_id} is {state.status.value}, not suspended")
        return state

    # ------------------------------------------------------------------
    # Thread side
    # ------------------------------------------------------------------

    def wait_for_tick(self, thread_id: int, locals_: Mapping[str, Any], line: int) -> Awaitable[None]:
        """Checkpoint callback: record the position and return the thread's gate."""
        state = self._threads[thread_id]
        state.locals = dict(locals_)
        state.line = line
        loop = asyncio.get_running_loop()
        gate: asyncio.Future[None] = loop.create_future()
        if line == TERMINAL_LINE:
            gate.set_result(None)
            return gate
        if self._closing:
            gate.cancel()
            return gate
        state.status = ThreadStatus.SUSPENDED
        state.gate = gate
        self._signal_arrival(state)
        return gate

    async def _run(self, state: _ThreadState) -> None:
        logger.debug("Thread %d launched", state.id)
        try:
            await self.program(state.id, self.global_state, self.wait_for_tick, seed=self.seed)
        except Exception as exc:
            state.failure = ThreadFailed(state.id, state.line, exc)
            state.status = ThreadStatus.FAILED
            # Thrown program values carry no useful Python traceback.
            logger.error("%s", state.failure, exc_info=None if isinstance(exc, JSThrow) else exc)
        else:
            state.status = ThreadStatus.COMPLETED
            state.line = TERMINAL_LINE
            logger.debug("Thread %d completed", state.id)
        finally:
            self._signal_arrival(state)

    @staticmethod
    def _signal_arrival(state: _ThreadState) -> None:
        if state.arrival is not None and not state.arrival.done():
            state.arrival.set_result(None)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def view(self) -> SimulatorView:
        """Snapshot every thread plus a deep copy of the globals."""
        memo: dict[int, Any] = {}
        threads = tuple(
            ThreadView(
                id=state.id,
                status=state.status,
                line=state.line,
                locals=MappingProxyType(copy.deepcopy(state.locals, memo)),
                failure=state.failure,
            )
            for state in self._threads
        )
        return SimulatorView(threads, MappingProxyType(copy.deepcopy(self.global_state, memo)), self.program.source)

    @property
    def finished(self) -> bool:
        return all(state.status in (ThreadStatus.COMPLETED, ThreadStatus.FAILED) for state in self._threads)

    @property
    def suspended_threads(self) -> list[int]:
        return [state.id for state in self._threads if state.status is ThreadStatus.SUSPENDED]


class SyncSimulator:
    """Blocking facade over :class:`Simulator` running on a private event loop.

    Example::

        >>> with SyncSimulator.from_source("globals.n++;", '{"n": 0}', 2) as sim:
        ...     sim.start()
        ...     sim.step(0)
        ...     view = sim.step(1)
        >>> view.globals["n"]
        2
    """

    def __init__(self, program: Program, global_state: dict[str, Any], thread_count: int, *, seed: int = 0):
        self._simulator = Simulator(program, global_state, thread_count, seed=seed)
        self._loop = asyncio.new_event_loop()

    @classmethod
    def from_source(cls, source: str, global_state: str, thread_count: int, *, seed: int = 0) -> SyncSimulator:
        return cls(instrument(source), parse_global_state(global_state), thread_count, seed=seed)

    def start(self) -> SimulatorView:
        return self._loop.run_until_complete(self._simulator.start())

    def step(self, thread_id: int) -> SimulatorView:
        return self._loop.run_until_complete(self._simulator.step(thread_id))

    def view(self) -> SimulatorView:
        return self._simulator.view()

    @property
    def finished(self) -> bool:
        return self._simulator.finished

    @property
    def suspended_threads(self) -> list[int]:
        return self._simulator.suspended_threads

    def close(self) -> None:
        if self._loop.is_closed():
            return
        try:
            self._loop.run_until_complete(self._simulator.close())
        finally:
            self._loop.close()

    def __enter__(self) -> SyncSimulator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
