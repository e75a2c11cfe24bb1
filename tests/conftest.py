"""
Shared fixtures for threadweave tests.

``run_program`` runs one thread of a program without pausing and records
every checkpoint it reports, which is the easiest way to test evaluation
and instrumentation separately from the scheduler.
"""

import asyncio
import os
import sys

import pytest

# Add parent directory to path so we can import threadweave
_threadweave_path = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _threadweave_path not in sys.path:
    sys.path.insert(0, _threadweave_path)

from threadweave.instrument import instrument


def _run_program(source, global_state=None, *, thread_id=0, seed=0):
    """Run *source* to completion on one thread.

    Returns:
        ``(global_state, checkpoints)`` where checkpoints is a list of
        ``(line, locals)`` tuples in the order they were reported.
    """
    state = {} if global_state is None else global_state
    checkpoints = []

    def checkpoint(tid, locals_, line):
        assert tid == thread_id
        checkpoints.append((line, dict(locals_)))
        future = asyncio.get_running_loop().create_future()
        future.set_result(None)
        return future

    asyncio.run(instrument(source)(thread_id, state, checkpoint, seed=seed))
    return state, checkpoints


@pytest.fixture
def run_program():
    return _run_program
