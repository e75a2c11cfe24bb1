"""
threadweave: step through interleavings of simulated threads.

A small JavaScript-flavoured program is instrumented so that it pauses
before every statement, then N copies of it run as cooperative threads over
one shared ``globals`` mapping, advanced one statement at a time::

    from threadweave.instrument import instrument
    from threadweave.scheduler import Simulator, SyncSimulator

Rendering a view::

    from threadweave._view_format import format_view

Replaying schedules and searching for races::

    from threadweave.explore import run_schedule, explore_interleavings, schedule_strategy
"""

__version__ = "0.1.0"
