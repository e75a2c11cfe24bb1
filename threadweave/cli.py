"""threadweave CLI: step or explore thread interleavings of a program.

Usage::

    threadweave run counter.js --threads 2 --globals '{"count": 0}' --schedule 0,1,0,1
    threadweave run counter.js --threads 2             # prompts for thread ids
    threadweave explore counter.js --threads 2 --globals '{"count": 0}' \\
        --invariant 'globals.count === 2'

``PROGRAM`` may be ``-`` to read the program from stdin (``run`` then needs
``--schedule``).  Program ``console.log`` output is logged at INFO; the
default log level comes from ``THREADWEAVE_LOG_LEVEL``.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any, TextIO

from threadweave._view_format import format_view
from threadweave.common import Schedule, parse_global_state
from threadweave.errors import InvalidStepRequest, ThreadweaveError
from threadweave.explore import explore_interleavings
from threadweave.instrument import instrument
from threadweave.scheduler import SyncSimulator

# Environment variable supplying the default --log-level
THREADWEAVE_LOG_LEVEL_ENV = "THREADWEAVE_LOG_LEVEL"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="threadweave", description=__doc__.split("\n")[0])
    parser.add_argument(
        "--log-level",
        default=os.environ.get(THREADWEAVE_LOG_LEVEL_ENV, "INFO"),
        help="logging level (default: $%(env)s or INFO)" % {"env": THREADWEAVE_LOG_LEVEL_ENV},
    )
    commands = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("program", help="program file, or - for stdin")
    common.add_argument("--threads", type=int, default=2, help="number of threads (default: 2)")
    state = common.add_mutually_exclusive_group()
    state.add_argument("--globals", dest="globals_json", default=None, help="initial globals as a JSON object")
    state.add_argument("--globals-file", type=Path, default=None, help="file holding the initial globals")
    common.add_argument("--seed", type=int, default=0, help="seed for Math.random and exploration")

    run = commands.add_parser("run", parents=[common], help="step threads by hand or by schedule")
    run.add_argument("--schedule", default=None, help="comma-separated thread ids, e.g. 0,1,0")
    run.add_argument("--quiet", action="store_true", help="only print the final view")

    explore = commands.add_parser("explore", parents=[common], help="search for an invariant violation")
    explore.add_argument("--invariant", required=True, help="expression over globals that must hold")
    explore.add_argument("--attempts", type=int, default=200, help="random interleavings to try")
    return parser


def _read_program(path: str, stdin: TextIO) -> str:
    if path == "-":
        return stdin.read()
    return Path(path).read_text()


def _load_globals(args: argparse.Namespace) -> dict[str, Any]:
    if args.globals_file is not None:
        return parse_global_state(args.globals_file.read_text())
    return parse_global_state(args.globals_json or "{}")


def _prompt_steps(simulator: SyncSimulator, stdin: TextIO) -> Iterator[int]:
    """Read thread ids interactively until every thread finished or EOF."""
    while not simulator.finished:
        choices = ", ".join(map(str, simulator.suspended_threads))
        print(f"step which thread? [{choices}] ", end="", flush=True)
        line = stdin.readline()
        text = line.strip()
        if not line or text in ("q", "quit"):
            return
        try:
            thread_id = int(text)
        except ValueError:
            print(f"threadweave: not a thread id: {text!r}", file=sys.stderr)
            continue
        yield thread_id


def _run(args: argparse.Namespace, stdin: TextIO) -> int:
    source = _read_program(args.program, stdin)
    program = instrument(source)
    global_state = _load_globals(args)
    schedule = Schedule.parse(args.schedule) if args.schedule is not None else None

    with SyncSimulator(program, global_state, args.threads, seed=args.seed) as simulator:
        view = simulator.start()
        if not args.quiet:
            print(format_view(view))
        steps = iter(schedule) if schedule is not None else _prompt_steps(simulator, stdin)
        for number, thread_id in enumerate(steps, start=1):
            if simulator.finished:
                break
            if schedule is not None and 0 <= thread_id < args.threads and view.thread(thread_id).finished:
                continue
            try:
                view = simulator.step(thread_id)
            except InvalidStepRequest as exc:
                print(f"threadweave: {exc}", file=sys.stderr)
                continue
            if not args.quiet:
                print(f"\n--- step {number}: thread {thread_id} ---")
                print(format_view(view))
        if args.quiet:
            print(format_view(view))
    return 0


def _explore(args: argparse.Namespace, stdin: TextIO) -> int:
    source = _read_program(args.program, stdin)
    result = explore_interleavings(
        source,
        _load_globals(args),
        args.threads,
        args.invariant,
        max_attempts=args.attempts,
        seed=args.seed,
    )
    if result.property_holds:
        print(
            f"Invariant held across {result.num_explored} interleavings "
            f"({result.unique_interleavings} unique)."
        )
        return 0
    print(result.explanation)
    print("Counterexample schedule: " + ",".join(map(str, result.counterexample or [])))
    return 1


def main(argv: list[str] | None = None, *, stdin: TextIO | None = None) -> int:
    """Entry point for the ``threadweave`` CLI command."""
    args = _build_parser().parse_args(argv)
    level = logging.getLevelName(args.log_level.upper())
    if not isinstance(level, int):
        print(f"threadweave: unknown log level {args.log_level!r}", file=sys.stderr)
        return 2
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    stdin = sys.stdin if stdin is None else stdin

    if args.threads < 1:
        print("threadweave: --threads must be at least 1", file=sys.stderr)
        return 2
    if args.command == "run" and args.program == "-" and args.schedule is None:
        print("threadweave: reading the program from stdin requires --schedule", file=sys.stderr)
        return 2

    try:
        if args.command == "run":
            return _run(args, stdin)
        return _explore(args, stdin)
    except (ThreadweaveError, ValueError) as exc:
        print(f"threadweave: {exc}", file=sys.stderr)
        return 2
    except OSError as exc:
        print(f"threadweave: cannot read {exc.filename}: {exc.strerror}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
