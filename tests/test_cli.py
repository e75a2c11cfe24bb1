"""Tests for the threadweave command line."""

import io

import pytest

from tests.racy_programs import ATOMIC_INCREMENT, COUNTER_RACE
from threadweave.cli import main


@pytest.fixture
def counter_file(tmp_path):
    path = tmp_path / "counter.js"
    path.write_text(COUNTER_RACE)
    return path


def test_run_with_schedule(counter_file, capsys):
    code = main(["run", str(counter_file), "--globals", '{"count": 0}', "--schedule", "0,1,0,1"])
    out = capsys.readouterr().out
    assert code == 0
    assert "--- step 4: thread 1 ---" in out
    assert out.splitlines()[0] == "0,1 | let tmp = globals.count;"
    assert "  count  1" in out.splitlines()


def test_run_quiet_prints_only_the_final_view(counter_file, capsys):
    code = main(["run", str(counter_file), "--globals", '{"count": 0}', "--schedule", "0,0,1,1", "--quiet"])
    out = capsys.readouterr().out
    assert code == 0
    assert "--- step" not in out
    assert out.count("Globals") == 1
    assert "  count  2" in out.splitlines()


def test_run_reads_globals_file(counter_file, tmp_path, capsys):
    state = tmp_path / "state.json"
    state.write_text('{"count": 10}')
    code = main(["run", str(counter_file), "--globals-file", str(state), "--schedule", "0,0,1,1", "--quiet"])
    assert code == 0
    assert "  count  12" in capsys.readouterr().out.splitlines()


def test_run_program_from_stdin(capsys):
    code = main(["run", "-", "--threads", "1", "--schedule", "0,0", "--quiet"], stdin=io.StringIO("globals.n = 1;\n"))
    assert code == 0
    assert "  n     1" in capsys.readouterr().out.splitlines()


def test_run_from_stdin_needs_a_schedule(capsys):
    code = main(["run", "-"], stdin=io.StringIO(ATOMIC_INCREMENT))
    assert code == 2
    assert "requires --schedule" in capsys.readouterr().err


def test_interactive_run(counter_file, capsys):
    code = main(["run", str(counter_file), "--globals", '{"count": 0}'], stdin=io.StringIO("0\nx\n1\n0\n1\n"))
    captured = capsys.readouterr()
    assert code == 0
    assert "step which thread? [0, 1] " in captured.out
    assert "--- step 4: thread 1 ---" in captured.out
    assert "not a thread id: 'x'" in captured.err


def test_interactive_run_stops_on_quit(counter_file, capsys):
    code = main(["run", str(counter_file), "--globals", '{"count": 0}'], stdin=io.StringIO("0\nq\n"))
    assert code == 0
    assert "--- step 2" not in capsys.readouterr().out


def test_invalid_step_is_reported_and_skipped(counter_file, capsys):
    code = main(["run", str(counter_file), "--globals", '{"count": 0}', "--schedule", "0,5,0", "--quiet"])
    captured = capsys.readouterr()
    assert code == 0
    assert "No thread 5" in captured.err


def test_explore_finds_violation(counter_file, capsys):
    code = main(
        ["explore", str(counter_file), "--globals", '{"count": 0}', "--invariant", "globals.count === 2", "--seed", "1"]
    )
    out = capsys.readouterr().out
    assert code == 1
    assert "Lost update" in out
    assert "Counterexample schedule: " in out


def test_explore_holds(tmp_path, capsys):
    path = tmp_path / "atomic.js"
    path.write_text(ATOMIC_INCREMENT)
    code = main(
        ["explore", str(path), "--globals", '{"count": 0}', "--invariant", "globals.count === 2", "--attempts", "5"]
    )
    assert code == 0
    assert "Invariant held across 5 interleavings" in capsys.readouterr().out


@pytest.mark.parametrize(
    "argv, message",
    [
        (["--log-level", "chatty", "run", "x.js"], "unknown log level"),
        (["run", "x.js", "--threads", "0"], "--threads must be at least 1"),
        (["run", "missing.js", "--schedule", "0"], "cannot read"),
    ],
)
def test_usage_errors(argv, message, tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    assert main(argv) == 2
    assert message in capsys.readouterr().err


def test_unsupported_program(tmp_path, capsys):
    path = tmp_path / "switch.js"
    path.write_text("switch (x) {}")
    assert main(["run", str(path), "--schedule", "0"]) == 2
    assert "Unsupported syntax: SwitchStatement (line 0)" in capsys.readouterr().err


def test_malformed_globals(counter_file, capsys):
    assert main(["run", str(counter_file), "--globals", "[1]", "--schedule", "0"]) == 2
    assert "must be a JSON object" in capsys.readouterr().err


def test_bad_schedule(counter_file, capsys):
    assert main(["run", str(counter_file), "--schedule", "0,a"]) == 2
    assert "Invalid schedule" in capsys.readouterr().err
