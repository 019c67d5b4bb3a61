"""Unit tests for the post-install test harness."""

from __future__ import annotations

import logging
import os
import socket
import sys
import time
from pathlib import Path

import pytest

from keg.config import ExpectConfig, TestConfig
from keg.errors import TestFailure, TestTimeout
from keg.harness import output_matches, run_check, run_test_spec

PY = sys.executable
CONTEXT = {"version": "4.2.1", "name": "supervisor"}

SLEEP_FOREVER = "import time; time.sleep(60)"
TOUCH_THEN_SLEEP = (
    "import pathlib, time; time.sleep(0.2); pathlib.Path('ready.flag').touch(); time.sleep(60)"
)


def _test_config(**payload: object) -> TestConfig:
    return TestConfig.model_validate(payload)


def _started_pids(caplog: pytest.LogCaptureFixture) -> list[int]:
    return [
        record.pid
        for record in caplog.records
        if getattr(record, "event", None) == "harness.service_started"
    ]


def _assert_gone(pid: int) -> None:
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def _wait_gone(pid: int, timeout: float = 5.0) -> bool:
    """Wait for ``pid`` to exit; an unreaped zombie counts as gone."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        try:
            stat = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8")
        except OSError:
            stat = ""
        if stat.rsplit(")", 1)[-1].split()[:1] == ["Z"]:
            return True
        time.sleep(0.05)
    return False


def test_output_matches_equals_after_strip() -> None:
    expect = ExpectConfig(equals="hello world")

    assert output_matches(expect, "hello world\n", CONTEXT)
    assert not output_matches(expect, "hello worlds\n", CONTEXT)


def test_output_matches_templated_pattern() -> None:
    expect = ExpectConfig(pattern="^{version}$")

    assert output_matches(expect, "4.2.1\n", CONTEXT)
    assert not output_matches(expect, "4.2.0\n", CONTEXT)


def test_run_check_returns_captured_output(tmp_path: Path) -> None:
    result = run_check(
        [PY, "-c", "print('hello world')"],
        cwd=tmp_path,
        env=os.environ,
        context=CONTEXT,
        expect=ExpectConfig(equals="hello world"),
    )

    assert result.returncode == 0
    assert result.stdout == "hello world\n"


def test_run_check_accepts_expected_nonzero_exit(tmp_path: Path) -> None:
    result = run_check(
        [PY, "-c", "import sys; print('macosvpn 4.2.1'); sys.exit(2)"],
        cwd=tmp_path,
        env=os.environ,
        context=CONTEXT,
        expect=ExpectConfig(pattern="{version}"),
        exit_code=2,
    )

    assert result.returncode == 2


def test_run_check_rejects_unexpected_exit(tmp_path: Path) -> None:
    with pytest.raises(TestFailure, match="exited with status 0 \\(expected 2\\)"):
        run_check(
            [PY, "-c", "print('ok')"],
            cwd=tmp_path,
            env=os.environ,
            context=CONTEXT,
            exit_code=2,
        )


def test_run_check_reports_output_mismatch(tmp_path: Path) -> None:
    with pytest.raises(TestFailure) as exc_info:
        run_check(
            [PY, "-c", "print('hello there')"],
            cwd=tmp_path,
            env=os.environ,
            context=CONTEXT,
            expect=ExpectConfig(equals="hello world"),
        )

    error = exc_info.value
    assert "did not produce output equal to 'hello world'" in error.message
    assert "hello there" in error.output
    assert error.exit_code == 6


def test_run_check_times_out(tmp_path: Path) -> None:
    with pytest.raises(TestFailure, match="timed out"):
        run_check(
            [PY, "-c", SLEEP_FOREVER],
            cwd=tmp_path,
            env=os.environ,
            context=CONTEXT,
            timeout=0.5,
        )


def test_run_check_missing_command(tmp_path: Path) -> None:
    with pytest.raises(TestFailure, match="command not found"):
        run_check(
            ["definitely-not-a-command-keg"],
            cwd=tmp_path,
            env=os.environ,
            context=CONTEXT,
        )


def test_run_check_non_executable_command(tmp_path: Path) -> None:
    script = tmp_path / "macosvpn"
    script.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    script.chmod(0o600)

    with pytest.raises(TestFailure, match="could not run") as exc_info:
        run_check([str(script)], cwd=tmp_path, env=os.environ, context=CONTEXT)

    assert exc_info.value.command == [str(script)]


def test_files_are_written_verbatim(tmp_path: Path) -> None:
    program = "int main(void) { return 0; }\n"
    test_config = _test_config(
        files={"src/test.c": program},
        steps=[
            {
                "command": [PY, "-c", "import sys; print(open(sys.argv[1]).read())", "src/test.c"],
                "expect": {"equals": "int main(void) {{ return 0; }}"},
            }
        ],
    )

    outputs = run_test_spec(test_config, CONTEXT, scratch_dir=tmp_path)

    assert outputs[0].stdout.strip() == program.strip()


def test_workspace_is_home_and_is_removed(tmp_path: Path) -> None:
    test_config = _test_config(
        steps=[
            {
                "command": [
                    PY,
                    "-c",
                    "import os, sys; print(os.getcwd()); print(os.environ['HOME'] == sys.argv[1])",
                    "{testpath}",
                ],
            }
        ]
    )

    outputs = run_test_spec(test_config, CONTEXT, scratch_dir=tmp_path)

    workspace, home_matches = outputs[0].stdout.splitlines()
    assert home_matches == "True"
    assert Path(workspace).parent == tmp_path
    assert not Path(workspace).exists()


def test_failing_step_stops_later_steps(tmp_path: Path) -> None:
    test_config = _test_config(
        steps=[
            {"command": [PY, "-c", "raise SystemExit(1)"]},
            {"command": [PY, "-c", "open('second', 'w').close()"]},
        ]
    )

    with pytest.raises(TestFailure):
        run_test_spec(test_config, CONTEXT, scratch_dir=tmp_path)

    assert list(tmp_path.iterdir()) == []


def test_service_is_queried_and_stopped(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    test_config = _test_config(
        service={
            "start": [PY, "-c", TOUCH_THEN_SLEEP],
            "ready": {"path": "ready.flag", "timeout": 10},
            "query": [PY, "-c", "print('4.2.1')"],
            "expect": {"pattern": "{version}"},
            "stop_timeout": 2,
        }
    )

    with caplog.at_level(logging.INFO, logger="keg.harness"):
        outputs = run_test_spec(test_config, CONTEXT, scratch_dir=tmp_path)

    assert outputs[-1].stdout.strip() == "4.2.1"
    pids = _started_pids(caplog)
    assert len(pids) == 1
    _assert_gone(pids[0])


def test_service_readiness_timeout_leaves_no_process(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    test_config = _test_config(
        service={
            "start": [PY, "-c", SLEEP_FOREVER],
            "ready": {"path": "never.sock", "timeout": 0.5, "interval": 0.05},
            "query": [PY, "-c", "print('unreachable')"],
            "stop_timeout": 2,
        }
    )

    with caplog.at_level(logging.INFO, logger="keg.harness"):
        with pytest.raises(TestTimeout, match="did not become ready"):
            run_test_spec(test_config, CONTEXT, scratch_dir=tmp_path)

    pids = _started_pids(caplog)
    assert len(pids) == 1
    _assert_gone(pids[0])
    assert list(tmp_path.iterdir()) == []


def test_teardown_kills_children_that_ignore_sigterm(tmp_path: Path) -> None:
    pid_file = tmp_path / "child.pid"
    stubborn = "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(60)"
    start = (
        "import subprocess, sys, time; "
        "child = subprocess.Popen([sys.executable, '-c', sys.argv[2]]); "
        "open(sys.argv[1], 'w').write(str(child.pid)); time.sleep(60)"
    )
    test_config = _test_config(
        service={
            "start": [PY, "-c", start, str(pid_file), stubborn],
            "ready": {"path": "never.sock", "timeout": 1.0, "interval": 0.05},
            "query": [PY, "-c", "print('unreachable')"],
            "stop_timeout": 2,
        }
    )

    with pytest.raises(TestTimeout):
        run_test_spec(test_config, CONTEXT, scratch_dir=tmp_path / "scratch")

    child_pid = int(pid_file.read_text(encoding="utf-8"))
    assert _wait_gone(child_pid)


def test_service_exiting_early_is_a_failure(tmp_path: Path) -> None:
    test_config = _test_config(
        service={
            "start": [PY, "-c", "import sys; print('bad config'); sys.exit(2)"],
            "ready": {"path": "never.sock", "timeout": 5},
            "query": [PY, "-c", "print('unreachable')"],
        }
    )

    with pytest.raises(TestFailure) as exc_info:
        run_test_spec(test_config, CONTEXT, scratch_dir=tmp_path)

    assert not isinstance(exc_info.value, TestTimeout)
    assert "exited with status 2" in exc_info.value.message
    assert "bad config" in exc_info.value.output


def test_failed_query_includes_service_log(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    start = (
        "import pathlib, time; print('supervisord started'); time.sleep(0.2); "
        "pathlib.Path('ready.flag').touch(); time.sleep(60)"
    )
    test_config = _test_config(
        service={
            "start": [PY, "-u", "-c", start],
            "ready": {"path": "ready.flag", "timeout": 10},
            "query": [PY, "-c", "print('3.0')"],
            "expect": {"pattern": "{version}"},
            "stop_timeout": 2,
        }
    )

    with caplog.at_level(logging.INFO, logger="keg.harness"):
        with pytest.raises(TestFailure) as exc_info:
            run_test_spec(test_config, CONTEXT, scratch_dir=tmp_path)

    assert "supervisord started" in exc_info.value.output
    _assert_gone(_started_pids(caplog)[0])


def test_port_readiness_probe(tmp_path: Path) -> None:
    with socket.socket() as probe:
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
    listen = (
        "import socket, sys, time; s = socket.socket(); "
        "s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1); "
        "s.bind(('127.0.0.1', int(sys.argv[1]))); s.listen(); time.sleep(60)"
    )
    test_config = _test_config(
        service={
            "start": [PY, "-c", listen, str(port)],
            "ready": {"port": port, "timeout": 10},
            "query": [PY, "-c", "print('listening')"],
            "expect": {"equals": "listening"},
            "stop_timeout": 2,
        }
    )

    outputs = run_test_spec(test_config, CONTEXT, scratch_dir=tmp_path)

    assert outputs[-1].stdout.strip() == "listening"
