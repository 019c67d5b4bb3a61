"""Post-install smoke tests: embedded files, checked commands and services."""

from __future__ import annotations

import logging
import os
import re
import signal
import socket
import subprocess
import tempfile
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from time import monotonic
from typing import Any

from keg.config import EnvOverlay, ExpectConfig, ReadinessConfig, ServiceConfig, TestConfig
from keg.errors import TestFailure, TestTimeout
from keg.executor import expand, scoped_environment
from keg.logging_utils import log_event

logger = logging.getLogger(__name__)

SERVICE_LOG_NAME = ".service.log"


@dataclass(slots=True)
class CommandOutput:
    """Captured result of one test command."""

    command: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def combined(self) -> str:
        return f"{self.stdout}{self.stderr}"


def output_matches(expect: ExpectConfig, stdout: str, context: Mapping[str, Any]) -> bool:
    """Apply an expected-output matcher to captured stdout."""
    if expect.equals is not None:
        return stdout.strip() == expand(expect.equals, context).strip()
    assert expect.pattern is not None
    return re.search(expand(expect.pattern, context), stdout) is not None


def _describe(expect: ExpectConfig, context: Mapping[str, Any]) -> str:
    if expect.equals is not None:
        return f"output equal to {expand(expect.equals, context)!r}"
    return f"output matching {expand(expect.pattern or '', context)!r}"


def run_check(
    command: list[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    context: Mapping[str, Any],
    expect: ExpectConfig | None = None,
    exit_code: int = 0,
    timeout: float = 60.0,
) -> CommandOutput:
    """Run one command and raise ``TestFailure`` unless it behaves as expected."""
    expanded = [expand(token, context) for token in command]
    try:
        proc = subprocess.run(
            expanded,
            cwd=cwd,
            env=dict(env),
            stdin=subprocess.DEVNULL,
            check=False,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise TestFailure(
            f"command not found: {exc.filename or expanded[0]}",
            command=expanded,
        ) from exc
    except OSError as exc:
        raise TestFailure(
            f"could not run {expanded[0]}: {exc.strerror or exc}",
            command=expanded,
        ) from exc
    except subprocess.TimeoutExpired as exc:
        partial = exc.stdout.decode(errors="replace") if isinstance(exc.stdout, bytes) else ""
        raise TestFailure(
            f"command timed out after {timeout}s",
            command=expanded,
            output=partial,
        ) from exc

    result = CommandOutput(
        command=expanded,
        returncode=proc.returncode,
        stdout=proc.stdout,
        stderr=proc.stderr,
    )
    if proc.returncode != exit_code:
        raise TestFailure(
            f"{' '.join(expanded)} exited with status {proc.returncode} (expected {exit_code})",
            command=expanded,
            output=result.combined,
        )
    if expect is not None and not output_matches(expect, proc.stdout, context):
        raise TestFailure(
            f"{' '.join(expanded)} did not produce {_describe(expect, context)}",
            command=expanded,
            output=result.combined,
        )
    log_event(logger, logging.INFO, "harness.check_passed", command=expanded)
    return result


def _signal_group(pid: int, sig: signal.Signals) -> None:
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def stop_process(proc: subprocess.Popen[bytes], *, timeout: float) -> None:
    """Terminate ``proc`` and its process group, escalating to SIGKILL."""
    for sig in (signal.SIGTERM, signal.SIGKILL):
        _signal_group(proc.pid, sig)
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            continue
        break
    # Group members can outlive the leader.
    _signal_group(proc.pid, signal.SIGKILL)
    log_event(
        logger,
        logging.INFO,
        "harness.service_stopped",
        pid=proc.pid,
        returncode=proc.returncode,
    )


def _read_log(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""


@contextmanager
def running_service(
    command: list[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    log_path: Path,
    stop_timeout: float = 5.0,
) -> Iterator[subprocess.Popen[bytes]]:
    """Start ``command`` in its own session and always terminate it on exit."""
    try:
        with log_path.open("wb") as log:
            proc = subprocess.Popen(
                command,
                cwd=cwd,
                env=dict(env),
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
    except OSError as exc:
        raise TestFailure(f"could not start service: {exc}", command=command) from exc

    log_event(logger, logging.INFO, "harness.service_started", command=command, pid=proc.pid)
    try:
        yield proc
    finally:
        stop_process(proc, timeout=stop_timeout)


def _command_of(proc: subprocess.Popen[bytes]) -> list[str]:
    args = proc.args
    if isinstance(args, (list, tuple)):
        return [str(arg) for arg in args]
    return [str(args)]


def _probe(ready: ReadinessConfig, workspace: Path) -> bool:
    if ready.path is not None:
        return (workspace / ready.path).exists()
    if ready.port is not None:
        try:
            with socket.create_connection(("127.0.0.1", ready.port), timeout=ready.interval):
                return True
        except OSError:
            return False
    return True


def wait_until_ready(
    proc: subprocess.Popen[bytes],
    ready: ReadinessConfig,
    *,
    workspace: Path,
    log_path: Path,
) -> None:
    """Block until the service is ready, it exits, or ``ready.timeout`` elapses."""
    deadline = monotonic() + ready.timeout
    if ready.delay:
        time.sleep(ready.delay)
    while True:
        if proc.poll() is not None:
            raise TestFailure(
                f"service exited with status {proc.returncode} before becoming ready",
                command=_command_of(proc),
                output=_read_log(log_path),
            )
        if _probe(ready, workspace):
            log_event(logger, logging.INFO, "harness.service_ready", pid=proc.pid)
            return
        if monotonic() >= deadline:
            raise TestTimeout(
                f"service did not become ready within {ready.timeout}s",
                command=_command_of(proc),
                output=_read_log(log_path),
            )
        time.sleep(ready.interval)


def _run_service(
    service: ServiceConfig,
    *,
    workspace: Path,
    env: Mapping[str, str],
    context: Mapping[str, Any],
) -> CommandOutput:
    start = [expand(token, context) for token in service.start]
    log_path = workspace / SERVICE_LOG_NAME
    with running_service(
        start,
        cwd=workspace,
        env=env,
        log_path=log_path,
        stop_timeout=service.stop_timeout,
    ) as proc:
        wait_until_ready(proc, service.ready, workspace=workspace, log_path=log_path)
        try:
            return run_check(
                service.query,
                cwd=workspace,
                env=env,
                context=context,
                expect=service.expect,
                exit_code=service.exit_code,
                timeout=service.timeout,
            )
        except TestFailure as exc:
            service_log = _read_log(log_path)
            output = exc.output
            if service_log:
                output = f"{output}\n--- service log ---\n{service_log}"
            raise TestFailure(exc.message, command=exc.command, output=output) from exc


def run_test_spec(
    test_config: TestConfig,
    context: Mapping[str, Any],
    *,
    base_env: Mapping[str, str] | None = None,
    scratch_dir: Path | None = None,
) -> list[CommandOutput]:
    """Run smoke tests in a throwaway workspace that is removed on every path."""
    if scratch_dir is not None:
        scratch_dir.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix="keg-test-", dir=scratch_dir) as tmp_dir:
        workspace = Path(tmp_dir)
        test_context = {**context, "testpath": str(workspace)}
        env = scoped_environment(
            os.environ if base_env is None else base_env,
            [EnvOverlay(set={"HOME": str(workspace)})],
            test_context,
        )
        log_event(logger, logging.INFO, "harness.started", workspace=str(workspace))

        for relative, content in test_config.files.items():
            target = workspace / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

        outputs: list[CommandOutput] = []
        for step in test_config.steps:
            outputs.append(
                run_check(
                    step.command,
                    cwd=workspace,
                    env=scoped_environment(env, [step.env], test_context),
                    context=test_context,
                    expect=step.expect,
                    exit_code=step.exit_code,
                    timeout=step.timeout,
                )
            )
        if test_config.service is not None:
            outputs.append(
                _run_service(test_config.service, workspace=workspace, env=env, context=test_context)
            )
        log_event(logger, logging.INFO, "harness.completed", checks=len(outputs))
        return outputs
