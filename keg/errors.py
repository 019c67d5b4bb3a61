"""Error taxonomy for the install-and-verify pipeline."""

from __future__ import annotations

from typing import Literal

Stage = Literal["select", "fetch", "build", "post_install", "prune", "test", "link"]

_TAIL_LINES = 20


def output_tail(text: str | None, *, lines: int = _TAIL_LINES) -> str:
    """Return the last ``lines`` lines of captured process output."""
    if not text:
        return ""
    return "\n".join(text.rstrip().splitlines()[-lines:])


class KegError(Exception):
    """Base class for pipeline failures; ``stage`` names the failing stage."""

    exit_code = 1

    def __init__(self, message: str, *, stage: Stage | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage is None:
            return self.message
        return f"[{self.stage}] {self.message}"


class ConfigurationError(KegError):
    """A variant, template placeholder or dependency could not be resolved."""

    exit_code = 2


class IntegrityError(KegError):
    """A fetched artifact does not match its declared digest."""

    exit_code = 3

    def __init__(
        self,
        message: str,
        *,
        path: str,
        expected: str,
        actual: str,
        stage: Stage | None = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.path = path
        self.expected = expected
        self.actual = actual


class FetchError(KegError):
    """Every URL of a source descriptor failed to download."""

    exit_code = 4


class BuildStepError(KegError):
    """A build step exited unsuccessfully."""

    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        index: int | None,
        label: str,
        command: list[str],
        returncode: int | None = None,
        stderr_tail: str = "",
        stage: Stage | None = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.index = index
        self.label = label
        self.command = command
        self.returncode = returncode
        self.stderr_tail = stderr_tail

    def __str__(self) -> str:
        text = super().__str__()
        if self.stderr_tail:
            text = f"{text}\n{self.stderr_tail}"
        return text


class TestFailure(KegError):
    """Post-install verification failed."""

    __test__ = False
    exit_code = 6

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        output: str = "",
        stage: Stage | None = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.command = command or []
        self.output = output

    def __str__(self) -> str:
        text = super().__str__()
        if self.output:
            text = f"{text}\n{output_tail(self.output)}"
        return text


class TestTimeout(TestFailure):
    """A started service did not become ready within its grace period."""

    __test__ = False
