"""Unit tests for structured logging helpers and error rendering."""

from __future__ import annotations

import logging

import pytest

from keg.errors import BuildStepError, ConfigurationError, TestFailure, TestTimeout, output_tail
from keg.logging_utils import get_install_id, install_context, log_event


def test_install_context_binds_and_resets_id() -> None:
    assert get_install_id() == "-"

    with install_context("libgccjit") as install_id:
        assert install_id.startswith("libgccjit-")
        assert get_install_id() == install_id

    assert get_install_id() == "-"


def test_log_event_attaches_fields(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("keg.tests")

    with caplog.at_level(logging.INFO, logger="keg.tests"):
        with install_context("supervisor") as install_id:
            log_event(logger, logging.INFO, "installer.started", recipe="supervisor", skipped=None)

    record = caplog.records[-1]
    assert record.getMessage() == "installer.started"
    assert record.event == "installer.started"
    assert record.install_id == install_id
    assert record.recipe == "supervisor"
    assert not hasattr(record, "skipped")


def test_output_tail_keeps_last_lines() -> None:
    text = "\n".join(f"line {index}" for index in range(50))

    assert output_tail(text, lines=2) == "line 48\nline 49"
    assert output_tail(None) == ""


def test_errors_render_stage_and_tail() -> None:
    error = BuildStepError(
        "step 2 (make) failed: exited with status 2",
        index=2,
        label="make",
        command=["make"],
        returncode=2,
        stderr_tail="gmp.h: No such file",
        stage="build",
    )

    assert str(error) == "[build] step 2 (make) failed: exited with status 2\ngmp.h: No such file"
    assert str(ConfigurationError("bad variant")) == "bad variant"


def test_test_timeout_is_a_test_failure() -> None:
    error = TestTimeout("service did not become ready", command=["supervisord"], stage="test")

    assert isinstance(error, TestFailure)
    assert error.exit_code == 6
    assert str(error).startswith("[test] ")
