"""Tests for error handling across components."""

import asyncio
import logging

import pytest

from node_pilot.api import NodeApi, WorkloadApi
from node_pilot.exceptions import (
    ClusterUnreachableError,
    ConfigurationError,
    KubernetesError,
    NodePilotError,
    PlanConflictError,
    PlanError,
    PreCheckBlockedError,
    QuorumRiskError,
    StepFailureError,
    TalosError,
    ValidationError,
)
from node_pilot.logging_config import QUIET_LOGGERS, get_logger, setup_logging


def test_custom_exception_with_details():
    """Test that custom exceptions support message and details."""
    error = TalosError("talosctl failed against 10.0.0.1", "connection refused")

    assert error.message == "talosctl failed against 10.0.0.1"
    assert error.details == "connection refused"
    assert "talosctl failed against 10.0.0.1" in str(error)
    assert "connection refused" in str(error)


def test_custom_exception_without_details():
    """Test that custom exceptions work without details."""
    error = ValidationError("Invalid input")

    assert error.message == "Invalid input"
    assert error.details is None
    assert str(error) == "Invalid input"


def test_exception_hierarchy():
    """Test that all custom exceptions inherit from NodePilotError."""
    for cls in (
        TalosError,
        KubernetesError,
        ValidationError,
        ConfigurationError,
        ClusterUnreachableError,
        QuorumRiskError,
        PreCheckBlockedError,
        StepFailureError,
    ):
        assert issubclass(cls, NodePilotError)
    assert issubclass(PlanError, ValidationError)
    assert issubclass(PlanConflictError, PlanError)


def test_step_failure_keeps_step():
    error = StepFailureError("draining", "draining timeout")

    assert error.step == "draining"
    assert str(error) == "draining timeout"


def test_base_apis_are_abstract():
    node_api = NodeApi(None)
    workload_api = WorkloadApi()

    with pytest.raises(NotImplementedError):
        asyncio.run(node_api.probe("10.0.0.1"))
    with pytest.raises(NotImplementedError):
        asyncio.run(workload_api.cordon("w1"))


def test_logging_setup():
    """Test that logging can be configured."""
    # Should not raise any exceptions
    setup_logging(level="INFO", verbose=False)

    logger = get_logger("test")
    assert logger is not None
    assert logger.name == "test"


def test_logging_with_log_file(tmp_path):
    """Test that a log file receives debug output."""
    log_file = tmp_path / "logs" / "node-pilot.log"
    setup_logging(verbose=True, log_file=log_file)

    get_logger("test").debug("This is a debug message")

    assert log_file.exists()
    assert "This is a debug message" in log_file.read_text()


def test_logging_rejects_unknown_level():
    with pytest.raises(ValueError, match="unknown log level"):
        setup_logging(level="LOUD")


def test_logging_setup_replaces_earlier_handlers(tmp_path):
    setup_logging(log_file=tmp_path / "first.log")
    setup_logging(level="warning")

    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert root.level == logging.WARNING
    for name in QUIET_LOGGERS:
        assert logging.getLogger(name).level == logging.WARNING
