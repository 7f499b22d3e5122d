"""
Unit Tests for Custom Exceptions

Tests cover:
- Exception hierarchy
- retry_allowed flag behavior
- Exception attributes
- Error classification
"""

import pytest

from hrflow.core.exceptions import (
    ConflictError,
    ExpressionError,
    ExternalDependencyError,
    HRFlowException,
    NotFoundError,
    RunCanceledError,
    RunLockedError,
    TerminalRunError,
    ValidationError,
    get_error_category,
    should_retry,
)


# ============================================================================
# BASE EXCEPTION TESTS
# ============================================================================

@pytest.mark.unit
def test_hrflow_exception_base():
    """Test HRFlowException base class"""
    exc = HRFlowException("Test error")

    assert str(exc) == "Test error"
    assert exc.message == "Test error"
    assert exc.retry_allowed is True


@pytest.mark.unit
def test_hrflow_exception_no_retry():
    exc = HRFlowException("Permanent", retry_allowed=False)

    assert exc.retry_allowed is False


# ============================================================================
# SPECIFIC EXCEPTION TESTS
# ============================================================================

@pytest.mark.unit
def test_validation_error_collects_defects():
    """Every defect ends up in the message so one pass fixes them all"""
    exc = ValidationError("Workflow definition is invalid", ["cycle detected", "orphan node 'x'"])

    assert exc.defects == ["cycle detected", "orphan node 'x'"]
    assert exc.message == "Workflow definition is invalid: cycle detected; orphan node 'x'"
    assert exc.retry_allowed is False


@pytest.mark.unit
def test_validation_error_without_defects():
    exc = ValidationError("Bad input")

    assert exc.defects == []
    assert exc.message == "Bad input"


@pytest.mark.unit
def test_not_found_error():
    exc = NotFoundError("Run r1 not found", resource="run", resource_id="r1")

    assert exc.resource == "run"
    assert exc.resource_id == "r1"
    assert exc.retry_allowed is False


@pytest.mark.unit
def test_conflict_and_run_locked_errors():
    conflict = ConflictError("Workflow w1 was published concurrently")
    locked = RunLockedError("Run r1 is being advanced", run_id="r1")

    assert conflict.retry_allowed is True
    assert isinstance(locked, ConflictError)
    assert locked.run_id == "r1"
    assert locked.retry_allowed is True


@pytest.mark.unit
def test_external_dependency_error():
    exc = ExternalDependencyError("SMTP timeout", dependency="notifications")

    assert exc.dependency == "notifications"
    assert exc.retry_allowed is True


@pytest.mark.unit
def test_terminal_and_canceled_errors():
    terminal = TerminalRunError("Required step 'docs' failed", run_id="r1", node_key="docs")
    canceled = RunCanceledError("Run r1 was canceled", run_id="r1")

    assert terminal.node_key == "docs"
    assert terminal.retry_allowed is False
    assert canceled.run_id == "r1"
    assert canceled.retry_allowed is False


@pytest.mark.unit
def test_expression_error_keeps_expression():
    exc = ExpressionError("Invalid expression syntax", expression="a ==")

    assert exc.expression == "a =="
    assert exc.retry_allowed is False


# ============================================================================
# HIERARCHY AND HELPERS
# ============================================================================

@pytest.mark.unit
def test_exception_hierarchy():
    for cls in (ValidationError, NotFoundError, ConflictError, RunLockedError,
                ExternalDependencyError, TerminalRunError, RunCanceledError, ExpressionError):
        assert issubclass(cls, HRFlowException)


@pytest.mark.unit
def test_should_retry():
    assert should_retry(ExternalDependencyError("down"))
    assert should_retry(RunLockedError("locked"))
    assert not should_retry(ValidationError("bad"))
    assert not should_retry(RunCanceledError("canceled"))
    # Unknown exceptions are retried
    assert should_retry(RuntimeError("unexpected"))


@pytest.mark.unit
@pytest.mark.parametrize("exc,category", [
    (ValidationError("x"), "validation"),
    (NotFoundError("x"), "not_found"),
    (ConflictError("x"), "conflict"),
    (RunLockedError("x"), "conflict"),
    (ExternalDependencyError("x"), "external_dependency"),
    (TerminalRunError("x"), "terminal_run"),
    (RunCanceledError("x"), "run_canceled"),
    (ExpressionError("x"), "expression"),
    (KeyError("x"), "unknown"),
])
def test_get_error_category(exc, category):
    assert get_error_category(exc) == category


@pytest.mark.unit
def test_catch_base_exception():
    with pytest.raises(HRFlowException):
        raise TerminalRunError("run failed")
