"""
Custom Exceptions for HRFlow

This module defines the error taxonomy shared by every engine component.
Each exception carries `retry_allowed` so workers know whether re-running
the same operation can succeed.

Exception Hierarchy:
- HRFlowException (base)
  - ValidationError (don't retry - fix the input)
  - NotFoundError (don't retry)
  - ConflictError (retry after re-reading state)
    - RunLockedError (retry - another worker holds the run lease)
  - ExternalDependencyError (retry with backoff / circuit breaker)
  - TerminalRunError (don't retry - the run failed)
  - RunCanceledError (don't retry - the run was canceled)
  - ExpressionError (don't retry - fix the expression)
"""

from typing import Iterable, List, Optional


class HRFlowException(Exception):
    """Base exception for all HRFlow errors"""

    def __init__(self, message: str, retry_allowed: bool = True):
        super().__init__(message)
        self.message = message
        self.retry_allowed = retry_allowed


# ============================================================================
# INPUT ERRORS
# ============================================================================

class ValidationError(HRFlowException):
    """
    Malformed definition or task payload.
    Carries every defect found so the caller can fix them in one pass.
    Should NOT be retried.
    """

    def __init__(self, message: str, defects: Optional[Iterable[str]] = None):
        self.defects: List[str] = list(defects or [])
        if self.defects:
            message = f"{message}: " + "; ".join(self.defects)
        super().__init__(message, retry_allowed=False)


class NotFoundError(HRFlowException):
    """
    Referenced workflow, version, run, task or share token does not exist.
    Also raised for share tokens that do not grant access to a task, so
    callers cannot discover other employees' work.
    """

    def __init__(self, message: str, resource: str = None, resource_id: str = None):
        super().__init__(message, retry_allowed=False)
        self.resource = resource
        self.resource_id = resource_id


class ExpressionError(HRFlowException):
    """
    Logic or trigger-condition expression could not be parsed or evaluated.
    Should NOT be retried - fix the expression.
    """

    def __init__(self, message: str, expression: str = None):
        super().__init__(message, retry_allowed=False)
        self.expression = expression


# ============================================================================
# CONCURRENCY ERRORS
# ============================================================================

class ConflictError(HRFlowException):
    """
    A concurrent modification was detected (double publish, lost race).
    May be retried after re-reading state.
    """

    def __init__(self, message: str):
        super().__init__(message, retry_allowed=True)


class RunLockedError(ConflictError):
    """
    Another worker currently holds the run's advancement lease.
    The holder will observe the pending request before releasing.
    """

    def __init__(self, message: str, run_id: str = None):
        super().__init__(message)
        self.run_id = run_id


# ============================================================================
# COLLABORATOR ERRORS
# ============================================================================

class ExternalDependencyError(HRFlowException):
    """
    Notification sender, employee directory or document storage failed.
    Should be retried with backoff through the action queue.
    """

    def __init__(self, message: str, dependency: str = None):
        super().__init__(message, retry_allowed=True)
        self.dependency = dependency


# ============================================================================
# RUN STATE ERRORS
# ============================================================================

class TerminalRunError(HRFlowException):
    """
    A required step failed, so the whole run failed.
    Should NOT be retried.
    """

    def __init__(self, message: str, run_id: str = None, node_key: str = None):
        super().__init__(message, retry_allowed=False)
        self.run_id = run_id
        self.node_key = node_key


class RunCanceledError(HRFlowException):
    """
    Operation attempted on a canceled run.
    Should NOT be retried.
    """

    def __init__(self, message: str, run_id: str = None):
        super().__init__(message, retry_allowed=False)
        self.run_id = run_id


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def should_retry(exception: Exception) -> bool:
    """
    Determine if an exception should trigger a retry.

    Args:
        exception: The exception to check

    Returns:
        True if should retry, False otherwise
    """
    if isinstance(exception, HRFlowException):
        return exception.retry_allowed

    # Unknown exceptions: retry by default (conservative)
    return True


def get_error_category(exception: Exception) -> str:
    """
    Get error category for logging and event payloads.

    Args:
        exception: The exception to categorize

    Returns:
        Error category string
    """
    if isinstance(exception, ValidationError):
        return "validation"
    if isinstance(exception, NotFoundError):
        return "not_found"
    if isinstance(exception, ConflictError):
        return "conflict"
    if isinstance(exception, ExternalDependencyError):
        return "external_dependency"
    if isinstance(exception, TerminalRunError):
        return "terminal_run"
    if isinstance(exception, RunCanceledError):
        return "run_canceled"
    if isinstance(exception, ExpressionError):
        return "expression"
    return "unknown"
