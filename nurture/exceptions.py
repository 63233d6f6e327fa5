"""
Exceptions raised by the nurture engine.

Hierarchy:
- NurtureError (base)
  - StepError
    - TransientStepError (retry with backoff)
    - PermanentStepError (fail the enrollment)
  - WorkflowNotFoundError
  - EnrollmentNotFoundError
  - WorkflowNotActiveError
  - WorkflowValidationError
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .validation import ValidationResult


class NurtureError(Exception):
    """Base exception for all nurture errors"""

    def __init__(self, message: str, retry_allowed: bool = False):
        super().__init__(message)
        self.message = message
        self.retry_allowed = retry_allowed


class StepError(NurtureError):
    """A step's side effect could not be performed."""


class TransientStepError(StepError):
    """
    Network errors, 5xx responses, rate limiting, unavailable collaborators.
    Retried by the scheduler until the attempt bound is reached.
    """

    def __init__(self, message: str):
        super().__init__(message, retry_allowed=True)


class PermanentStepError(StepError):
    """
    Invalid recipient, 4xx webhook response, missing template or contact data.
    Should NOT be retried - the enrollment fails immediately.
    """

    def __init__(self, message: str):
        super().__init__(message, retry_allowed=False)


class WorkflowNotFoundError(NurtureError):
    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow {workflow_id} not found")
        self.workflow_id = workflow_id


class EnrollmentNotFoundError(NurtureError):
    def __init__(self, enrollment_id: str):
        super().__init__(f"Enrollment {enrollment_id} not found")
        self.enrollment_id = enrollment_id


class WorkflowNotActiveError(NurtureError):
    """Enrollment was requested for a draft or paused workflow."""

    def __init__(self, workflow_id: str, status: str):
        super().__init__(f"Workflow {workflow_id} is {status}, not active")
        self.workflow_id = workflow_id
        self.status = status


class WorkflowValidationError(NurtureError):
    """The workflow definition has blocking validation errors."""

    def __init__(self, workflow_id: str, result: "ValidationResult"):
        codes = ", ".join(issue.code for issue in result.errors)
        super().__init__(f"Workflow {workflow_id} is invalid: {codes}")
        self.workflow_id = workflow_id
        self.result = result
