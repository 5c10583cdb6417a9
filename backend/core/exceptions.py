"""Custom exceptions for the workflow execution engine."""

from datetime import datetime
from typing import Optional


class EngineError(Exception):
    """Base exception for the workflow execution engine."""

    def __init__(self, message: str, retryable: bool = False):
        """Initialize exception with message and retry classification.

        Args:
            message: Exception message
            retryable: Whether the failure may succeed if the job is retried
        """
        self.message = message
        self.retryable = retryable
        super().__init__(self.message)


class WorkflowNotFoundError(EngineError):
    """Enqueue or trigger against a workflow name that is not registered."""

    def __init__(self, name: str):
        self.workflow_name = name
        super().__init__(f"Workflow not found: {name}")


class WorkflowDisabledError(EngineError):
    """Enqueue against a registered workflow with enabled=False."""

    def __init__(self, name: str):
        self.workflow_name = name
        super().__init__(f"Workflow is disabled: {name}")


class InvalidWorkflowError(EngineError):
    """Workflow definition rejected at registration."""

    def __init__(self, message: str = "Invalid workflow definition"):
        super().__init__(message)


class ValidationError(EngineError):
    """Malformed input (URL, payload, step fields). Never retried."""

    def __init__(self, message: str = "Validation failed"):
        super().__init__(message, retryable=False)


class WorkflowTimeoutError(EngineError, TimeoutError):
    """A job or an HTTP request attempt exceeded its time bound."""

    def __init__(self, message: str = "Operation timed out"):
        super().__init__(message, retryable=True)


class CircuitOpenError(EngineError):
    """HTTP call rejected by an open circuit without touching the network."""

    def __init__(self, hostname: str, failures: int, retry_at: Optional[datetime] = None):
        self.hostname = hostname
        self.failures = failures
        self.retry_at = retry_at
        message = f"Circuit breaker open for {hostname} ({failures} consecutive failures)"
        if retry_at:
            message += f", will retry after {retry_at.isoformat()}"
        super().__init__(message, retryable=True)


class HttpError(EngineError):
    """Non-2xx response from a webhook destination.

    Client errors (4xx) are not retryable; server errors are.
    """

    def __init__(self, status_code: int, reason: str = ""):
        self.status_code = status_code
        self.reason = reason
        super().__init__(
            f"HTTP {status_code}: {reason}".rstrip(": "),
            retryable=not self.is_client_error,
        )

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500


class StepExecutionError(EngineError):
    """Wraps any collaborator failure raised while running a step."""

    def __init__(self, step_index: int, step_type: str, cause: Exception):
        self.step_index = step_index
        self.step_type = step_type
        self.cause = cause
        retryable = cause.retryable if isinstance(cause, EngineError) else True
        super().__init__(
            f"Step {step_index + 1} ({step_type}) failed: {cause}",
            retryable=retryable,
        )


class CollaboratorNotConfiguredError(EngineError):
    """A step needs a collaborator (data layer, HTTP client, ...) that was not injected."""

    def __init__(self, collaborator: str):
        self.collaborator = collaborator
        super().__init__(f"{collaborator} not configured", retryable=False)


class QueueClosedError(EngineError):
    """Enqueue after the queue has been shut down."""

    def __init__(self, message: str = "Workflow queue is shut down"):
        super().__init__(message)
