from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base error for pipeline operations; routers map it onto the error envelope."""

    status_code = 500
    code = "pipeline_error"

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(PipelineError):
    """Raised when input is well-formed but violates a domain rule."""

    status_code = 400
    code = "validation_error"


class NotFoundError(PipelineError):
    status_code = 404
    code = "not_found"

    def __init__(self, resource: str, resource_id: int | str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found", details={"resource": resource, "id": resource_id})


class PermissionDeniedError(PipelineError):
    """Raised when the actor may not act on the target deal or resource."""

    status_code = 403
    code = "permission_denied"


class TransactionError(PipelineError):
    """Raised when a unit of work could not be committed; nothing was persisted."""

    status_code = 500
    code = "transaction_failed"


class RuleExecutionError(PipelineError):
    """Raised inside a single rule's savepoint; recorded in the automation log, never surfaced."""

    code = "rule_execution_failed"
