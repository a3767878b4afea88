"""
Typed exceptions for the approval workflow.

Every error carries a machine-readable ``code`` plus the structured fields
that produced it, so the HTTP layer (and the JSON log formatter) can report
them without parsing messages.

    ApprovalWorkflowError
    |
    +-- ValidationError            VALIDATION_ERROR
    |   +-- NotFoundError          NOT_FOUND
    +-- AuthorizationError         NOT_AUTHORIZED
    +-- ConflictError              ALREADY_DECIDED
    |   +-- InvalidTransitionError INVALID_TRANSITION
    +-- ResolutionError            NO_APPROVER_RESOLVED
    +-- PersistenceError           PERSISTENCE_ERROR

Soft failures (blocked expense status writes) are never raised; they are
logged by the lifecycle module.
"""

from __future__ import annotations


class ApprovalWorkflowError(Exception):
    code: str = "APPROVAL_WORKFLOW_ERROR"
    status_code: int = 400

    # set by callers that know which user action failed
    action: str | None = None

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def for_action(self, action: str | None = None) -> str:
        """Caller-facing message, e.g. 'failed to approve expense: <reason>'."""
        action = action or self.action
        if not action:
            return self.message
        return f"failed to {action} expense: {self.message}"


class ValidationError(ApprovalWorkflowError):
    """Malformed or missing input. No side effects."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(ValidationError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: object) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class AuthorizationError(ApprovalWorkflowError):
    code = "NOT_AUTHORIZED"
    status_code = 403

    def __init__(self, message: str = "not authorized to approve this expense", *, principal_id: int | None = None, expense_id: int | None = None) -> None:
        self.principal_id = principal_id
        self.expense_id = expense_id
        super().__init__(message)


class ConflictError(ApprovalWorkflowError):
    """The approval record was already decided (race or duplicate submit)."""

    code = "ALREADY_DECIDED"
    status_code = 409

    def __init__(self, record_id: int, current_status: str) -> None:
        self.record_id = record_id
        self.current_status = current_status
        super().__init__(f"approval {record_id} is already {current_status}")


class InvalidTransitionError(ConflictError):
    """Attempt to move an expense out of a terminal status."""

    code = "INVALID_TRANSITION"

    def __init__(self, expense_id: int, from_status: str, to_status: str) -> None:
        self.expense_id = expense_id
        self.from_status = from_status
        self.to_status = to_status
        ApprovalWorkflowError.__init__(
            self, f"expense {expense_id} is already {from_status} and cannot move to {to_status}"
        )


class ResolutionError(ApprovalWorkflowError):
    """Neither the active workflow nor the directory produced an approver."""

    code = "NO_APPROVER_RESOLVED"
    status_code = 422

    def __init__(self, expense_id: int, company_id: int | None = None) -> None:
        self.expense_id = expense_id
        self.company_id = company_id
        super().__init__(
            f"no approver could be resolved for expense {expense_id}"
        )


class PersistenceError(ApprovalWorkflowError):
    """A required write failed. Safe to retry; nothing was recorded."""

    code = "PERSISTENCE_ERROR"
    status_code = 503

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"{operation} failed: {reason}")
