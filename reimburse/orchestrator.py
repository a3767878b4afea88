"""
Approval orchestration: the resolve, decide, settle protocol.

``ApprovalOrchestrator.decide`` is the single write entry point used by the
HTTP layer. Each call is one unit of work; the first failing step rolls the
session back and raises. Records committed by earlier steps (status moved to
pending, approval records materialized) stay in place.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from reimburse import approvals, lifecycle, models
from reimburse.exceptions import (
    ApprovalWorkflowError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    ResolutionError,
    ValidationError,
)
from reimburse.logging_config import LogContext, get_logger
from reimburse.workflow import rules_satisfied

logger = get_logger("orchestrator")


@dataclass(frozen=True)
class Outcome:
    action: models.Decision
    expense_id: int
    finalized: bool
    status: models.ExpenseStatus
    fallback_used: bool = False


class ApprovalOrchestrator:
    """Runs approval decisions against one database session."""

    def __init__(self, db: Session) -> None:
        self._db = db

    def decide(self, expense_id: Optional[int], acting: Optional[models.User], action,
               comments: Optional[str] = None) -> Outcome:
        decision = self._validate(expense_id, acting, action)
        with LogContext.bind(actor_id=acting.id, expense_id=expense_id):
            try:
                outcome = self._decide(expense_id, acting, decision, comments)
            except ApprovalWorkflowError as exc:
                self._db.rollback()
                exc.action = decision.value
                logger.info(
                    "Decision failed",
                    extra={"event": "approval.failed", "action": decision.value, "error_code": exc.code},
                )
                raise
            except SQLAlchemyError as exc:
                self._db.rollback()
                err = PersistenceError("decision", str(exc))
                err.action = decision.value
                raise err from exc
        return outcome

    def _validate(self, expense_id, acting, action) -> models.Decision:
        if expense_id is None or (isinstance(expense_id, str) and not expense_id.strip()):
            raise ValidationError("expense id is required")
        if acting is None:
            raise ValidationError("an acting principal is required")
        try:
            return models.Decision(action)
        except ValueError:
            raise ValidationError(f"unknown action {action!r}, expected approve or reject")

    def _commit(self) -> None:
        try:
            self._db.commit()
        except SQLAlchemyError as exc:
            self._db.rollback()
            raise PersistenceError("commit", str(exc)) from exc

    def _decide(self, expense_id: int, acting: models.User, decision: models.Decision,
                comments: Optional[str]) -> Outcome:
        db = self._db
        expense = db.get(models.Expense, expense_id)
        if expense is None:
            raise NotFoundError("expense", expense_id)
        # principals only ever act inside their own company
        if acting.company_id != expense.employee.company_id:
            raise AuthorizationError(principal_id=acting.id, expense_id=expense.id)

        lifecycle.ensure_pending(db, expense)
        self._commit()

        if not approvals.has_any_record(db, expense.id):
            try:
                approvals.ensure_approval_records(db, expense, acting)
                self._commit()
            except ResolutionError as exc:
                # the escape hatch below may still let a manager/admin through
                logger.warning(
                    "Approver resolution failed during decision",
                    extra={"event": "approval.resolution_failed", "error_code": exc.code},
                )

        record = approvals.find_decidable_record(db, expense.id, acting.id)
        fallback_used = False
        if record is None and not approvals.has_any_record(db, expense.id, acting.id):
            if acting.role not in models.APPROVER_ROLES:
                raise AuthorizationError(principal_id=acting.id, expense_id=expense.id)
            approvals.add_fallback_record(db, expense, acting)
            self._commit()
            fallback_used = True

        record = approvals.find_decidable_record(db, expense.id, acting.id)
        if record is None:
            decided = approvals.find_record(db, expense.id, acting.id)
            if decided is not None:
                raise ConflictError(decided.id, decided.status.value)
            raise AuthorizationError(principal_id=acting.id, expense_id=expense.id)

        approvals.record_decision(db, record, decision, comments)

        remaining = approvals.count_pending(db, expense.id)
        finalized = False
        if remaining == 0:
            lifecycle.settle(db, expense.id, decision)
            finalized = True
        elif decision is models.Decision.approve and self._rules_allow_early_approval(expense):
            lifecycle.settle(db, expense.id, models.Decision.approve)
            finalized = True
        self._commit()

        db.refresh(expense)
        logger.info(
            "Expense %s by user %s", "approved" if decision is models.Decision.approve else "rejected", acting.id,
            extra={"event": "approval.outcome", "action": decision.value, "remaining": remaining,
                   "finalized": finalized, "fallback_used": fallback_used, "status": expense.status.value},
        )
        return Outcome(
            action=decision,
            expense_id=expense.id,
            finalized=finalized,
            status=expense.status,
            fallback_used=fallback_used,
        )

    def _rules_allow_early_approval(self, expense: models.Expense) -> bool:
        if expense.workflow_id is None:
            return False
        workflow = self._db.get(models.ApprovalWorkflow, expense.workflow_id)
        if workflow is None or not workflow.conditional_rules:
            return False
        return rules_satisfied(workflow.conditional_rules, approvals.list_records(self._db, expense.id))


def list_pending_for(db: Session, principal: models.User) -> list[models.Expense]:
    """Approvals inbox: expenses awaiting the principal's decision.

    Admins see every non-terminal expense of their company.
    """
    if principal.role == models.Role.admin:
        stmt = (
            select(models.Expense)
            .join(models.User, models.Expense.employee_id == models.User.id)
            .where(
                models.User.company_id == principal.company_id,
                models.Expense.status.not_in(models.TERMINAL_EXPENSE_STATUSES),
            )
        )
    else:
        mine = select(models.ExpenseApproval.expense_id).where(
            models.ExpenseApproval.approver_id == principal.id,
            models.ExpenseApproval.status == models.ApprovalStatus.pending,
        )
        stmt = select(models.Expense).where(models.Expense.id.in_(mine))
    stmt = stmt.order_by(models.Expense.created_at.desc(), models.Expense.id.desc())
    return list(db.execute(stmt).scalars())
