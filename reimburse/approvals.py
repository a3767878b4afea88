"""
Per-expense, per-approver decision records.

Records are materialized lazily, exactly once per expense. Decisions are
written with a conditional update (``WHERE status = 'pending'``) so two
concurrent deciders cannot both succeed on the same record.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from reimburse import models
from reimburse.directory import resolve_default_approvers
from reimburse.exceptions import ConflictError, PersistenceError, ResolutionError
from reimburse.logging_config import get_logger
from reimburse.workflow import get_active_workflow

logger = get_logger("approvals")

INITIALIZABLE_STATUSES = (models.ExpenseStatus.draft, models.ExpenseStatus.pending)


def has_any_record(db: Session, expense_id: int, approver_id: Optional[int] = None) -> bool:
    stmt = select(models.ExpenseApproval.id).where(models.ExpenseApproval.expense_id == expense_id)
    if approver_id is not None:
        stmt = stmt.where(models.ExpenseApproval.approver_id == approver_id)
    return db.execute(stmt.limit(1)).first() is not None


def list_records(db: Session, expense_id: int) -> list[models.ExpenseApproval]:
    return list(db.execute(
        select(models.ExpenseApproval)
        .where(models.ExpenseApproval.expense_id == expense_id)
        .order_by(models.ExpenseApproval.sequence_order, models.ExpenseApproval.id)
    ).scalars())


def resolve_approver_sequence(db: Session, employee: models.User,
                              acting: Optional[models.User] = None) -> tuple[list[int], Optional[int]]:
    """(approver ids, workflow id) from the active workflow, else the directory."""
    workflow = get_active_workflow(db, employee.company_id)
    if workflow is not None:
        return workflow.ordered_approvers(), workflow.id
    return resolve_default_approvers(db, employee, acting), None


def ensure_approval_records(db: Session, expense: models.Expense,
                            acting: Optional[models.User] = None) -> bool:
    """Create the pending approval records for an expense, once.

    Returns False when records already exist or the expense is terminal.
    Raises ResolutionError if no approver could be resolved.
    """
    if has_any_record(db, expense.id):
        return False
    if expense.status not in INITIALIZABLE_STATUSES:
        return False

    employee = db.get(models.User, expense.employee_id)
    approver_ids, workflow_id = resolve_approver_sequence(db, employee, acting)
    if not approver_ids:
        raise ResolutionError(expense.id, employee.company_id)

    # another request may have initialized the expense while we resolved
    if has_any_record(db, expense.id):
        return False

    try:
        with db.begin_nested():
            for position, approver_id in enumerate(approver_ids, start=1):
                db.add(models.ExpenseApproval(
                    expense_id=expense.id,
                    approver_id=approver_id,
                    sequence_order=position,
                    status=models.ApprovalStatus.pending,
                ))
            expense.workflow_id = workflow_id
    except IntegrityError as exc:
        if has_any_record(db, expense.id):
            logger.info(
                "Approval records created concurrently",
                extra={"event": "approval.records_race", "expense_id": expense.id},
            )
            return False
        raise PersistenceError("approval record insert", str(exc.orig)) from exc
    except SQLAlchemyError as exc:
        raise PersistenceError("approval record insert", str(exc)) from exc

    logger.info(
        "Approval records created",
        extra={"event": "approval.records_created", "expense_id": expense.id,
               "approver_ids": approver_ids, "workflow_id": workflow_id},
    )
    return True


def find_decidable_record(db: Session, expense_id: int, approver_id: int) -> Optional[models.ExpenseApproval]:
    return db.execute(
        select(models.ExpenseApproval).where(
            models.ExpenseApproval.expense_id == expense_id,
            models.ExpenseApproval.approver_id == approver_id,
            models.ExpenseApproval.status == models.ApprovalStatus.pending,
        )
    ).scalar_one_or_none()


def find_record(db: Session, expense_id: int, approver_id: int) -> Optional[models.ExpenseApproval]:
    """The approver's record for an expense, whatever its status."""
    return db.execute(
        select(models.ExpenseApproval).where(
            models.ExpenseApproval.expense_id == expense_id,
            models.ExpenseApproval.approver_id == approver_id,
        )
    ).scalar_one_or_none()


def add_fallback_record(db: Session, expense: models.Expense, approver: models.User) -> Optional[models.ExpenseApproval]:
    """Insert a pending record for an otherwise unlisted manager/admin."""
    try:
        with db.begin_nested():
            record = models.ExpenseApproval(
                expense_id=expense.id,
                approver_id=approver.id,
                sequence_order=1,
                status=models.ApprovalStatus.pending,
                is_fallback=True,
            )
            db.add(record)
    except IntegrityError:
        # the same principal raced us; whatever it inserted is authoritative
        return find_decidable_record(db, expense.id, approver.id)
    except SQLAlchemyError as exc:
        raise PersistenceError("fallback approval insert", str(exc)) from exc

    logger.warning(
        "Fallback approval record synthesized",
        extra={"event": "approval.fallback_record", "expense_id": expense.id,
               "approver_id": approver.id, "approver_role": approver.role.value,
               "record_id": record.id},
    )
    return record


def _clean_comments(comments: Optional[str]) -> Optional[str]:
    if comments is None:
        return None
    return comments.strip() or None


def record_decision(db: Session, record: models.ExpenseApproval, action: models.Decision,
                    comments: Optional[str] = None) -> models.ExpenseApproval:
    """Approve or reject a pending record. ConflictError if already decided."""
    action = models.Decision(action)
    if record.status != models.ApprovalStatus.pending:
        raise ConflictError(record.id, record.status.value)

    try:
        result = db.execute(
            update(models.ExpenseApproval)
            .where(
                models.ExpenseApproval.id == record.id,
                models.ExpenseApproval.status == models.ApprovalStatus.pending,
            )
            .values(
                status=action.resulting_status,
                comments=_clean_comments(comments),
                approved_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
    except SQLAlchemyError as exc:
        raise PersistenceError("approval decision update", str(exc)) from exc

    db.refresh(record)
    if result.rowcount == 0:
        raise ConflictError(record.id, record.status.value)

    logger.info(
        "Approval decision recorded",
        extra={"event": "approval.decided", "expense_id": record.expense_id,
               "record_id": record.id, "approver_id": record.approver_id, "action": action.value},
    )
    return record


def count_pending(db: Session, expense_id: int) -> int:
    return db.execute(
        select(func.count(models.ExpenseApproval.id)).where(
            models.ExpenseApproval.expense_id == expense_id,
            models.ExpenseApproval.status == models.ApprovalStatus.pending,
        )
    ).scalar_one()
