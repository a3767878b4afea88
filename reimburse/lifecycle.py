"""
Expense status lifecycle: draft -> pending -> approved | rejected.

Status writes here are best-effort. The backing store may refuse them (row
level security, triggers) and the approval records stay authoritative, so a
refused write is logged and the caller carries on.
"""

from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from reimburse import models
from reimburse.approvals import has_any_record
from reimburse.exceptions import InvalidTransitionError
from reimburse.logging_config import get_logger

logger = get_logger("lifecycle")

S = models.ExpenseStatus

TRANSITIONS: dict[models.ExpenseStatus, frozenset] = {
    S.draft: frozenset({S.pending}),
    S.pending: frozenset({S.approved, S.rejected}),
    S.approved: frozenset(),
    S.rejected: frozenset(),
}


def can_transition(current: models.ExpenseStatus, target: models.ExpenseStatus) -> bool:
    return target in TRANSITIONS[models.ExpenseStatus(current)]


def _soft_update(db: Session, expense_id: int, allowed_from: tuple, target: models.ExpenseStatus) -> bool:
    try:
        with db.begin_nested():
            result = db.execute(
                update(models.Expense)
                .where(models.Expense.id == expense_id, models.Expense.status.in_(allowed_from))
                .values(status=target)
                .execution_options(synchronize_session=False)
            )
    except SQLAlchemyError as exc:
        logger.warning(
            "Expense status write refused",
            extra={"event": "expense.status_write_refused", "expense_id": expense_id,
                   "target_status": target.value, "reason": str(exc)},
        )
        return False
    return result.rowcount > 0


def ensure_pending(db: Session, expense: models.Expense) -> bool:
    """Make sure the expense counts as pending.

    Returns True even when the draft -> pending write is refused; the
    persisted status may then still be draft. Terminal expenses raise.
    """
    if expense.status == S.pending:
        return True
    if expense.status in models.TERMINAL_EXPENSE_STATUSES:
        raise InvalidTransitionError(expense.id, expense.status.value, S.pending.value)

    written = _soft_update(db, expense.id, (S.draft,), S.pending)
    db.refresh(expense)
    if written:
        logger.info("Expense submitted", extra={"event": "expense.pending", "expense_id": expense.id})
    return True


def settle(db: Session, expense_id: int, final_action: models.Decision) -> Optional[models.ExpenseStatus]:
    """Write the terminal status once no approval is pending.

    Returns the status written, or None when the store refused the write or
    the expense had already reached a terminal status.
    """
    target = S.approved if models.Decision(final_action) is models.Decision.approve else S.rejected
    written = _soft_update(db, expense_id, (S.draft, S.pending), target)
    expense = db.get(models.Expense, expense_id)
    if expense is not None:
        db.refresh(expense)
    if not written:
        return None
    logger.info(
        "Expense settled",
        extra={"event": "expense.settled", "expense_id": expense_id, "status": target.value},
    )
    return target


def is_effectively_pending(db: Session, expense: models.Expense) -> bool:
    """Pending status, or a non-terminal expense that already has approval records."""
    if expense.status == S.pending:
        return True
    if expense.status in models.TERMINAL_EXPENSE_STATUSES:
        return False
    return has_any_record(db, expense.id)
