from sqlalchemy import select
from sqlalchemy.orm import Session

from reimburse import models
from reimburse.logging_config import get_logger

logger = get_logger("directory")


def is_approval_eligible(user: models.User | None) -> bool:
    return user is not None and user.is_approval_eligible


def first_company_approver(db: Session, company_id: int) -> models.User | None:
    """Earliest-created manager/admin of the company."""
    return db.execute(
        select(models.User)
        .where(models.User.company_id == company_id, models.User.role.in_(models.APPROVER_ROLES))
        .order_by(models.User.created_at, models.User.id)
        .limit(1)
    ).scalar_one_or_none()


def resolve_default_approvers(db: Session, employee: models.User, acting: models.User | None = None) -> list[int]:
    """Approver chain for an employee when no usable workflow exists.

    Tries, in order: the employee's own manager when approval-eligible, the
    first manager/admin of the company, then the acting principal when it is
    itself a manager/admin of the same company. An empty list means nobody
    can approve.
    """
    if employee.manager_id:
        mgr = db.get(models.User, employee.manager_id)
        if is_approval_eligible(mgr):
            return [mgr.id]

    fallback = first_company_approver(db, employee.company_id)
    if fallback is not None:
        return [fallback.id]

    if (acting is not None and acting.role in models.APPROVER_ROLES
            and acting.company_id == employee.company_id):
        logger.warning(
            "Self-approval fallback used",
            extra={"event": "approval.self_fallback", "employee_id": employee.id, "approver_id": acting.id},
        )
        return [acting.id]

    logger.warning(
        "No approver resolvable for employee",
        extra={"event": "approval.no_approver", "employee_id": employee.id, "company_id": employee.company_id},
    )
    return []
