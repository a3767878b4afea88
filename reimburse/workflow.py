from typing import Iterable, Optional
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from reimburse import models
from reimburse.exceptions import NotFoundError, ValidationError
from reimburse.logging_config import get_logger

logger = get_logger("workflow")


def get_active_workflow(db: Session, company_id: int) -> Optional[models.ApprovalWorkflow]:
    """The company's active workflow with at least one approver, if any."""
    active = db.execute(
        select(models.ApprovalWorkflow)
        .where(models.ApprovalWorkflow.company_id == company_id, models.ApprovalWorkflow.is_active.is_(True))
        .order_by(models.ApprovalWorkflow.created_at, models.ApprovalWorkflow.id)
    ).scalars().all()
    if not active:
        return None
    if len(active) > 1:
        logger.warning(
            "Multiple active workflows, using the earliest",
            extra={"event": "workflow.multiple_active", "company_id": company_id,
                   "workflow_ids": [w.id for w in active]},
        )
    workflow = active[0]
    if not workflow.approvers:
        return None
    return workflow


def list_workflows(db: Session, company_id: int) -> list[models.ApprovalWorkflow]:
    return list(db.execute(
        select(models.ApprovalWorkflow)
        .where(models.ApprovalWorkflow.company_id == company_id)
        .order_by(models.ApprovalWorkflow.created_at.desc(), models.ApprovalWorkflow.id.desc())
    ).scalars())


def workflows_listing(db: Session, company_id: int, user_id: int) -> list[models.ApprovalWorkflow]:
    """Workflows of the company that name the user as an approver."""
    return [wf for wf in list_workflows(db, company_id) if user_id in (wf.approvers or [])]


def get_workflow(db: Session, company_id: int, workflow_id: int) -> models.ApprovalWorkflow:
    wf = db.get(models.ApprovalWorkflow, workflow_id)
    if wf is None or wf.company_id != company_id:
        raise NotFoundError("workflow", workflow_id)
    return wf


def _validate(db: Session, company_id: int, name: str, approvers: list[int],
              approval_sequence: list[int], rules: Optional[dict]) -> None:
    if not name or not name.strip():
        raise ValidationError("workflow name is required")
    if not approvers:
        raise ValidationError("at least one approver is required")
    if len(set(approvers)) != len(approvers):
        raise ValidationError("approvers must not contain duplicates")
    if len(approval_sequence) != len(approvers):
        raise ValidationError("approval_sequence must have one entry per approver")
    if len(set(approval_sequence)) != len(approval_sequence) or any(s < 1 for s in approval_sequence):
        raise ValidationError("approval_sequence must hold distinct positive integers")

    users = db.execute(select(models.User).where(models.User.id.in_(approvers))).scalars().all()
    by_id = {u.id: u for u in users}
    for approver_id in approvers:
        u = by_id.get(approver_id)
        if u is None or u.company_id != company_id:
            raise ValidationError(f"approver {approver_id} is not a member of this company")
        if not u.is_approval_eligible:
            raise ValidationError(f"user {approver_id} is not allowed to approve expenses")

    if rules is None:
        return
    try:
        rule_type = models.RuleType(rules.get("type"))
    except ValueError:
        raise ValidationError(f"unknown conditional rule type: {rules.get('type')!r}")
    pct = rules.get("percentage")
    specific = rules.get("specific_approver_id")
    if rule_type in (models.RuleType.percentage, models.RuleType.hybrid):
        if pct is None or not 0 <= pct <= 100:
            raise ValidationError("percentage rules need a percentage between 0 and 100")
    if rule_type in (models.RuleType.specific_approver, models.RuleType.hybrid):
        if specific is None:
            raise ValidationError("specific approver rules need specific_approver_id")
        if specific not in approvers:
            raise ValidationError("specific_approver_id must be one of the workflow approvers")


def _deactivate_others(db: Session, company_id: int, keep_id: int) -> None:
    db.execute(
        update(models.ApprovalWorkflow)
        .where(models.ApprovalWorkflow.company_id == company_id, models.ApprovalWorkflow.id != keep_id)
        .values(is_active=False)
    )


def create_workflow(db: Session, company_id: int, name: str, approvers: list[int],
                    approval_sequence: Optional[list[int]] = None,
                    conditional_rules: Optional[dict] = None, is_active: bool = True) -> models.ApprovalWorkflow:
    approvers = list(approvers)
    sequence = list(approval_sequence) if approval_sequence else list(range(1, len(approvers) + 1))
    _validate(db, company_id, name, approvers, sequence, conditional_rules)
    wf = models.ApprovalWorkflow(
        company_id=company_id,
        name=name.strip(),
        approvers=approvers,
        approval_sequence=sequence,
        conditional_rules=conditional_rules,
        is_active=is_active,
    )
    db.add(wf)
    db.flush()
    if is_active:
        _deactivate_others(db, company_id, wf.id)
    logger.info("Workflow created", extra={"event": "workflow.created", "workflow_id": wf.id, "company_id": company_id})
    return wf


def update_workflow(db: Session, wf: models.ApprovalWorkflow, name: str, approvers: list[int],
                    approval_sequence: Optional[list[int]] = None,
                    conditional_rules: Optional[dict] = None) -> models.ApprovalWorkflow:
    approvers = list(approvers)
    sequence = list(approval_sequence) if approval_sequence else list(range(1, len(approvers) + 1))
    _validate(db, wf.company_id, name, approvers, sequence, conditional_rules)
    wf.name = name.strip()
    wf.approvers = approvers
    wf.approval_sequence = sequence
    wf.conditional_rules = conditional_rules
    db.flush()
    return wf


def set_workflow_active(db: Session, wf: models.ApprovalWorkflow, active: bool) -> models.ApprovalWorkflow:
    """Activating a workflow deactivates every other one of the company."""
    wf.is_active = active
    db.flush()
    if active:
        _deactivate_others(db, wf.company_id, wf.id)
    logger.info(
        "Workflow %s", "activated" if active else "deactivated",
        extra={"event": "workflow.toggled", "workflow_id": wf.id, "is_active": active},
    )
    return wf


def delete_workflow(db: Session, wf: models.ApprovalWorkflow) -> None:
    db.delete(wf)
    db.flush()


def rules_satisfied(rules: Optional[dict], approvals: Iterable[models.ExpenseApproval]) -> bool:
    """Whether a workflow's conditional rules already allow approval."""
    if not rules:
        return False
    steps = list(approvals)
    total = len(steps)
    approved = sum(1 for s in steps if s.status == models.ApprovalStatus.approved)
    pct = rules.get("percentage")
    specific = rules.get("specific_approver_id")

    pct_ok = bool(total > 0 and pct is not None and (approved / total) * 100.0 >= pct)
    spec_ok = bool(specific is not None and any(
        s.approver_id == specific and s.status == models.ApprovalStatus.approved for s in steps
    ))

    rule_type = rules.get("type")
    if rule_type == models.RuleType.percentage.value:
        return pct_ok
    if rule_type == models.RuleType.specific_approver.value:
        return spec_ok
    if rule_type == models.RuleType.hybrid.value:
        return pct_ok or spec_ok
    return False
