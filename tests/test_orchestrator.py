"""
Tests for ApprovalOrchestrator.decide() and list_pending_for().

Covers the full resolve -> decide -> settle protocol: lazy record creation,
multi-approver settlement, duplicate decisions, the manager/admin escape
hatch, authorization failures and tolerated status-write refusals.
"""

import pytest

from reimburse import models
from reimburse.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from reimburse.orchestrator import ApprovalOrchestrator, Outcome, list_pending_for

S = models.ExpenseStatus


@pytest.fixture
def orchestrator(db):
    return ApprovalOrchestrator(db)


@pytest.fixture
def two_step(make_user, make_expense, make_workflow):
    """An expense routed through approvers X then Y."""
    x = make_user(models.Role.manager, full_name="Xavier")
    y = make_user(models.Role.admin, full_name="Yara")
    emp = make_user()
    make_workflow([x, y])
    return x, y, make_expense(emp)


class TestInputValidation:

    def test_missing_expense_id(self, orchestrator, make_user):
        with pytest.raises(ValidationError):
            orchestrator.decide(None, make_user(models.Role.admin), "approve")

    def test_blank_expense_id(self, orchestrator, make_user):
        with pytest.raises(ValidationError):
            orchestrator.decide("  ", make_user(models.Role.admin), "approve")

    def test_missing_principal(self, orchestrator, make_user, make_expense):
        exp = make_expense(make_user())
        with pytest.raises(ValidationError):
            orchestrator.decide(exp.id, None, "approve")

    def test_unknown_action(self, orchestrator, make_user, make_expense):
        exp = make_expense(make_user())
        with pytest.raises(ValidationError, match="unknown action"):
            orchestrator.decide(exp.id, make_user(models.Role.admin), "escalate")

    def test_unknown_expense(self, orchestrator, make_user):
        with pytest.raises(NotFoundError) as exc_info:
            orchestrator.decide(999, make_user(models.Role.admin), "approve")
        assert exc_info.value.for_action() == "failed to approve expense: expense 999 not found"


class TestSingleApprover:

    def test_manager_approves_draft_expense(self, db, orchestrator, make_user, make_expense, records):
        mgr = make_user(models.Role.manager, is_manager_approver=True)
        exp = make_expense(make_user(manager=mgr))

        outcome = orchestrator.decide(exp.id, mgr, "approve", " ok ")

        assert outcome == Outcome(action=models.Decision.approve, expense_id=exp.id,
                                  finalized=True, status=S.approved, fallback_used=False)
        rows = records(exp)
        assert len(rows) == 1
        assert rows[0].status == models.ApprovalStatus.approved
        assert rows[0].comments == "ok"

    def test_reject_settles_rejected(self, orchestrator, make_user, make_expense):
        mgr = make_user(models.Role.manager)
        exp = make_expense(make_user(manager=mgr))

        outcome = orchestrator.decide(exp.id, mgr, models.Decision.reject)

        assert outcome.status == S.rejected
        assert outcome.finalized


class TestMultiApproverSettlement:

    def test_expense_waits_for_last_approver(self, db, orchestrator, two_step):
        x, y, exp = two_step

        first = orchestrator.decide(exp.id, x, "approve")
        assert not first.finalized
        assert first.status == S.pending

        second = orchestrator.decide(exp.id, y, "approve")
        assert second.finalized
        assert second.status == S.approved

    def test_last_decision_sets_terminal_status(self, orchestrator, two_step):
        x, y, exp = two_step

        orchestrator.decide(exp.id, x, "approve")
        outcome = orchestrator.decide(exp.id, y, "reject")

        assert outcome.status == S.rejected

    def test_early_rejection_does_not_settle(self, orchestrator, two_step):
        x, y, exp = two_step

        outcome = orchestrator.decide(exp.id, x, "reject")

        assert not outcome.finalized
        assert outcome.status == S.pending

    def test_order_of_approvers_is_not_enforced(self, orchestrator, two_step):
        x, y, exp = two_step

        assert orchestrator.decide(exp.id, y, "approve").status == S.pending
        assert orchestrator.decide(exp.id, x, "approve").status == S.approved

    def test_unlisted_employee_is_refused(self, orchestrator, two_step, make_user):
        _, _, exp = two_step
        with pytest.raises(AuthorizationError):
            orchestrator.decide(exp.id, make_user(is_manager_approver=True), "approve")


class TestDuplicateDecision:

    def test_second_decision_conflicts_and_keeps_first(self, db, orchestrator, two_step, records):
        x, _, exp = two_step
        orchestrator.decide(exp.id, x, "approve", "first pass")
        before = next(r for r in records(exp) if r.approver_id == x.id)
        stamped = before.approved_at

        with pytest.raises(ConflictError) as exc_info:
            orchestrator.decide(exp.id, x, "approve", "second pass")

        assert "failed to approve expense" in exc_info.value.for_action()
        after = next(r for r in records(exp) if r.approver_id == x.id)
        assert after.comments == "first pass"
        assert after.approved_at == stamped

    def test_deciding_a_settled_expense_conflicts(self, orchestrator, make_user, make_expense):
        mgr = make_user(models.Role.manager)
        exp = make_expense(make_user(manager=mgr))
        orchestrator.decide(exp.id, mgr, "approve")

        with pytest.raises(InvalidTransitionError) as exc_info:
            orchestrator.decide(exp.id, mgr, "reject")
        assert isinstance(exc_info.value, ConflictError)


class TestEscapeHatch:

    def test_admin_without_resolvable_approver_approves_alone(self, db, orchestrator, make_user,
                                                              make_expense, records):
        # no manager on file, no workflow, nobody else to approve
        emp = make_user()
        admin = make_user(models.Role.admin)
        exp = make_expense(emp)

        outcome = orchestrator.decide(exp.id, admin, "approve")

        assert outcome.status == S.approved
        assert outcome.finalized
        rows = records(exp)
        assert [(r.approver_id, r.sequence_order, r.status) for r in rows] == [
            (admin.id, 1, models.ApprovalStatus.approved)
        ]

    def test_employee_without_resolvable_approver_is_refused(self, db, orchestrator, make_user,
                                                             make_expense, records):
        emp = make_user()
        colleague = make_user()
        exp = make_expense(emp)

        with pytest.raises(AuthorizationError, match="not authorized to approve this expense"):
            orchestrator.decide(exp.id, colleague, "approve")

        assert records(exp) == []

    def test_unlisted_admin_synthesizes_fallback_record(self, db, orchestrator, two_step, make_user,
                                                        records, caplog):
        x, y, exp = two_step
        auditor = make_user(models.Role.admin, full_name="Audrey")

        with caplog.at_level("WARNING", logger="reimburse.approvals"):
            outcome = orchestrator.decide(exp.id, auditor, "approve")

        assert outcome.fallback_used
        assert not outcome.finalized
        fallback = [r for r in records(exp) if r.is_fallback]
        assert [(r.approver_id, r.sequence_order, r.status) for r in fallback] == [
            (auditor.id, 1, models.ApprovalStatus.approved)
        ]
        assert any(getattr(r, "event", None) == "approval.fallback_record" for r in caplog.records)

    def test_fallback_record_is_used_once(self, orchestrator, two_step, make_user):
        _, _, exp = two_step
        manager = make_user(models.Role.manager)
        orchestrator.decide(exp.id, manager, "approve")

        with pytest.raises(ConflictError):
            orchestrator.decide(exp.id, manager, "approve")


class TestCompanyBoundary:

    @pytest.fixture
    def outsider(self, make_company, make_user):
        return make_user(models.Role.admin, company_id=make_company(name="Globex").id)

    def test_admin_of_another_company_is_refused(self, db, orchestrator, make_user, make_expense,
                                                 outsider, records):
        mgr = make_user(models.Role.manager)
        exp = make_expense(make_user(manager=mgr))

        with pytest.raises(AuthorizationError) as exc_info:
            orchestrator.decide(exp.id, outsider, "reject")

        assert exc_info.value.for_action() == "failed to reject expense: not authorized to approve this expense"
        assert records(exp) == []
        db.refresh(exp)
        assert exp.status == S.draft

    def test_outsider_cannot_fill_an_approver_gap(self, db, orchestrator, make_user, make_expense,
                                                  outsider, records):
        exp = make_expense(make_user())

        with pytest.raises(AuthorizationError):
            orchestrator.decide(exp.id, outsider, "approve")

        assert records(exp) == []

    def test_outsider_cannot_join_an_initialized_expense(self, orchestrator, two_step, outsider, records):
        x, _, exp = two_step
        orchestrator.decide(exp.id, x, "approve")

        with pytest.raises(AuthorizationError):
            orchestrator.decide(exp.id, outsider, "approve")

        assert outsider.id not in {r.approver_id for r in records(exp)}


class TestTolerance:

    def test_blocked_pending_write_still_records_decision(self, db, orchestrator, two_step,
                                                          block_status_writes, records):
        x, _, exp = two_step

        outcome = orchestrator.decide(exp.id, x, "approve")

        db.refresh(exp)
        assert exp.status == S.draft
        assert outcome.status == S.draft
        assert [r.status for r in records(exp)] == [models.ApprovalStatus.approved, models.ApprovalStatus.pending]

    def test_blocked_settle_leaves_records_authoritative(self, db, orchestrator, make_user, make_expense,
                                                         block_status_writes, records):
        mgr = make_user(models.Role.manager)
        exp = make_expense(make_user(manager=mgr))

        outcome = orchestrator.decide(exp.id, mgr, "approve")

        assert outcome.finalized
        assert outcome.status == S.draft
        assert [r.status for r in records(exp)] == [models.ApprovalStatus.approved]


class TestConditionalRules:

    def test_specific_approver_approval_settles_early(self, orchestrator, make_user, make_expense, make_workflow):
        x = make_user(models.Role.manager)
        cfo = make_user(models.Role.admin)
        exp = make_expense(make_user())
        make_workflow([x, cfo], rules={"type": "specific_approver", "specific_approver_id": cfo.id})

        outcome = orchestrator.decide(exp.id, cfo, "approve")

        assert outcome.finalized
        assert outcome.status == S.approved

    def test_percentage_rule_below_threshold_keeps_waiting(self, orchestrator, make_user, make_expense,
                                                           make_workflow):
        a, b, c = (make_user(models.Role.manager) for _ in range(3))
        exp = make_expense(make_user())
        make_workflow([a, b, c], rules={"type": "percentage", "percentage": 60})

        assert orchestrator.decide(exp.id, a, "approve").status == S.pending
        assert orchestrator.decide(exp.id, b, "approve").status == S.approved

    def test_rules_never_settle_on_rejection(self, orchestrator, make_user, make_expense, make_workflow):
        a, b = make_user(models.Role.manager), make_user(models.Role.manager)
        exp = make_expense(make_user())
        make_workflow([a, b], rules={"type": "percentage", "percentage": 0})

        outcome = orchestrator.decide(exp.id, a, "reject")

        assert outcome.status == S.pending


class TestListPendingFor:

    def test_approver_sees_own_pending_items(self, orchestrator, db, two_step):
        x, y, exp = two_step
        orchestrator.decide(exp.id, x, "approve")

        assert list_pending_for(db, x) == []
        assert [e.id for e in list_pending_for(db, y)] == [exp.id]

    def test_admin_sees_all_open_company_expenses(self, db, make_user, make_expense, make_company):
        admin = make_user(models.Role.admin)
        emp = make_user()
        draft = make_expense(emp)
        pending = make_expense(emp, status=S.pending)
        make_expense(emp, status=S.approved)
        outsider = make_user(company_id=make_company(name="Globex").id)
        make_expense(outsider, status=S.pending)

        assert [e.id for e in list_pending_for(db, admin)] == [pending.id, draft.id]

    def test_manager_without_records_sees_nothing(self, db, make_user, make_expense):
        mgr = make_user(models.Role.manager)
        make_expense(make_user(), status=S.pending)

        assert list_pending_for(db, mgr) == []
