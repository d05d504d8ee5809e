"""
Tests for the purchase request approval state machine.
"""

import pytest

from budgetpilot.exceptions import IllegalTransitionError, PermissionDeniedError, ValidationError
from budgetpilot.execution.approval import TRANSITIONS, ApprovalStateMachine
from budgetpilot.models.actors import Actor, PermissionLevel
from budgetpilot.models.ledger import ApprovalStatus
from tests.factories import NOW, make_request

P, A, R = ApprovalStatus.PENDING, ApprovalStatus.APPROVED, ApprovalStatus.REJECTED


def _machine(**kwargs) -> ApprovalStateMachine:
    return ApprovalStateMachine(clock=lambda: NOW, **kwargs)


class TestTransitionTable:
    def test_every_distinct_pair_is_legal(self) -> None:
        for source in ApprovalStatus:
            assert TRANSITIONS[source] == frozenset(s for s in ApprovalStatus if s != source)

    @pytest.mark.parametrize("status", list(ApprovalStatus))
    def test_same_status_is_illegal(self, status) -> None:
        request = make_request(1, status=status)
        with pytest.raises(IllegalTransitionError, match="already"):
            _machine().check_transition(request, status, rejection_reason="x")

    @pytest.mark.parametrize(
        "source, target",
        [(P, A), (P, R), (A, P), (A, R), (R, P), (R, A)],
    )
    def test_legal_rows_pass(self, source, target) -> None:
        request = make_request(1, status=source)
        _machine().check_transition(request, target, rejection_reason="Duplicate order")


class TestRejectionReason:
    def test_pending_to_rejected_needs_reason(self) -> None:
        with pytest.raises(ValidationError) as exc:
            _machine().check_transition(make_request(1), R, rejection_reason="   ")
        assert exc.value.field == "rejection_reason"
        assert "reason for rejection" in str(exc.value)

    def test_caller_may_opt_out(self) -> None:
        _machine().check_transition(make_request(1), R, require_reason=False)

    def test_machine_default_can_be_off(self) -> None:
        _machine(require_rejection_reason=False).check_transition(make_request(1), R)

    def test_approved_to_rejected_does_not_need_reason(self) -> None:
        _machine().check_transition(make_request(1, status=A), R)


class TestGuards:
    def test_non_admin_cannot_decide(self) -> None:
        editor = Actor(id=2, name="Sam", level=PermissionLevel.EDIT)
        with pytest.raises(PermissionDeniedError):
            _machine().check_transition(make_request(1), A, actor=editor)

    def test_admin_can_decide(self) -> None:
        admin = Actor(id=1, level=PermissionLevel.ADMIN)
        _machine().check_transition(make_request(1), A, actor=admin)

    def test_regression_allowed_by_default(self) -> None:
        _machine().check_transition(make_request(1, status=A), P, transaction_count=3)

    def test_regression_can_be_blocked(self) -> None:
        machine = _machine(block_regression_with_transactions=True)
        with pytest.raises(IllegalTransitionError, match="cannot leave Approved"):
            machine.check_transition(make_request(1, status=A), P, transaction_count=3)
        machine.check_transition(make_request(1, status=A), P, transaction_count=0)

    def test_transactions_only_against_approved(self) -> None:
        machine = _machine()
        assert machine.can_create_transaction(make_request(1, status=A))
        for status in (P, R):
            with pytest.raises(ValidationError) as exc:
                machine.check_transaction_allowed(make_request(1, status=status))
            assert exc.value.field == "purchase_request_id"


class TestEffects:
    def test_approve_stamps_date_and_clears_reason(self) -> None:
        after = _machine().apply(make_request(1, status=R), A, actor_id=1)
        assert after.approval_status == A
        assert after.approved_date == NOW
        assert after.rejection_reason is None
        assert after.approved_by == 1

    def test_reject_clears_date_and_trims_reason(self) -> None:
        after = _machine().apply(make_request(1, status=A), R, actor_id=1, rejection_reason="  Duplicate  ")
        assert after.approved_date is None
        assert after.rejection_reason == "Duplicate"

    def test_back_to_pending_clears_everything(self) -> None:
        after = _machine().apply(make_request(1, status=R, approved_by=1), P)
        assert after.approved_date is None
        assert after.rejection_reason is None
        assert after.approved_by is None

    def test_reset_for_edit(self) -> None:
        machine = _machine()
        assert machine.reset_for_edit(make_request(1, status=A)).approval_status == P
        rejected = make_request(2, status=R)
        assert machine.reset_for_edit(rejected) is rejected

    def test_apply_leaves_original_untouched(self) -> None:
        before = make_request(1)
        _machine().apply(before, A)
        assert before.approval_status == P


class TestDecisionLog:
    def test_record_appends(self) -> None:
        machine = _machine()
        before = make_request(1, status=A)
        after = machine.apply(before, R, actor_id=1, rejection_reason="No longer needed")
        decision = machine.record(before, after, transaction_count=2)
        assert machine.decisions == [decision]
        assert decision.from_status == A
        assert decision.to_status == R
        assert decision.decided_by == 1
        assert decision.reason == "No longer needed"
        assert decision.transactions_at_decision == 2

    def test_leaving_approved_with_transactions_warns(self, caplog) -> None:
        machine = _machine()
        before = make_request(1, status=A)
        with caplog.at_level("WARNING", logger="budgetpilot.execution.approval"):
            machine.record(before, machine.apply(before, P), transaction_count=1)
        assert "left Approved" in caplog.text
