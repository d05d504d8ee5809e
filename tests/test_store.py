"""
Tests for the in-memory ledger store.
"""

from budgetpilot.ledger.store import LedgerStore, Touch
from budgetpilot.models.ledger import ApprovalStatus, CategoryType, EntityKind, LedgerAggregate
from tests.factories import make_line_item, make_request, make_transaction


def _aggregate(**kwargs) -> LedgerAggregate:
    return LedgerAggregate(
        line_item=kwargs.get("line_item", make_line_item(1)),
        purchase_requests=kwargs.get("requests", [make_request(1, status=ApprovalStatus.APPROVED)]),
        transactions=kwargs.get("transactions", [make_transaction(10, 15000, 1)]),
    )


class TestReads:
    def test_load_and_summaries(self) -> None:
        store = LedgerStore()
        store.load(_aggregate())
        assert store.is_loaded(1)
        summary = store.line_item_summary(1)
        assert summary.actual_amount == 15000
        assert summary.variance == -85000
        pr = store.purchase_request_summary(1)
        assert pr.transaction_total == 15000
        assert pr.remaining_amount == 25000

    def test_missing_records(self) -> None:
        store = LedgerStore()
        assert store.aggregate(1) is None
        assert store.line_item_summary(1) is None
        assert store.purchase_request_summary(99) is None
        assert store.approval_impact(99) is None

    def test_pending_requests_filters(self) -> None:
        store = LedgerStore()
        store.load(LedgerAggregate(
            line_item=make_line_item(1, project_id=1),
            purchase_requests=[make_request(1, requested_by=7), make_request(2, requested_by=8, days=1)],
        ))
        store.load(LedgerAggregate(
            line_item=make_line_item(2, project_id=2),
            purchase_requests=[make_request(3, line_item_id=2, requested_by=7)],
        ))
        assert [r.id for r in store.pending_requests()] == [2, 1, 3]
        assert [r.id for r in store.pending_requests(project_id=1)] == [2, 1]
        assert [r.id for r in store.pending_requests(requested_by=7)] == [1, 3]

    def test_project_summary_uses_loaded_items(self) -> None:
        store = LedgerStore()
        store.load(_aggregate())
        store.load(LedgerAggregate(
            line_item=make_line_item(2, 50000, CategoryType.REVENUE),
            transactions=[make_transaction(20, 50000, line_item_id=2)],
        ))
        project = store.project_summary()
        assert project.total_actual_expenses == 15000
        assert project.total_actual_income == 50000


class TestSnapshots:
    def test_restore_is_exact(self) -> None:
        store = LedgerStore()
        store.load(_aggregate())
        before = store.dump()
        touches = [
            Touch(EntityKind.TRANSACTION, 10, 1),
            Touch(EntityKind.TRANSACTION, -5, 1),
            Touch(EntityKind.PURCHASE_REQUEST, 1, 1),
        ]
        snap = store.snapshot(touches)

        store.remove(EntityKind.TRANSACTION, 10)
        store.put(make_transaction(-5, 30000, 1))
        store.mark_pending(EntityKind.TRANSACTION, -5, "m1")
        store.put(make_request(1, status=ApprovalStatus.REJECTED))
        assert store.dump() != before

        assert store.restore(snap) == 3
        assert store.dump() == before

    def test_restore_skips_evicted_aggregate(self) -> None:
        store = LedgerStore()
        store.load(_aggregate())
        snap = store.snapshot([Touch(EntityKind.TRANSACTION, -5, 1)])
        store.put(make_transaction(-5, 30000, 1))
        store.evict(1)

        assert store.restore(snap) == 0
        assert not store.is_loaded(1)
        assert store.get_transaction(-5) is None

    def test_restore_skips_reloaded_aggregate(self) -> None:
        store = LedgerStore()
        store.load(_aggregate())
        snap = store.snapshot([Touch(EntityKind.TRANSACTION, 10, 1)])
        store.evict(1)
        store.load(_aggregate(transactions=[]))

        store.restore(snap)
        assert store.get_transaction(10) is None

    def test_version_moves_on_mutation_bracket(self) -> None:
        store = LedgerStore()
        store.load(_aggregate())
        v0 = store.version(1)
        store.begin_mutation(1)
        assert store.is_busy(1)
        store.end_mutation(1)
        assert not store.is_busy(1)
        assert store.version(1) > v0


class TestMerge:
    def test_merge_twice_equals_once(self) -> None:
        store = LedgerStore()
        store.load(_aggregate())
        server = _aggregate(transactions=[make_transaction(10, 15000, 1), make_transaction(11, 5000, 1, day=2)])

        assert store.merge_aggregate(server) is True
        once = store.dump()
        assert store.merge_aggregate(server) is False
        assert store.dump() == once

    def test_merge_drops_deleted_children(self) -> None:
        store = LedgerStore()
        store.load(_aggregate())
        store.merge_aggregate(_aggregate(transactions=[]))
        assert store.get_transaction(10) is None

    def test_merge_keeps_protected_and_pending(self) -> None:
        store = LedgerStore()
        store.load(_aggregate())
        store.put(make_transaction(-1, 999, 1))
        store.mark_pending(EntityKind.TRANSACTION, -1, "m1")
        store.put(make_request(1, amount=55555, status=ApprovalStatus.APPROVED))

        store.merge_aggregate(_aggregate(), protected={"purchase_request:1"})

        assert store.get_transaction(-1) is not None
        assert store.get_purchase_request(1).amount == 55555

    def test_merge_ignores_unloaded(self) -> None:
        store = LedgerStore()
        assert store.merge_aggregate(_aggregate()) is False
        assert not store.is_loaded(1)

    def test_matches(self) -> None:
        store = LedgerStore()
        agg = _aggregate()
        store.load(agg)
        assert store.matches(agg)
        assert not store.matches(_aggregate(transactions=[]))
