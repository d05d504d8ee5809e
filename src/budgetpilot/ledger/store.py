"""
Ledger store — the single in-memory copy of every loaded ledger aggregate.

Rendering code reads from it; only the mutation coordinator and the poll
reconciler write to it. Derived totals are never stored: the summary
accessors recompute them from the current child records on every call.

Each loaded line item has a *version* that changes whenever anything in its
aggregate changes or a mutation on it starts or finishes, and a
*generation* that changes when it is evicted. Snapshots remember the
generation so a rollback never resurrects an aggregate the caller has
already let go of.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from budgetpilot.ledger import calculations
from budgetpilot.models.ledger import (
    ApprovalStatus,
    EntityKind,
    LedgerAggregate,
    LedgerEntity,
    LineItem,
    PurchaseRequest,
    Transaction,
    entity_key,
)
from budgetpilot.models.summaries import (
    ApprovalImpact,
    LineItemSummary,
    ProjectSummary,
    PurchaseRequestSummary,
)

logger = logging.getLogger("budgetpilot.ledger.store")


@dataclass(frozen=True)
class Touch:
    """A record a mutation will change, and the aggregate it lives in."""

    kind: EntityKind
    entity_id: int
    line_item_id: int

    @property
    def key(self) -> str:
        return entity_key(self.kind, self.entity_id)


@dataclass
class StoreSnapshot:
    """Exact pre-mutation copies of the records a mutation touches."""

    records: dict[Touch, LedgerEntity | None] = field(default_factory=dict)
    pending: dict[str, str] = field(default_factory=dict)
    generations: dict[int, int] = field(default_factory=dict)


class LedgerStore:
    """In-memory aggregate store with explicit read and mutate operations."""

    def __init__(self) -> None:
        self._line_items: dict[int, LineItem] = {}
        self._requests: dict[int, PurchaseRequest] = {}
        self._transactions: dict[int, Transaction] = {}
        # Records created optimistically and not yet confirmed: key -> mutation id
        self._pending: dict[str, str] = {}
        self._versions: Counter[int] = Counter()
        self._generations: Counter[int] = Counter()
        self._busy: Counter[int] = Counter()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_loaded(self, line_item_id: int) -> bool:
        return line_item_id in self._line_items

    def loaded_line_item_ids(self) -> list[int]:
        return sorted(self._line_items)

    def get(self, kind: EntityKind, entity_id: int) -> LedgerEntity | None:
        if kind == EntityKind.LINE_ITEM:
            return self._line_items.get(entity_id)
        if kind == EntityKind.PURCHASE_REQUEST:
            return self._requests.get(entity_id)
        return self._transactions.get(entity_id)

    def get_line_item(self, line_item_id: int) -> LineItem | None:
        return self._line_items.get(line_item_id)

    def get_purchase_request(self, request_id: int) -> PurchaseRequest | None:
        return self._requests.get(request_id)

    def get_transaction(self, transaction_id: int) -> Transaction | None:
        return self._transactions.get(transaction_id)

    def purchase_requests_for(self, line_item_id: int, by: calculations.SortKey = "date") -> list[PurchaseRequest]:
        requests = [r for r in self._requests.values() if r.line_item_id == line_item_id]
        return calculations.sort_purchase_requests(requests, by=by)

    def transactions_for(self, line_item_id: int, by: calculations.SortKey = "date") -> list[Transaction]:
        txns = [t for t in self._transactions.values() if t.line_item_id == line_item_id]
        return calculations.sort_transactions(txns, by=by)

    def transactions_for_request(self, request_id: int, by: calculations.SortKey = "date") -> list[Transaction]:
        txns = [t for t in self._transactions.values() if t.purchase_request_id == request_id]
        return calculations.sort_transactions(txns, by=by)

    def aggregate(self, line_item_id: int) -> LedgerAggregate | None:
        """The visible aggregate for a line item, including unconfirmed records."""
        line_item = self._line_items.get(line_item_id)
        if line_item is None:
            return None
        return LedgerAggregate(
            line_item=line_item,
            purchase_requests=self.purchase_requests_for(line_item_id),
            transactions=self.transactions_for(line_item_id),
        )

    def line_item_summary(self, line_item_id: int) -> LineItemSummary | None:
        line_item = self._line_items.get(line_item_id)
        if line_item is None:
            return None
        return calculations.summarize_line_item(
            line_item,
            self.purchase_requests_for(line_item_id),
            self.transactions_for(line_item_id),
        )

    def purchase_request_summary(self, request_id: int) -> PurchaseRequestSummary | None:
        request = self._requests.get(request_id)
        if request is None:
            return None
        return calculations.summarize_purchase_request(request, self.transactions_for_request(request_id))

    def approval_impact(self, request_id: int) -> ApprovalImpact | None:
        request = self._requests.get(request_id)
        if request is None:
            return None
        line_item = self._line_items.get(request.line_item_id)
        if line_item is None:
            return None
        return calculations.compute_approval_impact(
            line_item,
            self.purchase_requests_for(line_item.id),
            self.transactions_for(line_item.id),
            request,
        )

    def project_summary(self, project_id: int | None = None) -> ProjectSummary:
        aggregates = [self.aggregate(li) for li in self.loaded_line_item_ids()]
        return calculations.summarize_project([a for a in aggregates if a is not None], project_id=project_id)

    def pending_requests(
        self,
        project_id: int | None = None,
        requested_by: int | None = None,
    ) -> list[PurchaseRequest]:
        """Requests awaiting a decision, newest first."""
        found = []
        for request in self._requests.values():
            if request.approval_status != ApprovalStatus.PENDING:
                continue
            if requested_by is not None and request.requested_by != requested_by:
                continue
            if project_id is not None:
                owner = self._line_items.get(request.line_item_id)
                if owner is None or owner.project_id != project_id:
                    continue
            found.append(request)
        return calculations.sort_purchase_requests(found)

    def is_pending_confirmation(self, kind: EntityKind, entity_id: int) -> bool:
        return entity_key(kind, entity_id) in self._pending

    def version(self, line_item_id: int) -> int:
        return self._versions[line_item_id]

    def generation(self, line_item_id: int) -> int:
        return self._generations[line_item_id]

    def is_busy(self, line_item_id: int) -> bool:
        """True while any mutation on this aggregate is unresolved."""
        return self._busy[line_item_id] > 0

    def matches(self, aggregate: LedgerAggregate) -> bool:
        """Whether ``aggregate`` is identical to what is visible now."""
        current = self.aggregate(aggregate.line_item_id)
        if current is None:
            return False
        return (
            current.line_item == aggregate.line_item
            and current.purchase_requests == calculations.sort_purchase_requests(aggregate.purchase_requests)
            and current.transactions == calculations.sort_transactions(aggregate.transactions)
        )

    def dump(self) -> dict[str, Any]:
        """Plain, comparable copy of everything visible, for equality checks."""
        return {
            "line_items": {k: v.model_dump() for k, v in sorted(self._line_items.items())},
            "purchase_requests": {k: v.model_dump() for k, v in sorted(self._requests.items())},
            "transactions": {k: v.model_dump() for k, v in sorted(self._transactions.items())},
            "pending": dict(sorted(self._pending.items())),
        }

    # ------------------------------------------------------------------
    # Writes (coordinator and poll reconciler only)
    # ------------------------------------------------------------------

    def load(self, aggregate: LedgerAggregate) -> None:
        """Start tracking an aggregate, replacing whatever was visible for it."""
        line_item_id = aggregate.line_item_id
        if line_item_id not in self._line_items:
            self._generations[line_item_id] += 1
        self._drop_children(line_item_id)
        self._line_items[line_item_id] = aggregate.line_item
        for request in aggregate.purchase_requests:
            self._requests[request.id] = request
        for txn in aggregate.transactions:
            self._transactions[txn.id] = txn
        self._bump(line_item_id)
        logger.debug(
            "Loaded line item %s (%d requests, %d transactions)",
            line_item_id,
            len(aggregate.purchase_requests),
            len(aggregate.transactions),
        )

    def evict(self, line_item_id: int) -> None:
        """Stop tracking an aggregate (the caller navigated away or it was deleted)."""
        if line_item_id not in self._line_items and not self._children(line_item_id):
            return
        self._drop_children(line_item_id)
        self._line_items.pop(line_item_id, None)
        self._generations[line_item_id] += 1
        self._bump(line_item_id)
        logger.debug("Evicted line item %s", line_item_id)

    def put(self, entity: LedgerEntity) -> None:
        if isinstance(entity, LineItem):
            self._line_items[entity.id] = entity
            self._bump(entity.id)
        elif isinstance(entity, PurchaseRequest):
            self._requests[entity.id] = entity
            self._bump(entity.line_item_id)
        else:
            self._transactions[entity.id] = entity
            self._bump(entity.line_item_id)

    def remove(self, kind: EntityKind, entity_id: int) -> LedgerEntity | None:
        entity = self.get(kind, entity_id)
        if entity is None:
            return None
        if kind == EntityKind.LINE_ITEM:
            del self._line_items[entity_id]
            self._bump(entity_id)
        elif kind == EntityKind.PURCHASE_REQUEST:
            del self._requests[entity_id]
            self._bump(entity.line_item_id)
        else:
            del self._transactions[entity_id]
            self._bump(entity.line_item_id)
        self._pending.pop(entity_key(kind, entity_id), None)
        return entity

    def mark_pending(self, kind: EntityKind, entity_id: int, mutation_id: str) -> None:
        self._pending[entity_key(kind, entity_id)] = mutation_id

    def clear_pending(self, kind: EntityKind, entity_id: int) -> None:
        self._pending.pop(entity_key(kind, entity_id), None)

    def begin_mutation(self, line_item_id: int) -> None:
        self._busy[line_item_id] += 1
        self._bump(line_item_id)

    def end_mutation(self, line_item_id: int) -> None:
        self._busy[line_item_id] -= 1
        if self._busy[line_item_id] <= 0:
            del self._busy[line_item_id]
        self._bump(line_item_id)

    def snapshot(self, touches: Iterable[Touch]) -> StoreSnapshot:
        """Capture the current state of every touched record."""
        snap = StoreSnapshot()
        for touch in touches:
            snap.records[touch] = self.get(touch.kind, touch.entity_id)
            if touch.key in self._pending:
                snap.pending[touch.key] = self._pending[touch.key]
            snap.generations[touch.line_item_id] = self._generations[touch.line_item_id]
        return snap

    def restore(self, snap: StoreSnapshot) -> int:
        """Put every touched record back exactly as it was.

        Records of aggregates that were evicted (or evicted and reloaded)
        after the snapshot are left alone. Returns the number of records
        restored.
        """
        restored = 0
        for touch, before in snap.records.items():
            if not self._same_generation(touch.line_item_id, snap):
                logger.debug("Skipping restore of %s: line item %s no longer loaded", touch.key, touch.line_item_id)
                continue
            if before is None:
                self.remove(touch.kind, touch.entity_id)
            else:
                self.put(before)
            if touch.key in snap.pending:
                self._pending[touch.key] = snap.pending[touch.key]
            else:
                self._pending.pop(touch.key, None)
            restored += 1
        return restored

    def merge_aggregate(
        self,
        aggregate: LedgerAggregate,
        protected: Iterable[str] = (),
        only_if_loaded: bool = True,
    ) -> bool:
        """Replace visible records with authoritative ones.

        Records whose keys are in ``protected`` (owned by an unresolved
        mutation) and unconfirmed creates are left as they are. Local
        children missing from ``aggregate`` were deleted on the server and
        are dropped. Merging the same aggregate twice is a no-op the second
        time. Returns whether anything visible changed.
        """
        line_item_id = aggregate.line_item_id
        if only_if_loaded and line_item_id not in self._line_items:
            logger.debug("Ignoring aggregate for line item %s: not loaded", line_item_id)
            return False

        was_loaded = line_item_id in self._line_items
        keep = set(protected) | set(self._pending)
        changed = False

        for entity in aggregate.records():
            if entity.key in keep:
                continue
            if self.get(entity.kind, entity.id) != entity:
                self.put(entity)
                changed = True

        incoming = {e.key for e in aggregate.records()}
        stale = [e for e in self._children(line_item_id) if e.key not in incoming and e.key not in keep]
        for entity in stale:
            self.remove(entity.kind, entity.id)
            changed = True

        if not was_loaded:
            self._generations[line_item_id] += 1
        return changed

    def is_current(self, line_item_id: int, generation: int) -> bool:
        """Whether the aggregate is still loaded under the given generation."""
        return line_item_id in self._line_items and self._generations[line_item_id] == generation

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _children(self, line_item_id: int) -> list[PurchaseRequest | Transaction]:
        requests = [r for r in self._requests.values() if r.line_item_id == line_item_id]
        txns = [t for t in self._transactions.values() if t.line_item_id == line_item_id]
        return [*requests, *txns]

    def _drop_children(self, line_item_id: int) -> None:
        for entity in self._children(line_item_id):
            self.remove(entity.kind, entity.id)

    def _same_generation(self, line_item_id: int, snap: StoreSnapshot) -> bool:
        if snap.generations.get(line_item_id) != self._generations[line_item_id]:
            return False
        # A create under a line item that was never loaded has nothing to restore into
        return line_item_id in self._line_items or any(
            t.kind == EntityKind.LINE_ITEM and t.line_item_id == line_item_id for t in snap.records
        )

    def _bump(self, line_item_id: int) -> None:
        self._versions[line_item_id] += 1
