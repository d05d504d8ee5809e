"""
Mutation coordinator — drives every write through the optimistic protocol.

For each mutation the coordinator:
  1. Validates it locally through the matching handler (no state change on failure).
  2. Enforces per-entity single-flight on the keys the mutation locks.
  3. Snapshots every record it touches.
  4. Projects the change into the visible store.
  5. Dispatches the write, bounded by a timeout.
  6. On success puts the server's record in place and refetches the owning aggregates.
  7. On failure restores the snapshot exactly and reports what was reverted.

All results are kept in an execution log.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal

from budgetpilot.exceptions import (
    BusyError,
    ConflictError,
    EntityNotFoundError,
    TransientWriteError,
    ValidationError,
    WriteError,
)
from budgetpilot.execution.approval import ApprovalStateMachine
from budgetpilot.execution.handlers import (
    HandlerContext,
    MutationHandler,
    MutationPlan,
    TemporaryIds,
    default_handlers,
)
from budgetpilot.ledger.store import LedgerStore, StoreSnapshot
from budgetpilot.models.ledger import EntityKind, LedgerAggregate, LedgerEntity, entity_key
from budgetpilot.models.mutations import Mutation, MutationResult, MutationStatus
from budgetpilot.persistence.base import BasePersistence

logger = logging.getLogger("budgetpilot.execution.coordinator")

SingleFlightPolicy = Literal["reject", "queue"]


class MutationCoordinator:
    """Applies mutations optimistically and reconciles them with the server.

    Args:
        store: The visible ledger store. The coordinator is its only writer
            apart from the poll reconciler.
        persistence: Backend the writes are dispatched to.
        approvals: State machine used for transition checks and the decision log.
        handlers: Mutation handlers; defaults to the built-in set.
        single_flight: ``"reject"`` raises ``BusyError`` when an entity already
            has a mutation in flight; ``"queue"`` waits for it to finish.
        write_timeout: Seconds before a write is treated as failed.
        read_timeout: Seconds before a refetch is treated as failed.
    """

    def __init__(
        self,
        store: LedgerStore,
        persistence: BasePersistence,
        approvals: ApprovalStateMachine | None = None,
        handlers: list[MutationHandler] | None = None,
        single_flight: SingleFlightPolicy = "reject",
        write_timeout: float = 15.0,
        read_timeout: float = 10.0,
        currency: str = "USD",
        temporary_ids: TemporaryIds | None = None,
    ) -> None:
        if single_flight not in ("reject", "queue"):
            raise ValueError(f"Unknown single-flight policy: {single_flight!r}")
        self._store = store
        self._persistence = persistence
        self._approvals = approvals or ApprovalStateMachine()
        self._handlers: list[MutationHandler] = handlers if handlers is not None else default_handlers()
        self._single_flight = single_flight
        self._write_timeout = write_timeout
        self._read_timeout = read_timeout
        self._context = HandlerContext(
            store=store,
            approvals=self._approvals,
            temporary_ids=temporary_ids or TemporaryIds(),
            currency=currency,
        )

        # Entity key -> event set when the mutation holding it finishes
        self._locks: dict[str, asyncio.Event] = {}
        # Mutation id -> plan, for every mutation not yet resolved
        self._plans: dict[str, MutationPlan] = {}
        self._execution_log: list[MutationResult] = []

    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def persistence(self) -> BasePersistence:
        return self._persistence

    @property
    def approvals(self) -> ApprovalStateMachine:
        return self._approvals

    @property
    def handlers(self) -> list[MutationHandler]:
        return list(self._handlers)

    @property
    def execution_log(self) -> list[MutationResult]:
        """Every resolved mutation, oldest first."""
        return list(self._execution_log)

    @property
    def in_flight(self) -> list[str]:
        """Entity keys currently locked by an unresolved mutation."""
        return sorted(self._locks)

    def register_handler(self, handler: MutationHandler) -> None:
        """Register a handler; it takes precedence over those already registered."""
        self._handlers.insert(0, handler)
        logger.info("Registered mutation handler: %s", handler.name)

    def get_handler(self, mutation: Mutation) -> MutationHandler:
        for handler in self._handlers:
            if handler.can_handle(mutation):
                return handler
        raise ValidationError(f"No handler can {mutation.describe()}")

    def is_locked(self, key: str) -> bool:
        return key in self._locks

    def protected_keys(self, exclude: str | None = None) -> set[str]:
        """Keys of records owned by unresolved mutations (other than ``exclude``)."""
        return {
            touch.key
            for mutation_id, plan in self._plans.items()
            if mutation_id != exclude
            for touch in plan.touches
        }

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self, line_item_id: int) -> LedgerAggregate | None:
        """Fetch an aggregate and make it visible.

        Raises:
            EntityNotFoundError: The line item does not exist.
            TransientWriteError: The fetch failed or timed out.
        """
        aggregate = await self._fetch(line_item_id)
        if self._store.is_busy(line_item_id):
            self._store.merge_aggregate(aggregate, protected=self.protected_keys(), only_if_loaded=False)
        else:
            self._store.load(aggregate)
        return self._store.aggregate(line_item_id)

    async def _fetch(self, line_item_id: int) -> LedgerAggregate:
        try:
            return await asyncio.wait_for(self._persistence.fetch_aggregate(line_item_id), self._read_timeout)
        except asyncio.TimeoutError as e:
            raise TransientWriteError(
                f"Timed out after {self._read_timeout}s loading line item {line_item_id}",
                entity_key=entity_key(EntityKind.LINE_ITEM, line_item_id),
            ) from e

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def submit(self, mutation: Mutation) -> MutationResult:
        """Run one mutation through validate → snapshot → project → dispatch → reconcile.

        Returns:
            A ``MutationResult`` that is either CONFIRMED or ROLLED_BACK.

        Raises:
            ValidationError: Local checks failed; nothing changed.
            BusyError: Single-flight is ``reject`` and a locked entity is busy.
        """
        handler = self.get_handler(mutation)

        while True:
            plan = handler.plan(mutation, self._context)
            busy = [key for key in plan.lock_keys if key in self._locks]
            if not busy:
                break
            if self._single_flight == "reject":
                logger.info("Rejected %s: %s is busy", mutation.describe(), busy[0])
                raise BusyError(busy[0])
            logger.debug("Queued %s behind %s", mutation.describe(), ", ".join(busy))
            await asyncio.gather(*(self._locks[key].wait() for key in busy))

        # No suspension from the lock check to the projection
        done = asyncio.Event()
        for key in plan.lock_keys:
            self._locks[key] = done
        self._plans[mutation.id] = plan
        generations = {lid: self._store.generation(lid) for lid in plan.aggregates}

        try:
            snapshot = self._store.snapshot(plan.touches)
            for lid in plan.aggregates:
                self._store.begin_mutation(lid)
            try:
                handler.project(plan, self._store)
                logger.debug("Projected %s (mutation %s)", mutation.describe(), mutation.id)
                result = await self._dispatch(handler, plan, snapshot, generations)
            finally:
                for lid in plan.aggregates:
                    self._store.end_mutation(lid)
        finally:
            for key in plan.lock_keys:
                if self._locks.get(key) is done:
                    del self._locks[key]
            self._plans.pop(mutation.id, None)
            done.set()

        self._execution_log.append(result)
        return result

    async def _dispatch(
        self,
        handler: MutationHandler,
        plan: MutationPlan,
        snapshot: StoreSnapshot,
        generations: dict[int, int],
    ) -> MutationResult:
        mutation = plan.mutation
        try:
            record = await asyncio.wait_for(handler.dispatch(plan, self._persistence), self._write_timeout)
        except asyncio.TimeoutError:
            error = TransientWriteError(
                f"Timed out after {self._write_timeout}s",
                entity_key=plan.lock_keys[0] if plan.lock_keys else None,
            )
            return self._rollback(plan, snapshot, error)
        except WriteError as e:
            return self._rollback(plan, snapshot, e)
        except asyncio.CancelledError:
            restored = self._store.restore(snapshot)
            logger.warning("Cancelled %s while the write was in flight (%d record(s) restored)", mutation.describe(), restored)
            raise
        except Exception as e:
            logger.exception("Backend raised unexpectedly during %s", mutation.describe())
            error = TransientWriteError(
                f"Unexpected backend error: {e}",
                entity_key=plan.lock_keys[0] if plan.lock_keys else None,
            )
            return self._rollback(plan, snapshot, error)

        def live(line_item_id: int) -> bool:
            return line_item_id in generations and self._store.is_current(line_item_id, generations[line_item_id])

        handler.confirm(plan, record, self._context, live)
        result = MutationResult(
            mutation_id=mutation.id,
            entity=mutation.entity,
            action=mutation.action,
            status=MutationStatus.CONFIRMED,
            entity_id=record.id if record is not None else mutation.target_id,
            temporary_id=plan.temporary_id,
            record=record,
            message=f"Saved: {mutation.describe()}",
        )
        logger.info("Confirmed %s", _label(mutation, record))

        for line_item_id in handler.refetch_targets(plan, record):
            if not self._store.is_loaded(line_item_id):
                continue
            if line_item_id in generations and not live(line_item_id):
                continue
            try:
                await self._refetch(line_item_id, exclude=mutation.id)
            except EntityNotFoundError:
                logger.info("Line item %s no longer exists; evicting it", line_item_id)
                self._store.evict(line_item_id)
            except WriteError as e:
                logger.warning("Refetch of line item %s failed after %s: %s", line_item_id, mutation.describe(), e)
                result.stale = True
                result.refetch_error = str(e)
        return result

    async def _refetch(self, line_item_id: int, exclude: str | None = None) -> bool:
        aggregate = await self._fetch(line_item_id)
        return self._store.merge_aggregate(aggregate, protected=self.protected_keys(exclude))

    def _rollback(self, plan: MutationPlan, snapshot: StoreSnapshot, error: WriteError) -> MutationResult:
        mutation = plan.mutation
        restored = self._store.restore(snapshot)
        message = f"Could not {mutation.describe()}; the change shown earlier has been reverted. {error.message}"
        if isinstance(error, ConflictError):
            message += " Refresh and try again."
        logger.warning("Rolled back %s (%d record(s) restored): %s", mutation.describe(), restored, error)
        return MutationResult(
            mutation_id=mutation.id,
            entity=mutation.entity,
            action=mutation.action,
            status=MutationStatus.ROLLED_BACK,
            entity_id=mutation.target_id,
            temporary_id=plan.temporary_id,
            error=error,
            message=message,
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def summary(self) -> dict[str, Any]:
        """Counts of resolved mutations by outcome, plus what is still in flight."""
        log = self._execution_log
        return {
            "total": len(log),
            "confirmed": sum(1 for r in log if r.succeeded),
            "rolled_back": sum(1 for r in log if r.rolled_back),
            "stale": sum(1 for r in log if r.stale),
            "in_flight": self.in_flight,
        }


def _label(mutation: Mutation, record: LedgerEntity | None) -> str:
    if record is None:
        return mutation.describe()
    return f"{mutation.describe()} -> {record.key}"
