"""
Poll reconciler — periodically refreshes loaded aggregates from the server.

A poll never overwrites optimistic state:
  - If a mutation on the aggregate is outstanding when the poll starts, it is skipped.
  - If the aggregate changed while the fetch was out (a mutation started or
    finished, or it was evicted), the response is discarded.
  - If a newer poll of the same aggregate started meanwhile, the older
    response is discarded.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from budgetpilot.exceptions import EntityNotFoundError, TransientWriteError, WriteError
from budgetpilot.ledger.store import LedgerStore
from budgetpilot.models.mutations import utcnow
from budgetpilot.persistence.base import BasePersistence

logger = logging.getLogger("budgetpilot.execution.polling")


class PollOutcome(str, Enum):
    """What a single poll did to the visible store."""

    APPLIED = "applied"
    UNCHANGED = "unchanged"
    SUPPRESSED = "suppressed"
    SUPERSEDED = "superseded"
    STALE = "stale"
    GONE = "gone"
    NOT_LOADED = "not_loaded"
    FAILED = "failed"


@dataclass
class PollResult:
    line_item_id: int
    sequence: int
    outcome: PollOutcome
    error: str | None = None
    finished_at: datetime = field(default_factory=utcnow)


class PollReconciler:
    """Refreshes aggregates on an interval without clobbering pending changes.

    Args:
        store: The visible ledger store.
        persistence: Backend to fetch aggregates from.
        interval: Seconds between polls in :meth:`run`.
        timeout: Seconds before a fetch is abandoned.
        protected: Returns keys owned by unresolved mutations; usually
            ``MutationCoordinator.protected_keys``.
        history_size: How many recent poll results to keep.
    """

    def __init__(
        self,
        store: LedgerStore,
        persistence: BasePersistence,
        interval: float = 30.0,
        timeout: float = 10.0,
        protected: Callable[[], set[str]] | None = None,
        history_size: int = 200,
    ) -> None:
        self._store = store
        self._persistence = persistence
        self._interval = interval
        self._timeout = timeout
        self._protected = protected or set
        self._sequence = 0
        self._latest: dict[int, int] = {}
        self._history: deque[PollResult] = deque(maxlen=history_size)
        self._tasks: dict[int, asyncio.Task] = {}

    @property
    def history(self) -> list[PollResult]:
        return list(self._history)

    @property
    def running(self) -> list[int]:
        return sorted(lid for lid, task in self._tasks.items() if not task.done())

    async def poll_once(self, line_item_id: int) -> PollResult:
        """Fetch one aggregate and merge it if nothing local got in the way."""
        self._sequence += 1
        sequence = self._sequence
        self._latest[line_item_id] = sequence

        if not self._store.is_loaded(line_item_id):
            return self._finish(line_item_id, sequence, PollOutcome.NOT_LOADED)
        if self._store.is_busy(line_item_id):
            logger.debug("Poll %d of line item %s suppressed: mutation outstanding", sequence, line_item_id)
            return self._finish(line_item_id, sequence, PollOutcome.SUPPRESSED)

        version = self._store.version(line_item_id)
        try:
            aggregate = await asyncio.wait_for(self._persistence.fetch_aggregate(line_item_id), self._timeout)
        except asyncio.TimeoutError:
            error = TransientWriteError(f"Poll timed out after {self._timeout}s")
            logger.warning("Poll of line item %s failed: %s", line_item_id, error)
            return self._finish(line_item_id, sequence, PollOutcome.FAILED, str(error))
        except EntityNotFoundError as e:
            outcome = self._discard_reason(line_item_id, sequence, version)
            if outcome is not None:
                return self._finish(line_item_id, sequence, outcome)
            logger.info("Line item %s was deleted on the server; evicting it", line_item_id)
            self._store.evict(line_item_id)
            return self._finish(line_item_id, sequence, PollOutcome.GONE, str(e))
        except WriteError as e:
            logger.warning("Poll of line item %s failed: %s", line_item_id, e)
            return self._finish(line_item_id, sequence, PollOutcome.FAILED, str(e))

        outcome = self._discard_reason(line_item_id, sequence, version)
        if outcome is not None:
            return self._finish(line_item_id, sequence, outcome)

        if self._store.matches(aggregate):
            return self._finish(line_item_id, sequence, PollOutcome.UNCHANGED)

        self._store.merge_aggregate(aggregate, protected=self._protected())
        logger.debug("Poll %d applied server changes to line item %s", sequence, line_item_id)
        return self._finish(line_item_id, sequence, PollOutcome.APPLIED)

    async def run(self, line_item_id: int, iterations: int | None = None) -> list[PollResult]:
        """Poll ``line_item_id`` every ``interval`` seconds.

        Runs forever unless ``iterations`` is given. Failed polls are logged
        and the loop carries on.
        """
        results: list[PollResult] = []
        count = 0
        while iterations is None or count < iterations:
            result = await self.poll_once(line_item_id)
            if iterations is not None:
                results.append(result)
            count += 1
            if iterations is not None and count >= iterations:
                break
            await asyncio.sleep(self._interval)
        return results

    def start(self, line_item_id: int) -> asyncio.Task:
        """Start background polling of one aggregate (idempotent)."""
        task = self._tasks.get(line_item_id)
        if task is None or task.done():
            task = asyncio.create_task(self.run(line_item_id), name=f"poll-line-item-{line_item_id}")
            self._tasks[line_item_id] = task
        return task

    async def stop(self, line_item_id: int | None = None) -> None:
        """Stop background polling of one aggregate, or all of them."""
        ids = [line_item_id] if line_item_id is not None else list(self._tasks)
        for lid in ids:
            task = self._tasks.pop(lid, None)
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _discard_reason(self, line_item_id: int, sequence: int, version: int) -> PollOutcome | None:
        if self._latest.get(line_item_id) != sequence:
            logger.debug("Poll %d of line item %s superseded", sequence, line_item_id)
            return PollOutcome.SUPERSEDED
        if self._store.version(line_item_id) != version or self._store.is_busy(line_item_id):
            logger.debug("Poll %d of line item %s discarded: aggregate changed during fetch", sequence, line_item_id)
            return PollOutcome.STALE
        return None

    def _finish(
        self,
        line_item_id: int,
        sequence: int,
        outcome: PollOutcome,
        error: str | None = None,
    ) -> PollResult:
        result = PollResult(line_item_id=line_item_id, sequence=sequence, outcome=outcome, error=error)
        self._history.append(result)
        return result
