"""Polling loop that decides when to reconcile each resource.

A resource is reconciled when:
- it is seen for the first time or its generation changed
- the force-reconcile label was added
- it started being deleted and still carries the finalizer
- a requeue delay returned by an earlier pass has elapsed

Passes for different resources run concurrently in the default executor.
A poll cycle waits for all its passes, so one resource never has two passes
in flight.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .config import DEFAULT_POLL_INTERVAL_SECONDS, FINALIZER, LABEL_FORCE_RECONCILE
from .models import FivetranConnector
from .reconciler import OutcomeAction, ReconcileOutcome, Reconciler
from .resource_store import ResourceStore, ResourceStoreError

logger = logging.getLogger(__name__)


@dataclass
class _Tracked:
    """What the runner remembers about one resource between polls."""

    generation: int | None = None
    force_label: bool = False
    deleting: bool = False
    requeue_at: float | None = None


class Runner:
    """Runs reconciliation passes until shutdown."""

    def __init__(
        self,
        store: ResourceStore,
        reconciler: Reconciler,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._poll_interval = poll_interval_seconds
        self._clock = clock
        self._tracked: dict[str, _Tracked] = {}
        self._shutdown_event = asyncio.Event()

    async def run(self) -> None:
        """Poll and reconcile until shutdown() is called."""
        logger.info(
            "Starting runner",
            extra={"poll_interval_seconds": self._poll_interval},
        )

        while not self._shutdown_event.is_set():
            try:
                await self.run_once()
            except ResourceStoreError as e:
                logger.error("Failed to list resources", extra={"error": str(e)})

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._poll_interval)
            except TimeoutError:
                # Normal timeout, continue to next cycle
                pass

        logger.info("Runner shutdown complete")

    def shutdown(self) -> None:
        """Signal the runner to stop after the current cycle."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def run_once(self) -> list[ReconcileOutcome]:
        """List resources and reconcile every one that is due."""
        loop = asyncio.get_running_loop()
        resources = await loop.run_in_executor(None, self._store.list)
        due = self.due_keys(resources)
        if not due:
            return []

        outcomes = await asyncio.gather(
            *(loop.run_in_executor(None, self._reconcile_safely, key) for key, _ in due)
        )
        for (_, generation), outcome in zip(due, outcomes, strict=True):
            self._record(outcome, generation)
        return list(outcomes)

    def due_keys(self, resources: list[FivetranConnector]) -> list[tuple[str, int]]:
        """Keys to reconcile now, with the generation each pass will see."""
        now = self._clock()
        seen: set[str] = set()
        due: list[tuple[str, int]] = []

        for resource in resources:
            key = resource.key
            seen.add(key)
            tracked = self._tracked.setdefault(key, _Tracked())
            meta = resource.metadata
            has_force_label = LABEL_FORCE_RECONCILE in meta.labels

            reasons: list[str] = []
            if tracked.generation != meta.generation:
                reasons.append("generation_changed")
            if has_force_label and not tracked.force_label:
                reasons.append("force_reconcile")
            deleting = resource.is_being_deleted and FINALIZER in meta.finalizers
            if deleting and not tracked.deleting:
                reasons.append("deletion")
            if tracked.requeue_at is not None and now >= tracked.requeue_at:
                reasons.append("requeue")

            tracked.force_label = has_force_label
            tracked.deleting = deleting
            if reasons:
                logger.debug("Resource due", extra={"resource": key, "reasons": reasons})
                due.append((key, meta.generation))

        for key in set(self._tracked) - seen:
            del self._tracked[key]

        return due

    def _reconcile_safely(self, key: str) -> ReconcileOutcome:
        try:
            return self._reconciler.reconcile(key)
        except Exception as e:
            logger.exception("Reconciliation crashed", extra={"resource": key})
            return ReconcileOutcome(
                key=key,
                action=OutcomeAction.REQUEUE,
                requeue_after=self._poll_interval,
                error=e,
            )

    def _record(self, outcome: ReconcileOutcome, generation: int) -> None:
        tracked = self._tracked.setdefault(outcome.key, _Tracked())
        tracked.generation = generation
        if outcome.action == OutcomeAction.REQUEUE and outcome.requeue_after is not None:
            tracked.requeue_at = self._clock() + outcome.requeue_after
        else:
            tracked.requeue_at = None
