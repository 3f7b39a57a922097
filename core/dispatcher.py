#!/usr/bin/env python3
"""
Work Dispatcher - fans a batch of consumer numbers out over the session pool.

Each batch gets a worker group (one task per pooled session, capped to the
number of items) and a completion tracker. Workers claim items through the
batch's shared cursor, so no index is ever handed out twice; an in-progress
set keyed by (batch, consumer) guards against a second worker starting the
same item.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from monitoring.progress import EventType, ProgressBus

from .batch_registry import BatchRegistry
from .captcha_relay import CaptchaRelay
from .completion_tracker import CompletionDecision, CompletionTracker
from .errors import BillFetchError, InvalidIdentifier
from .identifiers import normalize_identifiers
from .models import Batch, BatchStatus, Outcome
from .session_pool import SessionPool
from .spreadsheet import ExcelProcessor
from .workflow import ItemWorkflow

logger = logging.getLogger(__name__)

INCOMPLETE_MESSAGE = "Processing timed out or was incomplete"


class WorkDispatcher:
    """
    Run batches to completion over a shared session pool.

    Features:
    - Claim-then-check cursor per batch
    - Bounded retries with backoff, one Outcome per item
    - Session always released (and its captcha cancelled) after an attempt
    - Forced completion cancels stragglers so their sessions come back
    """

    def __init__(
        self,
        pool: SessionPool,
        relay: CaptchaRelay,
        bus: ProgressBus,
        registry: BatchRegistry,
        aggregator: ExcelProcessor,
        config: Any,
        workflow: Optional[ItemWorkflow] = None,
    ):
        self.pool = pool
        self.relay = relay
        self.bus = bus
        self.registry = registry
        self.aggregator = aggregator
        self.config = config
        self.workflow = workflow or ItemWorkflow.from_config(relay, config)

        self.max_attempts = config.MAX_ATTEMPTS
        self.retry_backoff = config.RETRY_BACKOFF_SECONDS
        self.policy = config.completion_policy

        self._in_progress: Set[Tuple[str, str]] = set()
        self._workers: Dict[str, List[asyncio.Task]] = {}
        self._trackers: Dict[str, CompletionTracker] = {}
        self._tracker_tasks: Dict[str, asyncio.Task] = {}

        self.stats = {
            'batches': 0,
            'items_started': 0,
            'succeeded': 0,
            'failed': 0,
            'retries': 0,
            'max_in_progress': 0,
            'double_claims': 0,
        }

    async def submit(self, raw_identifiers: Iterable[Any]) -> str:
        """
        Start processing a batch and return its id immediately.

        Raises:
            InvalidIdentifier: no usable consumer number in the input
        """
        identifiers, rejected = normalize_identifiers(raw_identifiers)
        if not identifiers:
            raise InvalidIdentifier("No valid consumer numbers found")

        batch = self.registry.create(identifiers, rejected)
        self.stats['batches'] += 1

        tracker = CompletionTracker(batch, self.policy, self._finalize)
        self._trackers[batch.batch_id] = tracker

        worker_count = max(1, min(self.pool.capacity, batch.total))
        self._workers[batch.batch_id] = [
            asyncio.create_task(self._worker(batch, n), name=f"worker-{batch.batch_id}-{n}")
            for n in range(worker_count)
        ]
        self._tracker_tasks[batch.batch_id] = asyncio.create_task(
            tracker.run(), name=f"tracker-{batch.batch_id}"
        )

        logger.info(
            f"[Dispatcher] Batch {batch.batch_id}: {batch.total} items, "
            f"{len(rejected)} rejected, {worker_count} workers"
        )
        return batch.batch_id

    @property
    def in_progress(self) -> Set[Tuple[str, str]]:
        return set(self._in_progress)

    async def _worker(self, batch: Batch, worker_no: int):
        while True:
            index = batch.claim_next()
            if index >= batch.total or batch.status.is_terminal:
                return

            identifier = batch.identifiers[index]
            key = (batch.batch_id, identifier)
            if key in self._in_progress:
                self.stats['double_claims'] += 1
                logger.warning(f"[Dispatcher] {identifier} already in progress, skipping")
                continue
            if identifier in batch.outcomes:
                continue

            self._in_progress.add(key)
            self.stats['max_in_progress'] = max(self.stats['max_in_progress'], len(self._in_progress))
            try:
                outcome = await self._process_item(batch, identifier)
            finally:
                self._in_progress.discard(key)

            if batch.record(outcome):
                self.stats['succeeded' if outcome.ok else 'failed'] += 1
                self.bus.publish(
                    EventType.ITEM_FINISHED,
                    batch_id=batch.batch_id,
                    identifier=identifier,
                    status="Success" if outcome.ok else "Error",
                    outcome=outcome.to_dict(),
                    progress=batch.progress(),
                )

            tracker = self._trackers.get(batch.batch_id)
            if tracker:
                tracker.nudge()

    async def _process_item(self, batch: Batch, identifier: str) -> Outcome:
        """Retry loop for one item. Always returns an Outcome."""
        last_error = "Unknown error"
        session_id = None
        attempts = 0

        for attempt in range(1, self.max_attempts + 1):
            attempts = attempt
            handle = None
            retryable = True
            try:
                handle = await self.pool.acquire()
                session_id = handle.session_id
                handle.bind(batch.batch_id, identifier)
                self.stats['items_started'] += 1
                self.bus.publish(
                    EventType.ITEM_STARTED,
                    batch_id=batch.batch_id,
                    session_id=session_id,
                    identifier=identifier,
                    attempt=attempt,
                )

                record = await self.workflow.run(handle, batch.batch_id, identifier)
                return Outcome.success(identifier, record, attempts=attempt, session_id=session_id)

            except BillFetchError as e:
                last_error = str(e)
                retryable = e.retryable
                logger.warning(f"[Dispatcher] {identifier} attempt {attempt}/{self.max_attempts} failed: {e}")
            except Exception as e:
                last_error = f"Unexpected error: {e}"
                logger.error(f"[Dispatcher] {identifier} attempt {attempt} crashed: {e}", exc_info=True)
            finally:
                if handle is not None:
                    self.relay.cancel(handle.session_id, "Attempt finished")
                    await self.pool.release(handle)

            if not retryable or attempt >= self.max_attempts:
                break

            self.stats['retries'] += 1
            self.bus.publish(
                EventType.ITEM_RETRY,
                batch_id=batch.batch_id,
                identifier=identifier,
                attempt=attempt,
                error=last_error,
                next_attempt_in=self.retry_backoff,
            )
            await asyncio.sleep(self.retry_backoff)

        return Outcome.failure(identifier, last_error, attempts=attempts, session_id=session_id)

    async def _finalize(self, batch: Batch, decision: CompletionDecision):
        """Completion callback: fill gaps, stop stragglers, export."""
        await self.cancel_workers(batch.batch_id)
        self.relay.cancel_batch(batch.batch_id, "Batch finished")

        for identifier in batch.missing():
            batch.record(Outcome.failure(identifier, INCOMPLETE_MESSAGE))
            self.stats['failed'] += 1

        try:
            path = await asyncio.to_thread(self.aggregator.materialize, batch)
        except Exception as e:
            batch.error = str(e)
            batch.finish(BatchStatus.ERROR, decision.reason.value)
            logger.error(f"[Dispatcher] Batch {batch.batch_id} export failed: {e}")
            self.bus.publish(
                EventType.BATCH_ERROR,
                batch_id=batch.batch_id,
                error=batch.error,
                progress=batch.progress(),
            )
            return

        batch.results_path = str(path)
        status = BatchStatus.DEGRADED if decision.forced else BatchStatus.COMPLETED
        batch.finish(status, decision.reason.value)
        self.bus.publish(
            EventType.BATCH_DEGRADED if decision.forced else EventType.BATCH_COMPLETED,
            batch_id=batch.batch_id,
            reason=decision.reason.value,
            detail=decision.detail,
            download_url=f"/download/{batch.batch_id}",
            statistics=self.aggregator.get_statistics(batch.ordered_outcomes()),
            progress=batch.progress(),
        )

    async def cancel_workers(self, batch_id: str):
        """Cancel unfinished workers of a batch and wait for their sessions to be released."""
        tasks = [t for t in self._workers.pop(batch_id, []) if not t.done()]
        current = asyncio.current_task()
        tasks = [t for t in tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"[Dispatcher] Cancelled {len(tasks)} straggler worker(s) of {batch_id}")

    async def wait_for_batch(self, batch_id: str, timeout: Optional[float] = None) -> Optional[Batch]:
        batch = self.registry.get(batch_id)
        if batch is None:
            return None
        await batch.wait_finished(timeout)
        return batch

    def forget(self, batch_id: str):
        """Drop per-batch bookkeeping after the registry removed a batch."""
        self._trackers.pop(batch_id, None)
        self._tracker_tasks.pop(batch_id, None)
        self._workers.pop(batch_id, None)
        self.bus.forget(batch_id)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'in_progress': len(self._in_progress),
            'active_batches': sum(1 for t in self._tracker_tasks.values() if not t.done()),
        }

    async def shutdown(self):
        """Cancel every task and tear down all sessions."""
        tasks = [t for group in self._workers.values() for t in group]
        tasks += list(self._tracker_tasks.values())
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._tracker_tasks.clear()
        await self.pool.close_all()
        logger.info("[Dispatcher] Shut down")
