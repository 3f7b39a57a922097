"""
Resilience Tests - retries, forced completion and export failures.

The dispatcher runs against fake sessions so every failure can be scripted.
"""

import pytest
from unittest.mock import patch

from core.dispatcher import INCOMPLETE_MESSAGE
from core.errors import ExportFailure
from core.models import BatchStatus
from monitoring.progress import EventType

CONSUMERS = ["14102000674", "14102000675", "14102000676"]


def events_of(services, batch_id, event_type):
    return [e for e in services.bus.history(batch_id) if e.type == event_type]


@pytest.mark.resilience
class TestRetries:
    """Bounded retries with backoff."""

    @pytest.mark.asyncio
    async def test_persistent_failure_uses_every_attempt(self, fake_site, make_services):
        fake_site.failures[CONSUMERS[0]] = 10
        services = make_services(MAX_ATTEMPTS=3, RETRY_BACKOFF_SECONDS=0.05)
        try:
            batch_id = await services.dispatcher.submit([CONSUMERS[0]])
            batch = await services.dispatcher.wait_for_batch(batch_id, timeout=10)

            assert batch.status == BatchStatus.COMPLETED
            outcome = batch.outcomes[CONSUMERS[0]]
            assert not outcome.ok
            assert outcome.attempts == 3
            assert "not visible" in outcome.error
            assert fake_site.attempts[CONSUMERS[0]] == 3

            assert len(events_of(services, batch_id, EventType.ITEM_RETRY)) == 2
            started = [e.timestamp for e in events_of(services, batch_id, EventType.ITEM_STARTED)]
            assert len(started) == 3
            assert all(b - a >= 0.04 for a, b in zip(started, started[1:]))
        finally:
            await services.stop()

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, fake_site, make_services):
        fake_site.failures[CONSUMERS[1]] = 1
        services = make_services()
        try:
            batch_id = await services.dispatcher.submit(CONSUMERS)
            batch = await services.dispatcher.wait_for_batch(batch_id, timeout=10)

            assert batch.status == BatchStatus.COMPLETED
            assert all(o.ok for o in batch.outcomes.values())
            assert batch.outcomes[CONSUMERS[1]].attempts == 2
            assert services.dispatcher.stats['retries'] == 1
        finally:
            await services.stop()

    @pytest.mark.asyncio
    async def test_sessions_released_after_reset_errors(self, fake_site, make_services):
        fake_site.reset_error = True
        services = make_services()
        try:
            batch_id = await services.dispatcher.submit(CONSUMERS)
            batch = await services.dispatcher.wait_for_batch(batch_id, timeout=10)

            assert batch.succeeded == 3
            assert services.pool.free_count == services.pool.capacity
            assert services.pool.stats['reset_failures'] == 3
        finally:
            await services.stop()


@pytest.mark.resilience
class TestForcedCompletion:
    """Stalled batches finish with the missing items filled in."""

    @pytest.mark.asyncio
    async def test_hung_item_forces_degraded_completion(self, fake_site, make_services):
        fake_site.hang.add(CONSUMERS[1])
        services = make_services(STALL_WINDOW_SECONDS=0.3)
        try:
            batch_id = await services.dispatcher.submit(CONSUMERS)
            batch = await services.dispatcher.wait_for_batch(batch_id, timeout=10)

            assert batch.status == BatchStatus.DEGRADED
            assert batch.completion_reason == "stalled"
            assert [o.identifier for o in batch.ordered_outcomes()] == CONSUMERS

            hung = batch.outcomes[CONSUMERS[1]]
            assert not hung.ok
            assert hung.error == INCOMPLETE_MESSAGE
            assert batch.outcomes[CONSUMERS[0]].ok

            # The straggler was cancelled and its session came back
            assert services.dispatcher.in_progress == set()
            assert services.pool.free_count == services.pool.capacity
            assert events_of(services, batch_id, EventType.BATCH_DEGRADED)
        finally:
            await services.stop()

    @pytest.mark.asyncio
    async def test_late_outcome_is_not_recorded_twice(self, fake_site, make_services):
        fake_site.hang.add(CONSUMERS[0])
        services = make_services(STALL_WINDOW_SECONDS=0.2)
        try:
            batch_id = await services.dispatcher.submit(CONSUMERS)
            batch = await services.dispatcher.wait_for_batch(batch_id, timeout=10)

            finished = events_of(services, batch_id, EventType.ITEM_FINISHED)
            assert len(finished) == 2
            assert len(batch.outcomes) == 3
        finally:
            await services.stop()


@pytest.mark.resilience
class TestClaiming:
    """Every item is claimed by exactly one worker."""

    @pytest.mark.asyncio
    async def test_no_item_processed_twice(self, fake_site, make_services):
        fake_site.delay = 0.02
        identifiers = [f"141020{n:05d}" for n in range(10)]
        services = make_services(POOL_SIZE=3)
        try:
            batch_id = await services.dispatcher.submit(identifiers)
            batch = await services.dispatcher.wait_for_batch(batch_id, timeout=10)

            assert batch.succeeded == 10
            assert services.dispatcher.stats['double_claims'] == 0
            assert all(fake_site.attempts[i] == 1 for i in identifiers)
            assert fake_site.max_active_per_identifier == 1
            assert services.dispatcher.stats['max_in_progress'] <= 3
        finally:
            await services.stop()

    @pytest.mark.asyncio
    async def test_pool_shrinks_when_a_session_fails_to_start(self, fake_site, make_services):
        fake_site.failing_starts.add(1)
        services = make_services(POOL_SIZE=3)
        try:
            batch_id = await services.dispatcher.submit(CONSUMERS)
            batch = await services.dispatcher.wait_for_batch(batch_id, timeout=10)

            assert batch.succeeded == 3
            assert services.pool.capacity == 2
        finally:
            await services.stop()


@pytest.mark.resilience
class TestExportFailure:

    @pytest.mark.asyncio
    async def test_export_failure_marks_batch_error(self, make_services):
        services = make_services()
        try:
            with patch.object(services.excel, "materialize", side_effect=ExportFailure("disk full")):
                batch_id = await services.dispatcher.submit(CONSUMERS)
                batch = await services.dispatcher.wait_for_batch(batch_id, timeout=10)

            assert batch.status == BatchStatus.ERROR
            assert batch.error == "disk full"
            assert batch.results_path is None
            assert batch.succeeded == 3
            assert events_of(services, batch_id, EventType.BATCH_ERROR)
        finally:
            await services.stop()
