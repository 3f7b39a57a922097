"""
E2E Tests - full batch journey from raw spreadsheet cells to the results workbook.

Runs the real dispatcher, relay, tracker and exporter over fake QuickPay sessions,
with a background "human" answering every captcha through the relay.
"""

import asyncio

import pandas as pd
import pytest

from conftest import answer_captchas
from core.models import BatchStatus
from core.spreadsheet import RESULTS_SHEET
from monitoring.progress import EventType


@pytest.mark.e2e
class TestBatchJourney:
    """Upload cells in, workbook out."""

    @pytest.mark.asyncio
    async def test_batch_with_captchas_completes(self, fake_site, make_services):
        fake_site.captcha = True
        fake_site.expected_answer = "abc12"
        services = make_services(POOL_SIZE=2)
        human = asyncio.create_task(answer_captchas(services, "abc12"))
        await asyncio.sleep(0)

        try:
            # Raw cells as a spreadsheet delivers them: float, padded string, blank, junk
            batch_id = await services.dispatcher.submit(
                [14102000674.0, "04102000675", None, "not-a-number", 14102000676]
            )
            batch = await services.dispatcher.wait_for_batch(batch_id, timeout=10)
        finally:
            human.cancel()

        try:
            assert batch.status == BatchStatus.COMPLETED
            assert batch.completion_reason == "all_accounted"
            assert batch.identifiers == ["14102000674", "04102000675", "14102000676"]
            assert [raw for raw, _ in batch.rejected] == ["not-a-number"]
            assert batch.succeeded == 3

            # Every answer went to the session that showed the captcha
            assert len(fake_site.answers) == 3
            assert {identifier for _, identifier, _ in fake_site.answers} == set(batch.identifiers)

            frame = pd.read_excel(batch.results_path, sheet_name=RESULTS_SHEET, dtype=str).fillna("")
            assert list(frame["Consumer No."]) == batch.identifiers
            assert set(frame["Status"]) == {"Success"}
            assert list(frame["Consumer Name"]) == ["Consumer 0674", "Consumer 0675", "Consumer 0676"]

            terminal = services.bus.terminal_event(batch_id)
            assert terminal.type == EventType.BATCH_COMPLETED
            assert terminal.payload["download_url"] == f"/download/{batch_id}"
            assert terminal.payload["statistics"]["successful"] == 3
            assert services.relay.active() == []
        finally:
            await services.stop()

    @pytest.mark.asyncio
    async def test_two_plain_lookups_and_one_captcha_round_trip(self, fake_site, make_services):
        consumers = ["14102000674", "14102000675", "14102000676"]
        fake_site.captcha_for.add(consumers[1])
        fake_site.expected_answer = "abc12"
        services = make_services(POOL_SIZE=2)
        human = asyncio.create_task(answer_captchas(services, "abc12"))
        await asyncio.sleep(0)

        try:
            batch_id = await services.dispatcher.submit(consumers)
            batch = await services.dispatcher.wait_for_batch(batch_id, timeout=10)
        finally:
            human.cancel()

        try:
            assert batch.status == BatchStatus.COMPLETED
            assert batch.succeeded == 3
            assert all(o.attempts == 1 for o in batch.outcomes.values())

            # Only the captcha consumer went through the relay
            assert [identifier for _, identifier, _ in fake_site.answers] == [consumers[1]]
            assert dict(fake_site.renders) == {consumers[1]: 1}
            issued = [e for e in services.bus.history(batch_id) if e.type == EventType.CHALLENGE_ISSUED]
            assert [e.payload["identifier"] for e in issued] == [consumers[1]]

            frame = pd.read_excel(batch.results_path, sheet_name=RESULTS_SHEET, dtype=str).fillna("")
            assert list(frame["Consumer No."]) == consumers
            assert set(frame["Status"]) == {"Success"}
        finally:
            await services.stop()

    @pytest.mark.asyncio
    async def test_unanswered_captchas_become_error_rows(self, fake_site, make_services):
        fake_site.captcha = True
        services = make_services(CHALLENGE_DEADLINE_SECONDS=0.2, MAX_ATTEMPTS=1)

        try:
            batch_id = await services.dispatcher.submit(["14102000674", "14102000675", "14102000676"])
            batch = await services.dispatcher.wait_for_batch(batch_id, timeout=10)

            assert batch.status == BatchStatus.COMPLETED
            assert batch.succeeded == 0

            frame = pd.read_excel(batch.results_path, sheet_name=RESULTS_SHEET, dtype=str).fillna("")
            assert set(frame["Status"]) == {"Error"}
            assert all("captcha" in message.lower() for message in frame["Error Message"])
            assert services.relay.stats['timed_out'] == 3
            assert services.pool.free_count == services.pool.capacity
        finally:
            await services.stop()

    @pytest.mark.asyncio
    async def test_concurrent_batches_share_the_pool(self, fake_site, make_services):
        fake_site.delay = 0.01
        services = make_services(POOL_SIZE=2)
        try:
            first = await services.dispatcher.submit([f"1410200{n:04d}" for n in range(4)])
            second = await services.dispatcher.submit([f"2410200{n:04d}" for n in range(4)])

            batches = await asyncio.gather(
                services.dispatcher.wait_for_batch(first, timeout=10),
                services.dispatcher.wait_for_batch(second, timeout=10),
            )

            assert all(b.status == BatchStatus.COMPLETED for b in batches)
            assert all(b.succeeded == 4 for b in batches)
            assert services.pool.get_stats()['capacity'] == 2
            assert [b.batch_id for b in services.registry.list()] == [first, second]
        finally:
            await services.stop()
