"""
Tests for the consolidated batch completion policy.
"""

import asyncio

import pytest

from core.completion_tracker import CompletionPolicy, CompletionReason, CompletionTracker
from core.models import Batch, BillingRecord, Outcome

POLICY = CompletionPolicy(
    check_interval=5,
    hard_ceiling=900,
    stall_window=60,
    diminishing_ratio=0.8,
    diminishing_min_elapsed=120,
)


def make_batch(count, created_at=0.0):
    identifiers = [f"{n:011d}" for n in range(1, count + 1)]
    return Batch(batch_id="b1", identifiers=identifiers, created_at=created_at)


def complete(batch, identifier, at):
    batch.record(Outcome.success(identifier, BillingRecord(consumer_name="X", consumer_no=identifier)))
    batch.last_completion_at = at


async def noop(batch, decision):
    return None


class TestEvaluate:

    def test_waits_while_items_outstanding(self):
        batch = make_batch(3)
        tracker = CompletionTracker(batch, POLICY, noop)
        assert tracker.evaluate(now=10) is None

    def test_all_accounted_is_normal(self):
        batch = make_batch(2)
        complete(batch, batch.identifiers[0], 5)
        complete(batch, batch.identifiers[1], 6)
        decision = CompletionTracker(batch, POLICY, noop).evaluate(now=7)
        assert decision.reason == CompletionReason.ALL_ACCOUNTED
        assert decision.forced is False

    def test_hard_ceiling_forces_completion(self):
        batch = make_batch(2)
        decision = CompletionTracker(batch, POLICY, noop).evaluate(now=901)
        assert decision.reason == CompletionReason.TIMEOUT
        assert decision.forced is True

    def test_stall_requires_at_least_one_completion(self):
        batch = make_batch(4)
        tracker = CompletionTracker(batch, POLICY, noop)
        # Nothing done yet: a long idle period is not a stall
        assert tracker.evaluate(now=100) is None

        complete(batch, batch.identifiers[0], 100)
        assert tracker.evaluate(now=150) is None
        decision = tracker.evaluate(now=161)
        assert decision.reason == CompletionReason.STALLED

    def test_diminishing_returns(self):
        batch = make_batch(5)
        tracker = CompletionTracker(batch, POLICY, noop)
        for n, identifier in enumerate(batch.identifiers[:4]):
            complete(batch, identifier, 100 + n)

        # 80% done but not enough time elapsed
        assert tracker.evaluate(now=110) is None
        decision = tracker.evaluate(now=121)
        assert decision.reason == CompletionReason.DIMINISHING_RETURNS
        assert decision.forced is True

    def test_ceiling_has_priority_over_stall(self):
        batch = make_batch(3)
        complete(batch, batch.identifiers[0], 10)
        decision = CompletionTracker(batch, POLICY, noop).evaluate(now=1000)
        assert decision.reason == CompletionReason.TIMEOUT


class TestRun:

    @pytest.mark.asyncio
    async def test_nudge_triggers_finalize_once(self):
        batch = make_batch(1, created_at=0)
        calls = []

        async def on_complete(b, decision):
            calls.append(decision.reason)

        tracker = CompletionTracker(batch, POLICY, on_complete)
        runner = asyncio.create_task(tracker.run())
        await asyncio.sleep(0)

        complete(batch, batch.identifiers[0], 1)
        tracker.nudge()
        await asyncio.wait_for(runner, timeout=2)

        assert calls == [CompletionReason.ALL_ACCOUNTED]
        assert tracker.finalized
        assert await tracker.finalize(tracker.decision) is False
        assert calls == [CompletionReason.ALL_ACCOUNTED]

    @pytest.mark.asyncio
    async def test_interval_wakeup_without_nudge(self):
        batch = make_batch(2, created_at=0)
        policy = CompletionPolicy(check_interval=0.02, hard_ceiling=0.0)
        calls = []

        async def on_complete(b, decision):
            calls.append(decision.reason)

        tracker = CompletionTracker(batch, policy, on_complete)
        await asyncio.wait_for(tracker.run(), timeout=2)
        assert calls == [CompletionReason.TIMEOUT]
