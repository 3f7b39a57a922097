#!/usr/bin/env python3
"""
Completion Tracker - decides when a batch is finished.

One tracker runs per batch. It wakes on a fixed interval (or earlier when a
worker nudges it) and applies a single consolidated policy, in priority
order:

    (a) every item has an outcome            -> normal
    (b) elapsed time beyond the hard ceiling -> forced, timeout
    (c) no completion within the stall window -> forced, stalled
    (d) most items done after a minimum time -> forced, diminishing returns

Finalization runs exactly once per batch.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from .models import Batch

logger = logging.getLogger(__name__)


class CompletionReason(str, Enum):
    ALL_ACCOUNTED = "all_accounted"
    TIMEOUT = "timeout"
    STALLED = "stalled"
    DIMINISHING_RETURNS = "diminishing_returns"


@dataclass
class CompletionPolicy:
    """Thresholds for the completion rules (seconds unless noted)."""
    check_interval: float = 5.0
    hard_ceiling: float = 900.0
    stall_window: float = 60.0
    diminishing_ratio: float = 0.8
    diminishing_min_elapsed: float = 120.0


@dataclass
class CompletionDecision:
    reason: CompletionReason
    forced: bool
    detail: str = ""


class CompletionTracker:
    """
    Watch one batch and trigger finalization once.

    Features:
    - Interval wake-up with early wake on nudge()
    - Priority-ordered completion rules
    - Idempotent finalize guard
    """

    def __init__(
        self,
        batch: Batch,
        policy: CompletionPolicy,
        on_complete: Callable[[Batch, CompletionDecision], Awaitable[None]],
        clock: Callable[[], float] = time.time,
    ):
        self.batch = batch
        self.policy = policy
        self.on_complete = on_complete
        self.clock = clock
        self.decision: Optional[CompletionDecision] = None
        self._wake = asyncio.Event()
        self._finalized = False

    def evaluate(self, now: Optional[float] = None) -> Optional[CompletionDecision]:
        """Apply the completion rules; None means keep waiting."""
        now = self.clock() if now is None else now
        batch = self.batch
        policy = self.policy
        elapsed = now - batch.created_at

        if batch.completed >= batch.total:
            return CompletionDecision(CompletionReason.ALL_ACCOUNTED, forced=False)

        if elapsed > policy.hard_ceiling:
            return CompletionDecision(
                CompletionReason.TIMEOUT, forced=True,
                detail=f"Batch exceeded {policy.hard_ceiling:.0f}s",
            )

        if batch.completed > 0 and batch.last_completion_at is not None:
            idle = now - batch.last_completion_at
            if idle > policy.stall_window:
                return CompletionDecision(
                    CompletionReason.STALLED, forced=True,
                    detail=f"No progress for {idle:.0f}s",
                )

        if batch.total and batch.completed / batch.total >= policy.diminishing_ratio \
                and elapsed > policy.diminishing_min_elapsed:
            return CompletionDecision(
                CompletionReason.DIMINISHING_RETURNS, forced=True,
                detail=f"{batch.completed}/{batch.total} done after {elapsed:.0f}s",
            )

        return None

    def nudge(self):
        """Re-evaluate now instead of at the next interval."""
        self._wake.set()

    async def run(self):
        """Loop until a decision is made, then finalize."""
        while not self._finalized:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.policy.check_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

            decision = self.evaluate()
            if decision is not None:
                await self.finalize(decision)

    async def finalize(self, decision: CompletionDecision) -> bool:
        """Run the completion callback once. Later calls are no-ops."""
        if self._finalized:
            return False
        self._finalized = True
        self.decision = decision

        level = logging.WARNING if decision.forced else logging.INFO
        logger.log(
            level,
            f"[Tracker] Batch {self.batch.batch_id} complete: {decision.reason.value} "
            f"({self.batch.completed}/{self.batch.total}) {decision.detail}".rstrip(),
        )
        await self.on_complete(self.batch, decision)
        return True

    @property
    def finalized(self) -> bool:
        return self._finalized
