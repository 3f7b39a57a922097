"""
Process-wide service container.

Everything a request handler, the WebSocket stream or the CLI needs is built
here once and owned by the caller (app.state.services for the API), so no
module holds batch, session or captcha state in globals.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from api.config import AppConfig
from browser import create_session
from core.batch_registry import BatchRegistry
from core.captcha_relay import CaptchaRelay
from core.dispatcher import WorkDispatcher
from core.session_pool import SessionPool
from core.spreadsheet import ExcelProcessor
from monitoring.progress import ProgressBus

logger = logging.getLogger("bill_fetcher")

CLEANUP_INTERVAL_SECONDS = 15 * 60


@dataclass
class Services:
    config: AppConfig
    bus: ProgressBus
    pool: SessionPool
    relay: CaptchaRelay
    registry: BatchRegistry
    excel: ExcelProcessor
    dispatcher: WorkDispatcher
    background: List[asyncio.Task] = field(default_factory=list)

    async def start(self):
        """Start the captcha sweeper and the results cleanup loop."""
        self.relay.start_sweeper(self.config.CHALLENGE_SWEEP_SECONDS)
        self.background.append(asyncio.create_task(self._cleanup_loop(), name="results-cleanup"))

    async def stop(self):
        """Stop background loops, cancel batches and tear down every session."""
        for task in self.background:
            task.cancel()
        if self.background:
            await asyncio.gather(*self.background, return_exceptions=True)
        self.background.clear()
        await self.relay.stop_sweeper()
        await self.dispatcher.shutdown()

    def cleanup(self) -> int:
        """Expire old batches and result files. Returns the number of batches dropped."""
        retention_hours = self.config.RESULTS_RETENTION_HOURS
        removed = self.registry.cleanup(retention_hours * 3600)
        for batch in removed:
            self.dispatcher.forget(batch.batch_id)
        self.excel.cleanup_old_files(retention_hours)
        return len(removed)

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"Results cleanup failed: {e}")


def build_services(
    config: AppConfig,
    session_factory: Optional[Callable[[int], Any]] = None,
) -> Services:
    """
    Wire the bus, pool, relay, registry, spreadsheet processor and dispatcher.

    Args:
        config: Application configuration
        session_factory: index -> unstarted session; defaults to the configured engine
    """
    if session_factory is None:
        def session_factory(index: int):
            return create_session(config.SESSION_ENGINE, index, config)

    bus = ProgressBus()
    pool = SessionPool(
        session_factory,
        size=config.POOL_SIZE,
        acquire_timeout=config.ACQUIRE_TIMEOUT_SECONDS,
    )
    relay = CaptchaRelay(
        bus,
        pool=pool,
        deadline_seconds=config.CHALLENGE_DEADLINE_SECONDS,
        max_rounds=config.CHALLENGE_MAX_ROUNDS,
    )
    registry = BatchRegistry()
    excel = ExcelProcessor(config.RESULTS_DIR)
    dispatcher = WorkDispatcher(pool, relay, bus, registry, excel, config)

    return Services(
        config=config,
        bus=bus,
        pool=pool,
        relay=relay,
        registry=registry,
        excel=excel,
        dispatcher=dispatcher,
    )
