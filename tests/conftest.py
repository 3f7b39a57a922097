"""
Pytest fixtures and configuration for the QuickPay Bill Fetcher test suite.
"""

import os
import asyncio
import base64
import tempfile
from collections import Counter
from pathlib import Path
from typing import Dict, Optional, Set

import pytest

# Add project root to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

# Directories must exist before api.config / api.logging_config are imported
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="bill_fetcher_tests_"))
os.environ.setdefault("LOG_DIR", str(_TEST_ROOT / "logs"))
os.environ.setdefault("RESULTS_DIR", str(_TEST_ROOT / "results"))
os.environ.setdefault("UPLOAD_DIR", str(_TEST_ROOT / "uploads"))
os.environ.setdefault("LOG_LEVEL", "WARNING")

from browser.base import AutomationSession  # noqa: E402
from core.errors import InvalidIdentifierOrChallenge, NavigationOrTransportFailure  # noqa: E402
from core.models import BillingRecord  # noqa: E402


# === Fake QuickPay Site ===

class FakeSite:
    """
    Scriptable stand-in for the QuickPay site shared by all fake sessions.

    Attributes tests tweak:
        captcha: whether every lookup shows a captcha
        captcha_for: identifiers that show a captcha when captcha is off
        expected_answer: captcha text the site accepts (None accepts anything)
        failures: identifier -> number of transport failures before success
        hang: identifiers whose results never appear
        incomplete: identifiers whose results lack the consumer name
        delay: seconds spent fetching results
        failing_starts: session indexes that fail to start
        reset_error: make every reset() raise
    """

    def __init__(self):
        self.captcha = False
        self.captcha_for: Set[str] = set()
        self.expected_answer: Optional[str] = None
        self.failures: Dict[str, int] = {}
        self.hang: Set[str] = set()
        self.incomplete: Set[str] = set()
        self.delay = 0.0
        self.failing_starts: Set[int] = set()
        self.reset_error = False

        self.attempts: Counter = Counter()
        self.renders: Counter = Counter()
        self.answers = []
        self.resets = 0
        self.closed = 0
        self.active: Counter = Counter()
        self.max_active_per_identifier = 0

    def record_for(self, identifier: str) -> BillingRecord:
        return BillingRecord(
            consumer_name="" if identifier in self.incomplete else f"Consumer {identifier[-4:]}",
            consumer_no=identifier,
            last_paid_detail="500.00 on 01-01-2026",
            outstanding_amount="1,250.50",
            bill_date="15-01-2026",
            amount_to_pay="1,250.50",
            location="Vadodara",
        )


class FakeSession(AutomationSession):
    """AutomationSession driven by a FakeSite."""

    engine = "fake"

    def __init__(self, session_id: str, site: FakeSite, index: int = 0):
        super().__init__(session_id)
        self.site = site
        self.index = index
        self.identifier: Optional[str] = None
        self.submitted = False

    async def start(self):
        if self.index in self.site.failing_starts:
            raise NavigationOrTransportFailure(f"{self.session_id} could not start")

    async def close(self):
        self.site.closed += 1

    async def reset(self):
        self.site.resets += 1
        self.identifier = None
        self.submitted = False
        if self.site.reset_error:
            raise RuntimeError("page crashed during reset")

    async def navigate(self):
        self.identifier = None
        self.submitted = False

    async def select_target(self, company: str):
        assert company == "MGVCL"

    async def enter_identifier(self, identifier: str):
        self.identifier = identifier
        self.site.attempts[identifier] += 1

    async def challenge_required(self) -> bool:
        return self.site.captcha or self.identifier in self.site.captcha_for

    async def render_challenge(self) -> str:
        self.site.renders[self.identifier] += 1
        text = f"{self.identifier}-{self.site.renders[self.identifier]}".encode()
        return "data:image/png;base64," + base64.b64encode(text).decode()

    async def refresh_challenge(self):
        return None

    async def submit_challenge(self, answer: str):
        self.site.answers.append((self.session_id, self.identifier, answer))
        if self.site.expected_answer is not None and answer != self.site.expected_answer:
            raise InvalidIdentifierOrChallenge("Invalid captcha")
        self.submitted = True

    async def submit(self):
        self.submitted = True

    async def fetch_results(self, max_polls: int = 5, poll_wait: float = 3.0) -> BillingRecord:
        identifier = self.identifier
        self.site.active[identifier] += 1
        self.site.max_active_per_identifier = max(
            self.site.max_active_per_identifier, self.site.active[identifier]
        )
        try:
            if identifier in self.site.hang:
                await asyncio.Event().wait()
            if self.site.delay:
                await asyncio.sleep(self.site.delay)
            if self.site.failures.get(identifier, 0) > 0:
                self.site.failures[identifier] -= 1
                raise NavigationOrTransportFailure("Bill details not visible after 1 polls")
            return self.site.record_for(identifier)
        finally:
            self.site.active[identifier] -= 1


# === Fixtures ===

@pytest.fixture
def fake_site():
    return FakeSite()


@pytest.fixture
def session_factory(fake_site):
    def factory(index: int):
        return FakeSession(f"fake_{index}", fake_site, index)
    return factory


@pytest.fixture
def fast_config(tmp_path):
    """Configuration with every wait shortened for tests."""
    from api.config import AppConfig

    return AppConfig(
        POOL_SIZE=2,
        ACQUIRE_TIMEOUT_SECONDS=5,
        CHALLENGE_DEADLINE_SECONDS=5,
        CHALLENGE_MAX_ROUNDS=3,
        CHALLENGE_SWEEP_SECONDS=0.5,
        MAX_ATTEMPTS=3,
        RETRY_BACKOFF_SECONDS=0.05,
        RESULT_MAX_POLLS=1,
        RESULT_POLL_WAIT_SECONDS=0,
        CHECK_INTERVAL_SECONDS=0.05,
        HARD_CEILING_SECONDS=30,
        STALL_WINDOW_SECONDS=30,
        DIMINISHING_RATIO=1.0,
        DIMINISHING_MIN_ELAPSED_SECONDS=30,
        RESULTS_DIR=str(tmp_path / "results"),
        UPLOAD_DIR=str(tmp_path / "uploads"),
    )


@pytest.fixture
def make_services(fast_config, session_factory):
    """Build a service container around fake sessions; pass overrides as config fields."""
    import dataclasses
    from api.services import build_services

    def make(**overrides):
        cfg = dataclasses.replace(fast_config, **overrides)
        return build_services(cfg, session_factory)
    return make


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll predicate until true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


async def answer_captchas(services, answer: str = "abc12"):
    """Background helper answering every captcha the relay issues."""
    from core.errors import StaleChallenge
    from monitoring.progress import EventType

    with services.bus.subscribe() as subscription:
        while True:
            event = await subscription.get()
            if event is None or event.type != EventType.CHALLENGE_ISSUED:
                continue
            payload = event.payload
            try:
                services.relay.submit_answer(
                    payload["batch_id"], payload["session_id"], payload["identifier"], answer
                )
            except StaleChallenge:
                pass


# === Markers ===

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "e2e: End-to-end batch tests")
    config.addinivalue_line("markers", "resilience: Retry and forced-completion tests")
    config.addinivalue_line("markers", "api: HTTP and WebSocket interface tests")
