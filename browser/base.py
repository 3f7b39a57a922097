"""
Automation session interface.

A session is one browser page or one HTTP client bound to the QuickPay site.
The pool, relay and dispatcher only talk to this interface, so browser and
API variants are interchangeable.
"""

from abc import ABC, abstractmethod
from typing import Optional

from core.models import BillingRecord


class AutomationSession(ABC):
    """One automation-capable unit. Steps are always called sequentially."""

    engine: str = "abstract"

    def __init__(self, session_id: str):
        self.session_id = session_id

    @abstractmethod
    async def start(self):
        """Open the underlying browser page or HTTP client."""

    @abstractmethod
    async def close(self):
        """Tear the session down. Must not raise."""

    @abstractmethod
    async def reset(self):
        """Return to the entry page so the next identifier starts clean."""

    @abstractmethod
    async def navigate(self):
        """Open the QuickPay entry point."""

    @abstractmethod
    async def select_target(self, company: str):
        """Select the distribution company."""

    @abstractmethod
    async def enter_identifier(self, identifier: str):
        """Fill the consumer number."""

    @abstractmethod
    async def challenge_required(self) -> bool:
        """Presence check for a captcha on the current page."""

    @abstractmethod
    async def render_challenge(self) -> str:
        """Return the current captcha as a PNG data URI."""

    @abstractmethod
    async def refresh_challenge(self):
        """Ask the site for a new captcha image."""

    @abstractmethod
    async def submit_challenge(self, answer: str):
        """
        Submit the captcha answer.

        Raises:
            InvalidIdentifierOrChallenge: wrong captcha or unknown consumer
        """

    @abstractmethod
    async def submit(self):
        """Submit the form when no captcha was shown."""

    @abstractmethod
    async def fetch_results(self, max_polls: int = 5, poll_wait: float = 3.0) -> BillingRecord:
        """Poll for the results view and extract billing fields."""

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def describe(self) -> Optional[str]:
        return f"{self.engine}:{self.session_id}"
