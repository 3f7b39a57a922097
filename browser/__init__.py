"""
Automation session variants for the QuickPay site.

    browser - Playwright Chromium page (BrowserSession)
    api     - aiohttp client against the JSON service (ApiSession)

Use create_session() to build one for a pool slot.
"""

import random
from typing import Any

from .base import AutomationSession
from .api_session import ApiSession
from .playwright_session import BrowserSession

ENGINES = ("browser", "api")


def create_session(engine: str, index: int, config: Any) -> AutomationSession:
    """
    Build an unstarted session for pool slot ``index``.

    Args:
        engine: "browser" or "api"
        index: Pool slot number (used in the session id)
        config: AppConfig-like object
    """
    user_agent = random.choice(config.USER_AGENTS) if config.USER_AGENTS else None

    if engine == "browser":
        return BrowserSession(
            session_id=f"browser_{index}",
            entry_url=config.entry_url,
            headless=config.HEADLESS,
            navigation_timeout_ms=config.NAVIGATION_TIMEOUT_MS,
            user_agent=user_agent,
        )
    if engine == "api":
        kwargs = {"user_agent": user_agent} if user_agent else {}
        return ApiSession(
            session_id=f"api_{index}",
            base_url=config.TARGET_BASE_URL,
            timeout_seconds=config.NAVIGATION_TIMEOUT_MS / 1000,
            **kwargs,
        )
    raise ValueError(f"Unknown session engine {engine!r}; expected one of {ENGINES}")


__all__ = [
    "AutomationSession",
    "ApiSession",
    "BrowserSession",
    "create_session",
    "ENGINES",
]
