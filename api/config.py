"""
Unified Configuration Module for the QuickPay Bill Fetcher

All configuration settings are centralized here.
Import from this module: from api.config import config
"""

import os
from typing import List
from dataclasses import dataclass, field

from core.completion_tracker import CompletionPolicy


@dataclass
class AppConfig:
    """Unified application configuration."""

    # === Server Settings ===
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8080"))
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"

    # === CORS Settings ===
    CORS_ORIGINS: List[str] = field(default_factory=lambda: [
        origin.strip() for origin in
        os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:8080").split(",")
        if origin.strip()
    ])
    CORS_ALLOW_CREDENTIALS: bool = True

    # === Automation Sessions ===
    # "browser" drives Chromium through Playwright, "api" talks to the JSON endpoint
    SESSION_ENGINE: str = os.getenv("SESSION_ENGINE", "browser")
    POOL_SIZE: int = int(os.getenv("POOL_SIZE", "5"))
    HEADLESS: bool = os.getenv("HEADLESS", "true").lower() == "true"
    TARGET_BASE_URL: str = os.getenv("TARGET_BASE_URL", "https://mpay.guvnl.in")
    TARGET_COMPANY: str = os.getenv("TARGET_COMPANY", "MGVCL")
    NAVIGATION_TIMEOUT_MS: int = int(os.getenv("NAVIGATION_TIMEOUT_MS", "30000"))
    ACQUIRE_TIMEOUT_SECONDS: float = float(os.getenv("ACQUIRE_TIMEOUT_SECONDS", "300"))

    # === Captcha Relay ===
    CHALLENGE_DEADLINE_SECONDS: float = float(os.getenv("CHALLENGE_DEADLINE_SECONDS", "300"))
    CHALLENGE_MAX_ROUNDS: int = int(os.getenv("CHALLENGE_MAX_ROUNDS", "5"))
    CHALLENGE_SWEEP_SECONDS: float = float(os.getenv("CHALLENGE_SWEEP_SECONDS", "30"))

    # === Retries and Result Polling ===
    MAX_ATTEMPTS: int = int(os.getenv("MAX_ATTEMPTS", "3"))
    RETRY_BACKOFF_SECONDS: float = float(os.getenv("RETRY_BACKOFF_SECONDS", "5"))
    RESULT_MAX_POLLS: int = int(os.getenv("RESULT_MAX_POLLS", "5"))
    RESULT_POLL_WAIT_SECONDS: float = float(os.getenv("RESULT_POLL_WAIT_SECONDS", "3"))

    # === Batch Completion ===
    CHECK_INTERVAL_SECONDS: float = float(os.getenv("CHECK_INTERVAL_SECONDS", "5"))
    HARD_CEILING_SECONDS: float = float(os.getenv("HARD_CEILING_SECONDS", "900"))
    STALL_WINDOW_SECONDS: float = float(os.getenv("STALL_WINDOW_SECONDS", "60"))
    DIMINISHING_RATIO: float = float(os.getenv("DIMINISHING_RATIO", "0.8"))
    DIMINISHING_MIN_ELAPSED_SECONDS: float = float(os.getenv("DIMINISHING_MIN_ELAPSED_SECONDS", "120"))

    # === File Upload ===
    MAX_UPLOAD_SIZE_MB: int = int(os.getenv("MAX_UPLOAD_SIZE_MB", "10"))
    ALLOWED_EXTENSIONS: List[str] = field(default_factory=lambda: [".xlsx", ".xls"])

    # === Paths ===
    RESULTS_DIR: str = os.getenv("RESULTS_DIR", "./results")
    UPLOAD_DIR: str = os.getenv("UPLOAD_DIR", "./uploads")
    LOG_DIR: str = os.getenv("LOG_DIR", "./logs")
    RESULTS_RETENTION_HOURS: float = float(os.getenv("RESULTS_RETENTION_HOURS", "24"))

    USER_AGENTS: List[str] = field(default_factory=lambda: list(USER_AGENTS))

    @property
    def entry_url(self) -> str:
        return f"{self.TARGET_BASE_URL.rstrip('/')}/paytm/QuickPay.php"

    @property
    def completion_policy(self) -> CompletionPolicy:
        """Completion rules for the batch tracker."""
        return CompletionPolicy(
            check_interval=self.CHECK_INTERVAL_SECONDS,
            hard_ceiling=self.HARD_CEILING_SECONDS,
            stall_window=self.STALL_WINDOW_SECONDS,
            diminishing_ratio=self.DIMINISHING_RATIO,
            diminishing_min_elapsed=self.DIMINISHING_MIN_ELAPSED_SECONDS,
        )

    def validate(self) -> List[str]:
        """Validate configuration and return list of problems."""
        problems = []

        if self.SESSION_ENGINE not in ("browser", "api"):
            problems.append(f"SESSION_ENGINE must be 'browser' or 'api', got {self.SESSION_ENGINE!r}")
        if self.POOL_SIZE < 1:
            problems.append("POOL_SIZE must be at least 1")
        if self.MAX_ATTEMPTS < 1:
            problems.append("MAX_ATTEMPTS must be at least 1")
        if self.CHALLENGE_MAX_ROUNDS < 1:
            problems.append("CHALLENGE_MAX_ROUNDS must be at least 1")
        if not 0 < self.DIMINISHING_RATIO <= 1:
            problems.append("DIMINISHING_RATIO must be in (0, 1]")
        if self.CHECK_INTERVAL_SECONDS <= 0:
            problems.append("CHECK_INTERVAL_SECONDS must be positive")

        return problems


# User agent list - updated for 2025/2026
USER_AGENTS = [
    # Chrome on Windows (most common)
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",

    # Chrome on macOS
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",

    # Edge on Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36 Edg/131.0.0.0",

    # Firefox on Windows
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:122.0) Gecko/20100101 Firefox/122.0",

    # Chrome on Linux
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
]


# Global config instance
config = AppConfig()


def get_config() -> AppConfig:
    """Get the application configuration."""
    return config
