"""
Error taxonomy for the bill fetcher.

Per-attempt failures are raised inside the per-item workflow and caught by the
dispatcher's retry loop. Only retry exhaustion turns them into a terminal
error Outcome.
"""

from typing import Optional


class BillFetchError(Exception):
    """Base class for all bill fetcher errors."""

    retryable: bool = True

    def __init__(self, message: str = "", *, identifier: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.identifier = identifier


class NoSessionAvailable(BillFetchError):
    """Pool exhausted beyond the acquire wait bound."""


class ChallengeTimeout(BillFetchError):
    """No human answer arrived before the challenge deadline."""


class StaleChallenge(BillFetchError):
    """Answer (or reload) arrived for a pairing that is no longer active."""

    retryable = False


class InvalidIdentifierOrChallenge(BillFetchError):
    """The external site rejected the consumer number or the captcha text."""


class ExtractionIncomplete(BillFetchError):
    """Results view was reached but mandatory fields are empty."""


class NavigationOrTransportFailure(BillFetchError):
    """Network, navigation or site-level failure."""


class InvalidIdentifier(BillFetchError):
    """Identifier rejected at submission time."""

    retryable = False


class ExportFailure(BillFetchError):
    """The result aggregator could not materialize the batch."""

    retryable = False
