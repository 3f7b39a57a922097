"""
Core components for concurrent QuickPay bill fetching.

Modules:
- session_pool: Fixed-size pool of automation sessions with FIFO hand-off
- captcha_relay: Human-in-the-loop captcha mediation
- dispatcher: Batch fan-out, retries and finalization
- completion_tracker: Consolidated batch completion policy
- workflow: Per-consumer lookup steps
- spreadsheet: Workbook input/output
- batch_registry: Batches owned by the process
"""

from .errors import (
    BillFetchError,
    NoSessionAvailable,
    ChallengeTimeout,
    StaleChallenge,
    InvalidIdentifierOrChallenge,
    ExtractionIncomplete,
    NavigationOrTransportFailure,
    InvalidIdentifier,
    ExportFailure,
)
from .models import (
    Batch,
    BatchStatus,
    BillingRecord,
    ChallengeRequest,
    ChallengeState,
    Outcome,
    SessionHandle,
    SessionState,
)
from .identifiers import normalize_identifier, normalize_identifiers
from .session_pool import SessionPool
from .captcha_relay import CaptchaRelay, ChallengeQueue
from .completion_tracker import CompletionPolicy, CompletionTracker, CompletionReason
from .workflow import ItemWorkflow
from .batch_registry import BatchRegistry
from .spreadsheet import ExcelProcessor
from .dispatcher import WorkDispatcher

__all__ = [
    "BillFetchError",
    "NoSessionAvailable",
    "ChallengeTimeout",
    "StaleChallenge",
    "InvalidIdentifierOrChallenge",
    "ExtractionIncomplete",
    "NavigationOrTransportFailure",
    "InvalidIdentifier",
    "ExportFailure",
    "Batch",
    "BatchStatus",
    "BillingRecord",
    "ChallengeRequest",
    "ChallengeState",
    "Outcome",
    "SessionHandle",
    "SessionState",
    "normalize_identifier",
    "normalize_identifiers",
    "SessionPool",
    "CaptchaRelay",
    "ChallengeQueue",
    "CompletionPolicy",
    "CompletionTracker",
    "CompletionReason",
    "ItemWorkflow",
    "BatchRegistry",
    "ExcelProcessor",
    "WorkDispatcher",
]
