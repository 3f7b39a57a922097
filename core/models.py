#!/usr/bin/env python3
"""
Shared data models for the bill fetcher.

Sessions, batches, challenges and outcomes are defined here so the pool,
relay, dispatcher and tracker agree on one shape.
"""

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# ============== Enums ==============

class SessionState(str, Enum):
    """Lifecycle state of a pooled session."""
    FREE = "free"
    BUSY = "busy"
    AWAITING_CHALLENGE = "awaiting_challenge"


class BatchStatus(str, Enum):
    """Batch status values."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    DEGRADED = "degraded"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self != BatchStatus.PROCESSING


class ChallengeState(str, Enum):
    """Per-session captcha state."""
    IDLE = "idle"
    ISSUED = "issued"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    REISSUED = "reissued"
    CANCELLED = "cancelled"


# ============== Sessions ==============

@dataclass
class SessionHandle:
    """A pooled automation session and its lifecycle bookkeeping."""
    session_id: str
    session: Any  # AutomationSession
    state: SessionState = SessionState.FREE
    current_identifier: Optional[str] = None
    current_batch_id: Optional[str] = None
    last_challenge_at: Optional[float] = None
    items_processed: int = 0

    def bind(self, batch_id: str, identifier: str):
        self.current_batch_id = batch_id
        self.current_identifier = identifier

    def clear(self):
        self.current_batch_id = None
        self.current_identifier = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "current_identifier": self.current_identifier,
            "current_batch_id": self.current_batch_id,
            "last_challenge_at": self.last_challenge_at,
            "items_processed": self.items_processed,
        }


# ============== Results ==============

@dataclass
class BillingRecord:
    """Structured billing fields extracted from the results view."""
    consumer_name: str = ""
    consumer_no: str = ""
    last_paid_detail: str = ""
    outstanding_amount: str = ""
    bill_date: str = ""
    amount_to_pay: str = ""
    location: str = ""

    def is_complete(self) -> bool:
        """Name and consumer number are mandatory."""
        return bool(self.consumer_name.strip()) and bool(self.consumer_no.strip())

    def to_dict(self) -> Dict[str, str]:
        return {
            "consumer_name": self.consumer_name,
            "consumer_no": self.consumer_no,
            "last_paid_detail": self.last_paid_detail,
            "outstanding_amount": self.outstanding_amount,
            "bill_date": self.bill_date,
            "amount_to_pay": self.amount_to_pay,
            "location": self.location,
        }


@dataclass
class Outcome:
    """Terminal result for one work item: a record or an error reason."""
    identifier: str
    record: Optional[BillingRecord] = None
    error: Optional[str] = None
    attempts: int = 0
    session_id: Optional[str] = None
    finished_at: float = field(default_factory=time.time)

    @classmethod
    def success(cls, identifier: str, record: BillingRecord, attempts: int = 1,
                session_id: Optional[str] = None) -> "Outcome":
        return cls(identifier=identifier, record=record, attempts=attempts, session_id=session_id)

    @classmethod
    def failure(cls, identifier: str, error: str, attempts: int = 0,
                session_id: Optional[str] = None) -> "Outcome":
        return cls(identifier=identifier, error=error or "Unknown error", attempts=attempts,
                   session_id=session_id)

    @property
    def ok(self) -> bool:
        return self.error is None and self.record is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "status": "Success" if self.ok else "Error",
            "record": self.record.to_dict() if self.record else None,
            "error": self.error,
            "attempts": self.attempts,
            "session_id": self.session_id,
        }


# ============== Batches ==============

@dataclass
class Batch:
    """
    A submitted collection of work items processed together.

    Items are claimed in input order through a single shared cursor;
    outcomes are stored in completion order, one per identifier.
    """
    batch_id: str
    identifiers: List[str]
    rejected: List[Tuple[str, str]] = field(default_factory=list)
    outcomes: Dict[str, Outcome] = field(default_factory=dict)
    status: BatchStatus = BatchStatus.PROCESSING
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    last_completion_at: Optional[float] = None
    completion_reason: Optional[str] = None
    results_path: Optional[str] = None
    retrieved_at: Optional[float] = None
    error: Optional[str] = None
    _cursor: Any = field(default_factory=itertools.count, repr=False)
    _claimed: int = field(default=0, repr=False)
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def total(self) -> int:
        return len(self.identifiers)

    @property
    def claimed(self) -> int:
        return self._claimed

    @property
    def completed(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes.values() if o.ok)

    @property
    def failed(self) -> int:
        return self.completed - self.succeeded

    def claim_next(self) -> int:
        """Hand out the next unclaimed index. Never returns the same index twice."""
        index = next(self._cursor)
        if index < self.total:
            self._claimed += 1
        return index

    def record(self, outcome: Outcome) -> bool:
        """
        Store the outcome for an item.

        Returns False when the item already has an outcome or the batch is
        already terminal, so a late worker never produces a duplicate.
        """
        if self.status.is_terminal or outcome.identifier in self.outcomes:
            return False
        if outcome.identifier not in self.identifiers:
            return False
        self.outcomes[outcome.identifier] = outcome
        self.last_completion_at = outcome.finished_at
        return True

    def missing(self) -> List[str]:
        return [i for i in self.identifiers if i not in self.outcomes]

    def ordered_outcomes(self) -> List[Outcome]:
        """Outcomes in input order (for export)."""
        return [self.outcomes[i] for i in self.identifiers if i in self.outcomes]

    def finish(self, status: BatchStatus, reason: str):
        self.status = status
        self.completion_reason = reason
        self.finished_at = time.time()
        self._done.set()

    async def wait_finished(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._done.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def progress(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "total": self.total,
            "claimed": self.claimed,
            "completed": self.completed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "rejected": [{"value": raw, "reason": reason} for raw, reason in self.rejected],
            "completion_reason": self.completion_reason,
            "results_ready": bool(self.results_path),
        }


# ============== Challenges ==============

@dataclass
class ChallengeRequest:
    """One captcha binding a session to a work item until resolved or expired."""
    challenge_id: str
    batch_id: str
    session_id: str
    identifier: str
    image: str
    created_at: float
    deadline: float
    state: ChallengeState = ChallengeState.ISSUED
    rounds: int = 1
    answer: Optional[asyncio.Future] = field(default=None, repr=False)
    reload_requested: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def remaining(self, now: Optional[float] = None) -> float:
        return self.deadline - (now if now is not None else time.time())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "challenge_id": self.challenge_id,
            "batch_id": self.batch_id,
            "session_id": self.session_id,
            "identifier": self.identifier,
            "image": self.image,
            "created_at": self.created_at,
            "deadline": self.deadline,
            "state": self.state.value,
            "rounds": self.rounds,
        }
