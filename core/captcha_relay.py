#!/usr/bin/env python3
"""
Captcha Relay - human-in-the-loop captcha mediation.

Per session: Idle -> Issued -> {Resolved | TimedOut | Reissued}.

A workflow that meets a captcha parks its session here. The rendered image is
published to viewers, which present one challenge at a time in issue order.
An answer is only accepted when it names the exact (session, consumer) pair
the relay is currently waiting on, so a late answer can never leak into a
session that has moved on to another consumer.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from monitoring.progress import EventType, ProgressBus

from .errors import ChallengeTimeout, StaleChallenge
from .models import ChallengeRequest, ChallengeState, SessionHandle, SessionState

logger = logging.getLogger(__name__)


def _fail_future(future: Optional[asyncio.Future], error: Exception):
    if future is None or future.done():
        return
    future.set_exception(error)
    # Nobody may be awaiting any more; mark the exception as retrieved
    future.exception()


class ChallengeQueue:
    """
    Ordered view of pending challenges for the human viewer.

    Exactly one entry is presented at a time (the front). A re-rendered
    challenge keeps its place; an abandoned front entry can be skipped to the
    back; resolved, timed-out and cancelled entries leave the queue.
    """

    def __init__(self):
        self._entries: List[ChallengeRequest] = []

    def push(self, challenge: ChallengeRequest):
        for i, entry in enumerate(self._entries):
            if entry.session_id == challenge.session_id:
                self._entries[i] = challenge
                return
        self._entries.append(challenge)

    def remove(self, session_id: str) -> bool:
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.session_id != session_id]
        return len(self._entries) != before

    def current(self) -> Optional[ChallengeRequest]:
        return self._entries[0] if self._entries else None

    def skip(self, session_id: Optional[str] = None) -> Optional[ChallengeRequest]:
        """Move the front entry (or the named one) to the back; return the new front."""
        if not self._entries:
            return None
        index = 0
        if session_id is not None:
            matches = [i for i, e in enumerate(self._entries) if e.session_id == session_id]
            if not matches:
                return self.current()
            index = matches[0]
        entry = self._entries.pop(index)
        self._entries.append(entry)
        return self.current()

    def pending(self) -> List[ChallengeRequest]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class CaptchaRelay:
    """
    Park sessions on captchas and forward human answers into their workflow.

    Features:
    - At most one active challenge per session
    - Pairing validation (StaleChallenge on mismatch or repeat)
    - Deadline with reset on re-render
    - Viewer queue with in-place updates and skipping
    - Periodic sweep of challenges whose waiter vanished
    """

    def __init__(
        self,
        bus: ProgressBus,
        pool: Any = None,
        deadline_seconds: float = 300.0,
        max_rounds: int = 5,
        clock: Callable[[], float] = time.time,
    ):
        self.bus = bus
        self.pool = pool
        self.deadline_seconds = deadline_seconds
        self.max_rounds = max_rounds
        self.clock = clock

        self.queue = ChallengeQueue()
        self._active: Dict[str, ChallengeRequest] = {}
        self._handles: Dict[str, SessionHandle] = {}
        self._sweeper: Optional[asyncio.Task] = None

        self.stats = {
            'issued': 0,
            'reissued': 0,
            'answered': 0,
            'resolved': 0,
            'rejected_answers': 0,
            'timed_out': 0,
            'cancelled': 0,
            'stale_rejections': 0,
        }

    # === Workflow side ===

    def issue(self, handle: SessionHandle, batch_id: str, identifier: str, image: str) -> ChallengeRequest:
        """Idle -> Issued: park the session and surface the image."""
        previous = self._active.get(handle.session_id)
        if previous is not None:
            self._retire(previous, ChallengeState.CANCELLED, "Superseded by a new challenge")
            _fail_future(previous.answer, StaleChallenge("Superseded", identifier=previous.identifier))

        now = self.clock()
        challenge = ChallengeRequest(
            challenge_id=uuid.uuid4().hex[:12],
            batch_id=batch_id,
            session_id=handle.session_id,
            identifier=identifier,
            image=image,
            created_at=now,
            deadline=now + self.deadline_seconds,
            answer=asyncio.get_running_loop().create_future(),
        )
        self._active[handle.session_id] = challenge
        self._handles[handle.session_id] = handle
        self._park(handle)
        self.queue.push(challenge)
        self.stats['issued'] += 1

        logger.info(f"[Relay] Captcha issued for {identifier} on {handle.session_id}")
        self._publish_issued(challenge)
        return challenge

    def reissue(self, challenge: ChallengeRequest, image: str) -> ChallengeRequest:
        """Issued/Resolved -> Reissued -> Issued for the same item, deadline reset."""
        challenge.state = ChallengeState.REISSUED
        challenge.image = image
        challenge.rounds += 1
        challenge.deadline = self.clock() + self.deadline_seconds
        challenge.answer = asyncio.get_running_loop().create_future()
        challenge.reload_requested.clear()
        challenge.state = ChallengeState.ISSUED

        self._active[challenge.session_id] = challenge
        handle = self._handle(challenge.session_id)
        if handle is not None:
            self._park(handle)
        self.queue.push(challenge)
        self.stats['reissued'] += 1

        logger.info(
            f"[Relay] Captcha re-rendered for {challenge.identifier} on {challenge.session_id} "
            f"(round {challenge.rounds})"
        )
        self._publish_issued(challenge)
        return challenge

    async def wait_for_answer(self, challenge: ChallengeRequest) -> Optional[str]:
        """
        Suspend until a human answers, a reload is requested or the deadline passes.

        Returns:
            The answer text, or None when a reload was requested

        Raises:
            ChallengeTimeout: no answer before the deadline
            StaleChallenge: the challenge was cancelled while waiting
        """
        answer = challenge.answer
        reload_task = asyncio.ensure_future(challenge.reload_requested.wait())
        try:
            while True:
                remaining = challenge.remaining(self.clock())
                if remaining <= 0 and not answer.done():
                    break
                done, _ = await asyncio.wait(
                    {answer, reload_task},
                    timeout=max(remaining, 0),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if answer in done:
                    return answer.result()
                if reload_task in done:
                    challenge.reload_requested.clear()
                    logger.info(f"[Relay] Reload requested for {challenge.identifier} on {challenge.session_id}")
                    return None
        finally:
            if not reload_task.done():
                reload_task.cancel()

        self._retire(challenge, ChallengeState.TIMED_OUT, "Captcha timed out")
        self.stats['timed_out'] += 1
        raise ChallengeTimeout(
            f"No captcha answer within {self.deadline_seconds:g}s",
            identifier=challenge.identifier,
        )

    def resolved(self, challenge: ChallengeRequest):
        """The site accepted the answer."""
        self.stats['resolved'] += 1
        self.bus.publish(
            EventType.CHALLENGE_RESOLVED,
            batch_id=challenge.batch_id,
            session_id=challenge.session_id,
            identifier=challenge.identifier,
            rounds=challenge.rounds,
        )

    def failed(self, challenge: ChallengeRequest, error: str):
        """The site rejected the answer (or the consumer number)."""
        self.stats['rejected_answers'] += 1
        self.bus.publish(
            EventType.CHALLENGE_ERROR,
            batch_id=challenge.batch_id,
            session_id=challenge.session_id,
            identifier=challenge.identifier,
            error=error,
            rounds=challenge.rounds,
        )

    # === Human side ===

    def submit_answer(self, batch_id: str, session_id: str, identifier: str, answer: str) -> ChallengeRequest:
        """
        Forward a human answer into the waiting workflow. Accepted once.

        Raises:
            ValueError: empty answer
            StaleChallenge: pairing does not match the active challenge
        """
        text = (answer or "").strip()
        if not text:
            raise ValueError("Captcha answer must not be empty")

        challenge = self._match(batch_id, session_id, identifier)
        if challenge.answer is None or challenge.answer.done():
            self.stats['stale_rejections'] += 1
            raise StaleChallenge(f"Captcha for {identifier} on {session_id} already answered",
                                 identifier=identifier)

        # Leave the active table before forwarding so a repeat is stale
        self._active.pop(session_id, None)
        self.queue.remove(session_id)
        challenge.state = ChallengeState.RESOLVED
        handle = self._handle(session_id)
        if handle is not None and self.pool is not None:
            self.pool.mark_busy(handle)
        elif handle is not None:
            handle.state = SessionState.BUSY
        challenge.answer.set_result(text)
        self.stats['answered'] += 1

        logger.info(f"[Relay] Answer received for {identifier} on {session_id}")
        return challenge

    def request_reload(self, batch_id: str, session_id: str, identifier: str) -> ChallengeRequest:
        """Ask the waiting workflow to render a fresh captcha for the same item."""
        challenge = self._match(batch_id, session_id, identifier)
        challenge.reload_requested.set()
        return challenge

    def skip(self, session_id: Optional[str] = None) -> Optional[ChallengeRequest]:
        return self.queue.skip(session_id)

    # === Housekeeping ===

    def cancel(self, session_id: str, reason: str = "Challenge cancelled") -> bool:
        """Drop the active challenge of a session, if any."""
        challenge = self._active.get(session_id)
        if challenge is None:
            self.queue.remove(session_id)
            return False
        self._retire(challenge, ChallengeState.CANCELLED, reason)
        _fail_future(challenge.answer, StaleChallenge(reason, identifier=challenge.identifier))
        self.stats['cancelled'] += 1
        return True

    def cancel_batch(self, batch_id: str, reason: str = "Batch finished") -> int:
        sessions = [sid for sid, c in self._active.items() if c.batch_id == batch_id]
        return sum(1 for sid in sessions if self.cancel(sid, reason))

    def sweep_expired(self) -> int:
        """Expire challenges past their deadline whose waiter is gone."""
        now = self.clock()
        expired = [c for c in self._active.values() if c.remaining(now) <= 0]
        for challenge in expired:
            self._retire(challenge, ChallengeState.TIMED_OUT, "Captcha is no longer valid (timed out)")
            _fail_future(
                challenge.answer,
                ChallengeTimeout("Captcha timed out", identifier=challenge.identifier),
            )
            self.stats['timed_out'] += 1
        if expired:
            logger.info(f"[Relay] Swept {len(expired)} expired captcha(s)")
        return len(expired)

    def start_sweeper(self, interval: float = 30.0):
        if self._sweeper and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval), name="captcha-sweeper")

    async def stop_sweeper(self):
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep_expired()
            except Exception as e:
                logger.error(f"[Relay] Sweep error: {e}")

    def get(self, session_id: str) -> Optional[ChallengeRequest]:
        return self._active.get(session_id)

    def active(self) -> List[ChallengeRequest]:
        return list(self._active.values())

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, 'active': len(self._active), 'queued': len(self.queue)}

    # === Internals ===

    def _match(self, batch_id: str, session_id: str, identifier: str) -> ChallengeRequest:
        challenge = self._active.get(session_id)
        if (
            challenge is None
            or challenge.state != ChallengeState.ISSUED
            or challenge.identifier != identifier
            or challenge.batch_id != batch_id
        ):
            self.stats['stale_rejections'] += 1
            current = challenge.identifier if challenge else None
            logger.warning(
                f"[Relay] Stale captcha pairing {session_id}/{identifier} (active: {current})"
            )
            raise StaleChallenge(
                f"No active captcha for consumer {identifier} on {session_id}",
                identifier=identifier,
            )
        return challenge

    def _retire(self, challenge: ChallengeRequest, state: ChallengeState, reason: str):
        challenge.state = state
        if self._active.get(challenge.session_id) is challenge:
            del self._active[challenge.session_id]
        self.queue.remove(challenge.session_id)
        self.bus.publish(
            EventType.CHALLENGE_OBSOLETE,
            batch_id=challenge.batch_id,
            session_id=challenge.session_id,
            identifier=challenge.identifier,
            reason=reason,
            state=state.value,
        )

    def _park(self, handle: SessionHandle):
        if self.pool is not None:
            self.pool.mark_awaiting_challenge(handle)
        else:
            handle.state = SessionState.AWAITING_CHALLENGE
            handle.last_challenge_at = self.clock()

    def _handle(self, session_id: str) -> Optional[SessionHandle]:
        if self.pool is None:
            return self._handles.get(session_id)
        return self.pool.get(session_id)

    def _publish_issued(self, challenge: ChallengeRequest):
        self.bus.publish(
            EventType.CHALLENGE_ISSUED,
            batch_id=challenge.batch_id,
            session_id=challenge.session_id,
            identifier=challenge.identifier,
            image=challenge.image,
            challenge_id=challenge.challenge_id,
            deadline=challenge.deadline,
            rounds=challenge.rounds,
            queue_position=self._position(challenge.session_id),
        )

    def _position(self, session_id: str) -> int:
        for i, entry in enumerate(self.queue.pending()):
            if entry.session_id == session_id:
                return i
        return -1
