#!/usr/bin/env python3
"""
Session Pool - fixed-size set of automation sessions with FIFO hand-off.

Sessions are created once and reused; the pool never grows. When every
session is busy, callers queue and the oldest waiter receives the next
released session directly, so a release can never be stolen by a newcomer.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from .errors import NavigationOrTransportFailure, NoSessionAvailable
from .models import SessionHandle, SessionState

logger = logging.getLogger(__name__)

SessionFactory = Callable[[int], Any]


class SessionPool:
    """
    Hand out and reclaim automation sessions.

    Features:
    - Fixed capacity decided at construction
    - Bounded acquire wait, then NoSessionAvailable
    - FIFO waiter queue with direct hand-off on release
    - Reset-on-release that never blocks the session from returning
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        size: int = 5,
        acquire_timeout: float = 300.0,
    ):
        if size < 1:
            raise ValueError("Pool size must be at least 1")

        self.session_factory = session_factory
        self.size = size
        self.acquire_timeout = acquire_timeout

        self._handles: Dict[str, SessionHandle] = {}
        self._free: Deque[str] = deque()
        self._waiters: Deque[asyncio.Future] = deque()
        self._releasing: set = set()
        self._lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._closed = False

        self.stats = {
            'acquired': 0,
            'released': 0,
            'waited': 0,
            'handoffs': 0,
            'timeouts': 0,
            'reset_failures': 0,
            'start_failures': 0,
        }

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def capacity(self) -> int:
        """Number of sessions that actually started."""
        return len(self._handles) if self._initialized else self.size

    @property
    def free_count(self) -> int:
        return len(self._free)

    @property
    def waiting_count(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def initialize(self):
        """Start every session. Safe to call from several tasks at once."""
        async with self._init_lock:
            if self._initialized:
                return
            if self._closed:
                raise NoSessionAvailable("Session pool is closed")

            logger.info(f"[Pool] Starting {self.size} sessions...")
            sessions = [self.session_factory(i) for i in range(self.size)]
            results = await asyncio.gather(
                *(session.start() for session in sessions),
                return_exceptions=True,
            )

            for index, (session, result) in enumerate(zip(sessions, results)):
                session_id = getattr(session, "session_id", None) or f"session_{index}"
                if isinstance(result, BaseException):
                    self.stats['start_failures'] += 1
                    logger.error(f"[Pool] Failed to start {session_id}: {result}")
                    try:
                        await session.close()
                    except Exception as e:
                        logger.debug(f"[Pool] Error closing failed session {session_id}: {e}")
                    continue

                self._handles[session_id] = SessionHandle(session_id=session_id, session=session)
                self._free.append(session_id)

            if not self._handles:
                raise NavigationOrTransportFailure("No automation session could be started")

            self._initialized = True
            logger.info(f"[Pool] Ready: {len(self._handles)}/{self.size} sessions")

    async def acquire(self, timeout: Optional[float] = None) -> SessionHandle:
        """
        Get a free session, waiting in FIFO order when all are busy.

        Args:
            timeout: Seconds to wait (defaults to the pool's acquire_timeout)

        Returns:
            SessionHandle in BUSY state

        Raises:
            NoSessionAvailable: pool closed or wait bound elapsed
        """
        if not self._initialized:
            await self.initialize()

        wait_for = self.acquire_timeout if timeout is None else timeout

        async with self._lock:
            if self._closed:
                raise NoSessionAvailable("Session pool is closed")

            if self._free:
                handle = self._handles[self._free.popleft()]
                self._checkout(handle)
                return handle

            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            self.stats['waited'] += 1
            logger.debug(f"[Pool] No free session, queued ({self.waiting_count} waiting)")

        try:
            handle = await asyncio.wait_for(asyncio.shield(waiter), timeout=wait_for)
        except asyncio.TimeoutError:
            async with self._lock:
                if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                    # Handed over in the same instant the wait expired
                    handle = waiter.result()
                    self.stats['acquired'] += 1
                    return handle
                waiter.cancel()
                self._discard_waiter(waiter)
                self.stats['timeouts'] += 1
            raise NoSessionAvailable(f"No session available after {wait_for:.0f}s")
        except asyncio.CancelledError:
            async with self._lock:
                if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                    # Caller went away after being handed a session: give it back
                    self._hand_off(waiter.result())
                else:
                    waiter.cancel()
                    self._discard_waiter(waiter)
            raise

        self.stats['acquired'] += 1
        return handle

    async def release(self, handle: SessionHandle):
        """
        Reset a session and return it to the oldest waiter or the free list.

        Reset failures are logged and suppressed; the session is returned
        regardless.
        """
        async with self._lock:
            if handle.session_id not in self._handles:
                logger.warning(f"[Pool] Release of unknown session {handle.session_id}")
                return
            if handle.state == SessionState.FREE or handle.session_id in self._releasing:
                logger.warning(f"[Pool] Ignoring double release of {handle.session_id}")
                return
            self._releasing.add(handle.session_id)

        try:
            if not self._closed:
                await handle.session.reset()
        except Exception as e:
            self.stats['reset_failures'] += 1
            logger.warning(f"[Pool] Reset failed for {handle.session_id}, releasing anyway: {e}")
        finally:
            async with self._lock:
                self._releasing.discard(handle.session_id)
                handle.clear()
                handle.items_processed += 1
                self.stats['released'] += 1
                if self._closed:
                    handle.state = SessionState.FREE
                else:
                    self._hand_off(handle)

    def mark_awaiting_challenge(self, handle: SessionHandle):
        handle.state = SessionState.AWAITING_CHALLENGE
        handle.last_challenge_at = time.time()

    def mark_busy(self, handle: SessionHandle):
        if handle.state == SessionState.AWAITING_CHALLENGE:
            handle.state = SessionState.BUSY

    def get(self, session_id: str) -> Optional[SessionHandle]:
        return self._handles.get(session_id)

    def status(self) -> List[Dict[str, Any]]:
        """Per-session status for dashboards."""
        return [handle.to_dict() for handle in self._handles.values()]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'capacity': self.capacity,
            'free': self.free_count,
            'busy': sum(1 for h in self._handles.values() if h.state != SessionState.FREE),
            'waiting': self.waiting_count,
        }

    async def close_all(self):
        """Tear down every session unconditionally."""
        async with self._lock:
            self._closed = True
            while self._waiters:
                waiter = self._waiters.popleft()
                if not waiter.done():
                    waiter.set_exception(NoSessionAvailable("Session pool is closed"))
            handles = list(self._handles.values())
            self._free.clear()

        for handle in handles:
            try:
                await handle.session.close()
            except Exception as e:
                logger.debug(f"[Pool] Error closing {handle.session_id}: {e}")
            handle.state = SessionState.FREE
            handle.clear()

        self._initialized = False
        logger.info("[Pool] All sessions closed")

    def _checkout(self, handle: SessionHandle):
        handle.state = SessionState.BUSY
        self.stats['acquired'] += 1

    def _hand_off(self, handle: SessionHandle):
        # Caller holds self._lock
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            handle.state = SessionState.BUSY
            waiter.set_result(handle)
            self.stats['handoffs'] += 1
            logger.debug(f"[Pool] Handed {handle.session_id} to next waiter")
            return
        handle.state = SessionState.FREE
        self._free.append(handle.session_id)

    def _discard_waiter(self, waiter: asyncio.Future):
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
