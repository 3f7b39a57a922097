"""
Per-item workflow: one consumer number on one acquired session.

navigate -> select company -> enter consumer number -> captcha (via the
relay) or plain submit -> poll for results -> validate mandatory fields.

Every failure surfaces as a BillFetchError so the dispatcher's retry loop
can treat all attempts alike.
"""

import logging
from typing import Any

from .captcha_relay import CaptchaRelay
from .errors import (
    BillFetchError,
    ExtractionIncomplete,
    InvalidIdentifierOrChallenge,
    NavigationOrTransportFailure,
)
from .models import BillingRecord, ChallengeRequest, SessionHandle

logger = logging.getLogger(__name__)


class ItemWorkflow:
    """Drive one session through the QuickPay lookup for one consumer."""

    def __init__(
        self,
        relay: CaptchaRelay,
        company: str = "MGVCL",
        max_polls: int = 5,
        poll_wait: float = 3.0,
    ):
        self.relay = relay
        self.company = company
        self.max_polls = max_polls
        self.poll_wait = poll_wait

    @classmethod
    def from_config(cls, relay: CaptchaRelay, config: Any) -> "ItemWorkflow":
        return cls(
            relay,
            company=config.TARGET_COMPANY,
            max_polls=config.RESULT_MAX_POLLS,
            poll_wait=config.RESULT_POLL_WAIT_SECONDS,
        )

    async def run(self, handle: SessionHandle, batch_id: str, identifier: str) -> BillingRecord:
        """
        Fetch the billing record for one consumer number.

        Args:
            handle: Busy session handle from the pool
            batch_id: Owning batch (for challenge pairing)
            identifier: Normalized consumer number

        Returns:
            BillingRecord with name and consumer number present

        Raises:
            BillFetchError subclasses for every failure mode
        """
        session = handle.session
        try:
            await session.navigate()
            await session.select_target(self.company)
            await session.enter_identifier(identifier)

            if await session.challenge_required():
                record = await self._solve_challenge(handle, batch_id, identifier)
            else:
                await session.submit()
                record = await self._fetch(session)
        except BillFetchError as e:
            if e.identifier is None:
                e.identifier = identifier
            raise
        except Exception as e:
            raise NavigationOrTransportFailure(
                f"{type(e).__name__}: {e}", identifier=identifier
            ) from e

        if not record.is_complete():
            raise ExtractionIncomplete(
                "Results page reached but consumer name or number is missing",
                identifier=identifier,
            )

        logger.info(f"[Workflow] {identifier} -> {record.consumer_name} on {handle.session_id}")
        return record

    async def _fetch(self, session: Any) -> BillingRecord:
        return await session.fetch_results(max_polls=self.max_polls, poll_wait=self.poll_wait)

    async def _solve_challenge(self, handle: SessionHandle, batch_id: str, identifier: str) -> BillingRecord:
        """
        Relay captchas until the site accepts one, then fetch the results.

        A rejection raised while results are still loading counts as a
        captcha round like one raised on submit.
        """
        session = handle.session
        image = await session.render_challenge()
        challenge = self.relay.issue(handle, batch_id, identifier, image)
        rejected = 0

        while True:
            answer = await self.relay.wait_for_answer(challenge)
            if answer is None:
                await self._rerender(session, challenge)
                continue

            try:
                await session.submit_challenge(answer)
                record = await self._fetch(session)
            except InvalidIdentifierOrChallenge as e:
                rejected += 1
                self.relay.failed(challenge, str(e))
                if rejected >= self.relay.max_rounds:
                    logger.warning(
                        f"[Workflow] {identifier}: captcha rejected {rejected} times, giving up attempt"
                    )
                    raise
                await self._rerender(session, challenge)
                continue

            self.relay.resolved(challenge)
            return record

    async def _rerender(self, session: Any, challenge: ChallengeRequest):
        await session.refresh_challenge()
        image = await session.render_challenge()
        self.relay.reissue(challenge, image)
