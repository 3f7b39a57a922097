#!/usr/bin/env python3
"""
Playwright-backed QuickPay session.

One Chromium browser with a single page per session. The page stays on the
QuickPay entry form between consumers; reset() simply reloads it.
"""

import asyncio
import base64
import logging
import random
import re
from typing import Dict, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from core.errors import InvalidIdentifierOrChallenge, NavigationOrTransportFailure
from core.models import BillingRecord

from .base import AutomationSession

logger = logging.getLogger(__name__)

ENTRY_URL = "https://mpay.guvnl.in/paytm/QuickPay.php"

# Page element ids on the QuickPay form
COMPANY_SELECT = "select"
CONSUMER_INPUT = "input#consnumber"
CAPTCHA_IMAGE = "img#captcha"
CAPTCHA_INPUT = "#cap_code"
SUBMIT_BUTTON = 'input[value*="Check Consumer No."]'
RESULTS_VIEW = "detailconsnumber"
INPUT_VIEW = "inputconsnumber"
INVALID_CAPTCHA_MODAL = "invalidcaptchmodal"
INVALID_CONSUMER_MODAL = "invalidconsumerno"

# BillingRecord attribute -> element id in the results view
RESULT_FIELDS: Dict[str, str] = {
    "consumer_name": "ConsumerName",
    "consumer_no": "CUST_ID",
    "last_paid_detail": "lastpaid",
    "outstanding_amount": "billamt",
    "bill_date": "billdate",
    "amount_to_pay": "payamount",
    "location": "MERC_UNQ_REF",
}

VIEWPORTS = [
    {"width": 1920, "height": 1080},
    {"width": 1536, "height": 864},
    {"width": 1440, "height": 900},
    {"width": 1366, "height": 768},
]

_PAGE_STATE_JS = """
() => {
    const details = document.getElementById('detailconsnumber');
    const name = document.getElementById('ConsumerName');
    const input = document.getElementById('inputconsnumber');
    const shown = (id) => {
        const el = document.getElementById(id);
        return !!el && (el.classList.contains('in') || el.style.display === 'block');
    };
    return {
        detailsVisible: !!details && details.style.display !== 'none',
        consumerName: name ? (name.value || '').trim() : '',
        inputVisible: !!input && input.style.display !== 'none',
        invalidCaptcha: shown('invalidcaptchmodal'),
        invalidConsumer: shown('invalidconsumerno'),
    };
}
"""

_REFRESH_CAPTCHA_JS = """
() => {
    const img = document.getElementById('captcha');
    if (img) img.src = './securimage/securimage_show.php?' + Date.now();
    const input = document.getElementById('cap_code');
    if (input) input.value = '';
    for (const id of ['invalidcaptchmodal', 'invalidconsumerno']) {
        const modal = document.getElementById(id);
        if (modal) { modal.classList.remove('in'); modal.style.display = 'none'; }
    }
    document.querySelectorAll('.modal-backdrop').forEach((el) => el.remove());
}
"""

_IMAGE_LOADED_JS = """
() => new Promise((resolve) => {
    const img = document.querySelector('img#captcha');
    if (!img || img.complete) return resolve(true);
    img.onload = () => resolve(true);
    img.onerror = () => resolve(false);
})
"""


def scan_fields(html: str) -> Dict[str, str]:
    """Fallback extraction: pull input values for the result ids out of raw HTML."""
    values = {}
    for attr, element_id in RESULT_FIELDS.items():
        tag = re.search(rf'<input[^>]*\bid=["\']{element_id}["\'][^>]*>', html, re.IGNORECASE)
        if not tag:
            values[attr] = ""
            continue
        value = re.search(r'\bvalue=["\']([^"\']*)["\']', tag.group(0), re.IGNORECASE)
        values[attr] = value.group(1).strip() if value else ""
    return values


class BrowserSession(AutomationSession):
    """
    QuickPay lookups in a real Chromium page.

    Features:
    - Randomized viewport and user agent per session
    - Captcha rendered as a PNG data URI from the element screenshot
    - Result polling with growing waits and raw-HTML fallback extraction
    """

    engine = "browser"

    def __init__(
        self,
        session_id: str,
        entry_url: str = ENTRY_URL,
        headless: bool = True,
        navigation_timeout_ms: int = 30000,
        user_agent: Optional[str] = None,
    ):
        super().__init__(session_id)
        self.entry_url = entry_url
        self.headless = headless
        self.navigation_timeout_ms = navigation_timeout_ms
        self.user_agent = user_agent

        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

    async def start(self):
        self.playwright = await async_playwright().start()
        self.browser = await self.playwright.chromium.launch(
            headless=self.headless,
            args=[
                "--no-sandbox",
                "--disable-setuid-sandbox",
                "--disable-dev-shm-usage",
                "--disable-blink-features=AutomationControlled",
            ],
        )
        context_args = {
            "viewport": random.choice(VIEWPORTS),
            "locale": "en-IN",
            "ignore_https_errors": True,
        }
        if self.user_agent:
            context_args["user_agent"] = self.user_agent
        self.context = await self.browser.new_context(**context_args)
        self.page = await self.context.new_page()
        self.page.set_default_timeout(self.navigation_timeout_ms)
        await self.navigate()
        logger.info(f"[Browser] {self.session_id} ready")

    async def close(self):
        for closer in (self.context, self.browser):
            if closer is None:
                continue
            try:
                await closer.close()
            except Exception as e:
                logger.debug(f"[Browser] {self.session_id} close error: {e}")
        if self.playwright:
            try:
                await self.playwright.stop()
            except Exception as e:
                logger.debug(f"[Browser] {self.session_id} playwright stop error: {e}")
        self.page = self.context = self.browser = self.playwright = None

    async def reset(self):
        await self.navigate()

    async def navigate(self):
        page = self._require_page()
        try:
            await page.goto(self.entry_url, wait_until="networkidle", timeout=self.navigation_timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationOrTransportFailure(f"Timed out loading {self.entry_url}") from e

    async def select_target(self, company: str):
        page = self._require_page()
        await page.wait_for_selector(COMPANY_SELECT, timeout=10000)
        await page.select_option(COMPANY_SELECT, label=company)
        await page.wait_for_timeout(1000)

    async def enter_identifier(self, identifier: str):
        page = self._require_page()
        await page.wait_for_selector(CONSUMER_INPUT, timeout=10000)
        await page.fill(CONSUMER_INPUT, identifier)
        await page.wait_for_timeout(500)

    async def challenge_required(self) -> bool:
        return await self._require_page().locator(CAPTCHA_IMAGE).count() > 0

    async def render_challenge(self) -> str:
        page = self._require_page()
        await page.wait_for_selector(CAPTCHA_IMAGE, state="visible", timeout=5000)
        await page.evaluate(_IMAGE_LOADED_JS)
        await page.wait_for_timeout(300)
        png = await page.locator(CAPTCHA_IMAGE).screenshot(type="png")
        return "data:image/png;base64," + base64.b64encode(png).decode("ascii")

    async def refresh_challenge(self):
        page = self._require_page()
        await page.evaluate(_REFRESH_CAPTCHA_JS)
        await page.wait_for_timeout(1000)

    async def submit_challenge(self, answer: str):
        page = self._require_page()
        await page.fill(CAPTCHA_INPUT, "")
        await page.fill(CAPTCHA_INPUT, answer)
        await self._click_submit()

        try:
            await page.wait_for_function(
                """() => {
                    const details = document.getElementById('detailconsnumber');
                    const name = document.getElementById('ConsumerName');
                    const modal = (id) => {
                        const el = document.getElementById(id);
                        return !!el && (el.classList.contains('in') || el.style.display === 'block');
                    };
                    return (details && details.style.display !== 'none' && name && name.value)
                        || modal('invalidcaptchmodal') || modal('invalidconsumerno');
                }""",
                timeout=10000,
            )
        except PlaywrightTimeoutError:
            # Neither outcome yet; fetch_results keeps polling
            return

        state = await page.evaluate(_PAGE_STATE_JS)
        self._raise_for_modals(state)

    async def submit(self):
        await self._click_submit()

    async def fetch_results(self, max_polls: int = 5, poll_wait: float = 3.0) -> BillingRecord:
        page = self._require_page()
        polls = 0
        transitional_waits = 0

        while polls < max_polls:
            state = await page.evaluate(_PAGE_STATE_JS)

            if state["inputVisible"]:
                self._raise_for_modals(state)

            if state["detailsVisible"] and state["consumerName"]:
                return await self._extract()

            if not state["inputVisible"] and not state["detailsVisible"] and transitional_waits < max_polls:
                transitional_waits += 1
                await page.wait_for_timeout(2000)
                continue

            polls += 1
            if polls < max_polls:
                logger.debug(f"[Browser] {self.session_id} waiting for results (poll {polls})")
                await asyncio.sleep(poll_wait * polls)

        raise NavigationOrTransportFailure(f"Bill details not visible after {max_polls} polls")

    async def _extract(self) -> BillingRecord:
        page = self._require_page()
        await page.wait_for_timeout(500)
        values = await page.evaluate(
            """(ids) => {
                const out = {};
                for (const [key, id] of Object.entries(ids)) {
                    const el = document.getElementById(id);
                    out[key] = el ? ((el.value || el.textContent || '').trim()) : '';
                }
                return out;
            }""",
            RESULT_FIELDS,
        )
        record = BillingRecord(**values)
        if not record.is_complete():
            logger.debug(f"[Browser] {self.session_id} structured extraction incomplete, scanning HTML")
            record = BillingRecord(**scan_fields(await page.content()))
        return record

    async def _click_submit(self):
        page = self._require_page()
        button = page.locator(SUBMIT_BUTTON)
        if await button.count() == 0:
            raise NavigationOrTransportFailure("Submit button not found on QuickPay form")
        await button.first.click()

    @staticmethod
    def _raise_for_modals(state: Dict):
        if state.get("invalidConsumer"):
            raise InvalidIdentifierOrChallenge("Invalid consumer number")
        if state.get("invalidCaptcha"):
            raise InvalidIdentifierOrChallenge("Invalid captcha")

    def _require_page(self) -> Page:
        if self.page is None:
            raise NavigationOrTransportFailure(f"Session {self.session_id} is not started")
        return self.page
