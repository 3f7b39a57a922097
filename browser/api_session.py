#!/usr/bin/env python3
"""
HTTP-only QuickPay session.

Skips the browser entirely: keeps a PHP session cookie, downloads the
securimage captcha and posts the consumer lookup to the JSON service the
QuickPay page itself calls. The service always requires a captcha.
"""

import base64
import json
import logging
import re
import time
from typing import Any, Dict, Optional

import aiohttp

from core.errors import InvalidIdentifierOrChallenge, NavigationOrTransportFailure
from core.models import BillingRecord

from .base import AutomationSession

logger = logging.getLogger(__name__)

BASE_URL = "https://mpay.guvnl.in"
QUICKPAY_PATH = "/paytm/QuickPay.php"
CAPTCHA_PATH = "/paytm/securimage/securimage_show.php"
STATUS_PATH = "/paytmservices/GetConsStatus.php"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

# BillingRecord attribute -> key in the GetConsStatus response
STATUS_FIELDS = {
    "consumer_name": "v_cons_name",
    "consumer_no": "v_cons_no",
    "last_paid_detail": "last_paid_detail",
    "outstanding_amount": "OutAmount",
    "bill_date": "v_bill_dt_assmt",
    "amount_to_pay": "v_bill_amt_assmt",
}
LOCATION_KEYS = ("v_circle", "v_division", "v_subdiv")


def _scan_key(body: str, key: str) -> str:
    match = re.search(rf'"{re.escape(key)}"\s*:\s*"?([^",}}]*)"?', body)
    return match.group(1).strip() if match else ""


def parse_status_response(body: str) -> Dict[str, Any]:
    """
    Decode a GetConsStatus body.

    The service answers with JSON but sometimes wraps it in stray output, so
    a key scan over the raw text is used when decoding fails.
    """
    try:
        data = json.loads(body)
        if isinstance(data, dict):
            return data
    except ValueError:
        pass

    keys = ("v_status", "error_message") + tuple(STATUS_FIELDS.values()) + LOCATION_KEYS
    data = {key: _scan_key(body, key) for key in keys}
    if not data["v_status"]:
        raise NavigationOrTransportFailure("Failed to parse server response")
    return data


def record_from_status(data: Dict[str, Any]) -> BillingRecord:
    values = {
        attr: "" if data.get(key) is None else str(data[key]).strip()
        for attr, key in STATUS_FIELDS.items()
    }
    location = " / ".join(str(data[k]).strip() for k in LOCATION_KEYS if data.get(k))
    return BillingRecord(location=location, **values)


class ApiSession(AutomationSession):
    """
    QuickPay lookups over plain HTTPS with aiohttp.

    Features:
    - Cookie jar holding the PHPSESSID the captcha is bound to
    - SSL verification disabled (the site's certificate chain is unreliable)
    - JSON decoding with raw key-scan fallback
    """

    engine = "api"

    def __init__(
        self,
        session_id: str,
        base_url: str = BASE_URL,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout_seconds: float = 30.0,
    ):
        super().__init__(session_id)
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds

        self.http: Optional[aiohttp.ClientSession] = None
        self.company = "MGVCL"
        self.identifier: Optional[str] = None
        self._status: Optional[Dict[str, Any]] = None

    async def start(self):
        self.http = aiohttp.ClientSession(
            cookie_jar=aiohttp.CookieJar(unsafe=True),
            connector=aiohttp.TCPConnector(ssl=False),
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            headers={
                "User-Agent": self.user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-IN,en;q=0.9,gu;q=0.8",
            },
        )
        await self.navigate()
        logger.info(f"[API] {self.session_id} ready")

    async def close(self):
        if self.http is not None:
            try:
                await self.http.close()
            except Exception as e:
                logger.debug(f"[API] {self.session_id} close error: {e}")
            self.http = None

    async def reset(self):
        self.identifier = None
        self._status = None
        await self.navigate()

    async def navigate(self):
        http = self._require_http()
        try:
            async with http.get(
                self.base_url + QUICKPAY_PATH, params={"company": self.company}
            ) as response:
                await response.read()
                if response.status >= 400:
                    raise NavigationOrTransportFailure(f"QuickPay returned HTTP {response.status}")
        except aiohttp.ClientError as e:
            raise NavigationOrTransportFailure(f"QuickPay unreachable: {e}") from e

        if not any(cookie.key == "PHPSESSID" for cookie in http.cookie_jar):
            raise NavigationOrTransportFailure("Failed to obtain session cookie")

    async def select_target(self, company: str):
        self.company = company

    async def enter_identifier(self, identifier: str):
        self.identifier = identifier
        self._status = None

    async def challenge_required(self) -> bool:
        return True

    async def render_challenge(self) -> str:
        http = self._require_http()
        url = f"{self.base_url}{CAPTCHA_PATH}?{int(time.time() * 1000)}"
        try:
            async with http.get(url, headers={"Referer": self.base_url + QUICKPAY_PATH}) as response:
                if response.status >= 400:
                    raise NavigationOrTransportFailure(f"Captcha returned HTTP {response.status}")
                image = await response.read()
        except aiohttp.ClientError as e:
            raise NavigationOrTransportFailure(f"Captcha download failed: {e}") from e
        return "data:image/png;base64," + base64.b64encode(image).decode("ascii")

    async def refresh_challenge(self):
        # Every render downloads a fresh image bound to the same cookie
        return None

    async def submit_challenge(self, answer: str):
        http = self._require_http()
        if not self.identifier:
            raise NavigationOrTransportFailure("No consumer number entered")

        payload = {"consno": self.identifier, "company": self.company.lower(), "cap_cod": answer}
        try:
            async with http.post(
                self.base_url + STATUS_PATH,
                data=json.dumps(payload),
                headers={
                    "Content-Type": "application/json; charset=UTF-8",
                    "Referer": self.base_url + QUICKPAY_PATH,
                    "Origin": self.base_url,
                    "X-Requested-With": "XMLHttpRequest",
                },
            ) as response:
                body = await response.text()
        except aiohttp.ClientError as e:
            raise NavigationOrTransportFailure(f"Consumer lookup failed: {e}") from e

        data = parse_status_response(body)
        if data.get("v_status") != "Y":
            raise InvalidIdentifierOrChallenge(
                data.get("error_message") or "Invalid consumer number or captcha",
                identifier=self.identifier,
            )
        self._status = data

    async def submit(self):
        raise NavigationOrTransportFailure("The QuickPay service requires a captcha")

    async def fetch_results(self, max_polls: int = 5, poll_wait: float = 3.0) -> BillingRecord:
        if self._status is None:
            raise NavigationOrTransportFailure("No consumer details received")
        return record_from_status(self._status)

    def _require_http(self) -> aiohttp.ClientSession:
        if self.http is None:
            raise NavigationOrTransportFailure(f"Session {self.session_id} is not started")
        return self.http
