"""SKY gift API client: pledge creation, installments and gift search."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import quote

import httpx

from pledge_queue.config import SkyApiSettings
from pledge_queue.sky.auth import CredentialProvider
from pledge_queue.sky.models import (
    CreatePledgeRequest,
    CreatePledgeResult,
    GiftSearchItem,
    PledgeInstallment,
    build_installments,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = "pledge-queue/1.0"
RATE_LIMIT_STATUS_CODES = frozenset({429, 403})
GIFTS_PATH = "gft-gifts/v2/gifts"
MAX_SEARCH_LIMIT = 200
_SEARCH_ARRAY_KEYS = ("value", "items", "results", "gifts")
_INSTALLMENT_ARRAY_KEYS = ("value", "installments")


class SkyApiError(RuntimeError):
    """Non-success HTTP response from SKY."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class SkyResponseError(RuntimeError):
    """SKY accepted the call but the response could not be interpreted."""


class SkyGiftClient:
    """httpx client wrapper honoring SKY ``Retry-After`` throttling.

    A 429, or a 403 carrying ``Retry-After``, is delayed and resent within the
    same call; it does not surface to the caller unless the retry budget is
    spent or ``stop_event`` is set during the wait.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        credentials: CredentialProvider,
        base_url: str = "https://api.sky.blackbaud.com/",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_rate_limit_retries: int = 10,
        max_retry_after_seconds: float = 120.0,
        verify_installments: bool = True,
        transport: httpx.BaseTransport | None = None,
        stop_event: threading.Event | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._credentials = credentials
        self._max_rate_limit_retries = max(0, max_rate_limit_retries)
        self._max_retry_after_seconds = max(0.0, max_retry_after_seconds)
        self._stop_event = stop_event
        self._sleep = sleep
        self.verify_installments = verify_installments
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"User-Agent": DEFAULT_USER_AGENT, "Accept": "application/json"},
            transport=transport or httpx.HTTPTransport(retries=2),
        )

    @classmethod
    def from_settings(
        cls,
        settings: SkyApiSettings,
        *,
        credentials: CredentialProvider,
        stop_event: threading.Event | None = None,
    ) -> SkyGiftClient:
        return cls(
            credentials=credentials,
            base_url=settings.base_url,
            timeout_seconds=settings.timeout_seconds,
            max_rate_limit_retries=settings.max_rate_limit_retries,
            max_retry_after_seconds=settings.max_retry_after_seconds,
            verify_installments=settings.verify_installments,
            stop_event=stop_event,
        )

    def create_pledge(self, request: CreatePledgeRequest) -> CreatePledgeResult:
        """Create a pledge gift; installment verification afterwards is best-effort."""

        request.validate()
        response = self._send("POST", GIFTS_PATH, json=request.to_api_payload())
        body = response.text
        if not response.is_success:
            raise SkyApiError(response.status_code, body)

        gift_id = extract_gift_id(body)
        result = CreatePledgeResult(gift_id=gift_id, raw_create_response_json=body)
        if self.verify_installments and request.verify_installments_after_create:
            self._verify_installments(request=request, result=result)
        return result

    def search_gifts(
        self,
        constituent_id: str,
        from_date: date,
        to_date: date,
        *,
        limit: int = 50,
    ) -> list[GiftSearchItem]:
        """Gifts of one constituent within ``[from_date, to_date]``."""

        if not constituent_id.strip():
            raise ValueError("constituent_id is required")
        params = {
            "constituent_id": constituent_id.strip(),
            "from_gift_date": from_date.isoformat(),
            "to_gift_date": to_date.isoformat(),
            "limit": str(min(MAX_SEARCH_LIMIT, max(1, limit))),
        }
        response = self._send("GET", GIFTS_PATH, params=params)
        if not response.is_success:
            raise SkyApiError(response.status_code, response.text)
        return parse_gift_search(response.text)

    def add_installments(self, gift_id: str, installments: list[PledgeInstallment]) -> str:
        if not installments:
            raise ValueError("At least one installment is required.")
        response = self._send(
            "POST",
            f"{GIFTS_PATH}/{_path_id(gift_id)}/installments",
            json={"installments": [item.to_api_payload() for item in installments]},
        )
        if not response.is_success:
            raise SkyApiError(response.status_code, response.text)
        return response.text

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> SkyGiftClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _verify_installments(
        self,
        *,
        request: CreatePledgeRequest,
        result: CreatePledgeResult,
    ) -> None:
        try:
            present, list_json = self._try_get_installments(result.gift_id)
            result.raw_installment_list_json = list_json
            if not present and request.add_installments_if_missing:
                installments = build_installments(
                    total_amount=request.amount,
                    first_installment_date=request.effective_start_date,
                    frequency=request.frequency,
                    number_of_installments=request.number_of_installments,
                )
                result.raw_installment_add_json = self.add_installments(
                    result.gift_id,
                    installments,
                )
                present, _ = self._try_get_installments(result.gift_id)
            result.installments_present_after_create = present
        except (httpx.HTTPError, SkyApiError, ValueError) as exc:
            logger.warning("Installment verification failed for gift %s: %s", result.gift_id, exc)

    def _try_get_installments(self, gift_id: str) -> tuple[bool, str]:
        response = self._send("GET", f"{GIFTS_PATH}/{_path_id(gift_id)}/installments")
        body = response.text
        if not response.is_success:
            return False, body
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            return False, body
        if isinstance(parsed, list):
            return len(parsed) > 0, body
        if isinstance(parsed, dict):
            for key in _INSTALLMENT_ARRAY_KEYS:
                value = parsed.get(key)
                if isinstance(value, list):
                    return len(value) > 0, body
        return False, body

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        retries = 0
        while True:
            headers = self._credentials.get_credential().to_headers()
            response = self._client.request(method, url, headers=headers, **kwargs)
            if response.status_code not in RATE_LIMIT_STATUS_CODES:
                return response
            delay = parse_retry_after(response.headers.get("Retry-After"))
            if delay is None or delay <= 0 or retries >= self._max_rate_limit_retries:
                return response

            retries += 1
            wait_seconds = min(delay, self._max_retry_after_seconds)
            logger.warning(
                "SKY throttled %s %s (HTTP %d); retry %d in %.1fs",
                method,
                url,
                response.status_code,
                retries,
                wait_seconds,
            )
            response.close()
            if not self._wait(wait_seconds):
                return response

    def _wait(self, seconds: float) -> bool:
        """Sleep before a resend; False when cancellation was requested meanwhile."""

        if self._sleep is not None:
            self._sleep(seconds)
            return True
        if self._stop_event is not None:
            return not self._stop_event.wait(timeout=seconds)
        time.sleep(seconds)
        return True


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """``Retry-After`` as delta seconds or HTTP-date; ``None`` when absent or unparseable."""

    if value is None or not value.strip():
        return None
    raw = value.strip()
    try:
        return float(raw)
    except ValueError:
        pass
    try:
        target = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if target.tzinfo is None:
        target = target.replace(tzinfo=UTC)
    reference = now or datetime.now(tz=UTC)
    return (target - reference).total_seconds()


def extract_gift_id(body: str) -> str:
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError as error:
        raise SkyResponseError(
            f"Pledge created but response did not include an id. Raw: {body}",
        ) from error
    if isinstance(parsed, dict):
        gift_id = _as_text(parsed.get("id"))
        if gift_id:
            return gift_id
    raise SkyResponseError(f"Pledge created but response did not include an id. Raw: {body}")


def parse_gift_search(body: str) -> list[GiftSearchItem]:
    """Best-effort parse of gift search results; unknown shapes yield an empty list."""

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        logger.warning("Gift search returned non-JSON body")
        return []

    items: list[Any] = []
    if isinstance(parsed, list):
        items = parsed
    elif isinstance(parsed, dict):
        for key in _SEARCH_ARRAY_KEYS:
            value = parsed.get(key)
            if isinstance(value, list):
                items = value
                break

    results: list[GiftSearchItem] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        gift_id = _as_text(item.get("id")) or _as_text(item.get("gift_id"))
        if not gift_id:
            continue
        results.append(
            GiftSearchItem(
                gift_id=gift_id,
                gift_type=_as_text(item.get("gift_type")) or _as_text(item.get("type")),
                gift_date=_parse_gift_date(
                    _as_text(item.get("gift_date")) or _as_text(item.get("date")),
                ),
                amount=_parse_amount(item.get("amount")),
            ),
        )
    return results


def _parse_gift_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _parse_amount(value: object) -> Decimal | None:
    if isinstance(value, dict):
        value = value.get("value")
    if isinstance(value, bool) or not isinstance(value, int | float | str):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _as_text(value: object) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, int | float):
        return str(value)
    return None


def _path_id(gift_id: str) -> str:
    if not gift_id.strip():
        raise ValueError("gift_id is required")
    return quote(gift_id.strip(), safe="")
