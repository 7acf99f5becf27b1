"""Request/response models for SKY gift API pledge submission."""

from __future__ import annotations

import calendar
import json
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

TRANSACTION_TYPE_PLEDGE_CREATE = "PledgeCreate"
SUPPORTED_TRANSACTION_TYPES = (TRANSACTION_TYPE_PLEDGE_CREATE,)
DEFAULT_PAYMENT_METHOD = "Other"
CENT = Decimal("0.01")


class PledgeValidationError(ValueError):
    """Submission payload is malformed or misses a required field."""


class PledgeFrequency(str, Enum):
    """Installment schedule frequency, using the API's own spelling."""

    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    ANNUALLY = "Annually"


@dataclass(slots=True)
class CreatePledgeRequest:
    """Pledge submission as captured at enqueue time."""

    constituent_id: str
    amount: Decimal
    pledge_date: date
    fund_id: str
    frequency: PledgeFrequency = PledgeFrequency.MONTHLY
    number_of_installments: int = 1
    start_date: date | None = None
    payment_method: str = DEFAULT_PAYMENT_METHOD
    comments: str | None = None
    campaign_id: str | None = None
    appeal_id: str | None = None
    package_id: str | None = None
    verify_installments_after_create: bool = True
    add_installments_if_missing: bool = True

    @property
    def effective_start_date(self) -> date:
        return self.start_date or self.pledge_date

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)

    def validate(self) -> None:
        """Raise ``PledgeValidationError`` for requests the API can never accept."""

        if not self.constituent_id.strip():
            raise PledgeValidationError("ConstituentId is required.")
        if not self.fund_id.strip():
            raise PledgeValidationError("FundId is required (must be the fund system ID).")
        if self.amount <= 0:
            raise PledgeValidationError("Amount must be > 0.")
        if self.number_of_installments <= 0:
            raise PledgeValidationError("NumberOfInstallments must be greater than zero.")

    def to_json(self) -> str:
        payload: dict[str, Any] = {
            "constituent_id": self.constituent_id,
            "amount": str(self.amount),
            "pledge_date": self.pledge_date.isoformat(),
            "fund_id": self.fund_id,
            "frequency": self.frequency.value,
            "number_of_installments": self.number_of_installments,
            "start_date": self.start_date.isoformat() if self.start_date is not None else None,
            "payment_method": self.payment_method,
            "comments": self.comments,
            "campaign_id": self.campaign_id,
            "appeal_id": self.appeal_id,
            "package_id": self.package_id,
            "verify_installments_after_create": self.verify_installments_after_create,
            "add_installments_if_missing": self.add_installments_if_missing,
        }
        return json.dumps(payload, ensure_ascii=False, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | None) -> CreatePledgeRequest:
        """Parse and validate a stored request body."""

        if raw is None or not raw.strip():
            raise PledgeValidationError("Request payload is empty.")
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as error:
            raise PledgeValidationError(f"Request payload is not valid JSON: {error}") from error
        if not isinstance(payload, dict):
            raise PledgeValidationError("Request payload must be a JSON object.")

        try:
            request = cls(
                constituent_id=_optional_str(payload.get("constituent_id")) or "",
                amount=_parse_decimal(payload.get("amount")),
                pledge_date=_parse_date(payload.get("pledge_date"), name="pledge_date"),
                fund_id=_optional_str(payload.get("fund_id")) or "",
                frequency=PledgeFrequency(payload.get("frequency") or PledgeFrequency.MONTHLY),
                number_of_installments=int(payload.get("number_of_installments", 1)),
                start_date=(
                    _parse_date(payload["start_date"], name="start_date")
                    if payload.get("start_date")
                    else None
                ),
                payment_method=(
                    _optional_str(payload.get("payment_method")) or DEFAULT_PAYMENT_METHOD
                ),
                comments=_optional_str(payload.get("comments")),
                campaign_id=_optional_str(payload.get("campaign_id")),
                appeal_id=_optional_str(payload.get("appeal_id")),
                package_id=_optional_str(payload.get("package_id")),
                verify_installments_after_create=_parse_flag(
                    payload.get("verify_installments_after_create"),
                    name="verify_installments_after_create",
                ),
                add_installments_if_missing=_parse_flag(
                    payload.get("add_installments_if_missing"),
                    name="add_installments_if_missing",
                ),
            )
        except PledgeValidationError:
            raise
        except (TypeError, ValueError) as error:
            raise PledgeValidationError(f"Invalid request payload: {error}") from error
        request.validate()
        return request

    def to_api_payload(self) -> dict[str, Any]:
        """Body for ``POST gft-gifts/v2/gifts``."""

        amount = float(self.amount.quantize(CENT, rounding=ROUND_HALF_UP))
        return {
            "gift_type": "Pledge",
            "amount": {"value": amount},
            "constituent": {"id": self.constituent_id.strip()},
            "gift_date": self.pledge_date.isoformat(),
            "comments": _blank_to_none(self.comments),
            "gift_splits": [
                {
                    "amount": {"value": amount},
                    "fund_id": self.fund_id.strip(),
                    "campaign_id": _blank_to_none(self.campaign_id),
                    "appeal_id": _blank_to_none(self.appeal_id),
                    "package_id": _blank_to_none(self.package_id),
                },
            ],
            "payments": [
                {"method": _blank_to_none(self.payment_method) or DEFAULT_PAYMENT_METHOD},
            ],
            "schedule": {
                "frequency": self.frequency.value,
                "number_of_installments": self.number_of_installments,
                "start_date": self.effective_start_date.isoformat(),
            },
        }


@dataclass(slots=True)
class CreatePledgeResult:
    gift_id: str
    raw_create_response_json: str
    installments_present_after_create: bool = False
    raw_installment_list_json: str | None = None
    raw_installment_add_json: str | None = None


@dataclass(slots=True)
class GiftSearchItem:
    """One gift returned by a constituent gift search."""

    gift_id: str
    gift_type: str | None = None
    gift_date: date | None = None
    amount: Decimal | None = None


@dataclass(slots=True)
class PledgeInstallment:
    sequence: int
    due_date: date
    amount: Decimal

    def to_api_payload(self) -> dict[str, Any]:
        return {
            "date": f"{self.due_date.isoformat()}T00:00:00Z",
            "amount": float(self.amount),
            "sequence": self.sequence,
        }


def build_installments(
    *,
    total_amount: Decimal,
    first_installment_date: date,
    frequency: PledgeFrequency,
    number_of_installments: int,
) -> list[PledgeInstallment]:
    """Split ``total_amount`` into installments that always sum to the exact cent.

    Remainder cents go to the earliest installments.
    """

    if number_of_installments <= 0:
        raise ValueError("number_of_installments must be > 0")
    if total_amount <= 0:
        raise ValueError("total_amount must be > 0")

    total_cents = to_cents(total_amount)
    base_cents, remainder = divmod(total_cents, number_of_installments)
    return [
        PledgeInstallment(
            sequence=index + 1,
            due_date=add_frequency(first_installment_date, frequency, index),
            amount=Decimal(base_cents + (1 if index < remainder else 0)) / 100,
        )
        for index in range(number_of_installments)
    ]


def add_frequency(start: date, frequency: PledgeFrequency, offset: int) -> date:
    if frequency == PledgeFrequency.WEEKLY:
        return start + timedelta(days=7 * offset)
    if frequency == PledgeFrequency.QUARTERLY:
        return _add_months(start, 3 * offset)
    if frequency == PledgeFrequency.ANNUALLY:
        return _add_months(start, 12 * offset)
    return _add_months(start, offset)


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def _add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _parse_decimal(value: object) -> Decimal:
    if value is None or isinstance(value, bool):
        raise PledgeValidationError("Amount must be > 0.")
    try:
        return Decimal(str(value))
    except InvalidOperation as error:
        raise PledgeValidationError(f"Amount is not a number: {value!r}") from error


def _parse_date(value: object, *, name: str) -> date:
    if not isinstance(value, str) or not value.strip():
        raise PledgeValidationError(f"{name} is required.")
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError as error:
        raise PledgeValidationError(f"{name} is not an ISO date: {value!r}") from error


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _parse_flag(value: object, *, name: str, default: bool = True) -> bool:
    """JSON booleans, or the strings ``true``/``false``; absent means ``default``."""

    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    raise PledgeValidationError(f"{name} must be true or false: {value!r}")
