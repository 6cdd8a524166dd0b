"""Payload schemas for every job kind.

Payloads are validated before any domain logic runs. A payload that does
not match its schema raises PayloadValidationError, which fails the job
without retrying.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, TypeVar, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, ValidationError

from indexnow_worker.errors import PayloadValidationError


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class Device(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"


class EmailTemplate(str, Enum):
    BILLING_CONFIRMATION = "billing_confirmation"
    PAYMENT_RECEIVED = "payment_received"
    PACKAGE_ACTIVATED = "package_activated"
    ORDER_EXPIRED = "order_expired"
    TRIAL_EXPIRING = "trial_expiring"
    LOGIN_NOTIFICATION = "login_notification"
    CONTACT_FORM = "contact_form"


class PaymentStatus(str, Enum):
    """Gateway-side payment status delivered by the webhook."""
    PENDING = "pending"
    SETTLEMENT = "settlement"
    EXPIRE = "expire"
    CANCEL = "cancel"
    DENY = "deny"


class RankCheckJob(_Payload):
    kind: Literal["rank_check"] = "rank_check"
    keywordId: UUID
    userId: UUID
    domainId: UUID
    keyword: str = Field(min_length=1, max_length=500)
    countryCode: str = Field(pattern=r"^[A-Za-z]{2}$")
    device: Device


class EmailJob(_Payload):
    kind: Literal["email"] = "email"
    to: EmailStr
    subject: str = Field(min_length=1, max_length=300)
    template: EmailTemplate
    data: dict[str, Any]


class PaymentWebhookJob(_Payload):
    kind: Literal["payment_webhook"] = "payment_webhook"
    orderId: str = Field(min_length=1)
    transactionId: str = Field(min_length=1)
    status: PaymentStatus
    paymentType: str = Field(min_length=1)
    webhookData: dict[str, Any]


class AutoCancelJob(_Payload):
    kind: Literal["auto_cancel"] = "auto_cancel"
    scheduledAt: datetime


class KeywordEnrichmentJob(_Payload):
    kind: Literal["keyword_enrichment"] = "keyword_enrichment"
    scheduledAt: datetime


class QuotaResetJob(_Payload):
    kind: Literal["quota_reset"] = "quota_reset"
    scheduledAt: datetime


class DailyRankCheckJob(_Payload):
    kind: Literal["daily_rank_check"] = "daily_rank_check"
    scheduledAt: datetime
    batchSize: Optional[int] = Field(default=None, ge=1, le=5000)


JobPayload = Annotated[
    Union[
        RankCheckJob,
        EmailJob,
        PaymentWebhookJob,
        AutoCancelJob,
        KeywordEnrichmentJob,
        QuotaResetJob,
        DailyRankCheckJob,
    ],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter = TypeAdapter(JobPayload)

P = TypeVar("P", bound=BaseModel)


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "payload"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


def validate_payload(model: type[P], data: Any) -> P:
    """
    Validate ``data`` against one payload model.

    The ``kind`` tag is optional on input; producers may omit it.

    Raises:
        PayloadValidationError: payload does not match (permanent)
    """
    if not isinstance(data, dict):
        raise PayloadValidationError(f"Invalid {model.__name__} payload: expected an object")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise PayloadValidationError(
            f"Invalid {model.__name__} payload: {_describe(e)}",
            details={"errors": e.errors(include_url=False, include_input=False)},
        ) from e


def parse_job_payload(kind: str, data: Any) -> BaseModel:
    """
    Validate ``data`` against the tagged union using ``kind`` as the tag.

    Raises:
        PayloadValidationError: unknown kind or invalid payload (permanent)
    """
    if not isinstance(data, dict):
        raise PayloadValidationError(f"Invalid {kind} payload: expected an object")
    try:
        return _payload_adapter.validate_python({**data, "kind": kind})
    except ValidationError as e:
        raise PayloadValidationError(
            f"Invalid {kind} payload: {_describe(e)}",
            details={"errors": e.errors(include_url=False, include_input=False)},
        ) from e
