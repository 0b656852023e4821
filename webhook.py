import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from errors import SignatureError, ValidationError


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
DEFAULT_MAX_AGE_SECONDS = 300
MAX_CLOCK_SKEW_SECONDS = 60  # tolerated sender clock drift ahead of ours


def sign_body(body: bytes, secret: str) -> str:
    """hex HMAC-SHA256 of the raw body, what the processor puts in the header."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """
    check the webhook signature against the raw body.
    raises SignatureError; never touches storage.
    """
    if not secret:
        logger.warning("[SECURITY] webhook secret not configured, rejecting payload")
        raise SignatureError("Webhook secret not configured")
    if not signature:
        logger.warning("[SECURITY] webhook without signature rejected")
        raise SignatureError("Missing webhook signature")

    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]

    expected = sign_body(body, secret)
    if not hmac.compare_digest(expected, provided.lower()):
        logger.warning("[SECURITY] invalid webhook signature")
        raise SignatureError("Invalid webhook signature")


class _PaymentEventBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    external_payment_id: str = Field(alias="externalPaymentId", min_length=1)
    membership_id: str = Field(alias="membershipId", min_length=1)
    company_id: str = Field(alias="companyId", min_length=1)
    sale_amount: Decimal = Field(alias="saleAmount")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")


class PaymentPending(_PaymentEventBase):
    event_type: Literal["payment.pending"] = Field(alias="eventType")


class PaymentSucceeded(_PaymentEventBase):
    event_type: Literal["payment.succeeded"] = Field(alias="eventType")


class PaymentFailed(_PaymentEventBase):
    event_type: Literal["payment.failed"] = Field(alias="eventType")


class PaymentRefunded(_PaymentEventBase):
    event_type: Literal["payment.refunded"] = Field(alias="eventType")


class PaymentChargeback(_PaymentEventBase):
    event_type: Literal["payment.chargeback"] = Field(alias="eventType")


PaymentEvent = Annotated[
    Union[PaymentPending, PaymentSucceeded, PaymentFailed, PaymentRefunded, PaymentChargeback],
    Field(discriminator="event_type"),
]

_event_adapter = TypeAdapter(PaymentEvent)


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    where = ".".join(str(part) for part in err.get("loc", ()))
    return f"{where}: {err.get('msg')}" if where else str(err.get("msg"))


def decode_event(
    body: bytes,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    now: Optional[datetime] = None,
):
    """
    decode a verified webhook body into one of the PaymentEvent variants.
    malformed json, unknown event types, missing fields, stale events and
    events dated more than MAX_CLOCK_SKEW_SECONDS ahead all raise ValidationError.
    """
    try:
        # floats as Decimal so 49.99 stays exact
        raw = json.loads(body, parse_float=Decimal)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Webhook body is not valid JSON")

    if not isinstance(raw, dict):
        raise ValidationError("Webhook body must be a JSON object")

    try:
        event = _event_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid payment event: {_first_error(e)}")

    if event.created_at is not None:
        now = now or datetime.now(timezone.utc)
        created_at = event.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        if now - created_at > timedelta(seconds=max_age_seconds):
            logger.warning(
                "[SECURITY] stale webhook for payment %s rejected (created %s)",
                event.external_payment_id,
                created_at.isoformat(),
            )
            raise ValidationError(f"Webhook event is older than {max_age_seconds} seconds")
        if created_at - now > timedelta(seconds=MAX_CLOCK_SKEW_SECONDS):
            logger.warning(
                "[SECURITY] future-dated webhook for payment %s rejected (created %s)",
                event.external_payment_id,
                created_at.isoformat(),
            )
            raise ValidationError("Webhook event is dated in the future")

    return event
