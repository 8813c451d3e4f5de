"""Typed views of the Stripe webhook events this service reacts to.

Stripe delivers loosely typed JSON; everything the synchronizers touch is
validated here into a closed set of event models discriminated on ``type``.
Event types outside that set are not modelled and parse to ``None``.
"""
import logging
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

logger = logging.getLogger(__name__)


class IntentState(str, Enum):
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    CANCELED = "canceled"
    SUCCEEDED = "succeeded"


# The client secret of an intent in one of these states can still be used to
# attach a payment method, confirm, or finish customer authentication.
REUSABLE_INTENT_STATES = frozenset({
    IntentState.REQUIRES_PAYMENT_METHOD,
    IntentState.REQUIRES_CONFIRMATION,
    IntentState.REQUIRES_ACTION,
})

# A dead intent that may be superseded by a new one for the same order.
REPLACEABLE_INTENT_STATES = frozenset({IntentState.CANCELED})


def parse_intent_state(value: Optional[str]) -> Optional[IntentState]:
    try:
        return IntentState(value)
    except ValueError:
        logger.warning(f"Unknown PaymentIntent status from Stripe: {value!r}")
        return None


# =========================
# STRIPE OBJECTS
# =========================
def _expandable_id(value):
    # Stripe sends either the id or the expanded object.
    if isinstance(value, dict):
        return value.get("id")
    return value


class Requirements(BaseModel):
    disabled_reason: Optional[str] = None
    currently_due: list[str] = []


class ExternalAccounts(BaseModel):
    data: list[dict] = []


class AccountObject(BaseModel):
    id: str
    object: str = "account"
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    requirements: Optional[Requirements] = None
    external_accounts: Optional[ExternalAccounts] = None

    @property
    def disabled_reason(self) -> Optional[str]:
        return self.requirements.disabled_reason if self.requirements else None

    @property
    def has_bank_account(self) -> bool:
        return bool(self.external_accounts and self.external_accounts.data)

    @property
    def is_payout_account(self) -> bool:
        return self.object == "account" and self.id.startswith("acct_")


class PaymentIntentObject(BaseModel):
    id: str
    amount: int = 0
    status: Optional[str] = None
    metadata: dict[str, str] = {}


class ChargeObject(BaseModel):
    id: str
    payment_intent: Optional[str] = None
    amount: int = 0
    amount_refunded: int = 0

    @field_validator("payment_intent", mode="before")
    @classmethod
    def expand_payment_intent(cls, value):
        return _expandable_id(value)


class RefundObject(BaseModel):
    id: str
    payment_intent: Optional[str] = None
    amount: int = 0
    status: Optional[str] = None

    @field_validator("payment_intent", mode="before")
    @classmethod
    def expand_payment_intent(cls, value):
        return _expandable_id(value)


class SubscriptionItem(BaseModel):
    id: str
    current_period_end: Optional[int] = None


class SubscriptionItems(BaseModel):
    data: list[SubscriptionItem] = []


class SubscriptionObject(BaseModel):
    id: str
    status: Optional[str] = None
    current_period_end: Optional[int] = None
    items: Optional[SubscriptionItems] = None
    metadata: dict[str, str] = {}

    @property
    def period_end(self) -> Optional[int]:
        # Newer API versions only carry the billing period on each item.
        if self.current_period_end:
            return self.current_period_end
        if self.items and self.items.data:
            return self.items.data[0].current_period_end
        return None


class InvoiceObject(BaseModel):
    id: str
    status: Optional[str] = None
    subscription: Optional[str] = None
    parent: Optional[dict] = None

    @field_validator("subscription", mode="before")
    @classmethod
    def expand_subscription(cls, value):
        return _expandable_id(value)

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        details = (self.parent or {}).get("subscription_details") or {}
        return _expandable_id(details.get("subscription"))


# =========================
# EVENTS
# =========================
class PaymentIntentData(BaseModel):
    object: PaymentIntentObject


class ChargeData(BaseModel):
    object: ChargeObject


class RefundData(BaseModel):
    object: RefundObject


class AccountData(BaseModel):
    object: AccountObject


class SubscriptionData(BaseModel):
    object: SubscriptionObject


class InvoiceData(BaseModel):
    object: InvoiceObject


class PaymentIntentSucceeded(BaseModel):
    id: str
    type: Literal["payment_intent.succeeded"]
    data: PaymentIntentData


class PaymentIntentFailed(BaseModel):
    id: str
    type: Literal["payment_intent.payment_failed"]
    data: PaymentIntentData


class ChargeRefunded(BaseModel):
    id: str
    type: Literal["charge.refunded"]
    data: ChargeData


class RefundUpdated(BaseModel):
    id: str
    type: Literal["refund.updated"]
    data: RefundData


class AccountUpdated(BaseModel):
    id: str
    type: Literal["account.updated"]
    data: AccountData


class SubscriptionChanged(BaseModel):
    id: str
    type: Literal[
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    ]
    data: SubscriptionData


class InvoiceChanged(BaseModel):
    id: str
    type: Literal[
        "invoice.payment_succeeded",
        "invoice.payment_failed",
        "invoice.payment_action_required",
        "invoice.voided",
        "invoice.marked_uncollectible",
    ]
    data: InvoiceData


PaymentEvent = Union[PaymentIntentSucceeded, PaymentIntentFailed, ChargeRefunded, RefundUpdated]
SubscriptionEvent = Union[SubscriptionChanged, InvoiceChanged]
GatewayEvent = Annotated[Union[PaymentEvent, AccountUpdated, SubscriptionEvent], Field(discriminator="type")]

PAYMENT_EVENT_TYPES = frozenset({
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "charge.refunded",
    "refund.updated",
})
ACCOUNT_EVENT_TYPES = frozenset({"account.updated"})
SUBSCRIPTION_EVENT_TYPES = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
    "invoice.payment_action_required",
    "invoice.voided",
    "invoice.marked_uncollectible",
})

_event_adapter = TypeAdapter(GatewayEvent)


def _parse(raw: dict, accepted_types: frozenset):
    event_type = raw.get("type")
    if event_type not in accepted_types:
        logger.info(f"Stripe event type not handled, ignoring: {event_type} ({raw.get('id')})")
        return None
    try:
        return _event_adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning(f"Malformed Stripe event {raw.get('id')} ({event_type}): {e.error_count()} errors")
        return None


def parse_payment_event(raw: dict) -> Optional[PaymentEvent]:
    return _parse(raw, PAYMENT_EVENT_TYPES)


def parse_account_event(raw: dict) -> Optional[AccountUpdated]:
    event = _parse(raw, ACCOUNT_EVENT_TYPES)
    if event is not None and not event.data.object.is_payout_account:
        logger.info(f"Ignoring non-account object in {event.id}: {event.data.object.id}")
        return None
    return event


def parse_subscription_event(raw: dict) -> Optional[SubscriptionEvent]:
    return _parse(raw, SUBSCRIPTION_EVENT_TYPES)
