from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.utcnow()


class EventKind(str, Enum):
    pageview = "PageView"
    contact = "Contact"
    initiate_checkout = "InitiateCheckout"
    purchase = "Purchase"


class ChargeVariant(str, Enum):
    created = "created"
    completed = "completed"


class DeliveryStatus(str, Enum):
    accepted = "accepted"
    rejected = "rejected"
    network_error = "network_error"
    skipped = "skipped"


class MessageChannel(str, Enum):
    chat = "chat"


class Contact(BaseModel):
    phone: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class Attribution(BaseModel):
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    fbclid: Optional[str] = None
    gclid: Optional[str] = None
    msclkid: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    server_ip: Optional[str] = None


class FunnelFlags(BaseModel):
    has_pageview: bool = False
    has_contact: bool = False
    has_initiate_checkout: bool = False
    has_purchase: bool = False

    def union(self, other: "FunnelFlags") -> "FunnelFlags":
        return FunnelFlags(
            has_pageview=self.has_pageview or other.has_pageview,
            has_contact=self.has_contact or other.has_contact,
            has_initiate_checkout=self.has_initiate_checkout or other.has_initiate_checkout,
            has_purchase=self.has_purchase or other.has_purchase,
        )


FLAG_FOR_KIND = {
    EventKind.pageview: "has_pageview",
    EventKind.contact: "has_contact",
    EventKind.initiate_checkout: "has_initiate_checkout",
    EventKind.purchase: "has_purchase",
}


class SessionRecord(BaseModel):
    id: str
    client_ref: Optional[str] = None
    delivery_id: Optional[str] = None
    session_id: Optional[str] = None
    contact: Contact = Field(default_factory=Contact)
    attribution: Attribution = Field(default_factory=Attribution)
    flags: FunnelFlags = Field(default_factory=FunnelFlags)
    click_number: Optional[int] = None
    message: Optional[str] = None
    last_message_text: Optional[str] = None
    last_purchase_status: Optional[str] = None
    last_purchase_value: Optional[float] = None
    pageview_at_utc: Optional[datetime] = None
    chat_received_at_utc: Optional[datetime] = None
    last_checkout_at_utc: Optional[datetime] = None
    last_purchase_at_utc: Optional[datetime] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class SessionFields(BaseModel):
    """Partial Session facts carried from an ingestor into the correlator."""

    client_ref: Optional[str] = None
    session_id: Optional[str] = None
    contact: Contact = Field(default_factory=Contact)
    attribution: Attribution = Field(default_factory=Attribution)
    flags: FunnelFlags = Field(default_factory=FunnelFlags)
    message: Optional[str] = None


class CounterRecord(BaseModel):
    key: str
    value: int
    created_at_utc: datetime
    updated_at_utc: datetime


class MessageRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    channel: MessageChannel
    text: str
    phone: Optional[str] = None
    client_ref: Optional[str] = None
    server_ip: Optional[str] = None
    created_at_utc: datetime


class ChargeRecord(BaseModel):
    transaction_id: str
    correlation_id: Optional[str] = None
    variant: ChargeVariant
    status: Optional[str] = None
    value: Optional[float] = None
    value_minor: Optional[int] = None
    currency: str = "BRL"
    customer: Contact = Field(default_factory=Contact)
    client_ref: Optional[str] = None
    delivery_id: Optional[str] = None
    session_id: Optional[str] = None
    server_ip: Optional[str] = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    created_at_utc: datetime
    updated_at_utc: datetime


class DeliveryRecord(BaseModel):
    id: str
    kind: EventKind
    event_id: str
    client_ref: Optional[str] = None
    session_record_id: Optional[str] = None
    http_status: Optional[int] = None
    created_at_utc: datetime


class DeliveryOutcome(BaseModel):
    kind: EventKind
    status: DeliveryStatus
    event_id: Optional[str] = None
    http_status: Optional[int] = None
    attempts: int = 0
    minimal_retry: bool = False
    error: Optional[str] = None
    recorded_at_utc: datetime = Field(default_factory=utc_now)

    @property
    def reachable(self) -> bool:
        return self.http_status is not None


class UserData(BaseModel):
    client_ip_address: Optional[str] = None
    client_user_agent: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None
    ph: Optional[list[str]] = None
    em: Optional[list[str]] = None
    fn: Optional[list[str]] = None
    ln: Optional[list[str]] = None
    external_id: Optional[list[str]] = None


class CanonicalEvent(BaseModel):
    event_name: EventKind
    event_id: str
    event_time: int
    action_source: str = "website"
    event_source_url: Optional[str] = None
    user_data: UserData = Field(default_factory=UserData)
    custom_data: dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json", exclude_none=True)
        if not payload.get("user_data"):
            payload.pop("user_data", None)
        custom = {key: value for key, value in self.custom_data.items() if value not in (None, "")}
        if custom:
            payload["custom_data"] = custom
        else:
            payload.pop("custom_data", None)
        return payload


class ClientRefResponse(BaseModel):
    client_ref: int


class TrackEventRequest(BaseModel):
    event_id: str = Field(min_length=1, max_length=200)
    client_ref: Optional[str] = Field(default=None, max_length=64)
    session_id: Optional[str] = Field(default=None, max_length=200)
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    fbclid: Optional[str] = None
    gclid: Optional[str] = None
    msclkid: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    message: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None

    @field_validator("client_ref", mode="before")
    @classmethod
    def coerce_client_ref(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class TrackEventResponse(BaseModel):
    client_ref: Optional[str]
    click_number: Optional[int]
    deduplicated: bool
    message: Optional[str] = None
    contact_phone: Optional[str] = None


class ChatWebhookResponse(BaseModel):
    client_ref: Optional[str]
    phone: Optional[str]
    sessions_updated: int = 0
    deliveries: list[DeliveryOutcome] = Field(default_factory=list)


class ChargeWebhookResponse(BaseModel):
    status: str
    transaction_id: Optional[str] = None
    client_ref: Optional[str] = None
    value: Optional[float] = None
    deliveries: list[DeliveryOutcome] = Field(default_factory=list)


class FunnelRatios(BaseModel):
    initiate_per_pageview: float
    purchase_per_initiate: float


class FunnelCounts(BaseModel):
    pageview: int = 0
    initiate_checkout: int = 0
    purchase: int = 0


class CampaignFunnel(BaseModel):
    campaign: str
    counts: FunnelCounts
    ratios: FunnelRatios


class FunnelReportResponse(BaseModel):
    start: datetime
    end: datetime
    totals: FunnelCounts
    ratios: FunnelRatios
    per_campaign: list[CampaignFunnel]

