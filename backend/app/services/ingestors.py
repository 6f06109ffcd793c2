from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Protocol

from pydantic import ValidationError

from backend.app.models import (
    Attribution,
    ChargeVariant,
    Contact,
    SessionFields,
    TrackEventRequest,
)
from backend.app.services.normalize import (
    clean_text,
    extract_client_ref,
    is_bare_token,
    minor_to_decimal,
    normalize_phone,
)

PAID_STATUSES = {"paid", "completed", "approved"}
CHARGE_ID_KEYS = ("transactionID", "correlationID", "identifier", "globalID")
REFERENCE_INFO_KEYS = ("cliente", "quantidade")


class MalformedPayloadError(Exception):
    pass


@dataclass
class IngestedFacts:
    """Canonical facts extracted from one inbound payload."""

    phone: Optional[str] = None
    client_ref_candidate: Optional[str] = None
    free_text: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    delivery_id: Optional[str] = None
    session_id: Optional[str] = None
    provider_facts: dict[str, Any] = field(default_factory=dict)

    @property
    def contact(self) -> Contact:
        return Contact(phone=self.phone, email=self.email, name=self.name)


class Ingestor(Protocol):
    def parse(self, body: Any, query: Mapping[str, str]) -> IngestedFacts: ...


def _require_object(body: Any) -> dict[str, Any]:
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise MalformedPayloadError("payload must be a json object")
    return body


def _first(sources: list[Mapping[str, Any]], *keys: str) -> Optional[str]:
    for source in sources:
        for key in keys:
            value = clean_text(source.get(key))
            if value:
                return value
    return None


class ChatMessageIngestor:
    """Chat-provider inbound message. Fields come from the body, else the query string."""

    def parse(self, body: Any, query: Mapping[str, str]) -> IngestedFacts:
        sources = [_require_object(body), dict(query)]
        text = _first(sources, "text", "message")
        phone = normalize_phone(_first(sources, "from", "phone"))
        client_ref = extract_client_ref(text) or _first(sources, "client_ref", "id")
        return IngestedFacts(
            phone=phone,
            client_ref_candidate=client_ref,
            free_text=text,
        )


def _reference_from_additional_info(entries: Any) -> Optional[str]:
    if not isinstance(entries, list):
        return None
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        key = str(entry.get("key") or "").lower()
        if not any(marker in key for marker in REFERENCE_INFO_KEYS):
            continue
        value = clean_text(entry.get("value"))
        if not value:
            continue
        embedded = extract_client_ref(value)
        if embedded:
            return embedded
        if is_bare_token(value):
            return value
    return None


def charge_variant_for_status(status: Optional[str]) -> ChargeVariant:
    if status and status.strip().lower() in PAID_STATUSES:
        return ChargeVariant.completed
    return ChargeVariant.created


class ChargeIngestor:
    def __init__(self, variant: Optional[ChargeVariant] = None) -> None:
        self.variant = variant

    def parse(self, body: Any, query: Mapping[str, str]) -> IngestedFacts:
        data = _require_object(body)
        if isinstance(data.get("charge"), dict):
            facts = self._parse_nested(data)
        elif any(key in data for key in ("transaction_id", "order_id", "value", "status")):
            facts = self._parse_flat(data)
        else:
            raise MalformedPayloadError("charge payload missing charge object")

        status = facts.provider_facts.get("status")
        facts.provider_facts["variant"] = self.variant or charge_variant_for_status(status)
        return facts

    def _parse_nested(self, data: dict[str, Any]) -> IngestedFacts:
        charge = data["charge"]
        customer = charge.get("customer") if isinstance(charge.get("customer"), dict) else {}
        transaction_id = _first([charge], *CHARGE_ID_KEYS)
        comment = clean_text(charge.get("comment"))
        client_ref = _reference_from_additional_info(charge.get("additionalInfo"))
        if not client_ref:
            client_ref = extract_client_ref(comment)
        value_minor = self._minor(charge.get("value"))
        return IngestedFacts(
            phone=normalize_phone(customer.get("phone")),
            email=clean_text(customer.get("email")),
            name=clean_text(customer.get("name")),
            client_ref_candidate=client_ref,
            free_text=comment,
            provider_facts={
                "event": clean_text(data.get("event")),
                "transaction_id": transaction_id,
                "correlation_id": clean_text(charge.get("correlationID")),
                "status": clean_text(charge.get("status")),
                "value_minor": value_minor,
                "value": minor_to_decimal(value_minor),
                "currency": clean_text(charge.get("currency")),
            },
        )

    def _parse_flat(self, data: dict[str, Any]) -> IngestedFacts:
        """Flat payment shape. ``value`` is in minor units (centavos), like the nested charge,
        so 4990 is stored and reported as 49.90.
        """
        value_minor = self._minor(data.get("value"))
        return IngestedFacts(
            phone=normalize_phone(data.get("phone")),
            email=clean_text(data.get("email")),
            client_ref_candidate=clean_text(data.get("client_ref")),
            delivery_id=clean_text(data.get("event_id")),
            session_id=clean_text(data.get("session_id")),
            provider_facts={
                "transaction_id": clean_text(data.get("transaction_id"))
                or clean_text(data.get("order_id")),
                "correlation_id": clean_text(data.get("order_id")),
                "status": clean_text(data.get("status")),
                "value_minor": value_minor,
                "value": minor_to_decimal(value_minor),
                "currency": clean_text(data.get("currency")),
            },
        )

    @staticmethod
    def _minor(raw: Any) -> Optional[int]:
        """Charge values are whole minor units. Fractions are refused, never truncated."""
        if raw is None or raw == "":
            return None
        if isinstance(raw, bool):
            raise MalformedPayloadError(f"charge value must be an integer: {raw!r}")
        if isinstance(raw, int):
            return raw
        try:
            value = Decimal(str(raw).strip())
        except InvalidOperation as exc:
            raise MalformedPayloadError(f"charge value must be an integer: {raw!r}") from exc
        if not value.is_finite() or value != value.to_integral_value():
            raise MalformedPayloadError(f"charge value must be an integer: {raw!r}")
        return int(value)


class TrackingIngestor:
    def parse(self, body: Any, query: Mapping[str, str]) -> IngestedFacts:
        data = _require_object(body)
        if "event_id" not in data and data.get("delivery_id"):
            data = {**data, "event_id": data["delivery_id"]}
        try:
            request = TrackEventRequest.model_validate(data)
        except ValidationError as exc:
            raise MalformedPayloadError(f"invalid track payload: {exc.errors()}") from exc
        return self.from_request(request)

    @staticmethod
    def from_request(request: TrackEventRequest) -> IngestedFacts:
        client_ref = clean_text(request.client_ref) or extract_client_ref(request.message)
        attribution = Attribution(
            utm_source=clean_text(request.utm_source),
            utm_medium=clean_text(request.utm_medium),
            utm_campaign=clean_text(request.utm_campaign),
            utm_content=clean_text(request.utm_content),
            utm_term=clean_text(request.utm_term),
            fbclid=clean_text(request.fbclid),
            gclid=clean_text(request.gclid),
            msclkid=clean_text(request.msclkid),
            fbc=clean_text(request.fbc),
            fbp=clean_text(request.fbp),
            page_url=clean_text(request.page_url),
            referrer=clean_text(request.referrer),
            user_agent=clean_text(request.user_agent),
        )
        return IngestedFacts(
            phone=normalize_phone(request.phone),
            email=clean_text(request.email),
            name=clean_text(request.name),
            client_ref_candidate=client_ref,
            free_text=clean_text(request.message),
            delivery_id=request.event_id.strip(),
            session_id=clean_text(request.session_id),
            provider_facts={"attribution": attribution},
        )


def session_fields(facts: IngestedFacts, *, server_ip: Optional[str] = None) -> SessionFields:
    attribution = facts.provider_facts.get("attribution") or Attribution()
    if server_ip:
        attribution = attribution.model_copy(update={"server_ip": server_ip})
    return SessionFields(
        client_ref=facts.client_ref_candidate,
        session_id=facts.session_id,
        contact=facts.contact,
        attribution=attribution,
        message=facts.free_text,
    )
