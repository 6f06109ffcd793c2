from __future__ import annotations

import pytest

from backend.app.models import ChargeVariant
from backend.app.services.ingestors import (
    ChargeIngestor,
    ChatMessageIngestor,
    MalformedPayloadError,
    TrackingIngestor,
    session_fields,
)
from backend.app.services.normalize import extract_client_ref, normalize_phone, phone_variants


def test_extract_client_ref_is_case_insensitive_first_match() -> None:
    assert extract_client_ref("Olá! Quero mais informações. CLIENTE#23001 e cliente#9") == "23001"
    assert extract_client_ref("cliente#ab_c-1!") == "ab_c-1"
    assert extract_client_ref("sem referencia") is None
    assert extract_client_ref(None) is None


def test_phone_normalization_keeps_leading_plus() -> None:
    assert normalize_phone("+55 (11) 98888-7777") == "+5511988887777"
    assert normalize_phone("11 98888 7777") == "11988887777"
    assert normalize_phone("abc") is None
    assert phone_variants("+5511") == {"5511", "+5511"}


def test_chat_ingestor_prefers_embedded_reference() -> None:
    facts = ChatMessageIngestor().parse(
        {"text": "oi cliente#23001", "from": "+55 11 9999-0000", "client_ref": "1"}, {}
    )
    assert facts.client_ref_candidate == "23001"
    assert facts.phone == "+551199990000"
    assert facts.free_text == "oi cliente#23001"


def test_chat_ingestor_reads_query_parameters() -> None:
    facts = ChatMessageIngestor().parse(None, {"message": "hello", "phone": "5511", "id": "77"})
    assert facts.client_ref_candidate == "77"
    assert facts.phone == "5511"


def test_chat_ingestor_rejects_non_object_body() -> None:
    with pytest.raises(MalformedPayloadError):
        ChatMessageIngestor().parse(["not", "an", "object"], {})


def test_charge_ingestor_nested_shape() -> None:
    payload = {
        "event": "OPENPIX:CHARGE_COMPLETED",
        "charge": {
            "value": 1999,
            "status": "COMPLETED",
            "correlationID": "corr-1",
            "transactionID": "tx-1",
            "customer": {"name": "Ana Souza", "email": "ana@example.com", "phone": "+5511988887777"},
            "additionalInfo": [
                {"key": "Produto", "value": "Curso"},
                {"key": "Cliente", "value": "23005"},
            ],
        },
    }

    facts = ChargeIngestor(ChargeVariant.completed).parse(payload, {})

    assert facts.client_ref_candidate == "23005"
    assert facts.phone == "+5511988887777"
    assert facts.name == "Ana Souza"
    assert facts.provider_facts["transaction_id"] == "tx-1"
    assert facts.provider_facts["value_minor"] == 1999
    assert facts.provider_facts["value"] == 19.99
    assert facts.provider_facts["variant"] == ChargeVariant.completed


def test_charge_ingestor_reads_reference_pattern_from_quantity_entry() -> None:
    payload = {
        "charge": {
            "value": "500",
            "identifier": "id-9",
            "additionalInfo": [{"key": "quantidade", "value": "1 unidade cliente#abc12"}],
        }
    }
    facts = ChargeIngestor(ChargeVariant.created).parse(payload, {})
    assert facts.client_ref_candidate == "abc12"
    assert facts.provider_facts["transaction_id"] == "id-9"
    assert facts.provider_facts["value"] == 5.0


def test_charge_ingestor_flat_payment_shape_infers_variant() -> None:
    paid = ChargeIngestor().parse(
        {"transaction_id": "t-1", "status": "approved", "value": 4990, "event_id": "evt-1"}, {}
    )
    assert paid.provider_facts["variant"] == ChargeVariant.completed
    assert paid.delivery_id == "evt-1"
    assert paid.provider_facts["value"] == 49.9

    pending = ChargeIngestor().parse({"order_id": "o-1", "status": "pending"}, {})
    assert pending.provider_facts["variant"] == ChargeVariant.created
    assert pending.provider_facts["transaction_id"] == "o-1"


def test_charge_ingestor_rejects_bad_values() -> None:
    with pytest.raises(MalformedPayloadError):
        ChargeIngestor().parse({"charge": {"value": "12,50"}}, {})
    with pytest.raises(MalformedPayloadError):
        ChargeIngestor().parse({"unrelated": True}, {})
    with pytest.raises(MalformedPayloadError):
        ChargeIngestor().parse({"charge": {"value": 19.99}}, {})
    with pytest.raises(MalformedPayloadError):
        ChargeIngestor().parse({"transaction_id": "t-1", "value": "49.5"}, {})


def test_charge_ingestor_accepts_integral_values() -> None:
    assert ChargeIngestor().parse({"charge": {"value": 1999.0}}, {}).provider_facts[
        "value_minor"
    ] == 1999
    flat = ChargeIngestor().parse({"transaction_id": "t-1", "value": "4990"}, {})
    assert flat.provider_facts["value_minor"] == 4990
    assert flat.provider_facts["value"] == 49.9


def test_tracking_ingestor_requires_event_id() -> None:
    with pytest.raises(MalformedPayloadError):
        TrackingIngestor().parse({"utm_source": "fb"}, {})


def test_tracking_ingestor_builds_session_fields() -> None:
    facts = TrackingIngestor().parse(
        {
            "event_id": "evt-9",
            "utm_campaign": "launch",
            "fbp": "fb.1.1",
            "message": "Olá cliente#321",
            "phone": "+55 11 90000-0000",
        },
        {},
    )
    fields = session_fields(facts, server_ip="10.0.0.1")

    assert facts.delivery_id == "evt-9"
    assert fields.client_ref == "321"
    assert fields.attribution.utm_campaign == "launch"
    assert fields.attribution.server_ip == "10.0.0.1"
    assert fields.contact.phone == "+5511900000000"
