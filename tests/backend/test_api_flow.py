from __future__ import annotations

from datetime import timedelta

from backend.app.models import utc_now


def build_click_payload(event_id: str, **overrides) -> dict:
    payload = {
        "event_id": event_id,
        "session_id": "browser-1",
        "utm_source": "facebook",
        "utm_campaign": "launch",
        "fbp": "fb.1.1700000000.123",
        "page_url": "https://example.com/lp",
        "user_agent": "Mozilla/5.0",
    }
    payload.update(overrides)
    return payload


def build_charge_payload(client_ref: str, transaction_id: str, value: int = 1999) -> dict:
    return {
        "event": "OPENPIX:CHARGE_COMPLETED",
        "charge": {
            "value": value,
            "status": "COMPLETED",
            "transactionID": transaction_id,
            "customer": {"name": "Ana Souza", "email": "ana@example.com"},
            "additionalInfo": [{"key": "cliente", "value": client_ref}],
        },
    }


def test_next_client_ref_starts_at_configured_start(client) -> None:
    first = client.get("/api/next-client-ref")
    second = client.get("/api/next-client-ref")
    assert first.status_code == 200
    assert first.json() == {"client_ref": 23000}
    assert second.json() == {"client_ref": 23001}


def test_next_client_ref_honours_start_override(make_client) -> None:
    client = make_client(CLIENT_REF_START="23001")
    assert client.get("/api/next-client-ref").json() == {"client_ref": 23001}


def test_track_is_idempotent_per_event_id(client) -> None:
    first = client.post("/api/track", json=build_click_payload("evt-1"))
    assert first.status_code == 200
    first_json = first.json()
    assert first_json["client_ref"] == "23000"
    assert first_json["click_number"] == 1
    assert first_json["deduplicated"] is False
    assert first_json["message"].endswith("cliente#23000")

    again = client.post("/api/track", json=build_click_payload("evt-1", utm_content="ad-2"))
    again_json = again.json()
    assert again_json["deduplicated"] is True
    assert again_json["client_ref"] == "23000"
    assert again_json["click_number"] == 1

    repeat_click = client.post(
        "/api/track", json=build_click_payload("evt-2", client_ref=23000)
    )
    assert repeat_click.json()["click_number"] == 2
    assert repeat_click.json()["client_ref"] == "23000"


def test_track_rejects_malformed_payloads(client) -> None:
    broken = client.post(
        "/api/track", content=b"{not json", headers={"content-type": "application/json"}
    )
    assert broken.status_code == 400

    missing_event_id = client.post("/api/track", json={"utm_source": "facebook"})
    assert missing_event_id.status_code == 400


def test_chat_message_attaches_phone_to_client_ref(client) -> None:
    click = client.post("/api/track", json=build_click_payload("evt-chat")).json()
    ref = click["client_ref"]

    chat = client.post(
        "/webhooks/chat",
        json={"text": f"Olá! Quero mais informações. cliente#{ref}", "from": "+55 11 98888-7777"},
    )
    assert chat.status_code == 200
    data = chat.json()
    assert data["client_ref"] == ref
    assert data["phone"] == "+5511988887777"
    assert data["sessions_updated"] == 1
    assert [item["status"] for item in data["deliveries"]] == ["skipped", "skipped"]

    store = client.app.state.store
    [session] = store.find_sessions(client_ref=ref)
    assert session.contact.phone == "+5511988887777"
    assert session.last_message_text.endswith(f"cliente#{ref}")
    assert store.list_messages(client_ref=ref)[0].phone == "+5511988887777"


def test_chat_before_click_converges_to_one_session(delivering_client) -> None:
    chat = delivering_client.post("/webhooks/chat?text=oi%20cliente%2324000&phone=5511977776666")
    assert chat.status_code == 200
    assert chat.json()["client_ref"] == "24000"

    click = delivering_client.post(
        "/api/track", json=build_click_payload("evt-late", client_ref="24000")
    ).json()
    assert click["client_ref"] == "24000"
    assert click["click_number"] == 1
    assert click["deduplicated"] is False

    completed = delivering_client.post(
        "/webhooks/charge/completed", json=build_charge_payload("24000", "tx-late")
    )
    assert completed.json()["status"] == "processed"

    store = delivering_client.app.state.store
    [session] = store.find_sessions(client_ref="24000")
    assert session.delivery_id == "evt-late"
    assert session.contact.phone == "5511977776666"
    assert session.attribution.utm_campaign == "launch"
    assert session.flags.has_purchase is True

    body = delivering_client.get("/api/funnel").json()
    assert body["totals"]["purchase"] == 1
    assert body["totals"]["pageview"] == 1
    assert [row["campaign"] for row in body["per_campaign"]] == ["launch"]


def test_second_click_for_linked_reference_gets_its_own_session(client) -> None:
    client.post("/webhooks/chat", json={"text": "cliente#24100", "from": "5511"})
    client.post("/api/track", json=build_click_payload("evt-a", client_ref="24100"))
    second = client.post(
        "/api/track", json=build_click_payload("evt-b", client_ref="24100")
    ).json()

    assert second["click_number"] == 2
    assert len(client.app.state.store.find_sessions(client_ref="24100")) == 2


def test_fractional_charge_value_is_rejected(client) -> None:
    payload = build_charge_payload("23000", "tx-frac")
    payload["charge"]["value"] = 19.99
    response = client.post("/webhooks/charge/completed", json=payload)
    assert response.status_code == 400
    assert client.app.state.store.get_charge("tx-frac") is None


def test_full_funnel_is_delivered_and_reported(delivering_client, meta_api) -> None:
    click = delivering_client.post(
        "/api/track", json=build_click_payload("evt-funnel")
    ).json()
    ref = click["client_ref"]

    created = delivering_client.post(
        "/webhooks/charge/created", json=build_charge_payload(ref, "tx-1")
    )
    assert created.status_code == 200
    assert created.json()["deliveries"][0]["kind"] == "InitiateCheckout"

    completed = delivering_client.post(
        "/webhooks/charge/completed", json=build_charge_payload(ref, "tx-1")
    )
    completed_json = completed.json()
    assert completed_json["status"] == "processed"
    assert completed_json["client_ref"] == ref
    assert completed_json["value"] == 19.99
    assert completed_json["deliveries"][0]["status"] == "accepted"

    names = [event["event_name"] for event in meta_api.events()]
    assert names == ["PageView", "InitiateCheckout", "Purchase"]
    purchase = meta_api.events()[-1]
    assert purchase["custom_data"]["value"] == 19.99
    assert purchase["custom_data"]["currency"] == "BRL"
    assert purchase["event_id"] == "evt-funnel"

    today = utc_now().date()
    report = delivering_client.get(
        f"/api/funnel?start={(today - timedelta(days=1)).isoformat()}&end={today.isoformat()}"
    )
    assert report.status_code == 200
    body = report.json()
    assert body["totals"] == {"pageview": 1, "initiate_checkout": 1, "purchase": 1}
    assert body["per_campaign"][0]["campaign"] == "launch"
    assert body["ratios"]["initiate_per_pageview"] == 100.0

    outcomes = delivering_client.get("/api/deliveries/outcomes").json()
    assert set(outcomes) == {"PageView", "InitiateCheckout", "Purchase"}


def test_charge_without_any_match_is_reported_unmatched(client) -> None:
    response = client.post(
        "/webhooks/payment",
        json={"transaction_id": "t-unknown", "status": "paid", "value": 1000},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "unmatched"
    assert client.app.state.store.get_charge("t-unknown").variant.value == "completed"


def test_flat_payment_links_by_event_id(client) -> None:
    client.post("/api/track", json=build_click_payload("evt-pay"))
    response = client.post(
        "/webhooks/payment",
        json={
            "order_id": "o-1",
            "transaction_id": "t-1",
            "status": "approved",
            "value": 4990,
            "event_id": "evt-pay",
        },
    )
    assert response.json()["status"] == "processed"
    session = client.app.state.store.get_session_by_delivery("evt-pay")
    assert session.last_purchase_status == "approved"
    assert session.last_purchase_value == 49.9


def test_funnel_rejects_inverted_window(client) -> None:
    response = client.get("/api/funnel?start=2026-03-10&end=2026-03-01")
    assert response.status_code == 400
