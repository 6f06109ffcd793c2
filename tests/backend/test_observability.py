from __future__ import annotations

from backend.app.models import DeliveryOutcome, DeliveryStatus, EventKind
from backend.app.observability import DeliveryOutcomeRegistry


def test_metrics_endpoint_exposes_counters(client) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "funnel_tracker_requests_total" in body
    assert "funnel_tracker_requests_5xx_total" in body
    assert "funnel_tracker_deliveries_total" in body


def test_readiness_endpoint(client) -> None:
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"


def test_outcome_registry_keeps_last_outcome_per_kind() -> None:
    registry = DeliveryOutcomeRegistry()
    registry.record(DeliveryOutcome(kind=EventKind.purchase, status=DeliveryStatus.rejected, http_status=400))
    registry.record(DeliveryOutcome(kind=EventKind.purchase, status=DeliveryStatus.accepted, http_status=200))
    registry.record(DeliveryOutcome(kind=EventKind.contact, status=DeliveryStatus.skipped))

    last = registry.last_outcomes()
    assert last["Purchase"].status == DeliveryStatus.accepted
    assert last["Contact"].status == DeliveryStatus.skipped
    assert registry.counts()[("Purchase", "rejected")] == 1
    assert 'funnel_tracker_deliveries_total{kind="Purchase",status="accepted"} 1' in (
        registry.to_prometheus()
    )


def test_delivery_outcomes_surface_in_metrics(delivering_client, meta_api) -> None:
    meta_api.statuses = [400, 200]
    delivering_client.post("/api/track", json={"event_id": "evt-metrics"})

    body = delivering_client.get("/metrics").text
    assert 'funnel_tracker_deliveries_total{kind="PageView",status="accepted"} 1' in body

    outcomes = delivering_client.get("/api/deliveries/outcomes").json()
    assert outcomes["PageView"]["minimal_retry"] is True
    assert outcomes["PageView"]["attempts"] == 2
