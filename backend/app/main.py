from __future__ import annotations

import json
import logging
from datetime import date, timedelta
from typing import Any, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from backend.app.auth import REPORTING_ROLES, AuthContext, require_roles
from backend.app.models import (
    ChargeVariant,
    ChargeWebhookResponse,
    ChatWebhookResponse,
    ClientRefResponse,
    DeliveryOutcome,
    FunnelReportResponse,
    TrackEventResponse,
    utc_now,
)
from backend.app.observability import (
    DeliveryOutcomeRegistry,
    MetricsRegistry,
    configure_logging,
    observe_request,
)
from backend.app.persistence import SqlitePersistence
from backend.app.services.channel_events import (
    ChannelContext,
    process_charge_event,
    process_chat_message,
    process_track_event,
)
from backend.app.services.correlator import IdentityCorrelator
from backend.app.services.delivery import EventDeliveryPipeline
from backend.app.services.funnel import FunnelAggregator, window_bounds
from backend.app.services.ingestors import (
    ChargeIngestor,
    ChatMessageIngestor,
    Ingestor,
    MalformedPayloadError,
    TrackingIngestor,
)
from backend.app.services.sequence import GLOBAL_CLIENT_REF_KEY, SequenceAllocator
from backend.app.services.webhooks import (
    SignatureVerificationError,
    verify_chat_signature,
    verify_payment_signature,
)
from backend.app.settings import Settings, load_settings
from backend.app.store import InMemoryStore, StoreUnavailableError

logger = logging.getLogger("funnel_tracker.api")


def create_app(transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    app = FastAPI(title="Funnel Tracker API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = SqlitePersistence(settings.database_url) if settings.persistence_enabled else None
    store = InMemoryStore(persistence=persistence)
    allocator = SequenceAllocator(
        store, floors={GLOBAL_CLIENT_REF_KEY: settings.client_ref_seed}
    )
    allocator.bootstrap(
        GLOBAL_CLIENT_REF_KEY, settings.client_ref_seed, settings.client_ref_force
    )
    correlator = IdentityCorrelator(store, allocator)
    outcomes = DeliveryOutcomeRegistry()
    pipeline = EventDeliveryPipeline(
        settings=settings,
        store=store,
        correlator=correlator,
        sink=outcomes,
        transport=transport,
    )

    app.state.store = store
    app.state.settings = settings
    app.state.metrics = MetricsRegistry()
    app.state.outcomes = outcomes
    app.state.allocator = allocator
    app.state.funnel = FunnelAggregator()
    app.state.channels = ChannelContext(
        settings=settings,
        store=store,
        correlator=correlator,
        pipeline=pipeline,
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_channels(request: Request) -> ChannelContext:
    return request.app.state.channels


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def _decode_body(raw_body: bytes) -> Any:
    if not raw_body.strip():
        return None
    try:
        return json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError("invalid json payload") from exc


def _bad_request(exc: MalformedPayloadError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


async def _parse(request: Request, ingestor: Ingestor, raw_body: Optional[bytes] = None):
    if raw_body is None:
        raw_body = await request.body()
    try:
        return ingestor.parse(_decode_body(raw_body), request.query_params)
    except MalformedPayloadError as exc:
        raise _bad_request(exc) from exc


async def _charge_webhook(
    request: Request, variant: Optional[ChargeVariant]
) -> ChargeWebhookResponse:
    settings = get_settings(request)
    raw_body = await request.body()
    try:
        verify_payment_signature(
            headers=request.headers,
            raw_body=raw_body,
            secret=settings.payment_webhook_secret,
        )
    except SignatureVerificationError as exc:
        logger.warning("webhook_signature_rejected provider=payment error=%s", exc)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    facts = await _parse(request, ChargeIngestor(variant), raw_body)
    return await process_charge_event(
        get_channels(request), facts, server_ip=client_ip(request)
    )


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        if settings.persistence_enabled and not get_store(request).ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        body = request.app.state.metrics.to_prometheus()
        body += request.app.state.outcomes.to_prometheus()
        return PlainTextResponse(body)

    @router.get("/api/next-client-ref", response_model=ClientRefResponse)
    def next_client_ref(request: Request) -> ClientRefResponse:
        allocator: SequenceAllocator = request.app.state.allocator
        try:
            value = allocator.allocate_next(GLOBAL_CLIENT_REF_KEY)
        except StoreUnavailableError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=str(exc),
            ) from exc
        return ClientRefResponse(client_ref=value)

    @router.post("/api/track", response_model=TrackEventResponse)
    async def track(request: Request) -> TrackEventResponse:
        facts = await _parse(request, TrackingIngestor())
        return await process_track_event(
            get_channels(request), facts, server_ip=client_ip(request)
        )

    @router.post("/webhooks/chat", response_model=ChatWebhookResponse)
    async def chat_webhook(request: Request) -> ChatWebhookResponse:
        settings = get_settings(request)
        raw_body = await request.body()
        try:
            verify_chat_signature(
                headers=request.headers,
                raw_body=raw_body,
                secret=settings.chat_webhook_secret,
            )
        except SignatureVerificationError as exc:
            logger.warning("webhook_signature_rejected provider=chat error=%s", exc)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        facts = await _parse(request, ChatMessageIngestor(), raw_body)
        return await process_chat_message(
            get_channels(request), facts, server_ip=client_ip(request)
        )

    @router.post("/webhooks/charge/created", response_model=ChargeWebhookResponse)
    async def charge_created(request: Request) -> ChargeWebhookResponse:
        return await _charge_webhook(request, ChargeVariant.created)

    @router.post("/webhooks/charge/completed", response_model=ChargeWebhookResponse)
    async def charge_completed(request: Request) -> ChargeWebhookResponse:
        return await _charge_webhook(request, ChargeVariant.completed)

    @router.post("/webhooks/payment", response_model=ChargeWebhookResponse)
    async def payment(request: Request) -> ChargeWebhookResponse:
        return await _charge_webhook(request, None)

    @router.get("/api/funnel", response_model=FunnelReportResponse)
    def funnel_report(
        request: Request,
        start: Optional[date] = None,
        end: Optional[date] = None,
        _: AuthContext = Depends(require_roles(*REPORTING_ROLES)),
    ) -> FunnelReportResponse:
        end = end or utc_now().date()
        start = start or (end - timedelta(days=6))
        if start > end:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="start cannot be greater than end",
            )
        window_start, window_end = window_bounds(start, end)
        aggregator: FunnelAggregator = request.app.state.funnel
        return aggregator.aggregate(get_store(request).list_sessions(), window_start, window_end)

    @router.get("/api/deliveries/outcomes", response_model=dict[str, DeliveryOutcome])
    def delivery_outcomes(
        request: Request,
        _: AuthContext = Depends(require_roles(*REPORTING_ROLES)),
    ) -> dict[str, DeliveryOutcome]:
        return request.app.state.outcomes.last_outcomes()

    return router


app = create_app()
