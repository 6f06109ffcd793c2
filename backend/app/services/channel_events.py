from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from backend.app.models import (
    ChargeRecord,
    ChargeVariant,
    ChargeWebhookResponse,
    ChatWebhookResponse,
    DeliveryOutcome,
    EventKind,
    MessageChannel,
    MessageRecord,
    SessionRecord,
    TrackEventResponse,
    utc_now,
)
from backend.app.services.correlator import IdentityCorrelator, IdentityKeys
from backend.app.services.delivery import BuildOptions, EventDeliveryPipeline
from backend.app.services.ingestors import IngestedFacts, session_fields
from backend.app.settings import Settings
from backend.app.store import InMemoryStore, StoreUnavailableError, new_id

logger = logging.getLogger("funnel_tracker.channel_events")


@dataclass
class ChannelContext:
    settings: Settings
    store: InMemoryStore
    correlator: IdentityCorrelator
    pipeline: EventDeliveryPipeline


async def _deliver(
    ctx: ChannelContext,
    kind: EventKind,
    sessions: list[SessionRecord],
    opts: Optional[BuildOptions] = None,
) -> DeliveryOutcome:
    best = ctx.correlator.enrich(sessions[0])
    event = ctx.pipeline.build_event(kind, best, opts)
    return await ctx.pipeline.deliver(event, sessions)


async def process_track_event(
    ctx: ChannelContext,
    facts: IngestedFacts,
    *,
    server_ip: Optional[str] = None,
) -> TrackEventResponse:
    fields = ctx.correlator.enrich(session_fields(facts, server_ip=server_ip))
    try:
        record, created = ctx.correlator.upsert_by_delivery(facts.delivery_id, fields)
        if not record.message:
            record = ctx.store.update_session(
                record.id,
                lambda current: current.model_copy(
                    update={"message": ctx.settings.default_message(current.client_ref)}
                ),
            )
        if created or not record.flags.has_pageview:
            await _deliver(
                ctx,
                EventKind.pageview,
                [record],
                BuildOptions(event_source_url=record.attribution.page_url),
            )
    except StoreUnavailableError as exc:
        logger.error("track_degraded delivery_id=%s error=%s", facts.delivery_id, exc)
        return TrackEventResponse(
            client_ref=fields.client_ref,
            click_number=None,
            deduplicated=False,
            message=fields.message,
            contact_phone=ctx.settings.default_contact_phone or None,
        )

    logger.info(
        "track_recorded delivery_id=%s client_ref=%s click_number=%s deduplicated=%s",
        facts.delivery_id,
        record.client_ref,
        record.click_number,
        not created,
    )
    return TrackEventResponse(
        client_ref=record.client_ref,
        click_number=record.click_number,
        deduplicated=not created,
        message=record.message,
        contact_phone=ctx.settings.default_contact_phone or None,
    )


async def process_chat_message(
    ctx: ChannelContext,
    facts: IngestedFacts,
    *,
    server_ip: Optional[str] = None,
) -> ChatWebhookResponse:
    client_ref = facts.client_ref_candidate
    observed_at = utc_now()
    response = ChatWebhookResponse(client_ref=client_ref, phone=facts.phone)
    try:
        ctx.store.append_message(
            MessageRecord(
                id=new_id("msg"),
                channel=MessageChannel.chat,
                text=facts.free_text or "",
                phone=facts.phone,
                client_ref=client_ref,
                server_ip=server_ip,
                created_at_utc=observed_at,
            )
        )
        sessions: list[SessionRecord] = []
        if client_ref:
            sessions = ctx.correlator.attach_contact_to_client_ref(
                client_ref, facts.phone, facts.free_text, observed_at
            )
        elif facts.phone:
            match = ctx.correlator.resolve(IdentityKeys(phone=facts.phone))
            if match and match.client_ref:
                response.client_ref = match.client_ref
                sessions = ctx.correlator.attach_contact_to_client_ref(
                    match.client_ref, facts.phone, facts.free_text, observed_at
                )
            elif match:
                sessions = [match]
        response.sessions_updated = len(sessions)
        if not sessions:
            logger.info("chat_unmatched phone=%s", facts.phone)
            return response

        if not sessions[0].flags.has_pageview:
            response.deliveries.append(await _deliver(ctx, EventKind.pageview, sessions))
        response.deliveries.append(await _deliver(ctx, EventKind.contact, sessions))
    except StoreUnavailableError as exc:
        logger.error("chat_degraded client_ref=%s error=%s", client_ref, exc)
    return response


def _charge_sessions(
    ctx: ChannelContext, facts: IngestedFacts
) -> list[SessionRecord]:
    if facts.delivery_id:
        session = ctx.store.get_session_by_delivery(facts.delivery_id)
        if session:
            return [session]
    sessions = ctx.correlator.candidates(
        IdentityKeys(
            client_ref=facts.client_ref_candidate,
            phone=facts.phone,
            session_id=facts.session_id,
        )
    )
    if not sessions and facts.client_ref_candidate:
        sessions = ctx.correlator.attach_contact_to_client_ref(
            facts.client_ref_candidate, facts.phone, None
        )
    return sessions


async def process_charge_event(
    ctx: ChannelContext,
    facts: IngestedFacts,
    *,
    server_ip: Optional[str] = None,
) -> ChargeWebhookResponse:
    provider = facts.provider_facts
    variant: ChargeVariant = provider["variant"]
    status = provider.get("status")
    value = provider.get("value")
    transaction_id = provider.get("transaction_id") or new_id("txn")
    currency = provider.get("currency") or ctx.settings.default_currency
    observed_at = utc_now()
    response = ChargeWebhookResponse(
        status="processed",
        transaction_id=transaction_id,
        client_ref=facts.client_ref_candidate,
        value=value,
    )
    try:
        ctx.store.upsert_charge(
            ChargeRecord(
                transaction_id=transaction_id,
                correlation_id=provider.get("correlation_id"),
                variant=variant,
                status=status,
                value=value,
                value_minor=provider.get("value_minor"),
                currency=currency,
                customer=facts.contact,
                client_ref=facts.client_ref_candidate,
                delivery_id=facts.delivery_id,
                session_id=facts.session_id,
                server_ip=server_ip,
                raw_payload={
                    key: item for key, item in provider.items() if key != "variant"
                },
                created_at_utc=observed_at,
                updated_at_utc=observed_at,
            )
        )
        sessions = _charge_sessions(ctx, facts)
        if not sessions:
            logger.info("charge_unmatched transaction_id=%s", transaction_id)
            response.status = "unmatched"
            return response

        sessions = ctx.correlator.record_charge_facts(
            sessions,
            variant=variant,
            observed_at=observed_at,
            status=status,
            value=value,
            customer=facts.contact,
        )
        response.client_ref = response.client_ref or sessions[0].client_ref
        kind = (
            EventKind.purchase if variant == ChargeVariant.completed else EventKind.initiate_checkout
        )
        opts = BuildOptions(
            value_minor=provider.get("value_minor"),
            currency=currency,
            custom_data={"transaction_id": transaction_id},
        )
        response.deliveries.append(await _deliver(ctx, kind, sessions, opts))
    except StoreUnavailableError as exc:
        logger.error("charge_degraded transaction_id=%s error=%s", transaction_id, exc)
        response.status = "degraded"
    return response
