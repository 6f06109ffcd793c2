from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, time
from typing import Optional

from backend.app.models import (
    CampaignFunnel,
    FunnelCounts,
    FunnelRatios,
    FunnelReportResponse,
    SessionRecord,
)

NO_CAMPAIGN = "(none)"


def percent(numerator: int, denominator: int) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 1)


def ratios_for(counts: FunnelCounts) -> FunnelRatios:
    return FunnelRatios(
        initiate_per_pageview=percent(counts.initiate_checkout, counts.pageview),
        purchase_per_initiate=percent(counts.purchase, counts.initiate_checkout),
    )


def window_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    return datetime.combine(start, time.min), datetime.combine(end, time.max)


def _within(moment: Optional[datetime], start: datetime, end: datetime) -> bool:
    return moment is not None and start <= moment <= end


class FunnelAggregator:
    def aggregate(
        self,
        sessions: Iterable[SessionRecord],
        start: datetime,
        end: datetime,
    ) -> FunnelReportResponse:
        """Count each funnel stage per campaign over the inclusive window ``[start, end]``.

        A Session counts for a stage only when its flag is set and the stage's own
        timestamp falls inside the window.
        """
        totals = FunnelCounts()
        by_campaign: dict[str, FunnelCounts] = {}
        for session in sessions:
            flags = session.flags
            pageview = flags.has_pageview and _within(
                session.pageview_at_utc or session.created_at_utc, start, end
            )
            initiate = flags.has_initiate_checkout and _within(
                session.last_checkout_at_utc, start, end
            )
            purchase = flags.has_purchase and _within(session.last_purchase_at_utc, start, end)
            if not (pageview or initiate or purchase):
                continue
            campaign = (session.attribution.utm_campaign or "").strip() or NO_CAMPAIGN
            counts = by_campaign.setdefault(campaign, FunnelCounts())
            for bucket in (totals, counts):
                bucket.pageview += int(pageview)
                bucket.initiate_checkout += int(initiate)
                bucket.purchase += int(purchase)

        ordered = sorted(
            by_campaign.items(),
            key=lambda item: (
                -item[1].purchase,
                -item[1].initiate_checkout,
                -item[1].pageview,
                item[0],
            ),
        )
        return FunnelReportResponse(
            start=start,
            end=end,
            totals=totals,
            ratios=ratios_for(totals),
            per_campaign=[
                CampaignFunnel(campaign=campaign, counts=counts, ratios=ratios_for(counts))
                for campaign, counts in ordered
            ],
        )
