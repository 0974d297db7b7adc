from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from opentelemetry import trace
from sqlalchemy import and_, case, func, select
from sqlalchemy.orm import Session

from app.pipeline.cache import CacheBackend, get_or_set_cache, invalidate
from app.pipeline.models import Deal, PipelineStage, utcnow
from app.pipeline.schemas import PipelineFunnelRead, PipelineOverviewRead

logger = logging.getLogger("app.pipeline.analytics")
tracer = trace.get_tracer("app.pipeline.analytics")

OVERVIEW_CACHE_KEY = "analytics_overview"
FUNNEL_CACHE_KEY = "analytics_funnel"
DEFAULT_FUNNEL_MONTHS = 6
MAX_FUNNEL_MONTHS = 24

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")
_CENTS = Decimal("0.01")


def overview_cache_key(assigned_user_id: int | None = None) -> str:
    if assigned_user_id is None:
        return OVERVIEW_CACHE_KEY
    return f"{OVERVIEW_CACHE_KEY}:user:{assigned_user_id}"


def funnel_cache_key(months: int) -> str:
    return f"{FUNNEL_CACHE_KEY}:{months}"


def _dec(value: Any) -> Decimal:
    if value is None:
        return _ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _round2(value: Decimal) -> float:
    return float(value.quantize(_CENTS, rounding=ROUND_HALF_UP))


def _percent(part: Decimal | int, whole: Decimal | int) -> Decimal:
    if not whole:
        return _ZERO
    return Decimal(part) / Decimal(whole) * _HUNDRED


def _month_start(moment: datetime, months_back: int) -> datetime:
    year = moment.year
    month = moment.month - months_back
    while month <= 0:
        month += 12
        year -= 1
    return datetime(year, month, 1, tzinfo=moment.tzinfo)


class PipelineAnalyticsService:
    """Stage-level pipeline analytics behind the cache-aside layer.

    Everything is computed in ``Decimal`` and rounded to two places only when the
    read model is built. The computed payload, ``last_updated`` included, is what
    gets cached, so reads inside one TTL window return identical bodies.
    """

    def __init__(self, cache: CacheBackend, ttl_seconds: int) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    def get_overview(self, session: Session, assigned_user_id: int | None = None) -> PipelineOverviewRead:
        key = overview_cache_key(assigned_user_id)
        payload = get_or_set_cache(
            self.cache,
            key,
            lambda: self.compute_overview(session, assigned_user_id).model_dump(mode="json"),
            self.ttl_seconds,
        )
        return PipelineOverviewRead.model_validate(payload)

    def get_funnel(self, session: Session, months: int = DEFAULT_FUNNEL_MONTHS) -> PipelineFunnelRead:
        payload = get_or_set_cache(
            self.cache,
            funnel_cache_key(months),
            lambda: self.compute_funnel(session, months).model_dump(mode="json"),
            self.ttl_seconds,
        )
        return PipelineFunnelRead.model_validate(payload)

    def compute_overview(self, session: Session, assigned_user_id: int | None = None) -> PipelineOverviewRead:
        now = utcnow()
        recent_cutoff = now - timedelta(days=30)

        deal_join = Deal.pipeline_stage_id == PipelineStage.id
        if assigned_user_id is not None:
            deal_join = and_(deal_join, Deal.assigned_user_id == assigned_user_id)

        stmt = (
            select(
                PipelineStage.id,
                PipelineStage.name,
                PipelineStage.display_order,
                PipelineStage.win_probability,
                func.count(Deal.id),
                func.coalesce(func.sum(Deal.value), 0),
                func.coalesce(func.sum(Deal.probability), 0),
                func.coalesce(func.sum(case((Deal.created_at >= recent_cutoff, 1), else_=0)), 0),
                func.coalesce(func.sum(case((Deal.status == "won", 1), else_=0)), 0),
                func.coalesce(func.sum(case((Deal.status == "lost", 1), else_=0)), 0),
            )
            .outerjoin(Deal, deal_join)
            .where(PipelineStage.is_active.is_(True))
            .group_by(PipelineStage.id, PipelineStage.name, PipelineStage.display_order, PipelineStage.win_probability)
            .order_by(PipelineStage.display_order.asc())
        )

        with tracer.start_as_current_span("pipeline.analytics.overview") as span:
            span.set_attribute("assigned_user_id", assigned_user_id if assigned_user_id is not None else -1)
            rows = session.execute(stmt).all()

        stages: list[dict[str, Any]] = []
        win_rates: list[Decimal] = []
        total_deals = 0
        total_value = _ZERO
        previous_count: int | None = None

        for stage_id, name, display_order, win_probability, count, value_sum, probability_sum, recent, won, lost in rows:
            deal_count = int(count or 0)
            value_total = _dec(value_sum)
            win_rate = _percent(int(won or 0), deal_count)
            if previous_count:
                conversion_rate = _percent(deal_count, previous_count)
            else:
                conversion_rate = _HUNDRED

            stages.append(
                {
                    "stage_id": stage_id,
                    "stage_name": name,
                    "display_order": display_order,
                    "win_probability": _round2(_dec(win_probability)),
                    "deal_count": deal_count,
                    "total_value": _round2(value_total),
                    "avg_deal_value": _round2(value_total / deal_count if deal_count else _ZERO),
                    "avg_probability": _round2(_dec(probability_sum) / deal_count if deal_count else _ZERO),
                    "deals_last_30_days": int(recent or 0),
                    "won_deals": int(won or 0),
                    "lost_deals": int(lost or 0),
                    "win_rate": _round2(win_rate),
                    "conversion_rate": _round2(conversion_rate),
                }
            )
            win_rates.append(win_rate)
            total_deals += deal_count
            total_value += value_total
            previous_count = deal_count

        avg_win_rate = sum(win_rates, _ZERO) / len(win_rates) if win_rates else _ZERO
        logger.info("analytics_overview_computed", extra={"cache_key": overview_cache_key(assigned_user_id)})
        return PipelineOverviewRead.model_validate(
            {
                "pipeline_stages": stages,
                "pipeline_summary": {
                    "total_deals": total_deals,
                    "total_value": _round2(total_value),
                    "avg_win_rate": _round2(avg_win_rate),
                },
                "last_updated": now,
            }
        )

    def compute_funnel(self, session: Session, months: int = DEFAULT_FUNNEL_MONTHS) -> PipelineFunnelRead:
        now = utcnow()
        since = _month_start(now, months - 1)
        rows = session.execute(
            select(
                Deal.created_at,
                Deal.value,
                Deal.status,
                PipelineStage.id,
                PipelineStage.name,
                PipelineStage.display_order,
            )
            .join(PipelineStage, Deal.pipeline_stage_id == PipelineStage.id)
            .where(PipelineStage.is_active.is_(True), Deal.created_at >= since)
        ).all()

        buckets: dict[str, dict[int, dict[str, Any]]] = {}
        for created_at, value, status, stage_id, stage_name, display_order in rows:
            month_key = created_at.strftime("%Y-%m")
            stage_bucket = buckets.setdefault(month_key, {}).setdefault(
                stage_id,
                {
                    "stage_id": stage_id,
                    "stage_name": stage_name,
                    "display_order": display_order,
                    "deals_entered": 0,
                    "value_entered": _ZERO,
                    "deals_won": 0,
                    "deals_lost": 0,
                },
            )
            stage_bucket["deals_entered"] += 1
            stage_bucket["value_entered"] += _dec(value)
            if status == "won":
                stage_bucket["deals_won"] += 1
            elif status == "lost":
                stage_bucket["deals_lost"] += 1

        funnel_data = []
        for month_key in sorted(buckets, reverse=True):
            stage_rows = sorted(buckets[month_key].values(), key=lambda item: item["display_order"])
            funnel_data.append(
                {
                    "month": month_key,
                    "stages": [
                        {
                            **item,
                            "value_entered": _round2(item["value_entered"]),
                            "win_rate_percent": _round2(_percent(item["deals_won"], item["deals_entered"])),
                        }
                        for item in stage_rows
                    ],
                }
            )

        return PipelineFunnelRead.model_validate(
            {
                "funnel_data": funnel_data,
                "total_months": len(funnel_data),
                "months": months,
                "last_updated": now,
            }
        )


def invalidate_analytics(cache: CacheBackend, assigned_user_ids: list[int | None] | None = None) -> None:
    keys = {OVERVIEW_CACHE_KEY}
    keys.update(funnel_cache_key(months) for months in range(1, MAX_FUNNEL_MONTHS + 1))
    for user_id in assigned_user_ids or []:
        keys.add(overview_cache_key(user_id))
    invalidate(cache, *sorted(keys))
