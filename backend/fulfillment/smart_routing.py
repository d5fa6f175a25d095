"""
Smart Routing — rank carriers for an upcoming shipment.

Reuses the courier engine's shipment statistics, scores each carrier on six
0–100 sub-scores and combines them with tenant-configurable weights:

  pickup_speed        24h = 100, 48h = 50
  delivery_speed      48h = 100, 96h = 50
  success_rate        delivered / total
  return_rate         100 − 5 · return %
  cod_performance     collected / COD shipments
  region_performance  50 + regional delivery-rate bonus

Administrator overrides: disabled carriers are never recommended; a single
forced carrier wins outright when it is still eligible.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import asdict, dataclass, fields
from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import CarrierOverride, Order, RoutingDecision, TenantRoutingConfig
from fulfillment.audit import record_audit
from fulfillment.courier_performance import (
    CourierMetrics,
    aggregate_shipments,
    analysis_window,
    load_window_shipments,
)
from fulfillment.defaults import FulfillmentDefaults, get_fulfillment_defaults
from fulfillment.errors import InvalidWeightsError, NotFoundError

logger = structlog.get_logger()

WEIGHT_SUM_TOLERANCE = 0.01
COD_PREFERENCE_THRESHOLD = 60


def _half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class ScoringWeights:
    pickup_speed: float = 0.15
    delivery_speed: float = 0.25
    success_rate: float = 0.30
    return_rate: float = 0.15
    cod_performance: float = 0.10
    region_performance: float = 0.05

    @classmethod
    def from_dict(cls, payload: dict) -> "ScoringWeights":
        names = {f.name for f in fields(cls)}
        unknown = set(payload) - names
        if unknown:
            raise InvalidWeightsError(f"Unknown weight names: {sorted(unknown)}")
        return cls(**{name: float(payload[name]) for name in names if name in payload})

    def as_dict(self) -> dict[str, float]:
        return asdict(self)

    def validate(self) -> "ScoringWeights":
        values = self.as_dict()
        out_of_range = [name for name, value in values.items() if not 0.0 <= value <= 1.0]
        if out_of_range:
            raise InvalidWeightsError(f"Weights must be between 0 and 1: {out_of_range}")
        total = sum(values.values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise InvalidWeightsError(f"Weights must sum to 1 (got {total:.3f})")
        return self


DEFAULT_WEIGHTS = ScoringWeights()


@dataclass(frozen=True)
class CarrierSnapshot:
    metrics: CourierMetrics
    region_bonus: int = 0


@dataclass(frozen=True)
class CarrierScore:
    carrier: str
    scores: dict[str, int]
    weighted_score: int
    tier: str
    sample_size: int

    def as_dict(self) -> dict:
        return asdict(self)


# ── Weights ───────────────────────────────────────────────────────────────


async def get_tenant_weights(db: AsyncSession, tenant_id: uuid.UUID) -> ScoringWeights:
    result = await db.execute(
        select(TenantRoutingConfig.weights).where(TenantRoutingConfig.tenant_id == tenant_id)
    )
    stored = result.scalar_one_or_none()
    if not stored:
        return DEFAULT_WEIGHTS
    return ScoringWeights.from_dict(stored)


async def update_tenant_weights(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    weights: ScoringWeights | dict,
    *,
    performed_by: str = "user",
) -> ScoringWeights:
    if isinstance(weights, dict):
        weights = ScoringWeights.from_dict(weights)
    weights.validate()

    result = await db.execute(select(TenantRoutingConfig).where(TenantRoutingConfig.tenant_id == tenant_id))
    config = result.scalar_one_or_none()
    old_values = dict(config.weights) if config else None
    if config is None:
        config = TenantRoutingConfig(tenant_id=tenant_id, weights=weights.as_dict())
        db.add(config)
    else:
        config.weights = weights.as_dict()
    await db.flush()

    await record_audit(
        db,
        tenant_id=tenant_id,
        action="ROUTING_WEIGHTS_UPDATED",
        entity_type="tenant_routing_config",
        entity_id=tenant_id,
        old_values=old_values,
        new_values=weights.as_dict(),
        performed_by=performed_by,
    )
    logger.info("smart_routing.weights_updated", tenant_id=str(tenant_id), **weights.as_dict())
    return weights


# ── Metrics & scoring ─────────────────────────────────────────────────────


async def collect_carrier_metrics(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    region: str | None = None,
    now: datetime | None = None,
    defaults: FulfillmentDefaults | None = None,
) -> dict[str, CarrierSnapshot]:
    defaults = defaults or get_fulfillment_defaults()
    start, end = analysis_window((now or datetime.utcnow()).date(), defaults.courier_lookback_days)
    shipments = await load_window_shipments(db, tenant_id, start=start, end=end)

    overall = aggregate_shipments(shipments, by_region=False, on_time_hours=defaults.on_time_delivery_hours)
    regional = {}
    if region:
        regional = aggregate_shipments(
            [s for s in shipments if s.region == region],
            by_region=False,
            on_time_hours=defaults.on_time_delivery_hours,
        )

    snapshots = {}
    for (carrier, _), metrics in overall.items():
        bonus = 0
        region_metrics = regional.get((carrier, metrics.region))
        if region_metrics is not None and region_metrics.total_shipments:
            bonus = _half_up((region_metrics.delivery_rate - metrics.delivery_rate) * 50)
            bonus = int(_clamp(bonus, -50, 50))
        snapshots[carrier] = CarrierSnapshot(metrics=metrics, region_bonus=bonus)
    return snapshots


def _speed_score(avg_hours: float, baseline_hours: float) -> float:
    return _clamp(100 - ((avg_hours - baseline_hours) / baseline_hours) * 50)


def score_carrier(
    carrier: str,
    metrics: CourierMetrics,
    weights: ScoringWeights,
    region_bonus: int = 0,
) -> CarrierScore:
    pickup = _speed_score(metrics.avg_pickup_hours, 24.0) if metrics.has_pickup_data else 50.0
    delivery = _speed_score(metrics.avg_delivery_hours, 48.0) if metrics.has_delivery_data else 50.0
    success = metrics.delivery_rate * 100 if metrics.total_shipments else 50.0
    return_pct = metrics.return_rate * 100 if metrics.total_shipments else 0.0
    cod = metrics.cod_collection_rate * 100 if metrics.cod_collection_rate is not None else 50.0

    scores = {
        "pickup_speed": _half_up(pickup),
        "delivery_speed": _half_up(delivery),
        "success_rate": _half_up(success),
        "return_rate": _half_up(max(0.0, 100 - return_pct * 5)),
        "cod_performance": _half_up(cod),
        "region_performance": _half_up(50 + region_bonus),
    }
    weight_map = weights.as_dict()
    weighted = sum(scores[name] * weight_map[name] for name in scores)

    if weighted >= 85:
        tier = "excellent"
    elif weighted >= 70:
        tier = "good"
    elif weighted >= 50:
        tier = "average"
    else:
        tier = "poor"

    return CarrierScore(
        carrier=carrier,
        scores=scores,
        weighted_score=_half_up(weighted),
        tier=tier,
        sample_size=metrics.total_shipments,
    )


def _confidence(best: CarrierScore) -> str:
    if best.sample_size >= 50 and best.weighted_score >= 75:
        return "high"
    if best.sample_size >= 20 and best.weighted_score >= 60:
        return "medium"
    return "low"


def _reasoning(best: CarrierScore, payment_method: str) -> str:
    reasons = []
    if best.scores["success_rate"] >= 90:
        reasons.append(f"High delivery success rate ({best.scores['success_rate']}%)")
    if best.scores["delivery_speed"] >= 80:
        reasons.append("Fast delivery times")
    if payment_method == "cod" and best.scores["cod_performance"] >= 80:
        reasons.append(f"Excellent COD collection ({best.scores['cod_performance']}%)")
    if best.scores["return_rate"] >= 90:
        reasons.append("Low return rate")
    if not reasons:
        reasons.append(f"Best overall performance score ({best.weighted_score})")
    return ". ".join(reasons)


def _empty_recommendation(reasoning: str, all_scores: list[CarrierScore] | None = None) -> dict:
    return {
        "best_carrier": None,
        "best_score": 0,
        "backup_carrier": None,
        "backup_score": None,
        "confidence": "low",
        "reasoning": reasoning,
        "all_scores": [s.as_dict() for s in all_scores or []],
    }


async def rank_carriers(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    region: str | None = None,
    now: datetime | None = None,
    defaults: FulfillmentDefaults | None = None,
) -> list[CarrierScore]:
    weights = await get_tenant_weights(db, tenant_id)
    snapshots = await collect_carrier_metrics(db, tenant_id, region=region, now=now, defaults=defaults)
    scores = [
        score_carrier(carrier, snap.metrics, weights, snap.region_bonus) for carrier, snap in snapshots.items()
    ]
    return sorted(scores, key=lambda s: (-s.weighted_score, s.carrier))


async def recommend_carrier(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    payment_method: str,
    order_value: float,
    region: str | None = None,
    now: datetime | None = None,
    defaults: FulfillmentDefaults | None = None,
) -> dict:
    ranked = await rank_carriers(db, tenant_id, region=region, now=now, defaults=defaults)
    if not ranked:
        return _empty_recommendation("No shipping data available")

    result = await db.execute(select(CarrierOverride).where(CarrierOverride.tenant_id == tenant_id))
    overrides = result.scalars().all()
    disabled = {o.carrier for o in overrides if o.is_disabled}
    forced = next((o.carrier for o in overrides if o.is_forced and not o.is_disabled), None)

    eligible = [s for s in ranked if s.carrier not in disabled]
    if not eligible:
        return _empty_recommendation("All carriers disabled")

    forced_score = next((s for s in eligible if s.carrier == forced), None)
    if forced_score is not None:
        logger.info("smart_routing.forced_carrier", tenant_id=str(tenant_id), carrier=forced)
        return {
            "best_carrier": forced_score.carrier,
            "best_score": forced_score.weighted_score,
            "backup_carrier": None,
            "backup_score": None,
            "confidence": "high",
            "reasoning": "Forced by administrator",
            "all_scores": [s.as_dict() for s in eligible],
        }

    candidates = eligible
    if payment_method == "cod":
        cod_ready = [s for s in eligible if s.scores["cod_performance"] >= COD_PREFERENCE_THRESHOLD]
        candidates = cod_ready or eligible

    best = candidates[0]
    backup = candidates[1] if len(candidates) > 1 else None
    recommendation = {
        "best_carrier": best.carrier,
        "best_score": best.weighted_score,
        "backup_carrier": backup.carrier if backup else None,
        "backup_score": backup.weighted_score if backup else None,
        "confidence": _confidence(best),
        "reasoning": _reasoning(best, payment_method),
        "all_scores": [s.as_dict() for s in eligible],
    }
    logger.info(
        "smart_routing.recommended",
        tenant_id=str(tenant_id),
        carrier=best.carrier,
        score=best.weighted_score,
        confidence=recommendation["confidence"],
        payment_method=payment_method,
        order_value=order_value,
    )
    return recommendation


# ── Overrides & decisions ─────────────────────────────────────────────────


async def set_carrier_override(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    carrier: str,
    *,
    is_disabled: bool = False,
    is_forced: bool = False,
    performed_by: str = "user",
) -> CarrierOverride:
    """Upsert an override. Forcing one carrier un-forces every other carrier."""
    if is_forced:
        await db.execute(
            update(CarrierOverride)
            .where(CarrierOverride.tenant_id == tenant_id, CarrierOverride.carrier != carrier)
            .values(is_forced=False)
            .execution_options(synchronize_session="fetch")
        )

    result = await db.execute(
        select(CarrierOverride).where(
            CarrierOverride.tenant_id == tenant_id,
            CarrierOverride.carrier == carrier,
        )
    )
    override = result.scalar_one_or_none()
    old_values = {"is_disabled": override.is_disabled, "is_forced": override.is_forced} if override else None
    if override is None:
        override = CarrierOverride(tenant_id=tenant_id, carrier=carrier)
        db.add(override)
    override.is_disabled = is_disabled
    override.is_forced = is_forced
    await db.flush()

    await record_audit(
        db,
        tenant_id=tenant_id,
        action="CARRIER_OVERRIDE_SET",
        entity_type="carrier_override",
        entity_id=carrier,
        old_values=old_values,
        new_values={"is_disabled": is_disabled, "is_forced": is_forced},
        performed_by=performed_by,
    )
    return override


async def save_routing_decision(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    order_id: uuid.UUID,
    recommended_carrier: str,
    chosen_carrier: str,
    score: float,
    confidence: str,
    reasoning: str | None = None,
    overridden_by: str | None = None,
) -> RoutingDecision:
    result = await db.execute(
        select(Order.order_id).where(Order.order_id == order_id, Order.tenant_id == tenant_id)
    )
    if result.scalar_one_or_none() is None:
        raise NotFoundError("Order", order_id)

    decision = RoutingDecision(
        tenant_id=tenant_id,
        order_id=order_id,
        recommended_carrier=recommended_carrier,
        chosen_carrier=chosen_carrier,
        score=score,
        confidence=confidence,
        reasoning=reasoning,
        overridden_by=overridden_by,
    )
    db.add(decision)
    await db.flush()

    await record_audit(
        db,
        tenant_id=tenant_id,
        action="ROUTING_DECISION_SAVED",
        entity_type="order",
        entity_id=order_id,
        new_values={
            "recommended_carrier": recommended_carrier,
            "chosen_carrier": chosen_carrier,
            "score": score,
            "confidence": confidence,
        },
        performed_by=overridden_by or "user",
    )
    return decision


async def get_routing_analytics(db: AsyncSession, tenant_id: uuid.UUID) -> dict:
    result = await db.execute(select(RoutingDecision).where(RoutingDecision.tenant_id == tenant_id))
    decisions = result.scalars().all()
    distribution = {"high": 0, "medium": 0, "low": 0}
    if not decisions:
        return {
            "total_decisions": 0,
            "followed_recommendation": 0,
            "override_rate": 0,
            "avg_score": 0,
            "confidence_distribution": distribution,
        }

    followed = sum(1 for d in decisions if d.recommended_carrier == d.chosen_carrier)
    for d in decisions:
        if d.confidence in distribution:
            distribution[d.confidence] += 1
    total = len(decisions)
    return {
        "total_decisions": total,
        "followed_recommendation": followed,
        "override_rate": _half_up((total - followed) / total * 100),
        "avg_score": _half_up(sum(d.score for d in decisions) / total),
        "confidence_distribution": distribution,
    }
