"""
Pluggable route scoring used by specialist agents when they vote.

Each agent scores every candidate route with a RouteScorer. The default
PerspectiveScorer derives a 0-100 breakdown from route and risk data and
tilts the request's criteria weights towards the agent's own concerns.
"""
from typing import Dict, Optional, Protocol

from route_agents.models.schemas import (
    CRITERIA_FIELDS,
    ConsensusRequest,
    DecisionScore,
    RouteProposal,
    ScoreBreakdown,
)

NEUTRAL_SCORE = 50.0
# Price impact (percent) and duration (seconds) at which the factor reaches 0
MAX_PRICE_IMPACT = 5.0
MAX_DURATION = 600.0


class RouteScorer(Protocol):
    async def score(self, route: RouteProposal, request: ConsensusRequest) -> DecisionScore:
        ...


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def default_breakdown(route: RouteProposal, request: ConsensusRequest) -> ScoreBreakdown:
    """Criterion scores from route data and, when present, its risk assessment."""
    assessment = request.assessment_for(route.id)
    return ScoreBreakdown(
        cost=_clamp(100.0 * (1.0 - route.price_impact / MAX_PRICE_IMPACT)),
        time=_clamp(100.0 * (1.0 - route.estimated_time / MAX_DURATION)),
        security=assessment.security_score if assessment else NEUTRAL_SCORE,
        reliability=_clamp(route.confidence * 100.0),
        slippage=_clamp(100.0 * (1.0 - assessment.factors.slippage_risk)) if assessment else NEUTRAL_SCORE,
    )


class PerspectiveScorer:
    """
    Weighted sum of the default breakdown.

    Args:
        emphasis: Per-criterion multipliers applied on top of the request's
            criteria before renormalizing, e.g. {"security": 2.0}
    """

    def __init__(self, emphasis: Optional[Dict[str, float]] = None):
        unknown = set(emphasis or {}) - set(CRITERIA_FIELDS)
        if unknown:
            raise ValueError(f"Unknown criteria in emphasis: {sorted(unknown)}")
        self.emphasis = dict(emphasis or {})

    def weights_for(self, request: ConsensusRequest) -> Dict[str, float]:
        base = request.criteria.normalized()
        tilted = {name: base[name] * self.emphasis.get(name, 1.0) for name in CRITERIA_FIELDS}
        total = sum(tilted.values())
        if total <= 0:
            return base
        return {name: weight / total for name, weight in tilted.items()}

    async def score(self, route: RouteProposal, request: ConsensusRequest) -> DecisionScore:
        breakdown = default_breakdown(route, request)
        weights = self.weights_for(request)
        total = sum(weights[name] * breakdown.get(name) for name in CRITERIA_FIELDS) / 100.0

        strongest = max(CRITERIA_FIELDS, key=lambda name: weights[name] * breakdown.get(name))
        return DecisionScore(
            route_id=route.id,
            total_score=round(total, 6),
            breakdown=breakdown,
            reasoning=[f"Strongest weighted factor: {strongest} ({breakdown.get(strongest):.0f}/100)"],
        )
