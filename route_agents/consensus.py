"""
Weighted consensus aggregation.

Turns the ConsensusResponses of one round into a single ConsensusDecision:

1. Every vote gets a composite weight = agent weight * focus multiplier * confidence.
2. Per candidate route the composite-weighted score, the confidence-weighted
   score, the total weight, the vote count and the weighted average of each
   score factor are accumulated. Routes are ranked by their weighted score
   divided by their own total weight.
3. Conflict is classified from the score gap between the top two routes,
   vote diversity and the spread of confidences.
4. High conflict is resolved by the dominant criterion, then by confidence;
   otherwise the weighted leader wins.

Sums use math.fsum (exactly rounded) and ties are ordered by the request's
route order, so the result does not depend on the order responses arrived in.
"""
import math
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from route_agents.errors import ConsensusError, NoConsensusResponsesError
from route_agents.models.protocols import AgentType
from route_agents.models.schemas import (
    CRITERIA_FIELDS,
    ConflictLevel,
    ConsensusDecision,
    ConsensusRequest,
    ConsensusResponse,
    ResolutionMethod,
    RouteAnalysis,
    ScoreBreakdown,
    UserFocus,
    UserPreferenceWeights,
)
from route_agents.utils.logger import get_logger

logger = get_logger(__name__)

HIGH_CONFLICT_GAP = 0.05
MEDIUM_CONFLICT_GAP = 0.15
MEDIUM_CONFLICT_DIVERSITY = 0.6
MEDIUM_CONFLICT_CONFIDENCE_STDEV = 0.2
DOMINANT_CRITERION_SHARE = 0.4
CRITERION_OVERRIDE_MARGIN = 20.0
CONFIDENCE_TIEBREAK_GAP = 0.2
CONFIDENCE_BOOST_THRESHOLD = 0.8

FOCUS_MULTIPLIERS: Dict[UserFocus, Dict[AgentType, float]] = {
    UserFocus.SPEED: {
        AgentType.ROUTE_DISCOVERY: 2.0,
        AgentType.EXECUTION_STRATEGY: 2.0,
    },
    UserFocus.SECURITY: {
        AgentType.SECURITY: 2.0,
        AgentType.RISK_ASSESSMENT: 2.0,
    },
    UserFocus.COST: {
        AgentType.MARKET_INTELLIGENCE: 2.0,
        AgentType.ROUTE_DISCOVERY: 2.0,
    },
    UserFocus.BALANCED: {},
}

WeightLookup = Callable[[str], float]
TypeLookup = Callable[[str], Optional[AgentType]]


def agent_weight(priority: float, healthy: bool, success_rate: float, failure_count: int) -> float:
    """priority * health (1.0 / 0.5) * success rate * failure penalty (floor 0.5)."""
    health = 1.0 if healthy else 0.5
    failure_penalty = max(0.5, 1.0 - failure_count * 0.1)
    return priority * health * success_rate * failure_penalty


def focus_multiplier(agent_type: Optional[AgentType], preferences: Optional[UserPreferenceWeights]) -> float:
    """Multiplier for an agent's vote under the user's focus; explicit weightings win."""
    if preferences is None or agent_type is None:
        return 1.0
    if agent_type in preferences.weightings:
        return preferences.weightings[agent_type]
    return FOCUS_MULTIPLIERS[preferences.focus].get(agent_type, 1.0)


def _analyze_routes(
    responses: Sequence[ConsensusResponse],
    composites: Sequence[float],
    request: ConsensusRequest
) -> List[RouteAnalysis]:
    scores: Dict[str, List[float]] = defaultdict(list)
    confidence_scores: Dict[str, List[float]] = defaultdict(list)
    weights: Dict[str, List[float]] = defaultdict(list)
    confidences: Dict[str, List[float]] = defaultdict(list)
    factors: Dict[str, Dict[str, List[float]]] = defaultdict(lambda: defaultdict(list))
    agents: Dict[str, Dict[str, float]] = defaultdict(dict)

    for response, composite in zip(responses, composites):
        route_id = response.recommended_route
        total_score = response.score.total_score
        scores[route_id].append(total_score * composite)
        confidence_scores[route_id].append(total_score * response.confidence)
        weights[route_id].append(composite)
        confidences[route_id].append(response.confidence)
        agents[route_id][response.agent_id] = agents[route_id].get(response.agent_id, 0.0) + composite
        for criterion in CRITERIA_FIELDS:
            factors[route_id][criterion].append(response.score.breakdown.get(criterion) * composite)

    analyses = []
    for route_id in scores:
        route_weight = math.fsum(weights[route_id])
        votes = len(confidences[route_id])
        weighted_score = math.fsum(scores[route_id])
        if route_weight > 0:
            normalized = weighted_score / route_weight
            breakdown = {
                criterion: math.fsum(factors[route_id][criterion]) / route_weight
                for criterion in CRITERIA_FIELDS
            }
        else:
            normalized = 0.0
            breakdown = {criterion: 0.0 for criterion in CRITERIA_FIELDS}

        analyses.append(RouteAnalysis(
            route_id=route_id,
            weighted_score=weighted_score,
            total_weight=route_weight,
            confidence_weighted_score=math.fsum(confidence_scores[route_id]),
            vote_count=votes,
            normalized_score=normalized,
            average_confidence=math.fsum(confidences[route_id]) / votes,
            breakdown=ScoreBreakdown(**breakdown),
            supporting_agents=sorted(agents[route_id]),
            agent_weights=dict(sorted(agents[route_id].items())),
        ))

    analyses.sort(key=lambda a: (-a.normalized_score, request.route_index(a.route_id)))
    return analyses


def _classify_conflict(rankings: List[RouteAnalysis], confidences: List[float]):
    total_votes = sum(a.vote_count for a in rankings)
    top_share = max(a.vote_count for a in rankings) / total_votes
    diversity = 1.0 - top_share
    stdev = float(np.std(sorted(confidences))) if confidences else 0.0

    if len(rankings) < 2:
        return ConflictLevel.NONE, 0.0, diversity, stdev

    leader, runner_up = rankings[0], rankings[1]
    if leader.normalized_score > 0:
        gap = (leader.normalized_score - runner_up.normalized_score) / leader.normalized_score
    else:
        gap = 0.0

    if gap < HIGH_CONFLICT_GAP:
        level = ConflictLevel.HIGH
    elif (
        gap < MEDIUM_CONFLICT_GAP
        or diversity > MEDIUM_CONFLICT_DIVERSITY
        or stdev > MEDIUM_CONFLICT_CONFIDENCE_STDEV
    ):
        level = ConflictLevel.MEDIUM
    else:
        level = ConflictLevel.LOW
    return level, gap, diversity, stdev


def _resolve(rankings: List[RouteAnalysis], level: ConflictLevel, request: ConsensusRequest):
    leader = rankings[0]
    if level == ConflictLevel.HIGH:
        runner_up = rankings[1]
        criterion, share = request.criteria.dominant()
        margin = runner_up.breakdown.get(criterion) - leader.breakdown.get(criterion)
        if share > DOMINANT_CRITERION_SHARE and margin > CRITERION_OVERRIDE_MARGIN:
            return runner_up, ResolutionMethod.CRITERION_TIEBREAK, (
                f"High conflict: {runner_up.route_id} leads on dominant criterion "
                f"'{criterion}' ({share:.0%} of weight) by {margin:.1f} points"
            )

        confidence_gap = leader.average_confidence - runner_up.average_confidence
        if abs(confidence_gap) > CONFIDENCE_TIEBREAK_GAP:
            chosen = leader if confidence_gap > 0 else runner_up
            return chosen, ResolutionMethod.CONFIDENCE_TIEBREAK, (
                f"High conflict: {chosen.route_id} selected on confidence "
                f"(gap {abs(confidence_gap):.2f})"
            )

        return leader, ResolutionMethod.WEIGHTED_LEADER, "High conflict: no tie-break applied, weighted leader kept"

    if level == ConflictLevel.MEDIUM and leader.average_confidence > CONFIDENCE_BOOST_THRESHOLD:
        return leader, ResolutionMethod.CONFIDENCE_BOOSTED, (
            f"Medium conflict: leader confidence {leader.average_confidence:.2f} boosts the weighted leader"
        )

    return leader, ResolutionMethod.WEIGHTED_LEADER, f"{level.value.capitalize()} conflict: weighted leader selected"


def aggregate_consensus(
    responses: Sequence[ConsensusResponse],
    request: ConsensusRequest,
    weight_for: Optional[WeightLookup] = None,
    type_for: Optional[TypeLookup] = None
) -> ConsensusDecision:
    """
    Aggregate one round of votes into a decision.

    Args:
        responses: Votes; those recommending a route outside the request are ignored
        request: The originating request (candidate routes, criteria, preferences)
        weight_for: agent_id -> agent weight (1.0 when omitted)
        type_for: agent_id -> AgentType, used for user-focus multipliers

    Raises:
        NoConsensusResponsesError: No valid response to aggregate
        ConsensusError: Resolution produced a route id unknown to the request
    """
    valid = [r for r in responses if request.has_route(r.recommended_route)]
    ignored = len(responses) - len(valid)
    if ignored:
        logger.warning("consensus_responses_ignored", request_id=request.request_id, ignored=ignored)
    if not valid:
        raise NoConsensusResponsesError(f"No valid consensus responses for {request.request_id}")

    if len(valid) == 1:
        only = valid[0]
        ranking = _analyze_routes(valid, [1.0], request)
        return ConsensusDecision(
            request_id=request.request_id,
            selected_route=only.recommended_route,
            conflict_level=ConflictLevel.NONE,
            resolution=ResolutionMethod.SINGLE_RESPONSE,
            rankings=ranking,
            responses=1,
            participants=1,
            required_quorum=1,
            synthetic=only.synthetic,
            reasoning=[f"Single response from {only.agent_id}"] + list(only.reasoning),
        )

    weight_for = weight_for or (lambda agent_id: 1.0)
    type_for = type_for or (lambda agent_id: None)
    preferences = request.user_preferences

    composites = [
        weight_for(r.agent_id) * focus_multiplier(type_for(r.agent_id), preferences) * r.confidence
        for r in valid
    ]
    rankings = _analyze_routes(valid, composites, request)
    level, gap, diversity, stdev = _classify_conflict(rankings, [r.confidence for r in valid])
    chosen, method, explanation = _resolve(rankings, level, request)

    if not request.has_route(chosen.route_id):
        raise ConsensusError(f"Resolution selected unknown route {chosen.route_id}")

    reasoning = [
        f"{a.route_id}: score {a.normalized_score:.3f}, {a.vote_count} vote(s), "
        f"avg confidence {a.average_confidence:.2f}"
        for a in rankings
    ]
    reasoning.append(explanation)

    logger.info(
        "consensus_aggregated",
        request_id=request.request_id,
        selected_route=chosen.route_id,
        conflict_level=level.value,
        resolution=method.value,
        responses=len(valid),
        score_gap=round(gap, 4)
    )

    return ConsensusDecision(
        request_id=request.request_id,
        selected_route=chosen.route_id,
        conflict_level=level,
        resolution=method,
        rankings=rankings,
        score_gap=gap,
        vote_diversity=diversity,
        confidence_stdev=stdev,
        responses=len(valid),
        participants=len(valid),
        required_quorum=len(valid),
        synthetic=any(r.synthetic for r in valid),
        reasoning=reasoning,
    )
