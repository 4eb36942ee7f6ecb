"""
Pydantic schemas for the route decision domain.

This module defines:
1. Route data (proposals, risk assessments, execution strategies)
2. Decision models (criteria weights, score breakdowns, user focus)
3. Consensus contracts (request, per-agent response, aggregated decision)
"""
import time
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from route_agents.models.protocols import AgentType


# ============================================================================
# ROUTE DATA
# ============================================================================

class RouteStep(BaseModel):
    """Single hop of a route."""
    protocol: str = Field(..., description="DEX or bridge used for this hop")
    from_token: str
    to_token: str
    amount: str = Field(..., description="Input amount in token base units")
    estimated_output: str
    fee: str = Field(default="0")


class RouteProposal(BaseModel):
    """Candidate cross-chain route proposed by a discovery agent."""
    id: str = Field(..., min_length=1, description="Route identifier")
    from_token: str
    to_token: str
    amount: str
    path: List[RouteStep] = Field(default_factory=list)
    estimated_gas: str = Field(default="0")
    estimated_time: float = Field(default=0.0, ge=0, description="Seconds")
    estimated_output: str = Field(default="0")
    price_impact: float = Field(default=0.0, ge=0, description="Price impact in percent")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    risks: List[str] = Field(default_factory=list)
    advantages: List[str] = Field(default_factory=list)
    proposed_by: str = Field(default="", description="Agent id")
    is_synthetic: bool = Field(default=False, description="True when built from fallback estimates")


class RiskFactors(BaseModel):
    """Individual risk components on a 0-1 scale."""
    protocol_risk: float = Field(default=0.0, ge=0.0, le=1.0)
    liquidity_risk: float = Field(default=0.0, ge=0.0, le=1.0)
    slippage_risk: float = Field(default=0.0, ge=0.0, le=1.0)
    mev_risk: float = Field(default=0.0, ge=0.0, le=1.0)
    bridge_risk: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class RiskAssessment(BaseModel):
    route_id: str
    overall_risk: float = Field(..., ge=0.0, le=1.0, description="0 = lowest risk")
    security_score: float = Field(..., ge=0.0, le=100.0, description="100 = most secure")
    factors: RiskFactors = Field(default_factory=RiskFactors)
    recommendations: List[str] = Field(default_factory=list)
    blockers: List[str] = Field(default_factory=list, description="Critical issues preventing execution")
    assessed_by: str = ""

    @property
    def is_blocked(self) -> bool:
        return bool(self.blockers)


class GasStrategy(BaseModel):
    gas_price: str = Field(..., description="Gas price in gwei")
    gas_limit: str
    strategy: Literal["fast", "standard", "safe", "custom"] = "standard"
    priority_fee: Optional[str] = None
    estimated_cost: Optional[str] = None


class MevProtection(BaseModel):
    enabled: bool = False
    strategy: Literal["private-mempool", "commit-reveal", "sandwich-protection"] = "private-mempool"
    estimated_protection: float = Field(default=0.0, ge=0.0, le=1.0)


class ExecutionTiming(BaseModel):
    optimal: bool = True
    delay_recommended: float = Field(default=0.0, ge=0, description="Seconds to wait before executing")
    reason: str = ""


class ExecutionStrategy(BaseModel):
    route_id: str
    timing: ExecutionTiming = Field(default_factory=ExecutionTiming)
    mev_protection: MevProtection = Field(default_factory=MevProtection)
    gas_strategy: GasStrategy
    contingency_plans: List[str] = Field(default_factory=list)
    strategy_by: str = ""
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class PerformanceData(BaseModel):
    """Observed outcome of an executed route."""
    route_id: str
    execution_time: float = Field(..., ge=0, description="Seconds")
    actual_gas_cost: str = "0"
    actual_output: str = "0"
    slippage: float = Field(default=0.0, description="Realised slippage in percent")
    success: bool
    errors: List[str] = Field(default_factory=list)
    timestamp: float = Field(default_factory=time.time)


class MarketSnapshot(BaseModel):
    """Latest market conditions shared through MARKET_DATA messages."""
    timestamp: float = Field(default_factory=time.time)
    network_congestion: Dict[str, float] = Field(default_factory=dict, description="0-1 per network")
    gas_prices: Dict[str, float] = Field(default_factory=dict, description="Standard gas price per network")
    volatility: float = Field(default=0.0, ge=0.0, le=1.0)
    liquidity: float = Field(default=1.0, ge=0.0, le=1.0)
    prices: Dict[str, float] = Field(default_factory=dict)


# ============================================================================
# DECISION MODELS
# ============================================================================

CRITERIA_FIELDS: Tuple[str, ...] = ("cost", "time", "security", "reliability", "slippage")


class DecisionCriteria(BaseModel):
    """Relative importance of each scoring factor (any non-negative scale)."""
    cost: float = Field(default=0.35, ge=0.0)
    time: float = Field(default=0.25, ge=0.0)
    security: float = Field(default=0.20, ge=0.0)
    reliability: float = Field(default=0.15, ge=0.0)
    slippage: float = Field(default=0.05, ge=0.0)

    def normalized(self) -> Dict[str, float]:
        """Weights scaled to sum to 1 (equal weights when all are zero)."""
        total = sum(getattr(self, name) for name in CRITERIA_FIELDS)
        if total <= 0:
            return {name: 1.0 / len(CRITERIA_FIELDS) for name in CRITERIA_FIELDS}
        return {name: getattr(self, name) / total for name in CRITERIA_FIELDS}

    def dominant(self) -> Tuple[str, float]:
        """Criterion with the largest normalized share; ties go to the first field."""
        weights = self.normalized()
        name = max(CRITERIA_FIELDS, key=lambda field_name: weights[field_name])
        return name, weights[name]


class ScoreBreakdown(BaseModel):
    """
    Per-criterion scores on a 0-100 scale.

    Missing or null factors count as 0 so partial score objects from
    agents never break aggregation.
    """
    cost: float = 0.0
    time: float = 0.0
    security: float = 0.0
    reliability: float = 0.0
    slippage: float = 0.0

    @model_validator(mode="before")
    @classmethod
    def _nulls_to_zero(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data

    def get(self, criterion: str) -> float:
        return float(getattr(self, criterion, 0.0) or 0.0)


class DecisionScore(BaseModel):
    """
    An agent's score for one route.

    Null or missing fields count as 0. A missing route_id is taken from the
    enclosing response's recommended_route.
    """
    route_id: str = ""
    total_score: float = Field(default=0.0, ge=0.0)
    breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)
    reasoning: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _nulls_to_defaults(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class UserFocus(str, Enum):
    SPEED = "speed"
    SECURITY = "security"
    COST = "cost"
    BALANCED = "balanced"


class UserPreferenceWeights(BaseModel):
    """
    User focus for agent weighting.

    `weightings` overrides the built-in focus multiplier for the listed
    agent types.
    """
    focus: UserFocus = UserFocus.BALANCED
    weightings: Dict[AgentType, float] = Field(default_factory=dict)


# ============================================================================
# CONSENSUS CONTRACTS
# ============================================================================

class ConsensusRequest(BaseModel):
    request_id: str
    routes: List[RouteProposal] = Field(..., min_length=1)
    assessments: List[RiskAssessment] = Field(default_factory=list)
    strategies: List[ExecutionStrategy] = Field(default_factory=list)
    criteria: DecisionCriteria = Field(default_factory=DecisionCriteria)
    deadline: float = Field(..., description="Epoch seconds after which responses are ignored")
    user_preferences: Optional[UserPreferenceWeights] = None

    @model_validator(mode="after")
    def _unique_route_ids(self) -> "ConsensusRequest":
        ids = [route.id for route in self.routes]
        if len(ids) != len(set(ids)):
            raise ValueError("route ids must be unique within a consensus request")
        return self

    def route_ids(self) -> List[str]:
        return [route.id for route in self.routes]

    def has_route(self, route_id: str) -> bool:
        return any(route.id == route_id for route in self.routes)

    def route_index(self, route_id: str) -> int:
        for index, route in enumerate(self.routes):
            if route.id == route_id:
                return index
        return len(self.routes)

    def assessment_for(self, route_id: str) -> Optional[RiskAssessment]:
        return next((a for a in self.assessments if a.route_id == route_id), None)

    def strategy_for(self, route_id: str) -> Optional[ExecutionStrategy]:
        return next((s for s in self.strategies if s.route_id == route_id), None)


class ConsensusResponse(BaseModel):
    """One agent's vote in a consensus round."""
    request_id: str
    agent_id: str
    recommended_route: str
    score: DecisionScore = Field(default_factory=DecisionScore)
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: List[str] = Field(default_factory=list)
    synthetic: bool = Field(default=False, description="Fabricated by the coordinator fallback")

    @model_validator(mode="before")
    @classmethod
    def _default_score(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("score") is None:
            data = {**data, "score": {}}
        return data

    @model_validator(mode="after")
    def _score_route(self) -> "ConsensusResponse":
        if not self.score.route_id:
            self.score = self.score.model_copy(update={"route_id": self.recommended_route})
        return self


class ConflictLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ResolutionMethod(str, Enum):
    SINGLE_RESPONSE = "single_response"
    WEIGHTED_LEADER = "weighted_leader"
    CRITERION_TIEBREAK = "criterion_tiebreak"
    CONFIDENCE_TIEBREAK = "confidence_tiebreak"
    CONFIDENCE_BOOSTED = "confidence_boosted"


class RouteAnalysis(BaseModel):
    """Weighted tally for one candidate route."""
    route_id: str
    weighted_score: float = 0.0
    total_weight: float = 0.0
    confidence_weighted_score: float = Field(default=0.0, description="Sum of score * confidence over supporters")
    vote_count: int = 0
    normalized_score: float = Field(default=0.0, description="weighted_score / total_weight")
    average_confidence: float = 0.0
    breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)
    supporting_agents: List[str] = Field(default_factory=list)
    agent_weights: Dict[str, float] = Field(
        default_factory=dict,
        description="Composite weight applied to each supporter's vote"
    )


class ConsensusDecision(BaseModel):
    request_id: str
    selected_route: str
    conflict_level: ConflictLevel
    resolution: ResolutionMethod
    rankings: List[RouteAnalysis] = Field(default_factory=list)
    score_gap: float = 0.0
    vote_diversity: float = 0.0
    confidence_stdev: float = 0.0
    responses: int = 0
    participants: int = 0
    required_quorum: int = 0
    quorum_met: bool = True
    synthetic: bool = False
    reasoning: List[str] = Field(default_factory=list)
    decided_at: float = Field(default_factory=time.time)
