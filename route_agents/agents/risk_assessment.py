"""
Risk assessment agent.

Assesses routes through a pluggable async risk model, caches the latest
assessment per route and never recommends a route that carries blockers.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from route_agents.agents.specialist import SpecialistAgent, TaskHandler
from route_agents.models.protocols import AgentMessage, AgentType, Capability, MessageType
from route_agents.models.schemas import (
    ConsensusRequest,
    MarketSnapshot,
    RiskAssessment,
    RiskFactors,
    RouteProposal,
)

RiskModel = Callable[[RouteProposal, Optional[MarketSnapshot]], Awaitable[RiskAssessment]]

BLOCKING_PRICE_IMPACT = 15.0


async def default_risk_model(route: RouteProposal, market: Optional[MarketSnapshot]) -> RiskAssessment:
    """Coarse assessment from price impact, hop count and market volatility."""
    hops = max(1, len(route.path))
    volatility = market.volatility if market else 0.0
    factors = RiskFactors(
        protocol_risk=min(1.0, 0.05 * hops),
        liquidity_risk=min(1.0, route.price_impact / 10.0),
        slippage_risk=min(1.0, route.price_impact / 5.0 + volatility / 2.0),
        mev_risk=min(1.0, route.price_impact / 3.0),
    )
    overall = (factors.protocol_risk + factors.liquidity_risk + factors.slippage_risk + factors.mev_risk) / 4.0

    blockers = []
    if route.price_impact >= BLOCKING_PRICE_IMPACT:
        blockers.append(f"Price impact {route.price_impact:.1f}% exceeds {BLOCKING_PRICE_IMPACT:.0f}%")

    recommendations = []
    if factors.mev_risk > 0.3:
        recommendations.append("Enable MEV protection")
    if hops > 3:
        recommendations.append("Prefer a route with fewer hops")

    return RiskAssessment(
        route_id=route.id,
        overall_risk=round(overall, 4),
        security_score=round(100.0 * (1.0 - overall), 2),
        factors=factors,
        recommendations=recommendations,
        blockers=blockers,
    )


class RiskAssessmentAgent(SpecialistAgent):
    agent_type = AgentType.RISK_ASSESSMENT
    default_id = "risk-assessment-agent"
    display_name = "Risk Assessment Agent"
    declared_capabilities = (Capability.ANALYZE, Capability.ASSESS, Capability.MONITOR)
    networks = ("ethereum", "polygon", "bsc", "arbitrum", "optimism")
    emphasis = {"security": 2.0, "slippage": 1.5}

    def __init__(self, config=None, risk_model: Optional[RiskModel] = None, **kwargs: Any):
        super().__init__(config, **kwargs)
        self.risk_model = risk_model or default_risk_model
        self.assessments: Dict[str, RiskAssessment] = {}
        self.market: Optional[MarketSnapshot] = None

    def task_handlers(self) -> Dict[str, TaskHandler]:
        return {"assess_route": self._assess_route}

    async def assess(self, route: RouteProposal) -> RiskAssessment:
        assessment = await self.risk_model(route, self.market)
        if not assessment.assessed_by:
            assessment = assessment.model_copy(update={"assessed_by": self.id})
        self.assessments[route.id] = assessment
        if assessment.is_blocked:
            self.logger.warning("route_blocked", route_id=route.id, blockers=assessment.blockers)
        return assessment

    async def _assess_route(self, task: Dict[str, Any], cancel_event: asyncio.Event) -> RiskAssessment:
        route = RouteProposal.model_validate(task["route"])
        return await self.assess(route)

    async def on_message(self, message: AgentMessage, cancel_event: asyncio.Event) -> None:
        if message.type == MessageType.MARKET_DATA:
            self.market = MarketSnapshot.model_validate(message.payload)
        elif message.type == MessageType.RISK_ASSESSMENT:
            assessment = RiskAssessment.model_validate(message.payload)
            self.assessments[assessment.route_id] = assessment
        else:
            await super().on_message(message, cancel_event)

    def _is_blocked(self, route_id: str, request: ConsensusRequest) -> bool:
        assessment = request.assessment_for(route_id) or self.assessments.get(route_id)
        return assessment is not None and assessment.is_blocked

    def candidate_routes(self, request: ConsensusRequest) -> List[RouteProposal]:
        return [route for route in request.routes if not self._is_blocked(route.id, request)]

    async def analyze(self, analysis_type, payload, cancel_event):
        if analysis_type == "route-risk":
            assessment = self.assessments.get(str(payload.get("route_id")))
            return assessment.model_dump(mode="json") if assessment else None
        return await super().analyze(analysis_type, payload, cancel_event)
