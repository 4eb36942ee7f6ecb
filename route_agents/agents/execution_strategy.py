"""
Execution strategy agent.

Plans how a selected route should be executed (gas tier, MEV protection,
timing) through a pluggable async planner.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from route_agents.agents.specialist import SpecialistAgent, TaskHandler
from route_agents.models.protocols import AgentMessage, AgentType, Capability, MessageType, reply_payload
from route_agents.models.schemas import (
    ExecutionStrategy,
    ExecutionTiming,
    GasStrategy,
    MarketSnapshot,
    MevProtection,
    RouteProposal,
)

Planner = Callable[[RouteProposal, Optional[MarketSnapshot]], Awaitable[ExecutionStrategy]]

HIGH_IMPACT = 1.0
MEDIUM_IMPACT = 0.3
CONGESTION_DELAY_THRESHOLD = 0.8


async def default_planner(route: RouteProposal, market: Optional[MarketSnapshot]) -> ExecutionStrategy:
    """Pick the gas tier and MEV protection from price impact."""
    if route.price_impact > HIGH_IMPACT:
        tier, protection = "fast", MevProtection(enabled=True, strategy="private-mempool", estimated_protection=0.9)
    elif route.price_impact > MEDIUM_IMPACT:
        tier, protection = "standard", MevProtection(enabled=True, strategy="sandwich-protection", estimated_protection=0.7)
    else:
        tier, protection = "safe", MevProtection(enabled=False)

    gas_price = 0.0
    congestion = 0.0
    if market is not None:
        gas_price = market.gas_prices.get("ethereum", 0.0)
        congestion = max(market.network_congestion.values(), default=0.0)

    timing = ExecutionTiming()
    if congestion > CONGESTION_DELAY_THRESHOLD:
        timing = ExecutionTiming(optimal=False, delay_recommended=60.0, reason=f"Network congestion {congestion:.0%}")

    return ExecutionStrategy(
        route_id=route.id,
        timing=timing,
        mev_protection=protection,
        gas_strategy=GasStrategy(gas_price=str(gas_price), gas_limit=route.estimated_gas, strategy=tier),
        contingency_plans=["Retry with higher gas price", "Fall back to the runner-up route"],
    )


class ExecutionStrategyAgent(SpecialistAgent):
    agent_type = AgentType.EXECUTION_STRATEGY
    default_id = "execution-strategy-agent"
    display_name = "Execution Strategy Agent"
    declared_capabilities = (Capability.EXECUTE, Capability.ANALYZE, Capability.ASSESS, Capability.MONITOR)
    networks = ("ethereum", "polygon", "bsc", "arbitrum")
    protocols = ("uniswap", "sushiswap", "balancer", "1inch")
    emphasis = {"time": 2.0, "reliability": 1.5}

    def __init__(self, config=None, planner: Optional[Planner] = None, **kwargs: Any):
        super().__init__(config, **kwargs)
        self.planner = planner or default_planner
        self.market: Optional[MarketSnapshot] = None
        self.strategies: Dict[str, ExecutionStrategy] = {}

    def task_handlers(self) -> Dict[str, TaskHandler]:
        return {"plan_execution": self._plan_execution}

    async def plan(self, route: RouteProposal) -> ExecutionStrategy:
        strategy = await self.planner(route, self.market)
        if not strategy.strategy_by:
            strategy = strategy.model_copy(update={"strategy_by": self.id})
        self.strategies[route.id] = strategy
        return strategy

    async def _plan_execution(self, task: Dict[str, Any], cancel_event: asyncio.Event) -> ExecutionStrategy:
        return await self.plan(RouteProposal.model_validate(task["route"]))

    async def on_message(self, message: AgentMessage, cancel_event: asyncio.Event) -> None:
        if message.type == MessageType.MARKET_DATA:
            self.market = MarketSnapshot.model_validate(message.payload)
        elif message.type == MessageType.EXECUTE_ROUTE:
            payload = message.payload or {}
            strategy = await self.plan(RouteProposal.model_validate(payload["route"]))
            await self.send_message(
                message.sender,
                MessageType.EXECUTION_RESULT,
                reply_payload(str(payload.get("request_id", message.id)), result=strategy.model_dump(mode="json")),
            )
        else:
            await super().on_message(message, cancel_event)
