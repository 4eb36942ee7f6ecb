"""
Main entry point for the cross-chain route consensus demo.

Builds the six specialized agents around an AgentCoordinator, discovers a
handful of sample routes, assesses and plans them, then asks the agents to
agree on one route:
- RouteDiscoveryAgent (route proposals)
- RiskAssessmentAgent (risk and blockers)
- MarketIntelligenceAgent (market snapshots)
- ExecutionStrategyAgent (gas tier, MEV protection, timing)
- SecurityAgent (threat monitoring)
- PerformanceMonitorAgent (execution tracking, never votes)

Tracing goes to Langfuse when LANGFUSE_PUBLIC_KEY and LANGFUSE_SECRET_KEY are set.
"""
import asyncio
import uuid
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

# Load .env FIRST
load_dotenv()

from langfuse import Langfuse
from route_agents.agents import (
    AgentCoordinator,
    ExecutionStrategyAgent,
    MarketIntelligenceAgent,
    PerformanceMonitorAgent,
    RiskAssessmentAgent,
    RouteDiscoveryAgent,
    SecurityAgent,
)
from route_agents.config import settings
from route_agents.errors import RouteAgentsError
from route_agents.models import (
    AgentRole,
    AgentType,
    MarketSnapshot,
    RouteProposal,
    RouteStep,
    UserFocus,
    UserPreferenceWeights,
)
from route_agents.utils.logger import get_logger

# Initialize logger
logger = get_logger(__name__)

SESSION_ID = f"session_{uuid.uuid4()}"


async def sample_routes(params: Dict[str, Any]) -> List[RouteProposal]:
    """Static USDC -> WETH candidates standing in for a DEX aggregator."""
    amount = str(params.get("amount", "1000000000"))
    return [
        RouteProposal(
            id="uniswap-direct",
            from_token="USDC",
            to_token="WETH",
            amount=amount,
            path=[RouteStep(protocol="uniswap-v3", from_token="USDC", to_token="WETH", amount=amount, estimated_output="412000000000000000")],
            estimated_gas="150000",
            estimated_time=30.0,
            estimated_output="412000000000000000",
            price_impact=0.2,
            confidence=0.85,
            advantages=["Single hop", "Deep liquidity"],
        ),
        RouteProposal(
            id="curve-balancer",
            from_token="USDC",
            to_token="WETH",
            amount=amount,
            path=[
                RouteStep(protocol="curve", from_token="USDC", to_token="USDT", amount=amount, estimated_output=amount),
                RouteStep(protocol="balancer", from_token="USDT", to_token="WETH", amount=amount, estimated_output="413500000000000000"),
            ],
            estimated_gas="260000",
            estimated_time=45.0,
            estimated_output="413500000000000000",
            price_impact=0.6,
            confidence=0.7,
            risks=["Two protocol hops"],
            advantages=["Better output"],
        ),
        RouteProposal(
            id="bridge-arbitrum",
            from_token="USDC",
            to_token="WETH",
            amount=amount,
            path=[RouteStep(protocol="1inch-fusion", from_token="USDC", to_token="WETH", amount=amount, estimated_output="414000000000000000")],
            estimated_gas="90000",
            estimated_time=420.0,
            estimated_output="414000000000000000",
            price_impact=1.4,
            confidence=0.55,
            risks=["Bridge delay"],
        ),
    ]


async def sample_market() -> MarketSnapshot:
    return MarketSnapshot(
        network_congestion={"ethereum": 0.45, "arbitrum": 0.1},
        gas_prices={"ethereum": 18.0, "arbitrum": 0.1},
        volatility=0.2,
        prices={"ETH": 2425.0, "USDC": 1.0},
    )


def build_tracer() -> Optional[Langfuse]:
    if not settings.tracing_enabled:
        return None
    return Langfuse(
        public_key=settings.langfuse_public_key,
        secret_key=settings.langfuse_secret_key,
        host=settings.langfuse_host,
    )


async def main():
    """
    Run one consensus round end to end.

    The flow is:
    Discovery → Risk assessment + Execution planning → Consensus → Decision
    """
    print("=" * 70)
    print("CROSS-CHAIN ROUTE CONSENSUS")
    print("=" * 70)
    print(f"Session ID: {SESSION_ID}")

    tracer = build_tracer()
    logger.info("system_initialization_started", session_id=SESSION_ID, tracing=tracer is not None)

    discovery = RouteDiscoveryAgent(route_source=sample_routes, tracer=tracer)
    market = MarketIntelligenceAgent(market_source=sample_market, tracer=tracer)
    risk = RiskAssessmentAgent(tracer=tracer)
    execution = ExecutionStrategyAgent(tracer=tracer)
    security = SecurityAgent(tracer=tracer)
    monitor = PerformanceMonitorAgent(tracer=tracer)

    coordinator = AgentCoordinator(settings.coordinator, tracer=tracer)
    await coordinator.register_agent(security, AgentType.SECURITY, AgentRole.MONITOR, priority=3)
    await coordinator.register_agent(market, AgentType.MARKET_INTELLIGENCE, priority=2)
    await coordinator.register_agent(discovery, AgentType.ROUTE_DISCOVERY, priority=2)
    await coordinator.register_agent(risk, AgentType.RISK_ASSESSMENT, priority=3, dependencies=[market.id])
    await coordinator.register_agent(execution, AgentType.EXECUTION_STRATEGY, priority=2, dependencies=[market.id])
    await coordinator.register_agent(monitor, AgentType.PERFORMANCE_MONITOR, AgentRole.MONITOR)

    print("\n[Starting Agents...]")
    await coordinator.start()
    for entry in coordinator.get_all_agents():
        print(f"  {entry['id']:<28} {entry['type'].value:<22} {entry['status'].value}")

    try:
        await market.execute_task("market-1", {"type": "market_conditions"})
        routes = await discovery.execute_task("discover-1", {"type": "discover_routes", "params": {"amount": "1000000000"}})
        assessments = [await risk.assess(route) for route in routes]
        strategies = [await execution.plan(route) for route in routes]

        decision = await coordinator.run_consensus(
            routes,
            assessments,
            strategies,
            user_preferences=UserPreferenceWeights(focus=UserFocus.BALANCED),
        )

        print("\n[Consensus]")
        print(f"  Selected route: {decision.selected_route}")
        print(f"  Conflict:       {decision.conflict_level.value} ({decision.resolution.value})")
        print(f"  Responses:      {decision.responses}/{decision.participants} (quorum {decision.required_quorum})")
        for line in decision.reasoning:
            print(f"  - {line}")

        health = await coordinator.get_system_health()
        print("\n[System Health]")
        print(f"  Healthy: {health.healthy} ({health.active_agents}/{health.total_agents} active)")
        for issue in health.issues:
            print(f"  ! {issue}")

    except RouteAgentsError as e:
        logger.error("consensus_demo_failed", error=e, session_id=SESSION_ID)
        print(f"\n❌ {e}")

    finally:
        await coordinator.stop()
        if tracer is not None:
            tracer.flush()
        logger.info("system_shutdown", session_id=SESSION_ID)


if __name__ == "__main__":
    asyncio.run(main())
