"""
Market intelligence agent.

Keeps the latest market snapshot, refreshed either from MARKET_DATA messages
or through a pluggable async market source, and votes with a cost bias.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from route_agents.agents.specialist import SpecialistAgent, TaskHandler
from route_agents.models.protocols import (
    BROADCAST_ADDRESS,
    AgentMessage,
    AgentType,
    Capability,
    MessageType,
)
from route_agents.models.schemas import MarketSnapshot

MarketSource = Callable[[], Awaitable[MarketSnapshot]]


class MarketIntelligenceAgent(SpecialistAgent):
    agent_type = AgentType.MARKET_INTELLIGENCE
    default_id = "market-intelligence-agent"
    display_name = "Market Intelligence Agent"
    declared_capabilities = (
        Capability.ANALYZE,
        Capability.ASSESS,
        Capability.MONITOR,
        Capability.SIGNAL,
        Capability.FORECAST,
    )
    networks = ("ethereum", "polygon", "bsc", "arbitrum", "bitcoin", "stellar", "solana", "starknet")
    emphasis = {"cost": 2.0}

    def __init__(self, config=None, market_source: Optional[MarketSource] = None, **kwargs: Any):
        super().__init__(config, **kwargs)
        self.market_source = market_source
        self.latest: Optional[MarketSnapshot] = None

    def task_handlers(self) -> Dict[str, TaskHandler]:
        return {"market_conditions": self._market_conditions}

    async def _market_conditions(self, task: Dict[str, Any], cancel_event: asyncio.Event) -> MarketSnapshot:
        if self.market_source is None:
            if self.latest is None:
                raise ValueError(f"Agent {self.id} has no market source and no snapshot yet")
            return self.latest

        snapshot = await self.market_source()
        self.latest = snapshot
        if task.get("publish", True) and not cancel_event.is_set():
            await self.send_message(BROADCAST_ADDRESS, MessageType.MARKET_DATA, snapshot.model_dump(mode="json"))
        return snapshot

    async def on_message(self, message: AgentMessage, cancel_event: asyncio.Event) -> None:
        if message.type == MessageType.MARKET_DATA:
            snapshot = MarketSnapshot.model_validate(message.payload)
            if self.latest is None or snapshot.timestamp >= self.latest.timestamp:
                self.latest = snapshot
        else:
            await super().on_message(message, cancel_event)

    async def analyze(self, analysis_type, payload, cancel_event):
        if analysis_type == "market-snapshot":
            return self.latest.model_dump(mode="json") if self.latest else None
        return await super().analyze(analysis_type, payload, cancel_event)
