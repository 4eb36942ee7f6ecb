"""
Route discovery agent.

Finds candidate cross-chain routes through a pluggable async route source and
publishes each one to the coordinator as a ROUTE_PROPOSAL.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from route_agents.agents.specialist import SpecialistAgent, TaskHandler
from route_agents.models.protocols import COORDINATOR_ADDRESS, AgentType, Capability, MessageType
from route_agents.models.schemas import RouteProposal

RouteSource = Callable[[Dict[str, Any]], Awaitable[List[RouteProposal]]]


class RouteDiscoveryAgent(SpecialistAgent):
    agent_type = AgentType.ROUTE_DISCOVERY
    default_id = "route-discovery-agent"
    display_name = "Route Discovery Agent"
    declared_capabilities = (Capability.DISCOVER, Capability.ASSESS, Capability.MONITOR)
    networks = ("ethereum", "polygon", "bsc", "arbitrum")
    protocols = ("uniswap-v2", "uniswap-v3", "sushiswap", "curve", "balancer", "1inch-fusion")
    emphasis = {"cost": 1.5, "time": 1.5}

    def __init__(self, config=None, route_source: Optional[RouteSource] = None, **kwargs: Any):
        super().__init__(config, **kwargs)
        self.route_source = route_source
        self.known_routes: Dict[str, RouteProposal] = {}

    def task_handlers(self) -> Dict[str, TaskHandler]:
        return {"discover_routes": self._discover_routes}

    async def _discover_routes(self, task: Dict[str, Any], cancel_event: asyncio.Event) -> List[RouteProposal]:
        if self.route_source is None:
            raise ValueError(f"Agent {self.id} has no route source configured")

        params = task.get("params", {})
        routes = await self.route_source(params)
        proposals = [
            route if route.proposed_by else route.model_copy(update={"proposed_by": self.id})
            for route in routes
        ]

        for proposal in proposals:
            if cancel_event.is_set():
                break
            self.known_routes[proposal.id] = proposal
            if task.get("publish", True):
                await self.send_message(
                    COORDINATOR_ADDRESS,
                    MessageType.ROUTE_PROPOSAL,
                    proposal.model_dump(mode="json"),
                )

        self.logger.info("routes_discovered", count=len(proposals), params=params)
        return proposals

    async def analyze(self, analysis_type, payload, cancel_event):
        if analysis_type == "known-routes":
            return sorted(self.known_routes)
        return await super().analyze(analysis_type, payload, cancel_event)
