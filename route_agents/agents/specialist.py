"""
Shared behaviour of the domain agents.

A SpecialistAgent answers three things on top of BaseAgent:
- CONSENSUS_REQUEST: scores the candidate routes and replies to the
  coordinator with a CONSENSUS_RESPONSE
- REQUEST_ANALYSIS: runs a named analysis and replies to the sender with an
  EXECUTION_RESULT carrying the request_id
- Tasks: dispatched by task["type"] to the handlers declared in task_handlers()
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from langfuse import Langfuse

from route_agents.agents.base_agent import BaseAgent
from route_agents.agents.scoring import PerspectiveScorer, RouteScorer
from route_agents.config import AgentDefaults, CircuitBreakerConfig, RetryPolicy
from route_agents.errors import ErrorCode, RouteAgentsError
from route_agents.models.protocols import (
    COORDINATOR_ADDRESS,
    AgentCapabilities,
    AgentConfig,
    AgentMessage,
    AgentType,
    Capability,
    MessagePriority,
    MessageType,
    reply_payload,
)
from route_agents.models.schemas import ConsensusRequest, ConsensusResponse, DecisionScore, RouteProposal

TaskHandler = Callable[[Dict[str, Any], asyncio.Event], Awaitable[Any]]


class SpecialistAgent(BaseAgent):
    agent_type: AgentType
    default_id: str = "specialist-agent"
    display_name: str = "Specialist Agent"
    declared_capabilities: Tuple[Capability, ...] = ()
    networks: Tuple[str, ...] = ("all",)
    protocols: Tuple[str, ...] = ("all",)
    emphasis: Dict[str, float] = {}
    default_max_concurrent_tasks: int = 10
    default_timeout: float = 30.0
    votes: bool = True

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        scorer: Optional[RouteScorer] = None,
        tracer: Optional[Langfuse] = None,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreakerConfig] = None,
        defaults: Optional[AgentDefaults] = None,
    ):
        config = config or self.default_config()
        super().__init__(
            config,
            AgentCapabilities.from_declared(config.capabilities, self.networks, self.protocols),
            tracer=tracer,
            retry_policy=retry_policy,
            circuit_breaker=circuit_breaker,
            defaults=defaults,
        )
        self.scorer: RouteScorer = scorer or PerspectiveScorer(self.emphasis)

    @classmethod
    def default_config(cls, agent_id: Optional[str] = None, **overrides: Any) -> AgentConfig:
        values: Dict[str, Any] = {
            "id": agent_id or cls.default_id,
            "name": cls.display_name,
            "capabilities": list(cls.declared_capabilities),
            "max_concurrent_tasks": cls.default_max_concurrent_tasks,
            "timeout": cls.default_timeout,
        }
        values.update(overrides)
        return AgentConfig(**values)

    async def initialize(self) -> None:
        self.logger.info("specialist_ready", agent_type=self.agent_type.value)

    async def cleanup(self) -> None:
        self.logger.debug("specialist_cleanup", agent_type=self.agent_type.value)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def process_message(self, message: AgentMessage, cancel_event: asyncio.Event) -> None:
        if message.type == MessageType.CONSENSUS_REQUEST:
            await self._answer_consensus(message, cancel_event)
        elif message.type == MessageType.REQUEST_ANALYSIS:
            await self._answer_analysis(message, cancel_event)
        else:
            await self.on_message(message, cancel_event)

    async def on_message(self, message: AgentMessage, cancel_event: asyncio.Event) -> None:
        """Domain messages; the default ignores them."""
        self.logger.debug("message_ignored", message_type=message.type.value, sender=message.sender)

    async def _answer_consensus(self, message: AgentMessage, cancel_event: asyncio.Event) -> None:
        if not self.votes:
            self.logger.info("consensus_request_declined", sender=message.sender)
            return

        payload = message.payload or {}
        request = ConsensusRequest.model_validate(payload["request"])
        response = await self.build_consensus_response(request, cancel_event)
        await self.send_message(
            COORDINATOR_ADDRESS,
            MessageType.CONSENSUS_RESPONSE,
            {"response_id": payload["response_id"], "response": response.model_dump(mode="json")},
            priority=MessagePriority.HIGH,
        )

    def candidate_routes(self, request: ConsensusRequest) -> List[RouteProposal]:
        """Routes this agent is willing to recommend."""
        return list(request.routes)

    def vote_confidence(self, route: RouteProposal, score: DecisionScore) -> float:
        return max(0.0, min(1.0, (route.confidence + score.total_score) / 2.0))

    async def build_consensus_response(
        self,
        request: ConsensusRequest,
        cancel_event: asyncio.Event
    ) -> ConsensusResponse:
        candidates = self.candidate_routes(request)
        if not candidates:
            raise RouteAgentsError(
                f"Agent {self.id} has no acceptable route among {request.route_ids()}",
                code=ErrorCode.INVALID_INPUT,
            )

        scored = []
        for route in candidates:
            if cancel_event.is_set():
                break
            scored.append((route, await self.scorer.score(route, request)))
        if not scored:
            raise RouteAgentsError(f"Scoring cancelled in agent {self.id}", code=ErrorCode.CANCELLED)

        route, score = max(
            scored,
            key=lambda item: (item[1].total_score, -request.route_index(item[0].id))
        )
        return ConsensusResponse(
            request_id=request.request_id,
            agent_id=self.id,
            recommended_route=route.id,
            score=score,
            confidence=self.vote_confidence(route, score),
            reasoning=[f"{self.agent_type.value} perspective"] + score.reasoning,
        )

    async def _answer_analysis(self, message: AgentMessage, cancel_event: asyncio.Event) -> None:
        payload = message.payload if isinstance(message.payload, dict) else {}
        request_id = str(payload.get("request_id", message.id))
        analysis_type = payload.get("type")
        try:
            result = await self.analyze(analysis_type, payload, cancel_event)
        except (ValueError, RouteAgentsError) as e:
            self.logger.warning("analysis_request_failed", analysis_type=analysis_type, error_message=str(e))
            await self.send_message(message.sender, MessageType.EXECUTION_RESULT, reply_payload(request_id, error=str(e)))
            return

        await self.send_message(message.sender, MessageType.EXECUTION_RESULT, reply_payload(request_id, result=result))

    async def analyze(self, analysis_type: Optional[str], payload: Dict[str, Any], cancel_event: asyncio.Event) -> Any:
        """Named analyses served over REQUEST_ANALYSIS. Subclasses extend this."""
        if analysis_type == "status":
            metrics = self.get_metrics()
            return {
                "agent_id": self.id,
                "status": self.status.value,
                "tasks_completed": metrics.tasks_completed,
                "success_rate": metrics.success_rate,
            }
        raise ValueError(f"Unknown analysis type for {self.id}: {analysis_type}")

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def task_handlers(self) -> Dict[str, TaskHandler]:
        return {}

    async def handle_task(self, task: Dict[str, Any], cancel_event: asyncio.Event) -> Any:
        task_type = task.get("type")
        handler = self.task_handlers().get(task_type)
        if handler is None:
            raise ValueError(f"Unknown task type for {self.id}: {task_type}")
        return await handler(task, cancel_event)
