"""
Shared helpers for the test suite: scripted agents, fixed voters and
zero-delay policies so retry paths run instantly.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

import pytest

from route_agents.agents.base_agent import BaseAgent
from route_agents.agents.specialist import SpecialistAgent
from route_agents.config import (
    CircuitBreakerConfig,
    ConsensusPolicy,
    CoordinatorConfig,
    DeliveryRetryPolicy,
    RetryPolicy,
)
from route_agents.errors import ErrorCode, RouteAgentsError
from route_agents.models.protocols import (
    AgentCapabilities,
    AgentConfig,
    AgentMessage,
    AgentType,
    Capability,
    MessageType,
)
from route_agents.models.schemas import (
    ConsensusRequest,
    ConsensusResponse,
    DecisionScore,
    RouteProposal,
    ScoreBreakdown,
)


def no_retry() -> RetryPolicy:
    return RetryPolicy(max_retries=0, initial_delay=0.0, max_delay=0.0)


def fast_retry(max_retries: int) -> RetryPolicy:
    return RetryPolicy(max_retries=max_retries, initial_delay=0.0, max_delay=0.0)


def coordinator_config(**overrides: Any) -> CoordinatorConfig:
    """Coordinator config with instant delivery retries and no background noise."""
    values = {
        "retry": DeliveryRetryPolicy(max_retries=0, backoff=0.0, max_backoff=0.0),
        "consensus": ConsensusPolicy(timeout=2.0),
        "health_check_interval": 3600.0,
        "restart_pause": 0.0,
    }
    values.update(overrides)
    return CoordinatorConfig(**values)


MessageHandler = Callable[[AgentMessage, asyncio.Event], Awaitable[None]]
TaskHandler = Callable[[dict, asyncio.Event], Awaitable[Any]]


class ScriptedAgent(BaseAgent):
    """BaseAgent whose message and task behaviour is set per test."""

    def __init__(
        self,
        agent_id: str = "scripted-agent",
        capabilities: Sequence[Capability] = (Capability.ANALYZE, Capability.ASSESS),
        max_concurrent_tasks: int = 10,
        timeout: float = 5.0,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreakerConfig] = None,
    ):
        config = AgentConfig(
            id=agent_id,
            name=agent_id,
            capabilities=list(capabilities),
            max_concurrent_tasks=max_concurrent_tasks,
            timeout=timeout,
        )
        super().__init__(
            config,
            AgentCapabilities.from_declared(capabilities),
            retry_policy=retry_policy or no_retry(),
            circuit_breaker=circuit_breaker,
        )
        self.received: List[AgentMessage] = []
        self.message_handler: Optional[MessageHandler] = None
        self.task_handler: Optional[TaskHandler] = None
        self.task_calls = 0
        self.initialized = False
        self.cleaned_up = False
        self.fail_initialize = False

    async def initialize(self) -> None:
        if self.fail_initialize:
            raise RuntimeError(f"{self.id} refused to start")
        self.initialized = True

    async def process_message(self, message: AgentMessage, cancel_event: asyncio.Event) -> None:
        self.received.append(message)
        if self.message_handler is not None:
            await self.message_handler(message, cancel_event)

    async def handle_task(self, task: dict, cancel_event: asyncio.Event) -> Any:
        self.task_calls += 1
        if self.task_handler is None:
            return {"echo": task}
        return await self.task_handler(task, cancel_event)

    async def cleanup(self) -> None:
        self.cleaned_up = True


class StubVoter(SpecialistAgent):
    """Specialist that answers consensus requests with a fixed vote."""

    agent_type = AgentType.RISK_ASSESSMENT
    declared_capabilities = (Capability.ANALYZE, Capability.ASSESS)

    def __init__(
        self,
        agent_id: str,
        vote: Optional[Tuple[str, float, float]] = None,
        fail: bool = False,
        hang: bool = False,
    ):
        super().__init__(self.default_config(agent_id), retry_policy=no_retry())
        self.vote = vote
        self.fail = fail
        self.hang = hang
        self.requests_seen = 0

    async def build_consensus_response(
        self,
        request: ConsensusRequest,
        cancel_event: asyncio.Event
    ) -> ConsensusResponse:
        self.requests_seen += 1
        if self.hang:
            await asyncio.Event().wait()
        if self.fail or self.vote is None:
            raise RouteAgentsError(f"{self.id} cannot vote", code=ErrorCode.INVALID_INPUT)
        return response(self.id, *self.vote, request_id=request.request_id)


def route(route_id: str, **overrides: Any) -> RouteProposal:
    values = {
        "id": route_id,
        "from_token": "USDC",
        "to_token": "WETH",
        "amount": "1000000",
        "estimated_time": 60.0,
        "price_impact": 0.5,
        "confidence": 0.7,
    }
    values.update(overrides)
    return RouteProposal(**values)


def consensus_request(route_ids: Sequence[str] = ("r1", "r2"), **overrides: Any) -> ConsensusRequest:
    values = {
        "request_id": "req-1",
        "routes": [route(route_id) for route_id in route_ids],
        "deadline": time.time() + 30.0,
    }
    values.update(overrides)
    return ConsensusRequest(**values)


def response(
    agent_id: str,
    route_id: str,
    score: float,
    confidence: float,
    request_id: str = "req-1",
    breakdown: Optional[dict] = None
) -> ConsensusResponse:
    return ConsensusResponse(
        request_id=request_id,
        agent_id=agent_id,
        recommended_route=route_id,
        score=DecisionScore(
            route_id=route_id,
            total_score=score,
            breakdown=ScoreBreakdown(**(breakdown or {})),
        ),
        confidence=confidence,
    )


def message(to: str = "scripted-agent", message_type: MessageType = MessageType.DECISION_MADE, **overrides: Any) -> AgentMessage:
    values = {"sender": "tester", "to": to, "type": message_type, "payload": {}}
    values.update(overrides)
    return AgentMessage(**values)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll until predicate() holds; fails the test on timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("condition not met before timeout")
        await asyncio.sleep(0.01)
