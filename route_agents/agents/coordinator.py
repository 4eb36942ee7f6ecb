"""
Agent Coordinator - The hub of the multi-agent system.

Keeps the agent registry, routes messages between agents (custom routers,
direct delivery with retry and fallback, broadcast), runs consensus rounds
and watches agent health.
"""
import asyncio
import contextlib
import math
import time
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ContextManager, Dict, List, Optional, Sequence, Set, Tuple

from langfuse import Langfuse
from pydantic import ValidationError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from route_agents.agents.base_agent import BaseAgent
from route_agents.agents.security import SecurityAgent
from route_agents.config import CoordinatorConfig, settings
from route_agents.consensus import agent_weight, aggregate_consensus
from route_agents.errors import (
    AgentStoppedError,
    AgentUnavailableError,
    ConsensusError,
    CoordinatorError,
    CoordinatorShuttingDownError,
    DeliveryFailedError,
    InsufficientQuorumError,
    NoConsensusParticipantsError,
    NoFallbackAvailableError,
    RegistrationError,
    RoutingError,
)
from route_agents.models.agent import AgentErrorRecord, AgentMetrics
from route_agents.models.protocols import (
    COORDINATOR_ADDRESS,
    AgentCapabilities,
    AgentMessage,
    AgentRole,
    AgentStatus,
    AgentType,
    Capability,
    MessagePriority,
    MessageType,
)
from route_agents.models.reports import AgentStatistics, SystemHealth, TelemetryReport
from route_agents.models.schemas import (
    ConsensusDecision,
    ConsensusRequest,
    ConsensusResponse,
    DecisionCriteria,
    DecisionScore,
    ExecutionStrategy,
    RiskAssessment,
    RouteProposal,
    UserPreferenceWeights,
)
from route_agents.utils.events import EventChannel, Listener, Subscription
from route_agents.utils.logger import get_logger

SYNTHETIC_AGENT_ID = "coordinator-fallback"

# capability flag -> pool name
_POOL_BY_FLAG = {
    "can_analyze_market": "market-analysis",
    "can_discover_routes": "route-discovery",
    "can_assess_risk": "risk-assessment",
    "can_execute_transactions": "execution",
    "can_monitor_performance": "monitoring",
}

# message type -> capability flag the recipient needs
_REQUIRED_FLAG = {
    MessageType.MARKET_DATA: "can_analyze_market",
    MessageType.REQUEST_ANALYSIS: "can_analyze_market",
    MessageType.ROUTE_PROPOSAL: "can_discover_routes",
    MessageType.RISK_ASSESSMENT: "can_assess_risk",
    MessageType.EXECUTE_ROUTE: "can_execute_transactions",
    MessageType.PERFORMANCE_REPORT: "can_monitor_performance",
}


@dataclass
class AgentRegistration:
    """Registry entry for one agent."""
    agent: BaseAgent
    type: AgentType
    role: AgentRole
    priority: int
    dependencies: List[str]
    capabilities: AgentCapabilities
    is_backup: bool = False
    tags: List[str] = field(default_factory=list)
    last_health_check: Optional[float] = None
    failure_count: int = 0
    subscriptions: List[Subscription] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.agent.id


@dataclass(frozen=True)
class _Tombstone:
    type: AgentType
    capabilities: AgentCapabilities


@dataclass
class FunctionRouter:
    """Message router built from two callables."""
    can_route: Callable[[AgentMessage], bool]
    route: Callable[[AgentMessage], Awaitable[None]]


@dataclass
class _Telemetry:
    messages_processed: int = 0
    messages_by_type: Counter = field(default_factory=Counter)
    routing_errors: int = 0
    agent_failures: Counter = field(default_factory=Counter)
    agent_successes: Counter = field(default_factory=Counter)
    consensus_requests: int = 0
    consensus_success_rate: float = 1.0
    consensus_failures: Counter = field(default_factory=Counter)


class AgentCoordinator:
    """
    Orchestrates registered agents and turns their votes into route decisions.

    Responsibilities:
    - Agent registry with capability, type and role pools
    - Message routing (custom routers, direct delivery, broadcast)
    - Fallback agent discovery with a bounded number of hops
    - Consensus request/response rounds with a configurable quorum policy
    - Health monitoring, recovery and restart
    - Telemetry

    Events (see `subscribe()`):
        agentStatusChange  {"agent_id", "status", "previous_status"}
        agentError         {"agent_id", "error"}
        routingError       {"message", "error"}
        healthAlert        SystemHealth
        telemetryReport    TelemetryReport
        routeProposal      RouteProposal
        errorReport        {"agent_id", "error", "context"}
        consensusCompleted ConsensusDecision

    Example:
        coordinator = AgentCoordinator(settings.coordinator, tracer=langfuse)
        await coordinator.register_agent(RiskAssessmentAgent(), AgentType.RISK_ASSESSMENT)
        await coordinator.register_agent(MarketIntelligenceAgent(), AgentType.MARKET_INTELLIGENCE)
        await coordinator.start()

        route_id = await coordinator.request_consensus(routes, assessments, strategies)
        await coordinator.stop()
    """

    def __init__(self, config: Optional[CoordinatorConfig] = None, tracer: Optional[Langfuse] = None):
        """
        Initialize the coordinator.

        Args:
            config: Coordinator configuration (settings.coordinator when omitted)
            tracer: Optional Langfuse client for observability
        """
        self.config = config or settings.coordinator
        self.tracer = tracer
        self.events = EventChannel(COORDINATOR_ADDRESS)
        self.logger = get_logger("coordinator")

        self._agents: Dict[str, AgentRegistration] = {}
        self._pools: Dict[str, Tuple[str, ...]] = {}
        self._tombstones: Dict[str, _Tombstone] = {}
        self._routers: Dict[MessageType, Any] = {}
        self._response_handlers: Dict[str, "asyncio.Future[ConsensusResponse]"] = {}
        self._consensus_in_progress: Dict[str, ConsensusRequest] = {}
        self._background: Set["asyncio.Task[Any]"] = set()
        self._security_agent_id: Optional[str] = None

        self._running = False
        self._shutting_down = False
        self._health_task: Optional["asyncio.Task[None]"] = None
        self._telemetry_task: Optional["asyncio.Task[None]"] = None
        self._started_at = time.time()
        self._telemetry = _Telemetry()

        self._setup_default_routers()

        self.logger.info(
            "coordinator_initialized",
            max_agents=self.config.max_agents,
            consensus_timeout=self.config.consensus.timeout,
            quorum_ratio=self.config.consensus.quorum_ratio
        )

    # ------------------------------------------------------------------
    # Routers
    # ------------------------------------------------------------------

    def _setup_default_routers(self) -> None:
        self.register_message_router(
            MessageType.CONSENSUS_RESPONSE,
            FunctionRouter(lambda msg: True, self._handle_consensus_response)
        )
        self.register_message_router(
            MessageType.MARKET_DATA,
            FunctionRouter(lambda msg: True, lambda msg: self.broadcast_to_capable_agents(msg, "can_analyze_market"))
        )
        self.register_message_router(
            MessageType.RISK_ASSESSMENT,
            FunctionRouter(lambda msg: True, lambda msg: self.broadcast_to_capable_agents(msg, "can_assess_risk"))
        )
        self.register_message_router(
            MessageType.ROUTE_PROPOSAL,
            FunctionRouter(lambda msg: True, self._handle_route_proposal)
        )
        self.register_message_router(
            MessageType.ERROR_REPORT,
            FunctionRouter(lambda msg: True, self._handle_error_report)
        )

    def register_message_router(self, message_type: MessageType, router: Any) -> None:
        """
        Install a routing strategy for one message type.

        The router needs `can_route(message) -> bool` and an async
        `route(message)`; it replaces any router already set for the type.
        """
        self._routers[message_type] = router

    def subscribe(self, event: str, listener: Listener) -> Subscription:
        return self.events.subscribe(event, listener)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register_agent(
        self,
        agent: BaseAgent,
        agent_type: AgentType,
        role: AgentRole = AgentRole.PRIMARY,
        priority: int = 1,
        dependencies: Optional[Sequence[str]] = None,
        is_backup: bool = False,
        tags: Optional[Sequence[str]] = None
    ) -> AgentRegistration:
        """
        Add an agent to the registry and start listening to its events.

        Args:
            agent: Agent instance
            agent_type: Functional type, used for type pools and fallback
            role: Primary, backup, specialized or monitor
            priority: Routing and consensus weight (higher wins)
            dependencies: Agent ids that must be registered (and are started) first;
                defaults to the agent config's dependencies
            is_backup: Preferred fallback for agents of the same type
            tags: Free-form labels

        Raises:
            RegistrationError: Capacity reached, duplicate id, missing dependency
                or inconsistent capabilities
        """
        agent_id = agent.id
        if len(self._agents) >= self.config.max_agents:
            raise RegistrationError(f"Maximum agent limit reached: {self.config.max_agents}")
        if agent_id in self._agents:
            raise RegistrationError(f"Agent {agent_id} is already registered")

        dependencies = list(dependencies if dependencies is not None else agent.config.dependencies)
        missing = [dep for dep in dependencies if dep not in self._agents]
        if missing:
            raise RegistrationError(f"Dependencies {missing} not found for agent {agent_id}")

        capabilities = agent.get_capabilities()
        self._validate_capabilities(agent, capabilities)

        registration = AgentRegistration(
            agent=agent,
            type=AgentType(agent_type),
            role=AgentRole(role),
            priority=priority,
            dependencies=dependencies,
            capabilities=capabilities,
            is_backup=is_backup,
            tags=list(tags or []),
        )
        self._attach(registration)

        self._agents[agent_id] = registration
        self._tombstones.pop(agent_id, None)
        self._rebuild_pools()

        if isinstance(agent, SecurityAgent) and self._security_agent_id is None:
            self._security_agent_id = agent_id

        self.logger.info(
            "agent_registered",
            agent_id=agent_id,
            agent_type=registration.type.value,
            role=registration.role.value,
            priority=priority,
            backup=is_backup,
            dependencies=dependencies
        )
        return registration

    async def unregister_agent(self, agent_id: str) -> None:
        """
        Remove an agent, stopping it first if it is running.

        A tombstone (type and capabilities) is kept so messages still
        addressed to the removed id can fall back to a same-type agent.

        Raises:
            RegistrationError: Unknown agent or other agents depend on it
        """
        registration = self._agents.get(agent_id)
        if registration is None:
            raise RegistrationError(f"Agent {agent_id} is not registered")

        dependents = [r.id for r in self._agents.values() if agent_id in r.dependencies]
        if dependents:
            raise RegistrationError(f"Agent {agent_id} is required by {dependents}")

        if registration.agent.get_status() != AgentStatus.OFFLINE:
            await registration.agent.stop()
        self._detach(registration)

        del self._agents[agent_id]
        self._tombstones[agent_id] = _Tombstone(registration.type, registration.capabilities)
        self._rebuild_pools()
        if self._security_agent_id == agent_id:
            self._security_agent_id = None

        self.logger.info("agent_unregistered", agent_id=agent_id, agent_type=registration.type.value)

    def _validate_capabilities(self, agent: BaseAgent, capabilities: AgentCapabilities) -> None:
        declared = set(agent.config.capabilities)
        implied = capabilities.implied_capabilities()

        if capabilities.can_execute_transactions and Capability.EXECUTE not in declared:
            raise RegistrationError(
                f"Agent {agent.id} claims execution capability but doesn't declare it"
            )

        undeclared = [c.value for c in implied if c not in declared]
        if undeclared:
            self.logger.warning("agent_capabilities_undeclared", agent_id=agent.id, capabilities=undeclared)

    def _rebuild_pools(self) -> None:
        pools: Dict[str, List[str]] = defaultdict(list)
        for agent_id, registration in self._agents.items():
            for flag, pool in _POOL_BY_FLAG.items():
                if getattr(registration.capabilities, flag):
                    pools[pool].append(agent_id)
            pools[f"type:{registration.type.value}"].append(agent_id)
            pools[f"role:{registration.role.value}"].append(agent_id)
        self._pools = {name: tuple(ids) for name, ids in pools.items()}

    def _attach(self, registration: AgentRegistration) -> None:
        if registration.subscriptions:
            return
        agent_id = registration.id
        events = registration.agent.events
        registration.subscriptions = [
            events.subscribe("message", self.route_message),
            events.subscribe("statusChange", self._on_agent_status_change),
            events.subscribe("error", lambda record: self._on_agent_error(agent_id, record)),
        ]

    def _detach(self, registration: AgentRegistration) -> None:
        for subscription in registration.subscriptions:
            subscription.cancel()
        registration.subscriptions = []

    # ------------------------------------------------------------------
    # Agent event relays
    # ------------------------------------------------------------------

    async def _on_agent_status_change(self, change: Dict[str, Any]) -> None:
        agent_id = change["agent_id"]
        self.logger.info(
            "agent_status_changed",
            agent_id=agent_id,
            status=change["status"].value,
            previous_status=change["previous_status"].value
        )
        self.events.emit("agentStatusChange", change)
        await self._relay_security_event(agent_id, "status_change", change["status"])

    async def _on_agent_error(self, agent_id: str, record: AgentErrorRecord) -> None:
        self.logger.warning(
            "agent_error_reported",
            agent_id=agent_id,
            error=record.error,
            severity=record.severity
        )
        self.events.emit("agentError", {"agent_id": agent_id, "error": record})
        await self._relay_security_event(agent_id, "error", record)

    async def _relay_security_event(self, agent_id: str, kind: str, data: Any) -> None:
        security_id = self._security_agent_id
        if security_id is None or security_id == agent_id:
            return
        registration = self._agents.get(security_id)
        if registration is None or registration.agent.get_status() != AgentStatus.ACTIVE:
            return
        await registration.agent.receive_security_event(agent_id, kind, data)

    # ------------------------------------------------------------------
    # Message routing
    # ------------------------------------------------------------------

    async def route_message(self, message: AgentMessage) -> None:
        """
        Route one message. Failures are logged and emitted as routingError,
        never raised to the caller.

        Order: custom router for the type, then direct delivery, broadcast,
        and finally the coordinator's own handler.
        """
        self._telemetry.messages_processed += 1
        self._telemetry.messages_by_type[message.type.value] += 1
        try:
            router = self._routers.get(message.type)
            if router is not None and router.can_route(message):
                await router.route(message)
            elif message.to and not message.is_broadcast and not message.is_for_coordinator:
                await self._route_to_specific_agent(message)
            elif message.is_broadcast:
                await self._broadcast(message)
            elif message.is_for_coordinator:
                await self._handle_coordinator_message(message)
            else:
                raise RoutingError(f"Unroutable message {message.id} ({message.type.value})")
        except Exception as e:
            self._telemetry.routing_errors += 1
            self.logger.error(
                "message_routing_failed",
                error=e,
                message_id=message.id,
                message_type=message.type.value,
                sender=message.sender,
                to=message.to
            )
            self.events.emit("routingError", {"message": message, "error": e})

    handle_message = route_message

    async def _route_to_specific_agent(self, message: AgentMessage) -> None:
        """
        Direct delivery with fallback.

        Each failed or ineligible target is excluded for the rest of this
        message, and at most `max_fallback_hops` rewrites are made.

        Raises:
            NoFallbackAvailableError: Target unusable and no fallback left
            DeliveryFailedError: Retries exhausted and no fallback left
        """
        excluded: Set[str] = set()
        hops = 0
        while True:
            registration = self._agents.get(message.to)

            if message.type == MessageType.EXECUTION_RESULT:
                if registration is None:
                    raise RoutingError(f"Reply {message.id} addressed to unknown agent {message.to}")
                await self._deliver_with_retry(registration, message)
                return

            if registration is None or not self._can_handle(registration, message):
                excluded.add(message.to)
                message = self._redirect_to_fallback(message, excluded, hops)
                hops += 1
                continue

            try:
                await self._deliver_with_retry(registration, message)
                return
            except Exception as error:
                excluded.add(message.to)
                try:
                    message = self._redirect_to_fallback(message, excluded, hops)
                except NoFallbackAvailableError:
                    raise DeliveryFailedError(
                        f"Failed to deliver message {message.id} to {message.to}: {error}"
                    ) from error
                hops += 1

    def _redirect_to_fallback(self, message: AgentMessage, excluded: Set[str], hops: int) -> AgentMessage:
        if hops >= self.config.max_fallback_hops:
            raise NoFallbackAvailableError(
                f"Fallback limit reached for message {message.id} after {hops} hops"
            )
        fallback = self._find_fallback(message.to, message, excluded)
        if fallback is None:
            raise NoFallbackAvailableError(f"Agent {message.to} unavailable and no fallback available")

        self.logger.info("fallback_selected", message_id=message.id, target=message.to, fallback=fallback, hop=hops + 1)
        return message.redirect(fallback)

    def _find_fallback(self, target_id: str, message: AgentMessage, excluded: Set[str]) -> Optional[str]:
        """Same-type backup first, then any agent sharing a capability flag."""
        reference = self._agents.get(target_id) or self._tombstones.get(target_id)
        if reference is not None:
            agent_type, capabilities = reference.type, reference.capabilities
        else:
            try:
                agent_type, capabilities = AgentType(target_id), None
            except ValueError:
                return None

        candidates = [
            registration for registration in self._agents.values()
            if registration.id not in excluded
            and registration.id != target_id
            and registration.id != message.sender
            and self._can_handle(registration, message)
        ]
        candidates.sort(key=lambda r: -r.priority)

        for registration in candidates:
            if registration.type == agent_type and registration.is_backup:
                return registration.id

        for registration in candidates:
            if capabilities is None:
                if registration.type == agent_type:
                    return registration.id
            elif registration.capabilities.shares_any_flag(capabilities):
                return registration.id
        return None

    async def _deliver_with_retry(self, registration: AgentRegistration, message: AgentMessage) -> None:
        policy = self.config.retry
        agent_id = registration.id

        def _before_sleep(retry_state: RetryCallState) -> None:
            self.logger.info(
                "delivery_retry_scheduled",
                agent_id=agent_id,
                message_id=message.id,
                attempt=retry_state.attempt_number,
                delay=retry_state.next_action.sleep if retry_state.next_action else 0.0
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(policy.max_retries + 1),
            wait=wait_exponential(multiplier=policy.backoff, exp_base=2, max=policy.max_backoff),
            retry=retry_if_exception(
                lambda e: not isinstance(e, (AgentUnavailableError, AgentStoppedError))
            ),
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                try:
                    await registration.agent.receive_message(message)
                except Exception:
                    self._record_agent_failure(registration)
                    raise
        self._record_agent_success(registration)

    def _can_handle(self, registration: AgentRegistration, message: Optional[AgentMessage] = None) -> bool:
        agent = registration.agent
        if not agent.is_healthy() or agent.get_status() != AgentStatus.ACTIVE:
            return False

        if message is not None:
            flag = _REQUIRED_FLAG.get(message.type)
            if flag is not None and not getattr(registration.capabilities, flag):
                return False

        balancing = self.config.load_balancing
        if balancing.enabled:
            if agent.tasks_in_progress >= balancing.max_tasks_per_agent:
                return False
            if agent.success_rate < balancing.health_threshold:
                return False
        return True

    async def _broadcast(self, message: AgentMessage) -> int:
        eligible = [
            registration for registration in self._agents.values()
            if registration.id != message.sender and self._can_handle(registration, message)
        ]
        eligible.sort(key=lambda r: (r.agent.tasks_in_progress, -r.priority))
        return await self._deliver_all(message, eligible[:self.config.broadcast_fanout])

    async def broadcast_to_capable_agents(self, message: AgentMessage, capability: str) -> int:
        """
        Deliver to the highest-priority agents holding a capability flag.

        Args:
            message: Message to deliver (the sender never receives it back)
            capability: AgentCapabilities flag, e.g. "can_assess_risk"

        Returns:
            Number of successful deliveries
        """
        if capability not in _POOL_BY_FLAG:
            raise ValueError(f"Unknown capability flag: {capability}")

        capable = [
            registration for registration in self._agents.values()
            if getattr(registration.capabilities, capability)
            and registration.id != message.sender
            and self._can_handle(registration, message)
        ]
        if not capable:
            self.logger.warning("no_capable_agents", capability=capability, message_type=message.type.value)
            return 0

        capable.sort(key=lambda r: -r.priority)
        return await self._deliver_all(message, capable[:self.config.capability_fanout])

    async def _deliver_all(self, message: AgentMessage, targets: List[AgentRegistration]) -> int:
        results = await asyncio.gather(
            *(self._route_to_specific_agent(message.redirect(target.id)) for target in targets),
            return_exceptions=True
        )

        delivered = 0
        for target, result in zip(targets, results):
            if isinstance(result, Exception):
                self._telemetry.routing_errors += 1
                self.logger.warning(
                    "broadcast_delivery_failed",
                    message_id=message.id,
                    agent_id=target.id,
                    error=str(result)
                )
            else:
                delivered += 1
        return delivered

    def _record_agent_success(self, registration: AgentRegistration) -> None:
        self._telemetry.agent_successes[registration.id] += 1
        registration.failure_count = max(0, registration.failure_count - 1)

    def _record_agent_failure(self, registration: AgentRegistration) -> None:
        self._telemetry.agent_failures[registration.id] += 1
        registration.failure_count += 1

    # ------------------------------------------------------------------
    # Coordinator-addressed messages
    # ------------------------------------------------------------------

    async def _handle_coordinator_message(self, message: AgentMessage) -> None:
        if message.type == MessageType.REQUEST_ANALYSIS:
            await self._handle_analysis_request(message)
        else:
            self.logger.info("coordinator_message_unhandled", message_type=message.type.value, sender=message.sender)

    async def _handle_analysis_request(self, message: AgentMessage) -> None:
        payload = message.payload if isinstance(message.payload, dict) else {}
        analysis_type = payload.get("type")
        request_id = str(payload.get("request_id", message.id))

        if analysis_type == "system-health":
            health = await self.get_system_health()
            reply = AgentMessage.reply(COORDINATOR_ADDRESS, message.sender, request_id, result=health.model_dump(mode="json"))
        elif analysis_type == "agent-metrics":
            stats = [stat.model_dump(mode="json") for stat in self._agent_statistics()]
            reply = AgentMessage.reply(COORDINATOR_ADDRESS, message.sender, request_id, result=stats)
        else:
            self.logger.warning("unknown_analysis_request", analysis_type=analysis_type, sender=message.sender)
            reply = AgentMessage.reply(
                COORDINATOR_ADDRESS,
                message.sender,
                request_id,
                error=f"Unknown analysis request: {analysis_type}"
            )
        await self.route_message(reply)

    async def _handle_consensus_response(self, message: AgentMessage) -> None:
        payload = message.payload or {}
        response_id = payload.get("response_id")
        future = self._response_handlers.get(response_id)
        if future is None or future.done():
            self.logger.warning("consensus_response_unexpected", response_id=response_id, sender=message.sender)
            return

        try:
            response = ConsensusResponse.model_validate(payload.get("response"))
        except ValidationError as e:
            self.logger.warning(
                "consensus_response_invalid",
                response_id=response_id,
                sender=message.sender,
                errors=e.error_count()
            )
            future.set_exception(ConsensusError(f"Invalid consensus response from {message.sender}: {e}"))
            return
        future.set_result(response)

    async def _handle_route_proposal(self, message: AgentMessage) -> None:
        proposal = RouteProposal.model_validate(message.payload)
        self.logger.info("route_proposal_received", route_id=proposal.id, sender=message.sender)
        self.events.emit("routeProposal", proposal)

    async def _handle_error_report(self, message: AgentMessage) -> None:
        payload = message.payload or {}
        self.logger.error(
            "agent_error_report",
            agent_id=message.sender,
            reported_error=payload.get("error"),
            context=payload.get("context")
        )
        self.events.emit(
            "errorReport",
            {"agent_id": message.sender, "error": payload.get("error"), "context": payload.get("context")}
        )

    # ------------------------------------------------------------------
    # Consensus
    # ------------------------------------------------------------------

    async def request_consensus(
        self,
        routes: List[RouteProposal],
        assessments: Optional[List[RiskAssessment]] = None,
        strategies: Optional[List[ExecutionStrategy]] = None,
        criteria: Optional[DecisionCriteria] = None,
        user_preferences: Optional[UserPreferenceWeights] = None
    ) -> str:
        """Run a consensus round and return the selected route id."""
        decision = await self.run_consensus(routes, assessments, strategies, criteria, user_preferences)
        return decision.selected_route

    async def run_consensus(
        self,
        routes: List[RouteProposal],
        assessments: Optional[List[RiskAssessment]] = None,
        strategies: Optional[List[ExecutionStrategy]] = None,
        criteria: Optional[DecisionCriteria] = None,
        user_preferences: Optional[UserPreferenceWeights] = None
    ) -> ConsensusDecision:
        """
        Ask every eligible voting agent for a recommendation and aggregate.

        Flow:
        1. Build the request (deadline = now + consensus timeout)
        2. Pick participants: analyze or assess capability, eligible, not a backup
        3. Send CONSENSUS_REQUEST to each and wait until all answer or the deadline passes
        4. Enforce the quorum policy and aggregate the responses

        Raises:
            NoConsensusParticipantsError: No eligible agent
            InsufficientQuorumError: Too few responses under the quorum policy
            NoConsensusResponsesError: No valid response to aggregate
            CoordinatorShuttingDownError: stop() was called during the round
        """
        if self._shutting_down:
            raise CoordinatorShuttingDownError("Coordinator shutting down")

        policy = self.config.consensus
        request = ConsensusRequest(
            request_id=self._new_request_id(),
            routes=routes,
            assessments=assessments or [],
            strategies=strategies or [],
            criteria=criteria or DecisionCriteria(**self.config.decision_criteria.model_dump()),
            deadline=time.time() + policy.timeout,
            user_preferences=user_preferences,
        )

        self._consensus_in_progress[request.request_id] = request
        self._telemetry.consensus_requests += 1
        try:
            with self._span("consensus"):
                self._trace_update(
                    name="consensus",
                    metadata={"request_id": request.request_id, "routes": request.route_ids()}
                )
                participants = self._consensus_participants()
                if not participants:
                    raise NoConsensusParticipantsError("No agents available for consensus")

                self.logger.info(
                    "consensus_started",
                    request_id=request.request_id,
                    routes=len(routes),
                    participants=[p.id for p in participants]
                )
                responses = await self._gather_consensus_responses(participants, request)
                decision = self._decide(responses, participants, request)
        except Exception as e:
            self._update_consensus_success_rate(False)
            reason = "shutting_down" if isinstance(e, CoordinatorShuttingDownError) else getattr(e, "reason", "error")
            self._telemetry.consensus_failures[reason] += 1
            self.logger.error("consensus_failed", error=e, request_id=request.request_id, reason=reason)
            raise
        finally:
            self._consensus_in_progress.pop(request.request_id, None)

        self._update_consensus_success_rate(True)
        self.logger.info(
            "consensus_completed",
            request_id=request.request_id,
            selected_route=decision.selected_route,
            conflict_level=decision.conflict_level.value,
            responses=decision.responses,
            quorum_met=decision.quorum_met
        )
        self.events.emit("consensusCompleted", decision)
        return decision

    def _consensus_participants(self) -> List[AgentRegistration]:
        participants = [
            registration for registration in self._agents.values()
            if (registration.capabilities.can_analyze_market or registration.capabilities.can_assess_risk)
            and not registration.is_backup
            and registration.type != AgentType.PERFORMANCE_MONITOR
            and registration.role != AgentRole.MONITOR
            and self._can_handle(registration)
        ]
        participants.sort(key=lambda r: -r.priority)
        return participants

    async def _gather_consensus_responses(
        self,
        participants: List[AgentRegistration],
        request: ConsensusRequest
    ) -> List[ConsensusResponse]:
        loop = asyncio.get_running_loop()
        pending: Dict[str, Tuple[str, "asyncio.Future[ConsensusResponse]"]] = {}
        request_payload = request.model_dump(mode="json")

        for registration in participants:
            response_id = self._new_request_id()
            future: "asyncio.Future[ConsensusResponse]" = loop.create_future()
            self._response_handlers[response_id] = future
            pending[registration.id] = (response_id, future)

            message = AgentMessage(
                id=response_id,
                sender=COORDINATOR_ADDRESS,
                to=registration.id,
                type=MessageType.CONSENSUS_REQUEST,
                payload={"request": request_payload, "response_id": response_id},
                priority=MessagePriority.HIGH,
            )
            self._track(self._send_consensus_request(registration, message, future))

        futures = [future for _, future in pending.values()]
        try:
            await asyncio.wait(futures, timeout=max(0.0, request.deadline - time.time()))
        finally:
            for response_id, future in pending.values():
                self._response_handlers.pop(response_id, None)
                if not future.done():
                    future.cancel()

        responses = []
        for agent_id, (_, future) in pending.items():
            if future.cancelled():
                self.logger.warning("consensus_response_timeout", request_id=request.request_id, agent_id=agent_id)
                continue
            error = future.exception()
            if isinstance(error, CoordinatorShuttingDownError):
                raise error
            if error is not None:
                self.logger.warning(
                    "consensus_response_failed",
                    request_id=request.request_id,
                    agent_id=agent_id,
                    error=str(error)
                )
                continue
            responses.append(future.result())
        return responses

    async def _send_consensus_request(
        self,
        registration: AgentRegistration,
        message: AgentMessage,
        future: "asyncio.Future[ConsensusResponse]"
    ) -> None:
        try:
            await registration.agent.receive_message(message)
        except Exception as e:
            if not future.done():
                future.set_exception(e)

    def _decide(
        self,
        responses: List[ConsensusResponse],
        participants: List[AgentRegistration],
        request: ConsensusRequest
    ) -> ConsensusDecision:
        policy = self.config.consensus
        required = max(1, math.ceil(round(len(participants) * policy.quorum_ratio, 9)))
        quorum_met = len(responses) >= required

        if not quorum_met:
            if not responses and policy.allow_synthetic_fallback:
                responses = [self._synthetic_response(request)]
                self.logger.warning("consensus_synthetic_fallback", request_id=request.request_id, required=required)
            elif responses and policy.allow_partial_quorum:
                self.logger.warning(
                    "consensus_partial_quorum",
                    request_id=request.request_id,
                    received=len(responses),
                    required=required
                )
            else:
                raise InsufficientQuorumError(len(responses), required, len(participants))

        decision = aggregate_consensus(responses, request, weight_for=self._agent_weight, type_for=self._agent_type)
        return decision.model_copy(update={
            "participants": len(participants),
            "required_quorum": required,
            "quorum_met": quorum_met,
            "synthetic": decision.synthetic or any(r.synthetic for r in responses),
        })

    def _synthetic_response(self, request: ConsensusRequest) -> ConsensusResponse:
        best = max(request.routes, key=lambda route: (route.confidence, -request.route_index(route.id)))
        return ConsensusResponse(
            request_id=request.request_id,
            agent_id=SYNTHETIC_AGENT_ID,
            recommended_route=best.id,
            score=DecisionScore(
                route_id=best.id,
                total_score=best.confidence,
                reasoning=["Highest proposer confidence"]
            ),
            confidence=best.confidence,
            reasoning=["Synthetic fallback: no agent responded"],
            synthetic=True,
        )

    def _agent_weight(self, agent_id: str) -> float:
        registration = self._agents.get(agent_id)
        if registration is None:
            return 1.0
        return agent_weight(
            registration.priority,
            registration.agent.is_healthy(),
            registration.agent.success_rate,
            registration.failure_count
        )

    def _agent_type(self, agent_id: str) -> Optional[AgentType]:
        registration = self._agents.get(agent_id)
        return registration.type if registration else None

    def _update_consensus_success_rate(self, success: bool) -> None:
        total = self._telemetry.consensus_requests
        rate = self._telemetry.consensus_success_rate
        self._telemetry.consensus_success_rate = (rate * (total - 1) + (1.0 if success else 0.0)) / total

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start agents in dependency order, then the health and telemetry loops."""
        if self._running:
            raise CoordinatorError("Coordinator already running")

        self.logger.info("coordinator_starting", agents=len(self._agents))
        self._shutting_down = False

        for agent_id in self._start_order():
            registration = self._agents[agent_id]
            self._attach(registration)
            try:
                await registration.agent.start()
            except Exception as e:
                registration.failure_count += 1
                self.logger.error("agent_start_failed", error=e, agent_id=agent_id)

        self._running = True
        self._health_task = asyncio.create_task(self._health_loop())
        if self.config.telemetry.enabled:
            self._telemetry_task = asyncio.create_task(self._telemetry_loop())

        self.logger.info(
            "coordinator_started",
            agents=len(self._agents),
            active=sum(1 for r in self._agents.values() if r.agent.get_status() == AgentStatus.ACTIVE)
        )

    async def stop(self) -> None:
        """
        Shut down: stop the loops, reject pending consensus rounds, stop
        agents in reverse dependency order and drop every subscription.
        """
        if not self._running:
            return

        self.logger.info("coordinator_stopping", pending_consensus=len(self._consensus_in_progress))
        self._shutting_down = True

        loops = [task for task in (self._health_task, self._telemetry_task) if task is not None]
        for task in loops:
            task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)
        self._health_task = self._telemetry_task = None

        handlers, self._response_handlers = self._response_handlers, {}
        for future in handlers.values():
            if not future.done():
                future.set_exception(CoordinatorShuttingDownError("Coordinator shutting down"))

        background = list(self._background)
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)

        for agent_id in reversed(self._start_order()):
            try:
                await self._agents[agent_id].agent.stop()
            except Exception as e:
                self.logger.error("agent_stop_failed", error=e, agent_id=agent_id)

        for registration in self._agents.values():
            self._detach(registration)

        self._running = False
        self.logger.info("coordinator_stopped")

    def _start_order(self) -> List[str]:
        """Depth-first topological order: dependencies before dependents."""
        visited: Set[str] = set()
        order: List[str] = []

        def visit(agent_id: str) -> None:
            if agent_id in visited:
                return
            visited.add(agent_id)
            registration = self._agents.get(agent_id)
            if registration is None:
                return
            for dependency in registration.dependencies:
                visit(dependency)
            order.append(agent_id)

        for agent_id in self._agents:
            visit(agent_id)
        return order

    def _track(self, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Health monitoring
    # ------------------------------------------------------------------

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.health_check_interval)
            try:
                await self.perform_health_check()
            except Exception as e:
                self.logger.error("health_check_failed", error=e)

    async def perform_health_check(self) -> SystemHealth:
        """One monitoring sweep: alert, recover unhealthy agents, restart failed ones."""
        health = await self.get_system_health()

        if health.unhealthy_agents:
            self.logger.warning("unhealthy_agents_detected", agents=health.unhealthy_agents, issues=health.issues)
            self.events.emit("healthAlert", health)
            for agent_id in health.unhealthy_agents:
                if agent_id not in health.failed_agents:
                    await self._attempt_agent_recovery(agent_id)

        for agent_id in health.failed_agents:
            await self._restart_agent(agent_id)
        return health

    async def _attempt_agent_recovery(self, agent_id: str) -> None:
        registration = self._agents.get(agent_id)
        if registration is None:
            return

        try:
            report = await registration.agent.health_check()
        except Exception as e:
            registration.failure_count += 1
            self.logger.error("agent_recovery_failed", error=e, agent_id=agent_id)
            return

        if report.healthy:
            registration.failure_count = max(0, registration.failure_count - 1)
            self.logger.info("agent_recovered", agent_id=agent_id)
            return

        registration.failure_count += 1
        if registration.failure_count > self.config.recovery_failure_threshold:
            await self._restart_agent(agent_id)

    async def _restart_agent(self, agent_id: str) -> None:
        registration = self._agents.get(agent_id)
        if registration is None:
            return

        self.logger.info("agent_restarting", agent_id=agent_id, failure_count=registration.failure_count)
        try:
            await registration.agent.stop()
            await asyncio.sleep(self.config.restart_pause)
            await registration.agent.start()
        except Exception as e:
            registration.failure_count += 1
            self.logger.error("agent_restart_failed", error=e, agent_id=agent_id)
            return

        registration.failure_count = 0
        self.logger.info("agent_restarted", agent_id=agent_id)

    async def get_system_health(self) -> SystemHealth:
        unhealthy: List[str] = []
        failed: List[str] = []
        issues: List[str] = []
        active = 0

        for agent_id, registration in list(self._agents.items()):
            status = registration.agent.get_status()
            if status == AgentStatus.ACTIVE:
                active += 1
            elif status == AgentStatus.ERROR:
                failed.append(agent_id)

            try:
                report = await registration.agent.health_check()
            except Exception as e:
                self.logger.error("agent_health_check_failed", error=e, agent_id=agent_id)
                unhealthy.append(agent_id)
                issues.append(f"{agent_id}: Health check failed")
            else:
                if not report.healthy:
                    unhealthy.append(agent_id)
                    issues.extend(f"{agent_id}: {issue}" for issue in report.issues)
            registration.last_health_check = time.time()

        return SystemHealth(
            healthy=not unhealthy and not failed,
            total_agents=len(self._agents),
            active_agents=active,
            unhealthy_agents=unhealthy,
            failed_agents=failed,
            issues=issues,
            uptime=time.time() - self._started_at,
        )

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    async def _telemetry_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.telemetry.reporting_interval)
            report = self.get_telemetry_report()
            self.events.emit("telemetryReport", report)
            self.logger.info(
                "system_telemetry",
                active_agents=report.active_agent_count,
                total_agents=len(report.agent_stats),
                messages_processed=report.messages_processed,
                routing_errors=report.routing_errors,
                consensus_success_rate=report.consensus_success_rate
            )

    def get_telemetry_report(self) -> TelemetryReport:
        stats = self._agent_statistics()
        active = sum(1 for stat in stats if stat.status == AgentStatus.ACTIVE)
        telemetry = self._telemetry
        return TelemetryReport(
            system_uptime=time.time() - self._started_at,
            messages_processed=telemetry.messages_processed,
            messages_by_type=dict(telemetry.messages_by_type),
            routing_errors=telemetry.routing_errors,
            agent_failures=dict(telemetry.agent_failures),
            consensus_requests=telemetry.consensus_requests,
            consensus_success_rate=telemetry.consensus_success_rate,
            consensus_failures=dict(telemetry.consensus_failures),
            agent_stats=stats,
            system_health=f"{active}/{len(self._agents)} agents active",
        )

    def _agent_statistics(self) -> List[AgentStatistics]:
        stats = []
        for agent_id, registration in self._agents.items():
            metrics = registration.agent.get_metrics()
            stats.append(AgentStatistics(
                id=agent_id,
                type=registration.type,
                role=registration.role,
                status=registration.agent.get_status(),
                tasks_completed=metrics.tasks_completed,
                tasks_in_progress=metrics.tasks_in_progress,
                success_rate=metrics.success_rate,
                average_response_time=metrics.average_response_time,
                failure_count=registration.failure_count,
                healthy=registration.agent.is_healthy(),
            ))
        return stats

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_agent(self, agent_id: str) -> Optional[BaseAgent]:
        registration = self._agents.get(agent_id)
        return registration.agent if registration else None

    def get_registration(self, agent_id: str) -> Optional[AgentRegistration]:
        return self._agents.get(agent_id)

    def get_all_agents(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": agent_id,
                "type": registration.type,
                "role": registration.role,
                "status": registration.agent.get_status(),
            }
            for agent_id, registration in self._agents.items()
        ]

    def get_agent_metrics(self, agent_id: str) -> Optional[AgentMetrics]:
        registration = self._agents.get(agent_id)
        return registration.agent.get_metrics() if registration else None

    def get_agent_pool(self, name: str) -> List[str]:
        """Agent ids in a pool, e.g. "risk-assessment", "type:security" or "role:backup"."""
        return list(self._pools.get(name, ()))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _new_request_id() -> str:
        return f"coord-{uuid.uuid4().hex[:16]}"

    def _span(self, name: str) -> ContextManager[Any]:
        if self.tracer is None:
            return contextlib.nullcontext()
        return self.tracer.start_as_current_span(name=name)

    def _trace_update(self, **kwargs: Any) -> None:
        if self.tracer is not None:
            self.tracer.update_current_trace(**kwargs)
