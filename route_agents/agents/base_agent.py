"""
Base class for all specialized agents in the multi-agent system.

All agents inherit from this class to ensure consistent behavior,
error handling, and observability across the system.
"""
import asyncio
import contextlib
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Awaitable, Callable, ContextManager, Deque, Dict, Optional

from langfuse import Langfuse
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from route_agents.config import AgentDefaults, CircuitBreakerConfig, RetryPolicy, settings
from route_agents.errors import (
    AgentCapacityError,
    AgentStoppedError,
    AgentTimeoutError,
    AgentUnavailableError,
    RequestTimeoutError,
    RouteAgentsError,
    TaskCancelledError,
)
from route_agents.models.agent import AgentErrorRecord, AgentMetrics, ErrorAnalysis, HealthReport, TaskContext
from route_agents.models.protocols import (
    AgentCapabilities,
    AgentConfig,
    AgentMessage,
    AgentStatus,
    MessagePriority,
    MessageType,
)
from route_agents.utils import error_analysis
from route_agents.utils.circuit_breaker import CircuitBreaker
from route_agents.utils.events import EventChannel
from route_agents.utils.logger import get_logger
from route_agents.utils.work_queue import PriorityWorkQueue


SIGNIFICANT_ERROR_WINDOW = 300.0
INACTIVITY_LIMIT = 600.0
HEALTHY_SUCCESS_RATE = 0.7
HIGH_LOAD_RATIO = 0.8


class BaseAgent(ABC):
    """
    Abstract base class for all agents.

    Provides common functionality:
    - Priority message queue with bounded concurrency
    - Task registry with timeout and cancellation
    - Retry with exponential backoff, gated by error classification
    - Circuit breaker on message intake
    - Health checks, metrics and structured error history
    - Inter-agent request/response over EXECUTION_RESULT replies

    Subclasses must implement `initialize()`, `process_message()`,
    `handle_task()` and `cleanup()`. Long-running handlers should watch the
    `cancel_event` they receive.

    Events (see `self.events`):
        message       AgentMessage to be routed by the coordinator
        statusChange  {"agent_id", "status", "previous_status"}
        error         AgentErrorRecord

    Example:
        class PriceAgent(BaseAgent):
            async def process_message(self, message, cancel_event):
                if message.type == MessageType.MARKET_DATA:
                    self.latest = message.payload

            async def handle_task(self, task, cancel_event):
                return await self.source.fetch(task["pair"])
    """

    def __init__(
        self,
        config: AgentConfig,
        capabilities: AgentCapabilities,
        tracer: Optional[Langfuse] = None,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreakerConfig] = None,
        defaults: Optional[AgentDefaults] = None,
    ):
        """
        Initialize the agent.

        Args:
            config: Agent identity and limits
            capabilities: Typed capability flags
            tracer: Optional Langfuse client for observability
            retry_policy: Overrides the default retry policy
            circuit_breaker: Overrides the default breaker thresholds
            defaults: Agent defaults (settings.agent when omitted)
        """
        defaults = defaults or settings.agent
        self.config = config
        self.capabilities = capabilities
        self.tracer = tracer
        self.retry_policy = retry_policy or defaults.retry
        self.circuit_breaker = CircuitBreaker(
            circuit_breaker or defaults.circuit_breaker,
            name=config.id
        )
        self.events = EventChannel(config.id)
        self.logger = get_logger(f"agent.{type(self).__name__}").bind(agent_id=config.id)

        self.status = AgentStatus.INITIALIZING
        self.request_timeout = defaults.request_timeout
        self.critical_shutdown_delay = defaults.critical_shutdown_delay

        self._queue = PriorityWorkQueue(config.id, config.max_concurrent_tasks, config.timeout)
        self._active_tasks: Dict[str, TaskContext] = {}
        self._task_lock = asyncio.Lock()
        self._tasks_in_progress = 0
        self._pending_requests: Dict[str, "asyncio.Future[Any]"] = {}
        self._shutdown_task: Optional["asyncio.Task[None]"] = None

        self._errors: Deque[AgentErrorRecord] = deque(maxlen=defaults.max_error_history)
        self._successes = 0
        self._failures = 0
        self._tasks_completed = 0
        self._total_response_time = 0.0
        self._last_activity = time.time()

        self.logger.info(
            "agent_initialized",
            agent_name=config.name,
            max_concurrent_tasks=config.max_concurrent_tasks,
            timeout=config.timeout,
            max_retries=self.retry_policy.max_retries
        )

    # ------------------------------------------------------------------
    # Subclass contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def initialize(self) -> None:
        """Acquire resources. Raising here puts the agent in ERROR status."""

    @abstractmethod
    async def process_message(self, message: AgentMessage, cancel_event: asyncio.Event) -> None:
        """
        Handle one inbound message.

        Raised exceptions are classified with `analyze_error()`; recoverable
        ones are retried with backoff.
        """

    @abstractmethod
    async def handle_task(self, task: Dict[str, Any], cancel_event: asyncio.Event) -> Any:
        """Run one task submitted through execute_task() and return its result."""

    @abstractmethod
    async def cleanup(self) -> None:
        """Release resources acquired in initialize()."""

    def analyze_error(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> ErrorAnalysis:
        """Classify an error. Subclasses may enrich the result but must keep its shape."""
        return error_analysis.analyze_error(error)

    # ------------------------------------------------------------------
    # Identity & state accessors
    # ------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self.config.id

    def get_config(self) -> AgentConfig:
        return self.config.model_copy(deep=True)

    def get_capabilities(self) -> AgentCapabilities:
        return self.capabilities

    def get_status(self) -> AgentStatus:
        return self.status

    @property
    def tasks_in_progress(self) -> int:
        return self._tasks_in_progress

    @property
    def active_task_ids(self) -> list:
        return list(self._active_tasks)

    @property
    def success_rate(self) -> float:
        attempts = self._successes + self._failures
        return self._successes / attempts if attempts else 1.0

    def get_metrics(self) -> AgentMetrics:
        """Snapshot of the agent's counters (a copy, safe to keep)."""
        completed = self._tasks_completed
        return AgentMetrics(
            tasks_completed=completed,
            tasks_in_progress=self._tasks_in_progress,
            average_response_time=self._total_response_time / completed if completed else 0.0,
            success_rate=self.success_rate,
            last_activity=self._last_activity,
            errors=[record.model_copy() for record in self._errors]
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """INITIALIZING -> initialize() -> ACTIVE, or ERROR and re-raise."""
        self._set_status(AgentStatus.INITIALIZING)
        try:
            with self._span(f"{self.id}_start"):
                await self.initialize()
        except Exception as e:
            self._handle_error(e, "Failed to start agent")
            self._set_status(AgentStatus.ERROR)
            raise

        self.circuit_breaker.reset()
        self._last_activity = time.time()
        self._set_status(AgentStatus.ACTIVE)
        self.logger.info("agent_started", agent_name=self.config.name)

    async def stop(self) -> None:
        """Cancel tasks, drop queued messages, run cleanup() and go OFFLINE."""
        current = asyncio.current_task()
        if self._shutdown_task is not None and self._shutdown_task is not current:
            self._shutdown_task.cancel()
        self._shutdown_task = None

        previous = self.status
        self.status = AgentStatus.OFFLINE
        try:
            await self._cancel_all_tasks()
            await self._queue.close()
            self._reject_pending_requests(AgentStoppedError(f"Agent {self.id} stopped"))
            await self.cleanup()
        except Exception as e:
            self._handle_error(e, "Failed to stop agent gracefully")

        self.logger.info("agent_stopped", previous_status=previous.value)
        self._emit_status(previous)

    def _set_status(self, status: AgentStatus) -> None:
        previous = self.status
        self.status = status
        if previous != status:
            self._emit_status(previous)

    def _emit_status(self, previous: AgentStatus) -> None:
        self.events.emit(
            "statusChange",
            {"agent_id": self.id, "status": self.status, "previous_status": previous}
        )

    # ------------------------------------------------------------------
    # Message ingestion
    # ------------------------------------------------------------------

    async def receive_message(self, message: AgentMessage) -> None:
        """
        Accept a message for processing.

        EXECUTION_RESULT replies to a pending request_data_from_agent() call
        are resolved immediately. Everything else goes through the priority
        queue and is retried per the retry policy.

        Raises:
            AgentUnavailableError: Circuit breaker open or agent offline
            AgentTimeoutError: Processing exceeded the configured timeout
            Exception: Last processing error once retries are exhausted
        """
        if message.type == MessageType.EXECUTION_RESULT and self._resolve_pending_request(message):
            return

        if self.status == AgentStatus.OFFLINE:
            raise AgentUnavailableError(f"Agent {self.id} is offline")
        if self.circuit_breaker.is_open():
            raise AgentUnavailableError(
                f"Circuit breaker is open - agent {self.id} temporarily unavailable"
            )

        future = self._queue.submit(
            lambda: self._process_message_with_retry(message),
            priority=int(message.priority)
        )
        try:
            elapsed = await future
        except AgentStoppedError:
            raise
        except Exception as e:
            self._failures += 1
            self._handle_error(
                e,
                f"Failed to process message {message.id}",
                message_id=message.id,
                message_type=message.type.value
            )
            self.circuit_breaker.record_failure()
            raise

        self._successes += 1
        self.circuit_breaker.record_success()
        self._record_completion(elapsed)

    async def _process_message_with_retry(self, message: AgentMessage) -> float:
        cancel_event = asyncio.Event()
        started = time.monotonic()
        try:
            with self._span(f"{self.id}_{message.type.value.lower()}"):
                self._trace_update(
                    input={"message_id": message.id, "from": message.sender, "type": message.type.value},
                    tags=[self.id, message.type.value]
                )
                await self._run_with_retry(
                    lambda: self.process_message(message, cancel_event),
                    cancel_event,
                    {"message_id": message.id}
                )
        except asyncio.CancelledError:
            cancel_event.set()
            raise
        return time.monotonic() - started

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def _is_retryable(self, error: BaseException) -> bool:
        return self.analyze_error(error).auto_recoverable

    async def _run_with_retry(
        self,
        operation: Callable[[], Awaitable[Any]],
        cancel_event: asyncio.Event,
        context: Dict[str, Any],
        on_retry: Optional[Callable[[], None]] = None
    ) -> Any:
        """
        Run operation with up to max_retries retries.

        Delay before retry n (zero-based) is
        min(initial_delay * backoff_factor**n, max_delay).
        """
        policy = self.retry_policy

        def _before_sleep(retry_state: RetryCallState) -> None:
            if on_retry is not None:
                on_retry()
            error = retry_state.outcome.exception() if retry_state.outcome else None
            self.logger.warning(
                "retry_scheduled",
                attempt=retry_state.attempt_number,
                delay=retry_state.next_action.sleep if retry_state.next_action else None,
                error_type=type(error).__name__ if error else None,
                error_message=str(error) if error else None,
                **context
            )

        result = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(policy.max_retries + 1),
            wait=wait_exponential(
                multiplier=policy.initial_delay,
                exp_base=policy.backoff_factor,
                max=policy.max_delay
            ),
            retry=retry_if_exception(self._is_retryable),
            before_sleep=_before_sleep,
            reraise=True
        ):
            with attempt:
                if cancel_event.is_set():
                    raise TaskCancelledError(f"Operation cancelled in agent {self.id}")
                result = await operation()
        return result

    # ------------------------------------------------------------------
    # Task execution
    # ------------------------------------------------------------------

    async def execute_task(self, task_id: str, task: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        """
        Run a task with retry, timeout and cancellation support.

        Args:
            task_id: Unique id (rejected if already running)
            task: Task payload passed to handle_task()
            timeout: Seconds, defaults to config.timeout

        Raises:
            AgentCapacityError: max_concurrent_tasks tasks already running
            AgentTimeoutError: Task did not settle within timeout
            TaskCancelledError: Task cancelled through cancel_task() or stop()
        """
        async with self._task_lock:
            if task_id in self._active_tasks:
                raise ValueError(f"Task {task_id} is already running in agent {self.id}")
            if len(self._active_tasks) >= self.config.max_concurrent_tasks:
                raise AgentCapacityError(
                    f"Agent {self.id} at maximum concurrent task capacity "
                    f"({self.config.max_concurrent_tasks})"
                )
            context = TaskContext(id=task_id, task=task)
            self._active_tasks[task_id] = context
            self._tasks_in_progress += 1

        limit = timeout if timeout is not None else self.config.timeout
        try:
            with self._span(f"{self.id}_task"):
                self._trace_update(input={"task_id": task_id, "task": task}, tags=[self.id, "task"])
                context.runner = asyncio.create_task(self._handle_task_with_retry(context))
                try:
                    done, _ = await asyncio.wait({context.runner}, timeout=limit)
                except asyncio.CancelledError:
                    context.cancel()
                    raise

                if not done:
                    context.cancel()
                    raise AgentTimeoutError(f"Task {task_id} timed out after {limit}s")
                if context.runner.cancelled():
                    raise TaskCancelledError(f"Task {task_id} cancelled")
                result = context.runner.result()

            self._successes += 1
            self._record_completion(context.elapsed)
            self.logger.info("task_completed", task_id=task_id, retries=context.retry_count)
            return result

        except TaskCancelledError as e:
            self._handle_error(e, f"Task {task_id} cancelled", task_id=task_id)
            raise
        except Exception as e:
            self._failures += 1
            self._handle_error(e, f"Task {task_id} failed", task_id=task_id)
            raise
        finally:
            await self._cleanup_task(task_id)

    async def _handle_task_with_retry(self, context: TaskContext) -> Any:
        def _count_retry() -> None:
            context.retry_count += 1

        return await self._run_with_retry(
            lambda: self.handle_task(context.task, context.cancel_event),
            context.cancel_event,
            {"task_id": context.id},
            on_retry=_count_retry
        )

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel a running task. Returns False if the id is unknown."""
        context = self._active_tasks.get(task_id)
        if context is None:
            return False
        context.cancel()
        await self._cleanup_task(task_id)
        return True

    async def _cancel_all_tasks(self) -> None:
        await asyncio.gather(*(self.cancel_task(task_id) for task_id in list(self._active_tasks)))

    async def _cleanup_task(self, task_id: str) -> None:
        async with self._task_lock:
            if self._active_tasks.pop(task_id, None) is not None:
                self._tasks_in_progress -= 1
            self._last_activity = time.time()

    # ------------------------------------------------------------------
    # Inter-agent communication
    # ------------------------------------------------------------------

    async def send_message(
        self,
        to: str,
        message_type: MessageType,
        payload: Any = None,
        priority: MessagePriority = MessagePriority.MEDIUM
    ) -> AgentMessage:
        """Emit a message for the coordinator to route."""
        message = AgentMessage(
            sender=self.id,
            to=to,
            type=message_type,
            payload=payload,
            priority=priority
        )
        self._last_activity = time.time()
        self.events.emit("message", message)
        return message

    async def request_data_from_agent(
        self,
        target_agent: str,
        message_type: MessageType,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Any:
        """
        Send a request and wait for the EXECUTION_RESULT carrying its request_id.

        Raises:
            RequestTimeoutError: No reply within timeout (request_timeout by default)
            RouteAgentsError: The peer replied with an error
        """
        limit = timeout if timeout is not None else self.request_timeout
        request_id = f"{self.id}-{uuid.uuid4().hex}"
        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        self._pending_requests[request_id] = future

        try:
            await self.send_message(target_agent, message_type, {**(payload or {}), "request_id": request_id})
            return await asyncio.wait_for(future, timeout=limit)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"Request to {target_agent} timed out after {limit}s"
            ) from None
        finally:
            self._pending_requests.pop(request_id, None)

    def _resolve_pending_request(self, message: AgentMessage) -> bool:
        payload = message.payload if isinstance(message.payload, dict) else {}
        future = self._pending_requests.pop(str(payload.get("request_id")), None)
        if future is None:
            return False
        if not future.done():
            if payload.get("status") == "error":
                future.set_exception(RouteAgentsError(str(payload.get("error", "request failed"))))
            else:
                future.set_result(payload.get("result", payload.get("data")))
        return True

    def _reject_pending_requests(self, error: Exception) -> None:
        pending, self._pending_requests = self._pending_requests, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def is_healthy(self) -> bool:
        attempts = self._successes + self._failures
        return (
            self.status == AgentStatus.ACTIVE
            and not self.circuit_breaker.is_open()
            and (attempts == 0 or self.success_rate > HEALTHY_SUCCESS_RATE)
        )

    async def health_check(self) -> HealthReport:
        issues = []
        now = time.time()

        if self.status != AgentStatus.ACTIVE:
            issues.append(f"Agent status is {self.status.value}")

        if self._tasks_completed >= 5 and self.success_rate < HEALTHY_SUCCESS_RATE:
            issues.append(
                f"Low success rate: {self.success_rate * 100:.1f}% ({self._tasks_completed} tasks)"
            )

        if self.circuit_breaker.is_open():
            issues.append("Circuit breaker is open")

        significant = sum(
            1 for record in self._errors
            if record.timestamp > now - SIGNIFICANT_ERROR_WINDOW and record.severity != "low"
        )
        if significant > 3:
            issues.append(f"High error rate: {significant} significant errors in last 5 minutes")

        if now - self._last_activity > INACTIVITY_LIMIT:
            issues.append("Agent has been inactive for over 10 minutes")

        if len(self._active_tasks) > self.config.max_concurrent_tasks * HIGH_LOAD_RATIO:
            issues.append(
                f"High task load: {len(self._active_tasks)}/{self.config.max_concurrent_tasks}"
            )

        if issues:
            self.logger.warning("agent_health_issues", status=self.status.value, issues=issues)

        return HealthReport(
            agent_id=self.id,
            healthy=not issues,
            status=self.status.value,
            issues=issues,
            metrics=self.get_metrics(),
            circuit_breaker=self.circuit_breaker.snapshot()
        )

    # ------------------------------------------------------------------
    # Errors & metrics
    # ------------------------------------------------------------------

    def _handle_error(self, error: BaseException, operation: str, **context: Any) -> ErrorAnalysis:
        analysis = self.analyze_error(error, context)
        record = AgentErrorRecord(
            error=str(error) or type(error).__name__,
            error_type=type(error).__name__,
            context={
                **context,
                "operation": operation,
                "category": analysis.category,
                "recommendations": analysis.recommendations,
            },
            severity=analysis.severity
        )
        self._errors.append(record)

        log = self.logger.critical if analysis.severity == "critical" else self.logger.error
        log(
            "agent_error",
            error=error,
            operation=operation,
            severity=analysis.severity,
            category=analysis.category,
            recoverable=analysis.auto_recoverable
        )

        self.events.emit("error", record)
        if analysis.severity == "critical":
            self._schedule_critical_shutdown()
        return analysis

    def _schedule_critical_shutdown(self) -> None:
        self._set_status(AgentStatus.ERROR)
        if self._shutdown_task is None or self._shutdown_task.done():
            self._shutdown_task = asyncio.ensure_future(self._delayed_stop())

    async def _delayed_stop(self) -> None:
        await asyncio.sleep(self.critical_shutdown_delay)
        self.logger.warning("agent_critical_shutdown", delay=self.critical_shutdown_delay)
        await self.stop()

    def _record_completion(self, elapsed: float) -> None:
        self._tasks_completed += 1
        self._total_response_time += elapsed
        self._last_activity = time.time()

    # ------------------------------------------------------------------
    # Tracing
    # ------------------------------------------------------------------

    def _span(self, name: str) -> ContextManager[Any]:
        if self.tracer is None:
            return contextlib.nullcontext()
        return self.tracer.start_as_current_span(name=name)

    def _trace_update(self, **kwargs: Any) -> None:
        if self.tracer is not None:
            self.tracer.update_current_trace(**kwargs)
