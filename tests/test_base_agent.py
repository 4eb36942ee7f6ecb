"""
Unit tests for the BaseAgent runtime: lifecycle, retries, task bookkeeping,
circuit breaking, request/response and health.
"""
import asyncio
import time

import pytest

from route_agents.config import CircuitBreakerConfig
from route_agents.errors import (
    AgentCapacityError,
    AgentStoppedError,
    AgentTimeoutError,
    AgentUnavailableError,
    RequestTimeoutError,
    RouteAgentsError,
    TaskCancelledError,
)
from route_agents.models.protocols import AgentMessage, AgentStatus, MessagePriority, MessageType

from tests.conftest import ScriptedAgent, fast_retry, message


class TestLifecycle:
    """Test start/stop transitions and status events."""

    @pytest.mark.asyncio
    async def test_start_sets_active(self):
        """Test that start() runs initialize() and ends ACTIVE."""
        agent = ScriptedAgent()
        await agent.start()
        try:
            assert agent.initialized
            assert agent.get_status() == AgentStatus.ACTIVE
            assert agent.is_healthy()
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_failed_initialize_sets_error_and_raises(self):
        """Test that a failing initialize() leaves the agent in ERROR."""
        agent = ScriptedAgent()
        agent.fail_initialize = True

        with pytest.raises(RuntimeError):
            await agent.start()
        assert agent.get_status() == AgentStatus.ERROR
        assert agent.get_metrics().errors[-1].context["operation"] == "Failed to start agent"

    @pytest.mark.asyncio
    async def test_stop_runs_cleanup_and_goes_offline(self):
        """Test that stop() runs cleanup() and sets OFFLINE."""
        agent = ScriptedAgent()
        await agent.start()
        await agent.stop()

        assert agent.cleaned_up
        assert agent.get_status() == AgentStatus.OFFLINE
        with pytest.raises(AgentUnavailableError):
            await agent.receive_message(message())

    @pytest.mark.asyncio
    async def test_status_changes_are_emitted(self):
        """Test that every status transition emits statusChange."""
        agent = ScriptedAgent()
        changes = []
        agent.events.subscribe("statusChange", changes.append)

        await agent.start()
        await agent.stop()

        statuses = [change["status"] for change in changes]
        assert statuses == [AgentStatus.ACTIVE, AgentStatus.OFFLINE]
        assert changes[0]["previous_status"] == AgentStatus.INITIALIZING

    @pytest.mark.asyncio
    async def test_config_is_a_copy(self):
        """Test that get_config() cannot be used to mutate the agent."""
        agent = ScriptedAgent()
        config = agent.get_config()
        config.capabilities.clear()
        assert agent.get_config().capabilities


class TestMessageProcessing:
    """Test message intake, retries and the circuit breaker."""

    @pytest.mark.asyncio
    async def test_message_is_processed(self):
        """Test that a message reaches process_message and counts as completed."""
        agent = ScriptedAgent()
        await agent.start()
        try:
            await agent.receive_message(message())
            metrics = agent.get_metrics()
            assert len(agent.received) == 1
            assert metrics.tasks_completed == 1
            assert metrics.success_rate == 1.0
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_retry_bound_for_messages(self):
        """Test that max_retries=n gives exactly n+1 attempts for recoverable errors."""
        agent = ScriptedAgent(retry_policy=fast_retry(2))
        attempts = []

        async def flaky(msg, cancel_event):
            attempts.append(msg.id)
            raise ConnectionError("ECONNREFUSED")

        agent.message_handler = flaky
        await agent.start()
        try:
            with pytest.raises(ConnectionError):
                await agent.receive_message(message())
            assert len(attempts) == 3
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_non_recoverable_error_is_not_retried(self):
        """Test that authentication errors propagate after a single attempt."""
        agent = ScriptedAgent(retry_policy=fast_retry(3))
        attempts = []

        async def forbidden(msg, cancel_event):
            attempts.append(msg.id)
            raise PermissionError("403 Forbidden")

        agent.message_handler = forbidden
        await agent.start()
        try:
            with pytest.raises(PermissionError):
                await agent.receive_message(message())
            assert len(attempts) == 1
            assert agent.get_metrics().errors[-1].severity == "high"
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_circuit_breaker_rejects_after_max_failures(self):
        """Test that the 4th message is rejected without processing once 3 failures open the breaker."""
        agent = ScriptedAgent(circuit_breaker=CircuitBreakerConfig(max_failures=3, reset_time=60.0))

        async def broken(msg, cancel_event):
            raise RuntimeError("boom")

        agent.message_handler = broken
        await agent.start()
        try:
            for _ in range(3):
                with pytest.raises(RuntimeError):
                    await agent.receive_message(message())
            assert len(agent.received) == 3

            with pytest.raises(AgentUnavailableError):
                await agent.receive_message(message())
            assert len(agent.received) == 3
            assert not agent.is_healthy()
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_circuit_breaker_closes_after_reset_time(self):
        """Test that messages flow again once reset_time has elapsed."""
        agent = ScriptedAgent(circuit_breaker=CircuitBreakerConfig(max_failures=1, reset_time=0.05))
        outcomes = iter([RuntimeError("boom")])

        async def fail_once(msg, cancel_event):
            error = next(outcomes, None)
            if error is not None:
                raise error

        agent.message_handler = fail_once
        await agent.start()
        try:
            with pytest.raises(RuntimeError):
                await agent.receive_message(message())
            with pytest.raises(AgentUnavailableError):
                await agent.receive_message(message())

            await asyncio.sleep(0.08)
            await agent.receive_message(message())
            assert agent.circuit_breaker.failure_count == 0
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_higher_priority_messages_run_first(self):
        """Test that queued messages are served by priority."""
        agent = ScriptedAgent(max_concurrent_tasks=1)
        gate = asyncio.Event()
        order = []

        async def record(msg, cancel_event):
            if msg.payload.get("block"):
                await gate.wait()
            order.append(msg.priority)

        agent.message_handler = record
        await agent.start()
        try:
            blocker = asyncio.create_task(agent.receive_message(message(payload={"block": True})))
            await asyncio.sleep(0.01)
            low = asyncio.create_task(agent.receive_message(message(priority=MessagePriority.LOW)))
            high = asyncio.create_task(agent.receive_message(message(priority=MessagePriority.CRITICAL)))
            await asyncio.sleep(0.01)
            gate.set()
            await asyncio.gather(blocker, low, high)

            assert order == [MessagePriority.MEDIUM, MessagePriority.CRITICAL, MessagePriority.LOW]
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_stop_rejects_queued_messages(self):
        """Test that stop() rejects queued work with AgentStoppedError."""
        agent = ScriptedAgent(max_concurrent_tasks=1)

        async def hang(msg, cancel_event):
            await asyncio.Event().wait()

        agent.message_handler = hang
        await agent.start()
        running = asyncio.create_task(agent.receive_message(message()))
        queued = asyncio.create_task(agent.receive_message(message()))
        await asyncio.sleep(0.01)

        await agent.stop()
        results = await asyncio.gather(running, queued, return_exceptions=True)
        assert all(isinstance(result, AgentStoppedError) for result in results)


class TestTaskExecution:
    """Test execute_task bookkeeping, timeouts and cancellation."""

    @pytest.mark.asyncio
    async def test_task_returns_result(self):
        """Test that execute_task returns the handler's result and cleans up."""
        agent = ScriptedAgent()
        await agent.start()
        try:
            result = await agent.execute_task("t1", {"type": "echo"})
            assert result == {"echo": {"type": "echo"}}
            assert agent.tasks_in_progress == 0
            assert agent.active_task_ids == []
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_task_timeout(self):
        """Test that a never-resolving task times out at ~100ms and leaves no bookkeeping behind."""
        agent = ScriptedAgent()

        async def never(task, cancel_event):
            await asyncio.Event().wait()

        agent.task_handler = never
        await agent.start()
        try:
            started = time.monotonic()
            with pytest.raises(AgentTimeoutError):
                await agent.execute_task("slow", {}, timeout=0.1)
            elapsed = time.monotonic() - started

            assert 0.09 <= elapsed < 1.0
            assert agent.tasks_in_progress == 0
            assert agent.active_task_ids == []
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_retry_bound_for_tasks(self):
        """Test that a task failing every attempt runs exactly max_retries + 1 times."""
        agent = ScriptedAgent(retry_policy=fast_retry(2))

        async def unreachable(task, cancel_event):
            raise ConnectionError("network unreachable")

        agent.task_handler = unreachable
        await agent.start()
        try:
            with pytest.raises(ConnectionError):
                await agent.execute_task("t1", {})
            assert agent.task_calls == 3
            assert agent.tasks_in_progress == 0
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_capacity_and_bookkeeping_under_concurrency(self):
        """Test that tasks_in_progress never exceeds max_concurrent_tasks and returns to 0."""
        agent = ScriptedAgent(max_concurrent_tasks=2)
        gate = asyncio.Event()
        observed = []

        async def gated(task, cancel_event):
            observed.append(agent.tasks_in_progress)
            await gate.wait()
            return task["n"]

        agent.task_handler = gated
        await agent.start()
        try:
            first = asyncio.create_task(agent.execute_task("a", {"n": 1}))
            second = asyncio.create_task(agent.execute_task("b", {"n": 2}))
            await asyncio.sleep(0.01)

            with pytest.raises(AgentCapacityError):
                await agent.execute_task("c", {"n": 3})

            gate.set()
            assert await asyncio.gather(first, second) == [1, 2]
            assert max(observed) <= 2
            assert agent.tasks_in_progress == 0
            assert agent.active_task_ids == []
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_duplicate_task_id_rejected(self):
        """Test that a task id cannot run twice at the same time."""
        agent = ScriptedAgent()
        gate = asyncio.Event()

        async def gated(task, cancel_event):
            await gate.wait()

        agent.task_handler = gated
        await agent.start()
        try:
            running = asyncio.create_task(agent.execute_task("same", {}))
            await asyncio.sleep(0.01)
            with pytest.raises(ValueError):
                await agent.execute_task("same", {})
            gate.set()
            await running
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_cancel_task(self):
        """Test that cancel_task() rejects the task and frees its slot."""
        agent = ScriptedAgent()

        async def never(task, cancel_event):
            await asyncio.Event().wait()

        agent.task_handler = never
        await agent.start()
        try:
            running = asyncio.create_task(agent.execute_task("t1", {}))
            await asyncio.sleep(0.01)

            assert await agent.cancel_task("t1") is True
            with pytest.raises(TaskCancelledError):
                await running
            assert agent.tasks_in_progress == 0
            assert await agent.cancel_task("t1") is False
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_running_tasks(self):
        """Test that stop() cancels in-flight tasks."""
        agent = ScriptedAgent()

        async def never(task, cancel_event):
            await asyncio.Event().wait()

        agent.task_handler = never
        await agent.start()
        running = asyncio.create_task(agent.execute_task("t1", {}))
        await asyncio.sleep(0.01)

        await agent.stop()
        with pytest.raises(TaskCancelledError):
            await running
        assert agent.tasks_in_progress == 0


class TestInterAgentRequests:
    """Test request_data_from_agent round trips."""

    @pytest.mark.asyncio
    async def test_reply_resolves_request(self):
        """Test that an EXECUTION_RESULT with the request id resolves the pending request."""
        agent = ScriptedAgent()
        outgoing = []
        agent.events.subscribe("message", outgoing.append)
        await agent.start()
        try:
            pending = asyncio.create_task(
                agent.request_data_from_agent("peer", MessageType.REQUEST_ANALYSIS, {"type": "status"})
            )
            await asyncio.sleep(0.01)
            request_id = outgoing[0].payload["request_id"]

            reply = AgentMessage.reply("peer", agent.id, request_id, result={"ok": True})
            await agent.receive_message(reply)

            assert await pending == {"ok": True}
            assert agent.received == []
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_error_reply_raises(self):
        """Test that an error reply surfaces as RouteAgentsError."""
        agent = ScriptedAgent()
        outgoing = []
        agent.events.subscribe("message", outgoing.append)
        await agent.start()
        try:
            pending = asyncio.create_task(agent.request_data_from_agent("peer", MessageType.REQUEST_ANALYSIS))
            await asyncio.sleep(0.01)
            request_id = outgoing[0].payload["request_id"]

            await agent.receive_message(AgentMessage.reply("peer", agent.id, request_id, error="no data"))
            with pytest.raises(RouteAgentsError, match="no data"):
                await pending
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_request_timeout(self):
        """Test that an unanswered request raises RequestTimeoutError."""
        agent = ScriptedAgent()
        await agent.start()
        try:
            with pytest.raises(RequestTimeoutError):
                await agent.request_data_from_agent("peer", MessageType.REQUEST_ANALYSIS, timeout=0.05)
        finally:
            await agent.stop()


class TestHealth:
    """Test health_check() diagnostics."""

    @pytest.mark.asyncio
    async def test_healthy_agent(self):
        """Test that a fresh active agent reports no issues."""
        agent = ScriptedAgent()
        await agent.start()
        try:
            report = await agent.health_check()
            assert report.healthy
            assert report.issues == []
            assert report.circuit_breaker["state"] == "closed"
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_stopped_agent_is_unhealthy(self):
        """Test that a non-ACTIVE status is reported as an issue."""
        agent = ScriptedAgent()
        await agent.start()
        await agent.stop()

        report = await agent.health_check()
        assert not report.healthy
        assert any("OFFLINE" in issue for issue in report.issues)

    @pytest.mark.asyncio
    async def test_open_breaker_is_reported(self):
        """Test that an open circuit breaker shows up in the health report."""
        agent = ScriptedAgent(circuit_breaker=CircuitBreakerConfig(max_failures=1, reset_time=60.0))

        async def broken(msg, cancel_event):
            raise RuntimeError("boom")

        agent.message_handler = broken
        await agent.start()
        try:
            with pytest.raises(RuntimeError):
                await agent.receive_message(message())
            report = await agent.health_check()
            assert "Circuit breaker is open" in report.issues
        finally:
            await agent.stop()

    @pytest.mark.asyncio
    async def test_critical_error_schedules_shutdown(self):
        """Test that a critical error moves the agent to ERROR and stops it after the delay."""
        agent = ScriptedAgent()
        agent.critical_shutdown_delay = 0.01

        async def crash(msg, cancel_event):
            raise MemoryError("out of memory")

        agent.message_handler = crash
        await agent.start()
        with pytest.raises(MemoryError):
            await agent.receive_message(message())
        assert agent.get_status() in (AgentStatus.ERROR, AgentStatus.OFFLINE)

        await asyncio.sleep(0.05)
        assert agent.get_status() == AgentStatus.OFFLINE
