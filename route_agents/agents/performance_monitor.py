"""
Performance monitor agent.

Records execution outcomes from PERFORMANCE_REPORT messages (and
EXECUTION_RESULT messages carrying performance data) and summarizes them per
route. It monitors only and never takes part in consensus.
"""
import asyncio
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional

from route_agents.agents.specialist import SpecialistAgent, TaskHandler
from route_agents.models.protocols import AgentMessage, AgentType, Capability, MessageType
from route_agents.models.schemas import PerformanceData


class PerformanceMonitorAgent(SpecialistAgent):
    agent_type = AgentType.PERFORMANCE_MONITOR
    default_id = "performance-monitor-agent"
    display_name = "Performance Monitor Agent"
    declared_capabilities = (Capability.MONITOR,)
    votes = False

    def __init__(self, config=None, max_records: int = 1000, **kwargs: Any):
        super().__init__(config, **kwargs)
        self.records: Deque[PerformanceData] = deque(maxlen=max_records)

    def record(self, data: PerformanceData) -> None:
        self.records.append(data)
        if not data.success:
            self.logger.warning("route_execution_failed", route_id=data.route_id, errors=data.errors)

    async def on_message(self, message: AgentMessage, cancel_event: asyncio.Event) -> None:
        if message.type == MessageType.PERFORMANCE_REPORT:
            self.record(PerformanceData.model_validate(message.payload))
        elif message.type == MessageType.EXECUTION_RESULT and isinstance(message.payload, dict) \
                and "performance" in message.payload:
            self.record(PerformanceData.model_validate(message.payload["performance"]))
        else:
            await super().on_message(message, cancel_event)

    def summarize(self, route_id: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        grouped: Dict[str, List[PerformanceData]] = defaultdict(list)
        for data in self.records:
            if route_id is None or data.route_id == route_id:
                grouped[data.route_id].append(data)

        summary = {}
        for key, items in grouped.items():
            executions = len(items)
            summary[key] = {
                "executions": executions,
                "success_rate": sum(1 for item in items if item.success) / executions,
                "average_execution_time": sum(item.execution_time for item in items) / executions,
                "average_slippage": sum(item.slippage for item in items) / executions,
                "last_execution": max(item.timestamp for item in items),
            }
        return summary

    def task_handlers(self) -> Dict[str, TaskHandler]:
        return {"performance_summary": self._performance_summary}

    async def _performance_summary(self, task: Dict[str, Any], cancel_event: asyncio.Event) -> Dict[str, Any]:
        return self.summarize(task.get("route_id"))

    async def analyze(self, analysis_type, payload, cancel_event):
        if analysis_type == "performance-summary":
            return self.summarize(payload.get("route_id"))
        return await super().analyze(analysis_type, payload, cancel_event)
