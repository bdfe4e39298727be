"""
AgentFramework: Core coordination layer for EnvOps.

Manages agent registration, tool execution, event routing between the
environment agent and its subscribers (alerting, API, CLI), and the
event log used for terminal reporting.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger("envops.framework")


class TaskStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class EventType(Enum):
    BRANCH_EVENT_ACCEPTED = "branch_event_accepted"
    PHASE_CHANGED = "phase_changed"
    RESOURCES_APPLIED = "resources_applied"
    ENDPOINT_ASSIGNED = "endpoint_assigned"
    SCHEMA_MIGRATED = "schema_migrated"
    RECOVERY_EXECUTED = "recovery_executed"
    ENVIRONMENT_READY = "environment_ready"
    ENVIRONMENT_FAILED = "environment_failed"
    ENVIRONMENT_DELETED = "environment_deleted"


@dataclass
class TaskResult:
    """Result of an agent tool execution."""
    task_id: str
    agent_name: str
    tool_name: str
    status: TaskStatus
    message: str
    data: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_seconds: float = 0.0

    def __str__(self):
        return f"[{self.status.value}] {self.agent_name}.{self.tool_name}: {self.message}"


@dataclass
class AgentTool:
    """Registered tool (method) within an agent."""
    name: str
    description: str
    handler: Callable
    risk_level: str = "low"  # low, medium, high


@dataclass
class Event:
    """Event emitted by an agent for subscribers."""
    event_type: EventType
    source_agent: str
    data: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BaseAgent(ABC):
    """Abstract base class for all EnvOps agents."""

    def __init__(self, name: str, description: str):
        self.name = name
        self.description = description
        self.tools: dict[str, AgentTool] = {}
        self._framework: Optional[AgentFramework] = None
        self._results: list[TaskResult] = []

    def register_tool(
        self,
        name: str,
        handler: Callable,
        description: str = "",
        risk_level: str = "low",
    ) -> None:
        """Register a tool method with this agent."""
        self.tools[name] = AgentTool(
            name=name,
            description=description,
            handler=handler,
            risk_level=risk_level,
        )

    async def execute_tool(self, tool_name: str, **kwargs) -> TaskResult:
        """Execute a registered tool and track results."""
        if tool_name not in self.tools:
            return TaskResult(
                task_id=str(uuid.uuid4())[:8],
                agent_name=self.name,
                tool_name=tool_name,
                status=TaskStatus.FAILED,
                message=f"Tool '{tool_name}' not found in {self.name}",
            )

        tool = self.tools[tool_name]
        task_id = str(uuid.uuid4())[:8]
        start = time.time()

        logger.info(f"[{self.name}] Executing: {tool_name}")

        try:
            if inspect.iscoroutinefunction(tool.handler):
                result_data = await tool.handler(**kwargs)
            else:
                result_data = tool.handler(**kwargs)

            duration = time.time() - start
            if hasattr(result_data, "to_dict"):
                result_data = result_data.to_dict()
            result = TaskResult(
                task_id=task_id,
                agent_name=self.name,
                tool_name=tool_name,
                status=TaskStatus.SUCCESS,
                message=f"Completed in {duration:.2f}s",
                data=result_data if isinstance(result_data, dict) else {"result": result_data},
                duration_seconds=duration,
            )
        except Exception as e:
            duration = time.time() - start
            logger.exception(f"[{self.name}] Tool '{tool_name}' raised")
            result = TaskResult(
                task_id=task_id,
                agent_name=self.name,
                tool_name=tool_name,
                status=TaskStatus.FAILED,
                message=f"Failed: {type(e).__name__}: {e}",
                duration_seconds=duration,
            )

        self._results.append(result)
        logger.info(str(result))
        return result

    def emit_event(self, event_type: EventType, data: dict = None) -> None:
        """Emit an event for subscribers."""
        if self._framework:
            event = Event(
                event_type=event_type,
                source_agent=self.name,
                data=data or {},
            )
            self._framework.dispatch_event(event)

    @abstractmethod
    def register_tools(self) -> None:
        """Register all tools for this agent. Must be implemented by subclasses."""

    @abstractmethod
    async def run_cycle(self, context: dict = None) -> list[TaskResult]:
        """Process one batch of work. Must be implemented by subclasses."""

    def get_results_summary(self) -> dict:
        """Return summary of all task results."""
        total = len(self._results)
        success = sum(1 for r in self._results if r.status == TaskStatus.SUCCESS)
        failed = sum(1 for r in self._results if r.status == TaskStatus.FAILED)
        return {
            "agent": self.name,
            "total_tasks": total,
            "successful": success,
            "failed": failed,
            "success_rate": f"{(success / total * 100):.1f}%" if total > 0 else "N/A",
        }


class AgentFramework:
    """
    Central coordinator for EnvOps agents.

    Manages:
    - Agent registration and lifecycle
    - Event routing to subscribers (alerting, notifications)
    - The event log backing terminal reports
    """

    def __init__(self, mock_mode: bool = True):
        self.mock_mode = mock_mode
        self.agents: dict[str, BaseAgent] = {}
        self._event_handlers: dict[EventType, list[Callable]] = {}
        self._event_log: list[Event] = []
        logger.info(f"AgentFramework initialized (mock_mode={mock_mode})")

    def register_agent(self, agent: BaseAgent) -> None:
        """Register an agent with the framework."""
        agent._framework = self
        agent.register_tools()
        self.agents[agent.name] = agent
        logger.info(f"Registered agent: {agent.name} ({len(agent.tools)} tools)")

    def subscribe(self, event_type: EventType, handler: Callable) -> None:
        """Subscribe to events emitted by agents."""
        self._event_handlers.setdefault(event_type, []).append(handler)

    def dispatch_event(self, event: Event) -> None:
        """Dispatch an event to all subscribers."""
        self._event_log.append(event)
        logger.debug(f"Event: {event.event_type.value} from {event.source_agent}")
        for handler in self._event_handlers.get(event.event_type, []):
            try:
                handler(event)
            except Exception:
                # subscribers never abort the emitting workflow
                logger.exception(f"Event handler error for {event.event_type.value}")

    def get_event_log(self, event_type: Optional[EventType] = None) -> list[Event]:
        if event_type is None:
            return list(self._event_log)
        return [e for e in self._event_log if e.event_type == event_type]

    async def run_full_cycle(self, context: dict = None) -> dict:
        """
        Run one cycle of every registered agent concurrently and summarize.

        Context is passed through unchanged; for the environment agent it
        carries the pending branch events.
        """
        ctx = context or {}
        cycle_start = time.time()

        names = list(self.agents)
        outcomes = await asyncio.gather(*(self.agents[n].run_cycle(ctx) for n in names))
        all_results = dict(zip(names, outcomes))

        cycle_duration = time.time() - cycle_start
        logger.info(f"Cycle complete in {cycle_duration:.2f}s, {len(self._event_log)} events")
        for agent_name, agent in self.agents.items():
            summary = agent.get_results_summary()
            logger.info(f"  {agent_name}: {summary['successful']}/{summary['total_tasks']} succeeded")

        return {
            "results": all_results,
            "duration_seconds": cycle_duration,
            "events": len(self._event_log),
            "agent_summaries": {
                name: agent.get_results_summary() for name, agent in self.agents.items()
            },
        }
