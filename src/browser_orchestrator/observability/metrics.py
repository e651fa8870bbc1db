"""Prometheus metrics for task execution."""
from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

registry = CollectorRegistry()

tasks_total = Counter(
    "browser_orchestrator_tasks",
    "Finished tasks",
    ["kind", "status"],
    registry=registry,
)
tool_calls_total = Counter(
    "browser_orchestrator_tool_calls",
    "Remote tool calls issued by the orchestration loop and replay",
    ["tool", "outcome"],
    registry=registry,
)
oracle_turns_total = Counter(
    "browser_orchestrator_oracle_turns",
    "Language model turns",
    registry=registry,
)
running_tasks = Gauge(
    "browser_orchestrator_running_tasks",
    "Tasks currently running",
    registry=registry,
)


def export() -> bytes:
    return generate_latest(registry)
