from __future__ import annotations

from prometheus_client import Counter, Histogram

TOOL_INVOCATIONS_TOTAL = Counter(
    "supportdesk_tool_invocations_total",
    "Count of tool invocations grouped by outcome.",
    labelnames=("tool", "outcome"),
)

TOOL_LATENCY_SECONDS = Histogram(
    "supportdesk_tool_latency_seconds",
    "Latency distribution for tool invocations.",
    labelnames=("tool",),
)

ROUTING_DECISIONS_TOTAL = Counter(
    "supportdesk_routing_decisions_total",
    "Routing decisions grouped by specialist and classification path.",
    labelnames=("agent", "mode"),
)

TURNS_TOTAL = Counter(
    "supportdesk_turns_total",
    "Conversation turns grouped by terminal status.",
    labelnames=("status",),
)

TURN_LATENCY_SECONDS = Histogram(
    "supportdesk_turn_latency_seconds",
    "End-to-end turn latency from receipt to terminal event.",
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
)

COMPACTIONS_TOTAL = Counter(
    "supportdesk_compactions_total",
    "Context compaction attempts grouped by outcome.",
    labelnames=("outcome",),
)


def observe_tool_invocation(tool: str, outcome: str, duration: float) -> None:
    TOOL_INVOCATIONS_TOTAL.labels(tool=tool, outcome=outcome).inc()
    TOOL_LATENCY_SECONDS.labels(tool=tool).observe(max(duration, 0.0))


def observe_routing_decision(agent: str, mode: str) -> None:
    ROUTING_DECISIONS_TOTAL.labels(agent=agent, mode=mode).inc()


def observe_turn(status: str, duration: float) -> None:
    TURNS_TOTAL.labels(status=status).inc()
    TURN_LATENCY_SECONDS.observe(max(duration, 0.0))


def observe_compaction(outcome: str) -> None:
    COMPACTIONS_TOTAL.labels(outcome=outcome).inc()


__all__ = [
    "TOOL_INVOCATIONS_TOTAL",
    "TOOL_LATENCY_SECONDS",
    "ROUTING_DECISIONS_TOTAL",
    "TURNS_TOTAL",
    "TURN_LATENCY_SECONDS",
    "COMPACTIONS_TOTAL",
    "observe_tool_invocation",
    "observe_routing_decision",
    "observe_turn",
    "observe_compaction",
]
