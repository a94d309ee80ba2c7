"""Trigger handlers — what each kind of evolution trigger turns into.

PATTERN_DETECTED -> a generalized solution template for the pattern
HEALTH_DEGRADED  -> a restart or replacement recommendation for the agent
MANUAL_REQUEST   -> a rebalancing action for the weakest subsystem

Handlers work only from the snapshot carried in the trigger payload; they
never reach into another subsystem. Raising marks the trigger rejected.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from evocore.types import AgentStatus, EvolutionTrigger, TriggerKind

TriggerHandler = Callable[[EvolutionTrigger], dict[str, Any] | Awaitable[dict[str, Any]]]

REBALANCE_ACTIONS = {
    "patterns": "review_pattern_triggers",
    "tasks": "redispatch_ready_tasks",
    "agents": "restore_agent_capacity",
}


def _expect(trigger: EvolutionTrigger, ref_type: str) -> None:
    if trigger.payload.ref_type != ref_type:
        raise ValueError(
            f"{trigger.kind.value} trigger {trigger.id} must reference a {ref_type}, "
            f"got {trigger.payload.ref_type}"
        )


def solution_template(trigger: EvolutionTrigger) -> dict[str, Any]:
    _expect(trigger, "pattern")
    data = trigger.payload.data
    context = data.get("context") or {}
    outcome = data.get("outcome") or {}
    problem = context.get("capability") or context.get("kind") or "recurring"
    return {
        "template": {
            "name": f"{problem} solution template",
            "pattern": trigger.payload.ref_id,
            "steps": [
                "match incoming work against the recorded context",
                "apply the approach that produced the recorded outcome",
                "verify the outcome and record it back as an observation",
            ],
            "applicable_contexts": sorted(str(k) for k in context),
            "success_criteria": dict(outcome),
        },
        "occurrences": data.get("occurrences", 0),
        "confidence": data.get("confidence", 0.0),
    }


def health_action(trigger: EvolutionTrigger) -> dict[str, Any]:
    _expect(trigger, "agent")
    status = AgentStatus(trigger.payload.data.get("status", AgentStatus.DEGRADED.value))
    action = "restart" if status == AgentStatus.DEGRADED else "replace"
    return {
        "action": action,
        "agent_id": trigger.payload.ref_id,
        "status": status.value,
        "reason": f"agent went {trigger.payload.data.get('previous', '?')} -> {status.value}",
    }


def rebalance_action(trigger: EvolutionTrigger) -> dict[str, Any]:
    _expect(trigger, "subsystem")
    subsystem = trigger.payload.ref_id
    if subsystem not in REBALANCE_ACTIONS:
        raise ValueError(f"Unknown subsystem: {subsystem}")
    return {
        "action": REBALANCE_ACTIONS[subsystem],
        "subsystem": subsystem,
        "score": trigger.payload.data.get("score"),
        "harmony": trigger.payload.data.get("status"),
    }


def default_handlers() -> dict[TriggerKind, TriggerHandler]:
    return {
        TriggerKind.PATTERN_DETECTED: solution_template,
        TriggerKind.HEALTH_DEGRADED: health_action,
        TriggerKind.MANUAL_REQUEST: rebalance_action,
    }
