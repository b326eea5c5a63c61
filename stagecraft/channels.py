"""Bus channel names used by the orchestrator and its specialists."""

from __future__ import annotations

from typing import Optional

from .stages import Stage

STAGE_BLOCKED = "events.stage.blocked"
STAGE_COMPLETED = "events.stage.completed"
WORKFLOW_COMPLETED = "events.workflow.completed"
NEW_REQUIREMENTS = "requirements.new"
NEW_SUB_REQUIREMENTS = "requirements.sub.new"
HUMAN_ESCALATIONS = "strategic.escalations.human"

DELIVERABLES_PATTERN = "deliverables.*"
WORKFLOW_STATE_PATTERN = "workflows.state.*"
HEARTBEAT_PATTERN = "workflows.heartbeat.*"
DECISIONS_PATTERN = "strategic.decisions.*"
AGENT_ERRORS_PATTERN = "errors.agent.*"


def deliverable(stage: Stage, request_id: str) -> str:
    return f"deliverables.{stage.channel}.{request_id}"


def deliverables_for(stage: Stage) -> str:
    return f"deliverables.{stage.channel}.*"


def parse_deliverable(channel: str) -> Optional[tuple[str, str]]:
    """Split ``deliverables.<stage_channel>.<request_id>`` into its parts."""
    parts = channel.split(".", 2)
    if len(parts) != 3 or parts[0] != "deliverables":
        return None
    return parts[1], parts[2]


def work(stage: Stage) -> str:
    return f"work.{stage.name}"


def workflow_state(request_id: str) -> str:
    return f"workflows.state.{request_id}"


def sub_requirements(parent_id: str) -> str:
    return f"workflows.sub-requirements.{parent_id}"


def heartbeat(request_id: str) -> str:
    return f"workflows.heartbeat.{request_id}"


def escalation(request_id: str) -> str:
    return f"escalations.{request_id}"


def tail(channel: str, prefix: str) -> Optional[str]:
    """Return what follows ``prefix.`` in ``channel``, if anything."""
    head = prefix.rstrip("*").rstrip(".") + "."
    if channel.startswith(head) and len(channel) > len(head):
        return channel[len(head):]
    return None
