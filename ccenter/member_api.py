"""Turning a member's attempt-result request into the callback the queue applies."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

_TERMINAL_STATUSES = frozenset({"success", "terminate", "cancel"})


@dataclass
class CommunicationInput:
    """A communication to add to the member, as sent by the caller."""

    destination: str
    type_id: int = 0
    priority: int = 0
    description: str = ""
    display: str = ""


@dataclass
class AttemptResultRequest:
    """The result of an attempt as reported by a caller."""

    attempt_id: int = 0
    status: str = ""
    description: str = ""
    display: bool = False
    variables: dict[str, str] = field(default_factory=dict)
    expire_at: int = 0
    next_distribute_at: int = 0
    agent_id: int = 0
    exclude_current_communication: bool = False
    redial: bool = False
    wait_between_retries: int = 0
    only_current_communication: bool = False
    add_communications: list[CommunicationInput] = field(default_factory=list)


@dataclass
class MemberCommunication:
    destination: str
    type_id: int = 0
    priority: int = 0
    description: str = ""
    display: str | None = None


@dataclass
class AttemptCallback:
    """How the queue should finish an attempt; None means "leave unchanged"."""

    status: str = ""
    description: str = ""
    display: bool = False
    variables: dict[str, str] = field(default_factory=dict)
    sticky_agent_id: int | None = None
    next_call_at: datetime | None = None
    expire_at: datetime | None = None
    exclude_current_communication: bool | None = None
    redial: bool | None = None
    wait_between_retries: int | None = None
    only_current_communication: bool | None = None
    add_communications: list[MemberCommunication] | None = None


def terminate_member(status: str) -> bool:
    """Whether the status ends the member, so no further call is planned."""
    return status in _TERMINAL_STATUSES


def _millis_to_time(millis: int) -> datetime:
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def build_attempt_callback(request: AttemptResultRequest) -> AttemptCallback:
    """Build the callback for an attempt-result request."""
    result = AttemptCallback(
        status=request.status,
        description=request.description,
        display=request.display,
        variables=dict(request.variables),
    )
    if request.expire_at > 0:
        result.expire_at = _millis_to_time(request.expire_at)
    if request.next_distribute_at > 0 and not terminate_member(result.status):
        result.next_call_at = _millis_to_time(request.next_distribute_at)
    if request.agent_id > 0:
        result.sticky_agent_id = request.agent_id
    if request.exclude_current_communication:
        result.exclude_current_communication = True
    if request.redial:
        result.redial = True
    if request.wait_between_retries > 0:
        result.wait_between_retries = request.wait_between_retries
    if request.only_current_communication:
        result.only_current_communication = True
    if request.add_communications:
        result.add_communications = [
            MemberCommunication(
                destination=c.destination,
                type_id=c.type_id,
                priority=c.priority,
                description=c.description,
                display=c.display or None,
            )
            for c in request.add_communications
        ]
    return result