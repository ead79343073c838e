"""Agent objects and the manager that changes agent statuses."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from cachetools import TTLCache

from .errors import AppError
from .watcher import Watcher

WATCHER_POLLING_INTERVAL = 30000
SIZE_AGENT_CACHE = 10000
EXPIRE_AGENT_CACHE = 60 * 5

MAX_AGENT_ONLINE_WITHOUT_SOC_SEC = 60

AGENT_STATUS_ONLINE = "online"
AGENT_STATUS_OFFLINE = "offline"
AGENT_STATUS_PAUSE = "pause"
AGENT_STATUS_BREAK_OUT = "break_out"

AGENT_CHANGED_STATUS_EVENT = "agent_status"

_log = logging.getLogger(__name__)


def _now_millis() -> int:
    return int(time.time() * 1000)


@dataclass
class AgentInfo:
    """Agent record as loaded from the store."""

    id: int
    domain_id: int
    name: str = ""
    team_id: int = 0
    user_id: int | None = None
    updated_at: int = 0
    team_updated_at: int = 0
    status: str = AGENT_STATUS_OFFLINE
    status_payload: str | None = None
    destination: str | None = None
    extension: str | None = None
    on_demand: bool = False
    greeting_media: Any = None
    variables: dict[str, str] = field(default_factory=dict)
    has_push: bool = False


@dataclass
class AgentStatus:
    status: str
    status_payload: str | None = None


@dataclass
class AgentOnlineData:
    timestamp: int
    channels: list[Any] = field(default_factory=list)


@dataclass
class AgentEvent:
    """An event published to the message queue for a user."""

    name: str
    user_id: int
    data: dict[str, Any]


class Agent:
    """A cached agent bound to the manager that changes its status."""

    def __init__(self, info: AgentInfo, manager: "AgentManager", logger: logging.Logger | None = None) -> None:
        self._info = info
        self._manager = manager
        self._lock = threading.RLock()
        self.log = logging.LoggerAdapter(
            logger or _log,
            {
                "user_id": self.user_id,
                "agent_id": info.id,
                "team_id": info.team_id,
                "domain_id": info.domain_id,
            },
        )

    @property
    def id(self) -> int:
        return self._info.id

    @property
    def domain_id(self) -> int:
        return self._info.domain_id

    @property
    def user_id(self) -> int:
        return self._info.user_id if self._info.user_id is not None else 0

    @property
    def name(self) -> str:
        return self._info.name

    @property
    def updated_at(self) -> int:
        return self._info.updated_at

    @property
    def team_id(self) -> int:
        return self._info.team_id

    @property
    def team_updated_at(self) -> int:
        return self._info.team_updated_at

    @team_updated_at.setter
    def team_updated_at(self, value: int) -> None:
        self._info.team_updated_at = value

    @property
    def on_demand(self) -> bool:
        return self._info.on_demand

    @on_demand.setter
    def on_demand(self, value: bool) -> None:
        with self._lock:
            self._info.on_demand = value

    @property
    def greeting_media(self) -> Any:
        return self._info.greeting_media

    @property
    def variables(self) -> dict[str, str]:
        return self._info.variables

    @property
    def has_push(self) -> bool:
        return self._info.has_push

    @property
    def call_number(self) -> str:
        return self._info.extension or ""

    @property
    def status(self) -> AgentStatus:
        with self._lock:
            return AgentStatus(self._info.status, self._info.status_payload)

    def is_expire(self, updated_at: int) -> bool:
        return self._info.updated_at != updated_at

    def store_status(self, status: AgentStatus) -> None:
        with self._lock:
            self._info.status = status.status
            self._info.status_payload = status.status_payload

    def call_endpoints(self) -> list[str]:
        if self._info.destination is None:
            return []
        return [self._info.destination]

    def set_break_out(self) -> None:
        self._manager.set_break_out(self)

    def hook_data(self) -> dict[str, str]:
        """Variables describing the agent, passed to team hooks."""
        with self._lock:
            data = {
                "agent_id": str(self.id),
                "user_id": str(self.user_id),
                "team_id": str(self.team_id),
                "agent_name": self.name,
                "status": self._info.status,
            }
            if self._info.status_payload is not None:
                data["status_payload"] = self._info.status_payload
            if self._info.extension is not None:
                data["extension"] = self._info.extension
            return data


def _event_body(agent: Agent, timestamp: int, status: AgentStatus) -> dict[str, Any]:
    return {
        "agent_id": agent.id,
        "user_id": agent.user_id,
        "domain_id": agent.domain_id,
        "timestamp": timestamp,
        "status": status.status,
        "status_payload": status.status_payload,
    }


def agent_status_event(agent: Agent, event: dict[str, Any]) -> AgentEvent:
    """Build the status-change event for ``agent`` from an event body."""
    agent.log.info('agent %s[%d] has been changed status to "%s"', agent.name, agent.id, event["status"])
    return AgentEvent(AGENT_CHANGED_STATUS_EVENT, agent.user_id, event)


def agent_online_event(agent: Agent, info: AgentOnlineData, on_demand: bool) -> AgentEvent:
    """Build the event announcing that ``agent`` went online."""
    agent.log.info('agent %s[%d] has been changed status to "%s"', agent.name, agent.id, AGENT_STATUS_ONLINE)
    body = _event_body(agent, info.timestamp, AgentStatus(AGENT_STATUS_ONLINE))
    body["channels"] = list(info.channels)
    body["on_demand"] = on_demand
    return AgentEvent(AGENT_CHANGED_STATUS_EVENT, agent.user_id, body)


class AgentManager:
    """Loads agents, changes their status and logs out inactive ones.

    ``store`` provides ``get``, ``set_online``, ``set_status``,
    ``online_without_active``, ``missed_attempt`` and ``set_on_break``;
    ``mq`` provides ``agent_change_status(domain_id, user_id, event)``.
    Both raise AppError on failure.
    """

    def __init__(self, node_id: str, store: Any, mq: Any, logger: logging.Logger | None = None) -> None:
        self.node_id = node_id
        self.store = store
        self.mq = mq
        self.log = logger or _log
        self.watcher: Watcher | None = None
        self._cache: TTLCache = TTLCache(maxsize=SIZE_AGENT_CACHE, ttl=EXPIRE_AGENT_CACHE)
        self._hook: Callable[[Agent], None] | None = None
        self._lock = threading.Lock()

    def set_hook_auto_offline_agent(self, hook: Callable[[Agent], None] | None) -> None:
        self._hook = hook

    def start(self) -> None:
        self.log.debug("starting agent service")
        if self.watcher is None:
            self.watcher = Watcher("AgentManager", WATCHER_POLLING_INTERVAL, self.check_deadline_agents)
            self.watcher.start()

    def stop(self) -> None:
        if self.watcher is not None:
            self.watcher.stop()

    def get_agent(self, agent_id: int, updated_at: int) -> Agent:
        """Return the cached agent, reloading it when ``updated_at`` differs."""
        with self._lock:
            agent = self._cache.get(agent_id)
            if agent is not None and not agent.is_expire(updated_at):
                return agent
            agent = Agent(self.store.get(agent_id), self, self.log)
            self._cache[agent_id] = agent
            agent.log.debug("add agent to cache %s", agent.name)
            return agent

    def set_online(self, agent: Agent, on_demand: bool) -> AgentOnlineData:
        try:
            data = self.store.set_online(agent.id, on_demand)
        except AppError as err:
            agent.log.error(
                'agent %s[%d] has been changed status to "%s" error: %s',
                agent.name, agent.id, AGENT_STATUS_ONLINE, err,
            )
            raise
        agent.on_demand = on_demand
        agent.store_status(AgentStatus(AGENT_STATUS_ONLINE))
        self.mq.agent_change_status(agent.domain_id, agent.user_id, agent_online_event(agent, data, on_demand))
        return data

    def _change_status(self, agent: Agent, status: AgentStatus) -> None:
        body = _event_body(agent, _now_millis(), status)
        try:
            self.store.set_status(agent.id, status.status, status.status_payload)
        except AppError as err:
            agent.log.error(
                'agent %s[%d] has been changed state to "%s" error: %s',
                agent.name, agent.id, status.status, err,
            )
            raise
        agent.store_status(status)
        self.mq.agent_change_status(agent.domain_id, agent.user_id, agent_status_event(agent, body))

    def set_offline(self, agent: Agent, sys: str | None = None) -> None:
        self._change_status(agent, AgentStatus(AGENT_STATUS_OFFLINE, sys))

    def set_pause(self, agent: Agent, payload: str | None = None, timeout: int | None = None) -> None:
        self._change_status(agent, AgentStatus(AGENT_STATUS_PAUSE, payload))

    def set_break_out(self, agent: Agent) -> None:
        self._change_status(agent, AgentStatus(AGENT_STATUS_BREAK_OUT))

    def check_deadline_agents(self) -> None:
        """Set offline the agents that stayed online without an active socket."""
        try:
            items = self.store.online_without_active(MAX_AGENT_ONLINE_WITHOUT_SOC_SEC)
        except AppError as err:
            self.log.error("%s", err)
            return

        for item in items:
            try:
                agent = self.get_agent(item.id, item.updated_at)
            except AppError:
                continue
            payload = None
            if item.ws or item.sip:
                payload = "system"
                if item.ws:
                    payload += "/ws"
                if item.sip:
                    payload += "/sip"
            if agent.team_updated_at != item.team_updated_at:
                agent.team_updated_at = item.team_updated_at
            try:
                self.set_offline(agent, payload)
            except AppError as err:
                agent.log.error("%s", err)
            else:
                if self._hook is not None:
                    self._hook(agent)

    def missed_attempt(self, agent_id: int, attempt_id: int, cause: str) -> None:
        self.store.missed_attempt(agent_id, attempt_id, cause)

    def set_agent_on_break(self, agent_id: int) -> None:
        self.store.set_on_break(agent_id)