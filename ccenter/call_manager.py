"""Tracks live calls and the pool of switch connections they run on."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Callable, Iterable

from cachetools import TTLCache

from .call import (
    QUEUE_NODE_ID_FIELD,
    ActiveEvent,
    AmdEvent,
    BridgeEvent,
    Call,
    CallDirection,
    CallEndpoint,
    CallInfo,
    CallRequest,
    CallState,
    HangupEvent,
    HoldEvent,
    RingingEvent,
)
from .call_connection import CallConnection, SwitchApi, new_call_connection
from .errors import AppError
from .watcher import Watcher

MAX_CALL_CACHE = 50000
MAX_CALL_EXPIRE_CACHE = 60 * 60 * 24

WATCHER_INTERVAL = 1000 * 5

CLUSTER_CALL_SERVICE_NAME = "freeswitch"
CALL_HANGUP_LOSE_RACE = "LOSE_RACE"

_CALL_EVENTS = (RingingEvent, ActiveEvent, BridgeEvent, HoldEvent, HangupEvent, AmdEvent)

_log = logging.getLogger(__name__)


@dataclass
class ServiceInfo:
    """A switch instance announced by service discovery."""

    id: str
    host: str
    port: int


@dataclass
class QueuedCall:
    """A call already on a switch that is to be placed in a queue."""

    id: str
    app_id: str
    direction: str = CallDirection.INBOUND.value
    destination: str = ""
    from_number: str = ""
    from_name: str = ""
    created_at: int = 0
    answered_at: int = 0


class ConnectionNotFound(LookupError):
    """No connection matches the request."""


class ConnectionPool:
    """Connections by name, handed out by id or in round-robin order."""

    def __init__(self) -> None:
        self._connections: dict[str, CallConnection] = {}
        self._next = 0
        self._lock = threading.Lock()

    def append(self, connection: CallConnection) -> None:
        with self._lock:
            self._connections[connection.name] = connection

    def get_round_robin(self) -> CallConnection:
        with self._lock:
            candidates = list(self._connections.values())
            if not candidates:
                raise ConnectionNotFound("not found connection")
            connection = candidates[self._next % len(candidates)]
            self._next = (self._next + 1) % len(candidates)
            return connection

    def get_by_id(self, connection_id: str) -> CallConnection:
        with self._lock:
            try:
                return self._connections[connection_id]
            except KeyError:
                raise ConnectionNotFound(f"not found connection {connection_id}") from None

    def recheck(self, ids: Iterable[str]) -> list[str]:
        """Drop and close connections not in ``ids`` or no longer ready."""
        keep = set(ids)
        with self._lock:
            removed = [
                name for name, conn in self._connections.items()
                if name not in keep or not conn.ready()
            ]
            dropped = [self._connections.pop(name) for name in removed]
        for conn in dropped:
            try:
                conn.close()
            except AppError as err:
                _log.warning("close connection %s: %s", conn.name, err)
        return removed

    def close_all(self) -> None:
        with self._lock:
            dropped = list(self._connections.values())
            self._connections.clear()
        for conn in dropped:
            try:
                conn.close()
            except AppError as err:
                _log.warning("close connection %s: %s", conn.name, err)

    def all(self) -> list[CallConnection]:
        with self._lock:
            return list(self._connections.values())


def _client_error(exc: Exception) -> AppError:
    return AppError(
        "CallManager", "call_manager.get_client.app_error", None, str(exc),
        HTTPStatus.INTERNAL_SERVER_ERROR,
    )


class CallManager:
    """Creates calls, routes switch events to them and keeps connections fresh.

    ``discovery.get_by_name(name)`` lists ``ServiceInfo`` objects;
    ``mq.consume_call_event()`` returns a queue of ``(call_id, event)``
    pairs, ``None`` marking its end; ``dial(url)`` opens a switch API.
    """

    def __init__(
        self,
        node_id: str,
        discovery: Any,
        mq: Any,
        dial: Callable[[str], SwitchApi],
        logger: logging.Logger | None = None,
    ) -> None:
        self.node_id = node_id
        self.discovery = discovery
        self.mq = mq
        self.log = logger or _log
        self.pool = ConnectionPool()
        self.watcher: Watcher | None = None
        self.proxy = ""
        self.cdr = ""
        self.flow_socket_uri = ""
        self._dial = dial
        self._calls: TTLCache = TTLCache(maxsize=MAX_CALL_CACHE, ttl=MAX_CALL_EXPIRE_CACHE)
        self._calls_lock = threading.Lock()
        self._stop = threading.Event()
        self._consumer: threading.Thread | None = None
        self._start_lock = threading.Lock()

    # ----- lifecycle -----

    def start(self) -> None:
        self.log.debug("starting call manager service")
        for service in self.discovery.get_by_name(CLUSTER_CALL_SERVICE_NAME):
            self.register_connection(service)

        with self._start_lock:
            if self._consumer is not None:
                return
            self.watcher = Watcher("CallManager", WATCHER_INTERVAL, self.wake_up)
            self.watcher.start()
            self._consumer = threading.Thread(
                target=self._consume, name="call-manager-events", daemon=True
            )
            self._consumer.start()

    def _consume(self) -> None:
        events = self.mq.consume_call_event()
        try:
            while not self._stop.is_set():
                try:
                    item = events.get(timeout=0.1)
                except queue.Empty:
                    continue
                if item is None:
                    return
                call_id, event = item
                try:
                    self.handle_call_action(call_id, event)
                except Exception:
                    self.log.exception("call %s event handling failed", call_id)
        finally:
            self.log.debug("stopped CallManager")

    def stop(self) -> None:
        self.log.debug("callManager Stopping")
        if self.watcher is not None:
            self.watcher.stop()
        self.pool.close_all()
        self._stop.set()
        consumer = self._consumer
        if consumer is not None and consumer is not threading.current_thread():
            consumer.join()

    # ----- cache -----

    def _save(self, call: Call) -> None:
        call.log.debug("[%s] call %s save to store", call.node_name, call.id)
        with self._calls_lock:
            self._calls[call.id] = call

    def _remove(self, call: Call) -> None:
        call.log.debug("[%s] call %s remove from store", call.node_name, call.id)
        with self._calls_lock:
            self._calls.pop(call.id, None)

    def active_calls(self) -> int:
        with self._calls_lock:
            return len(self._calls)

    def get_call(self, call_id: str) -> Call | None:
        with self._calls_lock:
            return self._calls.get(call_id)

    # ----- connections -----

    def _any_connection(self) -> CallConnection:
        try:
            return self.pool.get_round_robin()
        except ConnectionNotFound as exc:
            raise _client_error(exc) from exc

    def _connection(self, connection_id: str) -> CallConnection:
        try:
            return self.pool.get_by_id(connection_id)
        except ConnectionNotFound as exc:
            raise _client_error(exc) from exc

    def count_connections(self) -> int:
        return len(self.pool.all())

    def register_connection(self, service: ServiceInfo) -> CallConnection | None:
        """Connect to a switch, read its settings and add it to the pool."""
        try:
            client = new_call_connection(service.id, f"{service.host}:{service.port}", self._dial)
        except AppError as err:
            self.log.error("connection %s error: %s", service.id, err)
            return None

        try:
            version = client.get_server_version()
        except AppError as err:
            self.log.error("connection %s get version error: %s", service.id, err)
            return None
        try:
            sps = client.get_remote_sps()
        except AppError as err:
            self.log.error("connection %s get SPS error: %s", service.id, err)
            return None
        try:
            cdr = client.get_cdr_uri()
        except AppError as err:
            self.log.error("connection %s get CDR error: %s", service.id, err)
            return None

        if not self.cdr:
            self.cdr = cdr
        client.set_connection_sps(sps)

        try:
            self.proxy = client.get_parameter("outbound_sip_proxy")
        except AppError as err:
            self.log.error("connection %s get proxy error: %s", service.id, err)
            return None

        if not self.flow_socket_uri:
            try:
                self.flow_socket_uri = client.get_socket_uri()
            except AppError as err:
                self.log.error("connection %s get flow uri error: %s", service.id, err)
                return None

        self.pool.append(client)
        self.log.debug("register connection %s [%s] [sps=%d]", client.name, version, sps)
        return client

    def wake_up(self) -> None:
        """Register newly announced switches and drop vanished ones."""
        try:
            services = list(self.discovery.get_by_name(CLUSTER_CALL_SERVICE_NAME))
        except Exception as exc:
            self.log.error("%s", exc)
            return
        for service in services:
            try:
                self.pool.get_by_id(service.id)
            except ConnectionNotFound:
                self.register_connection(service)
        self.pool.recheck(service.id for service in services)

    # ----- uris -----

    def flow_uri(self) -> str:
        return "socket " + self.flow_socket_uri

    def proxy_uri(self) -> str:
        return "sip:" + self.proxy

    def ringtone_uri(self, domain_id: int, file_id: int, mime_type: str) -> str:
        if mime_type in ("audio/mp3", "audio/mpeg"):
            return f"shout://{self.cdr}/sys/media/{file_id}/stream?domain_id={domain_id}&.mp3"
        if mime_type == "audio/wav":
            return f"http_cache://http://{self.cdr}/sys/media/{file_id}/stream?domain_id={domain_id}&.wav"
        return ""

    # ----- calls -----

    def new_call(self, request: CallRequest) -> Call:
        api = self._any_connection()
        return Call(
            CallDirection.OUTBOUND,
            api,
            request=request,
            node_id=self.node_id,
            proxy=self.proxy_uri(),
            on_save=self._save,
            on_remove=self._remove,
            logger=self.log,
        )

    def hangup_many(self, cause: str, *args: str) -> None:
        for call_id in args:
            call = self.get_call(call_id)
            if call is None:
                continue
            try:
                call.hangup(cause, False, None)
            except AppError as err:
                call.log.error("hangup %s: %s", call_id, err)

    def hangup_by_id(self, call_id: str, node: str) -> None:
        self._connection(node).hangup_call(call_id, CALL_HANGUP_LOSE_RACE, False, None)

    def _reuse(self, call: Call) -> Call:
        try:
            if call.direction is CallDirection.OUTBOUND:
                call.update_cid()
        finally:
            call.reset_bridge()
        call.log.debug("call %s is queue", call.id)
        return call

    def _queued(self, call: QueuedCall, cli: CallConnection) -> Call:
        direction = (
            CallDirection.OUTBOUND
            if call.direction == CallDirection.OUTBOUND.value
            else CallDirection.INBOUND
        )
        info = CallInfo(
            direction=call.direction,
            destination=call.destination,
            from_=CallEndpoint("dest", call.from_number, call.from_number, call.from_name),
        )
        return Call(
            direction,
            cli,
            call_id=call.id,
            node_id=self.node_id,
            proxy=self.proxy_uri(),
            on_save=self._save,
            on_remove=self._remove,
            state=CallState.ACCEPT,
            accept_at=call.answered_at,
            ringing_at=call.created_at,
            info=info,
            logger=self.log,
        )

    def _queue_variables(self) -> dict[str, str]:
        return {QUEUE_NODE_ID_FIELD: self.node_id, "cc_result": "abandoned"}

    def inbound_call_queue(self, call: QueuedCall, ringtone: str,
                           variables: dict[str, str] | None = None) -> Call:
        """Put a switch call into the queue and return its tracked Call."""
        cli = self._connection(call.app_id)
        cli.join_queue(call.id, ringtone, {**(variables or {}), **self._queue_variables()})

        cached = self.get_call(call.id)
        if cached is not None:
            return self._reuse(cached)

        result = self._queued(call, cli)
        self._save(result)
        result.log.debug("[%s] call %s init request", result.node_name, result.id)
        return result

    def connect_call(self, call: QueuedCall, ringtone: str) -> Call:
        """Return the tracked call, joining it to the queue if it is new."""
        cached = self.get_call(call.id)
        if cached is not None:
            return self._reuse(cached)

        cli = self._connection(call.app_id)
        cli.join_queue(call.id, ringtone, self._queue_variables())

        result = self._queued(call, cli)
        try:
            cli.set_call_variables(call.id, self._queue_variables())
        except AppError as err:
            result.log.warning("call %s set variables: %s", call.id, err)
        self._save(result)
        result.log.debug("[%s] call %s init request", result.node_name, result.id)
        return result

    def handle_call_action(self, call_id: str, event: Any) -> bool:
        """Apply a switch event to its call; return whether it was applied."""
        if not isinstance(event, _CALL_EVENTS):
            self.log.warning("call %s not have handler action %s", call_id, type(event).__name__)
            return False
        call = self.get_call(call_id)
        if call is None:
            return False
        call.apply_event(event)
        return True