"""A single call leg on a media switch and the events that drive its state."""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from functools import singledispatchmethod
from http import HTTPStatus
from typing import Any, Callable

from .errors import AppError

CALLER_ANSWERED_TIME_HEADER = "Caller-Channel-Answered-Time"
CALLER_CREATED_TIME_HEADER = "Caller-Channel-Created-Time"

AMD_HUMAN = "HUMAN"
AMD_NOT_SURE = "NOTSURE"

CALL_ORIGINATION_UUID = "origination_uuid"
QUEUE_NODE_ID_FIELD = "cc_app_id"
CALL_PROXY_URI_VARIABLE = "sip_route_uri"

CALL_HANGUP_NORMAL_CLEARING = "NORMAL_CLEARING"
CALL_HANGUP_APPLICATION = "hangup_application"

CALL_RECORD_FILE_TEMPLATE = "${strftime(%Y-%m-%d_%H-%M-%S)}"

DEFAULT_TONE = "L=1;%(500,500,1000)"
TONE_LIST = {
    "none": "none",
    "default": DEFAULT_TONE,
}

_log = logging.getLogger(__name__)


def _now_millis() -> int:
    return int(time.time() * 1000)


def _seconds(millis: int) -> int:
    """Whole seconds in ``millis``, truncated toward zero."""
    sign = -1 if millis < 0 else 1
    return sign * (abs(millis) // 1000)


def ringtone_uri(domain_id: int, file_id: int, mime_type: str) -> str:
    """The playback URI of a stored media file, or "" for unsupported types."""
    if mime_type in ("audio/mp3", "audio/mpeg"):
        return f"shout://$${{cdr_url}}/sys/media/{file_id}/stream?domain_id={domain_id}&.mp3"
    if mime_type == "audio/wav":
        return f"http_cache://http://$${{cdr_url}}/sys/media/{file_id}/stream?domain_id={domain_id}&.wav"
    return ""


class CallState(IntEnum):
    NEW = 0
    INVITE = 1
    RINGING = 2
    ACCEPT = 3
    JOIN = 4
    LEAVING = 5
    BRIDGE = 6
    HOLD = 7
    DETECT_AMD = 8
    HANGUP = 9

    def __str__(self) -> str:
        return _STATE_NAMES[self]


_STATE_NAMES = {
    CallState.NEW: "new",
    CallState.INVITE: "invite",
    CallState.RINGING: "ringing",
    CallState.ACCEPT: "accept",
    CallState.JOIN: "join",
    CallState.LEAVING: "leaving",
    CallState.BRIDGE: "bridge",
    CallState.HOLD: "hold",
    CallState.DETECT_AMD: "amd",
    CallState.HANGUP: "hangup",
}


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


@dataclass
class CallAction:
    action: str
    data: dict[str, str] = field(default_factory=dict)


@dataclass
class CallEndpoint:
    type: str = ""
    id: str = ""
    number: str = ""
    name: str = ""


@dataclass
class CallInfo:
    gateway_id: int | None = None
    user_id: int | None = None
    direction: str = ""
    destination: str = ""
    from_: CallEndpoint | None = None
    to: CallEndpoint | None = None
    parent_id: str | None = None
    payload: dict[str, str] | None = None


@dataclass
class CallRequestApplication:
    app_name: str
    args: str = ""


@dataclass
class CallRequest:
    endpoints: list[str] = field(default_factory=list)
    strategy: str = ""
    destination: str = ""
    variables: dict[str, str] | None = None
    timeout: int = 0
    caller_name: str = ""
    caller_number: str = ""
    dialplan: str = ""
    context: str = ""
    applications: list[CallRequestApplication] = field(default_factory=list)
    check_parent_id: str | None = None
    id: str | None = None


@dataclass
class RingtoneFile:
    id: int
    type: str


@dataclass
class AmdAiResult:
    result: str = ""
    error: str = ""
    labels: list[str] = field(default_factory=list)


@dataclass
class RingingEvent:
    timestamp: int
    info: CallInfo = field(default_factory=CallInfo)


@dataclass
class ActiveEvent:
    timestamp: int


@dataclass
class BridgeEvent:
    timestamp: int
    bridged_id: str


@dataclass
class HoldEvent:
    timestamp: int = 0


@dataclass
class HangupEvent:
    timestamp: int = 0
    cause: str = ""
    sip_code: int | None = None
    reporting_at: int | None = None
    transfer_from: str | None = None
    transfer_to: str | None = None
    transfer_to_agent: int | None = None
    transfer_from_attempt: int | None = None
    transfer_to_attempt: int | None = None
    variables: dict[str, Any] | None = None


@dataclass
class AmdEvent:
    result: str = ""
    cause: str = ""
    ai_result: AmdAiResult = field(default_factory=AmdAiResult)


def _bad_bridge_node() -> AppError:
    return AppError("Call", "call.bridge.bad_request.node_difference", None, "", HTTPStatus.BAD_REQUEST)


def _invite_direction() -> AppError:
    return AppError("Call", "call.invite.validate.direction", None, "", HTTPStatus.BAD_REQUEST)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class Call:
    """One call leg: sends commands through ``api`` and tracks switch events.

    ``api`` is a call connection (see ``CallConnection``). ``on_save`` and
    ``on_remove`` are called when the call should enter or leave the
    owner's cache.
    """

    def __init__(
        self,
        direction: CallDirection,
        api: Any,
        *,
        request: CallRequest | None = None,
        call_id: str | None = None,
        node_id: str = "",
        proxy: str = "",
        on_save: Callable[["Call"], None] | None = None,
        on_remove: Callable[["Call"], None] | None = None,
        state: CallState = CallState.NEW,
        accept_at: int = 0,
        ringing_at: int = 0,
        info: CallInfo | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if request is not None:
            cid = request.id if request.id is not None else str(uuid.uuid4())
            if request.variables is None:
                request.variables = {}
            request.variables[CALL_ORIGINATION_UUID] = cid
            request.variables[QUEUE_NODE_ID_FIELD] = node_id
            request.variables[CALL_PROXY_URI_VARIABLE] = proxy
            request.variables["sip_copy_custom_headers"] = "false"
        else:
            if call_id is None:
                raise ValueError("either request or call_id is required")
            cid = call_id
            request = CallRequest(id=cid, variables={})

        self.id = cid
        self.request = request
        self.direction = CallDirection(direction)
        self.api = api
        self.node_id = node_id
        self.proxy = proxy
        self._on_save = on_save
        self._on_remove = on_remove
        self._lock = threading.RLock()
        self._hangup_event = threading.Event()
        self._states: queue.Queue[CallState] = queue.Queue()
        self._actions: queue.Queue[CallAction] = queue.Queue()
        self._state = state
        self._cancel = ""
        self.info = info or CallInfo()
        self._hangup: HangupEvent | None = None
        self._bridged_id: str | None = None
        self._ringing_at = ringing_at
        self._accept_at = accept_at
        self._bridge_at = 0
        self._hangup_at = 0
        self._reporting_at = 0
        self._transfer_to: str | None = None
        self._transfer_from: str | None = None
        self._transfer_to_agent_id: int | None = None
        self._transfer_from_attempt_id: int | None = None
        self._transfer_to_attempt_id: int | None = None
        self.queue_id: int | None = None
        self._amd_result = ""
        self._amd_cause = ""
        self._amd_ai_result = AmdAiResult()
        self._variables: dict[str, Any] = {}
        self.log = logging.LoggerAdapter(
            logger or _log, {"call_id": cid, "connection": self.node_name}
        )
        self.log.debug("[%s] call %s init request", self.node_name, self.id)

    # ----- read-only view -----

    @property
    def node_name(self) -> str:
        return self.api.name

    @property
    def from_number(self) -> str:
        return self.info.from_.number if self.info.from_ is not None else ""

    @property
    def from_name(self) -> str:
        return self.info.from_.name if self.info.from_ is not None else ""

    @property
    def queue_call_priority(self) -> int:
        return 0

    @property
    def state(self) -> CallState:
        with self._lock:
            return self._state

    @property
    def cancel(self) -> str:
        with self._lock:
            return self._cancel

    @property
    def hangup_cause(self) -> str:
        with self._lock:
            return self._hangup.cause if self._hangup is not None else ""

    @property
    def hangup_cause_code(self) -> int:
        with self._lock:
            if self._hangup is not None and self._hangup.sip_code is not None:
                return self._hangup.sip_code
            return 0

    @property
    def bridge_id(self) -> str | None:
        with self._lock:
            return self._bridged_id

    @property
    def answered(self) -> bool:
        with self._lock:
            return self._accept_at > 0

    @property
    def ringing_at(self) -> int:
        return self._ringing_at

    @property
    def accept_at(self) -> int:
        return self._accept_at

    @property
    def bridge_at(self) -> int:
        return self._bridge_at

    @property
    def hangup_at(self) -> int:
        with self._lock:
            return self._hangup_at

    @property
    def reporting_at(self) -> int:
        return self._reporting_at

    @property
    def transferred(self) -> bool:
        with self._lock:
            return self._transfer_to is not None

    @property
    def transfer_to(self) -> str | None:
        with self._lock:
            return self._transfer_to

    @property
    def transfer_from(self) -> str | None:
        with self._lock:
            return self._transfer_from

    @property
    def transfer_to_agent_id(self) -> int | None:
        with self._lock:
            return self._transfer_to_agent_id

    @property
    def transfer_from_attempt_id(self) -> int | None:
        with self._lock:
            return self._transfer_from_attempt_id

    @property
    def transfer_to_attempt_id(self) -> int | None:
        with self._lock:
            return self._transfer_to_attempt_id

    @property
    def amd_result(self) -> str:
        with self._lock:
            return self._amd_result

    @property
    def ai_result(self) -> AmdAiResult:
        with self._lock:
            return self._amd_ai_result

    @property
    def variables(self) -> dict[str, Any]:
        with self._lock:
            return self._variables

    @property
    def hungup(self) -> threading.Event:
        return self._hangup_event

    # ----- actions and state stream -----

    def add_action(self, action: CallAction) -> None:
        self._actions.put(action)

    def next_action(self, timeout: float | None = None) -> CallAction | None:
        try:
            return self._actions.get(timeout=timeout)
        except queue.Empty:
            return None

    def next_state(self, timeout: float | None = None) -> CallState | None:
        """Return the next state change, or None if none arrives in time."""
        try:
            return self._states.get(timeout=timeout)
        except queue.Empty:
            return None

    def _set_state(self, state: CallState) -> None:
        with self._lock:
            self._state = state
        self._states.put(state)
        self.log.debug('[%s] call %s set state "%s"', self.node_name, self.id, state)

    # ----- switch events -----

    @singledispatchmethod
    def apply_event(self, event: Any) -> None:
        """Update the call from a switch event."""
        raise TypeError(f"call {self.id} has no handler for {type(event).__name__}")

    @apply_event.register
    def _(self, event: RingingEvent) -> None:
        with self._lock:
            self.info = event.info
            self._ringing_at = event.timestamp
        self._set_state(CallState.RINGING)

    @apply_event.register
    def _(self, event: ActiveEvent) -> None:
        with self._lock:
            if self._accept_at != 0:
                return
            self._accept_at = event.timestamp
        self._set_state(CallState.ACCEPT)

    @apply_event.register
    def _(self, event: BridgeEvent) -> None:
        with self._lock:
            self._bridge_at = event.timestamp
            self._bridged_id = event.bridged_id
        self._set_state(CallState.BRIDGE)

    @apply_event.register
    def _(self, event: HoldEvent) -> None:
        self._set_state(CallState.HOLD)

    @apply_event.register
    def _(self, event: AmdEvent) -> None:
        with self._lock:
            self._amd_result = event.result
            self._amd_cause = event.cause
            self._amd_ai_result = event.ai_result
        self._set_state(CallState.DETECT_AMD)

    @apply_event.register
    def _(self, event: HangupEvent) -> None:
        self._set_hangup(event)

    def _set_hangup(self, event: HangupEvent) -> None:
        with self._lock:
            if self._hangup_at != 0:
                return
            self._hangup = event
            if self._on_remove is not None:
                self._on_remove(self)
            self._hangup_at = event.timestamp
            if self._hangup_at == 0:
                self.log.warning("call %s set server hangup time", self.id)
                self._hangup_at = _now_millis()
            if event.reporting_at is not None:
                self._reporting_at = event.reporting_at
            self._transfer_from = event.transfer_from
            self._transfer_from_attempt_id = event.transfer_from_attempt
            self._transfer_to = event.transfer_to
            self._transfer_to_agent_id = event.transfer_to_agent
            self._transfer_to_attempt_id = event.transfer_to_attempt
            self._variables = dict(event.variables or {})
            self._hangup_event.set()
        self._set_state(CallState.HANGUP)

    # ----- commands -----

    def set_recordings(self, domain_id: int, record_all: bool, mono: bool) -> None:
        variables = self.request.variables
        if variables is None:
            variables = self.request.variables = {}
        variables["RECORD_MIN_SEC"] = "2"
        variables["recording_follow_transfer"] = "true"
        bridge_req = "false" if record_all else "true"
        variables["RECORD_BRIDGE_REQ"] = bridge_req
        variables["media_bug_answer_req"] = bridge_req
        variables["RECORD_STEREO"] = "false" if mono else "true"
        self.request.applications.append(
            CallRequestApplication(
                "record_session",
                f"http_cache://http://$${{cdr_url}}/sys/recordings?domain={domain_id}"
                f"&id={self.id}&name={self.id}_{CALL_RECORD_FILE_TEMPLATE}&.mp3",
            )
        )

    def invite(self) -> None:
        """Send the originate request in the background."""
        if self._on_save is not None:
            self._on_save(self)
        if self.direction is not CallDirection.OUTBOUND:
            raise _invite_direction()
        with self._lock:
            self._state = CallState.INVITE
        self.log.debug("[%s] call %s send invite", self.node_name, self.id)
        threading.Thread(target=self._originate, name=f"invite-{self.id}", daemon=True).start()

    def _originate(self) -> None:
        try:
            self.api.new_call(self.request)
        except AppError as err:
            self.log.debug("[%s] call %s invite error: %s", self.node_name, self.id, err)
            self._set_hangup(
                HangupEvent(
                    cause=getattr(err, "cause", ""),
                    sip_code=getattr(err, "sip_code", err.status_code),
                )
            )

    def new_call(self, request: CallRequest) -> "Call":
        return Call(
            CallDirection.OUTBOUND,
            self.api,
            request=request,
            node_id=self.node_id,
            proxy=self.proxy,
            on_save=self._on_save,
            on_remove=self._on_remove,
        )

    def hangup(self, cause: str = "", reporting: bool = False,
               variables: dict[str, str] | None = None) -> None:
        if self.state < CallState.INVITE:
            self.log.debug("[%s] call %s set cancel %s", self.node_name, self.id, cause)
            with self._lock:
                self._cancel = cause
            if self.state == CallState.NEW:
                self._hangup_event.set()
            return

        if not cause:
            cause = CALL_HANGUP_NORMAL_CLEARING
        self.log.debug("[%s] call %s send hangup %s", self.node_name, self.id, cause)
        try:
            self.api.hangup_call(self.id, cause, reporting, variables)
        except AppError:
            if self.hangup_cause == "":
                self._set_hangup(HangupEvent(timestamp=_now_millis(), cause=cause))
            raise

    def hold(self) -> None:
        self.api.hold(self.id)

    def dtmf(self, digit: str) -> None:
        self.api.dtmf(self.id, digit)

    def bridge(self, other: "Call") -> None:
        if self.node_name != other.node_name:
            raise _bad_bridge_node()
        self.api.bridge_call(other.id, self.id, "")
        self._bridge_at = _now_millis()

    def broadcast_playback_file(self, domain_id: int, file: RingtoneFile | None, leg: str) -> None:
        if file is None:
            return
        self.api.broadcast_playback_file(self.id, ringtone_uri(domain_id, file.id, file.type), leg)

    def park_playback_file(self, domain_id: int, file: RingtoneFile | None, leg: str) -> None:
        if file is None:
            return
        self.api.park_playback_file(self.id, ringtone_uri(domain_id, file.id, file.type), leg)

    def broadcast_tone(self, tone: str | None, leg: str) -> None:
        tone_value = DEFAULT_TONE if tone is None else TONE_LIST.get(tone, "")
        if tone_value in ("", "none"):
            return
        self.api.broadcast_playback_file(self.id, "tone_stream://" + tone_value, leg)

    def broadcast_playback_silence_before_file(self, domain_id: int, silence: int,
                                               file: RingtoneFile | None, leg: str) -> None:
        if file is None:
            return
        uri = ringtone_uri(domain_id, file.id, file.type)
        if silence == 0:
            self.api.broadcast_playback_file(self.id, uri, leg)
            return
        self.api.broadcast_playback_file(
            self.id, f"file_string://silence_stream://{silence}!{uri}", leg
        )

    def stop_playback(self) -> None:
        self.api.stop_playback(self.id)

    def set_variables(self, variables: dict[str, str]) -> None:
        self.api.set_call_variables(self.id, variables)

    def set_other_channel_var(self, variables: dict[str, str]) -> None:
        bridged = self.bridge_id
        if bridged is not None:
            self.api.set_call_variables(bridged, variables)

    def join_queue(self, file_path: str, variables: dict[str, str] | None = None) -> None:
        self.api.join_queue(self.id, file_path, variables)

    def update_cid(self) -> None:
        if self.info.to is None:
            return
        self.api.update_cid(self.id, self.info.to.number, self.info.to.name)

    def reset_bridge(self) -> None:
        with self._lock:
            self._bridge_at = 0
            self._bridged_id = None

    def break_park(self, variables: dict[str, str] | None = None) -> None:
        self.api.break_park(self.id, variables)

    # ----- results -----

    def wait_for_hangup(self, timeout: float | None = None) -> bool:
        """Block until the call hangs up; return whether it has."""
        if self.error() is None and self.hangup_cause == "":
            return self._hangup_event.wait(timeout)
        return True

    def error(self) -> AppError | None:
        """The error the call ended with, judged by its SIP code."""
        code = self.hangup_cause_code
        if code not in (0, 200):
            return AppError("Call", "call.app.error", None, "error", HTTPStatus.INTERNAL_SERVER_ERROR)
        return None

    def duration_seconds(self) -> int:
        end = self._hangup_at if self._hangup_at > 0 else _now_millis()
        return _seconds(end - self._ringing_at)

    def bill_seconds(self) -> int:
        if self._bridge_at <= 0:
            return 0
        end = self._hangup_at if self._hangup_at > 0 else _now_millis()
        return _seconds(end - self._bridge_at)

    def answer_seconds(self) -> int:
        if self._accept_at > 0:
            return _seconds(self._accept_at - self._ringing_at)
        return 0

    def wait_seconds(self) -> int:
        end = self._bridge_at if self._bridge_at > 0 else _now_millis()
        return _seconds(end - self._ringing_at)

    def is_human(self) -> bool:
        return self._amd_result in (AMD_HUMAN, AMD_NOT_SURE)

    def has_amd_error(self) -> bool:
        result = self.ai_result
        return result.error != "" or result.result == "undefined"

    def stats(self) -> dict[str, str]:
        """Call statistics exported as string variables."""
        data = {
            "call_bill_sec": str(self.bill_seconds()),
            "call_duration": str(self.duration_seconds()),
            "call_cause": self.hangup_cause,
        }
        for key, value in self.variables.items():
            data[key] = _format_value(value)

        code = self.hangup_cause_code
        if code > 0:
            data["call_sip_code"] = str(code)
        if self._amd_result:
            data["amd_result"] = self._amd_result

        answered = self._accept_at or self._bridge_at
        if answered > 0:
            end = self._hangup_at or _now_millis()
            data["call_voice_sec"] = str(_seconds(end - answered))
        return data