"""Commands sent to a media switch over its API connection."""

from __future__ import annotations

import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Callable, Iterator, Protocol

from .errors import AppError

CONNECTION_TIMEOUT = 2.0

SOCKET_VARIABLE = "acr_srv"
CDR_VARIABLE = "cdr_url"

CALL_STRATEGY_FAILOVER = "failover"
CALL_STRATEGY_MULTIPLE = "multiple"

_SWITCH_CODE_TO_SIP = {
    0: 500, 1: 404, 2: 404, 3: 404, 6: 405, 7: 405, 16: 200, 17: 486,
    18: 408, 19: 480, 20: 480, 21: 603, 22: 410, 23: 410, 25: 483, 27: 502,
    28: 484, 29: 501, 30: 501, 31: 480, 34: 503, 38: 502, 41: 503, 42: 503,
    43: 503, 44: 503, 45: 503, 47: 503, 50: 503, 52: 403, 54: 403, 57: 403,
    58: 503, 63: 503, 65: 488, 66: 488, 69: 501, 79: 501, 81: 501, 88: 488,
    95: 488, 96: 488, 97: 488, 98: 488, 99: 488, 100: 488, 101: 488,
    102: 504, 103: 504, 111: 504, 127: 504, 487: 487, 500: 487, 501: 487,
    502: 487, 503: 487, 600: 487, 601: 487, 602: 487, 603: 487, 604: 487,
    605: 487, 606: 487, 607: 487, 609: 487,
}

_PATTERN_SPS = re.compile(r"\D+")
_PATTERN_VERSION = re.compile(r"^.*?\s(\d+[\.\S]+[^\s]).*")


def switch_err_to_sip_code(code: int) -> int:
    """Translate a switch hangup cause code into a SIP response code."""
    return _SWITCH_CODE_TO_SIP.get(code, 500)


def parse_sps(text: str) -> int:
    """Extract the sessions-per-second number from a reply; 0 if none."""
    digits = _PATTERN_SPS.sub("", text)
    try:
        return int(digits)
    except ValueError:
        return 0


def parse_server_version(text: str) -> str:
    """Extract the version token from a switch ``version`` reply."""
    return _PATTERN_VERSION.sub(r"\1", text.strip())


class RateLimiter:
    """Spaces calls to ``take`` so that at most ``rate`` pass per second."""

    def __init__(
        self,
        rate: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.interval = 1.0 / rate
        self._clock = clock
        self._sleep = sleep
        self._next: float | None = None
        self._lock = threading.Lock()

    def take(self) -> float:
        """Block until the next slot is free; return the seconds waited."""
        with self._lock:
            now = self._clock()
            if self._next is None or now >= self._next:
                self._next = now + self.interval
                return 0.0
            wait = self._next - now
            self._next += self.interval
            self._sleep(wait)
            return wait


@dataclass
class ExecuteResult:
    """Reply to a command: its data and an error message, if any."""

    data: str = ""
    error: str | None = None


@dataclass
class OriginateResult:
    """Reply to an originate or bridge request."""

    uuid: str = ""
    error: str | None = None
    error_code: int = 0


class OriginateError(AppError):
    """A call could not be originated; carries the cause and SIP code."""

    def __init__(self, details: str, cause: str, sip_code: int, status_code: int) -> None:
        self.cause = cause
        self.sip_code = sip_code
        super().__init__("NewCall", "external.new_call.app_error", None, details, status_code)


class SwitchApi(Protocol):
    """Transport to the switch API; methods raise on transport failure."""

    def ready(self) -> bool: ...
    def close(self) -> None: ...
    def execute(self, command: str, args: str = "") -> ExecuteResult: ...
    def originate(self, request: dict[str, Any]) -> OriginateResult: ...
    def hangup(self, uuid: str, cause: str, reporting: bool, variables: dict[str, str] | None) -> ExecuteResult: ...
    def stop_playback(self, call_id: str) -> Any: ...
    def set_variables(self, uuid: str, variables: dict[str, str]) -> ExecuteResult: ...
    def bridge(self, leg_a_id: str, leg_b_id: str, leg_b_reserve_id: str) -> OriginateResult: ...
    def queue(self, call_id: str, variables: dict[str, str] | None, playback_file: str) -> Any: ...
    def broadcast(self, call_id: str, wait_for_answer: bool, leg: str, args: str) -> Any: ...
    def set_profile_var(self, call_id: str, variables: dict[str, str]) -> Any: ...
    def break_park(self, call_id: str, variables: dict[str, str] | None) -> bool: ...


@contextmanager
def _wrapped(where: str, error_id: str, status: int = HTTPStatus.INTERNAL_SERVER_ERROR) -> Iterator[None]:
    try:
        yield
    except AppError:
        raise
    except Exception as exc:
        raise AppError(where, error_id, None, str(exc), status) from exc


def _check(result: Any, where: str, error_id: str) -> None:
    error = getattr(result, "error", None)
    if error is not None:
        raise AppError(where, error_id, None, str(error), HTTPStatus.INTERNAL_SERVER_ERROR)


class CallConnection:
    """A named connection to one switch, issuing call-control commands."""

    def __init__(self, name: str, host: str, api: SwitchApi) -> None:
        self.name = name
        self.host = host
        self.api = api
        self.rate_limiter: RateLimiter | None = None
        self.cdr_uri = ""

    def ready(self) -> bool:
        return bool(self.api.ready())

    def close(self) -> None:
        with _wrapped("CallConnection", "grpc.close_connection.app_error"):
            self.api.close()

    def _execute(self, where: str, error_id: str, command: str, args: str = "") -> ExecuteResult:
        with _wrapped(where, error_id):
            return self.api.execute(command, args)

    def get_server_version(self) -> str:
        res = self._execute("ServerVersion", "external.get_server_version.app_error", "version")
        return parse_server_version(res.data)

    def set_connection_sps(self, sps: int) -> int:
        if sps > 0:
            self.rate_limiter = RateLimiter(sps)
        return sps

    def _get_global(self, where: str, error_id: str, name: str) -> str:
        res = self._execute(where, f"{error_id}.app_error", "global_getvar", name)
        _check(res, where, f"{error_id}.app_error")
        if res.data == "":
            raise AppError(
                where, f"{error_id}.not_found", None, f"global '{name}' not found",
                HTTPStatus.INTERNAL_SERVER_ERROR,
            )
        return res.data

    def get_socket_uri(self) -> str:
        data = self._get_global("GetSocketUri", "external.get_flow_socket", SOCKET_VARIABLE)
        self.cdr_uri = data
        return data

    def get_cdr_uri(self) -> str:
        return self._get_global("GetCdrUri", "external.get_flow_cdr", CDR_VARIABLE)

    def get_remote_sps(self) -> int:
        res = self._execute("GetRemoteSps", "external.get_sps.app_error", "fsctl", "sps")
        return parse_sps(res.data)

    def get_parameter(self, name: str) -> str:
        res = self._execute("GetParameter", "external.get_param.app_error", "global_getvar", name)
        _check(res, "GetParameter", "external.get_param.app_error")
        return res.data

    def new_call(self, request: Any) -> str:
        """Originate a call; return its uuid or raise OriginateError."""
        payload: dict[str, Any] = {
            "endpoints": list(getattr(request, "endpoints", None) or []),
            "destination": getattr(request, "destination", ""),
            "caller_number": getattr(request, "caller_number", ""),
            "caller_name": getattr(request, "caller_name", ""),
            "timeout": int(getattr(request, "timeout", 0) or 0),
            "context": getattr(request, "context", ""),
            "dialplan": getattr(request, "dialplan", ""),
            "variables": getattr(request, "variables", None),
            "check_id": getattr(request, "check_parent_id", None),
            "extensions": None,
            "strategy": None,
        }
        applications = getattr(request, "applications", None) or []
        if applications:
            payload["extensions"] = [{"app_name": app.app_name, "args": app.args} for app in applications]

        strategy = getattr(request, "strategy", None)
        if strategy == CALL_STRATEGY_FAILOVER:
            payload["strategy"] = "FAILOVER"
        elif strategy == CALL_STRATEGY_MULTIPLE:
            payload["strategy"] = "MULTIPLE"

        if self.rate_limiter is not None:
            self.rate_limiter.take()

        try:
            response = self.api.originate(payload)
        except Exception as exc:
            raise OriginateError(str(exc), "", 500, -1) from exc

        if response.error is not None:
            code = switch_err_to_sip_code(response.error_code)
            raise OriginateError(str(response.error), str(response.error), code, code)
        return response.uuid

    def hangup_call(self, call_id: str, cause: str, reporting: bool = False,
                    variables: dict[str, str] | None = None) -> None:
        with _wrapped("HangupCall", "external.hangup_call.app_error"):
            res = self.api.hangup(call_id, cause, reporting, variables)
        _check(res, "HangupCall", "external.hangup_call.app_error")

    def stop_playback(self, call_id: str) -> None:
        with _wrapped("StopPlayback", "external.break_playback.app_error"):
            self.api.stop_playback(call_id)

    def set_call_variables(self, call_id: str, variables: dict[str, str]) -> None:
        with _wrapped("SetCallVariables", "external.set_call_variables.app_error"):
            res = self.api.set_variables(call_id, variables)
        _check(res, "SetCallVariables", "external.set_call_variables.app_error")

    def hold(self, call_id: str) -> None:
        res = self._execute("Hold", "external.hold_call.app_error", "uuid_hold", call_id)
        _check(res, "Hold", "external.hold_call.app_error")

    def bridge_call(self, leg_a_id: str, leg_b_id: str, leg_b_reserve_id: str = "") -> str:
        with _wrapped("BridgeCall", "external.bridge_call.app_error"):
            res = self.api.bridge(leg_a_id, leg_b_id, leg_b_reserve_id)
        _check(res, "BridgeCall", "external.bridge_call.app_error")
        return res.uuid

    def dtmf(self, call_id: str, digit: str) -> None:
        self._execute("DTMF", "external.dtmf.app_error", "uuid_recv_dtmf", f"{call_id} {digit}")

    def join_queue(self, call_id: str, file_path: str, variables: dict[str, str] | None = None) -> None:
        with _wrapped("JoinQueue", "external.join_queue.app_error"):
            self.api.queue(call_id, variables, file_path)

    def broadcast_playback_file(self, call_id: str, path: str, leg: str) -> None:
        self._execute(
            "BroadcastPlaybackFile", "external.broadcast_playback.app_error",
            "uuid_broadcast", f"{call_id} playback::{path} {leg}",
        )

    def park_playback_file(self, call_id: str, path: str, leg: str) -> None:
        with _wrapped("BroadcastPlaybackFile", "external.park_playback.app_error"):
            self.api.broadcast(call_id, True, leg, f"playback::{path}")

    def update_cid(self, call_id: str, number: str, name: str) -> None:
        with _wrapped("UpdateCid", "external.set_profile_var.app_error"):
            self.api.set_profile_var(call_id, {"callee_id_number": number, "callee_id_name": name})

    def break_park(self, call_id: str, variables: dict[str, str] | None = None) -> None:
        with _wrapped("BreakPark", "external.break_park.app_error"):
            ok = self.api.break_park(call_id, variables)
        if not ok:
            raise AppError("BreakPark", "external.break_park.valid", None, "Bad request", HTTPStatus.BAD_REQUEST)


def new_call_connection(name: str, url: str, dial: Callable[[str], SwitchApi]) -> CallConnection:
    """Open a connection to ``url`` with ``dial`` and wrap it."""
    with _wrapped("NewCallConnection", "grpc.create_connection.app_error"):
        api = dial(url)
    return CallConnection(name, url, api)