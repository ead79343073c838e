import queue

import pytest

from ccenter.call import (
    QUEUE_NODE_ID_FIELD,
    ActiveEvent,
    CallDirection,
    CallRequest,
    CallState,
    HangupEvent,
)
from ccenter.call_connection import ExecuteResult, OriginateResult
from ccenter.call_manager import (
    CALL_HANGUP_LOSE_RACE,
    CallManager,
    ConnectionNotFound,
    ConnectionPool,
    QueuedCall,
    ServiceInfo,
)
from ccenter.call_connection import CallConnection
from ccenter.errors import AppError


class FakeSwitch:
    def __init__(self, url):
        self.url = url
        self.is_ready = True
        self.closed = False
        self.hangups = []
        self.queued = []
        self.variables = []
        self.globals = {"cdr_url": "cdr:8080", "outbound_sip_proxy": "proxy:5060", "acr_srv": "flow:10030"}

    def ready(self):
        return self.is_ready

    def close(self):
        self.closed = True

    def execute(self, command, args=""):
        if command == "version":
            return ExecuteResult("FreeSWITCH Version 1.10.7-release")
        if command == "fsctl":
            return ExecuteResult("+OK 30")
        if command == "global_getvar":
            return ExecuteResult(self.globals.get(args, ""))
        return ExecuteResult("+OK")

    def originate(self, request):
        return OriginateResult(uuid="x")

    def hangup(self, uuid, cause, reporting, variables):
        self.hangups.append((uuid, cause))
        return ExecuteResult()

    def stop_playback(self, call_id):
        return None

    def set_variables(self, uuid, variables):
        self.variables.append((uuid, dict(variables)))
        return ExecuteResult()

    def bridge(self, leg_a_id, leg_b_id, leg_b_reserve_id):
        return OriginateResult(uuid=leg_a_id)

    def queue(self, call_id, variables, playback_file):
        self.queued.append((call_id, dict(variables or {}), playback_file))

    def broadcast(self, call_id, wait_for_answer, leg, args):
        return None

    def set_profile_var(self, call_id, variables):
        return None

    def break_park(self, call_id, variables):
        return True


class FakeDiscovery:
    def __init__(self, services):
        self.services = list(services)

    def get_by_name(self, name):
        return list(self.services)


class FakeMQ:
    def __init__(self):
        self.events = queue.Queue()

    def consume_call_event(self):
        return self.events


class Dialer:
    def __init__(self):
        self.switches = {}

    def __call__(self, url):
        sw = FakeSwitch(url)
        self.switches[url] = sw
        return sw


def make_manager(services=()):
    dialer = Dialer()
    cm = CallManager("node-1", FakeDiscovery(services), FakeMQ(), dialer)
    return cm, dialer


SW1 = ServiceInfo("sw1", "10.0.0.1", 50051)
SW2 = ServiceInfo("sw2", "10.0.0.2", 50051)


def registered():
    cm, dialer = make_manager([SW1])
    cm.register_connection(SW1)
    return cm, dialer.switches["10.0.0.1:50051"]


def test_register_connection_reads_switch_settings():
    cm, _ = registered()
    assert cm.count_connections() == 1
    assert cm.flow_uri() == "socket flow:10030"
    assert cm.proxy_uri() == "sip:proxy:5060"
    assert cm.cdr == "cdr:8080"


def test_register_connection_failure_leaves_pool_empty():
    def dial(url):
        raise OSError("refused")

    cm = CallManager("node-1", FakeDiscovery([SW1]), FakeMQ(), dial)
    assert cm.register_connection(SW1) is None
    assert cm.count_connections() == 0


def test_ringtone_uri_formats():
    cm, _ = registered()
    assert cm.ringtone_uri(1, 7, "audio/mp3") == "shout://cdr:8080/sys/media/7/stream?domain_id=1&.mp3"
    assert cm.ringtone_uri(1, 7, "audio/wav") == "http_cache://http://cdr:8080/sys/media/7/stream?domain_id=1&.wav"
    assert cm.ringtone_uri(1, 7, "video/mp4") == ""


def test_pool_round_robin_and_lookup():
    pool = ConnectionPool()
    a = CallConnection("a", "h1", FakeSwitch("h1"))
    b = CallConnection("b", "h2", FakeSwitch("h2"))
    pool.append(a)
    pool.append(b)
    picks = [pool.get_round_robin().name for _ in range(4)]
    assert picks == ["a", "b", "a", "b"]
    assert pool.get_by_id("b") is b
    with pytest.raises(ConnectionNotFound):
        pool.get_by_id("c")


def test_pool_empty_and_recheck_closes():
    pool = ConnectionPool()
    with pytest.raises(ConnectionNotFound):
        pool.get_round_robin()
    sw = FakeSwitch("h1")
    pool.append(CallConnection("a", "h1", sw))
    pool.append(CallConnection("b", "h2", FakeSwitch("h2")))
    assert pool.recheck(["b"]) == ["a"]
    assert sw.closed
    assert [c.name for c in pool.all()] == ["b"]
    pool.close_all()
    assert pool.all() == []


def test_new_call_without_connections_raises():
    cm, _ = make_manager()
    with pytest.raises(AppError) as info:
        cm.new_call(CallRequest())
    assert info.value.error_id == "call_manager.get_client.app_error"


def test_new_call_sets_node_and_proxy_variables():
    cm, _ = registered()
    call = cm.new_call(CallRequest(id="c1"))
    assert call.id == "c1"
    assert call.direction is CallDirection.OUTBOUND
    assert call.request.variables[QUEUE_NODE_ID_FIELD] == "node-1"
    assert "sip:proxy:5060" in call.request.variables.values()


def test_inbound_call_queue_creates_accepted_call():
    cm, sw = registered()
    qc = QueuedCall("call-1", "sw1", direction="inbound", from_number="100", from_name="Bob",
                    created_at=1000, answered_at=2000)
    call = cm.inbound_call_queue(qc, "ring.wav", {"a": "b", "cc_result": "x"})
    assert call.state == CallState.ACCEPT
    assert call.accept_at == 2000
    assert call.from_number == "100"
    assert call.from_name == "Bob"
    assert call.direction is CallDirection.INBOUND
    assert cm.get_call("call-1") is call
    call_id, variables, playback = sw.queued[0]
    assert (call_id, playback) == ("call-1", "ring.wav")
    assert variables["a"] == "b"
    assert variables["cc_result"] == "abandoned"
    assert variables[QUEUE_NODE_ID_FIELD] == "node-1"


def test_inbound_call_queue_unknown_node_raises():
    cm, _ = registered()
    with pytest.raises(AppError):
        cm.inbound_call_queue(QueuedCall("c", "missing"), "", None)


def test_connect_call_reuses_cached_call():
    cm, sw = registered()
    qc = QueuedCall("call-2", "sw1", direction="outbound")
    first = cm.connect_call(qc, "")
    second = cm.connect_call(qc, "")
    assert first is second
    assert first.direction is CallDirection.OUTBOUND
    assert len(sw.queued) == 1
    assert sw.variables[0][0] == "call-2"
    assert cm.active_calls() == 1


def test_handle_call_action_routes_and_removes_on_hangup():
    cm, _ = registered()
    call = cm.connect_call(QueuedCall("call-3", "sw1"), "")
    assert cm.handle_call_action("call-3", HangupEvent(timestamp=5, cause="NORMAL_CLEARING"))
    assert call.hangup_cause == "NORMAL_CLEARING"
    assert cm.get_call("call-3") is None
    assert cm.active_calls() == 0


def test_handle_call_action_unknown_call_or_event():
    cm, _ = registered()
    assert cm.handle_call_action("nope", ActiveEvent(timestamp=1)) is False
    cm.connect_call(QueuedCall("call-4", "sw1"), "")
    assert cm.handle_call_action("call-4", object()) is False


def test_hangup_by_id_uses_lose_race():
    cm, sw = registered()
    cm.hangup_by_id("abc", "sw1")
    assert sw.hangups == [("abc", CALL_HANGUP_LOSE_RACE)]
    with pytest.raises(AppError):
        cm.hangup_by_id("abc", "other")


def test_hangup_many_hangs_up_cached_calls():
    cm, sw = registered()
    cm.connect_call(QueuedCall("c1", "sw1"), "")
    cm.hangup_many("USER_BUSY", "c1", "unknown")
    assert sw.hangups == [("c1", "USER_BUSY")]


def test_wake_up_registers_and_drops():
    cm, dialer = make_manager([SW1])
    cm.wake_up()
    assert [c.name for c in cm.pool.all()] == ["sw1"]
    cm.discovery.services = [SW2]
    cm.wake_up()
    assert [c.name for c in cm.pool.all()] == ["sw2"]
    assert dialer.switches["10.0.0.1:50051"].closed


def test_start_consumes_events_and_stop():
    cm, dialer = make_manager([SW1])
    cm.start()
    try:
        assert cm.count_connections() == 1
        call = cm.connect_call(QueuedCall("call-5", "sw1"), "")
        cm.mq.events.put(("call-5", HangupEvent(timestamp=9, cause="NORMAL_CLEARING")))
        assert call.wait_for_hangup(timeout=2) is True
        assert call.hangup_at == 9
    finally:
        cm.stop()
    assert cm.count_connections() == 0
    assert dialer.switches["10.0.0.1:50051"].closed