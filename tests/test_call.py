import pytest

from ccenter.call import (
    AMD_HUMAN,
    AMD_NOT_SURE,
    CALL_HANGUP_NORMAL_CLEARING,
    CALL_ORIGINATION_UUID,
    CALL_PROXY_URI_VARIABLE,
    QUEUE_NODE_ID_FIELD,
    ActiveEvent,
    AmdAiResult,
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
    RingtoneFile,
)
from ccenter.call_connection import OriginateError
from ccenter.errors import AppError


class FakeApi:
    def __init__(self, name="fs-1", fail_originate=None, fail_hangup=False):
        self.name = name
        self.calls = []
        self.fail_originate = fail_originate
        self.fail_hangup = fail_hangup

    def new_call(self, request):
        self.calls.append(("new_call", request))
        if self.fail_originate is not None:
            raise self.fail_originate
        return request.id

    def hangup_call(self, call_id, cause, reporting, variables):
        self.calls.append(("hangup", call_id, cause))
        if self.fail_hangup:
            raise AppError("HangupCall", "external.hangup_call.app_error")

    def broadcast_playback_file(self, call_id, path, leg):
        self.calls.append(("broadcast", call_id, path, leg))

    def park_playback_file(self, call_id, path, leg):
        self.calls.append(("park", call_id, path, leg))

    def bridge_call(self, a, b, reserve):
        self.calls.append(("bridge", a, b))
        return a

    def set_call_variables(self, call_id, variables):
        self.calls.append(("vars", call_id, variables))

    def update_cid(self, call_id, number, name):
        self.calls.append(("cid", call_id, number, name))


def make_call(api=None, direction=CallDirection.OUTBOUND, **kwargs):
    return Call(direction, api or FakeApi(), request=CallRequest(id="c1"),
                node_id="node", proxy="sip:proxy", **kwargs)


def test_new_call_sets_variables():
    call = make_call()
    assert call.id == "c1"
    assert call.request.variables[CALL_ORIGINATION_UUID] == "c1"
    assert call.request.variables[QUEUE_NODE_ID_FIELD] == "node"
    assert call.request.variables[CALL_PROXY_URI_VARIABLE] == "sip:proxy"
    assert call.request.variables["sip_copy_custom_headers"] == "false"
    assert call.state is CallState.NEW


def test_generated_ids_are_unique():
    api = FakeApi()
    a = Call(CallDirection.OUTBOUND, api, request=CallRequest())
    b = a.new_call(CallRequest())
    assert a.id != b.id
    assert b.direction is CallDirection.OUTBOUND
    assert b.request.variables[CALL_ORIGINATION_UUID] == b.id


def test_state_names():
    call = make_call()
    assert str(call.state) == "new"
    call.apply_event(AmdEvent(result=AMD_HUMAN))
    amd_state = call.next_state(0.1)
    assert str(amd_state) == "amd"
    call.apply_event(HangupEvent(timestamp=100, cause="NORMAL_CLEARING"))
    hangup_state = call.next_state(0.1)
    assert str(hangup_state) == "hangup"
    assert CallState.NEW < CallState.INVITE < amd_state < hangup_state


def test_events_update_state_and_timings():
    removed = []
    call = make_call(on_remove=removed.append)
    info = CallInfo(from_=CallEndpoint(number="100", name="Alice"))
    call.apply_event(RingingEvent(1000, info))
    call.apply_event(ActiveEvent(3000))
    call.apply_event(BridgeEvent(5000, "other"))
    call.apply_event(HoldEvent(6000))
    call.apply_event(HangupEvent(timestamp=11000, cause="NORMAL_CLEARING", sip_code=200))
    states = [call.next_state(0.1) for _ in range(5)]
    assert states == [CallState.RINGING, CallState.ACCEPT, CallState.BRIDGE,
                      CallState.HOLD, CallState.HANGUP]
    assert call.from_number == "100"
    assert call.from_name == "Alice"
    assert call.answered
    assert call.bridge_id == "other"
    assert call.answer_seconds() == 2
    assert call.wait_seconds() == 4
    assert call.duration_seconds() == 10
    assert call.bill_seconds() == call.duration_seconds() - call.wait_seconds()
    assert removed == [call]
    assert call.error() is None
    assert call.wait_for_hangup(0.1)


def test_second_active_event_ignored():
    call = make_call()
    call.apply_event(ActiveEvent(3000))
    call.apply_event(ActiveEvent(9000))
    assert call.accept_at == 3000
    assert call.next_state(0.1) is CallState.ACCEPT
    assert call.next_state(0.01) is None


def test_hangup_event_applied_once():
    removed = []
    call = make_call(on_remove=removed.append)
    call.apply_event(HangupEvent(timestamp=500, cause="A", transfer_to="x"))
    call.apply_event(HangupEvent(timestamp=900, cause="B"))
    assert call.hangup_cause == "A"
    assert call.hangup_at == 500
    assert call.transferred
    assert len(removed) == 1


def test_unknown_event_raises():
    call = make_call()
    with pytest.raises(TypeError):
        call.apply_event("bogus")


def test_stats_contains_hangup_data():
    call = make_call()
    call.apply_event(RingingEvent(1000))
    call.apply_event(AmdEvent(result=AMD_HUMAN))
    call.apply_event(HangupEvent(timestamp=2000, cause="USER_BUSY", sip_code=486,
                                 variables={"flag": True, "n": 3}))
    stats = call.stats()
    assert stats["call_cause"] == "USER_BUSY"
    assert stats["call_sip_code"] == "486"
    assert stats["amd_result"] == AMD_HUMAN
    assert stats["flag"] == "true"
    assert stats["n"] == "3"
    assert stats["call_bill_sec"] == "0"
    assert "call_voice_sec" not in stats
    assert call.error() is not None and call.error().error_id == "call.app.error"


def test_amd_helpers():
    call = make_call()
    call.apply_event(AmdEvent(result=AMD_NOT_SURE, ai_result=AmdAiResult(result="undefined")))
    assert call.is_human()
    assert call.has_amd_error()
    other = make_call()
    other.apply_event(AmdEvent(result="MACHINE", ai_result=AmdAiResult(result="human")))
    assert not other.is_human()
    assert not other.has_amd_error()


def test_hangup_before_invite_cancels():
    api = FakeApi()
    call = make_call(api)
    call.hangup("ORIGINATOR_CANCEL")
    assert call.cancel == "ORIGINATOR_CANCEL"
    assert api.calls == []
    assert call.hungup.is_set()


def test_hangup_default_cause_and_failure():
    api = FakeApi(fail_hangup=True)
    call = make_call(api)
    call.apply_event(RingingEvent(1000))
    with pytest.raises(AppError):
        call.hangup()
    assert api.calls[-1] == ("hangup", "c1", CALL_HANGUP_NORMAL_CLEARING)
    assert call.hangup_cause == CALL_HANGUP_NORMAL_CLEARING
    assert call.wait_for_hangup(0.1)


def test_invite_inbound_rejected():
    saved = []
    call = make_call(direction=CallDirection.INBOUND, on_save=saved.append)
    with pytest.raises(AppError) as info:
        call.invite()
    assert info.value.error_id == "call.invite.validate.direction"
    assert saved == [call]


def test_invite_failure_hangs_up():
    err = OriginateError("busy", "USER_BUSY", 486, 486)
    call = make_call(FakeApi(fail_originate=err))
    call.invite()
    assert call.hungup.wait(2)
    assert call.hangup_cause == "USER_BUSY"
    assert call.hangup_cause_code == 486
    assert call.error() is not None


def test_bridge_requires_same_node():
    a = make_call(FakeApi("fs-1"))
    b = Call(CallDirection.OUTBOUND, FakeApi("fs-2"), request=CallRequest(id="c2"))
    with pytest.raises(AppError) as info:
        a.bridge(b)
    assert info.value.error_id == "call.bridge.bad_request.node_difference"


def test_bridge_same_node():
    api = FakeApi()
    a = make_call(api)
    b = Call(CallDirection.OUTBOUND, api, request=CallRequest(id="c2"))
    a.bridge(b)
    assert api.calls[-1] == ("bridge", "c2", "c1")
    assert a.bridge_at > 0


def test_broadcast_tone():
    api = FakeApi()
    call = make_call(api)
    call.broadcast_tone("none", "both")
    call.broadcast_tone("missing", "both")
    assert api.calls == []
    call.broadcast_tone(None, "aleg")
    assert api.calls == [("broadcast", "c1", "tone_stream://L=1;%(500,500,1000)", "aleg")]


def test_playback_with_silence():
    api = FakeApi()
    call = make_call(api)
    call.broadcast_playback_silence_before_file(1, 500, None, "aleg")
    assert api.calls == []
    call.broadcast_playback_silence_before_file(1, 500, RingtoneFile(7, "audio/wav"), "aleg")
    path = api.calls[-1][2]
    assert path.startswith("file_string://silence_stream://500!http_cache://")
    call.broadcast_playback_file(1, RingtoneFile(7, "audio/mp3"), "aleg")
    assert api.calls[-1][2].startswith("shout://")


def test_set_recordings():
    call = make_call()
    call.set_recordings(1, record_all=True, mono=False)
    assert call.request.variables["RECORD_BRIDGE_REQ"] == "false"
    assert call.request.variables["RECORD_STEREO"] == "true"
    app = call.request.applications[-1]
    assert app.app_name == "record_session"
    assert "domain=1&id=c1" in app.args


def test_other_channel_var_and_reset_bridge():
    api = FakeApi()
    call = make_call(api)
    call.set_other_channel_var({"a": "1"})
    assert api.calls == []
    call.apply_event(BridgeEvent(10, "peer"))
    call.set_other_channel_var({"a": "1"})
    assert api.calls == [("vars", "peer", {"a": "1"})]
    call.reset_bridge()
    assert call.bridge_id is None
    assert call.bridge_at == 0


def test_update_cid():
    api = FakeApi()
    call = make_call(api)
    call.update_cid()
    assert api.calls == []
    call.info = CallInfo(to=CallEndpoint(number="200", name="Bob"))
    call.update_cid()
    assert api.calls == [("cid", "c1", "200", "Bob")]