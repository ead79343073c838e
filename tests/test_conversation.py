import pytest

from ccenter.chat_session import ChatDirection
from ccenter.conversation import (
    ChannelNotFoundError,
    ChatState,
    Conversation,
    is_channel_close,
)
from ccenter.errors import AppError


class FakeClient:
    name = "chat-1"

    def __init__(self, invite_error=None, invite_id="inv-1"):
        self.calls = []
        self.invite_error = invite_error
        self.invite_id = invite_id

    def invite_to_conversation(self, domain_id, user_id, conversation_id, inviter_id,
                               inviter_user_id, title, timeout, variables):
        self.calls.append(("invite", domain_id, user_id, conversation_id, title, timeout, variables))
        if self.invite_error is not None:
            raise self.invite_error
        return self.invite_id

    def leave(self, user_id, channel_id, conversation_id, cause):
        self.calls.append(("leave", user_id, channel_id, conversation_id, cause))

    def send_text(self, user_id, channel_id, conversation_id, text):
        self.calls.append(("text", user_id, channel_id, conversation_id, text))


def make(client=None):
    return Conversation(client or FakeClient(), 1, "conv", "member-ch", "member-user", {"a": "1"})


def test_initial_member_session():
    conv = make()
    member = conv.member_session()
    assert member.direction is ChatDirection.INBOUND
    assert member.channel_id == "member-ch"
    assert conv.last_session() is member
    assert conv.active() is True
    assert conv.next_state(timeout=0.01) is None


def test_invite_internal_adds_session():
    client = FakeClient()
    conv = make(client)
    conv.invite_internal(42, 30, "title", {"b": "2"})
    sess = conv.last_session()
    assert sess.user_id == 42
    assert sess.invite_id == "inv-1"
    assert sess.invite_at > 0
    assert conv.next_state(timeout=1) is ChatState.INVITE
    assert client.calls[0] == ("invite", 1, 42, "conv", "title", 30, {"a": "1", "b": "2"})


def test_invite_channel_closed():
    conv = make(FakeClient(invite_error=RuntimeError("rpc: channel not found")))
    with pytest.raises(ChannelNotFoundError) as info:
        conv.invite_internal(1, 10, "t")
    assert info.value.status_code == 404
    assert conv.active() is False


def test_invite_other_error():
    conv = make(FakeClient(invite_error=RuntimeError("down")))
    with pytest.raises(AppError) as info:
        conv.invite_internal(1, 10, "t")
    assert info.value.error_id == "chat.invite.internal.app_err"
    assert conv.active() is True


def test_joined_bridges_session():
    conv = make()
    conv.invite_internal(5, 10, "t")
    conv.next_state(timeout=1)
    conv.set_joined("inv-1", 1234)
    sess = conv.last_session()
    assert sess.channel_id == "inv-1"
    assert sess.answered_at == 1234
    assert conv.bridged_at == 1234
    assert conv.next_state(timeout=1) is ChatState.BRIDGE


def test_joined_unknown_does_nothing():
    conv = make()
    conv.set_joined("missing", 1)
    assert conv.next_state(timeout=0.01) is None
    assert conv.bridged_at == 0


def test_declined_stops_session():
    conv = make()
    conv.invite_internal(5, 10, "t")
    conv.next_state(timeout=1)
    conv.set_declined("inv-1", 77)
    assert conv.last_session().stop_at == 77
    assert conv.next_state(timeout=1) is ChatState.DECLINED


def test_set_invite_updates_time():
    conv = make()
    conv.invite_internal(5, 10, "t")
    conv.next_state(timeout=1)
    conv.set_invite("inv-1", 99)
    assert conv.last_session().invite_at == 99
    assert conv.next_state(timeout=1) is ChatState.INVITE


def test_close_sets_cause():
    conv = make()
    conv.set_close(500, "transfer")
    assert conv.cause == "transfer"
    assert conv.member_session().stats() == {"chat_transferred": "true"}
    assert conv.active() is False
    assert conv.next_state(timeout=1) is ChatState.CLOSE


def test_reporting_leaves():
    client = FakeClient()
    conv = make(client)
    conv.invite_internal(5, 10, "t")
    conv.set_joined("inv-1", 1)
    conv.reporting(False)
    assert conv.reporting_at > 0
    assert client.calls[-1] == ("leave", 5, "inv-1", "conv", "agent_leave")


def test_reporting_no_leave():
    client = FakeClient()
    conv = make(client)
    conv.reporting(True)
    assert conv.reporting_at > 0
    assert client.calls == []


def test_reporting_closed_session():
    conv = make()
    conv.invite_internal(5, 10, "t")
    conv.set_declined("inv-1", 3)
    with pytest.raises(AppError) as info:
        conv.reporting(False)
    assert info.value.status_code == 400


def test_send_text_to_first_open_session():
    client = FakeClient()
    conv = make(client)
    conv.send_text("hello")
    assert client.calls == [("text", 0, "member-ch", "conv", "hello")]


def test_new_message_and_silence():
    conv = make()
    conv.set_new_message("member-ch")
    assert conv.silent_sec() == 0
    assert conv.member_session().idle_sec() == 0


def test_set_stop_is_idempotent():
    conv = make()
    conv.set_stop()
    assert conv.active() is False
    conv.set_stop()
    assert conv.active() is False


def test_is_channel_close():
    assert is_channel_close(RuntimeError("x channel not found y")) is True
    assert is_channel_close(RuntimeError("other")) is False