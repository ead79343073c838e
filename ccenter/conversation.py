"""A chat conversation with its member and the agents invited into it."""

from __future__ import annotations

import logging
import queue
import threading
from enum import IntEnum
from http import HTTPStatus
from typing import Any

from .chat_session import ChatClient, ChatDirection, ChatSession, now_millis, outbound_chat
from .errors import AppError

AGENT_LEAVE = "agent_leave"

_log = logging.getLogger(__name__)


class ChatState(IntEnum):
    IDLE = 0
    INVITE = 1
    DECLINED = 2
    BRIDGE = 3
    CLOSE = 4


class ChannelNotFoundError(AppError):
    """The conversation's channel no longer exists on the chat service."""

    def __init__(self) -> None:
        super().__init__("Chat.InviteInternal", "chat.invite.not_found", None,
                         "channel not found", HTTPStatus.NOT_FOUND)


def is_channel_close(err: BaseException) -> bool:
    """Whether an error reports that the chat channel is gone."""
    return "channel not found" in str(err)


class Conversation:
    """Tracks the sessions of one conversation and reports state changes."""

    def __init__(
        self,
        client: ChatClient,
        domain_id: int,
        conversation_id: str,
        inviter_id: str,
        inviter_user_id: str,
        variables: dict[str, str] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.id = conversation_id
        self.domain_id = domain_id
        self.inviter_id = inviter_id
        self.inviter_user_id = inviter_user_id
        self.variables = dict(variables or {})
        member = ChatSession(
            client,
            conversation_id=conversation_id,
            direction=ChatDirection.INBOUND,
            inviter_id=inviter_id,
            inviter_user_id=inviter_user_id,
            channel_id=inviter_id,
            activity_at=now_millis(),
            variables=self.variables,
        )
        self._sessions: list[ChatSession] = [member]
        self._lock = threading.RLock()
        self._states: queue.Queue[ChatState] = queue.Queue()
        self.current_state = ChatState.IDLE
        self._bridged_at = 0
        self._close_at = 0
        self._reporting_at = 0
        self._last_message_at = now_millis()
        self._cause = ""
        self.log = logging.LoggerAdapter(
            logger or _log,
            {"conversation_id": conversation_id, "domain_id": domain_id,
             "connection": getattr(client, "name", "")},
        )

    # ----- read-only view -----

    @property
    def sessions(self) -> list[ChatSession]:
        with self._lock:
            return list(self._sessions)

    @property
    def bridged_at(self) -> int:
        with self._lock:
            return self._bridged_at

    @property
    def reporting_at(self) -> int:
        with self._lock:
            return self._reporting_at

    @property
    def cause(self) -> str:
        with self._lock:
            return self._cause

    def member_session(self) -> ChatSession:
        with self._lock:
            return self._sessions[0]

    def last_session(self) -> ChatSession:
        with self._lock:
            return self._sessions[-1]

    def active(self) -> bool:
        with self._lock:
            return self._close_at == 0

    def silent_sec(self) -> int:
        """Seconds since the last message in the conversation."""
        with self._lock:
            last = self._last_message_at
        return (now_millis() - last) // 1000

    def next_state(self, timeout: float | None = None) -> ChatState | None:
        """Return the next state change, or None if none arrives in time."""
        try:
            return self._states.get(timeout=timeout)
        except queue.Empty:
            return None

    def _push(self, state: ChatState) -> None:
        with self._lock:
            self.current_state = state
        self._states.put(state)

    # ----- commands -----

    def invite_internal(self, user_id: int, timeout: int, title: str,
                        variables: dict[str, str] | None = None) -> None:
        """Invite an agent user into the conversation."""
        sess = outbound_chat(self.client, user_id, self.id, self.inviter_id, self.inviter_user_id)
        with self._lock:
            self._sessions.append(sess)
        merged = {**self.variables, **(variables or {})}
        try:
            invite_id = self.client.invite_to_conversation(
                self.domain_id, user_id, self.id, self.inviter_id, self.inviter_user_id,
                title, int(timeout), merged,
            )
        except Exception as exc:
            if is_channel_close(exc):
                self.set_stop()
                raise ChannelNotFoundError() from exc
            raise AppError("Chat.InviteInternal", "chat.invite.internal.app_err", None,
                           str(exc), HTTPStatus.INTERNAL_SERVER_ERROR) from exc

        with self._lock:
            sess.set_activity()
            sess.invite_id = invite_id
            sess.invite_at = now_millis()
        self._push(ChatState.INVITE)

    def reporting(self, no_leave: bool = False) -> None:
        """Mark the conversation reported; the agent leaves unless told not to."""
        sess = self.last_session()
        if sess.stop_at != 0:
            raise AppError("Chat.Reporting", "chat.reporting.valid.stop_at", None,
                           "Chat is closed", HTTPStatus.BAD_REQUEST)
        with self._lock:
            self._reporting_at = now_millis()
        if no_leave:
            return
        try:
            self.client.leave(sess.user_id, sess.channel_id, sess.conversation_id, AGENT_LEAVE)
        except Exception as exc:
            raise AppError("Chat.Reporting", "chat.leave.app_err", None, str(exc),
                           HTTPStatus.INTERNAL_SERVER_ERROR) from exc

    def send_text(self, text: str) -> None:
        """Send a text through the first session that is still open."""
        sess = next((s for s in self.sessions if s.stop_at == 0), None)
        if sess is None:
            return
        try:
            self.client.send_text(sess.user_id, sess.channel_id, self.id, text)
        except Exception as exc:
            raise AppError("Chat.SendText", "chat.send.text.app_err", None, str(exc),
                           HTTPStatus.INTERNAL_SERVER_ERROR) from exc

    def set_stop(self) -> None:
        with self._lock:
            if self._close_at == 0:
                self._close_at = now_millis()

    # ----- chat events -----

    def _session_by_invite_id(self, invite_id: str) -> ChatSession | None:
        with self._lock:
            return next(
                (s for s in self._sessions if s.invite_id == invite_id and s.stop_at == 0),
                None,
            )

    def _session_by_channel_id(self, channel_id: str) -> ChatSession | None:
        with self._lock:
            return next(
                (s for s in self._sessions if s.channel_id == channel_id and s.stop_at == 0),
                None,
            )

    def set_invite(self, invite_id: str, timestamp: int) -> None:
        sess = self._session_by_invite_id(invite_id)
        if sess is None:
            self.log.warning("Conversation invite %s not found inviteId %s", self.id, invite_id)
            return
        sess.set_activity()
        sess.invite_id = invite_id
        sess.invite_at = timestamp
        self._push(ChatState.INVITE)

    def set_joined(self, channel_id: str, timestamp: int) -> None:
        # the joined event carries the invite id as its channel id
        with self._lock:
            matches = [s for s in self._sessions
                       if s.invite_id == channel_id and s.stop_at == 0]
            self._last_message_at = now_millis()
        if not matches:
            self.log.warning("Conversation %s not found chanel_id %s", self.id, channel_id)
            return
        sess = matches[-1]
        sess.channel_id = channel_id
        sess.answered_at = timestamp
        sess.set_activity()
        with self._lock:
            self._bridged_at = timestamp
        self._push(ChatState.BRIDGE)

    def set_new_message(self, channel_id: str) -> None:
        with self._lock:
            self._last_message_at = now_millis()
        sess = self._session_by_channel_id(channel_id)
        if sess is not None:
            sess.set_activity()

    def set_close(self, timestamp: int, cause: str) -> None:
        with self._lock:
            self._close_at = timestamp
            self._cause = cause
        self.member_session().cause = cause
        self._push(ChatState.CLOSE)

    def set_declined(self, invite_id: str, timestamp: int) -> None:
        sess = self._session_by_invite_id(invite_id)
        if sess is None:
            self.log.warning("Conversation decline %s not found inviteId %s", self.id, invite_id)
            return
        sess.mark_stopped(timestamp)
        self._push(ChatState.DECLINED)