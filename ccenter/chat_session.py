"""One participant's leg in a chat conversation."""

from __future__ import annotations

import threading
import time
from enum import Enum
from http import HTTPStatus
from typing import Any, Callable, Protocol

from .errors import AppError

CHAT_CAUSE_TRANSFER = "transfer"


def now_millis() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


class ChatClient(Protocol):
    """Transport to the chat service; methods raise on failure."""

    name: str

    def invite_to_conversation(self, domain_id: int, user_id: int, conversation_id: str,
                               inviter_id: str, inviter_user_id: str, title: str,
                               timeout: int, variables: dict[str, str]) -> str: ...
    def leave(self, user_id: int, channel_id: str, conversation_id: str, cause: Any) -> None: ...
    def decline(self, user_id: int, invite_id: str, cause: str) -> None: ...
    def close_conversation(self, user_id: int, channel_id: str, conversation_id: str,
                           cause: Any) -> None: ...
    def send_text(self, user_id: int, channel_id: str, conversation_id: str, text: str) -> None: ...


class ChatDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


def _chat_call(error_id: str, fn: Callable[..., Any], *args: Any) -> Any:
    try:
        return fn(*args)
    except AppError:
        raise
    except Exception as exc:
        raise AppError("ChatSession", error_id, None, str(exc),
                       HTTPStatus.INTERNAL_SERVER_ERROR) from exc


class ChatSession:
    """A member's or an agent's channel within a conversation."""

    def __init__(
        self,
        client: ChatClient,
        *,
        conversation_id: str,
        direction: ChatDirection = ChatDirection.INBOUND,
        user_id: int = 0,
        inviter_id: str = "",
        inviter_user_id: str = "",
        channel_id: str = "",
        invite_id: str = "",
        invite_at: int = 0,
        created_at: int = 0,
        answered_at: int = 0,
        activity_at: int = 0,
        variables: dict[str, str] | None = None,
    ) -> None:
        self.client = client
        self.conversation_id = conversation_id
        self.direction = ChatDirection(direction)
        self.user_id = user_id
        self.inviter_id = inviter_id
        self.inviter_user_id = inviter_user_id
        self.channel_id = channel_id
        self.invite_id = invite_id
        self.invite_at = invite_at
        self.created_at = created_at
        self.answered_at = answered_at
        self.activity_at = activity_at
        self.variables = variables
        self.cause = ""
        self._stop_at = 0
        self._lock = threading.RLock()

    @property
    def id(self) -> str:
        if self.direction is ChatDirection.OUTBOUND:
            return self.session_id
        return self.conversation_id

    @property
    def session_id(self) -> str:
        return self.channel_id or self.invite_id

    @property
    def stop_at(self) -> int:
        with self._lock:
            return self._stop_at

    def mark_stopped(self, timestamp: int) -> None:
        """Record when this session stopped."""
        with self._lock:
            self._stop_at = timestamp

    def answered(self) -> bool:
        with self._lock:
            return self.answered_at > 0

    def set_activity(self) -> None:
        with self._lock:
            self.activity_at = now_millis()

    def idle_sec(self) -> int:
        """Seconds since the last activity on this session."""
        with self._lock:
            last = self.activity_at
        return (now_millis() - last) // 1000

    def leave(self, cause: Any) -> None:
        _chat_call("chat_session.leave.app_err", self.client.leave,
                   self.user_id, self.session_id, self.conversation_id, cause)

    def decline(self) -> None:
        _chat_call("chat_session.decline.app_err", self.client.decline,
                   self.user_id, self.invite_id, "")

    def close(self, reason: Any) -> None:
        """Decline a pending invite, or close the joined conversation."""
        if self.channel_id == "" and self.invite_id != "":
            self.decline()
            return
        _chat_call("chat_session.close.app_err", self.client.close_conversation,
                   self.user_id, self.session_id, self.conversation_id, reason)

    def stats(self) -> dict[str, str]:
        data: dict[str, str] = {}
        if self.cause:
            data["chat_transferred"] = "true" if self.cause == CHAT_CAUSE_TRANSFER else "false"
        return data


def outbound_chat(client: ChatClient, user_id: int, conversation_id: str,
                  inviter_id: str, inviter_user_id: str) -> ChatSession:
    """A new session inviting ``user_id`` into an existing conversation."""
    return ChatSession(
        client,
        conversation_id=conversation_id,
        direction=ChatDirection.OUTBOUND,
        user_id=user_id,
        inviter_id=inviter_id,
        inviter_user_id=inviter_user_id,
        created_at=now_millis(),
    )