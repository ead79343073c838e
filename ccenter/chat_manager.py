"""Keeps open conversations and applies chat-service events to them."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any

from cachetools import LRUCache

from .conversation import Conversation
from .errors import AppError

MAX_OPENED_CHAT = 50000

CHAT_EVENT_INVITE = "user_invite"
CHAT_EVENT_JOINED = "join_conversation"
CHAT_EVENT_DECLINE = "decline_invite"
CHAT_EVENT_LEAVE = "leave_conversation"
CHAT_EVENT_CLOSE = "close_conversation"
CHAT_EVENT_MESSAGE = "message"

_log = logging.getLogger(__name__)


class ConversationNotFound(AppError):
    def __init__(self) -> None:
        super().__init__("Chat", "chat.not_found", None, "not found conversation",
                         HTTPStatus.NOT_FOUND)


class BadConversationId(AppError):
    def __init__(self) -> None:
        super().__init__("Chat", "chat.valid.id", None, "bad conversation_id",
                         HTTPStatus.BAD_REQUEST)


@dataclass
class ChatEvent:
    """An event published by the chat service."""

    name: str
    conversation_id: str
    domain_id: int = 0
    user_id: int = 0
    invite_id: str = ""
    channel_id: str = ""
    message_channel_id: str = ""
    timestamp: int = 0
    cause: str = ""
    data: dict[str, Any] = field(default_factory=dict)


class ChatManager:
    """Owns conversations by id.

    ``api.client()`` returns a chat client; ``api.start()``/``api.stop()``
    manage it. ``mq.consume_chat_event()`` returns a queue of ``ChatEvent``
    objects, ``None`` marking its end.
    """

    def __init__(self, api: Any, mq: Any, logger: logging.Logger | None = None) -> None:
        self.api = api
        self.mq = mq
        self.log = logger or _log
        self._chats: LRUCache = LRUCache(maxsize=MAX_OPENED_CHAT)
        self._chats_lock = threading.Lock()
        self._stop = threading.Event()
        self._consumer: threading.Thread | None = None
        self._start_lock = threading.Lock()

    # ----- lifecycle -----

    def start(self) -> Any:
        with self._start_lock:
            if self._consumer is None:
                self._consumer = threading.Thread(
                    target=self._consume, name="chat-manager-events", daemon=True
                )
                self._consumer.start()
        return self.api.start()

    def _consume(self) -> None:
        events = self.mq.consume_chat_event()
        try:
            while not self._stop.is_set():
                try:
                    event = events.get(timeout=0.1)
                except queue.Empty:
                    continue
                if event is None:
                    return
                try:
                    self.handle_event(event)
                except Exception:
                    self.log.exception("chat %s event handling failed", event.conversation_id)
        finally:
            self.log.debug("stopped chat")

    def stop(self) -> None:
        self.api.stop()
        self._stop.set()
        consumer = self._consumer
        if consumer is not None and consumer is not threading.current_thread():
            consumer.join()

    # ----- store -----

    def new_conversation(self, domain_id: int, conversation_id: str, inviter_id: str,
                         inviter_user_id: str, variables: dict[str, str] | None = None) -> Conversation:
        try:
            client = self.api.client()
        except Exception as exc:
            raise AppError("Chat.Inbound", "chat.inbound.app_err", None, str(exc),
                           HTTPStatus.INTERNAL_SERVER_ERROR) from exc
        conv = Conversation(client, domain_id, conversation_id, inviter_id, inviter_user_id,
                            variables, self.log)
        self.store_conversation(conv)
        return conv

    def get_conversation(self, conversation_id: str) -> Conversation:
        if conversation_id == "":
            raise BadConversationId()
        with self._chats_lock:
            conv = self._chats.get(conversation_id)
        if conv is None:
            raise ConversationNotFound()
        return conv

    def store_conversation(self, conversation: Conversation) -> bool:
        """Add a conversation; return False if one with its id exists."""
        with self._chats_lock:
            if conversation.id in self._chats:
                exists = True
            else:
                exists = False
                self._chats[conversation.id] = conversation
                size = len(self._chats)
        if exists:
            self.log.error("chat [%s] exists", conversation.id)
            return False
        conversation.log.debug(
            "chat [%s] save to store domaind_Id=%d, chat_user_id=%s len=%d",
            conversation.id, conversation.domain_id, conversation.inviter_user_id, size,
        )
        return True

    def remove_conversation(self, conversation: Conversation) -> bool:
        """Drop a conversation; return False if it was not stored."""
        with self._chats_lock:
            removed = self._chats.pop(conversation.id, None) is not None
        if not removed:
            self.log.error("chat [%s] not exists", conversation.id)
            return False
        conversation.log.debug(
            "chat [%s] remove from store domaind_id=%d, chat_user_id=%s",
            conversation.id, conversation.domain_id, conversation.inviter_user_id,
        )
        return True

    # ----- events -----

    def handle_event(self, event: ChatEvent) -> bool:
        """Apply an event to its conversation; return whether it was handled."""
        try:
            chat = self.get_conversation(event.conversation_id)
        except AppError as err:
            self.log.warning("chat %s [%s]: %s", event.conversation_id, event.name, err)
            return False

        chat.log.debug("chat receive [%s] domaind_id=%d user_id=%d vdata=%s",
                       event.name, event.domain_id, event.user_id, event.data)

        if event.name == CHAT_EVENT_INVITE:
            return True
        if event.name == CHAT_EVENT_DECLINE:
            chat.set_declined(event.invite_id, event.timestamp)
        elif event.name == CHAT_EVENT_JOINED:
            chat.set_joined(event.channel_id, event.timestamp)
        elif event.name == CHAT_EVENT_MESSAGE:
            chat.set_new_message(event.message_channel_id)
        elif event.name in (CHAT_EVENT_LEAVE, CHAT_EVENT_CLOSE):
            chat.set_close(event.timestamp, event.cause.lower())
        else:
            chat.log.warning("skip [%s] domaind_id=%d user_id=%d vdata=%s",
                             event.name, event.domain_id, event.user_id, event.data)
            return False
        return True