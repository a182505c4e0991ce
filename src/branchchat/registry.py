"""Tracks which chats have a generation running, independent of focus."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .models import UNKNOWN_CHAT_NAME
from .streaming import AbortHandle

logger = logging.getLogger(__name__)

BackgroundCallback = Callable[[str, str], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StreamingChatState:
    is_streaming: bool = True
    chat_name: str = UNKNOWN_CHAT_NAME
    abort_handle: Optional[AbortHandle] = None
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    has_new_messages: bool = False


class StreamRegistry:
    """
    Keyed by chat id, so navigating away from a chat never cancels its
    generation, and returning to it shows whether it is still running or has
    finished in the meantime.

    A chat holds at most one abort handle. Starting again for a chat that
    already has one keeps the newer handle; the older one is dropped without
    being invoked.
    """

    def __init__(self):
        self._chats: Dict[str, StreamingChatState] = {}
        self._active_chat_id: Optional[str] = None
        self._callbacks: List[BackgroundCallback] = []

    @property
    def active_chat_id(self) -> Optional[str]:
        return self._active_chat_id

    def set_active_chat(self, chat_id: Optional[str]) -> None:
        self._active_chat_id = chat_id

    def start_streaming(
        self,
        chat_id: str,
        chat_name: str = UNKNOWN_CHAT_NAME,
        abort_handle: Optional[AbortHandle] = None,
    ) -> StreamingChatState:
        existing = self._chats.get(chat_id)
        if existing is not None:
            chat_name = existing.chat_name or chat_name
            abort_handle = abort_handle or existing.abort_handle
        state = StreamingChatState(chat_name=chat_name, abort_handle=abort_handle)
        self._chats[chat_id] = state
        return state

    def complete_streaming(self, chat_id: str, chat_name: Optional[str] = None) -> None:
        """Marks a generation finished.

        When the chat is not the focused one it is flagged with new messages
        and the background-completion callbacks fire.
        """
        state = self._chats.get(chat_id)
        if state is None:
            state = self._chats[chat_id] = StreamingChatState()
        if chat_name:
            state.chat_name = chat_name
        state.is_streaming = False
        state.abort_handle = None
        state.completed_at = _now()

        if chat_id == self._active_chat_id:
            return
        state.has_new_messages = True
        for callback in list(self._callbacks):
            try:
                callback(chat_id, state.chat_name)
            except Exception:
                logger.exception("Background completion callback failed for chat %s", chat_id)

    def stop_streaming(self, chat_id: str) -> None:
        state = self._chats.pop(chat_id, None)
        if state is not None and state.abort_handle is not None:
            state.abort_handle.abort()

    def clear_new_messages(self, chat_id: str) -> None:
        state = self._chats.get(chat_id)
        if state is not None:
            state.has_new_messages = False

    def update_chat_name(self, chat_id: str, chat_name: str) -> None:
        state = self._chats.get(chat_id)
        if state is not None:
            state.chat_name = chat_name

    def get(self, chat_id: str) -> Optional[StreamingChatState]:
        return self._chats.get(chat_id)

    def is_streaming(self, chat_id: str) -> bool:
        state = self._chats.get(chat_id)
        return bool(state and state.is_streaming)

    def get_abort_handle(self, chat_id: str) -> Optional[AbortHandle]:
        state = self._chats.get(chat_id)
        return state.abort_handle if state else None

    def streaming_chats(self) -> List[str]:
        return [chat_id for chat_id, s in self._chats.items() if s.is_streaming]

    def completed_chats(self) -> List[str]:
        """Chats that finished in the background and have not been viewed since."""
        return [chat_id for chat_id, s in self._chats.items() if s.has_new_messages]

    def is_any_streaming(self) -> bool:
        return any(s.is_streaming for s in self._chats.values())

    def on_background_complete(self, callback: BackgroundCallback) -> Callable[[], None]:
        """Registers ``callback(chat_id, chat_name)``; returns an unsubscribe function."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def reset(self) -> None:
        self._chats.clear()
        self._active_chat_id = None
        self._callbacks.clear()
