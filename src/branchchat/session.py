"""
The chat session: the state machine behind sending, editing, regenerating,
switching versions and stopping.

A ``ChatSession`` focuses one chat at a time but can have a generation running
for several. Each running generation is a ``StreamOperation`` keyed by chat id
that carries its own abort handle and partial-content ledger, so moving focus
never cancels work. The store is the source of truth: after every operation the
visible path is rebuilt from it rather than from in-memory deltas.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import Settings, get_settings
from .errors import (
    ConfigurationError,
    GenerationAborted,
    InvalidOperationError,
    PersistenceError,
    StreamTimeoutError,
    TransportError,
)
from .llm import LLM
from .models import (
    ASSISTANT_ROLE,
    DEFAULT_CHAT_TITLE,
    UNKNOWN_CHAT_NAME,
    USER_ROLE,
    Chat,
    ChatRequest,
    HistoryMessage,
    ImageOptions,
    MediaAttachment,
    Message,
    Mode,
    RouterDecision,
    Selections,
)
from .notifications import Notifier
from .registry import StreamRegistry
from .store import Store
from .streaming import (
    AbortHandle,
    StreamingCoordinator,
    StreamListener,
    StreamResult,
    StreamTarget,
)
from .tree import (
    ancestor_path,
    build_selection_map,
    build_visible_path,
    default_selections,
    sibling_versions,
)

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 50


class SessionState(str, Enum):
    IDLE = "idle"
    COMPOSING = "composing"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"


@dataclass
class StreamOperation:
    """One in-flight generation for one chat."""

    chat_id: str
    message_ids: List[str]
    user_messages: int = 0
    abort: AbortHandle = field(default_factory=AbortHandle)
    # message id -> latest known content; only ever read to save partials
    partial_content: Dict[str, str] = field(default_factory=dict)
    # the chat's selections when the operation started, used while unfocused
    selections: Selections = field(default_factory=dict)
    stopped: bool = False


class _OperationListener(StreamListener):
    """Mirrors coordinator updates into the session while its chat is focused."""

    def __init__(self, session: "ChatSession", operation: StreamOperation):
        self.session = session
        self.operation = operation

    @property
    def focused(self) -> bool:
        return self.session.active_chat_id == self.operation.chat_id

    def on_content(self, target: StreamTarget) -> None:
        self.operation.partial_content[target.message_id] = target.content
        if self.focused:
            self.session._update_visible(target.message_id, content=target.content)

    def on_media(self, target: StreamTarget) -> None:
        if self.focused:
            self.session._update_visible(
                target.message_id, generated_media=list(target.generated_media)
            )

    def on_router(self, decision: RouterDecision, target: Optional[StreamTarget]) -> None:
        if not self.focused:
            return
        self.session.router_decision = decision
        if target is not None:
            self.session._update_visible(target.message_id, model=decision.model)

    def on_citations(self, target: StreamTarget) -> None:
        if self.focused:
            self.session._update_visible(target.message_id, citations=list(target.citations))

    async def on_summary(self, summary: str) -> None:
        await self.session._apply_summary(self.operation.chat_id, summary)

    def on_error(self, message: str, targets: List[StreamTarget]) -> None:
        self.session.notifier.toast(message, "error")
        if self.focused:
            self.session.error = message

    def on_finalize(self, target: StreamTarget) -> None:
        # a finished reply must not be overwritten as partial by a late stop
        self.operation.partial_content.pop(target.message_id, None)


class ChatSession:
    """
    Owns the focused chat's visible messages and selections, the composer
    state, and every running generation.

    Parameters
    ----------
    store : Store
        Durable storage for chats and messages.
    llm : LLM
        The streaming transport.
    settings : Settings, optional
        Defaults to the cached application settings.
    registry : StreamRegistry, optional
        Shared record of which chats are generating.
    notifier : Notifier, optional
        Receives chat-updated and toast broadcasts.
    on_navigate : callable, optional
        Called with the id of a newly created chat before its first
        generation starts, so callers can update URL state.
    """

    def __init__(
        self,
        store: Store,
        llm: LLM,
        settings: Optional[Settings] = None,
        registry: Optional[StreamRegistry] = None,
        notifier: Optional[Notifier] = None,
        on_navigate: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.llm = llm
        self.settings = settings or get_settings()
        self.registry = registry or StreamRegistry()
        self.notifier = notifier or Notifier()
        self.on_navigate = on_navigate
        self.coordinator = StreamingCoordinator(
            llm, store, timeout=self.settings.stream_timeout
        )
        self._operations: Dict[str, StreamOperation] = {}
        self.reset()

    def reset(self) -> None:
        """Drops all session state, aborting any running generation."""
        for chat_id, operation in list(self._operations.items()):
            operation.stopped = True
            operation.abort.abort()
            self.registry.stop_streaming(chat_id)
        self._operations = {}

        self.state = SessionState.IDLE
        self.active_chat_id: Optional[str] = None
        self.messages: List[Message] = []
        self.selections: Selections = {}
        self.mode: Mode = "auto" if self.settings.auto_mode else "manual"
        self.selected_models: List[str] = list(self.settings.default_models)
        self.router_decision: Optional[RouterDecision] = None
        self.current_summary: Optional[str] = None
        self.image_options: ImageOptions = self.settings.default_image_options()
        self.draft = ""
        self.error: Optional[str] = None
        self.registry.set_active_chat(None)

    # --- Focused operation ---
    @property
    def current_operation(self) -> Optional[StreamOperation]:
        if self.active_chat_id is None:
            return None
        return self._operations.get(self.active_chat_id)

    @property
    def is_streaming(self) -> bool:
        return self.current_operation is not None

    @property
    def partial_content(self) -> Dict[str, str]:
        operation = self.current_operation
        return dict(operation.partial_content) if operation else {}

    @property
    def streaming_message_ids(self) -> List[str]:
        operation = self.current_operation
        return list(operation.message_ids) if operation else []

    # --- Composer ---
    def update_draft(self, text: str) -> None:
        self.draft = text
        if not self.is_streaming:
            self.state = SessionState.COMPOSING if text.strip() else SessionState.IDLE

    def set_mode(self, mode: Mode) -> None:
        self.mode = mode

    def set_selected_models(self, models: Sequence[str]) -> None:
        self.selected_models = list(dict.fromkeys(m for m in models if m))

    def set_image_options(self, image_options: ImageOptions) -> None:
        self.image_options = image_options

    # --- Chats ---
    def set_active_chat(self, chat_id: Optional[str]) -> None:
        """Moves focus without loading anything. ``None`` starts a fresh chat."""
        self.active_chat_id = chat_id
        self.registry.set_active_chat(chat_id)
        if chat_id is None:
            self.messages = []
            self.selections = {}
            self.router_decision = None
            self.current_summary = None
            self.error = None
            self.state = SessionState.IDLE

    async def create_chat(self, title: str = DEFAULT_CHAT_TITLE) -> Chat:
        chat = Chat(title=title, mode=self.mode)
        await self.store.save_chat(chat)
        self.set_active_chat(None)
        self.set_active_chat(chat.id)
        self.notifier.chat_updated(chat.id)
        return chat

    async def load_chat(self, chat_id: str) -> Optional[Chat]:
        """Focuses ``chat_id`` and restores its last viewed path.

        If a generation is still running for the chat, its placeholders are
        selected and its latest partial content is shown.
        """
        chat = await self.store.get_chat(chat_id)
        if chat is None:
            logger.warning("Chat %s not found", chat_id)
            return None
        messages = await self.store.get_messages(chat_id)

        ids = {m.id for m in messages}
        if chat.current_leaf_message_id in ids:
            selections = build_selection_map(messages, chat.current_leaf_message_id)
        else:
            selections = default_selections(messages)
        operation = self._operations.get(chat_id)
        if operation is not None and operation.message_ids:
            selections = build_selection_map(
                messages, operation.message_ids[0], preserve=selections
            )
        elif operation is not None:
            selections.update(operation.selections)

        self.set_active_chat(chat_id)
        self.registry.clear_new_messages(chat_id)
        self.mode = chat.mode
        self.selections = selections
        self.router_decision = None
        self.current_summary = None
        self.error = None
        self.draft = ""
        self.messages = build_visible_path(messages, selections)
        if operation is not None:
            for message_id, content in operation.partial_content.items():
                self._update_visible(message_id, content=content)
            self.state = SessionState.STREAMING
        else:
            self.state = SessionState.IDLE
        return chat

    async def delete_chat(self, chat_id: str) -> None:
        operation = self._operations.pop(chat_id, None)
        if operation is not None:
            operation.stopped = True
            operation.abort.abort()
        self.registry.stop_streaming(chat_id)
        await self.store.delete_chat(chat_id)
        if self.active_chat_id == chat_id:
            self.set_active_chat(None)
        self.notifier.chat_updated(chat_id)

    async def get_message_siblings(self, message_id: str) -> Tuple[List[Message], int]:
        """Returns the versions of a message and its position, for "N of M" display."""
        message = await self.store.get_message(message_id)
        if message is None:
            return [], 0
        messages = await self.store.get_messages(message.chat_id)
        return sibling_versions(messages, message_id)

    # --- Generation ---
    async def send_message(
        self, content: str, attachments: Optional[Sequence[MediaAttachment]] = None
    ) -> str:
        """Sends a user message and streams the response(s) into the tree.

        Parameters
        ----------
        content : str
            The prompt text.
        attachments : Sequence[MediaAttachment], optional
            Images or videos sent with the prompt.

        Returns
        -------
        str
            The id of the chat the message was sent to, minted if none was
            focused.

        Raises
        ------
        ConfigurationError
            No API key is configured, or manual mode has no model selected.
            Nothing is persisted.
        InvalidOperationError
            The message is empty, or the focused chat is already generating.
        """
        api_key = self._require_api_key()
        models = self._target_models()
        attachments = list(attachments or [])
        if not content.strip() and not attachments:
            raise InvalidOperationError("Cannot send an empty message")

        history = self._history(self.messages)
        parent_id = self.messages[-1].id if self.messages else None
        chat = None
        if self.active_chat_id is None:
            chat = Chat(preview=content[:PREVIEW_LENGTH], mode=self.mode)
            self.set_active_chat(chat.id)
        chat_id = self.active_chat_id
        operation = self._reserve(chat_id)
        try:
            if chat is not None:
                try:
                    await self.store.save_chat(chat)
                except PersistenceError:
                    if self.active_chat_id == chat_id:
                        self.set_active_chat(None)
                    raise
                if self.on_navigate is not None:
                    self.on_navigate(chat_id)
                self.notifier.chat_updated(chat_id)
            else:
                chat = await self.store.get_chat(chat_id)

            siblings = await self.store.get_sibling_messages(parent_id, chat_id)
            user_message = Message(
                chat_id=chat_id,
                role=USER_ROLE,
                content=content,
                parent_id=parent_id,
                branch_index=len(siblings),
                attachments=attachments,
            )
            await self.store.save_message(user_message)
            operation.user_messages = 1

            placeholders = [
                Message(
                    chat_id=chat_id,
                    role=ASSISTANT_ROLE,
                    model=model,
                    parent_id=user_message.id,
                    branch_index=index,
                )
                for index, model in enumerate(models)
            ]
            for placeholder in placeholders:
                await self.store.save_message(placeholder)

            self._select(operation, parent_id, user_message.id)
            self._select(operation, user_message.id, placeholders[0].id)
            if self.active_chat_id == chat_id:
                self.messages = [*self.messages, user_message, placeholders[0]]
                self.draft = ""

            request = self._build_request(
                content, attachments, models, history, api_key, chat
            )
            await self._stream(operation, chat, request, placeholders)
        finally:
            self._release(operation)
        return chat_id

    async def edit_and_regenerate(self, message_id: str, new_content: str) -> None:
        """Adds an edited version of a user message and answers it.

        The original is kept untouched; the edit becomes its newest sibling
        and is selected. Nothing is written when the edit is rejected.
        """
        api_key = self._require_api_key()
        models = self._target_models()[:1]
        operation = self._reserve(self.active_chat_id)
        try:
            original = await self._focused_user_message(operation, message_id)
            siblings = await self.store.get_sibling_messages(
                original.parent_id, original.chat_id
            )
            edited = Message(
                chat_id=original.chat_id,
                role=USER_ROLE,
                content=new_content,
                parent_id=original.parent_id,
                branch_index=len(siblings),
                is_edited=True,
                edited_at=datetime.now(timezone.utc),
                attachments=[a.model_copy() for a in original.attachments],
            )
            await self.store.save_message(edited)
            operation.user_messages = 1
            self._select(operation, original.parent_id, edited.id)

            messages = await self.store.get_messages(original.chat_id)
            path = build_visible_path(messages, operation.selections)
            if self.active_chat_id == original.chat_id:
                self.messages = build_visible_path(messages, self.selections)
            await self._persist_leaf(original.chat_id, path)
            await self._regenerate(operation, edited, api_key, models)
        finally:
            self._release(operation)

    async def regenerate_response(self, user_message_id: str) -> None:
        """Streams a new assistant version under ``user_message_id`` and shows only it."""
        api_key = self._require_api_key()
        models = self._target_models()[:1]
        operation = self._reserve(self.active_chat_id)
        try:
            user_message = await self._focused_user_message(operation, user_message_id)
            await self._regenerate(operation, user_message, api_key, models)
        finally:
            self._release(operation)

    async def _regenerate(
        self,
        operation: StreamOperation,
        user_message: Message,
        api_key: str,
        models: List[Optional[str]],
    ) -> None:
        chat_id = user_message.chat_id
        messages = await self.store.get_messages(chat_id)
        existing = [
            m
            for m in messages
            if m.parent_id == user_message.id and m.role == ASSISTANT_ROLE
        ]
        placeholder = Message(
            chat_id=chat_id,
            role=ASSISTANT_ROLE,
            model=models[0],
            parent_id=user_message.id,
            branch_index=len(existing),
        )
        await self.store.save_message(placeholder)
        self._select(operation, user_message.id, placeholder.id)
        if self.active_chat_id == chat_id:
            self.messages = build_visible_path([*messages, placeholder], self.selections)

        history = self._history(ancestor_path(messages, user_message.id)[:-1])
        chat = await self.store.get_chat(chat_id)
        request = self._build_request(
            user_message.content,
            user_message.attachments,
            models,
            history,
            api_key,
            chat,
        )
        await self._stream(operation, chat, request, [placeholder])

    async def switch_version(self, message_id: str) -> None:
        """Shows ``message_id`` and re-resolves everything below it."""
        chat_id = self.active_chat_id
        if chat_id is None:
            return
        messages = await self.store.get_messages(chat_id)
        if any(m.id == message_id for m in messages):
            selections = build_selection_map(messages, message_id, preserve=self.selections)
        else:
            logger.warning(
                "Cannot switch to unknown message %s in chat %s; showing the latest versions",
                message_id,
                chat_id,
            )
            selections = default_selections(messages)
        if self.active_chat_id != chat_id:
            return
        self.selections = selections
        self.messages = build_visible_path(messages, selections)
        await self._persist_leaf(chat_id, self.messages)

    async def stop_generation(self, chat_id: Optional[str] = None) -> int:
        """Stops a chat's generation and keeps what it produced so far.

        Every placeholder with non-blank partial content is saved once with
        ``is_partial=True``. Calling it again, or for a chat that is not
        generating, does nothing.

        Returns
        -------
        int
            The number of partial responses saved.
        """
        chat_id = chat_id or self.active_chat_id
        operation = self._operations.pop(chat_id, None) if chat_id else None
        if operation is None or operation.stopped:
            return 0

        # everything below runs after the operation is detached, so a second
        # stop or a late event cannot reach the ledger again
        operation.stopped = True
        operation.abort.abort()
        self.registry.stop_streaming(chat_id)
        partials = {
            message_id: content
            for message_id, content in operation.partial_content.items()
            if message_id in operation.message_ids and content.strip()
        }
        operation.partial_content.clear()
        if self.active_chat_id == chat_id:
            self.state = SessionState.ABORTED

        saved = 0
        try:
            for message_id, content in partials.items():
                message = await self.store.get_message(message_id)
                if message is None:
                    continue
                message.content = content
                message.is_partial = True
                await self.store.save_message(message)
                saved += 1
            await self.store.update_chat_stats(
                chat_id, message_count_increment=operation.user_messages + saved
            )
            await self._refresh(operation, persist_leaf=saved > 0)
        except PersistenceError as e:
            logger.error("Failed to save partial responses for chat %s: %s", chat_id, e)
            self.notifier.toast("Could not save the partial response", "error")

        if saved:
            self.notifier.toast(f"Saved {saved} partial response(s)", "info")
        else:
            self.notifier.toast("Generation stopped", "info")
        self.notifier.chat_updated(chat_id)
        return saved

    # --- Internals ---
    def _require_api_key(self) -> str:
        api_key = self.settings.get_api_key()
        if not api_key:
            self.notifier.toast("Please add your API key in settings", "error")
            raise ConfigurationError("No API key configured")
        return api_key

    def _reserve(self, chat_id: Optional[str]) -> StreamOperation:
        """Claims ``chat_id`` for one generation before anything is awaited.

        The operation is registered at once, so a concurrent send, edit or
        regenerate on the same chat is rejected and a stop can reach it even
        while its messages are still being written.
        """
        if chat_id is None:
            raise InvalidOperationError("No chat is active")
        if chat_id in self._operations:
            raise InvalidOperationError("A response is already being generated for this chat")
        operation = StreamOperation(
            chat_id=chat_id, message_ids=[], selections=dict(self.selections)
        )
        self._operations[chat_id] = operation
        return operation

    def _release(self, operation: StreamOperation) -> None:
        if self._operations.get(operation.chat_id) is operation:
            del self._operations[operation.chat_id]

    async def _focused_user_message(
        self, operation: StreamOperation, message_id: str
    ) -> Message:
        message = await self.store.get_message(message_id)
        if message is None or message.role != USER_ROLE:
            raise InvalidOperationError(f"Message {message_id} is not a user message")
        if message.chat_id != operation.chat_id:
            raise InvalidOperationError(f"Chat {message.chat_id} is not the active chat")
        return message

    def _select(
        self, operation: StreamOperation, parent_id: Optional[str], child_id: str
    ) -> None:
        operation.selections[parent_id] = child_id
        if self.active_chat_id == operation.chat_id:
            self.selections[parent_id] = child_id

    def _target_models(self) -> List[Optional[str]]:
        if self.mode == "auto":
            return [None]
        models = self.selected_models or list(self.settings.default_models)
        if not models:
            self.notifier.toast("Select at least one model", "error")
            raise ConfigurationError("No model selected in manual mode")
        return list(models)

    @staticmethod
    def _history(messages: Sequence[Message]) -> List[HistoryMessage]:
        return [
            HistoryMessage(role=m.role, content=m.content)
            for m in messages
            if m.content.strip()
        ]

    def _build_request(
        self,
        content: str,
        attachments: Sequence[MediaAttachment],
        models: List[Optional[str]],
        history: List[HistoryMessage],
        api_key: str,
        chat: Optional[Chat],
    ) -> ChatRequest:
        named = [m for m in models if m]
        return ChatRequest(
            message=content,
            attachments=list(attachments),
            mode=self.mode,
            models=named or None,
            api_key=api_key,
            conversation_history=history,
            system_prompt=self.settings.system_prompt,
            image_options=self.image_options,
            web_search=self.settings.web_search_options(),
            generate_title=self.settings.chat_title_generation
            and (chat is None or chat.has_default_title),
        )

    async def _stream(
        self,
        operation: StreamOperation,
        chat: Optional[Chat],
        request: ChatRequest,
        placeholders: List[Message],
    ) -> None:
        chat_id = operation.chat_id
        operation.message_ids = [p.id for p in placeholders]
        if operation.stopped:
            # stopped while its messages were being written
            await self._refresh(operation, persist_leaf=False)
            return
        self.registry.start_streaming(
            chat_id, chat.title if chat else UNKNOWN_CHAT_NAME, operation.abort
        )
        if self.active_chat_id == chat_id:
            self.state = SessionState.STREAMING
            self.router_decision = None
            self.error = None

        targets = [StreamTarget(message_id=p.id, model=p.model) for p in placeholders]
        completed = False
        try:
            result = await self.coordinator.run(
                chat_id, request, targets, operation.abort, _OperationListener(self, operation)
            )
            completed = await self._complete(operation, result)
        except GenerationAborted:
            logger.info("Generation stopped for chat %s", chat_id)
        except StreamTimeoutError as e:
            logger.error("Stream timed out for chat %s: %s", chat_id, e)
            self._fail(operation, "The response timed out. Please try again.")
        except TransportError as e:
            logger.error("Stream failed for chat %s: %s", chat_id, e)
            self._fail(operation, str(e))
        except PersistenceError as e:
            logger.error("Could not save the response for chat %s: %s", chat_id, e)
            self._fail(operation, "Could not save the response")
        except Exception:
            logger.exception("Unexpected error while streaming chat %s", chat_id)
            self._fail(operation, "Something went wrong while generating the response")
        finally:
            self._release(operation)
            try:
                await self._refresh(operation, persist_leaf=completed)
            except PersistenceError as e:
                logger.error("Could not reload chat %s: %s", chat_id, e)

    async def _complete(self, operation: StreamOperation, result: StreamResult) -> bool:
        if operation.stopped:
            return False
        chat_id = operation.chat_id
        succeeded = result.succeeded
        await self.store.update_chat_stats(
            chat_id,
            message_count_increment=operation.user_messages + len(succeeded),
            cost_increment=sum(t.stats.cost for t in succeeded if t.stats),
            tokens_increment=sum(t.stats.total_tokens for t in succeeded if t.stats),
            models=[t.model for t in succeeded if t.model],
        )
        self.notifier.chat_updated(chat_id)

        chat = await self.store.get_chat(chat_id)
        if result.errors:
            self.registry.stop_streaming(chat_id)
        else:
            self.registry.complete_streaming(chat_id, chat.title if chat else None)
        if self.active_chat_id == chat_id:
            self.state = SessionState.ERRORED if result.errors else SessionState.COMPLETED
        return True

    def _fail(self, operation: StreamOperation, message: str) -> None:
        self.registry.stop_streaming(operation.chat_id)
        self.notifier.toast(message, "error")
        if self.active_chat_id == operation.chat_id:
            self.state = SessionState.ERRORED
            self.error = message

    async def _refresh(self, operation: StreamOperation, persist_leaf: bool) -> None:
        messages = await self.store.get_messages(operation.chat_id)
        focused = self.active_chat_id == operation.chat_id
        path = build_visible_path(
            messages, self.selections if focused else operation.selections
        )
        if focused:
            self.messages = path
        if persist_leaf:
            await self._persist_leaf(operation.chat_id, path)

    async def _persist_leaf(self, chat_id: str, path: Sequence[Message]) -> None:
        if not path:
            return
        chat = await self.store.get_chat(chat_id)
        if chat is None:
            return
        chat.current_leaf_message_id = path[-1].id
        await self.store.save_chat(chat)

    async def _apply_summary(self, chat_id: str, summary: str) -> None:
        if self.active_chat_id == chat_id:
            self.current_summary = summary
        title = summary.strip()
        if not self.settings.chat_title_generation or not title:
            return
        chat = await self.store.get_chat(chat_id)
        if chat is None or not chat.has_default_title:
            return
        chat.title = title
        await self.store.save_chat(chat)
        self.registry.update_chat_name(chat_id, title)
        self.notifier.chat_updated(chat_id)

    def _update_visible(self, message_id: str, **changes) -> None:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                self.messages[index] = message.model_copy(update=changes)
                return
