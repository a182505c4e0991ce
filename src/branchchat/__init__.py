"""
The main entrypoint for the branchchat package.

This module contains the primary Branchchat class, which wires the pillars
together: settings, the streaming transport, the durable store, the shared
stream registry and the notifier. Each pillar is an interface with concrete
defaults, so any of them can be swapped out.
"""

from typing import Callable, Optional

from . import llm, store
from .config import Settings, get_settings
from .errors import (
    BranchchatError,
    ConfigurationError,
    GenerationAborted,
    InvalidOperationError,
    PersistenceError,
    StreamTimeoutError,
    TransportError,
)
from .notifications import Notifier
from .registry import StreamRegistry
from .session import ChatSession, SessionState


class Branchchat:
    """
    The central orchestrator for branching chat sessions.

    Sessions built by one instance share its store, transport, registry and
    notifier, so a generation started in one session is visible to the
    others through the registry.
    """

    def __init__(
        self,
        llm: Optional["llm.LLM"] = None,
        store: Optional["store.Store"] = None,
        settings: Optional[Settings] = None,
        registry: Optional[StreamRegistry] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        """
        Initialize the application with configurable pillars.

        Parameters
        ----------
        llm : llm.LLM, optional
            Streaming transport. Defaults to llm.Remote() posting to
            ``settings.endpoint_url``.
        store : store.Store, optional
            Durable storage for chats and messages.
            Defaults to store.InMemory() for session-only storage.
        settings : Settings, optional
            Defaults to the cached settings read from ``BRANCHCHAT_*``
            environment variables.
        registry : StreamRegistry, optional
            Defaults to a fresh registry.
        notifier : Notifier, optional
            Defaults to a fresh notifier.

        Examples
        --------
        Basic usage with defaults:

        >>> app = Branchchat()

        Custom configuration:

        >>> app = Branchchat(
        ...     llm=llm.OpenRouter(default_model="x-ai/grok-4.1-fast"),
        ...     store=store.SQLite(db_path="chats.db"),
        ... )
        """
        llm_module = globals()["llm"]
        store_module = globals()["store"]

        self.settings = settings if settings is not None else get_settings()
        self.llm = (
            llm
            if llm is not None
            else llm_module.Remote(
                self.settings.endpoint_url, timeout=self.settings.request_timeout
            )
        )
        self.store = store if store is not None else store_module.InMemory()
        self.registry = registry if registry is not None else StreamRegistry()
        self.notifier = notifier if notifier is not None else Notifier()

    def session(self, on_navigate: Optional[Callable[[str], None]] = None) -> ChatSession:
        """Builds a session over this instance's pillars."""
        return ChatSession(
            store=self.store,
            llm=self.llm,
            settings=self.settings,
            registry=self.registry,
            notifier=self.notifier,
            on_navigate=on_navigate,
        )


__all__ = [
    "Branchchat",
    "BranchchatError",
    "ChatSession",
    "ConfigurationError",
    "GenerationAborted",
    "InvalidOperationError",
    "Notifier",
    "PersistenceError",
    "SessionState",
    "Settings",
    "StreamRegistry",
    "StreamTimeoutError",
    "TransportError",
    "get_settings",
    "llm",
    "store",
]
