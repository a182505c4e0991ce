"""Concrete implementations for the durable message store."""

import asyncio
import shutil
import sqlite3
from abc import ABC, abstractmethod
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from .errors import PersistenceError
from .models import Chat, Message


class Store(ABC):
    """Interface for persisting chats and their message trees.

    Every method is a coroutine. A write followed by a read in the same
    process observes the write, and returned records are copies: mutating
    them never changes stored state until they are saved again.
    """

    @abstractmethod
    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        """Loads a single chat record."""
        pass

    @abstractmethod
    async def save_chat(self, chat: Chat) -> None:
        """Inserts or replaces a chat record."""
        pass

    @abstractmethod
    async def list_chats(self) -> List[Chat]:
        """Lists all chats, most recently updated first."""
        pass

    @abstractmethod
    async def delete_chat(self, chat_id: str) -> None:
        """Deletes a chat and every message that belongs to it."""
        pass

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[Message]:
        """Loads a single message."""
        pass

    @abstractmethod
    async def save_message(self, message: Message) -> None:
        """Inserts or replaces a message."""
        pass

    @abstractmethod
    async def get_messages(self, chat_id: str) -> List[Message]:
        """Returns every message of a chat in creation order."""
        pass

    @abstractmethod
    async def get_sibling_messages(
        self, parent_id: Optional[str], chat_id: str
    ) -> List[Message]:
        """Returns the direct children of ``parent_id`` ordered by branch index."""
        pass

    async def get_message_path(self, message_id: str) -> List[Message]:
        """Returns the messages from the root down to ``message_id``."""
        path: List[Message] = []
        seen = set()
        current_id: Optional[str] = message_id
        while current_id and current_id not in seen:
            seen.add(current_id)
            message = await self.get_message(current_id)
            if message is None:
                break
            path.append(message)
            current_id = message.parent_id
        path.reverse()
        return path

    async def update_chat_stats(
        self,
        chat_id: str,
        message_count_increment: int = 0,
        cost_increment: float = 0.0,
        tokens_increment: int = 0,
        models: Iterable[str] = (),
    ) -> Optional[Chat]:
        """Adds to a chat's aggregate stats and merges the models used.

        A read-modify-write; with a single event loop and no await between
        the read and the write of the record itself this is atomic enough.
        """
        chat = await self.get_chat(chat_id)
        if chat is None:
            return None
        chat.message_count += message_count_increment
        chat.total_cost += cost_increment
        chat.total_tokens += tokens_increment
        for model in models:
            if model and model not in chat.models:
                chat.models.append(model)
        chat.updated_at = datetime.now(timezone.utc)
        await self.save_chat(chat)
        return chat


def _sort_siblings(messages: Iterable[Message]) -> List[Message]:
    return sorted(messages, key=lambda m: (m.branch_index, m.created_at))


class InMemory(Store):
    """Keeps chats and messages in dictionaries for the life of the process."""

    def __init__(self):
        self._chats: Dict[str, Chat] = {}
        self._messages: Dict[str, Message] = {}

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        chat = self._chats.get(chat_id)
        return chat.model_copy(deep=True) if chat else None

    async def save_chat(self, chat: Chat) -> None:
        self._chats[chat.id] = chat.model_copy(deep=True)

    async def list_chats(self) -> List[Chat]:
        chats = sorted(self._chats.values(), key=lambda c: c.updated_at, reverse=True)
        return [c.model_copy(deep=True) for c in chats]

    async def delete_chat(self, chat_id: str) -> None:
        self._chats.pop(chat_id, None)
        for message_id in [
            m.id for m in self._messages.values() if m.chat_id == chat_id
        ]:
            del self._messages[message_id]

    async def get_message(self, message_id: str) -> Optional[Message]:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    async def save_message(self, message: Message) -> None:
        self._messages[message.id] = message.model_copy(deep=True)

    async def get_messages(self, chat_id: str) -> List[Message]:
        messages = [m for m in self._messages.values() if m.chat_id == chat_id]
        messages.sort(key=lambda m: m.created_at)
        return [m.model_copy(deep=True) for m in messages]

    async def get_sibling_messages(
        self, parent_id: Optional[str], chat_id: str
    ) -> List[Message]:
        siblings = [
            m
            for m in self._messages.values()
            if m.chat_id == chat_id and m.parent_id == parent_id
        ]
        return [m.model_copy(deep=True) for m in _sort_siblings(siblings)]


class File(Store):
    """Saves chats to the local file system as JSON.

    Layout: ``<base_dir>/<chat_id>/chat.json`` and
    ``<base_dir>/<chat_id>/messages/<message_id>.json``.
    """

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _chat_dir(self, chat_id: str) -> Path:
        return self.base_dir / chat_id

    def _read_messages(self, chat_id: str) -> List[Message]:
        messages_dir = self._chat_dir(chat_id) / "messages"
        if not messages_dir.is_dir():
            return []
        return [self._read(path, Message) for path in messages_dir.glob("*.json")]

    @staticmethod
    def _read(path: Path, model):
        try:
            return model.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e

    @staticmethod
    def _write(path: Path, record) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        path = self._chat_dir(chat_id) / "chat.json"
        if not path.exists():
            return None
        return await asyncio.to_thread(self._read, path, Chat)

    async def save_chat(self, chat: Chat) -> None:
        await asyncio.to_thread(self._write, self._chat_dir(chat.id) / "chat.json", chat)

    async def list_chats(self) -> List[Chat]:
        def load() -> List[Chat]:
            paths = self.base_dir.glob("*/chat.json")
            return [self._read(path, Chat) for path in paths]

        chats = await asyncio.to_thread(load)
        return sorted(chats, key=lambda c: c.updated_at, reverse=True)

    async def delete_chat(self, chat_id: str) -> None:
        def remove() -> None:
            chat_dir = self._chat_dir(chat_id)
            if chat_dir.exists():
                shutil.rmtree(chat_dir)

        try:
            await asyncio.to_thread(remove)
        except OSError as e:
            raise PersistenceError(f"Failed to delete chat {chat_id}: {e}") from e

    async def get_message(self, message_id: str) -> Optional[Message]:
        def find() -> Optional[Message]:
            for path in self.base_dir.glob(f"*/messages/{message_id}.json"):
                return self._read(path, Message)
            return None

        return await asyncio.to_thread(find)

    async def save_message(self, message: Message) -> None:
        path = self._chat_dir(message.chat_id) / "messages" / f"{message.id}.json"
        await asyncio.to_thread(self._write, path, message)

    async def get_messages(self, chat_id: str) -> List[Message]:
        messages = await asyncio.to_thread(self._read_messages, chat_id)
        return sorted(messages, key=lambda m: m.created_at)

    async def get_sibling_messages(
        self, parent_id: Optional[str], chat_id: str
    ) -> List[Message]:
        messages = await asyncio.to_thread(self._read_messages, chat_id)
        return _sort_siblings(m for m in messages if m.parent_id == parent_id)


class SQLite(Store):
    """Saves chats and messages to a SQLite database.

    Records are stored as JSON next to the columns the tree queries need.
    Each call opens its own connection, so calls can run in worker threads.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS chats (
                    id TEXT PRIMARY KEY,
                    updated_at TEXT NOT NULL,
                    data TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    chat_id TEXT NOT NULL,
                    parent_id TEXT,
                    branch_index INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    data TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages (chat_id);
                CREATE INDEX IF NOT EXISTS idx_messages_parent ON messages (parent_id);
                """
            )

    def _execute(self, sql: str, params: tuple = (), fetch: bool = False) -> list:
        try:
            with closing(self._connect()) as conn, conn:
                rows = conn.execute(sql, params).fetchall()
            return rows if fetch else []
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite error: {e}") from e

    async def _run(self, sql: str, params: tuple = (), fetch: bool = False) -> list:
        return await asyncio.to_thread(self._execute, sql, params, fetch)

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        rows = await self._run("SELECT data FROM chats WHERE id = ?", (chat_id,), True)
        return Chat.model_validate_json(rows[0][0]) if rows else None

    async def save_chat(self, chat: Chat) -> None:
        await self._run(
            "INSERT OR REPLACE INTO chats (id, updated_at, data) VALUES (?, ?, ?)",
            (chat.id, chat.updated_at.isoformat(), chat.model_dump_json()),
        )

    async def list_chats(self) -> List[Chat]:
        rows = await self._run(
            "SELECT data FROM chats ORDER BY updated_at DESC", fetch=True
        )
        return [Chat.model_validate_json(row[0]) for row in rows]

    async def delete_chat(self, chat_id: str) -> None:
        def delete() -> None:
            try:
                with closing(self._connect()) as conn, conn:
                    conn.execute("DELETE FROM messages WHERE chat_id = ?", (chat_id,))
                    conn.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
            except sqlite3.Error as e:
                raise PersistenceError(f"SQLite error: {e}") from e

        await asyncio.to_thread(delete)

    async def get_message(self, message_id: str) -> Optional[Message]:
        rows = await self._run(
            "SELECT data FROM messages WHERE id = ?", (message_id,), True
        )
        return Message.model_validate_json(rows[0][0]) if rows else None

    async def save_message(self, message: Message) -> None:
        await self._run(
            """
            INSERT OR REPLACE INTO messages
                (id, chat_id, parent_id, branch_index, created_at, data)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                message.id,
                message.chat_id,
                message.parent_id,
                message.branch_index,
                message.created_at.isoformat(),
                message.model_dump_json(),
            ),
        )

    async def get_messages(self, chat_id: str) -> List[Message]:
        rows = await self._run(
            "SELECT data FROM messages WHERE chat_id = ? ORDER BY created_at",
            (chat_id,),
            True,
        )
        return [Message.model_validate_json(row[0]) for row in rows]

    async def get_sibling_messages(
        self, parent_id: Optional[str], chat_id: str
    ) -> List[Message]:
        rows = await self._run(
            """
            SELECT data FROM messages
            WHERE chat_id = ? AND parent_id IS ?
            ORDER BY branch_index, created_at
            """,
            (chat_id, parent_id),
            True,
        )
        return [Message.model_validate_json(row[0]) for row in rows]
