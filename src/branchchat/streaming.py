"""
Decodes the server-sent event stream and fans it out to target messages.

One ``StreamingCoordinator.run`` call performs one outbound request. Content
is accumulated per target in memory and handed to a ``StreamListener`` as it
arrives; nothing is written to the store until the stream ends, when every
target that did not fail is finalized in a single pass.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Optional, Set

from pydantic import ValidationError

from .config import STREAM_TIMEOUT_SECONDS
from .errors import GenerationAborted, StreamTimeoutError
from .llm import LLM
from .media import extract_images
from .models import (
    ChatRequest,
    Citation,
    CitationsEvent,
    ContentEvent,
    ErrorEvent,
    MediaAttachment,
    MessageStats,
    RouterDecision,
    RouterEvent,
    StatsEvent,
    SummaryEvent,
    stream_event_adapter,
)
from .store import Store

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def _frame_payload(line: str) -> Optional[str]:
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        return None
    return line[len(DATA_PREFIX) :].strip()


def parse_sse_line(line: str) -> Optional[Any]:
    """Decodes one ``data: <json>`` line into a stream event.

    Returns None for blank lines, comments, the ``[DONE]`` terminator and
    frames that cannot be decoded. Undecodable frames are logged and skipped
    so a single bad frame never ends the stream.
    """
    payload = _frame_payload(line)
    if not payload or payload == DONE_SENTINEL:
        return None
    try:
        return stream_event_adapter.validate_json(payload)
    except ValidationError as e:
        logger.warning("Skipping undecodable stream frame %r: %s", payload[:200], e)
        return None


class SSEDecoder:
    """Splits arbitrary network chunks into complete lines and decodes them."""

    def __init__(self):
        self._buffer = ""
        self.finished = False

    def feed(self, chunk: str) -> List[Any]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode(lines)

    def flush(self) -> List[Any]:
        """Decodes whatever is left once the transport has closed."""
        remainder, self._buffer = self._buffer, ""
        return self._decode([remainder])

    def _decode(self, lines: List[str]) -> List[Any]:
        events = []
        for line in lines:
            if self.finished:
                break
            if _frame_payload(line) == DONE_SENTINEL:
                self.finished = True
                break
            event = parse_sse_line(line)
            if event is not None:
                events.append(event)
        return events


class AbortHandle:
    """A cancellation signal tied to one streaming operation."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self) -> None:
        """Signals the abort. Safe to call any number of times."""
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class StreamTarget:
    """The in-memory accumulator for one placeholder message."""

    message_id: str
    model: Optional[str] = None
    content: str = ""
    stats: Optional[MessageStats] = None
    citations: List[Citation] = field(default_factory=list)
    generated_media: List[MediaAttachment] = field(default_factory=list)
    failed: bool = False


@dataclass
class StreamResult:
    targets: List[StreamTarget]
    router_decision: Optional[RouterDecision] = None
    summary: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> List[StreamTarget]:
        return [t for t in self.targets if not t.failed]


class StreamListener:
    """Receives updates while a stream is read. Every hook is optional."""

    def on_content(self, target: StreamTarget) -> None:
        pass

    def on_media(self, target: StreamTarget) -> None:
        pass

    def on_router(self, decision: RouterDecision, target: Optional[StreamTarget]) -> None:
        pass

    def on_citations(self, target: StreamTarget) -> None:
        pass

    async def on_summary(self, summary: str) -> None:
        pass

    def on_error(self, message: str, targets: List[StreamTarget]) -> None:
        pass

    def on_finalize(self, target: StreamTarget) -> None:
        """Called just before a finished reply is written to the store."""
        pass


class StreamingCoordinator:
    """Runs streaming requests against a transport and finalizes into a store."""

    def __init__(self, llm: LLM, store: Store, timeout: float = STREAM_TIMEOUT_SECONDS):
        self.llm = llm
        self.store = store
        self.timeout = timeout

    async def run(
        self,
        chat_id: str,
        request: ChatRequest,
        targets: List[StreamTarget],
        abort: AbortHandle,
        listener: Optional[StreamListener] = None,
    ) -> StreamResult:
        """Streams ``request`` into ``targets`` and persists them when it ends.

        Parameters
        ----------
        chat_id : str
            The conversation the targets belong to. Used for logging.
        request : ChatRequest
            The outbound request.
        targets : List[StreamTarget]
            One per placeholder message. With several targets, events are
            routed by their ``model`` tag; with one, every event belongs to it.
        abort : AbortHandle
            Once aborted, reading stops and nothing more is applied or saved.
        listener : StreamListener, optional
            Receives content, media, routing, citation, summary and error
            updates as they are applied.

        Returns
        -------
        StreamResult
            The targets as finalized, plus the routing decision, the suggested
            title and any error messages received.

        Raises
        ------
        GenerationAborted
            If ``abort`` fired before the stream was fully applied.
        StreamTimeoutError
            If reading took longer than the timeout.
        TransportError
            If the transport failed.
        """
        listener = listener or StreamListener()
        result = StreamResult(targets=targets)
        if abort.aborted:
            raise GenerationAborted(f"Generation for chat {chat_id} was stopped")

        stream: AsyncIterator[str] = self.llm.stream(request).__aiter__()
        decoder = SSEDecoder()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        abort_wait = asyncio.ensure_future(abort.wait())
        try:
            while not decoder.finished:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise StreamTimeoutError(
                        f"No complete response after {self.timeout:.0f}s"
                    )
                read = asyncio.ensure_future(stream.__anext__())
                done, _ = await asyncio.wait(
                    {read, abort_wait},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if read not in done:
                    read.cancel()
                    await asyncio.gather(read, return_exceptions=True)
                    if abort.aborted:
                        raise GenerationAborted(
                            f"Generation for chat {chat_id} was stopped"
                        )
                    raise StreamTimeoutError(
                        f"No complete response after {self.timeout:.0f}s"
                    )
                try:
                    chunk = read.result()
                except StopAsyncIteration:
                    break
                await self._apply(decoder.feed(chunk), result, abort, listener)
            await self._apply(decoder.flush(), result, abort, listener)
            await self._finalize(result, abort, listener)
            return result
        finally:
            abort_wait.cancel()
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    @staticmethod
    def _resolve(targets: List[StreamTarget], model: Optional[str]) -> Optional[StreamTarget]:
        if len(targets) == 1:
            return targets[0]
        if model is None:
            return None
        return next((t for t in targets if t.model == model), None)

    async def _apply(
        self,
        events: List[Any],
        result: StreamResult,
        abort: AbortHandle,
        listener: StreamListener,
    ) -> None:
        changed: Set[str] = set()
        for event in events:
            if abort.aborted:
                raise GenerationAborted("Generation was stopped")

            if isinstance(event, ContentEvent):
                target = self._resolve(result.targets, event.model)
                if target is None or target.failed:
                    continue
                target.content += event.content
                changed.add(target.message_id)
                listener.on_content(target)

            elif isinstance(event, RouterEvent):
                result.router_decision = event.router_decision
                target = result.targets[0] if len(result.targets) == 1 else None
                if target is not None:
                    target.model = event.router_decision.model
                listener.on_router(event.router_decision, target)

            elif isinstance(event, CitationsEvent):
                target = self._resolve(result.targets, event.model)
                if target is not None:
                    target.citations = list(event.citations)
                    listener.on_citations(target)

            elif isinstance(event, StatsEvent):
                target = self._resolve(result.targets, event.model)
                if target is not None:
                    target.stats = event.stats
                    if target.model is None:
                        target.model = event.stats.model or event.model

            elif isinstance(event, SummaryEvent):
                result.summary = event.summary
                await listener.on_summary(event.summary)

            elif isinstance(event, ErrorEvent):
                if len(result.targets) > 1 and event.model:
                    failed = [t for t in result.targets if t.model == event.model]
                else:
                    failed = list(result.targets)
                for target in failed:
                    target.failed = True
                result.errors.append(event.error)
                logger.warning("Stream error (model=%s): %s", event.model, event.error)
                listener.on_error(event.error, failed)

            # done events are informational; the read ends at [DONE] or close

        for target in result.targets:
            if target.message_id in changed:
                target.generated_media = extract_images(target.content, target.model)
                listener.on_media(target)

    async def _finalize(
        self, result: StreamResult, abort: AbortHandle, listener: StreamListener
    ) -> None:
        for target in result.succeeded:
            if abort.aborted:
                raise GenerationAborted("Generation was stopped")
            target.generated_media = extract_images(target.content, target.model)
            listener.on_media(target)

            message = await self.store.get_message(target.message_id)
            if message is None:
                logger.warning("Placeholder %s vanished before finalization", target.message_id)
                continue
            message.content = target.content
            message.model = target.model or message.model
            message.stats = target.stats
            message.citations = target.citations
            message.is_partial = False

            if abort.aborted:
                raise GenerationAborted("Generation was stopped")
            listener.on_finalize(target)
            await self.store.save_message(message)
