"""
Tests for SSE decoding, abort handles and the streaming coordinator.

The coordinator is driven by a scripted transport so every frame boundary,
pause and failure is deterministic.
"""

import asyncio
from typing import List

import pytest
from branchchat.errors import GenerationAborted, StreamTimeoutError, TransportError
from branchchat.llm import DONE_FRAME, LLM
from branchchat.models import ASSISTANT_ROLE, ChatRequest, ContentEvent, Message, RouterEvent
from branchchat.streaming import (
    AbortHandle,
    SSEDecoder,
    StreamingCoordinator,
    StreamListener,
    StreamTarget,
    parse_sse_line,
)
from conftest import ScriptedLLM, sse


def request(**kwargs) -> ChatRequest:
    return ChatRequest(message="Hello", api_key="sk", **kwargs)


async def placeholders(store, *models) -> List[StreamTarget]:
    targets = []
    for index, model in enumerate(models):
        message = Message(
            chat_id="c1", role=ASSISTANT_ROLE, model=model, parent_id="u1", branch_index=index
        )
        await store.save_message(message)
        targets.append(StreamTarget(message_id=message.id, model=model))
    return targets


class RecordingListener(StreamListener):
    def __init__(self):
        self.contents = []
        self.media = []
        self.routes = []
        self.summaries = []
        self.errors = []

    def on_content(self, target):
        self.contents.append((target.message_id, target.content))

    def on_media(self, target):
        self.media.append((target.message_id, [m.url for m in target.generated_media]))

    def on_router(self, decision, target):
        self.routes.append((decision.model, target.message_id if target else None))

    async def on_summary(self, summary):
        self.summaries.append(summary)

    def on_error(self, message, targets):
        self.errors.append((message, [t.message_id for t in targets]))


class TestParseSSELine:
    def test_content_frame(self):
        event = parse_sse_line('data: {"type": "content", "content": "Hi"}')
        assert isinstance(event, ContentEvent)
        assert event.content == "Hi"

    def test_no_space_after_colon(self):
        assert isinstance(parse_sse_line('data:{"type":"content","content":"x"}'), ContentEvent)

    def test_ignored_lines(self):
        assert parse_sse_line("") is None
        assert parse_sse_line(": keep-alive") is None
        assert parse_sse_line("event: message") is None
        assert parse_sse_line("data: [DONE]") is None

    def test_malformed_json_is_skipped_with_warning(self, caplog):
        assert parse_sse_line("data: {not json") is None
        assert "undecodable" in caplog.text.lower()

    def test_unknown_type_is_skipped(self):
        assert parse_sse_line('data: {"type": "heartbeat"}') is None


class TestSSEDecoder:
    def test_frame_split_across_chunks(self):
        decoder = SSEDecoder()

        assert decoder.feed('data: {"type": "cont') == []
        events = decoder.feed('ent", "content": "Hi"}\n\n')

        assert [e.content for e in events] == ["Hi"]

    def test_several_frames_in_one_chunk(self):
        decoder = SSEDecoder()
        events = decoder.feed(sse("content", content="a") + sse("content", content="b"))
        assert [e.content for e in events] == ["a", "b"]

    def test_done_stops_decoding(self):
        decoder = SSEDecoder()
        events = decoder.feed(sse("content", content="a") + DONE_FRAME + sse("content", content="late"))

        assert [e.content for e in events] == ["a"]
        assert decoder.finished
        assert decoder.feed(sse("content", content="later")) == []

    def test_flush_decodes_unterminated_tail(self):
        decoder = SSEDecoder()
        decoder.feed('data: {"type": "content", "content": "tail"}')
        assert [e.content for e in decoder.flush()] == ["tail"]


class TestAbortHandle:
    @pytest.mark.asyncio
    async def test_abort_is_idempotent(self):
        handle = AbortHandle()
        assert not handle.aborted

        handle.abort()
        handle.abort()

        assert handle.aborted
        await asyncio.wait_for(handle.wait(), timeout=1)


class TestCoordinator:
    """Test event fan-out, finalization, errors, aborts and the watchdog."""

    @pytest.mark.asyncio
    async def test_single_target_is_finalized(self, memory_store):
        targets = await placeholders(memory_store, "model-a")
        llm = ScriptedLLM(
            [
                sse("content", content="Hel"),
                sse("content", content="lo"),
                sse("stats", model="model-a", stats={"tokensInput": 3, "tokensOutput": 2, "cost": 0.01}),
                sse("done"),
                DONE_FRAME,
            ]
        )
        coordinator = StreamingCoordinator(llm, memory_store)

        result = await coordinator.run("c1", request(), targets, AbortHandle())

        stored = await memory_store.get_message(targets[0].message_id)
        assert stored.content == "Hello"
        assert stored.is_partial is False
        assert stored.model == "model-a"
        assert stored.stats.total_tokens == 5
        assert result.errors == []
        assert llm.closed

    @pytest.mark.asyncio
    async def test_stats_not_saved_before_the_end(self, memory_store):
        targets = await placeholders(memory_store, "model-a")
        llm = ScriptedLLM(
            [sse("stats", stats={"tokensInput": 1}), sse("content", content="x"), DONE_FRAME],
            pause_after=1,
        )
        coordinator = StreamingCoordinator(llm, memory_store)

        task = asyncio.create_task(coordinator.run("c1", request(), targets, AbortHandle()))
        await llm.paused.wait()
        assert (await memory_store.get_message(targets[0].message_id)).stats is None

        llm.release.set()
        await task
        assert (await memory_store.get_message(targets[0].message_id)).stats.tokens_input == 1

    @pytest.mark.asyncio
    async def test_multi_model_routing_by_tag(self, memory_store):
        """Test content tagged for one model only ever reaches its own target."""
        targets = await placeholders(memory_store, "A", "B")
        llm = ScriptedLLM(
            [
                sse("content", content="a1", model="A"),
                sse("content", content="b1", model="B"),
                sse("content", content="a2", model="A"),
                sse("content", content="untagged"),
                sse("content", content="?", model="C"),
                DONE_FRAME,
            ]
        )

        await StreamingCoordinator(llm, memory_store).run("c1", request(), targets, AbortHandle())

        assert (await memory_store.get_message(targets[0].message_id)).content == "a1a2"
        assert (await memory_store.get_message(targets[1].message_id)).content == "b1"

    @pytest.mark.asyncio
    async def test_done_event_does_not_end_the_read(self, memory_store):
        targets = await placeholders(memory_store, "A", "B")
        llm = ScriptedLLM(
            [
                sse("content", content="a", model="A"),
                sse("done", model="A"),
                sse("content", content="b", model="B"),
                sse("done", model="B"),
                DONE_FRAME,
            ]
        )

        await StreamingCoordinator(llm, memory_store).run("c1", request(), targets, AbortHandle())

        assert (await memory_store.get_message(targets[1].message_id)).content == "b"

    @pytest.mark.asyncio
    async def test_stream_close_without_terminator_finalizes(self, memory_store):
        targets = await placeholders(memory_store, None)
        llm = ScriptedLLM([sse("content", content="abrupt")])

        await StreamingCoordinator(llm, memory_store).run("c1", request(), targets, AbortHandle())

        assert (await memory_store.get_message(targets[0].message_id)).content == "abrupt"

    @pytest.mark.asyncio
    async def test_router_backfills_the_placeholder_model(self, memory_store):
        targets = await placeholders(memory_store, None)
        listener = RecordingListener()
        llm = ScriptedLLM(
            [
                sse("router", routerDecision={"model": "picked", "reasoning": "best fit"}),
                sse("content", content="ok"),
                DONE_FRAME,
            ]
        )

        result = await StreamingCoordinator(llm, memory_store).run(
            "c1", request(), targets, AbortHandle(), listener
        )

        assert listener.routes == [("picked", targets[0].message_id)]
        assert result.router_decision.reasoning == "best fit"
        assert (await memory_store.get_message(targets[0].message_id)).model == "picked"

    @pytest.mark.asyncio
    async def test_citations_and_summary(self, memory_store):
        targets = await placeholders(memory_store, None)
        listener = RecordingListener()
        llm = ScriptedLLM(
            [
                sse("content", content="See sources"),
                sse("citations", citations=[{"url": "https://a.test", "title": "A"}]),
                sse("summary", summary="Sources question"),
                DONE_FRAME,
            ]
        )

        result = await StreamingCoordinator(llm, memory_store).run(
            "c1", request(), targets, AbortHandle(), listener
        )

        stored = await memory_store.get_message(targets[0].message_id)
        assert stored.citations[0].url == "https://a.test"
        assert listener.summaries == ["Sources question"]
        assert result.summary == "Sources question"

    @pytest.mark.asyncio
    async def test_listener_sees_every_append_in_order(self, memory_store):
        targets = await placeholders(memory_store, None)
        listener = RecordingListener()
        llm = ScriptedLLM([sse("content", content=c) for c in "abc"] + [DONE_FRAME])

        await StreamingCoordinator(llm, memory_store).run(
            "c1", request(), targets, AbortHandle(), listener
        )

        assert [content for _, content in listener.contents] == ["a", "ab", "abc"]

    @pytest.mark.asyncio
    async def test_images_extracted_during_and_after(self, memory_store):
        targets = await placeholders(memory_store, "img-model")
        listener = RecordingListener()
        llm = ScriptedLLM(
            [sse("content", content="![cat](https://img.test/cat.png)"), DONE_FRAME]
        )

        result = await StreamingCoordinator(llm, memory_store).run(
            "c1", request(), targets, AbortHandle(), listener
        )

        assert listener.media[-1] == (targets[0].message_id, ["https://img.test/cat.png"])
        assert result.targets[0].generated_media[0].generated_by == "img-model"

    @pytest.mark.asyncio
    async def test_error_fails_every_target_in_single_mode(self, memory_store):
        targets = await placeholders(memory_store, None)
        listener = RecordingListener()
        llm = ScriptedLLM(
            [sse("content", content="half"), sse("error", error="Rate limited"), DONE_FRAME]
        )

        result = await StreamingCoordinator(llm, memory_store).run(
            "c1", request(), targets, AbortHandle(), listener
        )

        assert result.errors == ["Rate limited"]
        assert listener.errors == [("Rate limited", [targets[0].message_id])]
        # partial content stays in memory only
        assert result.targets[0].content == "half"
        assert (await memory_store.get_message(targets[0].message_id)).content == ""

    @pytest.mark.asyncio
    async def test_tagged_error_fails_only_its_model(self, memory_store):
        targets = await placeholders(memory_store, "A", "B")
        llm = ScriptedLLM(
            [
                sse("content", content="a", model="A"),
                sse("error", error="B is down", model="B"),
                sse("content", content="ignored", model="B"),
                DONE_FRAME,
            ]
        )

        result = await StreamingCoordinator(llm, memory_store).run(
            "c1", request(), targets, AbortHandle()
        )

        assert [t.failed for t in result.targets] == [False, True]
        assert (await memory_store.get_message(targets[0].message_id)).content == "a"
        assert (await memory_store.get_message(targets[1].message_id)).content == ""

    @pytest.mark.asyncio
    async def test_abort_stops_a_pending_read(self, memory_store):
        """Test an abort resolves a read that is waiting on the network."""
        targets = await placeholders(memory_store, None)
        llm = ScriptedLLM([sse("content", content="The answer"), sse("done"), DONE_FRAME], pause_after=1)
        abort = AbortHandle()

        task = asyncio.create_task(
            StreamingCoordinator(llm, memory_store).run("c1", request(), targets, abort)
        )
        await llm.paused.wait()
        abort.abort()

        with pytest.raises(GenerationAborted):
            await asyncio.wait_for(task, timeout=1)
        assert llm.closed
        assert (await memory_store.get_message(targets[0].message_id)).content == ""

    @pytest.mark.asyncio
    async def test_already_aborted_never_calls_transport(self, memory_store):
        targets = await placeholders(memory_store, None)
        llm = ScriptedLLM([DONE_FRAME])
        abort = AbortHandle()
        abort.abort()

        with pytest.raises(GenerationAborted):
            await StreamingCoordinator(llm, memory_store).run("c1", request(), targets, abort)
        assert llm.requests == []

    @pytest.mark.asyncio
    async def test_watchdog_times_out(self, memory_store):
        targets = await placeholders(memory_store, None)
        llm = ScriptedLLM([sse("content", content="x"), DONE_FRAME], pause_after=1)

        with pytest.raises(StreamTimeoutError):
            await StreamingCoordinator(llm, memory_store, timeout=0.05).run(
                "c1", request(), targets, AbortHandle()
            )
        assert llm.closed

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, memory_store):
        class Failing(LLM):
            async def stream(self, request):
                yield sse("content", content="partial")
                raise TransportError("connection reset")

        targets = await placeholders(memory_store, None)

        with pytest.raises(TransportError):
            await StreamingCoordinator(Failing(), memory_store).run(
                "c1", request(), targets, AbortHandle()
            )
        assert (await memory_store.get_message(targets[0].message_id)).content == ""
