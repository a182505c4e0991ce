"""Concrete implementations for streaming transports.

A transport turns one ``ChatRequest`` into the raw text of a server-sent event
stream: ``data: <json>`` frames, each tagged with a ``type``, terminated by
``data: [DONE]``. The streaming coordinator decodes that text, so every
transport speaks the same wire format whether it proxies a remote endpoint or
talks to a provider directly.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .errors import TransportError
from .models import (
    ChatRequest,
    Citation,
    ContentEvent,
    CitationsEvent,
    DoneEvent,
    ErrorEvent,
    MessageStats,
    RouterDecision,
    RouterEvent,
    StatsEvent,
    SummaryEvent,
    DEFAULT_CHAT_TITLE,
)

logger = logging.getLogger(__name__)

DONE_FRAME = "data: [DONE]\n\n"


def encode_event(event) -> str:
    """Renders one stream event as an SSE frame."""
    payload = event.model_dump(mode="json", by_alias=True, exclude_none=True)
    return f"data: {json.dumps(payload)}\n\n"


class LLM(ABC):
    """Abstract Base Class for all streaming transports."""

    @abstractmethod
    def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        """Streams the SSE text produced for ``request``.

        Parameters
        ----------
        request : ChatRequest
            The prompt, the conversation history, the mode and target models,
            the credential and the per-mode options.

        Returns
        -------
        AsyncIterator[str]
            Raw text chunks. Chunk boundaries are arbitrary: a frame may be
            split across chunks or several frames may share one.

        Raises
        ------
        TransportError
            When the request cannot be made or is rejected.
        """
        pass


class Remote(LLM):
    """Posts the request to a streaming chat endpoint over HTTP."""

    def __init__(
        self,
        endpoint_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self._client = client

    async def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        # reads may legitimately idle while a model thinks; the coordinator
        # owns the overall deadline
        client = self._client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, read=None)
        )
        try:
            async with client.stream(
                "POST", self.endpoint_url, json=request.to_payload()
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise TransportError(self._error_message(response))
                async for chunk in response.aiter_text():
                    yield chunk
        except httpx.HTTPError as e:
            raise TransportError(f"Chat request failed: {e!r}") from e
        finally:
            if self._client is None:
                await client.aclose()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            detail = response.json().get("error")
        except (ValueError, AttributeError):
            detail = None
        return f"Chat endpoint returned {response.status_code}: {detail or response.text[:200]}"


# --- OpenRouter ---
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
ROUTER_MODEL = "google/gemini-2.5-flash-lite"
SUMMARIZER_MODEL = "google/gemini-2.5-flash-lite"

IMAGE_GENERATION_MODELS = {
    "google/gemini-2.5-flash-image",
    "google/gemini-3-pro-image-preview",
    "black-forest-labs/flux.2-pro",
    "black-forest-labs/flux.2-flex",
    "sourceful/riverflow-v2-standard-preview",
    "bytedance-seed/seedream-4.5",
}

# USD per 1K tokens
MODEL_COSTS: Dict[str, Dict[str, float]] = {
    "x-ai/grok-4.1-fast": {"input": 0.001, "output": 0.005},
    "google/gemini-2.5-flash-lite": {"input": 0.0001, "output": 0.0004},
    "google/gemini-3-flash-preview": {"input": 0.00015, "output": 0.0006},
    "anthropic/claude-4.5-sonnet": {"input": 0.003, "output": 0.015},
    "openai/gpt-4o": {"input": 0.01, "output": 0.03},
    "openai/gpt-oss-20b": {"input": 0.0005, "output": 0.002},
    "google/gemini-2.5-flash-image": {"input": 0.0002, "output": 0.0008},
    "bytedance-seed/seedream-4.5": {"input": 0.001, "output": 0.003},
    "google/gemini-3-pro-image-preview": {"input": 0.0, "output": 0.0},
}
FALLBACK_COST = {"input": 0.001, "output": 0.005}

ROUTING_PROMPT = """You are a model routing assistant. Analyze the user's message and choose the BEST single model from this list:

- x-ai/grok-4.1-fast: general questions and everyday tasks
- google/gemini-2.5-flash-lite: quick queries and light tasks
- google/gemini-3-flash-preview: fast, good vision capabilities
- anthropic/claude-4.5-sonnet: coding, technical writing and complex prose
- google/gemini-3-pro-image-preview: high-quality image generation
- google/gemini-2.5-flash-image: image analysis and vision tasks

Respond ONLY with JSON in this exact format:
{"model": "<model id>", "reasoning": "<one short sentence>"}"""

SUMMARY_PROMPT = """Generate a concise, descriptive title for this conversation (max 60 characters). Focus on the main topic or question. Respond with ONLY the title text, no quotes or extra formatting."""

IMAGE_GENERATION_PROMPT = """You are an AI image generation assistant. When the user requests an image, generate it and include it in your response using markdown image syntax: ![description](image_url). Provide a brief description of what you generated."""


def calculate_cost(model: str, tokens_input: int, tokens_output: int) -> float:
    costs = MODEL_COSTS.get(model, FALLBACK_COST)
    return (tokens_input * costs["input"] + tokens_output * costs["output"]) / 1000


def render_system_prompt(prompt: Optional[str], model_id: str) -> Optional[str]:
    """Fills the ``:model_name:``, ``:model_creator:`` and ``:model_id:`` variables.

    >>> render_system_prompt("I am :model_name: by :model_creator:", "x-ai/grok-4.1-fast")
    'I am Grok 4.1 Fast by xAI'
    """
    if not prompt:
        return prompt
    creator, _, name = model_id.partition("/")
    name = name or model_id
    formatted_creator = (
        "".join(word[:1].upper() + word[1:] for word in creator.split("-"))
        .replace("XAi", "xAI")
        .replace("Openai", "OpenAI")
        .replace("Mistralai", "Mistral AI")
    )
    formatted_name = " ".join(
        word if word[:1].isdigit() else word[:1].upper() + word[1:]
        for word in name.split("-")
    )
    return (
        prompt.replace(":model_name:", formatted_name)
        .replace(":model_creator:", formatted_creator)
        .replace(":model_id:", model_id)
    )


class OpenRouter(LLM):
    """Streams completions straight from OpenRouter through the OpenAI SDK.

    Produces the same event stream the chat endpoint does: a routing decision
    in auto mode, tagged content and stats per model, a suggested title and a
    final ``done``. Several models in manual mode stream concurrently and
    their events interleave as they arrive.
    """

    def __init__(
        self,
        default_model: str = "x-ai/grok-4.1-fast",
        router_model: str = ROUTER_MODEL,
        summarizer_model: str = SUMMARIZER_MODEL,
        temperature: float = 0.7,
    ):
        from openai import AsyncOpenAI

        self._client_class = AsyncOpenAI
        self.model = default_model
        self.router_model = router_model
        self.summarizer_model = summarizer_model
        self.temperature = temperature

    def _client(self, api_key: str):
        return self._client_class(
            base_url=OPENROUTER_BASE_URL,
            api_key=api_key,
            default_headers={"HTTP-Referer": "branchchat", "X-Title": "branchchat"},
        )

    def build_messages(self, request: ChatRequest, model: str) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if request.system_prompt:
            messages.append(
                {"role": "system", "content": render_system_prompt(request.system_prompt, model)}
            )
        if model in IMAGE_GENERATION_MODELS:
            messages.append({"role": "system", "content": IMAGE_GENERATION_PROMPT})
        messages.extend(
            {"role": m.role, "content": m.content} for m in request.conversation_history
        )

        images = [a for a in request.attachments if a.type == "image"]
        if images:
            content: Any = []
            if request.message.strip():
                content.append({"type": "text", "text": request.message})
            content.extend(
                {"type": "image_url", "image_url": {"url": a.url}} for a in images
            )
        else:
            content = request.message
        messages.append({"role": "user", "content": content})
        return messages

    def _extra_body(self, request: ChatRequest, model: str) -> Dict[str, Any]:
        extra: Dict[str, Any] = {}
        if model in IMAGE_GENERATION_MODELS:
            extra["modalities"] = ["image", "text"]
            image_config = request.image_options.model_dump(exclude_none=True)
            if image_config:
                extra["image_config"] = image_config
        if request.web_search and request.web_search.enabled:
            plugin: Dict[str, Any] = {"id": "web", "max_results": request.web_search.max_results}
            if request.web_search.engine:
                plugin["engine"] = request.web_search.engine
            extra["plugins"] = [plugin]
            if request.web_search.search_context_size:
                extra["web_search_options"] = {
                    "search_context_size": request.web_search.search_context_size
                }
        return extra

    async def route(self, client, request: ChatRequest) -> RouterDecision:
        """Asks the router model which model should answer, falling back to the default."""
        try:
            response = await client.chat.completions.create(
                model=self.router_model,
                messages=[
                    {"role": "system", "content": ROUTING_PROMPT},
                    {"role": "user", "content": request.message[:2000]},
                ],
                temperature=0,
            )
            raw = response.choices[0].message.content or ""
            start, end = raw.find("{"), raw.rfind("}")
            return RouterDecision.model_validate_json(raw[start : end + 1])
        except Exception as e:
            logger.warning("Routing failed, using %s: %s", self.model, e)
            return RouterDecision(model=self.model, reasoning="Default model")

    async def summarize(self, client, messages: List[Dict[str, Any]]) -> str:
        relevant = [m for m in messages if m["role"] != "system" and m["content"]][-5:]
        if not relevant:
            return DEFAULT_CHAT_TITLE
        transcript = "\n\n".join(
            "{}: {}".format(
                "User" if m["role"] == "user" else "Assistant",
                (m["content"] if isinstance(m["content"], str) else json.dumps(m["content"]))[:500],
            )
            for m in relevant
        )
        try:
            response = await client.chat.completions.create(
                model=self.summarizer_model,
                messages=[
                    {"role": "system", "content": SUMMARY_PROMPT},
                    {"role": "user", "content": f"Conversation:\n{transcript}\n\nTitle:"},
                ],
                temperature=0.5,
            )
            title = (response.choices[0].message.content or "").strip().strip("\"'")
            return title[:60] or DEFAULT_CHAT_TITLE
        except Exception as e:
            logger.warning("Title generation failed: %s", e)
            return DEFAULT_CHAT_TITLE

    async def complete(self, client, request: ChatRequest, model: str) -> AsyncIterator[Any]:
        """Streams one model's completion as content, citations and stats events."""
        from openai import APIError

        started = time.monotonic()
        usage = None
        try:
            completion = await client.chat.completions.create(
                model=model,
                messages=self.build_messages(request, model),
                temperature=self.temperature,
                stream=True,
                stream_options={"include_usage": True},
                extra_body=self._extra_body(request, model) or None,
            )
            async for chunk in completion:
                if chunk.usage:
                    usage = chunk.usage
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    yield ContentEvent(content=delta.content, model=model)
                extra = delta.model_extra or {}
                for image in extra.get("images") or []:
                    url = (image.get("image_url") or {}).get("url")
                    if url:
                        yield ContentEvent(content=f"\n\n![Generated image]({url})\n\n", model=model)
                citations = [
                    Citation.model_validate(a["url_citation"])
                    for a in extra.get("annotations") or []
                    if a.get("type") == "url_citation" and a.get("url_citation")
                ]
                if citations:
                    yield CitationsEvent(citations=citations, model=model)
        except APIError as e:
            logger.error("Stream error from %s: %s", model, e)
            yield ErrorEvent(error=str(e), model=model)
            return

        if usage:
            yield StatsEvent(
                model=model,
                stats=MessageStats(
                    tokens_input=usage.prompt_tokens,
                    tokens_output=usage.completion_tokens,
                    cost=calculate_cost(model, usage.prompt_tokens, usage.completion_tokens),
                    latency=(time.monotonic() - started) * 1000,
                    model=model,
                ),
            )

    async def _interleave(self, client, request: ChatRequest, models: List[str]) -> AsyncIterator[Any]:
        queue: asyncio.Queue = asyncio.Queue()
        finished = object()

        async def pump(model: str) -> None:
            try:
                async for event in self.complete(client, request, model):
                    await queue.put(event)
            except Exception as e:
                logger.exception("Completion from %s failed", model)
                await queue.put(ErrorEvent(error=str(e), model=model))
            finally:
                await queue.put(finished)

        tasks = [asyncio.create_task(pump(model)) for model in models]
        try:
            remaining = len(tasks)
            while remaining:
                event = await queue.get()
                if event is finished:
                    remaining -= 1
                else:
                    yield event
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def events(self, request: ChatRequest) -> AsyncIterator[Any]:
        client = self._client(request.api_key)
        title_task = None
        try:
            if request.mode == "auto":
                decision = await self.route(client, request)
                yield RouterEvent(router_decision=decision)
                models = [decision.model]
            else:
                models = request.models or [self.model]

            if request.generate_title:
                title_task = asyncio.create_task(
                    self.summarize(client, self.build_messages(request, models[0]))
                )
            if len(models) == 1:
                async for event in self.complete(client, request, models[0]):
                    yield event
            else:
                async for event in self._interleave(client, request, models):
                    yield event
            if title_task is not None:
                yield SummaryEvent(summary=await title_task)
            yield DoneEvent()
        finally:
            if title_task is not None and not title_task.done():
                title_task.cancel()
                await asyncio.gather(title_task, return_exceptions=True)
            await client.close()

    async def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        async for event in self.events(request):
            yield encode_event(event)
        yield DONE_FRAME


class Echo(LLM):
    """Replies with the prompt itself. Useful offline and in tests."""

    def __init__(self, default_model: str = "echo-v1", delay: float = 0.0, chunk_size: int = 16):
        self.model = default_model
        self.delay = delay
        self.chunk_size = chunk_size

    async def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        if request.mode == "auto":
            models = [self.model]
            yield encode_event(
                RouterEvent(router_decision=RouterDecision(model=self.model, reasoning="Echo"))
            )
        else:
            models = request.models or [self.model]

        content = f"**Echo LLM - static response for testing**\n\n_Your prompt:_\n\n{request.message}"
        for model in models:
            for start in range(0, len(content), self.chunk_size):
                if self.delay:
                    await asyncio.sleep(self.delay)
                piece = content[start : start + self.chunk_size]
                yield encode_event(ContentEvent(content=piece, model=model))
            yield encode_event(
                StatsEvent(
                    model=model,
                    stats=MessageStats(
                        tokens_input=len(request.message.split()),
                        tokens_output=len(content.split()),
                        model=model,
                    ),
                )
            )
        if request.generate_title:
            yield encode_event(SummaryEvent(summary=request.message[:60] or DEFAULT_CHAT_TITLE))
        yield encode_event(DoneEvent())
        yield DONE_FRAME
