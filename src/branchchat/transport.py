"""Model transport: send a context window, stream back the reply.

The controller only depends on :class:`ModelTransport`. The bundled
implementation talks to any OpenAI-compatible ``/chat/completions``
endpoint over server-sent events.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union

import httpx

from .config import get_api_base, get_api_key, get_timeout
from .core import RequestMessage
from .errors import TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelSelector:
    provider_id: str
    model: str


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class UsageUpdate:
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


@dataclass(frozen=True)
class ToolCallRecord:
    name: str
    arguments: str = ""
    id: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass(frozen=True)
class Finish:
    reason: str = "stop"


StreamEvent = Union[ContentDelta, ReasoningDelta, UsageUpdate, ToolCallRecord, Finish]


class ModelTransport(ABC):
    """Base class for language-model backends."""

    @abstractmethod
    def stream(
        self, messages: list[RequestMessage], selector: ModelSelector
    ) -> AsyncIterator[StreamEvent]:
        """Yield response events, ending with :class:`Finish`.

        Failures raise :class:`~branchchat.errors.TransportError`.
        """
        ...


class OpenAICompatibleTransport(ModelTransport):
    """Streams chat completions from an OpenAI-compatible HTTP API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or get_api_base()).rstrip("/")
        self.api_key = api_key if api_key is not None else get_api_key()
        self.timeout = timeout if timeout is not None else get_timeout()
        self._client = client

    async def stream(
        self, messages: list[RequestMessage], selector: ModelSelector
    ) -> AsyncIterator[StreamEvent]:
        payload = {
            "model": selector.model,
            "messages": [_to_openai(m) for m in messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            async with client.stream(
                "POST", f"{self.base_url}/chat/completions", json=payload, headers=headers
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise _status_error(response.status_code, body)

                finish_reason = "stop"
                # tool calls arrive as fragments keyed by index
                calls: dict[int, dict] = {}
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed stream chunk: %s", data[:200])
                        continue
                    _merge_tool_calls(chunk, calls)
                    for event in _chunk_events(chunk):
                        if isinstance(event, Finish):
                            finish_reason = event.reason
                        else:
                            yield event
                for index in sorted(calls):
                    call = calls[index]
                    yield ToolCallRecord(
                        name=call["name"], arguments=call["arguments"], id=call["id"]
                    )
                yield Finish(reason=finish_reason)
        except httpx.TimeoutException as e:
            raise TransportError("timeout", str(e) or "Model request timed out") from e
        except httpx.HTTPError as e:
            raise TransportError("unknown", str(e)) from e
        finally:
            if self._client is None:
                await client.aclose()


def _to_openai(message: RequestMessage) -> dict:
    if isinstance(message.content, str):
        return {"role": message.role, "content": message.content}
    parts = []
    for part in message.content:
        if part.type == "image":
            parts.append({"type": "image_url", "image_url": {"url": part.data}})
        else:
            parts.append({"type": "text", "text": part.text})
    return {"role": message.role, "content": parts}


def _chunk_events(chunk: dict) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    usage = chunk.get("usage")
    if isinstance(usage, dict):
        events.append(UsageUpdate(
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
            total_tokens=usage.get("total_tokens"),
        ))
    for choice in chunk.get("choices") or []:
        delta = choice.get("delta") or {}
        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if reasoning:
            events.append(ReasoningDelta(reasoning))
        if delta.get("content"):
            events.append(ContentDelta(delta["content"]))
        if choice.get("finish_reason"):
            events.append(Finish(reason=choice["finish_reason"]))
    return events


def _merge_tool_calls(chunk: dict, calls: dict[int, dict]) -> None:
    for choice in chunk.get("choices") or []:
        delta = choice.get("delta") or {}
        for pos, fragment in enumerate(delta.get("tool_calls") or []):
            index = fragment.get("index", pos)
            call = calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
            if fragment.get("id"):
                call["id"] = fragment["id"]
            fn = fragment.get("function") or {}
            if fn.get("name"):
                call["name"] += fn["name"]
            if fn.get("arguments"):
                call["arguments"] += fn["arguments"]


def _status_error(status: int, body: str) -> TransportError:
    detail = body
    try:
        err = json.loads(body).get("error")
        if isinstance(err, dict):
            detail = err.get("message", body)
        elif isinstance(err, str):
            detail = err
    except (json.JSONDecodeError, AttributeError):
        pass
    if status in (401, 403):
        return TransportError("invalid_credential", detail)
    if status == 429:
        return TransportError("quota_exceeded", detail)
    if status in (408, 504):
        return TransportError("timeout", detail)
    return TransportError("unknown", f"HTTP {status}: {detail}")
