"""Model boundary -- direct httpx calls to the Anthropic Messages API.

The orchestrator only sees the ModelClient protocol: a streaming call
that yields StreamEvents and a plain call used for summaries and the
next-speaker check.  AnthropicClient is the shipped implementation.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from helm.api.models import (
    ApiResponse,
    Content,
    EventType,
    Role,
    StreamEvent,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from helm.config import Settings

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"


class ModelClient(Protocol):
    """What the orchestrator needs from a provider."""

    def stream(
        self,
        system_instruction: str,
        tools: list[dict[str, Any]] | None,
        history: Sequence[Content],
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]: ...

    async def generate(
        self,
        system_instruction: str,
        history: Sequence[Content],
        *,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> ApiResponse: ...


@dataclass
class _SseEvent:
    """A single raw event from the SSE stream, before block reassembly."""

    type: str  # text_delta, tool_start, tool_input_delta, text_block_start, block_stop, done, error, message_stop
    text: str = ""
    tool_name: str = ""
    tool_id: str = ""
    stop_reason: str = ""
    block_index: int = 0
    usage: dict[str, int] | None = None


def _parse_sse_event(data: dict[str, Any]) -> _SseEvent | None:
    """Parse an Anthropic SSE data dict.

    Ping keepalives and unknown types return None.  stop_reason lives in
    message_delta.delta, not message_start.  Errors can arrive in-stream
    on an HTTP 200 response.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return _SseEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return _SseEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        return _SseEvent(type="text_block_start", block_index=block_index)

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        block_index = data.get("index", 0)
        if delta.get("type") == "text_delta":
            return _SseEvent(type="text_delta", text=delta.get("text", ""), block_index=block_index)
        if delta.get("type") == "input_json_delta":
            return _SseEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=block_index,
            )
        return None

    if event_type == "content_block_stop":
        return _SseEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return _SseEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason", ""),
            usage=data.get("usage"),
        )

    if event_type == "message_stop":
        return _SseEvent(type="message_stop")

    return None


def _part_to_block(part: Any) -> dict[str, Any] | None:
    if isinstance(part, TextPart):
        if not part.text:
            return None  # the API rejects empty text blocks
        return {"type": "text", "text": part.text}
    if isinstance(part, ToolCallPart):
        return {"type": "tool_use", "id": part.id, "name": part.name, "input": part.args}
    if isinstance(part, ToolResultPart):
        return {
            "type": "tool_result",
            "tool_use_id": part.call_id,
            "content": part.output,
            "is_error": part.is_error,
        }
    return None


def to_api_messages(history: Sequence[Content]) -> list[dict[str, Any]]:
    """Convert history records to Messages API format.

    Consecutive records with the same role are merged into one message,
    which the API treats the same as separate turns.
    """
    messages: list[dict[str, Any]] = []
    for record in history:
        role = "assistant" if record.role == Role.MODEL else "user"
        blocks = [b for b in (_part_to_block(p) for p in record.parts) if b]
        if not blocks:
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": role, "content": blocks})
    return messages


class AnthropicClient:
    """Anthropic Messages API over a shared httpx.AsyncClient."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        # OAT tokens (sk-ant-oat*) require Bearer auth plus beta headers.
        # Regular API keys use x-api-key.
        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""

        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
            if "sk-ant-oat" in auth_token:
                headers["anthropic-beta"] = "oauth-2025-04-20"
        elif api_key:
            if "sk-ant-oat" in api_key:
                headers["authorization"] = f"Bearer {api_key}"
                headers["anthropic-beta"] = "oauth-2025-04-20"
            else:
                headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        auth_type = "Bearer token" if (auth_token or "sk-ant-oat" in api_key) else "API key"
        logger.info("httpx client initialized (auth: %s)", auth_type)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    def _build_payload(
        self,
        system_instruction: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        """Shared by generate() and stream() to avoid divergence."""
        payload: dict[str, Any] = {
            "model": model or self._settings.model,
            "max_tokens": max_tokens or self._settings.max_tokens,
            "messages": messages,
        }
        if system_instruction:
            payload["system"] = [
                {
                    "type": "text",
                    "text": system_instruction,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
        return payload

    async def generate(
        self,
        system_instruction: str,
        history: Sequence[Content],
        *,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> ApiResponse:
        """Non-streaming call with one retry for 429/500/529 and timeouts.

        Raises RuntimeError on persistent errors.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_payload(
            system_instruction,
            to_api_messages(history),
            model=model,
            max_tokens=max_tokens,
        )

        last_error: Exception | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/v1/messages", json=payload)

                if response.status_code == 200:
                    data = response.json()
                    return ApiResponse(
                        content=data["content"],
                        stop_reason=data["stop_reason"],
                        usage=data.get("usage"),
                    )

                try:
                    error_data = response.json()
                    error_type = error_data.get("error", {}).get("type", "unknown")
                    error_msg = error_data.get("error", {}).get("message", "unknown error")
                except ValueError:
                    error_type = "http_error"
                    error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

                if response.status_code in (429, 500, 529) and attempt == 0:
                    retry_after = min(float(response.headers.get("retry-after", "1")), 30.0)
                    logger.warning(
                        "API error %d (%s), retrying in %.1fs: %s",
                        response.status_code,
                        error_type,
                        retry_after,
                        error_msg,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = RuntimeError(
                    f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}"
                )
                break

            except httpx.TimeoutException as e:
                last_error = RuntimeError(f"API request timed out: {e}")
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = RuntimeError(f"HTTP error: {e}")
                break  # Don't retry connection errors

        raise last_error or RuntimeError("API call failed with unknown error")

    async def stream(
        self,
        system_instruction: str,
        tools: list[dict[str, Any]] | None,
        history: Sequence[Content],
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Streaming call.  Reassembles tool_use blocks from JSON fragments.

        Yields text_delta as it arrives, one tool_call_request per completed
        tool block, done with the stop reason, or a single error event.
        Stops silently once cancel is set.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_payload(
            system_instruction, to_api_messages(history), tools, stream=True
        )
        blocks: dict[int, dict[str, Any]] = {}

        try:
            async with self._http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    error_body = await response.aread()
                    yield StreamEvent(
                        type=EventType.ERROR,
                        text=f"HTTP {response.status_code}: {error_body.decode(errors='replace')[:500]}",
                    )
                    return

                async for line in response.aiter_lines():
                    if cancel is not None and cancel.is_set():
                        return
                    if not line.startswith("data: "):
                        continue
                    event = _parse_sse_event(json.loads(line[6:]))
                    if event is None:
                        continue

                    if event.type == "error":
                        yield StreamEvent(type=EventType.ERROR, text=event.text)
                        return

                    if event.type == "text_delta":
                        yield StreamEvent(type=EventType.TEXT_DELTA, text=event.text)

                    elif event.type == "tool_start":
                        blocks[event.block_index] = {
                            "id": event.tool_id,
                            "name": event.tool_name,
                            "input_parts": [],
                        }

                    elif event.type == "tool_input_delta":
                        acc = blocks.get(event.block_index)
                        if acc:
                            acc["input_parts"].append(event.text)

                    elif event.type == "block_stop":
                        acc = blocks.pop(event.block_index, None)
                        if acc:
                            input_json = "".join(acc["input_parts"])
                            try:
                                args = json.loads(input_json) if input_json else {}
                            except json.JSONDecodeError:
                                logger.warning(
                                    "Malformed tool input for %s: %s", acc["name"], input_json[:200]
                                )
                                args = {}
                            yield StreamEvent(
                                type=EventType.TOOL_CALL_REQUEST,
                                tool_call=ToolCallPart(id=acc["id"], name=acc["name"], args=args),
                            )

                    elif event.type == "done":
                        yield StreamEvent(
                            type=EventType.DONE,
                            stop_reason=event.stop_reason,
                            usage=event.usage,
                        )

                    elif event.type == "message_stop":
                        return
        except httpx.HTTPError as e:
            logger.error("Streaming transport error: %s", e)
            yield StreamEvent(type=EventType.ERROR, text=f"HTTP error: {e}")
