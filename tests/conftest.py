"""Shared fixtures: a scripted ModelClient and isolated Settings."""

from __future__ import annotations

import inspect
from collections.abc import Sequence
from typing import Any

import pytest

from helm.api.models import ApiResponse, Content, EventType, StreamEvent, ToolCallPart
from helm.config import Settings

# ---------------------------------------------------------------------------
# Stream event helpers
# ---------------------------------------------------------------------------


def text_event(text: str) -> StreamEvent:
    return StreamEvent(type=EventType.TEXT_DELTA, text=text)


def tool_event(call_id: str, name: str, args: dict[str, Any] | None = None) -> StreamEvent:
    return StreamEvent(
        type=EventType.TOOL_CALL_REQUEST,
        tool_call=ToolCallPart(id=call_id, name=name, args=args or {}),
    )


def done_event(stop_reason: str = "end_turn") -> StreamEvent:
    return StreamEvent(type=EventType.DONE, stop_reason=stop_reason)


def error_event(message: str) -> StreamEvent:
    return StreamEvent(type=EventType.ERROR, text=message)


# ---------------------------------------------------------------------------
# Fake model client
# ---------------------------------------------------------------------------


class FakeModelClient:
    """Scripted ModelClient.

    Each stream() call consumes the next script: a list of StreamEvents,
    with optional callables run in place (e.g. to set a cancel event
    mid-stream).  generate() pops queued texts or exceptions, falling back
    to generate_default.
    """

    def __init__(
        self,
        streams: Sequence[list[Any]] = (),
        generate_texts: Sequence[str | Exception] = (),
        generate_default: str = '{"reasoning": "done", "next_speaker": "user"}',
    ) -> None:
        self.streams = list(streams)
        self.generate_texts = list(generate_texts)
        self.generate_default = generate_default
        self.stream_calls: list[tuple[str, Any, tuple[Content, ...]]] = []
        self.generate_calls: list[dict[str, Any]] = []

    async def stream(self, system_instruction, tools, history, cancel=None):
        self.stream_calls.append((system_instruction, tools, tuple(history)))
        script = self.streams.pop(0) if self.streams else [text_event("ok"), done_event()]
        for item in script:
            if callable(item):
                result = item()
                if inspect.isawaitable(result):
                    await result
                continue
            yield item

    async def generate(self, system_instruction, history, *, model=None, max_tokens=None):
        self.generate_calls.append(
            {"system": system_instruction, "history": tuple(history), "model": model}
        )
        item = self.generate_texts.pop(0) if self.generate_texts else self.generate_default
        if isinstance(item, Exception):
            raise item
        return ApiResponse(content=[{"type": "text", "text": item}], stop_reason="end_turn")


SNAPSHOT = """<scratchpad>thinking</scratchpad>
<state_snapshot>
    <overall_goal>Fix the parser</overall_goal>
    <key_knowledge>Uses pytest</key_knowledge>
    <file_system_state>MODIFIED: parser.py</file_system_state>
    <recent_actions>Ran tests</recent_actions>
    <current_plan>1. [DONE] fix</current_plan>
</state_snapshot>"""


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from the developer's .env and project memory file."""
    values: dict[str, Any] = {
        "ANTHROPIC_API_KEY": "test-key-123",
        "memory_file": "",
        "skip_next_speaker_check": True,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def fake_client() -> FakeModelClient:
    return FakeModelClient()
