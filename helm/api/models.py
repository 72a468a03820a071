"""Shared data models for the API layer.

Kept separate from runner.py so compaction.py, client.py and the
cognitive package can import them without circular imports.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class Role(StrEnum):
    USER = "user"
    MODEL = "model"


@dataclass(frozen=True)
class TextPart:
    """Plain text. auxiliary=True marks orchestrator-injected context."""

    text: str
    auxiliary: bool = False


@dataclass(frozen=True)
class ToolCallPart:
    """A tool invocation requested by the model."""

    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultPart:
    """The answer to a ToolCallPart, sent back as user content."""

    call_id: str
    name: str
    output: str
    is_error: bool = False


Part = TextPart | ToolCallPart | ToolResultPart


@dataclass(frozen=True)
class Content:
    """One role-tagged message in the conversation history."""

    role: Role
    parts: tuple[Part, ...]

    @classmethod
    def user(cls, *texts: str) -> Content:
        return cls(Role.USER, tuple(TextPart(t) for t in texts))

    @classmethod
    def model(cls, *texts: str) -> Content:
        return cls(Role.MODEL, tuple(TextPart(t) for t in texts))

    @classmethod
    def tool_results(cls, results: Iterable[ToolResultPart]) -> Content:
        return cls(Role.USER, tuple(results))

    def text(self, include_auxiliary: bool = False) -> str:
        """Join the text parts. Auxiliary (injected) text is skipped by default."""
        return "".join(
            p.text
            for p in self.parts
            if isinstance(p, TextPart) and (include_auxiliary or not p.auxiliary)
        )

    @property
    def tool_calls(self) -> tuple[ToolCallPart, ...]:
        return tuple(p for p in self.parts if isinstance(p, ToolCallPart))

    @property
    def results(self) -> tuple[ToolResultPart, ...]:
        return tuple(p for p in self.parts if isinstance(p, ToolResultPart))

    @property
    def is_tool_result(self) -> bool:
        """True for a user message made only of tool results."""
        return (
            self.role == Role.USER
            and len(self.parts) > 0
            and all(isinstance(p, ToolResultPart) for p in self.parts)
        )


class TurnOrderError(AssertionError):
    """Raised when a record would break the tool-call/tool-result pairing.

    This is a bug in request construction, never a runtime condition.
    """


class History:
    """Append-only conversation history for one chat session.

    If the last record is a model message with tool calls, the next record
    must be a user message carrying exactly the matching tool results.
    """

    def __init__(self, records: Iterable[Content] = ()) -> None:
        self._records: list[Content] = []
        for record in records:
            self.append(record)

    def check_next(self, record: Content) -> None:
        """Raise TurnOrderError if record cannot follow the current last record."""
        pending = self.pending_tool_calls()
        if pending:
            expected = {c.id for c in pending}
            if not record.is_tool_result:
                raise TurnOrderError(
                    f"Model requested tool calls {sorted(expected)}; the next record "
                    f"must be their results, got role={record.role} with "
                    f"{len(record.parts)} part(s)"
                )
            got = {r.call_id for r in record.results}
            if got != expected:
                raise TurnOrderError(
                    f"Tool results {sorted(got)} do not match pending calls {sorted(expected)}"
                )
        elif record.is_tool_result:
            raise TurnOrderError("Tool results sent but no tool calls are pending")

    def append(self, record: Content) -> None:
        self.check_next(record)
        self._records.append(record)

    def pending_tool_calls(self) -> tuple[ToolCallPart, ...]:
        """Tool calls in the last record that still await results."""
        if not self._records or self._records[-1].role != Role.MODEL:
            return ()
        return self._records[-1].tool_calls

    @property
    def last(self) -> Content | None:
        return self._records[-1] if self._records else None

    def snapshot(self) -> tuple[Content, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[Content]:
        return iter(self._records)

    def __getitem__(self, index: int) -> Content:
        return self._records[index]


# ------------------------------------------------------------------
# Stream events and turn results
# ------------------------------------------------------------------


class EventType(StrEnum):
    # Provider-originated
    TEXT_DELTA = "text_delta"
    TOOL_CALL_REQUEST = "tool_call_request"
    ERROR = "error"
    DONE = "done"
    # Orchestrator-originated
    TOOL_CALL_RESPONSE = "tool_call_response"
    CHAT_COMPRESSED = "chat_compressed"
    MAX_SESSION_TURNS = "max_session_turns_exceeded"
    SESSION_TOKEN_LIMIT = "session_token_limit_exceeded"
    FINISHED = "finished"


class FinishReason(StrEnum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"
    MAX_SESSION_TURNS = "max_session_turns_exceeded"
    SESSION_TOKEN_LIMIT = "session_token_limit_exceeded"
    BUDGET_EXHAUSTED = "budget_exhausted"


@dataclass
class Turn:
    """What one top-level request produced, possibly partial."""

    prompt_id: str
    state: str = "init"
    text_parts: list[str] = field(default_factory=list)
    tool_calls: list[ToolCallPart] = field(default_factory=list)
    pending_tool_calls: list[ToolCallPart] = field(default_factory=list)
    exchanges: int = 0
    finish_reason: FinishReason | None = None
    error: str | None = None

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    @property
    def cancelled(self) -> bool:
        return self.finish_reason == FinishReason.CANCELLED


@dataclass
class StreamEvent:
    """A single event relayed to the caller of the orchestrator."""

    type: EventType
    text: str = ""
    tool_call: ToolCallPart | None = None
    tool_result: ToolResultPart | None = None
    stop_reason: str = ""
    usage: dict[str, int] | None = None
    value: dict[str, Any] = field(default_factory=dict)
    turn: Turn | None = None


@dataclass
class ApiResponse:
    """Parsed response from Anthropic Messages API."""

    content: list[dict[str, Any]]  # Raw content blocks from API
    stop_reason: str  # end_turn, max_tokens, tool_use, stop_sequence
    usage: dict[str, int] | None = None

    @property
    def text(self) -> str:
        return "".join(b.get("text", "") for b in self.content if b.get("type") == "text")
