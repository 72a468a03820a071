"""Conversation compression -- token estimation and history summarization.

The estimator is a cheap local gate (no provider round trip).  The
compressor replaces the older part of the history with a structured
<state_snapshot> digest when the estimate crosses a threshold.

This module is independent of AgentRunner to avoid circular imports
and keep runner.py focused on orchestration.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel

from helm.api.client import ModelClient
from helm.api.models import Content, Part, Role, TextPart, ToolCallPart, ToolResultPart
from helm.config import Settings
from helm.utils import OperationCancelled, await_cancellable

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Summarization prompt (co-located with compression logic)
# ------------------------------------------------------------------

COMPRESSION_SYSTEM_PROMPT = """\
You are the component that summarizes internal chat history into a given structure.

When the conversation history grows too large, you will be invoked to distill the \
entire history into a concise, structured XML snapshot. This snapshot is CRITICAL, \
as it will become the agent's *only* memory of the past. The agent will resume its \
work based solely on this snapshot. All crucial details, plans, errors, and user \
directives MUST be preserved.

First, think through the entire history in a private <scratchpad>. Review the \
user's overall goal, the agent's actions, tool outputs, file modifications, and any \
unresolved questions.

Then generate the final <state_snapshot> XML object. Be incredibly dense with \
information. Omit any irrelevant conversational filler.

The structure MUST be as follows:

<state_snapshot>
    <overall_goal>
        <!-- One concise sentence describing the user's high-level objective. -->
    </overall_goal>
    <key_knowledge>
        <!-- Crucial facts, conventions and constraints. Bullet points. -->
    </key_knowledge>
    <file_system_state>
        <!-- Files created, read, modified or deleted, with status and learnings. -->
    </file_system_state>
    <recent_actions>
        <!-- The last few significant agent actions and their outcomes. Facts only. -->
    </recent_actions>
    <current_plan>
        <!-- The step-by-step plan. Mark steps [DONE], [IN PROGRESS] or [TODO]. -->
    </current_plan>
</state_snapshot>
"""

SNAPSHOT_REQUEST = "First, reason in your scratchpad. Then, generate the <state_snapshot>."

SUMMARY_PREFIX = "[Previous conversation summary]"
SUMMARY_ACK = "I have the context. Let's continue."

_SNAPSHOT_SECTIONS = (
    "overall_goal",
    "key_knowledge",
    "file_system_state",
    "recent_actions",
    "current_plan",
)

_SECTION_PATTERNS = {
    name: re.compile(rf"<{name}>(.*?)</{name}>", re.DOTALL | re.IGNORECASE)
    for name in _SNAPSHOT_SECTIONS
}


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Estimates token counts locally with a fixed chars-to-tokens ratio.

    Deterministic and monotonic: appending content never lowers the
    estimate.  Allowed to diverge from the provider's own count; it only
    has to be a cheap early warning.
    """

    def __init__(self, tokens_per_char: float = 0.25) -> None:
        self._ratio = tokens_per_char

    @property
    def ratio(self) -> float:
        """Current tokens-per-char ratio."""
        return self._ratio

    def estimate(self, text: str | object) -> int:
        """Estimate token count for text content (minimum 1)."""
        if not isinstance(text, str):
            text = json.dumps(text, default=str, sort_keys=True)
        return max(1, math.ceil(len(text) * self._ratio))

    def estimate_part(self, part: Part) -> int:
        if isinstance(part, TextPart):
            return self.estimate(part.text) if part.text else 0
        if isinstance(part, ToolCallPart):
            return self.estimate({"name": part.name, "args": part.args})
        if isinstance(part, ToolResultPart):
            return self.estimate(part.output)
        return 0

    def estimate_history(self, records: Iterable[Content]) -> int:
        """Estimate total tokens for a sequence of history records."""
        return sum(self.estimate_part(p) for record in records for p in record.parts)

    @staticmethod
    def has_exceeded(estimate: int, limit: int) -> bool:
        return estimate > limit

    @staticmethod
    def is_approaching(estimate: int, limit: int, threshold: float = 0.8) -> bool:
        return estimate > limit * threshold

    @staticmethod
    def remaining(estimate: int, limit: int) -> int:
        return max(0, limit - estimate)


# ------------------------------------------------------------------
# Outcomes
# ------------------------------------------------------------------


class CompressionStatus(StrEnum):
    COMPRESSED = "compressed"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(StrEnum):
    EMPTY_HISTORY = "empty_history"
    BELOW_THRESHOLD = "below_threshold"
    PREVIOUS_FAILURE = "previous_failure"
    NOTHING_TO_COMPRESS = "nothing_to_compress"
    CANCELLED = "cancelled"


class FailureReason(StrEnum):
    EMPTY_SUMMARY = "empty_summary"
    INFLATED_TOKEN_COUNT = "inflated_token_count"


@dataclass(frozen=True)
class CompressionOutcome:
    """Result of one maybe_compress() call."""

    status: CompressionStatus
    reason: str = ""
    new_history: tuple[Content, ...] | None = None
    tokens_before: int = 0
    tokens_after: int = 0

    @classmethod
    def compressed(
        cls, new_history: Sequence[Content], tokens_before: int, tokens_after: int
    ) -> CompressionOutcome:
        return cls(
            CompressionStatus.COMPRESSED,
            new_history=tuple(new_history),
            tokens_before=tokens_before,
            tokens_after=tokens_after,
        )

    @classmethod
    def skipped(cls, reason: SkipReason, tokens_before: int = 0) -> CompressionOutcome:
        return cls(CompressionStatus.SKIPPED, reason=reason, tokens_before=tokens_before)

    @classmethod
    def failed(
        cls, reason: FailureReason, tokens_before: int = 0, tokens_after: int = 0
    ) -> CompressionOutcome:
        return cls(
            CompressionStatus.FAILED,
            reason=reason,
            tokens_before=tokens_before,
            tokens_after=tokens_after,
        )


class StateSnapshot(BaseModel):
    """The five sections every summary must carry."""

    overall_goal: str
    key_knowledge: str
    file_system_state: str
    recent_actions: str
    current_plan: str

    @classmethod
    def parse(cls, text: str) -> StateSnapshot | None:
        """Extract the sections from summarizer output; None if any is missing."""
        if not text or not text.strip():
            return None
        sections: dict[str, str] = {}
        for name, pattern in _SECTION_PATTERNS.items():
            match = pattern.search(text)
            if match is None:
                return None
            sections[name] = match.group(1).strip()
        if not any(sections.values()):
            return None
        return cls(**sections)

    def render(self) -> str:
        body = "\n".join(
            f"    <{name}>\n{getattr(self, name)}\n    </{name}>" for name in _SNAPSHOT_SECTIONS
        )
        return f"<state_snapshot>\n{body}\n</state_snapshot>"


# ------------------------------------------------------------------
# Chat Compressor
# ------------------------------------------------------------------


class ChatCompressor:
    """Decides when to summarize history and builds the replacement.

    One instance per chat session: it owns the sticky failure flag that
    stops automatic retries after a failed attempt.
    """

    def __init__(
        self,
        settings: Settings,
        client: ModelClient,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self.estimator = estimator or TokenEstimator(settings.tokens_per_char)
        self.has_failed_attempt = False

    def reset(self) -> None:
        """Clear the sticky failure flag (new session)."""
        self.has_failed_attempt = False

    def find_split_point(self, records: Sequence[Content]) -> int:
        """Index where the verbatim tail starts; 0 means nothing to compress.

        Walks forward accumulating weight until the head holds
        (1 - preserve_fraction) of the total, then snaps to the next user
        message that is not a tool result.  When none follows (one request
        driving a long tool loop), the tail starts at the next model record
        instead.  Falls back to the last boundary before the target so some
        history is still compressed, preferring user messages.
        """
        weights = [self.estimator.estimate_history([r]) for r in records]
        total = sum(weights)
        if total == 0:
            return 0
        target = total * (1.0 - self._settings.compression_preserve_fraction)

        last_user = last_model = 0
        first_model = 0
        accumulated = 0
        for i, record in enumerate(records):
            if i > 0:
                if record.role == Role.USER and not record.is_tool_result:
                    if accumulated >= target:
                        return i
                    last_user = i
                elif record.role == Role.MODEL:
                    if accumulated >= target:
                        first_model = first_model or i
                    else:
                        last_model = i
            accumulated += weights[i]
        return first_model or last_user or last_model

    async def maybe_compress(
        self,
        records: Sequence[Content],
        *,
        forced: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> CompressionOutcome:
        """Compress history if it is over budget (or forced).

        A non-forced failure sets the sticky flag; later non-forced calls
        are skipped without a summarization call.  A forced call clears
        the flag and makes exactly one attempt.
        """
        records = tuple(records)
        if not records:
            return CompressionOutcome.skipped(SkipReason.EMPTY_HISTORY)

        tokens_before = self.estimator.estimate_history(records)

        if not forced:
            if tokens_before < self._settings.compression_token_threshold:
                return CompressionOutcome.skipped(SkipReason.BELOW_THRESHOLD, tokens_before)
            if self.has_failed_attempt:
                logger.debug("Skipping compression: previous attempt failed")
                return CompressionOutcome.skipped(SkipReason.PREVIOUS_FAILURE, tokens_before)
        else:
            self.has_failed_attempt = False

        split = self.find_split_point(records)
        if split <= 0:
            return CompressionOutcome.skipped(SkipReason.NOTHING_TO_COMPRESS, tokens_before)

        head, tail = records[:split], records[split:]
        start_time = time.monotonic()

        try:
            summary_text = await await_cancellable(self._summarize(head), cancel)
        except OperationCancelled:
            logger.info("Compression cancelled before the summary arrived")
            return CompressionOutcome.skipped(SkipReason.CANCELLED, tokens_before)
        except Exception as e:
            logger.error("Summarization call failed: %s", e)
            summary_text = ""

        snapshot = StateSnapshot.parse(summary_text)
        if snapshot is None:
            logger.warning("Compression produced an empty or unparseable summary")
            return self._fail(FailureReason.EMPTY_SUMMARY, forced, tokens_before)

        summary = Content(
            Role.USER,
            (TextPart(f"{SUMMARY_PREFIX}\n\n{snapshot.render()}", auxiliary=True),),
        )
        # A tail opening with a model record already answers the summary
        if tail[0].role == Role.MODEL:
            new_history = (summary, *tail)
        else:
            new_history = (summary, Content.model(SUMMARY_ACK), *tail)
        tokens_after = self.estimator.estimate_history(new_history)

        if tokens_after >= tokens_before:
            logger.warning(
                "Compression inflated the history (%d -> %d tokens); keeping original",
                tokens_before,
                tokens_after,
            )
            return self._fail(FailureReason.INFLATED_TOKEN_COUNT, forced, tokens_before, tokens_after)

        self.has_failed_attempt = False
        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "Compressed history: %d records -> %d (%d -> %d tokens, %d ms)",
            len(records),
            len(new_history),
            tokens_before,
            tokens_after,
            duration_ms,
        )
        return CompressionOutcome.compressed(new_history, tokens_before, tokens_after)

    def _fail(
        self,
        reason: FailureReason,
        forced: bool,
        tokens_before: int,
        tokens_after: int = 0,
    ) -> CompressionOutcome:
        if not forced:
            self.has_failed_attempt = True
        return CompressionOutcome.failed(reason, tokens_before, tokens_after)

    async def _summarize(self, head: Sequence[Content]) -> str:
        """One summarization call over the head of the history."""
        transcript = self.serialize_for_summary(head)
        response = await self._client.generate(
            COMPRESSION_SYSTEM_PROMPT,
            [Content.user(transcript, SNAPSHOT_REQUEST)],
            model=self._settings.background_model,
        )
        return response.text

    @staticmethod
    def serialize_for_summary(records: Sequence[Content]) -> str:
        """Serialize records as readable text for summarization."""
        lines = []
        for record in records:
            role = "User" if record.role == Role.USER else "Assistant"
            chunks: list[str] = []
            for part in record.parts:
                if isinstance(part, TextPart) and part.text:
                    chunks.append(part.text)
                elif isinstance(part, ToolCallPart):
                    chunks.append(f"[tool call {part.name}] {json.dumps(part.args, default=str)}")
                elif isinstance(part, ToolResultPart):
                    status = "error" if part.is_error else "result"
                    chunks.append(f"[tool {status} {part.name}] {part.output}")
            if chunks:
                lines.append(f"**{role}:** " + "\n".join(chunks))
        return "\n\n".join(lines) + "\n\n"
