"""Pydantic DTOs shared by the metrics tracker and the injection policy."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class InjectionFactor(StrEnum):
    CONVERSATION_DEPTH = "conversation_depth"
    COMPLEXITY_SPIKE = "complexity_spike"
    ERROR_PATTERN = "error_pattern"
    HALLUCINATION_RISK = "hallucination_risk"
    TOOL_USAGE_SPIKE = "tool_usage_spike"
    PERIODIC_FALLBACK = "periodic_fallback"


class SessionMetrics(BaseModel):
    """Rolling conversation-quality signals for one chat session.

    Owned by MetricsTracker; turn indices count outgoing turns.
    """

    turn_count: int = 0
    last_injection_turn: int = 0
    fallback_anchor_turn: int = 0  # moves only when the periodic fallback fires
    consecutive_model_turns: int = 0
    tool_usage_count: int = 0
    delegation_count: int = 0
    error_count: int = 0
    complexity_score: int = Field(default=0, ge=0, le=100)
    hallucination_indicators: list[str] = Field(default_factory=list)

    @property
    def turns_since_last_injection(self) -> int:
        return self.turn_count - self.last_injection_turn

    @property
    def turns_since_fallback(self) -> int:
        return self.turn_count - self.fallback_anchor_turn


class InjectionDecision(BaseModel):
    """Output of InjectionPolicy.evaluate()."""

    inject: bool
    triggers: list[InjectionFactor] = Field(default_factory=list)
    suppressed_by_floor: bool = False
