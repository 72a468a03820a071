"""Metrics tracker -- conversation-quality signals for prompt reinforcement.

Derives depth, complexity and hallucination-risk signals from the
history once per outgoing turn.  Tool usage, delegation and error
counters are fed by the orchestrator as it observes stream events,
since those events are not always persisted verbatim.

All heuristics live in data tables (COMPLEXITY_KEYWORDS,
INDICATOR_RULES) so the rule set can change without touching the
control flow.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from helm.api.models import Content, Role, TextPart
from helm.cognitive.schemas import SessionMetrics
from helm.config import Settings

logger = logging.getLogger(__name__)

# Records considered "recent" for the complexity score
_COMPLEXITY_WINDOW = 5
# Model records scanned for hallucination indicators
_INDICATOR_WINDOW = 3
_TEXT_BASE_CAP = 50
_SCORE_CAP = 100

COMPLEXITY_KEYWORDS: tuple[str, ...] = (
    "plan",
    "implement",
    "architecture",
    "design",
    "refactor",
    "optimize",
    "complex",
    "multi-step",
    "integration",
    "edge case",
    "scenario",
    "performance",
    "scalability",
    "maintainability",
    "security",
    "vulnerability",
)


def _has_term(text: str, term: str) -> bool:
    """Substring match anchored at a word start for alphabetic terms ('likely' not in 'unlikely')."""
    if term[:1].isalpha():
        return re.search(rf"(?<![a-z]){re.escape(term)}", text) is not None
    return term in text


@dataclass(frozen=True)
class IndicatorRule:
    """One hallucination-risk pattern.

    Matches when every group in `all_of` has at least one term present in
    the model text, and no verifier tool was called (nor verifier marker
    mentioned) in the scan window up to that record.
    """

    tag: str
    all_of: tuple[tuple[str, ...], ...]
    reminder: str
    verifier_tools: frozenset[str] = frozenset()
    verifier_markers: tuple[str, ...] = ()
    min_length: int = 0

    def matches(self, text: str, called_tools: set[str]) -> bool:
        if len(text) < self.min_length:
            return False
        if not all(any(_has_term(text, term) for term in group) for group in self.all_of):
            return False
        if called_tools & self.verifier_tools:
            return False
        return not any(marker in text for marker in self.verifier_markers)


INDICATOR_RULES: tuple[IndicatorRule, ...] = (
    IndicatorRule(
        tag="speculation-without-verification",
        all_of=(("probably", "likely", "assume", "i guess", "might be"),),
        verifier_tools=frozenset({"read_file", "bash", "grep", "glob", "web_fetch"}),
        verifier_markers=("/format-validator", "/git-analyzer", "/error-parser"),
        reminder=(
            "- Data First: read the actual files or run a check before drawing "
            "conclusions; do not speculate about content you have not inspected."
        ),
    ),
    IndicatorRule(
        tag="config-analysis-without-validation",
        all_of=(("yaml", "toml", "json", "xml", ".ini", "config"),),
        verifier_tools=frozenset({"read_file"}),
        verifier_markers=("/format-validator",),
        min_length=500,
        reminder=(
            "- Config Files: read and validate structured config files (YAML, TOML, "
            "JSON, XML) before describing or changing them."
        ),
    ),
    IndicatorRule(
        tag="error-analysis-without-parser",
        all_of=(("error", "exception"), ("stack", "traceback")),
        verifier_tools=frozenset({"bash", "read_file"}),
        verifier_markers=("/error-parser",),
        reminder=(
            "- Error Parsing: inspect the full stack trace and the code it points to "
            "before naming a cause."
        ),
    ),
    IndicatorRule(
        tag="type-analysis-without-analyzer",
        all_of=(("type error", "type mismatch", "typescript", "type hint"),),
        verifier_tools=frozenset({"bash"}),
        verifier_markers=("/type-safety-analyzer",),
        reminder=(
            "- Type Safety: run the type checker instead of guessing type compatibility."
        ),
    ),
    IndicatorRule(
        tag="security-claim-without-audit",
        all_of=(("vulnerab", "exploit", "insecure"),),
        verifier_markers=("/security-audit",),
        reminder=(
            "- Security: back security claims with a scan or concrete code references."
        ),
    ),
)


def is_user_authored(record: Content) -> bool:
    """A user record with real (non-injected, non-tool-result) text."""
    return record.role == Role.USER and any(
        isinstance(p, TextPart) and p.text and not p.auxiliary for p in record.parts
    )


class MetricsTracker:
    """Owns the SessionMetrics of one chat session."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self.metrics = SessionMetrics()
        self._scanned_upto = 0

    def reset(self) -> None:
        """Clear everything (session start, history replaced wholesale)."""
        self.metrics = SessionMetrics()
        self._scanned_upto = 0

    def update(self, history: Sequence[Content]) -> SessionMetrics:
        """Refresh derived signals from the current history snapshot."""
        history = tuple(history)
        self.metrics.turn_count += 1
        self.metrics.consecutive_model_turns = self._consecutive_model_turns(history)
        self.metrics.complexity_score = self._complexity_score(history)
        self._detect_indicators(history)
        return self.metrics

    # ------------------------------------------------------------------
    # Externally observed events
    # ------------------------------------------------------------------

    def record_tool_usage(self) -> None:
        self.metrics.tool_usage_count += 1

    def record_delegation(self) -> None:
        """Delegating is a sign of proper workflow: restart the tool counter."""
        self.metrics.delegation_count += 1
        self.metrics.tool_usage_count = 0

    def record_error_encounter(self) -> None:
        self.metrics.error_count += 1

    # ------------------------------------------------------------------
    # Derived signals
    # ------------------------------------------------------------------

    @staticmethod
    def _consecutive_model_turns(history: tuple[Content, ...]) -> int:
        count = 0
        for record in reversed(history):
            if record.role == Role.MODEL:
                count += 1
            elif is_user_authored(record):
                break
        return count

    def _complexity_score(self, history: tuple[Content, ...]) -> int:
        s = self._settings
        recent = [r.text().lower() for r in history[-_COMPLEXITY_WINDOW:]]

        score = min(sum(len(t) for t in recent) // s.complexity_chars_per_point, _TEXT_BASE_CAP)
        for text in recent:
            for keyword in COMPLEXITY_KEYWORDS:
                if keyword in text:
                    score += s.complexity_keyword_weight

        score += self.metrics.tool_usage_count * s.complexity_tool_weight
        score += self.metrics.delegation_count * s.complexity_delegation_weight
        return min(score, _SCORE_CAP)

    def _detect_indicators(self, history: tuple[Content, ...]) -> None:
        model_indices = [i for i, r in enumerate(history) if r.role == Role.MODEL]
        window = model_indices[-_INDICATOR_WINDOW:]
        if not window:
            self._scanned_upto = len(history)
            return

        window_start = window[0]
        tags = self.metrics.hallucination_indicators
        for index in window:
            if index < self._scanned_upto:
                continue
            text = history[index].text().lower()
            if not text:
                continue
            called = {
                call.name
                for record in history[window_start : index + 1]
                for call in record.tool_calls
            }
            for rule in INDICATOR_RULES:
                if rule.tag not in tags and rule.matches(text, called):
                    logger.debug("Hallucination indicator %s at record %d", rule.tag, index)
                    tags.append(rule.tag)

        self._scanned_upto = len(history)
