"""Injection policy -- when to re-inject the core instructions.

Multi-factor decision instead of a naive "every N turns": each factor in
_FACTORS is checked independently and any one of them is enough.  A
floor on turns since the last injection overrides all of them to bound
token cost.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from helm.cognitive.metrics import INDICATOR_RULES
from helm.cognitive.schemas import InjectionDecision, InjectionFactor, SessionMetrics
from helm.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Factor:
    factor: InjectionFactor
    applies: Callable[[SessionMetrics, Settings], bool]


_FACTORS: tuple[_Factor, ...] = (
    _Factor(
        InjectionFactor.CONVERSATION_DEPTH,
        lambda m, s: m.consecutive_model_turns >= s.consecutive_model_turns_threshold,
    ),
    _Factor(
        InjectionFactor.COMPLEXITY_SPIKE,
        lambda m, s: m.complexity_score >= s.complexity_threshold,
    ),
    _Factor(
        InjectionFactor.ERROR_PATTERN,
        lambda m, s: m.error_count >= s.error_threshold,
    ),
    _Factor(
        InjectionFactor.HALLUCINATION_RISK,
        lambda m, s: len(m.hallucination_indicators) > 0,
    ),
    _Factor(
        InjectionFactor.TOOL_USAGE_SPIKE,
        lambda m, s: m.tool_usage_count >= s.tool_usage_spike_threshold,
    ),
    _Factor(
        InjectionFactor.PERIODIC_FALLBACK,
        lambda m, s: m.turns_since_fallback >= s.fallback_injection_interval,
    ),
)

_REMINDERS: dict[str, str] = {rule.tag: rule.reminder for rule in INDICATOR_RULES}


class InjectionPolicy:
    """Pure decision functions over SessionMetrics plus cooldown state."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def evaluate(
        self,
        metrics: SessionMetrics,
        turns_since_last_injection: int | None = None,
    ) -> InjectionDecision:
        """Check every factor; the cooldown floor takes precedence."""
        if turns_since_last_injection is None:
            turns_since_last_injection = metrics.turns_since_last_injection

        triggers = [f.factor for f in _FACTORS if f.applies(metrics, self._settings)]
        if turns_since_last_injection < self._settings.min_turns_between_injection:
            return InjectionDecision(inject=False, triggers=triggers, suppressed_by_floor=bool(triggers))
        return InjectionDecision(inject=bool(triggers), triggers=triggers)

    def should_inject(
        self,
        metrics: SessionMetrics,
        turns_since_last_injection: int | None = None,
    ) -> bool:
        return self.evaluate(metrics, turns_since_last_injection).inject

    def record_injection(self, metrics: SessionMetrics, decision: InjectionDecision) -> None:
        """Reset the per-window counters of the factors that fired.

        The fallback anchor only moves when the fallback itself fired.
        """
        metrics.last_injection_turn = metrics.turn_count
        fired = set(decision.triggers)
        if InjectionFactor.ERROR_PATTERN in fired:
            metrics.error_count = 0
        if InjectionFactor.HALLUCINATION_RISK in fired:
            metrics.hallucination_indicators = []
        if InjectionFactor.TOOL_USAGE_SPIKE in fired:
            metrics.tool_usage_count = 0
        if InjectionFactor.PERIODIC_FALLBACK in fired:
            metrics.fallback_anchor_turn = metrics.turn_count
        logger.info(
            "Core prompt reinforcement injected at turn %d (%s)",
            metrics.turn_count,
            ", ".join(decision.triggers),
        )

    def targeted_reminder(self, metrics: SessionMetrics) -> str | None:
        """One remediation line per detected indicator, in rule-table order."""
        present = set(metrics.hallucination_indicators)
        lines = [rule.reminder for rule in INDICATOR_RULES if rule.tag in present]
        if not lines:
            return None
        body = "\n".join(lines)
        return f"<system-reminder>\nCore prompt reinforcement:\n{body}\n</system-reminder>"
