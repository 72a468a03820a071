"""Cognitive layer -- conversation-quality signals and prompt reinforcement.

Tracks how the conversation is going (MetricsTracker), decides when to
re-inject the core instructions (InjectionPolicy), and builds the
system reminders that carry them.
"""

from helm.cognitive.injection import InjectionPolicy
from helm.cognitive.metrics import (
    COMPLEXITY_KEYWORDS,
    INDICATOR_RULES,
    IndicatorRule,
    MetricsTracker,
    is_user_authored,
)
from helm.cognitive.reminders import Capabilities, core_system_prompt
from helm.cognitive.schemas import InjectionDecision, InjectionFactor, SessionMetrics

__all__ = [
    "COMPLEXITY_KEYWORDS",
    "INDICATOR_RULES",
    "Capabilities",
    "IndicatorRule",
    "InjectionDecision",
    "InjectionFactor",
    "InjectionPolicy",
    "MetricsTracker",
    "SessionMetrics",
    "core_system_prompt",
    "is_user_authored",
]
