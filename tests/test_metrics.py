"""Tests for MetricsTracker signals."""

from helm.api.models import Content, Role, TextPart, ToolCallPart, ToolResultPart
from helm.cognitive.metrics import INDICATOR_RULES, MetricsTracker, is_user_authored
from tests.conftest import make_settings


def _make_tracker(**overrides) -> MetricsTracker:
    return MetricsTracker(make_settings(**overrides))


def _model_call(call_id: str, name: str, text: str = "") -> Content:
    parts = (TextPart(text),) if text else ()
    return Content(Role.MODEL, (*parts, ToolCallPart(id=call_id, name=name, args={})))


def _result(call_id: str, name: str) -> Content:
    return Content.tool_results([ToolResultPart(call_id, name, "output")])


class TestUserAuthored:
    def test_plain_user_text(self):
        assert is_user_authored(Content.user("hello"))

    def test_tool_results_are_not_user_authored(self):
        assert not is_user_authored(_result("c1", "bash"))

    def test_auxiliary_only_is_not_user_authored(self):
        record = Content(Role.USER, (TextPart("Please continue.", auxiliary=True),))
        assert not is_user_authored(record)

    def test_model_is_not_user_authored(self):
        assert not is_user_authored(Content.model("hi"))


class TestConsecutiveModelTurns:
    def test_counts_model_records_after_last_user(self):
        tracker = _make_tracker()
        history = [Content.user("q"), Content.model("a"), Content.model("b"), Content.model("c")]
        assert tracker.update(history).consecutive_model_turns == 3

    def test_tool_results_do_not_break_the_streak(self):
        tracker = _make_tracker()
        history = [
            Content.user("q"),
            _model_call("c1", "bash"),
            _result("c1", "bash"),
            _model_call("c2", "read_file"),
            _result("c2", "read_file"),
            Content.model("done"),
        ]
        assert tracker.update(history).consecutive_model_turns == 3

    def test_continuation_prompt_does_not_break_the_streak(self):
        tracker = _make_tracker()
        history = [
            Content.user("q"),
            Content.model("a"),
            Content(Role.USER, (TextPart("Please continue.", auxiliary=True),)),
            Content.model("b"),
        ]
        assert tracker.update(history).consecutive_model_turns == 2

    def test_user_message_resets(self):
        tracker = _make_tracker()
        history = [Content.model("a"), Content.model("b"), Content.user("new question")]
        assert tracker.update(history).consecutive_model_turns == 0


class TestComplexity:
    def test_keywords_add_five_each(self):
        tracker = _make_tracker()
        metrics = tracker.update([Content.user("please refactor the architecture")])
        assert metrics.complexity_score == 10

    def test_keyword_counted_once_per_record(self):
        tracker = _make_tracker()
        metrics = tracker.update([Content.user("refactor refactor refactor")])
        assert metrics.complexity_score == 5

    def test_length_contributes_one_point_per_hundred_chars(self):
        tracker = _make_tracker()
        metrics = tracker.update([Content.user("x" * 1000)])
        assert metrics.complexity_score == 10

    def test_length_component_capped_at_fifty(self):
        tracker = _make_tracker()
        metrics = tracker.update([Content.user("x" * 100_000)])
        assert metrics.complexity_score == 50

    def test_only_last_five_records(self):
        tracker = _make_tracker()
        history = [Content.user("design")] + [Content.model("ok")] * 5
        assert tracker.update(history).complexity_score == 0

    def test_auxiliary_text_ignored(self):
        tracker = _make_tracker()
        record = Content(Role.USER, (TextPart("architecture security plan", auxiliary=True), TextPart("hi")))
        assert tracker.update([record]).complexity_score == 0

    def test_tool_and_delegation_weights(self):
        tracker = _make_tracker()
        tracker.record_tool_usage()
        tracker.record_tool_usage()
        tracker.record_delegation()
        tracker.record_tool_usage()
        # tool count reset by delegation: 1 tool (2) + 1 delegation (3)
        assert tracker.update([Content.user("hi")]).complexity_score == 5

    def test_score_capped_at_100(self):
        tracker = _make_tracker()
        for _ in range(60):
            tracker.record_tool_usage()
        assert tracker.update([Content.user("x" * 10_000)]).complexity_score == 100


class TestCounters:
    def test_turn_count_increments_per_update(self):
        tracker = _make_tracker()
        tracker.update([])
        tracker.update([])
        assert tracker.metrics.turn_count == 2

    def test_delegation_resets_tool_usage(self):
        tracker = _make_tracker()
        for _ in range(5):
            tracker.record_tool_usage()
        tracker.record_delegation()
        assert tracker.metrics.tool_usage_count == 0
        assert tracker.metrics.delegation_count == 1

    def test_errors(self):
        tracker = _make_tracker()
        tracker.record_error_encounter()
        tracker.record_error_encounter()
        assert tracker.metrics.error_count == 2

    def test_reset(self):
        tracker = _make_tracker()
        tracker.record_tool_usage()
        tracker.update([Content.model("this is probably fine")])
        tracker.reset()
        assert tracker.metrics.turn_count == 0
        assert tracker.metrics.tool_usage_count == 0
        assert tracker.metrics.hallucination_indicators == []


class TestHallucinationIndicators:
    def test_speculation_without_reading(self):
        tracker = _make_tracker()
        metrics = tracker.update([Content.user("q"), Content.model("The file probably has a bug.")])
        assert metrics.hallucination_indicators == ["speculation-without-verification"]

    def test_terms_match_at_word_start(self):
        tracker = _make_tracker()
        metrics = tracker.update([Content.user("q"), Content.model("That is unlikely to matter.")])
        assert metrics.hallucination_indicators == []

        tracker = _make_tracker()
        metrics = tracker.update([Content.user("q"), Content.model("A known vulnerability.")])
        assert metrics.hallucination_indicators == ["security-claim-without-audit"]

    def test_speculation_after_reading_is_fine(self):
        tracker = _make_tracker()
        history = [
            Content.user("q"),
            _model_call("c1", "read_file"),
            _result("c1", "read_file"),
            Content.model("It probably fails on empty input."),
        ]
        assert tracker.update(history).hallucination_indicators == []

    def test_error_rule_needs_both_groups(self):
        tracker = _make_tracker()
        metrics = tracker.update([Content.user("q"), Content.model("There is an error somewhere.")])
        assert "error-analysis-without-parser" not in metrics.hallucination_indicators

        tracker = _make_tracker()
        metrics = tracker.update(
            [Content.user("q"), Content.model("The exception in the stack trace comes from io.")]
        )
        assert "error-analysis-without-parser" in metrics.hallucination_indicators

    def test_config_rule_needs_long_text(self):
        tracker = _make_tracker()
        short = tracker.update([Content.user("q"), Content.model("Edit the yaml.")])
        assert "config-analysis-without-validation" not in short.hallucination_indicators

        tracker = _make_tracker()
        long_text = "The yaml config sets the port. " + "Details. " * 60
        metrics = tracker.update([Content.user("q"), Content.model(long_text)])
        assert "config-analysis-without-validation" in metrics.hallucination_indicators

    def test_verifier_marker_suppresses(self):
        tracker = _make_tracker()
        metrics = tracker.update(
            [Content.user("q"), Content.model("Ran /security-audit: this looks insecure.")]
        )
        assert "security-claim-without-audit" not in metrics.hallucination_indicators

    def test_tags_added_once(self):
        tracker = _make_tracker()
        history = [Content.user("q"), Content.model("probably A")]
        tracker.update(history)
        history.append(Content.user("and?"))
        history.append(Content.model("probably B"))
        metrics = tracker.update(history)
        assert metrics.hallucination_indicators == ["speculation-without-verification"]

    def test_records_scanned_only_once(self):
        tracker = _make_tracker()
        history = [Content.user("q"), Content.model("probably A")]
        tracker.update(history)
        tracker.metrics.hallucination_indicators = []
        metrics = tracker.update(history)
        assert metrics.hallucination_indicators == []

    def test_only_last_three_model_records(self):
        tracker = _make_tracker()
        history = [Content.user("q"), Content.model("probably A")]
        history += [Content.model("fine")] * 3
        assert tracker.update(history).hallucination_indicators == []

    def test_rule_tags_unique(self):
        tags = [rule.tag for rule in INDICATOR_RULES]
        assert len(tags) == len(set(tags))
