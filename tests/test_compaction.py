"""Tests for token estimation and chat compression."""

import asyncio

import pytest

from helm.api.compaction import (
    SUMMARY_ACK,
    SUMMARY_PREFIX,
    ChatCompressor,
    CompressionStatus,
    FailureReason,
    SkipReason,
    StateSnapshot,
    TokenEstimator,
)
from helm.api.models import Content, History, Role, TextPart, ToolCallPart, ToolResultPart
from tests.conftest import SNAPSHOT, FakeModelClient, make_settings

# ------------------------------------------------------------------
# TokenEstimator Tests
# ------------------------------------------------------------------


class TestTokenEstimator:
    def test_estimate_chars_times_ratio(self):
        est = TokenEstimator()
        assert est.estimate("a" * 100) == 25

    def test_estimate_rounds_up(self):
        est = TokenEstimator()
        assert est.estimate("a" * 101) == 26

    def test_estimate_minimum_1(self):
        est = TokenEstimator()
        assert est.estimate("") == 1
        assert est.estimate("a") == 1

    def test_estimate_non_string(self):
        est = TokenEstimator()
        assert est.estimate({"key": "value"}) >= 1

    def test_custom_ratio(self):
        est = TokenEstimator(tokens_per_char=1.0)
        assert est.ratio == 1.0
        assert est.estimate("abcd") == 4

    def test_empty_history_is_zero(self):
        assert TokenEstimator().estimate_history([]) == 0

    def test_history_sums_parts(self):
        est = TokenEstimator()
        records = [Content.user("a" * 100), Content.model("b" * 200)]
        assert est.estimate_history(records) == 75

    def test_tool_parts_use_json(self):
        est = TokenEstimator(tokens_per_char=1.0)
        call = ToolCallPart(id="c1", name="bash", args={"command": "ls"})
        result = ToolResultPart(call_id="c1", name="bash", output="x" * 10)
        records = [Content(Role.MODEL, (call,)), Content.tool_results([result])]
        expected = est.estimate({"name": "bash", "args": {"command": "ls"}}) + 10
        assert est.estimate_history(records) == expected

    def test_empty_text_part_is_free(self):
        est = TokenEstimator()
        assert est.estimate_history([Content(Role.MODEL, (TextPart(""),))]) == 0

    def test_monotonic_when_appending(self):
        est = TokenEstimator()
        records: list[Content] = []
        previous = est.estimate_history(records)
        for i in range(20):
            records.append(Content.user("x" * i) if i % 2 == 0 else Content.model("y" * i))
            current = est.estimate_history(records)
            assert current >= previous >= 0
            previous = current

    def test_limit_helpers(self):
        assert TokenEstimator.has_exceeded(1001, 1000)
        assert not TokenEstimator.has_exceeded(1000, 1000)
        assert TokenEstimator.is_approaching(850, 1000)
        assert not TokenEstimator.is_approaching(700, 1000)
        assert TokenEstimator.remaining(300, 1000) == 700
        assert TokenEstimator.remaining(1300, 1000) == 0


# ------------------------------------------------------------------
# StateSnapshot Tests
# ------------------------------------------------------------------


class TestStateSnapshot:
    def test_parse_all_sections(self):
        snapshot = StateSnapshot.parse(SNAPSHOT)
        assert snapshot is not None
        assert snapshot.overall_goal == "Fix the parser"
        assert snapshot.file_system_state == "MODIFIED: parser.py"

    def test_missing_section_fails(self):
        text = SNAPSHOT.replace("<current_plan>1. [DONE] fix</current_plan>", "")
        assert StateSnapshot.parse(text) is None

    def test_empty_output_fails(self):
        assert StateSnapshot.parse("") is None
        assert StateSnapshot.parse("   \n") is None

    def test_all_empty_sections_fail(self):
        text = "".join(
            f"<{s}></{s}>"
            for s in ("overall_goal", "key_knowledge", "file_system_state", "recent_actions", "current_plan")
        )
        assert StateSnapshot.parse(text) is None

    def test_render_round_trips(self):
        snapshot = StateSnapshot.parse(SNAPSHOT)
        assert StateSnapshot.parse(snapshot.render()) == snapshot


# ------------------------------------------------------------------
# ChatCompressor Tests
# ------------------------------------------------------------------


def _make_compressor(client=None, **overrides):
    overrides.setdefault("compression_token_threshold", 1000)
    settings = make_settings(**overrides)
    return ChatCompressor(settings, client or FakeModelClient(generate_texts=[SNAPSHOT]))


def _five_thousand_token_head() -> list[Content]:
    """Head of 5000 tokens, tail of 2000 (0.25 tokens/char)."""
    return [
        Content.user("a" * 10_000),
        Content.model("b" * 10_000),
        Content.user("c" * 4_000),
        Content.model("d" * 4_000),
    ]


def _tool_loop_history(rounds: int) -> list[Content]:
    """One request driving `rounds` read_file calls, then a final answer."""
    records = [Content.user("fix the failing build")]
    for i in range(rounds):
        call = ToolCallPart(id=f"c{i}", name="read_file", args={"path": f"src/f{i}.py"})
        records.append(Content(Role.MODEL, (call,)))
        records.append(Content.tool_results([ToolResultPart(f"c{i}", "read_file", "x" * 4000)]))
    records.append(Content.model("Fixed."))
    return records


class TestSplitPoint:
    def test_split_snaps_to_user_message(self):
        compressor = _make_compressor()
        assert compressor.find_split_point(_five_thousand_token_head()) == 2

    def test_split_skips_tool_result_messages(self):
        compressor = _make_compressor()
        call = ToolCallPart(id="c1", name="bash", args={})
        records = [
            Content.user("a" * 4000),
            Content(Role.MODEL, (call,)),
            Content.tool_results([ToolResultPart("c1", "bash", "o" * 4000)]),
            Content.model("b" * 400),
            Content.user("c" * 400),
            Content.model("d" * 400),
        ]
        split = compressor.find_split_point(records)
        assert split == 4
        assert not records[split].is_tool_result

    def test_single_exchange_splits_before_the_reply(self):
        compressor = _make_compressor()
        assert compressor.find_split_point([Content.user("a" * 5000), Content.model("b" * 5000)]) == 1

    def test_single_record_has_nothing_to_compress(self):
        compressor = _make_compressor()
        assert compressor.find_split_point([Content.user("a" * 5000)]) == 0

    def test_tool_loop_splits_before_a_model_record(self):
        compressor = _make_compressor()
        records = _tool_loop_history(20)

        split = compressor.find_split_point(records)

        assert split > 1
        assert records[split].role == Role.MODEL
        assert records[split - 1].is_tool_result
        tail_tokens = compressor.estimator.estimate_history(records[split:])
        assert tail_tokens <= 0.3 * compressor.estimator.estimate_history(records) + 1100

    def test_falls_back_to_last_boundary(self):
        compressor = _make_compressor()
        records = [
            Content.user("a" * 40),
            Content.model("b" * 40),
            Content.user("c" * 40),
            Content.model("d" * 8000),
        ]
        assert compressor.find_split_point(records) == 2


class TestMaybeCompress:
    @pytest.mark.asyncio
    async def test_empty_history_skipped(self):
        client = FakeModelClient()
        compressor = _make_compressor(client)
        outcome = await compressor.maybe_compress([])
        assert outcome.status == CompressionStatus.SKIPPED
        assert outcome.reason == SkipReason.EMPTY_HISTORY
        assert client.generate_calls == []

    @pytest.mark.asyncio
    async def test_below_threshold_skipped(self):
        client = FakeModelClient()
        compressor = _make_compressor(client, compression_token_threshold=60_000)
        outcome = await compressor.maybe_compress(_five_thousand_token_head())
        assert outcome.reason == SkipReason.BELOW_THRESHOLD
        assert client.generate_calls == []

    @pytest.mark.asyncio
    async def test_successful_compression(self):
        client = FakeModelClient(generate_texts=[SNAPSHOT])
        compressor = _make_compressor(client)
        records = _five_thousand_token_head()

        outcome = await compressor.maybe_compress(records)

        assert outcome.status == CompressionStatus.COMPRESSED
        assert outcome.tokens_before == 7000
        assert outcome.tokens_after < outcome.tokens_before
        summary, ack, *tail = outcome.new_history
        assert summary.role == Role.USER
        assert summary.parts[0].auxiliary
        assert summary.text(include_auxiliary=True).startswith(SUMMARY_PREFIX)
        assert ack == Content.model(SUMMARY_ACK)
        assert tail == records[2:]
        assert len(client.generate_calls) == 1
        assert client.generate_calls[0]["model"] == compressor._settings.background_model

    @pytest.mark.asyncio
    async def test_summary_request_contains_head_only(self):
        client = FakeModelClient(generate_texts=[SNAPSHOT])
        compressor = _make_compressor(client)
        await compressor.maybe_compress(_five_thousand_token_head())
        transcript = client.generate_calls[0]["history"][0].text()
        assert "a" * 100 in transcript
        assert "c" * 100 not in transcript

    @pytest.mark.asyncio
    async def test_empty_summary_fails_and_keeps_history(self):
        client = FakeModelClient(generate_texts=[""])
        compressor = _make_compressor(client)
        records = _five_thousand_token_head()

        outcome = await compressor.maybe_compress(records)

        assert outcome.status == CompressionStatus.FAILED
        assert outcome.reason == FailureReason.EMPTY_SUMMARY
        assert outcome.new_history is None
        assert compressor.has_failed_attempt is True

    @pytest.mark.asyncio
    async def test_inflated_summary_fails(self):
        bloated = SNAPSHOT.replace("Uses pytest", "x" * 40_000)
        client = FakeModelClient(generate_texts=[bloated])
        compressor = _make_compressor(client)

        outcome = await compressor.maybe_compress(_five_thousand_token_head())

        assert outcome.status == CompressionStatus.FAILED
        assert outcome.reason == FailureReason.INFLATED_TOKEN_COUNT
        assert outcome.tokens_after >= outcome.tokens_before

    @pytest.mark.asyncio
    async def test_failure_is_sticky_for_automatic_calls(self):
        client = FakeModelClient(generate_texts=["", SNAPSHOT])
        compressor = _make_compressor(client)
        records = _five_thousand_token_head()

        await compressor.maybe_compress(records)
        second = await compressor.maybe_compress(records)

        assert second.status == CompressionStatus.SKIPPED
        assert second.reason == SkipReason.PREVIOUS_FAILURE
        assert len(client.generate_calls) == 1

    @pytest.mark.asyncio
    async def test_forced_clears_flag_and_tries_once(self):
        client = FakeModelClient(generate_texts=["", SNAPSHOT])
        compressor = _make_compressor(client)
        records = _five_thousand_token_head()
        await compressor.maybe_compress(records)

        outcome = await compressor.maybe_compress(records, forced=True)

        assert outcome.status == CompressionStatus.COMPRESSED
        assert len(client.generate_calls) == 2
        assert compressor.has_failed_attempt is False

    @pytest.mark.asyncio
    async def test_forced_failure_does_not_set_flag(self):
        client = FakeModelClient(generate_texts=[""])
        compressor = _make_compressor(client, compression_token_threshold=60_000)

        outcome = await compressor.maybe_compress(_five_thousand_token_head(), forced=True)

        assert outcome.status == CompressionStatus.FAILED
        assert len(client.generate_calls) == 1
        assert compressor.has_failed_attempt is False

    @pytest.mark.asyncio
    async def test_summarizer_exception_is_empty_summary(self):
        client = FakeModelClient(generate_texts=[RuntimeError("API down")])
        compressor = _make_compressor(client)

        outcome = await compressor.maybe_compress(_five_thousand_token_head())

        assert outcome.reason == FailureReason.EMPTY_SUMMARY
        assert compressor.has_failed_attempt is True

    @pytest.mark.asyncio
    async def test_cancelled_before_summary(self):
        cancel = asyncio.Event()
        cancel.set()
        client = FakeModelClient(generate_texts=[SNAPSHOT])
        compressor = _make_compressor(client)

        outcome = await compressor.maybe_compress(_five_thousand_token_head(), cancel=cancel)

        assert outcome.status == CompressionStatus.SKIPPED
        assert outcome.reason == SkipReason.CANCELLED
        assert client.generate_calls == []
        assert compressor.has_failed_attempt is False

    @pytest.mark.asyncio
    async def test_cancelled_while_summarizing(self):
        cancel = asyncio.Event()

        class SlowClient(FakeModelClient):
            async def generate(self, *args, **kwargs):
                cancel.set()
                await asyncio.sleep(10)

        compressor = _make_compressor(SlowClient())
        outcome = await compressor.maybe_compress(_five_thousand_token_head(), cancel=cancel)
        assert outcome.reason == SkipReason.CANCELLED

    @pytest.mark.asyncio
    async def test_single_record_skipped_even_when_forced(self):
        client = FakeModelClient(generate_texts=[SNAPSHOT])
        compressor = _make_compressor(client)

        outcome = await compressor.maybe_compress([Content.user("a" * 10_000)], forced=True)

        assert outcome.reason == SkipReason.NOTHING_TO_COMPRESS
        assert client.generate_calls == []

    @pytest.mark.asyncio
    async def test_forced_tool_loop_makes_one_summary_call(self):
        client = FakeModelClient(generate_texts=[SNAPSHOT])
        compressor = _make_compressor(client)
        records = _tool_loop_history(20)

        outcome = await compressor.maybe_compress(records, forced=True)

        assert outcome.status == CompressionStatus.COMPRESSED
        assert len(client.generate_calls) == 1
        summary, first_kept, *_ = outcome.new_history
        assert summary.parts[0].auxiliary
        # no acknowledgement: the kept model record follows the summary directly
        assert first_kept.role == Role.MODEL
        assert first_kept.tool_calls
        assert outcome.new_history[1:] == records[compressor.find_split_point(records) :]
        History(outcome.new_history)
        assert outcome.tokens_after < outcome.tokens_before

    @pytest.mark.asyncio
    async def test_automatic_tool_loop_compression(self):
        client = FakeModelClient(generate_texts=[SNAPSHOT])
        compressor = _make_compressor(client)

        outcome = await compressor.maybe_compress(_tool_loop_history(20))

        assert outcome.status == CompressionStatus.COMPRESSED
        assert outcome.new_history[1].role == Role.MODEL

    @pytest.mark.asyncio
    async def test_single_exchange_forced_keeps_reply(self):
        client = FakeModelClient(generate_texts=[SNAPSHOT])
        compressor = _make_compressor(client)
        reply = Content.model("b" * 10_000)

        outcome = await compressor.maybe_compress([Content.user("a" * 10_000), reply], forced=True)

        assert outcome.status == CompressionStatus.COMPRESSED
        assert outcome.new_history[1:] == (reply,)
        assert len(client.generate_calls) == 1

    def test_reset_clears_flag(self):
        compressor = _make_compressor()
        compressor.has_failed_attempt = True
        compressor.reset()
        assert compressor.has_failed_attempt is False
