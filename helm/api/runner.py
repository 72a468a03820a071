"""Agent runner -- the turn orchestrator.

Drives one top-level request through the exchange state machine:

    INIT -> BUDGETED -> COMPRESSING -> BUDGET_CHECKED -> INJECTING
         -> STREAMING -> (TOOL_DISPATCH <-> STREAMING)* -> NEXT_SPEAKER_CHECK
         -> CONTINUING | DONE

Continuations (tool rounds and "Please continue." turns) are iterations of
one explicit loop with a decrementing budget, so a single request never
makes more than min(turns, max_turns) model calls.  Every path ends with
exactly one FINISHED event.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any
from uuid import uuid4

from helm.api.client import ModelClient
from helm.api.compaction import (
    ChatCompressor,
    CompressionOutcome,
    CompressionStatus,
    TokenEstimator,
)
from helm.api.models import (
    Content,
    EventType,
    FinishReason,
    History,
    Part,
    Role,
    StreamEvent,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    Turn,
)
from helm.api.next_speaker import check_next_speaker
from helm.api.tools import ToolDispatcher
from helm.cognitive.injection import InjectionPolicy
from helm.cognitive.metrics import MetricsTracker
from helm.cognitive.reminders import (
    Capabilities,
    core_system_prompt,
    plan_mode_reminder,
    project_memory_reminder,
    reinforcement_reminder,
    runtime_tools_reminder,
    subagent_reminder,
)
from helm.config import Settings
from helm.events import (
    CHAT_COMPRESSED,
    COMPRESSION_FAILED,
    INJECTION,
    LIMIT_EXCEEDED,
    NEXT_SPEAKER,
    SESSION_ENDED,
    SESSION_RESET,
    TURN_FINISHED,
    Event,
    EventBus,
)
from helm.utils import OperationCancelled, await_cancellable

logger = logging.getLogger(__name__)

MAX_TURNS = 100
MAX_SESSIONS = 100

CONTINUE_PROMPT = "Please continue."
CANCELLED_TOOL_OUTPUT = "Tool call cancelled by the user before it ran."


class TurnState(StrEnum):
    INIT = "init"
    BUDGETED = "budgeted"
    COMPRESSING = "compressing"
    BUDGET_CHECKED = "budget_checked"
    INJECTING = "injecting"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    NEXT_SPEAKER_CHECK = "next_speaker_check"
    CONTINUING = "continuing"
    DONE = "done"


@dataclass
class ChatSession:
    """Everything owned by one conversation."""

    session_id: str
    history: History
    tracker: MetricsTracker
    compressor: ChatCompressor
    system_instruction: str = ""
    turn_count: int = 0
    active: bool = False
    last_prompt_id: str | None = None
    injections: int = 0


async def _next_event(stream: AsyncIterator[StreamEvent]) -> StreamEvent | None:
    try:
        return await anext(stream)
    except StopAsyncIteration:
        return None


def _as_request(request: str | Content | Sequence[Part]) -> Content:
    if isinstance(request, Content):
        return request
    if isinstance(request, str):
        return Content.user(request)
    return Content(Role.USER, tuple(request))


class AgentRunner:
    """Runs conversational turns against a ModelClient.

    Sessions live in an LRU map keyed by session id.  A dispatcher is
    optional: without one, tool calls are returned to the caller as
    pending and the caller sends the results back as the next request.
    """

    def __init__(
        self,
        settings: Settings,
        client: ModelClient,
        dispatcher: ToolDispatcher | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._dispatcher = dispatcher
        self._bus = bus
        self._policy = InjectionPolicy(settings)
        self._estimator = TokenEstimator(settings.tokens_per_char)
        self._sessions: OrderedDict[str, ChatSession] = OrderedDict()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> ChatSession:
        """Get existing or create new session with LRU eviction."""
        if session_id in self._sessions:
            self._sessions.move_to_end(session_id)
            return self._sessions[session_id]

        while len(self._sessions) >= MAX_SESSIONS:
            evicted, _ = self._sessions.popitem(last=False)
            logger.debug("Evicted session %s", evicted)

        session = ChatSession(
            session_id=session_id,
            history=History(),
            tracker=MetricsTracker(self._settings),
            compressor=ChatCompressor(self._settings, self._client, self._estimator),
            system_instruction=core_system_prompt(self._settings),
        )
        self._sessions[session_id] = session
        return session

    def get_history(self, session_id: str) -> tuple[Content, ...]:
        session = self._sessions.get(session_id)
        return session.history.snapshot() if session else ()

    async def reset_session(self, session_id: str) -> None:
        """Start the conversation over: empty history, fresh metrics, no sticky flag."""
        session = self.get_session(session_id)
        self._ensure_idle(session)
        session.history = History()
        session.tracker.reset()
        session.compressor.reset()
        session.turn_count = 0
        session.system_instruction = core_system_prompt(self._settings)
        logger.info("Session %s reset", session_id)
        await self._publish(SESSION_RESET, session)

    async def end_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        await self._publish(
            SESSION_ENDED,
            session,
            turns=session.turn_count,
            records=len(session.history),
            injections=session.injections,
        )

    async def compress_session(
        self, session_id: str, cancel: asyncio.Event | None = None
    ) -> CompressionOutcome:
        """Forced compression (explicit user action)."""
        session = self.get_session(session_id)
        self._ensure_idle(session)
        session.active = True
        try:
            return await self._compress(session, forced=True, cancel=cancel)
        finally:
            session.active = False

    @staticmethod
    def _ensure_idle(session: ChatSession) -> None:
        if session.active:
            raise RuntimeError(f"Session {session.session_id} already has a request in flight")

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    async def send_message_stream(
        self,
        session_id: str,
        request: str | Content | Sequence[Part],
        cancel: asyncio.Event | None = None,
        prompt_id: str | None = None,
        *,
        is_continuation: bool = False,
        turns: int = MAX_TURNS,
    ) -> AsyncIterator[StreamEvent]:
        """Run one top-level request, yielding events as they happen.

        The last event is always FINISHED carrying the Turn.  Raises
        RuntimeError on a concurrent call for the same session and
        TurnOrderError if request cannot follow the current history.
        """
        session = self.get_session(session_id)
        self._ensure_idle(session)
        content = _as_request(request)
        session.history.check_next(content)

        session.active = True
        turn = Turn(prompt_id=prompt_id or uuid4().hex)
        if not is_continuation:
            session.last_prompt_id = turn.prompt_id
        try:
            events = self._run(session, content, cancel, turn, is_continuation, turns)
            async with contextlib.aclosing(events):
                async for event in events:
                    yield event
        finally:
            session.active = False

    async def _run(
        self,
        session: ChatSession,
        request: Content | None,
        cancel: asyncio.Event | None,
        turn: Turn,
        is_continuation: bool,
        turns: int,
    ) -> AsyncIterator[StreamEvent]:
        settings = self._settings
        budget = max(0, min(turns, settings.max_turns))

        while True:
            # INIT
            self._enter(turn, TurnState.INIT)
            session.turn_count += 1
            if 0 < settings.max_session_turns < session.turn_count:
                logger.info(
                    "Session %s exceeded max_session_turns=%d",
                    session.session_id,
                    settings.max_session_turns,
                )
                await self._publish(
                    LIMIT_EXCEEDED, session, turn, kind="max_session_turns", limit=settings.max_session_turns
                )
                yield StreamEvent(
                    type=EventType.MAX_SESSION_TURNS,
                    value={"limit": settings.max_session_turns, "turns": session.turn_count},
                )
                yield await self._finish(session, turn, FinishReason.MAX_SESSION_TURNS)
                return

            # BUDGETED
            self._enter(turn, TurnState.BUDGETED)
            if budget <= 0:
                yield await self._finish(session, turn, FinishReason.BUDGET_EXHAUSTED)
                return
            if cancel is not None and cancel.is_set():
                yield await self._finish(session, turn, FinishReason.CANCELLED)
                return

            # COMPRESSING
            self._enter(turn, TurnState.COMPRESSING)
            outcome = await self._compress(session, forced=False, cancel=cancel)
            if outcome.status == CompressionStatus.COMPRESSED:
                yield StreamEvent(
                    type=EventType.CHAT_COMPRESSED,
                    value={
                        "tokens_before": outcome.tokens_before,
                        "tokens_after": outcome.tokens_after,
                    },
                )
            if cancel is not None and cancel.is_set():
                yield await self._finish(session, turn, FinishReason.CANCELLED)
                return

            # BUDGET_CHECKED
            self._enter(turn, TurnState.BUDGET_CHECKED)
            if settings.session_token_limit > 0:
                estimated = self._estimator.estimate(
                    session.system_instruction
                ) + self._estimator.estimate_history(session.history)
                if estimated > settings.session_token_limit:
                    logger.info(
                        "Session %s over token limit: ~%d > %d",
                        session.session_id,
                        estimated,
                        settings.session_token_limit,
                    )
                    await self._publish(
                        LIMIT_EXCEEDED,
                        session,
                        turn,
                        kind="session_token_limit",
                        estimated=estimated,
                        limit=settings.session_token_limit,
                    )
                    yield StreamEvent(
                        type=EventType.SESSION_TOKEN_LIMIT,
                        value={"estimated": estimated, "limit": settings.session_token_limit},
                    )
                    yield await self._finish(session, turn, FinishReason.SESSION_TOKEN_LIMIT)
                    return

            # INJECTING
            self._enter(turn, TurnState.INJECTING)
            session.tracker.update(session.history)
            if request is not None and not is_continuation and not request.is_tool_result:
                reminders = await self._system_reminders(session, turn)
                if reminders:
                    request = Content(
                        request.role,
                        (*(TextPart(r, auxiliary=True) for r in reminders), *request.parts),
                    )

            # STREAMING
            self._enter(turn, TurnState.STREAMING)
            if request is not None:
                session.history.append(request)
                request = None
            turn.exchanges += 1
            budget -= 1

            text_parts: list[str] = []
            tool_calls: list[ToolCallPart] = []
            failed = False
            cancelled = False
            tools = self._dispatcher.tool_definitions() if self._dispatcher else None
            stream = self._client.stream(
                session.system_instruction, tools or None, session.history.snapshot(), cancel
            )
            async with contextlib.aclosing(stream):
                while True:
                    try:
                        event = await await_cancellable(_next_event(stream), cancel)
                    except OperationCancelled:
                        cancelled = True
                        break
                    if event is None:
                        break
                    if cancel is not None and cancel.is_set():
                        cancelled = True
                        break

                    # Counters move before the event is relayed
                    if event.type == EventType.TEXT_DELTA:
                        text_parts.append(event.text)
                        turn.text_parts.append(event.text)
                    elif event.type == EventType.TOOL_CALL_REQUEST and event.tool_call:
                        self._observe_tool_call(session, event.tool_call)
                        tool_calls.append(event.tool_call)
                        turn.tool_calls.append(event.tool_call)
                    elif event.type == EventType.ERROR:
                        session.tracker.record_error_encounter()
                        turn.error = event.text
                        failed = True

                    yield event
                    if failed:
                        break

            if cancelled:
                logger.info("Turn %s cancelled while streaming", turn.prompt_id)
                yield await self._finish(session, turn, FinishReason.CANCELLED)
                return
            if failed:
                logger.warning("Stream error in turn %s: %s", turn.prompt_id, turn.error)
                yield await self._finish(session, turn, FinishReason.ERROR)
                return

            parts: list[Part] = []
            if text_parts:
                parts.append(TextPart("".join(text_parts)))
            parts.extend(tool_calls)
            session.history.append(Content(Role.MODEL, tuple(parts)))

            # TOOL_DISPATCH
            if tool_calls:
                if self._dispatcher is None:
                    turn.pending_tool_calls = list(tool_calls)
                    yield await self._finish(session, turn, FinishReason.COMPLETED)
                    return

                self._enter(turn, TurnState.TOOL_DISPATCH)
                results: list[ToolResultPart] = []
                async for event in self._dispatch_tools(session, tool_calls, results, cancel):
                    yield event
                session.history.append(Content.tool_results(results))

                if cancel is not None and cancel.is_set():
                    yield await self._finish(session, turn, FinishReason.CANCELLED)
                    return
                is_continuation = True
                continue

            # NEXT_SPEAKER_CHECK
            self._enter(turn, TurnState.NEXT_SPEAKER_CHECK)
            if cancel is not None and cancel.is_set():
                yield await self._finish(session, turn, FinishReason.CANCELLED)
                return
            if settings.skip_next_speaker_check:
                yield await self._finish(session, turn, FinishReason.COMPLETED)
                return

            decision = await check_next_speaker(
                self._client, session.history.snapshot(), settings, cancel
            )
            if cancel is not None and cancel.is_set():
                yield await self._finish(session, turn, FinishReason.CANCELLED)
                return
            await self._publish(
                NEXT_SPEAKER,
                session,
                turn,
                next_speaker=decision.next_speaker if decision else None,
            )
            if decision is None or decision.next_speaker != "model":
                yield await self._finish(session, turn, FinishReason.COMPLETED)
                return

            # CONTINUING
            self._enter(turn, TurnState.CONTINUING)
            request = Content(Role.USER, (TextPart(CONTINUE_PROMPT, auxiliary=True),))
            is_continuation = True

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _compress(
        self, session: ChatSession, *, forced: bool, cancel: asyncio.Event | None
    ) -> CompressionOutcome:
        outcome = await session.compressor.maybe_compress(
            session.history.snapshot(), forced=forced, cancel=cancel
        )
        if outcome.status == CompressionStatus.COMPRESSED and outcome.new_history is not None:
            session.history = History(outcome.new_history)
            session.tracker.reset()
            session.system_instruction = core_system_prompt(self._settings)
            await self._publish(
                CHAT_COMPRESSED,
                session,
                forced=forced,
                tokens_before=outcome.tokens_before,
                tokens_after=outcome.tokens_after,
            )
        elif outcome.status == CompressionStatus.FAILED:
            await self._publish(COMPRESSION_FAILED, session, forced=forced, reason=outcome.reason)
        return outcome

    def _capabilities(self) -> Capabilities:
        names = self._dispatcher.tool_names() if self._dispatcher else frozenset()
        return Capabilities(tool_names=names, subagents=tuple(self._settings.subagents))

    async def _system_reminders(self, session: ChatSession, turn: Turn) -> list[str]:
        """Auxiliary context prepended to a user-initiated request."""
        settings = self._settings
        capabilities = self._capabilities()
        reminders: list[str] = []

        if capabilities.subagents and capabilities.has_tool(settings.delegation_tool_name):
            reminders.append(
                subagent_reminder(capabilities.subagents, settings.delegation_tool_name)
            )

        memory = await self._load_project_memory()
        if memory:
            reminders.append(project_memory_reminder(memory, Path(settings.memory_file).name))

        if settings.approval_mode == "plan":
            reminders.append(plan_mode_reminder(settings.plan_only))

        features = sorted(capabilities.tool_names) + list(capabilities.subagents)
        if features:
            reminders.append(runtime_tools_reminder(features))

        metrics = session.tracker.metrics
        decision = self._policy.evaluate(metrics)
        if decision.inject:
            targeted = self._policy.targeted_reminder(metrics)
            reminders.append(reinforcement_reminder(core_system_prompt(settings)))
            if targeted:
                reminders.append(targeted)
            self._policy.record_injection(metrics, decision)
            session.injections += 1
            await self._publish(
                INJECTION,
                session,
                turn,
                turn_count=metrics.turn_count,
                triggers=[str(t) for t in decision.triggers],
                targeted=targeted is not None,
            )
        elif decision.suppressed_by_floor:
            logger.debug(
                "Injection suppressed by floor (%d turns since last)",
                metrics.turns_since_last_injection,
            )
        return reminders

    async def _load_project_memory(self) -> str | None:
        path = Path(self._settings.memory_file)
        if not self._settings.memory_file:
            return None
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug("Project memory %s unreadable: %s", path, e)
            return None
        return text.strip() or None

    def _observe_tool_call(self, session: ChatSession, call: ToolCallPart) -> None:
        if call.name == self._settings.delegation_tool_name:
            session.tracker.record_delegation()
        else:
            session.tracker.record_tool_usage()

    async def _dispatch_tools(
        self,
        session: ChatSession,
        calls: list[ToolCallPart],
        results: list[ToolResultPart],
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[StreamEvent]:
        """Run each call in order, appending to results.

        Once cancelled, the remaining calls get synthetic cancelled results
        so the history keeps its call/result pairing.
        """
        assert self._dispatcher is not None
        for call in calls:
            if cancel is not None and cancel.is_set():
                results.append(
                    ToolResultPart(call.id, call.name, CANCELLED_TOOL_OUTPUT, is_error=True)
                )
                continue
            try:
                output, is_error = await await_cancellable(
                    self._dispatcher.dispatch(call.name, call.args), cancel
                )
            except OperationCancelled:
                output, is_error = CANCELLED_TOOL_OUTPUT, True
            result = ToolResultPart(call.id, call.name, output, is_error=is_error)
            results.append(result)
            if cancel is not None and cancel.is_set():
                continue
            if is_error:
                session.tracker.record_error_encounter()
            yield StreamEvent(type=EventType.TOOL_CALL_RESPONSE, tool_call=call, tool_result=result)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _enter(turn: Turn, state: TurnState) -> None:
        logger.debug("Turn %s: %s -> %s", turn.prompt_id, turn.state, state)
        turn.state = state

    async def _finish(self, session: ChatSession, turn: Turn, reason: FinishReason) -> StreamEvent:
        self._enter(turn, TurnState.DONE)
        turn.finish_reason = reason
        await self._publish(
            TURN_FINISHED,
            session,
            turn,
            reason=str(reason),
            exchanges=turn.exchanges,
            tool_calls=len(turn.tool_calls),
        )
        return StreamEvent(type=EventType.FINISHED, turn=turn, value={"reason": reason})

    async def _publish(
        self, event_type: str, session: ChatSession, turn: Turn | None = None, **data: Any
    ) -> None:
        if self._bus is None:
            return
        await self._bus.emit(
            Event(
                type=event_type,
                session_id=session.session_id,
                data=data,
                prompt_id=turn.prompt_id if turn else session.last_prompt_id,
            )
        )
