"""Next-speaker check -- should the model keep talking after its turn?

One cheap classification call on the background model.  Any failure is
treated as "no decision" and the orchestrator stops.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, ValidationError

from helm.api.client import ModelClient
from helm.api.models import Content, Role
from helm.config import Settings
from helm.utils import OperationCancelled, await_cancellable

logger = logging.getLogger(__name__)

CHECK_PROMPT = """\
Analyze *only* the content and structure of your immediately preceding response \
(your last turn in the conversation history). Based *strictly* on that response, \
determine who should logically speak next: the 'user' or the 'model' (you).

Decision rules, in order of precedence:
1. Model continues: if your last response explicitly states an immediate next \
action *you* intend to take (e.g. "Next, I will...", "Now I'll process..."), or \
indicates an intended tool call that didn't execute, or appears incomplete or \
cut off, then the 'model' should speak next.
2. Question to user: if your last response ends with a direct question \
specifically addressed *to the user*, then the 'user' should speak next.
3. Waiting for user: if your last response completed a thought or task and \
does not meet the criteria above, then the 'user' should speak next.

Respond *only* in JSON format according to this schema:
{"reasoning": "<brief explanation>", "next_speaker": "user" | "model"}"""

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class NextSpeakerResponse(BaseModel):
    reasoning: str = ""
    next_speaker: Literal["user", "model"]


def _parse(text: str) -> NextSpeakerResponse | None:
    match = _JSON_OBJECT.search(text)
    if not match:
        return None
    try:
        return NextSpeakerResponse.model_validate(json.loads(match.group(0)))
    except (json.JSONDecodeError, ValidationError):
        return None


async def check_next_speaker(
    client: ModelClient,
    history: Sequence[Content],
    settings: Settings,
    cancel: asyncio.Event | None = None,
) -> NextSpeakerResponse | None:
    """Decide who speaks next, or None if undecidable.

    Short-circuits without a call when the answer is structural: pending
    tool results or an empty model message mean the model must go on.
    """
    if not history:
        return None

    last = history[-1]
    if last.is_tool_result:
        return NextSpeakerResponse(
            reasoning="The last message was a function response, so the model should speak next.",
            next_speaker="model",
        )
    if last.role != Role.MODEL:
        return None
    if not last.parts or (not last.tool_calls and not last.text(include_auxiliary=True).strip()):
        return NextSpeakerResponse(
            reasoning="The last message was an empty model response, so the model should speak next.",
            next_speaker="model",
        )

    request = [*history, Content.user(CHECK_PROMPT)]
    try:
        response = await await_cancellable(
            client.generate(
                "",
                request,
                model=settings.background_model,
                max_tokens=256,
            ),
            cancel,
        )
    except OperationCancelled:
        return None
    except Exception as e:
        logger.warning("Next speaker check failed: %s", e)
        return None

    decision = _parse(response.text)
    if decision is None:
        logger.warning("Next speaker check returned unparseable output: %s", response.text[:200])
        return None
    logger.debug("Next speaker: %s (%s)", decision.next_speaker, decision.reasoning)
    return decision
