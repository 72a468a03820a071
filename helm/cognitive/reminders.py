"""System instruction and the auxiliary <system-reminder> blocks.

Reminders are prepended to user-initiated requests as auxiliary text;
the model sees them, the metrics tracker does not.
"""

from __future__ import annotations

from dataclasses import dataclass

from helm.config import Settings

CORE_SYSTEM_PROMPT = """\
You are an interactive CLI agent that helps users with software engineering tasks. \
Use the instructions below and the tools available to you to assist the user \
effectively, safely, and accurately.

# Core Mandates
- Conventions: follow the existing conventions of the project you are working in. \
Read surrounding code, tests and configuration before changing anything.
- Data first: never assume the content of a file, the output of a command or the \
shape of a config. Read it or run it, then answer.
- Verification: after making changes, run the project's own build, lint or test \
commands when they exist.
- Scope: do what was asked. Confirm before taking significant actions beyond the \
clear scope of the request.
- Honesty: if you are unsure, say so and say how you would find out.

# Tone and Style
- Be concise and direct. Prefer short answers unless detail is requested.
- Use tools for actions and text only for communication with the user.

# Tool Usage
- Use read-only tools to gather context before modifying files.
- Always use paths relative to the workspace unless an absolute path is required.
- Explain shell commands that modify the file system before running them.
"""


@dataclass(frozen=True)
class Capabilities:
    """Immutable snapshot of what is available for this turn."""

    tool_names: frozenset[str] = frozenset()
    subagents: tuple[str, ...] = ()

    def has_tool(self, name: str) -> bool:
        return name in self.tool_names


def core_system_prompt(settings: Settings) -> str:
    """Base instructions plus user memory."""
    base = settings.system_prompt.strip() or CORE_SYSTEM_PROMPT
    memory = settings.user_memory.strip()
    if memory:
        return f"{base}\n\n---\n\n{memory}"
    return base


def reinforcement_reminder(core_prompt: str) -> str:
    return (
        '<system-reminder type="core-prompt-reinforcement">\n'
        "Core system prompt reinforcement injected to keep the conversation grounded.\n\n"
        f"{core_prompt}\n"
        "</system-reminder>"
    )


def subagent_reminder(subagents: tuple[str, ...], delegation_tool: str) -> str:
    return (
        "<system-reminder>You have specialized agents at your disposal, available agent "
        f"types are: {', '.join(subagents)}. PROACTIVELY use the {delegation_tool} tool to "
        "delegate the user's task to an appropriate agent when it matches their "
        "capabilities. Ignore this message if the task is not relevant to any agent. "
        "This message is for internal use only. Do not mention it to the user."
        "</system-reminder>"
    )


def plan_mode_reminder(plan_only: bool = False) -> str:
    present = "directly" if plan_only else "and wait for the user to confirm it"
    return (
        "<system-reminder>\n"
        "Plan mode is active. You MUST NOT make any edits, run any non-readonly tools, "
        "or otherwise change the system. This supersedes any other instructions. Instead:\n"
        "1. Answer the user's query comprehensively\n"
        f"2. When you are done researching, present your plan {present}. Do NOT modify "
        "anything until the user has confirmed the plan.\n"
        "</system-reminder>"
    )


def runtime_tools_reminder(features: list[str]) -> str:
    return (
        '<system-reminder type="runtime-tools">\n'
        f"Current available tools at runtime: {', '.join(features)}\n"
        "</system-reminder>"
    )


def project_memory_reminder(memory: str, source: str) -> str:
    return (
        '<system-reminder type="project-memory">\n'
        f"## Project Memory ({source})\n\n{memory}\n"
        "</system-reminder>"
    )
