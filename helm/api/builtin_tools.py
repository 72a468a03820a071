"""Built-in workspace tools: bash, read_file, write_file.

Every path is confined to Settings.workspace_dir.  Failures come back as
error results (isError) so the orchestrator can count them.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from helm.api.tools import ToolDispatcher, mcp_response
from helm.config import Settings

logger = logging.getLogger(__name__)

_MAX_BASH_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024
_MAX_FILE_SIZE = 1 * 1024 * 1024


def _error(text: str) -> dict[str, Any]:
    response = mcp_response(text)
    response["isError"] = True
    return response


def _truncate(text: str, label: str) -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"
    return text


def resolve_in_workspace(path_str: str, workspace_dir: str) -> Path:
    """Resolve path_str under workspace_dir.

    Raises ValueError if the result escapes the workspace.
    """
    workspace = Path(workspace_dir).resolve()
    candidate = Path(path_str)
    target = candidate.resolve() if candidate.is_absolute() else (workspace / candidate).resolve()
    if not target.is_relative_to(workspace):
        raise ValueError(f"Path '{path_str}' is outside the workspace '{workspace}'")
    return target


async def bash_tool(command: str, timeout: int = 30, *, workspace_dir: str) -> dict[str, Any]:
    """Run a shell command with the workspace as working directory.

    A non-zero exit status is reported as an error result.
    """
    effective_timeout = max(1, min(timeout, _MAX_BASH_TIMEOUT))
    workspace = Path(workspace_dir)
    workspace.mkdir(parents=True, exist_ok=True)

    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workspace),
        )
    except OSError as e:
        return _error(f"Error starting command: {e}")

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        return _error(f"Command timed out after {effective_timeout}s.\nCommand: {command}")
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    stdout_text = _truncate(stdout.decode("utf-8", errors="replace"), "output")
    stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), "stderr")

    parts = []
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
        return _error("\n".join(parts))
    return mcp_response("\n".join(parts) if parts else "(no output)")


async def read_file_tool(
    path: str, offset: int = 0, limit: int = 0, *, workspace_dir: str
) -> dict[str, Any]:
    """Read a workspace file, optionally a line window (limit 0 = to the end)."""
    try:
        target = resolve_in_workspace(path, workspace_dir)
    except ValueError as e:
        return _error(str(e))

    if not target.exists():
        return _error(f"File not found: {path}")
    if not target.is_file():
        return _error(f"Not a file: {path}")

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE and not (offset or limit):
        return _error(
            f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
            "Use offset/limit to read portions."
        )

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    if offset > 0 or limit > 0:
        lines = content.splitlines(keepends=True)[offset:]
        if limit > 0:
            lines = lines[:limit]
        content = "".join(lines)
    return mcp_response(content or "(empty file)")


async def write_file_tool(path: str, content: str, *, workspace_dir: str) -> dict[str, Any]:
    """Write a workspace file, creating parent directories."""
    try:
        target = resolve_in_workspace(path, workspace_dir)
    except ValueError as e:
        return _error(str(e))

    try:
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    except OSError as e:
        logger.warning("write_file failed for %s: %s", target, e)
        return _error(f"Error writing file: {e}")
    return mcp_response(f"File written: {target}\nSize: {len(content):,} bytes")


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

BASH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Execute a shell command in the workspace directory",
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute"},
        "timeout": {
            "type": "integer",
            "description": "Timeout in seconds (default 30, max 300)",
            "default": 30,
            "minimum": 1,
            "maximum": _MAX_BASH_TIMEOUT,
        },
    },
    "required": ["command"],
}

READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Read a file from the workspace directory",
    "properties": {
        "path": {"type": "string", "description": "File path relative to the workspace"},
        "offset": {"type": "integer", "description": "First line to read (0-indexed)", "default": 0, "minimum": 0},
        "limit": {"type": "integer", "description": "Number of lines to read (0 = all)", "default": 0, "minimum": 0},
    },
    "required": ["path"],
}

WRITE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Write content to a file in the workspace directory",
    "properties": {
        "path": {"type": "string", "description": "File path relative to the workspace"},
        "content": {"type": "string", "description": "Content to write to the file"},
    },
    "required": ["path", "content"],
}


def register_builtin_tools(dispatcher: ToolDispatcher, settings: Settings) -> None:
    """Register bash, read_file and write_file bound to settings.workspace_dir.

    In plan mode only read_file is registered.
    """
    workspace = settings.workspace_dir

    async def _bash(command: str, timeout: int = 30) -> dict[str, Any]:
        return await bash_tool(command, timeout, workspace_dir=workspace)

    async def _read_file(path: str, offset: int = 0, limit: int = 0) -> dict[str, Any]:
        return await read_file_tool(path, offset, limit, workspace_dir=workspace)

    async def _write_file(path: str, content: str) -> dict[str, Any]:
        return await write_file_tool(path, content, workspace_dir=workspace)

    dispatcher.register("read_file", _read_file, READ_FILE_SCHEMA)
    if settings.approval_mode == "plan":
        logger.info("Plan mode: registering read-only tools")
        return
    dispatcher.register("bash", _bash, BASH_SCHEMA)
    dispatcher.register("write_file", _write_file, WRITE_FILE_SCHEMA)
