"""Session recorder -- appends every bus event to a per-session JSONL file.

Listens to: all events (wildcard).  One line per event, written from a
worker thread so the bus loop never blocks on disk.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path

from helm.events import SESSION_ENDED, Event, EventBus

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


class SessionRecorder:
    """Writes lifecycle events to <record_dir>/<session_id>.jsonl."""

    def __init__(self, bus: EventBus, record_dir: str | Path):
        self._dir = Path(record_dir)
        self._lock = asyncio.Lock()
        self.written = 0
        bus.on_any(self.on_event)

    def path_for(self, session_id: str) -> Path:
        return self._dir / f"{_UNSAFE.sub('_', session_id) or 'session'}.jsonl"

    async def on_event(self, event: Event) -> None:
        line = json.dumps(event.to_dict(), default=str)
        path = self.path_for(event.session_id)
        async with self._lock:
            await asyncio.to_thread(self._append, path, line)
            self.written += 1
        if event.type == SESSION_ENDED:
            logger.info("Session %s recorded to %s", event.session_id, path)

    def _append(self, path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
