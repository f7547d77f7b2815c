"""Atomic JSON snapshots of engine state.

The snapshot is one document ``{schemaVersion, tickets, pendingWagers,
idempotency}``. Writes go to a temp file that is fsynced and renamed over the
target, so a crash leaves either the old or the new snapshot on disk.
"""

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .errors import PersistenceError

log = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as fh:
        fh.write(text)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, path)


class SnapshotStore:
    def __init__(
        self,
        path: Path,
        build_snapshot: Callable[[], Dict[str, Any]],
        *,
        debounce_ms: int = 250,
    ) -> None:
        self.path = Path(path)
        self.quarantine_path = self.path.with_name(self.path.name + ".quarantine.json")
        self._build = build_snapshot
        self._debounce_s = debounce_ms / 1000.0
        self._lock = asyncio.Lock()
        self._pending: Optional[asyncio.TimerHandle] = None
        self._tasks: set = set()

    def schedule(self) -> None:
        """Coalesce mutations into one write after the debounce window."""
        if self._pending is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop yet (start-up restore); the engine flushes explicitly
            return
        self._pending = loop.call_later(self._debounce_s, self._fire)

    def _fire(self) -> None:
        self._pending = None
        task = asyncio.ensure_future(self._flush_logged())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _flush_logged(self) -> None:
        try:
            await self.flush()
        except PersistenceError as exc:
            log.error("debounced snapshot failed: %s", exc)

    async def flush(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        async with self._lock:
            document = dict(self._build())
            document["schemaVersion"] = SCHEMA_VERSION
            document["savedAt"] = time.time()
            try:
                text = json.dumps(document, indent=2, sort_keys=True)
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, _write_atomic, self.path, text)
            except (OSError, TypeError, ValueError) as exc:
                raise PersistenceError(f"failed to write {self.path}: {exc}") from exc

    async def close(self) -> None:
        await self.flush()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def load(self) -> Optional[Dict[str, Any]]:
        """Read the snapshot; an unreadable file is set aside, never deleted."""
        if not self.path.exists():
            return None
        try:
            document = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            aside = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time())}")
            log.error("snapshot %s unreadable (%s); moved to %s", self.path, exc, aside)
            try:
                os.replace(self.path, aside)
            except OSError as move_exc:
                raise PersistenceError(f"cannot set aside corrupt snapshot: {move_exc}") from move_exc
            return None
        if not isinstance(document, dict):
            raise PersistenceError(f"snapshot {self.path} is not an object")
        version = document.get("schemaVersion")
        if version != SCHEMA_VERSION:
            raise PersistenceError(f"unsupported snapshot schema {version!r}")
        return document

    def quarantine(self, records: List[dict]) -> None:
        if not records:
            return
        existing: List[dict] = []
        if self.quarantine_path.exists():
            try:
                existing = json.loads(self.quarantine_path.read_text(encoding="utf-8"))
            except ValueError:
                log.warning("quarantine file %s unreadable; starting a new one", self.quarantine_path)
        stamped = [dict(r, quarantinedAt=time.time()) for r in records]
        try:
            _write_atomic(self.quarantine_path, json.dumps(existing + stamped, indent=2, default=str))
        except OSError as exc:
            raise PersistenceError(f"failed to write quarantine file: {exc}") from exc
        log.warning("quarantined %d snapshot record(s) to %s", len(records), self.quarantine_path)
