from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from filelock import AsyncFileLock

logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    """Replace ``path`` with ``data`` so readers never see a partial file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class JsonDocument:
    """One JSON object on disk, rewritten atomically.

    Readers and writers in any process serialize on ``<file>.lock``. The lock
    is awaited off the event loop, so a coordinator waiting for another one
    keeps serving its own tasks. Callers doing read-modify-write should hold
    :meth:`transaction` so no update is lost between the read and the write.
    """

    def __init__(self, path: Path, lock_timeout: float = 30.0):
        self.path = Path(path)
        self.lock_timeout = lock_timeout

    def _lock(self) -> AsyncFileLock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return AsyncFileLock(str(self.path) + ".lock", timeout=self.lock_timeout)

    def _read_unlocked(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        text = self.path.read_text()
        if not text.strip():
            return {}
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not contain a JSON object")
        return data

    async def read(self) -> dict[str, Any]:
        async with self._lock():
            return self._read_unlocked()

    async def write(self, data: dict[str, Any]) -> None:
        async with self._lock():
            write_json_atomic(self.path, data)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[dict[str, Any]]:
        """Yield the current document; write it back if the block succeeds."""
        async with self._lock():
            data = self._read_unlocked()
            yield data
            write_json_atomic(self.path, data)


def ensure_state_dir(state_dir: Path) -> None:
    """Create the state directory and keep its contents out of git."""
    state_dir.mkdir(parents=True, exist_ok=True)
    ignore = state_dir / ".gitignore"
    if not ignore.exists():
        ignore.write_text("*\n")
        logger.debug("Wrote %s", ignore)
