"""In-memory checkpoint store: pre-mutation file snapshots per user turn."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from adjutant.errors import CheckpointError

logger = logging.getLogger(__name__)

_MAX_SNAPSHOT_BYTES = 20 * 1024 * 1024  # per snapshot_path call
_MAX_SNAPSHOT_FILES = 1000


@dataclass
class Checkpoint:
    id: str
    message_id: str
    label: str
    created_at: datetime
    snapshots: dict[str, bytes | None] = field(default_factory=dict)  # None: file did not exist

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "message_id": self.message_id,
            "label": self.label,
            "created_at": self.created_at.isoformat(),
            "files": sorted(self.snapshots),
        }


class MemoryCheckpointStore:
    """Keeps checkpoints for one session in memory.

    ``snapshot`` is first-write-wins per path, so a file edited several
    times in one turn restores to its state before the turn.
    """

    def __init__(self, max_checkpoints: int = 50) -> None:
        self._checkpoints: dict[str, Checkpoint] = {}
        self._current: Checkpoint | None = None
        self._max = max_checkpoints

    @property
    def current(self) -> Checkpoint | None:
        return self._current

    def get(self, checkpoint_id: str) -> Checkpoint | None:
        return self._checkpoints.get(checkpoint_id)

    def checkpoints(self) -> list[Checkpoint]:
        return list(self._checkpoints.values())

    def create(self, message_id: str, label: str = "") -> Checkpoint:
        cp = Checkpoint(
            id=uuid.uuid4().hex,
            message_id=message_id,
            label=label[:80],
            created_at=datetime.now(timezone.utc),
        )
        self._checkpoints[cp.id] = cp
        self._current = cp
        while len(self._checkpoints) > self._max:
            oldest = next(iter(self._checkpoints))
            del self._checkpoints[oldest]
        logger.debug("Checkpoint %s created for message %s", cp.id, message_id)
        return cp

    def snapshot(self, path: str | Path, content: str | bytes | None) -> None:
        """Record *content* as the pre-mutation state of *path*."""
        if self._current is None:
            raise RuntimeError("No open checkpoint")
        if isinstance(content, str):
            content = content.encode("utf-8")
        self._current.snapshots.setdefault(str(path), content)

    async def snapshot_path(self, path: Path) -> None:
        """Snapshot a file, or every file under a directory, from disk.

        All-or-nothing: raises CheckpointError without recording anything
        when the target is too large or unreadable.
        """
        await asyncio.to_thread(self._snapshot_sync, path)

    def _snapshot_sync(self, path: Path) -> None:
        if path.is_dir():
            files = [Path(d) / name for d, _, names in os.walk(path) for name in names]
            if len(files) > _MAX_SNAPSHOT_FILES:
                raise CheckpointError(str(path), f"directory holds more than {_MAX_SNAPSHOT_FILES} files")
        else:
            files = [path]

        captured: list[tuple[Path, bytes | None]] = []
        total = 0
        for file in files:
            if not file.exists():
                captured.append((file, None))
                continue
            try:
                total += file.stat().st_size
                if total > _MAX_SNAPSHOT_BYTES:
                    raise CheckpointError(str(path), f"more than {_MAX_SNAPSHOT_BYTES} bytes to snapshot")
                captured.append((file, file.read_bytes()))
            except OSError as e:
                raise CheckpointError(str(file), str(e)) from e

        for file, content in captured:
            self.snapshot(file, content)

    async def restore(self, checkpoint_id: str) -> list[str]:
        """Write snapshots back. Returns the restored paths.

        Raises KeyError for an unknown checkpoint.
        """
        cp = self._checkpoints.get(checkpoint_id)
        if cp is None:
            raise KeyError(checkpoint_id)
        restored = await asyncio.to_thread(self._restore_sync, cp)
        logger.info("Restored checkpoint %s (%d files)", checkpoint_id, len(restored))
        return restored

    @staticmethod
    def _restore_sync(cp: Checkpoint) -> list[str]:
        restored = []
        for raw, content in cp.snapshots.items():
            path = Path(raw)
            if content is None:
                if path.is_file():
                    path.unlink()
                    restored.append(raw)
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
            restored.append(raw)
        return restored
