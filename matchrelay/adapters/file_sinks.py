"""
File-backed fallback sinks.

- JsonLinesQueue: append-only spool acting as the secondary (dead-letter) queue
- FileObjectSink: one file per key, written atomically, with a metadata sidecar

Filesystem errors surface as TransientError(CONNECTION) so the fallback
tier retries them like any other unreachable store.
"""

import asyncio
import json
import os
import time
import uuid
from pathlib import Path
from typing import Any, Mapping

from matchrelay.errors import ErrorKind, PermanentError, TransientError
from matchrelay.infrastructure.logging import get_logger

logger = get_logger(__name__)


class JsonLinesQueue:
    """
    Secondary queue persisted as JSON lines.

    Ensures a failed event survives a process restart and can be replayed
    with drain().
    """

    def __init__(self, file_path: Path | str):
        self.file_path = Path(file_path)

    def _append(self, line: str) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())

    async def enqueue(self, message: Mapping[str, Any]) -> str:
        """Append one message. Returns the message id."""
        message_id = f"msg-{uuid.uuid4()}"
        line = json.dumps(
            {"message_id": message_id, "enqueued_at": time.time(), "body": dict(message)},
            default=str,
        )
        try:
            await asyncio.to_thread(self._append, line)
        except OSError as e:
            raise TransientError(
                f"Queue spool {self.file_path} not writable: {e}",
                ErrorKind.CONNECTION,
                "secondary-queue",
            ) from e

        logger.debug("Message enqueued", message_id=message_id, path=str(self.file_path))
        return message_id

    def drain(self) -> list[dict[str, Any]]:
        """
        Read every spooled message and truncate the spool.

        Corrupted lines are skipped and logged.
        """
        if not self.file_path.exists():
            return []

        claimed = self.file_path.with_suffix(f".draining.{int(time.time())}")
        self.file_path.replace(claimed)

        messages = []
        with open(claimed, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    messages.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.error("Corrupted queue line skipped", line=line_no, error=str(e))
        claimed.unlink()

        logger.info("Queue drained", count=len(messages), path=str(self.file_path))
        return messages


class FileObjectSink:
    """Durable object store rooted at a directory."""

    METADATA_SUFFIX = ".meta.json"

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise PermanentError(f"Object key escapes sink root: {key!r}", ErrorKind.VALIDATION, "durable-store")
        return path

    def _write(self, path: Path, data: bytes, metadata: Mapping[str, str]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)

        temp_path = path.with_suffix(path.suffix + ".tmp")
        with open(temp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        temp_path.replace(path)

        meta_path = path.with_name(path.name + self.METADATA_SUFFIX)
        with open(meta_path, "w", encoding="utf-8") as f:
            json.dump({**metadata, "size_bytes": len(data)}, f)

    async def put(self, key: str, data: bytes, metadata: Mapping[str, str]) -> None:
        """
        Store data under key.

        Uses atomic write (write to temp, then rename) to prevent corruption.
        The write runs in a worker thread so fsync does not stall the loop.
        """
        path = self._path_for(key)
        try:
            await asyncio.to_thread(self._write, path, data, metadata)
        except OSError as e:
            raise TransientError(
                f"Object store write failed for {key}: {e}",
                ErrorKind.CONNECTION,
                "durable-store",
            ) from e

        logger.info("Object stored", key=key, size_bytes=len(data))

    async def get(self, key: str) -> bytes:
        """Read back a stored object."""
        return await asyncio.to_thread(self._path_for(key).read_bytes)

    async def get_metadata(self, key: str) -> dict[str, Any]:
        path = self._path_for(key)
        with open(path.with_name(path.name + self.METADATA_SUFFIX), "r", encoding="utf-8") as f:
            return json.load(f)
