"""
Concurrent send scheduler: pushes a batch of files to one authorized target.

Every file's metadata is queued on the connection up front, in batch order.
File reads then run concurrently, at most ``max_inflight_reads`` at a time,
and each frame is queued as soon as its read finishes, so frames of
different files may reach the wire in any order. A read slot is held until
its frame has been written, which bounds the bytes buffered in memory.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Sequence

from netdrops.config import MAX_CONCURRENT_FILES, MAX_INFLIGHT_READS
from netdrops.protocol.connection import Connection
from netdrops.protocol.errors import ValidationError
from netdrops.protocol.framing import encode_frame, new_file_id
from netdrops.protocol.messages import MetaMessage

logger = logging.getLogger(__name__)


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class ConcurrentSendScheduler:
    """Sends files as meta + frame pairs over one connection."""

    def __init__(
        self,
        connection: Connection,
        max_files: int = MAX_CONCURRENT_FILES,
        max_inflight_reads: int = MAX_INFLIGHT_READS,
    ) -> None:
        self._connection = connection
        self._max_files = max_files
        self._max_inflight_reads = max(1, max_inflight_reads)

    def validate(self, file_paths: Sequence[str | Path]) -> list[str]:
        """Check a batch before anything is sent; returns the paths as text."""
        paths = [os.fspath(p) for p in file_paths]
        if not paths:
            raise ValidationError("No files selected")
        if len(paths) > self._max_files:
            raise ValidationError(
                f"You can only send up to {self._max_files} files at once "
                f"({len(paths)} selected)"
            )
        missing = [p for p in paths if not os.path.isfile(p)]
        if missing:
            raise ValidationError(f"Not a readable file: {missing[0]}")
        return paths

    async def send_batch(self, target: str,
                         file_paths: Sequence[str | Path]) -> list[str]:
        """
        Send every file to ``target``.

        Returns the fileIds in batch order. Raises ValidationError, with
        nothing sent, if the batch is empty, too large or names a missing
        file. If a read or write fails the remaining files are still
        attempted and the first failure is raised afterwards.
        """
        paths = self.validate(file_paths)
        semaphore = asyncio.Semaphore(self._max_inflight_reads)
        file_ids: list[str] = []
        tasks: list[asyncio.Task] = []

        try:
            for path in paths:
                file_id = new_file_id()
                self._connection.send_message(MetaMessage(
                    file_id=file_id,
                    target=target,
                    file_name=os.path.basename(path),
                ))
                tasks.append(asyncio.create_task(
                    self._send_file(file_id, path, semaphore)
                ))
                file_ids.append(file_id)
        except Exception:
            for task in tasks:
                task.cancel()
            raise

        logger.info(f"Queued {len(file_ids)} file(s) for {target}")
        results = await asyncio.gather(*tasks, return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.error(f"{len(failures)} of {len(paths)} file(s) to {target} failed")
            raise failures[0]
        return file_ids

    async def _send_file(self, file_id: str, path: str,
                         semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            data = await asyncio.to_thread(_read_file, path)
            await self._connection.send_frame(encode_frame(file_id, data))
        logger.debug(f"Sent {os.path.basename(path)} ({len(data)} bytes) as {file_id}")
