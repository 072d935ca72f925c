"""Subprocess output utilities.

- CappedOutput: append-only byte buffer with a hard size cap
- capture_process_output: concurrent stdout/stderr draining into capped buffers
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from compile_sandbox import constants

if TYPE_CHECKING:
    from compile_sandbox.platform_utils import ProcessWrapper


class CappedOutput:
    """Append-only byte buffer that keeps at most ``limit`` bytes.

    Bytes past the limit are counted and dropped, never stored, so a
    program printing gigabytes costs at most ``limit`` bytes of memory.
    Owned by a single job task; no locking.
    """

    __slots__ = ("_data", "dropped", "limit")

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._data = bytearray()
        self.dropped = 0

    def append(self, chunk: bytes) -> None:
        room = self.limit - len(self._data)
        if room >= len(chunk):
            self._data += chunk
            return
        if room > 0:
            self._data += chunk[:room]
        self.dropped += len(chunk) - max(room, 0)

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def __len__(self) -> int:
        return len(self._data)

    def getvalue(self) -> bytes:
        return bytes(self._data)

    def text(self) -> str:
        """Decode as UTF-8; a multi-byte sequence cut by the cap becomes U+FFFD."""
        return self._data.decode("utf-8", errors="replace")


async def _drain(stream: asyncio.StreamReader | None, sink: CappedOutput) -> None:
    """Read a pipe until EOF. Keeps reading past the cap so the writer never blocks."""
    if stream is None:
        return
    while chunk := await stream.read(constants.READ_CHUNK_SIZE):
        sink.append(chunk)


async def capture_process_output(
    process: ProcessWrapper,
    stdout_sink: CappedOutput,
    stderr_sink: CappedOutput,
) -> None:
    """Drain stdout and stderr concurrently until both pipes reach EOF.

    Concurrent reading prevents the 64KB pipe deadlock: a child blocked
    writing to a full stderr pipe would otherwise never close stdout.

    EOF arrives when every process holding the write end has exited, which
    includes grandchildren that inherited the pipes. Callers bound this with
    a timeout and kill the process group when it expires.
    """
    async with asyncio.TaskGroup() as tg:
        tg.create_task(_drain(process.stdout, stdout_sink))
        tg.create_task(_drain(process.stderr, stderr_sink))

