"""Bounded text buffers for terminal output.

Two truncation policies are used on purpose:

* ``BoundedBuffer`` keeps the OLDEST output and refuses data past its cap.
  The session manager uses it so that the stored record of a command (what
  gets audited) always starts at the beginning of the run.
* ``TailBuffer`` keeps the NEWEST output and drops from the front. The
  streaming handler uses it for live views where the latest lines matter.

Sizes are measured in characters of decoded text.
"""

from __future__ import annotations

from terminal_sandbox.core.config import OUTPUT_BUFFER_MAX_SIZE

TRUNCATION_MESSAGE = "\n[...output truncated at 1MB size limit...]\n"


class BoundedBuffer:
    """Append-only keep-oldest buffer.

    Appends go to a chunk list with a running size counter. Chunks are joined
    every ``flush_every`` appends to bound list growth. Once the cap would be
    exceeded, only the remaining capacity of the incoming chunk is kept, the
    truncation marker is appended and the buffer stops retaining data. The
    truncated flag never clears.
    """

    def __init__(
        self,
        max_size: int = OUTPUT_BUFFER_MAX_SIZE,
        marker: str = TRUNCATION_MESSAGE,
        flush_every: int = 100,
    ):
        self.max_size = max_size
        self.marker = marker
        self.flush_every = flush_every
        self._chunks: list[str] = []
        self._size = 0
        self._truncated = False
        self._released = False

    @property
    def size(self) -> int:
        """Characters of command output retained (marker excluded)."""
        return self._size

    @property
    def truncated(self) -> bool:
        return self._truncated

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    def append(self, data: str) -> bool:
        """Add ``data``. Returns False if the buffer no longer retains output."""
        if self._truncated or self._released:
            return False

        new_size = self._size + len(data)
        if new_size > self.max_size:
            keep = max(0, self.max_size - self._size)
            if keep > 0:
                self._chunks.append(data[:keep])
                self._size += keep
            self._chunks.append(self.marker)
            self._truncated = True
            self.flush()
            return False

        self._chunks.append(data)
        self._size = new_size
        if len(self._chunks) > self.flush_every:
            self.flush()
        return True

    def flush(self) -> None:
        """Collapse the chunk list into a single string."""
        if len(self._chunks) > 1:
            joined = "".join(self._chunks)
            self._chunks = [joined]

    def getvalue(self) -> str:
        self.flush()
        return self._chunks[0] if self._chunks else ""

    def release(self) -> None:
        """Drop all retained data. The buffer accepts nothing afterwards."""
        self._chunks = []
        self._size = 0
        self._released = True

    def __len__(self) -> int:
        return sum(len(chunk) for chunk in self._chunks)


class TailBuffer:
    """Keep-newest buffer that drops the oldest text past ``max_size``.

    After overflow the value is ``[...N characters truncated...]\\n`` followed
    by the last ``max_size`` characters, where N counts every character
    dropped so far.
    """

    def __init__(self, max_size: int = OUTPUT_BUFFER_MAX_SIZE):
        self.max_size = max_size
        self._text = ""
        self._dropped = 0

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def truncated(self) -> bool:
        return self._dropped > 0

    def append(self, data: str) -> None:
        text = self._text + data
        if len(text) > self.max_size:
            excess = len(text) - self.max_size
            self._dropped += excess
            text = text[excess:]
        self._text = text

    def getvalue(self) -> str:
        if self._dropped:
            return f"[...{self._dropped} characters truncated...]\n{self._text}"
        return self._text

    def __len__(self) -> int:
        return len(self.getvalue())
