"""UTF-8 carry-over buffer for PTY output."""

from __future__ import annotations

import codecs


class Utf8ChunkBuffer:
    """Turns arbitrary byte chunks into valid text without splitting characters.

    A multi-byte sequence that straddles two reads is held back (at most
    three bytes) until the rest of it arrives. Bytes that can never form a
    valid sequence are decoded as U+FFFD so the stream keeps moving.

    Not thread-safe; each output pump owns its own buffer.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, data: bytes) -> str:
        """Append ``data`` and return the longest decodable text so far.

        Returns an empty string when everything received is still an
        incomplete prefix.
        """
        return self._decoder.decode(data, final=False)

    def flush(self) -> str:
        """Emit whatever is still pending (at EOF) and reset."""
        text = self._decoder.decode(b"", final=True)
        self._decoder.reset()
        return text

    @property
    def pending(self) -> bytes:
        """Bytes held back waiting for the rest of a character."""
        buffered, _ = self._decoder.getstate()
        return buffered
