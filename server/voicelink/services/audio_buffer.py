"""Buffer for captured microphone audio between turn boundaries."""
from __future__ import annotations

import base64
import logging
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def combine_base64_chunks(chunks: Iterable[str]) -> str:
    """Decode each chunk, join the raw bytes and re-encode once.

    Joining the base64 text directly would leave padding in the middle of
    the payload.
    """

    return base64.b64encode(b"".join(base64.b64decode(chunk) for chunk in chunks)).decode("ascii")


class AudioTurnBuffer:
    """Ordered base64 PCM fragments collected since the last release."""

    def __init__(self) -> None:
        self._chunks: list[str] = []

    def __len__(self) -> int:
        return len(self._chunks)

    def append(self, fragment: str) -> None:
        self._chunks.append(fragment)
        logger.debug(f"Buffered audio chunk (total chunks: {len(self._chunks)})")

    def release(self) -> Optional[str]:
        """Return the whole turn as one base64 payload, or None if empty."""

        if not self._chunks:
            return None
        combined = combine_base64_chunks(self._chunks)
        logger.info(f"Released combined audio ({len(self._chunks)} chunks, {len(combined)} base64 chars)")
        self._chunks = []
        return combined

    def clear(self) -> None:
        if self._chunks:
            logger.info(f"Cleared audio buffer ({len(self._chunks)} chunks dropped)")
        self._chunks = []
