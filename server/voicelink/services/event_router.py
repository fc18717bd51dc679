"""Dispatch inbound Gemini Live frames to playback and transcript sinks."""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from typing import Any, Callable, Optional, Protocol, TypeVar

from pydantic import ValidationError

try:  # pragma: no cover - fallback for script execution contexts
    from ..models.frames import Part, Transcription
except Exception:  # pragma: no cover
    from voicelink.models.frames import Part, Transcription

logger = logging.getLogger(__name__)

FrameT = TypeVar("FrameT", Part, Transcription)


class AudioPlayback(Protocol):
    async def play(self, pcm: bytes) -> None: ...


class TranscriptSink(Protocol):
    def append_input(self, text: str) -> None: ...

    def append_output(self, text: str) -> None: ...

    def start_input_paragraph(self) -> None: ...

    def start_output_paragraph(self) -> None: ...


class EventRouter:
    """Interprets one inbound frame at a time, in arrival order.

    Audio is handed to a queue drained by a single worker task so a slow
    playback never holds up the next frame.
    """

    def __init__(self, playback: AudioPlayback, transcript: TranscriptSink, *, label: str = "-") -> None:
        self._playback = playback
        self._transcript = transcript
        self._label = label
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._worker: Optional[asyncio.Task[None]] = None
        self.last_usage: Optional[dict[str, Any]] = None

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain_playback())

    async def join(self) -> None:
        """Wait until every queued audio chunk has been played."""

        await self._queue.join()

    async def aclose(self) -> None:
        """Stop playback, dropping anything still queued."""

        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def _drain_playback(self) -> None:
        while True:
            pcm = await self._queue.get()
            try:
                await self._playback.play(pcm)
            except Exception:
                logger.exception(f"[Session {self._label}] Audio playback failed")
            finally:
                self._queue.task_done()

    def route(self, raw: Any) -> None:
        """Apply every effect the frame carries.

        Each field is checked on its own, so a malformed sibling never hides
        a valid turn boundary or audio part.
        """

        if not isinstance(raw, dict):
            logger.debug(f"[Session {self._label}] Ignoring non-object frame")
            return

        content = raw.get("serverContent")
        if isinstance(content, dict):
            self._route_server_content(content)
        elif content is not None:
            logger.debug(f"[Session {self._label}] Ignoring malformed serverContent")

        usage = raw.get("usageMetadata")
        if isinstance(usage, dict):
            self.last_usage = usage
            logger.info(f"[Session {self._label}] Gemini API usage data: {usage}")

    def _route_server_content(self, content: dict[str, Any]) -> None:
        if content.get("turnComplete") is True:
            logger.info(f"[Session {self._label}] Model turn complete")
            self._notify_transcript(self._transcript.start_output_paragraph)
            self._notify_transcript(self._transcript.start_input_paragraph)

        if content.get("generationComplete") is True:
            logger.info(f"[Session {self._label}] Generation complete")

        model_turn = content.get("modelTurn")
        parts = model_turn.get("parts") if isinstance(model_turn, dict) else None
        if isinstance(parts, list):
            for raw_part in parts:
                part = self._parse(Part, raw_part)
                if part is not None:
                    self._route_part(part)

        source = self._parse(Transcription, content.get("inputTranscription"))
        if source is not None and source.text:
            self._notify_transcript(self._transcript.append_input, source.text)

        source = self._parse(Transcription, content.get("outputTranscription"))
        if source is not None and source.text:
            self._notify_transcript(self._transcript.append_output, source.text)

    def _route_part(self, part: Part) -> None:
        if part.thought is True and part.text:
            logger.info(f"[Session {self._label}] Model thought: {part.text[:100]}")

        inline = part.inline_data
        if inline is None or not inline.mime_type or not inline.data:
            return
        try:
            pcm = base64.b64decode(inline.data)
        except (binascii.Error, ValueError):
            logger.warning(f"[Session {self._label}] Skipping undecodable audio part")
            return
        logger.debug(f"[Session {self._label}] Audio chunk {inline.mime_type} ({len(pcm)} bytes)")
        self._queue.put_nowait(pcm)

    def _parse(self, model: type[FrameT], value: Any) -> Optional[FrameT]:
        if value is None:
            return None
        try:
            return model.model_validate(value)
        except ValidationError as exc:
            logger.debug(f"[Session {self._label}] Ignoring malformed {model.__name__}: {exc.error_count()} errors")
            return None

    def _notify_transcript(self, callback: Callable[..., None], *args: str) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception(f"[Session {self._label}] Transcript update failed")
