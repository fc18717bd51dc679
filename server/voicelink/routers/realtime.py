"""Browser relay for realtime voice sessions."""
from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from ..services.credentials import CredentialCache, CredentialFetcher, IssuanceFailure
from ..services.event_router import EventRouter
from ..services.live_session import (
    Connector,
    ConnectionFailure,
    LiveSessionController,
    ProtocolViolation,
    SessionState,
    default_connector,
)
from .credentials import get_fetcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realtime", tags=["realtime"])


def get_connector() -> Connector:
    return default_connector


class BrowserBridge:
    """Playback and transcript sinks that forward everything to the browser.

    Messages go through an outbox drained by ``pump`` so the sinks never
    await the browser socket. A ``None`` entry closes the socket once
    everything queued before it has been sent.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._outbox: asyncio.Queue[Optional[dict[str, Any]]] = asyncio.Queue()
        self._close_code: Optional[int] = None
        self._relaying = False

    def notify(self, payload: dict[str, Any]) -> None:
        self._outbox.put_nowait(payload)

    async def pump(self) -> None:
        while True:
            payload = await self._outbox.get()
            try:
                if payload is None:
                    await self._websocket.close(code=self._close_code or 1000)
                else:
                    await self._websocket.send_text(json.dumps(payload))
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                kind = "close" if payload is None else payload.get("type")
                logger.debug(f"Dropping {kind} message for closed browser socket: {exc}")
            finally:
                self._outbox.task_done()

    async def flush(self) -> None:
        await self._outbox.join()

    def close(self, code: int) -> None:
        if self._close_code is None:
            self._close_code = code
            self._outbox.put_nowait(None)

    def mark_relaying(self) -> None:
        self._relaying = True

    async def play(self, pcm: bytes) -> None:
        self.notify({"type": "audio", "data": base64.b64encode(pcm).decode("ascii")})

    def append_input(self, text: str) -> None:
        self.notify({"type": "transcript_append", "role": "user", "text": text})

    def append_output(self, text: str) -> None:
        self.notify({"type": "transcript_append", "role": "model", "text": text})

    def start_input_paragraph(self) -> None:
        self.notify({"type": "transcript_paragraph", "role": "user"})

    def start_output_paragraph(self) -> None:
        self.notify({"type": "transcript_paragraph", "role": "model"})

    async def session_closed(self, error: Optional[BaseException]) -> None:
        payload: dict[str, Any] = {"type": "session_closed"}
        if error is not None:
            payload["error"] = str(error)
        self.notify(payload)
        # A session that never opened is closed by the gateway after its error report.
        if self._relaying:
            self.close(1000 if error is None else 1011)


async def _handle_client_message(
    controller: LiveSessionController, bridge: BrowserBridge, message: Any
) -> None:
    if not isinstance(message, dict):
        bridge.notify({"type": "error", "error": "Expected a JSON object."})
        return

    kind = message.get("type")
    if kind == "audio":
        data = message.get("data")
        if not isinstance(data, str) or not data:
            bridge.notify({"type": "error", "error": "Audio message without data."})
            return
        try:
            controller.buffer_audio(data)
        except ProtocolViolation as exc:
            bridge.notify({"type": "error", "error": str(exc)})
    elif kind == "commit_audio":
        try:
            sent = await controller.send_turn()
        except (ProtocolViolation, ConnectionFailure) as exc:
            bridge.notify({"type": "error", "error": str(exc)})
        else:
            bridge.notify({"type": "client_info", "info": "turn_sent" if sent else "turn_empty"})
    elif kind == "clear_audio":
        controller.clear_audio()
    else:
        bridge.notify({"type": "error", "error": f"Unknown message type: {kind}"})


@router.websocket("/voice")
async def realtime_voice_gateway(
    websocket: WebSocket,
    fetcher: CredentialFetcher = Depends(get_fetcher),
    connector: Connector = Depends(get_connector),
) -> None:
    """Run one Gemini Live session on behalf of the connected browser.

    The browser streams base64 PCM fragments as ``audio`` messages and ends
    each utterance with ``commit_audio``; model audio and transcripts come
    back as JSON messages.
    """

    await websocket.accept()
    bridge = BrowserBridge(websocket)
    pump = asyncio.create_task(bridge.pump())
    controller = LiveSessionController(
        CredentialCache(fetcher),
        EventRouter(bridge, bridge),
        connector=connector,
        on_closed=bridge.session_closed,
    )
    label = controller.session_id

    try:
        try:
            await controller.open()
        except (IssuanceFailure, ConnectionFailure) as exc:
            logger.error(f"[Session {label}] Failed to open realtime session: {exc}")
            bridge.notify({"type": "error", "error": str(exc)})
            bridge.close(1011)
            await bridge.flush()
            return

        bridge.mark_relaying()
        bridge.notify({"type": "session_ready", "session_id": label})
        while controller.state is not SessionState.CLOSED:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except ValueError:
                bridge.notify({"type": "error", "error": "Invalid JSON."})
                continue
            await _handle_client_message(controller, bridge, message)
    except WebSocketDisconnect:
        logger.info(f"[Session {label}] Browser disconnected")
    finally:
        await controller.close()
        pump.cancel()
        try:
            await pump
        except asyncio.CancelledError:
            pass
