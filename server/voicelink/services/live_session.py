"""Realtime voice session against the Gemini Live websocket."""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

try:  # pragma: no cover - fallback for script execution contexts
    from ..config import settings
    from ..models.frames import setup_frame, turn_frames
    from .audio_buffer import AudioTurnBuffer
    from .credentials import Credential, CredentialCache, IssuanceFailure
    from .event_router import EventRouter
except Exception:  # pragma: no cover
    from voicelink.config import settings
    from voicelink.models.frames import setup_frame, turn_frames
    from voicelink.services.audio_buffer import AudioTurnBuffer
    from voicelink.services.credentials import Credential, CredentialCache, IssuanceFailure
    from voicelink.services.event_router import EventRouter

logger = logging.getLogger(__name__)

CLOSE_TIMEOUT_SECONDS = 5.0

Connector = Callable[[str], Awaitable[Any]]
ClosedCallback = Callable[[Optional[BaseException]], Awaitable[None]]


class SessionState(Enum):
    """Lifecycle of one realtime session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_SETUP_ACK = "awaiting_setup_ack"
    ACTIVE = "active"
    CLOSED = "closed"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.CONNECTING, SessionState.CLOSED}),
    SessionState.CONNECTING: frozenset({SessionState.AWAITING_SETUP_ACK, SessionState.CLOSED}),
    SessionState.AWAITING_SETUP_ACK: frozenset({SessionState.ACTIVE, SessionState.CLOSED}),
    SessionState.ACTIVE: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


class ProtocolViolation(RuntimeError):
    """The caller asked for something the current session state forbids."""


class ConnectionFailure(RuntimeError):
    """The websocket could not be opened, or dropped with an error."""


def default_connector(url: str) -> Awaitable[Any]:
    # Model audio frames easily exceed the 1 MiB default.
    return ws_connect(url, max_size=None)


class LiveSessionController:
    """Owns one websocket session: setup, framed audio turns, inbound dispatch.

    A controller is single use. Once ``CLOSED`` it stays closed; open a new
    controller to start another session.
    """

    def __init__(
        self,
        credentials: CredentialCache,
        router: EventRouter,
        *,
        buffer: Optional[AudioTurnBuffer] = None,
        connector: Connector = default_connector,
        live_url: Optional[str] = None,
        model: Optional[str] = None,
        voice: Optional[str] = None,
        system_instruction: Optional[str] = None,
        on_closed: Optional[ClosedCallback] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._credentials = credentials
        self._router = router
        self._buffer = buffer if buffer is not None else AudioTurnBuffer()
        self._connector = connector
        self._live_url = live_url or settings.live_url
        self._model = model or settings.live_model
        self._voice = voice or settings.live_voice
        self._system_instruction = system_instruction or settings.system_instruction
        self._on_closed = on_closed

        self._state = SessionState.IDLE
        self._ws: Any = None
        self._credential: Optional[Credential] = None
        self._reader: Optional[asyncio.Task[None]] = None
        self._send_lock = asyncio.Lock()
        self._error: Optional[BaseException] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def buffer(self) -> AudioTurnBuffer:
        return self._buffer

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise ProtocolViolation(f"Invalid session transition {self._state.value} -> {new_state.value}")
        logger.info(f"[Session {self.session_id}] State: {self._state.value} -> {new_state.value}")
        self._state = new_state

    async def open(self) -> None:
        """Connect, send the setup frame and start consuming inbound frames."""

        self._transition(SessionState.CONNECTING)

        try:
            credential = await self._credentials.get(force_refresh=not self._credentials.is_valid())
        except IssuanceFailure as exc:
            logger.error(f"[Session {self.session_id}] Unable to obtain Gemini token: {exc}")
            await self._enter_closed(exc)
            raise
        self._credential = credential

        url = f"{self._live_url}?{urlencode({'access_token': credential.token})}"
        try:
            self._ws = await self._connector(url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            logger.error(f"[Session {self.session_id}] Websocket connect failed: {exc}")
            failure = ConnectionFailure(f"Unable to connect to Gemini Live: {exc}")
            await self._enter_closed(failure)
            raise failure from exc
        logger.info(f"[Session {self.session_id}] Connected to Gemini Live API")

        self._transition(SessionState.AWAITING_SETUP_ACK)
        await self._send(
            setup_frame(model=self._model, voice=self._voice, system_instruction=self._system_instruction)
        )
        logger.info(f"[Session {self.session_id}] Sent setup message")
        # Gemini has no dedicated setup ack; later frames are the readiness signal.
        self._transition(SessionState.ACTIVE)

        self._router.start()
        self._reader = asyncio.create_task(self._receive_loop())

    def buffer_audio(self, fragment: str) -> None:
        """Buffer one base64 fragment for the next turn. Raises ProtocolViolation once CLOSED."""

        if self._state is SessionState.CLOSED:
            raise ProtocolViolation("Cannot buffer audio for a closed session")
        self._buffer.append(fragment)

    def clear_audio(self) -> None:
        self._buffer.clear()

    async def send_turn(self) -> bool:
        """Send the buffered audio as one activity-framed turn.

        Returns False when nothing was buffered. Raises ProtocolViolation
        outside ACTIVE, leaving the buffer untouched.
        """

        if self._state is not SessionState.ACTIVE:
            raise ProtocolViolation(f"Cannot send a turn while session is {self._state.value}")

        async with self._send_lock:
            if self._state is not SessionState.ACTIVE:
                raise ProtocolViolation(f"Session became {self._state.value} before the turn was sent")
            payload = self._buffer.release()
            if payload is None:
                logger.warning(f"[Session {self.session_id}] No audio chunks to send")
                return False
            for frame in turn_frames(payload):
                await self._send(frame)
        logger.info(f"[Session {self.session_id}] Sent audio turn ({len(payload)} base64 chars)")
        return True

    async def _send(self, frame: dict[str, Any]) -> None:
        try:
            await self._ws.send(json.dumps(frame))
        except (ConnectionClosed, OSError) as exc:
            failure = ConnectionFailure(f"Websocket send failed: {exc}")
            await self._enter_closed(failure)
            raise failure from exc

    async def _receive_loop(self) -> None:
        error: Optional[BaseException] = None
        try:
            async for raw in self._ws:
                try:
                    frame = json.loads(raw)
                except (TypeError, ValueError, UnicodeDecodeError):
                    logger.debug(f"[Session {self.session_id}] Ignoring non-JSON frame")
                    continue
                self._router.route(frame)
        except ConnectionClosedOK:
            pass
        except (ConnectionClosed, OSError) as exc:
            logger.error(f"[Session {self.session_id}] Websocket error: {exc}")
            error = ConnectionFailure(f"Gemini Live connection lost: {exc}")
        except Exception as exc:
            logger.exception(f"[Session {self.session_id}] Receive loop failed")
            error = ConnectionFailure(f"Gemini Live receive loop failed: {exc}")
        finally:
            logger.info(f"[Session {self.session_id}] Websocket connection closed")
            await self._enter_closed(error)

    async def close(self) -> None:
        """Close the session from any state. Safe to call more than once."""

        await self._enter_closed(None)
        reader = self._reader
        if reader is None or reader is asyncio.current_task() or reader.done():
            return
        # Closing the socket ends the receive loop; cancel only if it hangs.
        _, pending = await asyncio.wait({reader}, timeout=CLOSE_TIMEOUT_SECONDS)
        if pending:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    async def wait_closed(self) -> None:
        """Wait for the session to end; raise ConnectionFailure if it ended on an error."""

        if self._reader is not None:
            await asyncio.wait({self._reader})
        if isinstance(self._error, ConnectionFailure):
            raise self._error

    async def _enter_closed(self, error: Optional[BaseException]) -> None:
        if self._state is SessionState.CLOSED:
            return
        self._transition(SessionState.CLOSED)
        self._error = error

        # Credentials are single-session; always re-issue for the next one.
        self._credentials.invalidate()
        self._buffer.clear()
        await self._router.aclose()

        if self._ws is not None:
            try:
                await self._ws.close()
            except (ConnectionClosed, OSError) as exc:
                logger.debug(f"[Session {self.session_id}] Ignoring close error: {exc}")

        if self._on_closed is not None:
            try:
                await self._on_closed(error)
            except Exception:
                logger.exception(f"[Session {self.session_id}] on_closed callback failed")
