"""Wire frames exchanged with the Gemini Live websocket."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

INPUT_AUDIO_MIME_TYPE = "audio/pcm;rate=16000"


class _Frame(BaseModel):
    # Unknown fields are dropped so newer server messages still parse.
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class InlineData(_Frame):
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    data: Optional[str] = None


class Part(_Frame):
    text: Optional[str] = None
    thought: Optional[bool] = None
    inline_data: Optional[InlineData] = Field(default=None, alias="inlineData")


class Transcription(_Frame):
    text: Optional[str] = None


def setup_frame(*, model: str, voice: str, system_instruction: str) -> dict[str, Any]:
    """Build the session setup message sent once right after connecting.

    Automatic activity detection is disabled because the client frames each
    turn itself with activityStart/activityEnd.
    """

    return {
        "setup": {
            "model": model,
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice}},
                },
            },
            "systemInstruction": {"parts": [{"text": system_instruction}]},
            "realtimeInputConfig": {"automaticActivityDetection": {"disabled": True}},
            "outputAudioTranscription": {},
            "inputAudioTranscription": {},
        }
    }


def activity_start_frame() -> dict[str, Any]:
    return {"realtimeInput": {"activityStart": {}}}


def audio_frame(data: str) -> dict[str, Any]:
    return {"realtimeInput": {"audio": {"data": data, "mimeType": INPUT_AUDIO_MIME_TYPE}}}


def activity_end_frame() -> dict[str, Any]:
    return {"realtimeInput": {"activityEnd": {}}}


def turn_frames(data: str) -> list[dict[str, Any]]:
    """Return the start/audio/end triplet for one user utterance, in send order."""

    return [activity_start_frame(), audio_frame(data), activity_end_frame()]
