"""
Speech-to-text for recorded audio reports via a hosted Whisper endpoint.
"""
import logging
from typing import Dict, Optional

import requests

from errors import NoAudioError, TranscriptionError

logger = logging.getLogger(__name__)

MAX_SEGMENTS = 5


def transcribe_audio(
    audio: Optional[bytes],
    filename: str = "recording.webm",
    content_type: str = "audio/webm",
    api_key: Optional[str] = None,
    base_url: str = "https://api.openai.com/v1",
    model: str = "whisper-1",
    language: str = "en",
    timeout: float = 60,
) -> Dict:
    """Transcribe an audio clip.

    Raises NoAudioError (before any network call) when there is no audio,
    TranscriptionError when the service fails.
    """
    if not audio:
        raise NoAudioError("Audio file is required")

    logger.info(f"Transcribing audio file: {filename} ({len(audio)} bytes, {content_type})")

    headers = {}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    try:
        resp = requests.post(
            f"{base_url.rstrip('/')}/audio/transcriptions",
            headers=headers,
            data={
                "model": model,
                "language": language,
                "response_format": "verbose_json",
            },
            files={"file": (filename, audio, content_type)},
            timeout=timeout,
        )
    except requests.exceptions.RequestException as e:
        logger.error(f"Transcription request failed: {e}")
        raise TranscriptionError(f"Transcription failed: {e}") from e

    if not 200 <= resp.status_code < 300:
        logger.error(f"Transcription failed: {resp.status_code} - {resp.text[:200]}")
        raise TranscriptionError(f"Transcription failed: {resp.status_code}")

    try:
        data = resp.json() or {}
    except ValueError as e:
        raise TranscriptionError("Transcription service returned invalid JSON") from e

    text = data.get("text")
    if not isinstance(text, str):
        raise TranscriptionError("Transcription service returned no transcript")

    segments = data.get("segments") or []
    logger.info(f"Transcription completed ({len(text)} chars)")
    return {
        "transcript": text.strip(),
        "duration": data.get("duration"),
        "language": data.get("language") or language,
        "segments": segments[:MAX_SEGMENTS] if isinstance(segments, list) else [],
    }
