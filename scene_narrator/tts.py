"""TTS synthesis via edge-tts, with delivery params mapped to prosody."""

import logging
import re
from dataclasses import dataclass

import edge_tts
from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from scene_narrator.constants import (
    DEFAULT_EMOTION,
    DEFAULT_STABILITY,
    DEFAULT_STYLE,
    PREVIEW_MAX_CHARS,
    TTS_RATE,
)
from scene_narrator.errors import SynthesisFailed

logger = logging.getLogger(__name__)

# emotion -> (rate offset %, pitch offset Hz) at full intensity
EMOTION_PROSODY = {
    "neutral": (0, 0),
    "excited": (12, 8),
    "urgent": (18, 6),
    "shouting": (15, 10),
    "curious": (4, 4),
    "questioning": (2, 5),
    "hesitant": (-12, -2),
    "playful": (8, 6),
    "mysterious": (-10, -4),
    "calm": (-8, -3),
    "emotional": (-10, -6),
    "sad": (-12, -6),
    "angry": (10, -2),
    "fearful": (10, 4),
    "whisper": (-15, -5),
}

TICKS_PER_MS = 10_000  # edge-tts offsets are in 100ns units


@dataclass(frozen=True)
class SynthesisResult:
    audio: bytes
    word_timings: tuple = ()

    @property
    def duration_ms(self) -> int | None:
        if not self.word_timings:
            return None
        last = self.word_timings[-1]
        return last["offset_ms"] + last["duration_ms"]


def _parse_percent(rate: str) -> int:
    match = re.fullmatch(r"([+-]?\d+)%", rate.strip())
    return int(match.group(1)) if match else 0


def _signed(value: int, unit: str) -> str:
    return f"{'+' if value >= 0 else '-'}{abs(value)}{unit}"


def intensity(stability: float, style: float) -> float:
    """0..1 scale for the emotion offset: more style and less stability push harder."""
    return max(0.0, min(1.0, style + (1 - stability) * 0.5))


def prosody_for(
    emotion: str = DEFAULT_EMOTION,
    stability: float = DEFAULT_STABILITY,
    style: float = DEFAULT_STYLE,
    base_rate: str = TTS_RATE,
) -> tuple[str, str]:
    """Map delivery params to edge-tts (rate, pitch) strings like ("-4%", "+5Hz").

    Unknown emotions read as neutral.
    """
    rate_offset, pitch_offset = EMOTION_PROSODY.get((emotion or "").lower(), (0, 0))
    scale = intensity(stability, style)
    rate = _parse_percent(base_rate) + round(rate_offset * scale)
    pitch = round(pitch_offset * scale)
    return _signed(rate, "%"), _signed(pitch, "Hz")


def truncate_for_preview(text: str, limit: int = PREVIEW_MAX_CHARS) -> str:
    return text[:limit] + "..." if len(text) > limit else text


class EdgeSynthesizer:
    """Synthesize one text with edge_tts.Communicate, collecting word timings."""

    def __init__(self, base_rate: str = TTS_RATE):
        self.base_rate = base_rate

    async def synthesize(
        self,
        text: str,
        voice_id: str,
        emotion: str = DEFAULT_EMOTION,
        stability: float = DEFAULT_STABILITY,
        style: float = DEFAULT_STYLE,
    ) -> SynthesisResult:
        """Stream audio for text. Raises SynthesisFailed on any engine error or empty output."""
        if not text or not text.strip():
            raise SynthesisFailed("Cannot synthesize empty text")

        rate, pitch = prosody_for(emotion, stability, style, self.base_rate)
        logger.debug("Synthesizing %d chars with %s rate=%s pitch=%s", len(text), voice_id, rate, pitch)

        audio = bytearray()
        timings = []
        try:
            communicate = edge_tts.Communicate(
                text, voice_id, rate=rate, pitch=pitch, boundary="WordBoundary"
            )
            async for chunk in communicate.stream():
                if chunk["type"] == "audio":
                    audio.extend(chunk["data"])
                elif chunk["type"] == "WordBoundary":
                    timings.append({
                        "text": chunk["text"],
                        "offset_ms": chunk["offset"] // TICKS_PER_MS,
                        "duration_ms": chunk["duration"] // TICKS_PER_MS,
                    })
        except Exception as e:
            raise SynthesisFailed(f"TTS engine error: {e}") from e

        # Empty output counts as failure
        if not audio:
            raise SynthesisFailed(f"TTS produced no audio for: {text[:50]}...")

        return SynthesisResult(audio=bytes(audio), word_timings=tuple(timings))


def probe_duration_ms(path: str) -> int | None:
    """Duration of an audio file via pydub, or None if it cannot be decoded."""
    try:
        return len(AudioSegment.from_file(path))
    except (CouldntDecodeError, OSError) as e:
        logger.warning("Could not read duration of %s: %s", path, e)
        return None
