"""Character-quota gate for synthesis and the advisory cost estimate."""

import logging
import os
from dataclasses import dataclass

from scene_narrator.constants import TTS_COST_PER_1000_CHARS, TTS_MAX_CHARS_PER_STORY
from scene_narrator.errors import SynthesisFailed
from scene_narrator.models import Segment

logger = logging.getLogger(__name__)


def max_chars_per_story() -> int:
    """Per-story limit from TTS_MAX_CHARS_PER_STORY, else the default."""
    raw = os.environ.get("TTS_MAX_CHARS_PER_STORY")
    if not raw:
        return TTS_MAX_CHARS_PER_STORY
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer TTS_MAX_CHARS_PER_STORY=%r", raw)
        return TTS_MAX_CHARS_PER_STORY
    return value if value > 0 else TTS_MAX_CHARS_PER_STORY


@dataclass(frozen=True)
class UsageEstimate:
    estimated_chars: int
    used_chars: int
    max_chars: int
    pending_segments: int
    remaining_chars: int
    estimated_cost: float
    can_render_all: bool

    def to_dict(self) -> dict:
        return {
            "estimated_chars": self.estimated_chars,
            "used_chars": self.used_chars,
            "max_chars": self.max_chars,
            "pending_segments": self.pending_segments,
            "remaining_chars": self.remaining_chars,
            "estimated_cost": self.estimated_cost,
            "can_render_all": self.can_render_all,
        }


def estimate_cost(chars: int) -> float:
    return round(chars / 1000 * TTS_COST_PER_1000_CHARS, 2)


def estimate_usage(pending_segments: list[Segment], used_chars: int, max_chars: int) -> UsageEstimate:
    """Advisory estimate for rendering every pending segment.

    Never authoritative: the tracker re-checks at synthesis time.
    """
    estimated = sum(len(seg.text) for seg in pending_segments)
    remaining = max(0, max_chars - used_chars)
    return UsageEstimate(
        estimated_chars=estimated,
        used_chars=used_chars,
        max_chars=max_chars,
        pending_segments=len(pending_segments),
        remaining_chars=remaining,
        estimated_cost=estimate_cost(estimated),
        can_render_all=estimated <= remaining,
    )


class UsageTracker:
    """Per-session character counter persisted through the session store."""

    def __init__(self, store, max_chars: int | None = None):
        self.store = store
        self.max_chars = max_chars if max_chars is not None else max_chars_per_story()

    def used(self, session_id: str) -> int:
        return self.store.load_usage(session_id)

    def remaining(self, session_id: str) -> int:
        return max(0, self.max_chars - self.used(session_id))

    def check(self, session_id: str, chars: int, segment_id: str | None = None) -> None:
        """Raise SynthesisFailed (quota) if chars would exceed the story limit."""
        remaining = self.remaining(session_id)
        if chars > remaining:
            logger.warning(
                "Quota refused for session %s: %d chars requested, %d remaining",
                session_id, chars, remaining,
            )
            raise SynthesisFailed(
                f"TTS quota exceeded: {chars} chars requested, {remaining} of {self.max_chars} remaining",
                segment_id=segment_id,
                quota_exceeded=True,
            )

    def record(self, session_id: str, chars: int) -> int:
        total = self.used(session_id) + chars
        self.store.save_usage(session_id, total)
        logger.debug("Session %s usage now %d chars", session_id, total)
        return total

    def estimate(self, session_id: str, pending_segments: list[Segment]) -> UsageEstimate:
        return estimate_usage(pending_segments, self.used(session_id), self.max_chars)
