"""Stitch rendered segments into one narration file and write its manifest."""

import json
import logging
import os
from datetime import datetime, timezone

from pydub import AudioSegment

from scene_narrator.artifacts import SessionStore, slug_from_name
from scene_narrator.constants import (
    OUTPUT_BITRATE,
    PAUSE_SAME_TYPE_MS,
    PAUSE_SPEAKER_CHANGE_MS,
    PAUSE_TYPE_TRANSITION_MS,
    VERSION,
)
from scene_narrator.errors import InvalidRequest
from scene_narrator.models import RENDERED, Segment

logger = logging.getLogger(__name__)


def _calculate_pause(prev: Segment, curr: Segment) -> int:
    """Calculate pause duration between two segments.

    Uses max() when multiple rules apply (e.g., type transition + speaker change).
    """
    pause = PAUSE_SAME_TYPE_MS  # base pause

    if prev.type != curr.type:
        pause = max(pause, PAUSE_TYPE_TRANSITION_MS)

    if prev.speaker.lower() != curr.speaker.lower():
        pause = max(pause, PAUSE_SPEAKER_CHANGE_MS)

    return pause


def assemble_segments(segments: list[Segment], audio: list[AudioSegment]) -> AudioSegment:
    """Concatenate segment audio with type and speaker aware pauses."""
    if len(segments) != len(audio):
        raise ValueError(f"Got {len(audio)} audio clips for {len(segments)} segments")
    if not audio:
        return AudioSegment.silent(duration=0)

    result = audio[0]
    for i in range(1, len(audio)):
        pause_ms = _calculate_pause(segments[i - 1], segments[i])
        result += AudioSegment.silent(duration=pause_ms) + audio[i]

    return result


def check_all_rendered(segments: list[Segment]) -> None:
    """Raise InvalidRequest naming every segment that has no current audio."""
    missing = [s for s in segments if s.render_status != RENDERED or not s.audio_url]
    if missing:
        raise InvalidRequest(
            f"{len(missing)} segment(s) are not rendered",
            details=[(s.id, s.render_status or "pending") for s in missing],
        )


def export_narration(
    store: SessionStore,
    session_id: str,
    title: str | None = None,
) -> str:
    """Assemble every rendered segment of a session into final/<slug>.mp3.

    Creates:
      - <session>/final/<slug>.mp3 (the narration)
      - <session>/final/output.json (provenance manifest)

    Returns path to the final MP3 file.
    """
    script = store.load_script(session_id)
    segments = script.segments()
    if not segments:
        raise InvalidRequest(f"Session {session_id} has no segments")
    check_all_rendered(segments)

    audio = [AudioSegment.from_file(seg.audio_url) for seg in segments]
    assembled = assemble_segments(segments, audio)

    slug = slug_from_name(session_id)
    final_dir = os.path.join(store.session_dir(session_id), "final")
    os.makedirs(final_dir, exist_ok=True)
    output_path = os.path.join(final_dir, f"{slug}.mp3")

    tags = {"title": title or session_id}
    assembled.export(output_path, format="mp3", bitrate=OUTPUT_BITRATE, tags=tags)

    manifest = {
        "session": session_id,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "producer_version": VERSION,
        "title": tags["title"],
        "cast": {c.name: c.voice_id for c in script.characters},
        "settings": script.config,
        "stats": {
            "scenes": len(script.scenes),
            "segments": len(segments),
            "duration_seconds": round(len(assembled) / 1000, 1),
            "characters": len(script.characters),
        },
    }
    with open(os.path.join(final_dir, "output.json"), "w") as f:
        json.dump(manifest, f, indent=2)

    logger.info("Exported %s (%.1fs)", output_path, len(assembled) / 1000)
    return output_path
