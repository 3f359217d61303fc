"""Session directory management, JSON artifacts, audio files and preview handles.

Layout under the output base:

    <slug>/config.json        per-session settings
    <slug>/characters.json    cast with voices
    <slug>/usage.json         synthesized character count
    <slug>/scenes/scene_0000.json
    <slug>/audio/<segment_id>.mp3
    <slug>/final/
"""

import json
import logging
import os
import re
import tempfile

from scene_narrator.constants import OUTPUT_DIR
from scene_narrator.errors import NotFound
from scene_narrator.models import Character, Scene, Script, Segment

logger = logging.getLogger(__name__)

SUBDIRS = ["scenes", "audio", "final"]


def slug_from_name(name: str) -> str:
    """Convert a session name to a directory slug.

    "The Lighthouse" → "the_lighthouse"
    "  night-shift 2 " → "night_shift_2"
    """
    # Replace non-alphanumeric with underscore, collapse multiples, strip edges
    return re.sub(r"[^a-zA-Z0-9]+", "_", name).strip("_").lower()


def scene_filename(sequence_index: int) -> str:
    return os.path.join("scenes", f"scene_{sequence_index:04d}.json")


def write_artifact(project_dir: str, filename: str, data: dict | list) -> str:
    """Write JSON artifact to project_dir/filename.

    Returns path to the written file.
    """
    path = os.path.join(project_dir, filename)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    return path


def load_artifact(project_dir: str, filename: str) -> dict | list | None:
    """Read JSON artifact. Returns None if the file doesn't exist or is malformed."""
    path = os.path.join(project_dir, filename)
    if not os.path.exists(path):
        return None
    try:
        with open(path) as f:
            return json.load(f)
    except json.JSONDecodeError:
        logger.warning("Malformed artifact: %s (ignored)", path)
        return None


class PreviewHandle:
    """A transient audio file. The holder must call release() when done."""

    def __init__(self, path: str, segment_id: str, text: str):
        self.path = path
        self.segment_id = segment_id
        self.text = text
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.release()


def write_preview(audio: bytes, segment_id: str, text: str) -> PreviewHandle:
    fd, path = tempfile.mkstemp(prefix=f"preview_{segment_id}_", suffix=".mp3")
    with os.fdopen(fd, "wb") as f:
        f.write(audio)
    return PreviewHandle(path, segment_id, text)


class SessionStore:
    """Persistent store for story sessions, rooted at an output directory."""

    def __init__(self, output_base: str = OUTPUT_DIR):
        self.output_base = output_base

    def session_dir(self, session_id: str) -> str:
        return os.path.join(self.output_base, slug_from_name(session_id))

    def exists(self, session_id: str) -> bool:
        return os.path.isdir(self.session_dir(session_id))

    def init_session(self, session_id: str, config: dict | None = None) -> str:
        """Create <slug>/ and all subdirectories. Returns the session directory."""
        if not slug_from_name(session_id):
            raise ValueError(f"Session name has no usable characters: {session_id!r}")
        project_dir = self.session_dir(session_id)
        for subdir in SUBDIRS:
            os.makedirs(os.path.join(project_dir, subdir), exist_ok=True)
        if load_artifact(project_dir, "config.json") is None:
            write_artifact(project_dir, "config.json", {"session_id": session_id, **(config or {})})
        return project_dir

    def require(self, session_id: str) -> str:
        if not self.exists(session_id):
            raise NotFound("Session", session_id)
        return self.session_dir(session_id)

    # -- config / characters / usage -------------------------------------

    def load_config(self, session_id: str) -> dict:
        return load_artifact(self.session_dir(session_id), "config.json") or {}

    def save_config(self, session_id: str, config: dict) -> str:
        return write_artifact(self.require(session_id), "config.json", config)

    def load_characters(self, session_id: str) -> list[Character]:
        data = load_artifact(self.session_dir(session_id), "characters.json") or []
        return [Character.from_dict(c) for c in data]

    def save_characters(self, session_id: str, characters: list[Character] | tuple) -> str:
        return write_artifact(
            self.require(session_id), "characters.json", [c.to_dict() for c in characters]
        )

    def load_usage(self, session_id: str) -> int:
        data = load_artifact(self.session_dir(session_id), "usage.json") or {}
        return int(data.get("chars_used", 0))

    def save_usage(self, session_id: str, chars_used: int) -> str:
        return write_artifact(self.require(session_id), "usage.json", {"chars_used": chars_used})

    # -- scenes ----------------------------------------------------------

    def save_scene(self, scene: Scene) -> str:
        """Upsert a scene keyed by (session_id, sequence_index)."""
        path = write_artifact(
            self.require(scene.session_id), scene_filename(scene.sequence_index), scene.to_dict()
        )
        logger.debug("Wrote scene %s to %s", scene.id, path)
        return path

    def load_scene(self, session_id: str, sequence_index: int) -> Scene | None:
        data = load_artifact(self.session_dir(session_id), scene_filename(sequence_index))
        return Scene.from_dict(data) if data else None

    def load_scenes(self, session_id: str) -> list[Scene]:
        scenes_dir = os.path.join(self.session_dir(session_id), "scenes")
        if not os.path.isdir(scenes_dir):
            return []
        scenes = []
        for name in sorted(os.listdir(scenes_dir)):
            if not name.endswith(".json"):
                continue
            data = load_artifact(scenes_dir, name)
            if data:
                scenes.append(Scene.from_dict(data))
        return sorted(scenes, key=lambda s: s.sequence_index)

    def next_sequence_index(self, session_id: str) -> int:
        scenes = self.load_scenes(session_id)
        return scenes[-1].sequence_index + 1 if scenes else 0

    def save_segment(self, session_id: str, segment: Segment) -> Scene:
        """Persist one segment by rewriting its parent scene."""
        for scene in self.load_scenes(session_id):
            if scene.id == segment.scene_id:
                updated = scene.replace_segment(segment)
                self.save_scene(updated)
                return updated
        raise NotFound("Scene", segment.scene_id)

    def load_script(self, session_id: str) -> Script:
        self.require(session_id)
        return Script(
            session_id=session_id,
            scenes=tuple(self.load_scenes(session_id)),
            characters=tuple(self.load_characters(session_id)),
            config=self.load_config(session_id),
        )

    # -- audio -----------------------------------------------------------

    def audio_path(self, session_id: str, segment_id: str) -> str:
        return os.path.join(self.session_dir(session_id), "audio", f"{segment_id}.mp3")

    def write_audio(self, session_id: str, segment_id: str, audio: bytes) -> str:
        path = self.audio_path(session_id, segment_id)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(audio)
        return path

    # -- listing ---------------------------------------------------------

    def list_sessions(self) -> list[str]:
        """Sorted slugs of directories that hold a config.json."""
        if not os.path.exists(self.output_base):
            return []
        sessions = []
        for name in os.listdir(self.output_base):
            project_dir = os.path.join(self.output_base, name)
            if os.path.isdir(project_dir) and os.path.exists(os.path.join(project_dir, "config.json")):
                sessions.append(name)
        return sorted(sessions)

    def session_status(self, session_id: str) -> dict:
        """Counts of scenes, characters and segments per render state."""
        script = self.load_script(session_id)
        counts = {}
        for seg in script.segments():
            status = seg.render_status or "pending"
            counts[status] = counts.get(status, 0) + 1
        return {
            "scenes": len(script.scenes),
            "characters": len(script.characters),
            "segments": len(script.segments()),
            "render_status": counts,
            "chars_used": self.load_usage(session_id),
        }
