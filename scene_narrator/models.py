"""Data models for scenes, segments and characters.

All models are frozen: a change to a segment produces a new Segment, and a
new Scene and Script around it. Nothing shared is ever edited in place.
"""

from dataclasses import asdict, dataclass, field, fields, replace

from scene_narrator.constants import (
    DEFAULT_EMOTION,
    DEFAULT_STABILITY,
    DEFAULT_STYLE,
    NARRATOR_SPEAKER,
)

# Render lifecycle states, persisted verbatim
PENDING = "pending"
RENDERING = "rendering"
RENDERED = "rendered"
STALE = "stale"
ERROR = "error"
RENDER_STATES = (PENDING, RENDERING, RENDERED, STALE, ERROR)

NARRATOR = "narrator"
DIALOGUE = "dialogue"
SEGMENT_TYPES = (NARRATOR, DIALOGUE)


@dataclass(frozen=True)
class Overrides:
    """User-chosen delivery values. None means "not overridden"."""

    emotion: str | None = None
    stability: float | None = None
    style: float | None = None

    def is_empty(self) -> bool:
        return self.emotion is None and self.stability is None and self.style is None


@dataclass(frozen=True)
class DeliveryParams:
    emotion: str = DEFAULT_EMOTION
    stability: float = DEFAULT_STABILITY
    style: float = DEFAULT_STYLE


@dataclass(frozen=True)
class Segment:
    id: str
    scene_id: str
    speaker: str       # "narrator" or a character name
    text: str
    type: str          # "narrator" or "dialogue"
    voice_role: str = NARRATOR
    voice_id: str = ""  # populated by assign_voices()
    ai_emotion: str | None = DEFAULT_EMOTION
    ai_stability: float | None = None
    ai_style: float | None = None
    user_overrides: Overrides | None = None
    render_status: str = PENDING
    audio_url: str | None = None
    render_error: str | None = None
    duration_ms: int | None = None
    word_timings: tuple = ()

    @property
    def is_narrator(self) -> bool:
        return self.speaker.strip().lower() == NARRATOR_SPEAKER

    def to_dict(self) -> dict:
        data = asdict(self)
        data["word_timings"] = [dict(t) for t in self.word_timings]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Segment":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        overrides = values.get("user_overrides")
        if isinstance(overrides, dict):
            values["user_overrides"] = Overrides(**overrides)
        values["word_timings"] = tuple(values.get("word_timings") or ())
        # A missing status reads as pending
        if not values.get("render_status"):
            values["render_status"] = PENDING
        return cls(**values)


@dataclass(frozen=True)
class Character:
    id: str
    name: str
    voice_id: str = ""
    voice_name: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Character":
        return cls(
            id=str(data["id"]),
            name=data["name"],
            voice_id=data.get("voice_id") or "",
            voice_name=data.get("voice_name") or "",
        )


@dataclass(frozen=True)
class Scene:
    id: str
    session_id: str
    sequence_index: int
    raw_text: str
    display_text: str
    summary: str = ""
    mood: str = "neutral"
    word_count: int = 0
    dialogue_map: tuple[Segment, ...] = ()
    validation_bypassed: bool = False

    def find_segment(self, segment_id: str) -> Segment | None:
        for seg in self.dialogue_map:
            if seg.id == segment_id:
                return seg
        return None

    def replace_segment(self, segment: Segment) -> "Scene":
        """Return a new Scene with the segment of the same id swapped in."""
        return replace(
            self,
            dialogue_map=tuple(
                segment if seg.id == segment.id else seg for seg in self.dialogue_map
            ),
        )

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "dialogue_map"}
        data["dialogue_map"] = [seg.to_dict() for seg in self.dialogue_map]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Scene":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["dialogue_map"] = tuple(
            Segment.from_dict(s) for s in data.get("dialogue_map") or []
        )
        return cls(**values)


@dataclass(frozen=True)
class Script:
    """Everything the editor shows for one story session."""

    session_id: str
    scenes: tuple[Scene, ...] = ()
    characters: tuple[Character, ...] = ()
    config: dict = field(default_factory=dict)

    def segments(self) -> list[Segment]:
        """All segments in scene order, then source order."""
        return [seg for scene in self.scenes for seg in scene.dialogue_map]

    def find_segment(self, segment_id: str) -> Segment | None:
        for scene in self.scenes:
            seg = scene.find_segment(segment_id)
            if seg is not None:
                return seg
        return None

    def replace_segment(self, segment: Segment) -> "Script":
        """Return a new Script with the segment replaced inside its parent Scene."""
        return replace(
            self,
            scenes=tuple(
                scene.replace_segment(segment) if scene.id == segment.scene_id else scene
                for scene in self.scenes
            ),
        )

    def replace_character(self, character: Character) -> "Script":
        return replace(
            self,
            characters=tuple(
                character if c.id == character.id else c for c in self.characters
            ),
        )
