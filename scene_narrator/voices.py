"""Voice assignment: which synthesized voice speaks each segment."""

import hashlib
import logging
from dataclasses import replace

from scene_narrator.constants import NARRATOR_SPEAKER, NARRATOR_VOICE
from scene_narrator.models import Character, Segment

logger = logging.getLogger(__name__)

# Hardcoded English voice pool (avoids network call at startup)
VOICE_POOL = [
    "en-US-RogerNeural",
    "en-US-AriaNeural",
    "en-US-DavisNeural",
    "en-US-TonyNeural",
    "en-US-JennyNeural",
    "en-US-SaraNeural",
    "en-GB-RyanNeural",
    "en-GB-SoniaNeural",
    "en-GB-ThomasNeural",
    "en-AU-NatashaNeural",
    "en-AU-WilliamNeural",
    "en-CA-ClaraNeural",
    "en-CA-LiamNeural",
    "en-IN-NeerjaNeural",
    "en-IN-PrabhatNeural",
    "en-IE-EmilyNeural",
]


def session_voice_from_config(config: dict | None) -> str | None:
    """Narrator voice configured for the session, if any."""
    config = config or {}
    return config.get("voice_id") or config.get("narratorVoice") or None


def resolve_voice(
    explicit_voice_id: str | None = None,
    session_config_voice_id: str | None = None,
    default_voice_id: str = NARRATOR_VOICE,
) -> str:
    """Pick a voice: explicit, then session config, then the hard default.

    Never returns an empty value.
    """
    effective = explicit_voice_id or session_config_voice_id or default_voice_id or NARRATOR_VOICE
    logger.debug(
        "Voice selection: explicit=%s config=%s effective=%s",
        explicit_voice_id, session_config_voice_id, effective,
    )
    return effective


def resolve_hide_speech_tags(config: dict | None) -> bool:
    """True when hide_speech_tags is enabled.

    Accepts the boolean and its JSON-string form, since config may have been
    round-tripped through a form or query string.
    """
    raw = (config or {}).get("hide_speech_tags")
    return raw is True or raw == "true"


def resolve_multi_voice(config: dict | None, has_characters: bool) -> bool:
    """Whether characters get their own voices.

    Explicit False always wins, then explicit True, then the default:
    on when the scene has at least one character.
    """
    config = config or {}
    flags = (config.get("multi_voice"), config.get("multiVoice"))
    if any(flag is False for flag in flags):
        return False
    if any(flag is True for flag in flags):
        return True
    return bool(has_characters)


def _name_key(name: str) -> str:
    return name.strip().lower()


class CharacterDirectory:
    """Case-insensitive character lookup by trimmed display name."""

    def __init__(self, characters: list[Character] | tuple = (), narrator_voice: str = NARRATOR_VOICE):
        self.narrator_voice = narrator_voice
        self._by_name = {}
        for character in characters:
            key = _name_key(character.name)
            if key:
                self._by_name[key] = character

    def __len__(self) -> int:
        return len(self._by_name)

    def lookup(self, name: str) -> Character | None:
        return self._by_name.get(_name_key(name))

    def canonical_name(self, name: str) -> str:
        """The character's display name, or the name as given when unknown."""
        character = self.lookup(name)
        return character.name if character else name.strip()

    def voice_for(self, speaker: str) -> str:
        """Voice for a speaker. Unknown names and the narrator get the narrator voice."""
        if _name_key(speaker) == NARRATOR_SPEAKER:
            return self.narrator_voice
        character = self.lookup(speaker)
        if character is None or not character.voice_id:
            logger.debug("No voice for speaker %r, using narrator voice", speaker)
            return self.narrator_voice
        return character.voice_id


def assign_voices(
    segments: list[Segment],
    directory: CharacterDirectory,
    multi_voice: bool = True,
) -> list[Segment]:
    """Return new segments with voice_id attached.

    In single-voice mode the narrator voice reads everything.
    """
    assigned = []
    for seg in segments:
        if multi_voice:
            voice = directory.voice_for(seg.speaker)
        else:
            voice = directory.narrator_voice
        assigned.append(replace(seg, voice_id=voice))
    return assigned


def _hash_voice(speaker: str, pool: list[str]) -> str:
    """Deterministic voice assignment via sha256 hash."""
    h = hashlib.sha256(speaker.encode()).hexdigest()
    idx = int(h, 16) % len(pool)
    return pool[idx]


def cast_new_speakers(
    speakers: list[str],
    characters: list[Character] | tuple = (),
    narrator_voice: str = NARRATOR_VOICE,
) -> list[Character]:
    """Create Characters for tagged speakers the directory does not know yet.

    Voices come from the pool minus the narrator and already-cast voices,
    hashed on the lowercased name so the same name always gets the same voice.
    """
    directory = CharacterDirectory(characters, narrator_voice)
    used_voices = {narrator_voice} | {c.voice_id for c in characters if c.voice_id}
    available_pool = [v for v in VOICE_POOL if v not in used_voices]
    if not available_pool:
        available_pool = list(VOICE_POOL)  # fallback to full pool if all taken

    next_id = 1 + max((int(c.id) for c in characters if c.id.isdigit()), default=0)
    created = []
    seen = set()
    for speaker in speakers:
        key = _name_key(speaker)
        if not key or key == NARRATOR_SPEAKER or key in seen or directory.lookup(speaker):
            continue
        seen.add(key)
        voice = _hash_voice(key, available_pool)
        created.append(Character(id=str(next_id), name=speaker.strip(), voice_id=voice, voice_name=voice))
        next_id += 1
        logger.info("Cast new character %r with voice %s", speaker.strip(), voice)
    return created
