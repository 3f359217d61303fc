"""Tests for voices module (Layer 1b)."""

from scene_narrator.constants import NARRATOR_VOICE
from scene_narrator.models import Character
from scene_narrator.voices import (
    VOICE_POOL,
    CharacterDirectory,
    assign_voices,
    cast_new_speakers,
    resolve_hide_speech_tags,
    resolve_multi_voice,
    resolve_voice,
    session_voice_from_config,
)


def test_resolve_voice_explicit_wins():
    """Explicit voice beats session config."""
    assert resolve_voice(explicit_voice_id="v1", session_config_voice_id="v2") == "v1"


def test_resolve_voice_config_second():
    """Session config is used when nothing explicit is given."""
    assert resolve_voice(session_config_voice_id="v2") == "v2"


def test_resolve_voice_hard_default():
    """No inputs falls back to the narrator voice."""
    assert resolve_voice() == NARRATOR_VOICE
    assert resolve_voice(None, "", "") == NARRATOR_VOICE


def test_session_voice_from_config_keys():
    """voice_id is preferred over narratorVoice."""
    assert session_voice_from_config({"narratorVoice": "b"}) == "b"
    assert session_voice_from_config({"voice_id": "a", "narratorVoice": "b"}) == "a"
    assert session_voice_from_config(None) is None


def test_resolve_hide_speech_tags():
    """True and the string 'true' enable; everything else disables."""
    assert resolve_hide_speech_tags({"hide_speech_tags": True})
    assert resolve_hide_speech_tags({"hide_speech_tags": "true"})
    assert not resolve_hide_speech_tags({"hide_speech_tags": "yes"})
    assert not resolve_hide_speech_tags({})
    assert not resolve_hide_speech_tags(None)


def test_resolve_multi_voice_explicit_false_wins():
    """An explicit False in either key disables multi-voice."""
    assert not resolve_multi_voice({"multi_voice": False, "multiVoice": True}, True)
    assert not resolve_multi_voice({"multiVoice": False}, True)


def test_resolve_multi_voice_explicit_true():
    """Explicit True enables even without characters."""
    assert resolve_multi_voice({"multiVoice": True}, False)


def test_resolve_multi_voice_default_follows_characters():
    """With nothing set, multi-voice is on only when characters exist."""
    assert resolve_multi_voice({}, True)
    assert not resolve_multi_voice({}, False)
    assert not resolve_multi_voice({"multi_voice": 0}, False)


def test_directory_lookup_case_insensitive(characters):
    """Names match regardless of case or padding."""
    directory = CharacterDirectory(characters)
    assert directory.lookup("  mara ").id == "1"
    assert directory.canonical_name("TOM") == "Tom"
    assert directory.canonical_name(" Stranger ") == "Stranger"
    assert len(directory) == 2


def test_directory_voice_for_fallbacks(characters):
    """Narrator and unknown speakers get the narrator voice."""
    directory = CharacterDirectory(characters, narrator_voice="en-GB-RyanNeural")
    assert directory.voice_for("Mara") == "en-US-AriaNeural"
    assert directory.voice_for("Narrator") == "en-GB-RyanNeural"
    assert directory.voice_for("Stranger") == "en-GB-RyanNeural"


def test_directory_character_without_voice_falls_back():
    """A character with no voice yet is read by the narrator."""
    directory = CharacterDirectory([Character(id="1", name="Ann")])
    assert directory.voice_for("Ann") == NARRATOR_VOICE


def test_assign_voices_multi_voice(sample_segments, characters):
    """Each speaker gets their own voice; originals are untouched."""
    assigned = assign_voices(sample_segments, CharacterDirectory(characters))
    assert [s.voice_id for s in assigned] == [NARRATOR_VOICE, "en-US-AriaNeural", "en-US-DavisNeural"]
    assert sample_segments[1].voice_id == ""


def test_assign_voices_single_voice(sample_segments, characters):
    """Single-voice mode reads everything with the narrator voice."""
    assigned = assign_voices(sample_segments, CharacterDirectory(characters), multi_voice=False)
    assert {s.voice_id for s in assigned} == {NARRATOR_VOICE}


def test_cast_new_speakers_skips_known_and_narrator(characters):
    """Only unseen names are cast, once each."""
    created = cast_new_speakers(["Mara", "narrator", "Elsa", "elsa", "Finn"], characters)
    assert [c.name for c in created] == ["Elsa", "Finn"]
    assert [c.id for c in created] == ["3", "4"]


def test_cast_new_speakers_deterministic_and_distinct_from_cast(characters):
    """Voices are stable per name and avoid narrator and cast voices."""
    first = cast_new_speakers(["Elsa"], characters)
    second = cast_new_speakers(["Elsa"], characters)
    assert first[0].voice_id == second[0].voice_id
    assert first[0].voice_id in VOICE_POOL
    assert first[0].voice_id not in {NARRATOR_VOICE, "en-US-AriaNeural", "en-US-DavisNeural"}
