"""Tests for pipeline module (Layer 2c)."""

import logging

import pytest

from scene_narrator.constants import NARRATOR_VOICE
from scene_narrator.errors import ContentValidationFailed
from scene_narrator.models import DIALOGUE
from scene_narrator.pipeline import determine_mood, ingest_scene, scene_id_for

SESSION = "Night Watch"


@pytest.fixture
def empty_session(store):
    store.init_session(SESSION)
    return SESSION


@pytest.mark.parametrize("text,mood", [
    ("They laughed until dawn.", "playful"),
    ("Shadows crept along the wall.", "mysterious"),
    ("The battle began at noon.", "exciting"),
    ("He ran for the door.", "exciting"),
    ("She drifted into a peaceful sleep.", "calm"),
    ("A tear rolled down his cheek.", "emotional"),
    ("The kettle was on the stove.", "neutral"),
])
def test_determine_mood(text, mood):
    """Keyword rules pick the first matching mood."""
    assert determine_mood(text) == mood


def test_determine_mood_needs_word_start():
    """'ran' inside another word is not a chase."""
    assert determine_mood("A strange and grand orange hall.") == "neutral"


def test_scene_id_for():
    """Scene ids use the session slug and a padded index."""
    assert scene_id_for("Night Watch", 3) == "night_watch-003"


def test_ingest_scene_saves_segments(store, session):
    """Ingest stores a scene with voiced segments."""
    scene = store.load_scene(session, 0)
    assert scene.id == "night_watch-000"
    assert len(scene.dialogue_map) == 6
    assert scene.summary == scene.display_text[:200]
    assert scene.word_count == len(scene.display_text.split())
    assert not scene.validation_bypassed
    voices = {s.speaker: s.voice_id for s in scene.dialogue_map}
    assert voices == {"narrator": NARRATOR_VOICE, "Mara": "en-US-AriaNeural", "Tom": "en-US-DavisNeural"}


def test_ingest_scene_appends_sequence(store, session, tagged_scene):
    """A second scene gets the next sequence index."""
    scene = ingest_scene(store, session, tagged_scene)
    assert scene.sequence_index == 1
    assert [s.sequence_index for s in store.load_scenes(session)] == [0, 1]


def test_ingest_scene_rejects_garbage_and_saves_nothing(store, empty_session):
    """A refusal never reaches the store."""
    with pytest.raises(ContentValidationFailed):
        ingest_scene(store, empty_session, "As an AI language model, I cannot write this.")
    assert store.load_scenes(empty_session) == []


def test_ingest_scene_bypass_is_audited(store, empty_session, caplog):
    """skip_validation saves, flags the scene and logs a warning."""
    with caplog.at_level(logging.WARNING, logger="scene_narrator.pipeline"):
        scene = ingest_scene(store, empty_session, "Too short to pass.", skip_validation=True)
    assert scene.validation_bypassed
    assert store.load_scene(empty_session, 0).validation_bypassed
    assert "Validation bypassed" in caplog.text


def test_ingest_scene_casts_new_speakers(store, empty_session, tagged_scene):
    """Tagged speakers with no character record get one with a voice."""
    ingest_scene(store, empty_session, tagged_scene)
    names = [c.name for c in store.load_characters(empty_session)]
    assert names == ["Mara", "Tom"]
    scene = store.load_scene(empty_session, 0)
    assert all(s.voice_id != NARRATOR_VOICE for s in scene.dialogue_map if s.type == DIALOGUE)


def test_ingest_scene_single_voice(store, empty_session, tagged_scene):
    """With multi_voice off, the narrator reads everything and nobody is cast."""
    store.save_config(empty_session, {"multi_voice": False, "voice_id": "en-GB-RyanNeural"})
    scene = ingest_scene(store, empty_session, tagged_scene)
    assert {s.voice_id for s in scene.dialogue_map} == {"en-GB-RyanNeural"}
    assert store.load_characters(empty_session) == []


def test_ingest_scene_hides_speech_tags(store, empty_session, characters, tagged_scene):
    """hide_speech_tags trims attributions from narration."""
    store.save_characters(empty_session, characters)
    store.save_config(empty_session, {"hide_speech_tags": True})
    scene = ingest_scene(store, empty_session, tagged_scene)
    texts = [s.text for s in scene.dialogue_map]
    assert not any(t.startswith("she called") for t in texts)
    assert "Wind rattled every pane of glass in the narrow tower." in " ".join(texts)
