"""Shared fixtures for scene narrator tests."""

import pytest

from scene_narrator.artifacts import SessionStore
from scene_narrator.errors import SynthesisFailed
from scene_narrator.models import Character, Segment
from scene_narrator.pipeline import ingest_scene
from scene_narrator.service import ScriptService
from scene_narrator.tts import SynthesisResult
from scene_narrator.usage import UsageTracker

SESSION = "Night Watch"

TAGGED_SCENE = (
    "The lighthouse keeper climbed the spiral stairs as the storm rolled in from the west.\n"
    "[CHAR:Mara]Is the lamp still burning?[/CHAR] she called from below.\n"
    "Wind rattled every pane of glass in the narrow tower.\n"
    "[CHAR:Tom]It is, but the oil is nearly gone![/CHAR]\n"
    "Mara gathered her coat and hurried up after him, counting each step in the dark.\n"
    "[CHAR:Mara]Then we have until midnight...[/CHAR]"
)


class FakeSynthesizer:
    """Stands in for EdgeSynthesizer. Fails for any text listed in fail_texts."""

    def __init__(self, fail_texts=(), error="engine unavailable"):
        self.fail_texts = set(fail_texts)
        self.error = error
        self.calls = []

    async def synthesize(self, text, voice_id, emotion="neutral", stability=0.5, style=0.5):
        self.calls.append({
            "text": text,
            "voice_id": voice_id,
            "emotion": emotion,
            "stability": stability,
            "style": style,
        })
        if text in self.fail_texts:
            raise SynthesisFailed(self.error)
        words = text.split()
        return SynthesisResult(
            audio=b"ID3" + text.encode(),
            word_timings=({"text": words[0], "offset_ms": 0, "duration_ms": 100 * len(words)},),
        )


@pytest.fixture
def tagged_scene():
    return TAGGED_SCENE


@pytest.fixture
def characters():
    return [
        Character(id="1", name="Mara", voice_id="en-US-AriaNeural", voice_name="Aria"),
        Character(id="2", name="Tom", voice_id="en-US-DavisNeural", voice_name="Davis"),
    ]


@pytest.fixture
def sample_segments():
    """Pre-built segments for lifecycle/assembly tests."""
    return [
        Segment(id="s-000-000", scene_id="s-000", speaker="narrator", text="It was dark.", type="narrator"),
        Segment(id="s-000-001", scene_id="s-000", speaker="Mara", text="Who's there?", type="dialogue"),
        Segment(id="s-000-002", scene_id="s-000", speaker="Tom", text="Only me!", type="dialogue"),
    ]


@pytest.fixture
def store(tmp_path):
    return SessionStore(output_base=str(tmp_path / "output"))


@pytest.fixture
def session(store, characters, tagged_scene):
    """A session with a cast and one ingested scene. Returns the session id."""
    store.init_session(SESSION)
    store.save_characters(SESSION, characters)
    ingest_scene(store, SESSION, tagged_scene)
    return SESSION


@pytest.fixture
def fake_synth():
    return FakeSynthesizer()


@pytest.fixture
def make_service(store):
    """Factory: a ScriptService over the test store with a fake synthesizer."""
    def factory(synthesizer=None, max_chars=50000):
        return ScriptService(
            store,
            synthesizer or FakeSynthesizer(),
            UsageTracker(store, max_chars=max_chars),
        )
    return factory


@pytest.fixture
def service(make_service, fake_synth):
    return make_service(fake_synth)
