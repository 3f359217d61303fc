"""Tests for service module (Layer 3a)."""

import asyncio
import os

import pytest

from scene_narrator.errors import (
    BulkPartialFailure,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    SynthesisFailed,
)
from scene_narrator.lifecycle import effective_params
from scene_narrator.models import ERROR, PENDING, RENDERED, STALE, DeliveryParams
from scene_narrator.pipeline import ingest_scene

SEG = "night_watch-000-{:03d}"


def _status(store, session, index):
    return store.load_script(session).find_segment(SEG.format(index)).render_status


def test_load_script(service, session):
    """The whole script comes back with scenes and cast."""
    script = asyncio.run(service.load_script(session))
    assert len(script.scenes) == 1
    assert len(script.segments()) == 6
    assert [c.name for c in script.characters] == ["Mara", "Tom"]


def test_render_segment_persists_result(service, session, store, fake_synth):
    """A render writes audio and stores duration and timings."""
    seg = asyncio.run(service.render_segment(session, SEG.format(1)))
    assert seg.render_status == RENDERED
    assert os.path.exists(seg.audio_url)
    assert seg.duration_ms == 500
    assert seg.word_timings
    assert _status(store, session, 1) == RENDERED
    assert fake_synth.calls[0]["voice_id"] == "en-US-AriaNeural"
    assert fake_synth.calls[0]["emotion"] == "questioning"


def test_render_segment_uses_effective_params(service, session, fake_synth):
    """Overrides reach the synthesizer."""
    asyncio.run(service.update_overrides(session, SEG.format(1), {"emotion": "calm", "style": 0.9}))
    asyncio.run(service.render_segment(session, SEG.format(1)))
    call = fake_synth.calls[0]
    assert (call["emotion"], call["stability"], call["style"]) == ("calm", 0.5, 0.9)


def test_render_segment_records_usage(service, session, store):
    """Rendered characters count against the story quota."""
    seg = asyncio.run(service.render_segment(session, SEG.format(1)))
    assert store.load_usage(session) == len(seg.text)


def test_render_segment_failure_sets_error(service, session, store, fake_synth):
    """A synthesis failure is persisted as error and re-raised."""
    text = store.load_script(session).find_segment(SEG.format(3)).text
    fake_synth.fail_texts = {text}
    with pytest.raises(SynthesisFailed) as exc:
        asyncio.run(service.render_segment(session, SEG.format(3)))
    assert exc.value.segment_id == SEG.format(3)
    seg = store.load_script(session).find_segment(SEG.format(3))
    assert seg.render_status == ERROR
    assert seg.render_error == "engine unavailable"
    assert store.load_usage(session) == 0


def test_render_segment_retry_after_error(service, session, store, fake_synth):
    """An errored segment can be rendered again by a new request."""
    text = store.load_script(session).find_segment(SEG.format(3)).text
    fake_synth.fail_texts = {text}
    with pytest.raises(SynthesisFailed):
        asyncio.run(service.render_segment(session, SEG.format(3)))
    fake_synth.fail_texts = set()
    seg = asyncio.run(service.render_segment(session, SEG.format(3)))
    assert seg.render_status == RENDERED
    assert seg.render_error is None


def test_render_rendered_segment_is_invalid(service, session):
    """Rendered audio must go stale before it can be rendered again."""
    asyncio.run(service.render_segment(session, SEG.format(0)))
    with pytest.raises(InvalidTransition):
        asyncio.run(service.render_segment(session, SEG.format(0)))


def test_render_segment_quota_leaves_segment_untouched(make_service, session, store):
    """A quota refusal does not mark the segment as failed."""
    service = make_service(max_chars=5)
    with pytest.raises(SynthesisFailed) as exc:
        asyncio.run(service.render_segment(session, SEG.format(0)))
    assert exc.value.status == 429
    assert _status(store, session, 0) == PENDING


def test_render_unknown_segment(service, session):
    """Unknown segment ids are NotFound."""
    with pytest.raises(NotFound):
        asyncio.run(service.render_segment(session, "nope"))


def test_update_overrides_on_rendered_marks_stale(service, session, store):
    """Editing delivery after a render marks the audio stale."""
    asyncio.run(service.render_segment(session, SEG.format(1)))
    seg = asyncio.run(service.update_overrides(session, SEG.format(1), {"stability": 0.1}))
    assert seg.render_status == STALE
    assert _status(store, session, 1) == STALE


def test_update_overrides_reset_restores_ai(service, session, store):
    """Reset makes the AI suggestion effective again."""
    asyncio.run(service.update_overrides(session, SEG.format(1), {"emotion": "angry"}))
    seg = asyncio.run(service.update_overrides(session, SEG.format(1), reset=True))
    assert effective_params(seg) == DeliveryParams("questioning", 0.5, 0.5)
    assert store.load_script(session).find_segment(SEG.format(1)).user_overrides is None


def test_update_overrides_invalid_values(service, session):
    """Bad values are rejected with field details."""
    with pytest.raises(InvalidRequest) as exc:
        asyncio.run(service.update_overrides(session, SEG.format(1), {"stability": 2}))
    assert exc.value.details[0][0] == "stability"


def test_preview_does_not_change_status(service, session, store, fake_synth):
    """Preview synthesizes but leaves render_status alone."""
    handle = asyncio.run(service.preview_segment(session, SEG.format(0)))
    try:
        assert os.path.exists(handle.path)
        assert _status(store, session, 0) == PENDING
        assert fake_synth.calls[0]["text"] == handle.text
    finally:
        handle.release()


def test_preview_truncates_long_text(service, session, store, tagged_scene, fake_synth):
    """Previews read at most 200 chars."""
    long_raw = tagged_scene + " " + " ".join(f"Quiet{i} waves rolled past the rocks." for i in range(20))
    scene = ingest_scene(store, session, long_raw, skip_validation=True)
    long_seg = max(scene.dialogue_map, key=lambda s: len(s.text))
    handle = asyncio.run(service.preview_segment(session, long_seg.id))
    handle.release()
    assert len(fake_synth.calls[0]["text"]) == 203
    assert fake_synth.calls[0]["text"].endswith("...")


def test_render_all_renders_pending(service, session, store):
    """Every pending segment is rendered in order."""
    settled = []
    result = asyncio.run(service.render_all(session, on_segment=settled.append))
    assert len(result.rendered) == 6
    assert [s.id for s in settled] == [SEG.format(i) for i in range(6)]
    assert {s.render_status for s in store.load_script(session).segments()} == {RENDERED}


def test_render_all_failure_rolls_back_to_pending(service, session, store, fake_synth):
    """A failed segment in a batch ends pending with its error; the rest render."""
    text = store.load_script(session).find_segment(SEG.format(2)).text
    fake_synth.fail_texts = {text}
    result = asyncio.run(service.render_all(session))
    assert len(result.rendered) == 5
    assert result.errors == [{"segment_id": SEG.format(2), "error": "engine unavailable"}]
    seg = store.load_script(session).find_segment(SEG.format(2))
    assert seg.render_status == PENDING
    assert seg.render_error == "engine unavailable"
    with pytest.raises(BulkPartialFailure) as exc:
        result.raise_for_failures()
    assert exc.value.rendered_count == 5


def test_render_all_skips_rendered_and_error(service, session, store, fake_synth):
    """Rendered and errored segments are not part of the batch."""
    asyncio.run(service.render_segment(session, SEG.format(0)))
    text = store.load_script(session).find_segment(SEG.format(1)).text
    fake_synth.fail_texts = {text}
    with pytest.raises(SynthesisFailed):
        asyncio.run(service.render_segment(session, SEG.format(1)))
    fake_synth.calls.clear()
    result = asyncio.run(service.render_all(session))
    assert [s.id for s in result.rendered] == [SEG.format(i) for i in (2, 3, 4, 5)]


def test_render_all_includes_stale(service, session):
    """Stale segments are re-rendered by a bulk render."""
    asyncio.run(service.render_segment(session, SEG.format(1)))
    asyncio.run(service.update_overrides(session, SEG.format(1), {"emotion": "calm"}))
    result = asyncio.run(service.render_all(session, [SEG.format(1)]))
    assert [s.id for s in result.rendered] == [SEG.format(1)]


def test_render_all_refuses_batch_over_quota(make_service, session, store):
    """The whole batch is refused before any synthesis if it cannot fit."""
    service = make_service(max_chars=50)
    with pytest.raises(SynthesisFailed) as exc:
        asyncio.run(service.render_all(session))
    assert exc.value.quota_exceeded
    assert {s.render_status for s in store.load_script(session).segments()} == {PENDING}
    assert service.synthesizer.calls == []


def test_change_character_voice_marks_rendered_stale(service, session, store):
    """Only that speaker's rendered segments go stale; count is returned."""
    asyncio.run(service.render_all(session))
    result = asyncio.run(service.change_character_voice(session, "1", "en-GB-SoniaNeural"))
    assert result.stale_count == 2
    assert result.character.voice_id == "en-GB-SoniaNeural"
    script = store.load_script(session)
    for seg in script.segments():
        if seg.speaker == "Mara":
            assert seg.render_status == STALE
            assert seg.voice_id == "en-GB-SoniaNeural"
        else:
            assert seg.render_status == RENDERED
    assert script.characters[0].voice_id == "en-GB-SoniaNeural"


def test_change_character_voice_pending_not_counted(service, session, store):
    """Pending segments pick up the new voice but are not counted."""
    result = asyncio.run(service.change_character_voice(session, "2", "en-IE-EmilyNeural"))
    assert result.stale_count == 0
    assert store.load_script(session).find_segment(SEG.format(3)).voice_id == "en-IE-EmilyNeural"


def test_change_character_voice_unknown(service, session):
    """Unknown characters are NotFound; empty voices are invalid."""
    with pytest.raises(NotFound):
        asyncio.run(service.change_character_voice(session, "99", "en-GB-SoniaNeural"))
    with pytest.raises(InvalidRequest):
        asyncio.run(service.change_character_voice(session, "1", " "))


def test_usage_estimate(service, session, store):
    """Estimate covers every pending segment."""
    estimate = asyncio.run(service.usage_estimate(session))
    total = sum(len(s.text) for s in store.load_script(session).segments())
    assert estimate.pending_segments == 6
    assert estimate.estimated_chars == total
    assert estimate.can_render_all


def test_update_config_rejects_unknown_keys(service, session):
    """Only known session settings can be set."""
    with pytest.raises(InvalidRequest):
        service.update_config(session, volume=11)
    assert service.update_config(session, multi_voice=False)["multi_voice"] is False
