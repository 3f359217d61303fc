"""Backend operations on a session's script: overrides, rendering, voices, usage.

Only final states are persisted. A segment is held in ``rendering`` in
memory while its synthesis runs, so a crash never leaves one stuck there.
"""

import logging
from dataclasses import dataclass, field, replace

from scene_narrator.artifacts import PreviewHandle, SessionStore, write_preview
from scene_narrator.errors import BulkPartialFailure, InvalidRequest, NotFound, SynthesisFailed
from scene_narrator.lifecycle import (
    RENDER_FAILED,
    RENDER_REQUESTED,
    RENDER_ROLLED_BACK,
    RENDER_SUCCEEDED,
    VOICE_CHANGED,
    apply_event,
    effective_params,
    needs_render,
    update_overrides,
)
from scene_narrator.models import RENDERED, Character, Script, Segment
from scene_narrator.tts import EdgeSynthesizer, probe_duration_ms, truncate_for_preview
from scene_narrator.usage import UsageEstimate, UsageTracker
from scene_narrator.voices import resolve_multi_voice

logger = logging.getLogger(__name__)

CONFIG_KEYS = ("multi_voice", "hide_speech_tags", "voice_id", "narratorVoice")


@dataclass
class RenderAllResult:
    rendered: list[Segment] = field(default_factory=list)
    failed: list[Segment] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def segments(self) -> list[Segment]:
        """Every segment the batch settled, rendered or not."""
        return self.rendered + self.failed

    def raise_for_failures(self) -> None:
        if self.errors:
            raise BulkPartialFailure(self.errors, rendered_count=len(self.rendered))


@dataclass(frozen=True)
class VoiceChangeResult:
    character: Character
    stale_count: int


class ScriptService:
    """Script operations over a SessionStore and a synthesizer."""

    def __init__(
        self,
        store: SessionStore | None = None,
        synthesizer=None,
        tracker: UsageTracker | None = None,
    ):
        self.store = store or SessionStore()
        self.synthesizer = synthesizer or EdgeSynthesizer()
        self.tracker = tracker or UsageTracker(self.store)

    # -- reads -----------------------------------------------------------

    async def load_script(self, session_id: str) -> Script:
        return self.store.load_script(session_id)

    def _get_segment(self, session_id: str, segment_id: str) -> Segment:
        segment = self.store.load_script(session_id).find_segment(segment_id)
        if segment is None:
            raise NotFound("Segment", segment_id)
        return segment

    # -- overrides and config -------------------------------------------

    async def update_overrides(
        self,
        session_id: str,
        segment_id: str,
        changes: dict | None = None,
        reset: bool = False,
    ) -> Segment:
        segment = self._get_segment(session_id, segment_id)
        updated = update_overrides(segment, changes, reset=reset)
        self.store.save_segment(session_id, updated)
        logger.info("Overrides %s for segment %s (%s)", "reset" if reset else "updated", segment_id, updated.render_status)
        return updated

    def update_config(self, session_id: str, **changes) -> dict:
        unknown = [k for k in changes if k not in CONFIG_KEYS]
        if unknown:
            raise InvalidRequest(
                "Unknown config keys", details=[(k, "unknown config key") for k in unknown]
            )
        config = self.store.load_config(session_id)
        config.update(changes)
        self.store.save_config(session_id, config)
        return config

    # -- synthesis -------------------------------------------------------

    async def _synthesize(self, session_id: str, segment: Segment, text: str):
        self.tracker.check(session_id, len(text), segment_id=segment.id)
        params = effective_params(segment)
        try:
            result = await self.synthesizer.synthesize(
                text, segment.voice_id, params.emotion, params.stability, params.style
            )
        except SynthesisFailed as e:
            if e.segment_id is None:
                e.segment_id = segment.id
            raise
        self.tracker.record(session_id, len(text))
        return result

    async def _render_one(self, session_id: str, segment: Segment) -> Segment:
        """Synthesize and persist a segment already in ``rendering``. Raises on failure."""
        result = await self._synthesize(session_id, segment, segment.text)
        path = self.store.write_audio(session_id, segment.id, result.audio)
        duration = result.duration_ms
        if duration is None:
            duration = probe_duration_ms(path)
        rendered = apply_event(
            segment,
            RENDER_SUCCEEDED,
            audio_url=path,
            render_error=None,
            duration_ms=duration,
            word_timings=result.word_timings,
        )
        self.store.save_segment(session_id, rendered)
        logger.info("Rendered segment %s (%s ms)", segment.id, duration)
        return rendered

    async def render_segment(self, session_id: str, segment_id: str) -> Segment:
        """Render one pending, stale or errored segment.

        A synthesis failure persists the segment as ``error`` with its
        render_error and is re-raised. A quota refusal leaves the segment
        untouched.
        """
        segment = self._get_segment(session_id, segment_id)
        rendering = apply_event(segment, RENDER_REQUESTED)
        self.tracker.check(session_id, len(segment.text), segment_id=segment_id)
        try:
            return await self._render_one(session_id, rendering)
        except SynthesisFailed as e:
            failed = apply_event(rendering, RENDER_FAILED, render_error=e.message)
            self.store.save_segment(session_id, failed)
            logger.warning("Render failed for segment %s: %s", segment_id, e.message)
            raise

    async def preview_segment(self, session_id: str, segment_id: str) -> PreviewHandle:
        """Synthesize up to the first 200 chars to a transient file. Status is untouched."""
        segment = self._get_segment(session_id, segment_id)
        text = truncate_for_preview(segment.text)
        result = await self._synthesize(session_id, segment, text)
        return write_preview(result.audio, segment_id, text)

    async def render_all(
        self,
        session_id: str,
        segment_ids: list[str] | None = None,
        on_segment=None,
    ) -> RenderAllResult:
        """Render every pending or stale segment in order.

        Refuses the whole batch up front if it cannot fit the remaining
        quota. Each failure is persisted as ``pending`` with its
        render_error, then the batch moves on. on_segment, if given, is
        called with each settled segment.
        """
        script = self.store.load_script(session_id)
        batch = [seg for seg in script.segments() if needs_render(seg)]
        if segment_ids is not None:
            wanted = set(segment_ids)
            batch = [seg for seg in batch if seg.id in wanted]

        total_chars = sum(len(seg.text) for seg in batch)
        self.tracker.check(session_id, total_chars)

        result = RenderAllResult()
        for i, segment in enumerate(batch):
            logger.debug("Rendering segment %d/%d: %s", i + 1, len(batch), segment.id)
            rendering = apply_event(segment, RENDER_REQUESTED)
            try:
                settled = await self._render_one(session_id, rendering)
                result.rendered.append(settled)
            except SynthesisFailed as e:
                settled = apply_event(rendering, RENDER_ROLLED_BACK, render_error=e.message)
                self.store.save_segment(session_id, settled)
                result.failed.append(settled)
                result.errors.append({"segment_id": segment.id, "error": e.message})
                logger.warning("Batch render failed for segment %s: %s", segment.id, e.message)
            if on_segment is not None:
                on_segment(settled)

        logger.info(
            "Render-all for %s: %d rendered, %d failed of %d",
            session_id, len(result.rendered), len(result.errors), len(batch),
        )
        return result

    # -- characters ------------------------------------------------------

    async def change_character_voice(
        self,
        session_id: str,
        character_id: str,
        voice_id: str,
        voice_name: str | None = None,
    ) -> VoiceChangeResult:
        """Change a character's voice and mark their rendered segments stale."""
        if not voice_id or not voice_id.strip():
            raise InvalidRequest("voice_id is required", details=[("voice_id", "must not be empty")])
        script = self.store.load_script(session_id)
        character = next((c for c in script.characters if c.id == character_id), None)
        if character is None:
            raise NotFound("Character", character_id)

        updated = replace(character, voice_id=voice_id, voice_name=voice_name or voice_id)
        script = script.replace_character(updated)
        self.store.save_characters(session_id, script.characters)

        multi_voice = resolve_multi_voice(script.config, True)
        key = character.name.strip().lower()
        stale_count = 0
        for scene in script.scenes:
            changed = scene
            for seg in scene.dialogue_map:
                if seg.speaker.strip().lower() != key:
                    continue
                fields = {"voice_id": voice_id} if multi_voice else {}
                new_seg = apply_event(seg, VOICE_CHANGED, **fields)
                if seg.render_status == RENDERED:
                    stale_count += 1
                changed = changed.replace_segment(new_seg)
            if changed is not scene:
                self.store.save_scene(changed)

        logger.info(
            "Voice for %s set to %s; %d segment(s) marked stale",
            character.name, voice_id, stale_count,
        )
        return VoiceChangeResult(character=updated, stale_count=stale_count)

    # -- usage -----------------------------------------------------------

    async def usage_estimate(self, session_id: str) -> UsageEstimate:
        script = self.store.load_script(session_id)
        pending = [seg for seg in script.segments() if needs_render(seg)]
        return self.tracker.estimate(session_id, pending)
