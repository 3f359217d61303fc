"""Script editor controller: local script state over a ScriptService.

The editor keeps an optimistic copy of the script. Renders mark segments
``rendering`` locally before the backend answers and roll back when it
fails. At most one render or preview per segment id is in flight. Observers
get SegmentUpdated and Notice messages through the listener callbacks given
to the constructor.
"""

import asyncio
import logging
from dataclasses import dataclass

from scene_narrator.artifacts import PreviewHandle
from scene_narrator.errors import (
    InvalidRequest,
    RenderInProgress,
    ScriptEditorError,
    SynthesisFailed,
    TransportAborted,
)
from scene_narrator.lifecycle import (
    RENDER_FAILED,
    RENDER_REQUESTED,
    RENDER_ROLLED_BACK,
    apply_event,
    can_transition,
    needs_render,
)
from scene_narrator.models import ERROR, PENDING, RENDERED, RENDERING, STALE, Script, Segment
from scene_narrator.service import RenderAllResult, ScriptService, VoiceChangeResult
from scene_narrator.usage import UsageEstimate

logger = logging.getLogger(__name__)

TRANSIENT = "transient"
BLOCKING = "blocking"


@dataclass(frozen=True)
class SegmentUpdated:
    segment: Segment


@dataclass(frozen=True)
class Notice:
    level: str  # "transient" or "blocking"
    message: str
    segment_id: str | None = None


class ScriptEditor:
    def __init__(self, service: ScriptService, session_id: str, listeners=()):
        self.service = service
        self.session_id = session_id
        self.listeners = list(listeners)
        self.script: Script | None = None
        self.error: ScriptEditorError | None = None
        self.loading = False
        self._in_flight = set()
        self._fetch_task = None
        self._preview: PreviewHandle | None = None

    # -- observers -------------------------------------------------------

    def subscribe(self, listener) -> None:
        self.listeners.append(listener)

    def _emit(self, message) -> None:
        for listener in self.listeners:
            listener(message)

    def _notify(self, level: str, message: str, segment_id: str | None = None) -> None:
        self._emit(Notice(level=level, message=message, segment_id=segment_id))

    # -- local state -----------------------------------------------------

    @property
    def in_flight(self) -> frozenset:
        return frozenset(self._in_flight)

    def segment(self, segment_id: str) -> Segment | None:
        return self.script.find_segment(segment_id) if self.script else None

    def _set_segment(self, segment: Segment) -> None:
        """Swap one segment into the local script and tell listeners."""
        if self.script is None:
            return
        self.script = self.script.replace_segment(segment)
        self._emit(SegmentUpdated(segment))

    def _claim(self, segment_id: str) -> None:
        if segment_id in self._in_flight:
            raise RenderInProgress(segment_id)
        self._in_flight.add(segment_id)

    def progress(self) -> tuple[int, int]:
        """(rendered, total) segments in the local script."""
        if self.script is None:
            return (0, 0)
        segments = self.script.segments()
        return (sum(1 for s in segments if s.render_status == RENDERED), len(segments))

    def stats(self) -> dict:
        segments = self.script.segments() if self.script else []

        def by_status(*states):
            return sum(1 for s in segments if (s.render_status or PENDING) in states)

        return {
            "total": len(segments),
            "rendered": by_status(RENDERED),
            "pending": by_status(PENDING, STALE),
            "rendering": by_status(RENDERING),
            "errors": by_status(ERROR),
            "total_chars": sum(len(s.text) for s in segments),
        }

    # -- loading ---------------------------------------------------------

    async def _await_fetch(self, task):
        try:
            return await task
        except asyncio.CancelledError:
            if self._fetch_task is task:
                raise
            raise TransportAborted("Script fetch superseded by a newer request") from None

    async def fetch_script(self) -> Script | None:
        """Load the script. A newer call cancels this one, which then returns None."""
        previous = self._fetch_task
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.ensure_future(self.service.load_script(self.session_id))
        self._fetch_task = task
        self.loading = True
        try:
            script = await self._await_fetch(task)
        except TransportAborted as e:
            logger.debug("%s", e.message)
            return None
        except ScriptEditorError as e:
            if self._fetch_task is not task:
                return None
            self._fetch_task = None
            self.loading = False
            self.error = e
            self._notify(BLOCKING, f"Failed to load script: {e.message}")
            return None

        if self._fetch_task is not task:
            return None
        self._fetch_task = None
        self.loading = False
        self.error = None
        self.script = script
        return script

    # -- edits -----------------------------------------------------------

    async def update_segment_overrides(
        self,
        segment_id: str,
        changes: dict | None = None,
        reset: bool = False,
    ) -> Segment:
        try:
            segment = await self.service.update_overrides(
                self.session_id, segment_id, changes, reset=reset
            )
        except ScriptEditorError as e:
            self._notify(TRANSIENT, f"Could not update segment: {e.message}", segment_id)
            raise
        self._set_segment(segment)
        return segment

    async def change_character_voice(
        self,
        character_id: str,
        voice_id: str,
        voice_name: str | None = None,
    ) -> VoiceChangeResult:
        """Change a voice on the backend, then reload to pick up the stale segments."""
        try:
            result = await self.service.change_character_voice(
                self.session_id, character_id, voice_id, voice_name
            )
        except ScriptEditorError as e:
            self._notify(TRANSIENT, f"Could not change voice: {e.message}")
            raise
        await self.fetch_script()
        if result.stale_count:
            self._notify(
                TRANSIENT,
                f"{result.stale_count} segment(s) need re-rendering for {result.character.name}",
            )
        return result

    # -- rendering -------------------------------------------------------

    async def render_segment(self, segment_id: str) -> Segment:
        self._claim(segment_id)
        original = self.segment(segment_id)
        rendering = None
        if original is not None and can_transition(original.render_status, RENDER_REQUESTED):
            rendering = apply_event(original, RENDER_REQUESTED)
            self._set_segment(rendering)
        try:
            segment = await self.service.render_segment(self.session_id, segment_id)
        except SynthesisFailed as e:
            if rendering is not None and not e.quota_exceeded:
                self._set_segment(apply_event(rendering, RENDER_FAILED, render_error=e.message))
            elif original is not None:
                self._set_segment(original)
            self._notify(TRANSIENT, f"Render failed: {e.message}", segment_id)
            raise
        except BaseException:
            if original is not None:
                self._set_segment(original)
            raise
        finally:
            self._in_flight.discard(segment_id)
        self._set_segment(segment)
        return segment

    async def preview_segment(self, segment_id: str) -> PreviewHandle:
        """Synthesize a short preview. Starting one releases the previous preview."""
        self._claim(segment_id)
        if self._preview is not None:
            self._preview.release()
            self._preview = None
        try:
            handle = await self.service.preview_segment(self.session_id, segment_id)
        except ScriptEditorError as e:
            self._notify(TRANSIENT, f"Preview failed: {e.message}", segment_id)
            raise
        finally:
            self._in_flight.discard(segment_id)
        self._preview = handle
        return handle

    def _roll_back(self, segment_ids) -> None:
        for segment_id in segment_ids:
            seg = self.segment(segment_id)
            if seg is not None and seg.render_status == RENDERING:
                self._set_segment(apply_event(seg, RENDER_ROLLED_BACK))

    async def render_all(self) -> RenderAllResult:
        """Render every pending or stale segment in one backend batch.

        Batch segments show ``rendering`` right away. Settled segments are
        applied as the backend reports them; whatever is still
        ``rendering`` when the batch ends or fails goes back to ``pending``.
        """
        if self.script is None:
            raise InvalidRequest("Script not loaded")
        batch = [
            seg for seg in self.script.segments()
            if needs_render(seg) and seg.id not in self._in_flight
        ]
        if not batch:
            return RenderAllResult()

        ids = [seg.id for seg in batch]
        self._in_flight.update(ids)
        for seg in batch:
            self._set_segment(apply_event(seg, RENDER_REQUESTED))
        try:
            result = await self.service.render_all(self.session_id, ids, on_segment=self._set_segment)
        except BaseException as e:
            self._roll_back(ids)
            if isinstance(e, ScriptEditorError):
                self._notify(TRANSIENT, f"Render all failed: {e.message}")
            raise
        finally:
            self._in_flight.difference_update(ids)

        for seg in result.segments:
            self._set_segment(seg)
        self._roll_back(ids)
        if result.errors:
            self._notify(
                TRANSIENT,
                f"{len(result.errors)} segment(s) failed, {len(result.rendered)} rendered",
            )
        return result

    async def get_usage_estimate(self) -> UsageEstimate:
        return await self.service.usage_estimate(self.session_id)

    # -- teardown --------------------------------------------------------

    async def aclose(self) -> None:
        """Release the last preview and cancel any outstanding fetch."""
        if self._preview is not None:
            self._preview.release()
            self._preview = None
        task, self._fetch_task = self._fetch_task, None
        if task is not None and not task.done():
            task.cancel()
