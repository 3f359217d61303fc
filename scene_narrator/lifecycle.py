"""Segment render lifecycle as an explicit (status, event) -> status reducer.

    pending ──render_requested──▶ rendering ──render_succeeded──▶ rendered
    stale   ──render_requested──▶ rendering ──render_failed─────▶ error
    error   ──render_requested──▶ rendering ──render_rolled_back▶ pending
    rendered ──overrides_changed / voice_changed──▶ stale

Edits to a segment that is not rendered leave its status alone.
"""

import logging
from dataclasses import replace

from scene_narrator.constants import DEFAULT_EMOTION, DEFAULT_STABILITY, DEFAULT_STYLE
from scene_narrator.errors import InvalidRequest, InvalidTransition
from scene_narrator.models import (
    ERROR,
    PENDING,
    RENDERED,
    RENDERING,
    STALE,
    DeliveryParams,
    Overrides,
    Segment,
)

logger = logging.getLogger(__name__)

RENDER_REQUESTED = "render_requested"
RENDER_SUCCEEDED = "render_succeeded"
RENDER_FAILED = "render_failed"
RENDER_ROLLED_BACK = "render_rolled_back"
OVERRIDES_CHANGED = "overrides_changed"
VOICE_CHANGED = "voice_changed"
EVENTS = (
    RENDER_REQUESTED,
    RENDER_SUCCEEDED,
    RENDER_FAILED,
    RENDER_ROLLED_BACK,
    OVERRIDES_CHANGED,
    VOICE_CHANGED,
)

TRANSITIONS = {
    (PENDING, RENDER_REQUESTED): RENDERING,
    (STALE, RENDER_REQUESTED): RENDERING,
    (ERROR, RENDER_REQUESTED): RENDERING,
    (RENDERING, RENDER_SUCCEEDED): RENDERED,
    (RENDERING, RENDER_FAILED): ERROR,
    (RENDERING, RENDER_ROLLED_BACK): PENDING,
    (RENDERED, OVERRIDES_CHANGED): STALE,
    (RENDERED, VOICE_CHANGED): STALE,
}

# Events that only matter for rendered audio
_EDIT_EVENTS = (OVERRIDES_CHANGED, VOICE_CHANGED)

# States a bulk render picks up
RENDERABLE_STATES = (PENDING, STALE)

OVERRIDE_FIELDS = ("emotion", "stability", "style")


def normalize_status(status: str | None) -> str:
    return status or PENDING


def transition(status: str | None, event: str) -> str:
    """Next status for an event. Raises InvalidTransition for illegal pairs."""
    if event not in EVENTS:
        raise InvalidRequest(f"Unknown lifecycle event: {event}", details=[("event", event)])
    current = normalize_status(status)
    nxt = TRANSITIONS.get((current, event))
    if nxt is not None:
        return nxt
    if event in _EDIT_EVENTS:
        return current
    raise InvalidTransition(current, event)


def can_transition(status: str | None, event: str) -> bool:
    return (normalize_status(status), event) in TRANSITIONS or event in _EDIT_EVENTS


def apply_event(segment: Segment, event: str, **fields) -> Segment:
    """Return a new Segment with the next status and any extra fields set."""
    new_status = transition(segment.render_status, event)
    if new_status != segment.render_status:
        logger.debug("Segment %s: %s -> %s (%s)", segment.id, segment.render_status, new_status, event)
    return replace(segment, render_status=new_status, **fields)


def needs_render(segment: Segment) -> bool:
    """True for segments a bulk render should pick up: pending, stale or missing."""
    return normalize_status(segment.render_status) in RENDERABLE_STATES


def effective_params(segment: Segment) -> DeliveryParams:
    """User override, else AI suggestion, else the fixed default, per field."""
    overrides = segment.user_overrides or Overrides()

    def pick(user, ai, default):
        if user is not None:
            return user
        if ai is not None:
            return ai
        return default

    return DeliveryParams(
        emotion=pick(overrides.emotion, segment.ai_emotion, DEFAULT_EMOTION),
        stability=pick(overrides.stability, segment.ai_stability, DEFAULT_STABILITY),
        style=pick(overrides.style, segment.ai_style, DEFAULT_STYLE),
    )


def _check_unit_interval(name: str, value) -> str | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return f"{name} must be a number between 0 and 1"
    if not 0 <= value <= 1:
        return f"{name} must be between 0 and 1, got {value}"
    return None


def validate_overrides(changes: dict) -> None:
    """Raise InvalidRequest listing every bad field in an override change set."""
    details = []
    for key in changes:
        if key not in OVERRIDE_FIELDS:
            details.append((key, "unknown override field"))

    emotion = changes.get("emotion")
    if "emotion" in changes and emotion is not None:
        if not isinstance(emotion, str) or not emotion.strip():
            details.append(("emotion", "emotion must be a non-empty string"))

    for name in ("stability", "style"):
        if name in changes and changes[name] is not None:
            problem = _check_unit_interval(name, changes[name])
            if problem:
                details.append((name, problem))

    if details:
        raise InvalidRequest("Invalid override values", details=details)


def merge_overrides(current: Overrides | None, changes: dict | None, reset: bool = False) -> Overrides | None:
    """Partial merge of override fields, or clear them all on reset.

    A field explicitly set to None clears that one override.
    """
    if reset:
        return None
    changes = changes or {}
    validate_overrides(changes)
    base = current or Overrides()
    values = {k: v.strip() if isinstance(v, str) else v for k, v in changes.items()}
    merged = replace(base, **values)
    return None if merged.is_empty() else merged


def update_overrides(segment: Segment, changes: dict | None = None, reset: bool = False) -> Segment:
    """Apply an override edit. A rendered segment becomes stale."""
    if not reset and not changes:
        raise InvalidRequest("No override fields given", details=[("user_overrides", "empty update")])
    merged = merge_overrides(segment.user_overrides, changes, reset=reset)
    return apply_event(segment, OVERRIDES_CHANGED, user_overrides=merged)
