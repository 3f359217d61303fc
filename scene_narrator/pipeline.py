"""Ingest path for generated scene text: validate, segment, cast and save."""

import logging
import re

from scene_narrator.artifacts import SessionStore, slug_from_name
from scene_narrator.constants import SUMMARY_MAX_LENGTH
from scene_narrator.models import Scene
from scene_narrator.parser import (
    build_segments,
    extract_speakers,
    has_character_tags,
    strip_speech_attributions,
    strip_tags,
    validate_tag_balance,
)
from scene_narrator.validator import validate_scene_content
from scene_narrator.voices import (
    CharacterDirectory,
    assign_voices,
    cast_new_speakers,
    resolve_hide_speech_tags,
    resolve_multi_voice,
    resolve_voice,
    session_voice_from_config,
)

logger = logging.getLogger(__name__)

# First match wins
MOOD_RULES = [
    ("playful", re.compile(r"\b(laugh|giggl|funny)", re.IGNORECASE)),
    ("mysterious", re.compile(r"\b(dark|shadow|creep)", re.IGNORECASE)),
    ("exciting", re.compile(r"\b(battle|fight|ran\b)", re.IGNORECASE)),
    ("calm", re.compile(r"\b(sleep|dream|peaceful)", re.IGNORECASE)),
    ("emotional", re.compile(r"\b(sad|tear|miss)", re.IGNORECASE)),
]


def determine_mood(text: str) -> str:
    """Keyword mood label for a scene."""
    for mood, pattern in MOOD_RULES:
        if pattern.search(text or ""):
            return mood
    return "neutral"


def scene_id_for(session_id: str, sequence_index: int) -> str:
    return f"{slug_from_name(session_id)}-{sequence_index:03d}"


def ingest_scene(
    store: SessionStore,
    session_id: str,
    raw_text: str,
    display_text: str | None = None,
    skip_validation: bool = False,
    sequence_index: int | None = None,
) -> Scene:
    """Validate generated text and save it as the session's next scene.

    Raises ContentValidationFailed before anything is written. With
    skip_validation the check is bypassed, logged at WARNING and recorded on
    the scene as validation_bypassed.
    """
    store.require(session_id)
    config = store.load_config(session_id)
    characters = store.load_characters(session_id)
    tagged = has_character_tags(raw_text)
    multi_voice = resolve_multi_voice(config, bool(characters) or tagged)
    if display_text is None:
        display_text = strip_tags(raw_text)

    if sequence_index is None:
        sequence_index = store.next_sequence_index(session_id)

    # Step 1: validate
    if skip_validation:
        logger.warning(
            "Validation bypassed for session %s scene %d (%d chars)",
            session_id, sequence_index, len(display_text),
        )
    else:
        result = validate_scene_content(raw_text, display_text, multi_voice=multi_voice)
        logger.info("Content validated: %d words, %d chars", result.word_count, result.char_count)

    if tagged:
        validate_tag_balance(raw_text)

    # Step 2: cast any speakers not seen before
    narrator_voice = resolve_voice(session_config_voice_id=session_voice_from_config(config))
    if multi_voice:
        new_characters = cast_new_speakers(extract_speakers(raw_text), characters, narrator_voice)
        if new_characters:
            characters = characters + new_characters
            store.save_characters(session_id, characters)

    # Step 3: segment and assign voices
    scene_id = scene_id_for(session_id, sequence_index)
    segments = build_segments(raw_text, characters, scene_id=scene_id)
    if multi_voice and resolve_hide_speech_tags(config):
        segments = strip_speech_attributions(segments)
    directory = CharacterDirectory(characters, narrator_voice)
    segments = assign_voices(segments, directory, multi_voice=multi_voice)

    # Step 4: save
    scene = Scene(
        id=scene_id,
        session_id=session_id,
        sequence_index=sequence_index,
        raw_text=raw_text,
        display_text=display_text,
        summary=display_text[:SUMMARY_MAX_LENGTH],
        mood=determine_mood(display_text),
        word_count=len(display_text.split()),
        dialogue_map=tuple(segments),
        validation_bypassed=skip_validation,
    )
    store.save_scene(scene)
    logger.info(
        "Scene saved | %s | raw: %d chars | display: %d chars | %d segments",
        scene.id, len(raw_text), len(display_text), len(segments),
    )
    return scene
