"""Turn tagged scene text into an ordered list of speaker-attributed segments.

Dialogue arrives wrapped in ``[CHAR:Name]...[/CHAR]`` tags; everything
between tags is narration. Parsing is deterministic and does no I/O.
"""

import logging
import re
from dataclasses import dataclass, replace

from scene_narrator.constants import (
    DEFAULT_EMOTION,
    MIN_TEXT_COVERAGE,
    NARRATOR_SPEAKER,
    SEGMENT_SPLIT_THRESHOLD,
)
from scene_narrator.models import DIALOGUE, NARRATOR, Character, Segment
from scene_narrator.voices import CharacterDirectory

logger = logging.getLogger(__name__)

# Speech verbs for attribution detection
SPEECH_VERBS = (
    "said", "asked", "replied", "cried", "whispered", "exclaimed",
    "shouted", "murmured", "muttered", "screamed", "shrieked",
    "called", "answered", "demanded", "insisted", "suggested",
    "pleaded", "begged", "groaned", "moaned", "sighed", "gasped",
    "laughed", "sobbed", "wept", "hissed", "snapped", "growled",
    "roared", "yelled", "bellowed", "announced", "declared",
    "remarked", "observed", "noted", "commented", "added",
    "continued", "went on", "admitted", "confessed",
    "agreed", "protested", "objected",
    "interrupted", "interjected", "urged", "warned", "cautioned",
    "promised", "vowed", "swore", "stammered", "stuttered",
    "blurted",
)

_VERB_PATTERN = "|".join(re.escape(v) for v in SPEECH_VERBS)

_CHAR_TAG_OPEN_RE = re.compile(r"\[CHAR:([^\]]*)\]")
_CHAR_TAG_CLOSE_RE = re.compile(r"\[/CHAR\]")
_FULL_TAG_RE = re.compile(r"\[CHAR:([^\]]+)\]([\s\S]*?)\[/CHAR\]")
_ANY_TAG_RE = re.compile(r"(\[CHAR:[^\]]*\])|(\[/CHAR\])")

# A narrator fragment that is nothing but an attribution: "she whispered." / "said Tom,"
_BARE_ATTRIBUTION_RE = re.compile(
    rf"^(?:(?:{_VERB_PATTERN})\s+[\w\s.'-]{{1,40}}?|[\w\s'-]{{1,40}}?\s+(?:{_VERB_PATTERN})(?:\s+\w+)?)\s*[,.;:!?-]*$",
    re.IGNORECASE,
)
# Attribution opening the narration that follows a line: "she called from below. ..."
_LEADING_ATTRIBUTION_RE = re.compile(
    rf"^(?:(?:{_VERB_PATTERN})\s+[\w'-]+|[\w'-]+(?:\s+[\w'-]+)?\s+(?:{_VERB_PATTERN})\b)[^.!?]{{0,40}}[.!?]\s+",
    re.IGNORECASE,
)
# Attribution leading into dialogue: "The knight said," / "Mara whispered:"
_TRAILING_ATTRIBUTION_RE = re.compile(
    rf",?\s*\b[\w'-]+(?:\s+[\w'-]+)?\s+(?:{_VERB_PATTERN})(?:\s+\w+)?\s*[,:]\s*$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class TagBalance:
    valid: bool
    errors: list


def _split_long_segment(text: str, threshold: int = SEGMENT_SPLIT_THRESHOLD) -> list[str]:
    """Split text longer than threshold at sentence boundaries."""
    if len(text) <= threshold:
        return [text]

    sentences = re.split(r"(?<=[.!?])\s+", text)
    chunks = []
    current = ""

    for sentence in sentences:
        if current and len(current) + len(sentence) + 1 > threshold:
            chunks.append(current.strip())
            current = sentence
        else:
            current = (current + " " + sentence).strip() if current else sentence

    if current.strip():
        chunks.append(current.strip())

    return chunks if chunks else [text]


def _narration_chunks(text: str) -> list[str]:
    """Narrator chunks for text outside complete tags.

    Stray closing tags are removed. Text after an opening tag that never
    closes cannot be attributed and is dropped.
    """
    text = _CHAR_TAG_CLOSE_RE.sub(" ", text)
    dangling = _CHAR_TAG_OPEN_RE.search(text)
    if dangling:
        logger.warning(
            "Dropping %d chars after unclosed tag %s", len(text) - dangling.start(), dangling.group(0)
        )
        text = text[:dangling.start()]
    text = " ".join(text.split())
    return _split_long_segment(text) if text else []


def detect_basic_emotion(text: str) -> str:
    """Cheap punctuation heuristics for a first-pass emotion label."""
    if not text:
        return DEFAULT_EMOTION

    lower = text.lower()
    words = set(re.findall(r"[a-z']+", lower))

    if "!" in text:
        if words & {"help", "no", "stop"}:
            return "urgent"
        return "excited"

    if "?" in text:
        if words & {"what", "why", "how"}:
            return "curious"
        return "questioning"

    if "..." in text:
        return "hesitant"

    letters = [c for c in text if c.isalpha()]
    if len(letters) > 3 and text == text.upper():
        return "shouting"

    return DEFAULT_EMOTION


def has_character_tags(text: str) -> bool:
    return bool(text) and _CHAR_TAG_OPEN_RE.search(text) is not None


def strip_tags(text: str) -> str:
    """Remove [CHAR] tags, keeping their content. Produces display text from raw text."""
    if not text:
        return ""
    stripped = _CHAR_TAG_OPEN_RE.sub("", text)
    stripped = _CHAR_TAG_CLOSE_RE.sub("", stripped)
    # Collapse runs of spaces but keep paragraph breaks
    paragraphs = re.split(r"\n\s*\n", stripped)
    return "\n\n".join(" ".join(p.split()) for p in paragraphs if p.strip())


def extract_speakers(text: str) -> list[str]:
    """Unique tagged speaker names, in order of first appearance."""
    speakers = []
    for match in _CHAR_TAG_OPEN_RE.finditer(text or ""):
        name = match.group(1).strip()
        if name and name not in speakers:
            speakers.append(name)
    return speakers


def validate_tag_balance(text: str) -> TagBalance:
    """Check that every [CHAR:Name] has a matching [/CHAR] and none nest."""
    if not text:
        return TagBalance(valid=True, errors=[])

    errors = []
    opens = _CHAR_TAG_OPEN_RE.findall(text)
    closes = _CHAR_TAG_CLOSE_RE.findall(text)
    if len(opens) != len(closes):
        errors.append(f"TAG_IMBALANCE: {len(opens)} opening tags vs {len(closes)} closing tags")

    depth = 0
    for match in _ANY_TAG_RE.finditer(text):
        if match.group(1):
            depth += 1
            if depth > 1:
                errors.append(f"NESTED_TAG at position {match.start()}")
        else:
            depth -= 1
            if depth < 0:
                errors.append(f"UNMATCHED_CLOSE at position {match.start()}")
                depth = 0
    if depth > 0:
        errors.append(f"UNCLOSED_TAG: {depth} opening tag(s) without closing tags")

    for name in opens:
        if not name.strip():
            errors.append("EMPTY_SPEAKER: speaker name cannot be empty")

    if errors:
        logger.warning("Tag balance check failed: %s", "; ".join(errors))
    return TagBalance(valid=not errors, errors=errors)


def text_coverage(segments: list[Segment], source_text: str) -> float:
    """Share of the tag-free source text that ended up in segments."""
    source = strip_tags(source_text)
    if not source:
        return 1.0
    covered = sum(len(seg.text) for seg in segments)
    return covered / len(source)


def build_segments(
    tagged_text: str,
    characters: list[Character] | tuple = (),
    scene_id: str = "",
) -> list[Segment]:
    """Parse tagged prose into ordered narrator and dialogue segments.

    Tagged names are canonicalized to the matching Character's display name
    (case-insensitive). Unknown names are kept as written; voice resolution
    falls back to the narrator for them later.

    Coverage below MIN_TEXT_COVERAGE is logged as possible data loss and
    never raised: upstream tagging is best-effort.
    """
    if not tagged_text or not tagged_text.strip():
        logger.warning("Empty text passed to build_segments for scene %r", scene_id)
        return []

    directory = CharacterDirectory(characters)
    pieces = []  # (type, speaker, text)
    pos = 0

    for match in _FULL_TAG_RE.finditer(tagged_text):
        for chunk in _narration_chunks(tagged_text[pos:match.start()]):
            pieces.append((NARRATOR, NARRATOR_SPEAKER, chunk))

        speaker = match.group(1).strip()
        line = " ".join(_CHAR_TAG_OPEN_RE.sub(" ", match.group(2)).split())
        if line:
            pieces.append((DIALOGUE, directory.canonical_name(speaker), line))
        else:
            logger.warning("Skipping empty dialogue tag for speaker %r", speaker)
        pos = match.end()

    for chunk in _narration_chunks(tagged_text[pos:]):
        pieces.append((NARRATOR, NARRATOR_SPEAKER, chunk))

    segments = []
    for index, (seg_type, speaker, text) in enumerate(pieces):
        segments.append(Segment(
            id=f"{scene_id}-{index:03d}" if scene_id else f"seg-{index:03d}",
            scene_id=scene_id,
            speaker=speaker,
            text=text,
            type=seg_type,
            voice_role=seg_type,
            ai_emotion=detect_basic_emotion(text) if seg_type == DIALOGUE else DEFAULT_EMOTION,
        ))

    coverage = text_coverage(segments, tagged_text)
    if coverage < MIN_TEXT_COVERAGE:
        # TODO: decide whether under-coverage should reject the scene instead of warning
        logger.warning(
            "Text loss detected in scene %r: only %d%% of input preserved in %d segments",
            scene_id, round(coverage * 100), len(segments),
        )

    dialogue_count = sum(1 for s in segments if s.type == DIALOGUE)
    logger.info(
        "Parsed %d segments (%d narrator, %d dialogue) for scene %r",
        len(segments), len(segments) - dialogue_count, dialogue_count, scene_id,
    )
    return segments


def strip_speech_attributions(segments: list[Segment]) -> list[Segment]:
    """Drop "she whispered."-style narrator fragments and trim attributions around lines.

    Used when hide_speech_tags is on: each character already has a distinct
    voice, so the attribution is redundant when heard.
    """
    result = []
    after_dialogue = False
    for seg in segments:
        if seg.type != NARRATOR:
            result.append(seg)
            after_dialogue = True
            continue
        text = seg.text.strip()
        if _BARE_ATTRIBUTION_RE.match(text):
            logger.debug("Dropping bare attribution %r", text)
            continue
        if after_dialogue:
            text = _LEADING_ATTRIBUTION_RE.sub("", text, count=1)
        after_dialogue = False
        trimmed = _TRAILING_ATTRIBUTION_RE.sub("", text).strip()
        if trimmed != text:
            trimmed = trimmed.rstrip(",;:")
            if trimmed and trimmed[-1] not in ".!?":
                trimmed += "."
        if not trimmed:
            continue
        result.append(replace(seg, text=trimmed))
    return result
