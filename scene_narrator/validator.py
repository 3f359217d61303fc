"""Reject generated scene text that is not usable story content.

The text model can answer with HTTP success and a useless body: a refusal,
a description of what it would write, markup, a stub, or a loop of the same
phrase. Each check below catches one of those shapes. All checks run and
their issues are raised together so the caller sees every problem at once.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass

from scene_narrator.constants import (
    CONTENT_PREVIEW_LENGTH,
    DIALOGUE_CHECK_MIN_WORDS,
    ISSUE_EXCERPT_LENGTH,
    MAX_NGRAM_REPEATS,
    MAX_PARAGRAPH_REPEATS,
    MAX_SENTENCE_REPEATS,
    MAX_WORD_FREQUENCY_RATIO,
    MIN_DIALOGUE_MARKERS,
    MIN_DISPLAY_TEXT_LENGTH,
    MIN_PARAGRAPH_LENGTH,
    MIN_RAW_TEXT_LENGTH,
    MIN_SENTENCE_LENGTH,
    MIN_WORD_COUNT,
    NGRAM_SIZE,
    REPETITION_MIN_TOKENS,
)
from scene_narrator.errors import ContentValidationFailed

logger = logging.getLogger(__name__)

# Anchored at the start of the stripped display text
GARBAGE_PATTERNS = [
    # Meta-references to "the story" or "content"
    re.compile(r"^the\s+(revised\s+)?story\s+(above|below|here)", re.IGNORECASE),
    re.compile(r"^here\s+is\s+(the|your|a)\s+(revised\s+)?(story|scene|content|chapter)", re.IGNORECASE),
    re.compile(r"^(this|the)\s+(revised\s+)?(story|scene|content|chapter)\s+(is|has|includes)", re.IGNORECASE),
    # Refusals
    re.compile(r"^i\s+(cannot|can't|won't|am\s+unable\s+to)", re.IGNORECASE),
    re.compile(r"^(sorry|apologies),?\s+i\s+(cannot|can't|won't)", re.IGNORECASE),
    re.compile(r"^i\s+apologize,?\s+(but\s+)?i\s+(cannot|can't)", re.IGNORECASE),
    re.compile(r"^as\s+an?\s+(ai|language\s+model)", re.IGNORECASE),
    # Markup instead of prose
    re.compile(r"^<!doctype", re.IGNORECASE),
    re.compile(r"^<html", re.IGNORECASE),
    re.compile(r"^<\?xml", re.IGNORECASE),
    re.compile(r'^\s*\{\s*"error"', re.IGNORECASE),
    # Placeholders
    re.compile(r"^\[content\s+(unavailable|removed|redacted)\]", re.IGNORECASE),
    re.compile(r"^placeholder", re.IGNORECASE),
    re.compile(r"^lorem\s+ipsum", re.IGNORECASE),
    # Self-referential narration of intent
    re.compile(r"^(let\s+me|i('ll|\s+will))\s+(write|create|generate|craft)", re.IGNORECASE),
    re.compile(r"^(continuing|proceeding)\s+(with|to)", re.IGNORECASE),
    re.compile(r"^(here's|here\s+is)\s+the\s+(continuation|next\s+part)", re.IGNORECASE),
]

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.?!])\s+")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_QUOTED_SPAN_RE = re.compile(r'"[^"]+"')
_SPEAKER_TAG_RE = re.compile(r"\[[A-Z][^:\]]+:")


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    word_count: int
    char_count: int


def _excerpt(text: str, length: int = ISSUE_EXCERPT_LENGTH) -> str:
    return text[:length] + "..." if len(text) > length else text


def _check_lengths(raw_text: str, display_text: str) -> list[str]:
    issues = []
    if len(display_text) < MIN_DISPLAY_TEXT_LENGTH:
        issues.append(
            f"Content too short: {len(display_text)} chars (min: {MIN_DISPLAY_TEXT_LENGTH})"
        )
    if len(raw_text) < MIN_RAW_TEXT_LENGTH:
        issues.append(
            f"Raw text too short: {len(raw_text)} chars (min: {MIN_RAW_TEXT_LENGTH})"
        )
    return issues


def find_garbage_pattern(text: str) -> re.Pattern | None:
    """Return the first garbage pattern the text starts with, if any."""
    for pattern in GARBAGE_PATTERNS:
        if pattern.search(text):
            return pattern
    return None


def _check_word_frequency(tokens: list[str]) -> list[str]:
    if len(tokens) <= REPETITION_MIN_TOKENS:
        return []
    counts = Counter(t.lower() for t in tokens)
    word, freq = counts.most_common(1)[0]
    if freq / len(tokens) > MAX_WORD_FREQUENCY_RATIO:
        return [f'Excessive repetition: "{word}" appears {freq}/{len(tokens)} times']
    return []


def _first_repeated(items: list[str], min_repeats: int) -> str | None:
    """First item (in text order) that occurs at least min_repeats times."""
    counts = Counter(items)
    for item in items:
        if counts[item] >= min_repeats:
            return item
    return None


def _check_repeated_sentences(text: str) -> list[str]:
    sentences = [s.strip() for s in _SENTENCE_SPLIT_RE.split(text)]
    sentences = [s for s in sentences if len(s) >= MIN_SENTENCE_LENGTH]
    top = _first_repeated(sentences, MAX_SENTENCE_REPEATS)
    if top is None:
        return []
    return [f'Repeated sentences detected (>={MAX_SENTENCE_REPEATS}x): "{_excerpt(top)}"']


def _check_repeated_paragraphs(text: str) -> list[str]:
    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(text)]
    paragraphs = [p for p in paragraphs if len(p) >= MIN_PARAGRAPH_LENGTH]
    top = _first_repeated(paragraphs, MAX_PARAGRAPH_REPEATS)
    if top is None:
        return []
    return [f'Repeated paragraphs detected (>={MAX_PARAGRAPH_REPEATS}x): "{_excerpt(top)}"']


def _check_ngram_loops(tokens: list[str]) -> list[str]:
    lowered = [t.lower() for t in tokens]
    windows = [
        " ".join(lowered[i:i + NGRAM_SIZE])
        for i in range(len(lowered) - NGRAM_SIZE + 1)
    ]
    if not windows:
        return []
    worst, count = Counter(windows).most_common(1)[0]
    if count >= MAX_NGRAM_REPEATS:
        return [f'High n-gram repetition: "{_excerpt(worst)}" occurs {count} times']
    return []


def count_dialogue_markers(raw_text: str, display_text: str) -> int:
    """Quoted spans in the display text or speaker-tag prefixes in the raw text."""
    quoted = len(_QUOTED_SPAN_RE.findall(display_text))
    tagged = len(_SPEAKER_TAG_RE.findall(raw_text))
    return max(quoted, tagged)


def validate_scene_content(
    raw_text: str | None,
    display_text: str | None,
    multi_voice: bool = True,
) -> ValidationResult:
    """Accept or reject a generated scene.

    Returns a ValidationResult on success. Raises ContentValidationFailed
    carrying every issue found and a preview of the text otherwise.

    The dialogue-density check is skipped when multi_voice is False: the
    single-voice pass strips speaker tags on purpose, so a long scene with
    no markers is expected there.
    """
    raw_text = raw_text or ""
    display_text = display_text or ""
    text = display_text.strip()
    issues = _check_lengths(raw_text, display_text)

    pattern = find_garbage_pattern(text)
    if pattern is not None:
        issues.append(
            f'Garbage pattern detected: "{_excerpt(text, 50)}" matches {pattern.pattern}'
        )

    tokens = text.split()
    word_count = len(tokens)
    if word_count < MIN_WORD_COUNT:
        issues.append(f"Word count too low: {word_count} words (min: {MIN_WORD_COUNT})")

    issues.extend(_check_word_frequency(tokens))
    issues.extend(_check_repeated_sentences(text))
    issues.extend(_check_repeated_paragraphs(text))
    issues.extend(_check_ngram_loops(tokens))

    if multi_voice and word_count > DIALOGUE_CHECK_MIN_WORDS:
        markers = count_dialogue_markers(raw_text, text)
        if markers < MIN_DIALOGUE_MARKERS:
            issues.append(
                f"Dialogue too sparse for length ({markers} dialogue entries over {word_count} words)"
            )

    if issues:
        logger.debug("Validation rejected text with %d issue(s)", len(issues))
        raise ContentValidationFailed(issues, content_preview=text[:CONTENT_PREVIEW_LENGTH])

    return ValidationResult(valid=True, word_count=word_count, char_count=len(text))
