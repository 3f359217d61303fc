"""All magic numbers and configuration constants."""

# Content validation
MIN_DISPLAY_TEXT_LENGTH = 100       # chars; display text shorter than this is a stub
MIN_RAW_TEXT_LENGTH = 50            # chars; raw (tagged) text shorter than this is a stub
MIN_WORD_COUNT = 20                 # whitespace tokens
REPETITION_MIN_TOKENS = 10          # word-frequency check only runs above this many tokens
MAX_WORD_FREQUENCY_RATIO = 0.3      # one token > 30% of all tokens = runaway repetition
MIN_SENTENCE_LENGTH = 20            # chars; shorter sentences are ignored by the repeat check
MAX_SENTENCE_REPEATS = 3            # same sentence this many times = failure
MIN_PARAGRAPH_LENGTH = 40           # chars; shorter paragraphs are ignored by the repeat check
MAX_PARAGRAPH_REPEATS = 2           # same paragraph this many times = failure
NGRAM_SIZE = 5                      # tokens per window in the loop detector
MAX_NGRAM_REPEATS = 4               # same 5-token window this many times = failure
DIALOGUE_CHECK_MIN_WORDS = 300      # dialogue density only checked above this word count
MIN_DIALOGUE_MARKERS = 3            # quoted spans or speaker tags required in long scenes
CONTENT_PREVIEW_LENGTH = 100        # chars of text attached to a validation failure
ISSUE_EXCERPT_LENGTH = 80           # chars of offending text quoted in an issue

# Scene storage
SUMMARY_MAX_LENGTH = 200            # chars of display text kept as the scene summary

# Segmentation
SEGMENT_SPLIT_THRESHOLD = 500       # chars; split narrator segments longer than this
MIN_TEXT_COVERAGE = 0.9             # segments must cover 90% of the input or a warning is logged
NARRATOR_SPEAKER = "narrator"

# Delivery defaults
DEFAULT_EMOTION = "neutral"
DEFAULT_STABILITY = 0.5
DEFAULT_STYLE = 0.5

# Rendering
PREVIEW_MAX_CHARS = 200             # preview synthesizes at most this much text
TTS_RATE = "-10%"                   # base speech rate: 10% slower than default
TTS_MAX_CHARS_PER_STORY = 50000     # ~10 minutes of audio per story
TTS_COST_PER_1000_CHARS = 0.30      # USD, used for the advisory estimate
NARRATOR_VOICE = "en-US-RogerNeural"          # narrator: deep, authoritative

# Assembly
PAUSE_SAME_TYPE_MS = 225            # ms pause between same-type segments
PAUSE_SPEAKER_CHANGE_MS = 375       # ms pause at speaker changes
PAUSE_TYPE_TRANSITION_MS = 525      # ms pause at narrator/dialogue transitions
OUTPUT_BITRATE = "192k"             # MP3 output bitrate

OUTPUT_DIR = "output"
VERSION = "0.1.0"
