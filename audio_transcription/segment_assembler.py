"""
Grouping of word-level recognition tokens into transcript segments.

Providers that report word timestamps return a flat token stream (words,
the spacing between them and non-speech audio events). This module turns
that stream into readable segments in a single greedy left-to-right pass.
"""

from typing import Any, Iterable, List, Optional

# A gap of silence longer than this starts a new segment (seconds)
MAX_GAP_SECONDS = 1.5
# A segment never spans more than this from first start to last end (seconds)
MAX_SEGMENT_SECONDS = 30.0
# Word count at which a segment is closed
MAX_SEGMENT_WORDS = 30

SENTENCE_ENDINGS = (".", "!", "?")

# Token type of the whitespace between words
SPACING = "spacing"


def _field(token: Any, name: str) -> Any:
    # Tokens arrive as dicts from JSON or as SDK objects
    if isinstance(token, dict):
        return token.get(name)
    return getattr(token, name, None)


class _SegmentBuffer:
    """The segment currently being accumulated."""

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.parts: List[str] = []
        self.start: Optional[float] = None
        self.end: Optional[float] = None
        self.speaker_id: Optional[str] = None
        self.word_count = 0

    @property
    def is_empty(self) -> bool:
        return self.word_count == 0

    def should_break_before(self, token: Any) -> bool:
        if self.is_empty:
            return False

        start = _field(token, "start")
        end = _field(token, "end")

        # Any one of these closes the current segment
        speaker_changed = _field(token, "speaker_id") != self.speaker_id
        long_gap = (
            start is not None and self.end is not None
            and start - self.end > MAX_GAP_SECONDS
        )
        too_long = (
            end is not None and self.start is not None
            and end - self.start > MAX_SEGMENT_SECONDS
        )
        too_many_words = self.word_count >= MAX_SEGMENT_WORDS

        return speaker_changed or long_gap or too_long or too_many_words

    def append(self, token: Any, text: str) -> None:
        if self.is_empty:
            self.start = _field(token, "start")
            self.speaker_id = _field(token, "speaker_id")
        end = _field(token, "end")
        # Untimed tokens keep the last known end
        if end is not None:
            self.end = end
        self.parts.append(text)
        self.word_count += 1

    def flush(self, segments: List[dict]) -> None:
        if self.is_empty:
            return
        segments.append({
            "start": self.start,
            "end": self.end,
            "text": " ".join(self.parts),
        })
        self.reset()


def group_words_into_segments(tokens: Iterable[Any]) -> List[dict]:
    """
    Group an ordered token stream into ``{start, end, text}`` segments.

    A segment is closed before a token when the speaker changes, when the
    silence since the previous word exceeds 1.5 s, when the token would
    stretch the segment past 30 s, or when it already holds 30 words. A
    token whose text ends a sentence (``.``, ``!``, ``?``) closes the
    segment it was appended to. Spacing tokens are ignored.

    Tokens may be dicts or objects exposing ``type``, ``start``, ``end``,
    ``speaker_id`` and ``text``. Tokens without a type count as words.

    Args:
        tokens: Tokens ordered by time

    Returns:
        List of segments in input order; timestamps are taken unchanged
        from the tokens

    Example:
        >>> group_words_into_segments([
        ...     {"type": "word", "text": "Hello.", "start": 0.0, "end": 0.5},
        ...     {"type": "spacing", "text": " ", "start": 0.5, "end": 0.6},
        ...     {"type": "word", "text": "World.", "start": 0.6, "end": 1.0},
        ... ])
        [{'start': 0.0, 'end': 0.5, 'text': 'Hello.'}, {'start': 0.6, 'end': 1.0, 'text': 'World.'}]
    """
    segments: List[dict] = []
    buffer = _SegmentBuffer()

    for token in tokens:
        if _field(token, "type") == SPACING:
            continue

        text = (_field(token, "text") or "").strip()
        # Audio events without text
        if not text:
            continue

        if buffer.should_break_before(token):
            buffer.flush(segments)

        buffer.append(token, text)

        # A sentence end closes the segment it belongs to
        if text.endswith(SENTENCE_ENDINGS):
            buffer.flush(segments)

    buffer.flush(segments)
    return segments
