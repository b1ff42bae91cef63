"""
Unit tests for grouping word tokens into transcript segments.

Tests cover the boundary rules (speaker change, silence gap, duration and
word caps, sentence endings), spacing handling and determinism.
"""

from types import SimpleNamespace

import pytest

from audio_transcription.segment_assembler import (
    MAX_SEGMENT_WORDS,
    group_words_into_segments,
)


def word(text, start, end, speaker_id="speaker_0", type="word"):
    """Build a word token the way the hosted API reports it."""
    return {"type": type, "text": text, "start": start, "end": end, "speaker_id": speaker_id}


def spacing(start, end, speaker_id="speaker_0"):
    return {"type": "spacing", "text": " ", "start": start, "end": end, "speaker_id": speaker_id}


class TestSentenceBoundaries:
    """Tests for sentence-ending punctuation."""

    def test_hello_world_yields_two_segments(self):
        """Test that two sentences become two segments."""
        tokens = [
            word("Hello.", 0.0, 0.5),
            spacing(0.5, 0.6),
            word("World.", 0.6, 1.1),
        ]

        segments = group_words_into_segments(tokens)

        assert [s["text"] for s in segments] == ["Hello.", "World."]
        assert segments[0]["start"] == 0.0
        assert segments[0]["end"] == 0.5
        assert segments[1]["start"] == 0.6
        assert segments[1]["end"] == 1.1

    @pytest.mark.parametrize("ending", [".", "!", "?"])
    def test_sentence_ending_closes_segment(self, ending):
        """Test that every sentence-ending mark closes its segment."""
        tokens = [
            word("Is", 0.0, 0.2),
            word(f"it{ending}", 0.3, 0.5),
            word("Yes", 0.6, 0.8),
        ]

        segments = group_words_into_segments(tokens)

        assert [s["text"] for s in segments] == [f"Is it{ending}", "Yes"]

    def test_words_are_space_joined(self):
        """Test that words in one segment are joined with single spaces."""
        tokens = [
            word("one", 0.0, 0.2),
            spacing(0.2, 0.3),
            word("two", 0.3, 0.5),
            spacing(0.5, 0.6),
            word("three", 0.6, 0.9),
        ]

        segments = group_words_into_segments(tokens)

        assert segments == [{"start": 0.0, "end": 0.9, "text": "one two three"}]


class TestSplitRules:
    """Tests for the rules that close a segment before a token."""

    def test_speaker_change_starts_new_segment(self):
        """Test that a different speaker id always starts a new segment."""
        tokens = [
            word("hi", 0.0, 0.3, speaker_id="speaker_0"),
            word("there", 0.4, 0.7, speaker_id="speaker_1"),
        ]

        segments = group_words_into_segments(tokens)

        assert [s["text"] for s in segments] == ["hi", "there"]

    def test_gap_over_threshold_starts_new_segment(self):
        """Test that more than 1.5s of silence splits the segment."""
        tokens = [
            word("before", 0.0, 1.0),
            word("after", 2.6, 3.0),
        ]

        segments = group_words_into_segments(tokens)

        assert [s["text"] for s in segments] == ["before", "after"]

    def test_gap_at_threshold_keeps_segment(self):
        """Test that a gap of exactly 1.5s does not split."""
        tokens = [
            word("before", 0.0, 1.0),
            word("after", 2.5, 3.0),
        ]

        segments = group_words_into_segments(tokens)

        assert [s["text"] for s in segments] == ["before after"]

    def test_segment_never_spans_more_than_30_seconds(self):
        """Test that a token stretching the span past 30s starts a new segment."""
        tokens = [word(f"w{i}", i * 1.2, i * 1.2 + 1.0) for i in range(28)]

        segments = group_words_into_segments(tokens)

        assert len(segments) > 1
        for segment in segments:
            assert segment["end"] - segment["start"] <= 30.0

    def test_segment_never_exceeds_30_words(self):
        """Test that a segment is closed once it holds 30 words."""
        tokens = [word(f"w{i}", i * 0.1, i * 0.1 + 0.05) for i in range(65)]

        segments = group_words_into_segments(tokens)

        word_counts = [len(s["text"].split()) for s in segments]
        assert word_counts == [MAX_SEGMENT_WORDS, MAX_SEGMENT_WORDS, 5]

    def test_audio_events_are_included(self):
        """Test that audio events are appended like words."""
        tokens = [
            word("(laughter)", 0.0, 0.8, type="audio_event"),
            word("okay.", 0.9, 1.2),
        ]

        segments = group_words_into_segments(tokens)

        assert segments == [{"start": 0.0, "end": 1.2, "text": "(laughter) okay."}]


class TestSpacingAndInput:
    """Tests for spacing tokens and input shapes."""

    def test_spacing_never_appears_in_output(self):
        """Test that spacing tokens contribute no text."""
        tokens = [
            spacing(0.0, 0.1),
            word("a", 0.1, 0.2),
            {"type": "spacing", "text": "  ", "start": 0.2, "end": 0.3},
            word("b", 0.3, 0.4),
        ]

        segments = group_words_into_segments(tokens)

        assert segments == [{"start": 0.1, "end": 0.4, "text": "a b"}]

    def test_spacing_does_not_split_on_speaker(self):
        """Test that spacing tagged with another speaker has no boundary effect."""
        tokens = [
            word("a", 0.0, 0.2, speaker_id="speaker_0"),
            spacing(0.2, 0.3, speaker_id="speaker_9"),
            word("b", 0.3, 0.4, speaker_id="speaker_0"),
        ]

        segments = group_words_into_segments(tokens)

        assert [s["text"] for s in segments] == ["a b"]

    def test_empty_input_yields_no_segments(self):
        assert group_words_into_segments([]) == []

    def test_only_spacing_yields_no_segments(self):
        assert group_words_into_segments([spacing(0.0, 1.0)]) == []

    def test_tokens_without_type_or_speaker_are_words(self):
        """Test that untyped tokens without speakers are grouped together."""
        tokens = [
            {"text": "plain", "start": 0.0, "end": 0.3},
            {"text": "tokens.", "start": 0.4, "end": 0.7},
        ]

        segments = group_words_into_segments(tokens)

        assert segments == [{"start": 0.0, "end": 0.7, "text": "plain tokens."}]

    def test_attribute_tokens_are_supported(self):
        """Test that objects exposing token attributes work like dicts."""
        tokens = [
            SimpleNamespace(type="word", text="Hi!", start=0.0, end=0.4, speaker_id=None),
        ]

        segments = group_words_into_segments(tokens)

        assert segments == [{"start": 0.0, "end": 0.4, "text": "Hi!"}]

    def test_grouping_is_deterministic(self):
        """Test that the same tokens always produce the same segments."""
        tokens = [
            word("one", 0.0, 0.3, speaker_id="a"),
            word("two.", 0.4, 0.6, speaker_id="a"),
            word("three", 2.5, 2.8, speaker_id="b"),
            spacing(2.8, 2.9, speaker_id="b"),
            word("four", 2.9, 3.2, speaker_id="b"),
        ]

        first = group_words_into_segments(tokens)
        second = group_words_into_segments(list(tokens))

        assert first == second
        assert [s["text"] for s in first] == ["one two.", "three four"]
