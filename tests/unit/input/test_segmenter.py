"""Tests for splitting text into simple and complex segments."""
import pytest

from deskpilot.core.types import SegmentKind
from deskpilot.input.segmenter import classify, segment


class TestClassify:
    """Tests for classify()."""

    @pytest.mark.parametrize("char", ["a", "Z", "0", " ", "~", "!", "\t", "\n"])
    def test_printable_ascii_and_whitespace_are_simple(self, char: str) -> None:
        assert classify(char) == SegmentKind.SIMPLE

    @pytest.mark.parametrize("char", ["世", "é", "，", "😀", "\x7f", "\r", "\x00"])
    def test_everything_else_is_complex(self, char: str) -> None:
        assert classify(char) == SegmentKind.COMPLEX


class TestSegment:
    """Tests for segment()."""

    def test_empty_text_gives_empty_plan(self) -> None:
        plan = segment("")

        assert plan.segments == ()
        assert plan.text == ""

    def test_ascii_only_is_one_simple_segment(self) -> None:
        plan = segment("Hello, world!\n")

        assert len(plan.segments) == 1
        assert plan.segments[0].kind == SegmentKind.SIMPLE
        assert plan.segments[0].text == "Hello, world!\n"

    def test_non_ascii_only_is_one_complex_segment(self) -> None:
        plan = segment("你好世界")

        assert [s.kind for s in plan.segments] == [SegmentKind.COMPLEX]

    def test_mixed_text_splits_on_class_changes(self) -> None:
        plan = segment("Hello 世界 ok")

        assert [(s.text, s.kind) for s in plan.segments] == [
            ("Hello ", SegmentKind.SIMPLE),
            ("世界", SegmentKind.COMPLEX),
            (" ok", SegmentKind.SIMPLE),
        ]

    @pytest.mark.parametrize(
        "text",
        ["", "abc", "世界", "Hello 世界", "a世b界c", "café ☕ 東京\ttab\nline", "😀😀x"],
    )
    def test_segmentation_is_lossless(self, text: str) -> None:
        assert segment(text).text == text

    @pytest.mark.parametrize("text", ["a世b界c", "Hello 世界 ok", "ééé...", "x"])
    def test_adjacent_segments_never_share_a_kind(self, text: str) -> None:
        segments = segment(text).segments

        for left, right in zip(segments, segments[1:], strict=False):
            assert left.kind != right.kind

    def test_is_deterministic(self) -> None:
        assert segment("Hello 世界") == segment("Hello 世界")
