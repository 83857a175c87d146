# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Split text into runs of directly typeable and escape-only characters."""

from deskpilot.core.types import InjectionPlan, Segment, SegmentKind


# Characters the direct typing primitive handles without keysym escapes
_SIMPLE_CONTROL = frozenset("\t\n")


def classify(char: str) -> SegmentKind:
    """Classify a single code point.

    Printable ASCII, tab and newline are simple; everything else (CJK,
    accented letters, full-width punctuation, emoji) is complex.
    """
    if " " <= char <= "~" or char in _SIMPLE_CONTROL:
        return SegmentKind.SIMPLE
    return SegmentKind.COMPLEX


def segment(text: str) -> InjectionPlan:
    """Split text into maximal runs of same-class characters.

    Single left-to-right pass. Concatenating the segment texts in order
    reproduces ``text`` exactly, and adjacent segments never share a kind.

    Args:
        text: Text to inject. May be empty.

    Returns:
        Plan with one segment per run; empty for empty input.
    """
    segments: list[Segment] = []
    run_start = 0
    run_kind: SegmentKind | None = None

    for index, char in enumerate(text):
        kind = classify(char)
        if kind != run_kind:
            if run_kind is not None:
                segments.append(Segment(text=text[run_start:index], kind=run_kind))
            run_start = index
            run_kind = kind

    if run_kind is not None:
        segments.append(Segment(text=text[run_start:], kind=run_kind))

    return InjectionPlan(segments=tuple(segments))
