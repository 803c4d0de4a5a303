"""Text segmentation at Markdown blank-line boundaries."""

from __future__ import annotations

from typing import List, Optional, Tuple

BLANK_LINE = "\n\n"


def _boundaries(text: str) -> List[int]:
    """Return the start offset of every blank-line separator in ``text``."""

    positions: List[int] = []
    index = text.find(BLANK_LINE)
    while index != -1:
        positions.append(index)
        index = text.find(BLANK_LINE, index + len(BLANK_LINE))
    return positions


def split_at_blank_lines(text: str, target_size: int | None) -> List[str]:
    """Group blank-line separated blocks into fragments of ``target_size`` chars.

    Blocks are packed greedily, which yields the fewest fragments that stay
    within the budget wherever the boundaries allow it. A single block that
    is larger than the budget becomes a fragment of its own. Blank blocks
    (leading, trailing or runs of blank lines) are merged into a neighbour
    instead of standing alone, so a fragment is only blank when ``text`` is.
    Joining the result with a blank line reproduces ``text`` exactly.
    """

    if not target_size:
        return [text]

    blocks = text.split(BLANK_LINE)
    fragments: List[str] = []
    current = blocks[0]
    for block in blocks[1:]:
        fits = len(current) + len(BLANK_LINE) + len(block) <= target_size
        if fits or not block.strip() or not current.strip():
            current += BLANK_LINE + block
        else:
            fragments.append(current)
            current = block
    fragments.append(current)
    return fragments


def split_in_half(text: str) -> Optional[Tuple[str, str]]:
    """Split ``text`` at the blank line nearest its midpoint.

    Used once a fragment has failed regardless of its size. Returns ``None``
    when no boundary leaves non-blank text on both sides, in which case the
    text cannot be split any further.
    """

    midpoint = len(text) / 2
    candidates = [
        position
        for position in _boundaries(text)
        if text[:position].strip() and text[position + len(BLANK_LINE):].strip()
    ]
    if not candidates:
        return None

    position = min(candidates, key=lambda candidate: abs(candidate - midpoint))
    return text[:position], text[position + len(BLANK_LINE):]
