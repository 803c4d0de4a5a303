"""Protection of fenced code blocks during translation.

Code blocks must reach the output byte for byte, so they are swapped out
for inert placeholder tokens before the text is split and sent to the
model, and swapped back in afterwards.
"""

from __future__ import annotations

import logging
import re
import secrets
from typing import List, Optional, Sequence

from .structures import ExtractedDocument, ProtectedRegion

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "CODE_BLOCK"

FENCE_PATTERN = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})(?P<info>.*)$")


class CodeBlockVault:
    """Extracts fenced code blocks and restores them after translation."""

    def __init__(self, prefix: str = PLACEHOLDER_PREFIX) -> None:
        self.prefix = prefix

    def placeholder(self, prefix: str, index: int) -> str:
        return f"[[{prefix}_{index}]]"

    def _choose_prefix(self, markdown: str) -> str:
        """Pick a prefix whose tokens cannot already occur in the document."""

        prefix = self.prefix
        while f"[[{prefix}_" in markdown:
            prefix = f"{self.prefix}_{secrets.token_hex(3).upper()}"
        return prefix

    def extract(self, markdown: str) -> ExtractedDocument:
        prefix = self._choose_prefix(markdown)
        lines = markdown.split("\n")
        output: List[str] = []
        regions: List[ProtectedRegion] = []

        index = 0
        while index < len(lines):
            opening = _match_opening_fence(lines[index])
            if opening is None:
                output.append(lines[index])
                index += 1
                continue

            end = _find_closing_fence(lines, index + 1, opening)
            # An unclosed fence runs to the end of the document.
            last = end if end is not None else len(lines) - 1
            content = "\n".join(lines[index:last + 1])
            placeholder = self.placeholder(prefix, len(regions))
            regions.append(ProtectedRegion(placeholder=placeholder, content=content))
            output.append(placeholder)
            index = last + 1

        return ExtractedDocument(working_text="\n".join(output), regions=regions)

    def find_missing(
        self,
        text: str,
        regions: Sequence[ProtectedRegion],
    ) -> List[ProtectedRegion]:
        """Return the regions whose placeholder no longer appears in ``text``."""

        return [region for region in regions if region.placeholder not in text]

    def restore(self, text: str, regions: Sequence[ProtectedRegion]) -> str:
        for region in self.find_missing(text, regions):
            preview = region.content.split("\n", 1)[0]
            logger.warning(
                "Placeholder %s was lost during translation; code block "
                "starting with %r is missing from the output.",
                region.placeholder,
                preview,
            )
        for region in regions:
            text = text.replace(region.placeholder, region.content)
        return text


def _match_opening_fence(line: str) -> Optional[str]:
    match = FENCE_PATTERN.match(line)
    if not match:
        return None
    fence = match.group("fence")
    # Backtick fences cannot carry backticks in their info string.
    if fence[0] == "`" and "`" in match.group("info"):
        return None
    return fence


def _find_closing_fence(lines: Sequence[str], start: int, opening: str) -> Optional[int]:
    char = opening[0]
    for position in range(start, len(lines)):
        stripped = lines[position].strip()
        if (
            len(lines[position]) - len(lines[position].lstrip(" ")) <= 3
            and len(stripped) >= len(opening)
            and set(stripped) == {char}
        ):
            return position
    return None


_default_vault = CodeBlockVault()


def replace_code_blocks(markdown: str) -> ExtractedDocument:
    """Swap every fenced code block in ``markdown`` for a placeholder."""

    return _default_vault.extract(markdown)


def restore_code_blocks(text: str, regions: Sequence[ProtectedRegion]) -> str:
    """Put the original code blocks back in place of their placeholders."""

    return _default_vault.restore(text, regions)
