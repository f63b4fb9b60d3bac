"""Post-hoc structuring of finished response text.

Splits a completed response into prose, fenced code blocks and a single
reasoning ("thinking") region.
"""

from __future__ import annotations

import re

from polyllm.types import CodeBlock, ParsedResponse


# ---------------------------------------------------------------------------
# Code blocks
# ---------------------------------------------------------------------------

# ```lang\n ... ```  -- the tag is optional, the newline after it is not
_CODE_BLOCK_RE = re.compile(r"```(\w*)\n(.*?)```", re.DOTALL)


def _extract_code_blocks(text: str) -> tuple[list[CodeBlock], str]:
    """Return (code_blocks, text_without_blocks)."""
    blocks = [
        CodeBlock(language=m.group(1) or "text", code=m.group(2).strip())
        for m in _CODE_BLOCK_RE.finditer(text)
    ]
    return blocks, _CODE_BLOCK_RE.sub("", text)


# ---------------------------------------------------------------------------
# Thinking extraction
# ---------------------------------------------------------------------------

# Tried in order; the first pattern that matches anywhere wins.
_THINKING_PATTERNS = (
    re.compile(r"<thinking>(.*?)</thinking>", re.DOTALL),
    re.compile(r"<think>(.*?)</think>", re.DOTALL),
    re.compile(r"<thought>(.*?)</thought>", re.DOTALL),
    re.compile(r"\[thinking\](.*?)\[/thinking\]", re.DOTALL),
)


def _extract_thinking(text: str) -> tuple[str | None, str]:
    """Extract the first thinking region from *text*.

    Returns (thinking_text or None, text_without_that_region).
    """
    for pattern in _THINKING_PATTERNS:
        match = pattern.search(text)
        if match:
            cleaned = text[: match.start()] + text[match.end() :]
            return match.group(1).strip(), cleaned
    return None, text


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_response(text: str) -> ParsedResponse:
    """Structure *text* into content, code blocks and thinking."""
    code_blocks, remainder = _extract_code_blocks(text)
    thinking, remainder = _extract_thinking(remainder)
    return ParsedResponse(
        content=remainder.strip(),
        code_blocks=code_blocks,
        thinking=thinking,
    )
