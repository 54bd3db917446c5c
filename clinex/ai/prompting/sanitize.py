"""Clean source text before it is embedded in a prompt.

Removes invisible and bidirectional formatting characters, drops lines that
try to speak to the model (role markers, instruction overrides, tags that
would close the ``<document>`` block), collapses blank runs and bounds the
length of what is sent.
"""

from __future__ import annotations

import re
import unicodedata
from typing import List, Optional, Tuple

from clinex.logging_config import get_logger

logger = get_logger(__name__)

MAX_INPUT_LENGTH = 50_000
TRUNCATION_MARKER = "…[TRUNCATED]"

_INVISIBLE = re.compile("[\\u200b-\\u200f\\u202a-\\u202e\\u2060-\\u2064\\ufeff]")
_KEPT_CONTROLS = {"\n", "\t", "\r"}

_ROLE_MARKERS = (
    "system:",
    "assistant:",
    "user:",
    "[system]",
    "[assistant]",
    "[inst]",
    "[/inst]",
    "<<sys>>",
    "note to ai:",
    "instructions:",
    "previous analysis:",
    "quality assurance:",
    "system update:",
    "correction:",
    "addendum:",
)
_OVERRIDE_PHRASES = (
    "ignore previous instructions",
    "ignore all instructions",
    "ignore the above instructions",
    "disregard your instructions",
    "disregard all instructions",
    "forget your instructions",
    "forget all instructions",
    "new instructions:",
    "override:",
    "override extraction:",
    "please also add",
)
_INSTRUCTION_TAGS = ("<instruction", "</instruction", "<system", "</system", "</document")


def remove_invisible_chars(text: str) -> str:
    text = _INVISIBLE.sub("", text)
    return "".join(
        char for char in text if char in _KEPT_CONTROLS or unicodedata.category(char) != "Cc"
    )


def _is_role_marker(line: str) -> bool:
    return line.startswith(_ROLE_MARKERS)


def _is_override(line: str) -> bool:
    return any(phrase in line for phrase in _OVERRIDE_PHRASES)


def _is_injection(line: str) -> bool:
    return _is_role_marker(line) or _is_override(line) or line.startswith(_INSTRUCTION_TAGS)


def remove_injection_lines(text: str) -> Tuple[str, int]:
    """Drop injection lines; returns the remaining text and how many lines went.

    An override phrase split over two lines removes both of them.
    """
    lines = text.splitlines()
    kept: List[str] = []
    removed = 0
    skip_next = False
    for index, line in enumerate(lines):
        if skip_next:
            skip_next = False
            removed += 1
            continue
        lowered = line.strip().lower()
        if _is_injection(lowered):
            removed += 1
            continue
        if index + 1 < len(lines):
            following = lines[index + 1].strip().lower()
            if not _is_injection(following):
                joined = f"{lowered} {following}"
                if _is_override(joined) or _is_role_marker(joined):
                    skip_next = True
                    removed += 1
                    continue
        kept.append(line)
    return "\n".join(kept), removed


def normalize_whitespace(text: str) -> str:
    """Strip every line, keep at most one blank line in a row, trim blank edges."""
    lines: List[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if stripped or (lines and lines[-1]):
            lines.append(stripped)
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def truncate_text(text: str, max_length: int = MAX_INPUT_LENGTH) -> str:
    """Cut at the last whitespace before ``max_length`` and mark the cut."""
    if len(text) <= max_length:
        return text
    head = text[:max_length]
    cut = max(head.rfind(" "), head.rfind("\n"), head.rfind("\t"))
    return (text[:cut] if cut > 0 else head) + TRUNCATION_MARKER


def sanitize_for_llm(
    text: str,
    unit_id: Optional[str] = None,
    max_length: Optional[int] = MAX_INPUT_LENGTH,
) -> str:
    cleaned, removed = remove_injection_lines(remove_invisible_chars(text))
    if removed:
        logger.warning(
            "Removed %d instruction-like line(s) from source text of unit %s",
            removed,
            unit_id or "unknown",
            extra={"unit_id": unit_id},
        )
    cleaned = normalize_whitespace(cleaned)
    if max_length is not None:
        cleaned = truncate_text(cleaned, max_length)
    return cleaned


__all__ = [
    "MAX_INPUT_LENGTH",
    "TRUNCATION_MARKER",
    "normalize_whitespace",
    "remove_injection_lines",
    "remove_invisible_chars",
    "sanitize_for_llm",
    "truncate_text",
]
