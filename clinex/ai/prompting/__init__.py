"""Prompt assembly and per-language question templates."""

from __future__ import annotations

from clinex.ai.prompting.base import LLMBackend, StopSignal, build_messages, escape_xml, render_unit
from clinex.ai.prompting.sanitize import sanitize_for_llm
from clinex.ai.prompting.templates import QUESTION_TEMPLATES, SYSTEM_PROMPTS, get_question_text

__all__ = [
    "LLMBackend",
    "QUESTION_TEMPLATES",
    "SYSTEM_PROMPTS",
    "StopSignal",
    "build_messages",
    "escape_xml",
    "get_question_text",
    "render_unit",
    "sanitize_for_llm",
]
