"""Chat message assembly for domain questions."""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol

from clinex.ai.prompting.sanitize import sanitize_for_llm, truncate_text
from clinex.ai.types import DomainQuestion, SourceUnit, SpeakerRole
from clinex.logging_config import get_logger

logger = get_logger(__name__)

_ROLE_LABELS = {
    SpeakerRole.PATIENT: "PATIENT",
    SpeakerRole.ASSISTANT: "ASSISTANT",
    SpeakerRole.CLINICIAN: "CLINICIAN",
    SpeakerRole.DOCUMENT: "DOCUMENT",
}


class StopSignal:
    """One-shot stop request shared by the watchdog and a running stream.

    Backends register callbacks that interrupt their generation (close the
    HTTP response, flag the decoding loop); they run once, on the setting
    thread, when :meth:`set` is first called.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def set(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:
                logger.warning("Stream stop callback failed: %s", exc)


class LLMBackend(Protocol):
    """Minimal protocol implemented by streaming chat backends."""

    def stream_chat(
        self,
        messages: List[Dict[str, str]],
        *,
        options: Optional[Dict[str, Any]] = None,
        stop: Optional[StopSignal] = None,
    ) -> Iterator[str]:
        ...


def escape_xml(text: str) -> str:
    """Escape text embedded between ``<document>`` tags."""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def message_label(index: int) -> str:
    return f"Msg {index}"


def render_unit(unit: SourceUnit) -> str:
    """Render a unit as the text placed inside the ``<document>`` block.

    Source text is sanitized, then escaped. Conversation entries are labelled
    ``[Msg i] ROLE: text`` with 0-based indices so the model can cite them back.
    """
    if not unit.is_conversation:
        return escape_xml(sanitize_for_llm(unit.full_text, unit.id))
    lines = []
    for entry in unit.entries:
        label = _ROLE_LABELS.get(entry.role, entry.role.value.upper())
        text = sanitize_for_llm(entry.text, unit.id, max_length=None)
        lines.append(f"[{message_label(entry.index)}] {label}: {escape_xml(text)}")
    return truncate_text("\n".join(lines))


def build_messages(question: DomainQuestion, unit: SourceUnit) -> List[Dict[str, str]]:
    """Return the system and user messages for one (unit, question) pair."""
    user = f"<document>\n{render_unit(unit)}\n</document>\n\n{question.text}"
    return [
        {"role": "system", "content": question.system_prompt},
        {"role": "user", "content": user},
    ]


__all__ = ["LLMBackend", "StopSignal", "build_messages", "escape_xml", "message_label", "render_unit"]
