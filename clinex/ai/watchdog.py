"""Generation watchdog: streams one model call and aborts degenerate output.

Every model invocation is treated as an untrusted producer. Text is streamed
chunk by chunk (one chunk counts as one token), reasoning segments are
stripped, and the visible tokens pass through a set of repetition detectors.
A detected loop, a wall-clock timeout or a token ceiling aborts the attempt;
the prompt is retried unchanged a bounded number of times and a final
failure is reported as a failed :class:`RawAnswer`, never as text.
"""

from __future__ import annotations

import queue
import re
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from itertools import islice
from typing import Any, Deque, Dict, List, Optional

from clinex.ai.prompting.base import LLMBackend, StopSignal, build_messages
from clinex.ai.types import (
    AbortRecord,
    DomainQuestion,
    ErrorKind,
    GenerationOutcome,
    RawAnswer,
    SourceUnit,
)
from clinex.logging_config import get_logger

logger = get_logger(__name__)

_THINK_OPEN = re.compile(r"<think>|<unused\d+>thought", re.IGNORECASE)
_THINK_CLOSE = re.compile(r"</think>", re.IGNORECASE)
_UNUSED_TOKEN = re.compile(r"<unused\d+>")
# Longest marker is "<unused999>thought"; keep a little headroom.
_MARKER_HOLD = 24
_POLL_INTERVAL = 0.05
_PREVIEW_CHARS = 100


def strip_thinking(text: str) -> str:
    """Remove reasoning segments and stray ``<unusedN>`` tokens from a full response."""
    filt = ThinkingFilter()
    return (filt.feed(text) + filt.finish()).strip()


class ThinkingFilter:
    """Incremental filter that drops reasoning segments from a token stream.

    Handles ``<think>...</think>`` and the ``<unusedN>thought ... <unusedM>``
    convention. Text that might be the start of a marker is held back until
    the next chunk disambiguates it.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._close: Optional[re.Pattern] = None
        self.saw_thinking = False

    @property
    def in_thinking(self) -> bool:
        return self._close is not None

    def feed(self, chunk: str) -> str:
        self._buffer += chunk
        return self._drain(final=False)

    def finish(self) -> str:
        return self._drain(final=True)

    def _drain(self, final: bool) -> str:
        out: List[str] = []
        while True:
            if self._close is not None:
                match = self._close.search(self._buffer)
                if match:
                    self._buffer = self._buffer[match.end():]
                    self._close = None
                    continue
                self._buffer = "" if final else self._buffer[-_MARKER_HOLD:]
                break

            match = _THINK_OPEN.search(self._buffer)
            if match:
                out.append(self._buffer[:match.start()])
                self._close = _THINK_CLOSE if match.group(0).lower() == "<think>" else _UNUSED_TOKEN
                self._buffer = self._buffer[match.end():]
                self.saw_thinking = True
                continue

            if final:
                out.append(self._buffer)
                self._buffer = ""
                break
            cut = self._buffer.rfind("<")
            if cut != -1 and len(self._buffer) - cut < _MARKER_HOLD:
                out.append(self._buffer[:cut])
                self._buffer = self._buffer[cut:]
            else:
                out.append(self._buffer)
                self._buffer = ""
            break
        return _UNUSED_TOKEN.sub("", "".join(out))


class ConsecutiveTokenDetector:
    """Same token emitted ``max_identical`` times in a row."""

    pattern = "token_repeat"

    def __init__(self, max_identical: int = 20):
        self.max_identical = max_identical
        self._last: Optional[str] = None
        self._run = 0

    def feed(self, token: str) -> bool:
        if token == self._last:
            self._run += 1
        else:
            self._last = token
            self._run = 1
        return self._run >= self.max_identical


class SequenceRepeatDetector:
    """The last ``length`` tokens equal the ``length`` before them, repeatedly.

    The counter advances once per token while the two windows stay equal and
    resets as soon as they differ.
    """

    pattern = "sequence_repeat"

    def __init__(self, length: int = 10, max_repeats: int = 5, history: int = 200):
        self.length = length
        self.max_repeats = max_repeats
        self._tokens: Deque[str] = deque(maxlen=max(history, 2 * length))
        self._repeat_count = 0

    def feed(self, token: str) -> bool:
        self._tokens.append(token)
        size = len(self._tokens)
        if size < 2 * self.length:
            return False
        tail = list(islice(self._tokens, size - 2 * self.length, size))
        if tail[:self.length] == tail[self.length:]:
            self._repeat_count += 1
        else:
            self._repeat_count = 0
        return self._repeat_count >= self.max_repeats


class BlockRepeatDetector:
    """A hash of the last ``block_size`` tokens recurring in a ring of recent hashes.

    Catches whole-answer loops whose period is far longer than the sequence
    window (a list re-emitted from the top, a paragraph repeated verbatim).
    """

    pattern = "block_repeat"

    def __init__(self, block_size: int = 64, history: int = 512, threshold: int = 3):
        self.block_size = block_size
        self.threshold = threshold
        self._window: Deque[str] = deque(maxlen=block_size)
        self._hashes: Deque[int] = deque(maxlen=history)
        self._counts: Counter = Counter()

    def feed(self, token: str) -> bool:
        self._window.append(token)
        if len(self._window) < self.block_size:
            return False
        block_hash = hash(tuple(self._window))
        if len(self._hashes) == self._hashes.maxlen:
            evicted = self._hashes[0]
            self._counts[evicted] -= 1
            if self._counts[evicted] <= 0:
                del self._counts[evicted]
        self._hashes.append(block_hash)
        self._counts[block_hash] += 1
        return self._counts[block_hash] >= self.threshold


class StreamGuard:
    """Runs every detector over one attempt's visible tokens."""

    def __init__(
        self,
        *,
        max_total_tokens: int = 4096,
        sequence_length: int = 10,
        max_sequence_repeats: int = 5,
        max_consecutive_identical: int = 20,
        block_size: int = 64,
        block_history: int = 512,
        block_repeat_threshold: int = 3,
        **_: Any,
    ):
        self.max_total_tokens = max_total_tokens
        self.total_tokens = 0
        self.detectors = [
            ConsecutiveTokenDetector(max_consecutive_identical),
            SequenceRepeatDetector(sequence_length, max_sequence_repeats),
            BlockRepeatDetector(block_size, block_history, block_repeat_threshold),
        ]

    def count(self) -> Optional[str]:
        """Account one raw streamed chunk; returns ``token_limit`` past the ceiling."""
        self.total_tokens += 1
        if self.total_tokens > self.max_total_tokens:
            return "token_limit"
        return None

    def feed(self, token: str) -> Optional[str]:
        for detector in self.detectors:
            if detector.feed(token):
                return detector.pattern
        return None


@dataclass
class _AttemptResult:
    text: str = ""
    tokens: int = 0
    abort: Optional[AbortRecord] = None


@dataclass
class WatchdogStats:
    invocations: int = 0
    clean: int = 0
    recovered: int = 0
    failed: int = 0
    aborts_by_pattern: Dict[str, int] = field(default_factory=dict)


class GenerationWatchdog:
    """Wraps a streaming backend with degeneration detection, timeout and retry."""

    def __init__(
        self,
        backend: LLMBackend,
        *,
        timeout: float = 120.0,
        max_retries: int = 1,
        stop_grace: float = 2.0,
        guard_settings: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ):
        self.backend = backend
        self.timeout = timeout
        self.max_retries = max_retries
        self.stop_grace = stop_grace
        self.guard_settings = dict(guard_settings or {})
        self.options = options
        self.stats = WatchdogStats()
        self._stats_lock = threading.Lock()

    @classmethod
    def from_config(cls, backend: LLMBackend, config) -> "GenerationWatchdog":
        settings = config.get_watchdog_config()
        return cls(
            backend,
            timeout=settings.pop("timeout"),
            max_retries=settings.pop("max_retries"),
            stop_grace=settings.pop("stop_grace"),
            guard_settings=settings,
        )

    def invoke(
        self,
        question: DomainQuestion,
        context: SourceUnit,
        cancel_event: Optional[threading.Event] = None,
    ) -> RawAnswer:
        """Run one (unit, question) generation and return a vetted answer.

        Transport errors raised by the backend propagate to the caller. Each
        attempt ends its stream before the next starts, so a call takes at most
        ``(timeout + stop_grace) * (1 + max_retries)``.
        """
        messages = build_messages(question, context)
        started = time.monotonic()
        aborts: List[AbortRecord] = []
        attempts = 0
        total_tokens = 0

        while attempts < 1 + self.max_retries:
            attempts += 1
            result = self._attempt(messages, cancel_event)
            total_tokens += result.tokens
            if result.abort is None:
                outcome = GenerationOutcome.CLEAN if attempts == 1 else GenerationOutcome.RECOVERED
                self._record(outcome, aborts)
                return RawAnswer(
                    unit=context,
                    question=question,
                    text=result.text,
                    outcome=outcome,
                    elapsed_seconds=time.monotonic() - started,
                    token_count=total_tokens,
                    attempts=attempts,
                    aborts=aborts,
                )

            aborts.append(result.abort)
            logger.warning(
                "Generation attempt %d/%d for %s/%s aborted: %s after %d tokens",
                attempts,
                1 + self.max_retries,
                context.id,
                question.domain.value,
                result.abort.pattern,
                result.abort.tokens_before_abort,
                extra={"unit_id": context.id, "domain": question.domain.value},
            )
            if result.abort.kind == ErrorKind.GENERATION_CANCELLED:
                break

        self._record(GenerationOutcome.FAILED, aborts)
        return RawAnswer(
            unit=context,
            question=question,
            text="",
            outcome=GenerationOutcome.FAILED,
            elapsed_seconds=time.monotonic() - started,
            token_count=total_tokens,
            attempts=attempts,
            failure=aborts[-1].kind,
            aborts=aborts,
        )

    def _attempt(self, messages, cancel_event: Optional[threading.Event]) -> _AttemptResult:
        chunks: "queue.Queue" = queue.Queue()
        stop = StopSignal()

        def produce() -> None:
            stream = None
            try:
                stream = self.backend.stream_chat(messages, options=self.options, stop=stop)
                for chunk in stream:
                    if stop.is_set():
                        break
                    chunks.put(("chunk", chunk))
                chunks.put(("done", None))
            except Exception as exc:  # handed to the consuming thread
                chunks.put(("error", exc))
            finally:
                close = getattr(stream, "close", None)
                if close is not None:
                    close()

        producer = threading.Thread(target=produce, name="generation-stream", daemon=True)
        producer.start()
        try:
            return self._consume(chunks, cancel_event)
        finally:
            # the model slot is free only once the stream has actually ended
            stop.set()
            producer.join(self.stop_grace)
            if producer.is_alive():
                logger.warning("Model stream still running %.1fs after it was stopped", self.stop_grace)

    def _consume(self, chunks: "queue.Queue", cancel_event: Optional[threading.Event]) -> _AttemptResult:
        guard = StreamGuard(**self.guard_settings)
        thinking = ThinkingFilter()
        visible: List[str] = []
        deadline = time.monotonic() + self.timeout

        def abort(kind: ErrorKind, pattern: str) -> _AttemptResult:
            preview = "".join(visible)[-_PREVIEW_CHARS:]
            return _AttemptResult(
                text="",
                tokens=guard.total_tokens,
                abort=AbortRecord(kind, pattern, guard.total_tokens, preview),
            )

        while True:
            if cancel_event is not None and cancel_event.is_set():
                return abort(ErrorKind.GENERATION_CANCELLED, "cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return abort(ErrorKind.GENERATION_TIMEOUT, "wall_clock")
            try:
                kind, payload = chunks.get(timeout=min(remaining, _POLL_INTERVAL))
            except queue.Empty:
                continue

            if kind == "error":
                raise payload
            if kind == "done":
                tail = thinking.finish()
                if tail:
                    visible.append(tail)
                if thinking.saw_thinking and not "".join(visible).strip():
                    logger.warning("Model produced only a reasoning segment, no answer")
                return _AttemptResult(text="".join(visible).strip(), tokens=guard.total_tokens)

            if guard.count():
                return abort(ErrorKind.GENERATION_DEGENERATE, "token_limit")
            token = thinking.feed(payload)
            if not token:
                continue
            visible.append(token)
            pattern = guard.feed(token)
            if pattern:
                return abort(ErrorKind.GENERATION_DEGENERATE, pattern)

    def _record(self, outcome: GenerationOutcome, aborts: List[AbortRecord]) -> None:
        with self._stats_lock:
            self.stats.invocations += 1
            if outcome == GenerationOutcome.CLEAN:
                self.stats.clean += 1
            elif outcome == GenerationOutcome.RECOVERED:
                self.stats.recovered += 1
            else:
                self.stats.failed += 1
            for record in aborts:
                self.stats.aborts_by_pattern[record.pattern] = self.stats.aborts_by_pattern.get(record.pattern, 0) + 1


__all__ = [
    "BlockRepeatDetector",
    "ConsecutiveTokenDetector",
    "GenerationWatchdog",
    "SequenceRepeatDetector",
    "StreamGuard",
    "ThinkingFilter",
    "WatchdogStats",
    "strip_thinking",
]
