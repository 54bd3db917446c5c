"""
Clinical extraction pipeline: route, generate, parse, normalize, score, queue.
"""

from __future__ import annotations

import asyncio
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from clinex.ai.llm_backends import build_backend
from clinex.ai.model_channel import ModelChannel
from clinex.ai.types import (
    CandidateEntity,
    Domain,
    DomainQuestion,
    ErrorKind,
    ExtractedEntity,
    PendingReviewItem,
    RawAnswer,
    SourceUnit,
)
from clinex.ai.watchdog import GenerationWatchdog
from clinex.core.unified_config import UnifiedConfig, get_config
from clinex.exceptions import AIError
from clinex.grounding.scorer import ConfidenceScorer, consolidate
from clinex.logging_config import get_logger
from clinex.normalization.normalizer import EntityNormalizer
from clinex.parsing.answer_parser import AnswerParser
from clinex.review.queue import ReviewQueue, entity_key
from clinex.routing.analyzer import analyze_conversation
from clinex.routing.question_router import route_with_flags

logger = get_logger(__name__)

BACKEND_ERROR = "backend_error"
PURE_QUESTION_ANSWER = "pure_question_answer"


@dataclass
class DomainFailure:
    domain: Domain
    kind: str
    message: str = ""
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"domain": self.domain.value, "kind": self.kind, "message": self.message, "attempts": self.attempts}


@dataclass
class PipelineReport:
    """Outcome of one unit: what was queued, what was held back and why."""
    unit_id: str
    queued: List[PendingReviewItem] = field(default_factory=list)
    rejected: List[ExtractedEntity] = field(default_factory=list)
    unparsed: List[CandidateEntity] = field(default_factory=list)
    failures: List[DomainFailure] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)
    skipped_domains: List[Domain] = field(default_factory=list)
    negative_domains: List[Domain] = field(default_factory=list)
    questions_asked: int = 0
    processing_time: float = 0.0

    def add_flag(self, flag: str) -> None:
        if flag not in self.flags:
            self.flags.append(flag)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "queued": [item.to_dict() for item in self.queued],
            "rejected": [
                {
                    "domain": entity.domain.value,
                    "confidence": entity.confidence,
                    "grounding": entity.grounding.value if entity.grounding else None,
                    "raw_line": entity.raw_line,
                }
                for entity in self.rejected
            ],
            "unparsed": [
                {"domain": candidate.domain.value, "line": candidate.line_number, "raw_text": candidate.raw_text}
                for candidate in self.unparsed
            ],
            "failures": [failure.to_dict() for failure in self.failures],
            "flags": list(self.flags),
            "skipped_domains": [domain.value for domain in self.skipped_domains],
            "negative_domains": [domain.value for domain in self.negative_domains],
            "questions_asked": self.questions_asked,
            "processing_time": round(self.processing_time, 3),
        }


@dataclass
class _UnitRun:
    unit: SourceUnit
    report: PipelineReport
    questions: List[DomainQuestion]
    futures: List[Future]
    cancel_event: threading.Event
    started: float


class ExtractionPipeline:
    """
    Clinical extraction pipeline

    Runs every source unit through the six stages:
    1. Question routing (plus the conversation keyword pre-filter)
    2. Watched generation on the single model slot
    3. Answer parsing
    4. Entity normalization
    5. Grounding and confidence scoring
    6. Deduplication and admission to the review queue
    """

    def __init__(
        self,
        config: Optional[UnifiedConfig] = None,
        *,
        backend=None,
        watchdog: Optional[GenerationWatchdog] = None,
        review_queue: Optional[ReviewQueue] = None,
        channel: Optional[ModelChannel] = None,
    ):
        self.config = config or get_config()
        self._backend = backend
        self._watchdog = watchdog
        self._review_queue = review_queue
        self.channel = channel or ModelChannel()
        self.parser = AnswerParser()
        self.normalizer = EntityNormalizer(self.config.date_window_days)
        self.scorer = ConfidenceScorer(self.config.confidence_threshold, self.config.max_items_per_domain)
        self.executor = ThreadPoolExecutor(max_workers=self.config.max_workers, thread_name_prefix="clinex-unit")
        self._runs: Dict[str, _UnitRun] = {}
        self._runs_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.stats: Dict[str, Any] = {
            "units_processed": 0,
            "total_processing_time": 0.0,
            "average_processing_time": 0.0,
            "questions_asked": 0,
            "items_queued": 0,
            "items_rejected": 0,
            "duplicates_flagged": 0,
            "generation_failures": {},
            "lines_by_domain": {},
            "unparsed_by_domain": {},
        }
        logger.info("Extraction pipeline initialized (max_workers=%d)", self.config.max_workers)

    @property
    def watchdog(self) -> GenerationWatchdog:
        if self._watchdog is None:
            if self._backend is None:
                self._backend = build_backend(self.config)
            self._watchdog = GenerationWatchdog.from_config(self._backend, self.config)
        return self._watchdog

    @property
    def review_queue(self) -> ReviewQueue:
        if self._review_queue is None:
            self._review_queue = ReviewQueue(recency_days=self.config.symptom_recency_days)
        return self._review_queue

    # ------------------------------------------------------------------ public API
    def process_unit(self, unit: SourceUnit) -> PipelineReport:
        return self._finish(self._start(unit))

    def process_units(self, units: Sequence[SourceUnit]) -> List[PipelineReport]:
        """Process several units; generation order on the model slot follows ``units``."""
        runs = [self._start(unit) for unit in units]
        return list(self.executor.map(self._finish, runs))

    async def aprocess_units(self, units: Sequence[SourceUnit]) -> List[PipelineReport]:
        loop = asyncio.get_running_loop()
        # the first call may load a local model; keep that off the event loop
        runs = await loop.run_in_executor(None, lambda: [self._start(unit) for unit in units])
        return list(await asyncio.gather(*(loop.run_in_executor(self.executor, self._finish, run) for run in runs)))

    async def aprocess_unit(self, unit: SourceUnit) -> PipelineReport:
        return (await self.aprocess_units([unit]))[0]

    def cancel(self, unit_id: str) -> bool:
        """Stop the in-flight generation for ``unit_id`` and drop its queued ones."""
        with self._runs_lock:
            run = self._runs.get(unit_id)
        if run is None:
            return False
        run.cancel_event.set()
        for future in run.futures:
            future.cancel()
        logger.info("Cancellation requested for unit %s", unit_id, extra={"unit_id": unit_id})
        return True

    def shutdown(self, wait: bool = True) -> None:
        with self._runs_lock:
            runs = list(self._runs.values())
        for run in runs:
            run.cancel_event.set()
        self.channel.shutdown(wait=wait, cancel_pending=True)
        self.executor.shutdown(wait=wait)

    # ------------------------------------------------------------------ stages
    def _select_questions(self, unit: SourceUnit, report: PipelineReport) -> List[DomainQuestion]:
        domains = None
        prefilter = self.config.enable_domain_prefilter and unit.language_code in self.config.supported_languages
        if unit.is_conversation and prefilter:
            analysis = analyze_conversation(unit)
            if analysis.is_pure_qa:
                report.add_flag(PURE_QUESTION_ANSWER)
                logger.info("Unit %s only contains patient questions; nothing to extract", unit.id)
                return []
            domains = analysis.domains
        routing = route_with_flags(unit, domains=domains, supported_languages=self.config.supported_languages)
        report.skipped_domains.extend(routing.skipped)
        for flag in routing.flags:
            report.add_flag(flag)
        return routing.questions

    def _start(self, unit: SourceUnit) -> _UnitRun:
        report = PipelineReport(unit_id=unit.id)
        started = time.time()
        questions = self._select_questions(unit, report)
        cancel_event = threading.Event()
        run = _UnitRun(unit, report, questions, [], cancel_event, started)
        with self._runs_lock:
            if unit.id in self._runs:
                logger.warning("Unit %s is already being processed", unit.id, extra={"unit_id": unit.id})
            self._runs[unit.id] = run
        run.futures = [
            self.channel.submit(self.watchdog.invoke, question, unit, cancel_event) for question in questions
        ]
        report.questions_asked = len(questions)
        return run

    def _collect_answer(self, run: _UnitRun, question: DomainQuestion, future: Future) -> Optional[RawAnswer]:
        report = run.report
        try:
            answer = future.result()
        except CancelledError:
            report.failures.append(DomainFailure(question.domain, ErrorKind.GENERATION_CANCELLED.value, "cancelled before start"))
            return None
        except Exception as exc:
            # only this (unit, domain) pair is lost; the rest of the unit goes on
            logger.error(
                "Backend failed for %s/%s: %s",
                run.unit.id,
                question.domain.value,
                exc,
                exc_info=not isinstance(exc, AIError),
                extra={"unit_id": run.unit.id, "domain": question.domain.value},
            )
            report.failures.append(DomainFailure(question.domain, BACKEND_ERROR, str(exc)))
            return None
        if answer.failed:
            report.failures.append(
                DomainFailure(question.domain, answer.failure.value, "generation aborted", answer.attempts)
            )
            return None
        return answer

    def _extract(self, run: _UnitRun, answer: RawAnswer) -> List[ExtractedEntity]:
        domain = answer.question.domain
        parsed = self.parser.parse_answer(answer)
        if parsed.negative:
            run.report.negative_domains.append(domain)
        entities: List[ExtractedEntity] = []
        for candidate in parsed.candidates:
            if candidate.unparsed:
                run.report.unparsed.append(candidate)
                run.report.add_flag(ErrorKind.UNPARSED_LINE.value)
                continue
            entities.append(self.normalizer.normalize(candidate))
        self._count_lines(domain, len(parsed.candidates), len(parsed.unparsed))
        return entities

    def _finish(self, run: _UnitRun) -> PipelineReport:
        report = run.report
        try:
            entities: List[ExtractedEntity] = []
            for question, future in zip(run.questions, run.futures):
                answer = self._collect_answer(run, question, future)
                if answer is not None:
                    entities.extend(self._extract(run, answer))

            accepted: List[ExtractedEntity] = []
            for entity in consolidate(entities, entity_key):
                self.scorer.score(entity)
                for flag in entity.flags:
                    report.add_flag(flag)
                if self.scorer.accept(entity):
                    accepted.append(entity)
                else:
                    report.rejected.append(entity)
            if report.rejected:
                report.add_flag(ErrorKind.LOW_CONFIDENCE_REJECTED.value)

            for entity in self.scorer.cap(accepted):
                item = self.review_queue.admit(entity)
                report.queued.append(item)
                if item.duplicate_of:
                    report.add_flag(ErrorKind.DUPLICATE_DETECTED.value)
            for failure in report.failures:
                report.add_flag(failure.kind)
        finally:
            with self._runs_lock:
                if self._runs.get(run.unit.id) is run:
                    del self._runs[run.unit.id]

        report.processing_time = time.time() - run.started
        self._update_stats(report)
        logger.info(
            "Processed unit %s in %.2fs: %d queued, %d rejected, %d unparsed, %d failed domain(s)",
            run.unit.id,
            report.processing_time,
            len(report.queued),
            len(report.rejected),
            len(report.unparsed),
            len(report.failures),
            extra={"unit_id": run.unit.id},
        )
        return report

    # ------------------------------------------------------------------ statistics
    def _count_lines(self, domain: Domain, lines: int, unparsed: int) -> None:
        with self._stats_lock:
            by_domain = self.stats["lines_by_domain"]
            by_domain[domain.value] = by_domain.get(domain.value, 0) + lines
            failures = self.stats["unparsed_by_domain"]
            failures[domain.value] = failures.get(domain.value, 0) + unparsed

    def _update_stats(self, report: PipelineReport) -> None:
        with self._stats_lock:
            self.stats["units_processed"] += 1
            self.stats["total_processing_time"] += report.processing_time
            self.stats["average_processing_time"] = (
                self.stats["total_processing_time"] / self.stats["units_processed"]
            )
            self.stats["questions_asked"] += report.questions_asked
            self.stats["items_queued"] += len(report.queued)
            self.stats["items_rejected"] += len(report.rejected)
            self.stats["duplicates_flagged"] += sum(1 for item in report.queued if item.duplicate_of)
            failures = self.stats["generation_failures"]
            for failure in report.failures:
                failures[failure.kind] = failures.get(failure.kind, 0) + 1

    def performance_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = {
                key: dict(value) if isinstance(value, dict) else value
                for key, value in self.stats.items()
            }
        stats["unparsed_rate_by_domain"] = {
            domain: round(stats["unparsed_by_domain"].get(domain, 0) / lines, 3)
            for domain, lines in stats["lines_by_domain"].items()
            if lines
        }
        if self._watchdog is not None:
            watchdog = self._watchdog.stats
            stats["watchdog"] = {
                "invocations": watchdog.invocations,
                "clean": watchdog.clean,
                "recovered": watchdog.recovered,
                "failed": watchdog.failed,
                "aborts_by_pattern": dict(watchdog.aborts_by_pattern),
            }
        stats["model_channel"] = {"pending": self.channel.pending, "completed": self.channel.completed}
        return stats


__all__ = ["DomainFailure", "ExtractionPipeline", "PipelineReport"]
