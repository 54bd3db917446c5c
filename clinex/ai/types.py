"""Typed data models shared across the extraction pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple


class Domain(str, Enum):
    SYMPTOM = "symptom"
    MEDICATION = "medication"
    APPOINTMENT = "appointment"
    LAB_RESULT = "lab_result"
    DIAGNOSIS = "diagnosis"
    ALLERGY = "allergy"
    PROCEDURE = "procedure"
    REFERRAL = "referral"
    INSTRUCTION = "instruction"
    METADATA = "metadata"


class SpeakerRole(str, Enum):
    PATIENT = "patient"
    ASSISTANT = "assistant"
    CLINICIAN = "clinician"
    DOCUMENT = "document"


class UnitKind(str, Enum):
    CONVERSATION = "conversation"
    DOCUMENT = "document"


class GenerationOutcome(str, Enum):
    CLEAN = "clean"
    RECOVERED = "recovered"
    FAILED = "failed"


class Grounding(str, Enum):
    GROUNDED = "grounded"
    PARTIAL = "partial"
    UNGROUNDED = "ungrounded"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CONFIRMED_WITH_EDITS = "confirmed_with_edits"
    DISMISSED = "dismissed"


class ErrorKind(str, Enum):
    GENERATION_DEGENERATE = "generation_degenerate"
    GENERATION_TIMEOUT = "generation_timeout"
    GENERATION_CANCELLED = "generation_cancelled"
    UNSUPPORTED_LANGUAGE = "unsupported_language"
    UNPARSED_LINE = "unparsed_line"
    DATE_UNRESOLVED = "date_unresolved"
    LOW_CONFIDENCE_REJECTED = "low_confidence_rejected"
    DUPLICATE_DETECTED = "duplicate_detected"


@dataclass(frozen=True)
class SourceEntry:
    index: int
    role: SpeakerRole
    text: str


@dataclass(frozen=True)
class SourceUnit:
    """One conversation turn group or one document page, immutable."""

    id: str
    entries: Tuple[SourceEntry, ...]
    language: str
    type_label: str
    anchor_date: date
    kind: UnitKind = UnitKind.CONVERSATION

    @classmethod
    def conversation(
        cls,
        unit_id: str,
        messages: Sequence[Tuple[str, str]],
        *,
        language: str = "en",
        anchor_date: date,
        type_label: str = "conversation",
    ) -> "SourceUnit":
        """Build a conversation unit from ``(role, text)`` pairs in order."""
        entries = tuple(
            SourceEntry(index=idx, role=SpeakerRole(role), text=text)
            for idx, (role, text) in enumerate(messages)
        )
        return cls(
            id=unit_id,
            entries=entries,
            language=language,
            type_label=type_label,
            anchor_date=anchor_date,
            kind=UnitKind.CONVERSATION,
        )

    @classmethod
    def document(
        cls,
        unit_id: str,
        text: str,
        *,
        type_label: str,
        language: str = "en",
        anchor_date: date,
    ) -> "SourceUnit":
        return cls(
            id=unit_id,
            entries=(SourceEntry(index=0, role=SpeakerRole.DOCUMENT, text=text),),
            language=language,
            type_label=type_label,
            anchor_date=anchor_date,
            kind=UnitKind.DOCUMENT,
        )

    @property
    def is_conversation(self) -> bool:
        return self.kind == UnitKind.CONVERSATION

    @property
    def language_code(self) -> str:
        """Primary language subtag, lower-cased (``fr-CA`` -> ``fr``)."""
        return self.language.replace("_", "-").split("-")[0].strip().lower()

    def text_at(self, index: int) -> str:
        if 0 <= index < len(self.entries):
            return self.entries[index].text
        return ""

    def role_at(self, index: int) -> Optional[SpeakerRole]:
        if 0 <= index < len(self.entries):
            return self.entries[index].role
        return None

    def is_source_index(self, index: int) -> bool:
        """True when text at ``index`` may back an extracted field."""
        role = self.role_at(index)
        return role in (SpeakerRole.PATIENT, SpeakerRole.DOCUMENT)

    @property
    def source_indices(self) -> List[int]:
        return [entry.index for entry in self.entries if self.is_source_index(entry.index)]

    @property
    def full_text(self) -> str:
        return "\n".join(entry.text for entry in self.entries)


@dataclass(frozen=True)
class DomainQuestion:
    domain: Domain
    language: str
    system_prompt: str
    text: str
    answer_fields: Tuple[str, ...]
    batched: bool = False


@dataclass
class AbortRecord:
    """Why a single generation attempt was stopped."""

    kind: ErrorKind
    pattern: str
    tokens_before_abort: int
    partial_preview: str = ""


@dataclass
class RawAnswer:
    unit: SourceUnit
    question: DomainQuestion
    text: str
    outcome: GenerationOutcome
    elapsed_seconds: float = 0.0
    token_count: int = 0
    attempts: int = 1
    failure: Optional[ErrorKind] = None
    aborts: List[AbortRecord] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.outcome == GenerationOutcome.FAILED


@dataclass
class CandidateEntity:
    domain: Domain
    values: List[Optional[str]]
    answer: Optional[RawAnswer] = field(default=None, repr=False)
    raw_line: str = ""
    line_number: int = 0
    source_refs: List[str] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)
    raw_text: Optional[str] = None

    @property
    def unparsed(self) -> bool:
        return ErrorKind.UNPARSED_LINE.value in self.flags


@dataclass
class ExtractedEntity:
    domain: Domain
    fields: Dict[str, Any]
    source_messages: List[int] = field(default_factory=list)
    evidence: Dict[str, str] = field(default_factory=dict)
    flags: List[str] = field(default_factory=list)
    confidence: float = 0.0
    grounding: Optional[Grounding] = None
    source_quote: str = ""
    unit: Optional[SourceUnit] = field(default=None, repr=False)
    raw_line: str = ""

    @property
    def unit_id(self) -> str:
        return self.unit.id if self.unit is not None else ""

    def to_payload(self) -> Dict[str, Any]:
        """Flat field map exposed to reviewers."""
        payload = dict(self.fields)
        payload["source_messages"] = list(self.source_messages)
        return payload


@dataclass
class PendingReviewItem:
    id: str
    unit_id: str
    domain: Domain
    extracted_data: Dict[str, Any]
    confidence: float
    grounding: Grounding
    status: ReviewStatus = ReviewStatus.PENDING
    duplicate_of: Optional[str] = None
    source_messages: List[int] = field(default_factory=list)
    source_quote: str = ""
    flags: List[str] = field(default_factory=list)
    dedup_key: Optional[str] = None
    anchor_date: Optional[date] = None
    created_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "unit_id": self.unit_id,
            "domain": self.domain.value,
            "extracted_data": self.extracted_data,
            "confidence": self.confidence,
            "grounding": self.grounding.value,
            "status": self.status.value,
            "duplicate_of": self.duplicate_of,
            "source_messages": self.source_messages,
            "source_quote": self.source_quote,
            "flags": self.flags,
            "anchor_date": self.anchor_date.isoformat() if self.anchor_date else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
        }


__all__ = [
    "AbortRecord",
    "CandidateEntity",
    "Domain",
    "DomainQuestion",
    "ErrorKind",
    "ExtractedEntity",
    "GenerationOutcome",
    "Grounding",
    "PendingReviewItem",
    "RawAnswer",
    "ReviewStatus",
    "SourceEntry",
    "SourceUnit",
    "SpeakerRole",
    "UnitKind",
]
