"""Question routing: which domains to ask about for a source unit, and in which language."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from clinex.ai.domains import get_schema
from clinex.ai.prompting.templates import SYSTEM_PROMPTS, get_question_text
from clinex.ai.types import Domain, DomainQuestion, ErrorKind, SourceUnit
from clinex.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_TYPE_LABEL = "document"

# Ordered domains per conversation/document type. Metadata is one batched
# question; every other domain is asked on its own.
DOMAIN_TABLE: Dict[str, Tuple[Domain, ...]] = {
    "conversation": (Domain.SYMPTOM, Domain.MEDICATION, Domain.APPOINTMENT),
    "prescription": (Domain.METADATA, Domain.MEDICATION, Domain.INSTRUCTION),
    "lab_result": (Domain.METADATA, Domain.LAB_RESULT),
    "discharge_summary": (
        Domain.METADATA, Domain.DIAGNOSIS, Domain.MEDICATION, Domain.ALLERGY,
        Domain.PROCEDURE, Domain.REFERRAL, Domain.INSTRUCTION,
    ),
    "clinical_note": (
        Domain.METADATA, Domain.DIAGNOSIS, Domain.MEDICATION, Domain.ALLERGY,
        Domain.PROCEDURE, Domain.REFERRAL, Domain.INSTRUCTION,
    ),
    "referral_letter": (Domain.METADATA, Domain.REFERRAL, Domain.DIAGNOSIS),
    "imaging_report": (Domain.METADATA, Domain.DIAGNOSIS, Domain.PROCEDURE),
    "appointment_letter": (Domain.METADATA, Domain.APPOINTMENT, Domain.INSTRUCTION),
    DEFAULT_TYPE_LABEL: (
        Domain.METADATA, Domain.MEDICATION, Domain.LAB_RESULT, Domain.DIAGNOSIS, Domain.ALLERGY,
    ),
}

_TYPE_ALIASES = {
    "chat": "conversation",
    "lab": "lab_result",
    "lab_report": "lab_result",
    "labs": "lab_result",
    "discharge": "discharge_summary",
    "consultation_note": "clinical_note",
    "medical_note": "clinical_note",
    "referral": "referral_letter",
    "radiology_report": "imaging_report",
}


def normalize_type_label(label: Optional[str]) -> str:
    key = (label or "").strip().lower().replace("-", "_").replace(" ", "_")
    key = _TYPE_ALIASES.get(key, key)
    return key if key in DOMAIN_TABLE else DEFAULT_TYPE_LABEL


@dataclass
class RoutingResult:
    questions: List[DomainQuestion] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)
    skipped: List[Domain] = field(default_factory=list)


def build_question(domain: Domain, language: str) -> Optional[DomainQuestion]:
    text = get_question_text(language, domain)
    system_prompt = SYSTEM_PROMPTS.get(language)
    if text is None or system_prompt is None:
        return None
    return DomainQuestion(
        domain=domain,
        language=language,
        system_prompt=system_prompt,
        text=text,
        answer_fields=get_schema(domain).answer_fields,
        batched=domain == Domain.METADATA,
    )


def route_with_flags(
    unit: SourceUnit,
    domains: Optional[Iterable[Domain]] = None,
    supported_languages: Optional[Iterable[str]] = None,
) -> RoutingResult:
    """Select questions for ``unit``.

    ``domains`` optionally narrows the table's list; ``supported_languages``
    restricts which template languages may be used at all.
    """
    table_domains = DOMAIN_TABLE[normalize_type_label(unit.type_label)]
    if domains is not None:
        wanted = set(domains)
        table_domains = tuple(domain for domain in table_domains if domain in wanted)

    language = unit.language_code
    allowed = supported_languages is None or language in set(supported_languages)
    result = RoutingResult()
    for domain in table_domains:
        question = build_question(domain, language) if allowed else None
        if question is None:
            result.skipped.append(domain)
            continue
        result.questions.append(question)

    if result.skipped:
        result.flags.append(ErrorKind.UNSUPPORTED_LANGUAGE.value)
        logger.warning(
            "No %s templates for %d domain(s) of unit %s; routing to human review",
            language or "<empty>",
            len(result.skipped),
            unit.id,
            extra={"unit_id": unit.id, "language": unit.language},
        )
    return result


def route(unit: SourceUnit) -> List[DomainQuestion]:
    return route_with_flags(unit).questions


__all__ = [
    "DOMAIN_TABLE",
    "RoutingResult",
    "build_question",
    "normalize_type_label",
    "route",
    "route_with_flags",
]
