"""Keyword and pattern pre-filter for conversation units.

Scans patient messages only and reports which conversation domains carry
any signal at all, so the router's questions can be narrowed before a model
call is spent on them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List

from clinex.ai.types import Domain, SourceUnit, SpeakerRole

_KEYWORDS: Dict[Domain, List[str]] = {
    Domain.SYMPTOM: [
        # en
        "pain", "headache", "nausea", "fatigue", "cough", "fever", "dizziness", "rash", "itch",
        "sore", "ache", "dizzy", "tired", "insomnia", "vomiting", "swelling", "numbness",
        "tingling", "cramping", "bleeding", "shortness of breath", "anxiety",
        # fr
        "douleur", "mal de tête", "nausée", "toux", "fièvre", "vertige", "éruption",
        "démangeaison", "vomissement", "gonflement", "engourdissement", "crampe",
        "saignement", "essoufflement", "insomnie", "anxiété",
        # de
        "schmerz", "kopfschmerzen", "übelkeit", "müdigkeit", "husten", "fieber", "schwindel",
        "ausschlag", "juckreiz", "erbrechen", "schwellung", "taubheit", "krampf", "blutung",
        "atemnot", "schlaflosigkeit",
    ],
    Domain.MEDICATION: [
        "medication", "medicine", "pill", "tablet", "capsule", "taking", "started", "stopped",
        "prescribed", "dose", "dosage", "ibuprofen", "paracetamol", "aspirin", "antibiotic",
        "médicament", "comprimé", "posologie", "ordonnance", "gélule", "sirop", "pommade",
        "medikament", "tablette", "rezept", "kapsel", "dosis", "salbe",
    ],
    Domain.APPOINTMENT: [
        "appointment", "doctor", "visit", "specialist", "check-up", "checkup", "consultation",
        "clinic", "hospital", "dr.",
        "rendez-vous", "médecin", "spécialiste", "hôpital", "clinique",
        "termin", "arzt", "facharzt", "besuch", "krankenhaus", "klinik",
    ],
}

_PATTERNS: Dict[Domain, List[re.Pattern]] = {
    Domain.SYMPTOM: [
        re.compile(
            r"\bi\s+(?:have|had|feel|felt|notice|noticed|started)\s+(?:a\s+|some\s+|bad\s+|terrible\s+)?"
            r"(?:\w+\s+)?(?:pain|ache|headache|nausea|fatigue|dizziness)",
            re.IGNORECASE,
        ),
        re.compile(
            r"\b(?:since|for)\s+(?:yesterday|this morning|last night|last week|\d+\s+(?:days?|weeks?|hours?|months?))",
            re.IGNORECASE,
        ),
        re.compile(r"\b(?:worse|better|worsens?|improves?)\s+(?:when|with|after|in the|at|during)", re.IGNORECASE),
        re.compile(r"\b\d{1,2}\s*(?:/|out of)\s*(?:10|5)\b", re.IGNORECASE),
    ],
    Domain.MEDICATION: [
        re.compile(r"\b(?:taking|started|stopped|prescribed|switched)\s+\w+\s*\d+\s*mg", re.IGNORECASE),
        re.compile(r"\d+\s*mg\b", re.IGNORECASE),
        re.compile(r"\b(?:forgot|missed|skipped)\s+(?:my|the|a)\s+\w+", re.IGNORECASE),
    ],
    Domain.APPOINTMENT: [
        re.compile(r"\b(?:appointment|visit|seeing)\s+(?:with|at|on|for)\s+", re.IGNORECASE),
        re.compile(
            r"\b(?:next|this|coming)\s+(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday|week|month)",
            re.IGNORECASE,
        ),
        re.compile(r"\b(?:dr\.?|doctor|prof\.?)\s+[A-ZÀ-Ý]\w+"),
    ],
}


@dataclass
class AnalysisResult:
    domains: List[Domain] = field(default_factory=list)
    signal_indices: Dict[Domain, List[int]] = field(default_factory=dict)
    is_pure_qa: bool = False


def is_pure_qa(unit: SourceUnit) -> bool:
    """True when every patient message is a question (or there are none)."""
    patient = [entry for entry in unit.entries if entry.role == SpeakerRole.PATIENT]
    if not patient:
        return True
    return all(entry.text.strip().endswith("?") for entry in patient)


def _has_signal(text: str, domain: Domain) -> bool:
    lowered = text.lower()
    if any(keyword in lowered for keyword in _KEYWORDS.get(domain, ())):
        return True
    return any(pattern.search(text) for pattern in _PATTERNS.get(domain, ()))


def analyze_conversation(unit: SourceUnit) -> AnalysisResult:
    """Return the conversation domains with at least one patient signal."""
    if is_pure_qa(unit):
        return AnalysisResult(is_pure_qa=True)

    signals: Dict[Domain, List[int]] = {}
    for entry in unit.entries:
        if entry.role != SpeakerRole.PATIENT:
            continue
        for domain in _KEYWORDS:
            if _has_signal(entry.text, domain):
                signals.setdefault(domain, []).append(entry.index)

    ordered = [domain for domain in _KEYWORDS if domain in signals]
    return AnalysisResult(domains=ordered, signal_indices=signals)


__all__ = ["AnalysisResult", "analyze_conversation", "is_pure_qa"]
