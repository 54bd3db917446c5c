"""Deterministic parser for the light markdown-list answer format.

The model is asked for one item per line with comma-separated fields in a
fixed per-domain order. This module turns such an answer into
:class:`CandidateEntity` records without ever consulting the model again.
Lines that cannot be decomposed are kept whole and flagged rather than
guessed at.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from clinex.ai.domains import DomainSchema, get_schema
from clinex.ai.types import CandidateEntity, Domain, ErrorKind, RawAnswer
from clinex.logging_config import get_logger

logger = get_logger(__name__)

_BULLET = re.compile(r"^\s*(?:[-*•+▪‣]|\d{1,2}[.)])\s+")
_EMPHASIS = re.compile(r"\*\*|__|`")
_TABLE_RULE = re.compile(r"^\s*\|?\s*:?-{3,}")
# Split on semicolons, and on commas unless they sit between two digits
# (decimal commas and thousand separators stay inside their field).
_FIELD_SPLIT = re.compile(r"\s*;\s*|\s*(?:(?<!\d),|,(?!\d))\s*")

_REF_KEYWORD = r"(?:msgs?|messages?|sources?|src)"
_REF_ITEM = rf"(?:{_REF_KEYWORD}\s*[:.]?\s*)?#?\d+"
_REF_BODY = rf"{_REF_ITEM}(?:\s*(?:,|;|&|and|et|und|-|–)\s*{_REF_ITEM})*"
_REF_GROUP = re.compile(rf"[\(\[]\s*(?P<body>{_REF_BODY})\s*[\)\]]", re.IGNORECASE)
_REF_RANGE = re.compile(r"#?(\d+)\s*[-–]\s*(?:(?:msgs?|messages?)\s*)?#?(\d+)", re.IGNORECASE)
_REF_NUMBER = re.compile(r"(?:(?:msgs?|messages?|sources?|src)\s*[:.]?\s*)?#?\d+", re.IGNORECASE)

_PLACEHOLDERS = {
    "unknown", "not stated", "not specified", "not mentioned", "not given", "not provided",
    "not available", "unspecified", "n/a", "na", "none", "-", "--", "—", "?", "...",
    "inconnu", "inconnue", "non précisé", "non précisée", "non indiqué", "non indiquée",
    "non mentionné", "non mentionnée", "aucun", "aucune",
    "unbekannt", "nicht angegeben", "nicht erwähnt", "keine angabe", "k.a.", "keine",
}

_NEGATIVE_LINES = [
    re.compile(r"^(?:none|nothing|no|n/a)(?:\s+(?:mentioned|found|listed|reported|stated|documented))?\.?$"),
    re.compile(
        r"^(?:there (?:are|were|is|was) )?no\s+[\w\s/-]*?"
        r"(?:mentioned|found|listed|reported|stated|documented|identified|present|given|recorded)\b"
    ),
    re.compile(r"^not (?:mentioned|stated|specified|applicable)\b"),
    re.compile(
        r"^(?:the )?(?:document|text|conversation|patient|note) (?:does not|doesn't|did not|didn't) "
        r"(?:mention|contain|list|report|include|describe)"
    ),
    re.compile(r"^(?:aucune?|rien)\.?$"),
    re.compile(
        r"^(?:il n['’]y a )?(?:aucune?|pas de|rien)\s+[\w\s'’/-]*?"
        r"(?:mentionnée?s?|trouvée?s?|signalée?s?|indiquée?s?|rapportée?s?|n['’]est mentionné)"
    ),
    re.compile(r"^non (?:mentionnée?s?|précisée?s?)\b"),
    re.compile(r"^(?:keine?|nichts)\.?$"),
    re.compile(r"^(?:es (?:gibt|wurden) )?keine?\w*\s+[\w\s/-]*?(?:erwähnt|genannt|angegeben|gefunden|vorhanden)"),
    re.compile(r"^nicht (?:erwähnt|angegeben)\b"),
]
_SHORT_NEGATIVE = re.compile(r"^(?:no|aucune?|pas de|keine?\w*)\s+(?:known\s+|relevant\s+)?(?P<noun>[\w'-]+)$")
_DOMAIN_NOUN_STEMS = (
    "medication", "medicine", "drug", "symptom", "appointment", "lab", "test", "result",
    "diagnos", "allerg", "procedure", "referral", "instruction",
    "médicament", "traitement", "symptôme", "rendez-vous", "analyse", "résultat", "intervention",
    "orientation", "consigne",
    "medikament", "arznei", "symptom", "termin", "laborwert", "befund", "eingriff", "überweisung",
    "anweisung",
)

_DOSE = re.compile(
    r"(?<![\w.,])(\d+(?:[.,]\d+)?(?:\s*[-/]\s*\d+(?:[.,]\d+)?)?\s*"
    r"(?:mg|mcg|µg|μg|g|ml|l|iu|ui|units?|unités?|einheiten|%|drops?|gouttes?|tropfen|puffs?|"
    r"tablets?|tabs?|comprimés?|tabletten?|capsules?|gélules?|kapseln?|sachets?)"
    r"(?:\s*/\s*(?:ml|kg|day|jour|tag|dose|h))?)(?![\w])",
    re.IGNORECASE,
)
_MAX_IDENTITY_WORDS = 8
_VALUE_WITH_UNIT = re.compile(r"^([<>≤≥]?\s*\d+(?:[.,]\d+)?)\s*([a-zA-Zµμ%][\w/%^·.µμ]*(?:/[\w.^]+)?)$")

_COMMON_LABELS: Dict[str, Tuple[str, ...]] = {
    "name": ("name", "medication", "drug", "diagnosis", "procedure", "nom", "médicament", "medikament", "wirkstoff"),
    "dose": ("dose", "dosage", "strength", "posologie", "dosis"),
    "frequency": ("frequency", "how often", "fréquence", "häufigkeit"),
    "start_date": ("start date", "started", "start", "date de début", "début", "beginn"),
    "instructions": ("instructions", "instruction", "notes", "consignes", "hinweise"),
    "specific": ("symptom", "symptôme"),
    "severity": ("severity", "intensity", "intensité", "stärke"),
    "onset": ("onset", "since", "début", "beginn"),
    "body_region": ("body region", "location", "région du corps", "localisation", "körperregion"),
    "notes": ("notes", "note", "remarques", "notizen"),
    "professional_name": ("professional name", "professional", "doctor", "professionnel", "médecin", "arzt", "fachperson"),
    "specialty": ("specialty", "speciality", "spécialité", "fachrichtung"),
    "date": ("date", "datum"),
    "time": ("time", "heure", "uhrzeit"),
    "reason": ("reason", "motif", "anlass", "grund"),
    "test_name": ("test name", "test", "nom du test", "testname"),
    "value": ("value", "result", "valeur", "wert"),
    "unit": ("unit", "unité", "einheit"),
    "reference_range": ("reference range", "normal range", "range", "valeurs de référence", "référence", "referenzbereich"),
    "flag": ("abnormal flag", "flag", "indicateur", "auffälligkeit"),
    "status": ("status", "statut"),
    "allergen": ("allergen", "allergène"),
    "reaction": ("reaction", "réaction", "reaktion"),
    "reaction_severity": ("severity", "gravité", "schweregrad"),
    "outcome": ("outcome", "résultat", "ergebnis"),
    "follow_up": ("follow-up", "follow up", "suivi", "nachsorge"),
    "specialist": ("specialist", "spécialiste", "facharzt"),
    "text": ("instruction", "consigne", "anweisung"),
    "document_date": ("document date", "date", "datum"),
    "author": ("author", "signed by", "auteur", "verfasser"),
    "document_type": ("document type", "type de document", "type", "typ"),
}


@dataclass
class ParseResult:
    candidates: List[CandidateEntity] = field(default_factory=list)
    negative: bool = False
    skipped_lines: int = 0

    @property
    def unparsed(self) -> List[CandidateEntity]:
        return [candidate for candidate in self.candidates if candidate.unparsed]


def _label_table(schema: DomainSchema) -> List[Tuple[str, str]]:
    """(label, slot) pairs for one domain, longest label first."""
    pairs = [
        (label, slot)
        for slot in schema.answer_fields
        for label in _COMMON_LABELS.get(slot, ())
    ]
    return sorted(pairs, key=lambda pair: len(pair[0]), reverse=True)


def _clean_line(line: str) -> Tuple[str, bool]:
    bulleted = bool(_BULLET.match(line))
    text = _BULLET.sub("", line, count=1)
    text = _EMPHASIS.sub("", text).strip()
    return text, bulleted


def is_negative(text: str) -> bool:
    """True for explicit "nothing found" answers, as opposed to unparseable ones."""
    lowered = text.strip().lower().rstrip(".!")
    if any(pattern.match(lowered) for pattern in _NEGATIVE_LINES):
        return True
    # "No medications", "Aucun médicament", "Keine Termine": only when the noun
    # names a domain, so "no appetite" or "kein Appetit" stay symptoms.
    short = _SHORT_NEGATIVE.match(lowered)
    return bool(short and short.group("noun").startswith(_DOMAIN_NOUN_STEMS))


def is_placeholder(value: str) -> bool:
    return value.strip().lower().rstrip(".") in _PLACEHOLDERS


def extract_source_refs(text: str, allow_bare_numbers: bool) -> Tuple[str, List[str]]:
    """Lift citation groups such as ``(Msg 2)`` out of ``text``.

    Bare digit groups like ``(2, 3)`` only count as citations when
    ``allow_bare_numbers`` is set, so ``(12-16)`` in a lab line survives.
    """
    refs: List[str] = []

    def _take(match: "re.Match") -> str:
        body = match.group("body")
        if not allow_bare_numbers and not re.search(_REF_KEYWORD, body, re.IGNORECASE):
            return match.group(0)
        for range_match in _REF_RANGE.finditer(body):
            start, end = int(range_match.group(1)), int(range_match.group(2))
            if start <= end <= start + 50:
                refs.extend(str(idx) for idx in range(start, end + 1))
        body = _REF_RANGE.sub("", body)
        refs.extend(item.group(0).strip() for item in _REF_NUMBER.finditer(body))
        return " "

    stripped = _REF_GROUP.sub(_take, text)
    if not refs:
        return text, refs
    return re.sub(r"\s{2,}", " ", stripped).strip(" ,;."), refs


def split_fields(text: str) -> List[str]:
    return [segment.strip() for segment in _FIELD_SPLIT.split(text) if segment.strip()]


def _match_label(segment: str, labels: Sequence[Tuple[str, str]]) -> Optional[Tuple[str, str]]:
    lowered = segment.lower()
    for label, slot in labels:
        if lowered.startswith(label):
            rest = segment[len(label):].lstrip()
            if rest.startswith((":", "：", "=")):
                return slot, rest[1:].strip()
    return None


def _realign(domain: Domain, segments: List[str]) -> List[str]:
    """Split fused dose/value tokens so positional slots line up."""
    if not segments:
        return segments
    if domain == Domain.MEDICATION:
        head = segments[0]
        match = _DOSE.search(head)
        next_has_dose = len(segments) > 1 and _DOSE.search(segments[1]) is not None
        if match and match.start() > 0:
            name = head[:match.start()].strip(" ,-")
            rest = head[match.end():].strip(" ,-")
            if next_has_dose:
                # dose already has its own field; drop the fused copy
                return [f"{name} {rest}".strip()] + segments[1:]
            rebuilt = [name, match.group(1).strip()]
            if rest:
                rebuilt.append(rest)
            return rebuilt + segments[1:]
    if domain == Domain.LAB_RESULT and len(segments) >= 2:
        match = _VALUE_WITH_UNIT.match(segments[1])
        unit_missing = len(segments) < 3 or re.search(r"\d", segments[2]) is not None
        if match and unit_missing:
            return [segments[0], match.group(1).strip(), match.group(2)] + segments[2:]
    return segments


class AnswerParser:
    """Turns one approved answer into candidate entities for its domain."""

    def parse(self, answer: RawAnswer, domain: Optional[Domain] = None) -> List[CandidateEntity]:
        return self.parse_answer(answer, domain).candidates

    def parse_answer(self, answer: RawAnswer, domain: Optional[Domain] = None) -> ParseResult:
        domain = Domain(domain or answer.question.domain)
        if answer.failed:
            raise ValueError("failed generations must not reach the answer parser")
        schema = get_schema(domain)
        if schema.labelled:
            return self._parse_labelled(answer, schema)
        return self._parse_lines(answer, schema)

    def _content_lines(self, text: str) -> List[Tuple[int, str, bool]]:
        lines = []
        for number, raw in enumerate(text.splitlines(), start=1):
            if not raw.strip() or _TABLE_RULE.match(raw):
                continue
            cleaned, bulleted = _clean_line(raw)
            if cleaned:
                lines.append((number, cleaned, bulleted))
        return lines

    def _parse_lines(self, answer: RawAnswer, schema: DomainSchema) -> ParseResult:
        result = ParseResult()
        lines = self._content_lines(answer.text)
        any_bullets = any(bulleted for _, _, bulleted in lines)
        allow_bare = answer.unit.is_conversation
        labels = _label_table(schema)
        negatives = 0

        for number, text, bulleted in lines:
            if is_negative(text):
                negatives += 1
                continue
            if any_bullets and not bulleted:
                result.skipped_lines += 1
                continue
            if text.endswith(":") and not _FIELD_SPLIT.search(text):
                result.skipped_lines += 1
                continue
            body, refs = extract_source_refs(text, allow_bare)
            candidate = self._decompose(schema, body, labels)
            candidate.answer = answer
            candidate.raw_line = text
            candidate.line_number = number
            candidate.source_refs = refs
            if candidate.unparsed:
                logger.info(
                    "Unparsed %s line %d kept as raw text",
                    schema.domain.value,
                    number,
                    extra={"unit_id": answer.unit.id, "domain": schema.domain.value},
                )
            result.candidates.append(candidate)

        result.negative = not result.candidates and negatives > 0
        return result

    def _decompose(self, schema: DomainSchema, body: str, labels) -> CandidateEntity:
        slots = schema.answer_fields
        if len(slots) == 1:
            segments = [body.strip(" ,;")] if body.strip(" ,;") else []
        else:
            segments = _realign(schema.domain, split_fields(body))

        values: Dict[str, Optional[str]] = {}
        positional: List[str] = []
        for segment in segments:
            labelled = _match_label(segment, labels)
            if labelled and labelled[0] not in values:
                values[labelled[0]] = labelled[1]
            else:
                positional.append(segment)

        free_slots = [slot for slot in slots if slot not in values]
        count = len(segments)
        too_many = len(positional) > len(free_slots)
        if too_many and schema.tail_absorbs and free_slots:
            keep = len(free_slots) - 1
            positional = positional[:keep] + [", ".join(positional[keep:])]
            too_many = False

        if count < schema.min_fields or too_many:
            return self._unparsed(schema, body)

        for slot, segment in zip(free_slots, positional):
            values[slot] = segment

        ordered = [
            None if values.get(slot) is None or is_placeholder(values[slot]) else values[slot]
            for slot in slots
        ]
        identity = [ordered[slots.index(slot)] for slot in schema.identity_fields]
        if not any(identity):
            return self._unparsed(schema, body)
        # A whole sentence in an identifying slot is prose, not a list item.
        if len(slots) > 1 and any(value and len(value.split()) > _MAX_IDENTITY_WORDS for value in identity):
            return self._unparsed(schema, body)
        return CandidateEntity(domain=schema.domain, values=ordered)

    @staticmethod
    def _unparsed(schema: DomainSchema, body: str) -> CandidateEntity:
        return CandidateEntity(
            domain=schema.domain,
            values=[None] * len(schema.answer_fields),
            flags=[ErrorKind.UNPARSED_LINE.value],
            raw_text=body,
        )

    def _parse_labelled(self, answer: RawAnswer, schema: DomainSchema) -> ParseResult:
        result = ParseResult()
        labels = _label_table(schema)
        label_words = "|".join(re.escape(label) for label, _ in labels)
        boundary = re.compile(rf"\s*[,;]\s*(?=(?:{label_words})\s*[:：=])", re.IGNORECASE)
        values: Dict[str, str] = {}
        leftovers: List[str] = []
        negatives = 0
        first_line = 0

        for number, text, _ in self._content_lines(answer.text):
            if is_negative(text):
                negatives += 1
                continue
            for segment in boundary.split(text):
                labelled = _match_label(segment.strip(), labels)
                if labelled is None:
                    leftovers.append(segment.strip())
                    continue
                slot, value = labelled
                if slot not in values and not is_placeholder(value):
                    values[slot] = value
                    first_line = first_line or number

        if values:
            candidate = CandidateEntity(
                domain=schema.domain,
                values=[values.get(slot) for slot in schema.answer_fields],
                answer=answer,
                raw_line="; ".join(f"{slot}: {value}" for slot, value in values.items()),
                line_number=first_line,
            )
            result.candidates.append(candidate)
        elif leftovers:
            candidate = self._unparsed(schema, " ".join(leftovers))
            candidate.answer = answer
            candidate.raw_line = candidate.raw_text or ""
            result.candidates.append(candidate)
        result.negative = not result.candidates and negatives > 0
        return result


_DEFAULT_PARSER = AnswerParser()


def parse(answer: RawAnswer, domain: Optional[Domain] = None) -> List[CandidateEntity]:
    return _DEFAULT_PARSER.parse(answer, domain)


__all__ = [
    "AnswerParser",
    "ParseResult",
    "extract_source_refs",
    "is_negative",
    "is_placeholder",
    "parse",
    "split_fields",
]
