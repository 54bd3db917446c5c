"""Deterministic normalization of parsed candidates into extracted entities."""

from __future__ import annotations

import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Tuple

from clinex.ai.domains import get_schema
from clinex.ai.types import CandidateEntity, Domain, ErrorKind, ExtractedEntity, SourceUnit, SpeakerRole
from clinex.core.unified_config import get_config
from clinex.grounding.matching import appears_in, fold, number_in
from clinex.logging_config import get_logger
from clinex.normalization.dates import DURATION, resolve_date

logger = get_logger(__name__)

MAX_MEDICATION_NAME = 200
NAME_TOO_LONG = "name_too_long"
INCOMPLETE = "incomplete"

_REF_DIGITS = re.compile(r"\d+")


def _word(body: str) -> "re.Pattern":
    return re.compile(rf"(?<!\w)(?:{body})(?!\w)", re.IGNORECASE)


def _stem(body: str) -> "re.Pattern":
    return re.compile(rf"(?<!\w)(?:{body})", re.IGNORECASE)


SYMPTOM_CATEGORIES: Tuple[Tuple[str, "re.Pattern"], ...] = (
    ("Pain", _stem(
        r"pain|ache|aching|headache|migraine|cramp|sore|hurt|"
        r"douleur|douloureu|mal de|mal au|mal aux|céphalée|crampe|"
        r"schmerz|kopfschmerz|bauchschmerz|krampf|tut weh|wehtun"
    )),
    ("Digestive", _stem(
        r"nause|vomit|diarrh|constipat|bloat|stomach|abdominal|heartburn|reflux|indigestion|appetite|"
        r"naus[ée]e|vomiss|diarrh[ée]e|ballonnement|brûlures d'estomac|appétit|"
        r"übelkeit|erbrechen|durchfall|verstopfung|blähung|sodbrennen|appetit"
    )),
    ("Respiratory", _stem(
        r"cough|breath|wheez|congest|sneez|runny nose|phlegm|"
        r"toux|tousse|essouffl|respir|nez qui coule|"
        r"husten|atemnot|kurzatmig|schnupfen|niesen"
    )),
    ("Neurological", _stem(
        r"dizz|numb|tingl|vertigo|seizure|tremor|confus|memory|faint|"
        r"vertige|étourdi|engourd|fourmill|convulsion|tremblement|"
        r"schwindel|taubheit|kribbeln|zittern|krampfanfall|gedächtnis"
    )),
    ("General", _stem(
        r"fatigue|tired|exhaust|fever|chill|weak|sweat|weight|insomnia|sleep|malaise|"
        r"fièvre|frisson|faiblesse|épuis|sommeil|"
        r"müdigkeit|müde|erschöpf|fieber|schüttelfrost|schwäche|schlaf"
    )),
    ("Mood", _stem(
        r"anxi|depress|stress|irritab|panic|sad|mood|low spirits|"
        r"angoiss|anxiété|tristesse|humeur|déprim|"
        r"angst|niedergeschlagen|stimmung|traurig|reizbar"
    )),
    ("Skin", _stem(
        r"rash|itch|hive|eczema|bruis|blister|redness|"
        r"éruption|démangeaison|prurit|urticaire|rougeur|"
        r"ausschlag|juckreiz|jucken|nesselsucht|rötung"
    )),
)
OTHER_CATEGORY = "Other"

SYMPTOM_CHARACTERS: Tuple[Tuple[str, "re.Pattern"], ...] = (
    ("Sharp", _stem(r"sharp|stabbing|shooting|piercing|aigu|lancinant|en coup de poignard|stechend|scharf")),
    ("Throbbing", _stem(r"throbbing|pounding|pulsing|pulsating|pulsatile|pulsierend|pochend|klopfend")),
    ("Burning", _stem(r"burning|brûl|brennend")),
    ("Pressure", _stem(r"pressure|pressing|tight|squeez|heavy|oppress|serrement|pesanteur|drückend|druck|engegefühl")),
    ("Dull", _stem(r"dull|aching|sourd|dumpf")),
)

MEDICATION_ROUTES: Tuple[Tuple[str, "re.Pattern"], ...] = (
    ("sublingual", _word(r"sublingual(?:ly)?|under the tongue|sous la langue|unter die zunge")),
    ("ophthalmic", _word(r"eye drops?|ophthalmic|collyre|augentropfen")),
    ("nasal", _word(r"nasal spray|nose spray|intranasal|spray nasal|nasenspray|nasal")),
    ("transdermal", _word(r"transdermal|patch(?:es)?|timbre|pflaster")),
    ("intravenous", _word(r"i\.v\.|iv|intravenous(?:ly)?|intraveineuse?|intravenös")),
    ("intramuscular", _word(r"i\.m\.|intramuscular(?:ly)?|intramusculaire|intramuskulär")),
    ("subcutaneous", _word(r"s\.c\.|subcutaneous(?:ly)?|sous-cutanée?|subkutan|injection|injektion|spritze")),
    ("inhaled", _word(r"inhal\w*|inhaler|puffs?|nebuli[sz]\w*|aérosol|dosieraerosol")),
    ("rectal", _word(r"rectal(?:ly)?|suppositor(?:y|ies)|suppositoires?|zäpfchen|rektal")),
    ("topical", _word(r"topical(?:ly)?|cream|ointment|gel|crème|pommade|salbe|creme")),
    ("oral", _word(
        r"oral(?:ly)?|by mouth|p\.o\.|per os|par voie orale|par la bouche|orale?|peroral|"
        r"tablets?|pills?|capsules?|comprimés?|gélules?|tabletten?|kapseln?"
    )),
)

_AGGRAVATING_TRIGGERS = (
    r"worse (?:with|when|after|on|during|at)|aggravated by|made worse by|triggered by|brought on by|"
    r"pire (?:avec|quand|après|lors de|la)|aggravée? par|déclenchée? par|"
    r"schlimmer (?:bei|wenn|nach|durch)|verstärkt (?:durch|bei)|ausgelöst durch|verschlechtert (?:durch|bei)"
)
_RELIEVING_TRIGGERS = (
    r"better (?:with|when|after|on)|relieved by|eased by|improves? (?:with|after)|helped by|goes away with|"
    r"mieux (?:avec|quand|après)|soulagée? par|calmée? par|améliorée? par|"
    r"besser (?:bei|wenn|nach|durch|mit)|gelindert durch|lässt nach (?:bei|nach|mit)"
)
_FACTOR_TRIGGER = re.compile(
    rf"(?P<aggravating>{_AGGRAVATING_TRIGGERS})|(?P<relieving>{_RELIEVING_TRIGGERS})", re.IGNORECASE
)
_FACTOR_CLAUSE_END = re.compile(r"[.;()]|\s(?:but|mais|aber|while|tandis que|während)\s", re.IGNORECASE)
_FACTOR_SPLIT = re.compile(r"\s*,\s*|\s+(?:and|or|et|ou|und|oder)\s+", re.IGNORECASE)

_SEVERITY = re.compile(
    r"(?P<num>\d+(?:[.,]\d+)?)\s*(?:(?:/|out of|of|sur|von|auf)\s*(?P<scale>\d+))?", re.IGNORECASE
)

_LAB_FLAGS: Tuple[Tuple[str, "re.Pattern"], ...] = (
    ("high", _word(r"h|hh|high|elevated|raised|increased|above range|↑|élevée?|haut|augmentée?|hoch|erhöht")),
    ("low", _word(r"l|ll|low|decreased|reduced|below range|↓|basse?|diminuée?|faible|niedrig|erniedrigt")),
    ("normal", _word(r"n|normal|within (?:normal )?range|in range|normale?|im normbereich|unauffällig")),
    ("abnormal", _word(r"a|abnormal|out of range|anormale?|pathologique|pathologisch|auffällig|\*")),
)
_RANGE_BETWEEN = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*(?:-|–|to|à|bis)\s*(-?\d+(?:\.\d+)?)")
_RANGE_UPPER = re.compile(r"^\s*(?:<|≤|<=|below|under|inférieur à|unter)\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_RANGE_LOWER = re.compile(r"^\s*(?:>|≥|>=|above|over|supérieur à|über)\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_LEADING_NUMBER = re.compile(r"^\s*[<>≤≥]?\s*(-?\d+(?:\.\d+)?)")

_TIME_CLOCK = re.compile(
    r"^(?:at\s+|à\s+|um\s+)?(\d{1,2})\s*(?::|h|\.)\s*(\d{2})\s*(a\.?m\.?|p\.?m\.?)?(?:\s*uhr)?$", re.IGNORECASE
)
_TIME_HOUR = re.compile(r"^(?:at\s+|à\s+|um\s+)?(\d{1,2})\s*(a\.?m\.?|p\.?m\.?|h|uhr|o'clock)$", re.IGNORECASE)
_TIME_WORDS = {"noon": "12:00", "midday": "12:00", "midi": "12:00", "mittag": "12:00", "midnight": "00:00", "minuit": "00:00"}


def normalize_number_text(text: Optional[str], language: str) -> Optional[str]:
    """Locale-aware numerals: decimal comma to dot for fr/de, thousand separators removed."""
    if text is None:
        return None
    if language in ("fr", "de"):
        text = re.sub(r"(?<=\d)[\u00a0\u202f '](?=\d{3}(?!\w))", "", text)
        if language == "de":
            text = re.sub(r"(?<=\d)\.(?=\d{3}(?!\d))", "", text)
        return re.sub(r"(?<=\d),(?=\d)", ".", text)
    return re.sub(r"(?<=\d),(?=\d{3}(?!\d))", "", text)


def _half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_severity(raw: Optional[str], source_text: str) -> Tuple[Optional[int], Optional[str]]:
    """Map a severity to 1-5, or ``None`` when it is not a patient-stated number.

    Returns ``(severity, evidence)`` where evidence is the numeral as written.
    """
    if raw is None:
        return None, None
    match = _SEVERITY.search(raw)
    if match is None:
        return None, None
    numeral = match.group("num")
    if not number_in(numeral, source_text):
        return None, None
    try:
        value = Decimal(numeral.replace(",", "."))
    except InvalidOperation:
        return None, None

    scale = match.group("scale")
    if scale is None:
        stated_scale = re.search(
            rf"(?<![\d.]){re.escape(fold(numeral))}\s*(?:/|out of|of|sur|von|auf)\s*(\d+)", fold(source_text)
        )
        scale = stated_scale.group(1) if stated_scale else None
    if scale is None:
        scale = "10" if value > 5 else "5"

    if scale == "10":
        if value > 10:
            return None, None
        severity = _half_up(value / 2)
    elif scale == "5":
        severity = _half_up(value)
    else:
        return None, None
    if not 1 <= severity <= 5 or value <= 0:
        return None, None
    return severity, numeral


def normalize_time(raw: Optional[str]) -> Optional[str]:
    """Clock time as ``HH:MM``; ``None`` when it cannot be read unambiguously."""
    if raw is None:
        return None
    text = raw.strip().lower().rstrip(".")
    if text in _TIME_WORDS:
        return _TIME_WORDS[text]
    match = _TIME_CLOCK.match(text)
    if match:
        hour, minute, meridiem = int(match.group(1)), int(match.group(2)), match.group(3)
    else:
        match = _TIME_HOUR.match(text)
        if not match:
            return None
        hour, minute, suffix = int(match.group(1)), 0, match.group(2)
        meridiem = suffix if suffix.startswith(("a", "p")) else None
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        if meridiem.startswith("p") and hour != 12:
            hour += 12
        elif meridiem.startswith("a") and hour == 12:
            hour = 0
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return f"{hour:02d}:{minute:02d}"


def normalize_lab_flag(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    text = raw.strip()
    for label, pattern in _LAB_FLAGS:
        if pattern.match(text):
            return label
    return None


def derive_lab_flag(value: Optional[str], reference_range: Optional[str]) -> Optional[str]:
    """Compare a numeric value with its reference range; ``None`` when either is not numeric."""
    if not value or not reference_range:
        return None
    number = _LEADING_NUMBER.match(value)
    if number is None:
        return None
    reading = float(number.group(1))
    between = _RANGE_BETWEEN.match(reference_range)
    if between:
        low, high = float(between.group(1)), float(between.group(2))
        if reading < low:
            return "low"
        return "high" if reading > high else "normal"
    upper = _RANGE_UPPER.match(reference_range)
    if upper:
        return "high" if reading >= float(upper.group(1)) else "normal"
    lower = _RANGE_LOWER.match(reference_range)
    if lower:
        return "low" if reading <= float(lower.group(1)) else "normal"
    return None


def _first_match(patterns: Iterable[Tuple[str, "re.Pattern"]], texts: Iterable[Optional[str]]) -> Tuple[Optional[str], Optional[str]]:
    for text in texts:
        if not text:
            continue
        for label, pattern in patterns:
            match = pattern.search(text)
            if match:
                return label, match.group(0)
    return None, None


def extract_factors(notes: Optional[str]) -> Dict[str, List[str]]:
    """Aggravating and relieving factors stated in free-text notes."""
    factors: Dict[str, List[str]] = {"aggravating": [], "relieving": []}
    if not notes:
        return factors
    triggers = list(_FACTOR_TRIGGER.finditer(notes))
    for position, trigger in enumerate(triggers):
        end = triggers[position + 1].start() if position + 1 < len(triggers) else len(notes)
        span = notes[trigger.end():end]
        stop = _FACTOR_CLAUSE_END.search(span)
        if stop:
            span = span[:stop.start()]
        kind = "aggravating" if trigger.group("aggravating") else "relieving"
        for item in _FACTOR_SPLIT.split(span):
            item = item.strip(" ,")
            if item and item not in factors[kind]:
                factors[kind].append(item)
    return factors


class EntityNormalizer:
    """Applies the deterministic transforms to one candidate at a time."""

    def __init__(self, date_window_days: Optional[int] = None):
        if date_window_days is None:
            date_window_days = get_config().date_window_days
        self.date_window_days = date_window_days

    # ------------------------------------------------------------------ sources
    def remap_indices(self, refs: Iterable[str], unit: SourceUnit) -> List[int]:
        """Canonical 0-based indices for the citations a line carried."""
        if not unit.is_conversation:
            return [0]
        numbers = []
        for ref in refs:
            match = _REF_DIGITS.search(str(ref))
            if match:
                numbers.append(int(match.group(0)))
        if not numbers:
            return []
        count = len(unit.entries)
        if 0 not in numbers and max(numbers) == count:
            numbers = [number - 1 for number in numbers]
        indices: List[int] = []
        for number in numbers:
            if 0 <= number < count and number not in indices:
                indices.append(number)
            elif not 0 <= number < count:
                logger.debug("Dropping out-of-range source index %d", number, extra={"unit_id": unit.id})
        return indices

    def resolve_sources(self, refs: Iterable[str], unit: SourceUnit, identity: Iterable[Optional[str]]) -> List[int]:
        indices = [index for index in self.remap_indices(refs, unit) if unit.is_source_index(index)]
        if indices or not unit.is_conversation:
            return indices
        values = [value for value in identity if value]
        return [
            index
            for index in unit.source_indices
            if any(appears_in(value, unit.text_at(index)) for value in values)
        ]

    @staticmethod
    def _source_text(unit: SourceUnit, indices: List[int]) -> str:
        chosen = indices or unit.source_indices
        return "\n".join(unit.text_at(index) for index in chosen)

    @staticmethod
    def _only_in_other_speakers(value: str, unit: SourceUnit) -> bool:
        others = [entry.text for entry in unit.entries if entry.role not in (SpeakerRole.PATIENT, SpeakerRole.DOCUMENT)]
        if not others or not any(appears_in(value, text) for text in others):
            return False
        return not any(appears_in(value, unit.text_at(index)) for index in unit.source_indices)

    def _filter_speakers(self, raw: Dict[str, Optional[str]], unit: SourceUnit) -> Dict[str, Optional[str]]:
        if not unit.is_conversation:
            return raw
        filtered = dict(raw)
        for slot, value in raw.items():
            if value and self._only_in_other_speakers(value, unit):
                logger.info(
                    "Discarding %s: value only appears in non-patient messages",
                    slot,
                    extra={"unit_id": unit.id},
                )
                filtered[slot] = None
        return filtered

    # ------------------------------------------------------------------ entry point
    def normalize(self, candidate: CandidateEntity) -> ExtractedEntity:
        if candidate.answer is None:
            raise ValueError("candidate is not attached to an answer")
        unit = candidate.answer.unit
        domain = Domain(candidate.domain)
        schema = get_schema(domain)
        entity = ExtractedEntity(
            domain=domain,
            fields={name: None for name in schema.output_fields},
            flags=list(candidate.flags),
            unit=unit,
            raw_line=candidate.raw_line,
        )
        if candidate.unparsed:
            entity.source_messages = [
                index for index in self.remap_indices(candidate.source_refs, unit) if unit.is_source_index(index)
            ]
            return entity

        raw = dict(zip(schema.answer_fields, candidate.values))
        entity.source_messages = self.resolve_sources(
            candidate.source_refs, unit, (raw.get(slot) for slot in schema.identity_fields)
        )
        raw = self._filter_speakers(raw, unit)
        handler = getattr(self, f"_normalize_{domain.value}", self._normalize_passthrough)
        handler(entity, raw, unit)
        return entity

    # ------------------------------------------------------------------ helpers
    @staticmethod
    def _set(entity: ExtractedEntity, name: str, value, evidence: Optional[str] = None) -> None:
        if value is None or value == "" or value == []:
            return
        entity.fields[name] = value
        if evidence:
            entity.evidence[name] = evidence

    @staticmethod
    def _flag(entity: ExtractedEntity, flag: str) -> None:
        if flag not in entity.flags:
            entity.flags.append(flag)

    def _set_text(self, entity: ExtractedEntity, raw: Dict[str, Optional[str]], slot: str, name: Optional[str] = None) -> None:
        value = raw.get(slot)
        if value is not None:
            value = value.strip()
        self._set(entity, name or slot, value, value)

    def _set_date(
        self,
        entity: ExtractedEntity,
        name: str,
        raw_value: Optional[str],
        unit: SourceUnit,
        duration_field: Optional[str] = None,
    ) -> None:
        if raw_value is None:
            return
        resolution = resolve_date(raw_value, unit.anchor_date, unit.language)
        if resolution.kind == DURATION and duration_field:
            self._set(entity, duration_field, resolution.duration, resolution.duration)
            return
        value = resolution.value
        if value and unit.is_conversation and self.date_window_days:
            distance = abs((date.fromisoformat(value) - unit.anchor_date).days)
            if distance > self.date_window_days:
                logger.info("Date %s is %d days from the anchor; leaving unresolved", value, distance)
                value = None
        if value is None:
            self._flag(entity, ErrorKind.DATE_UNRESOLVED.value)
            logger.info(
                "Could not resolve %s date %r",
                entity.domain.value,
                raw_value,
                extra={"unit_id": unit.id, "domain": entity.domain.value, "field": name},
            )
            return
        self._set(entity, name, value, raw_value.strip())

    def _set_number(self, entity: ExtractedEntity, raw: Dict[str, Optional[str]], slot: str, unit: SourceUnit, name: Optional[str] = None) -> None:
        value = raw.get(slot)
        if value is None:
            return
        self._set(entity, name or slot, normalize_number_text(value.strip(), unit.language_code), value.strip())

    # ------------------------------------------------------------------ domains
    def _normalize_passthrough(self, entity: ExtractedEntity, raw: Dict[str, Optional[str]], unit: SourceUnit) -> None:
        for slot in get_schema(entity.domain).answer_fields:
            if slot in entity.fields:
                self._set_text(entity, raw, slot)

    def _normalize_symptom(self, entity: ExtractedEntity, raw: Dict[str, Optional[str]], unit: SourceUnit) -> None:
        specific = raw.get("specific")
        notes = raw.get("notes")
        self._set_text(entity, raw, "specific")
        self._set_text(entity, raw, "body_region")
        self._set_text(entity, raw, "notes")

        category, keyword = _first_match(SYMPTOM_CATEGORIES, [specific])
        self._set(entity, "category", category or OTHER_CATEGORY, keyword)
        character, keyword = _first_match(SYMPTOM_CHARACTERS, [specific, notes])
        self._set(entity, "character", character, keyword)
        factors = extract_factors(notes)
        for kind, items in factors.items():
            self._set(entity, kind, items, ", ".join(items))

        severity, numeral = normalize_severity(raw.get("severity"), self._source_text(unit, entity.source_messages))
        if raw.get("severity") and severity is None:
            logger.debug("Severity %r is not a patient-stated number", raw.get("severity"), extra={"unit_id": unit.id})
        self._set(entity, "severity", severity, numeral)
        self._set_date(entity, "onset_date", raw.get("onset"), unit, duration_field="duration")

    def _normalize_medication(self, entity: ExtractedEntity, raw: Dict[str, Optional[str]], unit: SourceUnit) -> None:
        self._set_text(entity, raw, "name")
        self._set_number(entity, raw, "dose", unit)
        self._set_text(entity, raw, "frequency")
        self._set_text(entity, raw, "instructions")
        route, keyword = _first_match(
            MEDICATION_ROUTES,
            [raw.get("instructions"), raw.get("dose"), raw.get("frequency"), raw.get("name")],
        )
        self._set(entity, "route", route, keyword)
        self._set_date(entity, "start_date", raw.get("start_date"), unit)
        name = entity.fields.get("name")
        if name and len(name) > MAX_MEDICATION_NAME:
            self._flag(entity, NAME_TOO_LONG)

    def _normalize_appointment(self, entity: ExtractedEntity, raw: Dict[str, Optional[str]], unit: SourceUnit) -> None:
        self._set_text(entity, raw, "professional_name")
        self._set_text(entity, raw, "specialty")
        self._set_text(entity, raw, "reason")
        self._set_date(entity, "date", raw.get("date"), unit)
        time_raw = raw.get("time")
        self._set(entity, "time", normalize_time(time_raw), time_raw.strip() if time_raw else None)
        if entity.fields.get("professional_name") is None and entity.fields.get("date") is None:
            self._flag(entity, INCOMPLETE)

    def _normalize_lab_result(self, entity: ExtractedEntity, raw: Dict[str, Optional[str]], unit: SourceUnit) -> None:
        self._set_text(entity, raw, "test_name")
        self._set_number(entity, raw, "value", unit)
        self._set_text(entity, raw, "unit")
        self._set_number(entity, raw, "reference_range", unit)
        flag_raw = raw.get("flag")
        flag = normalize_lab_flag(flag_raw)
        if flag is not None:
            self._set(entity, "abnormal_flag", flag, flag_raw.strip())
        else:
            self._set(entity, "abnormal_flag", derive_lab_flag(entity.fields["value"], entity.fields["reference_range"]))

    def _normalize_diagnosis(self, entity: ExtractedEntity, raw: Dict[str, Optional[str]], unit: SourceUnit) -> None:
        self._set_text(entity, raw, "name")
        self._set_text(entity, raw, "status")
        self._set_date(entity, "date", raw.get("date"), unit)

    def _normalize_procedure(self, entity: ExtractedEntity, raw: Dict[str, Optional[str]], unit: SourceUnit) -> None:
        self._set_text(entity, raw, "name")
        self._set_text(entity, raw, "outcome")
        self._set_text(entity, raw, "follow_up")
        self._set_date(entity, "date", raw.get("date"), unit)

    def _normalize_metadata(self, entity: ExtractedEntity, raw: Dict[str, Optional[str]], unit: SourceUnit) -> None:
        self._set_text(entity, raw, "author")
        self._set_text(entity, raw, "document_type")
        self._set_date(entity, "document_date", raw.get("document_date"), unit)


_DEFAULT_NORMALIZER: Optional[EntityNormalizer] = None


def normalize(candidate: CandidateEntity) -> ExtractedEntity:
    global _DEFAULT_NORMALIZER
    if _DEFAULT_NORMALIZER is None:
        _DEFAULT_NORMALIZER = EntityNormalizer()
    return _DEFAULT_NORMALIZER.normalize(candidate)


__all__ = [
    "EntityNormalizer",
    "derive_lab_flag",
    "extract_factors",
    "normalize",
    "normalize_lab_flag",
    "normalize_number_text",
    "normalize_severity",
    "normalize_time",
]
