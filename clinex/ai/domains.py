"""Per-domain field layout shared by the parser, normalizer and review queue.

Entities are tagged variants (a :class:`Domain` plus a flat field map); every
stage looks its rules up in :data:`DOMAIN_SCHEMAS` instead of dispatching on
entity classes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Tuple

from clinex.ai.types import Domain


@dataclass(frozen=True)
class DomainSchema:
    domain: Domain
    # Slots, in the order the answer line is requested.
    answer_fields: Tuple[str, ...]
    # Fields exposed on the normalized entity.
    output_fields: Tuple[str, ...]
    # At least one of these must be populated for a line to be usable.
    identity_fields: Tuple[str, ...]
    min_fields: int = 1
    # Surplus comma-separated segments are folded into the last slot.
    tail_absorbs: bool = False
    labelled: bool = False
    # Fields whose values are collections.
    list_fields: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def max_fields(self) -> int:
        return len(self.answer_fields)


DOMAIN_SCHEMAS: Dict[Domain, DomainSchema] = {
    Domain.SYMPTOM: DomainSchema(
        domain=Domain.SYMPTOM,
        answer_fields=("specific", "severity", "onset", "body_region", "notes"),
        output_fields=(
            "category", "specific", "severity", "body_region", "onset_date", "duration",
            "character", "aggravating", "relieving", "notes",
        ),
        identity_fields=("specific",),
        tail_absorbs=True,
        list_fields=("aggravating", "relieving"),
    ),
    Domain.MEDICATION: DomainSchema(
        domain=Domain.MEDICATION,
        answer_fields=("name", "dose", "frequency", "start_date", "instructions"),
        output_fields=("name", "dose", "frequency", "route", "start_date", "instructions"),
        identity_fields=("name",),
        tail_absorbs=True,
    ),
    Domain.APPOINTMENT: DomainSchema(
        domain=Domain.APPOINTMENT,
        answer_fields=("professional_name", "specialty", "date", "time", "reason"),
        output_fields=("professional_name", "specialty", "date", "time", "reason"),
        identity_fields=("professional_name", "specialty"),
        min_fields=2,
        tail_absorbs=True,
    ),
    Domain.LAB_RESULT: DomainSchema(
        domain=Domain.LAB_RESULT,
        answer_fields=("test_name", "value", "unit", "reference_range", "flag"),
        output_fields=("test_name", "value", "unit", "reference_range", "abnormal_flag"),
        identity_fields=("test_name",),
        min_fields=2,
    ),
    Domain.DIAGNOSIS: DomainSchema(
        domain=Domain.DIAGNOSIS,
        answer_fields=("name", "date", "status"),
        output_fields=("name", "date", "status"),
        identity_fields=("name",),
        tail_absorbs=True,
    ),
    Domain.ALLERGY: DomainSchema(
        domain=Domain.ALLERGY,
        answer_fields=("allergen", "reaction", "reaction_severity"),
        output_fields=("allergen", "reaction", "reaction_severity"),
        identity_fields=("allergen",),
    ),
    Domain.PROCEDURE: DomainSchema(
        domain=Domain.PROCEDURE,
        answer_fields=("name", "date", "outcome", "follow_up"),
        output_fields=("name", "date", "outcome", "follow_up"),
        identity_fields=("name",),
        tail_absorbs=True,
    ),
    Domain.REFERRAL: DomainSchema(
        domain=Domain.REFERRAL,
        answer_fields=("specialist", "specialty", "reason"),
        output_fields=("specialist", "specialty", "reason"),
        identity_fields=("specialist", "specialty"),
        tail_absorbs=True,
    ),
    Domain.INSTRUCTION: DomainSchema(
        domain=Domain.INSTRUCTION,
        answer_fields=("text",),
        output_fields=("text",),
        identity_fields=("text",),
        tail_absorbs=True,
    ),
    Domain.METADATA: DomainSchema(
        domain=Domain.METADATA,
        answer_fields=("document_date", "author", "document_type"),
        output_fields=("document_date", "author", "document_type"),
        identity_fields=("document_date", "author", "document_type"),
        labelled=True,
    ),
}


def get_schema(domain: Domain) -> DomainSchema:
    return DOMAIN_SCHEMAS[Domain(domain)]


__all__ = ["DOMAIN_SCHEMAS", "DomainSchema", "get_schema"]
