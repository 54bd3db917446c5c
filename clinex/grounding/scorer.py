"""Grounding classification and confidence scoring for extracted entities."""

from __future__ import annotations

from typing import Callable, Dict, Hashable, List, Optional, Tuple

from clinex.ai.domains import get_schema
from clinex.ai.types import ErrorKind, ExtractedEntity, Grounding
from clinex.core.unified_config import get_config
from clinex.grounding.matching import appears_in, best_snippet
from clinex.logging_config import get_logger

logger = get_logger(__name__)

BASE_CONFIDENCE: Dict[Grounding, float] = {
    Grounding.GROUNDED: 0.8,
    Grounding.PARTIAL: 0.5,
    Grounding.UNGROUNDED: 0.2,
}
COMPLETENESS_WEIGHT = 0.15
SOURCE_BONUS = 0.05


class ConfidenceScorer:
    """Checks each entity's evidence against the text it cites."""

    def __init__(self, threshold: Optional[float] = None, max_items_per_domain: Optional[int] = None):
        config = get_config()
        self.threshold = config.confidence_threshold if threshold is None else threshold
        self.max_items_per_domain = (
            config.max_items_per_domain if max_items_per_domain is None else max_items_per_domain
        )

    @staticmethod
    def cited_text(entity: ExtractedEntity) -> str:
        if entity.unit is None:
            return ""
        return "\n".join(entity.unit.text_at(index) for index in entity.source_messages)

    def missing_fields(self, entity: ExtractedEntity) -> List[str]:
        """Populated fields whose evidence is not found in the cited text."""
        text = self.cited_text(entity)
        return [name for name, surface in entity.evidence.items() if not appears_in(surface, text)]

    def classify(self, entity: ExtractedEntity) -> Grounding:
        schema = get_schema(entity.domain)
        identity = [name for name in schema.identity_fields if entity.fields.get(name) is not None]
        if not identity or not entity.source_messages:
            return Grounding.UNGROUNDED
        missing = set(self.missing_fields(entity))
        if all(name in missing or name not in entity.evidence for name in identity):
            return Grounding.UNGROUNDED
        return Grounding.PARTIAL if missing else Grounding.GROUNDED

    @staticmethod
    def completeness(entity: ExtractedEntity) -> float:
        schema = get_schema(entity.domain)
        populated = sum(1 for name in schema.output_fields if entity.fields.get(name) not in (None, "", []))
        return populated / len(schema.output_fields)

    def score(self, entity: ExtractedEntity) -> Tuple[float, Grounding]:
        grounding = self.classify(entity)
        confidence = BASE_CONFIDENCE[grounding] + COMPLETENESS_WEIGHT * self.completeness(entity)
        if entity.source_messages:
            confidence += SOURCE_BONUS
        confidence = round(min(confidence, 1.0), 3)

        entity.grounding = grounding
        entity.confidence = confidence
        entity.source_quote = best_snippet(entity.evidence.values(), self.cited_text(entity))
        return confidence, grounding

    def accept(self, entity: ExtractedEntity) -> bool:
        """True when the entity may be queued for review; rejections are logged."""
        if entity.grounding is None:
            self.score(entity)
        accepted = entity.grounding != Grounding.UNGROUNDED and entity.confidence >= self.threshold
        if not accepted:
            logger.info(
                "Rejected %s entity (confidence %.2f, %s)",
                entity.domain.value,
                entity.confidence,
                entity.grounding.value,
                extra={
                    "unit_id": entity.unit_id,
                    "domain": entity.domain.value,
                    "error_kind": ErrorKind.LOW_CONFIDENCE_REJECTED.value,
                    "raw_line": entity.raw_line,
                },
            )
        return accepted

    def cap(self, entities: List[ExtractedEntity]) -> List[ExtractedEntity]:
        """Keep at most ``max_items_per_domain`` entities per domain, best first."""
        counts: Dict[str, int] = {}
        kept: List[ExtractedEntity] = []
        for entity in sorted(entities, key=lambda item: item.confidence, reverse=True):
            domain = entity.domain.value
            if counts.get(domain, 0) >= self.max_items_per_domain:
                logger.debug("Dropping %s entity over the per-domain cap", domain, extra={"unit_id": entity.unit_id})
                continue
            counts[domain] = counts.get(domain, 0) + 1
            kept.append(entity)
        order = {id(entity): position for position, entity in enumerate(entities)}
        return sorted(kept, key=lambda item: order[id(item)])


def consolidate(
    entities: List[ExtractedEntity],
    key: Callable[[ExtractedEntity], Optional[Hashable]],
) -> List[ExtractedEntity]:
    """Collapse entities sharing a key inside one unit, keeping the most complete one.

    Entities without a key are always kept. Source indices of merged entities are
    folded into the survivor.
    """
    survivors: Dict[Hashable, ExtractedEntity] = {}
    result: List[ExtractedEntity] = []
    for entity in entities:
        entity_key = key(entity)
        if entity_key is None:
            result.append(entity)
            continue
        current = survivors.get(entity_key)
        if current is None:
            survivors[entity_key] = entity
            result.append(entity)
            continue
        if ConfidenceScorer.completeness(entity) > ConfidenceScorer.completeness(current):
            keeper, other = entity, current
            result[result.index(current)] = entity
            survivors[entity_key] = entity
        else:
            keeper, other = current, entity
        for index in other.source_messages:
            if index not in keeper.source_messages:
                keeper.source_messages.append(index)
        keeper.source_messages.sort()
    return result


__all__ = ["BASE_CONFIDENCE", "ConfidenceScorer", "consolidate"]
