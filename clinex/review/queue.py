"""Deduplication and the human review state machine."""

from __future__ import annotations

import re
import threading
import uuid
from contextlib import contextmanager
from datetime import date
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from clinex.ai.domains import get_schema
from clinex.ai.types import Domain, ErrorKind, ExtractedEntity, PendingReviewItem, ReviewStatus
from clinex.core.unified_config import get_config
from clinex.exceptions import InvalidTransitionError, ItemNotFoundError, ValidationError
from clinex.grounding.matching import fold
from clinex.logging_config import get_logger
from clinex.review.store import ReviewStore, utcnow

logger = get_logger(__name__)

ITEM_NAMESPACE = uuid.UUID("6f1c9d2e-3b7a-5c48-9e0f-2a4d6b8c1e35")

DEDUP_FIELDS: Dict[Domain, Tuple[str, ...]] = {
    Domain.MEDICATION: ("name", "dose"),
    Domain.SYMPTOM: ("specific", "category"),
    Domain.APPOINTMENT: ("professional_name", "date"),
    Domain.LAB_RESULT: ("test_name",),
    Domain.DIAGNOSIS: ("name",),
    Domain.ALLERGY: ("allergen",),
    Domain.PROCEDURE: ("name", "date"),
    Domain.REFERRAL: ("specialist", "specialty"),
    Domain.INSTRUCTION: ("text",),
    Domain.METADATA: (),
}
# Domains whose key may be built without its first field.
_OPTIONAL_LEAD = {Domain.REFERRAL}
_DATE_FIELDS = {"onset_date", "start_date", "date", "document_date"}
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_NON_EDITABLE = {"source_messages"}


def _key_part(value: Any) -> str:
    if value is None:
        return ""
    return fold(str(value)).strip(" .,;")


def dedup_key(domain: Domain, fields: Mapping[str, Any]) -> Optional[str]:
    """Per-domain duplicate key, or ``None`` when the domain or the data has none."""
    domain = Domain(domain)
    names = DEDUP_FIELDS[domain]
    if not names:
        return None
    parts = [_key_part(fields.get(name)) for name in names]
    if not any(parts) or (not parts[0] and domain not in _OPTIONAL_LEAD):
        return None
    return f"{domain.value}:" + "|".join(parts)


def entity_key(entity: ExtractedEntity) -> Optional[str]:
    return dedup_key(entity.domain, entity.fields)


def item_id_for(entity: ExtractedEntity) -> str:
    """Stable id so re-extracting the same unit lands on the same item."""
    identity = entity_key(entity)
    if identity is None:
        identity = "|".join(_key_part(entity.fields.get(name)) for name in get_schema(entity.domain).output_fields)
    return str(uuid.uuid5(ITEM_NAMESPACE, f"{entity.unit_id}|{entity.domain.value}|{identity}"))


def _observed_on(domain: Domain, data: Mapping[str, Any], fallback: Optional[date]) -> Optional[date]:
    if domain == Domain.SYMPTOM:
        onset = data.get("onset_date")
        if isinstance(onset, str) and _ISO_DATE.match(onset):
            return date.fromisoformat(onset)
    return fallback


class ReviewQueue:
    """Pending review items with terminal confirm, edit and dismiss transitions.

    Admits and confirms that share a dedup key are serialised through a per-key
    lock; reads and ``dismiss_all`` go through the queue-view lock. Locks are
    always taken key first, view second.
    """

    def __init__(self, store: Optional[ReviewStore] = None, recency_days: Optional[int] = None):
        self.store = store or ReviewStore()
        self.recency_days = get_config().symptom_recency_days if recency_days is None else recency_days
        self._view_lock = threading.RLock()
        self._key_locks: Dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

    @contextmanager
    def _key_lock(self, key: str) -> Iterator[None]:
        with self._key_locks_guard:
            lock = self._key_locks.setdefault(key, threading.Lock())
        with lock:
            yield

    # ------------------------------------------------------------------ admission
    def _find_duplicate(self, entity: ExtractedEntity, key: str) -> Optional[str]:
        if entity.domain == Domain.SYMPTOM:
            anchor = entity.unit.anchor_date if entity.unit is not None else None
            around = _observed_on(entity.domain, entity.fields, anchor)
            if around is None:
                return None
            return self.store.find_confirmed(entity.domain, key, around=around, window_days=self.recency_days)
        return self.store.find_confirmed(entity.domain, key)

    def admit(self, entity: ExtractedEntity) -> PendingReviewItem:
        """Queue an accepted entity; an existing item with the same id is returned as is."""
        key = entity_key(entity)
        item_id = item_id_for(entity)
        with self._key_lock(key or item_id):
            with self._view_lock:
                existing = self.store.get_item(item_id)
                if existing is not None:
                    logger.debug(
                        "Item %s already queued (%s); leaving it untouched",
                        item_id,
                        existing.status.value,
                        extra={"unit_id": entity.unit_id},
                    )
                    return existing

                flags = list(entity.flags)
                duplicate_of = self._find_duplicate(entity, key) if key else None
                if duplicate_of is not None:
                    flags.append(ErrorKind.DUPLICATE_DETECTED.value)
                    logger.info(
                        "%s item duplicates confirmed entity %s",
                        entity.domain.value,
                        duplicate_of,
                        extra={"unit_id": entity.unit_id, "dedup_key": key},
                    )
                item = PendingReviewItem(
                    id=item_id,
                    unit_id=entity.unit_id,
                    domain=entity.domain,
                    extracted_data=entity.to_payload(),
                    confidence=entity.confidence,
                    grounding=entity.grounding,
                    duplicate_of=duplicate_of,
                    source_messages=list(entity.source_messages),
                    source_quote=entity.source_quote,
                    flags=flags,
                    dedup_key=key,
                    anchor_date=entity.unit.anchor_date if entity.unit is not None else None,
                    created_at=utcnow(),
                )
                return self.store.insert_item(item)

    # ------------------------------------------------------------------ reads
    def get(self, item_id: str) -> PendingReviewItem:
        item = self.store.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(f"Review item {item_id} not found", item_id=item_id)
        return item

    def refresh(self) -> List[PendingReviewItem]:
        """Current pending set, oldest first."""
        with self._view_lock:
            return self.store.list_pending()

    def pending_count(self) -> int:
        with self._view_lock:
            return self.store.count_pending()

    def stats(self) -> Dict[str, int]:
        with self._view_lock:
            return {"pending": self.store.count_pending(), "confirmed": self.store.confirmed_count()}

    # ------------------------------------------------------------------ transitions
    def _raise_terminal(self, item_id: str) -> None:
        current = self.get(item_id).status
        raise InvalidTransitionError(
            f"Review item {item_id} is already {current.value}",
            item_id=item_id,
            status=current.value,
        )

    def _transition(self, item: PendingReviewItem, status: ReviewStatus) -> None:
        if item.status != ReviewStatus.PENDING or not self.store.transition(item.id, status):
            self._raise_terminal(item.id)

    def _confirm(self, item_id: str, status: ReviewStatus, overrides: Optional[Mapping[str, Any]] = None) -> PendingReviewItem:
        item = self.get(item_id)
        data = dict(item.extracted_data)
        if overrides:
            data.update(self.validate_overrides(item.domain, overrides))
        fields = {name: value for name, value in data.items() if name not in _NON_EDITABLE}
        with self._key_lock(item.dedup_key or item.id):
            with self._view_lock:
                entity_id = None
                if item.status == ReviewStatus.PENDING:
                    entity_id = self.store.confirm_item(
                        item.id,
                        item.domain,
                        status,
                        fields,
                        dedup_key(item.domain, data),
                        extracted_data=data if overrides else None,
                        unit_id=item.unit_id,
                        observed_on=_observed_on(item.domain, data, item.anchor_date or utcnow().date()),
                    )
                if entity_id is None:
                    self._raise_terminal(item.id)
        logger.info(
            "Review item %s %s as confirmed entity %s",
            item.id,
            status.value,
            entity_id,
            extra={"unit_id": item.unit_id, "domain": item.domain.value},
        )
        return self.get(item_id)

    def confirm(self, item_id: str) -> PendingReviewItem:
        return self._confirm(item_id, ReviewStatus.CONFIRMED)

    def confirm_with_edits(self, item_id: str, field_overrides: Mapping[str, Any]) -> PendingReviewItem:
        if not field_overrides:
            raise ValidationError("No field overrides supplied", field="field_overrides", validation_rule="non_empty")
        return self._confirm(item_id, ReviewStatus.CONFIRMED_WITH_EDITS, field_overrides)

    def dismiss(self, item_id: str) -> PendingReviewItem:
        item = self.get(item_id)
        with self._view_lock:
            self._transition(item, ReviewStatus.DISMISSED)
        logger.info("Review item %s dismissed", item_id, extra={"unit_id": item.unit_id})
        return self.get(item_id)

    def dismiss_all(self) -> int:
        """Dismiss every pending item; no admit or read interleaves with it."""
        dismissed = 0
        with self._view_lock:
            for item in self.store.list_pending():
                if self.store.transition(item.id, ReviewStatus.DISMISSED):
                    dismissed += 1
        logger.info("Dismissed %d pending review items", dismissed)
        return dismissed

    # ------------------------------------------------------------------ validation
    @staticmethod
    def validate_overrides(domain: Domain, overrides: Mapping[str, Any]) -> Dict[str, Any]:
        schema = get_schema(domain)
        cleaned: Dict[str, Any] = {}
        for name, value in overrides.items():
            if name not in schema.output_fields or name in _NON_EDITABLE:
                raise ValidationError(
                    f"Unknown field '{name}' for {Domain(domain).value}",
                    field=name,
                    value=value,
                    validation_rule="known_field",
                )
            if isinstance(value, str):
                value = value.strip() or None
            if name in schema.list_fields:
                if value is not None and not (
                    isinstance(value, list) and all(isinstance(item, str) for item in value)
                ):
                    raise ValidationError(
                        f"'{name}' must be a list of strings", field=name, value=value, validation_rule="string_list"
                    )
            elif name == "severity":
                if value is not None and (isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 5):
                    raise ValidationError(
                        "severity must be an integer between 1 and 5",
                        field=name,
                        value=value,
                        validation_rule="severity_range",
                    )
            elif name in _DATE_FIELDS:
                if value is not None and not (isinstance(value, str) and _ISO_DATE.match(value) and _valid_date(value)):
                    raise ValidationError(
                        f"'{name}' must be an ISO date (YYYY-MM-DD)", field=name, value=value, validation_rule="iso_date"
                    )
            elif value is not None and not isinstance(value, (str, int, float)):
                raise ValidationError(
                    f"'{name}' must be a scalar value", field=name, value=value, validation_rule="scalar"
                )
            cleaned[name] = value
        return cleaned


def _valid_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


__all__ = ["DEDUP_FIELDS", "ReviewQueue", "dedup_key", "entity_key", "item_id_for"]
