"""
Review queue transitions and deduplication against confirmed entities.
"""
import threading
from datetime import date

import pytest
from sqlalchemy import select

from clinex.ai.types import Domain, ErrorKind, GenerationOutcome, RawAnswer, ReviewStatus
from clinex.exceptions import InvalidTransitionError, ItemNotFoundError, ValidationError
from clinex.grounding.scorer import ConfidenceScorer
from clinex.normalization.normalizer import EntityNormalizer
from clinex.parsing.answer_parser import AnswerParser
from clinex.review.queue import dedup_key, item_id_for
from clinex.review.store import ConfirmedEntityRecord
from clinex.routing.question_router import build_question


def scored(unit, domain, line):
    answer = RawAnswer(unit=unit, question=build_question(domain, "en"), text=line, outcome=GenerationOutcome.CLEAN)
    entity = EntityNormalizer(date_window_days=365).normalize(AnswerParser().parse(answer)[0])
    ConfidenceScorer(threshold=0.7, max_items_per_domain=20).score(entity)
    return entity


@pytest.fixture
def metoprolol(conversation):
    unit = conversation(("patient", "I take metoprolol 50mg twice daily"), unit_id="conv-1")
    return scored(unit, Domain.MEDICATION, "- Metoprolol, 50mg, twice daily (Msg 0)")


def headache(conversation, unit_id, anchor_date):
    unit = conversation(
        ("patient", "I have had a headache since yesterday"), unit_id=unit_id, anchor_date=anchor_date
    )
    return scored(unit, Domain.SYMPTOM, "- Headache, unknown, since yesterday (Msg 0)")


class TestDedupKey:
    def test_medication_key_ignores_spacing_and_case(self):
        assert dedup_key(Domain.MEDICATION, {"name": "Metoprolol", "dose": "50mg"}) == "medication:metoprolol|50mg"
        assert dedup_key(Domain.MEDICATION, {"name": "metoprolol ", "dose": "50 mg"}) == "medication:metoprolol|50mg"

    def test_symptom_key(self):
        assert dedup_key(Domain.SYMPTOM, {"specific": "Headache", "category": "Pain"}) == "symptom:headache|pain"

    def test_missing_lead_field_has_no_key(self):
        assert dedup_key(Domain.MEDICATION, {"name": None, "dose": "50mg"}) is None
        assert dedup_key(Domain.REFERRAL, {"specialist": None, "specialty": "Cardiology"}) == "referral:|cardiology"
        assert dedup_key(Domain.METADATA, {"author": "Dr. Martin"}) is None

    def test_item_ids_are_stable(self, metoprolol, conversation):
        again = scored(metoprolol.unit, Domain.MEDICATION, "- Metoprolol, 50 mg, twice daily (Msg 0)")
        assert item_id_for(again) == item_id_for(metoprolol)
        elsewhere = conversation(("patient", "I take metoprolol 50mg twice daily"), unit_id="conv-2")
        moved = scored(elsewhere, Domain.MEDICATION, "- Metoprolol, 50mg, twice daily (Msg 0)")
        assert item_id_for(moved) != item_id_for(metoprolol)


class TestReviewQueue:
    def test_admit_creates_a_pending_item(self, review_queue, metoprolol):
        item = review_queue.admit(metoprolol)
        assert item.status == ReviewStatus.PENDING
        assert item.unit_id == "conv-1"
        assert item.domain == Domain.MEDICATION
        assert item.extracted_data["name"] == "Metoprolol"
        assert item.extracted_data["source_messages"] == [0]
        assert item.confidence == metoprolol.confidence
        assert item.duplicate_of is None
        assert item.created_at is not None

    def test_admit_is_idempotent(self, review_queue, metoprolol):
        first = review_queue.admit(metoprolol)
        second = review_queue.admit(metoprolol)
        assert second.id == first.id
        assert review_queue.pending_count() == 1

    def test_confirm_is_terminal(self, review_queue, review_store, metoprolol):
        item = review_queue.admit(metoprolol)
        confirmed = review_queue.confirm(item.id)
        assert confirmed.status == ReviewStatus.CONFIRMED
        assert confirmed.reviewed_at is not None
        assert review_store.confirmed_count() == 1

        with pytest.raises(InvalidTransitionError) as excinfo:
            review_queue.confirm(item.id)
        assert excinfo.value.item_id == item.id
        with pytest.raises(InvalidTransitionError):
            review_queue.dismiss(item.id)
        assert review_store.confirmed_count() == 1
        # a decided item is not reopened by re-extraction
        assert review_queue.admit(metoprolol).status == ReviewStatus.CONFIRMED

    def test_unknown_item(self, review_queue):
        with pytest.raises(ItemNotFoundError):
            review_queue.get("missing")
        with pytest.raises(ItemNotFoundError):
            review_queue.confirm("missing")

    def test_confirm_with_edits(self, review_queue, review_store, metoprolol):
        item = review_queue.admit(metoprolol)
        edited = review_queue.confirm_with_edits(item.id, {"dose": " 75mg ", "route": "oral"})
        assert edited.status == ReviewStatus.CONFIRMED_WITH_EDITS
        assert edited.extracted_data["dose"] == "75mg"
        assert edited.extracted_data["route"] == "oral"
        assert edited.extracted_data["name"] == "Metoprolol"
        assert review_store.find_confirmed(Domain.MEDICATION, "medication:metoprolol|75mg") is not None

    def test_failed_entity_write_leaves_the_item_pending(self, review_queue, review_store, metoprolol, monkeypatch):
        item = review_queue.admit(metoprolol)

        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(review_store, "_confirmed_record", broken)
        with pytest.raises(RuntimeError):
            review_queue.confirm(item.id)
        assert review_queue.get(item.id).status == ReviewStatus.PENDING
        assert review_queue.stats() == {"pending": 1, "confirmed": 0}

        monkeypatch.undo()
        assert review_queue.confirm(item.id).status == ReviewStatus.CONFIRMED
        assert review_queue.stats() == {"pending": 0, "confirmed": 1}

    @pytest.mark.parametrize(
        "overrides",
        [
            {},
            {"colour": "blue"},
            {"source_messages": [1]},
            {"start_date": "next week"},
            {"start_date": "2026-02-30"},
            {"dose": {"amount": 50}},
        ],
    )
    def test_invalid_edits_leave_the_item_pending(self, review_queue, metoprolol, overrides):
        item = review_queue.admit(metoprolol)
        with pytest.raises(ValidationError):
            review_queue.confirm_with_edits(item.id, overrides)
        assert review_queue.get(item.id).status == ReviewStatus.PENDING

    def test_symptom_edit_rules(self, review_queue, conversation, anchor):
        item = review_queue.admit(headache(conversation, "conv-1", anchor))
        with pytest.raises(ValidationError):
            review_queue.confirm_with_edits(item.id, {"severity": 7})
        with pytest.raises(ValidationError):
            review_queue.confirm_with_edits(item.id, {"aggravating": "light"})
        edited = review_queue.confirm_with_edits(item.id, {"severity": 3, "aggravating": ["light", "noise"]})
        assert edited.extracted_data["severity"] == 3
        assert edited.extracted_data["aggravating"] == ["light", "noise"]

    def test_dismiss_all(self, review_queue, metoprolol, conversation, anchor):
        kept = review_queue.admit(metoprolol)
        review_queue.confirm(kept.id)
        review_queue.admit(headache(conversation, "conv-1", anchor))
        other = conversation(("patient", "I take aspirin"), unit_id="conv-2")
        review_queue.admit(scored(other, Domain.MEDICATION, "- Aspirin (Msg 0)"))

        assert review_queue.dismiss_all() == 2
        assert review_queue.pending_count() == 0
        assert review_queue.refresh() == []
        assert review_queue.get(kept.id).status == ReviewStatus.CONFIRMED

    def test_refresh_is_oldest_first(self, review_queue, conversation):
        names = ["Aspirin", "Metformin", "Lisinopril"]
        for position, name in enumerate(names):
            unit = conversation(("patient", f"I take {name.lower()}"), unit_id=f"conv-{position}")
            review_queue.admit(scored(unit, Domain.MEDICATION, f"- {name} (Msg 0)"))
        assert [item.extracted_data["name"] for item in review_queue.refresh()] == names

    def test_concurrent_admits_of_one_entity(self, review_queue, metoprolol):
        results = []
        barrier = threading.Barrier(8)

        def admit():
            barrier.wait()
            results.append(review_queue.admit(metoprolol).id)

        threads = [threading.Thread(target=admit) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(set(results)) == 1
        assert review_queue.pending_count() == 1


class TestDuplicates:
    def test_new_unit_points_at_confirmed_entity(self, review_queue, review_store, metoprolol, conversation):
        review_queue.confirm(review_queue.admit(metoprolol).id)
        confirmed_id = review_store.find_confirmed(Domain.MEDICATION, "medication:metoprolol|50mg")

        later = conversation(("patient", "Still on metoprolol 50 mg"), unit_id="conv-2")
        item = review_queue.admit(scored(later, Domain.MEDICATION, "- Metoprolol, 50 mg (Msg 0)"))
        assert item.duplicate_of == confirmed_id
        assert ErrorKind.DUPLICATE_DETECTED.value in item.flags
        assert item.status == ReviewStatus.PENDING

    def test_seeded_records_are_matched(self, review_queue, review_store, metoprolol):
        seeded = review_store.add_confirmed(
            Domain.MEDICATION, {"name": "Metoprolol", "dose": "50mg"}, "medication:metoprolol|50mg"
        )
        item = review_queue.admit(metoprolol)
        assert item.duplicate_of == seeded

    def test_pending_items_are_not_duplicates(self, review_queue, metoprolol, conversation):
        review_queue.admit(metoprolol)
        later = conversation(("patient", "Still on metoprolol 50 mg"), unit_id="conv-2")
        item = review_queue.admit(scored(later, Domain.MEDICATION, "- Metoprolol, 50 mg (Msg 0)"))
        assert item.duplicate_of is None
        assert review_queue.pending_count() == 2

    def test_dismissed_items_are_not_duplicates(self, review_queue, metoprolol, conversation):
        review_queue.dismiss(review_queue.admit(metoprolol).id)
        later = conversation(("patient", "Still on metoprolol 50 mg"), unit_id="conv-2")
        item = review_queue.admit(scored(later, Domain.MEDICATION, "- Metoprolol, 50 mg (Msg 0)"))
        assert item.duplicate_of is None

    def test_symptoms_match_only_within_the_recency_window(self, review_queue, conversation, anchor):
        first = headache(conversation, "conv-1", anchor)
        assert first.fields["onset_date"] == "2026-02-25"
        review_queue.confirm(review_queue.admit(first).id)

        recent = review_queue.admit(headache(conversation, "conv-2", date(2026, 3, 5)))
        assert recent.duplicate_of is not None

        months_later = review_queue.admit(headache(conversation, "conv-3", date(2026, 6, 1)))
        assert months_later.duplicate_of is None
        assert ErrorKind.DUPLICATE_DETECTED.value not in months_later.flags

    def test_symptom_without_onset_is_dated_by_its_unit(self, review_queue, review_store, conversation, anchor):
        unit = conversation(("patient", "I have a headache"), unit_id="conv-1", anchor_date=anchor)
        first = review_queue.admit(scored(unit, Domain.SYMPTOM, "- Headache (Msg 0)"))
        assert first.anchor_date == anchor
        review_queue.confirm(first.id)
        with review_store.session() as session:
            assert session.scalar(select(ConfirmedEntityRecord.observed_on)) == anchor

        later = conversation(("patient", "I have a headache"), unit_id="conv-2", anchor_date=date(2026, 3, 2))
        item = review_queue.admit(scored(later, Domain.SYMPTOM, "- Headache (Msg 0)"))
        assert item.duplicate_of is not None
