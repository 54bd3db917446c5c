"""
Deterministic answer parsing.
"""
import pytest

from clinex.ai.types import Domain, ErrorKind, GenerationOutcome, RawAnswer
from clinex.parsing.answer_parser import AnswerParser, extract_source_refs, is_negative, is_placeholder, split_fields
from clinex.routing.question_router import build_question


@pytest.fixture
def parser():
    return AnswerParser()


@pytest.fixture
def chat(conversation):
    return conversation(
        ("patient", "I take metoprolol 50mg twice daily"),
        ("assistant", "Any side effects?"),
        ("patient", "Some dizziness when I stand up"),
    )


def answer_for(unit, domain, text, outcome=GenerationOutcome.CLEAN):
    return RawAnswer(unit=unit, question=build_question(domain, "en"), text=text, outcome=outcome)


class TestHelpers:
    def test_split_fields_keeps_decimal_commas(self):
        assert split_fields("Hémoglobine, 13,5, g/dL; 12-16") == ["Hémoglobine", "13,5", "g/dL", "12-16"]

    def test_citation_groups(self):
        assert extract_source_refs("Ibuprofen, 400mg (Msg 1, 2)", True) == ("Ibuprofen, 400mg", ["Msg 1", "2"])

    def test_citation_ranges(self):
        body, refs = extract_source_refs("Headache (Msgs 1-3)", True)
        assert body == "Headache"
        assert refs == ["1", "2", "3"]

    def test_bare_numbers_only_in_conversations(self):
        text = "Hemoglobin, 13.5, g/dL, (12-16)"
        assert extract_source_refs(text, False) == (text, [])

    def test_negative_answers(self):
        assert is_negative("None mentioned.")
        assert is_negative("No medications mentioned")
        assert is_negative("The conversation does not mention any appointment")
        assert is_negative("Aucun médicament")
        assert is_negative("Keine Termine")
        assert not is_negative("No appetite")
        assert not is_negative("Ibuprofen, 400mg")

    def test_placeholders(self):
        assert is_placeholder("unknown")
        assert is_placeholder("Not stated.")
        assert is_placeholder("inconnu")
        assert not is_placeholder("twice daily")


class TestAnswerParser:
    def test_medication_lines(self, parser, chat):
        answer = answer_for(chat, Domain.MEDICATION, "- **Metoprolol**, 50mg, twice daily, unknown, unknown (Msg 0)")
        result = parser.parse_answer(answer)
        assert len(result.candidates) == 1
        candidate = result.candidates[0]
        assert candidate.values == ["Metoprolol", "50mg", "twice daily", None, None]
        assert candidate.source_refs == ["Msg 0"]
        assert candidate.line_number == 1
        assert candidate.answer is answer
        assert not result.negative

    def test_fused_name_and_dose_are_split(self, parser, chat):
        candidates = parser.parse(answer_for(chat, Domain.MEDICATION, "- Metoprolol 50mg, twice daily (Msg 0)"))
        assert candidates[0].values[:3] == ["Metoprolol", "50mg", "twice daily"]

    def test_fewer_fields_fill_leading_slots(self, parser, chat):
        candidates = parser.parse(answer_for(chat, Domain.SYMPTOM, "- Dizziness, unknown, when standing (Msg 2)"))
        assert candidates[0].values == ["Dizziness", None, "when standing", None, None]

    def test_surplus_segments_fold_into_last_slot(self, parser, chat):
        line = "- Dizziness, unknown, unknown, head, when standing, worse in the morning, better lying down"
        candidates = parser.parse(answer_for(chat, Domain.SYMPTOM, line))
        assert candidates[0].values[4] == "when standing, worse in the morning, better lying down"

    def test_labelled_segments(self, parser, chat):
        line = "- Name: Metoprolol, Dose: 50mg, Frequency: twice daily"
        candidates = parser.parse(answer_for(chat, Domain.MEDICATION, line))
        assert candidates[0].values[:3] == ["Metoprolol", "50mg", "twice daily"]

    def test_negative_answer(self, parser, chat):
        result = parser.parse_answer(answer_for(chat, Domain.APPOINTMENT, "None mentioned."))
        assert result.negative
        assert result.candidates == []

    def test_empty_answer_is_not_negative(self, parser, chat):
        result = parser.parse_answer(answer_for(chat, Domain.APPOINTMENT, ""))
        assert not result.negative
        assert result.candidates == []

    def test_preamble_outside_the_list_is_skipped(self, parser, chat):
        text = "Here are the medications:\n- Metoprolol, 50mg (Msg 0)\n\nLet me know if you need more."
        result = parser.parse_answer(answer_for(chat, Domain.MEDICATION, text))
        assert [candidate.values[0] for candidate in result.candidates] == ["Metoprolol"]
        assert result.skipped_lines == 2

    def test_prose_line_is_kept_whole(self, parser, chat):
        line = "- The patient says they take something for the heart every morning with breakfast"
        result = parser.parse_answer(answer_for(chat, Domain.MEDICATION, line))
        candidate = result.candidates[0]
        assert candidate.unparsed
        assert ErrorKind.UNPARSED_LINE.value in candidate.flags
        assert candidate.raw_text == line[2:]
        assert candidate.values == [None] * 5
        assert result.unparsed == [candidate]

    def test_too_many_fields_without_tail(self, parser, document):
        unit = document("Hemoglobin 13.5 g/dL", type_label="lab_result")
        line = "- Hemoglobin, 13.5, g/dL, 12-16, normal, repeat in 3 months, fasting"
        result = parser.parse_answer(answer_for(unit, Domain.LAB_RESULT, line))
        assert result.candidates[0].unparsed

    def test_lab_value_with_fused_unit(self, parser, document):
        unit = document("Glucose 5.4 mmol/L (3.9-5.5)", type_label="lab_result")
        candidates = parser.parse(answer_for(unit, Domain.LAB_RESULT, "- Glucose, 5.4 mmol/L, 3.9-5.5"))
        assert candidates[0].values == ["Glucose", "5.4", "mmol/L", "3.9-5.5", None]

    def test_decimal_comma_stays_in_its_field(self, parser, document):
        unit = document("Hémoglobine 13,5 g/dL", type_label="lab_result", language="fr")
        candidates = parser.parse(answer_for(unit, Domain.LAB_RESULT, "- Hémoglobine, 13,5, g/dL, 12-16, normal"))
        assert candidates[0].values == ["Hémoglobine", "13,5", "g/dL", "12-16", "normal"]

    def test_metadata_labelled_lines(self, parser, document):
        unit = document("Discharge summary, 12/03/2026, Dr. Martin", type_label="discharge_summary")
        text = "Date: 12/03/2026\nAuthor: Dr. Martin\nType: Discharge summary"
        candidates = parser.parse(answer_for(unit, Domain.METADATA, text))
        assert len(candidates) == 1
        assert candidates[0].values == ["12/03/2026", "Dr. Martin", "Discharge summary"]

    def test_metadata_on_one_line(self, parser, document):
        unit = document("Lab report of 2026-03-12", type_label="lab_result")
        text = "Date: 2026-03-12, Author: unknown, Type: Lab report"
        candidates = parser.parse(answer_for(unit, Domain.METADATA, text))
        assert candidates[0].values == ["2026-03-12", None, "Lab report"]

    def test_failed_generation_is_refused(self, parser, chat):
        with pytest.raises(ValueError):
            parser.parse(answer_for(chat, Domain.MEDICATION, "", outcome=GenerationOutcome.FAILED))
