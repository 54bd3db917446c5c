"""
Question routing and the conversation pre-filter.
"""
from clinex.ai.types import Domain, ErrorKind
from clinex.routing.analyzer import analyze_conversation, is_pure_qa
from clinex.routing.question_router import DOMAIN_TABLE, normalize_type_label, route, route_with_flags


class TestQuestionRouter:
    def test_conversation_domains_in_order(self, conversation):
        unit = conversation(("patient", "I have a headache"))
        questions = route(unit)
        assert [question.domain for question in questions] == [
            Domain.SYMPTOM, Domain.MEDICATION, Domain.APPOINTMENT,
        ]
        assert all(question.language == "en" for question in questions)
        assert not any(question.batched for question in questions)

    def test_document_type_table(self, document):
        unit = document("Glucose 6.1 mmol/L", type_label="lab_result")
        questions = route(unit)
        assert [question.domain for question in questions] == [Domain.METADATA, Domain.LAB_RESULT]
        assert questions[0].batched
        assert questions[1].answer_fields == ("test_name", "value", "unit", "reference_range", "flag")

    def test_type_aliases_and_default(self):
        assert normalize_type_label("Lab Report") == "lab_result"
        assert normalize_type_label("discharge") == "discharge_summary"
        assert normalize_type_label("fax cover sheet") == "document"
        assert normalize_type_label(None) == "document"

    def test_unknown_type_uses_default_table(self, document):
        questions = route(document("text", type_label="mystery"))
        assert tuple(question.domain for question in questions) == DOMAIN_TABLE["document"]

    def test_regional_language_tag(self, conversation):
        unit = conversation(("patient", "J'ai mal à la tête"), language="fr-CA")
        questions = route(unit)
        assert questions and all(question.language == "fr" for question in questions)
        assert "symptôme" in questions[0].text

    def test_unsupported_language_is_flagged_not_translated(self, document):
        result = route_with_flags(document("Glucosa 6,1 mmol/L", type_label="lab_result", language="es"))
        assert result.questions == []
        assert result.skipped == [Domain.METADATA, Domain.LAB_RESULT]
        assert result.flags == [ErrorKind.UNSUPPORTED_LANGUAGE.value]

    def test_supported_languages_restrict_templates(self, conversation):
        unit = conversation(("patient", "Ich habe Kopfschmerzen"), language="de")
        result = route_with_flags(unit, supported_languages=["en", "fr"])
        assert result.questions == []
        assert len(result.skipped) == 3
        assert ErrorKind.UNSUPPORTED_LANGUAGE.value in result.flags

    def test_domain_narrowing_keeps_table_order(self, conversation):
        unit = conversation(("patient", "I have a headache"))
        result = route_with_flags(unit, domains=[Domain.APPOINTMENT, Domain.SYMPTOM, Domain.LAB_RESULT])
        assert [question.domain for question in result.questions] == [Domain.SYMPTOM, Domain.APPOINTMENT]
        assert result.flags == []


class TestConversationAnalyzer:
    def test_pure_question_answer(self, conversation):
        unit = conversation(
            ("patient", "Is ibuprofen safe with coffee?"),
            ("assistant", "Generally yes."),
            ("patient", "What about alcohol?"),
        )
        assert is_pure_qa(unit)
        result = analyze_conversation(unit)
        assert result.is_pure_qa
        assert result.domains == []

    def test_only_patient_messages_count(self, conversation):
        unit = conversation(
            ("patient", "I have a headache"),
            ("assistant", "You could book an appointment with your doctor and take ibuprofen."),
        )
        result = analyze_conversation(unit)
        assert result.domains == [Domain.SYMPTOM]
        assert result.signal_indices == {Domain.SYMPTOM: [0]}

    def test_medication_and_appointment_signals(self, conversation):
        unit = conversation(
            ("patient", "I take metoprolol 50mg every morning."),
            ("patient", "My appointment with Dr. Weber is next Tuesday."),
        )
        result = analyze_conversation(unit)
        assert Domain.MEDICATION in result.domains
        assert Domain.APPOINTMENT in result.domains
        assert result.signal_indices[Domain.APPOINTMENT] == [1]

    def test_multilingual_keywords(self, conversation):
        unit = conversation(("patient", "Depuis hier j'ai de la fièvre"), language="fr")
        assert analyze_conversation(unit).domains == [Domain.SYMPTOM]
