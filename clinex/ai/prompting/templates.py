"""Domain question templates, one table per language.

Each question asks for a single domain and spells out the line format the
answer parser expects. There is intentionally no fallback between languages.
"""

from __future__ import annotations

import textwrap
from typing import Dict, Optional

from clinex.ai.types import Domain

SYSTEM_PROMPTS: Dict[str, str] = {
    "en": textwrap.dedent(
        """
        You are a medical document assistant. Extract ONLY information explicitly present in the text.
        NEVER add interpretation, infer information, or fabricate data not directly written.
        Answer as a simple markdown list, one item per line, fields separated by commas.
        Write "unknown" for any field that is not stated. If nothing matches, answer "None mentioned".
        When the text is a conversation, end each line with the message it comes from, e.g. (Msg 2).
        """
    ).strip(),
    "fr": textwrap.dedent(
        """
        Vous êtes un assistant de documents médicaux. Extrayez UNIQUEMENT les informations explicitement présentes dans le texte.
        N'ajoutez JAMAIS d'interprétation, n'inférez rien et n'inventez aucune donnée absente du texte.
        Répondez par une simple liste markdown, un élément par ligne, champs séparés par des virgules.
        Écrivez "inconnu" pour tout champ non indiqué. Si rien ne correspond, répondez "Aucun mentionné".
        Pour une conversation, terminez chaque ligne par le message d'origine, par ex. (Msg 2).
        """
    ).strip(),
    "de": textwrap.dedent(
        """
        Sie sind ein Assistent für medizinische Dokumente. Extrahieren Sie NUR Informationen, die ausdrücklich im Text stehen.
        Fügen Sie NIEMALS Interpretationen hinzu, schließen Sie nichts und erfinden Sie keine Daten.
        Antworten Sie als einfache Markdown-Liste, ein Eintrag pro Zeile, Felder durch Kommas getrennt.
        Schreiben Sie "unbekannt" für jedes nicht genannte Feld. Wenn nichts zutrifft, antworten Sie "Keine erwähnt".
        Bei einem Gespräch beenden Sie jede Zeile mit der Quellnachricht, z. B. (Msg 2).
        """
    ).strip(),
}


QUESTION_TEMPLATES: Dict[str, Dict[Domain, str]] = {
    "en": {
        Domain.METADATA: (
            "State the document date, the author and the document type, one per line:\n"
            "Date: ...\nAuthor: ...\nType: ..."
        ),
        Domain.SYMPTOM: (
            "List every symptom the patient reports. For each, write: symptom, severity "
            "(only a number the patient stated, e.g. 7/10), onset, body region, notes."
        ),
        Domain.MEDICATION: (
            "List all medications mentioned. For each, write: name, dose, frequency, "
            "start date, instructions."
        ),
        Domain.APPOINTMENT: (
            "List all appointments mentioned. For each, write: professional name, specialty, "
            "date, time, reason."
        ),
        Domain.LAB_RESULT: (
            "List all lab results. For each, write: test name, value, unit, reference range, "
            "abnormal flag."
        ),
        Domain.DIAGNOSIS: "List all diagnoses. For each, write: name, date, status.",
        Domain.ALLERGY: "List all allergies. For each, write: allergen, reaction, severity.",
        Domain.PROCEDURE: "List all procedures. For each, write: name, date, outcome, follow-up.",
        Domain.REFERRAL: "List all referrals. For each, write: specialist, specialty, reason.",
        Domain.INSTRUCTION: "List every instruction given to the patient, one per line, in its original wording.",
    },
    "fr": {
        Domain.METADATA: (
            "Indiquez la date du document, l'auteur et le type de document, un par ligne :\n"
            "Date : ...\nAuteur : ...\nType : ..."
        ),
        Domain.SYMPTOM: (
            "Listez chaque symptôme rapporté par le patient. Pour chacun, écrivez : symptôme, "
            "intensité (uniquement un chiffre donné par le patient, ex. 7/10), début, région du corps, notes."
        ),
        Domain.MEDICATION: (
            "Listez tous les médicaments mentionnés. Pour chacun, écrivez : nom, dose, fréquence, "
            "date de début, instructions."
        ),
        Domain.APPOINTMENT: (
            "Listez tous les rendez-vous mentionnés. Pour chacun, écrivez : nom du professionnel, "
            "spécialité, date, heure, motif."
        ),
        Domain.LAB_RESULT: (
            "Listez tous les résultats d'analyses. Pour chacun, écrivez : nom du test, valeur, unité, "
            "valeurs de référence, indicateur anormal."
        ),
        Domain.DIAGNOSIS: "Listez tous les diagnostics. Pour chacun, écrivez : nom, date, statut.",
        Domain.ALLERGY: "Listez toutes les allergies. Pour chacune, écrivez : allergène, réaction, gravité.",
        Domain.PROCEDURE: "Listez toutes les interventions. Pour chacune, écrivez : nom, date, résultat, suivi.",
        Domain.REFERRAL: "Listez toutes les orientations. Pour chacune, écrivez : spécialiste, spécialité, motif.",
        Domain.INSTRUCTION: "Listez chaque consigne donnée au patient, une par ligne, dans sa formulation d'origine.",
    },
    "de": {
        Domain.METADATA: (
            "Nennen Sie Datum, Verfasser und Art des Dokuments, je eine Zeile:\n"
            "Datum: ...\nVerfasser: ...\nTyp: ..."
        ),
        Domain.SYMPTOM: (
            "Listen Sie jedes vom Patienten genannte Symptom auf. Schreiben Sie jeweils: Symptom, "
            "Stärke (nur eine vom Patienten genannte Zahl, z. B. 7/10), Beginn, Körperregion, Notizen."
        ),
        Domain.MEDICATION: (
            "Listen Sie alle erwähnten Medikamente auf. Schreiben Sie jeweils: Name, Dosis, Häufigkeit, "
            "Beginn, Hinweise."
        ),
        Domain.APPOINTMENT: (
            "Listen Sie alle erwähnten Termine auf. Schreiben Sie jeweils: Name der Fachperson, "
            "Fachrichtung, Datum, Uhrzeit, Anlass."
        ),
        Domain.LAB_RESULT: (
            "Listen Sie alle Laborwerte auf. Schreiben Sie jeweils: Testname, Wert, Einheit, "
            "Referenzbereich, Auffälligkeit."
        ),
        Domain.DIAGNOSIS: "Listen Sie alle Diagnosen auf. Schreiben Sie jeweils: Name, Datum, Status.",
        Domain.ALLERGY: "Listen Sie alle Allergien auf. Schreiben Sie jeweils: Allergen, Reaktion, Schweregrad.",
        Domain.PROCEDURE: "Listen Sie alle Eingriffe auf. Schreiben Sie jeweils: Name, Datum, Ergebnis, Nachsorge.",
        Domain.REFERRAL: "Listen Sie alle Überweisungen auf. Schreiben Sie jeweils: Facharzt, Fachrichtung, Grund.",
        Domain.INSTRUCTION: "Listen Sie jede Anweisung an den Patienten auf, eine pro Zeile, im Originalwortlaut.",
    },
}


def get_question_text(language: str, domain: Domain) -> Optional[str]:
    """Return the template for ``domain`` in ``language`` or ``None``."""
    return QUESTION_TEMPLATES.get(language, {}).get(domain)


__all__ = ["QUESTION_TEMPLATES", "SYSTEM_PROMPTS", "get_question_text"]
