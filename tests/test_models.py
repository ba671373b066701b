"""Tests for the typed details union and entry construction."""

import json

import pytest

from medmem.models import (
    ConcernDetails,
    FollowUpDetails,
    LifestyleDetails,
    MedicalHistoryDetails,
    MedicationDetails,
    MemoryCandidate,
    MemoryEntry,
    PreferenceDetails,
    SymptomDetails,
    UserContext,
    details_from_dict,
    filter_conversation,
)


def _candidate(**overrides) -> MemoryCandidate:
    base = dict(
        memory_type="symptom",
        summary="Recurring headaches",
        details=SymptomDetails(symptom="headache"),
        confidence=0.9,
        importance=0.8,
        tags=["neuro"],
    )
    base.update(overrides)
    return MemoryCandidate(**base)


class TestDetailsFromDict:
    def test_each_type_gets_its_variant(self):
        expected = {
            "symptom": SymptomDetails,
            "medication": MedicationDetails,
            "medical_history": MedicalHistoryDetails,
            "lifestyle": LifestyleDetails,
            "preference": PreferenceDetails,
            "concern": ConcernDetails,
            "follow_up": FollowUpDetails,
        }
        for memory_type, cls in expected.items():
            assert isinstance(details_from_dict(memory_type, {}), cls)

    def test_symptom_fields(self):
        d = details_from_dict("symptom", {
            "symptom": "headache", "duration": "2 weeks", "triggers": ["stress", "", None],
        })
        assert d.symptom == "headache"
        assert d.duration == "2 weeks"
        assert d.triggers == ["stress"]
        assert d.primary == "headache"

    def test_medication_name_alias(self):
        d = details_from_dict("medication", {"name": "ibuprofen", "dose": "200mg"})
        assert d.medication == "ibuprofen"
        assert d.dosage == "200mg"

    def test_follow_up_camel_case_alias(self):
        d = details_from_dict("follow_up", {"followUp": "recheck blood pressure"})
        assert d.primary == "recheck blood pressure"

    def test_unknown_keys_kept_in_extra(self):
        d = details_from_dict("concern", {"concern": "heart disease", "family": "father"})
        assert d.extra == {"family": "father"}
        assert d.to_dict() == {"concern": "heart disease", "family": "father"}

    def test_json_string_payload(self):
        d = details_from_dict("medical_history", json.dumps({"condition": "asthma", "status": "chronic"}))
        assert d.condition == "asthma"
        assert d.status == "chronic"

    def test_bare_string_becomes_primary(self):
        assert details_from_dict("symptom", "nausea").symptom == "nausea"

    def test_bare_string_for_free_form_type(self):
        assert details_from_dict("lifestyle", "walks daily").factors == {"note": "walks daily"}

    def test_garbage_payload_is_empty(self):
        assert details_from_dict("symptom", 42).to_dict() == {}
        assert details_from_dict("symptom", None).to_dict() == {}

    def test_lifestyle_factors(self):
        d = details_from_dict("lifestyle", {"sleep": "5 hours", "diet": None})
        assert d.to_dict() == {"sleep": "5 hours"}
        assert d.primary is None

    def test_nested_values_serialised(self):
        d = details_from_dict("medication", {"medication": "metformin", "response": {"ok": True}})
        assert d.response == '{"ok": true}'

    def test_unknown_type_rejected(self):
        with pytest.raises(KeyError):
            details_from_dict("diagnosis", {})


class TestEntries:
    def test_scaled_multiplies_importance(self):
        scaled = _candidate(importance=0.8).scaled(0.5)
        assert scaled.importance == pytest.approx(0.4)
        assert scaled.confidence == pytest.approx(0.9)

    def test_from_candidate_adds_chunk_tag(self):
        entry = MemoryEntry.from_candidate(_candidate(), "u1", "s1", chunk_id="chunk_0_3_abcd")
        assert entry.user_id == "u1"
        assert entry.session_id == "s1"
        assert entry.tags == ["neuro", "chunk_0_3_abcd"]
        assert entry.id.startswith("mem_")
        assert entry.extracted_at > 0

    def test_from_candidate_does_not_share_lists(self):
        candidate = _candidate()
        entry = MemoryEntry.from_candidate(candidate, "u1", "s1", chunk_id="c")
        assert candidate.tags == ["neuro"]
        assert entry.tags is not candidate.tags

    def test_projection(self):
        entry = MemoryEntry.from_candidate(_candidate(), "u1", "s1")
        projection = entry.projection().to_dict()
        assert projection["summary"] == "Recurring headaches"
        assert projection["details"] == {"symptom": "headache"}
        assert projection["importance"] == pytest.approx(0.8)
        assert projection["extracted_at"] == entry.extracted_at


class TestConversation:
    def test_filter_conversation(self):
        messages = filter_conversation([
            {"role": "system", "content": "rules"},
            {"role": "user", "content": None},
            {"role": "assistant", "content": "hello"},
        ])
        assert [(m.role, m.content) for m in messages] == [("user", ""), ("assistant", "hello")]

    def test_user_context_empty(self):
        assert UserContext().is_empty()
        assert not UserContext(lifestyle_factors={"sleep": "poor"}).is_empty()
