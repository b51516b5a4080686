"""
Tests for sanitization, metadata stripping, relevance scoring and the promotion gate.
"""

import pytest

from layered_memory.core.anonymizer import (
    apply_feedback,
    initial_relevance,
    is_eligible_for_global,
    prepare_global_record,
    sanitize,
    strip_identifying_metadata,
)
from layered_memory.core.errors import InvalidArgument
from layered_memory.core.schema import MemoryCategory, MemoryRecord, MemoryScope


SAMPLES = [
    "Contact jane.doe@example.com for the brief",
    "SSN 123-45-6789 must never leak",
    "Call (555) 123-4567 or 555.987.6543 tomorrow",
    "Dr. Smith approved the palette, Mrs Jane Doe disagreed",
    "Dr Smith123-45-6789",
    "Mr. A. B. C. wrote to a@b.co from +1 555 123 4567",
    "5551234567(555)1234567",
    "call 5551234567+15551234567 today",
    "[EMAIL] [PHONE] [SSN] [NAME] already masked",
    "plain text without anything identifying",
    "",
]


class TestSanitize:

    def test_masks_email(self):
        assert sanitize("Contact jane.doe@example.com today") == "Contact [EMAIL] today"

    def test_masks_ssn(self):
        assert sanitize("id 123-45-6789.") == "id [SSN]."

    def test_masks_phone(self):
        assert sanitize("Call (555) 123-4567 today") == "Call [PHONE] today"
        assert sanitize("Call 555-123-4567") == "Call [PHONE]"

    def test_masks_honorific_name(self):
        assert sanitize("Dr. Smith approved it") == "[NAME] approved it"
        assert sanitize("ask Mrs Jane Doe first") == "ask [NAME] first"

    def test_leaves_plain_text_alone(self):
        text = "Prefers dark minimal layouts with 3 columns"
        assert sanitize(text) == text

    def test_masks_adjacent_phone_numbers(self):
        assert sanitize("5551234567(555)1234567") == "[PHONE][PHONE]"
        assert sanitize("call 5551234567+15551234567 today") == "call [PHONE][PHONE] today"

    @pytest.mark.parametrize("text", SAMPLES)
    def test_idempotent(self, text):
        once = sanitize(text)
        assert sanitize(once) == once


class TestStripIdentifyingMetadata:

    def test_drops_identifying_keys(self):
        cleaned = strip_identifying_metadata({
            "userId": "u1",
            "userEmail": "u1@example.com",
            "clientName": "Acme",
            "projectName": "Relaunch",
            "industry": "retail",
        })
        assert cleaned == {"industry": "retail"}

    def test_drops_snake_case_variants_and_recurses(self):
        cleaned = strip_identifying_metadata({
            "user_id": "u1",
            "details": {"client_name": "Acme", "tone": "calm"},
            "notes": ["write to a@b.co", 3],
        })
        assert cleaned == {"details": {"tone": "calm"}, "notes": ["write to [EMAIL]", 3]}

    def test_sanitizes_string_values(self):
        cleaned = strip_identifying_metadata({"comment": "Dr. Who liked it"})
        assert cleaned["comment"] == "[NAME] liked it"

    def test_drops_owner_and_contact_keys(self):
        cleaned = strip_identifying_metadata({
            "ownerId": "u1",
            "owner_id": "u1",
            "email": "u1@example.com",
            "name": "Jane",
            "tone": "calm",
        })
        assert cleaned == {"tone": "calm"}

    def test_recurses_into_dicts_inside_lists(self):
        cleaned = strip_identifying_metadata({
            "items": [{"userId": "u1", "score": 3}, [{"ownerId": "u1"}], "mail a@b.co"],
        })
        assert cleaned == {"items": [{"score": 3}, [{}], "mail [EMAIL]"]}


class TestRelevance:

    def test_base_relevance_for_short_content(self):
        assert initial_relevance("short", MemoryCategory.DESIGN_PREFERENCE) == 0.5

    def test_length_bonus(self):
        assert initial_relevance("a" * 20, MemoryCategory.DESIGN_PREFERENCE) == 0.6
        assert initial_relevance("a" * 1000, MemoryCategory.DESIGN_PREFERENCE) == 0.5

    def test_category_bonuses(self):
        assert initial_relevance("a" * 20, MemoryCategory.SUCCESSFUL_OUTPUT) == 0.8
        assert initial_relevance("a" * 20, MemoryCategory.TONE_PREFERENCE) == 0.75
        assert initial_relevance("abc", "SuccessfulOutput") == 0.7

    def test_never_exceeds_cap(self):
        for category in MemoryCategory:
            assert initial_relevance("x" * 50, category) <= 0.9

    def _global_record(self, relevance=0.5, frequency=1):
        return MemoryRecord.create(MemoryScope.GLOBAL, "Homepage converted better",
                                   MemoryCategory.SUCCESSFUL_OUTPUT,
                                   relevance_score=relevance, frequency=frequency)

    def test_three_helpful_feedbacks(self):
        record = self._global_record()
        for _ in range(3):
            record = apply_feedback(record, True)
        assert record.relevance_score == 0.8
        assert record.frequency == 4

    def test_unhelpful_feedback_still_increments_frequency(self):
        record = apply_feedback(self._global_record(0.5, 2), False)
        assert record.relevance_score == 0.4
        assert record.frequency == 3

    def test_feedback_is_clamped(self):
        record = self._global_record(0.95)
        for _ in range(5):
            record = apply_feedback(record, True)
            assert 0.0 <= record.relevance_score <= 1.0
        assert record.relevance_score == 1.0

        for _ in range(15):
            record = apply_feedback(record, False)
            assert 0.0 <= record.relevance_score <= 1.0
        assert record.relevance_score == 0.0

    def test_feedback_returns_new_record(self):
        record = self._global_record()
        updated = apply_feedback(record, True)
        assert record.relevance_score == 0.5
        assert updated.id == record.id


class TestEligibility:

    @pytest.mark.parametrize("category", list(MemoryCategory))
    def test_requires_consent(self, category):
        assert is_eligible_for_global(category, share_anonymously=False) is False

    @pytest.mark.parametrize("category,expected", [
        (MemoryCategory.SUCCESSFUL_OUTPUT, True),
        (MemoryCategory.INTERACTION_PATTERN, True),
        (MemoryCategory.CLIENT_FEEDBACK, True),
        (MemoryCategory.DESIGN_PREFERENCE, False),
        (MemoryCategory.TONE_PREFERENCE, False),
        (MemoryCategory.PROJECT_CONTEXT, False),
    ])
    def test_requires_learnable_category(self, category, expected):
        assert is_eligible_for_global(category, share_anonymously=True) is expected


class TestPrepareGlobalRecord:

    def test_builds_anonymized_global_record(self):
        record = prepare_global_record(
            "Mr. Jones from jones@acme.com loved the hero banner",
            MemoryCategory.CLIENT_FEEDBACK,
            {"userId": "u1", "clientName": "Acme", "section": "hero"},
        )

        assert record.scope == MemoryScope.GLOBAL
        assert record.owner_id is None
        assert record.frequency == 1
        assert "[NAME]" in record.content and "[EMAIL]" in record.content
        assert "jones" not in record.content.lower()
        assert record.metadata == {"section": "hero"}
        assert 0.5 <= record.relevance_score <= 0.9

    def test_global_metadata_never_keeps_owner(self):
        record = prepare_global_record(
            "Homepage converted better",
            MemoryCategory.SUCCESSFUL_OUTPUT,
            {"ownerId": "u1", "owner_id": "u1", "items": [{"userId": "u1"}]},
        )

        assert record.metadata == {"items": [{}]}

    def test_global_record_validation(self):
        with pytest.raises(InvalidArgument):
            MemoryRecord.create(MemoryScope.GLOBAL, "text", MemoryCategory.SUCCESSFUL_OUTPUT,
                                relevance_score=1.5, frequency=1)
        with pytest.raises(InvalidArgument):
            MemoryRecord.create(MemoryScope.GLOBAL, "text", MemoryCategory.SUCCESSFUL_OUTPUT,
                                owner_id="u1", relevance_score=0.5, frequency=1)
        with pytest.raises(InvalidArgument):
            MemoryRecord.create(MemoryScope.USER, "text", MemoryCategory.SUCCESSFUL_OUTPUT)
