"""Unit tests for status views and the pending-confirmation projection."""
from datetime import datetime, timedelta, timezone

import pytest

from renewal_engine.core.models import ExtractedData, ExtractedDocument, WorkflowInstance
from renewal_engine.core.projections import (
    pending_confirmation,
    project_status,
    to_conversation_status,
    to_session_status,
)
from renewal_engine.core.states import DocumentType, RenewalState

T0 = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)


def photo(document_id, minutes=0, validated=False, expiration="2027-03-15") -> ExtractedDocument:
    return ExtractedDocument(
        document_id=document_id,
        instance_id="inst-1",
        document_type=DocumentType.LICENSE_PHOTO,
        source_url=f"https://media.example.com/{document_id}.jpg",
        validated=validated,
        extracted=ExtractedData(expiration_date=expiration, confidence=0.9),
        uploaded_at=T0 + timedelta(minutes=minutes),
    )


class TestStatusViews:
    def test_every_state_has_a_conversation_status(self):
        for state in RenewalState:
            assert to_conversation_status(state)

    @pytest.mark.parametrize("state, expected", [
        (RenewalState.PHOTO_UPLOADED, "awaiting_confirmation"),
        (RenewalState.AWAITING_APPROVAL, "confirmed"),
        (RenewalState.ESCALATED, "processing"),
        (RenewalState.CANCELLED, "expired"),
        (RenewalState.COMPLETED, "completed"),
    ])
    def test_conversation_view(self, state, expected):
        assert project_status(state, "conversation") == expected

    @pytest.mark.parametrize("state, expected", [
        (RenewalState.GENERAL_INQUIRY, "active"),
        (RenewalState.AWAITING_SUBMISSION, "awaiting_portal_submission"),
        (RenewalState.SUBMITTED, "portal_submitted"),
        (RenewalState.AWAITING_PHOTO, "awaiting_photo"),
    ])
    def test_session_view(self, state, expected):
        assert to_session_status(state) == expected

    def test_canonical_view(self):
        assert project_status(RenewalState.AWAITING_TRAINING) == "awaiting_training"

    def test_unknown_view(self):
        with pytest.raises(ValueError, match="Unknown status view"):
            project_status(RenewalState.COMPLETED, "legacy")


class TestPendingConfirmation:
    def test_none_without_photos(self):
        instance = WorkflowInstance(instance_id="inst-1", employee_id="emp-1")
        assert pending_confirmation(instance, []) is None

    def test_latest_photo_by_default(self):
        instance = WorkflowInstance(instance_id="inst-1", employee_id="emp-1")

        result = pending_confirmation(instance, [photo("old"), photo("new", minutes=5, expiration="2028-01-01")])

        assert result.document_id == "new"
        assert result.extracted.expiration_date == "2028-01-01"
        assert not result.confirmed

    def test_prefers_pending_document(self):
        instance = WorkflowInstance(
            instance_id="inst-1", employee_id="emp-1",
            metadata={"pending_document": {"document_id": "old"}},
        )
        result = pending_confirmation(instance, [photo("old"), photo("new", minutes=5)])
        assert result.document_id == "old"

    def test_ignores_training_certificates(self):
        instance = WorkflowInstance(instance_id="inst-1", employee_id="emp-1")
        cert = photo("cert", minutes=10).model_copy(update={"document_type": DocumentType.TRAINING_CERTIFICATE})

        assert pending_confirmation(instance, [photo("lic"), cert]).document_id == "lic"

    def test_reports_sync_status(self):
        instance = WorkflowInstance(
            instance_id="inst-1", employee_id="emp-1",
            metadata={"hr_sync": {"status": "failed", "error": "WinTeam API error: 422"}},
        )

        result = pending_confirmation(instance, [photo("lic", validated=True)])

        assert result.confirmed
        assert not result.synced_to_external_system
        assert result.sync_error == "WinTeam API error: 422"

    def test_synced(self):
        instance = WorkflowInstance(
            instance_id="inst-1", employee_id="emp-1", metadata={"hr_sync": {"status": "synced", "error": None}},
        )
        assert pending_confirmation(instance, [photo("lic", validated=True)]).synced_to_external_system
