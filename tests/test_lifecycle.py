"""
Tests for pharmdesk.lifecycle -- Request and Consultation Lifecycle Engine.

Covers: submission defaults, attachment round-trip and size cap, request
and consultation state machines, lock enforcement, admin-only lock
toggling, audit emission per mutation, enrichment success and failure,
enrichment eligibility, compare-and-swap conflict diagnosis, read-side
permissions, and notification isolation.
"""

from __future__ import annotations

import base64

import pytest

from pharmdesk.audit import AuditLedger
from pharmdesk.enrichment import EnrichmentGateway, EnrichmentResult
from pharmdesk.errors import (
    AuthorizationError,
    ConflictError,
    EnrichmentError,
    InvalidTransitionError,
    LockedRecordError,
    RecordNotFoundError,
    ValidationError,
)
from pharmdesk.lifecycle import LifecycleEngine, allowed_request_transitions
from pharmdesk.models import (
    AuthContext,
    ConsultStatus,
    EnrichmentSource,
    RecordKind,
    RequestStatus,
    UserRole,
)
from pharmdesk.notifications import SubmissionType
from pharmdesk.store import SQLiteRecordStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

ADMIN = AuthContext(user_id="u-admin", username="root", display_name="Root Admin", role=UserRole.SUPER_ADMIN)
DOCTOR = AuthContext(user_id="u-doc", username="doctor", display_name="Dr. Who", role=UserRole.DOCTOR)
PHARMACIST = AuthContext(user_id="u-ph", username="pharm", display_name="Pat Pharm", role=UserRole.PHARMACIST)
GUEST = AuthContext.guest()


class _FakeEnrichment(EnrichmentGateway):
    def __init__(self, fail: bool = False) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail = fail

    def analyze(self, drug_name: str, notes: str) -> EnrichmentResult:
        self.calls.append((drug_name, notes))
        if self.fail:
            raise EnrichmentError("provider unavailable")
        return EnrichmentResult(
            text=f"{drug_name} is an orphan drug; cold chain required.",
            sources=[EnrichmentSource(title="EMA", uri="https://ema.europa.eu/x")],
        )


class _RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.calls: list[tuple] = []
        self.fail = fail

    def notify_submission(self, submission_type, email, name, record):
        if self.fail:
            raise RuntimeError("pool is shut down")
        self.calls.append((submission_type, email, name, record))
        return []


def _make_engine(
    enrichment: EnrichmentGateway | None = None,
    notifier=None,
    attachment_max_bytes: int = 5 * 1024 * 1024,
) -> tuple[LifecycleEngine, AuditLedger]:
    store = SQLiteRecordStore(":memory:")
    ledger = AuditLedger(store)
    engine = LifecycleEngine(
        store,
        ledger,
        notifier=notifier,
        enrichment=enrichment,
        attachment_max_bytes=attachment_max_bytes,
    )
    return engine, ledger


def _request_fields(**overrides) -> dict:
    data = {
        "requester_name": "Jane Doe",
        "requester_type": "PATIENT",
        "contact_email": "jane@example.org",
        "contact_phone": "+1 555 0100",
        "generic_name": "Nusinersen",
        "brand_name": "Spinraza",
        "dosage_strength": "12 mg/5 mL",
        "quantity": "2 vials",
        "urgency": "CRITICAL",
        "notes": "Patient relocating next month.",
    }
    data.update(overrides)
    return data


def _consult_fields(**overrides) -> dict:
    data = {
        "patient_name": "Sam Patient",
        "contact_email": "sam@example.org",
        "preferred_date": "2025-03-01 10:00",
        "reason": "Second opinion on therapy.",
    }
    data.update(overrides)
    return data


def _attachment(size: int) -> dict:
    raw = bytes(i % 256 for i in range(size))
    return {
        "file_name": "prescription.pdf",
        "data": base64.b64encode(raw).decode("ascii"),
        "mime_type": "application/pdf",
    }


# ---------------------------------------------------------------------------
# 1. Submissions
# ---------------------------------------------------------------------------

class TestSubmissions:
    def test_new_request_is_pending_and_unlocked(self):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields())
        assert req.status == RequestStatus.PENDING
        assert req.is_locked is False

        stored = engine.get_request(DOCTOR, req.id)
        assert stored.status == RequestStatus.PENDING
        assert stored.is_locked is False
        assert stored.generic_name == "Nusinersen"

    def test_create_request_audited_as_system(self):
        engine, ledger = _make_engine()
        req = engine.create_request(_request_fields())
        entry = ledger.list(1)[0]
        assert entry.action == f"New Drug Request {req.id}"
        assert entry.actor == "System"
        assert len(ledger) == 1

    def test_new_consultation_is_scheduled(self):
        engine, ledger = _make_engine()
        consult = engine.create_consultation(_consult_fields())
        assert consult.status == ConsultStatus.SCHEDULED
        assert consult.is_locked is False
        assert ledger.list(1)[0].action == f"New Consultation Booked {consult.id}"

    def test_unknown_enum_rejected_before_persistence(self):
        engine, ledger = _make_engine()
        with pytest.raises(ValidationError) as exc:
            engine.create_request(_request_fields(urgency="SOMEDAY"))
        assert exc.value.detail[0]["loc"] == ("urgency",)
        assert engine.list_requests(DOCTOR) == []
        assert len(ledger) == 0

    def test_missing_required_field_rejected(self):
        engine, _ = _make_engine()
        fields = _request_fields()
        del fields["quantity"]
        with pytest.raises(ValidationError):
            engine.create_request(fields)

    def test_client_cannot_preset_status_or_lock(self):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields(status="FULFILLED", is_locked=True))
        assert req.status == RequestStatus.PENDING
        assert req.is_locked is False


# ---------------------------------------------------------------------------
# 2. Attachments
# ---------------------------------------------------------------------------

class TestAttachments:
    def test_prescription_round_trip_is_byte_identical(self):
        engine, _ = _make_engine()
        attachment = _attachment(4096)
        req = engine.create_request(_request_fields(prescription=attachment))

        stored = engine.get_request(PHARMACIST, req.id).prescription
        assert stored.file_name == "prescription.pdf"
        assert stored.mime_type == "application/pdf"
        assert base64.b64decode(stored.data) == base64.b64decode(attachment["data"])

    def test_oversize_prescription_rejected_before_persistence(self):
        engine, ledger = _make_engine(attachment_max_bytes=1024)
        with pytest.raises(ValidationError) as exc:
            engine.create_request(_request_fields(prescription=_attachment(1025)))
        assert exc.value.code == "ATTACHMENT_TOO_LARGE"
        assert engine.list_requests(DOCTOR) == []
        assert len(ledger) == 0

    def test_five_megabyte_default_cap(self):
        engine, _ = _make_engine()
        with pytest.raises(ValidationError):
            engine.create_consultation(_consult_fields(attachment=_attachment(5 * 1024 * 1024 + 1)))

    def test_attachment_at_cap_accepted(self):
        engine, _ = _make_engine(attachment_max_bytes=1024)
        consult = engine.create_consultation(_consult_fields(attachment=_attachment(1024)))
        assert consult.attachment.size_bytes == 1024


# ---------------------------------------------------------------------------
# 3. Request state machine
# ---------------------------------------------------------------------------

class TestRequestStateMachine:
    def test_admin_walks_request_to_fulfilled(self):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields())
        req = engine.set_request_status(ADMIN, req.id, RequestStatus.PROCESSING)
        assert req.status == RequestStatus.PROCESSING
        req = engine.set_request_status(ADMIN, req.id, RequestStatus.FULFILLED)
        assert req.status == RequestStatus.FULFILLED

    def test_fulfilled_cannot_go_back(self):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields())
        engine.set_request_status(ADMIN, req.id, "PROCESSING")
        engine.set_request_status(ADMIN, req.id, "FULFILLED")
        with pytest.raises(InvalidTransitionError, match="FULFILLED"):
            engine.set_request_status(ADMIN, req.id, RequestStatus.PROCESSING)
        assert engine.get_request(ADMIN, req.id).status == RequestStatus.FULFILLED

    def test_pending_cannot_skip_to_fulfilled(self):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields())
        with pytest.raises(InvalidTransitionError):
            engine.set_request_status(DOCTOR, req.id, RequestStatus.FULFILLED)

    def test_reject_from_pending_and_processing(self):
        engine, _ = _make_engine()
        a = engine.create_request(_request_fields())
        b = engine.create_request(_request_fields())
        engine.set_request_status(DOCTOR, b.id, RequestStatus.PROCESSING)
        assert engine.set_request_status(DOCTOR, a.id, "REJECTED").status == RequestStatus.REJECTED
        assert engine.set_request_status(DOCTOR, b.id, "REJECTED").status == RequestStatus.REJECTED

    def test_rejected_is_terminal(self):
        assert allowed_request_transitions(RequestStatus.REJECTED) == set()

    def test_unknown_status_rejected(self):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields())
        with pytest.raises(ValidationError, match="RequestStatus"):
            engine.set_request_status(DOCTOR, req.id, "SHIPPED")

    def test_unknown_request_id(self):
        engine, _ = _make_engine()
        with pytest.raises(RecordNotFoundError):
            engine.set_request_status(DOCTOR, "missing", RequestStatus.PROCESSING)

    def test_guest_cannot_change_status(self):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields())
        with pytest.raises(AuthorizationError):
            engine.set_request_status(GUEST, req.id, RequestStatus.REJECTED)

    def test_status_change_audited_with_actor(self):
        engine, ledger = _make_engine()
        req = engine.create_request(_request_fields())
        before = len(ledger)
        engine.set_request_status(PHARMACIST, req.id, RequestStatus.PROCESSING)
        assert len(ledger) == before + 1
        entry = ledger.list(1)[0]
        assert entry.action == f"Request {req.id} status: PROCESSING"
        assert entry.actor == "Pat Pharm"

    def test_failed_transition_writes_no_audit(self):
        engine, ledger = _make_engine()
        req = engine.create_request(_request_fields())
        before = len(ledger)
        with pytest.raises(InvalidTransitionError):
            engine.set_request_status(DOCTOR, req.id, RequestStatus.FULFILLED)
        assert len(ledger) == before


# ---------------------------------------------------------------------------
# 4. Consultation state machine
# ---------------------------------------------------------------------------

class TestConsultStateMachine:
    def test_complete_with_doctor_notes(self):
        engine, ledger = _make_engine()
        consult = engine.create_consultation(_consult_fields())
        done = engine.set_consult_status(DOCTOR, consult.id, "COMPLETED", doctor_notes="Follow up in 3 months.")
        assert done.status == ConsultStatus.COMPLETED
        assert done.doctor_notes == "Follow up in 3 months."
        entry = ledger.list(1)[0]
        assert entry.action == f"Consult {consult.id} status: COMPLETED"
        assert entry.actor == "Dr. Who"

    def test_cancel(self):
        engine, _ = _make_engine()
        consult = engine.create_consultation(_consult_fields())
        assert engine.set_consult_status(PHARMACIST, consult.id, ConsultStatus.CANCELLED).status == ConsultStatus.CANCELLED

    def test_cancelled_is_terminal(self):
        engine, _ = _make_engine()
        consult = engine.create_consultation(_consult_fields())
        engine.set_consult_status(DOCTOR, consult.id, ConsultStatus.CANCELLED)
        with pytest.raises(InvalidTransitionError):
            engine.set_consult_status(DOCTOR, consult.id, ConsultStatus.COMPLETED)

    def test_guest_cannot_change_consult(self):
        engine, _ = _make_engine()
        consult = engine.create_consultation(_consult_fields())
        with pytest.raises(AuthorizationError):
            engine.set_consult_status(GUEST, consult.id, ConsultStatus.CANCELLED)


# ---------------------------------------------------------------------------
# 5. Locking
# ---------------------------------------------------------------------------

class TestLocking:
    def test_locked_request_rejects_non_admin(self):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields())
        engine.toggle_lock(ADMIN, req.id, RecordKind.REQUEST, True)

        for ctx in (DOCTOR, PHARMACIST):
            with pytest.raises(LockedRecordError):
                engine.set_request_status(ctx, req.id, RequestStatus.REJECTED)
        assert engine.get_request(DOCTOR, req.id).status == RequestStatus.PENDING

    def test_locked_consult_rejects_non_admin(self):
        engine, _ = _make_engine()
        consult = engine.create_consultation(_consult_fields())
        engine.toggle_lock(ADMIN, consult.id, "Consult", True)
        with pytest.raises(LockedRecordError):
            engine.set_consult_status(DOCTOR, consult.id, ConsultStatus.CANCELLED)
        assert engine.get_consultation(DOCTOR, consult.id).status == ConsultStatus.SCHEDULED

    def test_admin_bypasses_lock(self):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields())
        engine.toggle_lock(ADMIN, req.id, RecordKind.REQUEST, True)
        assert engine.set_request_status(ADMIN, req.id, "REJECTED").status == RequestStatus.REJECTED

    def test_unlock_restores_staff_access(self):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields())
        engine.toggle_lock(ADMIN, req.id, RecordKind.REQUEST, True)
        engine.toggle_lock(ADMIN, req.id, RecordKind.REQUEST, False)
        assert engine.set_request_status(DOCTOR, req.id, "PROCESSING").status == RequestStatus.PROCESSING

    def test_non_admin_cannot_toggle_lock(self):
        engine, ledger = _make_engine()
        req = engine.create_request(_request_fields())
        before = len(ledger)
        with pytest.raises(AuthorizationError):
            engine.toggle_lock(DOCTOR, req.id, RecordKind.REQUEST, True)
        assert engine.get_request(DOCTOR, req.id).is_locked is False
        assert len(ledger) == before

    def test_lock_toggle_audited(self):
        engine, ledger = _make_engine()
        consult = engine.create_consultation(_consult_fields())
        engine.toggle_lock(ADMIN, consult.id, RecordKind.CONSULTATION, True)
        assert ledger.list(1)[0].action == f"Consult {consult.id} LOCKED"
        engine.toggle_lock(ADMIN, consult.id, RecordKind.CONSULTATION, False)
        entry = ledger.list(1)[0]
        assert entry.action == f"Consult {consult.id} UNLOCKED"
        assert entry.actor == "Root Admin"

    def test_toggle_unknown_record(self):
        engine, _ = _make_engine()
        with pytest.raises(RecordNotFoundError):
            engine.toggle_lock(ADMIN, "missing", RecordKind.REQUEST, True)

    def test_toggle_unknown_kind(self):
        engine, _ = _make_engine()
        with pytest.raises(ValidationError):
            engine.toggle_lock(ADMIN, "x", "Invoice", True)


# ---------------------------------------------------------------------------
# 6. Audit emission
# ---------------------------------------------------------------------------

class TestAuditEmission:
    def test_one_entry_per_successful_mutation(self):
        engine, ledger = _make_engine(enrichment=_FakeEnrichment())
        req = engine.create_request(_request_fields())
        consult = engine.create_consultation(_consult_fields())
        engine.trigger_enrichment(PHARMACIST, req.id)
        engine.toggle_lock(ADMIN, req.id, RecordKind.REQUEST, True)
        engine.set_request_status(ADMIN, req.id, RequestStatus.FULFILLED)
        engine.set_consult_status(DOCTOR, consult.id, ConsultStatus.COMPLETED)

        entries = list(reversed(ledger.list()))
        assert len(entries) == 6
        assert [e.actor for e in entries] == [
            "System", "System", "Pat Pharm", "Root Admin", "Root Admin", "Dr. Who",
        ]
        for entry in entries:
            assert req.id in entry.action or consult.id in entry.action
        assert ledger.verify_chain() == (True, None)

    def test_audit_failure_does_not_undo_mutation(self, monkeypatch):
        engine, ledger = _make_engine()
        req = engine.create_request(_request_fields())
        monkeypatch.setattr(ledger, "record", lambda action, actor: None)
        updated = engine.set_request_status(DOCTOR, req.id, RequestStatus.PROCESSING)
        assert updated.status == RequestStatus.PROCESSING

    def test_audit_trail_requires_staff(self):
        engine, _ = _make_engine()
        engine.create_request(_request_fields())
        assert len(engine.audit_trail(DOCTOR)) == 1
        with pytest.raises(AuthorizationError):
            engine.audit_trail(GUEST)


# ---------------------------------------------------------------------------
# 7. Enrichment
# ---------------------------------------------------------------------------

class TestEnrichment:
    def test_success_moves_to_processing_with_sources(self):
        gateway = _FakeEnrichment()
        engine, ledger = _make_engine(enrichment=gateway)
        req = engine.create_request(_request_fields())

        updated = engine.trigger_enrichment(PHARMACIST, req.id)
        assert updated.status == RequestStatus.PROCESSING
        assert "orphan drug" in updated.ai_analysis
        assert updated.ai_sources == [EnrichmentSource(title="EMA", uri="https://ema.europa.eu/x")]
        assert gateway.calls == [("Nusinersen", "Patient relocating next month.")]
        assert ledger.list(1)[0].action == f"Request {req.id} status: PROCESSING"

    def test_explicit_drug_name_and_notes(self):
        gateway = _FakeEnrichment()
        engine, _ = _make_engine(enrichment=gateway)
        req = engine.create_request(_request_fields())
        engine.trigger_enrichment(DOCTOR, req.id, drug_name="Spinraza", notes="")
        assert gateway.calls == [("Spinraza", "")]

    def test_failure_leaves_pending(self):
        engine, ledger = _make_engine(enrichment=_FakeEnrichment(fail=True))
        req = engine.create_request(_request_fields())
        before = len(ledger)
        with pytest.raises(EnrichmentError):
            engine.trigger_enrichment(PHARMACIST, req.id)
        stored = engine.get_request(PHARMACIST, req.id)
        assert stored.status == RequestStatus.PENDING
        assert stored.ai_analysis is None
        assert len(ledger) == before

    def test_unexpected_gateway_error_wrapped(self):
        class _Exploding(EnrichmentGateway):
            def analyze(self, drug_name, notes):
                raise TimeoutError("read timed out")

        engine, _ = _make_engine(enrichment=_Exploding())
        req = engine.create_request(_request_fields())
        with pytest.raises(EnrichmentError, match="read timed out"):
            engine.trigger_enrichment(DOCTOR, req.id)

    def test_only_pending_requests_eligible(self):
        gateway = _FakeEnrichment()
        engine, _ = _make_engine(enrichment=gateway)
        req = engine.create_request(_request_fields())
        engine.set_request_status(DOCTOR, req.id, RequestStatus.PROCESSING)
        with pytest.raises(InvalidTransitionError):
            engine.trigger_enrichment(DOCTOR, req.id)
        assert gateway.calls == []

    def test_lock_checked_before_gateway_call(self):
        gateway = _FakeEnrichment()
        engine, _ = _make_engine(enrichment=gateway)
        req = engine.create_request(_request_fields())
        engine.toggle_lock(ADMIN, req.id, RecordKind.REQUEST, True)
        with pytest.raises(LockedRecordError):
            engine.trigger_enrichment(PHARMACIST, req.id)
        assert gateway.calls == []

    def test_unconfigured_gateway(self):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields())
        with pytest.raises(EnrichmentError) as exc:
            engine.trigger_enrichment(DOCTOR, req.id)
        assert exc.value.code == "ENRICHMENT_NOT_CONFIGURED"

    def test_guest_cannot_trigger(self):
        engine, _ = _make_engine(enrichment=_FakeEnrichment())
        req = engine.create_request(_request_fields())
        with pytest.raises(AuthorizationError):
            engine.trigger_enrichment(GUEST, req.id)

    def test_enrichment_fields_only_when_leaving_pending(self):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields())
        engine.set_request_status(DOCTOR, req.id, RequestStatus.PROCESSING)
        with pytest.raises(ValidationError):
            engine.set_request_status(DOCTOR, req.id, RequestStatus.FULFILLED, ai_analysis="late text")

    def test_manual_status_with_analysis(self):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields())
        updated = engine.set_request_status(
            DOCTOR, req.id, RequestStatus.PROCESSING,
            ai_analysis="Checked manually.",
            ai_sources=[{"title": "WHO", "uri": "https://who.int"}],
        )
        assert updated.ai_analysis == "Checked manually."
        assert updated.ai_sources[0].uri == "https://who.int"


# ---------------------------------------------------------------------------
# 8. Compare-and-swap conflicts
# ---------------------------------------------------------------------------

class TestConcurrentWrites:
    def test_lock_set_between_read_and_write(self, monkeypatch):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields())
        store = engine._store
        real_update = store.update

        def _lock_first(kind, record_id, fields, expected=None):
            real_update(kind, record_id, {"is_locked": True})
            return real_update(kind, record_id, fields, expected=expected)

        monkeypatch.setattr(store, "update", _lock_first)
        with pytest.raises(LockedRecordError, match="while you were editing"):
            engine.set_request_status(DOCTOR, req.id, RequestStatus.REJECTED)
        monkeypatch.undo()
        assert engine.get_request(DOCTOR, req.id).status == RequestStatus.PENDING

    def test_status_changed_between_read_and_write(self, monkeypatch):
        engine, _ = _make_engine()
        req = engine.create_request(_request_fields())
        store = engine._store
        real_update = store.update

        def _race(kind, record_id, fields, expected=None):
            real_update(kind, record_id, {"status": "REJECTED"})
            return real_update(kind, record_id, fields, expected=expected)

        monkeypatch.setattr(store, "update", _race)
        with pytest.raises(ConflictError):
            engine.set_request_status(DOCTOR, req.id, RequestStatus.PROCESSING)


# ---------------------------------------------------------------------------
# 9. Reads
# ---------------------------------------------------------------------------

class TestReads:
    def test_list_requests_newest_first(self):
        engine, _ = _make_engine()
        first = engine.create_request(_request_fields(generic_name="A"))
        second = engine.create_request(_request_fields(generic_name="B"))
        assert [r.id for r in engine.list_requests(DOCTOR)] == [second.id, first.id]

    def test_guest_cannot_list(self):
        engine, _ = _make_engine()
        with pytest.raises(AuthorizationError):
            engine.list_requests(GUEST)
        with pytest.raises(AuthorizationError):
            engine.list_consultations(GUEST)

    def test_get_missing_consultation(self):
        engine, _ = _make_engine()
        with pytest.raises(RecordNotFoundError):
            engine.get_consultation(DOCTOR, "missing")


# ---------------------------------------------------------------------------
# 10. Notifications
# ---------------------------------------------------------------------------

class TestNotifications:
    def test_request_notifies_after_persist(self):
        notifier = _RecordingNotifier()
        engine, _ = _make_engine(notifier=notifier)
        req = engine.create_request(_request_fields(prescription=_attachment(16)))
        assert len(notifier.calls) == 1
        kind, email, name, record = notifier.calls[0]
        assert kind == SubmissionType.REQUEST
        assert email == "jane@example.org"
        assert name == "Jane Doe"
        assert record["id"] == req.id

    def test_consultation_uses_appointment_type(self):
        notifier = _RecordingNotifier()
        engine, _ = _make_engine(notifier=notifier)
        engine.create_consultation(_consult_fields())
        assert notifier.calls[0][0] == SubmissionType.APPOINTMENT

    def test_notifier_failure_does_not_fail_submission(self):
        engine, _ = _make_engine(notifier=_RecordingNotifier(fail=True))
        req = engine.create_request(_request_fields())
        assert engine.get_request(DOCTOR, req.id).status == RequestStatus.PENDING
