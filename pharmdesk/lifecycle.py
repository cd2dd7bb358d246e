"""
Request and Consultation Lifecycle Engine.

This module owns the status state machines, the record lock policy and
audit emission for both submission kinds.

**State machines:**

    Request:      PENDING -> PROCESSING -> FULFILLED
                  PENDING | PROCESSING -> REJECTED

    Consultation: SCHEDULED -> COMPLETED | CANCELLED

No transition leaves a terminal state.  ``PROCESSING`` is normally
entered through ``trigger_enrichment()``; staff may also advance a request
manually.

**Authorization gates enforced in code:**

* Every operation takes an explicit ``AuthContext``; there is no ambient
  "current user".
* A locked record refuses status changes from anyone but SUPER_ADMIN.
* Only SUPER_ADMIN may toggle a lock.
* Status writes are compare-and-swap on the observed status (and, for
  non-admins, on ``is_locked = false``), so a lock set between the read
  and the write still wins.

Every accepted mutation appends exactly one audit entry.  Notification
and audit failures are logged and never undo the mutation.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

import pydantic

from pharmdesk.audit import AuditEntry, AuditLedger
from pharmdesk.enrichment import EnrichmentGateway
from pharmdesk.errors import (
    ConflictError,
    EnrichmentError,
    InvalidTransitionError,
    LockedRecordError,
    RecordNotFoundError,
    ValidationError,
)
from pharmdesk.models import (
    Attachment,
    AuthContext,
    Consultation,
    ConsultationSubmission,
    ConsultStatus,
    EnrichmentSource,
    RecordKind,
    RequestStatus,
    RequestSubmission,
    SourcingRequest,
)
from pharmdesk.notifications import NotificationGateway, SubmissionType
from pharmdesk.rbac import require_permission
from pharmdesk.store import SQLiteRecordStore

logger = logging.getLogger(__name__)

DEFAULT_ATTACHMENT_MAX_BYTES = 5 * 1024 * 1024


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_REQUEST_TRANSITIONS: dict[RequestStatus, set[RequestStatus]] = {
    RequestStatus.PENDING: {RequestStatus.PROCESSING, RequestStatus.REJECTED},
    RequestStatus.PROCESSING: {RequestStatus.FULFILLED, RequestStatus.REJECTED},
    RequestStatus.FULFILLED: set(),  # terminal state
    RequestStatus.REJECTED: set(),  # terminal state
}

_CONSULT_TRANSITIONS: dict[ConsultStatus, set[ConsultStatus]] = {
    ConsultStatus.SCHEDULED: {ConsultStatus.COMPLETED, ConsultStatus.CANCELLED},
    ConsultStatus.COMPLETED: set(),
    ConsultStatus.CANCELLED: set(),
}

_TABLES = {
    RecordKind.REQUEST: "requests",
    RecordKind.CONSULTATION: "consultations",
}


def allowed_request_transitions(status: RequestStatus) -> set[RequestStatus]:
    """Statuses a request may move to from ``status`` (empty when terminal)."""
    return set(_REQUEST_TRANSITIONS.get(status, set()))


def allowed_consult_transitions(status: ConsultStatus) -> set[ConsultStatus]:
    """Statuses a consultation may move to from ``status``."""
    return set(_CONSULT_TRANSITIONS.get(status, set()))


# ---------------------------------------------------------------------------
# Lifecycle engine
# ---------------------------------------------------------------------------

class LifecycleEngine:
    """Applies the lifecycle and lock policy to stored records.

    Collaborators are injected: the record store, the audit ledger, and
    optionally the notification and enrichment gateways.
    """

    def __init__(
        self,
        store: SQLiteRecordStore,
        audit: AuditLedger,
        notifier: Optional[NotificationGateway] = None,
        enrichment: Optional[EnrichmentGateway] = None,
        attachment_max_bytes: int = DEFAULT_ATTACHMENT_MAX_BYTES,
    ) -> None:
        self._store = store
        self._audit = audit
        self._notifier = notifier
        self._enrichment = enrichment
        self._attachment_max_bytes = attachment_max_bytes

    # -- helpers --

    @staticmethod
    def _parse(model: type[pydantic.BaseModel], fields: Any):
        if isinstance(fields, model):
            return fields
        try:
            return model.model_validate(fields)
        except pydantic.ValidationError as exc:
            raise ValidationError(
                f"Invalid {model.__name__}: {exc.error_count()} field error(s).",
                detail=exc.errors(include_url=False, include_context=False),
            ) from exc

    @staticmethod
    def _coerce(enum_cls, value):
        try:
            return enum_cls(value)
        except ValueError:
            raise ValidationError(
                f"Unknown {enum_cls.__name__} '{value}'. "
                f"Expected one of {[m.value for m in enum_cls]}.",
            )

    @staticmethod
    def _coerce_kind(kind: Union[RecordKind, str]) -> RecordKind:
        if isinstance(kind, RecordKind):
            return kind
        for member in RecordKind:
            if kind in (member.value, member.name, _TABLES[member]):
                return member
        raise ValidationError(f"Unknown record kind '{kind}'.")

    def _check_attachment(self, attachment: Optional[Attachment]) -> None:
        if attachment is None:
            return
        if attachment.size_bytes > self._attachment_max_bytes:
            raise ValidationError(
                f"Attachment '{attachment.file_name}' is {attachment.size_bytes} bytes; "
                f"the limit is {self._attachment_max_bytes} bytes.",
                code="ATTACHMENT_TOO_LARGE",
            )

    def _check_lock(self, ctx: AuthContext, locked: bool, kind: RecordKind, record_id: str) -> None:
        if locked and not ctx.is_top_privilege:
            logger.warning("Refused status change on locked %s %s", kind.value, record_id)
            raise LockedRecordError(
                f"{kind.value} {record_id} is locked by an administrator. "
                "Status changes are restricted until it is unlocked.",
                detail={"id": record_id, "kind": kind.value},
            )

    @staticmethod
    def _validate_transition(transitions: dict, current, target) -> None:
        """Raise InvalidTransitionError if the transition is not allowed."""
        allowed = transitions.get(current, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {current.value} to {target.value}. "
                f"Allowed transitions: {sorted(s.value for s in allowed)}",
                detail={"from": current.value, "to": target.value},
            )

    def _lost_write(self, ctx: AuthContext, kind: RecordKind, record_id: str):
        """Explain why a compare-and-swap write matched no row."""
        row = self._store.select_one(_TABLES[kind], record_id)
        if row is None:
            return RecordNotFoundError(f"{kind.value} {record_id} not found.")
        if row.get("is_locked") and not ctx.is_top_privilege:
            return LockedRecordError(
                f"{kind.value} {record_id} was locked by an administrator while you were editing it.",
                detail={"id": record_id, "kind": kind.value},
            )
        return ConflictError(
            f"{kind.value} {record_id} was changed by another user. Reload and try again.",
            detail={"id": record_id, "status": row.get("status")},
        )

    def _notify(self, submission_type: SubmissionType, email: str, name: str, record: dict) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify_submission(submission_type, email, name, record)
        except Exception:
            logger.error("Could not queue %s notifications", submission_type.value, exc_info=True)

    # -- submissions --

    def create_request(
        self, fields: Union[RequestSubmission, dict], ctx: Optional[AuthContext] = None
    ) -> SourcingRequest:
        """Store a new sourcing request in PENDING state.

        Raises:
            ValidationError: On missing/invalid fields, unknown enum values,
                or an oversize attachment.
            StorageError: If the store rejects the write.
        """
        ctx = ctx or AuthContext.guest()
        require_permission(ctx, "submit_request")
        submission = self._parse(RequestSubmission, fields)
        self._check_attachment(submission.prescription)

        request = SourcingRequest(**submission.model_dump())
        stored = request.model_dump(mode="json")
        self._store.insert("requests", stored)
        logger.info("Created sourcing request %s (urgency=%s)", request.id, request.urgency.value)

        self._audit.record(f"New Drug Request {request.id}", ctx.audit_name)
        self._notify(SubmissionType.REQUEST, request.contact_email, request.requester_name, stored)
        return request

    def create_consultation(
        self, fields: Union[ConsultationSubmission, dict], ctx: Optional[AuthContext] = None
    ) -> Consultation:
        """Store a new consultation booking in SCHEDULED state."""
        ctx = ctx or AuthContext.guest()
        require_permission(ctx, "submit_consultation")
        submission = self._parse(ConsultationSubmission, fields)
        self._check_attachment(submission.attachment)

        consult = Consultation(**submission.model_dump())
        stored = consult.model_dump(mode="json")
        self._store.insert("consultations", stored)
        logger.info("Created consultation %s", consult.id)

        self._audit.record(f"New Consultation Booked {consult.id}", ctx.audit_name)
        self._notify(SubmissionType.APPOINTMENT, consult.contact_email, consult.patient_name, stored)
        return consult

    # -- reads --

    def get_request(self, ctx: AuthContext, request_id: str) -> SourcingRequest:
        """Fetch one sourcing request.

        Raises:
            AuthorizationError: If the actor is not staff.
            RecordNotFoundError: If no request has that id.
        """
        require_permission(ctx, "view_records")
        return self._load_request(request_id)

    def get_consultation(self, ctx: AuthContext, consult_id: str) -> Consultation:
        """Fetch one consultation.

        Raises:
            AuthorizationError: If the actor is not staff.
            RecordNotFoundError: If no consultation has that id.
        """
        require_permission(ctx, "view_records")
        return self._load_consultation(consult_id)

    def list_requests(self, ctx: AuthContext) -> list[SourcingRequest]:
        """All sourcing requests, newest first."""
        require_permission(ctx, "view_records")
        return [SourcingRequest(**r) for r in self._store.select_all("requests")]

    def list_consultations(self, ctx: AuthContext) -> list[Consultation]:
        """All consultations, newest first.  Staff only."""
        require_permission(ctx, "view_records")
        return [Consultation(**r) for r in self._store.select_all("consultations")]

    def audit_trail(self, ctx: AuthContext, limit: Optional[int] = None) -> list[AuditEntry]:
        """Return audit entries, newest first.  Staff only.

        Args:
            ctx: The acting identity.
            limit: Maximum entries; defaults to the ledger's configured cap.
        """
        require_permission(ctx, "view_audit")
        return self._audit.list(limit)

    def _load_request(self, request_id: str) -> SourcingRequest:
        row = self._store.select_one("requests", request_id)
        if row is None:
            raise RecordNotFoundError(f"Request {request_id} not found.")
        return SourcingRequest(**row)

    def _load_consultation(self, consult_id: str) -> Consultation:
        row = self._store.select_one("consultations", consult_id)
        if row is None:
            raise RecordNotFoundError(f"Consult {consult_id} not found.")
        return Consultation(**row)

    # -- status changes --

    def set_request_status(
        self,
        ctx: AuthContext,
        request_id: str,
        new_status: Union[RequestStatus, str],
        ai_analysis: Optional[str] = None,
        ai_sources: Optional[list] = None,
    ) -> SourcingRequest:
        """Move a sourcing request to ``new_status``.

        Enrichment text and sources may only accompany the move out of
        PENDING, and only once.

        Raises:
            AuthorizationError: If the actor is not staff.
            LockedRecordError: If the record is locked and the actor is not
                SUPER_ADMIN.
            InvalidTransitionError: If the move is not allowed.
            ValidationError: On an unknown status or misplaced enrichment data.
            ConflictError: If another writer changed the status first.
        """
        require_permission(ctx, "update_request_status")
        new_status = self._coerce(RequestStatus, new_status)
        current = self._load_request(request_id)
        self._check_lock(ctx, current.is_locked, RecordKind.REQUEST, request_id)
        self._validate_transition(_REQUEST_TRANSITIONS, current.status, new_status)

        fields: dict[str, Any] = {"status": new_status.value}
        if ai_analysis is not None or ai_sources is not None:
            if current.status != RequestStatus.PENDING or current.ai_analysis is not None:
                raise ValidationError(
                    "Enrichment results can only be attached when a request leaves PENDING.",
                    code="ENRICHMENT_ALREADY_SET",
                )
            fields["ai_analysis"] = ai_analysis
            fields["ai_sources"] = [
                EnrichmentSource.model_validate(s).model_dump() for s in ai_sources or []
            ]

        expected: dict[str, Any] = {"status": current.status.value}
        if not ctx.is_top_privilege:
            expected["is_locked"] = False
        if not self._store.update("requests", request_id, fields, expected=expected):
            raise self._lost_write(ctx, RecordKind.REQUEST, request_id)

        logger.info("Request %s: %s -> %s", request_id, current.status.value, new_status.value)
        self._audit.record(f"Request {request_id} status: {new_status.value}", ctx.audit_name)
        return self._load_request(request_id)

    def set_consult_status(
        self,
        ctx: AuthContext,
        consult_id: str,
        new_status: Union[ConsultStatus, str],
        doctor_notes: Optional[str] = None,
    ) -> Consultation:
        """Move a consultation to ``new_status``, optionally recording notes."""
        require_permission(ctx, "update_consult_status")
        new_status = self._coerce(ConsultStatus, new_status)
        current = self._load_consultation(consult_id)
        self._check_lock(ctx, current.is_locked, RecordKind.CONSULTATION, consult_id)
        self._validate_transition(_CONSULT_TRANSITIONS, current.status, new_status)

        fields: dict[str, Any] = {"status": new_status.value}
        if doctor_notes is not None:
            fields["doctor_notes"] = doctor_notes

        expected: dict[str, Any] = {"status": current.status.value}
        if not ctx.is_top_privilege:
            expected["is_locked"] = False
        if not self._store.update("consultations", consult_id, fields, expected=expected):
            raise self._lost_write(ctx, RecordKind.CONSULTATION, consult_id)

        logger.info("Consult %s: %s -> %s", consult_id, current.status.value, new_status.value)
        self._audit.record(f"Consult {consult_id} status: {new_status.value}", ctx.audit_name)
        return self._load_consultation(consult_id)

    # -- locking --

    def toggle_lock(
        self,
        ctx: AuthContext,
        record_id: str,
        kind: Union[RecordKind, str],
        locked: bool,
    ) -> None:
        """Set or clear the lock flag on a record.  SUPER_ADMIN only.

        Raises:
            AuthorizationError: If the actor is not SUPER_ADMIN.
            RecordNotFoundError: If the record does not exist.
        """
        require_permission(ctx, "toggle_lock")
        kind = self._coerce_kind(kind)
        if not self._store.update(_TABLES[kind], record_id, {"is_locked": bool(locked)}):
            raise RecordNotFoundError(f"{kind.value} {record_id} not found.")

        state = "LOCKED" if locked else "UNLOCKED"
        logger.info("%s %s %s", kind.value, record_id, state)
        self._audit.record(f"{kind.value} {record_id} {state}", ctx.audit_name)

    # -- enrichment --

    def trigger_enrichment(
        self,
        ctx: AuthContext,
        request_id: str,
        drug_name: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> SourcingRequest:
        """Run enrichment on a PENDING request and move it to PROCESSING.

        ``drug_name`` and ``notes`` default to the request's own generic
        name and notes.  The gateway is called once; on failure the error
        propagates and the request stays PENDING.

        Raises:
            InvalidTransitionError: If the request is not PENDING.
            LockedRecordError: If the record is locked for this actor.
            EnrichmentError: If the gateway is missing or fails.
        """
        require_permission(ctx, "trigger_enrichment")
        if self._enrichment is None:
            raise EnrichmentError(
                "No enrichment gateway is configured for this deployment.",
                code="ENRICHMENT_NOT_CONFIGURED",
            )
        current = self._load_request(request_id)
        self._check_lock(ctx, current.is_locked, RecordKind.REQUEST, request_id)
        if current.status != RequestStatus.PENDING:
            raise InvalidTransitionError(
                f"Only PENDING requests can be enriched; request {request_id} is {current.status.value}.",
                detail={"from": current.status.value, "to": RequestStatus.PROCESSING.value},
            )

        try:
            result = self._enrichment.analyze(
                drug_name or current.generic_name,
                current.notes if notes is None else notes,
            )
        except EnrichmentError:
            logger.warning("Enrichment failed for request %s; status left PENDING", request_id)
            raise
        except Exception as exc:
            logger.warning("Enrichment failed for request %s; status left PENDING", request_id)
            raise EnrichmentError(f"Enrichment failed: {exc}") from exc

        return self.set_request_status(
            ctx, request_id, RequestStatus.PROCESSING, result.text, result.sources,
        )
