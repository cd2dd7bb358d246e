"""
Staff Dashboard Summary.

Builds the at-a-glance view staff land on after logging in: how many
records sit in each status, which sourcing requests still need a first
look (most urgent first), and what happened most recently according to
the audit ledger.

The summary is a snapshot taken at call time.  It reads through the
lifecycle engine, so the same staff-only permission gates apply.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Any

from pharmdesk.audit import AuditLedger
from pharmdesk.lifecycle import LifecycleEngine
from pharmdesk.models import (
    AuthContext,
    ConsultStatus,
    RequestStatus,
    SourcingRequest,
    Urgency,
)
from pharmdesk.rbac import require_permission

_URGENCY_RANK = {Urgency.CRITICAL: 0, Urgency.HIGH: 1, Urgency.NORMAL: 2}


class DashboardSummary:
    """Status counts, the open-work queue and recent audit activity."""

    def __init__(
        self,
        request_counts: dict[str, int],
        consult_counts: dict[str, int],
        locked_records: int,
        queue: list[dict[str, Any]],
        recent_activity: list[dict[str, str]],
        audit_chain_valid: bool,
        generated_at: str,
    ) -> None:
        self.request_counts = request_counts
        self.consult_counts = consult_counts
        self.locked_records = locked_records
        self.queue = queue
        self.recent_activity = recent_activity
        self.audit_chain_valid = audit_chain_valid
        self.generated_at = generated_at

    @property
    def open_requests(self) -> int:
        return (
            self.request_counts[RequestStatus.PENDING.value]
            + self.request_counts[RequestStatus.PROCESSING.value]
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests": dict(self.request_counts),
            "consultations": dict(self.consult_counts),
            "open_requests": self.open_requests,
            "locked_records": self.locked_records,
            "queue": list(self.queue),
            "recent_activity": list(self.recent_activity),
            "audit_chain_valid": self.audit_chain_valid,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"DashboardSummary(open_requests={self.open_requests}, "
            f"locked={self.locked_records}, chain_valid={self.audit_chain_valid})"
        )


def build_dashboard(
    ctx: AuthContext,
    engine: LifecycleEngine,
    ledger: AuditLedger,
    recent: int = 10,
) -> DashboardSummary:
    """Build a dashboard snapshot for a staff user.

    Args:
        ctx: The acting identity; must be staff.
        engine: Lifecycle engine used to read records.
        ledger: Audit ledger for recent activity and chain verification.
        recent: How many audit entries to include.

    Raises:
        AuthorizationError: If ``ctx`` is not a staff identity.
    """
    require_permission(ctx, "view_audit")
    requests = engine.list_requests(ctx)
    consultations = engine.list_consultations(ctx)

    request_counts = Counter(r.status.value for r in requests)
    consult_counts = Counter(c.status.value for c in consultations)
    chain_valid, _ = ledger.verify_chain()

    return DashboardSummary(
        request_counts={s.value: request_counts.get(s.value, 0) for s in RequestStatus},
        consult_counts={s.value: consult_counts.get(s.value, 0) for s in ConsultStatus},
        locked_records=sum(1 for r in [*requests, *consultations] if r.is_locked),
        queue=_build_queue(requests),
        recent_activity=[
            {
                "action": e.action,
                "actor": e.actor,
                "timestamp": e.timestamp.isoformat(),
            }
            for e in ledger.list(recent)
        ],
        audit_chain_valid=chain_valid,
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


def _build_queue(requests: list[SourcingRequest]) -> list[dict[str, Any]]:
    """PENDING requests, most urgent first, then oldest first."""
    pending = [r for r in requests if r.status == RequestStatus.PENDING]
    pending.sort(key=lambda r: (_URGENCY_RANK[r.urgency], r.created_at))
    return [
        {
            "id": r.id,
            "generic_name": r.generic_name,
            "urgency": r.urgency.value,
            "requester_type": r.requester_type.value,
            "created_at": r.created_at.isoformat(),
            "is_locked": r.is_locked,
        }
        for r in pending
    ]
