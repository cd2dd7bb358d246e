"""
Intake Walkthrough: Rare-Drug Sourcing Desk
===========================================

This script runs the PharmDesk intake-and-triage flow end to end against
an in-memory database, using synthetic requesters and a canned enrichment
gateway so no network access or API key is needed.

Steps demonstrated:
  1. Build the application from settings (bootstrap administrator included)
  2. Accept a public sourcing request and a consultation booking
  3. Provision a pharmacist and log in
  4. Enrich the request (PENDING -> PROCESSING)
  5. Lock the request and show the pharmacist being refused
  6. Fulfil the request as administrator and complete the consultation
  7. Print the dashboard and verify the audit chain

Usage:
    python -m examples.intake_walkthrough
    # or: python examples/intake_walkthrough.py
"""

from __future__ import annotations

import base64
import json
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pharmdesk.bootstrap import build_application
from pharmdesk.config import Settings
from pharmdesk.dashboard import build_dashboard
from pharmdesk.enrichment import EnrichmentGateway, EnrichmentResult
from pharmdesk.errors import LockedRecordError
from pharmdesk.models import ConsultStatus, EnrichmentSource, RecordKind, RequestStatus, UserRole


class CannedEnrichment(EnrichmentGateway):
    """Returns a fixed assessment instead of calling a provider."""

    def analyze(self, drug_name: str, notes: str) -> EnrichmentResult:
        return EnrichmentResult(
            text=(
                f"{drug_name} is designated an orphan drug in most markets. "
                "Supply is limited to specialty distributors; cold chain (2-8 C) required."
            ),
            sources=[EnrichmentSource(title="Orphan designation register", uri="https://example.org/orphan")],
        )


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def main() -> None:
    _banner("PharmDesk Intake Walkthrough")
    print("All requesters and drugs in this demo are synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Build the application
    # ------------------------------------------------------------------
    _banner("Step 1: Build Application")
    settings = Settings(
        database_path=":memory:",
        log_level="WARNING",
        security={
            "pbkdf2_iterations": 10_000,
            "bootstrap_admin": {"name": "Desk Admin", "username": "admin", "password": "admin-demo"},
        },
    )
    app = build_application(settings)
    # Swap in the canned gateway so the demo runs offline.
    app.engine._enrichment = CannedEnrichment()
    print(f"Schema version: {app.store.schema_version()}")
    print(f"Staff accounts: {app.store.count('staff_users')}")

    # ------------------------------------------------------------------
    # Step 2: Public submissions
    # ------------------------------------------------------------------
    _banner("Step 2: Public Submissions")
    prescription = base64.b64encode(b"%PDF-1.4 synthetic prescription").decode("ascii")
    request = app.engine.create_request({
        "requester_name": "Riverside Clinic",
        "requester_type": "CLINIC",
        "contact_email": "orders@riverside.example",
        "generic_name": "Nusinersen",
        "brand_name": "Spinraza",
        "dosage_strength": "12 mg/5 mL",
        "quantity": "4 vials",
        "urgency": "CRITICAL",
        "notes": "Loading dose schedule starts in two weeks.",
        "prescription": {"file_name": "rx.pdf", "data": prescription, "mime_type": "application/pdf"},
    })
    print(f"Request {request.id}: {request.status.value}, locked={request.is_locked}")

    consult = app.engine.create_consultation({
        "patient_name": "Alex Example",
        "contact_email": "alex@example.org",
        "preferred_date": "2025-06-02 09:30",
        "reason": "Review of import options for an unlicensed therapy.",
    })
    print(f"Consultation {consult.id}: {consult.status.value}")

    # ------------------------------------------------------------------
    # Step 3: Staff login
    # ------------------------------------------------------------------
    _banner("Step 3: Provision Pharmacist and Log In")
    admin_session = app.new_session()
    admin_session.login("admin", "admin-demo")
    admin = admin_session.context()
    app.directory.provision_user(admin, "Priya Pharm", "priya", "priya-demo", UserRole.PHARMACIST)

    pharm_session = app.new_session()
    print(f"Wrong password -> {pharm_session.login('priya', 'nope')}")
    user = pharm_session.login("priya", "priya-demo")
    print(f"Logged in as {user.name} ({user.role.value})")
    pharmacist = pharm_session.context()

    # ------------------------------------------------------------------
    # Step 4: Enrichment
    # ------------------------------------------------------------------
    _banner("Step 4: Enrich Request")
    request = app.engine.trigger_enrichment(pharmacist, request.id)
    print(f"Status: {request.status.value}")
    print(f"Analysis: {request.ai_analysis}")
    for source in request.ai_sources or []:
        print(f"  source: {source.title} <{source.uri}>")

    # ------------------------------------------------------------------
    # Step 5: Lock
    # ------------------------------------------------------------------
    _banner("Step 5: Administrator Lock")
    app.engine.toggle_lock(admin, request.id, RecordKind.REQUEST, True)
    try:
        app.engine.set_request_status(pharmacist, request.id, RequestStatus.FULFILLED)
    except LockedRecordError as exc:
        print(f"Pharmacist refused [{exc.code}]: {exc.message}")

    # ------------------------------------------------------------------
    # Step 6: Close out
    # ------------------------------------------------------------------
    _banner("Step 6: Close Out")
    request = app.engine.set_request_status(admin, request.id, RequestStatus.FULFILLED)
    print(f"Request now {request.status.value} (set by administrator through the lock)")
    consult = app.engine.set_consult_status(
        pharmacist, consult.id, ConsultStatus.COMPLETED, doctor_notes="Import route agreed.",
    )
    print(f"Consultation now {consult.status.value}: {consult.doctor_notes}")

    # ------------------------------------------------------------------
    # Step 7: Dashboard and audit
    # ------------------------------------------------------------------
    _banner("Step 7: Dashboard and Audit Trail")
    summary = build_dashboard(admin, app.engine, app.ledger, recent=20)
    print(json.dumps(summary.to_dict(), indent=2))
    valid, broken_at = app.ledger.verify_chain()
    print(f"\nAudit chain valid: {valid} (broken_at={broken_at})")

    app.close()
    _banner("Walkthrough Complete")


if __name__ == "__main__":
    main()
