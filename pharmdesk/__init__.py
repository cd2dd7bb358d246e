"""
PharmDesk
=========

Intake-and-triage backend for a rare-drug sourcing and consultation desk.
Patients submit sourcing requests or consultation bookings; staff review
them and move them through a small status lifecycle under an
administrator lock; every change lands in an append-only, hash-chained
audit ledger.

Records are triage artefacts only.  PharmDesk does not dispense,
prescribe or give medical advice; generated drug assessments are
logistics notes for staff review.
"""

__version__ = "0.1.0"
