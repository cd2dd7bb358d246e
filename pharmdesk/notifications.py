"""
Best-effort submission notifications.

After a public submission is stored, the requester gets a confirmation
and the operations inbox gets an alert.  Both are dispatched on a
background worker pool: the lifecycle engine never waits on them, and a
failed send is logged, never raised.  Nothing here can roll back or block
the record write.

Transports
----------
* ``HttpProxyTransport`` -- POSTs the notification payload to an internal
  mail endpoint.
* ``ResendTransport``    -- renders the email and POSTs it to the Resend API.
* ``NullTransport``      -- drops notifications (disabled mode).
"""

from __future__ import annotations

import enum
import html
import logging
import re
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Optional

import requests
from pydantic import BaseModel

from pharmdesk.config import NotificationSettings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
FALLBACK_SENDER = "onboarding@resend.dev"
BRAND = "PharmDesk"

# Keys never copied into a notification body.
_OMITTED_KEYS = {"prescription", "attachment", "requester_type_other"}


class NotificationType(str, enum.Enum):
    USER_CONFIRMATION = "USER_CONFIRMATION"
    ADMIN_ALERT = "ADMIN_ALERT"


class SubmissionType(str, enum.Enum):
    REQUEST = "REQUEST"
    APPOINTMENT = "APPOINTMENT"

    @property
    def label(self) -> str:
        if self is SubmissionType.REQUEST:
            return "Rare Drug Sourcing Request"
        return "Medical Consultation Booking"


class NotificationPayload(BaseModel):
    """Wire payload for one notification."""

    notificationType: NotificationType
    type: SubmissionType
    email: Optional[str] = None
    name: Optional[str] = None
    data: dict[str, Any]


class NotificationDeliveryError(Exception):
    """A transport could not deliver a notification."""


def summarize_record(record: dict[str, Any]) -> dict[str, Any]:
    """Strip attachment bodies and empty values from a record for messaging."""
    return {
        k: v for k, v in record.items()
        if k not in _OMITTED_KEYS and v not in (None, "", [])
    }


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------

class NullTransport:
    def send(self, payload: NotificationPayload) -> None:
        logger.debug("Notifications disabled; dropped %s", payload.notificationType.value)


class HttpProxyTransport:
    """POST the payload as JSON to an internal mail endpoint."""

    def __init__(self, endpoint: str, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        if not endpoint:
            raise ValueError("HttpProxyTransport requires an endpoint URL.")
        self._endpoint = endpoint
        self._timeout = timeout
        self._session = session or requests.Session()

    def send(self, payload: NotificationPayload) -> None:
        response = self._session.post(
            self._endpoint,
            json=payload.model_dump(mode="json", exclude_none=True),
            timeout=self._timeout,
        )
        if not response.ok:
            raise NotificationDeliveryError(
                f"Proxy returned {response.status_code}: {response.text[:200]}"
            )


def _humanize(key: str) -> str:
    return re.sub(r"[_]+", " ", key).strip().lower()


def render_email(payload: NotificationPayload, admin_email: str) -> tuple[str, str, str]:
    """Return ``(recipient, subject, html_body)`` for a payload."""
    is_user = payload.notificationType == NotificationType.USER_CONFIRMATION
    label = payload.type.label
    recipient = payload.email if is_user else admin_email
    if not recipient:
        raise NotificationDeliveryError("No recipient address for notification.")
    subject = f"Confirmed: {label} Received" if is_user else f"[ALERT] New {label} Submission"

    items = "".join(
        f"<li><strong>{html.escape(_humanize(k))}:</strong> {html.escape(str(v))}</li>"
        for k, v in payload.data.items()
    )
    greeting = (
        f"Hello {html.escape(payload.name or 'Valued Patient')},"
        if is_user else "System Alert: New Submission"
    )
    intro = (
        f"We have successfully received your <strong>{label}</strong>."
        if is_user else f"A new <strong>{label}</strong> has been logged."
    )
    body = (
        f'<div style="font-family: sans-serif; max-width: 600px; margin: 0 auto;">'
        f"<h1>{BRAND}</h1><h2>{greeting}</h2><p>{intro}</p>"
        f'<ul style="list-style: none; padding: 0;">{items}</ul></div>'
    )
    return recipient, subject, body


class ResendTransport:
    """Render and send the email through the Resend API."""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        admin_email: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not api_key:
            raise ValueError("ResendTransport requires an API key.")
        self._api_key = api_key
        self._admin_email = admin_email
        self._timeout = timeout
        self._session = session or requests.Session()
        if from_email:
            self._sender = f"{BRAND} <{from_email}>"
        else:
            # The onboarding sender only delivers to the account owner.
            logger.warning("No sender address configured; falling back to %s", FALLBACK_SENDER)
            self._sender = f"{BRAND} <{FALLBACK_SENDER}>"

    def send(self, payload: NotificationPayload) -> None:
        recipient, subject, body = render_email(payload, self._admin_email)
        response = self._session.post(
            RESEND_API_URL,
            headers={"Authorization": f"Bearer {self._api_key}"},
            json={"from": self._sender, "to": [recipient], "subject": subject, "html": body},
            timeout=self._timeout,
        )
        if not response.ok:
            raise NotificationDeliveryError(
                f"Resend API returned {response.status_code}: {response.text[:200]}"
            )


def build_transport(settings: NotificationSettings):
    """Pick the transport named by ``settings.mode``."""
    if settings.mode == "proxy":
        return HttpProxyTransport(settings.endpoint, timeout=settings.timeout_seconds)
    if settings.mode == "resend":
        return ResendTransport(
            settings.api_key,
            settings.from_email,
            settings.admin_email,
            timeout=settings.timeout_seconds,
        )
    return NullTransport()


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class NotificationGateway:
    """Fire-and-forget dispatcher for submission notifications."""

    def __init__(self, transport=None, max_workers: int = 2) -> None:
        self._transport = transport or NullTransport()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def _deliver(self, payload: NotificationPayload) -> bool:
        try:
            self._transport.send(payload)
        except Exception:
            logger.error(
                "Notification %s for %s failed",
                payload.notificationType.value, payload.type.value, exc_info=True,
            )
            return False
        logger.info("Notification %s for %s sent", payload.notificationType.value, payload.type.value)
        return True

    def dispatch(self, payload: NotificationPayload) -> Future:
        """Queue one notification.  The returned future resolves to True on delivery."""
        return self._pool.submit(self._deliver, payload)

    def notify_submission(
        self,
        submission_type: SubmissionType,
        email: Optional[str],
        name: Optional[str],
        record: dict[str, Any],
    ) -> list[Future]:
        """Queue the requester confirmation and the admin alert for a new submission."""
        data = summarize_record(record)
        futures = []
        if email:
            futures.append(self.dispatch(NotificationPayload(
                notificationType=NotificationType.USER_CONFIRMATION,
                type=submission_type,
                email=email,
                name=name,
                data=data,
            )))
        futures.append(self.dispatch(NotificationPayload(
            notificationType=NotificationType.ADMIN_ALERT,
            type=submission_type,
            data=data,
        )))
        return futures

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
