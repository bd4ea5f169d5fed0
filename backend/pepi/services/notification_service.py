# Overview: Email notifications through the Resend HTTP API; always best-effort.

"""
Notification Service

WHY: Agents hear about review decisions by email, and admins hear about new
fund requests. None of that may ever block or undo the decision itself.

DESIGN:
- ResendTransport does one HTTP call with httpx and raises DependencyFailure
  on any problem (no API key, network error, non-2xx answer).
- Notifier decides when the call happens. With an executor (production) the
  call runs on a worker thread and the request returns immediately; without
  one (tests, CLI) it runs inline.
- Every delivery attempt is audited as email_sent / email_failed.
- Message bodies are Jinja templates under templates/emails/.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field

import httpx
from flask import current_app, render_template

from ..errors import DependencyFailure
from .audit_service import AuditAction, record

logger = logging.getLogger(__name__)

RESULT_SENT = "sent"
RESULT_QUEUED = "queued"
RESULT_FAILED = "failed"


@dataclass(frozen=True)
class EmailMessage:
    to: tuple[str, ...]
    subject: str
    html: str
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class NotificationResult:
    status: str
    recipients: tuple[str, ...] = ()
    message_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "recipients": list(self.recipients),
            "message_id": self.message_id,
            "error": self.error,
        }


def format_currency(cents: int | None) -> str:
    if cents is None:
        return "N/A"
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}${cents // 100:,}.{cents % 100:02d}"


# =============================================================================
# TRANSPORT
# =============================================================================

class ResendTransport:
    def __init__(self, api_key: str, api_url: str, sender: str, timeout: float = 10.0):
        self.api_key = api_key
        self.api_url = api_url
        self.sender = sender
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> "ResendTransport":
        return cls(
            api_key=config.get("RESEND_API_KEY", ""),
            api_url=config.get("RESEND_API_URL", "https://api.resend.com/emails"),
            sender=config.get("EMAIL_FROM", ""),
            timeout=float(config.get("EMAIL_TIMEOUT_SECONDS", 10)),
        )

    def send(self, message: EmailMessage) -> str | None:
        """
        POST one message. Returns the provider's message id.

        Raises:
            DependencyFailure: Not configured, transport error or non-2xx response
        """
        if not self.api_key:
            raise DependencyFailure("Email service not configured (RESEND_API_KEY is empty)")
        payload = {
            "from": self.sender,
            "to": list(message.to),
            "subject": message.subject,
            "html": message.html,
            "tags": [{"name": k, "value": v} for k, v in message.tags.items()],
        }
        try:
            response = httpx.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DependencyFailure(
                f"Email provider answered {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise DependencyFailure(f"Email provider unreachable: {exc}") from exc
        try:
            return response.json().get("id")
        except ValueError:
            return None


# =============================================================================
# DISPATCH
# =============================================================================

class Notifier:
    def __init__(self, transport, executor: Executor | None = None):
        self.transport = transport
        self.executor = executor

    @classmethod
    def from_config(cls, config) -> "Notifier":
        executor = None
        if config.get("EMAIL_DELIVERY", "background") == "background":
            executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="pepi-email")
        return cls(ResendTransport.from_config(config), executor)

    def dispatch(self, message: EmailMessage, entity_type: str | None = None, entity_id=None) -> NotificationResult:
        """
        Send now, or hand off to the executor.

        Inline sends raise DependencyFailure on failure (after auditing it).
        Background sends always return "queued"; their outcome lands in the
        log and the audit trail.
        """
        if self.executor is None:
            return self._deliver(message, entity_type, entity_id)

        app = current_app._get_current_object()

        def job():
            with app.app_context():
                try:
                    self._deliver(message, entity_type, entity_id)
                except DependencyFailure:
                    pass  # already logged and audited by _deliver
                except Exception:
                    logger.exception("Background email job crashed for %s %s", entity_type, entity_id)

        self.executor.submit(job)
        return NotificationResult(status=RESULT_QUEUED, recipients=message.to)

    def _deliver(self, message: EmailMessage, entity_type, entity_id) -> NotificationResult:
        details = {"to": list(message.to), "subject": message.subject}
        try:
            message_id = self.transport.send(message)
        except DependencyFailure as exc:
            logger.warning("Email to %s failed (%s %s): %s", ", ".join(message.to), entity_type, entity_id, exc.message)
            record(AuditAction.EMAIL_FAILED, entity_type, entity_id, {**details, "error": exc.message})
            raise
        logger.info("Email sent to %s (%s %s)", ", ".join(message.to), entity_type, entity_id)
        record(AuditAction.EMAIL_SENT, entity_type, entity_id, {**details, "message_id": message_id})
        return NotificationResult(status=RESULT_SENT, recipients=message.to, message_id=message_id)


def get_notifier() -> Notifier:
    return current_app.extensions["pepi_notifier"]


# =============================================================================
# MESSAGES
# =============================================================================

def review_decision_message(
    *,
    label: str,
    recipient: str,
    agent_name: str,
    amount_cents: int,
    decision_status: str,
    notes: str | None,
    details: list[tuple[str, str]],
    tag_name: str,
    entity_id,
) -> EmailMessage:
    """
    Approval / rejection email for one reviewed item.

    Subject mirrors what agents already filter on, e.g.
    "Spending Transaction Approved: $150.00".
    """
    verdict = "Approved" if decision_status == "approved" else "Rejected"
    amount = format_currency(amount_cents)
    html = render_template(
        "emails/review_decision.html",
        label=label,
        verdict=verdict,
        agent_name=agent_name,
        amount=amount,
        notes=notes,
        details=[(k, v) for k, v in details if v],
        dashboard_url=current_app.config.get("DASHBOARD_URL"),
    )
    return EmailMessage(
        to=(recipient,),
        subject=f"{label} {verdict}: {amount}",
        html=html,
        tags={tag_name: str(entity_id)},
    )


def new_fund_request_message(recipients: list[str], agent_name: str, fund_request) -> EmailMessage:
    amount = format_currency(fund_request.amount_cents)
    html = render_template(
        "emails/new_fund_request.html",
        agent_name=agent_name,
        amount=amount,
        case_number=fund_request.case_number,
        request_id=fund_request.id,
        dashboard_url=current_app.config.get("DASHBOARD_URL"),
    )
    return EmailMessage(
        to=tuple(recipients),
        subject=f"New Fund Request: {amount} from {agent_name}",
        html=html,
        tags={"fund_request_id": str(fund_request.id)},
    )
