"""
Outbound email for estimates.

The engine never sends mail itself. The send endpoint dispatches the client
email after preparing the estimate, and contractor notifications are sent
best-effort after client activity has been persisted.
"""
import smtplib
from email.message import EmailMessage
from typing import List, Optional

import structlog

from ..config import settings
from ..exceptions import ExternalDependencyError
from ..schemas.estimates import Estimate


logger = structlog.get_logger(__name__)


# Contractor notification subjects, keyed by client event
NOTIFICATION_SUBJECTS = {
    "opened": "{customer} has opened estimate {number}",
    "accepted": "{customer} has APPROVED estimate {number}!",
    "denied": "{customer} has rejected estimate {number}",
    "on-hold": "{customer} has put estimate {number} on hold",
    "commented": "{customer} commented on estimate {number}",
}


def estimate_email_body(estimate: Estimate, recipient_name: Optional[str], message: Optional[str]) -> str:
    lines = [f"Hello {recipient_name or estimate.customer_name},", ""]
    if message:
        lines += [message, ""]
    lines.append(f"Estimate {estimate.estimate_number}")
    lines.append(f"Total: ${estimate.total:.2f}")
    if estimate.valid_until:
        lines.append(f"Valid until: {estimate.valid_until.isoformat()}")
    lines += ["", f"View estimate: {estimate.client_view_url}"]
    if estimate.contractor_email:
        lines += ["", f"If you have questions, please reply to {estimate.contractor_email}"]
    return "\n".join(lines)


def notification_subject(event: str, estimate: Estimate) -> str:
    template = NOTIFICATION_SUBJECTS.get(event, "Activity on estimate {number}")
    return template.format(customer=estimate.customer_name, number=estimate.estimate_number)


class EmailDispatcher:
    def send(
        self,
        estimate: Estimate,
        recipient_email: str,
        recipient_name: Optional[str] = None,
        subject: Optional[str] = None,
        message: Optional[str] = None,
        cc_emails: Optional[List[str]] = None,
    ) -> None:
        raise NotImplementedError

    def notify_contractor(self, contractor_email: str, event: str, estimate: Estimate, info: Optional[str] = None) -> None:
        raise NotImplementedError


class SmtpEmailDispatcher(EmailDispatcher):
    def __init__(self, host: Optional[str] = None, port: Optional[int] = None, username: Optional[str] = None,
                 password: Optional[str] = None, use_tls: Optional[bool] = None, mail_from: Optional[str] = None):
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.username = username or settings.smtp_username
        self.password = password or settings.smtp_password
        self.use_tls = settings.smtp_tls if use_tls is None else use_tls
        self.mail_from = mail_from or settings.mail_from

    def _deliver(self, msg: EmailMessage) -> None:
        if not (self.host and self.mail_from):
            raise ExternalDependencyError("email", "SMTP is not configured")
        try:
            with smtplib.SMTP(self.host, self.port) as s:
                if self.use_tls:
                    s.starttls()
                if self.username and self.password:
                    s.login(self.username, self.password)
                s.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise ExternalDependencyError("email", str(e)) from e

    def send(self, estimate, recipient_email, recipient_name=None, subject=None, message=None, cc_emails=None) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject or f"Estimate {estimate.estimate_number} from {settings.app_name}"
        msg["From"] = self.mail_from or ""
        msg["To"] = recipient_email
        if cc_emails:
            msg["Cc"] = ", ".join(cc_emails)
        if estimate.contractor_email:
            msg["Reply-To"] = estimate.contractor_email
        msg.set_content(estimate_email_body(estimate, recipient_name, message))
        self._deliver(msg)
        logger.info("estimate_email_dispatched", estimate_id=estimate.id, to=recipient_email, cc=len(cc_emails or []))

    def notify_contractor(self, contractor_email, event, estimate, info=None) -> None:
        msg = EmailMessage()
        msg["Subject"] = notification_subject(event, estimate)
        msg["From"] = self.mail_from or ""
        msg["To"] = contractor_email
        body = [msg["Subject"], "", f"Total: ${estimate.total:.2f}"]
        if info:
            body += ["", ("Comment: " if event == "commented" else "Reason: ") + info]
        msg.set_content("\n".join(body))
        self._deliver(msg)
