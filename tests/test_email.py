import smtplib

import pytest

from ezboss.exceptions import ExternalDependencyError
from ezboss.schemas.estimates import Estimate
from ezboss.services.email import SmtpEmailDispatcher, notification_subject


class FakeSMTP:
    instances = []

    def __init__(self, host, port):
        self.host = host
        self.port = port
        self.messages = []
        self.started_tls = False
        self.logged_in = None
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, username, password):
        self.logged_in = (username, password)

    def send_message(self, msg):
        self.messages.append(msg)


class RefusingSMTP(FakeSMTP):
    def send_message(self, msg):
        raise smtplib.SMTPRecipientsRefused({msg["To"]: (550, b"no such user")})


@pytest.fixture
def estimate():
    return Estimate(
        id="est_1",
        estimate_number="EST-2025-001",
        customer_name="Jordan Rivers",
        total=243,
        client_view_url="https://app.ezboss.test/client/estimate/token-0001",
        contractor_email="pat@contractor.test",
    )


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr("ezboss.services.email.smtplib.SMTP", FakeSMTP)
    return FakeSMTP


def _dispatcher(**kw):
    opts = dict(host="smtp.test", port=587, username="mailer", password="pw", use_tls=True, mail_from="estimates@ezboss.test")
    opts.update(kw)
    return SmtpEmailDispatcher(**opts)


def test_client_email(smtp, estimate):
    _dispatcher().send(estimate, "jordan@example.com", cc_emails=["office@contractor.test"], message="Thanks for having us out.")

    conn = smtp.instances[0]
    msg = conn.messages[0]
    assert conn.started_tls and conn.logged_in == ("mailer", "pw")
    assert msg["To"] == "jordan@example.com"
    assert msg["Cc"] == "office@contractor.test"
    assert msg["Reply-To"] == "pat@contractor.test"
    body = msg.get_content()
    assert "Hello Jordan Rivers," in body
    assert "Total: $243.00" in body
    assert "https://app.ezboss.test/client/estimate/token-0001" in body


def test_contractor_notification(smtp, estimate):
    _dispatcher(use_tls=False).notify_contractor("pat@contractor.test", "denied", estimate, "Over budget")

    msg = smtp.instances[0].messages[0]
    assert msg["Subject"] == "Jordan Rivers has rejected estimate EST-2025-001"
    assert "Reason: Over budget" in msg.get_content()
    assert smtp.instances[0].started_tls is False


def test_unknown_event_subject(estimate):
    assert notification_subject("archived", estimate) == "Activity on estimate EST-2025-001"


def test_smtp_failure_is_external(monkeypatch, estimate):
    monkeypatch.setattr("ezboss.services.email.smtplib.SMTP", RefusingSMTP)

    with pytest.raises(ExternalDependencyError) as exc:
        _dispatcher().send(estimate, "jordan@example.com")
    assert exc.value.dependency == "email"


def test_unconfigured_smtp(estimate, monkeypatch):
    monkeypatch.setattr("ezboss.services.email.settings.smtp_host", None)

    with pytest.raises(ExternalDependencyError):
        _dispatcher(host=None).send(estimate, "jordan@example.com")
