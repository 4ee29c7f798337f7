import smtplib

import pytest

import mailer
from config import Settings
from mailer import (
    EmailDeliveryError, EmailNotConfiguredError, SmtpMailer, default_subject,
    render_invoice_html, render_invoice_text, render_new_user_notification,
)

INVOICE = {
    "id": "665f1c2ab3e4d5f6a7b8c9d0",
    "invoice_number": "INV-1001",
    "client_name": "Acme <Corp>",
    "client_email": "billing@acme.test",
    "items": [
        {"description": "Design", "quantity": 2, "price": 10},
        {"description": "Hosting", "quantity": 1, "price": 5},
    ],
    "discount": 10,
    "tax_rate": 5,
    "subtotal": 25.0,
    "discount_amount": 2.5,
    "tax_amount": 1.13,
    "total": 23.63,
    "due_date": "2026-11-01",
    "notes": "Pay by <b>card</b>",
}
COMPANY = {"name": "Simply Studio", "email": "hello@studio.test"}


@pytest.fixture
def settings():
    return Settings(smtp_host="smtp.example.com", smtp_username="user", smtp_password="pass", email_from="billing@studio.test")


def test_html_contains_totals_and_escapes_user_text():
    html = render_invoice_html(INVOICE, COMPANY, "Hello\nthere", "https://app.example.com/")

    assert "#INV-1001" in html
    assert "Acme &lt;Corp&gt;" in html
    assert "Pay by &lt;b&gt;card&lt;/b&gt;" in html
    assert "Hello<br>there" in html
    assert "Discount (10%):" in html
    assert "-$2.50" in html
    assert "$23.63" in html
    assert "Sunday, November 1, 2026" in html
    assert "https://app.example.com/invoices/665f1c2ab3e4d5f6a7b8c9d0" in html


def test_html_omits_discount_and_tax_rows_when_zero():
    invoice = {**INVOICE, "discount": 0, "discount_amount": 0, "tax_rate": 0, "tax_amount": 0, "total": 25.0}
    html = render_invoice_html(invoice, COMPANY, None, "https://app.example.com")

    assert "Discount (" not in html
    assert "Tax:" not in html
    assert "We appreciate your prompt payment." in html


def test_text_version_lists_items_and_summary():
    text = render_invoice_text(INVOICE, COMPANY, None, "https://app.example.com")

    assert text.startswith("INVOICE #INV-1001")
    assert "- Design - 2 x $10.00 = $20.00" in text
    assert "Discount (10%): -$2.50" in text
    assert "Tax: $1.13" in text
    assert "TOTAL DUE: $23.63" in text
    assert "Notes: Pay by <b>card</b>" in text


def test_totals_are_recomputed_when_not_persisted():
    invoice = {k: v for k, v in INVOICE.items() if k not in ("subtotal", "discount_amount", "tax_amount", "total")}
    text = render_invoice_text(invoice, COMPANY, None, "https://app.example.com")
    assert "TOTAL DUE: $23.63" in text


def test_default_subject_uses_number_or_id_suffix():
    assert default_subject(INVOICE, COMPANY) == "Invoice #INV-1001 from Simply Studio"
    no_number = {**INVOICE, "invoice_number": None}
    assert default_subject(no_number, {}) == "Invoice #a7b8c9d0 from Your Company"


def test_new_user_notification_content():
    content = render_new_user_notification({"id": "u1", "email": "new@example.com", "display_name": None}, "user")
    assert content["subject"] == "New User Registered: new@example.com"
    assert "Name: Not provided" in content["text"]


def test_mailer_requires_configuration():
    with pytest.raises(EmailNotConfiguredError):
        SmtpMailer(Settings())


class FakeSMTP:
    instances = []
    fail_on = None
    error = None

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port
        self.messages = []
        self.logged_in = False
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, username, password):
        if FakeSMTP.fail_on == "login":
            raise FakeSMTP.error
        self.logged_in = True

    def send_message(self, msg):
        if FakeSMTP.fail_on == "send":
            raise FakeSMTP.error
        self.messages.append(msg)


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_on = None
    FakeSMTP.error = None
    monkeypatch.setattr(mailer.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def test_send_returns_message_id(settings, fake_smtp):
    message_id = SmtpMailer(settings).send("client@acme.test", "Invoice", "<p>hi</p>", "hi", from_name="Simply Studio")

    smtp = fake_smtp.instances[0]
    msg = smtp.messages[0]
    assert smtp.logged_in
    assert msg["Message-ID"] == message_id
    assert msg["To"] == "client@acme.test"
    assert msg["From"] == "Simply Studio <billing@studio.test>"
    assert msg.is_multipart()


@pytest.mark.parametrize("fail_on,error,category", [
    ("login", smtplib.SMTPAuthenticationError(535, b"bad credentials"), "auth"),
    ("send", smtplib.SMTPRecipientsRefused({"x@y.z": (550, b"no such user")}), "envelope"),
    ("send", smtplib.SMTPServerDisconnected("gone"), "other"),
])
def test_send_failures_are_categorised(settings, fake_smtp, fail_on, error, category):
    fake_smtp.fail_on = fail_on
    fake_smtp.error = error

    with pytest.raises(EmailDeliveryError) as exc:
        SmtpMailer(settings).send("x@y.z", "Invoice", "<p>hi</p>", "hi")

    assert exc.value.category == category


def test_user_messages_per_category():
    assert "authentication failed" in EmailDeliveryError("x", "auth").user_message()
    assert "sending limit" in EmailDeliveryError("x", "envelope").user_message()
    assert EmailDeliveryError("timeout").user_message() == "Email delivery failed: timeout"
