"""
Transactional email

Renders invoices as HTML and plain text and sends them over SMTP.
Send failures are mapped to EmailDeliveryError with a category the API
translates into a user-facing message:

    auth      - the SMTP server rejected the credentials
    envelope  - sender/recipient refused or sending limit hit
    other     - anything else (connection, protocol)
"""
import logging
import smtplib
from datetime import date, datetime
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from html import escape
from typing import Any, Dict, Optional

from calculator import compute_totals, to_decimal
from config import Settings

logger = logging.getLogger(__name__)


class EmailNotConfiguredError(Exception):
    pass


class EmailDeliveryError(Exception):
    def __init__(self, message: str, category: str = "other"):
        super().__init__(message)
        self.category = category

    def user_message(self) -> str:
        if self.category == "auth":
            return "Email authentication failed. Please check the email configuration."
        if self.category == "envelope":
            return "Invalid email address or sending limit exceeded."
        return f"Email delivery failed: {self}"


class SmtpMailer:
    def __init__(self, settings: Settings):
        if not settings.smtp_host or not settings.email_from:
            raise EmailNotConfiguredError(
                "Email credentials not configured. Set SMTP_HOST, SMTP_USERNAME, SMTP_PASSWORD and EMAIL_FROM."
            )
        self.settings = settings

    def build_message(self, to: str, subject: str, html: str, text: str, from_name: Optional[str] = None) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = formataddr((from_name or self.settings.email_from_name, self.settings.email_from))
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        msg["X-Priority"] = "1"
        msg["Importance"] = "high"
        msg.set_content(text)
        msg.add_alternative(html, subtype="html")
        return msg

    def send(self, to: str, subject: str, html: str, text: str, from_name: Optional[str] = None) -> str:
        """Send one message and return its Message-ID."""
        msg = self.build_message(to, subject, html, text, from_name)
        s = self.settings
        try:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=30) as smtp:
                if s.smtp_use_tls:
                    smtp.starttls()
                if s.smtp_username and s.smtp_password:
                    smtp.login(s.smtp_username, s.smtp_password)
                smtp.send_message(msg)
        except smtplib.SMTPAuthenticationError as e:
            raise EmailDeliveryError(str(e), "auth") from e
        except (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused, smtplib.SMTPDataError) as e:
            raise EmailDeliveryError(str(e), "envelope") from e
        except (smtplib.SMTPException, OSError) as e:
            raise EmailDeliveryError(str(e), "other") from e
        return msg["Message-ID"]


# -------------------- Rendering --------------------

def money(value: Any) -> str:
    return f"${float(to_decimal(value)):,.2f}"


def _num(value: Any) -> str:
    return f"{float(to_decimal(value)):g}"


def _long_date(value: Any) -> str:
    if isinstance(value, str) and value:
        try:
            value = date.fromisoformat(value[:10])
        except ValueError:
            return value
    if isinstance(value, (date, datetime)):
        return value.strftime("%A, %B %d, %Y").replace(" 0", " ")
    return "N/A"


def invoice_label(invoice: Dict[str, Any]) -> str:
    return invoice.get("invoice_number") or (invoice.get("id") or "")[-8:] or "N/A"


def default_subject(invoice: Dict[str, Any], company: Dict[str, Any]) -> str:
    return f"Invoice #{invoice_label(invoice)} from {company.get('name') or 'Your Company'}"


def _summary(invoice: Dict[str, Any]) -> Dict[str, Any]:
    computed = compute_totals(invoice.get("items") or [], invoice.get("discount") or 0, invoice.get("tax_rate") or 0).rounded()
    return {
        "subtotal": invoice.get("subtotal", computed.subtotal),
        "discount": invoice.get("discount") or 0,
        "discount_amount": invoice.get("discount_amount", computed.discount_amount),
        "tax_amount": invoice.get("tax_amount", computed.tax_amount),
        "total": invoice.get("total", computed.total),
    }


def render_invoice_html(invoice: Dict[str, Any], company: Dict[str, Any], message: Optional[str], app_url: str) -> str:
    totals = _summary(invoice)
    rows = "".join(
        f"<tr><td>{escape(str(i.get('description', '')))}</td>"
        f"<td style='text-align:center'>{_num(i.get('quantity'))}</td>"
        f"<td style='text-align:right'>{money(i.get('price'))}</td>"
        f"<td style='text-align:right'>{money(to_decimal(i.get('quantity')) * to_decimal(i.get('price')))}</td></tr>"
        for i in invoice.get("items") or []
    )
    from_lines = "".join(
        f"<p>{escape(str(company[k]))}</p>" for k in ("email", "address", "phone") if company.get(k)
    )
    bill_lines = "".join(
        f"<p>{escape(str(invoice[k]))}</p>" for k in ("client_email", "client_address", "client_phone") if invoice.get(k)
    )
    body = escape(message).replace("\n", "<br>") if message else "Please find your invoice details below. We appreciate your prompt payment."
    discount_row = (
        f"<tr><td>Discount ({_num(totals['discount'])}%):</td><td style='text-align:right'>-{money(totals['discount_amount'])}</td></tr>"
        if to_decimal(totals["discount"]) > 0 else ""
    )
    tax_row = (
        f"<tr><td>Tax:</td><td style='text-align:right'>{money(totals['tax_amount'])}</td></tr>"
        if to_decimal(totals["tax_amount"]) > 0 else ""
    )
    notes = f"<div class='notes'><strong>Additional Notes:</strong><p>{escape(invoice['notes'])}</p></div>" if invoice.get("notes") else ""
    terms = f"<div class='terms'><strong>Terms &amp; Conditions:</strong><p>{escape(invoice['terms'])}</p></div>" if invoice.get("terms") else ""
    link = f"{app_url.rstrip('/')}/invoices/{invoice.get('id', '')}"

    return f"""<!DOCTYPE html>
<html><head><meta charset='utf-8'><title>Invoice #{escape(invoice_label(invoice))}</title>
<style>body{{font-family:'Segoe UI',Arial,sans-serif;color:#333;background:#f8f9fa}} .container{{max-width:700px;margin:0 auto;background:#fff}} table{{width:100%;border-collapse:collapse}} td,th{{border-bottom:1px solid #e0e0e0;padding:12px}} .grand-total td{{font-weight:700}}</style>
</head><body><div class='container'>
<h1>INVOICE</h1><p>#{escape(invoice_label(invoice))}</p>
<div class='from'><h3>FROM:</h3><p><strong>{escape(company.get('name') or 'Your Company')}</strong></p>{from_lines}</div>
<div class='bill-to'><h3>BILL TO:</h3><p><strong>{escape(invoice.get('client_name') or '')}</strong></p>{bill_lines}</div>
<div class='due-date'><strong>Payment Due:</strong> {_long_date(invoice.get('due_date'))}</div>
<div class='message'><p><strong>Dear {escape(invoice.get('client_name') or 'Customer')},</strong></p><p>{body}</p></div>
<table><thead><tr><th>Description</th><th>Quantity</th><th>Unit Price</th><th>Amount</th></tr></thead><tbody>{rows}</tbody></table>
<table class='totals'>
<tr><td>Subtotal:</td><td style='text-align:right'>{money(totals['subtotal'])}</td></tr>
{discount_row}{tax_row}
<tr class='grand-total'><td>TOTAL DUE:</td><td style='text-align:right'>{money(totals['total'])}</td></tr>
</table>
{notes}{terms}
<p style='text-align:center'><a href='{escape(link)}'>View Online Invoice</a></p>
<p class='footer'>If you have any questions about this invoice, please contact {escape(company.get('email') or 'the sender')}.</p>
</div></body></html>"""


def render_invoice_text(invoice: Dict[str, Any], company: Dict[str, Any], message: Optional[str], app_url: str) -> str:
    totals = _summary(invoice)
    items = "\n".join(
        f"- {i.get('description', '')} - {_num(i.get('quantity'))} x {money(i.get('price'))} = "
        f"{money(to_decimal(i.get('quantity')) * to_decimal(i.get('price')))}"
        for i in invoice.get("items") or []
    )
    lines = [
        f"INVOICE #{invoice_label(invoice)}",
        "=" * 42,
        "",
        f"FROM: {company.get('name') or 'Your Company'}",
    ]
    if company.get("email"):
        lines.append(f"Email: {company['email']}")
    lines += [
        "",
        f"BILL TO: {invoice.get('client_name') or ''}",
        f"Email: {invoice.get('client_email') or ''}",
        "",
        f"DUE DATE: {_long_date(invoice.get('due_date'))}",
        "",
        message or "Please find your invoice details below. We appreciate your prompt payment.",
        "",
        "ITEMS:",
        items,
        "",
        "SUMMARY:",
        f"Subtotal: {money(totals['subtotal'])}",
    ]
    if to_decimal(totals["discount"]) > 0:
        lines.append(f"Discount ({_num(totals['discount'])}%): -{money(totals['discount_amount'])}")
    if to_decimal(totals["tax_amount"]) > 0:
        lines.append(f"Tax: {money(totals['tax_amount'])}")
    lines.append(f"TOTAL DUE: {money(totals['total'])}")
    if invoice.get("notes"):
        lines += ["", f"Notes: {invoice['notes']}"]
    lines += [
        "",
        f"View online: {app_url.rstrip('/')}/invoices/{invoice.get('id', '')}",
        "",
        "Thank you for your business!",
        "=" * 42,
    ]
    return "\n".join(lines)


def render_new_user_notification(user: Dict[str, Any], role: str) -> Dict[str, str]:
    name = user.get("display_name") or "Not provided"
    subject = f"New User Registered: {user.get('display_name') or user.get('email')}"
    text = "\n".join([
        "NEW USER REGISTERED",
        "=" * 34,
        f"Name: {name}",
        f"Email: {user.get('email')}",
        f"User ID: {user.get('id')}",
        f"Role: {role}",
    ])
    html = (
        "<html><body><h1>New User Registered</h1><ul>"
        f"<li><strong>Name:</strong> {escape(name)}</li>"
        f"<li><strong>Email:</strong> {escape(str(user.get('email')))}</li>"
        f"<li><strong>User ID:</strong> <code>{escape(str(user.get('id')))}</code></li>"
        f"<li><strong>Role:</strong> {escape(role)}</li>"
        "</ul></body></html>"
    )
    return {"subject": subject, "text": text, "html": html}
