"""Invoice emailing and mail configuration checks.

Invoices are sent as a link to their public share page, so emailing an
invoice enables sharing on it. Every attempt is audited, success as
`invoice_emailed` and failure as `email_failed`.
"""

import logging
from datetime import datetime
from html import escape
from typing import Any, Dict, Optional

from sqlmodel import Session

from . import mailer, models, repositories
from .errors import GatewayError, ValidationError
from .services import AuditService, DocumentService, require_admin
from .utils.money import fmt

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "Email service not configured. Please add RESEND_API_KEY to your environment variables."

_LAYOUT = """<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"><title>{title}</title></head>
  <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto;">
    <h1 style="font-size: 24px;">{heading}</h1>
    {content}
    <hr style="border: none; border-top: 1px solid #e5e7eb; margin: 30px 0;">
    <p style="color: #9ca3af; font-size: 12px;">{footer}</p>
  </body>
</html>"""


def _footer(org: models.Organization) -> str:
    footer = f"This is an automated email from {escape(org.name)}."
    if org.email:
        footer += f"<br>For questions, contact us at {escape(org.email)}"
    return footer


def invoice_email(org: models.Organization, doc: models.ARDocument, message: str, share_url: str,
                  subject: str) -> Dict[str, str]:
    """Render the HTML and plain-text bodies of an invoice email."""
    url = escape(share_url, quote=True)
    content = (
        f'<h2>Invoice {escape(doc.document_number)}</h2>'
        f'<p style="white-space: pre-wrap;">{escape(message)}</p>'
        f'<p><strong>Invoice Number:</strong> {escape(doc.document_number)}<br>'
        f'<strong>Amount:</strong> {fmt(doc.total_amount)}<br>'
        f'<strong>Balance Due:</strong> {fmt(doc.balance_due)}</p>'
        f'<p><a href="{url}">View &amp; Pay Invoice</a></p>'
        f'<p style="font-size: 14px;">You can also copy and paste this link into your browser:<br>{url}</p>'
    )
    html = _LAYOUT.format(title=escape(subject), heading=escape(org.name), content=content, footer=_footer(org))
    lines = [
        message,
        "",
        "Invoice Details:",
        f"- Invoice Number: {doc.document_number}",
        f"- Amount: {fmt(doc.total_amount)}",
        f"- Balance Due: {fmt(doc.balance_due)}",
        "",
        "View and pay your invoice online:",
        share_url,
        "",
        "---",
        f"This is an automated email from {org.name}.",
    ]
    if org.email:
        lines.append(f"For questions, contact us at {org.email}")
    return {"html": html, "text": "\n".join(lines)}


class EmailService:
    def __init__(self, session: Session):
        self.session = session
        self.org_repo = repositories.OrganizationRepository(session)
        self.documents = DocumentService(session)
        self.customer_repo = repositories.CustomerRepository(session)
        self.audit = AuditService(session)

    def config_status(self, user: models.User) -> Dict[str, Any]:
        require_admin(user, "view email configuration")
        return mailer.config_status()

    def send_invoice(self, user: models.User, document_id: int, to: str, subject: str,
                     message: str) -> Dict[str, Any]:
        if not mailer.is_configured():
            raise ValidationError(NOT_CONFIGURED)
        require_admin(user, "send invoices")
        doc = self.documents.get(user, document_id)
        if doc.document_type != models.DocumentType.INVOICE:
            raise ValidationError("Only invoices can be emailed")
        share_url = self.documents.generate_share_link(user, doc.id)["share_url"]
        org = self.org_repo.get(user.organization_id)
        bodies = invoice_email(org, doc, message, share_url, subject)
        try:
            sent = mailer.client().send(to, subject, bodies["html"], text=bodies["text"],
                                        reply_to=org.email or None)
        except mailer.EmailError as exc:
            self.audit.record(
                user, user.organization_id, "email_failed", "document", doc.id,
                f"Failed to email invoice {doc.document_number} to {to}: {exc}",
                {"invoice_number": doc.document_number, "recipient_email": to, "error": str(exc)},
            )
            logger.warning("invoice email failed document=%s to=%s: %s", doc.document_number, to, exc)
            raise GatewayError(f"Failed to send email: {exc}") from exc
        customer = self.customer_repo.get(user.organization_id, doc.customer_id)
        recipient = customer.company_name if customer else to
        self.audit.record(
            user, user.organization_id, "invoice_emailed", "document", doc.id,
            f"Emailed invoice {doc.document_number} to {recipient} ({to})",
            {"invoice_number": doc.document_number, "recipient_email": to, "email_id": sent.get("id")},
        )
        return {"success": True, "email_id": sent.get("id"), "share_url": share_url}

    def send_test(self, user: models.User, to: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        require_admin(user, "test email configuration")
        if not mailer.is_configured():
            raise ValidationError(NOT_CONFIGURED)
        org = self.org_repo.get(user.organization_id)
        stamp = (now or models.utcnow()).strftime("%Y-%m-%d %H:%M UTC")
        content = (
            "<h2>Success!</h2><p>Your email service is properly configured and working.</p>"
            f"<p><strong>Organization:</strong> {escape(org.name)}<br>"
            f"<strong>From Email:</strong> {escape(mailer.config_status()['from_email'])}<br>"
            f"<strong>Test Date:</strong> {stamp}</p>"
        )
        subject = f"Test Email from {org.name}"
        html = _LAYOUT.format(title=escape(subject), heading="Email Configuration Test", content=content,
                              footer=f"This is an automated test email from {escape(org.name)}.")
        try:
            sent = mailer.client().send(to, subject, html)
        except mailer.EmailError as exc:
            raise GatewayError(f"Failed to send test email: {exc}") from exc
        return {"success": True, "email_id": sent.get("id")}
