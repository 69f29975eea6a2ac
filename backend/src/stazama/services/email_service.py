"""SendGrid email delivery for payment receipts.

Uses asyncio.to_thread to wrap the synchronous SendGrid client.
"""

import asyncio
import base64
import html
import logging
from typing import Optional

import sendgrid
from sendgrid.helpers.mail import (
    Attachment,
    Disposition,
    Email,
    FileContent,
    FileName,
    FileType,
    HtmlContent,
    Mail,
    To,
)

logger = logging.getLogger(__name__)


def _get_config():
    """Get email config from app settings (lazy to avoid import-time issues)."""
    from stazama.app.config import get_settings
    s = get_settings()
    return s.sendgrid_api_key, s.receipt_from_email


def _get_client() -> sendgrid.SendGridAPIClient:
    api_key, _ = _get_config()
    return sendgrid.SendGridAPIClient(api_key=api_key)


def _format_amount(value) -> str:
    try:
        return f"MWK {float(value):,.2f}"
    except (ValueError, TypeError):
        return "MWK 0.00"


def _build_receipt_html(receipt: dict) -> str:
    """Receipt email body. ``receipt`` is the JSON receipt document."""
    rows = [
        ("Receipt Number", receipt.get("receipt_number")),
        ("Transaction ID", receipt.get("transaction_id")),
        ("Date", f"{receipt.get('date')} {receipt.get('time')}"),
        ("Customer", receipt.get("customer_name")),
        ("Service", receipt.get("service_details")),
        ("Amount", _format_amount(receipt.get("amount"))),
        ("Payment Method", receipt.get("payment_method")),
    ]
    row_html = "".join(
        f'<tr><td style="padding: 6px 12px; color: #6b7280;">{html.escape(label)}</td>'
        f'<td style="padding: 6px 12px; color: #111827;">{html.escape(str(value or "N/A"))}</td></tr>'
        for label, value in rows
    )
    code = html.escape(str(receipt.get("verification_code", "")))
    return f"""
<!DOCTYPE html>
<html lang="en">
<body style="margin: 0; padding: 24px; background-color: #f3f4f6; font-family: Arial, sans-serif;">
    <table role="presentation" width="600" cellpadding="0" cellspacing="0" style="background-color: #ffffff; border-radius: 8px;">
        <tr>
            <td style="background-color: #1e3a8a; padding: 24px; color: #ffffff;">
                <strong style="font-size: 20px;">STAZAMA</strong><br>
                Official Payment Receipt
            </td>
        </tr>
        <tr><td><table role="presentation" width="100%">{row_html}</table></td></tr>
        <tr>
            <td style="padding: 16px 12px;">
                Verification code: <strong style="font-size: 18px;">{code}</strong><br>
                <span style="color: #6b7280; font-size: 12px;">This code verifies the authenticity of your receipt.</span>
            </td>
        </tr>
    </table>
</body>
</html>
"""


def _send_mail(mail: Mail) -> bool:
    """Synchronous send via SendGrid. Returns True on success."""
    client = _get_client()
    response = client.send(mail)
    if response.status_code in (200, 201, 202):
        return True
    logger.error(
        "SendGrid returned status %s: %s",
        response.status_code,
        response.body,
    )
    return False


async def send_receipt_email(
    email: str,
    receipt: dict,
    pdf_bytes: Optional[bytes] = None,
) -> bool:
    """Email a receipt, attaching the PDF when one is provided.

    Returns:
        True on success, False on failure or when SendGrid is not configured.
    """
    api_key, from_email = _get_config()
    if not api_key:
        logger.warning("SENDGRID_API_KEY not set, skipping receipt email to %s", email)
        return False

    try:
        mail = Mail(
            from_email=Email(from_email, "Stazama Receipts"),
            to_emails=To(email),
            subject=f"Your Stazama receipt {receipt.get('receipt_number', '')}".strip(),
            html_content=HtmlContent(_build_receipt_html(receipt)),
        )
        if pdf_bytes:
            mail.attachment = Attachment(
                FileContent(base64.b64encode(pdf_bytes).decode()),
                FileName(f"stazama-receipt-{receipt.get('receipt_number')}.pdf"),
                FileType("application/pdf"),
                Disposition("attachment"),
            )
        result = await asyncio.to_thread(_send_mail, mail)
        if result:
            logger.info("Receipt %s emailed to %s", receipt.get("receipt_number"), email)
        return result
    except Exception:
        logger.exception("Failed to send receipt email to %s", email)
        return False
