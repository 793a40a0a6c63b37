"""Purchase receipt emails.

Sending is best-effort: every failure is logged and reported as ``False`` so a
captured payment is never undone by a mail problem.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from email.message import EmailMessage
from html import escape
from typing import Protocol

import aiosmtplib
from loguru import logger

from talentvote.core.config import Settings
from talentvote.domain import PurchaseReceipt


class ReceiptNotifier(Protocol):
    def send_purchase_receipt(self, receipt: PurchaseReceipt) -> bool:
        """Send the receipt; return whether it was handed to the mail server."""


def render_receipt_html(receipt: PurchaseReceipt, *, brand: str) -> str:
    rows = "".join(
        f"<tr><td>{escape(description)}</td><td align=\"right\">{escape(amount)}</td></tr>"
        for description, amount in receipt.items
    )
    if receipt.tax:
        rows += f"<tr><td>Sales Tax</td><td align=\"right\">{escape(receipt.tax)}</td></tr>"
    rows += f"<tr><td><strong>Total</strong></td><td align=\"right\"><strong>{escape(receipt.total)}</strong></td></tr>"

    context_line = ""
    if receipt.competition_name:
        context_line = f"<p>Competition: <strong>{escape(receipt.competition_name)}</strong>"
        if receipt.contestant_name:
            context_line += f" | Contestant: <strong>{escape(receipt.contestant_name)}</strong>"
        context_line += "</p>"

    purchased_on = datetime.now(timezone.utc).strftime("%B %d, %Y")
    return (
        "<!DOCTYPE html><html><body>"
        f"<h1>{escape(brand)}</h1>"
        "<h2>Purchase Receipt</h2>"
        f"<p>Hi {escape(receipt.buyer_name)}, thank you for your purchase!</p>"
        f"{context_line}"
        f"<table width=\"100%\">{rows}</table>"
        f"<p>Transaction ID: {escape(receipt.transaction_id)}</p>"
        f"<p>Date: {purchased_on}</p>"
        "<p>If you have questions about this purchase, please contact us.</p>"
        "</body></html>"
    )


class SmtpReceiptNotifier:
    """Deliver receipts through an SMTP relay (Gmail by default)."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def configured(self) -> bool:
        s = self._settings
        return bool(s.smtp_host and s.mail_from_address)

    def build_message(self, receipt: PurchaseReceipt) -> EmailMessage:
        s = self._settings
        message = EmailMessage()
        message["From"] = f"{s.mail_from_name} <{s.mail_from_address}>"
        message["To"] = receipt.to
        message["Subject"] = f"Your {s.mail_from_name} Purchase Receipt"
        message.set_content(
            f"Hi {receipt.buyer_name}, thank you for your purchase.\n"
            f"Total: {receipt.total}\nTransaction ID: {receipt.transaction_id}\n"
        )
        message.add_alternative(render_receipt_html(receipt, brand=s.mail_from_name), subtype="html")
        return message

    async def _deliver(self, message: EmailMessage) -> None:
        s = self._settings
        await aiosmtplib.send(
            message,
            hostname=s.smtp_host,
            port=s.smtp_port,
            username=s.smtp_username,
            password=s.smtp_password,
            start_tls=s.smtp_use_tls,
        )

    def send_purchase_receipt(self, receipt: PurchaseReceipt) -> bool:
        if not self.configured:
            logger.warning("SMTP not configured; skipping receipt for transaction {}", receipt.transaction_id)
            return False
        try:
            # Handlers calling this run in the worker threadpool, which has no event loop.
            asyncio.run(self._deliver(self.build_message(receipt)))
        except (aiosmtplib.SMTPException, OSError, RuntimeError) as exc:
            logger.warning(
                "Failed to send receipt email for transaction {}: {}",
                receipt.transaction_id,
                exc,
            )
            return False
        logger.info("Receipt email sent to {}", receipt.to)
        return True


__all__ = ["ReceiptNotifier", "SmtpReceiptNotifier", "render_receipt_html"]
