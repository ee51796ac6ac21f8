"""
Outbound customer notifications: SMTP email and WhatsApp Cloud API messages.

The notify_* methods are meant to run as background tasks; they log and
drop failures instead of raising.
"""
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import httpx
from starlette.concurrency import run_in_threadpool

from .config import Settings
from .logger import get_logger

logger = get_logger("notifications")

WHATSAPP_API_URL = "https://graph.facebook.com/v18.0"


class Notifier:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport

    @property
    def email_enabled(self) -> bool:
        s = self.settings
        return bool(s.smtp_user and s.smtp_password and (s.email_from or s.smtp_user))

    @property
    def whatsapp_enabled(self) -> bool:
        return bool(self.settings.whatsapp_token and self.settings.whatsapp_phone_number_id)

    # -------------------------------
    # Transports
    # -------------------------------
    def send_email(self, to: str, subject: str, html_content: str) -> None:
        s = self.settings
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = s.email_from or s.smtp_user
        msg["To"] = to
        msg.attach(MIMEText(html_content, "html"))

        server = smtplib.SMTP(s.smtp_server, s.smtp_port)
        try:
            server.starttls()
            server.login(s.smtp_user, s.smtp_password)
            server.send_message(msg)
        finally:
            server.quit()
        logger.info("Email sent to %s: %s", to, subject)

    async def send_whatsapp(self, to: str, text: str) -> Dict[str, Any]:
        s = self.settings
        url = f"{WHATSAPP_API_URL}/{s.whatsapp_phone_number_id}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "to": to.lstrip("+"),
            "type": "text",
            "text": {"body": text},
        }
        async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
            resp = await client.post(url, json=payload, headers={"Authorization": f"Bearer {s.whatsapp_token}"})
            resp.raise_for_status()
        logger.info("WhatsApp message sent to %s", to)
        return resp.json()

    # -------------------------------
    # Fire-and-forget helpers
    # -------------------------------
    async def _email(self, to: Optional[str], subject: str, html_content: str) -> None:
        if not to or not self.email_enabled:
            logger.debug("Email skipped (%s): not configured or no recipient", subject)
            return
        try:
            await run_in_threadpool(self.send_email, to, subject, html_content)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("Error sending email '%s' to %s: %s", subject, to, e)

    async def _whatsapp(self, to: Optional[str], text: str) -> None:
        if not to or not self.whatsapp_enabled:
            return
        try:
            await self.send_whatsapp(to, text)
        except httpx.HTTPError as e:
            logger.warning("Error sending WhatsApp message to %s: %s", to, e)

    async def notify_order_placed(self, order: Dict[str, Any], email: Optional[str]) -> None:
        summary = order.get("orderSummary") or {}
        number = order.get("orderNumber") or order.get("id")
        rows = "".join(
            f"<li>{i.get('name')} x {i.get('quantity')} = ₹{float(i.get('price', 0)) * int(i.get('quantity', 1)):.2f}</li>"
            for i in order.get("items") or []
        )
        html = (
            f"<h2>Thank you for your order #{number}</h2>"
            f"<ul>{rows}</ul>"
            f"<p>Total: ₹{float(summary.get('finalTotal', 0)):.2f}</p>"
        )
        await self._email(email, f"Order Confirmation #{number}", html)
        await self._email(self.settings.admin_email, f"New Order #{number}", html)
        phone = (order.get("shippingAddress") or {}).get("phone")
        await self._whatsapp(phone, f"Your Fragransia order #{number} has been placed. Total: ₹{float(summary.get('finalTotal', 0)):.2f}")

    async def notify_payment_confirmed(self, order: Dict[str, Any], email: Optional[str], payment_id: str) -> None:
        number = order.get("orderNumber") or order.get("id")
        await self._email(
            email,
            f"Payment Received #{number}",
            f"<p>We received your payment <strong>{payment_id}</strong> for order #{number}.</p>",
        )
        phone = (order.get("shippingAddress") or {}).get("phone")
        await self._whatsapp(phone, f"Payment received for order #{number}. We'll ship it soon!")

    async def notify_refund(self, email: Optional[str], payment_id: str, amount: float) -> None:
        await self._email(
            email,
            "Your refund has been initiated",
            f"<p>A refund of ₹{amount:.2f} for payment {payment_id} has been initiated.</p>",
        )

    async def notify_shipped(self, order: Dict[str, Any], email: Optional[str], awb_code: Optional[str]) -> None:
        number = order.get("orderNumber") or order.get("id")
        await self._email(
            email,
            f"Your order #{number} has shipped",
            f"<p>Your order is on its way. Tracking number: <strong>{awb_code or 'pending'}</strong></p>",
        )
        phone = (order.get("shippingAddress") or {}).get("phone")
        await self._whatsapp(phone, f"Order #{number} has shipped. AWB: {awb_code or 'pending'}")
