"""
Mailgun email service for sending dispatch notifications
"""
import asyncio
import logging
import os
from typing import Any, Dict, Optional

import aiohttp
from jinja2 import Environment, FileSystemLoader, select_autoescape

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
TEMPLATES_DIR = os.path.join(BASE_DIR, "templates")

env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(['html', 'xml'])
)

SUBJECT_MAP = {
    "low_stock_alert": "Low Stock Alert - {product_name}",
    "new_customer": "New Customer Registration - {customer_name}",
    "new_product": "New Product Created - {product_name}",
    "new_order": "New Order - {order_number}",
    "invoice": "Your Invoice - Order {order_number}",
}

TEMPLATE_MAP = {
    "low_stock_alert": "admin/low_stock_alert.html",
    "new_customer": "admin/new_customer.html",
    "new_product": "admin/new_product.html",
    "new_order": "admin/new_order.html",
    "invoice": "customer/invoice.html",
}


def render_email(template_name: str, context: dict) -> str:
    """Render Jinja2 template with context"""
    template = env.get_template(template_name)
    return template.render(**context)


class EmailService:
    """
    Sends templated mail through the Mailgun HTTP API.

    ``send`` returns False on any delivery problem instead of raising, so the
    caller decides whether a failed notification fails the event.
    """

    def __init__(
        self,
        api_key: str,
        domain: str,
        sender: str,
        api_base: str = "https://api.mailgun.net/v3",
        timeout: float = 30,
    ):
        self.api_key = api_key
        self.domain = domain
        self.sender = sender
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            api_key=settings.MAILGUN_API_KEY,
            domain=settings.MAILGUN_DOMAIN,
            sender=settings.mail_sender,
            api_base=settings.MAILGUN_API_BASE,
        )

    @property
    def messages_url(self) -> str:
        return f"{self.api_base}/{self.domain}/messages"

    async def send(self, to_email: str, mail_type: str, context: Optional[Dict[str, Any]] = None) -> bool:
        """
        Render ``mail_type`` and send it to ``to_email``.

        Returns:
            bool: True when Mailgun accepted the message
        """
        context = context or {}
        template_name = TEMPLATE_MAP.get(mail_type)
        if not template_name:
            logger.error(f"No template found for mail_type: {mail_type}")
            return False

        subject = SUBJECT_MAP[mail_type].format_map(_Defaults(context))
        html_body = render_email(template_name, context)
        data = {
            "from": self.sender,
            "to": [to_email],
            "subject": subject,
            "html": html_body,
            "text": context.get("text_body", subject),
        }

        logger.info(f"📤 Sending {mail_type} email via Mailgun to {to_email}...")
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.messages_url,
                    auth=aiohttp.BasicAuth("api", self.api_key),
                    data=data,
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status == 200:
                        logger.info(f"✅ {mail_type} email sent to {to_email}")
                        return True
                    error_text = await response.text()
                    logger.error(f"❌ Mailgun error ({response.status}): {error_text}")
                    return False
        except asyncio.TimeoutError:
            logger.error(f"❌ Mailgun request timed out sending {mail_type} to {to_email}")
            return False
        except aiohttp.ClientError as e:
            logger.error(f"❌ Mailgun request failed sending {mail_type} to {to_email}: {e}")
            return False

    async def send_admin_notification(self, admin_email: str, mail_type: str, context: Dict[str, Any]) -> bool:
        return await self.send(admin_email, mail_type, context)

    async def send_invoice_email(self, customer_email: str, context: Dict[str, Any]) -> bool:
        return await self.send(customer_email, "invoice", context)


class _Defaults(dict):
    """Leaves unknown subject placeholders blank instead of raising."""

    def __missing__(self, key):
        return ""
