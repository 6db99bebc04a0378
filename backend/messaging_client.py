"""
Twilio WhatsApp client per company. Credentials live on the company document.
"""

import logging
from typing import Optional

from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from config import TWILIO_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"


def format_address(number: str) -> str:
    """Idempotently add the whatsapp: prefix Twilio expects on both ends."""
    number = (number or "").strip()
    return number if number.startswith(WHATSAPP_PREFIX) else f"{WHATSAPP_PREFIX}{number}"


def normalize_customer_id(sender: str) -> str:
    """Stable customer id: the sender address without the channel prefix."""
    sender = (sender or "").strip()
    return sender[len(WHATSAPP_PREFIX):] if sender.startswith(WHATSAPP_PREFIX) else sender


def is_configured(company: dict) -> bool:
    return bool(company.get("twilioAccountSid") and company.get("twilioAuthToken") and company.get("twilioPhoneNumber"))


def get_messaging_client(company: dict) -> Optional[Client]:
    """Twilio client bound to the company's account, or None when messaging is not configured."""
    if not is_configured(company):
        return None
    return Client(
        company["twilioAccountSid"],
        company["twilioAuthToken"],
        http_client=TwilioHttpClient(timeout=TWILIO_TIMEOUT_SECONDS),
    )


def send_whatsapp(client, company: dict, to: str, body: str) -> str:
    """Send one message; returns the provider sid. Provider errors propagate to the caller."""
    from_number = format_address(company["twilioPhoneNumber"])
    to_number = format_address(to)
    logger.info("Sending WhatsApp: %s -> %s", from_number, to_number)
    msg = client.messages.create(body=body, from_=from_number, to=to_number)
    return msg.sid
