"""
Reply pipeline: prompt building, OpenAI generation with a deterministic fallback, and
WhatsApp delivery with failures recorded in the ticket transcript.

Generation failure never blocks persistence or the webhook acknowledgment, and a delivery
failure never raises to the caller: the operator sees it as a system message instead.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from openai import OpenAI
from twilio.base.exceptions import TwilioRestException

import messaging_client
from activity_logging import EVENT_DELIVERY_FAILED, log_routing_event
from config import AI_TIMEOUT_SECONDS, OPENAI_API_KEY, OPENAI_MODEL, PROMPT_HISTORY_LIMIT
from ticket_messages import ROLE_SYSTEM, add_system_message, message_role

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_TEMPLATE = """You are Axion AI, a friendly, helpful WhatsApp assistant for {companyName}.
You are an AI assistant, NOT a human agent. Never claim to be a human agent.
You are chatting 1:1 with a real user over WhatsApp.
Always respond naturally, avoid generic replies like "Ok" or "Noted".
Be proactive: acknowledge what they said, add a bit of helpful context, and ask a simple follow-up question if it makes sense.
Keep replies short (1-3 sentences), friendly, and easy to read on a phone.

Here is the recent conversation history (oldest to newest):
{history}

Continue the conversation with your next message."""

# Provider error codes
QUOTA_EXCEEDED_CODE = 63038
RATE_LIMIT_STATUS = 429

FAILURE_QUOTA = "quota_exceeded"
FAILURE_RATE_LIMIT = "rate_limited"
FAILURE_UNKNOWN = "unknown"

CONTEXT_AI = "ai"
CONTEXT_AGENT = "agent"

# context -> (what failed, consequence for the operator)
_FAILURE_WORDING = {
    CONTEXT_AI: ("AI reply", "Customer may not have received the automated response."),
    CONTEXT_AGENT: ("agent message", "Customer may not have received your reply."),
}


def fallback_reply(original_message: str) -> str:
    return f'AI reply to "{original_message}"'


def format_history(messages: List[dict], limit: int = PROMPT_HISTORY_LIMIT) -> str:
    """Last `limit` non-system messages as "{from}: {body}" lines, oldest first."""
    conversation = [m for m in messages if message_role(m) != ROLE_SYSTEM][-limit:]
    return "\n".join(f"{m.get('from', '')}: {m.get('body', '')}" for m in conversation)


def build_prompt(company: dict, messages: List[dict]) -> str:
    template = company.get("aiPromptTemplate") or DEFAULT_PROMPT_TEMPLATE
    return (
        template
        .replace("{companyName}", company.get("name") or "our company")
        .replace("{history}", format_history(messages))
    )


def get_ai_client(company: dict) -> Optional[OpenAI]:
    """OpenAI client for the company key, else the deployment key, else None."""
    api_key = company.get("openaiApiKey") or OPENAI_API_KEY
    if not api_key:
        return None
    return OpenAI(api_key=api_key, timeout=AI_TIMEOUT_SECONDS, max_retries=0)


def generate_reply(company: dict, messages: List[dict], original_message: str, client=None) -> str:
    """Generate the next AI message. Any failure or empty output yields the fallback reply."""
    client = client or get_ai_client(company)
    if client is None:
        logger.warning("Company %s has no OpenAI key configured; using fallback AI reply text.", company.get("name"))
        return fallback_reply(original_message)
    try:
        response = client.chat.completions.create(
            model=OPENAI_MODEL,
            messages=[{"role": "user", "content": build_prompt(company, messages)}],
            temperature=0.7,
            max_tokens=300,
        )
        text = (response.choices[0].message.content or "").strip()
    except Exception as e:
        logger.error("Error calling OpenAI: %s", e)
        return fallback_reply(original_message)
    if not text:
        logger.warning("OpenAI response did not contain text; falling back to default reply.")
        return fallback_reply(original_message)
    return text


@dataclass(frozen=True)
class DeliveryFailure:
    kind: str
    code: str
    message: str
    status: Optional[int] = None

    def to_error(self) -> dict:
        error = {"code": self.code, "message": self.message}
        if self.status is not None:
            error["status"] = self.status
        return error


@dataclass(frozen=True)
class DeliveryResult:
    sent: bool
    sid: Optional[str] = None
    failure: Optional[DeliveryFailure] = None
    skipped: bool = False


def classify_delivery_error(exc: Exception) -> DeliveryFailure:
    """Hard daily quota, rate limit, or anything else (timeouts and transport errors included)."""
    code = getattr(exc, "code", None)
    status = getattr(exc, "status", None)
    message = (getattr(exc, "msg", None) if isinstance(exc, TwilioRestException) else None) or str(exc) or "Unknown messaging error"
    if code == QUOTA_EXCEEDED_CODE:
        return DeliveryFailure(FAILURE_QUOTA, str(code), message, status)
    if status == RATE_LIMIT_STATUS:
        return DeliveryFailure(FAILURE_RATE_LIMIT, str(code or RATE_LIMIT_STATUS), message, status)
    return DeliveryFailure(FAILURE_UNKNOWN, str(code) if code else "UNKNOWN", message, status)


def describe_failure(failure: DeliveryFailure, context: str) -> str:
    what, consequence = _FAILURE_WORDING.get(context, _FAILURE_WORDING[CONTEXT_AI])
    if failure.kind == FAILURE_QUOTA:
        body = f"❌ Failed to send {what} via WhatsApp: {failure.message}. {consequence}"
    elif failure.kind == FAILURE_RATE_LIMIT:
        body = f"❌ Failed to send {what} via WhatsApp: Rate limit exceeded. {consequence}"
    else:
        body = f"❌ Failed to send {what} via WhatsApp. {consequence}"
    return f"{body} Error Code: {failure.code}"


def deliver(db, tenant_id: str, ticket_ref, company: dict, to: str, body: str, context: str = CONTEXT_AI) -> DeliveryResult:
    """
    Send body to the customer. Unconfigured messaging is skipped. Failures are written to the
    ticket as a system message carrying the error code; nothing is raised.
    """
    client = messaging_client.get_messaging_client(company)
    if client is None:
        logger.warning("Company %s messaging not configured; stored %s but did not send it.", tenant_id, context)
        return DeliveryResult(sent=False, skipped=True)
    try:
        sid = messaging_client.send_whatsapp(client, company, to, body)
        logger.info("Sent %s to %s (sid=%s)", context, messaging_client.format_address(to), sid)
        return DeliveryResult(sent=True, sid=sid)
    except Exception as e:
        failure = classify_delivery_error(e)
        logger.error("Error sending %s via WhatsApp: kind=%s code=%s %s", context, failure.kind, failure.code, failure.message)

    prefix = "system-ai-twilio-error" if context == CONTEXT_AI else "system-twilio-error"
    try:
        add_system_message(ticket_ref, prefix, describe_failure(failure, context), error=failure.to_error())
    except Exception as e:
        logger.exception("Failed to store system error message for ticket %s: %s", ticket_ref.id, e)
    log_routing_event(
        db, tenant_id, EVENT_DELIVERY_FAILED, f"{context} delivery failed", ticket_ref.id,
        {"failure_kind": failure.kind, "error_code": failure.code, "error_status": failure.status, "context": context},
    )
    return DeliveryResult(sent=False, failure=failure)


def notify_customer(company: dict, to: str, body: str) -> bool:
    """Best-effort customer notice (takeover, agent joined, AI toggled). Failures are only logged."""
    client = messaging_client.get_messaging_client(company)
    if client is None or not to:
        return False
    try:
        messaging_client.send_whatsapp(client, company, to, body)
        return True
    except Exception as e:
        logger.error("Error sending customer notice via WhatsApp: %s", e)
        return False
