"""
Per-request routing: glue between the webhook/agent endpoints and the routing components.

Inbound customer message:
    resolve ticket -> store message -> re-read ticket -> presence -> handoff decision
    -> (takeover notice) -> generate -> store AI message -> deliver
Agent message:
    join notice / AI switch-off -> store agent message -> deliver

Validation errors raise HTTPException before anything is written. Ticket and message writes
propagate store failures; notices, audit events and delivery failures are best-effort.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import HTTPException
from firebase_admin import firestore

import reply_pipeline
from activity_logging import (
    EVENT_AGENT_JOINED,
    EVENT_AI_DISABLED,
    EVENT_AI_REPLIED,
    EVENT_AI_SUPPRESSED,
    EVENT_AI_TAKEOVER,
    EVENT_AI_TOGGLED,
    EVENT_PRESENCE_CORRECTED,
    log_routing_event,
)
from assignment import RespondentAssignee, assignee_from_ticket
from config import AGENT_JOIN_HISTORY_LIMIT, AI_AGENT_NAME, PROMPT_HISTORY_LIMIT, TAKEOVER_HISTORY_LIMIT
from handoff import (
    AGENT_JOIN_NOTICE,
    NOTICE_AGENT_JOINED,
    NOTICE_AI_TAKEOVER,
    TAKEOVER_NOTICE,
    DisableAi,
    HandoffState,
    SendAgentJoinNotice,
    SendTakeoverNotice,
    decide_agent_message,
    decide_inbound,
)
from messaging_client import is_configured, normalize_customer_id
from presence import ai_wait_minutes, check_presence, find_respondent
from ticket_messages import (
    ROLE_AGENT,
    ROLE_AI,
    add_message,
    add_system_message,
    load_conversation,
    load_recent_messages,
    record_inbound_message,
    tickets_ref,
)
from ticket_resolver import resolve_ticket
from utils import attribute_body, utcnow

logger = logging.getLogger(__name__)

AI_ON_NOTICE = "Axion AI assistant has been turned ON. You may receive automated replies."
AI_OFF_NOTICE = "Axion AI assistant has been turned OFF. You are now chatting with a human agent."
NOTICE_AI_TOGGLED = "ai_toggled"


@dataclass
class InboundOutcome:
    ticket_id: str
    created: bool
    state: HandoffState
    ai_replied: bool = False
    takeover_notice: bool = False
    delivery: Optional[reply_pipeline.DeliveryResult] = None


@dataclass
class AgentOutcome:
    ticket_id: str
    message_id: str
    agent_joined: bool = False
    ai_disabled: bool = False
    delivery: Optional[reply_pipeline.DeliveryResult] = None


def load_company(db, tenant_id: str) -> dict:
    if not tenant_id:
        raise HTTPException(status_code=400, detail="tenantId is required")
    doc = db.collection("companies").document(tenant_id).get()
    if not doc.exists:
        raise HTTPException(status_code=404, detail="Company not found")
    return doc.to_dict() or {}


def load_ticket(db, tenant_id: str, ticket_id: str):
    if not ticket_id:
        raise HTTPException(status_code=400, detail="ticketId is required")
    ref = tickets_ref(db, tenant_id).document(ticket_id)
    doc = ref.get()
    if not doc.exists:
        raise HTTPException(status_code=404, detail="Ticket not found")
    return ref, doc.to_dict() or {}


def _assigned_presence(db, tenant_id: str, company: dict, ticket_id: str, ticket: dict, now: datetime) -> Optional[bool]:
    """Effective presence of the assigned respondent; None when not assigned to one or unknown."""
    assignee = assignee_from_ticket(ticket)
    if not isinstance(assignee, RespondentAssignee):
        return None
    ref, respondent = find_respondent(db, tenant_id, assignee.email)
    if ref is None:
        logger.warning("Assigned respondent %s not found for ticket %s; AI will respond", assignee.email, ticket_id)
        return None
    status = check_presence(ref, respondent, ai_wait_minutes(company), now=now)
    if status.needs_correction:
        log_routing_event(
            db, tenant_id, EVENT_PRESENCE_CORRECTED, f"{assignee.email} marked offline", ticket_id,
            {"respondent_email": assignee.email, "minutes_since_seen": int(status.minutes_since_seen or 0)},
        )
    return status.online


def _send_takeover_notice(db, tenant_id: str, ticket_ref, company: dict, customer_id: str, effect: SendTakeoverNotice) -> None:
    logger.info("Sending AI takeover notice for ticket %s: %s", ticket_ref.id, effect.reason)
    try:
        add_system_message(ticket_ref, "system-ai-takeover", TAKEOVER_NOTICE, notice=NOTICE_AI_TAKEOVER)
    except Exception as e:
        logger.exception("Failed to store takeover notice for ticket %s: %s", ticket_ref.id, e)
        return
    reply_pipeline.notify_customer(company, customer_id, TAKEOVER_NOTICE)
    log_routing_event(db, tenant_id, EVENT_AI_TAKEOVER, "AI takeover notice sent", ticket_ref.id, {"reason": effect.reason})


def handle_inbound_message(
    db,
    tenant_id: str,
    message: Optional[str],
    sender: Optional[str],
    message_id: Optional[str],
    now: Optional[datetime] = None,
) -> InboundOutcome:
    if not message or not sender or not message_id:
        raise HTTPException(status_code=400, detail="Missing required fields: message, from, id")
    company = load_company(db, tenant_id)
    now = now or utcnow()

    customer_id = normalize_customer_id(sender)
    resolved = resolve_ticket(db, tenant_id, customer_id, now=now)
    ticket_ref = resolved.ref

    record_inbound_message(ticket_ref, message_id, customer_id, message)
    ticket_ref.update({"lastMessage": message, "updatedAt": firestore.SERVER_TIMESTAMP})
    logger.info("Stored inbound message %s on ticket %s", message_id, resolved.id)

    # Assignment and the AI flag may have changed since resolution
    ticket = ticket_ref.get().to_dict() or {}
    respondent_online = _assigned_presence(db, tenant_id, company, resolved.id, ticket, now)
    messages = load_recent_messages(ticket_ref, TAKEOVER_HISTORY_LIMIT)
    decision = decide_inbound(company, ticket, respondent_online, messages, now=now)
    outcome = InboundOutcome(ticket_id=resolved.id, created=resolved.created, state=decision.state)

    if not decision.ai_should_respond:
        logger.info("AI suppressed for ticket %s: %s", resolved.id, decision.reason)
        log_routing_event(
            db, tenant_id, EVENT_AI_SUPPRESSED, "AI reply suppressed", resolved.id,
            {"state": decision.state.value, "reason": decision.reason, "assigned_to": ticket.get("assignedTo")},
        )
        return outcome

    logger.info("AI responding on ticket %s: %s", resolved.id, decision.reason)
    for effect in decision.effects:
        if isinstance(effect, SendTakeoverNotice):
            _send_takeover_notice(db, tenant_id, ticket_ref, company, customer_id, effect)
            outcome.takeover_notice = True

    conversation = load_conversation(ticket_ref, PROMPT_HISTORY_LIMIT)
    reply = reply_pipeline.generate_reply(company, conversation, message)
    ai_body = attribute_body(reply, AI_AGENT_NAME, company)
    add_message(ticket_ref, "ai", AI_AGENT_NAME, ROLE_AI, ai_body)
    ticket_ref.update({"lastMessage": ai_body, "updatedAt": firestore.SERVER_TIMESTAMP})

    outcome.delivery = reply_pipeline.deliver(db, tenant_id, ticket_ref, company, customer_id, ai_body, reply_pipeline.CONTEXT_AI)
    outcome.ai_replied = True
    log_routing_event(
        db, tenant_id, EVENT_AI_REPLIED, "AI replied", resolved.id,
        {"state": decision.state.value, "reason": decision.reason},
    )
    return outcome


def handle_agent_message(
    db,
    tenant_id: str,
    ticket_id: str,
    body: str,
    sender_name: Optional[str] = None,
    sender_email: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AgentOutcome:
    """A human reply from the dashboard: store it, apply handoff effects, send it to the customer."""
    if not body:
        raise HTTPException(status_code=400, detail="body is required")
    company = load_company(db, tenant_id)
    ticket_ref, ticket = load_ticket(db, tenant_id, ticket_id)
    now = now or utcnow()
    customer_id = ticket.get("customerId")

    history = load_recent_messages(ticket_ref, AGENT_JOIN_HISTORY_LIMIT)
    effects = decide_agent_message(company, ticket, sender_email, history, now=now)
    agent_joined = any(isinstance(e, SendAgentJoinNotice) for e in effects)
    ai_disabled = any(isinstance(e, DisableAi) for e in effects)

    for effect in effects:
        if isinstance(effect, SendAgentJoinNotice):
            logger.info("Agent joined ticket %s: %s", ticket_id, effect.reason)
            try:
                add_system_message(ticket_ref, "system-agent-joined", AGENT_JOIN_NOTICE, notice=NOTICE_AGENT_JOINED)
            except Exception as e:
                logger.exception("Failed to store agent-joined notice for ticket %s: %s", ticket_id, e)
            reply_pipeline.notify_customer(company, customer_id, AGENT_JOIN_NOTICE)
            log_routing_event(
                db, tenant_id, EVENT_AGENT_JOINED, "Agent joined the chat", ticket_id,
                {"reason": effect.reason, "respondent_email": sender_email},
            )

    sender = sender_name or (sender_email or "").split("@")[0] or "Agent"
    stored_body = attribute_body(body, sender, company)
    message_id = add_message(ticket_ref, "agent", sender, ROLE_AGENT, stored_body, userEmail=sender_email)

    updates = {"lastMessage": stored_body, "updatedAt": firestore.SERVER_TIMESTAMP}
    if ai_disabled:
        updates["aiEnabled"] = False
    ticket_ref.update(updates)
    if ai_disabled:
        logger.info("AI disabled on ticket %s: assigned respondent %s took over", ticket_id, sender_email)
        log_routing_event(db, tenant_id, EVENT_AI_DISABLED, "AI disabled by assignee reply", ticket_id, {"respondent_email": sender_email})

    outcome = AgentOutcome(ticket_id=ticket_id, message_id=message_id, agent_joined=agent_joined, ai_disabled=ai_disabled)
    if not customer_id:
        logger.warning("Ticket %s has no customerId; agent message stored but not sent", ticket_id)
        return outcome
    outcome.delivery = reply_pipeline.deliver(db, tenant_id, ticket_ref, company, customer_id, stored_body, reply_pipeline.CONTEXT_AGENT)
    return outcome


def toggle_ai(db, tenant_id: str, ticket_id: str, enable: bool) -> dict:
    """Operator switch for the automated agent on one ticket. The customer is told either way."""
    company = load_company(db, tenant_id)
    ticket_ref, ticket = load_ticket(db, tenant_id, ticket_id)
    ticket_ref.update({"aiEnabled": bool(enable), "updatedAt": firestore.SERVER_TIMESTAMP})

    notice = AI_ON_NOTICE if enable else AI_OFF_NOTICE
    try:
        add_system_message(ticket_ref, "system-ai-toggle", notice, notice=NOTICE_AI_TOGGLED)
    except Exception as e:
        logger.exception("Failed to store AI toggle notice for ticket %s: %s", ticket_id, e)
    notified = reply_pipeline.notify_customer(company, ticket.get("customerId"), notice)
    log_routing_event(db, tenant_id, EVENT_AI_TOGGLED, f"AI turned {'on' if enable else 'off'}", ticket_id, {"enabled": bool(enable)})
    logger.info("AI %s on ticket %s (customer notified=%s)", "enabled" if enable else "disabled", ticket_id, notified)
    return {"success": True, "ticketId": ticket_id, "aiEnabled": bool(enable), "customerNotified": notified}


def webhook_status(db, tenant_id: str) -> dict:
    company = load_company(db, tenant_id)
    return {
        "status": "ok",
        "tenantId": tenant_id,
        "company": company.get("name"),
        "messagingConfigured": is_configured(company),
    }


def echo_test_webhook(db, tenant_id: str, payload: dict) -> dict:
    """Connectivity check for webhook setup: nothing is stored or sent."""
    company = load_company(db, tenant_id)
    logger.info("Test webhook received for company %s", tenant_id)
    return {
        "success": True,
        "message": "Webhook is reachable",
        "company": company.get("name"),
        "received": payload,
    }
