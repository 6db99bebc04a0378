"""
AI / human handoff arbitration.

Everything here is pure: inputs are the current ticket, company settings, presence and recent
message history; outputs are a derived state plus a list of effects for the orchestrator to
execute. Nothing is persisted as an explicit state field, so the state can never drift from
the flags it is computed from.

States:
    AI_ACTIVE       the automated agent answers inbound messages
    HUMAN_ACTIVE    an assigned respondent is effectively online; AI stays quiet
    ADMIN_FALLBACK  assigned to the admin with AI switched off; admin answers manually
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Union

from assignment import RespondentAssignee, assignee_from_ticket
from config import AGENT_JOIN_DEDUP_MINUTES
from presence import ai_wait_minutes
from ticket_messages import ROLE_AGENT, ROLE_AI, ROLE_SYSTEM, message_role
from utils import to_datetime, utcnow

TAKEOVER_NOTICE = "🤖 Human inactive, AI agent will respond."
AGENT_JOIN_NOTICE = "👋 Human agent joined the chat."

NOTICE_AI_TAKEOVER = "ai_takeover"
NOTICE_AGENT_JOINED = "agent_joined"

# Rows written before notices were tagged are recognised by their text
_TAKEOVER_MARKER = "AI agent will respond"
_JOIN_MARKER = "Human agent joined"


class HandoffState(str, Enum):
    AI_ACTIVE = "AI_ACTIVE"
    HUMAN_ACTIVE = "HUMAN_ACTIVE"
    ADMIN_FALLBACK = "ADMIN_FALLBACK"


@dataclass(frozen=True)
class SendTakeoverNotice:
    reason: str


@dataclass(frozen=True)
class SendAgentJoinNotice:
    reason: str


@dataclass(frozen=True)
class DisableAi:
    pass


Effect = Union[SendTakeoverNotice, SendAgentJoinNotice, DisableAi]


@dataclass
class InboundDecision:
    state: HandoffState
    effects: List[Effect] = field(default_factory=list)
    reason: str = ""

    @property
    def ai_should_respond(self) -> bool:
        return self.state == HandoffState.AI_ACTIVE


def derive_state(ticket: dict, respondent_online: Optional[bool]) -> HandoffState:
    """
    respondent_online is the effective presence of the assigned respondent, or None when the
    ticket is not assigned to a respondent or the respondent record is missing.
    """
    assignee = assignee_from_ticket(ticket)
    if isinstance(assignee, RespondentAssignee):
        # Missing respondent record fails open to the AI
        return HandoffState.HUMAN_ACTIVE if respondent_online else HandoffState.AI_ACTIVE
    if ticket.get("aiEnabled") is False:
        return HandoffState.ADMIN_FALLBACK
    return HandoffState.AI_ACTIVE


def _created_at(message: dict) -> Optional[datetime]:
    return to_datetime(message.get("createdAt"))


def _latest(messages: List[dict]) -> Optional[datetime]:
    times = [t for t in (_created_at(m) for m in messages) if t is not None]
    return max(times) if times else None


def is_takeover_notice(message: dict) -> bool:
    if message_role(message) != ROLE_SYSTEM:
        return False
    return message.get("notice") == NOTICE_AI_TAKEOVER or _TAKEOVER_MARKER in (message.get("body") or "")


def is_agent_join_notice(message: dict) -> bool:
    if message_role(message) != ROLE_SYSTEM:
        return False
    return message.get("notice") == NOTICE_AGENT_JOINED or _JOIN_MARKER in (message.get("body") or "")


def takeover_notice_reason(company: dict, ticket: dict, messages: List[dict], now: Optional[datetime] = None) -> Optional[str]:
    """
    Reason string when a takeover notice is due, else None.
    Once per stale episode: an agent message after the last notice re-arms it.
    """
    if company.get("notifyAiTakeover") is False:
        return None
    now = now or utcnow()
    wait = timedelta(minutes=ai_wait_minutes(company))

    agent_messages = [m for m in messages if message_role(m) == ROLE_AGENT]
    last_notice = _latest([m for m in messages if is_takeover_notice(m)])

    if agent_messages:
        last_agent = _latest(agent_messages)
        if last_agent is None or now - last_agent < wait:
            return None
        minutes = int((now - last_agent).total_seconds() // 60)
        if last_notice is None:
            return f"first AI takeover after human was active ({minutes} minutes ago)"
        if last_agent > last_notice:
            return f"human came back and went inactive again ({minutes} minutes ago)"
        return None

    if isinstance(assignee_from_ticket(ticket), RespondentAssignee) and last_notice is None:
        return "AI taking over - human assigned but offline"
    return None


def decide_inbound(
    company: dict,
    ticket: dict,
    respondent_online: Optional[bool],
    messages: List[dict],
    now: Optional[datetime] = None,
) -> InboundDecision:
    """Per inbound customer message: who answers, and whether a takeover notice goes out first."""
    state = derive_state(ticket, respondent_online)
    if state == HandoffState.HUMAN_ACTIVE:
        return InboundDecision(state, reason="assigned respondent is online")
    if state == HandoffState.ADMIN_FALLBACK:
        return InboundDecision(state, reason="AI disabled on admin ticket")

    effects: List[Effect] = []
    reason = takeover_notice_reason(company, ticket, messages, now=now)
    if reason:
        effects.append(SendTakeoverNotice(reason))
    if respondent_online is None and isinstance(assignee_from_ticket(ticket), RespondentAssignee):
        why = "assigned respondent not found"
    elif respondent_online is False:
        why = "assigned respondent is offline"
    else:
        why = "AI enabled"
    return InboundDecision(state, effects=effects, reason=why)


def agent_join_reason(company: dict, messages: List[dict], now: Optional[datetime] = None) -> Optional[str]:
    """
    Reason string when an agent-join notice is due for an agent message about to be stored.
    messages is the history before that message, oldest first.
    """
    if company.get("notifyAgentJoin") is False:
        return None
    now = now or utcnow()
    dedup_since = now - timedelta(minutes=AGENT_JOIN_DEDUP_MINUTES)
    for m in messages:
        sent = _created_at(m)
        if is_agent_join_notice(m) and sent is not None and sent > dedup_since:
            return None

    if not any(message_role(m) == ROLE_AGENT for m in messages):
        return "first human message"
    conversation = [m for m in messages if message_role(m) != ROLE_SYSTEM]
    if conversation and message_role(conversation[-1]) == ROLE_AI:
        return "human taking over from AI"
    return None


def decide_agent_message(
    company: dict,
    ticket: dict,
    sender_email: Optional[str],
    messages: List[dict],
    now: Optional[datetime] = None,
) -> List[Effect]:
    """Effects for a human reply: join notice, and switching AI off when the assignee takes over."""
    reason = agent_join_reason(company, messages, now=now)
    if not reason:
        return []
    effects: List[Effect] = [SendAgentJoinNotice(reason)]
    assigned_email = ticket.get("assignedEmail")
    if sender_email and assigned_email and sender_email.lower() == assigned_email.lower() and ticket.get("aiEnabled") is not False:
        effects.append(DisableAi())
    return effects
