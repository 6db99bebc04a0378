"""
Dashboard endpoints for human agents: send a reply on a ticket, switch the AI on or off.
"""

from typing import Optional

from fastapi import APIRouter, Request, Response
from firebase_admin import firestore
from pydantic import AliasChoices, BaseModel, EmailStr, Field

import orchestrator
from rate_limit import limiter
from schemas import STRICT_REQUEST_CONFIG

router = APIRouter()


def get_db():
    return firestore.client()


class SendMessageRequest(BaseModel):
    model_config = STRICT_REQUEST_CONFIG
    ticket_id: str = Field(..., min_length=1, max_length=256, validation_alias=AliasChoices("ticketId", "convId"))
    body: str = Field(..., min_length=1, max_length=4096)
    tenant_id: str = Field(..., min_length=1, max_length=256, validation_alias=AliasChoices("tenantId", "companyId"))
    sender_name: Optional[str] = Field(None, max_length=256, validation_alias=AliasChoices("senderName", "userName"))
    sender_email: Optional[EmailStr] = Field(None, validation_alias=AliasChoices("senderEmail", "userEmail"))


class ToggleAiRequest(BaseModel):
    model_config = STRICT_REQUEST_CONFIG
    ticket_id: str = Field(..., min_length=1, max_length=256, validation_alias=AliasChoices("ticketId", "convId"))
    enable: bool
    tenant_id: str = Field(..., min_length=1, max_length=256, validation_alias=AliasChoices("tenantId", "companyId"))


@router.post("/send-message")
@limiter.limit("60/minute")
async def send_message(request: Request, response: Response, body: SendMessageRequest):
    """
    Store and send a human reply. Delivery failures are recorded on the ticket and do not
    fail the request; check "delivered" in the response.
    """
    outcome = orchestrator.handle_agent_message(
        get_db(),
        body.tenant_id,
        body.ticket_id,
        body.body,
        sender_name=body.sender_name,
        sender_email=body.sender_email,
    )
    delivery = outcome.delivery
    return {
        "success": True,
        "ticketId": outcome.ticket_id,
        "messageId": outcome.message_id,
        "agentJoined": outcome.agent_joined,
        "aiDisabled": outcome.ai_disabled,
        "delivered": bool(delivery and delivery.sent),
        "sid": delivery.sid if delivery else None,
        "errorCode": delivery.failure.code if delivery and delivery.failure else None,
    }


@router.post("/toggle-ai")
async def toggle_ai(body: ToggleAiRequest):
    return orchestrator.toggle_ai(get_db(), body.tenant_id, body.ticket_id, body.enable)
