"""
Inbound messaging webhooks. The provider posts form-encoded bodies; tests and internal
tools post JSON. Always acknowledge with empty TwiML so the provider does not send its own reply.
"""

import logging

from fastapi import APIRouter, HTTPException, Request
from firebase_admin import firestore
from starlette.responses import Response
from twilio.twiml.messaging_response import MessagingResponse

import orchestrator
from rate_limit import WEBHOOK_LIMIT, limiter
from schemas import parse_webhook_payload

logger = logging.getLogger(__name__)

router = APIRouter()


def get_db():
    return firestore.client()


async def _read_payload(request: Request) -> dict:
    content_type = (request.headers.get("content-type") or "").lower()
    if "application/json" in content_type:
        try:
            data = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        if not isinstance(data, dict):
            raise HTTPException(status_code=400, detail="JSON body must be an object")
        return data
    form = await request.form()
    return dict(form)


def _empty_twiml() -> Response:
    return Response(content=str(MessagingResponse()), media_type="text/xml")


@router.post("/webhook/{tenant_id}")
@router.post("/webhook/whatsapp/{tenant_id}")
@limiter.limit(WEBHOOK_LIMIT)
async def receive_message(tenant_id: str, request: Request):
    """
    One inbound customer message. 200 with empty TwiML whether or not the AI answered;
    400 on missing fields, 404 for an unknown tenant.
    """
    fields = parse_webhook_payload(await _read_payload(request))
    outcome = orchestrator.handle_inbound_message(
        get_db(), tenant_id, fields["message"], fields["from"], fields["id"],
    )
    logger.info(
        "Webhook handled for company %s: ticket=%s state=%s ai_replied=%s",
        tenant_id, outcome.ticket_id, outcome.state.value, outcome.ai_replied,
    )
    return _empty_twiml()


@router.get("/webhook/{tenant_id}")
@router.get("/webhook/whatsapp/{tenant_id}")
async def webhook_status(tenant_id: str):
    return orchestrator.webhook_status(get_db(), tenant_id)


@router.post("/test-webhook/{tenant_id}")
async def check_webhook(tenant_id: str, request: Request):
    """Setup check from the dashboard: echoes the payload, stores nothing."""
    payload = await _read_payload(request)
    return orchestrator.echo_test_webhook(get_db(), tenant_id, payload)
