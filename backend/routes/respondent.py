"""
Respondent presence endpoints. The dashboard posts online/offline/heartbeat; the admin
fallback actor flips an explicit switch instead.
"""

import logging

from fastapi import APIRouter, HTTPException
from firebase_admin import firestore
from pydantic import AliasChoices, BaseModel, EmailStr, Field

import orchestrator
from presence import ai_wait_minutes, evaluate_presence, load_active_respondents, set_admin_online, set_respondent_status
from schemas import STRICT_REQUEST_CONFIG
from utils import to_datetime, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


def get_db():
    return firestore.client()


class RespondentStatusRequest(BaseModel):
    model_config = STRICT_REQUEST_CONFIG
    email: EmailStr
    tenant_id: str = Field(..., min_length=1, max_length=256, validation_alias=AliasChoices("tenantId", "companyId"))
    action: str = Field(..., pattern="^(online|offline|heartbeat)$")


class AdminStatusRequest(BaseModel):
    model_config = STRICT_REQUEST_CONFIG
    tenant_id: str = Field(..., min_length=1, max_length=256, validation_alias=AliasChoices("tenantId", "companyId"))
    online: bool


@router.post("/respondent/status")
async def update_respondent_status(body: RespondentStatusRequest):
    db = get_db()
    orchestrator.load_company(db, body.tenant_id)
    try:
        set_respondent_status(db, body.tenant_id, body.email, body.action)
    except LookupError:
        raise HTTPException(status_code=404, detail="Respondent not found")
    return {"success": True, "email": body.email, "isOnline": body.action != "offline"}


@router.post("/respondent/admin-status")
async def update_admin_status(body: AdminStatusRequest):
    db = get_db()
    orchestrator.load_company(db, body.tenant_id)
    set_admin_online(db, body.tenant_id, body.online)
    return {"success": True, "adminOnline": body.online}


@router.get("/debug/respondents/{tenant_id}")
async def debug_respondents(tenant_id: str):
    """Active respondents with their effective presence. Read-only: no correction is written."""
    db = get_db()
    company = orchestrator.load_company(db, tenant_id)
    wait = ai_wait_minutes(company)
    now = utcnow()
    result = []
    for r in load_active_respondents(db, tenant_id):
        status = evaluate_presence(r, wait, now=now)
        last_seen = to_datetime(r.get("lastSeen"))
        result.append({
            "id": r["id"],
            "email": r.get("email"),
            "name": r.get("name"),
            "isOnline": r.get("isOnline") is True,
            "lastSeen": last_seen.isoformat() if last_seen else None,
            "effectiveOnline": status.online,
            "minutesSinceSeen": round(status.minutes_since_seen, 1) if status.minutes_since_seen is not None else None,
            "reason": status.reason,
        })
    return {
        "tenantId": tenant_id,
        "aiWaitMinutes": wait,
        "adminOnline": company.get("adminOnline") is True,
        "respondents": result,
    }
