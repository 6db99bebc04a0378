"""
Presence-Aware Ticket Router - FastAPI Application
Main entry point: WhatsApp webhooks, agent replies and respondent presence
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.responses import Response

from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from config import CORS_ORIGINS, CORS_ORIGIN_REGEX, ENVIRONMENT, init_firebase
from rate_limit import limiter, rate_limit_exceeded_handler
from routes import agent, respondent, webhook

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


app = FastAPI(
    title="Ticket Router API",
    description="Presence-aware WhatsApp ticket routing with AI/human handoff",
    version="1.0.0"
)

# Rate limiting: per tenant on webhooks, per IP elsewhere. Graceful 429 with Retry-After.
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# CORS: environment-driven. CORS_ORIGINS from env (comma-separated).
# allow_origin_regex permits any Firebase Hosting origin (*.web.app) for preview channels.
if ENVIRONMENT == "development":
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_origin_regex=CORS_ORIGIN_REGEX,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Missing or malformed fields are a client error: 400, not 422."""
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Preserve HTTPException status and detail; anything else is a 500 without internals."""
    if isinstance(exc, HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.on_event("startup")
async def startup_event():
    """
    Runs once when the app starts.
    Missing Firebase credentials fail here rather than at import.
    """
    init_firebase()
    # Presence sweep corrects respondents whose clients stopped sending heartbeats
    try:
        from background_scheduler import start_scheduler
        start_scheduler()
    except Exception as e:
        logger.warning("Presence sweep scheduler not started: %s", e)


# Health check / readiness endpoint (exempt from rate limit so load balancers don't get 429)
@app.get("/")
@limiter.exempt
async def health(request: Request, response: Response):
    return JSONResponse(content={"status": "ok"})


# Include routers
app.include_router(webhook.router, tags=["Webhook"])
app.include_router(agent.router, prefix="/agent", tags=["Agent"])
app.include_router(respondent.router, tags=["Respondent"])
