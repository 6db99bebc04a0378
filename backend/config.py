"""
Configuration and Firebase initialization
"""

import json
import logging
import os

import firebase_admin
from firebase_admin import credentials
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load environment variables from .env file
# Try loading from parent directory (project root) first
env_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), '.env')
if os.path.exists(env_path):
    load_dotenv(env_path)
else:
    # Try current directory
    load_dotenv()

# Project root directory (where .env file is located)
PROJECT_ROOT = os.path.dirname(os.path.dirname(__file__))

ENVIRONMENT = os.getenv("ENVIRONMENT", "production")

# CORS: comma-separated origins for the dashboard; regex allows Firebase Hosting previews
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
CORS_ORIGIN_REGEX = os.getenv("CORS_ORIGIN_REGEX", r"^https://[^/]+\.(web\.app|firebaseapp\.com)$")

# Text generation. A company-level openaiApiKey takes precedence over this one.
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-3.5-turbo")
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "20"))
AI_AGENT_NAME = os.getenv("AI_AGENT_NAME", "Axion AI")

# Messaging provider (Twilio WhatsApp). Credentials live on the company document.
TWILIO_TIMEOUT_SECONDS = float(os.getenv("TWILIO_TIMEOUT_SECONDS", "10"))

# Presence thresholds, in minutes.
# Hard timeout: a respondent still flagged online after this long is corrected to offline.
PRESENCE_HARD_TIMEOUT_MINUTES = int(os.getenv("PRESENCE_HARD_TIMEOUT_MINUTES", "10"))
# Assignment only: lastSeen inside this window counts as "recently online".
RECENTLY_ONLINE_MINUTES = int(os.getenv("RECENTLY_ONLINE_MINUTES", "5"))
# Routing threshold used when the company has no aiWaitMinutes.
DEFAULT_AI_WAIT_MINUTES = int(os.getenv("DEFAULT_AI_WAIT_MINUTES", "5"))
AGENT_JOIN_DEDUP_MINUTES = int(os.getenv("AGENT_JOIN_DEDUP_MINUTES", "5"))

# Message windows read from a ticket
PROMPT_HISTORY_LIMIT = 20
TAKEOVER_HISTORY_LIMIT = 20
AGENT_JOIN_HISTORY_LIMIT = 50

# Background presence sweep
PRESENCE_SWEEP_ENABLED = os.getenv("PRESENCE_SWEEP_ENABLED", "true").lower() in ("1", "true", "yes")
PRESENCE_SWEEP_INTERVAL_MINUTES = int(os.getenv("PRESENCE_SWEEP_INTERVAL_MINUTES", "5"))


# Helper function to resolve path relative to project root
def resolve_path(path):
    """Resolve a path relative to the project root or current directory"""
    if os.path.isabs(path):
        return os.path.expanduser(path)

    clean_path = path.lstrip('./').lstrip('.\\')

    resolved = os.path.join(PROJECT_ROOT, clean_path)
    if os.path.exists(resolved):
        return os.path.abspath(resolved)

    cwd_resolved = os.path.abspath(os.path.expanduser(path))
    if os.path.exists(cwd_resolved):
        return cwd_resolved

    # Return absolute path anyway (will fail later with better error)
    return os.path.abspath(os.path.join(PROJECT_ROOT, clean_path))


def _find_service_account_file():
    configured = os.getenv("FIREBASE_SERVICE_ACCOUNT_PATH")
    if configured:
        return resolve_path(configured)
    possible_paths = [
        os.path.join(PROJECT_ROOT, 'serviceAccountKey.json'),
        os.path.join(os.path.dirname(__file__), 'serviceAccountKey.json'),
        './serviceAccountKey.json',
    ]
    for path in possible_paths:
        expanded_path = os.path.expanduser(path)
        if os.path.exists(expanded_path):
            return expanded_path
    return None


def init_firebase():
    """
    Initialize Firebase Admin SDK exactly once.

    Credential sources, first match wins:
    1. FIREBASE_SERVICE_ACCOUNT_KEY containing the full service account JSON (serverless deploys)
    2. FIREBASE_SERVICE_ACCOUNT_PATH or a serviceAccountKey.json in a known location
    3. GOOGLE_APPLICATION_CREDENTIALS (application default credentials)
    """
    if firebase_admin._apps:
        return

    raw_key = os.getenv("FIREBASE_SERVICE_ACCOUNT_KEY")
    if raw_key:
        firebase_admin.initialize_app(credentials.Certificate(json.loads(raw_key)))
        logger.info("Firebase initialized from FIREBASE_SERVICE_ACCOUNT_KEY")
        return

    path = _find_service_account_file()
    if path:
        if not os.path.exists(path):
            raise RuntimeError(f"Service account file not found: {path}")
        firebase_admin.initialize_app(credentials.Certificate(path))
        logger.info("Firebase initialized using service account: %s", path)
        return

    if os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
        firebase_admin.initialize_app()
        logger.info("Firebase initialized using GOOGLE_APPLICATION_CREDENTIALS")
        return

    raise RuntimeError(
        "Firebase credentials not found. Set FIREBASE_SERVICE_ACCOUNT_KEY, "
        "FIREBASE_SERVICE_ACCOUNT_PATH or GOOGLE_APPLICATION_CREDENTIALS."
    )
