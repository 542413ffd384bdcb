"""
Centralised configuration constants and environment helpers.
"""

import os
import sys

from dotenv import load_dotenv

load_dotenv()

# ── Sessions ─────────────────────────────────────────────────────────
SESSION_TTL_DAYS = int(os.getenv("SESSION_TTL_DAYS", "60"))
SESSION_TTL_MS = SESSION_TTL_DAYS * 24 * 60 * 60 * 1000
API_KEY_PREFIX = "cg"

# ── Platform owner grants ────────────────────────────────────────────
GRANT_PHRASE = "GRANT_PLATFORM_OWNER"
REVOKE_PHRASE = "REVOKE_PLATFORM_OWNER"
GRANT_COOLDOWN_MS = 60_000      # wait before a grant may be confirmed
GRANT_WINDOW_MS = 300_000       # confirmation window after the cooldown

# ── Audit ────────────────────────────────────────────────────────────
DEFAULT_EVENT_LIMIT = 100
MAX_EVENT_LIMIT = 1000

# ── API server ───────────────────────────────────────────────────────
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))


def get_env(name: str) -> str:
    """Return an environment variable or exit with an error message."""
    value = os.getenv(name)
    if not value:
        print(f"ERROR: env var {name} is not set", file=sys.stderr)
        sys.exit(1)
    return value
