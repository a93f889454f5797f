"""Stitch configuration constants: single source of truth for infrastructure env vars."""

import os

# Public base URL workers use to reach the callback endpoint
STITCH_BASE_URL = os.getenv("STITCH_BASE_URL", "http://127.0.0.1:8000").rstrip("/")

# Server binding, used by entrypoint / uvicorn
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))

# Callback URL tokens. When set, every callback URL carries an HMAC token
# scoped to (run_id, instance_id) and the callback route rejects mismatches
CALLBACK_SECRET = os.getenv("CALLBACK_SECRET", "")

# Route prefix for the engine HTTP surface
API_PREFIX = os.getenv("STITCH_API_PREFIX", "/api/stitch")

# CORS: comma-separated origins allowed to call the API (canvas front end)
_default_origins = "http://localhost:3000,http://127.0.0.1:3000"
CORS_ORIGINS = [
    o.strip() for o in os.getenv("CORS_ORIGINS", _default_origins).split(",") if o.strip()
]
