"""Stitch runtime settings: tunable parameters for run execution.

All values read from environment variables with sensible defaults.
Infrastructure config (base URL, host, secrets) stays in stitch/config.py.
"""

from __future__ import annotations

import os


def _int(key: str, default: int) -> int:
    return int(os.getenv(key, str(default)))


def _float(key: str, default: float) -> float:
    return float(os.getenv(key, str(default)))


def _str(key: str, default: str) -> str:
    return os.getenv(key, default)


# =====================================================================
# Worker webhooks (engine → external worker)
# =====================================================================

# Outbound webhook timeout (seconds); a timeout marks the node failed
WORKER_HTTP_TIMEOUT = _float("WORKER_HTTP_TIMEOUT", 30.0)
WORKER_HTTP_MAX_CONNECTIONS = _int("WORKER_HTTP_MAX_CONNECTIONS", 20)
WORKER_HTTP_MAX_KEEPALIVE = _int("WORKER_HTTP_MAX_KEEPALIVE", 10)


# =====================================================================
# Run / entity state store
# =====================================================================

# Optimistic compare-and-swap attempts before a conflict is surfaced.
# Writes are already serialized per row, so these only absorb writers
# from other processes racing past the row lock.
RUN_UPDATE_MAX_ATTEMPTS = _int("RUN_UPDATE_MAX_ATTEMPTS", 20)
ENTITY_UPDATE_MAX_ATTEMPTS = _int("ENTITY_UPDATE_MAX_ATTEMPTS", 20)

# Jittered exponential backoff between attempts (seconds)
STORE_RETRY_BASE_DELAY = _float("STORE_RETRY_BASE_DELAY", 0.01)
STORE_RETRY_MAX_DELAY = _float("STORE_RETRY_MAX_DELAY", 0.25)

# Edge-walk retries after a node completion has committed; the completion
# is never reported back as a conflict
WALK_MAX_ATTEMPTS = _int("WALK_MAX_ATTEMPTS", 5)


# =====================================================================
# Expressions
# =====================================================================

# Maximum Logic condition length
LOGIC_EXPRESSION_MAX_LENGTH = _int("LOGIC_EXPRESSION_MAX_LENGTH", 500)

# Default array path read by Splitter nodes
SPLITTER_DEFAULT_ARRAY_PATH = _str("SPLITTER_DEFAULT_ARRAY_PATH", "items")


# =====================================================================
# Entities
# =====================================================================

# Entity type assigned when an ingestion mapping does not provide one
DEFAULT_ENTITY_TYPE = _str("DEFAULT_ENTITY_TYPE", "lead")

# Entity type assigned by a `complete` movement without set_entity_type
DEFAULT_COMPLETED_ENTITY_TYPE = _str("DEFAULT_COMPLETED_ENTITY_TYPE", "customer")


# =====================================================================
# Webhook ingestion
# =====================================================================

# Calendly signatures older than this (or from the future) are replays
CALENDLY_SIGNATURE_MAX_AGE_SECS = _int("CALENDLY_SIGNATURE_MAX_AGE_SECS", 300)


# =====================================================================
# SSE
# =====================================================================

SSE_BUFFER_MAX_EVENTS = _int("SSE_BUFFER_MAX_EVENTS", 200)
SSE_BUFFER_MAX_AGE_SECS = _int("SSE_BUFFER_MAX_AGE_SECS", 600)
SSE_KEEPALIVE_INTERVAL = _float("SSE_KEEPALIVE_INTERVAL", 30.0)
