"""Worker webhook protocol.

Outbound (engine → worker)::

    {"runId": "...", "nodeId": "...", "input": {...}, "callbackUrl": ".../callback/{runId}/{instanceId}"}

Inbound (worker → engine)::

    {"status": "done" | "error", "output": {...}}

Callback URLs are scoped per run and instance. When CALLBACK_SECRET is
configured they also carry an HMAC token, verified by the callback route.
Ingestion webhooks may be signed with a per-config secret
(``verify_signature``).
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Any, Literal, Optional
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from . import config


class WorkerPayload(BaseModel):
    """Body POSTed to a Worker's webhook_url."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    run_id: str
    node_id: str
    input: Any = None
    callback_url: str

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class WorkerCallback(BaseModel):
    """Body a worker POSTs back to its callbackUrl."""

    model_config = ConfigDict(extra="allow")

    status: Literal["done", "error"]
    output: Any = None
    error: Optional[Any] = Field(default=None, description="Error detail when status=error")

    @property
    def succeeded(self) -> bool:
        return self.status == "done"

    def error_payload(self) -> Any:
        """What gets recorded on a failed node."""
        if self.error is not None:
            return self.error
        return self.output if self.output is not None else "Worker reported error"


def _callback_digest(run_id: str, instance_id: str, secret: str) -> str:
    message = f"{run_id}:{instance_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def build_callback_url(run_id: str, instance_id: str, base_url: Optional[str] = None) -> str:
    base = (base_url or config.STITCH_BASE_URL).rstrip("/")
    url = f"{base}{config.API_PREFIX}/callback/{quote(run_id, safe='')}/{quote(instance_id, safe='')}"
    if config.CALLBACK_SECRET:
        url += f"?token={_callback_digest(run_id, instance_id, config.CALLBACK_SECRET)}"
    return url


def verify_callback_token(run_id: str, instance_id: str, token: Optional[str]) -> bool:
    """True when no secret is configured or the token matches."""
    if not config.CALLBACK_SECRET:
        return True
    if not token:
        return False
    expected = _callback_digest(run_id, instance_id, config.CALLBACK_SECRET)
    return hmac.compare_digest(expected, token)


def sign_body(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check an HMAC-SHA256 hex signature (optionally ``sha256=``-prefixed)."""
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(sign_body(raw_body, secret), signature.strip().lower())
