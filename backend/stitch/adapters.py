"""Source adapters for webhook ingestion.

Every third-party source signs its deliveries and shapes its payloads in
its own way. An adapter knows one source's signature scheme and where that
source keeps the person an event is about; whatever it cannot find is
filled from the config's generic entity mapping.

    stripe     Stripe-Signature: t=<ts>,v1=<hex hmac of "<ts>.<body>">
    typeform   Typeform-Signature: sha256=<base64 hmac of body>
    calendly   Calendly-Webhook-Signature: t=<ts>,v1=<hex hmac of "<ts>.<body>">
    n8n        X-Webhook-Secret or X-Auth-Token equal to the secret
    generic    X-Webhook-Signature: [sha256=]<hex hmac of body>

Sources without an adapter (custom, manual, linkedin, anything unknown)
use the generic one. A config without a secret accepts unsigned events.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .paths import extract_value, get_path
from .protocol import verify_signature
from .settings import CALENDLY_SIGNATURE_MAX_AGE_SECS, DEFAULT_ENTITY_TYPE

# Mapping keys that become entity columns; everything else goes to metadata
ENTITY_FIELDS = ("name", "email", "avatar_url", "entity_type")


def map_entity_fields(payload: Any, mapping: Dict[str, Any]) -> Dict[str, Any]:
    """Apply an entity mapping to a raw payload.

    Returns:
        {"name", "email", "avatar_url", "entity_type", "metadata"}; unresolved
        fields are None, entity_type falls back to the default type.
    """
    fields: Dict[str, Any] = {key: None for key in ENTITY_FIELDS}
    metadata: Dict[str, Any] = {}
    for key, source in (mapping or {}).items():
        value = extract_value(payload, source)
        if key in ENTITY_FIELDS:
            fields[key] = value if value is None or isinstance(value, str) else str(value)
        elif key == "metadata" and isinstance(source, dict):
            metadata.update({k: extract_value(payload, v) for k, v in source.items()})
        else:
            metadata[key] = value
    fields["email"] = _normalize_email(fields["email"])
    fields["entity_type"] = fields["entity_type"] or DEFAULT_ENTITY_TYPE
    fields["metadata"] = metadata
    return fields


def _normalize_email(email: Any) -> Optional[str]:
    if not isinstance(email, str):
        return None
    return email.strip().lower() or None


def _hmac_digest(secret: str, message: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()


def _parse_timestamped(header: str) -> Tuple[Optional[str], List[str]]:
    """Split ``t=123,v1=abc,v1=def`` into ("123", ["abc", "def"])."""
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def _verify_timestamped(raw_body: bytes, header: str, secret: str) -> Tuple[bool, Optional[str]]:
    timestamp, signatures = _parse_timestamped(header)
    if not timestamp or not signatures:
        return False, timestamp
    expected = _hmac_digest(secret, timestamp.encode("utf-8") + b"." + raw_body).hex()
    return any(hmac.compare_digest(expected, s) for s in signatures), timestamp


class WebhookAdapter:
    """Generic source: hex HMAC-SHA256 of the body, entity from the mapping."""

    source = "generic"
    signature_headers: Tuple[str, ...] = ("x-webhook-signature",)

    def signature(self, headers: Mapping[str, str]) -> Optional[str]:
        """First signature header present; headers are keyed lower-case."""
        for name in self.signature_headers:
            if headers.get(name):
                return headers[name]
        return None

    def verify(self, raw_body: bytes, headers: Mapping[str, str], secret: Optional[str]) -> bool:
        if not secret:
            return True
        signature = self.signature(headers)
        if not signature:
            return False
        return self._verify(raw_body, signature, secret)

    def _verify(self, raw_body: bytes, signature: str, secret: str) -> bool:
        return verify_signature(raw_body, signature, secret)

    def extract(self, payload: Any) -> Dict[str, Any]:
        """Source-specific entity fields plus ``metadata``; gaps are None."""
        return {}

    def event_type(self, payload: Any) -> Optional[str]:
        for key in ("event", "type", "event_type"):
            value = get_path(payload, key)
            if isinstance(value, str):
                return value
        return None

    def map_entity(self, payload: Any, mapping: Dict[str, Any]) -> Dict[str, Any]:
        """Adapter fields first, the config mapping for anything missing."""
        generic = map_entity_fields(payload, mapping)
        specific = self.extract(payload)
        fields = {key: specific.get(key) or generic[key] for key in ENTITY_FIELDS}
        fields["email"] = _normalize_email(fields["email"])
        extra = {k: v for k, v in (specific.get("metadata") or {}).items() if v is not None}
        fields["metadata"] = {**generic["metadata"], **extra}
        return fields


class StripeAdapter(WebhookAdapter):
    source = "stripe"
    signature_headers = ("stripe-signature",)

    def _verify(self, raw_body: bytes, signature: str, secret: str) -> bool:
        valid, _ = _verify_timestamped(raw_body, signature, secret)
        return valid

    def extract(self, payload: Any) -> Dict[str, Any]:
        obj = get_path(payload, "data.object")
        if not isinstance(obj, Mapping):
            obj = {}
        amount = obj.get("amount_total")
        if isinstance(amount, (int, float)):
            amount = f"{amount / 100:.2f} {str(obj.get('currency') or '').upper()}".strip()
        return {
            "email": get_path(obj, "customer_details.email") or obj.get("email") or obj.get("customer_email"),
            "name": get_path(obj, "customer_details.name") or obj.get("name"),
            "entity_type": "customer",
            "metadata": {
                "source": self.source,
                "stripe_customer_id": obj.get("customer"),
                "payment_status": obj.get("payment_status"),
                "amount": amount,
                "event_id": get_path(payload, "id"),
            },
        }

    def event_type(self, payload: Any) -> Optional[str]:
        return get_path(payload, "type")


def _is_name_field(field: Any) -> bool:
    if not isinstance(field, Mapping):
        return False
    label = f"{field.get('ref') or ''} {field.get('title') or ''}".lower()
    return "name" in label


class TypeformAdapter(WebhookAdapter):
    source = "typeform"
    signature_headers = ("typeform-signature",)

    def _verify(self, raw_body: bytes, signature: str, secret: str) -> bool:
        expected = "sha256=" + base64.b64encode(_hmac_digest(secret, raw_body)).decode("ascii")
        return hmac.compare_digest(expected, signature.strip())

    def extract(self, payload: Any) -> Dict[str, Any]:
        answers = get_path(payload, "form_response.answers")
        answers = [a for a in answers if isinstance(a, Mapping)] if isinstance(answers, list) else []
        email = next((a.get("email") for a in answers if a.get("type") == "email"), None)
        name = next(
            (a.get("text") for a in answers if a.get("type") == "text" and _is_name_field(a.get("field"))),
            None,
        )
        return {
            "email": email,
            "name": name,
            "entity_type": "lead",
            "metadata": {
                "source": self.source,
                "form_id": get_path(payload, "form_response.form_id"),
                "submitted_at": get_path(payload, "form_response.submitted_at"),
            },
        }

    def event_type(self, payload: Any) -> Optional[str]:
        return get_path(payload, "event_type")


class CalendlyAdapter(WebhookAdapter):
    source = "calendly"
    signature_headers = ("calendly-webhook-signature",)

    def _verify(self, raw_body: bytes, signature: str, secret: str) -> bool:
        valid, timestamp = _verify_timestamped(raw_body, signature, secret)
        try:
            age = time.time() - int(timestamp)
        except (TypeError, ValueError):
            return False
        # Replays outside the window are rejected even with a valid digest
        return valid and 0 <= age < CALENDLY_SIGNATURE_MAX_AGE_SECS

    def extract(self, payload: Any) -> Dict[str, Any]:
        return {
            "email": get_path(payload, "payload.invitee.email"),
            "name": get_path(payload, "payload.invitee.name"),
            "entity_type": "lead",
            "metadata": {
                "source": self.source,
                "event_type": get_path(payload, "event"),
                "meeting_name": get_path(payload, "payload.event_type.name"),
                "start_time": get_path(payload, "payload.event.start_time"),
                "join_url": get_path(payload, "payload.event.location.join_url"),
            },
        }

    def event_type(self, payload: Any) -> Optional[str]:
        return get_path(payload, "event")


class N8nAdapter(WebhookAdapter):
    """n8n sends the shared secret itself in a header rather than a digest."""

    source = "n8n"
    signature_headers = ("x-webhook-secret", "x-auth-token")

    def _verify(self, raw_body: bytes, signature: str, secret: str) -> bool:
        return hmac.compare_digest(signature.encode("utf-8"), secret.encode("utf-8"))

    def extract(self, payload: Any) -> Dict[str, Any]:
        return {"metadata": {"source": self.source, "execution_id": get_path(payload, "executionId")}}


_GENERIC = WebhookAdapter()

ADAPTERS: Dict[str, WebhookAdapter] = {
    "stripe": StripeAdapter(),
    "typeform": TypeformAdapter(),
    "calendly": CalendlyAdapter(),
    "n8n": N8nAdapter(),
    "linkedin": _GENERIC,
    "custom": _GENERIC,
    "manual": _GENERIC,
}


def get_adapter(source: Optional[str]) -> WebhookAdapter:
    return ADAPTERS.get((source or "").lower(), _GENERIC)
