"""Tests for per-source webhook adapters.

Covers:
- Registry lookup and the generic fallback
- Each source's signature scheme, including Calendly's freshness window
- Entity extraction and the mapping fallback for fields a source lacks
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import time

import pytest

from stitch.adapters import (
    CalendlyAdapter,
    N8nAdapter,
    StripeAdapter,
    TypeformAdapter,
    WebhookAdapter,
    get_adapter,
    map_entity_fields,
)
from stitch.protocol import sign_body

BODY = b'{"hello": "world"}'
SECRET = "shh"


def _hex(message: bytes) -> str:
    return hmac.new(SECRET.encode(), message, hashlib.sha256).hexdigest()


class TestRegistry:

    @pytest.mark.parametrize("source,expected", [
        ("stripe", StripeAdapter),
        ("Typeform", TypeformAdapter),
        ("calendly", CalendlyAdapter),
        ("n8n", N8nAdapter),
    ])
    def test_known_sources(self, source, expected):
        assert isinstance(get_adapter(source), expected)

    @pytest.mark.parametrize("source", ["custom", "manual", "linkedin", "zapier", "", None])
    def test_everything_else_is_generic(self, source):
        assert type(get_adapter(source)) is WebhookAdapter


class TestSignatures:

    def test_no_secret_accepts_unsigned(self):
        for adapter in (WebhookAdapter(), StripeAdapter(), TypeformAdapter(), CalendlyAdapter(), N8nAdapter()):
            assert adapter.verify(BODY, {}, None)

    def test_secret_without_header_rejected(self):
        assert not StripeAdapter().verify(BODY, {}, SECRET)
        assert not WebhookAdapter().verify(BODY, {}, SECRET)

    def test_generic_hex_with_optional_prefix(self):
        adapter = WebhookAdapter()
        digest = sign_body(BODY, SECRET)
        assert adapter.verify(BODY, {"x-webhook-signature": digest}, SECRET)
        assert adapter.verify(BODY, {"x-webhook-signature": f"sha256={digest}"}, SECRET)
        assert not adapter.verify(b"tampered", {"x-webhook-signature": digest}, SECRET)

    def test_stripe_timestamped_digest(self):
        header = f"t=1700000000,v1={_hex(b'1700000000.' + BODY)}"
        assert StripeAdapter().verify(BODY, {"stripe-signature": header}, SECRET)

    def test_stripe_any_v1_may_match(self):
        header = f"t=1700000000,v1=deadbeef,v1={_hex(b'1700000000.' + BODY)}"
        assert StripeAdapter().verify(BODY, {"stripe-signature": header}, SECRET)

    def test_stripe_digest_bound_to_timestamp(self):
        header = f"t=1700000001,v1={_hex(b'1700000000.' + BODY)}"
        assert not StripeAdapter().verify(BODY, {"stripe-signature": header}, SECRET)

    def test_stripe_malformed_header(self):
        assert not StripeAdapter().verify(BODY, {"stripe-signature": "garbage"}, SECRET)

    def test_typeform_base64_digest(self):
        digest = hmac.new(SECRET.encode(), BODY, hashlib.sha256).digest()
        header = "sha256=" + base64.b64encode(digest).decode()
        assert TypeformAdapter().verify(BODY, {"typeform-signature": header}, SECRET)
        assert not TypeformAdapter().verify(BODY, {"typeform-signature": sign_body(BODY, SECRET)}, SECRET)

    def test_calendly_fresh_signature(self):
        ts = str(int(time.time()))
        header = f"t={ts},v1={_hex(ts.encode() + b'.' + BODY)}"
        assert CalendlyAdapter().verify(BODY, {"calendly-webhook-signature": header}, SECRET)

    @pytest.mark.parametrize("offset", [-600, 600])
    def test_calendly_stale_or_future_signature(self, offset):
        ts = str(int(time.time()) + offset)
        header = f"t={ts},v1={_hex(ts.encode() + b'.' + BODY)}"
        assert not CalendlyAdapter().verify(BODY, {"calendly-webhook-signature": header}, SECRET)

    def test_n8n_shared_secret_in_either_header(self):
        adapter = N8nAdapter()
        assert adapter.verify(BODY, {"x-webhook-secret": SECRET}, SECRET)
        assert adapter.verify(BODY, {"x-auth-token": SECRET}, SECRET)
        assert not adapter.verify(BODY, {"x-auth-token": "guess"}, SECRET)


class TestExtraction:

    def test_stripe_session(self):
        payload = {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {
                "customer": "cus_1",
                "customer_email": "Pay@Er.io",
                "amount_total": 12000,
                "currency": "eur",
                "payment_status": "paid",
            }},
        }
        fields = StripeAdapter().map_entity(payload, {})
        assert fields["email"] == "pay@er.io"
        assert fields["name"] is None
        assert fields["entity_type"] == "customer"
        assert fields["metadata"] == {
            "source": "stripe",
            "stripe_customer_id": "cus_1",
            "payment_status": "paid",
            "amount": "120.00 EUR",
            "event_id": "evt_1",
        }
        assert StripeAdapter().event_type(payload) == "checkout.session.completed"

    def test_typeform_answers(self):
        payload = {
            "event_type": "form_response",
            "form_response": {
                "form_id": "F1",
                "submitted_at": "2024-01-01T00:00:00Z",
                "answers": [
                    {"type": "text", "text": "Acme", "field": {"ref": "company"}},
                    {"type": "text", "text": "Ida", "field": {"ref": "q1", "title": "Your first name?"}},
                    {"type": "email", "email": "ida@acme.io", "field": {"ref": "q2"}},
                ],
            },
        }
        fields = TypeformAdapter().map_entity(payload, {})
        assert fields["name"] == "Ida"
        assert fields["email"] == "ida@acme.io"
        assert fields["entity_type"] == "lead"
        assert fields["metadata"]["form_id"] == "F1"
        assert TypeformAdapter().event_type(payload) == "form_response"

    def test_calendly_invitee(self):
        payload = {
            "event": "invitee.created",
            "payload": {
                "invitee": {"name": "Cal", "email": "cal@x.io"},
                "event": {"start_time": "2024-12-03T10:30:00Z", "location": {"join_url": "https://meet/1"}},
                "event_type": {"name": "30 Minute Meeting"},
            },
        }
        fields = CalendlyAdapter().map_entity(payload, {})
        assert (fields["name"], fields["email"]) == ("Cal", "cal@x.io")
        assert fields["metadata"] == {
            "source": "calendly",
            "event_type": "invitee.created",
            "meeting_name": "30 Minute Meeting",
            "start_time": "2024-12-03T10:30:00Z",
            "join_url": "https://meet/1",
        }

    def test_n8n_uses_mapping_and_execution_id(self):
        payload = {"executionId": "ex-7", "lead": {"email": "n@8.n"}}
        fields = N8nAdapter().map_entity(payload, {"email": "$.lead.email", "tier": "gold"})
        assert fields["email"] == "n@8.n"
        assert fields["metadata"] == {"tier": "gold", "source": "n8n", "execution_id": "ex-7"}

    def test_mapping_fills_what_the_source_lacks(self):
        payload = {"form_response": {"answers": []}, "who": {"name": "Fallback", "email": "fb@x.io"}}
        fields = TypeformAdapter().map_entity(payload, {"name": "$.who.name", "email": "$.who.email"})
        assert fields["name"] == "Fallback"
        assert fields["email"] == "fb@x.io"
        assert "form_id" not in fields["metadata"]

    def test_generic_matches_plain_mapping(self):
        payload = {"c": {"email": "G@x.io"}}
        mapping = {"email": "$.c.email", "note": "static"}
        assert WebhookAdapter().map_entity(payload, mapping) == map_entity_fields(payload, mapping)

    def test_generic_event_type(self):
        assert WebhookAdapter().event_type({"type": "lead.created"}) == "lead.created"
        assert WebhookAdapter().event_type({"nothing": 1}) is None
