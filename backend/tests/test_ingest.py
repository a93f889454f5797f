"""Tests for webhook ingestion (POST /api/stitch/ingest/{slug}).

Covers:
- Scenario B: find-or-create by email, entity placed on the entry edge
- Lenient mapping (missing paths → null fields, still ingested)
- Unknown / inactive slug → 404, bad signature → 401
- Webhook event log and run trigger metadata
- Webhook config registration
- Source adapters end to end (Stripe signing and extraction)
"""

from __future__ import annotations

import hashlib
import hmac
import json

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from app.database import get_session_ctx
from app.models.db import WebhookEventModel
from app.repositories.webhook import WebhookRepository
from stitch.adapters import map_entity_fields
from stitch.protocol import sign_body
from stitch.store import EntityStore
from tests.conftest import edge, save_flow, worker

API = "/api/stitch"

MAPPING = {
    "name": "$.contact.name",
    "email": "$.contact.email",
    "avatar_url": "$.contact.photo",
    "entity_type": "lead",
    "plan": "$.plan",
}

GHOST = {"contact": {"name": "Ghost", "email": "Ghost@X.io"}, "plan": "trial"}


def _lead_flow() -> dict:
    return {
        "nodes": [worker("enrich"), worker("score")],
        "edges": [edge("enrich", "score", "enrich-score")],
        "entry": "ignored-extra-field",
    }


async def _register(client: AsyncClient, flow_id: str, slug: str = "test-slug", **overrides) -> dict:
    body = {
        "slug": slug,
        "workflow_id": flow_id,
        "entry_edge_id": "entry-enrich",
        "source": "typeform",
        "entity_mapping": MAPPING,
        **overrides,
    }
    resp = await client.post(f"{API}/webhook-configs", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _register_with_entry_edge(client: AsyncClient, slug: str = "test-slug", **overrides) -> dict:
    graph = _lead_flow()
    graph["nodes"].insert(0, {"id": "form", "type": "UX", "config": {"label": "Form submitted"}})
    graph["edges"].insert(0, edge("form", "enrich", "entry-enrich"))
    flow_id = await save_flow(graph)
    return await _register(client, flow_id, slug, **overrides)


class TestMapEntityFields:

    def test_maps_paths_and_static_values(self):
        fields = map_entity_fields(GHOST, MAPPING)
        assert fields == {
            "name": "Ghost",
            "email": "ghost@x.io",
            "avatar_url": None,
            "entity_type": "lead",
            "metadata": {"plan": "trial"},
        }

    def test_missing_everything_is_null(self):
        fields = map_entity_fields({"unrelated": True}, MAPPING)
        assert fields["name"] is None and fields["email"] is None
        assert fields["entity_type"] == "lead"
        assert fields["metadata"] == {"plan": None}

    def test_non_string_values_are_stringified(self):
        fields = map_entity_fields({"id": 123}, {"name": "$.id"})
        assert fields["name"] == "123"

    def test_nested_metadata_mapping(self):
        fields = map_entity_fields(
            {"utm": {"source": "ads"}},
            {"metadata": {"utm_source": "$.utm.source", "channel": "paid"}},
        )
        assert fields["metadata"] == {"utm_source": "ads", "channel": "paid"}

    def test_default_entity_type(self):
        assert map_entity_fields({}, {})["entity_type"] == "lead"


async def _events_for(config_id: str) -> list:
    async with get_session_ctx() as session:
        result = await session.execute(
            select(WebhookEventModel)
            .where(WebhookEventModel.webhook_config_id == config_id)
            .order_by(WebhookEventModel.created_at)
        )
        return list(result.scalars().all())


class TestIngestScenarioB:

    @pytest.mark.asyncio
    async def test_creates_entity_once_and_places_on_entry_edge(self, client, dispatcher):
        await _register_with_entry_edge(client)

        first = await client.post(f"{API}/ingest/test-slug", json=GHOST)
        assert first.status_code == 200, first.text
        first_body = first.json()
        assert first_body["success"] is True
        assert first_body["created"] is True

        second = await client.post(f"{API}/ingest/test-slug", json=GHOST)
        assert second.status_code == 200
        second_body = second.json()
        assert second_body["created"] is False
        assert second_body["entity_id"] == first_body["entity_id"]
        assert second_body["run_id"] != first_body["run_id"]

        entity = await EntityStore().get(first_body["entity_id"])
        assert entity.name == "Ghost"
        assert entity.email == "ghost@x.io"
        assert entity.position == "traveling"
        assert entity.current_edge_id == "entry-enrich"
        assert entity.destination_node_id == "enrich"
        assert entity.edge_progress == 0.0
        assert entity.metadata["source"] == "typeform"

        # The run starts at the entry edge's target, not at the flow's first node
        assert dispatcher.node_ids() == ["enrich", "enrich"]

    @pytest.mark.asyncio
    async def test_run_carries_trigger_metadata(self, client, engine):
        await _register_with_entry_edge(client)
        body = (await client.post(f"{API}/ingest/test-slug", json=GHOST)).json()

        run = (await engine.get_status(body["run_id"])).value
        assert run.entity_id == body["entity_id"]
        assert run.trigger["type"] == "webhook"
        assert run.trigger["source"] == "typeform"
        assert run.trigger["event_id"] == body["webhook_event_id"]
        assert "timestamp" in run.trigger
        assert run.input == GHOST

    @pytest.mark.asyncio
    async def test_event_log_completed(self, client):
        await _register_with_entry_edge(client)
        body = (await client.post(f"{API}/ingest/test-slug", json=GHOST)).json()

        async with get_session_ctx() as session:
            event = await WebhookRepository(session).get_event(body["webhook_event_id"])
            assert event.status == "completed"
            assert event.entity_id == body["entity_id"]
            assert event.run_id == body["run_id"]
            assert event.processed_at is not None
            assert event.payload == GHOST

    @pytest.mark.asyncio
    async def test_existing_entity_refreshed_with_non_null_fields(self, client):
        await _register_with_entry_edge(client)
        first = (await client.post(f"{API}/ingest/test-slug", json=GHOST)).json()

        update = {"contact": {"email": "ghost@x.io", "photo": "https://img/ghost.png"}, "plan": "pro"}
        await client.post(f"{API}/ingest/test-slug", json=update)

        entity = await EntityStore().get(first["entity_id"])
        assert entity.name == "Ghost"
        assert entity.avatar_url == "https://img/ghost.png"
        assert entity.metadata["plan"] == "pro"

    @pytest.mark.asyncio
    async def test_lenient_partial_payload(self, client):
        await _register_with_entry_edge(client)
        resp = await client.post(f"{API}/ingest/test-slug", json={"something": "else"})
        assert resp.status_code == 200

        entity = await EntityStore().get(resp.json()["entity_id"])
        assert entity.name is None
        assert entity.email is None
        assert entity.entity_type == "lead"
        assert entity.position == "traveling"

    @pytest.mark.asyncio
    async def test_non_json_body_still_ingested(self, client):
        await _register_with_entry_edge(client)
        resp = await client.post(
            f"{API}/ingest/test-slug",
            content=b"name=Ghost&email=ghost@x.io",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert resp.status_code == 200
        entity = await EntityStore().get(resp.json()["entity_id"])
        assert entity.name is None

    @pytest.mark.asyncio
    async def test_emailless_payloads_are_not_merged(self, client):
        await _register_with_entry_edge(client)
        a = (await client.post(f"{API}/ingest/test-slug", json={})).json()
        b = (await client.post(f"{API}/ingest/test-slug", json={})).json()
        assert a["entity_id"] != b["entity_id"]


class TestIngestRejections:

    @pytest.mark.asyncio
    async def test_unknown_slug_404(self, client, dispatcher):
        resp = await client.post(f"{API}/ingest/no-such-slug", json=GHOST)
        assert resp.status_code == 404
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_inactive_slug_404(self, client, dispatcher):
        config = await _register_with_entry_edge(client, is_active=False)
        resp = await client.post(f"{API}/ingest/test-slug", json=GHOST)
        assert resp.status_code == 404
        assert dispatcher.calls == []

        events = await _events_for(config["id"])
        assert [e.status for e in events] == ["failed"]
        assert events[0].payload == GHOST
        assert events[0].run_id is None

    @pytest.mark.asyncio
    async def test_rejected_signature_is_logged(self, client):
        config = await _register_with_entry_edge(client, source="custom", secret="whsec_123")
        raw = json.dumps(GHOST).encode()
        resp = await client.post(
            f"{API}/ingest/test-slug",
            content=raw,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": sign_body(raw, "nope")},
        )
        assert resp.status_code == 401

        events = await _events_for(config["id"])
        assert len(events) == 1
        assert events[0].status == "failed"
        assert events[0].error == "Invalid webhook signature"
        assert events[0].processed_at is not None

    @pytest.mark.asyncio
    async def test_required_signature_without_secret(self, client):
        config = await _register_with_entry_edge(client, source="custom", require_signature=True)
        assert config["require_signature"] is True
        raw = json.dumps(GHOST).encode()

        unsigned = await client.post(
            f"{API}/ingest/test-slug", content=raw, headers={"Content-Type": "application/json"},
        )
        assert unsigned.status_code == 401

        signed = await client.post(
            f"{API}/ingest/test-slug",
            content=raw,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": "anything"},
        )
        assert signed.status_code == 200, signed.text
        statuses = sorted(e.status for e in await _events_for(config["id"]))
        assert statuses == ["completed", "failed"]

    @pytest.mark.asyncio
    async def test_signature_required_when_secret_set(self, client, dispatcher):
        await _register_with_entry_edge(client, source="custom", secret="whsec_123")
        raw = json.dumps(GHOST).encode()

        missing = await client.post(
            f"{API}/ingest/test-slug", content=raw, headers={"Content-Type": "application/json"},
        )
        assert missing.status_code == 401

        wrong = await client.post(
            f"{API}/ingest/test-slug",
            content=raw,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": sign_body(raw, "nope")},
        )
        assert wrong.status_code == 401
        assert dispatcher.calls == []

        good = await client.post(
            f"{API}/ingest/test-slug",
            content=raw,
            headers={
                "Content-Type": "application/json",
                "X-Webhook-Signature": f"sha256={sign_body(raw, 'whsec_123')}",
            },
        )
        assert good.status_code == 200, good.text

    @pytest.mark.asyncio
    async def test_entry_edge_removed_in_later_version(self, client):
        config = await _register_with_entry_edge(client)
        resp = await client.post(
            f"{API}/flows/{config['workflow_id']}/versions",
            json={"graph": _lead_flow(), "commit_message": "drop form"},
        )
        assert resp.status_code == 201, resp.text

        ingest = await client.post(f"{API}/ingest/test-slug", json=GHOST)
        assert ingest.status_code == 400


class TestWebhookConfigs:

    @pytest.mark.asyncio
    async def test_register(self, client):
        data = await _register_with_entry_edge(client, secret="s")
        assert data["slug"] == "test-slug"
        assert data["has_secret"] is True
        assert data["canvas_id"] == data["workflow_id"]
        assert "secret" not in data

    @pytest.mark.asyncio
    async def test_duplicate_slug_conflict(self, client):
        config = await _register_with_entry_edge(client)
        resp = await client.post(f"{API}/webhook-configs", json={
            "slug": "test-slug",
            "workflow_id": config["workflow_id"],
            "entry_edge_id": "entry-enrich",
        })
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_edge_rejected(self, client):
        flow_id = await save_flow(_lead_flow())
        resp = await client.post(f"{API}/webhook-configs", json={
            "slug": "s1", "workflow_id": flow_id, "entry_edge_id": "nope",
        })
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_flow_rejected(self, client):
        resp = await client.post(f"{API}/webhook-configs", json={
            "slug": "s1", "workflow_id": "ghost-flow", "entry_edge_id": "e",
        })
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_bad_slug_422(self, client):
        resp = await client.post(f"{API}/webhook-configs", json={
            "slug": "has spaces", "workflow_id": "f", "entry_edge_id": "e",
        })
        assert resp.status_code == 422


class TestSourceAdapters:

    @pytest.mark.asyncio
    async def test_stripe_checkout_event(self, client, engine):
        await _register_with_entry_edge(client, source="stripe", secret="whsec_stripe", entity_mapping={})
        payload = {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {
                "customer": "cus_9",
                "customer_details": {"email": "Buyer@Shop.io", "name": "Bea Buyer"},
                "amount_total": 4999,
                "currency": "usd",
                "payment_status": "paid",
            }},
        }
        raw = json.dumps(payload).encode()
        timestamp = "1700000000"
        digest = hmac.new(b"whsec_stripe", f"{timestamp}.".encode() + raw, hashlib.sha256).hexdigest()

        resp = await client.post(
            f"{API}/ingest/test-slug",
            content=raw,
            headers={"Content-Type": "application/json", "Stripe-Signature": f"t={timestamp},v1={digest}"},
        )
        assert resp.status_code == 200, resp.text
        body = resp.json()

        entity = await EntityStore().get(body["entity_id"])
        assert entity.email == "buyer@shop.io"
        assert entity.name == "Bea Buyer"
        assert entity.entity_type == "customer"
        assert entity.metadata["source"] == "stripe"
        assert entity.metadata["amount"] == "49.99 USD"
        assert entity.metadata["stripe_customer_id"] == "cus_9"

        run = (await engine.get_status(body["run_id"])).value
        assert run.trigger["event_type"] == "checkout.session.completed"

    @pytest.mark.asyncio
    async def test_stripe_rejects_generic_signature(self, client):
        await _register_with_entry_edge(client, source="stripe", secret="whsec_stripe")
        raw = json.dumps(GHOST).encode()
        resp = await client.post(
            f"{API}/ingest/test-slug",
            content=raw,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": sign_body(raw, "whsec_stripe")},
        )
        assert resp.status_code == 401
