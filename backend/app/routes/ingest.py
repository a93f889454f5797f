"""Webhook ingestion endpoints.

- POST /api/stitch/ingest/{slug}        third-party event → entity + run
- POST /api/stitch/webhook-configs      register a slug
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from app.database import get_session_ctx
from app.models.db import WebhookConfigModel
from app.repositories.flow import FlowRepository
from app.repositories.webhook import WebhookRepository
from stitch.config import API_PREFIX
from stitch.ingest import IngestionGateway
from stitch.runner import EdgeWalker, get_engine

from .common import raise_for_result
from .schemas import IngestResponse, WebhookConfigRequest, WebhookConfigResponse

logger = logging.getLogger("stitch.routes.ingest")

router = APIRouter(prefix=API_PREFIX, tags=["ingest"])


def _config_to_response(config: WebhookConfigModel) -> WebhookConfigResponse:
    return WebhookConfigResponse(
        id=config.id,
        slug=config.slug,
        source=config.source,
        name=config.name,
        canvas_id=config.canvas_id,
        workflow_id=config.workflow_id,
        entry_edge_id=config.entry_edge_id,
        entity_mapping=config.entity_mapping or {},
        is_active=config.is_active,
        has_secret=bool(config.secret),
        require_signature=config.require_signature,
    )


@router.post("/ingest/{slug}", response_model=IngestResponse)
async def ingest_webhook(
    slug: str,
    request: Request,
    engine: EdgeWalker = Depends(get_engine),
):
    """Ingest a third-party event.

    An unparseable body is still ingested (as ``{"_raw": ...}``) so the
    entity is created with null fields rather than the event being lost.
    """
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body) if raw_body else {}
    except ValueError:
        logger.warning(f"Non-JSON body on /ingest/{slug}; storing raw text")
        payload = {"_raw": raw_body.decode("utf-8", errors="replace")}

    gateway = IngestionGateway(engine)
    result = await gateway.ingest(slug, raw_body, payload, headers=request.headers)
    raise_for_result(result)
    return IngestResponse(success=True, **result.value)


@router.post("/webhook-configs", response_model=WebhookConfigResponse, status_code=201)
async def create_webhook_config(payload: WebhookConfigRequest):
    async with get_session_ctx() as session:
        version = await FlowRepository(session).get_current_version(payload.workflow_id)
        if version is None:
            raise HTTPException(status_code=404, detail=f"Flow '{payload.workflow_id}' not found")
        edge_ids = {e.get("id") for e in (version.graph or {}).get("edges", [])}
        if payload.entry_edge_id not in edge_ids:
            raise HTTPException(
                status_code=400,
                detail=f"Edge '{payload.entry_edge_id}' not found in flow '{payload.workflow_id}'",
            )

    try:
        async with get_session_ctx() as session:
            config = await WebhookRepository(session).create_config(**payload.model_dump())
    except IntegrityError:
        raise HTTPException(status_code=409, detail=f"Webhook slug '{payload.slug}' already exists")
    return _config_to_response(config)
