"""Repository layer for webhook configs and the ingestion event log."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.db import WebhookConfigModel, WebhookEventModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookRepository:
    """Data access layer for webhook ingestion."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_config(
        self,
        slug: str,
        workflow_id: str,
        entry_edge_id: str,
        canvas_id: Optional[str] = None,
        source: str = "custom",
        name: Optional[str] = None,
        entity_mapping: Optional[Dict[str, Any]] = None,
        secret: Optional[str] = None,
        is_active: bool = True,
        require_signature: bool = False,
    ) -> WebhookConfigModel:
        config = WebhookConfigModel(
            slug=slug,
            source=source,
            name=name,
            canvas_id=canvas_id or workflow_id,
            workflow_id=workflow_id,
            entry_edge_id=entry_edge_id,
            entity_mapping=entity_mapping or {},
            secret=secret,
            is_active=is_active,
            require_signature=require_signature,
        )
        self.session.add(config)
        await self.session.flush()
        return config

    async def get_config_by_slug(self, slug: str) -> Optional[WebhookConfigModel]:
        result = await self.session.execute(
            select(WebhookConfigModel).where(WebhookConfigModel.slug == slug)
        )
        return result.scalar_one_or_none()

    async def touch_config(self, config_id: str) -> None:
        await self.session.execute(
            update(WebhookConfigModel)
            .where(WebhookConfigModel.id == config_id)
            .values(last_triggered_at=_utcnow())
        )

    async def create_event(
        self,
        webhook_config_id: str,
        payload: Any,
    ) -> WebhookEventModel:
        event = WebhookEventModel(
            webhook_config_id=webhook_config_id,
            status="pending",
            payload=payload,
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def get_event(self, event_id: str) -> Optional[WebhookEventModel]:
        return await self.session.get(WebhookEventModel, event_id)

    async def update_event(
        self,
        event_id: str,
        status: str,
        entity_id: Optional[str] = None,
        run_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        values: Dict[str, Any] = {"status": status}
        if entity_id is not None:
            values["entity_id"] = entity_id
        if run_id is not None:
            values["run_id"] = run_id
        if error is not None:
            values["error"] = error
        if status in ("completed", "failed"):
            values["processed_at"] = _utcnow()
        await self.session.execute(
            update(WebhookEventModel)
            .where(WebhookEventModel.id == event_id)
            .values(**values)
        )
