"""Repository layer for entity persistence."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.db import EntityModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityRepository:
    """Data access layer for canvas entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        entity_id: str,
        canvas_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        avatar_url: Optional[str] = None,
        entity_type: str = "lead",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EntityModel:
        entity = EntityModel(
            id=entity_id,
            canvas_id=canvas_id,
            name=name,
            email=email,
            avatar_url=avatar_url,
            entity_type=entity_type,
            journey=[],
            metadata_=metadata or {},
            version=0,
        )
        self.session.add(entity)
        await self.session.flush()
        return entity

    async def get(self, entity_id: str, for_update: bool = False) -> Optional[EntityModel]:
        stmt = select(EntityModel).where(EntityModel.id == entity_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_email(self, canvas_id: str, email: str) -> Optional[EntityModel]:
        result = await self.session.execute(
            select(EntityModel).where(
                EntityModel.canvas_id == canvas_id,
                EntityModel.email == email,
            )
        )
        return result.scalar_one_or_none()

    async def compare_and_set(
        self,
        entity_id: str,
        expected_version: int,
        values: Dict[str, Any],
    ) -> bool:
        """Versioned update; False when another writer got there first."""
        result = await self.session.execute(
            update(EntityModel)
            .where(EntityModel.id == entity_id, EntityModel.version == expected_version)
            .values({
                **{getattr(EntityModel, key): value for key, value in values.items()},
                EntityModel.version: expected_version + 1,
                EntityModel.updated_at: _utcnow(),
            })
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
