"""Repository layer for flows and their immutable versions."""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models.db import FlowModel, FlowVersionModel


class FlowRepository:
    """Data access layer for flows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        name: str,
        graph: Dict[str, Any],
        description: Optional[str] = None,
        flow_id: Optional[str] = None,
    ) -> Tuple[FlowModel, FlowVersionModel]:
        """Create a flow together with its first version."""
        flow = FlowModel(id=flow_id or str(uuid.uuid4()), name=name, description=description)
        self.session.add(flow)
        await self.session.flush()
        version = await self.add_version(flow.id, graph, commit_message="Initial version")
        return flow, version

    async def add_version(
        self,
        flow_id: str,
        graph: Dict[str, Any],
        commit_message: Optional[str] = None,
    ) -> FlowVersionModel:
        """Append a version and make it current. Earlier versions are never modified."""
        result = await self.session.execute(
            select(func.max(FlowVersionModel.version_number))
            .where(FlowVersionModel.flow_id == flow_id)
        )
        next_number = (result.scalar() or 0) + 1

        version = FlowVersionModel(
            id=str(uuid.uuid4()),
            flow_id=flow_id,
            version_number=next_number,
            graph=graph,
            commit_message=commit_message,
        )
        self.session.add(version)
        await self.session.flush()

        flow = await self.session.get(FlowModel, flow_id)
        if flow is not None:
            flow.current_version_id = version.id
            await self.session.flush()
        return version

    async def get(self, flow_id: str) -> Optional[FlowModel]:
        result = await self.session.execute(
            select(FlowModel)
            .options(selectinload(FlowModel.versions))
            .where(FlowModel.id == flow_id)
        )
        return result.scalar_one_or_none()

    async def get_version(self, version_id: str) -> Optional[FlowVersionModel]:
        result = await self.session.execute(
            select(FlowVersionModel).where(FlowVersionModel.id == version_id)
        )
        return result.scalar_one_or_none()

    async def get_current_version(self, flow_id: str) -> Optional[FlowVersionModel]:
        """Current version, falling back to the highest-numbered one."""
        flow = await self.session.get(FlowModel, flow_id)
        if flow is None:
            return None
        if flow.current_version_id:
            version = await self.get_version(flow.current_version_id)
            if version is not None:
                return version
        result = await self.session.execute(
            select(FlowVersionModel)
            .where(FlowVersionModel.flow_id == flow_id)
            .order_by(FlowVersionModel.version_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
