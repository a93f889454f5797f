"""Repository layer for run persistence.

Provides async access to RunModel plus the versioned compare-and-set the
run store builds its atomic read-modify-write on.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.db import RunModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunRepository:
    """Data access layer for runs."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        run_id: str,
        flow_id: str,
        flow_version_id: str,
        status: str = "running",
        node_states: Optional[Dict[str, Any]] = None,
        collector_states: Optional[Dict[str, Any]] = None,
        entity_id: Optional[str] = None,
        trigger: Optional[Dict[str, Any]] = None,
        input_data: Any = None,
    ) -> RunModel:
        run = RunModel(
            id=run_id,
            flow_id=flow_id,
            flow_version_id=flow_version_id,
            status=status,
            node_states=node_states or {},
            collector_states=collector_states or {},
            entity_id=entity_id,
            trigger=trigger,
            input_data=input_data,
            version=0,
        )
        self.session.add(run)
        await self.session.flush()
        return run

    async def get(self, run_id: str, for_update: bool = False) -> Optional[RunModel]:
        """Load a run. With for_update the row stays locked until the
        session's transaction ends (SELECT ... FOR UPDATE where supported)."""
        stmt = select(RunModel).where(RunModel.id == run_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def compare_and_set(
        self,
        run_id: str,
        expected_version: int,
        values: Dict[str, Any],
    ) -> bool:
        """Write values only if the row is still at expected_version.

        Returns:
            True if exactly one row was updated, False on a version mismatch.
        """
        result = await self.session.execute(
            update(RunModel)
            .where(RunModel.id == run_id, RunModel.version == expected_version)
            .values(**values, version=expected_version + 1, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
