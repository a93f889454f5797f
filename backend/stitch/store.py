"""Run, Entity, Flow and Webhook stores.

All engine state lives in the database; these stores hand out detached
snapshots and write them back with an optimistic compare-and-swap on the
row's ``version`` column:

    load row (version v) → apply fn to snapshot → UPDATE ... WHERE version = v

Concurrent writers to one row are serialized first: an in-process lock per
row id, then the database row lock (SELECT ... FOR UPDATE, or BEGIN
IMMEDIATE on SQLite; see app.database.configure_sqlite). A zero-row update
can then only come from a writer that bypassed both; the whole
read-modify-write is retried with capped, jittered exponential backoff. Because ``fn`` may run more than once it
must only touch the snapshot it is given; network side effects happen
after ``mutate`` returns.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import random
import uuid
import weakref
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError

from app.database import get_session_ctx
from app.models.db import EntityModel, RunModel, WebhookConfigModel
from app.repositories.entity import EntityRepository
from app.repositories.flow import FlowRepository
from app.repositories.run import RunRepository
from app.repositories.webhook import WebhookRepository

from .errors import ConcurrencyConflict, NotFoundError
from .graph import FlowGraph, parse_flow_graph
from .movement import EntitySnapshot
from .run_state import CollectorState, NodeState, RunSnapshot, RunStatus
from .settings import (
    DEFAULT_ENTITY_TYPE,
    ENTITY_UPDATE_MAX_ATTEMPTS,
    RUN_UPDATE_MAX_ATTEMPTS,
    STORE_RETRY_BASE_DELAY,
    STORE_RETRY_MAX_DELAY,
)

logger = logging.getLogger("stitch.store")

T = TypeVar("T")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _is_lock_error(error: OperationalError) -> bool:
    # SQLite reports write contention as "database is locked"
    return "locked" in str(error).lower()


async def _with_cas_retry(
    op: Callable[[], Awaitable[T]],
    max_attempts: int,
    what: str,
) -> T:
    """Run op until it stops raising ConcurrencyConflict or attempts run out."""
    for attempt in range(max_attempts):
        try:
            return await op()
        except ConcurrencyConflict:
            pass
        except OperationalError as e:
            if not _is_lock_error(e):
                raise
        if attempt + 1 < max_attempts:
            delay = min(STORE_RETRY_MAX_DELAY, STORE_RETRY_BASE_DELAY * (2 ** attempt))
            delay *= random.uniform(0.5, 1.5)
            logger.debug(f"CAS conflict on {what}, retry {attempt + 1}/{max_attempts} in {delay:.3f}s")
            await asyncio.sleep(delay)
    logger.error(f"CAS retries exhausted on {what} after {max_attempts} attempts")
    raise ConcurrencyConflict(f"Concurrent updates to {what} did not settle after {max_attempts} attempts")


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds a reference."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


# ─── Runs ───────────────────────────────────────────────────────────


def run_to_snapshot(model: RunModel) -> RunSnapshot:
    """Deep-copy a RunModel row into a RunSnapshot."""
    node_states = copy.deepcopy(model.node_states or {})
    collector_states = copy.deepcopy(model.collector_states or {})
    return RunSnapshot(
        id=model.id,
        flow_id=model.flow_id,
        flow_version_id=model.flow_version_id,
        status=RunStatus(model.status),
        node_states={iid: NodeState.from_dict(iid, data) for iid, data in node_states.items()},
        collector_states={cid: CollectorState.from_dict(data) for cid, data in collector_states.items()},
        current_ux_node=model.current_ux_node,
        entity_id=model.entity_id,
        trigger=copy.deepcopy(model.trigger),
        input=copy.deepcopy(model.input_data),
        version=model.version,
        created_at=_iso(model.created_at),
        updated_at=_iso(model.updated_at),
    )


def _run_values(run: RunSnapshot) -> Dict[str, Any]:
    return {
        "status": run.status.value,
        "node_states": {iid: s.to_dict() for iid, s in run.node_states.items()},
        "collector_states": {cid: c.to_dict() for cid, c in run.collector_states.items()},
        "current_ux_node": run.current_ux_node,
        "entity_id": run.entity_id,
    }


class RunStore:
    """Atomic access to persisted runs."""

    def __init__(self, max_attempts: int = RUN_UPDATE_MAX_ATTEMPTS):
        self.max_attempts = max_attempts
        self._locks = KeyedLocks()

    async def get(self, run_id: str) -> RunSnapshot:
        async with get_session_ctx() as session:
            model = await RunRepository(session).get(run_id)
            if model is None:
                raise NotFoundError(f"Run not found: {run_id}")
            return run_to_snapshot(model)

    async def create(
        self,
        flow_id: str,
        flow_version_id: str,
        entity_id: Optional[str] = None,
        trigger: Optional[Dict[str, Any]] = None,
        input: Any = None,
    ) -> RunSnapshot:
        async with get_session_ctx() as session:
            model = await RunRepository(session).create(
                run_id=str(uuid.uuid4()),
                flow_id=flow_id,
                flow_version_id=flow_version_id,
                status=RunStatus.RUNNING.value,
                entity_id=entity_id,
                trigger=trigger,
                input_data=input,
            )
            return run_to_snapshot(model)

    async def mutate(
        self,
        run_id: str,
        fn: Callable[[RunSnapshot], T],
    ) -> Tuple[RunSnapshot, T]:
        """Atomic read-modify-write of one run.

        ``fn`` edits the snapshot in place and returns an outcome. Raising a
        StitchError inside fn aborts without writing. Run status is
        re-derived before every write. Skips the write when nothing changed.

        Returns:
            (snapshot as written, fn's outcome)

        Raises:
            NotFoundError: unknown run (never retried)
            ConcurrencyConflict: retries exhausted
        """

        async def _attempt() -> Tuple[RunSnapshot, T]:
            async with get_session_ctx() as session:
                repo = RunRepository(session)
                model = await repo.get(run_id, for_update=True)
                if model is None:
                    raise NotFoundError(f"Run not found: {run_id}")
                run = run_to_snapshot(model)
                before = copy.deepcopy(_run_values(run))
                outcome = fn(run)
                run.refresh_status()
                after = _run_values(run)
                if after == before:
                    return run, outcome
                if not await repo.compare_and_set(run_id, run.version, after):
                    raise ConcurrencyConflict(f"Run {run_id} changed since version {run.version}")
                run.version += 1
                return run, outcome

        async with self._locks.get(run_id):
            return await _with_cas_retry(_attempt, self.max_attempts, f"run {run_id}")


# ─── Entities ───────────────────────────────────────────────────────


def entity_to_snapshot(model: EntityModel) -> EntitySnapshot:
    return EntitySnapshot(
        id=model.id,
        canvas_id=model.canvas_id,
        name=model.name,
        email=model.email,
        avatar_url=model.avatar_url,
        entity_type=model.entity_type,
        current_node_id=model.current_node_id,
        current_edge_id=model.current_edge_id,
        edge_progress=model.edge_progress,
        destination_node_id=model.destination_node_id,
        journey=copy.deepcopy(model.journey or []),
        metadata=copy.deepcopy(model.metadata_ or {}),
        completed_at=_iso(model.completed_at),
        version=model.version,
        created_at=_iso(model.created_at),
        updated_at=_iso(model.updated_at),
    )


def _entity_values(entity: EntitySnapshot) -> Dict[str, Any]:
    return {
        "name": entity.name,
        "email": entity.email,
        "avatar_url": entity.avatar_url,
        "entity_type": entity.entity_type,
        "current_node_id": entity.current_node_id,
        "current_edge_id": entity.current_edge_id,
        "edge_progress": entity.edge_progress,
        "destination_node_id": entity.destination_node_id,
        "journey": copy.deepcopy(entity.journey),
        "metadata_": copy.deepcopy(entity.metadata),
        "completed_at": _parse_iso(entity.completed_at),
    }


class EntityStore:
    """Atomic access to canvas entities."""

    def __init__(self, max_attempts: int = ENTITY_UPDATE_MAX_ATTEMPTS):
        self.max_attempts = max_attempts
        self._locks = KeyedLocks()

    async def get(self, entity_id: str) -> EntitySnapshot:
        async with get_session_ctx() as session:
            model = await EntityRepository(session).get(entity_id)
            if model is None:
                raise NotFoundError(f"Entity not found: {entity_id}")
            return entity_to_snapshot(model)

    async def mutate(
        self,
        entity_id: str,
        fn: Callable[[EntitySnapshot], Any],
    ) -> EntitySnapshot:
        """Atomic read-modify-write of one entity. Returns the entity as written."""

        async def _attempt() -> EntitySnapshot:
            async with get_session_ctx() as session:
                repo = EntityRepository(session)
                model = await repo.get(entity_id, for_update=True)
                if model is None:
                    raise NotFoundError(f"Entity not found: {entity_id}")
                entity = entity_to_snapshot(model)
                before = _entity_values(entity)
                fn(entity)
                after = _entity_values(entity)
                if after == before:
                    return entity
                if not await repo.compare_and_set(entity_id, entity.version, after):
                    raise ConcurrencyConflict(f"Entity {entity_id} changed since version {entity.version}")
                entity.version += 1
                return entity

        async with self._locks.get(entity_id):
            return await _with_cas_retry(_attempt, self.max_attempts, f"entity {entity_id}")

    async def create(
        self,
        canvas_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        avatar_url: Optional[str] = None,
        entity_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EntitySnapshot:
        async with get_session_ctx() as session:
            model = await EntityRepository(session).create(
                entity_id=str(uuid.uuid4()),
                canvas_id=canvas_id,
                name=name,
                email=email,
                avatar_url=avatar_url,
                entity_type=entity_type or DEFAULT_ENTITY_TYPE,
                metadata=metadata,
            )
            return entity_to_snapshot(model)

    async def find_or_create_by_email(
        self,
        canvas_id: str,
        email: Optional[str],
        **fields: Any,
    ) -> Tuple[EntitySnapshot, bool]:
        """Return (entity, created).

        Without an email there is nothing to match on, so a new entity is
        always created. Two concurrent creates for the same email collide
        on the (canvas_id, email) unique constraint; the loser re-reads.
        """
        if not email:
            return await self.create(canvas_id, email=None, **fields), True

        async with get_session_ctx() as session:
            existing = await EntityRepository(session).find_by_email(canvas_id, email)
            if existing is not None:
                return entity_to_snapshot(existing), False

        try:
            return await self.create(canvas_id, email=email, **fields), True
        except IntegrityError:
            logger.info(f"Entity for {email} on {canvas_id} created concurrently; re-reading")

        async with get_session_ctx() as session:
            existing = await EntityRepository(session).find_by_email(canvas_id, email)
            if existing is None:
                raise ConcurrencyConflict(f"Entity for {email} vanished after unique conflict")
            return entity_to_snapshot(existing), False


# ─── Flows ──────────────────────────────────────────────────────────


class FlowStore:
    """Read access to immutable flow versions."""

    async def get_version_graph(self, version_id: str) -> FlowGraph:
        async with get_session_ctx() as session:
            version = await FlowRepository(session).get_version(version_id)
            if version is None:
                raise NotFoundError(f"Flow version not found: {version_id}")
            return parse_flow_graph(version.graph)

    async def get_current(self, flow_id: str) -> Tuple[str, FlowGraph]:
        """(version_id, graph) of the flow's current version."""
        async with get_session_ctx() as session:
            version = await FlowRepository(session).get_current_version(flow_id)
            if version is None:
                raise NotFoundError(f"Flow not found: {flow_id}")
            return version.id, parse_flow_graph(version.graph)


# ─── Webhook ingestion ──────────────────────────────────────────────


class WebhookStore:
    """Webhook config lookup and the ingestion event log."""

    async def get_config(self, slug: str) -> WebhookConfigModel:
        async with get_session_ctx() as session:
            config = await WebhookRepository(session).get_config_by_slug(slug)
            if config is None:
                raise NotFoundError(f"Webhook not found: {slug}")
            return config

    async def log_event(self, config_id: str, payload: Any) -> str:
        async with get_session_ctx() as session:
            repo = WebhookRepository(session)
            event = await repo.create_event(config_id, payload)
            await repo.touch_config(config_id)
            return event.id

    async def update_event(self, event_id: str, status: str, **fields: Any) -> None:
        async with get_session_ctx() as session:
            await WebhookRepository(session).update_event(event_id, status, **fields)
