"""SQLAlchemy ORM models for the Stitch engine.

Tables:
- flows / flow_versions: immutable, versioned flow graphs
- runs: one execution of a flow version (node states, collector slots)
- entities: external actors traveling a canvas, with their journey
- webhook_configs: slug → flow + entry edge + entity mapping
- webhook_events: log of every ingested third-party event

``runs.version`` and ``entities.version`` are compare-and-swap tokens;
every write goes through ``UPDATE ... WHERE version = :read_version``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_uuid() -> str:
    return str(uuid.uuid4())


# ─── Flows ──────────────────────────────────────────────────────────


class FlowModel(Base):
    """A named flow. Its graph lives in FlowVersionModel rows."""

    __tablename__ = "flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    current_version_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    versions: Mapped[List["FlowVersionModel"]] = relationship(
        back_populates="flow", cascade="all, delete-orphan",
        order_by="FlowVersionModel.version_number",
    )


class FlowVersionModel(Base):
    """Immutable snapshot of a flow graph. Runs pin the version they started on."""

    __tablename__ = "flow_versions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_gen_uuid)
    flow_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("flows.id", ondelete="CASCADE"), nullable=False,
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    graph: Mapped[Dict[str, Any]] = mapped_column(
        JSON, nullable=False, comment="FlowGraph JSON: {nodes, edges}",
    )
    commit_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )

    flow: Mapped["FlowModel"] = relationship(back_populates="versions")

    __table_args__ = (
        UniqueConstraint("flow_id", "version_number", name="uq_flow_versions_number"),
        Index("ix_flow_versions_flow_id", "flow_id"),
    )


# ─── Runs ───────────────────────────────────────────────────────────


class RunModel(Base):
    """Persisted run document.

    ``node_states`` is keyed by instance id (``node`` or ``node_{index}``);
    ``collector_states`` by Collector node id.
    """

    __tablename__ = "runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_gen_uuid)
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    flow_version_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("flow_versions.id"), nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="running",
        comment="running | waiting_for_user | completed | failed",
    )
    node_states: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    collector_states: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    current_ux_node: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    trigger: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    input_data: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )

    __table_args__ = (
        Index("ix_runs_flow_id", "flow_id"),
        Index("ix_runs_entity_id", "entity_id"),
        Index("ix_runs_status", "status"),
    )


# ─── Entities ───────────────────────────────────────────────────────


class EntityModel(Base):
    """An external actor on a canvas.

    Position is either ``current_node_id`` or the travel triple
    (``current_edge_id``, ``edge_progress``, ``destination_node_id``).
    """

    __tablename__ = "entities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_gen_uuid)
    canvas_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False, default="lead")

    current_node_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    current_edge_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    edge_progress: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    destination_node_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    journey: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict,
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )

    __table_args__ = (
        UniqueConstraint("canvas_id", "email", name="uq_entities_canvas_email"),
        Index("ix_entities_canvas_id", "canvas_id"),
    )


# ─── Webhook ingestion ──────────────────────────────────────────────


class WebhookConfigModel(Base):
    """Maps an inbound webhook slug to a flow entry point."""

    __tablename__ = "webhook_configs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_gen_uuid)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False, default="custom")
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    canvas_id: Mapped[str] = mapped_column(String(64), nullable=False)
    workflow_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("flows.id", ondelete="CASCADE"), nullable=False,
    )
    entry_edge_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_mapping: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    secret: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    require_signature: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )

    events: Mapped[List["WebhookEventModel"]] = relationship(
        back_populates="config", cascade="all, delete-orphan",
    )


class WebhookEventModel(Base):
    """One received ingestion payload and what it produced."""

    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_gen_uuid)
    webhook_config_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("webhook_configs.id", ondelete="CASCADE"), nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending",
        comment="pending | processing | completed | failed",
    )
    payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    run_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    config: Mapped["WebhookConfigModel"] = relationship(back_populates="events")

    __table_args__ = (
        Index("ix_webhook_events_config_id", "webhook_config_id"),
    )
