"""Pydantic schemas for the Stitch API endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# --- Runs ---


class StartRunRequest(BaseModel):
    """Request for POST /api/stitch/start/{flow_id}."""
    input: Any = Field(default=None, description="Run input handed to the entry nodes")
    entity_id: Optional[str] = Field(None, description="Entity bound to this run")


class StartRunResponse(BaseModel):
    run_id: str


class CompleteRequest(BaseModel):
    """Human submission for a UX node."""
    output: Any = None


class AckResponse(BaseModel):
    """Acknowledgement for callbacks and UX submissions."""
    success: bool = True
    duplicate: bool = False
    run_id: Optional[str] = None
    node_id: Optional[str] = None
    status: Optional[str] = None


class NodeStateResponse(BaseModel):
    node_id: str
    status: str
    input: Any = None
    output: Any = None
    error: Any = None
    index: Optional[int] = None
    total: Optional[int] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    selected_edge_id: Optional[str] = None
    propagated: bool = False
    moved: bool = False


class CollectorStateResponse(BaseModel):
    expected: int
    collected: List[Any] = []
    filled: List[bool] = []


class RunStatusResponse(BaseModel):
    """Run snapshot returned by GET /api/stitch/status/{run_id}."""
    id: str
    flow_id: str
    flow_version_id: str
    status: str
    node_states: Dict[str, NodeStateResponse] = {}
    collector_states: Dict[str, CollectorStateResponse] = {}
    current_ux_node: Optional[str] = None
    entity_id: Optional[str] = None
    trigger: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# --- Entities ---


class EntityResponse(BaseModel):
    id: str
    canvas_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    entity_type: str
    position: str
    current_node_id: Optional[str] = None
    current_edge_id: Optional[str] = None
    edge_progress: Optional[float] = None
    destination_node_id: Optional[str] = None
    journey: List[Dict[str, Any]] = []
    metadata: Dict[str, Any] = {}
    completed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ArriveRequest(BaseModel):
    node_id: Optional[str] = Field(
        None, description="Node the client believes the entity reached; must match the destination",
    )


class ProgressRequest(BaseModel):
    progress: float = Field(..., ge=0.0, le=1.0)


# --- Ingestion ---


class IngestResponse(BaseModel):
    success: bool = True
    entity_id: str
    run_id: str
    webhook_event_id: str
    created: bool


class WebhookConfigRequest(BaseModel):
    """Request for POST /api/stitch/webhook-configs."""
    slug: str = Field(..., min_length=1, max_length=128, pattern=r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
    workflow_id: str
    entry_edge_id: str
    canvas_id: Optional[str] = Field(None, description="Defaults to workflow_id")
    source: str = "custom"
    name: Optional[str] = None
    entity_mapping: Dict[str, Any] = Field(default_factory=dict)
    secret: Optional[str] = None
    is_active: bool = True
    require_signature: bool = Field(False, description="Reject events without a signature header")


class WebhookConfigResponse(BaseModel):
    id: str
    slug: str
    source: str
    name: Optional[str] = None
    canvas_id: str
    workflow_id: str
    entry_edge_id: str
    entity_mapping: Dict[str, Any]
    is_active: bool
    has_secret: bool
    require_signature: bool = False


# --- Flows ---


class CreateFlowRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    graph: Dict[str, Any] = Field(..., description="{nodes: [...], edges: [...]}")


class CreateVersionRequest(BaseModel):
    graph: Dict[str, Any]
    commit_message: Optional[str] = None


class FlowVersionSummary(BaseModel):
    id: str
    version_number: int
    commit_message: Optional[str] = None
    created_at: str


class FlowResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    current_version_id: Optional[str] = None
    graph: Optional[Dict[str, Any]] = None
    versions: List[FlowVersionSummary] = []
