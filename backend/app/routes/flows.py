"""Flow authoring endpoints.

Flows are saved as immutable versions; every save runs the structural
checks (unique ids, dangling edges, convergence only through a Collector,
Splitter/Logic well-formedness) and rejects the graph with 400 when any
fail.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException

from app.database import get_session_ctx
from app.models.db import FlowModel
from app.repositories.flow import FlowRepository
from stitch.config import API_PREFIX
from stitch.errors import ValidationError
from stitch.graph import parse_flow_graph, validate_flow_graph

from .schemas import CreateFlowRequest, CreateVersionRequest, FlowResponse

logger = logging.getLogger("stitch.routes.flows")

router = APIRouter(prefix=f"{API_PREFIX}/flows", tags=["flows"])


def _validated_graph(graph: Dict[str, Any]) -> Dict[str, Any]:
    """Parse + structurally validate; raise 400 with the issue list.

    The graph is stored as submitted so unknown fields survive untouched.
    """
    try:
        parsed = parse_flow_graph(graph)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail={"message": e.message, "issues": e.issues})
    issues = validate_flow_graph(parsed)
    if issues:
        raise HTTPException(status_code=400, detail={"message": "Invalid flow graph", "issues": issues})
    return graph


def _flow_to_response(flow: FlowModel, graph: Optional[Dict[str, Any]] = None) -> FlowResponse:
    return FlowResponse(
        id=flow.id,
        name=flow.name,
        description=flow.description,
        current_version_id=flow.current_version_id,
        graph=graph,
        versions=[
            {
                "id": v.id,
                "version_number": v.version_number,
                "commit_message": v.commit_message,
                "created_at": v.created_at.isoformat() if v.created_at else "",
            }
            for v in flow.versions
        ],
    )


@router.post("", response_model=FlowResponse, status_code=201)
async def create_flow(payload: CreateFlowRequest):
    graph = _validated_graph(payload.graph)
    async with get_session_ctx() as session:
        flow, version = await FlowRepository(session).create(
            name=payload.name, graph=graph, description=payload.description,
        )
        flow_id = flow.id
    logger.info(f"Flow created: {flow_id} (version {version.id})")
    return await get_flow(flow_id)


@router.post("/{flow_id}/versions", response_model=FlowResponse, status_code=201)
async def create_flow_version(flow_id: str, payload: CreateVersionRequest):
    graph = _validated_graph(payload.graph)
    async with get_session_ctx() as session:
        repo = FlowRepository(session)
        if await repo.get(flow_id) is None:
            raise HTTPException(status_code=404, detail=f"Flow '{flow_id}' not found")
        version = await repo.add_version(flow_id, graph, commit_message=payload.commit_message)
    logger.info(f"Flow {flow_id}: version {version.version_number} saved")
    return await get_flow(flow_id)


@router.get("/{flow_id}", response_model=FlowResponse)
async def get_flow(flow_id: str):
    async with get_session_ctx() as session:
        repo = FlowRepository(session)
        flow = await repo.get(flow_id)
        if flow is None:
            raise HTTPException(status_code=404, detail=f"Flow '{flow_id}' not found")
        current = await repo.get_current_version(flow_id)
        return _flow_to_response(flow, current.graph if current else None)
