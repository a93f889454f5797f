"""Entity endpoints.

Arrival and progress are explicit signals from the presentation layer;
the engine never moves a traveling entity onto a node by itself.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from stitch.config import API_PREFIX
from stitch.runner import EdgeWalker, get_engine

from .common import raise_for_result
from .schemas import ArriveRequest, EntityResponse, ProgressRequest

router = APIRouter(prefix=f"{API_PREFIX}/entities", tags=["entities"])


@router.get("/{entity_id}", response_model=EntityResponse)
async def get_entity(entity_id: str, engine: EdgeWalker = Depends(get_engine)):
    result = await engine.mover.get(entity_id)
    raise_for_result(result)
    return result.value.to_dict()


@router.post("/{entity_id}/arrive", response_model=EntityResponse)
async def arrive(
    entity_id: str,
    payload: ArriveRequest,
    engine: EdgeWalker = Depends(get_engine),
):
    """traveling → at_node. Idempotent; a mismatched node_id is ignored."""
    result = await engine.mover.arrive(entity_id, payload.node_id)
    raise_for_result(result)
    return result.value.to_dict()


@router.post("/{entity_id}/progress", response_model=EntityResponse)
async def update_progress(
    entity_id: str,
    payload: ProgressRequest,
    engine: EdgeWalker = Depends(get_engine),
):
    result = await engine.mover.update_progress(entity_id, payload.progress)
    raise_for_result(result)
    return result.value.to_dict()
