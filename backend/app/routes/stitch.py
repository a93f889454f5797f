"""Run execution endpoints.

- POST /api/stitch/start/{flow_id}            start a run
- POST /api/stitch/callback/{run_id}/{node_id} worker callback (idempotent ack)
- POST /api/stitch/complete/{run_id}/{node_id} human UX submission
- GET  /api/stitch/status/{run_id}            run snapshot
- GET  /api/stitch/runs/{run_id}/stream       SSE live updates
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from app.event_bus import subscribe_events
from stitch.config import API_PREFIX
from stitch.errors import ErrorKind
from stitch.protocol import WorkerCallback, verify_callback_token
from stitch.runner import EdgeWalker, get_engine

from .common import raise_for_result
from .schemas import (
    AckResponse,
    CompleteRequest,
    RunStatusResponse,
    StartRunRequest,
    StartRunResponse,
)

logger = logging.getLogger("stitch.routes.runs")

router = APIRouter(prefix=API_PREFIX, tags=["runs"])


@router.post("/start/{flow_id}", response_model=StartRunResponse, status_code=201)
async def start_run(
    flow_id: str,
    payload: Optional[StartRunRequest] = None,
    engine: EdgeWalker = Depends(get_engine),
):
    payload = payload or StartRunRequest()
    result = await engine.start_run(
        flow_id,
        input=payload.input,
        entity_id=payload.entity_id,
        trigger={"type": "api"},
    )
    raise_for_result(result)
    return StartRunResponse(run_id=result.value["run_id"])


@router.post("/callback/{run_id}/{node_id}", response_model=AckResponse)
async def worker_callback(
    run_id: str,
    node_id: str,
    payload: WorkerCallback,
    token: Optional[str] = Query(None),
    engine: EdgeWalker = Depends(get_engine),
):
    """Worker callback. Duplicates and late deliveries are acknowledged, never errors."""
    if not verify_callback_token(run_id, node_id, token):
        logger.warning(f"Callback token rejected for {run_id}/{node_id}")
        raise HTTPException(status_code=401, detail="Invalid callback token")

    result = await engine.handle_callback(run_id, node_id, payload)
    raise_for_result(result)
    return AckResponse(
        success=True,
        duplicate=result.error_kind == ErrorKind.DUPLICATE_CALLBACK,
        **result.value,
    )


@router.post("/complete/{run_id}/{node_id}", response_model=AckResponse)
async def complete_ux_node(
    run_id: str,
    node_id: str,
    payload: Optional[CompleteRequest] = None,
    engine: EdgeWalker = Depends(get_engine),
):
    payload = payload or CompleteRequest()
    result = await engine.complete_ux(run_id, node_id, payload.output)
    raise_for_result(result)
    return AckResponse(
        success=True,
        duplicate=result.error_kind == ErrorKind.DUPLICATE_CALLBACK,
        **result.value,
    )


@router.get("/status/{run_id}", response_model=RunStatusResponse)
async def get_run_status(run_id: str, engine: EdgeWalker = Depends(get_engine)):
    result = await engine.get_status(run_id)
    raise_for_result(result)
    return result.value.to_dict()


@router.get("/runs/{run_id}/stream")
async def stream_run(run_id: str):
    """SSE stream of node_status / run_status / entity_moved events for a run."""
    return StreamingResponse(
        subscribe_events(run_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
