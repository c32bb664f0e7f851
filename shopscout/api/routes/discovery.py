"""Discovery API endpoints.

POST /discovery/run streams progress as server-sent events, one frame per
pipeline event (``event: <type>`` / ``data: <json>``). The pipeline runs in
its own task; if the client goes away the task is cancelled. Items finished
before that point stay persisted.
"""

from __future__ import annotations

import asyncio

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from shopscout.discovery.pipeline import DiscoveryPipeline, create_pipeline
from shopscout.errors import DiscoveryError, PipelineError, RunStoreError
from shopscout.models.contracts import (
    ErrorResponse,
    ProductCandidate,
    ReoptimizeRequest,
    ReoptimizeResponse,
    RunPipelineRequest,
)
from shopscout.services.reoptimize import suggest_cheaper_alternatives
from shopscout.services.run_store import RunStore
from shopscout.utils.llm import build_model_client

logger = structlog.get_logger()

router = APIRouter(tags=["discovery"])


def _error(status: int, code: str, message: str, *, retryable: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=code, message=message, retryable=retryable).model_dump(),
    )


def get_run_store(request: Request) -> RunStore:
    return request.app.state.run_store


def get_pipeline(request: Request) -> DiscoveryPipeline | None:
    """Production pipeline, or None when a required API key is missing."""
    try:
        return create_pipeline(
            request.app.state.http_client,
            request.app.state.run_store,
            build_model_client(),
        )
    except DiscoveryError as exc:
        logger.error("discovery_unavailable", error=str(exc))
        return None


def sse_frame(event: BaseModel) -> str:
    event_type = getattr(event, "type", "message")
    return f"event: {event_type}\ndata: {event.model_dump_json()}\n\n"


@router.post("/discovery/run", response_model=None)
async def run_discovery(
    body: RunPipelineRequest,
    pipeline: DiscoveryPipeline | None = Depends(get_pipeline),
) -> StreamingResponse | JSONResponse:
    if pipeline is None:
        return _error(
            503, "discovery_unavailable", "Discovery is not configured", retryable=True
        )
    if not body.spec.items:
        return _error(422, "empty_spec", "Shopping spec has no items")

    queue: asyncio.Queue[BaseModel | None] = asyncio.Queue()

    async def _run() -> None:
        try:
            await pipeline.run(body.spec, body.max_items, sink=queue.put_nowait)
        except PipelineError as exc:
            # The pipeline has already emitted the error event.
            logger.warning(
                "discovery_stream_aborted", spec_id=body.spec.id, completed=len(exc.results)
            )
        finally:
            queue.put_nowait(None)

    async def _stream():
        task = asyncio.create_task(_run())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield sse_frame(event)
        finally:
            if not task.done():
                logger.info("discovery_stream_cancelled", spec_id=body.spec.id)
                task.cancel()

    return StreamingResponse(
        _stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get(
    "/items/{item_id}/runs/latest",
    response_model=list[ProductCandidate],
    responses={404: {"model": ErrorResponse}},
)
async def get_latest_run(
    item_id: str,
    store: RunStore = Depends(get_run_store),
) -> list[ProductCandidate] | JSONResponse:
    try:
        ranked = await store.latest_run(item_id)
    except RunStoreError as exc:
        return _error(503, "run_store_unavailable", str(exc), retryable=True)
    if ranked is None:
        return _error(404, "run_not_found", f"No runs for item {item_id}")
    return ranked


@router.post("/cart/reoptimize", response_model=ReoptimizeResponse)
async def reoptimize_cart(
    body: ReoptimizeRequest,
    store: RunStore = Depends(get_run_store),
) -> ReoptimizeResponse | JSONResponse:
    try:
        suggestions = await suggest_cheaper_alternatives(body.lines, body.budget, store)
    except RunStoreError as exc:
        return _error(503, "run_store_unavailable", str(exc), retryable=True)
    return ReoptimizeResponse(suggestions=suggestions)
