"""Prometheus scrape endpoint."""

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST

logger = logging.getLogger(__name__)

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def metrics(request: Request):
    """Render the current snapshot. Never triggers a poll."""
    registry = request.app.state.registry
    try:
        body = registry.render()
    except Exception:
        logger.exception("RENDER_FAILED")
        raise HTTPException(status_code=500, detail="failed to render metrics")
    return Response(content=body, media_type=CONTENT_TYPE_LATEST)
