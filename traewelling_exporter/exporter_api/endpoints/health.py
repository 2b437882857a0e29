"""Health and index endpoints."""

from fastapi import APIRouter
from fastapi.responses import RedirectResponse

router = APIRouter(tags=["health"])


@router.get("/")
def index():
    """The exporter has a single page worth visiting."""
    return RedirectResponse(url="/metrics", status_code=308)


@router.get("/healthz")
def healthz():
    """Liveness probe — always returns ok if process is running."""
    return {"status": "ok"}
