from __future__ import annotations

from fastapi import FastAPI

from traewelling_exporter import __version__
from traewelling_exporter.aggregation.registry import MetricsRegistry

from .endpoints import health_router, metrics_router


def create_app(registry: MetricsRegistry) -> FastAPI:
    """Build the scrape app around an already populated registry."""
    app = FastAPI(title="Traewelling Exporter", version=__version__)
    app.state.registry = registry
    app.include_router(health_router)
    app.include_router(metrics_router)
    return app
