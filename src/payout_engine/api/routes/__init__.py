"""API routes."""

from payout_engine.api.routes.health import router as health_router
from payout_engine.api.routes.settlements import router as settlements_router

__all__ = ["health_router", "settlements_router"]
