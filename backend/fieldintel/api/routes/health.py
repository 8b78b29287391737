"""Health check API routes.

Provides:
- GET /health - process status plus circuit breaker states (public)
"""

import logging
import time
from typing import Any

from fastapi import APIRouter, Response, status

from fieldintel.core.circuit_breaker import CircuitState, all_circuit_breakers
from fieldintel.services.event_relay import get_event_relay

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_VERSION = "0.1.0"


@router.get("", status_code=status.HTTP_200_OK)
async def health_check(response: Response) -> dict[str, Any]:
    """Report per-dependency breaker state.

    Any open breaker degrades the status and returns 503 so the platform can
    take the instance out of rotation.
    """
    breakers = {name: cb.state.value for name, cb in all_circuit_breakers().items()}
    degraded = any(state == CircuitState.OPEN.value for state in breakers.values())
    if degraded:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.warning("Health degraded", extra={"circuit_breakers": breakers})

    return {
        "status": "degraded" if degraded else "healthy",
        "version": _VERSION,
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "circuit_breakers": breakers,
        "event_relay_running": get_event_relay().is_running,
    }
