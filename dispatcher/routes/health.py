# Liveness endpoints for orchestration probes

import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

router = APIRouter(tags=["health"])


class ProcessClock:
    """Uptime source; reports process age, never broker state."""

    def __init__(self, started_at: Optional[float] = None):
        self.started_at = time.monotonic() if started_at is None else started_at

    def uptime(self) -> float:
        return time.monotonic() - self.started_at


@router.get("/", response_class=HTMLResponse)
async def status_page(request: Request):
    service = request.app.state.service
    uptime = int(request.app.state.clock.uptime())
    return f"""
      <html>
        <body>
          <h1>{service}</h1>
          <p>Status: Running</p>
          <p>Uptime: {uptime} seconds</p>
          <p>Health Check: <a href="/health">/health</a></p>
        </body>
      </html>
    """


@router.get("/health")
async def liveness_check(request: Request):
    """
    Basic liveness check - returns 200 while the process is running.
    Deliberately independent of the broker connection.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": request.app.state.service,
        "uptime": request.app.state.clock.uptime(),
    }


async def not_found_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return JSONResponse(status_code=404, content={"error": "Not found"})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


def create_health_app(service: str, clock: Optional[ProcessClock] = None) -> FastAPI:
    app = FastAPI(title=f"{service} liveness", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.service = service
    app.state.clock = clock or ProcessClock()
    app.include_router(router)
    app.add_exception_handler(StarletteHTTPException, not_found_handler)
    return app
