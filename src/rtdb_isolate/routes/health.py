"""Health check endpoint."""

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route


async def health_check(request: Request) -> JSONResponse:
    """Report liveness and how many databases the worker has opened."""
    handler = request.app.state.handler
    return JSONResponse({"status": "ok", "databases": len(handler.registry)})


health_routes = [
    Route("/health", health_check, methods=["GET"]),
]
