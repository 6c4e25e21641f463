"""Worker HTTP application.

Creates the Starlette ASGI application serving one CommandHandler:
- /health - Health check
- /ws - Command protocol over WebSocket
"""

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import BaseRoute

from .protocol import CommandHandler
from .routes import health_routes, websocket_routes


def create_app(handler: CommandHandler) -> Starlette:
    """Create the worker application.

    Args:
        handler: Handler every WebSocket connection submits commands to

    Returns:
        Configured Starlette application
    """
    routes: list[BaseRoute] = []
    routes.extend(health_routes)
    routes.extend(websocket_routes)

    # CORS middleware for local development
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=["http://localhost:*", "http://127.0.0.1:*"],
            allow_methods=["*"],
            allow_headers=["*"],
        ),
    ]

    app = Starlette(routes=routes, middleware=middleware)
    app.state.handler = handler
    return app
