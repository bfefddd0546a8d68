"""
Application factory.
Builds the core service from settings and wires routes, middleware and error mapping.
"""
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cartserver import __version__
from cartserver.api.cartridge import router as cartridge_router
from cartserver.api.metrics import router as metrics_router
from cartserver.config import Settings, get_settings
from cartserver.core.errors import CartridgeError
from cartserver.core.logging import setup_logging
from cartserver.core.request_logging import RequestLoggingMiddleware
from cartserver.core.service import CartridgeService

logger = logging.getLogger(__name__)


async def cartridge_error_handler(request: Request, exc: CartridgeError) -> JSONResponse:
    """Map every typed core failure to a stable status code and error_code."""
    if exc.status_code >= 500:
        logger.warning(f"request_failed path={request.url.path} error_code={exc.error_code}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error_code": exc.error_code},
    )


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[CartridgeService] = None,
) -> FastAPI:
    """
    Create the ASGI app.

    The service (and with it the build scheduler) is created once here and
    shared by every request through app.state.
    """
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    if service is None:
        service = CartridgeService.from_paths(
            repo_path=settings.repo_path,
            build_root=settings.build_root,
            queue_capacity=settings.queue_capacity,
            build_timeout=settings.build_timeout,
            command_timeout=settings.command_timeout,
        )

    app = FastAPI(
        title="cartserver",
        description="Cartridge manifests, source archives and cached builds",
        version=__version__,
    )
    app.state.settings = settings
    app.state.service = service

    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(CartridgeError, cartridge_error_handler)

    app.include_router(cartridge_router)
    app.include_router(metrics_router)

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok"}

    return app
