"""Store RAG service main application."""

import time
from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storerag import __version__
from storerag.common.circuit_breaker import circuit_breaker_stats
from storerag.common.config import ServiceConfig
from storerag.common.logging import configure_logging

from .routes import router as api_router
from .runtime import ServiceRuntime

logger = structlog.get_logger("store_rag_service")


def create_app(runtime: Optional[ServiceRuntime] = None, start_scheduler: bool = True) -> FastAPI:
    """Build the FastAPI application.

    Parameters
    - runtime: pre-built ``ServiceRuntime``; built from ``ServiceConfig`` when omitted
    - start_scheduler: run the periodic sync loop during the app's lifetime
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        service_runtime = runtime
        if service_runtime is None:
            config = ServiceConfig()
            configure_logging(config.rag_service_name, config.rag_log_level, config.rag_log_format)
            service_runtime = ServiceRuntime(config)

        logger.info("Starting store RAG service")
        await service_runtime.initialize(start_scheduler=start_scheduler)
        app.state.runtime = service_runtime
        app.state.metrics_collector = service_runtime.metrics
        logger.info("Store RAG service started successfully")

        yield

        # Shutdown
        logger.info("Shutting down store RAG service")
        await service_runtime.cleanup()
        logger.info("Store RAG service shutdown complete")

    app = FastAPI(
        title="Store RAG Service",
        description="Store lifecycle coordination and agent query routing",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api/v1")

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Collect metrics for HTTP requests."""
        start_time = time.time()

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            logger.exception("Unhandled request error", path=request.url.path)
            status_code = 500
            response = JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "detail": str(e)},
            )

        duration = time.time() - start_time
        response.headers["X-Process-Time"] = str(duration)

        if hasattr(request.app.state, "metrics_collector"):
            route = request.scope.get("route")
            request.app.state.metrics_collector.record_http_request(
                method=request.method,
                endpoint=getattr(route, "path", request.url.path),
                status=status_code,
                duration=duration,
            )

        return response

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        service_runtime = getattr(request.app.state, "runtime", None)
        if service_runtime is None:
            return JSONResponse(status_code=503, content={"status": "starting", "service": "store-rag"})

        healthy = await service_runtime.health_check()
        if not healthy:
            return JSONResponse(status_code=503, content={"status": "unhealthy", "service": "store-rag"})

        return {
            "status": "healthy",
            "service": "store-rag",
            "background_jobs": service_runtime.tasks.running,
            "capabilities": {name: stats["state"] for name, stats in circuit_breaker_stats().items()},
        }

    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus metrics endpoint."""
        if hasattr(request.app.state, "metrics_collector"):
            metrics_data = request.app.state.metrics_collector.get_metrics()
            return Response(content=metrics_data, media_type="text/plain")
        return Response(content="# No metrics available\n", media_type="text/plain")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "store-rag",
            "version": __version__,
            "status": "running",
            "endpoints": {
                "health": "/health",
                "metrics": "/metrics",
                "connect": "/api/v1/stores/{store_id}/connect",
                "status": "/api/v1/stores/{store_id}/status",
                "query": "/api/v1/stores/{store_id}/query",
            },
        }

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "storerag.service.main:app",
        host="0.0.0.0",
        port=ServiceConfig().rag_service_port,
        log_level="info",
    )
