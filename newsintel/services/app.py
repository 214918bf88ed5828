"""FastAPI application exposing health, metrics and the emergency stop."""
from typing import Any, Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from newsintel import __version__
from newsintel.core.logging import get_logger, setup_logging
from newsintel.jobs import PipelineOrchestrator


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Pipeline not started")
    return orchestrator


def create_app(
    orchestrator: Optional[PipelineOrchestrator] = None,
    service_name: str = "newsintel",
    lifespan: Optional[Callable[[FastAPI], Any]] = None,
) -> FastAPI:
    """Create the FastAPI application around an orchestrator."""
    setup_logging(service_name)
    logger = get_logger(__name__)

    app = FastAPI(
        title=f"NewsIntel - {service_name.title()}",
        description="NewsIntel content intelligence pipeline",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    @app.get("/healthz")
    async def health_check(request: Request):
        """Health check endpoint."""
        current = getattr(request.app.state, "orchestrator", None)
        try:
            if current is None:
                raise RuntimeError("pipeline not started")
            health = await current.health()
            timestamp = current.clock.now().isoformat()
            if not (health["store"] and health["cache"]):
                raise RuntimeError(f"dependency check failed: {health}")
            logger.info(f"{service_name} health check passed")
            return JSONResponse(
                status_code=200,
                content={
                    "status": "healthy",
                    "service": service_name,
                    "version": __version__,
                    "accepting_jobs": health["queue"],
                    "alerts": health["alerts"],
                    "timestamp": timestamp,
                },
            )
        except Exception as e:
            logger.error(f"{service_name} health check failed: {e}")
            return JSONResponse(
                status_code=503,
                content={
                    "status": "unhealthy",
                    "service": service_name,
                    "error": str(e),
                },
            )

    @app.get("/metrics")
    async def metrics(pipeline: PipelineOrchestrator = Depends(get_orchestrator)):
        """Per-engine metrics, queue statistics and system totals."""
        return await pipeline.get_metrics()

    @app.post("/admin/emergency-stop")
    async def emergency_stop(pipeline: PipelineOrchestrator = Depends(get_orchestrator)):
        """Stop accepting jobs and clear the queues."""
        logger.warning("Emergency stop requested over HTTP")
        return await pipeline.emergency_stop()

    return app
