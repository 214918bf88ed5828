"""NewsIntel service entry point."""
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from newsintel.bootstrap import build_orchestrator
from newsintel.core.settings import get_settings
from newsintel.services.app import create_app


@asynccontextmanager
async def lifespan(app: FastAPI):
    orchestrator = await build_orchestrator()
    await orchestrator.start()
    app.state.orchestrator = orchestrator
    try:
        yield
    finally:
        await orchestrator.close()


app = create_app(service_name="newsintel", lifespan=lifespan)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "NewsIntel Pipeline Service", "version": app.version}


def run_server() -> None:
    settings = get_settings()
    uvicorn.run(
        "newsintel.services.main:app",
        host=settings.service_host,
        port=settings.service_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run_server()
