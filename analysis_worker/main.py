from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from analysis_worker.config.logging import setup_logging
from analysis_worker.config.settings import settings
from analysis_worker.v1.core.exceptions import (
    AnalysisWorkerException,
    RequestContextMiddleware,
    analysis_worker_exception_handler,
    general_exception_handler,
    http_exception_handler,
)
from analysis_worker.v1.core.registries import analyzer_registry
from analysis_worker.v1.healthz import router as health_router
from analysis_worker.v1.infra.jobs.reconciler import StandaloneReconciler
from analysis_worker.v1.infra.jobs.routes import router as jobs_router
from analysis_worker.v1.infra.jobs.worker import AnalysisWorker


def create_app(
    worker: AnalysisWorker | None = None,
    standalone: StandaloneReconciler | None = None,
) -> FastAPI:
    """Create the ops application.

    When a worker is given it is started and stopped with the app, and the
    ops endpoints report on and act through it. Without one, a single
    standalone reconciler serves the job endpoints for the app's lifetime.
    """

    # Initialize structured logging
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if worker is not None:
            await worker.start()
        else:
            app.state.standalone = standalone or StandaloneReconciler(settings)
            app.state.standalone.start()
        try:
            yield
        finally:
            if worker is not None:
                await worker.stop()
            else:
                await app.state.standalone.stop()

    app = FastAPI(
        title=settings.app_name,
        description="Assessment analysis worker operations API",
        version=settings.version,
        debug=settings.debug,
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.worker = worker
    app.state.standalone = None

    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(AnalysisWorkerException, analysis_worker_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development" and worker is not None:
        analyzer_registry.freeze()

    return app


if __name__ == "__main__":
    import uvicorn

    from analysis_worker.v1.infra.jobs.worker import get_worker

    uvicorn.run(
        create_app(get_worker(settings)),
        host=settings.host,
        port=settings.port,
    )
