from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.shared.core.config import get_settings
from app.shared.core.logging import setup_logging
from app.shared.core.exceptions import CostLensException
from app.shared.db.session import async_session_maker, engine
from app.shared.adapters.cost_cache import get_cost_cache
from app.shared.adapters.secret_store import get_secret_store
from app.modules.governance.domain.scheduler import SchedulerOrchestrator
from app.modules.governance.api.v1.jobs import router as jobs_router
from app.modules.reporting.api.v1.costs import router as costs_router
from app.modules.reservations.api.v1.reservations import router as reservations_router


# Configure logging
setup_logging()

# Get logger
logger = structlog.get_logger()


# This runs BEFORE the app starts (setup) and AFTER it stops (teardown).
@asynccontextmanager
async def lifespan(app: FastAPI):
  settings = get_settings()
  logger.info("app_starting", app=settings.APP_NAME, environment=settings.ENVIRONMENT)

  scheduler = SchedulerOrchestrator(async_session_maker)
  if settings.SCHEDULER_ENABLED and not settings.TESTING:
    scheduler.start()
  app.state.scheduler = scheduler # Store scheduler in app state for health checks

  yield

  logger.info("app_shutting_down", app=settings.APP_NAME)
  if scheduler.scheduler.running:
    scheduler.stop()
  await get_secret_store().close()
  await engine.dispose()


async def costlens_exception_handler(request: Request, exc: CostLensException) -> JSONResponse:
  log = logger.warning if exc.status_code < 500 else logger.error
  log("request_failed", path=request.url.path, code=exc.code, status=exc.status_code, error=exc.message)
  return JSONResponse(
    status_code=exc.status_code,
    content={"error": exc.code, "message": exc.message, "details": exc.details},
  )


settings = get_settings()

app = FastAPI(
  title=settings.APP_NAME,
  version=settings.VERSION,
  lifespan=lifespan)

app.add_exception_handler(CostLensException, costlens_exception_handler)

# Initialize Prometheus Metrics
Instrumentator().instrument(app).expose(app)

# Include routers
app.include_router(costs_router, prefix="/api/v1")
app.include_router(reservations_router, prefix="/api/v1")
app.include_router(jobs_router, prefix="/api/v1")


# Every K8s pod needs a health check endpoint to prove it's alive
@app.get("/health")
async def health_check():
  cache = await get_cost_cache()
  scheduler = getattr(app.state, "scheduler", None)
  return {
    "status": "active",
    "app": settings.APP_NAME,
    "version": settings.VERSION,
    "scheduler": scheduler.get_status() if scheduler else None,
    "cost_cache": await cache.health_check(),
  }
