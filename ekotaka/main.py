"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_fastapi_instrumentator import Instrumentator

from ekotaka.ai.llm_service import llm_service
from ekotaka.api.routes import admin, brand, collector, messages, orders, pickups, transactions
from ekotaka.api.routes import map as map_routes
from ekotaka.config import settings
from ekotaka.db.models import Base
from ekotaka.db.session import engine
from ekotaka.errors import DomainError
from ekotaka.logging_config import setup_logging
from ekotaka.maps.geocoding import geocoder
from ekotaka.pipeline.storage import close_blob_storage

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting EkoTaka backend...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    logger.info("Shutting down...")
    await llm_service.close()
    await geocoder.close()
    await close_blob_storage()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="EkoTaka",
    description="Plastic waste collection marketplace connecting collectors and brands",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health", "/favicon.ico"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, **exc.payload()},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path", "header")]
        fields.append({"field": ".".join(location) or "request", "message": error.get("msg", "Invalid value")})
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request", "fields": fields},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


# Include API routes
app.include_router(pickups.router)
app.include_router(orders.router)
app.include_router(transactions.router)
app.include_router(messages.router)
app.include_router(collector.router)
app.include_router(brand.router)
app.include_router(map_routes.router)
app.include_router(admin.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/favicon.ico")
async def favicon():
    """Return empty favicon response to avoid 404 noise."""
    return Response(status_code=204)


def run():
    uvicorn.run(
        "ekotaka.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
