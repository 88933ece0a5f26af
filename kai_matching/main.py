"""
FastAPI application entry point for the Kai matching engine.
Wires configuration, observability, CORS and health checks around the matching routers.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from kai_matching.core.config import initialize_secrets, get_settings
from kai_matching.core.observability import (
    setup_observability,
    instrument_fastapi,
    correlation_id_middleware
)

SERVICE_NAME = "Kai Matching Engine API"
VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifecycle management.
    Load secrets and tracing on startup.
    """
    settings = get_settings()

    logging.info(f"🚀 Starting {SERVICE_NAME}")

    # Key Vault is optional for dev and local runs
    try:
        initialize_secrets()
        logging.info("✅ Key Vault secrets initialized")
    except Exception as e:
        logging.error(f"❌ Failed to initialize secrets: {e}")
        if settings.environment not in ("dev", "local"):
            raise

    setup_observability(
        settings.applicationinsights_connection_string,
        settings.otlp_endpoint,
    )

    logging.info("✅ API startup complete")

    yield

    logging.info(f"👋 Shutting down {SERVICE_NAME}")


app = FastAPI(
    title=SERVICE_NAME,
    description="Caterer matching, AI re-ranking and fair lead distribution",
    version=VERSION,
    lifespan=lifespan
)

settings = get_settings()

app.add_middleware(
    GZipMiddleware,
    minimum_size=1024,
    compresslevel=6
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.middleware("http")(correlation_id_middleware)

instrument_fastapi(app)


@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness probe for load balancers."""
    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": VERSION,
            "environment": settings.environment
        }
    )


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": SERVICE_NAME,
        "version": VERSION,
        "docs": "/docs",
        "health": "/health"
    }


from kai_matching.api import evals, matching, round_robin

app.include_router(matching.router, prefix="/api/v1")
app.include_router(round_robin.router, prefix="/api/v1")
app.include_router(evals.router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "kai_matching.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level="info"
    )
