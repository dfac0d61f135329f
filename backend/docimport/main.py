"""
Document Import API - Main Application Entry Point

This module initializes the FastAPI application with:
- Database connection and schema initialization
- Background scheduler sweeping stale imports
- CORS middleware for frontend communication
- Prometheus metrics
- API router registration

Architecture:
    FastAPI App
    ├── Lifespan Management (startup/shutdown)
    ├── CORS Middleware (localhost:3000)
    ├── Prometheus Middleware (/metrics)
    └── API Router
        ├── /imports - Upload, status, review, apply, cancel
        └── /webhooks - Extraction service callbacks
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docimport.api import api_router
from docimport.config import get_settings
from docimport.database import init_db
from docimport.middleware import setup_metrics
from docimport.scheduler import start_scheduler, stop_scheduler
from docimport.services.errors import ImportPipelineError

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle events.

    Startup:
        1. Configure logging
        2. Create the upload directory and database tables
        3. Start the stale import sweep

    Shutdown:
        1. Gracefully stop the scheduler
    """
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)
    await init_db()
    start_scheduler()
    yield
    stop_scheduler()


app = FastAPI(
    title="Document Import API",
    description="Asynchronous document import and standard mapping",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_metrics(app)


@app.exception_handler(ImportPipelineError)
async def import_error_handler(request: Request, exc: ImportPipelineError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(api_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
