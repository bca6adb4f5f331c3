"""
Sales ingestion backend: FastAPI application entry‑point.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.sales.database import Base, SessionLocal, engine
from app.sales.jobs.orchestrator import IngestionOrchestrator

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s  %(name)-30s  %(levelname)-5s  %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: ensure data dir + tables exist
    os.makedirs(settings.DATA_DIR, exist_ok=True)
    # Import models so Base.metadata knows about them
    from app.sales import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready (%s)", settings.DATABASE_URL)

    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = IngestionOrchestrator(SessionLocal)
    app.state.orchestrator.recover_orphans()

    yield
    app.state.orchestrator.shutdown()
    logger.info("Shutting down")


app = FastAPI(
    title="Sales Ingestion",
    description="Receipt text and sales spreadsheets → customers, stores, bills",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"service": "Sales Ingestion", "version": "0.1.0", "status": "running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


# ── Register API router ──────────────────────────────────────────────────
from app.sales.routers.uploads import router as uploads_router  # noqa: E402

app.include_router(uploads_router, prefix="/api", tags=["Uploads"])
