# src/app/main.py
from __future__ import annotations
import logging
import sys
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.app.config import settings
from src.app.deps import get_ingest_service, get_retention_sweeper, get_sweeper
from src.app.routers.ingest import router as ingest_router

# Plain stdout logging (works for dev and containers)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

app = FastAPI(title="Recipe Ingest API", version="0.3.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.FRONTEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ingest_router)


@app.on_event("startup")
async def startup() -> None:
    if settings.RUN_SWEEPER_IN_PROCESS:
        await get_sweeper().start()
    if settings.ARTIFACT_RETENTION_ENABLED:
        await get_retention_sweeper().start()


@app.on_event("shutdown")
async def shutdown() -> None:
    if settings.RUN_SWEEPER_IN_PROCESS:
        await get_sweeper().stop()
    if settings.ARTIFACT_RETENTION_ENABLED:
        await get_retention_sweeper().stop()
    await get_ingest_service().shutdown()


@app.get("/health")
def health():
    return {
        "ok": True,
        "store_backend": settings.STORE_BACKEND,
        "sweeper_running": get_sweeper().running,
        "retention_running": get_retention_sweeper().running,
        "tasks_in_flight": get_ingest_service().in_flight,
    }
