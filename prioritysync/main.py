"""PrioritySync FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from prioritysync import config
from prioritysync.configuration import seed_from_file
from prioritysync.db import connection, migrations
from prioritysync.routers.azure_devops import azure_devops_router
from prioritysync.routers.priorities import priorities_router
from prioritysync.services.azure_sync import AzureSyncService
from prioritysync.observability import initialize as initialize_observability, shutdown as shutdown_observability

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("prioritysync")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("PrioritySync backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Seed installation configuration
    if config.CONFIG_FILE:
        await seed_from_file(db, config.CONFIG_FILE, config.INSTALLATION_ID)

    # 4. Sync service
    app.state.azure_sync = AzureSyncService(db)

    yield

    logger.info("PrioritySync backend shutting down")
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="PrioritySync API",
    description="Backend API for priority tracking with Azure DevOps synchronization",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(priorities_router)
app.include_router(azure_devops_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "installationId": config.INSTALLATION_ID,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("prioritysync.main:app", host=config.HOST, port=config.PORT)
