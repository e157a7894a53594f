from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessionguard.core.database import init_db
from sessionguard.core.logging import app_logger
from sessionguard.core.middleware import setup_middleware
from sessionguard.core.refresh_tokens import get_refresh_coordinator
from sessionguard.core.settings import settings
from sessionguard.src.jobs.retention_sweeper import (
    RetentionSweeper,
    start_scheduler,
    stop_scheduler,
)
from sessionguard.src.routes import auth


@asynccontextmanager
async def lifespan(app: FastAPI):
    app_logger.info("Starting up...")
    await init_db()

    coordinator = get_refresh_coordinator()
    start_scheduler(RetentionSweeper(coordinator, coordinator.policy))
    app_logger.info("DB connected, retention sweeper scheduled")
    yield
    app_logger.info("Shutting down...")
    stop_scheduler()


app = FastAPI(title=settings.app_name, lifespan=lifespan)

setup_middleware(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix="/auth")


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "sessionguard",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
