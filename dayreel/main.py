"""
FastAPI application entry point for Dayreel.

Dayreel renders a date-ordered sequence of daily photos into a video:
one slide per day, cover-scaled with face-aware cropping, optional
crossfades and a date stamp, encoded by ffmpeg.
"""

import logging
import os
import shutil
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dayreel import __version__
from dayreel.config import get_settings
from dayreel.routers import health, renders
from dayreel.services.artifact_store import create_artifact_store
from dayreel.services.face_detector import FaceDetector
from dayreel.services.ffmpeg import verify_ffmpeg
from dayreel.services.image_source import LocalImageSource
from dayreel.services.jobs import RenderJobManager, reset_job_manager
from dayreel.services.webhook_service import get_webhook_service

# Configure logging
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for startup and shutdown events.
    Builds the job manager on startup and cleans up on shutdown.
    """
    settings = get_settings()
    logger.info("Starting Dayreel...")

    os.makedirs(settings.temp_directory, exist_ok=True)
    logger.info(f"Temp directory: {settings.temp_directory}")
    logger.info(f"Max concurrent jobs: {settings.max_concurrent_jobs}")

    if settings.image_root:
        logger.info(f"Image root: {settings.image_root}")
    else:
        logger.warning("DAYREEL_IMAGE_ROOT not configured - local image refs may read any file")

    face_detector = None
    if settings.auto_detect_faces:
        logger.info("Loading Haar cascade face detector...")
        face_detector = FaceDetector(confidence_threshold=settings.face_confidence_threshold)

    job_manager = RenderJobManager(
        image_source=LocalImageSource(
            root=settings.image_root,
            face_detector=face_detector,
            http_timeout=settings.http_timeout_seconds,
        ),
        artifact_store=create_artifact_store(settings),
        settings=settings,
        webhook_service=get_webhook_service(),
    )
    reset_job_manager(job_manager)
    app.state.job_manager = job_manager
    app.state.face_detector = face_detector

    verify_ffmpeg(settings.ffmpeg_path)

    logger.info("Dayreel ready to accept render requests.")

    yield

    logger.info("Shutting down Dayreel...")
    await job_manager.shutdown()
    reset_job_manager(None)
    app.state.job_manager = None

    if os.path.isdir(settings.temp_directory):
        try:
            shutil.rmtree(settings.temp_directory)
        except OSError as e:
            logger.warning(f"Failed to clean up temp directory: {e}")

    logger.info("Shutdown complete")


app = FastAPI(
    title="Dayreel",
    description="""
Dayreel - one photo per day, rendered into a timeline video.

## Usage

1. List output presets: `GET /renders/aspect-ratios`
2. Submit a render: `POST /renders`
3. Poll status: `GET /renders/{job_id}` (or pass `callback_url` for webhooks)
4. Cancel: `DELETE /renders/{job_id}`
    """,
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["Health"])
app.include_router(renders.router)


@app.get("/")
async def root():
    """Root endpoint with basic info."""
    return {
        "service": "dayreel",
        "version": __version__,
        "status": "running",
        "docs": "/docs",
    }
