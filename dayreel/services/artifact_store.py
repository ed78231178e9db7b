"""
Artifact stores - persist finished renders.

LocalArtifactStore keeps files under the output directory; S3ArtifactStore
uploads them to a bucket.
"""

import asyncio
import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from dayreel.config import Settings, get_settings
from dayreel.services.errors import ArtifactStoreError
from dayreel.services.sinks.base import Artifact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArtifactHandle:
    """Where a persisted render lives."""

    uri: str
    size_bytes: int
    content_type: str
    path: Optional[str] = None
    frame_count: int = 0
    duration_seconds: float = 0.0


def _artifact_filename(artifact: Artifact) -> str:
    timestamp = datetime.utcnow().strftime("%Y%m%d%H%M%S%f")
    return f"render_{timestamp}{artifact.extension}"


class ArtifactStore(ABC):
    """Collaborator contract: persist an artifact and return its handle."""

    @abstractmethod
    async def persist(self, artifact: Artifact, job_id: str) -> ArtifactHandle:
        """
        Persist a finished artifact.

        Raises:
            ArtifactStoreError: If the artifact cannot be stored
        """


class LocalArtifactStore(ArtifactStore):
    """
    Stores renders on the local filesystem.

    Output structure:
        output/{job_id}/render_<timestamp>.mp4
    """

    def __init__(self, output_directory: Optional[str] = None):
        self.output_directory = output_directory or get_settings().output_directory
        os.makedirs(self.output_directory, exist_ok=True)
        logger.info(f"Local storage output directory: {self.output_directory}")

    def _get_job_dir(self, job_id: str) -> str:
        job_dir = os.path.join(self.output_directory, job_id)
        os.makedirs(job_dir, exist_ok=True)
        return job_dir

    def _store(self, artifact: Artifact, output_path: str) -> None:
        if artifact.data is not None:
            with open(output_path, "wb") as f:
                f.write(artifact.data)
        elif artifact.path and os.path.isfile(artifact.path):
            shutil.move(artifact.path, output_path)
        else:
            raise ArtifactStoreError("Artifact has neither data nor an existing file")

    async def persist(self, artifact: Artifact, job_id: str) -> ArtifactHandle:
        output_path = os.path.join(self._get_job_dir(job_id), _artifact_filename(artifact))
        logger.info(f"Storing render to {output_path}")

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, lambda: self._store(artifact, output_path))
        except OSError as e:
            raise ArtifactStoreError(f"Failed to store render: {e}") from e

        size = os.path.getsize(output_path)
        return ArtifactHandle(
            uri=os.path.abspath(output_path),
            path=os.path.abspath(output_path),
            size_bytes=size,
            content_type=artifact.content_type,
            frame_count=artifact.frame_count,
            duration_seconds=artifact.duration_seconds,
        )


class S3ArtifactStore(ArtifactStore):
    """Uploads renders to S3 under renders/{job_id}/."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._client = None

    @property
    def client(self):
        """Lazy-initialize S3 client."""
        if self._client is None:
            config = {
                "region_name": self.settings.aws_region,
            }
            if self.settings.aws_access_key_id and self.settings.aws_secret_access_key:
                config["aws_access_key_id"] = self.settings.aws_access_key_id
                config["aws_secret_access_key"] = self.settings.aws_secret_access_key

            self._client = boto3.client("s3", **config)

        return self._client

    def _upload(self, artifact: Artifact, key: str) -> None:
        extra_args = {"ContentType": artifact.content_type}
        bucket = self.settings.s3_bucket
        if artifact.data is not None:
            self.client.put_object(Bucket=bucket, Key=key, Body=artifact.data, **extra_args)
        elif artifact.path and os.path.isfile(artifact.path):
            self.client.upload_file(artifact.path, bucket, key, ExtraArgs=extra_args)
        else:
            raise ArtifactStoreError("Artifact has neither data nor an existing file")

    async def persist(self, artifact: Artifact, job_id: str) -> ArtifactHandle:
        key = f"renders/{job_id}/{_artifact_filename(artifact)}"
        logger.info(f"Uploading render to s3://{self.settings.s3_bucket}/{key}")

        size = artifact.size_bytes
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, lambda: self._upload(artifact, key))
        except (BotoCoreError, ClientError) as e:
            raise ArtifactStoreError(f"S3 upload failed: {e}") from e

        s3_url = f"https://{self.settings.s3_bucket}.s3.{self.settings.aws_region}.amazonaws.com/{key}"
        logger.info(f"Upload complete: {s3_url}")
        return ArtifactHandle(
            uri=s3_url,
            size_bytes=size,
            content_type=artifact.content_type,
            frame_count=artifact.frame_count,
            duration_seconds=artifact.duration_seconds,
        )


def create_artifact_store(settings: Optional[Settings] = None) -> ArtifactStore:
    """Pick the artifact store for the configured storage backend."""
    settings = settings or get_settings()
    if settings.storage_backend == "s3":
        return S3ArtifactStore(settings)
    return LocalArtifactStore(settings.output_directory)
