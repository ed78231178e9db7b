"""
Per-job temporary workspace.
"""

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)


@contextmanager
def job_workspace(base_directory: str, job_id: str) -> Iterator[str]:
    """
    Create a private temp directory for one job and remove it on exit.

    Removal runs on every exit path, including cancellation and errors.
    """
    os.makedirs(base_directory, exist_ok=True)
    path = tempfile.mkdtemp(dir=base_directory, prefix=f"job_{job_id}_")
    logger.debug(f"Workspace created: {path}")
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        if os.path.exists(path):
            logger.warning(f"Failed to fully remove workspace {path}")
        else:
            logger.debug(f"Workspace removed: {path}")
