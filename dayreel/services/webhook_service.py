"""
Render webhooks.

Remote subscribers pass a ``callback_url`` when submitting a render and
receive JSON events for it:

    render.started   once the job holds a worker slot
    render.progress  at most once per ``min_interval_seconds`` per job
    render.completed / render.cancelled / render.failed

Bodies are signed with HMAC-SHA256 (``X-Dayreel-Webhook-Signature``) when a
secret is configured, and failed deliveries are retried with exponential
backoff.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

import httpx

from dayreel import __version__
from dayreel.config import get_settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Dayreel-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
JOB_HEADER = "X-Job-Id"


@dataclass
class WebhookResult:
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 0


@dataclass
class WebhookPayload:
    """Body of one render event."""

    event: str
    timestamp: str
    job_id: str
    status: str
    progress_percent: float
    current_step: str
    frames_rendered: int = 0
    total_frames: int = 0
    error: Optional[str] = None
    output: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        # Frame counters travel together, and only once known
        if not (self.frames_rendered or self.total_frames):
            del data["frames_rendered"], data["total_frames"]
        for key in ("error", "output"):
            if not data[key]:
                del data[key]
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), sort_keys=True)


def backoff_delays(base_delay: float, attempts: int) -> Iterator[float]:
    """Delays to wait between ``attempts`` deliveries: base, 2x base, 4x base, ..."""
    for retry in range(attempts - 1):
        yield base_delay * (2 ** retry)


class WebhookService:
    """Signs, throttles and delivers render events."""

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        min_interval_seconds: float = 2.0,
        webhook_secret: Optional[str] = None,
    ):
        self.timeout = timeout_seconds
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay_seconds
        self.min_interval = min_interval_seconds

        self._last_progress: dict[str, float] = {}
        self._in_flight: set[asyncio.Task] = set()

        secret = webhook_secret or get_settings().webhook_secret
        self._secret = secret.encode("utf-8") if secret else None
        if self._secret is None:
            logger.warning("DAYREEL_WEBHOOK_SECRET not configured - webhooks will not be signed")

    def sign_payload(self, body: str) -> str:
        """
        Signature header value for a serialized body.

        Returns "sha256=<hex digest>", or "" when no secret is configured.
        """
        if self._secret is None:
            return ""
        digest = hmac.new(self._secret, body.encode("utf-8"), hashlib.sha256).hexdigest()
        return f"sha256={digest}"

    def should_send_progress(self, job_id: str) -> bool:
        """True (and the job's window restarts) when a progress event is due."""
        now = time.monotonic()
        last = self._last_progress.get(job_id)
        if last is not None and now - last < self.min_interval:
            return False
        self._last_progress[job_id] = now
        return True

    def clear_job_tracking(self, job_id: str) -> None:
        self._last_progress.pop(job_id, None)

    def _headers(self, payload: WebhookPayload, body: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"Dayreel/{__version__}",
            EVENT_HEADER: payload.event,
            JOB_HEADER: payload.job_id,
        }
        signature = self.sign_payload(body)
        if signature:
            headers[SIGNATURE_HEADER] = signature
        return headers

    async def _post_once(
        self, client: httpx.AsyncClient, url: str, body: str, headers: dict[str, str]
    ) -> WebhookResult:
        try:
            response = await client.post(url, content=body, headers=headers)
        except httpx.TimeoutException:
            return WebhookResult(success=False, error="Request timed out")
        except httpx.RequestError as e:
            return WebhookResult(success=False, error=f"Request error: {e}")

        if response.is_success:
            return WebhookResult(success=True, status_code=response.status_code)
        return WebhookResult(
            success=False,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}: {response.text[:200]}",
        )

    async def send(
        self,
        url: str,
        payload: WebhookPayload,
        headers: Optional[dict[str, str]] = None,
    ) -> WebhookResult:
        """
        Deliver one event, retrying transport errors and non-2xx answers.

        Never raises; the outcome is described by the returned WebhookResult.
        """
        if not url:
            return WebhookResult(success=False, error="No callback URL provided")

        body = payload.to_json()
        request_headers = self._headers(payload, body)
        request_headers.update(headers or {})
        delays = backoff_delays(self.retry_delay, self.max_retries)

        result = WebhookResult(success=False)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(1, self.max_retries + 1):
                result = await self._post_once(client, url, body, request_headers)
                result.attempts = attempt
                if result.success:
                    logger.info(
                        f"Webhook {payload.event} delivered for render {payload.job_id} "
                        f"(attempt {attempt}, HTTP {result.status_code})"
                    )
                    return result

                logger.warning(f"Webhook {payload.event} to {url} failed on attempt {attempt}: {result.error}")
                delay = next(delays, None)
                if delay is not None:
                    await asyncio.sleep(delay)

        logger.error(
            f"Giving up on webhook {payload.event} for render {payload.job_id} "
            f"after {self.max_retries} attempts"
        )
        return result

    def send_fire_and_forget(
        self,
        url: str,
        payload: WebhookPayload,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        """Schedule delivery on the running loop and return immediately."""
        task = asyncio.create_task(self.send(url, payload, headers))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    def build_payload(
        self,
        event: str,
        job_id: str,
        status: str,
        progress_percent: float,
        current_step: str,
        frames_rendered: int = 0,
        total_frames: int = 0,
        error: Optional[str] = None,
        output: Optional[dict[str, Any]] = None,
    ) -> WebhookPayload:
        return WebhookPayload(
            event=event,
            timestamp=datetime.now(timezone.utc).isoformat(),
            job_id=job_id,
            status=status,
            progress_percent=round(progress_percent, 1),
            current_step=current_step,
            frames_rendered=frames_rendered,
            total_frames=total_frames,
            error=error,
            output=output,
        )


_webhook_service: Optional[WebhookService] = None


def get_webhook_service() -> WebhookService:
    global _webhook_service
    if _webhook_service is None:
        _webhook_service = WebhookService()
    return _webhook_service
