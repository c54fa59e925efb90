"""Background delivery of outbound messages.

Send-code and signup endpoints hand messages to the ``DeliveryWorker`` and
return immediately. The worker:
- Dispatches each job to the handler registered for its kind
- Retries failed jobs a bounded number of times with a fixed delay
- Logs every failure; nothing is reported back to the original caller

Delivery is best effort: jobs live in process memory and are lost on
restart.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from orgauth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0
MAX_QUEUE_DEPTH = 1000

WELCOME_EMAIL = "welcome_email"
OTP_EMAIL = "otp_email"
OTP_SMS = "otp_sms"


@dataclass
class DeliveryJob:
    kind: str
    recipient: str
    params: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    not_before: float = 0.0


DeliveryHandler = Callable[[DeliveryJob], Awaitable[bool]]


class DeliveryWorker:
    """Queue plus polling loop that delivers jobs at least once within the process."""

    def __init__(
        self,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._clock = clock or time.monotonic
        self._handlers: Dict[str, DeliveryHandler] = {}
        self._queue: Deque[DeliveryJob] = deque()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def register(self, kind: str, handler: DeliveryHandler) -> None:
        self._handlers[kind] = handler

    @property
    def pending(self) -> int:
        return len(self._queue)

    def submit(self, kind: str, recipient: str, **params: Any) -> DeliveryJob:
        """Queue a job and return without waiting for delivery."""
        if kind not in self._handlers:
            raise ValueError(f"no delivery handler registered for {kind}")
        if len(self._queue) >= MAX_QUEUE_DEPTH:
            dropped = self._queue.popleft()
            logger.warning("delivery_queue_full", dropped_kind=dropped.kind)
        job = DeliveryJob(kind=kind, recipient=recipient, params=params)
        self._queue.append(job)
        logger.debug("delivery_queued", kind=kind, pending=len(self._queue))
        return job

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("delivery_worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("delivery_worker_started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        """Stop the loop, then make one last pass over due jobs."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
        logger.info("delivery_worker_stopped", pending=len(self._queue))

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.drain()
            except Exception as exc:
                logger.error(
                    "delivery_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            await asyncio.sleep(self.poll_interval)

    async def drain(self) -> int:
        """Process every job that is due now; returns how many were delivered."""
        delivered = 0
        deferred: list[DeliveryJob] = []
        try:
            while self._queue:
                job = self._queue.popleft()
                if job.not_before > self._clock():
                    deferred.append(job)
                    continue
                try:
                    ok = await self._dispatch(job)
                except asyncio.CancelledError:
                    # Interrupted attempt does not count; the job goes back
                    job.attempts -= 1
                    deferred.append(job)
                    logger.info("delivery_interrupted", kind=job.kind)
                    raise
                if ok:
                    delivered += 1
                elif job.attempts < self.max_attempts:
                    job.not_before = self._clock() + self.retry_delay
                    deferred.append(job)
                else:
                    logger.error("delivery_abandoned", kind=job.kind, attempts=job.attempts)
        finally:
            self._queue.extend(deferred)
        return delivered

    async def _dispatch(self, job: DeliveryJob) -> bool:
        handler = self._handlers[job.kind]
        job.attempts += 1
        try:
            ok = await handler(job)
        except Exception as exc:
            logger.warning(
                "delivery_failed",
                kind=job.kind,
                attempt=job.attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False
        if not ok:
            logger.warning("delivery_failed", kind=job.kind, attempt=job.attempts)
        return bool(ok)
