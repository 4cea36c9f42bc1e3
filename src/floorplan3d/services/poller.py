"""Fixed-interval polling of asynchronous mesh jobs."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from loguru import logger

from floorplan3d.core.errors import JobError, PollCancelled, ServiceError
from floorplan3d.services.adapter import JobStatus

# (progress_percent, raw_status) -> None
UpdateCallback = Callable[[int, str], None]
StatusFetcher = Callable[[str], Awaitable[JobStatus]]

DEFAULT_INTERVAL = 2.0


@dataclass
class TerminalResult:
    """A job that finished successfully."""

    job_id: str
    mesh_url: str
    payload: dict[str, Any] = field(default_factory=dict)


class JobPoller:
    """Polls a job until it reaches a terminal state.

    ``max_attempts`` and ``max_duration`` bound the loop; 0 or None means
    unbounded. Exceeding either raises ``JobError(reason="timeout")``.
    """

    def __init__(
        self,
        fetch_status: StatusFetcher,
        interval: float = DEFAULT_INTERVAL,
        max_attempts: int | None = None,
        max_duration: float | None = None,
    ):
        self._fetch_status = fetch_status
        self._interval = interval
        self._max_attempts = max_attempts or None
        self._max_duration = max_duration or None

    @classmethod
    def from_config(cls, fetch_status: StatusFetcher, config) -> "JobPoller":
        polling = config.get_group("polling")
        return cls(
            fetch_status,
            interval=float(polling.get("interval_seconds", DEFAULT_INTERVAL)),
            max_attempts=int(polling.get("max_attempts", 0)),
            max_duration=float(polling.get("max_duration_seconds", 0)),
        )

    async def poll_until_terminal(
        self,
        job_id: str,
        on_update: UpdateCallback | None = None,
        cancel_event: asyncio.Event | None = None,
        interval: float | None = None,
    ) -> TerminalResult:
        """Poll ``job_id`` until it succeeds, fails or expires.

        ``on_update`` fires once per non-terminal observation. Once
        ``cancel_event`` is set no callback fires and ``PollCancelled`` is raised.
        """
        interval = self._interval if interval is None else interval
        started = time.monotonic()
        attempts = 0
        last_status = None

        while True:
            _raise_if_cancelled(cancel_event, job_id)

            try:
                job = await self._fetch_status(job_id)
            except ServiceError as e:
                _raise_if_cancelled(cancel_event, job_id)
                logger.error(f"Polling {job_id} failed: {e}")
                raise JobError(JobError.POLL_TRANSPORT_ERROR, detail=str(e), job_id=job_id) from e

            _raise_if_cancelled(cancel_event, job_id)
            attempts += 1

            if job.status != last_status:
                logger.info(f"Job {job_id}: {job.status} ({job.progress}%)")
                last_status = job.status

            if job.succeeded:
                mesh_url = job.mesh_url
                if not mesh_url:
                    raise JobError(JobError.NO_MODEL_URL, detail="succeeded without a glb url",
                                   job_id=job_id)
                return TerminalResult(job_id=job_id, mesh_url=mesh_url, payload=job.payload)

            if job.terminal:
                raise JobError(JobError.JOB_FAILED, detail=job.error_detail or job.status,
                               job_id=job_id)

            if on_update is not None:
                on_update(job.progress, job.status)

            if self._max_attempts is not None and attempts >= self._max_attempts:
                raise JobError(JobError.TIMEOUT, detail=f"gave up after {attempts} polls",
                               job_id=job_id)
            if self._max_duration is not None and time.monotonic() - started >= self._max_duration:
                raise JobError(JobError.TIMEOUT,
                               detail=f"not finished within {self._max_duration:.0f}s",
                               job_id=job_id)

            await _sleep(interval, cancel_event)


def _raise_if_cancelled(cancel_event: asyncio.Event | None, job_id: str):
    if cancel_event is not None and cancel_event.is_set():
        logger.debug(f"Polling of {job_id} cancelled")
        raise PollCancelled(job_id)


async def _sleep(seconds: float, cancel_event: asyncio.Event | None):
    """Sleep, waking early if the cancel event fires."""
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
