"""Exception types shared by the services and the pipeline coordinator."""


class PipelineError(Exception):
    """Base class for floorplan3d errors."""


class ServiceError(PipelineError):
    """A single remote service call failed.

    ``reason`` is one of ``no-result-field``, ``http-error`` or ``network``.
    """

    NO_RESULT_FIELD = "no-result-field"
    HTTP_ERROR = "http-error"
    NETWORK = "network"

    def __init__(self, reason: str, detail: str = "", status_code: int | None = None,
                 service: str = ""):
        self.reason = reason
        self.detail = detail
        self.status_code = status_code
        self.service = service
        message = f"{service or 'service'} failed ({reason})"
        if status_code is not None:
            message += f" [HTTP {status_code}]"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class JobError(PipelineError):
    """An asynchronous mesh job failed, expired, timed out or could not be polled.

    ``reason`` is one of ``job-failed``, ``no-model-url``,
    ``poll-transport-error`` or ``timeout``.
    """

    JOB_FAILED = "job-failed"
    NO_MODEL_URL = "no-model-url"
    POLL_TRANSPORT_ERROR = "poll-transport-error"
    TIMEOUT = "timeout"

    def __init__(self, reason: str, detail: str = "", job_id: str = ""):
        self.reason = reason
        self.detail = detail
        self.job_id = job_id
        message = f"job {job_id or '?'} {reason}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class PollCancelled(PipelineError):
    """Raised inside the poller when its caller cancelled it."""


class CaptureUnavailable(PipelineError):
    """No renderer is mounted, so the current 3D view cannot be captured."""


class ItemBusy(PipelineError):
    """An action was requested while the item still has one in flight."""


class InvalidTransition(PipelineError):
    """The requested action is not allowed from the item's current stage."""


class UnknownItem(PipelineError):
    """No pipeline item with the given id exists (removed or replaced)."""
