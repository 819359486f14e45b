"""Exception taxonomy shared by the host coordinator and the sandbox.

Every class carries a stable ``kind`` string that telemetry uses as a
metric label, so renaming a class never changes dashboards.
"""


class ClawboxError(Exception):
    """Base class for all clawbox failures."""

    kind = "internal"


class RequestValidationError(ClawboxError):
    """A request record is malformed or missing required fields.

    Recovered locally by the worker loop, which answers with a structured
    error response and keeps running.
    """

    kind = "validation"


class TransportTimeout(ClawboxError):
    """No response file appeared before the run deadline."""

    kind = "transport_timeout"

    def __init__(self, request_id: str, timeout_ms: int):
        super().__init__(f"Agent run {request_id} timed out after {timeout_ms}ms")
        self.request_id = request_id
        self.timeout_ms = timeout_ms


class RunAborted(ClawboxError):
    """The caller stopped waiting. The sandbox may still be working on it."""

    kind = "aborted"


class WorkerFault(ClawboxError):
    """A response file is missing or unparseable after a claimed request."""

    kind = "worker_fault"


class CapacityExceeded(ClawboxError):
    """A semaphore queue or the process session limit is full."""

    kind = "capacity"


class SessionNotFound(ClawboxError):
    kind = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionExited(ClawboxError):
    kind = "session_exited"

    def __init__(self, session_id: str):
        super().__init__(f"Session has exited: {session_id}")
        self.session_id = session_id


class StdinNotWritable(ClawboxError):
    kind = "stdin_not_writable"

    def __init__(self, session_id: str):
        super().__init__(f"Session stdin not writable: {session_id}")
        self.session_id = session_id
