"""File-based request/response exchange between the host and the sandbox.

Layout under the shared ipc root::

    agent_requests/<id>.json    written by the host, claimed by the worker
    agent_responses/<id>.json   written by the worker, consumed by the host
    heartbeat                   epoch milliseconds, overwritten every cycle

Every write goes to a dot-prefixed temporary file in the target directory
and is renamed into place, so a reader never observes a partial record.
"""

import asyncio
import logging
import os
import time
import uuid
from pathlib import Path
from typing import List, Optional, Union

from agent.errors import RunAborted, TransportTimeout, WorkerFault
from agent.protocol import (
    AgentRunFailure,
    AgentRunRequest,
    AgentRunSuccess,
    dump_request,
    dump_response,
    parse_response,
)
from clawbox_constants import HEARTBEAT_FILENAME, REQUESTS_SUBDIR, RESPONSES_SUBDIR

logger = logging.getLogger(__name__)

AgentRunResponse = Union[AgentRunSuccess, AgentRunFailure]


def now_ms() -> int:
    return int(time.time() * 1000)


def atomic_write_text(path: Path, text: str) -> None:
    """Write *text* to *path* via a temporary sibling and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


class FileExchange:
    """Both ends of the exchange channel over one shared directory.

    The host uses :meth:`submit`, :meth:`wait_for_response`,
    :meth:`withdraw` and :meth:`heartbeat_age_ms`; the sandbox worker uses
    :meth:`pending_requests`, :meth:`write_response` and
    :meth:`write_heartbeat`.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.requests_dir = self.root / REQUESTS_SUBDIR
        self.responses_dir = self.root / RESPONSES_SUBDIR
        self.heartbeat_file = self.root / HEARTBEAT_FILENAME

    def ensure_dirs(self) -> None:
        self.requests_dir.mkdir(parents=True, exist_ok=True)
        self.responses_dir.mkdir(parents=True, exist_ok=True)

    def request_path(self, request_id: str) -> Path:
        return self.requests_dir / f"{request_id}.json"

    def response_path(self, request_id: str) -> Path:
        return self.responses_dir / f"{request_id}.json"

    # -- Host side ------------------------------------------------------------

    def submit(self, request: AgentRunRequest) -> Path:
        path = self.request_path(request.id)
        atomic_write_text(path, dump_request(request))
        return path

    def withdraw(self, request_id: str) -> bool:
        """Remove a request the worker has not claimed yet.

        Returns True if the file was still pending. A claimed request keeps
        running inside the sandbox; there is no way to cancel it from here.
        """
        try:
            self.request_path(request_id).unlink()
            return True
        except FileNotFoundError:
            return False

    def take_response(self, request_id: str) -> Optional[AgentRunResponse]:
        """Read and discard the response for *request_id*, if it exists."""
        path = self.response_path(request_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        path.unlink(missing_ok=True)
        return parse_response(raw)

    async def wait_for_response(
        self,
        request_id: str,
        *,
        timeout_ms: int,
        poll_interval: float,
        abort: Optional[asyncio.Event] = None,
    ) -> AgentRunResponse:
        """Poll the response area until the record shows up.

        Raises:
            TransportTimeout: the deadline passed first.
            RunAborted: *abort* was set while waiting.
            WorkerFault: the response file exists but cannot be parsed.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        while True:
            response = self.take_response(request_id)
            if response is not None:
                return response
            if abort is not None and abort.is_set():
                raise RunAborted(f"Agent run {request_id} aborted by caller")
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TransportTimeout(request_id, timeout_ms)
            delay = min(poll_interval, remaining)
            if abort is None:
                await asyncio.sleep(delay)
            else:
                try:
                    await asyncio.wait_for(abort.wait(), delay)
                except asyncio.TimeoutError:
                    pass

    def read_heartbeat(self) -> Optional[int]:
        try:
            return int(self.heartbeat_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def heartbeat_age_ms(self) -> Optional[int]:
        beat = self.read_heartbeat()
        if beat is None:
            return None
        return max(0, now_ms() - beat)

    def is_worker_alive(self, stale_ms: int) -> bool:
        age = self.heartbeat_age_ms()
        return age is not None and age <= stale_ms

    def sweep_orphan_responses(self, max_age_s: float) -> int:
        """Delete response files older than *max_age_s* that nobody collected."""
        if not self.responses_dir.exists():
            return 0
        cutoff = time.time() - max_age_s
        removed = 0
        for path in self.responses_dir.glob("*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.info("Removed %d orphaned response file(s) from %s", removed, self.responses_dir)
        return removed

    # -- Sandbox side ---------------------------------------------------------

    def pending_requests(self) -> List[Path]:
        """Request files in arrival order; temporary files are skipped."""
        if not self.requests_dir.exists():
            return []
        entries = []
        for path in self.requests_dir.iterdir():
            if path.name.startswith(".") or path.suffix != ".json":
                continue
            try:
                entries.append((path.stat().st_mtime_ns, path.name, path))
            except FileNotFoundError:
                continue
        return [path for _, _, path in sorted(entries)]

    def has_response(self, request_id: str) -> bool:
        return self.response_path(request_id).exists()

    def write_response(self, request_id: str, response: AgentRunResponse) -> Path:
        path = self.response_path(request_id)
        atomic_write_text(path, dump_response(response))
        return path

    def write_heartbeat(self, timestamp_ms: Optional[int] = None) -> None:
        value = now_ms() if timestamp_ms is None else timestamp_ms
        try:
            atomic_write_text(self.heartbeat_file, str(value))
        except OSError as e:
            logger.warning("Heartbeat write failed: %s", e)
