"""
Process Session Registry

Tracks background processes started by agent tools inside the sandbox so a
tool call can start a long-running command and come back to it later:

- start_process(): spawn ``bash -lc <command>`` in its own process group
- poll_session():  output appended since the previous poll + exit status
- get_log():       random access over the full buffered output
- write_to_session() / kill_session() / remove_session()

Each session has one drain task that reads the merged stdout/stderr pipe
into a byte-bounded buffer. Once the cap is hit the buffer is cut, a
truncation marker is appended and further output is dropped. A per-session
wall-clock timer SIGKILLs the whole process group when it expires.

The registry is an explicit instance owned by the worker loop; nothing here
is module-global.
"""

import asyncio
import codecs
import dataclasses
import logging
import os
import signal
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union

from agent.errors import CapacityExceeded, SessionExited, SessionNotFound, StdinNotWritable

logger = logging.getLogger(__name__)

SHELL = "/bin/bash"
TAIL_CHARS = 500
READ_CHUNK_BYTES = 4096
TRUNCATION_MARKER = "\n[OUTPUT TRUNCATED]"
TIMEOUT_MARKER = "\n[PROCESS TIMED OUT]"

# Listing output keeps commands short
LIST_COMMAND_CHARS = 200


@dataclass
class ProcessConfig:
    max_sessions: int = 16
    max_output_bytes: int = 1_048_576
    default_timeout_ms: int = 1_800_000
    default_cwd: Optional[str] = None
    tail_chars: int = TAIL_CHARS


@dataclass
class ProcessSession:
    """One tracked background process and its buffered output."""

    id: str
    command: str
    pid: int
    cwd: str
    started_at: float = field(default_factory=time.time)
    output_buffer: str = ""
    tail: str = ""
    exited: bool = False
    exit_code: Optional[int] = None
    exit_signal: Optional[str] = None
    truncated: bool = False
    timed_out: bool = False
    poll_cursor: int = 0
    output_bytes: int = 0
    process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    drain_task: Optional[asyncio.Task] = field(default=None, repr=False)
    timeout_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "command": self.command,
            "pid": self.pid,
            "cwd": self.cwd,
            "started_at": self.started_at,
            "output": self.output_buffer,
            "tail": self.tail,
            "exited": self.exited,
            "exit_code": self.exit_code,
            "exit_signal": self.exit_signal,
            "truncated": self.truncated,
            "timed_out": self.timed_out,
        }


def _resolve_signal(sig: Union[str, int, signal.Signals]) -> signal.Signals:
    if isinstance(sig, int):
        return signal.Signals(sig)
    name = str(sig).strip().upper()
    if not name.startswith("SIG"):
        name = "SIG" + name
    try:
        return signal.Signals[name]
    except KeyError:
        raise ValueError(f"Unknown signal: {sig}") from None


class ProcessRegistry:
    """Registry of background process sessions for one sandbox."""

    def __init__(self, config: Optional[ProcessConfig] = None):
        self.config = config or ProcessConfig()
        self._sessions: Dict[str, ProcessSession] = {}
        self._starting = 0
        self._drain_tasks: Set[asyncio.Task] = set()

    def configure(self, **overrides) -> ProcessConfig:
        self.config = dataclasses.replace(self.config, **overrides)
        return self.config

    def __len__(self) -> int:
        return len(self._sessions)

    @staticmethod
    def _generate_id() -> str:
        return f"proc_{uuid.uuid4().hex[:12]}"

    def _require(self, session_id: str) -> ProcessSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    # -- Spawning -------------------------------------------------------------

    async def start_process(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Spawn *command* and start tracking it.

        ``timeout_ms=None`` uses the configured default; zero or a negative
        value disables the kill timer.

        Returns:
            ``{"session_id": ..., "pid": ...}``

        Raises:
            CapacityExceeded: the registry already holds ``max_sessions``.
        """
        if len(self._sessions) + self._starting >= self.config.max_sessions:
            raise CapacityExceeded(
                f"Maximum sessions reached ({self.config.max_sessions}). "
                "Remove finished sessions first."
            )

        session_id = self._generate_id()
        work_dir = cwd or self.config.default_cwd or os.getcwd()
        timeout = self.config.default_timeout_ms if timeout_ms is None else timeout_ms

        self._starting += 1
        try:
            process = await asyncio.create_subprocess_exec(
                SHELL, "-lc", command,
                cwd=work_dir,
                env=(os.environ | env) if env else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                # New session => new process group, so killpg reaches children.
                start_new_session=True,
            )
        finally:
            self._starting -= 1

        session = ProcessSession(
            id=session_id,
            command=command,
            pid=process.pid,
            cwd=work_dir,
            process=process,
        )
        self._sessions[session_id] = session

        task = asyncio.create_task(self._drain(session), name=f"drain-{session_id}")
        session.drain_task = task
        self._drain_tasks.add(task)
        task.add_done_callback(self._drain_tasks.discard)

        if timeout > 0:
            loop = asyncio.get_running_loop()
            session.timeout_handle = loop.call_later(timeout / 1000, self._on_timeout, session)

        logger.debug("Started %s (pid %s): %s", session_id, process.pid, command[:LIST_COMMAND_CHARS])
        return {"session_id": session_id, "pid": process.pid}

    async def _drain(self, session: ProcessSession) -> None:
        """Single consumer of the merged output pipe; records the exit status."""
        process = session.process
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await process.stdout.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                self._append_output(session, decoder.decode(chunk))
            self._append_output(session, decoder.decode(b"", final=True))
        except OSError as e:
            logger.warning("Output drain failed for %s: %s", session.id, e)
            self._append_marker(session, f"\n[PROCESS ERROR: {e}]")
        returncode = await process.wait()
        self._mark_exited(session, returncode)

    def _mark_exited(self, session: ProcessSession, returncode: int) -> None:
        session.exited = True
        if returncode < 0:
            try:
                session.exit_signal = signal.Signals(-returncode).name
            except ValueError:
                session.exit_signal = str(-returncode)
            session.exit_code = None
        else:
            session.exit_code = returncode
        if session.timeout_handle is not None:
            session.timeout_handle.cancel()
            session.timeout_handle = None

    def _on_timeout(self, session: ProcessSession) -> None:
        session.timeout_handle = None
        if session.exited:
            return
        logger.info("Session %s hit its timeout, killing process group %s", session.id, session.pid)
        self._signal(session, signal.SIGKILL)
        session.timed_out = True
        self._append_marker(session, TIMEOUT_MARKER)

    # -- Output buffer --------------------------------------------------------

    def _append_output(self, session: ProcessSession, text: str) -> None:
        if session.truncated or not text:
            return
        encoded = text.encode("utf-8")
        limit = self.config.max_output_bytes
        if session.output_bytes + len(encoded) > limit:
            remaining = limit - session.output_bytes
            if remaining > 0:
                head = encoded[:remaining].decode("utf-8", errors="ignore")
                session.output_buffer += head
                session.output_bytes += len(head.encode("utf-8"))
            session.truncated = True
            session.output_buffer += TRUNCATION_MARKER
        else:
            session.output_buffer += text
            session.output_bytes += len(encoded)
        self._update_tail(session)

    def _append_marker(self, session: ProcessSession, marker: str) -> None:
        session.output_buffer += marker
        self._update_tail(session)

    def _update_tail(self, session: ProcessSession) -> None:
        session.tail = session.output_buffer[-self.config.tail_chars:]

    # -- Queries --------------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        session = self._sessions.get(session_id)
        return session.snapshot() if session else None

    def list_sessions(self) -> List[Dict[str, Any]]:
        now = time.time()
        return [
            {
                "id": s.id,
                "command": s.command[:LIST_COMMAND_CHARS],
                "pid": s.pid,
                "runtime_ms": 0 if s.exited else int((now - s.started_at) * 1000),
                "exited": s.exited,
                "exit_code": s.exit_code,
                "tail": s.tail,
            }
            for s in self._sessions.values()
        ]

    def poll_session(self, session_id: str) -> Dict[str, Any]:
        """Output appended since the last poll; the cursor moves to the end."""
        session = self._require(session_id)
        new_output = session.output_buffer[session.poll_cursor:]
        session.poll_cursor = len(session.output_buffer)
        return {
            "output": new_output,
            "exited": session.exited,
            "exit_code": session.exit_code,
            "exit_signal": session.exit_signal,
        }

    def get_log(self, session_id: str, offset: int = 0, limit: Optional[int] = None) -> Dict[str, Any]:
        session = self._require(session_id)
        start = max(0, offset or 0)
        end = start + limit if limit else None
        return {
            "output": session.output_buffer[start:end],
            "total_chars": len(session.output_buffer),
            "truncated": session.truncated,
        }

    async def wait_session(self, session_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Wait for the process to exit (or *timeout* seconds) and return a snapshot."""
        session = self._require(session_id)
        if not session.exited and session.drain_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(session.drain_task), timeout)
            except asyncio.TimeoutError:
                pass
        return session.snapshot()

    # -- Control --------------------------------------------------------------

    def write_to_session(self, session_id: str, data: str, eof: bool = False) -> None:
        session = self._require(session_id)
        if session.exited:
            raise SessionExited(session_id)
        stdin = session.process.stdin if session.process else None
        if stdin is None or stdin.is_closing():
            raise StdinNotWritable(session_id)
        stdin.write(data.encode("utf-8"))
        if eof:
            stdin.write_eof()

    def kill_session(self, session_id: str, sig: Union[str, int] = "SIGTERM") -> None:
        session = self._require(session_id)
        if session.exited:
            return
        self._signal(session, _resolve_signal(sig))

    def _signal(self, session: ProcessSession, sig: signal.Signals) -> None:
        try:
            os.killpg(session.pid, sig)
        except (ProcessLookupError, PermissionError, OSError):
            # Group already gone (or never formed); fall back to the child itself.
            try:
                session.process.send_signal(sig)
            except ProcessLookupError:
                pass

    def remove_session(self, session_id: str) -> None:
        """Forget a session, SIGKILLing it first if it is still running."""
        session = self._require(session_id)
        if not session.exited:
            self._signal(session, signal.SIGKILL)
        if session.timeout_handle is not None:
            session.timeout_handle.cancel()
            session.timeout_handle = None
        del self._sessions[session_id]

    def cleanup_all(self) -> int:
        """Remove every resident session. Called on sandbox shutdown."""
        removed = 0
        for session_id in list(self._sessions):
            self.remove_session(session_id)
            removed += 1
        if removed:
            logger.info("Cleaned up %d process session(s)", removed)
        return removed

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Remove all sessions and wait for their drain tasks to finish."""
        self.cleanup_all()
        pending = [t for t in self._drain_tasks if not t.done()]
        if not pending:
            return
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()

    def reset(self) -> None:
        """Test hook: drop all sessions and restore default limits."""
        self.cleanup_all()
        self.config = ProcessConfig()
