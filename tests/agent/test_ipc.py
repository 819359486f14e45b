"""Tests for the file exchange channel."""

import asyncio
import os
import time

import pytest

from agent.errors import RunAborted, TransportTimeout, WorkerFault
from agent.ipc import FileExchange, atomic_write_text
from agent.protocol import AgentRunRequest, AgentRunSuccess, dump_response


def _request(request_id: str = "run-1") -> AgentRunRequest:
    return AgentRunRequest(id=request_id, prompt="hi", group_key="main", channel_id="c", is_main=True)


@pytest.fixture
def exchange(tmp_path):
    ex = FileExchange(tmp_path / "ipc")
    ex.ensure_dirs()
    return ex


# ---------------------------------------------------------------------------
# Atomic writes
# ---------------------------------------------------------------------------

class TestAtomicWrite:
    def test_writes_content_and_leaves_no_temp_files(self, tmp_path):
        target = tmp_path / "out" / "a.json"
        atomic_write_text(target, '{"x": 1}')
        assert target.read_text() == '{"x": 1}'
        assert [p.name for p in target.parent.iterdir()] == ["a.json"]

    def test_overwrites_existing_file(self, tmp_path):
        target = tmp_path / "a.txt"
        atomic_write_text(target, "one")
        atomic_write_text(target, "two")
        assert target.read_text() == "two"


# ---------------------------------------------------------------------------
# Request area
# ---------------------------------------------------------------------------

class TestRequests:
    def test_submit_and_pending(self, exchange):
        path = exchange.submit(_request("run-a"))
        assert path == exchange.request_path("run-a")
        assert exchange.pending_requests() == [path]

    def test_pending_skips_temp_and_foreign_files(self, exchange):
        exchange.submit(_request("run-a"))
        (exchange.requests_dir / ".run-b.json.123.abcd.tmp").write_text("{}")
        (exchange.requests_dir / "notes.txt").write_text("x")
        assert [p.stem for p in exchange.pending_requests()] == ["run-a"]

    def test_pending_is_in_arrival_order(self, exchange):
        first = exchange.submit(_request("run-z"))
        second = exchange.submit(_request("run-a"))
        now = time.time()
        os.utime(first, (now - 10, now - 10))
        os.utime(second, (now, now))
        assert exchange.pending_requests() == [first, second]

    def test_withdraw(self, exchange):
        exchange.submit(_request("run-a"))
        assert exchange.withdraw("run-a") is True
        assert exchange.withdraw("run-a") is False

    def test_pending_when_dir_missing(self, tmp_path):
        assert FileExchange(tmp_path / "nowhere").pending_requests() == []


# ---------------------------------------------------------------------------
# Response area
# ---------------------------------------------------------------------------

class TestResponses:
    def test_take_response_consumes_file(self, exchange):
        exchange.write_response("run-a", AgentRunSuccess(result="ok"))
        resp = exchange.take_response("run-a")
        assert resp.result == "ok"
        assert not exchange.has_response("run-a")
        assert exchange.take_response("run-a") is None

    def test_unparseable_response_is_worker_fault(self, exchange):
        exchange.response_path("run-a").write_text("not json")
        with pytest.raises(WorkerFault):
            exchange.take_response("run-a")

    @pytest.mark.asyncio
    async def test_wait_returns_response_written_later(self, exchange):
        async def answer():
            await asyncio.sleep(0.05)
            exchange.write_response("run-a", AgentRunSuccess(result="late"))

        task = asyncio.create_task(answer())
        resp = await exchange.wait_for_response("run-a", timeout_ms=2000, poll_interval=0.01)
        await task
        assert resp.result == "late"

    @pytest.mark.asyncio
    async def test_wait_times_out(self, exchange):
        started = time.monotonic()
        with pytest.raises(TransportTimeout) as exc_info:
            await exchange.wait_for_response("run-a", timeout_ms=100, poll_interval=0.01)
        assert time.monotonic() - started < 1.0
        assert exc_info.value.timeout_ms == 100

    @pytest.mark.asyncio
    async def test_wait_aborts_promptly(self, exchange):
        abort = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, abort.set)
        started = time.monotonic()
        with pytest.raises(RunAborted):
            await exchange.wait_for_response("run-a", timeout_ms=5000, poll_interval=1.0, abort=abort)
        assert time.monotonic() - started < 0.5

    def test_sweep_removes_only_old_responses(self, exchange):
        old = exchange.write_response("run-old", AgentRunSuccess(result="x"))
        exchange.write_response("run-new", AgentRunSuccess(result="y"))
        past = time.time() - 7200
        os.utime(old, (past, past))
        assert exchange.sweep_orphan_responses(3600) == 1
        assert not exchange.has_response("run-old")
        assert exchange.has_response("run-new")

    def test_response_file_is_camel_case_json(self, exchange):
        path = exchange.write_response("run-a", AgentRunSuccess(result="r", new_session_id="s"))
        assert path.read_text() == dump_response(AgentRunSuccess(result="r", new_session_id="s"))
        assert '"newSessionId":"s"' in path.read_text()


# ---------------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------------

class TestHeartbeat:
    def test_missing_heartbeat(self, exchange):
        assert exchange.read_heartbeat() is None
        assert exchange.heartbeat_age_ms() is None
        assert exchange.is_worker_alive(1000) is False

    def test_fresh_heartbeat(self, exchange):
        exchange.write_heartbeat()
        assert exchange.heartbeat_age_ms() < 1000
        assert exchange.is_worker_alive(5000) is True

    def test_stale_heartbeat(self, exchange):
        exchange.write_heartbeat(int(time.time() * 1000) - 60_000)
        assert exchange.heartbeat_age_ms() >= 60_000
        assert exchange.is_worker_alive(30_000) is False

    def test_garbage_heartbeat_reads_as_missing(self, exchange):
        exchange.heartbeat_file.write_text("soon")
        assert exchange.read_heartbeat() is None
