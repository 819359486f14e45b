"""Tests for cron/scheduler.py - job execution, retries and session continuity."""

import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent.protocol import AgentRunFailure, AgentRunSuccess
from cron.scheduler import (
    ScheduledJob,
    build_job_prompt,
    retry_delay_ms,
    run_job,
    save_job_output,
    tick,
)
from gateway.config import SchedulerConfig
from gateway.execution import AgentExecutionError, AgentRunResult, RunContext
from gateway.session_store import SessionStore
from gateway.telemetry import create_trace_base

POLICY = SchedulerConfig(max_retries=2, retry_base_ms=1000, retry_max_ms=3000)


def _context(group="ops") -> RunContext:
    trace = create_trace_base(f"chat:{group}", group, None, "x", source="scheduler")
    return RunContext(trace=trace, request_id="run-1", group_key=group, is_main=False, is_scheduled=True)


def _coordinator(*outputs):
    """Coordinator mock returning (or raising) each item in turn."""
    coord = MagicMock()
    side_effects = [o if isinstance(o, Exception) else AgentRunResult(o, _context()) for o in outputs]
    coord.execute_agent_run = AsyncMock(side_effect=side_effects)
    return coord


def _job(**kwargs) -> ScheduledJob:
    defaults = dict(id="job-1", group_key="ops", channel_id="chat:ops", prompt="check disks")
    defaults.update(kwargs)
    return ScheduledJob(**defaults)


# =========================================================================
# Helpers
# =========================================================================

class TestRetryDelay:
    @pytest.mark.parametrize("n, expected", [(0, 1000), (1, 1000), (2, 2000), (3, 3000), (10, 3000)])
    def test_backoff(self, n, expected):
        assert retry_delay_ms(n, 1000, 3000) == expected


class TestBuildPrompt:
    def test_plain(self):
        assert build_job_prompt(_job()) == "check disks"

    def test_with_state(self):
        prompt = build_job_prompt(_job(state_json='{"last": 3}'))
        assert prompt == '[TASK STATE]\n{"last": 3}\n\ncheck disks'


# =========================================================================
# run_job
# =========================================================================

class TestRunJob:
    @pytest.mark.asyncio
    async def test_success(self):
        coord = _coordinator(AgentRunSuccess(result="all good"))
        outcome = await run_job(_job(retry_count=1), coord, policy=POLICY)

        assert outcome.ok
        assert outcome.result == "all good"
        assert outcome.summary == "all good"
        assert outcome.retry_count == 0
        assert outcome.next_run_ms is None

        params = coord.execute_agent_run.await_args.args[0]
        assert params.is_scheduled is True
        assert params.task_id == "job-1"
        assert params.source == "scheduler"
        assert params.session_id is None
        assert params.persist_session is False

    @pytest.mark.asyncio
    async def test_agent_error_schedules_retry(self):
        coord = _coordinator(AgentRunFailure(error="disk tool failed"))
        before = int(time.time() * 1000)
        outcome = await run_job(_job(), coord, policy=POLICY)

        assert outcome.status == "error"
        assert outcome.error == "disk tool failed"
        assert outcome.summary == "Error: disk tool failed"
        assert outcome.retry_count == 1
        assert outcome.retry_delay_ms == 1000
        assert outcome.next_run_ms >= before + 1000

    @pytest.mark.asyncio
    async def test_raised_error_is_captured(self):
        coord = _coordinator(AgentExecutionError("timed out", _context(), kind="transport_timeout"))
        outcome = await run_job(_job(retry_count=1), coord, policy=POLICY)
        assert outcome.error == "timed out"
        assert outcome.retry_count == 2
        assert outcome.retry_delay_ms == 2000

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        coord = _coordinator(AgentRunFailure(error="still broken"))
        outcome = await run_job(_job(retry_count=2), coord, policy=POLICY)
        assert outcome.retry_count == 2
        assert outcome.retry_delay_ms is None
        assert outcome.next_run_ms is None

    @pytest.mark.asyncio
    async def test_interval_job_gets_next_run(self):
        coord = _coordinator(AgentRunSuccess(result=None))
        before = int(time.time() * 1000)
        outcome = await run_job(_job(schedule_type="interval", schedule_value="60000"), coord)
        assert outcome.summary == "Completed"
        assert outcome.next_run_ms >= before + 60000

    @pytest.mark.asyncio
    async def test_long_result_summary_is_truncated(self):
        coord = _coordinator(AgentRunSuccess(result="x" * 500))
        outcome = await run_job(_job(), coord)
        assert len(outcome.summary) == 200


class TestContinuity:
    @pytest.mark.asyncio
    async def test_group_mode_shares_session(self, tmp_path):
        store = SessionStore(tmp_path / "sessions.json")
        store.set("ops", "sess-1")
        coord = _coordinator(AgentRunSuccess(result="ok"))

        await run_job(_job(context_mode="group"), coord, continuity=store)

        params = coord.execute_agent_run.await_args.args[0]
        assert params.session_id == "sess-1"
        assert params.persist_session is True
        params.on_session_update("sess-2")
        assert store.get("ops") == "sess-2"

    @pytest.mark.asyncio
    async def test_isolated_mode_ignores_store(self, tmp_path):
        store = SessionStore(tmp_path / "sessions.json")
        store.set("ops", "sess-1")
        coord = _coordinator(AgentRunSuccess(result="ok"))

        await run_job(_job(context_mode="isolated"), coord, continuity=store)

        params = coord.execute_agent_run.await_args.args[0]
        assert params.session_id is None
        assert params.on_session_update is None


# =========================================================================
# tick / output
# =========================================================================

class TestTick:
    @pytest.mark.asyncio
    async def test_no_jobs(self):
        coord = _coordinator()
        assert await tick([], coord) == []
        coord.execute_agent_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_later_jobs(self, tmp_path):
        coord = _coordinator(
            AgentExecutionError("boom", _context(), kind="worker_fault"),
            AgentRunSuccess(result="fine"),
        )
        jobs = [_job(id="a"), _job(id="b")]
        outcomes = await tick(jobs, coord, output_dir=tmp_path)

        assert [o.job_id for o in outcomes] == ["a", "b"]
        assert [o.ok for o in outcomes] == [False, True]
        assert len(list((tmp_path / "a").glob("*.md"))) == 1
        assert len(list((tmp_path / "b").glob("*.md"))) == 1


class TestSaveOutput:
    @pytest.mark.asyncio
    async def test_markdown_record(self, tmp_path):
        job = _job(name="Disk check")
        outcome = await run_job(job, _coordinator(AgentRunSuccess(result="93% free")))
        path = save_job_output(job, outcome, tmp_path)

        text = path.read_text()
        assert path.parent == tmp_path / "job-1"
        assert text.startswith("# Scheduled Job: Disk check\n")
        assert "## Prompt\n\ncheck disks" in text
        assert "## Response\n\n93% free" in text

    @pytest.mark.asyncio
    async def test_failed_record(self, tmp_path):
        job = _job()
        outcome = await run_job(job, _coordinator(AgentRunFailure(error="nope")), policy=POLICY)
        text = save_job_output(job, outcome, tmp_path).read_text()
        assert "(FAILED)" in text
        assert "## Error" in text
