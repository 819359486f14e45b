"""Tests for the webhook HTTP surface.

Uses aiohttp's TestServer/TestClient against a mocked coordinator, so no
sandbox is involved.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from agent.protocol import AgentRunFailure, AgentRunSuccess
from gateway.execution import AgentExecutionError, AgentRunResult, RunContext
from gateway.session_store import SessionStore
from gateway.telemetry import create_trace_base
from gateway.webhook import WebhookServer

TOKEN = "s3cret"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


def _context() -> RunContext:
    trace = create_trace_base("webhook:main", "main", None, "hi", source="webhook")
    return RunContext(trace=trace, request_id="run-1", group_key="main", is_main=True)


def _result(output) -> AgentRunResult:
    return AgentRunResult(output=output, context=_context())


@pytest.fixture
def coordinator():
    coord = MagicMock()
    coord.execute_agent_run = AsyncMock(
        return_value=_result(AgentRunSuccess(result="done", model="m-1"))
    )
    return coord


@pytest.fixture
def sessions(tmp_path):
    return SessionStore(tmp_path / "sessions.json")


@pytest_asyncio.fixture
async def client(coordinator, sessions):
    server = WebhookServer(coordinator, TOKEN, ["main", "ops"], sessions=sessions)
    async with TestClient(TestServer(server.create_app())) as c:
        yield c


class TestConstruction:
    def test_token_required(self, coordinator):
        with pytest.raises(ValueError):
            WebhookServer(coordinator, "", ["main"])


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_needs_no_auth(self, client):
        resp = await client.get("/webhook/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok"}


class TestRun:
    @pytest.mark.asyncio
    async def test_success(self, client, coordinator):
        resp = await client.post("/webhook/ops", json={"message": "deploy", "userId": "ci"}, headers=AUTH)

        assert resp.status == 200
        assert await resp.json() == {"status": "success", "result": "done", "model": "m-1"}
        params = coordinator.execute_agent_run.await_args.args[0]
        assert params.group_key == "ops"
        assert params.channel_id == "webhook:ops"
        assert params.prompt == "deploy"
        assert params.user_id == "ci"
        assert params.source == "webhook"

    @pytest.mark.asyncio
    async def test_stored_session_is_resumed(self, client, coordinator, sessions):
        sessions.set("main", "sess-7")
        await client.post("/webhook/main", json={"message": "hi"}, headers=AUTH)
        assert coordinator.execute_agent_run.await_args.args[0].session_id == "sess-7"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": TOKEN}])
    async def test_unauthorized(self, client, coordinator, headers):
        resp = await client.post("/webhook/main", json={"message": "hi"}, headers=headers)
        assert resp.status == 401
        assert await resp.json() == {"error": "Unauthorized"}
        coordinator.execute_agent_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_group(self, client):
        resp = await client.post("/webhook/nope", json={"message": "hi"}, headers=AUTH)
        assert resp.status == 404
        assert await resp.json() == {"error": 'Group "nope" not found'}

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        resp = await client.post("/webhook/main", data="{not json", headers=AUTH)
        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid JSON body"

    @pytest.mark.asyncio
    async def test_body_that_is_not_utf8(self, client, coordinator):
        resp = await client.post(
            "/webhook/main",
            data=b'{"message": "\xff\xfe"}',
            headers={**AUTH, "Content-Type": "application/json"},
        )
        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid JSON body"
        coordinator.execute_agent_run.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, {"message": ""}, {"message": 42}])
    async def test_missing_message(self, client, body):
        resp = await client.post("/webhook/main", json=body, headers=AUTH)
        assert resp.status == 400
        assert (await resp.json())["error"] == 'Missing "message" field'

    @pytest.mark.asyncio
    async def test_bad_user_id(self, client):
        resp = await client.post("/webhook/main", json={"message": "hi", "userId": 7}, headers=AUTH)
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_agent_error_is_reported_with_200(self, client, coordinator):
        coordinator.execute_agent_run.return_value = _result(AgentRunFailure(error="tool crashed"))
        resp = await client.post("/webhook/main", json={"message": "hi"}, headers=AUTH)
        assert resp.status == 200
        assert await resp.json() == {"status": "error", "result": None, "model": None}

    @pytest.mark.asyncio
    async def test_execution_error_is_humanized(self, client, coordinator):
        coordinator.execute_agent_run.side_effect = AgentExecutionError(
            "Agent run run-1 timed out after 10ms",
            _context(),
            kind="transport_timeout",
        )
        resp = await client.post("/webhook/main", json={"message": "hi"}, headers=AUTH)
        assert resp.status == 500
        assert "took too long" in (await resp.json())["error"]
