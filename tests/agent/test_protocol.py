"""Tests for the request/response wire records.

Covers:
- camelCase keys on the wire, snake_case in Python
- strict role flags and unknown keys/tags rejected
- response union dispatches on status
"""

import json

import pytest

from agent.errors import RequestValidationError, WorkerFault
from agent.protocol import (
    AgentRunFailure,
    AgentRunRequest,
    AgentRunSuccess,
    ToolCallRecord,
    dump_request,
    dump_response,
    error_response,
    parse_request,
    parse_response,
)


def _request_payload(**overrides) -> dict:
    payload = {
        "kind": "agent_run",
        "id": "run-1",
        "prompt": "hello",
        "groupKey": "main",
        "channelId": "chat:1",
        "isMain": True,
    }
    payload.update(overrides)
    return payload


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class TestParseRequest:
    def test_minimal_request(self):
        req = parse_request(json.dumps(_request_payload()))
        assert req.id == "run-1"
        assert req.group_key == "main"
        assert req.is_main is True
        assert req.is_scheduled is False
        assert req.attachments == ()

    def test_nested_records_use_camel_case(self):
        req = parse_request(json.dumps(_request_payload(
            attachments=[{"type": "image", "path": "/in/a.png", "mimeType": "image/png", "sizeBytes": 10}],
            streaming={"enabled": True, "draftId": 7, "minIntervalMs": 250},
            timeouts={"runMs": 1000},
        )))
        assert req.attachments[0].mime_type == "image/png"
        assert req.streaming.draft_id == 7
        assert req.timeouts.run_ms == 1000

    @pytest.mark.parametrize("value", ["true", 1, "yes"])
    def test_role_flags_are_not_coerced(self, value):
        with pytest.raises(RequestValidationError):
            parse_request(json.dumps(_request_payload(isMain=value)))

    def test_unknown_key_rejected(self):
        with pytest.raises(RequestValidationError, match="surprise"):
            parse_request(json.dumps(_request_payload(surprise=1)))

    def test_unknown_kind_rejected(self):
        with pytest.raises(RequestValidationError):
            parse_request(json.dumps(_request_payload(kind="something_else")))

    @pytest.mark.parametrize("field", ["id", "prompt", "groupKey", "channelId"])
    def test_required_strings_must_be_non_empty(self, field):
        with pytest.raises(RequestValidationError):
            parse_request(json.dumps(_request_payload(**{field: ""})))

    def test_missing_is_main_rejected(self):
        payload = _request_payload()
        del payload["isMain"]
        with pytest.raises(RequestValidationError):
            parse_request(json.dumps(payload))

    def test_not_json(self):
        with pytest.raises(RequestValidationError, match="Invalid agent request payload"):
            parse_request("{not json")


class TestDumpRequest:
    def test_wire_keys_are_camel_case_and_none_dropped(self):
        req = AgentRunRequest(
            id="run-2", prompt="p", group_key="ops", channel_id="c", is_main=False,
            session_id="sess-1",
        )
        data = json.loads(dump_request(req))
        assert data["groupKey"] == "ops"
        assert data["sessionId"] == "sess-1"
        assert data["kind"] == "agent_run"
        assert "userId" not in data

    def test_dumped_request_parses_back(self):
        req = AgentRunRequest(id="run-3", prompt="p", group_key="g", channel_id="c", is_main=False)
        assert parse_request(dump_request(req)) == req


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class TestParseResponse:
    def test_success_variant(self):
        resp = parse_response(json.dumps({
            "status": "success",
            "result": "done",
            "model": "m-1",
            "tokensPrompt": 12,
            "toolCalls": [{"name": "process", "ok": True, "durationMs": 5}],
            "newSessionId": "sess-9",
        }))
        assert isinstance(resp, AgentRunSuccess)
        assert resp.tool_calls[0] == ToolCallRecord(name="process", ok=True, duration_ms=5)
        assert resp.new_session_id == "sess-9"

    def test_error_variant(self):
        resp = parse_response(json.dumps({"status": "error", "error": "boom", "result": None}))
        assert isinstance(resp, AgentRunFailure)
        assert resp.error == "boom"

    def test_error_variant_requires_message(self):
        with pytest.raises(WorkerFault):
            parse_response(json.dumps({"status": "error", "error": ""}))

    def test_unknown_status(self):
        with pytest.raises(WorkerFault):
            parse_response(json.dumps({"status": "maybe"}))

    def test_garbage(self):
        with pytest.raises(WorkerFault, match="Unreadable agent response"):
            parse_response("")


class TestErrorResponse:
    def test_builds_failure_record(self):
        resp = error_response("bad input", latency_ms=3)
        assert resp.status == "error"
        assert resp.result is None
        data = json.loads(dump_response(resp))
        assert data == {"status": "error", "error": "bad input", "latencyMs": 3, "toolCalls": []}

    def test_empty_message_gets_placeholder(self):
        assert error_response("").error == "Unknown error"
