"""Wire schemas for the host/sandbox file exchange.

Records are JSON objects with camelCase keys. Both sides validate at the
boundary: unknown keys, unknown ``kind``/``status`` tags and loosely typed
role flags are rejected rather than coerced.

Request record::

    {"kind": "agent_run", "id": "...", "prompt": "...", "groupKey": "...",
     "channelId": "...", "isMain": false, "sessionId": "...", ...}

Response record (tagged on ``status``)::

    {"status": "success", "result": "...", "model": "...", "tokensPrompt": 12, ...}
    {"status": "error", "error": "...", "result": null}
"""

from typing import Annotated, Literal, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictStr,
    TypeAdapter,
    ValidationError,
)
from pydantic.alias_generators import to_camel

from agent.errors import RequestValidationError, WorkerFault

NonEmptyStr = Annotated[StrictStr, Field(min_length=1)]


class _Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


class Attachment(_Record):
    type: NonEmptyStr
    path: NonEmptyStr
    name: Optional[str] = None
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = Field(default=None, ge=0)


class StreamingParams(_Record):
    enabled: StrictBool = False
    draft_id: int
    min_interval_ms: Optional[int] = Field(default=None, ge=0)
    min_chars: Optional[int] = Field(default=None, ge=0)


class RunTimeouts(_Record):
    run_ms: Optional[int] = Field(default=None, gt=0)
    tool_ms: Optional[int] = Field(default=None, gt=0)


class AgentRunRequest(_Record):
    kind: Literal["agent_run"] = "agent_run"
    id: NonEmptyStr
    prompt: NonEmptyStr
    group_key: NonEmptyStr
    channel_id: NonEmptyStr
    is_main: StrictBool
    is_scheduled: StrictBool = False
    is_background: StrictBool = False
    session_id: Optional[StrictStr] = None
    user_id: Optional[StrictStr] = None
    task_id: Optional[StrictStr] = None
    attachments: Tuple[Attachment, ...] = ()
    streaming: Optional[StreamingParams] = None
    timeouts: Optional[RunTimeouts] = None


class ToolCallRecord(_Record):
    name: NonEmptyStr
    ok: StrictBool
    duration_ms: Optional[int] = Field(default=None, ge=0)
    error: Optional[str] = None


class _ResponseBase(_Record):
    model: Optional[str] = None
    tokens_prompt: Optional[int] = Field(default=None, ge=0)
    tokens_completion: Optional[int] = Field(default=None, ge=0)
    tool_calls: Tuple[ToolCallRecord, ...] = ()
    latency_ms: Optional[int] = Field(default=None, ge=0)
    new_session_id: Optional[str] = None


class AgentRunSuccess(_ResponseBase):
    status: Literal["success"] = "success"
    result: Optional[str] = None


class AgentRunFailure(_ResponseBase):
    status: Literal["error"] = "error"
    error: NonEmptyStr
    result: None = None


AgentRunResponse = Annotated[
    Union[AgentRunSuccess, AgentRunFailure],
    Field(discriminator="status"),
]

_response_adapter: TypeAdapter = TypeAdapter(AgentRunResponse)


def _summarize(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def parse_request(raw: Union[str, bytes]) -> AgentRunRequest:
    """Parse and validate a request record.

    Raises:
        RequestValidationError: the payload is not valid JSON or does not
            match the request schema.
    """
    try:
        return AgentRunRequest.model_validate_json(raw)
    except ValidationError as exc:
        raise RequestValidationError(f"Invalid agent request payload: {_summarize(exc)}") from exc


def dump_request(request: AgentRunRequest) -> str:
    return request.model_dump_json(by_alias=True, exclude_none=True)


def parse_response(raw: Union[str, bytes]) -> Union[AgentRunSuccess, AgentRunFailure]:
    """Parse a response record; a bad record means the worker misbehaved."""
    try:
        return _response_adapter.validate_json(raw)
    except ValidationError as exc:
        raise WorkerFault(f"Unreadable agent response: {_summarize(exc)}") from exc


def dump_response(response: Union[AgentRunSuccess, AgentRunFailure]) -> str:
    return response.model_dump_json(by_alias=True, exclude_none=True)


def error_response(message: str, *, latency_ms: Optional[int] = None) -> AgentRunFailure:
    return AgentRunFailure(error=message or "Unknown error", latency_ms=latency_ms)
