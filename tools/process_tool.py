"""Background process tool for agents running inside the sandbox.

Exposes the sandbox's :class:`~tools.process_registry.ProcessRegistry` as one
LLM-callable tool with an ``action`` switch:

- ``start``  -- run a shell command in the background, returns a session id
- ``poll``   -- new output since the last poll plus exit status
- ``log``    -- slice of the full buffered output (``offset``/``limit``)
- ``write``  -- send text to the process stdin (``eof`` closes it)
- ``kill``   -- signal the process group (default SIGTERM)
- ``remove`` -- kill if needed and forget the session
- ``list``   -- all resident sessions with a short tail

Every call returns a JSON string. Failures come back as
``{"error": true, "kind": ..., "message": ...}`` instead of raising, so the
model sees them as tool output.
"""

import json
import logging
from typing import Any, Dict

from agent.errors import ClawboxError
from tools.process_registry import ProcessRegistry

logger = logging.getLogger(__name__)

PROCESS_ACTIONS = ("start", "poll", "log", "write", "kill", "remove", "list")

PROCESS_TOOL_SCHEMA = {
    "name": "process",
    "description": (
        "Manage background shell processes in the sandbox. Start a long-running "
        "command, then poll it for new output, read its log, write to its stdin, "
        "kill it or remove it when done."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "action": {
                "type": "string",
                "enum": list(PROCESS_ACTIONS),
                "description": "What to do.",
            },
            "command": {
                "type": "string",
                "description": "Shell command to run (start).",
            },
            "cwd": {
                "type": "string",
                "description": "Working directory (start). Defaults to the sandbox workspace.",
            },
            "timeout_ms": {
                "type": "integer",
                "description": "Kill the process after this many milliseconds (start). 0 disables.",
            },
            "session_id": {
                "type": "string",
                "description": "Session returned by start (all actions except start and list).",
            },
            "data": {
                "type": "string",
                "description": "Text to send to stdin (write).",
            },
            "eof": {
                "type": "boolean",
                "description": "Close stdin after writing (write).",
            },
            "signal": {
                "type": "string",
                "description": "Signal name for kill, e.g. SIGTERM or SIGKILL.",
            },
            "offset": {
                "type": "integer",
                "description": "Character offset into the log (log).",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum characters to return (log).",
            },
        },
        "required": ["action"],
    },
}


def _error(kind: str, message: str) -> str:
    return json.dumps({"error": True, "kind": kind, "message": message})


def _require(args: Dict[str, Any], key: str) -> Any:
    value = args.get(key)
    if value is None or value == "":
        raise ValueError(f"Missing required parameter: {key}")
    return value


async def handle_process_tool(registry: ProcessRegistry, args: Dict[str, Any]) -> str:
    action = args.get("action")
    if action not in PROCESS_ACTIONS:
        return _error("validation", f"Unknown action: {action!r}. Expected one of {', '.join(PROCESS_ACTIONS)}")

    try:
        if action == "start":
            result = await registry.start_process(
                _require(args, "command"),
                cwd=args.get("cwd"),
                timeout_ms=args.get("timeout_ms"),
            )
        elif action == "poll":
            result = registry.poll_session(_require(args, "session_id"))
        elif action == "log":
            result = registry.get_log(
                _require(args, "session_id"),
                offset=int(args.get("offset") or 0),
                limit=args.get("limit"),
            )
        elif action == "write":
            session_id = _require(args, "session_id")
            registry.write_to_session(session_id, args.get("data", ""), eof=bool(args.get("eof")))
            result = {"ok": True}
        elif action == "kill":
            session_id = _require(args, "session_id")
            registry.kill_session(session_id, args.get("signal") or "SIGTERM")
            result = {"ok": True}
        elif action == "remove":
            registry.remove_session(_require(args, "session_id"))
            result = {"ok": True}
        else:
            result = {"sessions": registry.list_sessions()}
    except ClawboxError as e:
        return _error(e.kind, str(e))
    except ValueError as e:
        return _error("validation", str(e))
    except OSError as e:
        logger.warning("process tool %s failed: %s", action, e)
        return _error("os_error", str(e))

    return json.dumps(result)
