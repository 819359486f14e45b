"""Shared constants for clawbox.

Import-safe module with no dependencies, usable from host and sandbox code
without risk of circular imports.
"""

import os
from pathlib import Path

CLAWBOX_HOME = Path(os.getenv("CLAWBOX_HOME", Path.home() / ".clawbox"))

# Shared host/sandbox exchange area. Inside the sandbox this is normally a
# bind mount of the host's ipc directory.
DEFAULT_IPC_DIR = CLAWBOX_HOME / "ipc"
REQUESTS_SUBDIR = "agent_requests"
RESPONSES_SUBDIR = "agent_responses"
HEARTBEAT_FILENAME = "heartbeat"

DEFAULT_TRACES_DIR = CLAWBOX_HOME / "traces"
DEFAULT_LOGS_DIR = CLAWBOX_HOME / "logs"
DEFAULT_SESSIONS_FILE = CLAWBOX_HOME / "sessions.json"

MAIN_GROUP_KEY = "main"
