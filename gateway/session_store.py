"""
Session continuity store.

Maps a group key to the agent-side session id returned by the last run, so
the next run for that group resumes the same conversation.

Storage: ~/.clawbox/sessions.json

    {"main": "sess-1a2b...", "ops": "sess-9f8e..."}
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional, Union

from agent.ipc import atomic_write_text
from clawbox_constants import DEFAULT_SESSIONS_FILE

logger = logging.getLogger(__name__)


class SessionStore:
    """Group key -> continuity session id, persisted as one JSON file."""

    def __init__(self, path: Union[str, Path] = DEFAULT_SESSIONS_FILE):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._sessions: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable session store %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring session store %s: expected a JSON object", self.path)
            return {}
        return {str(k): str(v) for k, v in data.items() if v}

    def _save(self) -> None:
        atomic_write_text(self.path, json.dumps(self._sessions, indent=2, sort_keys=True))
        try:
            os.chmod(self.path, 0o600)
        except OSError:
            pass  # Windows doesn't support chmod the same way

    def get(self, group_key: str) -> Optional[str]:
        return self._sessions.get(group_key)

    def set(self, group_key: str, session_id: str) -> None:
        with self._lock:
            if self._sessions.get(group_key) == session_id:
                return
            self._sessions[group_key] = session_id
            self._save()

    def clear(self, group_key: Optional[str] = None) -> None:
        """Forget one group's session, or every session when no key is given."""
        with self._lock:
            if group_key is None:
                self._sessions.clear()
            elif self._sessions.pop(group_key, None) is None:
                return
            self._save()

    def all(self) -> Dict[str, str]:
        return dict(self._sessions)
