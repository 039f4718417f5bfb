"""Bearer-token identity resolution.

Sessions are issued by the account service and stored as
`{"<token>": {"username": "...", "createdAt": ...}}`; this module only reads them.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class IdentityResolver(Protocol):
    """Maps a bearer token to the owner identity string, or None if unknown."""

    def resolve(self, token: str) -> str | None: ...


class SessionFileIdentityResolver:
    """Reads the sessions file on every lookup so new logins apply immediately."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def resolve(self, token: str) -> str | None:
        if not token or not self.path.exists():
            return None
        try:
            sessions = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.exception("auth event=sessions_unreadable path=%s", self.path)
            return None
        if not isinstance(sessions, dict):
            return None
        session = sessions.get(token)
        if not isinstance(session, dict):
            return None
        username = session.get("username")
        if isinstance(username, str) and username:
            return username
        return None
