"""User directory.

Maps user ids to login names so ACL listings can show logins and drop
hidden accounts. Logins from configuration are authoritative; callers that
are not configured are added as they identify themselves.
"""

from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("rebac.security")


class UserDirectory:
    """Thread-safe id -> login mapping.

    Args:
        users: Configured id -> login pairs; headers can never change these
    """

    def __init__(self, users: dict[str, str] | None = None):
        self._configured: dict[str, str] = dict(users or {})
        self._seen: dict[str, str] = {}
        self._lock = threading.Lock()

    def register(self, user_id: str, login: str) -> str:
        """Record the login a caller reported and return the effective one."""
        with self._lock:
            configured = self._configured.get(user_id)
            if configured is not None:
                if login != configured:
                    security_logger.warning(
                        "User %s claimed login %s, configured login is %s",
                        user_id, login, configured,
                    )
                return configured
            previous = self._seen.get(user_id)
            self._seen[user_id] = login
        if previous is not None and previous != login:
            logger.info("Login for user %s changed from %s to %s", user_id, previous, login)
        return login

    def login_for(self, user_id: str) -> str:
        """Login of a user, or an empty string if the user is unknown."""
        with self._lock:
            return self._configured.get(user_id) or self._seen.get(user_id, "")


# Singleton instance
_user_directory: UserDirectory | None = None


def get_user_directory() -> UserDirectory:
    """Get the user directory singleton."""
    global _user_directory
    if _user_directory is None:
        _user_directory = UserDirectory()
    return _user_directory


def set_user_directory(directory: UserDirectory | None) -> None:
    """Install (or clear, with None) the user directory singleton."""
    global _user_directory
    _user_directory = directory
