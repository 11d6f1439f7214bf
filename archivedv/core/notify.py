"""
Pushover notifications for finished captures.
"""

import logging

import requests

from archivedv.core.constants import PUSHOVER_API_URL, PUSHOVER_TIMEOUT_SEC

logger = logging.getLogger(__name__)


class PushoverNotifier:
    """Best effort: a failed push is logged and reported as False, never raised."""

    def __init__(self, app_token: str, user_token: str,
                 session: requests.Session | None = None):
        self.app_token = app_token
        self.user_token = user_token
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.app_token and self.user_token)

    def send(self, title: str, message: str) -> bool:
        if not self.enabled:
            return False
        try:
            resp = self.session.post(
                PUSHOVER_API_URL,
                data={
                    "token": self.app_token,
                    "user": self.user_token,
                    "title": title,
                    "message": message,
                },
                timeout=PUSHOVER_TIMEOUT_SEC,
            )
        except requests.exceptions.RequestException as e:
            logger.warning("Pushover request failed: %s", e)
            return False

        if resp.status_code != 200:
            logger.warning("Pushover returned %s: %s", resp.status_code, resp.text[:200])
            return False
        return True

    def __call__(self, title: str, message: str) -> bool:
        return self.send(title, message)
