# backend/memberauth/core/security_logger.py
"""
Dedicated security logger for fail2ban integration.

Writes security events in a format that fail2ban can parse. When
SECURITY_LOG_FILE is configured the events go to a rotating file of their own,
otherwise they propagate to the application log.
"""

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

from memberauth.core.config import settings

_UNSAFE_LOG_CHARS = re.compile(r"[\n\r\[\]<>\x00-\x1f\x7f-\x9f]")


def sanitize(value: str | None, max_length: int = 255) -> str:
    """Strip anything that could end a log line early or forge a bracketed event tag."""
    if not value:
        return "unknown"
    return _UNSAFE_LOG_CHARS.sub("", str(value).strip())[:max_length]


def _mask_username(username: str) -> str:
    """Keep the first three characters of a login name so repeated attempts stay correlatable."""
    username = sanitize(username)
    if username == "unknown":
        return username
    if len(username) > 3:
        return username[:3] + "***"
    return username[0] + "***"


class SecurityLogger:
    """
    Security events in the line format the fail2ban filter matches:

        2026-01-05 10:15:30 SECURITY [FAILED_LOGIN] ip=203.0.113.7 user=cli*** reason=BAD_CREDENTIALS

    Each event writes "EVENT] key=value ..." and the file formatter supplies the
    opening bracket. Every field passes through `sanitize`.
    """

    def __init__(self, log_file: str | None = None):
        self.logger = logging.getLogger("security")
        self.logger.setLevel(logging.INFO)
        if log_file and not self.logger.handlers:
            self._attach_file_handler(Path(log_file))

    def _attach_file_handler(self, log_path: Path) -> None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(str(log_path), maxBytes=20 * 1024 * 1024, backupCount=5)
        handler.setFormatter(
            logging.Formatter("%(asctime)s SECURITY [%(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        )
        self.logger.addHandler(handler)
        # fail2ban tails this file only; keep the events out of the application log.
        self.logger.propagate = False

    def _emit(self, event: str, **fields: str) -> None:
        self.logger.info(f"{event}] " + " ".join(f"{key}={value}" for key, value in fields.items()))

    def failed_login(self, ip: str, username: str, reason: str) -> None:
        """reason: BAD_CREDENTIALS, ACCOUNT_LOCKED or ACCOUNT_INACTIVE."""
        self._emit("FAILED_LOGIN", ip=sanitize(ip), user=_mask_username(username), reason=sanitize(reason))

    def successful_login(self, ip: str, username: str) -> None:
        self._emit("LOGIN_SUCCESS", ip=sanitize(ip), user=_mask_username(username))

    def account_locked(self, ip: str, username: str, minutes: int) -> None:
        self._emit("ACCOUNT_LOCKED", ip=sanitize(ip), user=_mask_username(username), minutes=str(int(minutes)))

    def rate_limited(self, ip: str, endpoint: str) -> None:
        self._emit("RATE_LIMIT", ip=sanitize(ip), endpoint=sanitize(endpoint, max_length=100))

    def bad_token(self, ip: str, reason: str) -> None:
        """Malformed, forged or wrong-type tokens. Expired tokens are routine and not reported."""
        self._emit("BAD_TOKEN", ip=sanitize(ip), reason=sanitize(reason))


security_log = SecurityLogger(settings.SECURITY_LOG_FILE)
