# backend/tests/unit/test_security_logger.py
"""
Unit tests for the fail2ban security log lines.
"""

from unittest.mock import patch

from memberauth.core.security_logger import sanitize, security_log


def test_failed_login_logs_correctly():
    """Test that failed_login logs the format fail2ban matches on."""
    with patch.object(security_log.logger, "info") as mock_info:
        security_log.failed_login("192.168.1.100", "mountaineer", "BAD_CREDENTIALS")

        mock_info.assert_called_once()
        call_args = mock_info.call_args[0][0]

        assert call_args.startswith("FAILED_LOGIN]")
        assert "ip=192.168.1.100" in call_args
        assert "user=mou***" in call_args
        assert "reason=BAD_CREDENTIALS" in call_args
        assert "mountaineer" not in call_args


def test_failed_login_sanitizes_username():
    """Injected newlines must not forge a second log entry."""
    with patch.object(security_log.logger, "info") as mock_info:
        security_log.failed_login("10.0.0.1", "x\n2026-01-01 00:00:00 SECURITY [LOGIN_SUCCESS]", "X")

        call_args = mock_info.call_args[0][0]
        assert "\n" not in call_args
        assert "[" not in call_args


def test_account_locked_logs_minutes():
    with patch.object(security_log.logger, "info") as mock_info:
        security_log.account_locked("10.0.0.2", "ab", 30)

        call_args = mock_info.call_args[0][0]
        assert "ACCOUNT_LOCKED]" in call_args
        assert "user=a***" in call_args
        assert "minutes=30" in call_args


def test_bad_token_logs_reason():
    with patch.object(security_log.logger, "info") as mock_info:
        security_log.bad_token("10.0.0.3", "wrong_type")

        assert mock_info.call_args[0][0] == "BAD_TOKEN] ip=10.0.0.3 reason=wrong_type"


def test_sanitize_handles_empty_and_long_values():
    assert sanitize(None) == "unknown"
    assert sanitize("") == "unknown"
    assert sanitize("a" * 300) == "a" * 255
    assert sanitize("<script>ok</script>", max_length=50) == "scriptok/script"
