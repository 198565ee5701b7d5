import structlog

from jwtpizza.logging import (
    _redact_pii,
    bind_user,
    get_correlation_id,
    mask_email,
    mask_token,
    sanitize_error_message,
    set_correlation_id,
)


def test_passwords_and_hashes_are_dropped():
    event = _redact_pii(None, "info", {"password": "hunter22", "password_hash": "$argon2id$x"})

    assert event == {"password": "[REDACTED]", "password_hash": "[REDACTED]"}


def test_emails_and_tokens_are_masked():
    event = _redact_pii(
        None, "info", {"email": "diner@jwt.com", "token": "aaa.bbb.signature", "user_id": 3}
    )

    assert event["email"] == "d***@jwt.com"
    assert event["token"] == "***ture"
    assert event["user_id"] == 3


def test_mask_helpers_handle_short_values():
    assert mask_email("not-an-email") == "***"
    assert mask_token("a.b.c") == "***"


def test_new_request_context_clears_bound_user():
    set_correlation_id("req-1")
    bind_user(7)
    assert structlog.contextvars.get_contextvars()["user_id"] == 7

    cid = set_correlation_id(None)

    assert cid != "req-1"
    assert get_correlation_id() == cid
    assert "user_id" not in structlog.contextvars.get_contextvars()


def test_sanitize_strips_sql_and_hashes():
    message = sanitize_error_message(
        'duplicate key DETAIL:  Key (email)=(a@jwt.com) already exists; hash $argon2id$v=19$abc'
    )

    assert "a@jwt.com" not in message
    assert "$argon2id$" not in message


def test_sanitize_handles_empty_input():
    assert sanitize_error_message("") == "An error occurred"
