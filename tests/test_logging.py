from portalauth.logging import (
    _redact_sensitive,
    get_correlation_id,
    mask_url_password,
    set_correlation_id,
)


def test_credentials_are_masked():
    event = _redact_sensitive(
        None,
        "info",
        {"event": "login", "password": "hunter22", "session_secret": "abcdef", "user_id": 3},
    )
    assert event["password"] == "***"
    assert event["session_secret"] == "***"
    assert event["user_id"] == 3


def test_email_keeps_domain_only():
    event = _redact_sensitive(None, "info", {"email": "jane.doe@corp.example"})
    assert event["email"] == "j***@corp.example"


def test_mask_url_password():
    assert mask_url_password("postgresql://portal:s3cret@db:5432/portal") == (
        "postgresql://portal:***@db:5432/portal"
    )
    assert mask_url_password("redis://localhost:6379/0") == "redis://localhost:6379/0"
    assert mask_url_password(None) is None


def test_correlation_id_generated_when_missing():
    cid = set_correlation_id()
    assert cid
    assert get_correlation_id() == cid
    assert set_correlation_id("req-1") == "req-1"
