from lockbox.logging import _add_correlation_id, _redact_pii, get_correlation_id, set_correlation_id


def _redact(**fields):
    return _redact_pii(None, "info", dict(fields))


def test_credentials_are_masked():
    out = _redact(event="login_failed", password="hunter2-hunter2", client_secret="abcdefgh")
    assert out["password"] == "hu***r2"
    assert out["client_secret"] == "ab***gh"
    assert out["event"] == "login_failed"


def test_one_time_codes_and_backup_lists_are_masked():
    out = _redact(code="123456", backup_codes=["AAAA-1111", "BBBB-2222"])
    assert out["code"] == "12***56"
    assert out["backup_codes"] == ["***", "***"]


def test_identifiers_are_kept():
    out = _redact(token_id="tok-123456", client_id="lockbox-web", user_id="u-1")
    assert out == {"token_id": "tok-123456", "client_id": "lockbox-web", "user_id": "u-1"}


def test_short_values_are_left_alone():
    assert _redact(token="abc")["token"] == "abc"


def test_correlation_id_is_attached():
    cid = set_correlation_id("req-9")
    assert get_correlation_id() == cid == "req-9"
    assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-9"


def test_correlation_id_is_generated_when_missing():
    cid = set_correlation_id(None)
    assert len(cid) == 36
