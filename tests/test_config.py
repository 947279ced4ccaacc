import pytest
from pydantic import ValidationError

from lockbox.config import ClientType, Settings, get_settings, reset_settings_cache


def test_defaults_match_security_policy(settings):
    assert settings.lockout_max_failures == 5
    assert settings.lockout_duration_minutes == 30
    assert settings.two_factor_setup_window_minutes == 10
    assert settings.two_factor_max_failures == 5
    assert settings.two_factor_lock_minutes == 15
    assert settings.totp_drift_steps == 2
    assert settings.backup_code_count == 10
    assert settings.access_token_ttl_minutes == 60
    assert settings.introspection_cache_ttl_seconds == 3600


def test_refresh_lifetime_per_client_type(settings):
    assert settings.refresh_token_ttl_days(ClientType.CONFIDENTIAL) == 14
    assert settings.refresh_token_ttl_days("public") == 7
    assert settings.refresh_token_ttl_days("machine") is None


def test_from_env_reads_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LOCKOUT_MAX_FAILURES", "3")
    monkeypatch.setenv("DEFAULT_CLIENT_TYPE", "public")
    monkeypatch.setenv("TOTP_ISSUER", "Acme")
    settings = Settings.from_env()
    assert settings.lockout_max_failures == 3
    assert settings.default_client_type is ClientType.PUBLIC
    assert settings.totp_issuer == "Acme"


def test_from_env_falls_back_to_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("ACCESS_TOKEN_TTL_MINUTES", raising=False)
    (tmp_path / ".env").write_text("ACCESS_TOKEN_TTL_MINUTES=5\n")
    assert Settings.from_env().access_token_ttl_minutes == 5


def test_environment_beats_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("ACCESS_TOKEN_TTL_MINUTES=5\n")
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "7")
    assert Settings.from_env().access_token_ttl_minutes == 7


@pytest.mark.parametrize(
    "field,value",
    [
        ("lockout_max_failures", 0),
        ("totp_digits", 9),
        ("backup_code_hash_memory_kib", 8),
        ("two_factor_challenge_ttl_seconds", 5),
    ],
)
def test_out_of_range_values_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(secret_key="k" * 40, **{field: value})


def test_missing_secret_key_is_generated_and_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings(secret_key=None)
    assert len(first.secret_key) >= 32
    assert (tmp_path / ".secret_key").read_text().strip() == first.secret_key
    second = Settings(secret_key=None)
    assert second.secret_key == first.secret_key


def test_get_settings_is_cached_until_reset(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TOTP_ISSUER", "First")
    first = get_settings()
    monkeypatch.setenv("TOTP_ISSUER", "Second")
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings().totp_issuer == "Second"
