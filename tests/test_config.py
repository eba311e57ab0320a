import pytest

from clinicledger.config import AppSettings, get_settings


def test_defaults(monkeypatch):
    for name in (
        'LOG_LEVEL',
        'AUDIT_TO_DATABASE',
        'WEBHOOK_SIGNING_SECRET',
        'WEBHOOK_TOLERANCE_SECONDS',
        'DEFAULT_MIN_PAYOUT_CENTS',
        'TAX_DOC_THRESHOLD_CENTS',
        'COUNTER_RETRY_ATTEMPTS',
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    settings = get_settings()
    defaults = AppSettings()
    assert settings.log_level == 'INFO'
    assert settings.audit_to_database is True
    assert settings.webhook_signing_secret is None
    assert settings.webhook_tolerance_seconds == defaults.webhook_tolerance_seconds == 300
    assert settings.default_min_payout_cents == 5000
    assert settings.tax_doc_threshold_cents == 60000
    assert settings.counter_retry_attempts == 3


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv('LOG_LEVEL', 'debug')
    monkeypatch.setenv('AUDIT_TO_DATABASE', 'no')
    monkeypatch.setenv('WEBHOOK_SIGNING_SECRET', 'whsec')
    monkeypatch.setenv('WEBHOOK_TOLERANCE_SECONDS', '60')
    monkeypatch.setenv('DEFAULT_MIN_PAYOUT_CENTS', '2500')
    monkeypatch.setenv('COUNTER_RETRY_ATTEMPTS', '0')
    get_settings.cache_clear()
    settings = get_settings()
    assert settings.log_level == 'DEBUG'
    assert settings.audit_to_database is False
    assert settings.webhook_signing_secret == 'whsec'
    assert settings.webhook_tolerance_seconds == 60
    assert settings.default_min_payout_cents == 2500
    # At least one attempt is always made.
    assert settings.counter_retry_attempts == 1


def test_settings_are_cached(monkeypatch):
    monkeypatch.setenv('DEFAULT_MIN_PAYOUT_CENTS', '100')
    get_settings.cache_clear()
    first = get_settings()
    monkeypatch.setenv('DEFAULT_MIN_PAYOUT_CENTS', '200')
    assert get_settings() is first
    get_settings.cache_clear()
    assert get_settings().default_min_payout_cents == 200


def test_invalid_integer_setting(monkeypatch):
    monkeypatch.setenv('TAX_DOC_THRESHOLD_CENTS', 'lots')
    get_settings.cache_clear()
    with pytest.raises(ValueError):
        get_settings()
