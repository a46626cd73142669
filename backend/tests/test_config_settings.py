from myhometech.core.config import Settings, get_settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("DEFAULT_VALID_MINUTES", raising=False)
    settings = Settings()
    assert settings.default_valid_minutes == 24 * 60
    assert settings.rate_limit_api_enabled is False
    assert settings.security_headers_enabled is True


def test_cors_lists_accept_csv_and_json(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("CORS_ALLOW_METHODS", '["GET", "POST"]')
    settings = Settings()
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.cors_allow_methods == ["GET", "POST"]


def test_trusted_proxy_cidrs(monkeypatch):
    monkeypatch.setenv("TRUSTED_PROXY_CIDRS", "10.0.0.0/8,192.168.1.1")
    assert Settings().trusted_proxy_cidrs == ["10.0.0.0/8", "192.168.1.1"]


def test_validate_required_config(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "")
    monkeypatch.setenv("JWT_SECRET", "")
    errors = Settings().validate_required_config()
    assert "DATABASE_URL is not set" in errors
    assert "JWT_SECRET is not set" in errors


def test_short_secret_rejected_in_production_only(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("JWT_SECRET", "short")

    monkeypatch.setenv("ENVIRONMENT", "production")
    settings = Settings()
    assert settings.is_production
    assert settings.validate_required_config() == ["JWT_SECRET must be at least 32 characters in production"]

    monkeypatch.setenv("ENVIRONMENT", "development")
    assert Settings().validate_required_config() == []


def test_get_settings_is_cached():
    assert get_settings() is get_settings()
