from __future__ import annotations

from core.config import Settings
from fakes import make_settings


def test_defaults_match_published_ports_and_version() -> None:
    settings = make_settings()

    assert settings.grpc_port == 8080
    assert settings.rest_port == 8081
    assert settings.server_version == "1.0.0"
    assert settings.gemini_model == "gemini-2.5-flash"


def test_cors_origins_split_and_trimmed() -> None:
    settings = make_settings(cors_allow_origins=" http://a.example , ,http://b.example")

    assert settings.cors_origins == ["http://a.example", "http://b.example"]


def test_env_vars_override_defaults(monkeypatch) -> None:
    monkeypatch.setenv("GEMINI_MODEL", "gemini-2.5-pro")
    monkeypatch.setenv("GRPC_PORT", "9090")

    settings = Settings(_env_file=None)

    assert settings.gemini_model == "gemini-2.5-pro"
    assert settings.grpc_port == 9090


def test_unknown_env_settings_are_ignored() -> None:
    settings = make_settings(environment="production", debug=True)

    assert not hasattr(settings, "environment")
    assert not hasattr(settings, "debug")
