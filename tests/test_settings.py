import pytest
import yaml

from chatbridge_mcp.config.settings import (
    GeminiSettings,
    MCPServerSettings,
    Settings,
    TransportKind,
    load_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ("GEMINI_API_KEY", "GOOGLE_API_KEY", "GEMINI_MODEL", "GEMINI_API_BASE", "LOG_LEVEL", "LOG_FILE"):
        monkeypatch.delenv(name, raising=False)
    # Keep .env files of the developer's checkout out of the way
    monkeypatch.setattr("chatbridge_mcp.utils.secrets.ENV_PATHS", [])
    monkeypatch.chdir(tmp_path)


def write_config(path, data):
    path.write_text(yaml.safe_dump(data))
    return str(path)


def test_defaults_without_config_file(tmp_path):
    settings = load_config(str(tmp_path / "missing.yaml"))

    assert isinstance(settings, Settings)
    assert settings.gemini.model == "gemini-2.5-flash"
    assert settings.gemini.max_remote_calls == 10
    assert settings.chat.provider == "gemini"
    assert settings.mcp.servers == {}
    assert settings.server.port == 8080


def test_servers_from_yaml(tmp_path):
    config_path = write_config(
        tmp_path / "chatbridge_mcp.config.yaml",
        {
            "mcp": {
                "connect_timeout_seconds": 3,
                "servers": {
                    "fetch": {"transport": "stdio", "command": "uvx", "args": ["mcp-server-fetch"]},
                    "remote": {
                        "transport": "streamable-http",
                        "url": "https://example.test/mcp",
                        "auto_connect": True,
                    },
                },
            }
        },
    )

    settings = load_config(config_path)

    assert settings.mcp.connect_timeout_seconds == 3
    assert settings.mcp.servers["fetch"].transport == TransportKind.SUBPROCESS
    assert settings.mcp.servers["fetch"].args == ["mcp-server-fetch"]
    assert settings.mcp.servers["remote"].transport == TransportKind.HTTP_STREAM
    assert settings.mcp.servers["remote"].auto_connect is True


def test_secrets_file_is_merged(tmp_path):
    config_path = write_config(
        tmp_path / "chatbridge_mcp.config.yaml", {"gemini": {"model": "gemini-2.0-flash"}}
    )
    write_config(tmp_path / "chatbridge_mcp.config.secrets.yaml", {"gemini": {"api_key": "from-secrets"}})

    settings = load_config(config_path)

    assert settings.gemini.model == "gemini-2.0-flash"
    assert settings.gemini.api_key == "from-secrets"


def test_environment_overrides_file(tmp_path, monkeypatch):
    config_path = write_config(
        tmp_path / "chatbridge_mcp.config.yaml",
        {"gemini": {"model": "from-file"}, "logging": {"level": "info"}},
    )
    monkeypatch.setenv("GEMINI_MODEL", "from-env")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("CHATBRIDGE_SERVER__PORT", "9999")
    monkeypatch.setenv("CHATBRIDGE_CHAT__TURN_HISTORY_SIZE", "5")

    settings = load_config(config_path)

    assert settings.gemini.model == "from-env"
    assert settings.logging.level == "debug"
    assert settings.server.port == 9999
    assert settings.chat.turn_history_size == 5


def test_gemini_key_falls_back_to_environment(monkeypatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "google-key")
    assert GeminiSettings().api_key == "google-key"

    monkeypatch.setenv("GEMINI_API_KEY", "gemini-key")
    assert GeminiSettings().api_key == "gemini-key"
    assert GeminiSettings(api_key="explicit").api_key == "explicit"


@pytest.mark.parametrize(
    "spelling, expected",
    [
        ("stdio", TransportKind.SUBPROCESS),
        ("subprocess", TransportKind.SUBPROCESS),
        ("streamable-http", TransportKind.HTTP_STREAM),
        ("http-stream", TransportKind.HTTP_STREAM),
    ],
)
def test_transport_spellings(spelling, expected):
    assert MCPServerSettings(transport=spelling).transport == expected
