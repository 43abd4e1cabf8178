import asyncio
import functools
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlsplit

import pytest
from typer.testing import CliRunner

from sellerdesk.domain.models.auth import OAuthTokens
from sellerdesk.infrastructure.auth.token_stores import EncryptedFileTokenStore
from sellerdesk.infrastructure.cache.redis_cache import RedisCacheProvider
from sellerdesk.main import app, create_dependencies

TOKENS_KEY = "integration-test-key"
TOKEN_PATH = "/v3/public/oauth/token"


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Points every setting at temporary files and the mock platform."""
    env = {
        "SELLERDESK_API_KEY": "test-api-key",
        "SELLERDESK_API_BASE_URL": "https://api.test/v3",
        "SELLERDESK_OAUTH_CLIENT_ID": "client-123",
        "SELLERDESK_OAUTH_TOKEN_URL": "https://api.test/v3/public/oauth/token",
        "SELLERDESK_OAUTH_AUTHORIZATION_URL": "https://auth.test/oauth/connect",
        "SELLERDESK_TOKENS_KEY": TOKENS_KEY,
        "SELLERDESK_TOKENS_FILE": str(tmp_path / "tokens.enc"),
    }
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    return env


@pytest.fixture
def base_args(tmp_path):
    """Global options that keep the CLI away from the user's real config files."""
    env_file = tmp_path / ".env"
    env_file.write_text("")
    return ["--config", str(tmp_path / "absent.yaml"), "--env-file", str(env_file)]


@pytest.fixture
def mock_console_display(mocker) -> MagicMock:
    display = MagicMock()
    mocker.patch("sellerdesk.main.ConsoleDisplay", return_value=display)
    return display


@pytest.fixture(autouse=True)
def wire_platform(mocker, platform):
    """Routes every HTTP client the CLI builds to the mock platform."""
    mocker.patch("sellerdesk.main.setup_logging")
    mocker.patch(
        "sellerdesk.main.create_dependencies",
        functools.partial(create_dependencies, transport=platform.transport),
    )


@pytest.fixture
def token_file(cli_env) -> Path:
    return Path(cli_env["SELLERDESK_TOKENS_FILE"])


def _store(token_file: Path) -> EncryptedFileTokenStore:
    return EncryptedFileTokenStore(token_file, TOKENS_KEY)


def _save_tokens(token_file: Path, owner: str = "default") -> None:
    tokens = OAuthTokens(
        access_token="stored-access",
        refresh_token="stored-refresh",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    asyncio.run(_store(token_file).save(owner, tokens))


def _errors(display: MagicMock) -> str:
    return " ".join(str(c.args[0]) for c in display.display_error.call_args_list)


# --- get ---

def test_get_command_flow(runner: CliRunner, base_args, token_file, platform, mock_console_display):
    _save_tokens(token_file)
    platform.add("GET", "/v3/application/shops/1", platform.json(200, {"shop_id": 1}))

    result = runner.invoke(app, base_args + ["get", "/application/shops/1", "-p", "includes=Images"])

    assert result.exit_code == 0, f"CLI command failed: {result.stdout} {_errors(mock_console_display)}"
    mock_console_display.display_json.assert_called_once_with({"shop_id": 1}, title="GET /application/shops/1")
    request = platform.requests[0]
    assert request.headers["Authorization"] == "Bearer stored-access"
    assert request.headers["x-api-key"] == "test-api-key"
    assert request.url.params["includes"] == "Images"


def test_get_all_pages_with_quota(runner: CliRunner, base_args, token_file, platform, mock_console_display):
    _save_tokens(token_file)
    platform.add(
        "GET", "/v3/application/shops/1/receipts",
        platform.json(200, {"count": 1, "results": [{"receipt_id": 9}]}, headers={
            "X-RateLimit-Limit": "10", "X-RateLimit-Remaining": "8", "X-RateLimit-Reset": "1",
        }),
    )

    result = runner.invoke(app, base_args + ["get", "application/shops/1/receipts", "--all-pages", "--quota"])

    assert result.exit_code == 0
    mock_console_display.display_json.assert_called_once_with(
        [{"receipt_id": 9}], title="GET /application/shops/1/receipts"
    )
    mock_console_display.display_status.assert_called_once()
    assert mock_console_display.display_status.call_args.args[1].remaining == 8


def test_get_without_login_asks_to_log_in(runner: CliRunner, base_args, cli_env, platform, mock_console_display):
    result = runner.invoke(app, base_args + ["get", "/application/shops/1"])

    assert result.exit_code == 1
    assert "sellerdesk login" in _errors(mock_console_display)
    assert platform.requests == []


def test_get_without_auth_needs_no_tokens(runner: CliRunner, base_args, cli_env, platform, mock_console_display):
    platform.add("GET", "/v3/application/openapi-ping", platform.json(200, {"application_id": 5}))

    result = runner.invoke(app, base_args + ["get", "/application/openapi-ping", "--no-auth"])

    assert result.exit_code == 0
    assert "Authorization" not in platform.requests[0].headers


def test_get_api_error_is_reported(runner: CliRunner, base_args, token_file, platform, mock_console_display):
    _save_tokens(token_file)
    platform.add("GET", "/v3/application/shops/404", platform.json(404, {
        "error": "not_found", "error_description": "Shop not found",
    }))

    result = runner.invoke(app, base_args + ["get", "/application/shops/404"])

    assert result.exit_code == 1
    assert "Shop not found" in _errors(mock_console_display)


def test_get_without_api_key(runner: CliRunner, base_args, cli_env, monkeypatch, mock_console_display):
    monkeypatch.delenv("SELLERDESK_API_KEY")
    result = runner.invoke(app, base_args + ["get", "/application/shops/1"])
    assert result.exit_code == 1
    assert "Missing API key" in _errors(mock_console_display)


def test_get_rejects_malformed_param(runner: CliRunner, base_args, cli_env, mock_console_display):
    result = runner.invoke(app, base_args + ["get", "/application/shops/1", "-p", "no-equals-sign"])
    assert result.exit_code == 2


# --- login / logout ---

def _answer_with_callback(display: MagicMock, **extra):
    """Builds a prompt reply from the authorization URL the CLI displayed."""

    def reply(_message):
        shown = display.display_info.call_args.args[0]
        url = shown.splitlines()[-1]
        state = parse_qs(urlsplit(url).query)["state"][0]
        query = "&".join(f"{k}={v}" for k, v in {"code": "auth-code", "state": state, **extra}.items())
        return f"http://localhost:42069/auth/callback?{query}"

    return reply


def test_login_flow(runner: CliRunner, base_args, token_file, platform, mock_console_display, mocker):
    open_browser = mocker.patch("sellerdesk.main.webbrowser.open")
    mock_console_display.prompt.side_effect = _answer_with_callback(mock_console_display)
    platform.add("POST", TOKEN_PATH, platform.json(200, {
        "access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 3600, "token_type": "Bearer",
    }))

    result = runner.invoke(app, base_args + ["login", "--no-browser", "--owner", "shop-7"])

    assert result.exit_code == 0, _errors(mock_console_display)
    open_browser.assert_not_called()
    form = parse_qs(platform.calls("POST", TOKEN_PATH)[0].content.decode())
    assert form["code"] == ["auth-code"]
    assert form["grant_type"] == ["authorization_code"]
    assert form["code_verifier"][0]
    saved = asyncio.run(_store(token_file).get("shop-7"))
    assert saved.access_token == "new-access"
    mock_console_display.display_success.assert_called_once()


def test_login_opens_browser_by_default(runner: CliRunner, base_args, cli_env, platform, mock_console_display, mocker):
    open_browser = mocker.patch("sellerdesk.main.webbrowser.open")
    mock_console_display.prompt.side_effect = _answer_with_callback(mock_console_display)
    platform.add("POST", TOKEN_PATH, platform.json(200, {"access_token": "a", "refresh_token": "r", "expires_in": 60}))

    result = runner.invoke(app, base_args + ["login"])

    assert result.exit_code == 0
    assert open_browser.call_args.args[0].startswith("https://auth.test/oauth/connect?")


def test_login_denied(runner: CliRunner, base_args, token_file, platform, mock_console_display, mocker):
    mocker.patch("sellerdesk.main.webbrowser.open")
    mock_console_display.prompt.return_value = "http://localhost:42069/auth/callback?error=access_denied"

    result = runner.invoke(app, base_args + ["login"])

    assert result.exit_code == 1
    assert "denied" in _errors(mock_console_display)
    assert platform.requests == []
    assert not token_file.exists()


def test_login_requires_tokens_key(runner: CliRunner, base_args, cli_env, monkeypatch, mock_console_display):
    monkeypatch.delenv("SELLERDESK_TOKENS_KEY")
    result = runner.invoke(app, base_args + ["login", "--no-browser"])
    assert result.exit_code == 1
    assert "SELLERDESK_TOKENS_KEY" in _errors(mock_console_display)


def test_logout_removes_tokens(runner: CliRunner, base_args, token_file, mock_console_display):
    _save_tokens(token_file)

    result = runner.invoke(app, base_args + ["logout"])

    assert result.exit_code == 0
    assert asyncio.run(_store(token_file).get("default")) is None


# --- clear-cache ---

def test_clear_cache(runner: CliRunner, base_args, cli_env, mock_console_display):
    result = runner.invoke(app, base_args + ["clear-cache", "--pattern", "/application/shops"])

    assert result.exit_code == 0
    message = mock_console_display.display_success.call_args.args[0]
    assert "/application/shops" in message
    assert "memory" in message


def test_invalid_config_file_exits(runner: CliRunner, tmp_path, cli_env, mock_console_display):
    bad = tmp_path / "bad.yaml"
    bad.write_text("api: [unclosed")

    result = runner.invoke(app, ["--config", str(bad), "clear-cache"])

    assert result.exit_code == 1
    mock_console_display.display_error.assert_called_once()


def test_failed_setup_closes_the_redis_cache(runner: CliRunner, base_args, cli_env, monkeypatch, mocker,
                                             mock_console_display):
    redis_cache = mocker.create_autospec(RedisCacheProvider, instance=True)
    from_url = mocker.patch("sellerdesk.main.RedisCacheProvider.from_url", return_value=redis_cache)
    monkeypatch.setenv("SELLERDESK_CACHE_BACKEND", "redis")
    monkeypatch.setenv("SELLERDESK_REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("SELLERDESK_QUEUE_CONCURRENCY", "0")

    result = runner.invoke(app, base_args + ["clear-cache"])

    assert result.exit_code == 1
    assert "must be positive" in _errors(mock_console_display)
    from_url.assert_called_once()
    redis_cache.close.assert_awaited_once()
    redis_cache.clear.assert_not_called()
