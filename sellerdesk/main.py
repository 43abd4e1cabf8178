"""Main entry point for the SellerDesk command line.

Sets up the Typer CLI application, performs dependency injection
(Composition Root) and defines the commands. Every command builds its own
dependencies from a Settings instance and closes them when it finishes.
"""

import asyncio
import logging
import webbrowser
from pathlib import Path
from typing import Annotated, Any, Coroutine, Dict, List, Optional

import httpx
import typer

from sellerdesk.core.services.api_client import ApiClient
from sellerdesk.domain.exceptions import ConfigurationError, OAuthFlowError, SellerDeskError, TokenError
from sellerdesk.domain.models.common import OwnerId
from sellerdesk.infrastructure.auth.oauth_client import OAuthClient
from sellerdesk.infrastructure.auth.token_provider import StoredTokenProvider
from sellerdesk.infrastructure.auth.token_stores import EncryptedFileTokenStore
from sellerdesk.infrastructure.cache.memory_cache import MemoryCacheProvider
from sellerdesk.infrastructure.cache.redis_cache import RedisCacheProvider
from sellerdesk.infrastructure.cli.display import ConsoleDisplay
from sellerdesk.infrastructure.config.settings import DEFAULT_CONFIG_FILE, Settings, env_var_name
from sellerdesk.infrastructure.monitoring.logger_setup import setup_logging

logger = logging.getLogger(__name__)


# --- Dependency Injection (Manual) ---

async def create_dependencies(
    settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, Any]:
    """Creates and wires up the dependencies for one command.

    This acts as the Composition Root. Components whose configuration is
    missing are left as None; commands that need them report it. If a later
    component fails to build, the ones already built are closed before the
    error propagates.

    Args:
        settings: Loaded configuration.
        transport: httpx transport for every HTTP client (tests use MockTransport).
    """
    logger.debug("Initializing command dependencies...")
    dependencies: Dict[str, Any] = {"settings": settings, "ui": ConsoleDisplay()}
    try:
        _build_dependencies(dependencies, settings, transport)
    except Exception:
        logger.debug("Dependency setup failed, closing what was built.")
        await close_dependencies(dependencies)
        raise
    logger.debug("Command dependencies initialized.")
    return dependencies


def _build_dependencies(
    dependencies: Dict[str, Any], settings: Settings, transport: Optional[httpx.AsyncBaseTransport]
) -> None:
    # 1. Cache backend
    cache_config = settings.cache_config()
    if settings.cache_backend == "redis":
        if not settings.redis_url:
            raise ConfigurationError(f"Redis cache backend selected but {env_var_name('redis.url')} is not set.")
        dependencies["cache_provider"] = RedisCacheProvider.from_url(
            settings.redis_url,
            key_prefix=settings.redis_key_prefix,
            default_ttl=cache_config.default_ttl,
        )
    else:
        dependencies["cache_provider"] = MemoryCacheProvider(
            default_ttl=cache_config.default_ttl,
            max_entries=cache_config.max_entries,
        )

    # 2. Token persistence and OAuth
    dependencies["token_store"] = None
    if settings.token_key:
        dependencies["token_store"] = EncryptedFileTokenStore(settings.token_file, settings.token_key)
    else:
        logger.debug("Token encryption key not set, token store disabled.")

    dependencies["oauth_http"] = httpx.AsyncClient(timeout=30.0, transport=transport) if transport else None
    try:
        dependencies["oauth_client"] = OAuthClient(settings.oauth_config(), http_client=dependencies["oauth_http"])
    except ConfigurationError as e:
        logger.debug(f"OAuth client disabled: {e}")
        dependencies["oauth_client"] = None

    dependencies["token_provider"] = None
    if dependencies["token_store"] is not None and dependencies["oauth_client"] is not None:
        dependencies["token_provider"] = StoredTokenProvider(
            OwnerId(settings.owner_id),
            dependencies["token_store"],
            dependencies["oauth_client"],
        )

    # 3. API client
    try:
        api_config = settings.api_client_config()
    except ConfigurationError as e:
        logger.debug(f"API client disabled: {e}")
        dependencies["api_client"] = None
    else:
        dependencies["api_client"] = ApiClient(
            api_config,
            dependencies["token_provider"],
            dependencies["cache_provider"],
            transport=transport,
        )


async def close_dependencies(dependencies: Dict[str, Any]) -> None:
    if dependencies.get("api_client") is not None:
        await dependencies["api_client"].aclose()
    if dependencies.get("oauth_client") is not None:
        await dependencies["oauth_client"].aclose()
    if dependencies.get("oauth_http") is not None:
        await dependencies["oauth_http"].aclose()
    if isinstance(dependencies.get("cache_provider"), RedisCacheProvider):
        await dependencies["cache_provider"].close()


def _require(dependencies: Dict[str, Any], name: str, hint: str) -> Any:
    component = dependencies.get(name)
    if component is None:
        raise ConfigurationError(hint)
    return component


# --- Typer App Definition ---
app = typer.Typer(
    name="sellerdesk",
    help="SellerDesk: authenticated, cached and rate-limited access to the Etsy Open API.",
    add_completion=False,
)


# --- Helper for Running Async Commands ---
def run_async(coro: Coroutine[Any, Any, None], ui: Optional[ConsoleDisplay] = None) -> None:
    """Runs an async command and turns library errors into a readable message and exit code 1."""
    display = ui or ConsoleDisplay()
    try:
        asyncio.run(coro)
    except (TokenError, OAuthFlowError) as e:
        logger.debug(f"Authorization problem: {e}", exc_info=True)
        display.display_error(f"{e}\nRun 'sellerdesk login' to authorize again.")
        raise typer.Exit(code=1)
    except SellerDeskError as e:
        logger.debug(f"Command failed: {e}", exc_info=True)
        display.display_error(str(e))
        raise typer.Exit(code=1)


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj["settings"]


def _parse_params(raw: Optional[List[str]]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for item in raw or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got '{item}'.", param_hint="--param")
        params[key] = value
    return params


# --- CLI Commands ---

OwnerOption = Annotated[
    Optional[str],
    typer.Option("--owner", "-o", help="Credential owner id. Uses the configured owner if not set.")
]


@app.command()
def login(
    ctx: typer.Context,
    owner: OwnerOption = None,
    no_browser: Annotated[bool, typer.Option("--no-browser", help="Print the URL instead of opening a browser.")] = False,
):
    """Authorize SellerDesk with the PKCE authorization-code flow."""
    settings = _settings(ctx)
    owner_id = OwnerId(owner or settings.owner_id)

    async def _login() -> None:
        dependencies = await create_dependencies(settings)
        try:
            ui: ConsoleDisplay = dependencies["ui"]
            oauth: OAuthClient = _require(
                dependencies, "oauth_client",
                f"Missing OAuth client id. Set {env_var_name('oauth.client_id')}.",
            )
            store = _require(
                dependencies, "token_store",
                f"Missing token encryption key. Set {env_var_name('tokens.key')}.",
            )
            url = oauth.get_authorization_url()
            ui.display_info(f"Open this URL to authorize SellerDesk:\n{url}")
            if not no_browser:
                webbrowser.open(url)
            redirect = ui.prompt("Paste the URL you were redirected to:")
            callback = oauth.parse_authorization_response(redirect)
            tokens = await oauth.exchange_code_for_tokens(callback["code"])
            await store.save(owner_id, tokens)
            ui.display_success(f"Logged in as owner '{owner_id}'. Tokens saved to {settings.token_file}.")
        finally:
            await close_dependencies(dependencies)

    run_async(_login())


@app.command()
def logout(ctx: typer.Context, owner: OwnerOption = None):
    """Delete the stored tokens of an owner."""
    settings = _settings(ctx)
    owner_id = OwnerId(owner or settings.owner_id)

    async def _logout() -> None:
        dependencies = await create_dependencies(settings)
        try:
            store = _require(
                dependencies, "token_store",
                f"Missing token encryption key. Set {env_var_name('tokens.key')}.",
            )
            await store.delete(owner_id)
            dependencies["ui"].display_success(f"Removed stored tokens for owner '{owner_id}'.")
        finally:
            await close_dependencies(dependencies)

    run_async(_logout())


@app.command()
def get(
    ctx: typer.Context,
    endpoint: Annotated[str, typer.Argument(help="Endpoint path, e.g. /application/shops/123.")],
    param: Annotated[Optional[List[str]], typer.Option("--param", "-p", help="Query parameter as key=value. Repeatable.")] = None,
    no_cache: Annotated[bool, typer.Option("--no-cache", help="Bypass the response cache.")] = False,
    all_pages: Annotated[bool, typer.Option("--all-pages", help="Follow pagination and print every result.")] = False,
    no_auth: Annotated[bool, typer.Option("--no-auth", help="Send only the API key, no bearer token.")] = False,
    quota: Annotated[bool, typer.Option("--quota", help="Show the reported rate-limit quota afterwards.")] = False,
):
    """GET an endpoint through the cache, queue and retry stack and print the JSON."""
    settings = _settings(ctx)
    params = _parse_params(param)
    path = endpoint if endpoint.startswith("/") else f"/{endpoint}"

    async def _get() -> None:
        dependencies = await create_dependencies(settings)
        try:
            client: ApiClient = _require(
                dependencies, "api_client",
                f"Missing API key. Set {env_var_name('api.key')}.",
            )
            ui: ConsoleDisplay = dependencies["ui"]
            options = {"skip_cache": no_cache, "skip_auth": no_auth}
            if all_pages:
                data: Any = await client.get_all_pages(path, params, **options)
            else:
                data = await client.get(path, params, **options)
            ui.display_json(data, title=f"GET {path}")
            if quota:
                ui.display_status(client.queue_stats(), client.rate_limit_info)
        finally:
            await close_dependencies(dependencies)

    run_async(_get())


@app.command(name="clear-cache")
def clear_cache_command(
    ctx: typer.Context,
    pattern: Annotated[Optional[str], typer.Option("--pattern", help="Only clear keys containing this text.")] = None,
):
    """Clear the configured response cache."""
    settings = _settings(ctx)

    async def _clear() -> None:
        dependencies = await create_dependencies(settings)
        try:
            outcome = await dependencies["cache_provider"].clear(pattern)
            if not outcome.ok:
                raise SellerDeskError(f"Cache clear failed: {outcome.error}")
            scope = f"entries matching '{pattern}'" if pattern else "all entries"
            dependencies["ui"].display_success(f"Cleared {scope} from the {settings.cache_backend} cache.")
        finally:
            await close_dependencies(dependencies)

    run_async(_clear())


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Annotated[Path, typer.Option("--config", help="YAML configuration file.")] = DEFAULT_CONFIG_FILE,
    env_file: Annotated[Optional[Path], typer.Option("--env-file", help=".env file (searched upwards from cwd if not set).")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging.")] = False,
):
    """Load settings and configure logging before any command runs."""
    try:
        settings = Settings(config_file=config, env_file=env_file)
    except ConfigurationError as e:
        ConsoleDisplay().display_error(str(e))
        raise typer.Exit(code=1)
    log_level = logging.DEBUG if verbose else settings.log_level
    setup_logging(log_level=log_level, log_format=settings.log_format, log_file=settings.log_file)
    ctx.obj = {"settings": settings}


# --- Main Execution Guard ---

def cli_entry_point():
    """Function to be called by the script entry point in pyproject.toml."""
    app()


if __name__ == "__main__":
    cli_entry_point()
