"""API client façade for the platform's HTTP API.

Composes the request queue, the response cache, the backoff engine, the
rate-limit tracker and a token provider behind one ``request()`` operation
plus convenience verbs and pagination helpers.

Per request:
1. GET with caching enabled: a cache hit returns without touching the
   queue or the network.
2. Mutations invalidate cached entries under the same path first.
3. In a queue slot: obtain the bearer token, build headers, run the call
   under the backoff engine. Every response updates the rate-limit tracker.
4. Successful responses run the post-success hooks (the cache write for
   GETs is one of them).
"""

import asyncio
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx

from sellerdesk.domain.events.api_events import (
    ApiCallFailed,
    ApiCallSucceeded,
    CacheHit,
    CacheInvalidated,
    EventHandler,
    RetryScheduled,
    dispatch_event,
)
from sellerdesk.domain.exceptions import ApiError, RateLimitError, SellerDeskError, TokenError
from sellerdesk.domain.interfaces.cache import CacheOutcome, CacheProvider
from sellerdesk.domain.interfaces.token_provider import TokenProvider
from sellerdesk.domain.models.common import (
    HTTP_METHODS,
    MUTATING_METHODS,
    ApiResponse,
    CacheKey,
    PaginatedResponse,
    QueueStats,
    RateLimitInfo,
    build_cache_key,
)
from sellerdesk.domain.models.config import ApiClientConfig
from sellerdesk.infrastructure.cache.memory_cache import MemoryCacheProvider
from sellerdesk.infrastructure.cache.redis_cache import RedisCacheProvider
from sellerdesk.infrastructure.resilience.backoff import BackoffEngine, default_retry_predicate
from sellerdesk.infrastructure.resilience.rate_limit import RateLimitTracker, parse_retry_after
from sellerdesk.infrastructure.resilience.request_queue import RequestQueue
from sellerdesk.infrastructure.resilience.transport import classify_transport_error

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
MAX_TRACKED_INVALIDATIONS = 1024


@dataclass(frozen=True)
class RequestContext:
    """What a post-success hook knows about the request that succeeded."""
    method: str
    endpoint: str
    params: Dict[str, Any]
    cache_key: CacheKey
    cache_ttl: Optional[int]
    use_cache: bool
    cache_generation: int = 0


PostSuccessHook = Callable[[RequestContext, ApiResponse], Awaitable[None]]


def _clean_params(params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    return {k: v for k, v in (params or {}).items() if v is not None}


class ApiClient:
    """Single entry point for platform API calls."""

    def __init__(
        self,
        config: ApiClientConfig,
        token_provider: Optional[TokenProvider] = None,
        cache_provider: Optional[CacheProvider] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        event_handler: Optional[EventHandler] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        close_cache: bool = False,
    ):
        """Initializes the API client.

        Args:
            config: Client configuration (defaults already applied).
            token_provider: Source of bearer tokens; required unless every
                call passes ``skip_auth=True``.
            cache_provider: Response cache backend. An in-memory backend is
                created when caching is enabled and none is given.
            http_client: Shared httpx client; one is created (and owned) if None.
            event_handler: Receives domain events.
            transport: httpx transport for the owned client (e.g. MockTransport).
            sleep: Awaitable sleep used between retries.
            close_cache: Close the cache backend in ``aclose()``.
        """
        self.config = config
        self._token_provider = token_provider
        self._event_handler = event_handler
        self._sleep = sleep

        # Validates the queue limits before any connection is opened
        self.queue = RequestQueue(config.queue)
        self._rate_limits = RateLimitTracker(on_update=config.on_rate_limit_update)
        self._should_retry = default_retry_predicate(config.retry)

        # Pattern -> generation of its latest invalidation, oldest first
        self._generation = 0
        self._invalidated_at: "OrderedDict[str, int]" = OrderedDict()
        self._forgotten_generation = 0

        if cache_provider is None and config.cache.enabled:
            cache_provider = MemoryCacheProvider(
                default_ttl=config.cache.default_ttl,
                max_entries=config.cache.max_entries,
            )
        self._cache = cache_provider
        self._close_cache = close_cache

        self._owns_http = http_client is None
        if http_client is None:
            client_kwargs: Dict[str, Any] = {"timeout": config.timeout}
            if transport is not None:
                client_kwargs["transport"] = transport
            http_client = httpx.AsyncClient(**client_kwargs)
        self._http = http_client

        self._post_success_hooks: List[PostSuccessHook] = []
        if self._cache is not None and config.cache.enabled:
            self.add_post_success_hook(self._write_cache_hook)

        logger.info(
            f"ApiClient initialized: base_url={config.base_url}, "
            f"cache={'on' if self._cache is not None and config.cache.enabled else 'off'}"
        )

    # --- Public API ---

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        params: Optional[Mapping[str, Any]] = None,
        body: Any = None,
        *,
        skip_auth: bool = False,
        skip_cache: bool = False,
        cache_ttl: Optional[int] = None,
        timeout: Optional[float] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> ApiResponse:
        """Performs one API call.

        Args:
            endpoint: Path relative to the base URL (e.g. '/application/shops/1').
            method: HTTP verb.
            params: Query parameters; None values are dropped.
            body: JSON body for mutations.
            skip_auth: Do not send a bearer token.
            skip_cache: Bypass the cache read and write for this GET.
            cache_ttl: TTL override in seconds for the cache write.
            timeout: Per-call timeout in seconds (client default if None).
            headers: Extra headers, applied last.

        Returns:
            The decoded response; ``from_cache`` tells whether the network was used.

        Raises:
            ApiError: Non-2xx response (RateLimitError for 429) after retries.
            NetworkError: No response received after retries.
            TokenError: No bearer token could be obtained.
        """
        method = method.upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {method}")

        query = _clean_params(params)
        context = RequestContext(
            method=method,
            endpoint=endpoint,
            params=query,
            cache_key=build_cache_key(endpoint, query),
            cache_ttl=cache_ttl,
            use_cache=(
                method == "GET" and self.config.cache.enabled and not skip_cache and self._cache is not None
            ),
            cache_generation=self._generation,
        )

        if context.use_cache:
            cached = await self._read_cache(context)
            if cached is not None:
                return cached

        if method in MUTATING_METHODS:
            # Invalidate before the write so no stale read can slip in between
            await self.invalidate_cache(endpoint)

        return await self.queue.enqueue(
            lambda: self._execute(context, body, skip_auth=skip_auth, timeout=timeout, headers=headers)
        )

    async def get(self, endpoint: str, params: Optional[Mapping[str, Any]] = None, **options: Any) -> Any:
        response = await self.request(endpoint, "GET", params=params, **options)
        return response.data

    async def post(self, endpoint: str, data: Any = None, **options: Any) -> Any:
        response = await self.request(endpoint, "POST", body=data, **options)
        return response.data

    async def put(self, endpoint: str, data: Any = None, **options: Any) -> Any:
        response = await self.request(endpoint, "PUT", body=data, **options)
        return response.data

    async def patch(self, endpoint: str, data: Any = None, **options: Any) -> Any:
        response = await self.request(endpoint, "PATCH", body=data, **options)
        return response.data

    async def delete(self, endpoint: str, **options: Any) -> Any:
        response = await self.request(endpoint, "DELETE", **options)
        return response.data

    async def get_paginated(
        self, endpoint: str, params: Optional[Mapping[str, Any]] = None, **options: Any
    ) -> PaginatedResponse:
        """GETs one page of a ``{count, results, params}`` list endpoint."""
        data = await self.get(endpoint, params, **options)
        try:
            return PaginatedResponse.from_payload(data)
        except ValueError as e:
            raise ApiError("INVALID_RESPONSE", f"Expected a paginated response from {endpoint}.", details=data) from e

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        **options: Any,
    ) -> List[Any]:
        """Collects every page of a list endpoint.

        Requests with increasing ``offset`` until a page comes back shorter
        than the page size or the collected results reach ``count``.
        """
        base_params = dict(params or {})
        limit = int(base_params.pop("limit", None) or page_size)
        base_params.pop("offset", None)
        if limit <= 0:
            raise ValueError("page_size must be positive.")

        results: List[Any] = []
        offset = 0
        while True:
            page = await self.get_paginated(endpoint, {**base_params, "limit": limit, "offset": offset}, **options)
            results.extend(page.results)
            if len(page.results) < limit or len(results) >= page.count:
                break
            offset += limit
        logger.debug(f"Collected {len(results)} results from {endpoint} in {offset // limit + 1} page(s).")
        return results

    async def invalidate_cache(self, endpoint: str) -> bool:
        """Clears every cached entry whose key contains ``endpoint``. Returns False on backend failure."""
        if self._cache is None:
            return True
        # Responses already in flight for this path must not be written back
        self._mark_invalidated(endpoint)
        outcome = await self._guarded_cache_call("clear", self._cache.clear, endpoint)
        if not outcome.ok:
            logger.warning(f"Cache invalidation for {endpoint} failed: {outcome.error}")
        dispatch_event(CacheInvalidated(pattern=endpoint, succeeded=outcome.ok), self._event_handler)
        return outcome.ok

    async def clear_cache(self) -> bool:
        if self._cache is None:
            return True
        self._mark_invalidated("")
        outcome = await self._guarded_cache_call("clear", self._cache.clear)
        if not outcome.ok:
            logger.warning(f"Cache clear failed: {outcome.error}")
        return outcome.ok

    def queue_stats(self) -> QueueStats:
        return self.queue.stats()

    @property
    def rate_limit_info(self) -> Optional[RateLimitInfo]:
        """Latest quota reported by the platform, or None before the first response."""
        return self._rate_limits.info

    @property
    def cache_provider(self) -> Optional[CacheProvider]:
        return self._cache

    def add_post_success_hook(self, hook: PostSuccessHook) -> None:
        """Registers a coroutine run after every successful network response."""
        self._post_success_hooks.append(hook)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
        if self._close_cache and isinstance(self._cache, RedisCacheProvider):
            await self._cache.close()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # --- Cache paths ---

    async def _guarded_cache_call(
        self, operation: str, call: Callable[..., Awaitable[CacheOutcome]], *args: Any
    ) -> CacheOutcome:
        """Runs one cache backend call, turning anything it raises into a failed outcome."""
        try:
            return await call(*args)
        except Exception as e:
            logger.warning(f"Cache backend raised during {operation}: {e}", exc_info=True)
            return CacheOutcome.failed(f"Cache {operation} raised {type(e).__name__}: {e}")

    def _mark_invalidated(self, pattern: str) -> None:
        self._generation += 1
        self._invalidated_at.pop(pattern, None)
        self._invalidated_at[pattern] = self._generation
        while len(self._invalidated_at) > MAX_TRACKED_INVALIDATIONS:
            _, generation = self._invalidated_at.popitem(last=False)
            self._forgotten_generation = generation

    def _invalidated_since(self, key: CacheKey, generation: int) -> bool:
        """True if an invalidation matching ``key`` happened after ``generation``."""
        if generation < self._forgotten_generation:
            return True
        for pattern, invalidated in reversed(self._invalidated_at.items()):
            if invalidated <= generation:
                return False
            if pattern in key:
                return True
        return False

    async def _read_cache(self, context: RequestContext) -> Optional[ApiResponse]:
        outcome = await self._guarded_cache_call("get", self._cache.get, context.cache_key)
        if not outcome.ok:
            logger.warning(f"Cache read failed for {context.cache_key}, using network: {outcome.error}")
            return None
        if not outcome.hit:
            return None
        try:
            data = json.loads(outcome.value)
        except (TypeError, ValueError):
            logger.warning(f"Discarding corrupt cache entry {context.cache_key}")
            await self._guarded_cache_call("delete", self._cache.delete, context.cache_key)
            return None
        logger.debug(f"Cache HIT for {context.cache_key}")
        dispatch_event(CacheHit(endpoint=context.endpoint, key=context.cache_key), self._event_handler)
        return ApiResponse(data=data, from_cache=True)

    async def _write_cache_hook(self, context: RequestContext, response: ApiResponse) -> None:
        if not context.use_cache:
            return
        ttl = context.cache_ttl if context.cache_ttl is not None else self.config.cache.resolve_ttl(context.endpoint)
        try:
            serialized = json.dumps(response.data)
        except (TypeError, ValueError) as e:
            logger.warning(f"Response for {context.cache_key} is not cacheable: {e}")
            return
        if self._invalidated_since(context.cache_key, context.cache_generation):
            logger.debug(f"Not caching {context.cache_key}: invalidated while the request was in flight")
            return
        outcome = await self._guarded_cache_call("set", self._cache.set, context.cache_key, serialized, ttl)
        if not outcome.ok:
            logger.warning(f"Cache write skipped for {context.cache_key}: {outcome.error}")
        elif self._invalidated_since(context.cache_key, context.cache_generation):
            # An invalidation raced the write itself
            await self._guarded_cache_call("delete", self._cache.delete, context.cache_key)

    # --- Network path (runs inside a queue slot) ---

    async def _execute(
        self,
        context: RequestContext,
        body: Any,
        *,
        skip_auth: bool,
        timeout: Optional[float],
        headers: Optional[Mapping[str, str]],
    ) -> ApiResponse:
        token = None if skip_auth else await self._acquire_token()
        request_headers = self._build_headers(token, headers)
        url = f"{self.config.base_url.rstrip('/')}{context.endpoint}"

        attempts = 0

        async def attempt() -> ApiResponse:
            nonlocal attempts
            attempts += 1
            return await self._send(context, url, request_headers, body, timeout)

        def on_retry(error: Exception, attempt_number: int, delay: float) -> None:
            dispatch_event(
                RetryScheduled(
                    method=context.method,
                    endpoint=context.endpoint,
                    attempt_number=attempt_number,
                    delay_seconds=delay,
                    error_type=type(error).__name__,
                ),
                self._event_handler,
            )

        backoff = BackoffEngine(self.config.retry, sleep=self._sleep, on_retry=on_retry)
        started = time.monotonic()
        try:
            response = await backoff.execute(attempt, self._should_retry)
        except SellerDeskError as e:
            dispatch_event(
                ApiCallFailed(
                    method=context.method,
                    endpoint=context.endpoint,
                    error_type=type(e).__name__,
                    error_message=str(e),
                ),
                self._event_handler,
            )
            raise

        dispatch_event(
            ApiCallSucceeded(
                method=context.method,
                endpoint=context.endpoint,
                status_code=response.status_code,
                latency_ms=(time.monotonic() - started) * 1000,
                attempts=attempts,
            ),
            self._event_handler,
        )
        await self._run_post_success_hooks(context, response)
        return response

    async def _acquire_token(self) -> str:
        if self._token_provider is None:
            raise TokenError("No token provider configured for an authenticated request.")
        try:
            return await self._token_provider.get_access_token()
        except TokenError:
            raise
        except Exception as e:
            raise TokenError(f"Failed to get access token: {e}") from e

    def _build_headers(self, token: Optional[str], overrides: Optional[Mapping[str, str]]) -> Dict[str, str]:
        request_headers = {
            "x-api-key": self.config.api_key,
            "User-Agent": self.config.user_agent,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if token:
            request_headers["Authorization"] = f"Bearer {token}"
        if overrides:
            request_headers.update(overrides)
        return request_headers

    async def _send(
        self,
        context: RequestContext,
        url: str,
        request_headers: Mapping[str, str],
        body: Any,
        timeout: Optional[float],
    ) -> ApiResponse:
        """One network attempt. Raises classified errors for the backoff predicate."""
        request_kwargs: Dict[str, Any] = {"params": context.params or None, "headers": dict(request_headers)}
        if body is not None:
            request_kwargs["json"] = body
        if timeout is not None:
            request_kwargs["timeout"] = timeout

        try:
            response = await self._http.request(context.method, url, **request_kwargs)
        except httpx.TransportError as e:
            raise classify_transport_error(e) from e

        self._rate_limits.update(response.headers)

        if response.status_code == 429:
            error = RateLimitError(retry_after=parse_retry_after(response.headers), details=_json_or_none(response))
            self._notify_error(error)
            raise error
        if not response.is_success:
            error = _to_api_error(response)
            self._notify_error(error)
            raise error

        return ApiResponse(
            data=_decode_body(response),
            headers=dict(response.headers),
            status_code=response.status_code,
        )

    def _notify_error(self, error: ApiError) -> None:
        logger.debug(f"API error {error.http_status}: {error}")
        if self.config.on_error is None:
            return
        try:
            self.config.on_error(error)
        except Exception as e:
            logger.error(f"on_error observer failed: {e}", exc_info=True)

    async def _run_post_success_hooks(self, context: RequestContext, response: ApiResponse) -> None:
        for hook in self._post_success_hooks:
            try:
                await hook(context, response)
            except Exception as e:
                logger.error(f"Post-success hook {getattr(hook, '__name__', hook)} failed: {e}", exc_info=True)


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _to_api_error(response: httpx.Response) -> ApiError:
    """Builds an ApiError from a non-2xx response; non-JSON bodies fall back to the reason phrase."""
    payload = _json_or_none(response)
    reason = response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        code = payload.get("error") or "API_ERROR"
        description = payload.get("error_description") or reason
    else:
        code, description = "API_ERROR", reason
    return ApiError(str(code), str(description), http_status=response.status_code, details=payload)


def create_api_client(
    config: ApiClientConfig,
    token_provider: Optional[TokenProvider] = None,
    *,
    cache_provider: Optional[CacheProvider] = None,
    redis_url: Optional[str] = None,
    redis_key_prefix: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    event_handler: Optional[EventHandler] = None,
) -> ApiClient:
    """Builds an ApiClient that owns its HTTP client (and Redis connection, if any).

    Args:
        config: Client configuration.
        token_provider: Source of bearer tokens.
        cache_provider: Explicit cache backend; wins over ``redis_url``.
        redis_url: Use a Redis cache backend at this URL.
        redis_key_prefix: Key namespace for the Redis backend.
        transport: httpx transport (tests use httpx.MockTransport).
        event_handler: Receives domain events.
    """
    close_cache = False
    if cache_provider is None and redis_url and config.cache.enabled:
        redis_kwargs: Dict[str, Any] = {"default_ttl": config.cache.default_ttl}
        if redis_key_prefix:
            redis_kwargs["key_prefix"] = redis_key_prefix
        cache_provider = RedisCacheProvider.from_url(redis_url, **redis_kwargs)
        close_cache = True
    return ApiClient(
        config,
        token_provider,
        cache_provider,
        event_handler=event_handler,
        transport=transport,
        close_cache=close_cache,
    )
