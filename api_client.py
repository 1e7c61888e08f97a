import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import httpx
from loguru import logger
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

import settings
from errors import (
    NETWORK_ERROR_MESSAGE,
    TIMEOUT_MESSAGE,
    ApiError,
    NetworkError,
    RequestTimeoutError,
    ResponseValidationError,
    error_for_status,
    status_message,
)


class ApiClientConfig(BaseModel):
    base_url: str = ""
    timeout: int = Field(default=10000, gt=0)  # ms
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay: int = Field(default=1000, ge=0)  # ms, base of the backoff


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ApiError) and exc.is_retryable


class ApiClient:
    """
    Async HTTP executor with timeout, error classification and retries.

    Retryable failures (network errors, timeouts, HTTP 5xx) are retried up
    to ``retry_attempts`` times, waiting ``retry_delay * 2**attempt`` ms
    before each retry. Everything else is raised straight away as one of
    the ``errors`` classes. A new ``httpx.AsyncClient`` is opened per
    request so nothing is held between calls.
    """

    def __init__(
        self,
        config: Optional[ApiClientConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or ApiClientConfig()
        self._transport = transport
        self._sleep = sleep

    def get_underlying_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout / 1000,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    async def get(self, url: str, **kwargs: Any) -> Any:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> Any:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> Any:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", url, **kwargs)

    async def request(self, method: str, url: str, **kwargs: Any) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.retry_attempts + 1),
            wait=wait_exponential(multiplier=self.config.retry_delay / 1000, exp_base=2),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(self._send, method, url, **kwargs)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"[API] Retrying request (attempt {retry_state.attempt_number}/{self.config.retry_attempts}) "
            f"after {int(delay * 1000)}ms: {exc!r}"
        )

    async def _send(self, method: str, url: str, **kwargs: Any) -> Any:
        started = time.perf_counter()
        try:
            async with self.get_underlying_client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"[API] {method} {url} timed out after {self.config.timeout}ms")
            raise RequestTimeoutError(TIMEOUT_MESSAGE, code=type(e).__name__) from e
        except httpx.RequestError as e:
            logger.warning(f"[API] {method} {url} failed: {e!r}")
            raise NetworkError(NETWORK_ERROR_MESSAGE, code=type(e).__name__) from e

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.debug(f"[API] {response.status_code} {method} {response.request.url} ({duration_ms}ms)")

        status = response.status_code
        if status >= 400:
            error_cls = error_for_status(status)
            raise error_cls(status_message(status), status=status, code=f"HTTP_{status}")

        return self._decode(response)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content: return None
        content_type = response.headers.get("content-type", "")
        if "json" not in content_type: return response.text
        try:
            return response.json()
        except ValueError as e:
            raise ResponseValidationError(
                "Response body is not valid JSON.", status=response.status_code, code="INVALID_JSON"
            ) from e


def create_api_client(config: Optional[ApiClientConfig] = None, **kwargs: Any) -> ApiClient:
    return ApiClient(config or default_client_config(), **kwargs)


def default_client_config() -> ApiClientConfig:
    return ApiClientConfig(
        timeout=settings.HTTP_TIMEOUT_MS,
        retry_attempts=settings.HTTP_RETRY_ATTEMPTS,
        retry_delay=settings.HTTP_RETRY_DELAY_MS,
    )
