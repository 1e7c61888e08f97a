# Bookfinder aggregation API - Google Books + Open Library behind one search contract
import hashlib
import json
from typing import Any, Callable, Awaitable, List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from loguru import logger
from pydantic import BaseModel, ConfigDict, ValidationError
from redis.asyncio import Redis
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

import settings
from errors import BookServiceError, ConfigurationError, RateLimitError, RequestTimeoutError
from schemas import (
    AggregateRateLimit,
    Book,
    BookSource,
    SearchParams,
    SearchResults,
    SearchStrategy,
    UnifiedSearchConfig,
)
from search_service import UnifiedSearchService, default_search_config

# --------------------------------------------------------------------
# 1. Configuration & Setup
# --------------------------------------------------------------------

settings.configure_logging()

limiter = Limiter(key_func=get_remote_address, storage_uri=settings.RATE_LIMIT_STORAGE_URI, default_limits=["100/minute"])

app = FastAPI(
    title="Bookfinder Aggregation API",
    description="Unified book search over Google Books and Open Library with fallback, merging and deduplication.",
    version="1.0.0",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

try:
    cache = Redis.from_url(settings.REDIS_URL, decode_responses=True, encoding="utf-8")
    logger.info("Redis cache connection established.")
except Exception as e:
    logger.error(f"Could not initialize Redis. Caching will be disabled. Error: {e}")
    cache = None

search_service = UnifiedSearchService(default_search_config())


def get_search_service() -> UnifiedSearchService:
    return search_service


def get_cache() -> Optional[Redis]:
    return cache


# --------------------------------------------------------------------
# 2. Pydantic Models
# --------------------------------------------------------------------

class ConfigUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    primary_service: Optional[BookSource] = None
    enable_fallback: Optional[bool] = None
    enable_merging: Optional[bool] = None
    max_results: Optional[int] = None
    timeout: Optional[int] = None


class ServiceHealth(BaseModel):
    name: str
    status: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    services: List[ServiceHealth]
    rate_limit: AggregateRateLimit


class CacheStats(BaseModel):
    status: str
    key_count: int
    used_memory: str
    redis_url: str


# --------------------------------------------------------------------
# 3. Helpers
# --------------------------------------------------------------------

def _cache_key(namespace: str, payload: dict) -> str:
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()
    return f"{namespace}:{digest}"


async def cached_call(
    redis: Optional[Redis],
    key: str,
    producer: Callable[[], Awaitable[Any]],
    model: Any,
    timeout_seconds: int = settings.CACHE_TTL_SECONDS,
) -> Any:
    """Read-through cache around an aggregation call. Cache faults are never fatal."""
    if redis:
        try:
            cached_data = await redis.get(key)
            if cached_data:
                return model.model_validate_json(cached_data)
        except Exception as e:
            logger.warning(f"Redis GET error: {e}")

    result = await producer()

    if redis and result is not None:
        try:
            await redis.setex(key, timeout_seconds, result.model_dump_json())
        except Exception as e:
            logger.warning(f"Redis SET error: {e}")

    return result


def _http_error(error: BookServiceError) -> HTTPException:
    if isinstance(error, RequestTimeoutError): code = status.HTTP_504_GATEWAY_TIMEOUT
    elif isinstance(error, RateLimitError): code = status.HTTP_429_TOO_MANY_REQUESTS
    elif isinstance(error, ConfigurationError): code = status.HTTP_503_SERVICE_UNAVAILABLE
    else: code = status.HTTP_502_BAD_GATEWAY
    return HTTPException(status_code=code, detail=error.message)


async def get_admin_key(x_admin_key: str = Header(None)):
    if not settings.ADMIN_KEY: raise HTTPException(status_code=500, detail="Admin not configured.")
    if x_admin_key != settings.ADMIN_KEY: raise HTTPException(status_code=401, detail="Invalid key.")
    return True


# --------------------------------------------------------------------
# 4. API Endpoints
# --------------------------------------------------------------------

@app.get("/")
async def read_root(request: Request): return {"message": "Bookfinder Aggregation API v1.0.0 is running!"}


@app.get("/health", response_model=HealthResponse, tags=["Health & Stats"])
async def get_health(
    response: Response,
    service: UnifiedSearchService = Depends(get_search_service),
    redis: Optional[Redis] = Depends(get_cache),
):
    services = [
        ServiceHealth(name="google_books", status="ok" if service.google_books.is_configured() else "error"),
        ServiceHealth(name="open_library", status="ok" if service.open_library.is_configured() else "error"),
    ]
    if not redis:
        services.append(ServiceHealth(name="redis", status="disabled", detail="Redis client not initialized."))
    else:
        try:
            await redis.ping()
            services.append(ServiceHealth(name="redis", status="ok"))
        except Exception as e:
            services.append(ServiceHealth(name="redis", status="error", detail=str(e)))

    overall = "ok" if service.is_configured() else "error"
    if overall == "error":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse(status=overall, services=services, rate_limit=service.get_rate_limit())


@app.get("/cache/stats", response_model=CacheStats, tags=["Health & Stats"])
@limiter.limit("10/minute")
async def get_cache_stats(request: Request, admin: bool = Depends(get_admin_key), redis: Optional[Redis] = Depends(get_cache)):
    if not redis: return CacheStats(status="disabled", key_count=0, used_memory="0B", redis_url=settings.REDIS_URL)
    try:
        key_count = await redis.dbsize()
        memory_info = await redis.info("memory")
        return CacheStats(status="ok", key_count=key_count, used_memory=memory_info.get("used_memory_human", "N/A"), redis_url=settings.REDIS_URL)
    except Exception as e:
        return CacheStats(status="error", key_count=0, used_memory="0B", redis_url=f"Error: {str(e)}")


@app.get("/search", response_model=SearchResults, tags=["Books"])
@limiter.limit("60/minute")
async def search_books(
    request: Request,
    q: str,
    author: Optional[str] = None,
    search_in: Literal["all", "title", "author"] = "all",
    published_after: Optional[int] = None,
    published_before: Optional[int] = None,
    start_index: int = Query(0, ge=0),
    max_results: Optional[int] = Query(None, gt=0, le=100),
    language: Optional[str] = None,
    service: UnifiedSearchService = Depends(get_search_service),
    redis: Optional[Redis] = Depends(get_cache),
):
    try:
        params = SearchParams(
            query=q,
            author_query=author,
            search_in=search_in,
            published_after=published_after,
            published_before=published_before,
            start_index=start_index,
            max_results=max_results,
            language=language,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid search parameters: {e.errors()[0]['msg']}")

    key = _cache_key("search", {"params": params.model_dump(), "config": service.get_config().model_dump()})
    try:
        return await cached_call(redis, key, lambda: service.search_books(params), SearchResults)
    except BookServiceError as e:
        logger.error(f"Search failed for '{params.query}': {e.message}")
        raise _http_error(e)


@app.get("/book/{book_id}", response_model=Book, tags=["Books"])
@limiter.limit("100/minute")
async def get_book(
    request: Request,
    book_id: str,
    source: Optional[BookSource] = None,
    service: UnifiedSearchService = Depends(get_search_service),
    redis: Optional[Redis] = Depends(get_cache),
):
    key = _cache_key("book", {"id": book_id, "source": source})
    book = await cached_call(redis, key, lambda: service.get_book_details(book_id, source), Book)
    if book is None:
        raise HTTPException(status_code=404, detail="Book not found.")
    return book


@app.get("/search/config", response_model=UnifiedSearchConfig, tags=["Configuration"])
async def read_search_config(service: UnifiedSearchService = Depends(get_search_service)):
    return service.get_config()


@app.patch("/search/config", response_model=UnifiedSearchConfig, tags=["Configuration"])
@limiter.limit("10/minute")
async def patch_search_config(
    request: Request,
    update: ConfigUpdate,
    admin: bool = Depends(get_admin_key),
    service: UnifiedSearchService = Depends(get_search_service),
):
    try:
        return service.update_config(**update.model_dump(exclude_none=True))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid configuration: {e.errors()[0]['msg']}")


@app.get("/search/strategies", response_model=List[SearchStrategy], tags=["Configuration"])
async def list_strategies(service: UnifiedSearchService = Depends(get_search_service)):
    return service.get_available_strategies()
