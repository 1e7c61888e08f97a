"""
Unified search across Google Books and Open Library.

The service picks a strategy from its current configuration on every
call: one provider (optionally falling back to the other on failure) or
both providers concurrently with their results merged and deduplicated.
The whole strategy runs under a call-level timeout that cancels any
provider request still in flight.
"""

import asyncio
import math
from typing import Dict, List, Optional, Protocol, Tuple

from loguru import logger

import settings
from errors import AllProvidersFailedError, BookServiceError, ConfigurationError, RequestTimeoutError
from google_books import GoogleBooksService
from open_library import OpenLibraryService
from schemas import (
    BOOK_SOURCES,
    COMBINED,
    DEFAULT_ITEMS_PER_PAGE,
    GOOGLE_BOOKS,
    OPEN_LIBRARY,
    AggregateRateLimit,
    Book,
    BookSource,
    RateLimitInfo,
    SearchParams,
    SearchResults,
    SearchStrategy,
    UnifiedSearchConfig,
)

MAX_PROVIDER_PAGE = 100

STRATEGY_DESCRIPTIONS = {
    "google-books-only": "Search using Google Books API only",
    "open-library-only": "Search using Open Library API only",
    "merged-results": "Merge results from both Google Books and Open Library",
}


class BookProvider(Protocol):
    async def search_books(self, params: SearchParams) -> SearchResults: ...

    async def get_book_details(self, original_id: str) -> Optional[Book]: ...

    def is_configured(self) -> bool: ...

    def get_rate_limit(self) -> RateLimitInfo: ...


def other_source(source: BookSource) -> BookSource:
    return OPEN_LIBRARY if source == GOOGLE_BOOKS else GOOGLE_BOOKS


def dedup_key(book: Book) -> str:
    title = book.title.strip().lower()
    author = book.authors[0].strip().lower() if book.authors else ""
    return f"{title}|{author}"


def deduplicate_books(books: List[Book]) -> List[Book]:
    """Drop later books whose title and first author match an earlier one."""
    seen = set()
    unique: List[Book] = []
    for book in books:
        key = dedup_key(book)
        if key in seen: continue
        seen.add(key)
        unique.append(book)
    return unique


def limit_results(result: SearchResults, max_results: int) -> SearchResults:
    if len(result.books) <= max_results:
        return result
    return result.model_copy(update={"books": result.books[:max_results], "has_more": True})


def parse_book_id(book_id: str) -> Tuple[Optional[BookSource], str]:
    for source in BOOK_SOURCES:
        prefix = f"{source}-"
        if book_id.startswith(prefix):
            return source, book_id[len(prefix):]
    return None, book_id


def _error_message(error: BaseException) -> str:
    if isinstance(error, BookServiceError): return error.message
    return f"{type(error).__name__}: {error}"


class UnifiedSearchService:
    def __init__(
        self,
        config: Optional[UnifiedSearchConfig] = None,
        google_books: Optional[BookProvider] = None,
        open_library: Optional[BookProvider] = None,
    ):
        self._config = config or UnifiedSearchConfig()
        self.google_books = google_books or GoogleBooksService(api_key=settings.GOOGLE_API_KEY)
        self.open_library = open_library or OpenLibraryService()

    def _provider(self, source: BookSource) -> BookProvider:
        return self.google_books if source == GOOGLE_BOOKS else self.open_library

    # --- Configuration ---

    def get_config(self) -> UnifiedSearchConfig:
        return self._config

    def update_config(self, **changes) -> UnifiedSearchConfig:
        # Validated copy, then a single reference swap; in-flight calls keep their snapshot.
        merged = {**self._config.model_dump(), **changes}
        self._config = UnifiedSearchConfig.model_validate(merged)
        logger.info(f"Search config updated: {self._config.model_dump()}")
        return self._config

    # --- Search ---

    async def search_books(self, params: SearchParams) -> SearchResults:
        config = self._config
        strategy = self._select_strategy(config)
        logger.info(f"Searching '{params.query}' with strategy {strategy}")
        try:
            return await asyncio.wait_for(self._execute(strategy, params, config), timeout=config.timeout / 1000)
        except RequestTimeoutError:
            raise
        except asyncio.TimeoutError as e:
            logger.warning(f"Search '{params.query}' timed out after {config.timeout}ms ({strategy})")
            raise RequestTimeoutError("Search request timed out", code="SEARCH_TIMEOUT") from e

    def _select_strategy(self, config: UnifiedSearchConfig) -> str:
        google_ok = self.google_books.is_configured()
        open_library_ok = self.open_library.is_configured()

        if config.enable_merging and google_ok and open_library_ok:
            return "merged-results"

        primary = config.primary_service
        if self._provider(primary).is_configured():
            return f"{primary}-only"
        if self._provider(other_source(primary)).is_configured():
            return f"{other_source(primary)}-only"
        raise ConfigurationError("No book search services are configured or available")

    async def _execute(self, strategy: str, params: SearchParams, config: UnifiedSearchConfig) -> SearchResults:
        if strategy == "merged-results":
            return await self._search_merged(params, config)
        source: BookSource = GOOGLE_BOOKS if strategy == "google-books-only" else OPEN_LIBRARY
        return await self._search_single(source, params, config)

    async def _search_single(
        self, source: BookSource, params: SearchParams, config: UnifiedSearchConfig
    ) -> SearchResults:
        try:
            result = await self._provider(source).search_books(params)
        except BookServiceError as e:
            fallback = other_source(source)
            if not config.enable_fallback or not self._provider(fallback).is_configured():
                raise
            logger.warning(f"{source} search failed ({e.message}); falling back to {fallback}")
            result = await self._provider(fallback).search_books(params)
        return limit_results(result, config.max_results)

    async def _search_merged(self, params: SearchParams, config: UnifiedSearchConfig) -> SearchResults:
        order = (config.primary_service, other_source(config.primary_service))
        # Each provider fills half the page.
        half_page = min(math.ceil(config.max_results / 2), MAX_PROVIDER_PAGE)
        provider_params = params.model_copy(update={"max_results": half_page})
        outcomes = await asyncio.gather(
            *(self._provider(source).search_books(provider_params) for source in order),
            return_exceptions=True,
        )

        results: Dict[BookSource, SearchResults] = {}
        errors: Dict[BookSource, BaseException] = {}
        for source, outcome in zip(order, outcomes):
            if isinstance(outcome, SearchResults):
                results[source] = outcome
            elif isinstance(outcome, BookServiceError):
                logger.warning(f"{source} failed during merged search: {outcome.message}")
                errors[source] = outcome
            elif isinstance(outcome, Exception):
                logger.opt(exception=outcome).error(f"{source} raised unexpectedly during merged search")
                errors[source] = outcome
            else:
                raise outcome

        if not results:
            primary_error = errors[order[0]]
            raise AllProvidersFailedError(
                f"All book search providers failed: {_error_message(primary_error)}"
            ) from primary_error

        books: List[Book] = []
        for source in order:
            if source in results:
                books.extend(results[source].books)
        books = deduplicate_books(books)

        has_more = any(r.has_more for r in results.values())
        if len(books) > config.max_results:
            books = books[: config.max_results]
            has_more = True

        return SearchResults(
            books=books,
            total_items=max(r.total_items for r in results.values()),
            start_index=params.start_index,
            items_per_page=params.max_results or DEFAULT_ITEMS_PER_PAGE,
            has_more=has_more,
            query=params.query,
            source=COMBINED,
        )

    # --- Details ---

    async def get_book_details(self, book_id: str, source: Optional[BookSource] = None) -> Optional[Book]:
        if source is not None:
            return await self._try_details(source, book_id)

        parsed_source, original_id = parse_book_id(book_id)
        first = parsed_source or self._config.primary_service

        book = await self._try_details(first, original_id)
        if book is not None:
            return book

        fallback = other_source(first)
        logger.info(f"Book {book_id} not resolved by {first}; trying {fallback} with '{original_id}'")
        return await self._try_details(fallback, original_id)

    async def _try_details(self, source: BookSource, original_id: str) -> Optional[Book]:
        provider = self._provider(source)
        if not provider.is_configured():
            return None
        try:
            return await provider.get_book_details(original_id)
        except BookServiceError as e:
            logger.warning(f"{source} detail lookup for '{original_id}' failed: {e.message}")
            return None

    # --- Introspection ---

    def is_configured(self) -> bool:
        return self.google_books.is_configured() or self.open_library.is_configured()

    def get_rate_limit(self) -> AggregateRateLimit:
        google = self.google_books.get_rate_limit()
        open_library = self.open_library.get_rate_limit()
        primary = google if self._config.primary_service == GOOGLE_BOOKS else open_library
        return AggregateRateLimit(
            google_books=google,
            open_library=open_library,
            has_key=primary.has_key,
            unlimited=primary.unlimited,
        )

    def get_available_strategies(self) -> List[SearchStrategy]:
        names = []
        if self.google_books.is_configured(): names.append("google-books-only")
        if self.open_library.is_configured(): names.append("open-library-only")
        if self.google_books.is_configured() and self.open_library.is_configured(): names.append("merged-results")
        return [SearchStrategy(name=n, description=STRATEGY_DESCRIPTIONS[n]) for n in names]


def default_search_config() -> UnifiedSearchConfig:
    return UnifiedSearchConfig(
        primary_service=settings.SEARCH_PRIMARY_SERVICE,
        enable_fallback=settings.SEARCH_ENABLE_FALLBACK,
        enable_merging=settings.SEARCH_ENABLE_MERGING,
        max_results=settings.SEARCH_MAX_RESULTS,
        timeout=settings.SEARCH_TIMEOUT_MS,
    )
