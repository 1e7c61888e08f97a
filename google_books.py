"""
Google Books adapter.

Translates ``SearchParams`` into Google Books ``/volumes`` queries and
normalizes volumes into ``Book`` records. The top-level response must
validate; individual volumes that do not are dropped with a warning.

API documentation: https://developers.google.com/books/docs/v1/using
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import ValidationError

import settings
from api_client import ApiClient, create_api_client
from errors import ApiError, NotFoundError, ResponseValidationError, for_provider
from helpers import clean_html_text, clean_image_url, clean_link
from schemas import (
    DEFAULT_ITEMS_PER_PAGE,
    GOOGLE_BOOKS,
    MAX_CATEGORIES,
    Book,
    GoogleBooksResponse,
    GoogleBooksVolume,
    RateLimitInfo,
    SearchParams,
    SearchResults,
    make_book_id,
)

PROVIDER_NAME = "Google Books"
MAX_PAGE_SIZE = 40

DEFAULT_REQUEST_PARAMS = {
    "printType": "books",
    "projection": "full",
    "orderBy": "relevance",
}


class GoogleBooksService:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = settings.GOOGLE_BOOKS_API_URL,
        client: Optional[ApiClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = client or create_api_client()

    # --- Public contract ---

    async def search_books(self, params: SearchParams) -> SearchResults:
        query = self.build_search_query(params)
        request_params = {
            "q": query,
            "startIndex": params.start_index,
            "maxResults": min(params.max_results or DEFAULT_ITEMS_PER_PAGE, MAX_PAGE_SIZE),
            **DEFAULT_REQUEST_PARAMS,
            "langRestrict": params.language,
            "key": self.api_key,
        }
        try:
            raw = await self.client.get(f"{self.base_url}/volumes", params=_drop_none(request_params))
        except ApiError as e:
            raise for_provider(e, PROVIDER_NAME, params.query) from e

        try:
            response = GoogleBooksResponse.model_validate(raw)
        except ValidationError as e:
            logger.error(f"Invalid Google Books API response for '{params.query}': {e}")
            raise ResponseValidationError(
                "Received invalid response from Google Books API. Please try again.",
                code="INVALID_RESPONSE",
                provider=PROVIDER_NAME,
            ) from e

        return self.transform_to_search_results(response, params)

    async def get_book_details(self, volume_id: str) -> Optional[Book]:
        request_params = {"projection": "full", "key": self.api_key}
        try:
            raw = await self.client.get(f"{self.base_url}/volumes/{volume_id}", params=_drop_none(request_params))
        except NotFoundError:
            logger.info(f"Google Books: volume {volume_id} not found (404).")
            return None
        except ApiError as e:
            raise for_provider(e, PROVIDER_NAME, volume_id) from e

        try:
            volume = GoogleBooksVolume.model_validate(raw)
            return volume_to_book(volume)
        except ValidationError as e:
            logger.warning(f"Google Books: volume {volume_id} failed validation: {e}")
            return None

    def is_configured(self) -> bool:
        # Works without a key, just with a smaller quota.
        return True

    def get_rate_limit(self) -> RateLimitInfo:
        return RateLimitInfo(has_key=bool(self.api_key), unlimited=False)

    # --- Query building ---

    def build_search_query(self, params: SearchParams) -> str:
        query = params.query.strip()

        if params.author_query:
            return f"intitle:{query} inauthor:{params.author_query.strip()}"

        if params.search_in == "title":
            query = f"intitle:{query}"
        elif params.search_in == "author":
            query = f"inauthor:{query}"

        # No dedicated date filter upstream; best effort via the query text.
        if params.published_after or params.published_before:
            after_year = params.published_after or 0
            before_year = params.published_before or datetime.now().year
            query += f" published:{after_year}-{before_year}"

        return query

    # --- Transformation ---

    def transform_to_search_results(self, response: GoogleBooksResponse, params: SearchParams) -> SearchResults:
        books: List[Book] = []
        for item in response.items:
            try:
                volume = GoogleBooksVolume.model_validate(item)
                books.append(volume_to_book(volume))
            except ValidationError as e:
                logger.warning(f"Skipping invalid Google Books volume {_item_label(item)}: {e.error_count()} error(s)")

        return SearchResults(
            books=books,
            total_items=response.totalItems,
            start_index=params.start_index,
            items_per_page=params.max_results or DEFAULT_ITEMS_PER_PAGE,
            has_more=params.start_index + len(books) < response.totalItems,
            query=params.query,
            source=GOOGLE_BOOKS,
        )


def volume_to_book(volume: GoogleBooksVolume) -> Book:
    info = volume.volumeInfo

    isbn_10, isbn_13 = None, None
    for identifier in info.industryIdentifiers or []:
        if identifier.type == "ISBN_10" and not isbn_10: isbn_10 = identifier.identifier
        elif identifier.type == "ISBN_13" and not isbn_13: isbn_13 = identifier.identifier

    links = info.imageLinks
    small_thumbnail = thumbnail = medium = large = None
    if links:
        small_thumbnail = clean_image_url(links.smallThumbnail)
        thumbnail = clean_image_url(links.thumbnail)
        medium = clean_image_url(links.small) or clean_image_url(links.medium)
        large = clean_image_url(links.large) or clean_image_url(links.extraLarge)

    categories = info.categories[:MAX_CATEGORIES] if info.categories else None

    return Book(
        id=make_book_id(GOOGLE_BOOKS, volume.id),
        title=info.title,
        authors=list(info.authors or []),
        description=clean_html_text(info.description),
        published_date=info.publishedDate,
        publisher=info.publisher,
        page_count=info.pageCount if info.pageCount and info.pageCount > 0 else None,
        categories=categories,
        language=info.language,
        isbn10=isbn_10,
        isbn13=isbn_13,
        small_thumbnail=small_thumbnail,
        thumbnail=thumbnail,
        medium_thumbnail=medium,
        large_thumbnail=large,
        average_rating=info.averageRating,
        ratings_count=info.ratingsCount,
        preview_link=clean_link(info.previewLink),
        info_link=clean_link(info.infoLink),
        source=GOOGLE_BOOKS,
        original_id=volume.id,
    )


def _drop_none(params: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in params.items() if v is not None}


def _item_label(item: Any) -> str:
    if isinstance(item, dict): return repr(item.get("id", "<no id>"))
    return "<non-object>"
