"""
Open Library adapter.

Open Library needs no API key but its search payloads are inconsistent:
the hit count comes back as ``num_found`` or ``numFound`` and documents
are sometimes missing fields or carry numbers where strings belong.
Search responses therefore go through named stages:

1. ``normalize_response`` reconciles the count fields.
2. ``parse_strict`` validates the whole payload and transforms it.
3. ``parse_lenient`` runs when strict validation fails and salvages
   whatever documents it can.

If the lenient stage also blows up the search returns an empty page
instead of an error, so an upstream format change never breaks the
aggregated search.

API documentation: https://openlibrary.org/developers/api
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import ValidationError

import settings
from api_client import ApiClient, create_api_client
from errors import ApiError, NotFoundError, for_provider
from helpers import clean_plain_text, first_string, positive_int, split_isbns, string_list
from schemas import (
    DEFAULT_ITEMS_PER_PAGE,
    MAX_CATEGORIES,
    OPEN_LIBRARY,
    Book,
    OpenLibrarySearchResponse,
    RateLimitInfo,
    SearchParams,
    SearchResults,
    make_book_id,
)

PROVIDER_NAME = "Open Library"
MAX_PAGE_SIZE = 100
MAX_AUTHOR_LOOKUPS = 3

# Only what doc_to_book reads, plus the fields the strict model requires.
SEARCH_FIELDS = ",".join([
    "key", "type", "title", "subtitle", "author_name", "author_key",
    "first_publish_year", "publish_year", "isbn", "cover_i", "edition_count",
    "publisher", "language", "subject", "number_of_pages_median",
])


class MalformedDocumentError(ValueError):
    pass


class OpenLibraryService:
    def __init__(
        self,
        base_url: str = settings.OPEN_LIBRARY_API_URL,
        covers_url: str = settings.OPEN_LIBRARY_COVERS_URL,
        client: Optional[ApiClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.covers_url = covers_url.rstrip("/")
        self.client = client or create_api_client()

    # --- Public contract ---

    async def search_books(self, params: SearchParams) -> SearchResults:
        request_params: Dict[str, Any] = {
            "q": self.build_search_query(params),
            "offset": params.start_index,
            "limit": min(params.max_results or DEFAULT_ITEMS_PER_PAGE, MAX_PAGE_SIZE),
            "fields": SEARCH_FIELDS,
        }
        if params.language:
            request_params["language"] = params.language

        try:
            raw = await self.client.get(f"{self.base_url}/search.json", params=request_params)
        except ApiError as e:
            raise for_provider(e, PROVIDER_NAME, params.query) from e

        return self.process_api_response(raw, params)

    async def get_book_details(self, work_key: str) -> Optional[Book]:
        clean_key = _strip_prefix(work_key, "/works/")
        try:
            work = await self.client.get(f"{self.base_url}/works/{clean_key}.json")
        except NotFoundError:
            logger.info(f"Open Library: work {clean_key} not found (404).")
            return None
        except ApiError as e:
            raise for_provider(e, PROVIDER_NAME, work_key) from e

        if not isinstance(work, dict):
            logger.warning(f"Open Library: work {clean_key} returned a non-object payload.")
            return None

        try:
            return await self.transform_work_to_book(work, clean_key)
        except ValidationError as e:
            logger.warning(f"Open Library: work {clean_key} failed validation: {e}")
            return None

    # Kept under the upstream name for callers that think in works.
    get_work_details = get_book_details

    def is_configured(self) -> bool:
        return True

    def get_rate_limit(self) -> RateLimitInfo:
        return RateLimitInfo(has_key=False, unlimited=False)

    # --- Query building ---

    def build_search_query(self, params: SearchParams) -> str:
        query = params.query.strip()

        if params.author_query:
            return f"title:{query} author:{params.author_query.strip()}"

        if params.search_in == "title":
            query = f"title:{query}"
        elif params.search_in == "author":
            query = f"author:{query}"

        if params.published_after or params.published_before:
            after_year = params.published_after or 0
            before_year = params.published_before or datetime.now().year
            query += f" first_publish_year:[{after_year} TO {before_year}]"

        return query

    # --- Response stages ---

    def process_api_response(self, raw: Any, params: SearchParams) -> SearchResults:
        try:
            normalized = normalize_response(raw)
            try:
                return self.parse_strict(normalized, params)
            except ValidationError as e:
                logger.warning(
                    f"Open Library response validation failed ({e.error_count()} error(s)), using lenient parsing."
                )
                return self.parse_lenient(raw, params)
        except Exception as e:
            logger.error(f"Failed to process Open Library response for '{params.query}': {e!r}")
            return self.empty_results(params)

    def parse_strict(self, normalized: Dict[str, Any], params: SearchParams) -> SearchResults:
        response = OpenLibrarySearchResponse.model_validate(normalized)
        books: List[Book] = []
        for doc in response.docs:
            try:
                books.append(self.doc_to_book(doc.model_dump(exclude_none=True)))
            except (MalformedDocumentError, ValidationError) as e:
                logger.warning(f"Skipping invalid Open Library doc {doc.key!r}: {e}")
        return self._results(books, response.numFound, params)

    def parse_lenient(self, raw: Dict[str, Any], params: SearchParams) -> SearchResults:
        docs = raw.get("docs") if isinstance(raw.get("docs"), list) else []
        total = _first_not_none(raw.get("numFound"), raw.get("num_found"), len(docs))

        books: List[Book] = []
        for doc in docs:
            try:
                books.append(self.doc_to_book(doc))
            except (MalformedDocumentError, ValidationError) as e:
                label = doc.get("title") or doc.get("key") if isinstance(doc, dict) else doc
                logger.warning(f"Skipping invalid Open Library doc {label!r}: {e}")
        return self._results(books, int(total), params)

    def empty_results(self, params: SearchParams) -> SearchResults:
        logger.warning(f"Returning empty Open Library results for '{params.query}'.")
        return self._results([], 0, params)

    def _results(self, books: List[Book], total: int, params: SearchParams) -> SearchResults:
        return SearchResults(
            books=books,
            total_items=total,
            start_index=params.start_index,
            items_per_page=params.max_results or DEFAULT_ITEMS_PER_PAGE,
            has_more=params.start_index + len(books) < total,
            query=params.query,
            source=OPEN_LIBRARY,
        )

    # --- Transformation ---

    def doc_to_book(self, doc: Any) -> Book:
        if not isinstance(doc, dict) or not doc.get("key") or not doc.get("title"):
            raise MalformedDocumentError("Missing required fields (key or title) in Open Library document")

        key = str(doc["key"])
        original_id = _strip_prefix(key, "/works/")
        isbn_10, isbn_13 = split_isbns(doc.get("isbn"))

        publish_year = _publish_year(doc)
        published_date = f"{publish_year}-01-01" if publish_year else None

        cover_id = doc.get("cover_i") or doc.get("cover_id")
        categories = string_list(doc.get("subject"), MAX_CATEGORIES) or None
        work_url = f"{self.base_url}{key if key.startswith('/') else '/works/' + key}"

        return Book(
            id=make_book_id(OPEN_LIBRARY, original_id),
            title=str(doc["title"]),
            authors=string_list(doc.get("author_name")),
            published_date=published_date,
            publisher=first_string(doc.get("publisher")),
            page_count=positive_int(doc.get("number_of_pages_median")),
            categories=categories,
            language=first_string(doc.get("language")),
            isbn10=isbn_10,
            isbn13=isbn_13,
            preview_link=work_url,
            info_link=work_url,
            source=OPEN_LIBRARY,
            original_id=original_id,
            **self.cover_urls(cover_id),
        )

    async def transform_work_to_book(self, work: Dict[str, Any], work_key: str) -> Book:
        raw_description = work.get("description")
        if isinstance(raw_description, dict):
            raw_description = raw_description.get("value")
        description = clean_plain_text(raw_description) if isinstance(raw_description, str) else None

        covers = work.get("covers")
        cover_id = covers[0] if isinstance(covers, list) and covers else None

        authors: List[str] = []
        if isinstance(work.get("authors"), list) and work["authors"]:
            authors = await self.fetch_author_names(work["authors"])

        work_url = f"{self.base_url}/works/{work_key}"
        published = work.get("first_publish_date")

        return Book(
            id=make_book_id(OPEN_LIBRARY, work_key),
            title=str(work.get("title") or "Unknown Title"),
            authors=authors,
            description=description,
            published_date=published if isinstance(published, str) else None,
            categories=string_list(work.get("subjects"), MAX_CATEGORIES) or None,
            preview_link=work_url,
            info_link=work_url,
            source=OPEN_LIBRARY,
            original_id=work_key,
            **self.cover_urls(cover_id),
        )

    def cover_urls(self, cover_id: Any) -> Dict[str, str]:
        cover_id = positive_int(cover_id)
        if cover_id is None: return {}
        return {
            "small_thumbnail": f"{self.covers_url}/id/{cover_id}-S.jpg",
            "thumbnail": f"{self.covers_url}/id/{cover_id}-M.jpg",
            "medium_thumbnail": f"{self.covers_url}/id/{cover_id}-L.jpg",
            "large_thumbnail": f"{self.covers_url}/id/{cover_id}-L.jpg",
        }

    async def fetch_author_names(self, author_refs: List[Any]) -> List[str]:
        names = await asyncio.gather(*(self._fetch_author_name(ref) for ref in author_refs[:MAX_AUTHOR_LOOKUPS]))
        return [name for name in names if name]

    async def _fetch_author_name(self, ref: Any) -> Optional[str]:
        author_key = _author_key(ref)
        if not author_key: return None
        try:
            author = await self.client.get(f"{self.base_url}{author_key}.json")
        except ApiError as e:
            logger.warning(f"Open Library author lookup failed for {author_key}: {e.message}")
            return None
        if not isinstance(author, dict): return None
        return author.get("name") or author.get("personal_name") or "Unknown Author"


def normalize_response(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise TypeError(f"Expected a JSON object from Open Library, got {type(raw).__name__}")
    num_found = _first_not_none(raw.get("numFound"), raw.get("num_found"), 0)
    return {
        "start": _first_not_none(raw.get("start"), 0),
        "num_found": num_found,
        "numFound": num_found,
        "docs": raw.get("docs") or [],
    }


def _author_key(ref: Any) -> Optional[str]:
    if not isinstance(ref, dict): return None
    nested = ref.get("author")
    key = nested.get("key") if isinstance(nested, dict) else None
    key = key or ref.get("key")
    if not isinstance(key, str) or not key: return None
    return key if key.startswith("/") else f"/authors/{key}"


def _publish_year(doc: Dict[str, Any]) -> Optional[int]:
    year = doc.get("first_publish_year")
    if year is None:
        year = doc.get("publish_year")
        if isinstance(year, list):
            year = year[0] if year else None
    if isinstance(year, str) and year.strip().isdigit():
        year = int(year.strip())
    return positive_int(year)


def _strip_prefix(value: str, prefix: str) -> str:
    return value[len(prefix):] if value.startswith(prefix) else value


def _first_not_none(*values: Any) -> Any:
    for value in values:
        if value is not None: return value
    return None
