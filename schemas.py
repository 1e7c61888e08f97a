from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

BookSource = Literal["google-books", "open-library"]
ResultSource = Literal["google-books", "open-library", "combined"]

GOOGLE_BOOKS: BookSource = "google-books"
OPEN_LIBRARY: BookSource = "open-library"
COMBINED: ResultSource = "combined"

BOOK_SOURCES = (GOOGLE_BOOKS, OPEN_LIBRARY)
MAX_CATEGORIES = 5
DEFAULT_ITEMS_PER_PAGE = 20


def is_absolute_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def make_book_id(source: str, original_id: str) -> str:
    return f"{source}-{original_id}"


# --------------------------------------------------------------------
# 1. Normalized Models
# --------------------------------------------------------------------

class Book(BaseModel):
    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    authors: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    published_date: Optional[str] = None
    publisher: Optional[str] = None
    page_count: Optional[int] = Field(default=None, gt=0)
    categories: Optional[List[str]] = None
    language: Optional[str] = None
    isbn10: Optional[str] = None
    isbn13: Optional[str] = None
    small_thumbnail: Optional[str] = None
    thumbnail: Optional[str] = None
    medium_thumbnail: Optional[str] = None
    large_thumbnail: Optional[str] = None
    average_rating: Optional[float] = Field(default=None, ge=0, le=5)
    ratings_count: Optional[int] = Field(default=None, ge=0)
    preview_link: Optional[str] = None
    info_link: Optional[str] = None
    source: BookSource
    original_id: str = Field(min_length=1)

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Book title is required")
        return value

    @field_validator("categories")
    @classmethod
    def _truncate_categories(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None: return None
        return value[:MAX_CATEGORIES]

    @field_validator(
        "small_thumbnail", "thumbnail", "medium_thumbnail", "large_thumbnail", "preview_link", "info_link"
    )
    @classmethod
    def _must_be_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_absolute_url(value):
            raise ValueError(f"Invalid URL: {value!r}")
        return value

    @model_validator(mode="after")
    def _id_matches_source(self) -> "Book":
        if self.id != make_book_id(self.source, self.original_id):
            raise ValueError("Book id must be '{source}-{original_id}'")
        return self


class SearchParams(BaseModel):
    query: str
    author_query: Optional[str] = None
    search_in: Literal["all", "title", "author"] = "all"
    published_after: Optional[int] = Field(default=None, ge=1000)
    published_before: Optional[int] = Field(default=None, ge=1000)
    start_index: int = Field(default=0, ge=0)
    max_results: Optional[int] = Field(default=None, gt=0, le=100)
    language: Optional[str] = None

    @field_validator("query")
    @classmethod
    def _clean_query(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Search query is required")
        return value

    @field_validator("author_query", "language")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None: return None
        value = value.strip()
        return value or None


class SearchResults(BaseModel):
    books: List[Book] = Field(default_factory=list)
    total_items: int = Field(ge=0)
    start_index: int = Field(ge=0)
    items_per_page: int = Field(gt=0)
    has_more: bool
    query: str
    source: ResultSource


class UnifiedSearchConfig(BaseModel):
    """Orchestrator settings. Frozen: updates replace the whole object."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    primary_service: BookSource = GOOGLE_BOOKS
    enable_fallback: bool = True
    enable_merging: bool = False
    max_results: int = Field(default=40, gt=0)
    timeout: int = Field(default=10000, gt=0)


class SearchStrategy(BaseModel):
    name: str
    description: str


class RateLimitInfo(BaseModel):
    has_key: bool
    unlimited: bool = False


class AggregateRateLimit(BaseModel):
    google_books: RateLimitInfo
    open_library: RateLimitInfo
    has_key: bool
    unlimited: bool


# --------------------------------------------------------------------
# 2. Upstream Models: Google Books
# --------------------------------------------------------------------

class GoogleIndustryIdentifier(BaseModel):
    type: str
    identifier: str


class GoogleImageLinks(BaseModel):
    smallThumbnail: Optional[str] = None
    thumbnail: Optional[str] = None
    small: Optional[str] = None
    medium: Optional[str] = None
    large: Optional[str] = None
    extraLarge: Optional[str] = None


class GoogleVolumeInfo(BaseModel):
    title: str
    subtitle: Optional[str] = None
    authors: Optional[List[str]] = None
    publisher: Optional[str] = None
    publishedDate: Optional[str] = None
    description: Optional[str] = None
    industryIdentifiers: Optional[List[GoogleIndustryIdentifier]] = None
    pageCount: Optional[int] = None
    categories: Optional[List[str]] = None
    averageRating: Optional[float] = None
    ratingsCount: Optional[int] = None
    imageLinks: Optional[GoogleImageLinks] = None
    language: Optional[str] = None
    previewLink: Optional[str] = None
    infoLink: Optional[str] = None


class GoogleBooksVolume(BaseModel):
    kind: Optional[str] = None
    id: str
    volumeInfo: GoogleVolumeInfo
    saleInfo: Optional[Dict[str, Any]] = None
    accessInfo: Optional[Dict[str, Any]] = None


class GoogleBooksResponse(BaseModel):
    kind: str
    totalItems: int = Field(ge=0)
    # Volumes are validated one by one so a bad record only drops itself.
    items: List[Any] = Field(default_factory=list)


# --------------------------------------------------------------------
# 3. Upstream Models: Open Library
# --------------------------------------------------------------------

class OpenLibraryDoc(BaseModel):
    key: str
    type: str
    title: str
    subtitle: Optional[str] = None
    cover_i: Optional[int] = None
    isbn: Optional[List[str]] = None
    author_key: Optional[List[str]] = None
    author_name: Optional[List[str]] = None
    publisher: Optional[List[str]] = None
    language: Optional[List[str]] = None
    subject: Optional[List[str]] = None
    publish_date: Optional[List[str]] = None
    publish_year: Optional[List[int]] = None
    first_publish_year: Optional[int] = None
    number_of_pages_median: Optional[int] = None
    edition_count: Optional[int] = None


class OpenLibrarySearchResponse(BaseModel):
    start: int = 0
    num_found: int = Field(ge=0)
    numFound: int = Field(ge=0)
    docs: List[OpenLibraryDoc]
