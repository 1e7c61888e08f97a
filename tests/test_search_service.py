import httpx
import pytest
from pydantic import ValidationError

from errors import (
    AllProvidersFailedError,
    ConfigurationError,
    NetworkError,
    NotFoundError,
    RequestTimeoutError,
    ServerError,
)
from fakes import FakeProvider, make_book, make_results
from google_books import GoogleBooksService
from open_library import OpenLibraryService
from schemas import SearchParams, UnifiedSearchConfig
from search_service import UnifiedSearchService, dedup_key, deduplicate_books, parse_book_id

DUNE = SearchParams(query="dune")


def build(google=None, open_library=None, **config):
    return UnifiedSearchService(
        UnifiedSearchConfig(**config),
        google_books=google or FakeProvider(),
        open_library=open_library or FakeProvider(),
    )


# --- Single-provider strategy ---

@pytest.mark.asyncio
async def test_primary_results_are_returned_unchanged():
    google_results = make_results("google-books", [make_book("google-books", "g1", "Dune")], total_items=9, has_more=True)
    service = build(FakeProvider(results=google_results), FakeProvider(error=AssertionError("not called")))

    result = await service.search_books(DUNE)

    assert result is google_results
    assert service.open_library.search_calls == []


@pytest.mark.asyncio
async def test_open_library_primary_is_used_when_configured():
    ol_results = make_results("open-library", [make_book("open-library", "OL1W", "Dune")])
    service = build(FakeProvider(results=None), FakeProvider(results=ol_results), primary_service="open-library")

    result = await service.search_books(DUNE)

    assert result.source == "open-library"
    assert service.google_books.search_calls == []


@pytest.mark.asyncio
async def test_fallback_to_secondary_on_primary_failure():
    ol_results = make_results("open-library", [make_book("open-library", "OL1W", "Dune")])
    google = FakeProvider(error=ServerError("down", status=503))
    open_library = FakeProvider(results=ol_results)
    service = build(google, open_library)

    result = await service.search_books(DUNE)

    assert result.source == "open-library"
    assert result.books[0].id == "open-library-OL1W"
    assert len(google.search_calls) == 1
    assert len(open_library.search_calls) == 1


@pytest.mark.asyncio
async def test_failure_propagates_when_fallback_disabled():
    error = NetworkError("offline")
    open_library = FakeProvider()
    service = build(FakeProvider(error=error), open_library, enable_fallback=False)

    with pytest.raises(NetworkError) as exc_info:
        await service.search_books(DUNE)

    assert exc_info.value is error
    assert open_library.search_calls == []


@pytest.mark.asyncio
async def test_fallback_error_propagates_when_both_fail():
    service = build(FakeProvider(error=ServerError("g down", status=500)), FakeProvider(error=NetworkError("ol down")))

    with pytest.raises(NetworkError):
        await service.search_books(DUNE)


@pytest.mark.asyncio
async def test_unconfigured_primary_uses_secondary_strategy():
    ol_results = make_results("open-library", [])
    service = build(FakeProvider(configured=False), FakeProvider(results=ol_results))

    assert await service.search_books(DUNE) is ol_results


@pytest.mark.asyncio
async def test_no_configured_provider_is_a_configuration_error():
    service = build(FakeProvider(configured=False), FakeProvider(configured=False))

    assert service.is_configured() is False
    with pytest.raises(ConfigurationError):
        await service.search_books(DUNE)


@pytest.mark.asyncio
async def test_single_provider_results_are_capped():
    books = [make_book("google-books", f"g{i}", f"Book {i}") for i in range(5)]
    service = build(FakeProvider(results=make_results("google-books", books)), max_results=3)

    result = await service.search_books(DUNE)

    assert [book.original_id for book in result.books] == ["g0", "g1", "g2"]
    assert result.has_more is True


# --- Merged strategy ---

@pytest.mark.asyncio
async def test_merged_results_combine_and_deduplicate():
    google = FakeProvider(
        results=make_results(
            "google-books",
            [make_book("google-books", "g1", "Dune", ["Frank Herbert"])],
            total_items=50,
            has_more=True,
        )
    )
    open_library = FakeProvider(
        results=make_results(
            "open-library",
            [
                make_book("open-library", "OL1W", "  DUNE ", [" frank herbert"]),
                make_book("open-library", "OL2W", "Dune Messiah", ["Frank Herbert"]),
            ],
            total_items=30,
        )
    )
    service = build(google, open_library, enable_merging=True)

    result = await service.search_books(SearchParams(query="dune", start_index=0, max_results=10))

    assert result.source == "combined"
    assert [book.id for book in result.books] == ["google-books-g1", "open-library-OL2W"]
    assert result.total_items == 50
    assert result.has_more is True
    assert result.items_per_page == 10
    assert result.query == "dune"


@pytest.mark.asyncio
async def test_merged_priority_follows_primary_service():
    google = FakeProvider(results=make_results("google-books", [make_book("google-books", "g1", "Dune", ["Frank Herbert"])]))
    open_library = FakeProvider(
        results=make_results("open-library", [make_book("open-library", "OL1W", "Dune", ["Frank Herbert"])])
    )
    service = build(google, open_library, enable_merging=True, primary_service="open-library")

    result = await service.search_books(DUNE)

    assert [book.id for book in result.books] == ["open-library-OL1W"]


@pytest.mark.asyncio
async def test_merged_truncation_forces_has_more():
    google = FakeProvider(
        results=make_results("google-books", [make_book("google-books", f"g{i}", f"G {i}") for i in range(3)])
    )
    open_library = FakeProvider(
        results=make_results("open-library", [make_book("open-library", f"OL{i}W", f"O {i}") for i in range(3)])
    )
    service = build(google, open_library, enable_merging=True, max_results=4)

    result = await service.search_books(DUNE)

    assert len(result.books) == 4
    assert [book.source for book in result.books] == ["google-books"] * 3 + ["open-library"]
    assert result.has_more is True
    assert result.total_items == 3


@pytest.mark.asyncio
async def test_merged_with_one_failing_provider_uses_the_other():
    ol_results = make_results("open-library", [make_book("open-library", "OL1W", "Dune")], total_items=12)
    service = build(FakeProvider(error=ServerError("down", status=500)), FakeProvider(results=ol_results), enable_merging=True)

    result = await service.search_books(DUNE)

    assert result.source == "combined"
    assert [book.id for book in result.books] == ["open-library-OL1W"]
    assert result.total_items == 12


@pytest.mark.asyncio
async def test_merged_with_all_providers_failing():
    primary_error = ServerError("google down", status=500)
    service = build(FakeProvider(error=primary_error), FakeProvider(error=NetworkError("ol down")), enable_merging=True)

    with pytest.raises(AllProvidersFailedError) as exc_info:
        await service.search_books(DUNE)

    assert exc_info.value.__cause__ is primary_error


@pytest.mark.asyncio
async def test_merged_empty_results_echo_pagination():
    service = build(
        FakeProvider(results=make_results("google-books", [])),
        FakeProvider(results=make_results("open-library", [])),
        enable_merging=True,
    )

    result = await service.search_books(SearchParams(query="nothing", start_index=40))

    assert result.books == []
    assert result.total_items == 0
    assert result.start_index == 40
    assert result.items_per_page == 20
    assert result.has_more is False


@pytest.mark.asyncio
async def test_merging_needs_both_providers():
    google_results = make_results("google-books", [])
    service = build(FakeProvider(results=google_results), FakeProvider(configured=False), enable_merging=True)

    assert await service.search_books(DUNE) is google_results


@pytest.mark.asyncio
async def test_unexpected_exception_in_merge_uses_other_provider():
    ol_results = make_results("open-library", [make_book("open-library", "OL1W", "Dune")], total_items=7)
    service = build(FakeProvider(error=ValueError("bad payload")), FakeProvider(results=ol_results), enable_merging=True)

    result = await service.search_books(DUNE)

    assert [book.id for book in result.books] == ["open-library-OL1W"]
    assert result.total_items == 7
    assert result.source == "combined"


@pytest.mark.asyncio
async def test_unexpected_exceptions_from_both_providers_fail_the_merge():
    primary_error = KeyError("bug")
    service = build(FakeProvider(error=primary_error), FakeProvider(error=ValueError("bad payload")), enable_merging=True)

    with pytest.raises(AllProvidersFailedError) as exc_info:
        await service.search_books(DUNE)

    assert exc_info.value.__cause__ is primary_error


@pytest.mark.asyncio
@pytest.mark.parametrize("max_results, half_page", [(40, 20), (7, 4), (1, 1), (500, 100)])
async def test_merged_search_splits_the_page_between_providers(max_results, half_page):
    google = FakeProvider(results=make_results("google-books", []))
    open_library = FakeProvider(results=make_results("open-library", []))
    service = build(google, open_library, enable_merging=True, max_results=max_results)

    result = await service.search_books(SearchParams(query="dune", max_results=10))

    assert google.search_calls[0].max_results == half_page
    assert open_library.search_calls[0].max_results == half_page
    assert google.search_calls[0].query == "dune"
    assert result.items_per_page == 10


# --- Timeout ---

@pytest.mark.asyncio
async def test_timeout_cancels_in_flight_request():
    slow = FakeProvider(results=make_results("google-books", []), delay=0.5)
    service = build(slow, timeout=1)

    with pytest.raises(RequestTimeoutError) as exc_info:
        await service.search_books(DUNE)

    assert isinstance(exc_info.value, TimeoutError)
    assert exc_info.value.code == "SEARCH_TIMEOUT"
    assert slow.cancelled is True


@pytest.mark.asyncio
async def test_provider_timeout_is_not_rewrapped():
    error = RequestTimeoutError("upstream timed out")
    service = build(FakeProvider(error=error), enable_fallback=False)

    with pytest.raises(RequestTimeoutError) as exc_info:
        await service.search_books(DUNE)

    assert exc_info.value is error


# --- Details ---

@pytest.mark.asyncio
async def test_details_route_by_prefix():
    ol_book = make_book("open-library", "OL1W", "Dune")
    google = FakeProvider()
    open_library = FakeProvider(details={"OL1W": ol_book})
    service = build(google, open_library)

    assert await service.get_book_details("open-library-OL1W") is ol_book
    assert open_library.detail_calls == ["OL1W"]
    assert google.detail_calls == []


@pytest.mark.asyncio
async def test_details_fall_back_with_bare_id():
    ol_book = make_book("open-library", "XYZ", "Dune")
    google = FakeProvider(detail_error=NotFoundError("missing", status=404))
    open_library = FakeProvider(details={"XYZ": ol_book})
    service = build(google, open_library, enable_fallback=False)

    book = await service.get_book_details("google-books-XYZ")

    assert book is ol_book
    assert google.detail_calls == ["XYZ"]
    assert open_library.detail_calls == ["XYZ"]


@pytest.mark.asyncio
async def test_details_return_none_when_both_miss():
    google = FakeProvider(detail_error=ServerError("down", status=500))
    open_library = FakeProvider()
    service = build(google, open_library)

    assert await service.get_book_details("google-books-nope") is None
    assert await service.get_book_details("google-books-nope") is None
    assert google.detail_calls == ["nope", "nope"]


@pytest.mark.asyncio
async def test_details_with_explicit_source_do_not_fall_back():
    google = FakeProvider(details={"g1": make_book("google-books", "g1", "Dune")})
    open_library = FakeProvider(detail_error=NetworkError("offline"))
    service = build(google, open_library)

    assert await service.get_book_details("g1", source="open-library") is None
    assert open_library.detail_calls == ["g1"]
    assert google.detail_calls == []


@pytest.mark.asyncio
async def test_details_unknown_prefix_goes_to_primary_with_whole_id():
    google_book = make_book("google-books", "amazon-123", "Dune")
    google = FakeProvider(details={"amazon-123": google_book})
    service = build(google)

    assert await service.get_book_details("amazon-123") is google_book
    assert google.detail_calls == ["amazon-123"]


@pytest.mark.asyncio
async def test_details_unexpected_exception_propagates():
    service = build(FakeProvider(detail_error=RuntimeError("bug")))

    with pytest.raises(RuntimeError):
        await service.get_book_details("google-books-g1")


# --- Configuration and introspection ---

def test_update_config_is_partial_and_atomic():
    service = build()
    before = service.get_config()

    updated = service.update_config(enable_merging=True, max_results=10)

    assert updated.enable_merging is True
    assert updated.max_results == 10
    assert updated.primary_service == before.primary_service
    assert before.enable_merging is False
    assert service.get_config() is updated


def test_invalid_config_update_keeps_previous_config():
    service = build()
    before = service.get_config()

    with pytest.raises(ValidationError):
        service.update_config(primary_service="amazon")
    with pytest.raises(ValidationError):
        service.update_config(timeout=0)
    with pytest.raises(ValidationError):
        service.update_config(enableMerging=True)
    with pytest.raises(ValidationError):
        service.update_config(timout=5)

    assert service.get_config() is before


def test_available_strategies():
    both = build()
    assert [s.name for s in both.get_available_strategies()] == [
        "google-books-only",
        "open-library-only",
        "merged-results",
    ]

    google_only = build(open_library=FakeProvider(configured=False))
    assert [s.name for s in google_only.get_available_strategies()] == ["google-books-only"]


def test_rate_limit_reflects_primary_provider():
    service = build(FakeProvider(has_key=True), FakeProvider(has_key=False))
    assert service.get_rate_limit().has_key is True
    assert service.get_rate_limit().google_books.has_key is True

    service.update_config(primary_service="open-library")
    assert service.get_rate_limit().has_key is False


def test_dedup_helpers():
    first = make_book("google-books", "g1", " Dune ", ["Frank Herbert"])
    same = make_book("open-library", "OL1W", "dune", ["FRANK HERBERT "])
    authorless = make_book("open-library", "OL2W", "Dune")

    assert dedup_key(first) == "dune|frank herbert"
    assert dedup_key(authorless) == "dune|"
    assert deduplicate_books([first, same, authorless]) == [first, authorless]


def test_parse_book_id():
    assert parse_book_id("google-books-abc") == ("google-books", "abc")
    assert parse_book_id("open-library-OL1W") == ("open-library", "OL1W")
    assert parse_book_id("isbn-123") == (None, "isbn-123")


# --- Details through real adapters ---

@pytest.mark.asyncio
async def test_google_volume_details_are_idempotent(make_client):
    volume = {
        "kind": "books#volume",
        "id": "abc",
        "volumeInfo": {
            "title": "Dune",
            "authors": ["Frank Herbert"],
            "description": "<b>Arrakis</b>",
            "industryIdentifiers": [{"type": "ISBN_13", "identifier": "9780441013593"}],
            "imageLinks": {"thumbnail": "http://books.google.com/books/content?id=abc&edge=curl"},
        },
    }
    client = make_client(lambda request: httpx.Response(200, json=volume), retry_attempts=0)
    service = UnifiedSearchService(
        google_books=GoogleBooksService(base_url="https://books.example/v1", client=client),
        open_library=FakeProvider(),
    )

    first = await service.get_book_details("google-books-abc")
    second = await service.get_book_details("google-books-abc")

    assert first is not None
    assert first == second
    assert first.model_dump() == second.model_dump()


@pytest.mark.asyncio
async def test_open_library_work_details_are_idempotent(make_client):
    work = {
        "title": "Dune",
        "description": {"value": "Spice."},
        "covers": [777],
        "authors": [{"author": {"key": "/authors/OL1A"}}, {"author": {"key": "/authors/OL2A"}}],
    }
    authors = {"/authors/OL1A.json": {"name": "Frank Herbert"}, "/authors/OL2A.json": {"personal_name": "Brian Herbert"}}

    def handler(request):
        if request.url.path == "/works/OL1W.json": return httpx.Response(200, json=work)
        return httpx.Response(200, json=authors[request.url.path])

    client = make_client(handler, retry_attempts=0)
    service = UnifiedSearchService(
        google_books=FakeProvider(),
        open_library=OpenLibraryService(base_url="https://ol.example", client=client),
    )

    first = await service.get_book_details("open-library-OL1W")
    second = await service.get_book_details("open-library-OL1W")

    assert first.authors == ["Frank Herbert", "Brian Herbert"]
    assert first == second
    assert first.model_dump() == second.model_dump()
