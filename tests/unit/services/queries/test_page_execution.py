from __future__ import annotations

import asyncio

import pytest

from app.db.models import CombinationStatus
from app.services.queries.execution import PageExecutionService
from app.services.queries.locks import ExecutionLockRegistry
from app.services.queries.types import ExecutionErrorCode
from app.services.search.errors import (
    CredentialDecryptionError,
    SearchErrorCode,
    SearchNetworkError,
    SearchProviderError,
)
from app.services.search.types import SearchPage
from tests.unit.fakes import (
    FakeProvider,
    FakeResolver,
    FakeSession,
    FakeStore,
    RecordingSleep,
    make_item,
    make_page,
)


def _service(
    store: FakeStore,
    provider: FakeProvider,
    *,
    resolver: FakeResolver | None = None,
    locks: ExecutionLockRegistry | None = None,
    sleep: RecordingSleep | None = None,
    network_retries: int = 3,
) -> PageExecutionService:
    return PageExecutionService(
        provider=provider,
        credential_resolver=resolver or FakeResolver(),
        store=store,
        locks=locks or ExecutionLockRegistry(),
        sleep=sleep or RecordingSleep(),
        network_retries=network_retries,
        retry_backoff_seconds=1.0,
    )


async def test_execute_page_stores_links_and_advances_cursor() -> None:
    store = FakeStore()
    combination = store.add_combination(max_allowed_results=100)
    provider = FakeProvider([make_page(1, 10)])
    session = FakeSession()

    result = await _service(store, provider).execute_page(session, combination.id)

    assert result.success is True
    assert result.inserted_count == 10
    assert result.has_more is True
    assert combination.total_fetched == 10
    assert combination.last_start_index == 1
    assert combination.next_start_index == 11
    assert combination.status == CombinationStatus.RUNNING
    assert combination.last_run_at is not None
    assert provider.calls[0]["start_index"] == 1
    assert provider.calls[0]["query"] == combination.dork_string
    assert session.commits >= 2


async def test_execute_page_counts_only_new_canonical_links() -> None:
    store = FakeStore()
    combination = store.add_combination()
    await store.insert_links(
        None,
        combination_id=combination.id,
        items=[make_item("https://example.com/already-known")],
    )
    page = SearchPage(
        start_index=1,
        next_start_index=11,
        total_results=50,
        items=[
            make_item("https://www.example.com/plumbers/?utm_source=ads", rank=1),
            make_item("http://example.com/Plumbers", rank=2),
            make_item("https://example.com/already-known/", rank=3),
            make_item("https://example.com/electricians", rank=4),
        ],
    )

    result = await _service(store, FakeProvider([page])).execute_page(FakeSession(), combination.id)

    assert result.inserted_count == 2
    assert combination.total_fetched == 2
    assert await store.count_links(None, combination_id=combination.id) == 3
    assert combination.next_start_index == 11


async def test_execute_page_truncates_to_remaining_capacity_and_completes() -> None:
    store = FakeStore()
    combination = store.add_combination(
        max_allowed_results=25,
        total_fetched=20,
        last_start_index=11,
        next_start_index=21,
        status=CombinationStatus.RUNNING,
    )

    result = await _service(store, FakeProvider([make_page(21, 10)])).execute_page(FakeSession(), combination.id)

    assert result.success is True
    assert result.inserted_count == 5
    assert result.has_more is False
    assert combination.total_fetched == 25
    assert combination.status == CombinationStatus.COMPLETED
    assert combination.completed_at is not None


async def test_execute_page_advances_from_stored_cursor_when_provider_omits_start() -> None:
    store = FakeStore()
    combination = store.add_combination(
        total_fetched=30,
        last_start_index=21,
        next_start_index=31,
        status=CombinationStatus.RUNNING,
    )
    # Parsed without a request echo, the page reports start 1.
    page = SearchPage(
        start_index=1,
        next_start_index=41,
        total_results=1000,
        items=[make_item(f"https://example.com/late-{offset}", rank=1 + offset) for offset in range(10)],
    )

    result = await _service(store, FakeProvider([page])).execute_page(FakeSession(), combination.id)

    assert result.success is True
    assert result.inserted_count == 10
    assert combination.last_start_index == 31
    assert combination.next_start_index == 41


async def test_execute_page_caps_after_skipping_already_stored_links() -> None:
    store = FakeStore()
    combination = store.add_combination(
        max_allowed_results=25,
        total_fetched=20,
        last_start_index=11,
        next_start_index=21,
        status=CombinationStatus.RUNNING,
    )
    page = make_page(21, 10)
    await store.insert_links(None, combination_id=combination.id, items=page.items[:5])

    result = await _service(store, FakeProvider([page])).execute_page(FakeSession(), combination.id)

    assert result.inserted_count == 5
    assert combination.total_fetched == 25
    assert combination.status == CombinationStatus.COMPLETED
    stored = set(store.links[combination.id])
    assert "https://example.com/result-30" in stored


async def test_execute_page_last_page_completes_combination() -> None:
    store = FakeStore()
    combination = store.add_combination()

    result = await _service(store, FakeProvider([make_page(1, 4, has_next=False)])).execute_page(
        FakeSession(),
        combination.id,
    )

    assert result.success is True
    assert result.has_more is False
    assert combination.total_fetched == 4
    assert combination.status == CombinationStatus.COMPLETED


async def test_execute_page_with_no_items_completes_without_inserting() -> None:
    store = FakeStore()
    combination = store.add_combination()
    empty_page = SearchPage(start_index=1, next_start_index=None, total_results=0, items=[])

    result = await _service(store, FakeProvider([empty_page])).execute_page(FakeSession(), combination.id)

    assert result.success is True
    assert result.inserted_count == 0
    assert result.has_more is False
    assert combination.status == CombinationStatus.COMPLETED
    assert combination.next_start_index == 1


async def test_execute_page_cursor_past_max_completes_without_fetching() -> None:
    store = FakeStore()
    combination = store.add_combination(max_allowed_results=10, total_fetched=9, next_start_index=11)
    provider = FakeProvider([])

    result = await _service(store, provider).execute_page(FakeSession(), combination.id)

    assert result.success is True
    assert provider.calls == []
    assert combination.status == CombinationStatus.COMPLETED


@pytest.mark.parametrize(
    ("status", "message"),
    [
        (CombinationStatus.COMPLETED, "Query is already completed."),
        (CombinationStatus.FAILED, "Query has failed. Reset it to run again."),
        (CombinationStatus.PAUSED, "Query is paused."),
    ],
)
async def test_execute_page_rejects_non_executable_status(status: CombinationStatus, message: str) -> None:
    store = FakeStore()
    combination = store.add_combination(status=status)
    provider = FakeProvider([])

    result = await _service(store, provider).execute_page(FakeSession(), combination.id)

    assert result.success is False
    assert result.error_code == ExecutionErrorCode.NOT_EXECUTABLE
    assert result.error == message
    assert provider.calls == []
    assert combination.status == status


async def test_execute_page_at_max_results_marks_completed() -> None:
    store = FakeStore()
    combination = store.add_combination(max_allowed_results=20, total_fetched=20, next_start_index=21)

    result = await _service(store, FakeProvider([])).execute_page(FakeSession(), combination.id)

    assert result.error_code == ExecutionErrorCode.NOT_EXECUTABLE
    assert result.error == "Maximum results reached."
    assert combination.status == CombinationStatus.COMPLETED


async def test_execute_page_unknown_combination_is_not_found() -> None:
    result = await _service(FakeStore(), FakeProvider([])).execute_page(FakeSession(), 404)

    assert result.success is False
    assert result.error_code == ExecutionErrorCode.NOT_FOUND


async def test_rate_limit_pauses_without_moving_cursor() -> None:
    store = FakeStore()
    combination = store.add_combination(total_fetched=10, last_start_index=1, next_start_index=11)
    provider = FakeProvider(
        [
            SearchProviderError(
                code=SearchErrorCode.RATE_LIMIT,
                message="Rate limit exceeded. Please try again later.",
                status_code=429,
                retry_after_seconds=3600,
            )
        ]
    )

    result = await _service(store, provider).execute_page(FakeSession(), combination.id)

    assert result.success is False
    assert result.error_code == ExecutionErrorCode.RATE_LIMIT
    assert combination.status == CombinationStatus.PAUSED
    assert combination.error_message == "Rate limit exceeded. Please try again later."
    assert combination.next_start_index == 11
    assert combination.total_fetched == 10


@pytest.mark.parametrize(
    ("code", "message"),
    [
        (SearchErrorCode.QUOTA_EXCEEDED, "Daily quota exceeded. Please try again tomorrow."),
        (SearchErrorCode.INVALID_CREDENTIAL, "Invalid API credentials. Please check your API key and engine ID."),
        (SearchErrorCode.INVALID_REQUEST, "Invalid request: Invalid Value"),
    ],
)
async def test_provider_errors_fail_the_combination(code: SearchErrorCode, message: str) -> None:
    store = FakeStore()
    combination = store.add_combination()
    provider = FakeProvider([SearchProviderError(code=code, message=message, status_code=403)])

    result = await _service(store, provider).execute_page(FakeSession(), combination.id)

    assert result.error_code == ExecutionErrorCode(code.value)
    assert result.error == message
    assert combination.status == CombinationStatus.FAILED
    assert combination.error_message == message
    assert combination.last_run_at is not None


async def test_network_errors_are_retried_with_exponential_backoff() -> None:
    store = FakeStore()
    combination = store.add_combination()
    sleep = RecordingSleep()
    provider = FakeProvider(
        [
            SearchNetworkError("network error: connection reset"),
            SearchNetworkError("network error: connection reset"),
            make_page(1, 10),
        ]
    )

    result = await _service(store, provider, sleep=sleep).execute_page(FakeSession(), combination.id)

    assert result.success is True
    assert len(provider.calls) == 3
    assert sleep.calls == [1.0, 2.0]
    assert combination.total_fetched == 10


async def test_exhausted_network_retries_fail_with_network_error() -> None:
    store = FakeStore()
    combination = store.add_combination()
    sleep = RecordingSleep()
    provider = FakeProvider([ConnectionError("connection refused") for _ in range(4)])

    result = await _service(store, provider, sleep=sleep, network_retries=3).execute_page(
        FakeSession(),
        combination.id,
    )

    assert result.error_code == ExecutionErrorCode.NETWORK_ERROR
    assert len(provider.calls) == 4
    assert sleep.calls == [1.0, 2.0, 4.0]
    assert combination.status == CombinationStatus.FAILED


async def test_credential_errors_fail_before_calling_provider() -> None:
    store = FakeStore()
    combination = store.add_combination(credential_id=2)
    provider = FakeProvider([])
    resolver = FakeResolver({2: CredentialDecryptionError(2, "Search credential 2 is unusable.")})

    result = await _service(store, provider, resolver=resolver).execute_page(FakeSession(), combination.id)

    assert result.error_code == ExecutionErrorCode.CREDENTIAL_ERROR
    assert provider.calls == []
    assert combination.status == CombinationStatus.FAILED
    assert combination.error_message == "Search credential 2 is unusable."


async def test_missing_credential_fails_combination() -> None:
    store = FakeStore()
    combination = store.add_combination(credential_id=8)

    result = await _service(store, FakeProvider([]), resolver=FakeResolver({})).execute_page(
        FakeSession(),
        combination.id,
    )

    assert result.error_code == ExecutionErrorCode.CREDENTIAL_ERROR
    assert combination.status == CombinationStatus.FAILED


async def test_unexpected_errors_are_caught_and_recorded() -> None:
    store = FakeStore()
    combination = store.add_combination()
    session = FakeSession()

    result = await _service(store, FakeProvider([RuntimeError("parser exploded")])).execute_page(
        session,
        combination.id,
    )

    assert result.success is False
    assert result.error_code == ExecutionErrorCode.INTERNAL_ERROR
    assert result.error == "parser exploded"
    assert combination.status == CombinationStatus.FAILED
    assert combination.error_message == "parser exploded"
    assert session.rollbacks >= 1


async def test_page_is_discarded_when_cursor_moved_during_fetch() -> None:
    store = FakeStore()
    combination = store.add_combination()

    def _handler(start_index: int) -> SearchPage:
        combination.next_start_index = 31
        return make_page(start_index, 10)

    result = await _service(store, FakeProvider(handler=_handler)).execute_page(FakeSession(), combination.id)

    assert result.error_code == ExecutionErrorCode.STALE_PAGE
    assert combination.total_fetched == 0
    assert await store.count_links(None, combination_id=combination.id) == 0


async def test_pause_during_fetch_is_preserved_after_write() -> None:
    store = FakeStore()
    combination = store.add_combination()

    def _handler(start_index: int) -> SearchPage:
        combination.status = CombinationStatus.PAUSED
        return make_page(start_index, 10)

    result = await _service(store, FakeProvider(handler=_handler)).execute_page(FakeSession(), combination.id)

    assert result.success is True
    assert combination.total_fetched == 10
    assert combination.status == CombinationStatus.PAUSED


async def test_guarded_execution_rejects_concurrent_run() -> None:
    store = FakeStore()
    combination = store.add_combination()
    locks = ExecutionLockRegistry()
    locks.acquire(combination.id)
    provider = FakeProvider([])

    result = await _service(store, provider, locks=locks).execute_page_guarded(FakeSession(), combination.id)

    assert result.error_code == ExecutionErrorCode.ALREADY_IN_PROGRESS
    assert provider.calls == []
    assert combination.status == CombinationStatus.PENDING


async def test_guarded_execution_releases_lock_after_failure() -> None:
    store = FakeStore()
    combination = store.add_combination()
    locks = ExecutionLockRegistry()

    await _service(store, FakeProvider([RuntimeError("boom")]), locks=locks).execute_page_guarded(
        FakeSession(),
        combination.id,
    )

    assert locks.is_locked(combination.id) is False


class _BlockingProvider(FakeProvider):
    def __init__(self) -> None:
        super().__init__(handler=lambda start_index: make_page(start_index, 10))
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def search(self, *, query, credentials, start_index):
        self.entered.set()
        await self.release.wait()
        return await super().search(query=query, credentials=credentials, start_index=start_index)


async def test_concurrent_guarded_executions_let_exactly_one_through() -> None:
    store = FakeStore()
    combination = store.add_combination()
    provider = _BlockingProvider()
    service = _service(store, provider)

    first = asyncio.create_task(service.execute_page_guarded(FakeSession(), combination.id))
    await provider.entered.wait()
    second = asyncio.create_task(service.execute_page_guarded(FakeSession(), combination.id))
    await asyncio.sleep(0)
    provider.release.set()
    results = await asyncio.gather(first, second)

    assert {result.error_code for result in results} == {None, ExecutionErrorCode.ALREADY_IN_PROGRESS}
    assert len(provider.calls) == 1
    assert combination.total_fetched == 10
    assert service.locks.is_locked(combination.id) is False
