"""Tests for TwinApiClient: caching, revalidation and invalidation."""

import asyncio
import json
from datetime import timedelta

import httpx
import pytest
import respx

from fakes import BASE_URL, FakeSleep
from twin_client.api import (
    ConversationResponse,
    TwinApiClient,
    conversation_key,
    conversations_key,
)
from twin_client.services import (
    LOADING,
    CacheManager,
    CancellationToken,
    CredentialManager,
    Failure,
    Success,
    TransportClient,
)
from twin_client.services.errors import ErrorKind

SUMMARIES = {
    "conversations": [
        {"id": "c-1", "title": "Quarterly plan", "lastModified": "2024-05-01T10:00:00Z"},
    ]
}
RENAMED = {
    "conversations": [
        {"id": "c-1", "title": "Q3 plan", "lastModified": "2024-05-02T10:00:00Z"},
    ]
}


def _conversation(conversation_id: str) -> dict:
    return {
        "id": conversation_id,
        "title": f"Conversation {conversation_id}",
        "createdAt": "2024-05-01T09:00:00Z",
        "lastModified": "2024-05-01T09:00:05Z",
        "messages": [
            {"role": "user", "content": "hello", "timestamp": "2024-05-01T09:00:00Z"},
            {"role": "assistant", "content": "hi", "timestamp": "2024-05-01T09:00:05Z"},
        ],
    }


class GatedBackend:
    """Holds conversation-list requests until released; deletes answer at once."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.list_requests = 0
        self.list_arrived = [asyncio.Event() for _ in range(3)]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "DELETE":
            return httpx.Response(204)
        self.list_requests += 1
        self.list_arrived[min(self.list_requests, 3) - 1].set()
        await self.release.wait()
        return httpx.Response(200, json=SUMMARIES)


@pytest.fixture
def stale_cache() -> CacheManager:
    """Cache whose entries are stale as soon as they are written."""
    return CacheManager(default_ttl=timedelta(0))


@pytest.fixture
def stale_api(transport: TransportClient, stale_cache: CacheManager) -> TwinApiClient:
    return TwinApiClient(transport, stale_cache, stale_while_revalidate=False)


@pytest.fixture
async def swr_api(transport: TransportClient, stale_cache: CacheManager) -> TwinApiClient:
    api = TwinApiClient(transport, stale_cache, stale_while_revalidate=True)
    yield api
    await api.aclose()


@pytest.fixture
async def gated(credentials: CredentialManager, cache: CacheManager):
    backend = GatedBackend()
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(backend), base_url=BASE_URL
    )
    transport = TransportClient(BASE_URL, credentials, http_client=http_client)
    api = TwinApiClient(transport, cache, stale_while_revalidate=False)
    yield api, backend
    await api.aclose()


class TestCachedReads:
    async def test_fresh_hit_skips_network(self, api: TwinApiClient, api_mock) -> None:
        """Test a fresh entry is served without a request."""
        route = api_mock.get("/query/conversations").mock(
            return_value=httpx.Response(200, json=SUMMARIES)
        )

        first = await api.get_conversations()
        second = await api.get_conversations()

        assert route.call_count == 1
        assert isinstance(first, Success) and not first.from_cache
        assert isinstance(second, Success)
        assert second.from_cache and not second.stale
        assert second.value == first.value
        assert second.value[0].title == "Quarterly plan"

    async def test_stale_entry_refetched(self, stale_api: TwinApiClient, api_mock) -> None:
        route = api_mock.get("/query/conversations").mock(
            side_effect=[
                httpx.Response(200, json=SUMMARIES),
                httpx.Response(200, json=RENAMED),
            ]
        )

        await stale_api.get_conversations()
        result = await stale_api.get_conversations()

        assert route.call_count == 2
        assert isinstance(result, Success)
        assert not result.from_cache
        assert result.value[0].title == "Q3 plan"

    async def test_force_refresh_bypasses_fresh_entry(
        self, api: TwinApiClient, api_mock
    ) -> None:
        route = api_mock.get("/query/conversations").mock(
            side_effect=[
                httpx.Response(200, json=SUMMARIES),
                httpx.Response(200, json=RENAMED),
            ]
        )

        await api.get_conversations()
        result = await api.get_conversations(force_refresh=True)

        assert route.call_count == 2
        assert result.value[0].title == "Q3 plan"
        assert (await api.get_conversations()).value[0].title == "Q3 plan"

    async def test_force_refresh_failure_not_masked(
        self, api: TwinApiClient, api_mock
    ) -> None:
        api_mock.get("/query/conversations").mock(
            side_effect=[httpx.Response(200, json=SUMMARIES), httpx.Response(404)]
        )

        await api.get_conversations()
        result = await api.get_conversations(force_refresh=True)

        assert isinstance(result, Failure)
        assert result.kind is ErrorKind.NOT_FOUND

    async def test_decode_failure_not_cached(
        self, api: TwinApiClient, cache: CacheManager, api_mock
    ) -> None:
        api_mock.get("/query/conversations").mock(
            return_value=httpx.Response(200, json={"conversations": [{"id": "c-1"}]})
        )

        result = await api.get_conversations()

        assert isinstance(result, Failure)
        assert result.kind is ErrorKind.DECODE_ERROR
        assert conversations_key() not in cache

    async def test_concurrent_identical_reads_share_request(
        self, api: TwinApiClient, api_mock
    ) -> None:
        route = api_mock.get("/query/conversations").mock(
            return_value=httpx.Response(200, json=SUMMARIES)
        )

        first, second = await asyncio.gather(
            api.get_conversations(), api.get_conversations()
        )

        assert route.call_count == 1
        assert first.value == second.value

    async def test_get_conversation(self, api: TwinApiClient, api_mock) -> None:
        api_mock.get("/query/conversations/c-1").mock(
            return_value=httpx.Response(200, json=_conversation("c-1"))
        )

        result = await api.get_conversation("c-1")

        assert isinstance(result, Success)
        assert [m.content for m in result.value.messages] == ["hello", "hi"]

    async def test_cancelled_read(self, api: TwinApiClient, api_mock) -> None:
        route = api_mock.get("/query/conversations").mock(
            return_value=httpx.Response(200, json=SUMMARIES)
        )
        token = CancellationToken()
        token.cancel()

        result = await api.get_conversations(cancel_token=token)

        assert isinstance(result, Failure)
        assert result.kind is ErrorKind.CANCELLED
        assert route.call_count == 0


class TestStaleWhileRevalidate:
    async def test_stale_served_then_refreshed(
        self, swr_api: TwinApiClient, stale_cache: CacheManager, api_mock
    ) -> None:
        route = api_mock.get("/query/conversations").mock(
            side_effect=[
                httpx.Response(200, json=SUMMARIES),
                httpx.Response(200, json=RENAMED),
            ]
        )

        await swr_api.get_conversations()
        result = await swr_api.get_conversations()

        assert isinstance(result, Success)
        assert result.stale and result.from_cache
        assert result.value[0].title == "Quarterly plan"

        await swr_api.wait_for_background()

        assert route.call_count == 2
        entry = await stale_cache.get(conversations_key())
        assert entry.value[0].title == "Q3 plan"

    async def test_background_failure_not_surfaced(
        self, swr_api: TwinApiClient, stale_cache: CacheManager, api_mock
    ) -> None:
        api_mock.get("/query/conversations").mock(
            side_effect=[httpx.Response(200, json=SUMMARIES), httpx.Response(404)]
        )

        await swr_api.get_conversations()
        result = await swr_api.get_conversations()
        await swr_api.wait_for_background()

        assert isinstance(result, Success)
        assert result.stale
        entry = await stale_cache.get(conversations_key())
        assert entry.value[0].title == "Quarterly plan"


class TestOfflineFallback:
    async def test_transient_failure_serves_stale(
        self, stale_api: TwinApiClient, api_mock, sleeper: FakeSleep
    ) -> None:
        route = api_mock.get("/query/conversations").mock(
            side_effect=[
                httpx.Response(200, json=SUMMARIES),
                httpx.ConnectError,
                httpx.ConnectError,
                httpx.ConnectError,
            ]
        )

        await stale_api.get_conversations()
        result = await stale_api.get_conversations()

        assert route.call_count == 4
        assert sleeper.delays == [2.0, 4.0]
        assert isinstance(result, Success)
        assert result.stale and result.from_cache
        assert result.value[0].title == "Quarterly plan"

    async def test_final_failure_not_masked(
        self, stale_api: TwinApiClient, api_mock
    ) -> None:
        api_mock.get("/query/conversations").mock(
            side_effect=[httpx.Response(200, json=SUMMARIES), httpx.Response(403)]
        )

        await stale_api.get_conversations()
        result = await stale_api.get_conversations()

        assert isinstance(result, Failure)
        assert result.kind is ErrorKind.FORBIDDEN

    async def test_failure_without_cache(self, api: TwinApiClient, api_mock) -> None:
        api_mock.get("/query/conversations").mock(side_effect=httpx.ConnectError)

        result = await api.get_conversations()

        assert isinstance(result, Failure)
        assert result.kind is ErrorKind.NETWORK


class TestRevalidation:
    async def test_not_modified_reuses_cached_value(
        self, stale_api: TwinApiClient, api_mock
    ) -> None:
        route = api_mock.get("/query/conversations").mock(
            side_effect=[
                httpx.Response(200, json=SUMMARIES, headers={"ETag": '"v1"'}),
                httpx.Response(304),
            ]
        )

        first = await stale_api.get_conversations()
        second = await stale_api.get_conversations()

        assert route.calls.last.request.headers["If-None-Match"] == '"v1"'
        assert isinstance(second, Success)
        assert second.from_cache and not second.stale
        assert second.value == first.value

    async def test_no_validator_without_etag(
        self, stale_api: TwinApiClient, api_mock
    ) -> None:
        route = api_mock.get("/query/conversations").mock(
            return_value=httpx.Response(200, json=SUMMARIES)
        )

        await stale_api.get_conversations()
        await stale_api.get_conversations()

        assert "If-None-Match" not in route.calls.last.request.headers


class TestMutations:
    async def _populate(self, api: TwinApiClient, api_mock) -> respx.Route:
        list_route = api_mock.get("/query/conversations").mock(
            return_value=httpx.Response(200, json=SUMMARIES)
        )
        for conversation_id in ("c-1", "c-2"):
            api_mock.get(f"/query/conversations/{conversation_id}").mock(
                return_value=httpx.Response(200, json=_conversation(conversation_id))
            )
        await api.get_conversations()
        await api.get_conversation("c-1")
        await api.get_conversation("c-2")
        return list_route

    async def test_delete_invalidates_list_and_conversation(
        self, api: TwinApiClient, cache: CacheManager, api_mock
    ) -> None:
        await self._populate(api, api_mock)
        api_mock.delete("/query/conversations/c-1").mock(return_value=httpx.Response(204))

        result = await api.delete_conversation("c-1")

        assert result == Success(None)
        assert conversations_key() not in cache
        assert conversation_key("c-1") not in cache
        assert conversation_key("c-2") in cache

    async def test_list_refetched_after_delete(
        self, api: TwinApiClient, api_mock
    ) -> None:
        list_route = await self._populate(api, api_mock)
        api_mock.delete("/query/conversations/c-1").mock(return_value=httpx.Response(204))

        await api.delete_conversation("c-1")
        result = await api.get_conversations()

        assert not result.from_cache
        assert list_route.call_count == 2

    async def test_conversational_query_invalidates(
        self, api: TwinApiClient, cache: CacheManager, api_mock
    ) -> None:
        await self._populate(api, api_mock)
        route = api_mock.post("/query/conversation/query").mock(
            return_value=httpx.Response(
                200,
                json={"answer": "42", "conversationId": "c-1", "confidence": 0.9},
            )
        )

        result = await api.conversational_query("meaning?", conversation_id="c-1")

        assert result == Success(
            ConversationResponse(answer="42", conversation_id="c-1", confidence=0.9)
        )
        assert json.loads(route.calls.last.request.content) == {
            "question": "meaning?",
            "k": 5,
            "conversationId": "c-1",
            "memoryWindow": 10,
        }
        assert conversations_key() not in cache
        assert conversation_key("c-1") not in cache
        assert conversation_key("c-2") in cache

    async def test_rejected_mutation_keeps_cache(
        self, api: TwinApiClient, cache: CacheManager, api_mock
    ) -> None:
        await self._populate(api, api_mock)
        api_mock.post("/query/conversation/query").mock(
            return_value=httpx.Response(400, json={"detail": "question is empty"})
        )

        result = await api.conversational_query("", conversation_id="c-1")

        assert isinstance(result, Failure)
        assert result.kind is ErrorKind.BAD_REQUEST
        assert conversations_key() in cache
        assert conversation_key("c-1") in cache

    async def test_uncertain_mutation_invalidates(
        self, api: TwinApiClient, cache: CacheManager, api_mock
    ) -> None:
        """A timed-out POST may have been applied, so cached views are dropped."""
        await self._populate(api, api_mock)
        route = api_mock.post("/query/conversation/query").mock(
            side_effect=httpx.ReadTimeout
        )

        result = await api.conversational_query("meaning?", conversation_id="c-1")

        assert isinstance(result, Failure)
        assert result.kind is ErrorKind.TIMEOUT
        assert route.call_count == 1
        assert conversations_key() not in cache

    async def test_new_conversation_invalidates_list_only(
        self, api: TwinApiClient, cache: CacheManager, api_mock
    ) -> None:
        await self._populate(api, api_mock)
        api_mock.post("/query/conversation/query").mock(
            return_value=httpx.Response(200, json={"answer": "hi", "conversationId": "c-3"})
        )

        await api.conversational_query("hello")

        assert conversations_key() not in cache
        assert conversation_key("c-1") in cache

    async def test_read_in_flight_during_delete_not_cached(
        self, gated, cache: CacheManager
    ) -> None:
        """A list fetched before the delete must not repopulate the cache."""
        api, backend = gated
        listing = asyncio.create_task(api.get_conversations())
        await backend.list_arrived[0].wait()

        deleted = await api.delete_conversation("c-1")
        backend.release.set()
        result = await listing

        assert deleted == Success(None)
        assert result.is_success
        assert conversations_key() not in cache

    async def test_read_after_delete_does_not_join_earlier_read(
        self, gated, cache: CacheManager
    ) -> None:
        api, backend = gated
        first = asyncio.create_task(api.get_conversations())
        await backend.list_arrived[0].wait()
        await api.delete_conversation("c-1")

        second = asyncio.create_task(api.get_conversations())
        await asyncio.wait_for(backend.list_arrived[1].wait(), timeout=1.0)
        backend.release.set()
        await asyncio.gather(first, second)

        assert backend.list_requests == 2
        assert conversations_key() in cache


class TestUncachedOperations:
    async def test_query_is_retried(
        self, api: TwinApiClient, cache: CacheManager, api_mock
    ) -> None:
        route = api_mock.post("/query").mock(
            side_effect=[
                httpx.Response(503),
                httpx.Response(200, json={"answer": "a", "sources": None}),
            ]
        )

        result = await api.query("what?", k=3)

        assert isinstance(result, Success)
        assert result.value.sources == []
        assert route.call_count == 2
        assert json.loads(route.calls.last.request.content) == {"question": "what?", "k": 3}
        assert len(cache) == 0

    async def test_ingest_document(self, api: TwinApiClient, api_mock) -> None:
        route = api_mock.post("/ingest").mock(
            return_value=httpx.Response(200, json={"documentId": "d-1"})
        )

        result = await api.ingest_document(
            "body text", "Design notes", metadata={"team": "core"}
        )

        assert isinstance(result, Success)
        assert result.value.document_id == "d-1"
        assert json.loads(route.calls.last.request.content) == {
            "content": "body text",
            "title": "Design notes",
            "metadata": {"team": "core"},
        }

    async def test_health_check_single_attempt(self, api: TwinApiClient, api_mock) -> None:
        route = api_mock.get("/healthz").mock(return_value=httpx.Response(503))

        result = await api.health_check()

        assert isinstance(result, Failure)
        assert result.kind is ErrorKind.SERVER_ERROR
        assert route.call_count == 1

    async def test_health_check(self, api: TwinApiClient, api_mock) -> None:
        api_mock.get("/healthz").mock(
            return_value=httpx.Response(200, json={"status": "ok", "details": {"db": "up"}})
        )

        result = await api.health_check()

        assert result.value.is_healthy


class TestObserve:
    async def test_loading_then_result(self, api: TwinApiClient, api_mock) -> None:
        api_mock.get("/query/conversations").mock(
            return_value=httpx.Response(200, json=SUMMARIES)
        )

        states = [state async for state in api.observe(api.get_conversations)]

        assert states[0] is LOADING
        assert isinstance(states[1], Success)
        assert len(states) == 2


async def test_context_manager_closes_transport(
    transport: TransportClient, cache: CacheManager, api_mock
) -> None:
    api_mock.get("/healthz").mock(return_value=httpx.Response(200, json={"status": "ok"}))

    async with TwinApiClient(transport, cache) as api:
        assert (await api.health_check()).is_success

    assert transport._http_client is None
