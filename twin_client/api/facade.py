"""
TwinApiClient - typed entry point to the Living Twin API.

Each operation composes the transport, cache and decoders:

    cache lookup -> fresh hit | stale hit | miss
    miss / forced refresh -> transport -> decode -> write back -> Result

Stale hits are served immediately (tagged stale) while a detached task
refreshes the entry; refresh failures are logged and never reach the
caller. Mutations invalidate the cache keys they declare.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, TypeVar, assert_never

from loguru import logger

from twin_client.api.decoders import (
    Parser,
    decode,
    load_json,
    parse_conversation,
    parse_conversation_response,
    parse_conversation_summaries,
    parse_empty,
    parse_health_status,
    parse_ingest_response,
    parse_query_response,
    to_result,
)
from twin_client.api.models import (
    Conversation,
    ConversationResponse,
    ConversationSummary,
    HealthStatus,
    IngestRequest,
    IngestResponse,
    QueryRequest,
    QueryResponse,
)
from twin_client.services.cache import CacheEntry, CacheManager
from twin_client.services.cancellation import CancellationToken
from twin_client.services.deduplicator import RequestDeduplicator
from twin_client.services.errors import DecodeError, ErrorKind
from twin_client.services.result import LOADING, Failure, Loading, Result, Success
from twin_client.services.transport import RawResponse, RequestSpec, TransportClient

T = TypeVar("T")

CONVERSATIONS_PATH = "/query/conversations"

# outcomes after which a mutation may or may not have been applied
_UNCERTAIN_KINDS = frozenset(
    {ErrorKind.TIMEOUT, ErrorKind.NETWORK, ErrorKind.SERVER_ERROR, ErrorKind.UNKNOWN}
)


@dataclass(frozen=True)
class Invalidation:
    """A cache key (or key prefix) a mutation makes obsolete."""

    key: str
    prefix: bool = False


def conversations_key() -> str:
    return RequestSpec.get(CONVERSATIONS_PATH).cache_key()


def conversation_key(conversation_id: str) -> str:
    return RequestSpec.get(f"{CONVERSATIONS_PATH}/{conversation_id}").cache_key()


def _flight_key(key: str, generation: int) -> str:
    # reads issued after an invalidation never join a read started before it
    return f"{key}#{generation}"


def _unwrap_raw(result: Result[RawResponse]) -> RawResponse | Failure:
    if isinstance(result, Success):
        return result.value
    elif isinstance(result, Failure):
        return result
    elif isinstance(result, Loading):
        return Failure.of(ErrorKind.UNKNOWN, "Transport returned no outcome")
    else:
        assert_never(result)


class TwinApiClient:
    """
    Usage:
        api = TwinApiClient(transport, cache)
        result = await api.get_conversations()
        if isinstance(result, Success):
            for summary in result.value:
                ...
    """

    def __init__(
        self,
        transport: TransportClient,
        cache: CacheManager,
        *,
        stale_while_revalidate: bool = True,
        debug: bool = False,
    ):
        self._transport = transport
        self._cache = cache
        self._stale_while_revalidate = stale_while_revalidate
        self._reads = RequestDeduplicator(name="reads", debug=debug)
        self._background_tasks: set[asyncio.Task[None]] = set()

    # Generic building blocks

    async def fetch(
        self,
        spec: RequestSpec,
        parser: Parser[T],
        *,
        ttl: timedelta | None = None,
        force_refresh: bool = False,
        cancel_token: CancellationToken | None = None,
    ) -> Result[T]:
        """Cached read of `spec` decoded with `parser`."""
        key = spec.cache_key()
        generation = self._cache.generation
        stale: CacheEntry[T] | None = None

        if not force_refresh:
            entry = await self._cache.get(key, decode=to_result(parser))
            if entry is not None:
                if entry.is_fresh():
                    return Success(entry.value, from_cache=True)
                if self._stale_while_revalidate:
                    self._refresh_in_background(spec, parser, ttl, entry, generation)
                    return Success(entry.value, stale=True, from_cache=True)
                stale = entry

        if cancel_token is None:
            result = await self._reads.dedupe(
                _flight_key(key, generation),
                lambda: self._load(spec, parser, ttl, stale, None, generation),
            )
        else:
            result = await self._load(spec, parser, ttl, stale, cancel_token, generation)

        if isinstance(result, Failure) and stale is not None and result.kind.is_transient:
            logger.warning(
                f"Fetching {key} failed ({result.kind.value}), serving stale data"
            )
            return Success(stale.value, stale=True, from_cache=True)
        return result

    async def call(
        self,
        spec: RequestSpec,
        parser: Parser[T],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> Result[T]:
        """Uncached request decoded with `parser`."""
        raw = _unwrap_raw(await self._transport.execute(spec, cancel_token))
        if isinstance(raw, Failure):
            return raw
        return decode(raw.content, parser, raw.status_code)

    async def mutate(
        self,
        spec: RequestSpec,
        parser: Parser[T],
        invalidates: Iterable[Invalidation] = (),
        *,
        cancel_token: CancellationToken | None = None,
    ) -> Result[T]:
        """State-changing request followed by invalidation of `invalidates`."""
        invalidates = list(invalidates)
        raw = _unwrap_raw(await self._transport.execute(spec, cancel_token))

        if isinstance(raw, Failure):
            if raw.kind in _UNCERTAIN_KINDS:
                await self.invalidate(*invalidates)
            return raw

        await self.invalidate(*invalidates)
        return decode(raw.content, parser, raw.status_code)

    async def invalidate(self, *invalidations: Invalidation) -> int:
        removed = 0
        for item in invalidations:
            removed += await self._cache.invalidate(item.key, prefix=item.prefix)
        return removed

    async def observe(
        self, operation: Callable[[], Awaitable[Result[T]]]
    ) -> AsyncIterator[Result[T]]:
        """Yield LOADING, then the operation's result (for UI state holders)."""
        yield LOADING
        yield await operation()

    async def _load(
        self,
        spec: RequestSpec,
        parser: Parser[T],
        ttl: timedelta | None,
        stale: CacheEntry[T] | None,
        cancel_token: CancellationToken | None,
        generation: int,
    ) -> Result[T]:
        """Network fetch, decode and write-through."""
        key = spec.cache_key()
        request = spec
        if stale is not None and stale.etag:
            request = replace(
                spec, headers={**(spec.headers or {}), "If-None-Match": stale.etag}
            )

        raw = _unwrap_raw(await self._transport.execute(request, cancel_token))
        if isinstance(raw, Failure):
            return raw

        if raw.not_modified:
            if stale is None:
                return Failure.of(
                    ErrorKind.UNKNOWN, "Not Modified without a cached entry", 304
                )
            await self._cache.touch(key, generation)
            return Success(stale.value, from_cache=True)

        result = decode(raw.content, parser, raw.status_code)
        if isinstance(result, Success):
            try:
                payload = load_json(raw.content)
            except DecodeError:
                payload = None
            await self._cache.put(
                key,
                result.value,
                ttl,
                payload=payload,
                etag=raw.etag,
                generation=generation,
            )
        return result

    def _refresh_in_background(
        self,
        spec: RequestSpec,
        parser: Parser[Any],
        ttl: timedelta | None,
        stale: CacheEntry[Any],
        generation: int,
    ) -> None:
        """Refresh a stale entry in a detached task."""
        key = spec.cache_key()
        flight_key = _flight_key(key, generation)
        if self._reads.is_in_flight(flight_key):
            return

        async def refresh() -> None:
            try:
                result = await self._reads.dedupe(
                    flight_key,
                    lambda: self._load(spec, parser, ttl, stale, None, generation),
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Background refresh of {key} crashed")
                return

            if isinstance(result, Success):
                logger.debug(f"Background refresh of {key} completed")
            elif isinstance(result, Failure):
                logger.warning(
                    f"Background refresh of {key} failed "
                    f"({result.kind.value}): {result.message}"
                )
            elif isinstance(result, Loading):
                pass
            else:
                assert_never(result)

        task = asyncio.create_task(refresh())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def wait_for_background(self) -> None:
        """Wait until pending background refreshes finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # Living Twin operations

    async def conversational_query(
        self,
        question: str,
        conversation_id: str | None = None,
        k: int = 5,
        memory_window: int = 10,
        cancel_token: CancellationToken | None = None,
    ) -> Result[ConversationResponse]:
        """Ask a question within a conversation (memory-aware)."""
        body = QueryRequest(
            question=question,
            k=k,
            conversation_id=conversation_id,
            memory_window=memory_window,
        ).to_wire()

        invalidates = [Invalidation(conversations_key())]
        if conversation_id is not None:
            invalidates.append(Invalidation(conversation_key(conversation_id)))

        return await self.mutate(
            RequestSpec.post("/query/conversation/query", body),
            parse_conversation_response,
            invalidates,
            cancel_token=cancel_token,
        )

    async def get_conversations(
        self,
        force_refresh: bool = False,
        cancel_token: CancellationToken | None = None,
    ) -> Result[list[ConversationSummary]]:
        """List conversations."""
        return await self.fetch(
            RequestSpec.get(CONVERSATIONS_PATH),
            parse_conversation_summaries,
            force_refresh=force_refresh,
            cancel_token=cancel_token,
        )

    async def get_conversation(
        self,
        conversation_id: str,
        force_refresh: bool = False,
        cancel_token: CancellationToken | None = None,
    ) -> Result[Conversation]:
        """Full history of one conversation."""
        return await self.fetch(
            RequestSpec.get(f"{CONVERSATIONS_PATH}/{conversation_id}"),
            parse_conversation,
            force_refresh=force_refresh,
            cancel_token=cancel_token,
        )

    async def delete_conversation(
        self,
        conversation_id: str,
        cancel_token: CancellationToken | None = None,
    ) -> Result[None]:
        return await self.mutate(
            RequestSpec.delete(f"{CONVERSATIONS_PATH}/{conversation_id}"),
            parse_empty,
            [
                Invalidation(conversations_key()),
                Invalidation(conversation_key(conversation_id)),
            ],
            cancel_token=cancel_token,
        )

    async def query(
        self,
        question: str,
        k: int = 5,
        cancel_token: CancellationToken | None = None,
    ) -> Result[QueryResponse]:
        """One-off question without conversation memory."""
        body = QueryRequest(question=question, k=k).to_wire()
        # read-only on the server, so safe to re-issue
        return await self.call(
            RequestSpec.post("/query", body, idempotent=True),
            parse_query_response,
            cancel_token=cancel_token,
        )

    async def ingest_document(
        self,
        content: str,
        title: str,
        source: str | None = None,
        metadata: dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Result[IngestResponse]:
        body = IngestRequest(
            content=content, title=title, source=source, metadata=metadata
        ).to_wire()
        return await self.mutate(
            RequestSpec.post("/ingest", body),
            parse_ingest_response,
            cancel_token=cancel_token,
        )

    async def health_check(
        self, cancel_token: CancellationToken | None = None
    ) -> Result[HealthStatus]:
        return await self.call(
            RequestSpec.get("/healthz", max_attempts=1),
            parse_health_status,
            cancel_token=cancel_token,
        )

    # Lifecycle

    async def aclose(self) -> None:
        """Cancel background refreshes and close the transport."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._reads.cancel_all()
        await self._transport.close()
        logger.debug("TwinApiClient closed")

    async def __aenter__(self) -> "TwinApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
