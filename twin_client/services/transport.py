"""
TransportClient - async HTTP execution with credentials, retry and cancellation.

Combines:
- CredentialManager for bearer tokens (one refresh-and-reissue on 401)
- RetryPolicy for exponential backoff with jitter and Retry-After
- CancellationToken for cooperative aborts between and during attempts
- AttemptEvent sink for per-attempt observability

execute() never raises for request failures: every outcome is returned as
a Success carrying the RawResponse or a classified Failure.
"""

import asyncio
import hashlib
import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Mapping, assert_never

import httpx
from loguru import logger

from twin_client.services.cancellation import CancellationToken
from twin_client.services.classifier import TransportOutcome, to_failure
from twin_client.services.credentials import Credential, CredentialManager
from twin_client.services.errors import ErrorKind
from twin_client.services.result import Failure, Loading, Result, Success
from twin_client.services.retry import RetryPolicy
from twin_client.services.telemetry import AttemptEvent, EventSink, log_attempt_event

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})


@dataclass(frozen=True)
class RequestSpec:
    """Immutable description of one logical request."""

    method: str
    path: str
    params: Mapping[str, Any] | None = None
    body: Any = None
    idempotent: bool = False  # caller-asserted: safe to issue twice
    timeout: float | None = None
    max_attempts: int | None = None  # overrides the policy's attempt budget
    headers: Mapping[str, str] | None = None

    @classmethod
    def for_method(cls, method: str, path: str, **kwargs: Any) -> "RequestSpec":
        """Build a spec, defaulting the idempotency flag from the verb."""
        method = method.upper()
        kwargs.setdefault("idempotent", method in IDEMPOTENT_METHODS)
        return cls(method=method, path=path, **kwargs)

    @classmethod
    def get(cls, path: str, **kwargs: Any) -> "RequestSpec":
        return cls.for_method("GET", path, **kwargs)

    @classmethod
    def post(cls, path: str, body: Any = None, **kwargs: Any) -> "RequestSpec":
        return cls.for_method("POST", path, body=body, **kwargs)

    @classmethod
    def put(cls, path: str, body: Any = None, **kwargs: Any) -> "RequestSpec":
        return cls.for_method("PUT", path, body=body, **kwargs)

    @classmethod
    def patch(cls, path: str, body: Any = None, **kwargs: Any) -> "RequestSpec":
        return cls.for_method("PATCH", path, body=body, **kwargs)

    @classmethod
    def delete(cls, path: str, **kwargs: Any) -> "RequestSpec":
        return cls.for_method("DELETE", path, **kwargs)

    def cache_key(self) -> str:
        """Deterministic cache key: verb, path, sorted params, body digest."""
        key = f"{self.method.upper()} {self.path}"
        if self.params:
            query = "&".join(f"{k}={v}" for k, v in sorted(self.params.items()))
            key = f"{key}?{query}"
        if self.body is not None:
            digest = hashlib.sha256(
                json.dumps(self.body, sort_keys=True, default=str).encode()
            ).hexdigest()[:16]
            key = f"{key}#{digest}"
        return key


@dataclass(frozen=True)
class RawResponse:
    """Undecoded successful response."""

    status_code: int
    headers: httpx.Headers
    content: bytes
    elapsed: float = 0.0

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304

    @property
    def etag(self) -> str | None:
        return self.headers.get("etag")

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.content)


class TransportClient:
    """
    Usage:
        transport = TransportClient(
            base_url="https://api.example.com",
            credentials=CredentialManager(provider),
        )
        result = await transport.execute(RequestSpec.get("/healthz"))
    """

    def __init__(
        self,
        base_url: str,
        credentials: CredentialManager,
        policy: RetryPolicy | None = None,
        *,
        timeout: float = 30.0,
        event_sink: EventSink | None = log_attempt_event,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url
        self._credentials = credentials
        self._policy = policy or RetryPolicy()
        self._timeout = timeout
        self._event_sink = event_sink
        self._sleep = sleep
        self._http_client = http_client

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
            )
        return self._http_client

    async def execute(
        self,
        spec: RequestSpec,
        cancel_token: CancellationToken | None = None,
    ) -> Result[RawResponse]:
        """Run `spec` to completion under the retry policy."""
        if cancel_token is not None and cancel_token.cancelled:
            return self._cancelled()

        snapshot = await self._credentials.snapshot()
        if isinstance(snapshot, Success):
            credential = snapshot.value
        elif isinstance(snapshot, Failure):
            return snapshot
        elif isinstance(snapshot, Loading):
            return Failure.of(ErrorKind.UNAUTHORIZED, "Credential not available")
        else:
            assert_never(snapshot)

        attempt = 0  # network attempts, for events
        budget_used = 0  # attempts counted against the retry budget
        unknown_retries = 0
        refreshed = False
        reissue = False

        while True:
            if cancel_token is not None and cancel_token.cancelled:
                return self._cancelled()

            attempt += 1
            if not reissue:
                budget_used += 1
            reissue = False

            started = time.monotonic()
            outcome = await self._send(spec, credential, cancel_token)
            latency = time.monotonic() - started

            if isinstance(outcome, RawResponse):
                self._emit(
                    AttemptEvent(
                        spec.method,
                        spec.path,
                        attempt,
                        latency,
                        status_code=outcome.status_code,
                    )
                )
                return Success(outcome)

            failure = to_failure(outcome)

            if failure.kind is ErrorKind.CANCELLED:
                self._emit_failure(spec, attempt, latency, failure, reason="cancelled")
                return failure

            if failure.kind is ErrorKind.UNAUTHORIZED:
                if refreshed:
                    self._emit_failure(
                        spec, attempt, latency, failure, reason="rejected after refresh"
                    )
                    return failure
                if cancel_token is not None and cancel_token.cancelled:
                    self._emit_failure(spec, attempt, latency, failure, reason="cancelled")
                    return self._cancelled()

                refreshed = True
                self._emit_failure(
                    spec,
                    attempt,
                    latency,
                    failure,
                    will_retry=spec.idempotent,
                    reason="refreshing credential",
                )
                refresh = await self._credentials.refresh(credential)
                if isinstance(refresh, Success):
                    credential = refresh.value
                elif isinstance(refresh, Failure):
                    return Failure.of(
                        ErrorKind.UNAUTHORIZED,
                        refresh.message,
                        status_code=failure.status_code,
                    )
                elif isinstance(refresh, Loading):
                    return failure
                else:
                    assert_never(refresh)

                if not spec.idempotent:
                    return failure.with_message(
                        f"{failure.message} (credential refreshed, request not re-issued)"
                    )
                reissue = True
                continue

            decision = self._policy.decide(spec, budget_used, failure, unknown_retries)
            self._emit_failure(
                spec,
                attempt,
                latency,
                failure,
                will_retry=decision.retry,
                delay=decision.delay,
                reason=decision.reason,
            )
            if not decision.retry:
                return failure

            if failure.kind is ErrorKind.UNKNOWN:
                unknown_retries += 1

            if not await self._wait(decision.delay, cancel_token):
                return self._cancelled()

    async def _send(
        self,
        spec: RequestSpec,
        credential: Credential,
        cancel_token: CancellationToken | None,
    ) -> RawResponse | TransportOutcome:
        """Issue one attempt; never raises for transport errors."""
        client = await self._get_http_client()
        timeout = spec.timeout if spec.timeout is not None else self._timeout

        headers = {
            "Authorization": credential.authorization,
            "Accept": "application/json",
        }
        if spec.headers:
            headers.update(spec.headers)

        request = client.request(
            method=spec.method,
            url=spec.path,
            params=dict(spec.params) if spec.params else None,
            json=spec.body,
            headers=headers,
            timeout=timeout,
        )

        started = time.monotonic()
        try:
            if cancel_token is None:
                response = await request
            else:
                completed, response = await cancel_token.race(request)
                if not completed or response is None:
                    return TransportOutcome(
                        cancelled=True,
                        elapsed=time.monotonic() - started,
                        timeout=timeout,
                    )
        except Exception as e:
            return TransportOutcome(
                exception=e,
                elapsed=time.monotonic() - started,
                timeout=timeout,
            )

        elapsed = time.monotonic() - started
        status = response.status_code
        if 200 <= status < 300 or status == 304:
            return RawResponse(
                status_code=status,
                headers=response.headers,
                content=response.content,
                elapsed=elapsed,
            )

        return TransportOutcome(
            status_code=status,
            elapsed=elapsed,
            timeout=timeout,
            body=response.content,
            headers=response.headers,
        )

    async def _wait(self, delay: float, cancel_token: CancellationToken | None) -> bool:
        """Sleep between attempts. Returns False if cancelled meanwhile."""
        if cancel_token is None:
            if delay > 0:
                await self._sleep(delay)
            return True

        if delay > 0:
            completed, _ = await cancel_token.race(self._sleep(delay))
            if not completed:
                return False
        return not cancel_token.cancelled

    def _cancelled(self) -> Failure:
        return Failure.of(ErrorKind.CANCELLED, "Request cancelled")

    def _emit_failure(
        self,
        spec: RequestSpec,
        attempt: int,
        latency: float,
        failure: Failure,
        *,
        will_retry: bool = False,
        delay: float = 0.0,
        reason: str = "",
    ) -> None:
        self._emit(
            AttemptEvent(
                spec.method,
                spec.path,
                attempt,
                latency,
                status_code=failure.status_code,
                kind=failure.kind,
                will_retry=will_retry,
                delay=delay,
                reason=reason or failure.message,
            )
        )

    def _emit(self, event: AttemptEvent) -> None:
        if self._event_sink is None:
            return
        try:
            self._event_sink(event)
        except Exception:
            logger.exception("Attempt event sink failed")

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.debug("TransportClient closed")

    async def __aenter__(self) -> "TransportClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
