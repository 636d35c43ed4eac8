"""
Credentials - bearer token snapshot and coalesced refresh.

The provider owns the credential; the core only reads snapshots and asks
for refreshes. CredentialManager makes refresh idempotent under concurrent
triggering: simultaneous callers share one in-flight refresh, and a caller
whose rejected token was already replaced reuses the new one.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol, assert_never, runtime_checkable

from loguru import logger

from twin_client.services.deduplicator import RequestDeduplicator
from twin_client.services.errors import CredentialError, ErrorKind
from twin_client.services.result import Failure, Loading, Result, Success

_REFRESH_KEY = "credential-refresh"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    """Opaque bearer token and its expiry."""

    token: str
    expires_at: datetime | None = None  # None: never expires

    def is_expired(self, skew: timedelta = timedelta(seconds=30)) -> bool:
        if self.expires_at is None:
            return False
        return _utcnow() + skew >= self.expires_at

    @property
    def authorization(self) -> str:
        return f"Bearer {self.token}"

    def __repr__(self) -> str:
        return f"Credential(token=***, expires_at={self.expires_at!r})"


@runtime_checkable
class CredentialProvider(Protocol):
    """Boundary to the authentication subsystem."""

    async def get_current_credential(self) -> Credential:
        """Return the credential currently held by the provider."""
        ...

    async def refresh_credential(self) -> Result[Credential]:
        """Obtain a new credential from the identity backend."""
        ...


class StaticCredentialProvider:
    """Fixed token; refresh always fails."""

    def __init__(self, token: str, expires_at: datetime | None = None):
        self._credential = Credential(token=token, expires_at=expires_at)

    async def get_current_credential(self) -> Credential:
        return self._credential

    async def refresh_credential(self) -> Result[Credential]:
        return Failure.of(ErrorKind.UNAUTHORIZED, "Static credential cannot refresh")


class CallbackCredentialProvider:
    """
    Adapts async token callables (e.g. an auth SDK's get-id-token and
    refresh-token calls) to the provider protocol.

    Callbacks return the token string, or None when no user is signed in.
    """

    def __init__(
        self,
        get_token: Callable[[], Awaitable[str | None]],
        refresh_token: Callable[[], Awaitable[str | None]],
        lifetime: timedelta | None = timedelta(hours=1),
    ):
        self._get_token = get_token
        self._refresh_token = refresh_token
        self._lifetime = lifetime
        self._credential: Credential | None = None

    def _wrap(self, token: str) -> Credential:
        expires_at = _utcnow() + self._lifetime if self._lifetime else None
        return Credential(token=token, expires_at=expires_at)

    async def get_current_credential(self) -> Credential:
        if self._credential is None or self._credential.is_expired():
            token = await self._get_token()
            if not token:
                raise CredentialError("No signed-in user")
            self._credential = self._wrap(token)
        return self._credential

    async def refresh_credential(self) -> Result[Credential]:
        try:
            token = await self._refresh_token()
        except Exception as e:
            logger.warning(f"Token refresh callback failed: {e}")
            return Failure.of(ErrorKind.UNAUTHORIZED, f"Token refresh failed: {e}")
        if not token:
            return Failure.of(ErrorKind.UNAUTHORIZED, "Token refresh returned nothing")
        self._credential = self._wrap(token)
        return Success(self._credential)


class CredentialManager:
    """
    Core-side view of the credential provider.

    snapshot() returns the credential to attach to one request;
    refresh(rejected) replaces a credential the server rejected.
    """

    def __init__(self, provider: CredentialProvider, debug: bool = False):
        self._provider = provider
        self._current: Credential | None = None
        self._dedup = RequestDeduplicator(name="credentials", debug=debug)
        self.refresh_count = 0

    async def snapshot(self) -> Result[Credential]:
        """Current credential, refreshing first if it has expired."""
        try:
            credential = await self._provider.get_current_credential()
        except CredentialError as e:
            return Failure.of(ErrorKind.UNAUTHORIZED, str(e))
        except Exception as e:
            logger.warning(f"Credential provider failed: {type(e).__name__}: {e}")
            return Failure.of(ErrorKind.UNAUTHORIZED, f"Credential unavailable: {e}")

        self._current = credential
        if credential.is_expired():
            logger.info("Credential expired, refreshing before request")
            return await self.refresh(credential)
        return Success(credential)

    async def refresh(self, rejected: Credential | None) -> Result[Credential]:
        """Replace `rejected` with a fresh credential.

        If the current credential already differs from the rejected one,
        another caller refreshed in the meantime and no new refresh is issued.
        """
        current = self._current
        if (
            rejected is not None
            and current is not None
            and current.token != rejected.token
            and not current.is_expired()
        ):
            return Success(current)

        return await self._dedup.dedupe(_REFRESH_KEY, self._do_refresh)

    async def _do_refresh(self) -> Result[Credential]:
        self.refresh_count += 1
        logger.info("Refreshing credential")
        try:
            result = await self._provider.refresh_credential()
        except CredentialError as e:
            logger.warning(f"Credential refresh failed: {e}")
            return Failure.of(ErrorKind.UNAUTHORIZED, str(e))
        except Exception as e:
            logger.warning(f"Credential refresh raised: {type(e).__name__}: {e}")
            return Failure.of(ErrorKind.UNAUTHORIZED, f"Credential refresh failed: {e}")

        if isinstance(result, Success):
            self._current = result.value
            return result
        elif isinstance(result, Failure):
            logger.warning(f"Credential refresh failed: {result.message}")
            # refresh failures always surface as unauthorized
            return Failure.of(ErrorKind.UNAUTHORIZED, result.message)
        elif isinstance(result, Loading):
            return Failure.of(ErrorKind.UNAUTHORIZED, "Credential refresh incomplete")
        else:
            assert_never(result)
