"""
Result - the container every API operation returns.

Exactly one of Success, Failure or Loading. Callers branch on the variant
before touching a value:

    result = await api.get_conversation("abc")
    text = result.fold(
        on_success=lambda conversation: conversation.title,
        on_failure=lambda failure: f"error: {failure.kind.value}",
        on_loading=lambda: "loading...",
    )
"""

from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any, Generic, TypeVar, Union

from twin_client.services.errors import ErrorKind

T = TypeVar("T")
U = TypeVar("U")
R = TypeVar("R")


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    """Operation produced a value."""

    value: T
    stale: bool = False  # served from cache past its TTL
    from_cache: bool = False

    @property
    def is_success(self) -> bool:
        return True

    @property
    def is_failure(self) -> bool:
        return False

    @property
    def is_loading(self) -> bool:
        return False

    def fold(
        self,
        on_success: Callable[[T], R],
        on_failure: Callable[["Failure"], R],
        on_loading: Callable[[], R] | None = None,
    ) -> R:
        return on_success(self.value)

    def map(self, transform: Callable[[T], U]) -> "Success[U]":
        return Success(
            transform(self.value), stale=self.stale, from_cache=self.from_cache
        )


@dataclass(frozen=True, slots=True)
class Failure:
    """Operation failed with a classified error."""

    kind: ErrorKind
    message: str
    retryable: bool
    status_code: int | None = None
    retry_after: float | None = None  # seconds, from a Retry-After header

    @classmethod
    def of(
        cls,
        kind: ErrorKind,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> "Failure":
        """Build a failure whose retryable flag follows from its kind."""
        return cls(
            kind=kind,
            message=message,
            retryable=kind.retryable,
            status_code=status_code,
            retry_after=retry_after,
        )

    @property
    def is_success(self) -> bool:
        return False

    @property
    def is_failure(self) -> bool:
        return True

    @property
    def is_loading(self) -> bool:
        return False

    def fold(
        self,
        on_success: Callable[[Any], R],
        on_failure: Callable[["Failure"], R],
        on_loading: Callable[[], R] | None = None,
    ) -> R:
        return on_failure(self)

    def map(self, transform: Callable[[Any], Any]) -> "Failure":
        return self

    def with_message(self, message: str) -> "Failure":
        return replace(self, message=message)


@dataclass(frozen=True, slots=True)
class Loading:
    """Operation has not completed yet."""

    @property
    def is_success(self) -> bool:
        return False

    @property
    def is_failure(self) -> bool:
        return False

    @property
    def is_loading(self) -> bool:
        return True

    def fold(
        self,
        on_success: Callable[[Any], R],
        on_failure: Callable[[Failure], R],
        on_loading: Callable[[], R] | None = None,
    ) -> R | None:
        """Run the loading branch; folds to None when none is given."""
        if on_loading is None:
            return None
        return on_loading()

    def map(self, transform: Callable[[Any], Any]) -> "Loading":
        return self


LOADING = Loading()

Result = Union[Success[T], Failure, Loading]
