"""
Attempt events emitted by the transport for tracing and metrics.
"""

from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from loguru import logger

from twin_client.services.errors import ErrorKind


@dataclass(frozen=True)
class AttemptEvent:
    """One network attempt and its outcome."""

    method: str
    path: str
    attempt: int
    latency: float  # seconds
    status_code: int | None = None
    kind: ErrorKind | None = None  # None when the attempt succeeded
    will_retry: bool = False
    delay: float = 0.0
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.kind is None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value if self.kind else None
        return data


EventSink = Callable[[AttemptEvent], None]


def log_attempt_event(event: AttemptEvent) -> None:
    """Default sink: structured loguru record per attempt."""
    bound = logger.bind(**event.to_dict())
    if event.succeeded:
        bound.debug(
            f"{event.method} {event.path} attempt {event.attempt} -> "
            f"{event.status_code} in {event.latency * 1000:.0f}ms"
        )
    elif event.will_retry:
        bound.warning(
            f"{event.method} {event.path} attempt {event.attempt} failed "
            f"({event.kind.value if event.kind else '?'}), retrying in {event.delay:.1f}s"
        )
    else:
        bound.warning(
            f"{event.method} {event.path} attempt {event.attempt} failed "
            f"({event.kind.value if event.kind else '?'}): {event.reason}"
        )
