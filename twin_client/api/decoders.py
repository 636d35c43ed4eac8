"""
Decoder layer - validating parse functions, one per entity.

decode() turns raw response bytes into a typed Result and fails closed:
invalid JSON, a missing required field, a wrong shape or a bad collection
element all produce a decodeError Failure. Parsers raise DecodeError;
decode() is the only place it is converted.
"""

import json
from collections.abc import Callable
from typing import Any, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from twin_client.api.models import (
    Conversation,
    ConversationResponse,
    ConversationSummary,
    HealthStatus,
    IngestResponse,
    QueryResponse,
)
from twin_client.services.classifier import classify_decode_error
from twin_client.services.errors import DecodeError
from twin_client.services.result import Result, Success

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

Parser = Callable[[Any], T]


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors()[:3]:
        location = ".".join(str(p) for p in item["loc"]) or "<root>"
        parts.append(f"{location}: {item['msg']}")
    more = error.error_count() - len(parts)
    if more > 0:
        parts.append(f"... {more} more")
    return "; ".join(parts)


def parse_model(model: type[M], data: Any) -> M:
    """Validate `data` against a model, raising DecodeError on mismatch."""
    if not isinstance(data, dict):
        raise DecodeError(
            f"{model.__name__}: expected object, got {type(data).__name__}"
        )
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise DecodeError(f"{model.__name__}: {_describe(e)}") from e


def parse_list(data: Any, parse_item: Parser[T], what: str = "items") -> list[T]:
    """Decode a collection element-wise; any bad element fails the whole list."""
    if not isinstance(data, list):
        raise DecodeError(f"{what}: expected array, got {type(data).__name__}")
    items = []
    for index, element in enumerate(data):
        try:
            items.append(parse_item(element))
        except DecodeError as e:
            raise DecodeError(f"{what}[{index}]: {e}") from e
    return items


def parse_conversation_response(data: Any) -> ConversationResponse:
    return parse_model(ConversationResponse, data)


def parse_conversation_summaries(data: Any) -> list[ConversationSummary]:
    """`{"conversations": [...]}` envelope from the list endpoint."""
    if not isinstance(data, dict) or "conversations" not in data:
        raise DecodeError("conversation list: missing 'conversations'")
    return parse_list(
        data["conversations"],
        lambda item: parse_model(ConversationSummary, item),
        what="conversations",
    )


def parse_conversation(data: Any) -> Conversation:
    return parse_model(Conversation, data)


def parse_query_response(data: Any) -> QueryResponse:
    return parse_model(QueryResponse, data)


def parse_ingest_response(data: Any) -> IngestResponse:
    return parse_model(IngestResponse, data)


def parse_health_status(data: Any) -> HealthStatus:
    return parse_model(HealthStatus, data)


def parse_empty(data: Any) -> None:
    """Deletes answer with no body (or an ignorable one)."""
    return None


def to_result(parser: Parser[T]) -> Callable[[Any], Result[T]]:
    """Wrap a raising parser so it returns a Result (used for cached payloads)."""

    def decode_payload(data: Any) -> Result[T]:
        try:
            return Success(parser(data))
        except DecodeError as e:
            return classify_decode_error(str(e))

    return decode_payload


def load_json(content: bytes | str) -> Any:
    """Parse a JSON body; an empty body is None."""
    if not content or not content.strip():
        return None
    try:
        return json.loads(content)
    except ValueError as e:
        raise DecodeError(f"Invalid JSON: {e}") from e


def decode(
    content: bytes | str,
    parser: Parser[T],
    status_code: int | None = None,
) -> Result[T]:
    """Parse raw response content with `parser` into a Result."""
    try:
        return Success(parser(load_json(content)))
    except DecodeError as e:
        # contract mismatch with the backend, keep it visible
        logger.error(f"Decode failed: {e}")
        return classify_decode_error(str(e), status_code=status_code)
