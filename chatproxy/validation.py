"""Inbound chat payload checks and generation parameter bounds."""
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional
from chatproxy.constants import (
    DEFAULT_MODEL,
    DEFAULT_MAX_TOKENS_CEILING,
    DEFAULT_REQUEST_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    MIN_TEMPERATURE,
    MAX_TEMPERATURE,
    MAX_MESSAGES_COUNT,
    MAX_CONTENT_CHARS,
    MSG_INVALID_FORMAT,
    MSG_TOO_MANY_MESSAGES,
    MSG_CONTENT_TOO_LONG,
)
from chatproxy.errors import InvalidContent


@dataclass(frozen=True)
class GenerationOptions:
    model: str
    max_tokens: int
    temperature: float


def _content_length(message: Any) -> int:
    if not isinstance(message, dict):
        return 0
    content = message.get("content")
    if content is None:
        return 0
    if isinstance(content, str):
        return len(content)
    return len(str(content))


def validate_content(
    messages: Any,
    max_messages: int = MAX_MESSAGES_COUNT,
    max_chars: int = MAX_CONTENT_CHARS
) -> None:
    """
    Check the shape and size of an inbound message list.

    Raises:
        InvalidContent: If messages is missing or not a list, is empty,
            has more than ``max_messages`` entries, or the summed content
            length exceeds ``max_chars``.
    """
    if not isinstance(messages, (list, tuple)) or len(messages) == 0:
        raise InvalidContent(MSG_INVALID_FORMAT)

    if len(messages) > max_messages:
        raise InvalidContent(MSG_TOO_MANY_MESSAGES)

    total_length = sum(_content_length(m) for m in messages)
    if total_length > max_chars:
        raise InvalidContent(MSG_CONTENT_TOO_LONG)


def _number(value: Any) -> Optional[float]:
    # bool is an int subclass; JSON true/false is not a number here
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    # NaN and Infinity are accepted by json.loads
    return number if math.isfinite(number) else None


def parse_generation_options(
    body: Dict[str, Any],
    default_model: str = DEFAULT_MODEL,
    max_tokens_ceiling: int = DEFAULT_MAX_TOKENS_CEILING
) -> GenerationOptions:
    """Pull model, max_tokens and temperature out of a request body, clamped."""
    model = body.get("model")
    if not isinstance(model, str) or not model:
        model = default_model

    requested = _number(body.get("max_tokens"))
    if requested is None or requested <= 0:
        requested = DEFAULT_REQUEST_MAX_TOKENS
    max_tokens = int(min(requested, max_tokens_ceiling))

    temperature = _number(body.get("temperature"))
    if temperature is None:
        temperature = DEFAULT_TEMPERATURE
    temperature = max(MIN_TEMPERATURE, min(temperature, MAX_TEMPERATURE))

    return GenerationOptions(model=model, max_tokens=max_tokens, temperature=temperature)
