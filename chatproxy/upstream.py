"""Forwarding validated chat requests to the upstream completion API."""
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from chatproxy.circuit_breaker import CircuitBreaker
from chatproxy.config import Settings
from chatproxy.constants import UPSTREAM_USER_AGENT
from chatproxy.errors import MalformedUpstreamResponse, UpstreamError, UpstreamTimeout
from chatproxy.metrics import record_upstream_error, record_upstream_request
from chatproxy.validation import GenerationOptions

logger = logging.getLogger("chatproxy.upstream")

# Status reported to the client when the upstream could not be reached at all
TRANSPORT_FAILURE_STATUS = 502


@dataclass
class UpstreamCompletion:
    """Normalized view of a successful completion plus the raw payload."""
    content: Any
    role: Any
    usage: Dict[str, Any]
    payload: Dict[str, Any]


def build_request_body(messages: List[Any], options: GenerationOptions) -> Dict[str, Any]:
    return {
        "model": options.model,
        "messages": list(messages),
        "max_tokens": options.max_tokens,
        "temperature": options.temperature,
        "stream": False,
    }


def parse_completion(payload: Any) -> UpstreamCompletion:
    """
    Check the upstream body has a first choice with a message.

    Raises:
        MalformedUpstreamResponse: If the body is not the expected shape
    """
    if not isinstance(payload, dict):
        raise MalformedUpstreamResponse("response body is not a JSON object")
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise MalformedUpstreamResponse("response has no choices")
    first = choices[0]
    if not isinstance(first, dict) or first.get("message") is None:
        raise MalformedUpstreamResponse("first choice has no message")

    message = first["message"]
    usage = payload.get("usage")
    return UpstreamCompletion(
        content=message.get("content") if isinstance(message, dict) else None,
        role=message.get("role") if isinstance(message, dict) else None,
        usage=usage if isinstance(usage, dict) else {},
        payload=payload,
    )


def _is_upstream_fault(exc: BaseException) -> bool:
    """Only outages trip the breaker; caller mistakes (4xx) do not."""
    if isinstance(exc, UpstreamError):
        return exc.upstream_status >= 500
    return isinstance(exc, UpstreamTimeout)


class UpstreamForwarder:
    """
    Sends one non-streaming completion request per call. No retries.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        timeout: float,
        breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self.breaker = breaker
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "UpstreamForwarder":
        breaker = CircuitBreaker(
            "upstream",
            failure_threshold=settings.circuit_breaker_failure_threshold,
            recovery_timeout=settings.circuit_breaker_recovery_timeout,
            counts_as_failure=_is_upstream_fault,
        )
        return cls(
            endpoint=settings.upstream_endpoint,
            api_key=settings.deepseek_api_key,
            timeout=settings.upstream_timeout,
            breaker=breaker,
            transport=transport,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "User-Agent": UPSTREAM_USER_AGENT,
        }

    async def forward(self, messages: List[Any], options: GenerationOptions) -> UpstreamCompletion:
        if self.breaker is None:
            return await self._send(messages, options)
        return await self.breaker.call(self._send, messages, options)

    async def _send(self, messages: List[Any], options: GenerationOptions) -> UpstreamCompletion:
        body = build_request_body(messages, options)
        start = time.time()
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.post(self.endpoint, json=body, headers=self._headers())
        except httpx.TimeoutException as e:
            record_upstream_request(options.model, "timeout", time.time() - start)
            record_upstream_error("timeout")
            logger.error(f"Upstream timeout - endpoint={self.endpoint}, timeout={self.timeout}s: {e}")
            raise UpstreamTimeout(self.timeout) from e
        except httpx.RequestError as e:
            record_upstream_request(options.model, "transport_error", time.time() - start)
            record_upstream_error("transport")
            logger.error(f"Upstream unreachable - endpoint={self.endpoint}: {e}")
            raise UpstreamError(TRANSPORT_FAILURE_STATUS, str(e)) from e

        duration = time.time() - start
        record_upstream_request(options.model, str(response.status_code), duration)

        if not response.is_success:
            record_upstream_error(f"http_{response.status_code}")
            logger.error(f"Upstream API error - status={response.status_code}, response={response.text}")
            raise UpstreamError(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as e:
            record_upstream_error("malformed")
            raise MalformedUpstreamResponse("response body is not JSON") from e

        try:
            return parse_completion(payload)
        except MalformedUpstreamResponse as e:
            record_upstream_error("malformed")
            logger.error(f"Malformed upstream response - {e.detail}")
            raise
