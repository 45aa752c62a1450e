"""Request orchestration for the free tier chat proxy."""
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Dict, Mapping, Optional
from zoneinfo import ZoneInfo

from starlette.concurrency import run_in_threadpool

from chatproxy.config import Settings
from chatproxy.constants import (
    CORS_HEADERS,
    CORS_MAX_AGE_SECONDS,
    DAILY_RESET_HOURS,
    HOURLY_RESET_HOURS,
    MSG_SERVICE_UNAVAILABLE,
)
from chatproxy.errors import (
    ChatProxyException,
    ConfigError,
    DailyLimitExceeded,
    ErrorCode,
    HourlyLimitExceeded,
    InvalidContent,
    MethodNotAllowed,
    OriginRejected,
    QuotaExceeded,
)
from chatproxy.fingerprint import fingerprint_from_headers
from chatproxy.ledger import UsageLedger
from chatproxy.metrics import (
    record_quota_hit,
    record_quota_rejection,
    record_quota_release,
    record_request,
    record_sweep,
)
from chatproxy.quota import QuotaDecision, QuotaLimits, day_key, evaluate, hour_of_day, reset_time
from chatproxy.upstream import UpstreamCompletion, UpstreamForwarder
from chatproxy.validation import parse_generation_options, validate_content

logger = logging.getLogger("chatproxy.handler")


@dataclass
class ProxyResponse:
    status_code: int
    body: Optional[Dict[str, Any]]
    headers: Dict[str, str] = field(default_factory=dict)


def cors_headers(preflight: bool = False) -> Dict[str, str]:
    headers = dict(CORS_HEADERS)
    if preflight:
        headers["Access-Control-Max-Age"] = str(CORS_MAX_AGE_SECONDS)
    return headers


def _clock_for(tz_name: str) -> Callable[[], datetime]:
    tz: tzinfo = timezone.utc if tz_name.upper() == "UTC" else ZoneInfo(tz_name)
    return lambda: datetime.now(tz)


class ChatProxy:
    """
    Handles one inbound call: CORS, method and origin checks, quota,
    content validation, forwarding and usage accounting.

    Ledger calls may block on a socket, so they run in the threadpool.

    The ledger is charged only after the upstream returned a well-formed
    completion. With ``strict_quota`` the charge is taken up front as an
    atomic reservation and rolled back on any later failure.
    """

    def __init__(
        self,
        settings: Settings,
        ledger: UsageLedger,
        forwarder: UpstreamForwarder,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[Callable[[], float]] = None
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.forwarder = forwarder
        self.limits = QuotaLimits(settings.daily_limit, settings.hourly_limit)
        self.clock = clock or _clock_for(settings.clock_timezone)
        self.rng = rng or random.random

    async def handle(self, method: str, headers: Mapping[str, str], body: Any) -> ProxyResponse:
        start = time.time()
        method = method.upper()
        headers = {k.lower(): v for k, v in headers.items()}

        try:
            response = await self._dispatch(method, headers, body)
        except ChatProxyException as e:
            response = ProxyResponse(e.status_code, e.to_dict(), cors_headers())
        except Exception:
            logger.exception("Proxy error - unexpected failure")
            response = ProxyResponse(
                500,
                {"error": ErrorCode.INTERNAL_ERROR.value, "message": MSG_SERVICE_UNAVAILABLE},
                cors_headers(),
            )

        record_request(method, response.status_code, time.time() - start)
        return response

    def maybe_sweep(self) -> None:
        """Occasionally drop expired usage records. Runs after the response is sent."""
        if self.rng() >= self.settings.sweep_probability:
            return
        try:
            removed = self.ledger.sweep_expired(self.clock().timestamp())
        except Exception as e:
            logger.warning(f"Usage sweep failed: {e}")
            return
        record_sweep(removed)
        if removed:
            logger.info(f"Usage sweep removed {removed} expired records")

    def _origin_allowed(self, origin: str) -> bool:
        return any(origin.startswith(allowed) for allowed in self.settings.origin_allowlist)

    async def _dispatch(self, method: str, headers: Dict[str, str], body: Any) -> ProxyResponse:
        if method == "OPTIONS":
            return ProxyResponse(200, None, cors_headers(preflight=True))

        if method != "POST":
            raise MethodNotAllowed(method)

        origin = headers.get("origin") or headers.get("referer")
        if origin and not self._origin_allowed(origin):
            logger.warning(f"Origin rejected - origin={origin}")
            raise OriginRejected(origin)

        if not self.settings.is_configured:
            logger.error("DEEPSEEK_API_KEY is not configured")
            raise ConfigError("deepseek_api_key")

        fingerprint = fingerprint_from_headers(headers)
        now = self.clock()
        day, hour, ts = day_key(now), hour_of_day(now), now.timestamp()

        strict = self.settings.strict_quota
        if strict:
            decision, _ = await run_in_threadpool(self.ledger.try_reserve, fingerprint, day, hour, self.limits, ts)
        else:
            record = await run_in_threadpool(self.ledger.get_or_create, fingerprint, day, ts)
            decision = evaluate(record, self.limits, now)
        self._enforce(fingerprint, decision, now)

        completed = False
        try:
            completion = await self._forward(fingerprint, decision, body)
            if strict:
                updated = await run_in_threadpool(self.ledger.get_or_create, fingerprint, day, ts)
            else:
                updated = await run_in_threadpool(self.ledger.record_hit, fingerprint, day, hour, ts)
            record_quota_hit()
            response = ProxyResponse(200, self._augment(completion, evaluate(updated, self.limits, now)), cors_headers())
            completed = True
        finally:
            if strict and not completed:
                await run_in_threadpool(self.ledger.release, fingerprint, day, hour)
                record_quota_release()

        return response

    def _enforce(self, fingerprint: str, decision: QuotaDecision, now: datetime) -> None:
        error: Optional[QuotaExceeded] = None
        if decision.daily_exceeded:
            record_quota_rejection("daily")
            error = DailyLimitExceeded(self.limits.daily_limit, reset_time(now, DAILY_RESET_HOURS))
        elif decision.hourly_exceeded:
            record_quota_rejection("hourly")
            error = HourlyLimitExceeded(
                decision.remaining_daily,
                self.limits.daily_limit,
                reset_time(now, HOURLY_RESET_HOURS),
            )
        if error is not None:
            logger.warning(
                f"Quota exceeded - fingerprint={fingerprint}, error={error.error_code.value}, "
                f"daily_used={decision.daily_count}, reset={error.reset_time}"
            )
            raise error

    async def _forward(self, fingerprint: str, decision: QuotaDecision, body: Any) -> UpstreamCompletion:
        payload = body if isinstance(body, dict) else {}
        messages = payload.get("messages")
        try:
            validate_content(messages, self.settings.max_messages, self.settings.max_content_chars)
        except InvalidContent as e:
            logger.info(f"Invalid content - fingerprint={fingerprint}, reason={e.message}")
            raise e.with_status(self.settings.validation_error_status) from None

        options = parse_generation_options(payload, self.settings.default_model, self.settings.max_tokens)
        logger.info(
            f"Chat request - fingerprint={fingerprint}, model={options.model}, "
            f"remaining={decision.remaining_daily}"
        )
        return await self.forwarder.forward(messages, options)

    def _augment(self, completion: UpstreamCompletion, decision: QuotaDecision) -> Dict[str, Any]:
        body = dict(completion.payload)
        usage = dict(completion.usage)
        usage.update({
            "remainingCount": decision.remaining_daily,
            "totalFreeCount": self.limits.daily_limit,
            "dailyUsed": decision.daily_count,
        })
        body["usage"] = usage
        return body
