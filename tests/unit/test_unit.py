import pytest
pytestmark = pytest.mark.unit

import asyncio
import threading
from datetime import datetime, timezone
from unittest.mock import patch


NOON = datetime(2026, 10, 19, 12, 15, tzinfo=timezone.utc)


class TestFingerprint:
    """Unit tests for fingerprint generation"""

    def test_known_digest(self):
        """Fingerprint is the first 16 hex chars of sha256(ip-ua-lang)"""
        from chatproxy.fingerprint import generate_fingerprint

        fp = generate_fingerprint("203.0.113.7", "Mozilla/5.0", "zh-CN,zh;q=0.9")
        assert fp == "3f9b5862e3d0ce1b"
        assert len(fp) == 16

    def test_deterministic(self):
        from chatproxy.fingerprint import generate_fingerprint

        assert generate_fingerprint("1.1.1.1", "ua", "en") == generate_fingerprint("1.1.1.1", "ua", "en")

    @pytest.mark.parametrize("ip,ua,lang", [
        ("1.1.1.2", "ua", "en"),
        ("1.1.1.1", "ua2", "en"),
        ("1.1.1.1", "ua", "fr"),
    ])
    def test_any_field_changes_fingerprint(self, ip, ua, lang):
        from chatproxy.fingerprint import generate_fingerprint

        assert generate_fingerprint(ip, ua, lang) != generate_fingerprint("1.1.1.1", "ua", "en")

    def test_header_fallbacks(self):
        """Missing headers fall back to 127.0.0.1 and empty strings"""
        from chatproxy.fingerprint import fingerprint_from_headers

        assert fingerprint_from_headers({}) == "c1a504bf584d4df2"

    def test_forwarded_for_takes_precedence(self):
        from chatproxy.fingerprint import fingerprint_from_headers, generate_fingerprint

        headers = {"x-forwarded-for": "10.0.0.1", "x-real-ip": "10.0.0.2", "user-agent": "ua"}
        assert fingerprint_from_headers(headers) == generate_fingerprint("10.0.0.1", "ua", "")

        headers = {"x-real-ip": "10.0.0.2", "user-agent": "ua"}
        assert fingerprint_from_headers(headers) == generate_fingerprint("10.0.0.2", "ua", "")


class TestQuotaPolicy:
    """Unit tests for the quota decision function"""

    def test_fresh_record_is_allowed(self):
        from chatproxy.quota import QuotaLimits, UsageRecord, evaluate

        decision = evaluate(UsageRecord(), QuotaLimits(20, 10), NOON)
        assert decision.allowed
        assert decision.remaining_daily == 20
        assert decision.remaining_hourly == 10
        assert decision.daily_count == 0

    def test_daily_limit_reached(self):
        from chatproxy.quota import QuotaLimits, UsageRecord, evaluate

        record = UsageRecord(daily_count=20, hourly_count={12: 3})
        decision = evaluate(record, QuotaLimits(20, 10), NOON)
        assert decision.daily_exceeded is True
        assert decision.hourly_exceeded is False
        assert decision.remaining_daily == 0
        assert not decision.allowed

    def test_hourly_limit_only_counts_current_hour(self):
        from chatproxy.quota import QuotaLimits, UsageRecord, evaluate

        record = UsageRecord(daily_count=10, hourly_count={11: 10})
        assert evaluate(record, QuotaLimits(20, 10), NOON).hourly_exceeded is False

        record = UsageRecord(daily_count=10, hourly_count={12: 10})
        decision = evaluate(record, QuotaLimits(20, 10), NOON)
        assert decision.hourly_exceeded is True
        assert decision.remaining_hourly == 0
        assert decision.remaining_daily == 10

    def test_remaining_clamped_at_zero(self):
        from chatproxy.quota import QuotaLimits, UsageRecord, evaluate

        record = UsageRecord(daily_count=25, hourly_count={12: 15})
        decision = evaluate(record, QuotaLimits(20, 10), NOON)
        assert decision.remaining_daily == 0
        assert decision.remaining_hourly == 0

    @pytest.mark.parametrize("used", [0, 1, 7, 19, 20])
    def test_remaining_plus_used_equals_limit(self, used):
        from chatproxy.quota import QuotaLimits, UsageRecord, evaluate

        decision = evaluate(UsageRecord(daily_count=used), QuotaLimits(20, 10), NOON)
        assert decision.remaining_daily + decision.daily_count == 20

    def test_does_not_mutate_record(self):
        from chatproxy.quota import QuotaLimits, UsageRecord, evaluate

        record = UsageRecord(daily_count=3, hourly_count={12: 2}, created_at=5.0)
        evaluate(record, QuotaLimits(20, 10), NOON)
        assert record == UsageRecord(daily_count=3, hourly_count={12: 2}, created_at=5.0)

    def test_day_and_hour_keys(self):
        from chatproxy.quota import day_key, hour_of_day

        assert day_key(NOON) == "2026-10-19"
        assert hour_of_day(NOON) == 12

    def test_reset_time_format(self):
        from chatproxy.quota import reset_time

        assert reset_time(NOON, 24) == "2026-10-20T12:15:00.000Z"
        assert reset_time(NOON, 1) == "2026-10-19T13:15:00.000Z"


class TestInMemoryLedger:
    """Unit tests for the process-local usage ledger"""

    def test_get_or_create_starts_empty(self):
        from chatproxy.ledger import InMemoryUsageLedger

        ledger = InMemoryUsageLedger()
        record = ledger.get_or_create("fp", "2026-10-19", now=100.0)
        assert record.daily_count == 0
        assert record.hourly_count == {}
        assert record.created_at == 100.0
        assert len(ledger) == 1

    def test_created_at_never_reset(self):
        from chatproxy.ledger import InMemoryUsageLedger

        ledger = InMemoryUsageLedger()
        ledger.get_or_create("fp", "2026-10-19", now=100.0)
        ledger.record_hit("fp", "2026-10-19", 12, now=500.0)
        assert ledger.get_or_create("fp", "2026-10-19", now=900.0).created_at == 100.0

    def test_n_hits_in_same_hour(self):
        from chatproxy.ledger import InMemoryUsageLedger

        ledger = InMemoryUsageLedger()
        for _ in range(7):
            ledger.record_hit("fp", "2026-10-19", 12)
        record = ledger.get_or_create("fp", "2026-10-19")
        assert record.daily_count == 7
        assert record.hourly_count[12] == 7

    def test_hits_spread_across_hours(self):
        from chatproxy.ledger import InMemoryUsageLedger

        ledger = InMemoryUsageLedger()
        ledger.record_hit("fp", "2026-10-19", 9)
        ledger.record_hit("fp", "2026-10-19", 10)
        record = ledger.record_hit("fp", "2026-10-19", 10)
        assert record.daily_count == 3
        assert record.hourly_count == {9: 1, 10: 2}

    def test_new_day_is_a_new_record(self):
        from chatproxy.ledger import InMemoryUsageLedger

        ledger = InMemoryUsageLedger()
        ledger.record_hit("fp", "2026-10-19", 23)
        assert ledger.get_or_create("fp", "2026-10-20").daily_count == 0

    def test_snapshots_are_isolated(self):
        """Mutating a returned snapshot never touches stored state"""
        from chatproxy.ledger import InMemoryUsageLedger

        ledger = InMemoryUsageLedger()
        snapshot = ledger.record_hit("fp", "2026-10-19", 12)
        snapshot.daily_count = 99
        snapshot.hourly_count[12] = 99
        record = ledger.get_or_create("fp", "2026-10-19")
        assert record.daily_count == 1
        assert record.hourly_count[12] == 1

    def test_sweep_removes_only_expired(self):
        from chatproxy.ledger import InMemoryUsageLedger

        ledger = InMemoryUsageLedger(ttl_seconds=86400)
        ledger.get_or_create("old", "2026-10-18", now=0.0)
        ledger.get_or_create("new", "2026-10-19", now=50000.0)

        removed = ledger.sweep_expired(now=86401.0)
        assert removed == 1
        assert len(ledger) == 1
        assert ledger.get_or_create("new", "2026-10-19").created_at == 50000.0

    def test_sweep_is_idempotent(self):
        from chatproxy.ledger import InMemoryUsageLedger

        ledger = InMemoryUsageLedger(ttl_seconds=10)
        ledger.get_or_create("fp", "d", now=0.0)
        assert ledger.sweep_expired(now=100.0) == 1
        assert ledger.sweep_expired(now=100.0) == 0

    def test_exactly_ttl_old_survives(self):
        from chatproxy.ledger import InMemoryUsageLedger

        ledger = InMemoryUsageLedger(ttl_seconds=10)
        ledger.get_or_create("fp", "d", now=0.0)
        assert ledger.sweep_expired(now=10.0) == 0

    def test_try_reserve_stops_at_limit(self):
        from chatproxy.ledger import InMemoryUsageLedger
        from chatproxy.quota import QuotaLimits

        ledger = InMemoryUsageLedger()
        limits = QuotaLimits(daily_limit=3, hourly_limit=10)
        results = [ledger.try_reserve("fp", "d", 12, limits)[0].allowed for _ in range(5)]
        assert results == [True, True, True, False, False]
        assert ledger.get_or_create("fp", "d").daily_count == 3

    def test_release_rolls_back_and_floors(self):
        from chatproxy.ledger import InMemoryUsageLedger
        from chatproxy.quota import QuotaLimits

        ledger = InMemoryUsageLedger()
        ledger.try_reserve("fp", "d", 12, QuotaLimits(3, 3))
        ledger.release("fp", "d", 12)
        ledger.release("fp", "d", 12)
        record = ledger.get_or_create("fp", "d")
        assert record.daily_count == 0
        assert record.hourly_count[12] == 0

    def test_release_unknown_key_is_noop(self):
        from chatproxy.ledger import InMemoryUsageLedger

        ledger = InMemoryUsageLedger()
        ledger.release("nobody", "d", 1)
        assert len(ledger) == 0


class TestLedgerConcurrency:
    """Concurrent mutation must never lose or corrupt counts"""

    def test_concurrent_record_hit(self):
        from chatproxy.ledger import InMemoryUsageLedger

        ledger = InMemoryUsageLedger()

        def worker():
            for _ in range(50):
                ledger.record_hit("fp", "d", 12)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        record = ledger.get_or_create("fp", "d")
        assert record.daily_count == 500
        assert record.hourly_count[12] == 500

    def test_concurrent_reserve_is_a_hard_cap(self):
        from chatproxy.ledger import InMemoryUsageLedger
        from chatproxy.quota import QuotaLimits

        ledger = InMemoryUsageLedger()
        limits = QuotaLimits(daily_limit=20, hourly_limit=100)
        results = []
        results_lock = threading.Lock()

        def worker():
            for _ in range(10):
                allowed = ledger.try_reserve("fp", "d", 12, limits)[0].allowed
                with results_lock:
                    results.append(allowed)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r) == 20
        assert ledger.get_or_create("fp", "d").daily_count == 20

    def test_sweep_during_writes(self):
        from chatproxy.ledger import InMemoryUsageLedger

        ledger = InMemoryUsageLedger(ttl_seconds=0)
        stop = threading.Event()

        def sweeper():
            while not stop.is_set():
                ledger.sweep_expired(now=1e12)

        t = threading.Thread(target=sweeper)
        t.start()
        try:
            for i in range(200):
                ledger.record_hit(f"fp{i % 5}", "d", 12)
        finally:
            stop.set()
            t.join()
        assert ledger.sweep_expired(now=1e12) >= 0


class TestContentValidation:
    """Unit tests for inbound message validation"""

    @pytest.mark.parametrize("messages", [None, "hello", {"role": "user"}, 42, []])
    def test_bad_shape(self, messages):
        from chatproxy.validation import validate_content
        from chatproxy.errors import InvalidContent

        with pytest.raises(InvalidContent) as exc:
            validate_content(messages)
        assert exc.value.message == "消息格式无效"
        assert exc.value.status_code == 400

    def test_too_many_messages(self):
        from chatproxy.validation import validate_content
        from chatproxy.errors import InvalidContent

        messages = [{"role": "user", "content": "x"}] * 21
        with pytest.raises(InvalidContent) as exc:
            validate_content(messages)
        assert exc.value.message == "消息历史过长"

    def test_exactly_max_messages_ok(self):
        from chatproxy.validation import validate_content

        validate_content([{"role": "user", "content": "x"}] * 20)

    def test_content_too_long(self):
        from chatproxy.validation import validate_content
        from chatproxy.errors import InvalidContent

        messages = [{"role": "user", "content": "a" * 6000}, {"role": "assistant", "content": "b" * 4001}]
        with pytest.raises(InvalidContent) as exc:
            validate_content(messages)
        assert exc.value.message == "消息内容过长"

    def test_content_at_limit_ok(self):
        from chatproxy.validation import validate_content

        validate_content([{"role": "user", "content": "a" * 10000}])

    def test_missing_content_counts_as_empty(self):
        from chatproxy.validation import validate_content

        validate_content([{"role": "user"}, {"role": "user", "content": None}, "junk"])

    def test_custom_bounds(self):
        from chatproxy.validation import validate_content
        from chatproxy.errors import InvalidContent

        with pytest.raises(InvalidContent):
            validate_content([{"content": "x"}] * 3, max_messages=2)
        with pytest.raises(InvalidContent):
            validate_content([{"content": "abcdef"}], max_chars=5)


class TestGenerationOptions:
    """Unit tests for model / max_tokens / temperature handling"""

    def test_defaults(self):
        from chatproxy.validation import parse_generation_options

        options = parse_generation_options({})
        assert options.model == "deepseek-chat"
        assert options.max_tokens == 2000
        assert options.temperature == 0.7

    @pytest.mark.parametrize("requested,expected", [
        (100, 100),
        (4000, 4000),
        (9000, 4000),
        (0, 2000),
        (-5, 2000),
        ("lots", 2000),
        (True, 2000),
        (1500.7, 1500),
        (float("nan"), 2000),
        (float("inf"), 2000),
        (float("-inf"), 2000),
        (10 ** 400, 2000),
    ])
    def test_max_tokens_clamped(self, requested, expected):
        from chatproxy.validation import parse_generation_options

        assert parse_generation_options({"max_tokens": requested}).max_tokens == expected

    def test_custom_ceiling(self):
        from chatproxy.validation import parse_generation_options

        assert parse_generation_options({"max_tokens": 3000}, max_tokens_ceiling=1000).max_tokens == 1000

    @pytest.mark.parametrize("requested,expected", [
        (0.3, 0.3),
        (0, 0.0),
        (1.8, 1.0),
        (-0.5, 0.0),
        ("hot", 0.7),
        (None, 0.7),
        (float("nan"), 0.7),
        (float("inf"), 0.7),
    ])
    def test_temperature_clamped(self, requested, expected):
        from chatproxy.validation import parse_generation_options

        assert parse_generation_options({"temperature": requested}).temperature == expected

    def test_non_finite_json_numbers(self):
        """json.loads accepts NaN and Infinity literals and huge integers"""
        import json
        from chatproxy.validation import parse_generation_options

        body = json.loads('{"max_tokens": NaN, "temperature": Infinity}')
        options = parse_generation_options(body)
        assert options.max_tokens == 2000
        assert options.temperature == 0.7

        body = json.loads('{"max_tokens": 1' + "0" * 400 + "}")
        assert parse_generation_options(body).max_tokens == 2000

    def test_model_passthrough(self):
        from chatproxy.validation import parse_generation_options

        assert parse_generation_options({"model": "deepseek-coder"}).model == "deepseek-coder"
        assert parse_generation_options({"model": ""}).model == "deepseek-chat"
        assert parse_generation_options({"model": 3}, default_model="m").model == "m"


class TestErrors:
    """Error payload shapes"""

    def test_daily_limit_payload(self):
        from chatproxy.errors import DailyLimitExceeded

        err = DailyLimitExceeded(total_free_count=20, reset_time="2026-10-20T12:00:00.000Z")
        assert err.status_code == 429
        assert err.to_dict() == {
            "error": "DAILY_LIMIT_EXCEEDED",
            "message": "今日免费次数已用完，请配置您的API密钥或明天再试",
            "remainingCount": 0,
            "totalFreeCount": 20,
            "resetTime": "2026-10-20T12:00:00.000Z",
        }

    def test_hourly_limit_payload(self):
        from chatproxy.errors import HourlyLimitExceeded

        body = HourlyLimitExceeded(12, 20, "t").to_dict()
        assert body["error"] == "RATE_LIMIT_EXCEEDED"
        assert body["remainingCount"] == 12

    @pytest.mark.parametrize("status,message", [
        (401, "API密钥无效"),
        (429, "API请求频率过高，请稍后重试"),
        (400, "请求参数错误"),
        (500, "服务暂时不可用，请稍后重试"),
        (503, "服务暂时不可用，请稍后重试"),
    ])
    def test_upstream_status_mapping(self, status, message):
        from chatproxy.errors import UpstreamError

        err = UpstreamError(status)
        assert err.status_code == status
        assert err.to_dict() == {"error": "UPSTREAM_ERROR", "message": message}

    def test_invalid_content_legacy_status(self):
        from chatproxy.errors import InvalidContent

        err = InvalidContent("消息格式无效").with_status(500)
        assert err.status_code == 500
        assert err.to_dict()["error"] == "INTERNAL_ERROR"
        assert InvalidContent("x").to_dict()["error"] == "INVALID_REQUEST"


class TestSettings:
    """Configuration parsing and validation"""

    def test_defaults(self, monkeypatch):
        for var in ["DEEPSEEK_API_KEY", "DAILY_LIMIT", "HOURLY_LIMIT", "MAX_TOKENS", "ALLOWED_ORIGINS", "REDIS_URL"]:
            monkeypatch.delenv(var, raising=False)
        from chatproxy.config import Settings

        s = Settings(_env_file=None)
        assert s.daily_limit == 20
        assert s.hourly_limit == 10
        assert s.max_tokens == 4000
        assert s.validation_error_status == 400
        assert s.is_configured is False
        assert s.backend == "memory"
        assert s.origin_allowlist == [
            "http://localhost:8000",
            "http://127.0.0.1:8000",
            "https://your-domain.com",
        ]

    def test_environment_values(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "  sk-abc  ")
        monkeypatch.setenv("DAILY_LIMIT", "5")
        monkeypatch.setenv("ALLOWED_ORIGINS", "https://a.example, https://b.example ,")
        monkeypatch.setenv("STRICT_QUOTA", "true")
        from chatproxy.config import Settings

        s = Settings(_env_file=None)
        assert s.deepseek_api_key == "sk-abc"
        assert s.daily_limit == 5
        assert s.strict_quota is True
        assert s.origin_allowlist == ["https://a.example", "https://b.example"]

    @pytest.mark.parametrize("field,value", [
        ("daily_limit", -1),
        ("sweep_probability", 1.5),
        ("validation_error_status", 422),
        ("max_tokens", 0),
    ])
    def test_invalid_values_rejected(self, field, value):
        from pydantic import ValidationError
        from chatproxy.config import Settings

        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})


class TestCircuitBreaker:
    """Circuit breaker around async calls"""

    def test_opens_after_threshold(self):
        from chatproxy.circuit_breaker import CircuitBreaker, CircuitState
        from chatproxy.errors import CircuitBreakerOpenError

        breaker = CircuitBreaker("test", failure_threshold=2, recovery_timeout=60)

        async def boom():
            raise RuntimeError("down")

        for _ in range(2):
            with pytest.raises(RuntimeError):
                asyncio.run(breaker.call(boom))
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitBreakerOpenError):
            asyncio.run(breaker.call(boom))

    def test_ignored_errors_do_not_trip(self):
        from chatproxy.circuit_breaker import CircuitBreaker, CircuitState

        breaker = CircuitBreaker("test", failure_threshold=1, counts_as_failure=lambda e: False)

        async def bad_request():
            raise ValueError("client mistake")

        with pytest.raises(ValueError):
            asyncio.run(breaker.call(bad_request))
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_then_close(self):
        from chatproxy.circuit_breaker import CircuitBreaker, CircuitState

        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=30)

        async def boom():
            raise RuntimeError("down")

        async def ok():
            return "ok"

        with patch("chatproxy.circuit_breaker.time.time", return_value=1000.0):
            with pytest.raises(RuntimeError):
                asyncio.run(breaker.call(boom))
            assert breaker.state == CircuitState.OPEN

        with patch("chatproxy.circuit_breaker.time.time", return_value=1031.0):
            assert breaker.state == CircuitState.HALF_OPEN
            assert asyncio.run(breaker.call(ok)) == "ok"
            assert breaker.state == CircuitState.CLOSED

    def test_reset(self):
        from chatproxy.circuit_breaker import CircuitBreaker, CircuitState

        breaker = CircuitBreaker("test", failure_threshold=1)

        async def boom():
            raise RuntimeError("down")

        with pytest.raises(RuntimeError):
            asyncio.run(breaker.call(boom))
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_stats()["failure_count"] == 0


class TestCli:
    """Server command line built from Settings"""

    def test_serve_args_from_settings(self, monkeypatch):
        monkeypatch.setenv("HOST", "127.0.0.1")
        monkeypatch.setenv("PORT", "9001")
        monkeypatch.setenv("RELOAD", "true")
        from chatproxy.cli import serve_args
        from chatproxy.config import Settings

        args = serve_args(Settings(_env_file=None))
        assert args[1:4] == ["-m", "uvicorn", "chatproxy.main:app"]
        assert args[args.index("--host") + 1] == "127.0.0.1"
        assert args[args.index("--port") + 1] == "9001"
        assert args[args.index("--log-level") + 1] == "info"
        assert args[-1] == "--reload"

    def test_serve_args_defaults(self, monkeypatch):
        for var in ["HOST", "PORT", "RELOAD", "LOG_LEVEL"]:
            monkeypatch.delenv(var, raising=False)
        from chatproxy.cli import serve_args
        from chatproxy.config import Settings

        args = serve_args(Settings(_env_file=None))
        assert args[args.index("--host") + 1] == "0.0.0.0"
        assert args[args.index("--port") + 1] == "8000"
        assert "--reload" not in args

    def test_run_execs_uvicorn(self):
        from chatproxy import cli

        with patch("chatproxy.cli.os.execvp") as execvp:
            cli.run()
        program, args = execvp.call_args[0]
        assert program == args[0]
        assert "chatproxy.main:app" in args
