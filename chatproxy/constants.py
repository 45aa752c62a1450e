"""Application constants and configuration values."""

APP_VERSION = "1.0.0"

# Upstream
DEFAULT_UPSTREAM_ENDPOINT = "https://api.deepseek.com/v1/chat/completions"
DEFAULT_MODEL = "deepseek-chat"
UPSTREAM_USER_AGENT = "AI-Chat-Proxy/1.0"

# Free tier limits
DEFAULT_DAILY_LIMIT = 20
DEFAULT_HOURLY_LIMIT = 10

# Generation parameters
DEFAULT_MAX_TOKENS_CEILING = 4000
DEFAULT_REQUEST_MAX_TOKENS = 2000
DEFAULT_TEMPERATURE = 0.7
MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 1.0

# Input validation
MAX_MESSAGES_COUNT = 20
MAX_CONTENT_CHARS = 10000

# Usage ledger
RECORD_TTL_SECONDS = 24 * 60 * 60
SWEEP_PROBABILITY = 0.01
REDIS_KEY_PREFIX = "usage"

# Reset windows reported to clients
DAILY_RESET_HOURS = 24
HOURLY_RESET_HOURS = 1

# Fingerprint
FINGERPRINT_LENGTH = 16
FALLBACK_CLIENT_IP = "127.0.0.1"

# Request settings
DEFAULT_REQUEST_TIMEOUT = 30.0

# Circuit breaker settings
CIRCUIT_BREAKER_FAILURE_THRESHOLD = 5
CIRCUIT_BREAKER_RECOVERY_TIMEOUT = 60.0

# CORS
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Origin",
}
CORS_MAX_AGE_SECONDS = 86400

DEFAULT_ALLOWED_ORIGINS = (
    "http://localhost:8000,"
    "http://127.0.0.1:8000,"
    "https://your-domain.com"
)

# Server
DEFAULT_SERVER_HOST = "0.0.0.0"
DEFAULT_SERVER_PORT = 8000
DEFAULT_RELOAD = False

# User-facing messages
MSG_METHOD_NOT_ALLOWED = "只支持POST请求"
MSG_FORBIDDEN = "请求来源不被允许"
MSG_SERVICE_UNAVAILABLE = "服务暂时不可用，请稍后重试"
MSG_DAILY_LIMIT = "今日免费次数已用完，请配置您的API密钥或明天再试"
MSG_HOURLY_LIMIT = "请求过于频繁，请稍后再试"
MSG_INVALID_FORMAT = "消息格式无效"
MSG_TOO_MANY_MESSAGES = "消息历史过长"
MSG_CONTENT_TOO_LONG = "消息内容过长"
MSG_INVALID_API_KEY = "API密钥无效"
MSG_UPSTREAM_RATE_LIMITED = "API请求频率过高，请稍后重试"
MSG_BAD_UPSTREAM_REQUEST = "请求参数错误"
MSG_UPSTREAM_TIMEOUT = "请求超时，请稍后重试"
MSG_MALFORMED_RESPONSE = "API响应格式无效"

UPSTREAM_STATUS_MESSAGES = {
    400: MSG_BAD_UPSTREAM_REQUEST,
    401: MSG_INVALID_API_KEY,
    429: MSG_UPSTREAM_RATE_LIMITED,
}
