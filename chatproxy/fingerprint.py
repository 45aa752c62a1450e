"""Anonymous caller identity derived from connection metadata."""
import hashlib
from typing import Mapping
from chatproxy.constants import FINGERPRINT_LENGTH, FALLBACK_CLIENT_IP


def generate_fingerprint(ip: str, user_agent: str, accept_language: str) -> str:
    """
    Hash the (ip, user-agent, accept-language) triple into a short token.

    Uses SHA-256 truncated to 16 hex characters. Identical inputs always
    give the same token; this is a quota bucket, not authentication.
    """
    raw = f"{ip}-{user_agent}-{accept_language}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def fingerprint_from_headers(headers: Mapping[str, str]) -> str:
    """Build the fingerprint from inbound headers (lower-case names)."""
    ip = headers.get("x-forwarded-for") or headers.get("x-real-ip") or FALLBACK_CLIENT_IP
    user_agent = headers.get("user-agent") or ""
    accept_language = headers.get("accept-language") or ""
    return generate_fingerprint(ip, user_agent, accept_language)
