import bcrypt
import hashlib
import hmac
import secrets
import time
from typing import Optional

from fastapi import Depends, Header, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import config
from errors import AuthorizationError
from models import Device
from observability import structured_logger, metrics
from storage import DatabaseStorage, get_storage

security = HTTPBearer(auto_error=False)


# Suppresses repeated auth-failure logs for the same token (prevents log flooding)
class InvalidTokenLogLimiter:
    def __init__(self, max_attempts=5, window_seconds=60):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.attempts: dict[str, list[float]] = {}
        self._last_sweep = time.time()

    def _sweep(self, window_start: float):
        # Random bad tokens never repeat, so stale keys are dropped wholesale
        for key in [k for k, times in self.attempts.items() if not times or times[-1] <= window_start]:
            del self.attempts[key]

    def is_blocked(self, token_id_prefix: str) -> bool:
        now = time.time()
        window_start = now - self.window_seconds

        if now - self._last_sweep >= self.window_seconds:
            self._sweep(window_start)
            self._last_sweep = now

        recent = [
            attempt_time for attempt_time in self.attempts.get(token_id_prefix, [])
            if attempt_time > window_start
        ]

        if len(recent) >= self.max_attempts:
            self.attempts[token_id_prefix] = recent
            return True

        recent.append(now)
        self.attempts[token_id_prefix] = recent
        return False


invalid_token_limiter = InvalidTokenLogLimiter(max_attempts=5, window_seconds=60)


def hash_token(token: str) -> str:
    return bcrypt.hashpw(token.encode(), bcrypt.gensalt()).decode()


def verify_token(token: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(token.encode(), hashed.encode())
    except (ValueError, AttributeError):
        # Invalid salt or malformed hash - token doesn't match
        return False


def compute_token_id(token: str) -> str:
    """Compute SHA256 hash of token for fast database lookups"""
    return hashlib.sha256(token.encode()).hexdigest()


def generate_device_token() -> str:
    return secrets.token_urlsafe(32)


def secrets_match(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison; an unset expected secret never matches."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def _client_ip(request: Request) -> str:
    if request.client:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


async def verify_device_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(security),
    store: DatabaseStorage = Depends(get_storage)
) -> Device:
    """
    Resolve the enrollment bearer token to its device.
    Missing or unknown tokens are authorization failures.
    """
    auth_start_time = time.time()
    client_ip = _client_ip(request)

    if not credentials:
        metrics.inc_counter("device_auth_failures_total", {"reason": "missing_header"})
        structured_logger.log_event(
            "auth.device_token.failed",
            level="WARN",
            reason="missing_header",
            client_ip=client_ip
        )
        raise AuthorizationError("Missing authorization header")

    token = credentials.credentials
    token_id = compute_token_id(token)
    token_id_prefix = token_id[:8]

    device = store.get_device_by_token_id(token_id)

    if device and verify_token(token, device.token_hash):
        auth_latency_ms = (time.time() - auth_start_time) * 1000
        metrics.observe_histogram("device_auth_latency_ms", auth_latency_ms)
        return device

    reason = "token_mismatch" if device else "token_not_found"
    metrics.inc_counter("device_auth_failures_total", {"reason": reason})

    if not invalid_token_limiter.is_blocked(token_id_prefix):
        structured_logger.log_event(
            "auth.device_token.failed",
            level="WARN",
            reason=reason,
            token_id_prefix=token_id_prefix,
            client_ip=client_ip,
            user_agent=request.headers.get("user-agent", "unknown")
        )

    raise AuthorizationError("Invalid device token")


async def verify_admin_key_header(x_admin: str | None = Header(None)):
    """
    Verify admin key from X-Admin header for ops endpoints
    """
    if not x_admin:
        raise AuthorizationError("Missing X-Admin header")

    if not secrets_match(x_admin, config.get_admin_key()):
        raise AuthorizationError("Invalid admin key")

    return {"admin_key_verified": True}
