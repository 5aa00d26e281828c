"""Redis-backed rate limiter."""
import hashlib
import logging
import time
from typing import Optional, Tuple
import redis
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from monitoring import rate_limit_exceeded_counter, suspicious_activity_counter

logger = logging.getLogger(__name__)

SUSPICIOUS_WINDOW_SECONDS = 300

# (name, status predicate, threshold within the window)
SUSPICIOUS_PATTERNS = (
    ("credential_stuffing", lambda code: code == 401, 5),
    ("ownership_probing", lambda code: code == 403, 10),
    ("endpoint_scanning", lambda code: code == 404, 10),
    ("abuse", lambda code: 400 <= code < 500, 20),
)


def _credential_key(authorization: Optional[str]) -> Optional[str]:
    """Stable, non-reversible key for the bearer credential on a request."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization.split(" ", 1)[1]
    return hashlib.sha256(token.encode()).hexdigest()[:16]


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RedisRateLimiter(BaseHTTPMiddleware):
    """
    Sliding-window rate limiter shared by all service replicas through Redis.

    Two tiers: a generous per-IP limit (many consumers may share one NAT
    address) and a stricter per-credential limit. Requests are allowed
    through when Redis is unreachable.
    """

    def __init__(
        self,
        app,
        redis_client: redis.Redis,
        requests_per_minute_ip: int = 2000,
        requests_per_minute_user: int = 300,
        window_seconds: int = 60
    ):
        """
        Initialize Redis-backed rate limiter.

        Args:
            app: FastAPI application
            redis_client: Redis connection
            requests_per_minute_ip: Max requests per IP per window
            requests_per_minute_user: Max requests per credential per window
            window_seconds: Sliding window size in seconds
        """
        super().__init__(app)
        self.redis = redis_client
        self.requests_per_minute_ip = requests_per_minute_ip
        self.requests_per_minute_user = requests_per_minute_user
        self.window_seconds = window_seconds

    def _check_rate_limit(self, key: str, limit: int) -> Tuple[bool, int]:
        """
        Record a hit in a Redis sorted set and count the hits in the window.

        Returns:
            Tuple of (is_allowed, current_count)
        """
        try:
            now = time.time()
            pipe = self.redis.pipeline()
            pipe.zremrangebyscore(key, 0, now - self.window_seconds)
            pipe.zcard(key)
            pipe.zadd(key, {str(now): now})
            pipe.expire(key, self.window_seconds + 1)
            count = pipe.execute()[1]
            return count < limit, count + 1
        except redis.RedisError as e:
            logger.error(f"Redis rate limit error: {e}")
            return True, 0

    def _reject(self, limit_type: str, limit: int, count: int, **labels) -> JSONResponse:
        rate_limit_exceeded_counter.add(1, {"limit_type": limit_type})
        logger.warning("Rate limit exceeded", extra={
            "limit_type": limit_type,
            "limit": limit,
            "requests_in_window": count,
            **labels
        })
        return JSONResponse(
            status_code=429,
            content={"detail": f"Rate limit exceeded. Maximum {limit} requests per minute."},
            headers={"Retry-After": str(self.window_seconds)}
        )

    async def dispatch(self, request: Request, call_next):
        client_ip = _client_ip(request)
        credential = _credential_key(request.headers.get("authorization"))

        allowed, count = self._check_rate_limit(f"rate:ip:{client_ip}", self.requests_per_minute_ip)
        if not allowed:
            return self._reject("ip", self.requests_per_minute_ip, count, client_ip=client_ip)

        if credential:
            allowed, count = self._check_rate_limit(
                f"rate:user:{credential}", self.requests_per_minute_user
            )
            if not allowed:
                return self._reject("user", self.requests_per_minute_user, count, credential=credential)

        response = await call_next(request)

        self._detect_suspicious_activity(request, response.status_code, client_ip)

        return response

    def _detect_suspicious_activity(self, request: Request, status_code: int, client_ip: str) -> None:
        """Flag bursts of client errors from one IP."""
        try:
            now = time.time()
            for name, matches, threshold in SUSPICIOUS_PATTERNS:
                if not matches(status_code):
                    continue
                key = f"suspicious:{name}:{client_ip}"
                self.redis.zadd(key, {str(now): now})
                self.redis.expire(key, SUSPICIOUS_WINDOW_SECONDS + 1)
                count = self.redis.zcount(key, now - SUSPICIOUS_WINDOW_SECONDS, now)
                if count >= threshold:
                    suspicious_activity_counter.add(1, {"type": name})
                    logger.warning("Suspicious activity detected", extra={
                        "type": name,
                        "client_ip": client_ip,
                        "endpoint": request.url.path,
                        "count": count
                    })
        except redis.RedisError as e:
            logger.error(f"Error detecting suspicious activity: {e}")
