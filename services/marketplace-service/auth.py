"""Identity provider: signed, expiring bearer tokens."""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

from fastapi import Depends, Header, HTTPException
from jose import ExpiredSignatureError, JWTError, jwt

from dependencies import get_identity_provider
from models import Role
from monitoring import auth_failures_counter, auth_attempts_counter

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Token is missing, malformed, expired or not signed by us."""


@dataclass(frozen=True)
class Actor:
    """Authenticated caller."""
    id: str
    role: str

    @property
    def is_consumer(self) -> bool:
        return self.role == Role.CONSUMER.value

    @property
    def is_farmer(self) -> bool:
        return self.role == Role.FARMER.value


class IdentityProvider:
    """
    Verifies HS256-signed JWTs carrying ``sub`` (user id), ``role`` and ``exp``.

    Token issuance lives here too so that tests and tooling share the exact
    scheme the service verifies; user registration and login stay with the
    external identity service.
    """

    def __init__(self, secret: str, algorithm: str = "HS256", expire_minutes: int = 60):
        self.secret = secret
        self.algorithm = algorithm
        self.expire_minutes = expire_minutes

    def issue_token(
        self,
        user_id: str,
        role: str,
        expires_delta: Optional[timedelta] = None
    ) -> str:
        """
        Create a signed token for a user.

        Args:
            user_id: User identifier
            role: consumer, farmer or admin
            expires_delta: Lifetime, defaults to the configured expiry

        Returns:
            Encoded JWT
        """
        if expires_delta is None:
            expires_delta = timedelta(minutes=self.expire_minutes)
        claims = {
            "sub": user_id,
            "role": role,
            "exp": datetime.now(timezone.utc) + expires_delta,
        }
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def authenticate(self, token: str) -> Actor:
        """
        Verify a token and return the actor it identifies.

        Raises:
            AuthenticationError: If the token is invalid or expired
        """
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise AuthenticationError("Token expired")
        except JWTError:
            raise AuthenticationError("Invalid token")

        user_id = payload.get("sub")
        role = payload.get("role")
        if not user_id or role not in {r.value for r in Role}:
            raise AuthenticationError("Invalid token claims")

        return Actor(id=str(user_id), role=role)


def get_current_actor(
    authorization: Optional[str] = Header(None),
    identity_provider: IdentityProvider = Depends(get_identity_provider)
) -> Actor:
    """
    Authenticate the bearer token on the request.

    Args:
        authorization: Authorization header value

    Returns:
        Authenticated actor

    Raises:
        HTTPException: If token is invalid or missing
    """
    auth_attempts_counter.add(1, {"type": "bearer_token"})

    if authorization is None:
        auth_failures_counter.add(1, {"reason": "missing_header"})
        logger.warning("Authentication failed: Missing authorization header")
        raise HTTPException(status_code=401, detail="Missing authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        auth_failures_counter.add(1, {"reason": "invalid_format"})
        logger.warning("Authentication failed: Invalid authorization header format", extra={
            "auth_header": authorization[:20] + "..." if len(authorization) > 20 else authorization
        })
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    try:
        actor = identity_provider.authenticate(parts[1])
    except AuthenticationError as e:
        auth_failures_counter.add(1, {"reason": str(e).lower().replace(" ", "_")})
        logger.warning("Authentication failed", extra={"reason": str(e)})
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"}
        )

    logger.debug("Authentication successful", extra={
        "user_id": actor.id,
        "role": actor.role
    })
    return actor
