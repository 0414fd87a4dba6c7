"""
FastAPI authentication and rate limiting dependencies.

Bearer tokens are mapped to identities through RAG_API_TOKENS.
"""

import math
import time
from collections import defaultdict, deque
from typing import Callable, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..container import ServiceContainer
from ..models import Identity
from ..utils.errors import AuthError, PermissionDenied, RateLimitError

security = HTTPBearer(auto_error=False)


class RateLimiter:
    """
    Sliding-window request limiter keyed by identity.

    Usage:
        limiter = RateLimiter(limit=10, window_seconds=60)
        limiter.check("U123")  # raises RateLimitError on the 11th call
    """

    def __init__(
        self,
        limit: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque] = defaultdict(deque)

    def check(self, key: str) -> None:
        """Record a request, or raise RateLimitError if over the limit."""
        now = self._clock()
        hits = self._hits[key]

        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()

        if len(hits) >= self.limit:
            retry_after = math.ceil(self.window_seconds - (now - hits[0]))
            raise RateLimitError("query", retry_after=max(retry_after, 1))

        hits.append(now)


def get_container(request: Request) -> ServiceContainer:
    """Service container attached to the app at startup."""
    return request.app.state.container


async def require_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    container: ServiceContainer = Depends(get_container),
) -> Identity:
    """
    Dependency that requires a known bearer token.

    Raises:
        AuthError: If the token is missing or unknown
    """
    if not credentials:
        raise AuthError("Authentication required")

    token = container.settings.api_tokens.get(credentials.credentials)
    if token is None:
        raise AuthError("Invalid authentication token")

    return Identity(user_id=token.user_id, role=token.role)


async def require_service(identity: Identity = Depends(require_identity)) -> Identity:
    """Dependency for operator endpoints that expose raw messages or write."""
    if not identity.unrestricted:
        raise PermissionDenied()
    return identity


async def rate_limited_identity(
    request: Request,
    identity: Identity = Depends(require_identity),
) -> Identity:
    """Authenticated identity that has not exceeded the query rate limit."""
    request.app.state.rate_limiter.check(identity.user_id)
    return identity
