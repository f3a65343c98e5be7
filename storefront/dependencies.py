from typing import Callable, Dict, Optional

from fastapi import Depends, HTTPException, Request, Response, status

from .errors import RateLimitExceeded, StorefrontError
from .rate_limit import (
    RATE_LIMIT_CONFIGS,
    RateLimiter,
    RateLimitResult,
    get_client_ip,
    get_rate_limiter,
    rate_limit_headers,
)


def http_error(err: StorefrontError, headers: Optional[Dict[str, str]] = None) -> HTTPException:
    return HTTPException(status_code=err.status_code, detail=err.to_dict(), headers=headers)


def internal_error() -> HTTPException:
    # Never echo the underlying exception; it is logged by the caller.
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": "internal_error", "message": "An unexpected error occurred. Please try again later."},
    )


def rate_limited(config_name: str) -> Callable[..., RateLimitResult]:
    """Dependency factory: count the request against the named bucket, keyed by client IP."""

    config = RATE_LIMIT_CONFIGS[config_name]

    def _check(
        request: Request,
        response: Response,
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitResult:
        result = limiter.check(get_client_ip(request), config)
        if not result.allowed:
            raise http_error(
                RateLimitExceeded(result.retry_after or 0, result.reset_time),
                headers=rate_limit_headers(result),
            )
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(result.reset_time)
        return result

    return _check
