from fastapi import Response

RATE_LIMIT_HEADER_SCHEMA = {"type": "string", "pattern": r"^\d+$"}

RATE_LIMIT_SUCCESS_HEADERS = {
    "X-RateLimit-Limit": {
        "description": "Configured request quota for the current rate-limit window",
        "schema": RATE_LIMIT_HEADER_SCHEMA,
    },
    "X-RateLimit-Remaining": {
        "description": "Number of requests remaining in the current rate-limit window",
        "schema": RATE_LIMIT_HEADER_SCHEMA,
    },
    "X-RateLimit-Reset": {
        "description": "Unix epoch second when the current rate-limit window resets",
        "schema": RATE_LIMIT_HEADER_SCHEMA,
    },
}

RATE_LIMIT_THROTTLED_HEADERS = {
    **RATE_LIMIT_SUCCESS_HEADERS,
    "Retry-After": {
        "description": "Seconds until the client can retry the request",
        "schema": RATE_LIMIT_HEADER_SCHEMA,
    },
}

RATE_LIMITED_RESPONSE = {
    429: {"description": "Rate limit exceeded", "headers": RATE_LIMIT_THROTTLED_HEADERS}
}


def rate_limit_header_values(*, limit: int, remaining: int, reset_at_s: int) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset_at_s),
    }


def apply_rate_limit_headers(
    response: Response, *, limit: int, remaining: int, reset_at_s: int
) -> None:
    response.headers.update(
        rate_limit_header_values(limit=limit, remaining=remaining, reset_at_s=reset_at_s)
    )
