"""Refund reconciler: periodically asks the API to apply pending processor refunds."""

from __future__ import annotations

import json
import logging
import os
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger("storefront.refund_reconciler")

ENV_PREFIX = "REFUND_RECONCILER_"


@dataclass(frozen=True)
class ReconcilerSettings:
    api_base_url: str
    interval_s: int
    timeout_s: float
    batch_limit: int
    older_than_s: int | None
    actor_id: str
    max_retries: int
    retry_backoff_s: float


@dataclass(frozen=True)
class ReconcileRunResult:
    ok: bool
    applied: int = 0
    needs_review: int = 0
    status_code: int | None = None
    error: str | None = None
    attempts: int = 1


def load_settings(env: dict[str, str] | None = None) -> ReconcilerSettings:
    source = env if env is not None else os.environ

    def value(name: str, default: str) -> str:
        return source.get(f"{ENV_PREFIX}{name}", default).strip()

    interval_s = int(value("INTERVAL_S", "60"))
    timeout_s = float(value("TIMEOUT_S", "10"))
    batch_limit = int(value("BATCH_LIMIT", "100"))
    max_retries = int(value("MAX_RETRIES", "2"))
    retry_backoff_s = float(value("RETRY_BACKOFF_S", "0.5"))
    older_than_value = value("OLDER_THAN_S", "")

    if interval_s < 1:
        raise ValueError(f"{ENV_PREFIX}INTERVAL_S must be >= 1")
    if timeout_s <= 0:
        raise ValueError(f"{ENV_PREFIX}TIMEOUT_S must be > 0")
    if not 1 <= batch_limit <= 1000:
        raise ValueError(f"{ENV_PREFIX}BATCH_LIMIT must be between 1 and 1000")
    if max_retries < 0:
        raise ValueError(f"{ENV_PREFIX}MAX_RETRIES must be >= 0")
    if retry_backoff_s < 0:
        raise ValueError(f"{ENV_PREFIX}RETRY_BACKOFF_S must be >= 0")

    older_than_s: int | None = None
    if older_than_value:
        older_than_s = int(older_than_value)
        if older_than_s < 0:
            raise ValueError(f"{ENV_PREFIX}OLDER_THAN_S must be >= 0")

    return ReconcilerSettings(
        api_base_url=value("API_BASE_URL", "http://localhost:8000").rstrip("/"),
        interval_s=interval_s,
        timeout_s=timeout_s,
        batch_limit=batch_limit,
        older_than_s=older_than_s,
        actor_id=value("ACTOR_ID", "refund-reconciler") or "refund-reconciler",
        max_retries=max_retries,
        retry_backoff_s=retry_backoff_s,
    )


def _decode_reconcile_response(raw: str) -> tuple[bool, int, int, str | None]:
    if not raw:
        return False, 0, 0, "Empty reconcile response"
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        return False, 0, 0, "Invalid JSON in reconcile response"

    try:
        applied = int(body.get("applied", 0))
        needs_review = int(body.get("needs_review", 0))
    except (AttributeError, TypeError, ValueError):
        return False, 0, 0, "Invalid counts in reconcile response"

    if applied < 0 or needs_review < 0:
        return False, 0, 0, "Counts must be >= 0 in reconcile response"
    return True, applied, needs_review, None


def run_reconcile_once(
    settings: ReconcilerSettings,
    opener: Callable[..., object] = urllib.request.urlopen,
) -> ReconcileRunResult:
    payload: dict[str, int] = {"limit": settings.batch_limit}
    if settings.older_than_s is not None:
        payload["older_than_s"] = settings.older_than_s

    request = urllib.request.Request(
        url=f"{settings.api_base_url}/api/v1/admin/refunds/reconcile",
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={"Content-Type": "application/json", "X-Actor-Id": settings.actor_id},
    )

    try:
        with opener(request, timeout=settings.timeout_s) as response:
            raw = response.read().decode("utf-8")
            valid, applied, needs_review, error = _decode_reconcile_response(raw)
            return ReconcileRunResult(
                ok=valid,
                applied=applied,
                needs_review=needs_review,
                status_code=getattr(response, "status", 200),
                error=error,
            )
    except urllib.error.HTTPError as exc:
        return ReconcileRunResult(ok=False, status_code=exc.code, error=f"HTTPError: {exc.code}")
    except urllib.error.URLError as exc:
        return ReconcileRunResult(ok=False, error=f"URLError: {exc.reason}")


def _is_retryable(result: ReconcileRunResult) -> bool:
    if result.ok:
        return False
    if result.status_code is None:
        return True
    if result.status_code in {408, 429}:
        return True
    return result.status_code >= 500


def run_reconcile_with_retries(
    settings: ReconcilerSettings,
    opener: Callable[..., object] = urllib.request.urlopen,
    sleep: Callable[[float], None] = time.sleep,
) -> ReconcileRunResult:
    for attempts in range(1, settings.max_retries + 2):
        result = run_reconcile_once(settings, opener=opener)
        if result.ok or not _is_retryable(result) or attempts > settings.max_retries:
            return ReconcileRunResult(
                ok=result.ok,
                applied=result.applied,
                needs_review=result.needs_review,
                status_code=result.status_code,
                error=result.error,
                attempts=attempts,
            )

        logger.warning("reconcile attempt %s failed: %s", attempts, result.error)
        sleep(settings.retry_backoff_s * (2 ** (attempts - 1)))

    raise RuntimeError("reconcile retry loop exhausted unexpectedly")


def run_forever(settings: ReconcilerSettings) -> None:
    while True:
        result = run_reconcile_with_retries(settings)
        if result.ok:
            logger.info(
                "reconcile run applied=%s needs_review=%s", result.applied, result.needs_review
            )
        else:
            logger.error("reconcile run failed after %s attempts: %s", result.attempts, result.error)
        time.sleep(settings.interval_s)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_forever(load_settings())
