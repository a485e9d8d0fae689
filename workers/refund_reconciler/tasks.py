"""Refund reconciler tasks."""

from __future__ import annotations

from workers.refund_reconciler.worker import (
    ReconcileRunResult,
    ReconcilerSettings,
    load_settings,
    run_reconcile_with_retries,
)


def reconcile_tick(settings: ReconcilerSettings | None = None) -> ReconcileRunResult:
    """Run a single reconcile pass, for cron-style scheduling."""
    resolved_settings = settings or load_settings()
    return run_reconcile_with_retries(resolved_settings)
