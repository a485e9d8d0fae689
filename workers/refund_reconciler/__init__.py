"""Refund reconciler module exports."""

from .worker import (
    ReconcileRunResult,
    ReconcilerSettings,
    load_settings,
    run_forever,
    run_reconcile_once,
    run_reconcile_with_retries,
)

__all__ = [
    "ReconcileRunResult",
    "ReconcilerSettings",
    "load_settings",
    "run_reconcile_once",
    "run_reconcile_with_retries",
    "run_forever",
]
