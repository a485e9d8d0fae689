import logging

from fastapi import BackgroundTasks

from app.models.order import OrderStatus
from app.observability import metrics_store
from app.services.order_effects import OrderEffects, refund_message, status_change_message
from app.services.task_queue import BackgroundTaskQueue, ImmediateTaskQueue, run_task_safely


def test_run_task_safely_logs_and_counts_failures(caplog):
    def boom(*_args):
        raise RuntimeError("smtp down")

    with caplog.at_level(logging.WARNING, logger="storefront.orders"):
        run_task_safely("status_change_email:1", boom, "a@b.c")

    counters = metrics_store.snapshot().counters
    assert counters["background_task_failures_total"] == 1
    assert "background_task_completed_total" not in counters
    record = caplog.records[-1]
    assert record.getMessage() == "background_task_failed"
    assert record.detail == {"task": "status_change_email:1"}


def test_run_task_safely_counts_completions():
    seen = []

    run_task_safely("noop", seen.append, 1)

    assert seen == [1]
    assert metrics_store.snapshot().counters["background_task_completed_total"] == 1


def test_background_queue_defers_until_tasks_run():
    background = BackgroundTasks()
    queue = BackgroundTaskQueue(background)
    seen = []

    queue.submit("deferred", seen.append, "x")

    assert seen == []
    assert len(background.tasks) == 1


def test_failing_notifier_does_not_break_order_effects(make_order, analytics_cache):
    class FailingNotifier:
        def send(self, recipient, subject, body):
            raise ConnectionError("mail relay unreachable")

    order = make_order(status=OrderStatus.PROCESSING)
    effects = OrderEffects(
        notifier=FailingNotifier(), cache=analytics_cache, tasks=ImmediateTaskQueue()
    )

    effects.status_changed(order, OrderStatus.PENDING)
    effects.orders_changed()

    counters = metrics_store.snapshot().counters
    assert counters["background_task_failures_total"] == 1
    assert counters["background_task_completed_total"] == 1


def test_status_message_is_skipped_for_pending(make_order):
    order = make_order(status=OrderStatus.PENDING)

    assert status_change_message(order, OrderStatus.PENDING, OrderStatus.PENDING) is None


def test_refund_message_reports_full_refund(make_order):
    order = make_order(status=OrderStatus.CANCELLED, total=2500, refund_amount=2500)

    subject, body = refund_message(order, 2500, "re_42")

    assert subject == f"Refund processed for order {order.order_number}"
    assert "Refund Amount: $25.00" in body
    assert "Refund Type: Full Refund" in body
    assert "Refund Reference: re_42" in body
