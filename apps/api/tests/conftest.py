import fnmatch
import threading
import uuid
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import app.models  # noqa: F401
from app.config import settings
from app.db.base import Base
from app.db.session import engine as app_engine
from app.db.session import get_db
from app.dependencies import get_cache, get_payment_processor, get_task_queue
from app.integrations.errors import CacheStoreError
from app.integrations.notification_client import get_notifier
from app.integrations.payment_client import ProcessorRefund
from app.main import app
from app.models.customer import Customer
from app.models.order import Order, OrderItem, OrderStatus
from app.models.product import Product
from app.observability import metrics_store
from app.services.cache import AnalyticsCache
from app.services.order_effects import OrderEffects
from app.services.rate_limiter import InMemoryRateLimiter
from app.services.task_queue import run_task_safely


class FakeCacheStore:
    """Dict-backed stand-in for Redis with switchable failures."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.fail_scan = False
        self.fail_delete_calls: set[int] = set()
        self.delete_calls: list[tuple[str, ...]] = []
        self.scan_calls = 0

    def get(self, key):
        if self.fail_reads:
            raise CacheStoreError("read failed")
        return self.data.get(key)

    def set(self, key, value, ttl_s):
        if self.fail_writes:
            raise CacheStoreError("write failed")
        self.data[key] = value
        self.ttls[key] = ttl_s

    def scan(self, cursor, pattern, count):
        if self.fail_scan:
            raise CacheStoreError("scan failed")
        self.scan_calls += 1
        keys = sorted(key for key in self.data if fnmatch.fnmatchcase(key, pattern))
        start = int(cursor)
        page = keys[start : start + count]
        next_cursor = start + count
        return ("0" if next_cursor >= len(keys) else str(next_cursor)), page

    def delete(self, *keys):
        call_index = len(self.delete_calls)
        self.delete_calls.append(keys)
        if call_index in self.fail_delete_calls:
            raise CacheStoreError("delete failed")
        deleted = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                deleted += 1
        return deleted

    def ping(self):
        return True

    def flush(self):
        self.data.clear()


class FakePaymentClient:
    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.error: Exception | None = None
        self.before_return = None

    def create_refund(self, *, payment_reference, amount, idempotency_key, reason=None):
        self.calls.append(
            {
                "payment_reference": payment_reference,
                "amount": amount,
                "idempotency_key": idempotency_key,
                "reason": reason,
            }
        )
        if self.error is not None:
            raise self.error
        if self.before_return is not None:
            self.before_return()
        return ProcessorRefund(id=f"re_{len(self.calls)}", status="succeeded", amount=amount)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send(self, recipient, subject, body):
        self.sent.append((recipient, subject, body))


class RecordingTaskQueue:
    """Records task names and runs each one inline through the safe wrapper."""

    def __init__(self) -> None:
        self.submitted: list[str] = []

    def submit(self, name, func, *args):
        self.submitted.append(name)
        run_task_safely(name, func, *args)


@pytest.fixture(scope="session", autouse=True)
def enable_testing_mode():
    original = settings.testing
    settings.testing = True
    yield
    settings.testing = original


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=app_engine)
    Base.metadata.create_all(bind=app_engine)
    yield


@pytest.fixture(autouse=True)
def reset_metrics_store():
    metrics_store.reset()
    yield


@pytest.fixture
def session_factory():
    return sessionmaker(autocommit=False, autoflush=False, bind=app_engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def cache_store():
    return FakeCacheStore()


@pytest.fixture
def analytics_cache(cache_store):
    return AnalyticsCache(cache_store, scan_count=100, delete_batch_size=100)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def task_queue():
    return RecordingTaskQueue()


@pytest.fixture
def effects(notifier, analytics_cache, task_queue):
    return OrderEffects(notifier=notifier, cache=analytics_cache, tasks=task_queue)


@pytest.fixture
def payment_client():
    return FakePaymentClient()


@pytest.fixture
def client(db_session, session_factory, analytics_cache, notifier, task_queue, payment_client):
    db_session_lock = threading.Lock()

    def override_get_db():
        if db_session_lock.acquire(blocking=False):
            try:
                yield db_session
            finally:
                db_session_lock.release()
            return

        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cache] = lambda: analytics_cache
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_task_queue] = lambda: task_queue
    app.dependency_overrides[get_payment_processor] = lambda: payment_client
    with TestClient(app) as test_client:
        test_client.app.state.rate_limiter = InMemoryRateLimiter()
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_customer(db_session):
    def _make(name: str | None = "Ada Lovelace", email: str | None = None) -> Customer:
        customer = Customer(name=name, email=email or f"{uuid.uuid4().hex[:10]}@example.com")
        db_session.add(customer)
        db_session.commit()
        return customer

    return _make


@pytest.fixture
def make_product(db_session):
    def _make(price: int = 10000, name: str = "Widget", sku: str | None = None) -> Product:
        product = Product(name=name, sku=sku or f"SKU-{uuid.uuid4().hex[:8]}", price=price)
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture
def make_order(db_session, make_customer, make_product):
    def _make(
        *,
        status: OrderStatus = OrderStatus.PENDING,
        total: int = 10000,
        payment_reference: str | None = "pi_test_123",
        refund_amount: int | None = None,
        customer: Customer | None = None,
        created_at: datetime | None = None,
        tracking_number: str | None = None,
        shipping_carrier: str | None = None,
    ) -> Order:
        customer = customer or make_customer()
        product = make_product(price=total)
        order = Order(
            order_number=f"ORD-{uuid.uuid4().hex[:8].upper()}",
            customer_id=customer.id,
            status=status,
            subtotal=total,
            tax=0,
            shipping=0,
            total=total,
            payment_reference=payment_reference,
            refund_amount=refund_amount,
            tracking_number=tracking_number,
            shipping_carrier=shipping_carrier,
            items=[OrderItem(product_id=product.id, position=0, quantity=1, unit_price=total)],
        )
        if created_at is not None:
            order.created_at = created_at
        db_session.add(order)
        db_session.commit()
        db_session.refresh(order)
        return order

    return _make
