import random

import pytest

from src.delivery.executor import DeliveryExecutor
from src.delivery.retry import BackoffPolicy
from src.delivery.scheduler import RetryScheduler
from src.delivery.signer import WebhookSigner
from src.merchant_receiver.server import MerchantWebhookServer
from src.observability.alerting import AlertManager
from src.observability.metrics import MetricsCollector
from src.replay.manager import WebhookReplayManager
from src.store.store import DeliveryStore
from src.utils.factories import WebhookFactory


WEBHOOK_SECRET = "test-secret-key-for-hmac"


@pytest.fixture
def webhook_secret():
    return WEBHOOK_SECRET


@pytest.fixture
def signer():
    return WebhookSigner(WEBHOOK_SECRET)


@pytest.fixture
def backoff():
    return BackoffPolicy(base=30, cap=7200, rng=random.Random(42))


@pytest.fixture
def store(tmp_path):
    """File-backed SQLite store so each thread gets a real connection."""
    s = DeliveryStore.from_url(f"sqlite:///{tmp_path / 'deliveries.db'}")
    yield s
    s.dispose()


@pytest.fixture
def executor():
    return DeliveryExecutor(timeout_seconds=5)


@pytest.fixture
def merchant_server():
    server = MerchantWebhookServer(secret=WEBHOOK_SECRET)
    server.start()
    yield server
    server.stop()


@pytest.fixture
def merchant_server_no_auth():
    """Merchant server without signature verification."""
    server = MerchantWebhookServer()
    server.start()
    yield server
    server.stop()


@pytest.fixture
def metrics():
    return MetricsCollector(window_seconds=300)


@pytest.fixture
def received_alerts():
    return []


@pytest.fixture
def alert_manager(metrics, received_alerts):
    return AlertManager(metrics=metrics, threshold=0.10, callback=received_alerts.append)


@pytest.fixture
def scheduler(store, executor, backoff, alert_manager):
    return RetryScheduler(
        store=store,
        executor=executor,
        backoff=backoff,
        alerts=alert_manager,
        batch_size=10,
        parallelism=4,
        interval_seconds=0.05,
        stuck_timeout_seconds=600,
    )


@pytest.fixture
def replay_manager(executor, store):
    return WebhookReplayManager(executor=executor, store=store, secret=WEBHOOK_SECRET)


@pytest.fixture
def webhook_factory():
    return WebhookFactory
