"""Shared fixtures for the creatorpay test suite.

Every test gets its own SQLite file under ``tmp_path``; the orchestrator
fixture wires a real database, vault and gateway client with a manual
clock and a recording delivery notifier.
"""

from __future__ import annotations

import time
from typing import List, Tuple

import pytest

from creatorpay.catalog import Catalog
from creatorpay.config import PaymentConfig, VaultKey
from creatorpay.credential_vault import CredentialVault
from creatorpay.events import EventBus
from creatorpay.gateway.qris import QrisGatewayClient
from creatorpay.ledger import LedgerStore
from creatorpay.payments.base import DeliveryNotifier
from creatorpay.payments.orchestrator import PaymentOrchestrator
from creatorpay.persistence import PaymentDB
from creatorpay.sessions import SessionStore

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

GATEWAY_BASE = "https://gateway.test"
OWNER_ID = 5001
CHANNEL_ID = -1001
BUYER_ID = 7761064473
REAL_KEY = "oy-live-key-123"


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float | None = None) -> None:
        self.now = start if start is not None else time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier(DeliveryNotifier):
    """Delivery collaborator that records calls (and can be told to fail)."""

    def __init__(self) -> None:
        self.calls: List[Tuple[int, int]] = []
        self.fail = False

    async def deliver(self, buyer_id: int, content_id: int) -> None:
        self.calls.append((buyer_id, content_id))
        if self.fail:
            raise RuntimeError("chat platform unavailable")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db(tmp_path):
    database = PaymentDB(str(tmp_path / "creatorpay.db"))
    yield database
    database.close()


@pytest.fixture
def vault_key():
    return VaultKey.from_secret("test-encryption-secret")


@pytest.fixture
def vault(db, vault_key):
    return CredentialVault(db, vault_key)


@pytest.fixture
def catalog(db):
    return Catalog(db)


@pytest.fixture
def ledger(db):
    return LedgerStore(db)


@pytest.fixture
def sessions(db):
    return SessionStore(db)


@pytest.fixture
def clock():
    return FakeClock(1_750_000_000.0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def config(tmp_path):
    return PaymentConfig(
        environment="sandbox",
        base_url=GATEWAY_BASE,
        payment_ttl_seconds=600,
        poll_interval_seconds=3600.0,
        watcher_grace_seconds=60.0,
        request_timeout_seconds=5.0,
        db_path=str(tmp_path / "creatorpay.db"),
    )


@pytest.fixture
def gateway(config):
    client = QrisGatewayClient.from_config(config)
    yield client
    client.close()


@pytest.fixture
def channel(catalog):
    return catalog.add_channel(CHANNEL_ID, OWNER_ID, username="creator", title="Creator Channel")


@pytest.fixture
def content(catalog, channel):
    return catalog.add_content(channel.id, 15_000, title="Episode 1")


@pytest.fixture
def orchestrator(db, vault, gateway, config, notifier, bus, clock, channel):
    return PaymentOrchestrator(
        db,
        vault=vault,
        gateway=gateway,
        config=config,
        notifier=notifier,
        event_bus=bus,
        clock=clock,
    )
