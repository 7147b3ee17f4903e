import threading
import time
from decimal import Decimal

import pytest

from ledger.config import Settings
from ledger.events import EventBus
from ledger.models import BankAccount, EntryKind, EntryReason
from ledger.store import Store
from payouts.container import build_services
from payouts.gateway import Approved, PaymentGateway


OWNER_ID = 7
OTHER_USER_ID = 8
LIST_ID = 42

BANK_ACCOUNT = BankAccount(
    holder_name="Camila Rojas",
    rut="12.345.678-5",
    bank_name="Banco Estado",
    account_type="vista",
    account_number="000123456789",
)


class FakeGateway(PaymentGateway):
    """
    Scripted gateway.

    ``outcomes[key]`` is a result, an exception to raise, or a list of those
    consumed one call at a time. Keys without a script are approved.
    """

    def __init__(self):
        self.calls: list[tuple[int, str]] = []
        self.outcomes: dict = {}
        self.statuses: dict = {}
        self.delay = 0.0
        self._lock = threading.Lock()

    def transfer(self, amount, destination, idempotency_key):
        with self._lock:
            self.calls.append((amount, idempotency_key))
        if self.delay:
            time.sleep(self.delay)

        outcome = self.outcomes.get(idempotency_key)
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if outcome is None:
            return Approved(transaction_id=f"tx-{idempotency_key}", settled_amount=amount)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def transfer_status(self, idempotency_key):
        status = self.statuses.get(idempotency_key)
        if isinstance(status, Exception):
            raise status
        return status

    def keys_called(self) -> list[str]:
        return [key for _, key in self.calls]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{tmp_path / 'ledger.db'}",
        MIN_WITHDRAWAL=5000,
        PROCESSING_FEE_RATE=Decimal("0.02"),
        PLATFORM_FEE_RATE=Decimal("0.10"),
        MAX_GATEWAY_ATTEMPTS=3,
    )


@pytest.fixture
def store(settings):
    store = Store(settings.DATABASE_URL)
    store.create_schema()
    yield store
    store.engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def published(events):
    received = []
    events.subscribe_all(received.append)
    return received


@pytest.fixture
def services(settings, store, gateway, events):
    services = build_services(settings, gateway=gateway, store=store, events=events)
    store.set_list_owner(LIST_ID, OWNER_ID)
    store.set_bank_account(OWNER_ID, BANK_ACCOUNT.model_dump(mode="json"))
    return services


@pytest.fixture
def fund(services):
    """Credit a user through the ledger, as a settled contribution would."""

    def _fund(user_id: int, amount: int):
        return services.ledger.record(user_id, EntryKind.CREDIT, amount, EntryReason.ADJUSTMENT_MANUAL)

    return _fund
