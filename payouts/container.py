from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from ledger.balance import BalanceResolver
from ledger.config import Settings
from ledger.contributions import ContributionRecorder
from ledger.events import EventBus
from ledger.service import LedgerService
from ledger.store import Store

from .gateway import HttpPaymentGateway, PaymentGateway
from .manager import PayoutManager


@dataclass
class Services:
    settings: Settings
    store: Store
    events: EventBus
    ledger: LedgerService
    balances: BalanceResolver
    contributions: ContributionRecorder
    payouts: PayoutManager


def build_services(
    settings: Settings,
    gateway: Optional[PaymentGateway] = None,
    store: Optional[Store] = None,
    events: Optional[EventBus] = None,
) -> Services:
    """Wire every component from ``settings``; collaborators can be swapped in."""
    store = store or Store(settings.DATABASE_URL)
    store.create_schema()
    events = events or EventBus()

    ledger = LedgerService(store, currency=settings.CURRENCY)
    balances = BalanceResolver(
        ledger,
        min_withdrawal=settings.MIN_WITHDRAWAL,
        cache_enabled=settings.BALANCE_CACHE_ENABLED,
    )
    contributions = ContributionRecorder(
        ledger,
        owner_lookup=store.get_list_owner,
        events=events,
        default_fee_rate=settings.PLATFORM_FEE_RATE,
    )
    gateway = gateway or HttpPaymentGateway(
        settings.GATEWAY_BASE_URL,
        settings.GATEWAY_API_KEY,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        currency=settings.CURRENCY,
    )
    payouts = PayoutManager(
        store,
        ledger,
        balances,
        gateway,
        events,
        processing_fee_rate=settings.PROCESSING_FEE_RATE,
        max_attempts=settings.MAX_GATEWAY_ATTEMPTS,
        reconcile_after=timedelta(seconds=settings.RECONCILE_AFTER_SECONDS),
    )
    return Services(
        settings=settings,
        store=store,
        events=events,
        ledger=ledger,
        balances=balances,
        contributions=contributions,
        payouts=payouts,
    )
