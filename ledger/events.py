"""
Outbound events for the notification collaborator.

Events are published only after the state change they describe has been
committed. Delivery is synchronous, in subscription order, and
fire-and-forget: a failing handler is logged and never propagates back into
the ledger or payout operation that emitted the event.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PayoutRequested:
    payout_id: int
    user_id: int
    amount: int


@dataclass(frozen=True)
class PayoutCompleted:
    payout_id: int
    user_id: int


@dataclass(frozen=True)
class PayoutFailed:
    payout_id: int
    user_id: int


@dataclass(frozen=True)
class PayoutCancelled:
    payout_id: int
    user_id: int


@dataclass(frozen=True)
class ContributionReceived:
    contribution_id: int
    list_id: int
    amount: int


Event = Union[PayoutRequested, PayoutCompleted, PayoutFailed, PayoutCancelled, ContributionReceived]
Handler = Callable[[Event], None]


class EventBus:
    def __init__(self):
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._catch_all: list[Handler] = []

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        self._catch_all.append(handler)

    def publish(self, event: Event) -> None:
        for handler in [*self._handlers.get(type(event), []), *self._catch_all]:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler failed",
                    extra={"event": type(event).__name__, "handler": getattr(handler, "__name__", repr(handler))},
                )
