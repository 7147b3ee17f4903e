"""
Periodic payout work, triggered by an external scheduler (cron, a queue
worker, a serverless timer):

    python -m payouts.jobs

Each run advances every pending payout and then reconciles payouts that
have been waiting on the gateway for longer than RECONCILE_AFTER_SECONDS.
"""

import logging

from ledger.config import settings
from ledger.log import configure_logging

from .container import Services, build_services

logger = logging.getLogger(__name__)


def run_payout_cycle(services: Services) -> dict:
    batch = services.payouts.batch_process_pending()
    reconcile = services.payouts.reconcile_processing()
    logger.info(
        "Payout cycle done",
        extra={"batch": batch.model_dump(), "reconcile": reconcile.model_dump()},
    )
    return {"batch": batch.model_dump(), "reconcile": reconcile.model_dump()}


if __name__ == "__main__":
    configure_logging(settings.LOG_LEVEL)
    run_payout_cycle(build_services(settings))
