import logging
import os
import sys
import time
from typing import Optional

API_ROOT = os.path.dirname(os.path.dirname(__file__))
if API_ROOT not in sys.path:
    sys.path.insert(0, API_ROOT)

from config import AppConfig
from db import create_db_engine
from endpoints.notification.notifier import LogNotifier
from endpoints.transaction.transactionModel import TransactionModel
from utils.timeUtils import utcNow

logger = logging.getLogger(__name__)

# Safety bounds: never sleep longer than this without re-checking (new trades arrive)
MAX_SLEEP_SECONDS = 30
MIN_SLEEP_SECONDS = 0.5


def sweep_once(model: TransactionModel) -> int:
    """
    Expires elapsed proposals and settles trades whose review window closed.
    Returns how many trades changed state.
    """
    expired = model.expire_elapsed_proposals()
    finalized = model.review.finalize_closed_reviews()

    for trade_id in expired:
        logger.info("Expired trade %s", trade_id)
    for result in finalized:
        logger.info("Review closed for trade %s -> %s", result["tradeId"], result["status"])

    return len(expired) + len(finalized)


def seconds_until_next_deadline(model: TransactionModel) -> Optional[float]:
    with model.db.connect() as conn:
        deadline = model.repo.next_deadline(conn)

    if deadline is None:
        return None
    return (deadline - model.clock()).total_seconds()


def run(model: Optional[TransactionModel] = None):
    if model is None:
        model = TransactionModel(create_db_engine(AppConfig.from_env()), notifier=LogNotifier(), clock=utcNow)

    while True:
        try:
            if sweep_once(model):
                # Tiny pause to avoid a tight loop when many deadlines share an instant
                time.sleep(MIN_SLEEP_SECONDS)
                continue

            seconds = seconds_until_next_deadline(model)
            if seconds is None or seconds <= 0:
                # Nothing scheduled, or only trades waiting on a locked player
                time.sleep(MAX_SLEEP_SECONDS)
                continue

            time.sleep(max(MIN_SLEEP_SECONDS, min(MAX_SLEEP_SECONDS, seconds)))

        except Exception:
            logger.exception("Trade review worker error")
            time.sleep(2)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run()
