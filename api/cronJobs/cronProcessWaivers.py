from bootstrap import *
import logging
from typing import List

from sqlalchemy import text

from config import AppConfig
from db import create_db_engine
from endpoints.notification.notifier import LogNotifier
from endpoints.transaction.errors import SettlementError
from endpoints.waiver.waiverModel import WaiverModel
from utils.timeUtils import utcNow

logger = logging.getLogger("cron.processWaivers")


def get_leagues_with_pending_claims(engine) -> List[int]:
    sql = text("""
        SELECT DISTINCT "leagueId"
        FROM "WaiverClaim"
        WHERE status = 'PENDING'
        ORDER BY "leagueId"
    """)

    with engine.connect() as conn:
        rows = conn.execute(sql).fetchall()

    return [int(r[0]) for r in rows]


def main(engine=None, notifier=None, clock=utcNow):
    engine = engine or create_db_engine(AppConfig.from_env())
    waiver_model = WaiverModel(engine, notifier=notifier or LogNotifier(), clock=clock)

    league_ids = get_leagues_with_pending_claims(engine)
    logger.info("Found %d leagues with pending waiver claims", len(league_ids))

    processed = 0
    for league_id in league_ids:
        try:
            result = waiver_model.process_waiver_batch(league_id)
            summary = result["summary"]
            logger.info(
                "League %s: total=%d successful=%d failed=%d",
                league_id,
                summary["total"],
                summary["successful"],
                summary["failed"],
            )
            processed += 1
        except SettlementError as e:
            logger.warning("League %s skipped: %s", league_id, e)
        except Exception:
            logger.exception("Error processing waivers for league %s", league_id)

    return processed


if __name__ == "__main__":
    main()
