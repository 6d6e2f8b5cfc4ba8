import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.engine import Engine

from endpoints.notification.notifier import LogNotifier, Notifier
from endpoints.roster.rosterModel import RosterModel
from endpoints.transaction.errors import ErrorKind, SettlementError
from endpoints.transaction.settlement import SettlementEngine
from endpoints.transaction.tradeRepository import ClaimStatus, TradeRepository
from endpoints.transaction.validator import TradeValidator
from utils.timeUtils import fromDbTime, utcNow

logger = logging.getLogger(__name__)

# A run that has held the lock this long is assumed dead and may be taken over.
WAIVER_RUN_STALE_SECONDS = 15 * 60

CANCELLED_REASON = "cancelled by owner"
NOT_REACHED_REASON = "not processed in waiver run"


class WaiverModel:

    def __init__(
        self,
        db: Engine,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcNow,
    ):
        self.db = db
        self.clock = clock
        self.notifier = notifier or LogNotifier()
        self.roster = RosterModel(db)
        self.repo = TradeRepository()
        self.validator = TradeValidator(db, self.roster, self.repo)
        self.settlement = SettlementEngine(db, self.roster, self.repo, self.validator, clock=clock)

    # ---------- Claims ----------

    def submit_claim(
        self,
        league_id: int,
        acting_user_id: str,
        player_id: int,
        drop_player_id: Optional[int] = None,
        faab_bid: Optional[int] = None,
        expires_at: Any = None,
    ) -> Dict[str, Any]:
        now = self.clock()

        if drop_player_id is not None and int(drop_player_id) == int(player_id):
            raise SettlementError(ErrorKind.INVALID_REQUEST, "Cannot claim and drop the same player")

        expires = None
        if expires_at is not None:
            try:
                expires = fromDbTime(expires_at)
            except (AttributeError, TypeError, ValueError):
                raise SettlementError(ErrorKind.INVALID_REQUEST, "expiresAt must be an ISO-8601 timestamp")
            if expires <= now:
                raise SettlementError(ErrorKind.INVALID_REQUEST, "Expiration must be in the future")

        with self.db.begin() as conn:
            settings = self.roster.get_league_settings(league_id, conn=conn)

            team = self.roster.get_team_for_user(league_id, acting_user_id, conn=conn)
            if not team:
                raise SettlementError(
                    ErrorKind.UNAUTHORIZED,
                    f"User {acting_user_id} has no team in league {league_id}",
                )
            team_id = int(team["id"])

            if self.roster.find_player_owner(league_id, player_id, conn=conn):
                raise SettlementError(ErrorKind.INVALID_REQUEST, f"Player {player_id} is already rostered")

            for pending in self.repo.list_pending_claims(conn, league_id):
                if int(pending["teamId"]) == team_id and int(pending["playerId"]) == int(player_id):
                    raise SettlementError(
                        ErrorKind.INVALID_REQUEST,
                        f"Team {team_id} already has a pending claim for player {player_id}",
                    )

            claim = {
                "teamId": team_id,
                "playerId": int(player_id),
                "dropPlayerId": int(drop_player_id) if drop_player_id is not None else None,
                "faabBid": int(faab_bid) if faab_bid is not None else None,
            }
            self.validator.validate_waiver_claim(conn, claim, settings)

            priority = None if settings.usesFaab else team["waiverPriority"]
            bid = claim["faabBid"] if settings.usesFaab else None

            claim_id = self.repo.insert_claim(
                conn,
                league_id,
                team_id,
                acting_user_id,
                claim["playerId"],
                claim["dropPlayerId"],
                bid,
                priority,
                now,
                expires_at=expires,
            )

        logger.info("Waiver claim %s submitted by team %s for player %s", claim_id, team_id, player_id)
        return {
            "id": claim_id,
            "status": ClaimStatus.PENDING,
            "teamId": team_id,
            "playerId": claim["playerId"],
            "dropPlayerId": claim["dropPlayerId"],
            "faabBid": bid,
            "priority": priority,
        }

    def cancel_claim(self, claim_id: int, acting_user_id: str) -> Dict[str, Any]:
        now = self.clock()

        with self.db.begin() as conn:
            claim = self.repo.get_claim(conn, claim_id)
            if not claim:
                raise SettlementError(ErrorKind.NOT_FOUND, f"Waiver claim {claim_id} not found")

            team = self.roster.get_team(claim["teamId"], conn=conn)
            if not team or str(team["ownerUserId"]) != str(acting_user_id):
                raise SettlementError(ErrorKind.UNAUTHORIZED, "Only the claiming team can cancel this claim")

            if not self.repo.resolve_claim(conn, claim_id, ClaimStatus.FAILED, now, reason=CANCELLED_REASON):
                raise SettlementError(
                    ErrorKind.ALREADY_PROCESSED,
                    f"Waiver claim {claim_id} is already {claim['status'].lower()}",
                )

        return {"id": claim_id, "status": ClaimStatus.FAILED, "reason": CANCELLED_REASON}

    # ---------- Batch ----------

    def assert_commissioner(self, league_id: int, acting_user_id: str) -> None:
        league = self.roster.get_league(league_id)
        if not league:
            raise SettlementError(ErrorKind.NOT_FOUND, f"League {league_id} not found")
        if str(league["commissionerUserId"]) != str(acting_user_id):
            raise SettlementError(ErrorKind.UNAUTHORIZED, "Only the commissioner can run waivers on demand")

    def process_waiver_batch(self, league_id: int) -> Dict[str, Any]:
        """
        Runs every PENDING claim in the league through the settlement engine.

        Only one run per league may be active; the run lock lives on the
        League row. Claims in this batch that are still PENDING at the end
        are failed. Claims submitted while the run is going wait for the next.
        """
        now = self.clock()
        settings = self.roster.get_league_settings(league_id)

        with self.db.begin() as conn:
            acquired = self.repo.acquire_waiver_run(
                conn,
                league_id,
                now,
                now - timedelta(seconds=WAIVER_RUN_STALE_SECONDS),
            )
        if not acquired:
            raise SettlementError(ErrorKind.ALREADY_PROCESSED, "waiver processing already running")

        try:
            with self.db.connect() as conn:
                claims = self.repo.list_pending_claims(conn, league_id)

            results = self.settlement.execute_waiver_batch(claims, settings)

            batch_ids = {int(c["id"]) for c in claims}
            with self.db.begin() as conn:
                leftover = [
                    int(c["id"])
                    for c in self.repo.list_pending_claims(conn, league_id)
                    if int(c["id"]) in batch_ids
                ]
                swept = self.repo.fail_pending_claims(conn, leftover, NOT_REACHED_REASON, self.clock())
            if swept:
                logger.warning("Failed %d unprocessed waiver claims in league %s", swept, league_id)
                for result in results:
                    if result["claimId"] in leftover:
                        result.update(status=ClaimStatus.FAILED, reason=NOT_REACHED_REASON)
        except SettlementError:
            raise
        except Exception:
            logger.exception("Unexpected error processing waivers for league %s", league_id)
            raise SettlementError(ErrorKind.INTERNAL, f"Failed to process waivers for league {league_id}")
        finally:
            with self.db.begin() as conn:
                self.repo.release_waiver_run(conn, league_id)

        successful = sum(1 for r in results if r["status"] == ClaimStatus.SUCCESSFUL)
        summary = {"total": len(results), "successful": successful, "failed": len(results) - successful}
        logger.info(
            "Waivers processed for league %s: %d successful, %d failed",
            league_id,
            summary["successful"],
            summary["failed"],
        )

        self._notify_results(league_id, results)
        return {"leagueId": league_id, "results": results, "summary": summary}

    def _notify_results(self, league_id: int, results: List[Dict[str, Any]]) -> None:
        by_team: Dict[int, List[Dict[str, Any]]] = defaultdict(list)
        for result in results:
            by_team[result["teamId"]].append(result)

        for team_id, team_results in by_team.items():
            self.notifier.notify(
                self.roster.get_owner_user_ids([team_id]),
                {"event": "waiver:processed", "leagueId": league_id, "teamId": team_id, "results": team_results},
            )
