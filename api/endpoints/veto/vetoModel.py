# endpoints/veto/vetoModel.py
#
# Review window for accepted trades. Players do not move while a trade is
# under review; settlement runs once, when the window closes without a veto
# quorum.
import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.engine import Engine

from endpoints.notification.notifier import LogNotifier, Notifier
from endpoints.roster.rosterModel import RosterModel
from endpoints.transaction.errors import ErrorKind, SettlementError
from endpoints.transaction.settlement import SettlementEngine
from endpoints.transaction.tradeRepository import TradeRepository, TradeStatus, Vote
from endpoints.transaction.validator import MAX_NOTES_LENGTH, TradeValidator, involvedTeamIds
from utils.timeUtils import utcNow

logger = logging.getLogger(__name__)

VETO_QUORUM_SHARE = 0.5

# Re-check failures that end the trade instead of being retried later.
CANCEL_ON_FINALIZE = (
    ErrorKind.STALE_ROSTER,
    ErrorKind.INSUFFICIENT_BUDGET,
    ErrorKind.ROSTER_FULL,
)


def vetoQuorum(total_teams: int, involved_teams: int) -> Tuple[int, int]:
    """
    Returns (eligibleVoters, vetoThreshold). Only teams outside the trade vote;
    a veto needs at least half of them, rounded up.
    """
    eligible = max(int(total_teams) - int(involved_teams), 0)
    return eligible, int(math.ceil(eligible * VETO_QUORUM_SHARE))


class VetoModel:

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

    # ---------- Votes ----------

    def cast_vote(
        self,
        trade_id: int,
        user_id: str,
        vote: str,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        vote = str(vote or "").upper()
        if vote not in Vote.ALL:
            raise SettlementError(ErrorKind.INVALID_REQUEST, "vote must be VETO or APPROVE")
        if reason is not None and len(reason) > MAX_NOTES_LENGTH:
            raise SettlementError(
                ErrorKind.INVALID_REQUEST,
                f"reason must be at most {MAX_NOTES_LENGTH} characters",
            )

        # a window that already closed is settled before the vote is judged
        self.finalize_if_review_closed(trade_id)

        now = self.clock()
        try:
            with self.db.begin() as conn:
                trade = self.repo.get_trade(conn, trade_id)
                if not trade:
                    raise SettlementError(ErrorKind.NOT_FOUND, f"Trade {trade_id} not found")

                if not self.repo.lock_trade_in_review(conn, trade_id, now):
                    raise SettlementError(
                        ErrorKind.TRADE_NOT_IN_REVIEW,
                        f"Trade {trade_id} is not under review",
                    )

                league_id = int(trade["leagueId"])
                team = self.roster.get_team_for_user(league_id, user_id, conn=conn)
                if not team:
                    raise SettlementError(
                        ErrorKind.NOT_IN_LEAGUE,
                        f"User {user_id} has no team in league {league_id}",
                    )

                involved = involvedTeamIds(trade["items"])
                if int(team["id"]) in involved:
                    raise SettlementError(
                        ErrorKind.INVOLVED_PARTY,
                        "Teams involved in a trade cannot vote on it",
                    )

                self.repo.insert_vote(conn, trade_id, user_id, int(team["id"]), vote, reason, now)

                tally = self.repo.vote_tally(conn, trade_id)
                total_teams = len(self.roster.get_league_teams(league_id, conn=conn))
                eligible, threshold = vetoQuorum(total_teams, len(involved))

                status = TradeStatus.ACCEPTED
                if tally["veto"] >= threshold and self.repo.transition_trade(
                    conn,
                    trade_id,
                    TradeStatus.ACCEPTED,
                    TradeStatus.VETOED,
                    now,
                    processedAt=now,
                ):
                    status = TradeStatus.VETOED

                targets = self.roster.get_owner_user_ids(involved, conn=conn)
        except SettlementError:
            raise
        except Exception:
            logger.exception("Unexpected error casting vote on trade %s", trade_id)
            raise SettlementError(ErrorKind.INTERNAL, f"Failed to record vote on trade {trade_id}")

        vote_tally = {
            "veto": tally["veto"],
            "approve": tally["approve"],
            "eligibleVoters": eligible,
            "vetoThreshold": threshold,
        }

        if status == TradeStatus.VETOED:
            logger.info("Trade %s vetoed (%d of %d eligible)", trade_id, tally["veto"], eligible)
            self.notifier.notify(
                targets,
                {
                    "event": "trade:vetoed",
                    "tradeId": trade_id,
                    "leagueId": league_id,
                    "status": status,
                    "voteTally": vote_tally,
                },
            )

        return {"tradeId": trade_id, "status": status, "voteTally": vote_tally}

    def get_vote_tally(self, trade_id: int, user_id: str) -> Dict[str, Any]:
        self.finalize_if_review_closed(trade_id)

        with self.db.connect() as conn:
            trade = self.repo.get_trade(conn, trade_id)
            if not trade:
                raise SettlementError(ErrorKind.NOT_FOUND, f"Trade {trade_id} not found")

            league_id = int(trade["leagueId"])
            if not self.roster.get_team_for_user(league_id, user_id, conn=conn):
                raise SettlementError(
                    ErrorKind.NOT_IN_LEAGUE,
                    f"User {user_id} has no team in league {league_id}",
                )

            tally = self.repo.vote_tally(conn, trade_id)
            total_teams = len(self.roster.get_league_teams(league_id, conn=conn))

        eligible, threshold = vetoQuorum(total_teams, len(involvedTeamIds(trade["items"])))
        return {
            "tradeId": trade_id,
            "status": trade["status"],
            "reviewEndsAt": trade["reviewEndsAt"],
            "settledAt": trade["settledAt"],
            "voteTally": {
                "veto": tally["veto"],
                "approve": tally["approve"],
                "eligibleVoters": eligible,
                "vetoThreshold": threshold,
            },
        }

    # ---------- Finalization ----------

    def finalize_if_review_closed(self, trade_id: int) -> Optional[Dict[str, Any]]:
        """
        Settles an ACCEPTED trade whose review window has closed. Returns None
        when there is nothing to do (still open, already settled or vetoed)
        or when settlement must be retried later (a player is locked).
        """
        now = self.clock()

        with self.db.connect() as conn:
            trade = self.repo.get_trade(conn, trade_id)

        if (
            not trade
            or trade["status"] != TradeStatus.ACCEPTED
            or trade["settledAt"] is not None
            or trade["reviewEndsAt"] is None
            or trade["reviewEndsAt"] > now
        ):
            return None

        league_id = int(trade["leagueId"])
        settings = self.roster.get_league_settings(league_id)
        targets = self.roster.get_owner_user_ids(involvedTeamIds(trade["items"]))

        try:
            result = self.settlement.settle_trade(trade_id, settings)
        except SettlementError as e:
            if e.kind == ErrorKind.ALREADY_PROCESSED:
                return None
            if e.kind == ErrorKind.PLAYER_LOCKED:
                logger.info("Trade %s waiting on locked player: %s", trade_id, e.message)
                return None
            if e.kind not in CANCEL_ON_FINALIZE:
                raise
            return self._cancel_after_review(trade_id, league_id, e, targets)

        self.notifier.notify(
            targets,
            {"event": "trade:settled", "tradeId": trade_id, "leagueId": league_id, "status": TradeStatus.ACCEPTED},
        )
        return result

    def _cancel_after_review(
        self,
        trade_id: int,
        league_id: int,
        error: SettlementError,
        targets: List[str],
    ) -> Optional[Dict[str, Any]]:
        now = self.clock()
        with self.db.begin() as conn:
            cancelled = self.repo.cancel_unsettled(conn, trade_id, error.message, now)

        if not cancelled:
            return None

        logger.warning("Trade %s cancelled at review close: %s", trade_id, error.message)
        self.notifier.notify(
            targets,
            {
                "event": "trade:cancelled",
                "tradeId": trade_id,
                "leagueId": league_id,
                "status": TradeStatus.CANCELLED,
                "error": error.kind,
                "reason": error.message,
            },
        )
        return {"tradeId": trade_id, "status": TradeStatus.CANCELLED, "error": error.kind, "reason": error.message}

    def finalize_closed_reviews(self, limit: int = 100) -> List[Dict[str, Any]]:
        now = self.clock()
        with self.db.connect() as conn:
            trade_ids = self.repo.list_review_closed_ids(conn, now, limit=limit)

        finalized = []
        for trade_id in trade_ids:
            try:
                result = self.finalize_if_review_closed(trade_id)
            except Exception:
                logger.exception("Failed to finalize review for trade %s", trade_id)
                continue
            if result:
                finalized.append(result)

        return finalized
