# endpoints/transaction/settlement.py
#
# The only writer of roster rows, team FAAB/priority fields and the
# transaction log. Each settlement action runs inside one engine.begin()
# block; any exception rolls every roster change for that action back.
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from endpoints.league.leagueSettings import LeagueSettings
from endpoints.roster.rosterModel import RosterModel
from endpoints.transaction.errors import ErrorKind, SettlementError
from endpoints.transaction.tradeRepository import (
    ClaimStatus,
    ItemType,
    TradeRepository,
    TradeStatus,
)
from endpoints.transaction.validator import TradeValidator
from utils.timeUtils import toDbTime, utcNow

logger = logging.getLogger(__name__)


class LogType:
    TRADE = "TRADE"
    WAIVER = "WAIVER"
    DROP = "DROP"


class Direction:
    SENT = "SENT"
    RECEIVED = "RECEIVED"
    ADDED = "ADDED"
    DROPPED = "DROPPED"


HIGHER_PRIORITY_REASON = "player already claimed by higher priority team"
UNAVAILABLE_REASON = "player no longer available"
EXPIRED_CLAIM_REASON = "claim expired before processing"
INTERNAL_REASON = "processing error"


def orderClaims(
    claims: List[Dict[str, Any]],
    settings: LeagueSettings,
    priorities: Optional[Dict[int, int]] = None,
) -> List[Dict[str, Any]]:
    """
    ROLLING: priority ascending, then creation time. FAAB: highest bid first,
    then creation time. Claim id breaks exact timestamp ties.

    `priorities` maps teamId to a priority that overrides the one recorded on
    the claim, e.g. after the team won a claim earlier in the same run.
    """
    if settings.usesFaab:
        return sorted(claims, key=lambda c: (-(c["faabBid"] or 0), c["createdAt"], c["id"]))

    priorities = priorities or {}
    far_back = float("inf")

    def rank(c):
        priority = priorities.get(int(c["teamId"]), c["priority"])
        return (priority if priority is not None else far_back, c["createdAt"], c["id"])

    return sorted(claims, key=rank)


class SettlementEngine:

    def __init__(
        self,
        db: Engine,
        roster: RosterModel,
        repo: TradeRepository,
        validator: TradeValidator,
        clock: Callable[[], datetime] = utcNow,
    ):
        self.db = db
        self.roster = roster
        self.repo = repo
        self.validator = validator
        self.clock = clock

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def _append_log(
        self,
        conn,
        league_id: int,
        team_id: int,
        log_type: str,
        direction: str,
        now: datetime,
        player_id: Optional[int] = None,
        counterparty_team_id: Optional[int] = None,
        trade_id: Optional[int] = None,
        claim_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        conn.execute(
            text("""
                INSERT INTO "TransactionLog"
                    ("leagueId", "teamId", "playerId", type, direction,
                     "counterpartyTeamId", "tradeId", "claimId", details, "createdAt")
                VALUES
                    (:league_id, :team_id, :player_id, :type, :direction,
                     :counterparty_team_id, :trade_id, :claim_id, :details, :now)
            """),
            {
                "league_id": league_id,
                "team_id": team_id,
                "player_id": player_id,
                "type": log_type,
                "direction": direction,
                "counterparty_team_id": counterparty_team_id,
                "trade_id": trade_id,
                "claim_id": claim_id,
                "details": json.dumps(details, sort_keys=True) if details else None,
                "now": toDbTime(now),
            },
        )

    def execute_drop(
        self,
        conn,
        league_id: int,
        team_id: int,
        player_id: int,
        now: datetime,
        log_type: str = LogType.DROP,
        direction: str = Direction.DROPPED,
        **log_fields: Any,
    ) -> None:
        result = conn.execute(
            text("""
                DELETE FROM "RosterSlot"
                WHERE "leagueId" = :league_id
                  AND "teamId" = :team_id
                  AND "playerId" = :player_id
            """),
            {"league_id": league_id, "team_id": team_id, "player_id": player_id},
        )

        if result.rowcount != 1:
            raise SettlementError(
                ErrorKind.STALE_ROSTER,
                f"Player {player_id} is no longer on team {team_id}'s roster",
            )

        self._append_log(conn, league_id, team_id, log_type, direction, now, player_id=player_id, **log_fields)

    def execute_add(
        self,
        conn,
        league_id: int,
        team_id: int,
        player_id: int,
        now: datetime,
        log_type: str = LogType.WAIVER,
        direction: str = Direction.ADDED,
        **log_fields: Any,
    ) -> None:
        try:
            conn.execute(
                text("""
                    INSERT INTO "RosterSlot"
                        ("leagueId", "teamId", "playerId", slot, "isLocked", "acquiredVia", "acquiredAt")
                    VALUES
                        (:league_id, :team_id, :player_id, 'BENCH', :locked, :via, :now)
                """),
                {
                    "league_id": league_id,
                    "team_id": team_id,
                    "player_id": player_id,
                    "locked": False,
                    "via": log_type,
                    "now": toDbTime(now),
                },
            )
        except IntegrityError:
            raise SettlementError(
                ErrorKind.STALE_ROSTER,
                f"Player {player_id} is already rostered in league {league_id}",
            )

        self._append_log(conn, league_id, team_id, log_type, direction, now, player_id=player_id, **log_fields)

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def execute_trade(
        self,
        conn,
        trade: Dict[str, Any],
        settings: LeagueSettings,
        now: datetime,
        decided_by_user_id: Optional[str] = None,
    ) -> None:
        """
        Applies every item of an accepted trade on the caller's transaction.
        A PENDING trade is moved to ACCEPTED first; an ACCEPTED trade that has
        already been settled is refused, so a trade is applied at most once.
        """
        trade_id = int(trade["id"])
        league_id = int(trade["leagueId"])

        if trade["status"] == TradeStatus.PENDING:
            if not self.repo.transition_trade(
                conn,
                trade_id,
                TradeStatus.PENDING,
                TradeStatus.ACCEPTED,
                now,
                processedAt=now,
                decidedByUserId=decided_by_user_id,
            ):
                raise SettlementError(ErrorKind.ALREADY_PROCESSED, f"Trade {trade_id} is no longer pending")

        if not self.repo.mark_settled(conn, trade_id, now):
            raise SettlementError(ErrorKind.ALREADY_PROCESSED, f"Trade {trade_id} was already settled")

        self.validator.check_assets(conn, league_id, trade["items"], settings)

        # Pull every outgoing player first so swaps between the same two
        # teams never collide on the one-team-per-player constraint.
        for item in trade["items"]:
            if item["itemType"] == ItemType.PLAYER:
                self.execute_drop(
                    conn,
                    league_id,
                    int(item["fromTeamId"]),
                    int(item["playerId"]),
                    now,
                    log_type=LogType.TRADE,
                    direction=Direction.SENT,
                    counterparty_team_id=int(item["toTeamId"]),
                    trade_id=trade_id,
                )

        for item in trade["items"]:
            self._apply_incoming(conn, league_id, trade_id, item, now)

        logger.info("Settled trade %s (%d items) in league %s", trade_id, len(trade["items"]), league_id)

    def _apply_incoming(self, conn, league_id: int, trade_id: int, item: Dict[str, Any], now: datetime) -> None:
        from_team = int(item["fromTeamId"])
        to_team = int(item["toTeamId"])
        item_type = item["itemType"]

        if item_type == ItemType.PLAYER:
            self.execute_add(
                conn,
                league_id,
                to_team,
                int(item["playerId"]),
                now,
                log_type=LogType.TRADE,
                direction=Direction.RECEIVED,
                counterparty_team_id=from_team,
                trade_id=trade_id,
            )
            return

        if item_type == ItemType.DRAFT_PICK:
            pick_id = int(item["draftPickId"])
            result = conn.execute(
                text("""
                    UPDATE "DraftPickAsset"
                    SET "ownerTeamId" = :to_team
                    WHERE id = :pick_id
                      AND "ownerTeamId" = :from_team
                """),
                {"pick_id": pick_id, "from_team": from_team, "to_team": to_team},
            )
            if result.rowcount != 1:
                raise SettlementError(ErrorKind.STALE_ROSTER, f"Draft pick {pick_id} changed hands")
            details = {"draftPickId": pick_id}
        else:
            amount = int(item["faabAmount"])
            self._move_faab(conn, from_team, to_team, amount)
            details = {"faabAmount": amount}

        self._append_log(
            conn, league_id, from_team, LogType.TRADE, Direction.SENT, now,
            counterparty_team_id=to_team, trade_id=trade_id, details=details,
        )
        self._append_log(
            conn, league_id, to_team, LogType.TRADE, Direction.RECEIVED, now,
            counterparty_team_id=from_team, trade_id=trade_id, details=details,
        )

    def _move_faab(self, conn, from_team: int, to_team: int, amount: int) -> None:
        # budget may never drop below what the sender has already spent
        result = conn.execute(
            text("""
                UPDATE "Team"
                SET "faabBudget" = "faabBudget" - :amount
                WHERE id = :team_id
                  AND "faabBudget" - "faabSpent" >= :amount
            """),
            {"team_id": from_team, "amount": amount},
        )
        if result.rowcount != 1:
            raise SettlementError(
                ErrorKind.INSUFFICIENT_BUDGET,
                f"Team {from_team} cannot send {amount} FAAB",
            )

        conn.execute(
            text('UPDATE "Team" SET "faabBudget" = "faabBudget" + :amount WHERE id = :team_id'),
            {"team_id": to_team, "amount": amount},
        )

    def settle_trade(self, trade_id: int, settings: LeagueSettings) -> Dict[str, Any]:
        """
        Standalone settlement of an ACCEPTED trade (review window closed).
        Unexpected failures are logged and surfaced as INTERNAL after the
        transaction has rolled back.
        """
        now = self.clock()
        try:
            with self.db.begin() as conn:
                trade = self.repo.get_trade(conn, trade_id)
                if not trade:
                    raise SettlementError(ErrorKind.NOT_FOUND, f"Trade {trade_id} not found")
                if trade["status"] != TradeStatus.ACCEPTED:
                    raise SettlementError(
                        ErrorKind.ALREADY_PROCESSED,
                        f"Trade {trade_id} is {trade['status'].lower()}, not accepted",
                    )
                self.execute_trade(conn, trade, settings, now)
        except SettlementError:
            raise
        except Exception:
            logger.exception("Unexpected error settling trade %s", trade_id)
            raise SettlementError(ErrorKind.INTERNAL, f"Failed to settle trade {trade_id}")

        return {"tradeId": trade_id, "status": TradeStatus.ACCEPTED, "settledAt": now}

    # ------------------------------------------------------------------
    # Waivers
    # ------------------------------------------------------------------

    def execute_waiver_batch(
        self,
        claims: List[Dict[str, Any]],
        settings: LeagueSettings,
    ) -> List[Dict[str, Any]]:
        """
        Processes claims in priority order, one transaction per claim. A
        failing claim is recorded as FAILED with a reason and never stops
        the rest of the batch.

        Under ROLLING waivers a winning team drops behind everyone for the
        rest of the run, so the remaining claims are re-ranked after each win.
        """
        results: List[Dict[str, Any]] = []
        granted_players = set()
        priorities: Dict[int, int] = {}
        remaining = list(claims)

        while remaining:
            claim = orderClaims(remaining, settings, priorities)[0]
            remaining.remove(claim)
            now = self.clock()
            player_id = int(claim["playerId"])

            if claim["expiresAt"] is not None and claim["expiresAt"] <= now:
                results.append(self._fail_claim(claim, ErrorKind.EXPIRED, EXPIRED_CLAIM_REASON, now))
                continue

            if player_id in granted_players:
                results.append(
                    self._fail_claim(claim, ErrorKind.ALREADY_PROCESSED, HIGHER_PRIORITY_REASON, now)
                )
                continue

            try:
                with self.db.begin() as conn:
                    new_priority = self._settle_claim(conn, claim, settings, now)
            except SettlementError as e:
                logger.info("Waiver claim %s failed: %s", claim["id"], e.message)
                results.append(self._fail_claim(claim, e.kind, e.message, now))
                continue
            except Exception:
                logger.exception("Unexpected error processing waiver claim %s", claim["id"])
                results.append(self._fail_claim(claim, ErrorKind.INTERNAL, INTERNAL_REASON, now))
                continue

            granted_players.add(player_id)
            if new_priority is not None:
                priorities[int(claim["teamId"])] = new_priority
            results.append(self._claim_result(claim, ClaimStatus.SUCCESSFUL))

        return results

    def _settle_claim(
        self, conn, claim: Dict[str, Any], settings: LeagueSettings, now: datetime
    ) -> Optional[int]:
        """Settles one claim; returns the team's new waiver priority under ROLLING."""
        claim_id = int(claim["id"])
        league_id = int(claim["leagueId"])
        team_id = int(claim["teamId"])
        player_id = int(claim["playerId"])

        if self.roster.find_player_owner(league_id, player_id, conn=conn):
            raise SettlementError(ErrorKind.STALE_ROSTER, UNAVAILABLE_REASON)

        # Earlier claims in this batch have committed, so re-check live state.
        self.validator.validate_waiver_claim(conn, claim, settings)

        if claim["dropPlayerId"] is not None:
            self.execute_drop(conn, league_id, team_id, int(claim["dropPlayerId"]), now, claim_id=claim_id)

        self.execute_add(
            conn,
            league_id,
            team_id,
            player_id,
            now,
            claim_id=claim_id,
            details={"faabBid": claim["faabBid"]} if settings.usesFaab else None,
        )

        bid = int(claim["faabBid"] or 0)
        if settings.usesFaab and bid > 0:
            result = conn.execute(
                text("""
                    UPDATE "Team"
                    SET "faabSpent" = "faabSpent" + :bid
                    WHERE id = :team_id
                      AND "faabSpent" + :bid <= "faabBudget"
                """),
                {"team_id": team_id, "bid": bid},
            )
            if result.rowcount != 1:
                raise SettlementError(ErrorKind.INSUFFICIENT_BUDGET, f"Bid {bid} exceeds remaining FAAB budget")

        new_priority = None
        if not settings.usesFaab:
            new_priority = self._move_to_back_of_priority(conn, league_id, team_id)

        if not self.repo.resolve_claim(conn, claim_id, ClaimStatus.SUCCESSFUL, now):
            raise SettlementError(ErrorKind.ALREADY_PROCESSED, f"Claim {claim_id} is no longer pending")

        return new_priority

    def _move_to_back_of_priority(self, conn, league_id: int, team_id: int) -> int:
        max_priority = conn.execute(
            text('SELECT COALESCE(MAX("waiverPriority"), 0) FROM "Team" WHERE "leagueId" = :league_id'),
            {"league_id": league_id},
        ).scalar()
        new_priority = int(max_priority) + 1

        conn.execute(
            text('UPDATE "Team" SET "waiverPriority" = :priority WHERE id = :team_id'),
            {"priority": new_priority, "team_id": team_id},
        )
        return new_priority

    def _fail_claim(self, claim: Dict[str, Any], kind: str, reason: str, now: datetime) -> Dict[str, Any]:
        try:
            with self.db.begin() as conn:
                self.repo.resolve_claim(conn, int(claim["id"]), ClaimStatus.FAILED, now, reason=reason)
        except Exception:
            # left PENDING; the end-of-batch sweep fails it
            logger.exception("Could not mark waiver claim %s as failed", claim["id"])

        return self._claim_result(claim, ClaimStatus.FAILED, kind=kind, reason=reason)

    def _claim_result(
        self,
        claim: Dict[str, Any],
        status: str,
        kind: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "claimId": int(claim["id"]),
            "teamId": int(claim["teamId"]),
            "playerId": int(claim["playerId"]),
            "dropPlayerId": claim["dropPlayerId"],
            "faabBid": claim["faabBid"],
            "status": status,
            "error": kind,
            "reason": reason,
        }
