# endpoints/transaction/tradeRepository.py
#
# Persistence for proposals, their items, per-team responses, veto votes and
# waiver claims. Callers own the transaction: every method takes an open
# connection from engine.begin(). Status changes are conditional updates and
# report whether this caller won the transition.
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from endpoints.transaction.errors import ErrorKind, SettlementError
from utils.timeUtils import fromDbTime, toDbTime


class TradeStatus:
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    VETOED = "VETOED"

    TERMINAL = (REJECTED, CANCELLED, EXPIRED, VETOED)


class ItemType:
    PLAYER = "PLAYER"
    DRAFT_PICK = "DRAFT_PICK"
    FAAB = "FAAB"

    ALL = (PLAYER, DRAFT_PICK, FAAB)


class ClaimStatus:
    PENDING = "PENDING"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"


class Vote:
    VETO = "VETO"
    APPROVE = "APPROVE"

    ALL = (VETO, APPROVE)


_TRADE_TIME_FIELDS = ("createdAt", "updatedAt", "expiresAt", "processedAt", "reviewEndsAt", "settledAt")
_TRANSITION_FIELDS = ("processedAt", "decidedByUserId", "rejectReason", "reviewEndsAt", "settledAt")


def _trade_from_row(row) -> Dict[str, Any]:
    trade = dict(row._mapping)
    for key in _TRADE_TIME_FIELDS:
        trade[key] = fromDbTime(trade.get(key))
    return trade


def _claim_from_row(row) -> Dict[str, Any]:
    claim = dict(row._mapping)
    for key in ("createdAt", "expiresAt", "processedAt"):
        claim[key] = fromDbTime(claim.get(key))
    return claim


class TradeRepository:

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def insert_trade(
        self,
        conn,
        league_id: int,
        proposing_team_id: int,
        proposed_by_user_id: str,
        items: List[Dict[str, Any]],
        notes: Optional[str],
        now: datetime,
        expires_at: datetime,
        countered_from_id: Optional[int] = None,
    ) -> int:
        row = conn.execute(
            text("""
                INSERT INTO "Trade"
                    ("leagueId", "proposingTeamId", "proposedByUserId", status, notes,
                     "createdAt", "updatedAt", "expiresAt", "counteredFromId")
                VALUES
                    (:league_id, :team_id, :user_id, :status, :notes,
                     :now, :now, :expires_at, :countered_from_id)
                RETURNING id
            """),
            {
                "league_id": league_id,
                "team_id": proposing_team_id,
                "user_id": str(proposed_by_user_id),
                "status": TradeStatus.PENDING,
                "notes": notes,
                "now": toDbTime(now),
                "expires_at": toDbTime(expires_at),
                "countered_from_id": countered_from_id,
            },
        ).fetchone()

        trade_id = int(row._mapping["id"])

        conn.execute(
            text("""
                INSERT INTO "TradeItem"
                    ("tradeId", "itemOrder", "fromTeamId", "toTeamId", "itemType",
                     "playerId", "draftPickId", "faabAmount")
                VALUES
                    (:trade_id, :item_order, :from_team_id, :to_team_id, :item_type,
                     :player_id, :draft_pick_id, :faab_amount)
            """),
            [
                {
                    "trade_id": trade_id,
                    "item_order": idx,
                    "from_team_id": item["fromTeamId"],
                    "to_team_id": item["toTeamId"],
                    "item_type": item["itemType"],
                    "player_id": item.get("playerId"),
                    "draft_pick_id": item.get("draftPickId"),
                    "faab_amount": item.get("faabAmount"),
                }
                for idx, item in enumerate(items)
            ],
        )

        return trade_id

    def get_trade(self, conn, trade_id: int) -> Optional[Dict[str, Any]]:
        row = conn.execute(
            text('SELECT * FROM "Trade" WHERE id = :id'),
            {"id": trade_id},
        ).fetchone()

        if not row:
            return None

        trade = _trade_from_row(row)
        trade["items"] = self.get_trade_items(conn, trade_id)
        return trade

    def get_trade_items(self, conn, trade_id: int) -> List[Dict[str, Any]]:
        rows = conn.execute(
            text("""
                SELECT "itemOrder", "fromTeamId", "toTeamId", "itemType",
                       "playerId", "draftPickId", "faabAmount"
                FROM "TradeItem"
                WHERE "tradeId" = :trade_id
                ORDER BY "itemOrder"
            """),
            {"trade_id": trade_id},
        ).mappings().all()

        return [dict(r) for r in rows]

    def lock_pending_trade(self, conn, trade_id: int, now: datetime) -> bool:
        """
        Touches a PENDING trade. On PostgreSQL the UPDATE holds the row lock
        until commit, so concurrent responders queue here; a caller that gets
        False lost the race to a status change.
        """
        result = conn.execute(
            text("""
                UPDATE "Trade"
                SET "updatedAt" = :now
                WHERE id = :id
                  AND status = :pending
            """),
            {"id": trade_id, "now": toDbTime(now), "pending": TradeStatus.PENDING},
        )
        return result.rowcount == 1

    def transition_trade(
        self,
        conn,
        trade_id: int,
        from_status: str,
        to_status: str,
        now: datetime,
        **fields: Any,
    ) -> bool:
        unknown = set(fields) - set(_TRANSITION_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported trade fields: {sorted(unknown)}")

        params = {
            "id": trade_id,
            "from_status": from_status,
            "to_status": to_status,
            "now": toDbTime(now),
        }
        assignments = ['status = :to_status', '"updatedAt" = :now']
        for key, value in fields.items():
            if isinstance(value, datetime):
                value = toDbTime(value)
            params[key] = value
            assignments.append(f'"{key}" = :{key}')

        result = conn.execute(
            text(f"""
                UPDATE "Trade"
                SET {", ".join(assignments)}
                WHERE id = :id
                  AND status = :from_status
            """),
            params,
        )
        return result.rowcount == 1

    def lock_trade_in_review(self, conn, trade_id: int, now: datetime) -> bool:
        """
        Row-locks an accepted, unsettled trade whose review window is still
        open. Voters and finalization serialize on this row.
        """
        result = conn.execute(
            text("""
                UPDATE "Trade"
                SET "updatedAt" = :now
                WHERE id = :id
                  AND status = :accepted
                  AND "settledAt" IS NULL
                  AND "reviewEndsAt" IS NOT NULL
                  AND "reviewEndsAt" > :now
            """),
            {"id": trade_id, "now": toDbTime(now), "accepted": TradeStatus.ACCEPTED},
        )
        return result.rowcount == 1

    def cancel_unsettled(self, conn, trade_id: int, reason: str, now: datetime) -> bool:
        result = conn.execute(
            text("""
                UPDATE "Trade"
                SET status = :cancelled,
                    "rejectReason" = :reason,
                    "processedAt" = :now,
                    "updatedAt" = :now
                WHERE id = :id
                  AND status = :accepted
                  AND "settledAt" IS NULL
            """),
            {
                "id": trade_id,
                "reason": reason,
                "now": toDbTime(now),
                "accepted": TradeStatus.ACCEPTED,
                "cancelled": TradeStatus.CANCELLED,
            },
        )
        return result.rowcount == 1

    def mark_settled(self, conn, trade_id: int, now: datetime) -> bool:
        result = conn.execute(
            text("""
                UPDATE "Trade"
                SET "settledAt" = :now,
                    "processedAt" = COALESCE("processedAt", :now),
                    "updatedAt" = :now
                WHERE id = :id
                  AND status = :accepted
                  AND "settledAt" IS NULL
            """),
            {"id": trade_id, "now": toDbTime(now), "accepted": TradeStatus.ACCEPTED},
        )
        return result.rowcount == 1

    def insert_response(self, conn, trade_id: int, team_id: int, user_id: str, action: str, now: datetime) -> None:
        try:
            conn.execute(
                text("""
                    INSERT INTO "TradeResponse"
                        ("tradeId", "teamId", "userId", action, "createdAt")
                    VALUES
                        (:trade_id, :team_id, :user_id, :action, :now)
                """),
                {
                    "trade_id": trade_id,
                    "team_id": team_id,
                    "user_id": str(user_id),
                    "action": action,
                    "now": toDbTime(now),
                },
            )
        except IntegrityError:
            raise SettlementError(
                ErrorKind.ALREADY_PROCESSED,
                f"Team {team_id} has already responded to trade {trade_id}",
            )

    def get_accepting_team_ids(self, conn, trade_id: int) -> Set[int]:
        rows = conn.execute(
            text("""
                SELECT "teamId"
                FROM "TradeResponse"
                WHERE "tradeId" = :trade_id
                  AND action = 'ACCEPT'
            """),
            {"trade_id": trade_id},
        ).scalars().all()

        return {int(r) for r in rows}

    def list_open_trades_for_team(self, conn, league_id: int, team_id: int) -> List[Dict[str, Any]]:
        rows = conn.execute(
            text("""
                SELECT DISTINCT t.*
                FROM "Trade" t
                JOIN "TradeItem" ti
                  ON ti."tradeId" = t.id
                WHERE t."leagueId" = :league_id
                  AND t.status IN ('PENDING', 'ACCEPTED')
                  AND t."settledAt" IS NULL
                  AND (t."proposingTeamId" = :team_id
                       OR ti."fromTeamId" = :team_id
                       OR ti."toTeamId" = :team_id)
                ORDER BY t.id DESC
            """),
            {"league_id": league_id, "team_id": team_id},
        ).fetchall()

        trades = []
        for row in rows:
            trade = _trade_from_row(row)
            trade["items"] = self.get_trade_items(conn, trade["id"])
            trades.append(trade)
        return trades

    def list_expired_pending_ids(self, conn, now: datetime, limit: int = 100) -> List[int]:
        rows = conn.execute(
            text("""
                SELECT id
                FROM "Trade"
                WHERE status = :pending
                  AND "expiresAt" <= :now
                ORDER BY "expiresAt"
                LIMIT :limit
            """),
            {"pending": TradeStatus.PENDING, "now": toDbTime(now), "limit": limit},
        ).scalars().all()

        return [int(r) for r in rows]

    def list_review_closed_ids(self, conn, now: datetime, limit: int = 100) -> List[int]:
        rows = conn.execute(
            text("""
                SELECT id
                FROM "Trade"
                WHERE status = :accepted
                  AND "settledAt" IS NULL
                  AND "reviewEndsAt" IS NOT NULL
                  AND "reviewEndsAt" <= :now
                ORDER BY "reviewEndsAt"
                LIMIT :limit
            """),
            {"accepted": TradeStatus.ACCEPTED, "now": toDbTime(now), "limit": limit},
        ).scalars().all()

        return [int(r) for r in rows]

    def next_deadline(self, conn) -> Optional[datetime]:
        """
        Soonest moment at which a PENDING trade expires or a review window closes.
        """
        row = conn.execute(
            text("""
                SELECT MIN(deadline) AS deadline FROM (
                    SELECT "expiresAt" AS deadline
                    FROM "Trade"
                    WHERE status = 'PENDING'
                    UNION ALL
                    SELECT "reviewEndsAt" AS deadline
                    FROM "Trade"
                    WHERE status = 'ACCEPTED'
                      AND "settledAt" IS NULL
                      AND "reviewEndsAt" IS NOT NULL
                ) d
            """)
        ).fetchone()

        return fromDbTime(row._mapping["deadline"]) if row else None

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    def insert_vote(
        self,
        conn,
        trade_id: int,
        user_id: str,
        team_id: int,
        vote: str,
        reason: Optional[str],
        now: datetime,
    ) -> None:
        # The unique (tradeId, userId) constraint is the guard; a concurrent
        # duplicate fails here rather than in a prior SELECT.
        try:
            conn.execute(
                text("""
                    INSERT INTO "TradeVote"
                        ("tradeId", "userId", "teamId", vote, reason, "createdAt")
                    VALUES
                        (:trade_id, :user_id, :team_id, :vote, :reason, :now)
                """),
                {
                    "trade_id": trade_id,
                    "user_id": str(user_id),
                    "team_id": team_id,
                    "vote": vote,
                    "reason": reason,
                    "now": toDbTime(now),
                },
            )
        except IntegrityError:
            raise SettlementError(
                ErrorKind.ALREADY_VOTED,
                f"User {user_id} has already voted on trade {trade_id}",
            )

    def vote_tally(self, conn, trade_id: int) -> Dict[str, int]:
        rows = conn.execute(
            text("""
                SELECT vote, COUNT(*) AS cnt
                FROM "TradeVote"
                WHERE "tradeId" = :trade_id
                GROUP BY vote
            """),
            {"trade_id": trade_id},
        ).mappings().all()

        counts = {r["vote"]: int(r["cnt"]) for r in rows}
        return {"veto": counts.get(Vote.VETO, 0), "approve": counts.get(Vote.APPROVE, 0)}

    # ------------------------------------------------------------------
    # Waiver claims
    # ------------------------------------------------------------------

    def insert_claim(
        self,
        conn,
        league_id: int,
        team_id: int,
        user_id: str,
        player_id: int,
        drop_player_id: Optional[int],
        faab_bid: Optional[int],
        priority: Optional[int],
        now: datetime,
        expires_at: Optional[datetime] = None,
    ) -> int:
        row = conn.execute(
            text("""
                INSERT INTO "WaiverClaim"
                    ("leagueId", "teamId", "createdByUserId", "playerId", "dropPlayerId",
                     "faabBid", priority, status, "createdAt", "expiresAt")
                VALUES
                    (:league_id, :team_id, :user_id, :player_id, :drop_player_id,
                     :faab_bid, :priority, :status, :now, :expires_at)
                RETURNING id
            """),
            {
                "league_id": league_id,
                "team_id": team_id,
                "user_id": str(user_id),
                "player_id": player_id,
                "drop_player_id": drop_player_id,
                "faab_bid": faab_bid,
                "priority": priority,
                "status": ClaimStatus.PENDING,
                "now": toDbTime(now),
                "expires_at": toDbTime(expires_at),
            },
        ).fetchone()

        return int(row._mapping["id"])

    def get_claim(self, conn, claim_id: int) -> Optional[Dict[str, Any]]:
        row = conn.execute(
            text('SELECT * FROM "WaiverClaim" WHERE id = :id'),
            {"id": claim_id},
        ).fetchone()

        return _claim_from_row(row) if row else None

    def list_pending_claims(self, conn, league_id: int) -> List[Dict[str, Any]]:
        rows = conn.execute(
            text("""
                SELECT *
                FROM "WaiverClaim"
                WHERE "leagueId" = :league_id
                  AND status = :pending
                ORDER BY "createdAt", id
            """),
            {"league_id": league_id, "pending": ClaimStatus.PENDING},
        ).fetchall()

        return [_claim_from_row(r) for r in rows]

    def resolve_claim(
        self,
        conn,
        claim_id: int,
        status: str,
        now: datetime,
        reason: Optional[str] = None,
    ) -> bool:
        result = conn.execute(
            text("""
                UPDATE "WaiverClaim"
                SET status = :status,
                    "failureReason" = :reason,
                    "processedAt" = :now
                WHERE id = :id
                  AND status = :pending
            """),
            {
                "id": claim_id,
                "status": status,
                "reason": reason,
                "now": toDbTime(now),
                "pending": ClaimStatus.PENDING,
            },
        )
        return result.rowcount == 1

    def fail_pending_claims(self, conn, claim_ids: Iterable[int], reason: str, now: datetime) -> int:
        failed = 0
        for claim_id in claim_ids:
            if self.resolve_claim(conn, claim_id, ClaimStatus.FAILED, now, reason=reason):
                failed += 1
        return failed

    # ------------------------------------------------------------------
    # Waiver run lock
    # ------------------------------------------------------------------

    def acquire_waiver_run(self, conn, league_id: int, now: datetime, stale_before: datetime) -> bool:
        result = conn.execute(
            text("""
                UPDATE "League"
                SET "waiverRunStartedAt" = :now
                WHERE id = :league_id
                  AND ("waiverRunStartedAt" IS NULL OR "waiverRunStartedAt" < :stale_before)
            """),
            {"league_id": league_id, "now": toDbTime(now), "stale_before": toDbTime(stale_before)},
        )
        return result.rowcount == 1

    def release_waiver_run(self, conn, league_id: int) -> None:
        conn.execute(
            text('UPDATE "League" SET "waiverRunStartedAt" = NULL WHERE id = :league_id'),
            {"league_id": league_id},
        )

