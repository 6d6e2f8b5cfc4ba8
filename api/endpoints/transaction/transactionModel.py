import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.engine import Engine

from endpoints.league.leagueSettings import LeagueSettings
from endpoints.notification.notifier import LogNotifier, Notifier
from endpoints.transaction.errors import ErrorKind, SettlementError
from endpoints.transaction.tradeRepository import TradeStatus
from endpoints.transaction.validator import counterpartyTeamIds, involvedTeamIds, normalizeItems
from endpoints.veto.vetoModel import VetoModel, vetoQuorum
from utils.timeUtils import fromDbTime, utcNow

logger = logging.getLogger(__name__)


class TransactionModel:
    ACTION_ACCEPT = "ACCEPT"
    ACTION_REJECT = "REJECT"
    ACTION_COUNTER = "COUNTER"

    ACTIONS = (ACTION_ACCEPT, ACTION_REJECT, ACTION_COUNTER)

    def __init__(
        self,
        db: Engine,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcNow,
    ):
        self.db = db
        self.clock = clock
        self.notifier = notifier or LogNotifier()

        # The review coordinator owns finalization; share its components so
        # every path goes through the same validator and settlement engine.
        self.review = VetoModel(db, notifier=self.notifier, clock=clock)
        self.roster = self.review.roster
        self.repo = self.review.repo
        self.validator = self.review.validator
        self.settlement = self.review.settlement

    # ---------- Helpers ----------

    def _resolve_expiry(
        self,
        settings: LeagueSettings,
        now: datetime,
        expires_at: Any = None,
        expiration_hours: Any = None,
    ) -> datetime:
        if expires_at is not None:
            try:
                resolved = fromDbTime(expires_at)
            except (AttributeError, TypeError, ValueError):
                raise SettlementError(ErrorKind.INVALID_REQUEST, "expiresAt must be an ISO-8601 timestamp")
        else:
            hours = settings.tradeExpirationHours
            if expiration_hours is not None:
                try:
                    hours = float(expiration_hours)
                except (TypeError, ValueError):
                    raise SettlementError(ErrorKind.INVALID_REQUEST, "expirationHours must be a number")
            resolved = now + timedelta(hours=hours)

        if resolved <= now:
            raise SettlementError(ErrorKind.INVALID_REQUEST, "Expiration must be in the future")

        return resolved

    def _insert_proposal(
        self,
        conn,
        league_id: int,
        acting_user_id: str,
        proposing_team_id: int,
        items: List[Dict[str, Any]],
        notes: Optional[str],
        expires_at: datetime,
        settings: LeagueSettings,
        now: datetime,
        countered_from_id: Optional[int] = None,
    ) -> int:
        proposal = {
            "leagueId": league_id,
            "proposingTeamId": proposing_team_id,
            "items": items,
            "notes": notes,
        }
        self.validator.validate_proposal_creation(conn, proposal, acting_user_id, settings, now)

        return self.repo.insert_trade(
            conn,
            league_id,
            proposing_team_id,
            acting_user_id,
            items,
            notes,
            now,
            expires_at,
            countered_from_id=countered_from_id,
        )

    def _notify_trade(self, targets: List[str], event: str, trade_id: int, league_id: int, **extra: Any) -> None:
        message = {"event": event, "tradeId": trade_id, "leagueId": league_id}
        message.update(extra)
        self.notifier.notify(targets, message)

    # ---------- Proposals ----------

    def create_proposal(
        self,
        league_id: int,
        acting_user_id: str,
        proposing_team_id: int,
        items: Any,
        notes: Optional[str] = None,
        expires_at: Any = None,
        expiration_hours: Any = None,
    ) -> Dict[str, Any]:
        now = self.clock()
        items = normalizeItems(items)

        try:
            with self.db.begin() as conn:
                settings = self.roster.get_league_settings(league_id, conn=conn)
                expires = self._resolve_expiry(settings, now, expires_at, expiration_hours)

                trade_id = self._insert_proposal(
                    conn,
                    league_id,
                    acting_user_id,
                    int(proposing_team_id),
                    items,
                    notes,
                    expires,
                    settings,
                    now,
                )
                targets = self.roster.get_owner_user_ids(
                    counterpartyTeamIds(proposing_team_id, items), conn=conn
                )
        except SettlementError:
            raise
        except Exception:
            logger.exception("Unexpected error creating trade in league %s", league_id)
            raise SettlementError(ErrorKind.INTERNAL, "Failed to create trade proposal")

        logger.info("Trade %s proposed by team %s in league %s", trade_id, proposing_team_id, league_id)
        self._notify_trade(targets, "trade:proposed", trade_id, league_id, status=TradeStatus.PENDING)

        return {"id": trade_id, "status": TradeStatus.PENDING, "expiresAt": expires}

    def respond_to_proposal(
        self,
        trade_id: int,
        acting_user_id: str,
        action: str,
        counter_offer: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        ACCEPT / REJECT / COUNTER a PENDING proposal as one of its counterparties.

        Expiry is judged first and is committed on its own, so a late responder
        sees EXPIRED and the proposal stays EXPIRED. Everything else happens in
        one transaction: a failed counter leaves the original PENDING, a failed
        settlement leaves every roster untouched.
        """
        action = str(action or "").upper()
        if action not in self.ACTIONS:
            raise SettlementError(ErrorKind.INVALID_REQUEST, "action must be ACCEPT, REJECT or COUNTER")
        if action == self.ACTION_COUNTER and not isinstance(counter_offer, dict):
            raise SettlementError(ErrorKind.INVALID_REQUEST, "counterOffer is required for COUNTER")

        now = self.clock()
        self.validator.apply_lazy_expiry(trade_id, now)

        try:
            with self.db.begin() as conn:
                trade = self.repo.get_trade(conn, trade_id)
                if not trade:
                    raise SettlementError(ErrorKind.NOT_FOUND, f"Trade {trade_id} not found")

                league_id = int(trade["leagueId"])
                settings = self.roster.get_league_settings(league_id, conn=conn)
                team = self.validator.validate_response(conn, trade, acting_user_id, action, settings, now)
                team_id = int(team["id"])

                # Concurrent responders serialize here; a loser sees the new status.
                if not self.repo.lock_pending_trade(conn, trade_id, now):
                    raise SettlementError(ErrorKind.ALREADY_PROCESSED, f"Trade {trade_id} is no longer pending")

                if action == self.ACTION_REJECT:
                    result, event = self._reject(conn, trade, team_id, acting_user_id, reason, now)
                elif action == self.ACTION_COUNTER:
                    result, event = self._counter(conn, trade, team_id, acting_user_id, counter_offer, settings, now)
                else:
                    result, event = self._accept(conn, trade, team_id, acting_user_id, settings, now)

                if event == "trade:inReview":
                    teams = self.roster.get_league_teams(league_id, conn=conn)
                    targets = sorted({str(t["ownerUserId"]) for t in teams})
                else:
                    targets = self.roster.get_owner_user_ids(involvedTeamIds(trade["items"]), conn=conn)
        except SettlementError:
            raise
        except Exception:
            logger.exception("Unexpected error responding to trade %s", trade_id)
            raise SettlementError(ErrorKind.INTERNAL, f"Failed to process response to trade {trade_id}")

        logger.info("Trade %s: %s by team %s -> %s", trade_id, action, team_id, result["status"])
        extra = {k: v for k, v in result.items() if k != "tradeId"}
        self._notify_trade(targets, event, trade_id, league_id, action=action, **extra)

        return result

    def _reject(self, conn, trade, team_id: int, acting_user_id: str, reason: Optional[str], now: datetime):
        trade_id = int(trade["id"])
        self.repo.insert_response(conn, trade_id, team_id, acting_user_id, self.ACTION_REJECT, now)

        if not self.repo.transition_trade(
            conn,
            trade_id,
            TradeStatus.PENDING,
            TradeStatus.REJECTED,
            now,
            processedAt=now,
            decidedByUserId=str(acting_user_id),
            rejectReason=reason,
        ):
            raise SettlementError(ErrorKind.ALREADY_PROCESSED, f"Trade {trade_id} is no longer pending")

        return {"tradeId": trade_id, "status": TradeStatus.REJECTED}, "trade:rejected"

    def _counter(
        self,
        conn,
        trade,
        team_id: int,
        acting_user_id: str,
        counter_offer: Dict[str, Any],
        settings: LeagueSettings,
        now: datetime,
    ):
        trade_id = int(trade["id"])
        league_id = int(trade["leagueId"])

        items = normalizeItems(counter_offer.get("items"))
        expires = self._resolve_expiry(
            settings,
            now,
            counter_offer.get("expiresAt"),
            counter_offer.get("expirationHours"),
        )

        # The counter must exist before the original is closed.
        counter_id = self._insert_proposal(
            conn,
            league_id,
            acting_user_id,
            team_id,
            items,
            counter_offer.get("notes"),
            expires,
            settings,
            now,
            countered_from_id=trade_id,
        )

        self.repo.insert_response(conn, trade_id, team_id, acting_user_id, self.ACTION_COUNTER, now)

        if not self.repo.transition_trade(
            conn,
            trade_id,
            TradeStatus.PENDING,
            TradeStatus.REJECTED,
            now,
            processedAt=now,
            decidedByUserId=str(acting_user_id),
            rejectReason=f"Countered with trade {counter_id}",
        ):
            raise SettlementError(ErrorKind.ALREADY_PROCESSED, f"Trade {trade_id} is no longer pending")

        result = {"tradeId": trade_id, "status": TradeStatus.REJECTED, "counterProposalId": counter_id}
        return result, "trade:countered"

    def _accept(self, conn, trade, team_id: int, acting_user_id: str, settings: LeagueSettings, now: datetime):
        trade_id = int(trade["id"])
        self.repo.insert_response(conn, trade_id, team_id, acting_user_id, self.ACTION_ACCEPT, now)

        waiting = counterpartyTeamIds(trade["proposingTeamId"], trade["items"]) - self.repo.get_accepting_team_ids(
            conn, trade_id
        )
        if waiting:
            result = {"tradeId": trade_id, "status": TradeStatus.PENDING, "awaitingTeamIds": sorted(waiting)}
            return result, "trade:partiallyAccepted"

        total_teams = len(self.roster.get_league_teams(trade["leagueId"], conn=conn))
        eligible, _ = vetoQuorum(total_teams, len(involvedTeamIds(trade["items"])))

        if settings.hasVetoPeriod and eligible > 0:
            review_ends = now + timedelta(hours=settings.vetoWindowHours)
            if not self.repo.transition_trade(
                conn,
                trade_id,
                TradeStatus.PENDING,
                TradeStatus.ACCEPTED,
                now,
                processedAt=now,
                decidedByUserId=str(acting_user_id),
                reviewEndsAt=review_ends,
            ):
                raise SettlementError(ErrorKind.ALREADY_PROCESSED, f"Trade {trade_id} is no longer pending")

            return {"tradeId": trade_id, "status": TradeStatus.ACCEPTED, "reviewEndsAt": review_ends}, "trade:inReview"

        self.settlement.execute_trade(conn, trade, settings, now, decided_by_user_id=str(acting_user_id))
        return {"tradeId": trade_id, "status": TradeStatus.ACCEPTED, "settledAt": now}, "trade:accepted"

    def cancel_proposal(self, trade_id: int, acting_user_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        now = self.clock()
        self.validator.apply_lazy_expiry(trade_id, now)

        with self.db.begin() as conn:
            trade = self.repo.get_trade(conn, trade_id)
            if not trade:
                raise SettlementError(ErrorKind.NOT_FOUND, f"Trade {trade_id} not found")

            if trade["status"] == TradeStatus.EXPIRED:
                raise SettlementError(ErrorKind.EXPIRED, f"Trade {trade_id} has expired")
            if trade["status"] != TradeStatus.PENDING:
                raise SettlementError(
                    ErrorKind.ALREADY_PROCESSED,
                    f"Trade {trade_id} is already {trade['status'].lower()}",
                )

            proposer = self.roster.get_team(trade["proposingTeamId"], conn=conn)
            if not proposer or str(proposer["ownerUserId"]) != str(acting_user_id):
                raise SettlementError(ErrorKind.UNAUTHORIZED, "Only the proposing team can cancel this trade")

            if not self.repo.transition_trade(
                conn,
                trade_id,
                TradeStatus.PENDING,
                TradeStatus.CANCELLED,
                now,
                processedAt=now,
                decidedByUserId=str(acting_user_id),
                rejectReason=reason,
            ):
                raise SettlementError(ErrorKind.ALREADY_PROCESSED, f"Trade {trade_id} is no longer pending")

            targets = self.roster.get_owner_user_ids(
                counterpartyTeamIds(trade["proposingTeamId"], trade["items"]), conn=conn
            )

        self._notify_trade(targets, "trade:cancelled", trade_id, int(trade["leagueId"]), status=TradeStatus.CANCELLED)
        return {"tradeId": trade_id, "status": TradeStatus.CANCELLED}

    # ---------- Reads ----------

    def get_trade(self, trade_id: int, acting_user_id: str) -> Dict[str, Any]:
        now = self.clock()
        self.validator.apply_lazy_expiry(trade_id, now)
        self.review.finalize_if_review_closed(trade_id)

        with self.db.connect() as conn:
            trade = self.repo.get_trade(conn, trade_id)
            if not trade:
                raise SettlementError(ErrorKind.NOT_FOUND, f"Trade {trade_id} not found")

            if not self.roster.get_team_for_user(trade["leagueId"], acting_user_id, conn=conn):
                raise SettlementError(
                    ErrorKind.NOT_IN_LEAGUE,
                    f"User {acting_user_id} has no team in league {trade['leagueId']}",
                )

            trade["acceptedByTeamIds"] = sorted(self.repo.get_accepting_team_ids(conn, trade_id))

        return trade

    def get_open_trades_for_user(self, league_id: int, acting_user_id: str) -> Dict[str, Any]:
        """
        Open trades touching the caller's team: proposals awaiting a response
        (incoming / outgoing) and accepted trades still under review.
        Elapsed proposals are left out even if nothing has expired them yet.
        """
        now = self.clock()

        with self.db.connect() as conn:
            team = self.roster.get_team_for_user(league_id, acting_user_id, conn=conn)
            if not team:
                raise SettlementError(
                    ErrorKind.NOT_IN_LEAGUE,
                    f"User {acting_user_id} has no team in league {league_id}",
                )
            team_id = int(team["id"])
            trades = self.repo.list_open_trades_for_team(conn, league_id, team_id)

        incoming, outgoing, in_review = [], [], []
        for trade in trades:
            if trade["status"] == TradeStatus.ACCEPTED:
                in_review.append(trade)
            elif trade["expiresAt"] is not None and trade["expiresAt"] <= now:
                continue
            elif int(trade["proposingTeamId"]) == team_id:
                outgoing.append(trade)
            else:
                incoming.append(trade)

        return {"teamId": team_id, "incoming": incoming, "outgoing": outgoing, "inReview": in_review}

    # ---------- Sweeps ----------

    def expire_elapsed_proposals(self, limit: int = 100) -> List[int]:
        now = self.clock()
        with self.db.connect() as conn:
            candidates = self.repo.list_expired_pending_ids(conn, now, limit=limit)

        expired = []
        for trade_id in candidates:
            if not self.validator.apply_lazy_expiry(trade_id, now):
                continue
            expired.append(trade_id)

            with self.db.connect() as conn:
                trade = self.repo.get_trade(conn, trade_id)
                targets = self.roster.get_owner_user_ids(involvedTeamIds(trade["items"]), conn=conn)
            self._notify_trade(targets, "trade:expired", trade_id, int(trade["leagueId"]), status=TradeStatus.EXPIRED)

        return expired
