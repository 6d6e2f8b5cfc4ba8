# endpoints/transaction/validator.py
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from sqlalchemy.engine import Engine

from endpoints.league.leagueSettings import LeagueSettings
from endpoints.roster.rosterModel import RosterModel
from endpoints.transaction.errors import ErrorKind, SettlementError
from endpoints.transaction.tradeRepository import ItemType, TradeRepository, TradeStatus

logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 500


def involvedTeamIds(items: List[Dict[str, Any]]) -> Set[int]:
    teams: Set[int] = set()
    for item in items:
        teams.add(int(item["fromTeamId"]))
        teams.add(int(item["toTeamId"]))
    return teams


def counterpartyTeamIds(proposing_team_id: int, items: List[Dict[str, Any]]) -> Set[int]:
    return involvedTeamIds(items) - {int(proposing_team_id)}


def normalizeItems(raw_items: Any) -> List[Dict[str, Any]]:
    """
    Coerces request items into the stored shape. Anything that is not a list
    of objects with integer team ids fails INVALID_ITEMS.
    """
    if not isinstance(raw_items, list):
        raise SettlementError(ErrorKind.INVALID_ITEMS, "items must be a list")

    items = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise SettlementError(ErrorKind.INVALID_ITEMS, f"Item {idx}: must be an object")

        try:
            item = {
                "fromTeamId": int(raw["fromTeamId"]),
                "toTeamId": int(raw["toTeamId"]),
                "itemType": str(raw.get("itemType", ItemType.PLAYER)).upper(),
            }
            for key in ("playerId", "draftPickId", "faabAmount"):
                item[key] = int(raw[key]) if raw.get(key) is not None else None
        except KeyError as e:
            raise SettlementError(ErrorKind.INVALID_ITEMS, f"Item {idx}: missing {e.args[0]}")
        except (TypeError, ValueError):
            raise SettlementError(ErrorKind.INVALID_ITEMS, f"Item {idx}: ids and amounts must be integers")

        items.append(item)

    return items


class TradeValidator:
    """
    Gatekeeper for every mutating trade/waiver operation.

    Creation-time checks are cheap and reject obviously bad input; the same
    asset checks are re-run against live roster state when a counterparty
    accepts and again when settlement applies the trade, since rosters can
    change in between.
    """

    def __init__(self, db: Engine, roster: RosterModel, repo: TradeRepository):
        self.db = db
        self.roster = roster
        self.repo = repo

    # ------------------------------------------------------------------
    # Proposal creation
    # ------------------------------------------------------------------

    def validate_proposal_creation(
        self,
        conn,
        proposal: Dict[str, Any],
        acting_user_id: str,
        settings: LeagueSettings,
        now: datetime,
    ) -> None:
        league_id = int(proposal["leagueId"])
        proposing_team_id = int(proposal["proposingTeamId"])
        items = proposal.get("items") or []

        notes = proposal.get("notes")
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            raise SettlementError(
                ErrorKind.INVALID_REQUEST,
                f"Notes must be at most {MAX_NOTES_LENGTH} characters",
            )

        self._check_item_shape(items, settings)

        team = self.roster.get_team(proposing_team_id, conn=conn)
        if not team or int(team["leagueId"]) != league_id:
            raise SettlementError(
                ErrorKind.UNAUTHORIZED,
                f"Team {proposing_team_id} is not in league {league_id}",
            )
        if str(team["ownerUserId"]) != str(acting_user_id):
            raise SettlementError(
                ErrorKind.UNAUTHORIZED,
                f"User {acting_user_id} does not control team {proposing_team_id}",
            )

        involved = involvedTeamIds(items)
        if proposing_team_id not in involved:
            raise SettlementError(ErrorKind.INVALID_ITEMS, "Proposing team must send or receive an item")
        if not counterpartyTeamIds(proposing_team_id, items):
            raise SettlementError(ErrorKind.INVALID_ITEMS, "Trade needs at least one counterparty team")

        for team_id in involved - {proposing_team_id}:
            other = self.roster.get_team(team_id, conn=conn)
            if not other or int(other["leagueId"]) != league_id:
                raise SettlementError(
                    ErrorKind.INVALID_ITEMS,
                    f"Team {team_id} is not in league {league_id}",
                )

        self.assert_before_trade_deadline(settings, now)
        self.check_assets(conn, league_id, items, settings, stale_kind=ErrorKind.INVALID_ITEMS)

    def _check_item_shape(self, items: List[Dict[str, Any]], settings: LeagueSettings) -> None:
        if not items:
            raise SettlementError(ErrorKind.INVALID_ITEMS, "Trade must contain at least one item")

        if len(items) > settings.maxTradeItems:
            raise SettlementError(
                ErrorKind.INVALID_ITEMS,
                f"Trade has {len(items)} items; the maximum is {settings.maxTradeItems}",
            )

        players: Counter = Counter()
        picks: Counter = Counter()

        for idx, item in enumerate(items):
            item_type = item.get("itemType")
            if item_type not in ItemType.ALL:
                raise SettlementError(ErrorKind.INVALID_ITEMS, f"Item {idx}: unknown itemType {item_type!r}")

            if int(item["fromTeamId"]) == int(item["toTeamId"]):
                raise SettlementError(
                    ErrorKind.INVALID_ITEMS,
                    f"Item {idx}: fromTeam and toTeam must differ",
                )

            if item_type == ItemType.PLAYER:
                if item.get("playerId") is None:
                    raise SettlementError(ErrorKind.INVALID_ITEMS, f"Item {idx}: playerId is required")
                players[int(item["playerId"])] += 1
            elif item_type == ItemType.DRAFT_PICK:
                if item.get("draftPickId") is None:
                    raise SettlementError(ErrorKind.INVALID_ITEMS, f"Item {idx}: draftPickId is required")
                picks[int(item["draftPickId"])] += 1
            else:
                amount = item.get("faabAmount")
                if amount is None or int(amount) <= 0:
                    raise SettlementError(
                        ErrorKind.INVALID_ITEMS,
                        f"Item {idx}: faabAmount must be a positive integer",
                    )

        duplicated = [p for p, n in players.items() if n > 1] + [p for p, n in picks.items() if n > 1]
        if duplicated:
            raise SettlementError(ErrorKind.INVALID_ITEMS, f"Assets listed more than once: {duplicated}")

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    def apply_lazy_expiry(self, trade_id: int, now: datetime) -> bool:
        """
        Commits PENDING -> EXPIRED for an elapsed proposal in its own
        transaction, so the transition survives the failed request that
        noticed it.
        """
        with self.db.begin() as conn:
            trade = self.repo.get_trade(conn, trade_id)
            if not trade or trade["status"] != TradeStatus.PENDING:
                return False
            if trade["expiresAt"] is None or trade["expiresAt"] > now:
                return False

            expired = self.repo.transition_trade(
                conn,
                trade_id,
                TradeStatus.PENDING,
                TradeStatus.EXPIRED,
                now,
                processedAt=now,
            )

        if expired:
            logger.info("Trade %s expired at %s", trade_id, trade["expiresAt"].isoformat())
        return expired

    def validate_response(
        self,
        conn,
        trade: Optional[Dict[str, Any]],
        acting_user_id: str,
        action: str,
        settings: LeagueSettings,
        now: datetime,
    ) -> Dict[str, Any]:
        """
        Returns the responding team. Expiry is checked before anything else.
        """
        if not trade:
            raise SettlementError(ErrorKind.NOT_FOUND, "Trade not found")

        status = trade["status"]
        elapsed = trade["expiresAt"] is not None and trade["expiresAt"] <= now
        if status == TradeStatus.EXPIRED or (status == TradeStatus.PENDING and elapsed):
            raise SettlementError(ErrorKind.EXPIRED, f"Trade {trade['id']} has expired")

        if status != TradeStatus.PENDING:
            raise SettlementError(
                ErrorKind.ALREADY_PROCESSED,
                f"Trade {trade['id']} is already {status.lower()}",
            )

        team = self.roster.get_team_for_user(trade["leagueId"], acting_user_id, conn=conn)
        if not team:
            raise SettlementError(
                ErrorKind.UNAUTHORIZED,
                f"User {acting_user_id} has no team in league {trade['leagueId']}",
            )

        team_id = int(team["id"])
        if team_id == int(trade["proposingTeamId"]):
            raise SettlementError(ErrorKind.SELF_RESPONSE, "The proposing team cannot respond to its own trade")

        if team_id not in counterpartyTeamIds(trade["proposingTeamId"], trade["items"]):
            raise SettlementError(
                ErrorKind.UNAUTHORIZED,
                f"Team {team_id} is not a counterparty to trade {trade['id']}",
            )

        if action == "ACCEPT":
            self.assert_before_trade_deadline(settings, now)
            self.check_assets(conn, trade["leagueId"], trade["items"], settings)

        return team

    # ------------------------------------------------------------------
    # Shared asset checks
    # ------------------------------------------------------------------

    def assert_before_trade_deadline(self, settings: LeagueSettings, now: datetime) -> None:
        if settings.tradeDeadline is not None and now > settings.tradeDeadline:
            raise SettlementError(ErrorKind.INVALID_REQUEST, "Trade deadline has passed")

    def check_assets(
        self,
        conn,
        league_id: int,
        items: List[Dict[str, Any]],
        settings: LeagueSettings,
        stale_kind: str = ErrorKind.STALE_ROSTER,
    ) -> None:
        """
        Confirms every item is still owned by its fromTeam, no player is
        locked, FAAB senders can cover their amounts and no roster ends up
        over the league maximum.
        """
        faab_out: Counter = Counter()
        players_out: Counter = Counter()
        players_in: Counter = Counter()

        for item in items:
            from_team = int(item["fromTeamId"])
            to_team = int(item["toTeamId"])
            item_type = item["itemType"]

            if item_type == ItemType.PLAYER:
                player_id = int(item["playerId"])
                owner = self.roster.find_player_owner(league_id, player_id, conn=conn)
                if not owner or owner["teamId"] != from_team:
                    raise SettlementError(
                        stale_kind,
                        f"Player {player_id} is not on team {from_team}'s roster",
                    )
                if owner["locked"]:
                    raise SettlementError(
                        ErrorKind.PLAYER_LOCKED,
                        f"Player {player_id} is locked and cannot be traded",
                    )
                players_out[from_team] += 1
                players_in[to_team] += 1

            elif item_type == ItemType.DRAFT_PICK:
                pick_id = int(item["draftPickId"])
                pick = self.roster.get_draft_pick(pick_id, conn=conn)
                if not pick or int(pick["leagueId"]) != int(league_id) or int(pick["ownerTeamId"]) != from_team:
                    raise SettlementError(
                        stale_kind,
                        f"Draft pick {pick_id} is not owned by team {from_team}",
                    )

            else:
                faab_out[from_team] += int(item["faabAmount"])

        for team_id, amount in faab_out.items():
            budget = self.roster.get_team_budget(team_id, conn=conn)
            remaining = budget["budget"] - budget["spent"]
            if amount > remaining:
                raise SettlementError(
                    ErrorKind.INSUFFICIENT_BUDGET,
                    f"Team {team_id} has {remaining} FAAB remaining; trade sends {amount}",
                )

        for team_id in set(players_in) | set(players_out):
            current = len(self.roster.get_roster_players(team_id, conn=conn))
            after = current - players_out[team_id] + players_in[team_id]
            if after > settings.maxRosterSize and after > current:
                raise SettlementError(
                    ErrorKind.ROSTER_FULL,
                    f"Trade would put team {team_id} at {after} players "
                    f"(max {settings.maxRosterSize})",
                )

    # ------------------------------------------------------------------
    # Waiver claims
    # ------------------------------------------------------------------

    def validate_waiver_claim(self, conn, claim: Dict[str, Any], settings: LeagueSettings) -> None:
        team_id = int(claim["teamId"])
        drop_player_id = claim.get("dropPlayerId")
        faab_bid = claim.get("faabBid")

        roster = self.roster.get_roster_players(team_id, conn=conn)

        if drop_player_id is not None:
            dropping = next((p for p in roster if p["playerId"] == int(drop_player_id)), None)
            if dropping is None:
                raise SettlementError(
                    ErrorKind.DROP_PLAYER_NOT_FOUND,
                    f"Player {drop_player_id} is not on team {team_id}'s roster",
                )
            if dropping["locked"]:
                raise SettlementError(
                    ErrorKind.PLAYER_LOCKED,
                    f"Player {drop_player_id} is locked and cannot be dropped",
                )

        if len(roster) + 1 > settings.maxRosterSize and drop_player_id is None:
            raise SettlementError(
                ErrorKind.ROSTER_FULL,
                f"Roster is full ({len(roster)}/{settings.maxRosterSize}); a drop player is required",
            )

        if settings.usesFaab:
            if faab_bid is None or int(faab_bid) < 0:
                raise SettlementError(ErrorKind.INVALID_REQUEST, "A FAAB bid of 0 or more is required")

            budget = self.roster.get_team_budget(team_id, conn=conn)
            remaining = budget["budget"] - budget["spent"]
            if int(faab_bid) > remaining:
                raise SettlementError(
                    ErrorKind.INSUFFICIENT_BUDGET,
                    f"Bid {faab_bid} exceeds remaining FAAB budget {remaining}",
                )
        elif faab_bid:
            raise SettlementError(ErrorKind.INVALID_REQUEST, "This league does not use FAAB bidding")
