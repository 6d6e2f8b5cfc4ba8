# endpoints/roster/rosterModel.py
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from endpoints.league.leagueSettings import LeagueSettings
from endpoints.transaction.errors import ErrorKind, SettlementError


class RosterModel:
    """
    Read side of the roster store. Every method accepts an optional open
    connection so callers inside a settlement transaction see their own
    uncommitted writes.
    """

    def __init__(self, db: Engine):
        self.db = db

    @contextmanager
    def _conn(self, conn=None):
        if conn is not None:
            yield conn
            return
        with self.db.connect() as own:
            yield own

    # ---------- League / team ----------

    def get_league_settings(self, league_id: int, conn=None) -> LeagueSettings:
        with self._conn(conn) as c:
            row = c.execute(
                text('SELECT settings FROM "League" WHERE id = :league_id'),
                {"league_id": league_id},
            ).fetchone()

        if not row:
            raise SettlementError(ErrorKind.NOT_FOUND, f"League {league_id} not found")

        return LeagueSettings.parse(row._mapping["settings"])

    def get_league(self, league_id: int, conn=None) -> Optional[Dict[str, Any]]:
        with self._conn(conn) as c:
            row = c.execute(
                text('SELECT id, name, "commissionerUserId" FROM "League" WHERE id = :league_id'),
                {"league_id": league_id},
            ).fetchone()

        return dict(row._mapping) if row else None

    def get_team(self, team_id: int, conn=None) -> Optional[Dict[str, Any]]:
        with self._conn(conn) as c:
            row = c.execute(
                text("""
                    SELECT id, "leagueId", "ownerUserId", name,
                           "faabBudget", "faabSpent", "waiverPriority"
                    FROM "Team"
                    WHERE id = :team_id
                """),
                {"team_id": team_id},
            ).fetchone()

        return dict(row._mapping) if row else None

    def get_team_for_user(self, league_id: int, user_id: str, conn=None) -> Optional[Dict[str, Any]]:
        with self._conn(conn) as c:
            row = c.execute(
                text("""
                    SELECT id, "leagueId", "ownerUserId", name,
                           "faabBudget", "faabSpent", "waiverPriority"
                    FROM "Team"
                    WHERE "leagueId" = :league_id
                      AND "ownerUserId" = :user_id
                    ORDER BY id
                    LIMIT 1
                """),
                {"league_id": league_id, "user_id": str(user_id)},
            ).fetchone()

        return dict(row._mapping) if row else None

    def get_league_teams(self, league_id: int, conn=None) -> List[Dict[str, Any]]:
        with self._conn(conn) as c:
            rows = c.execute(
                text("""
                    SELECT id, "ownerUserId", name, "waiverPriority"
                    FROM "Team"
                    WHERE "leagueId" = :league_id
                    ORDER BY "waiverPriority", id
                """),
                {"league_id": league_id},
            ).mappings().all()

        return [dict(r) for r in rows]

    def get_owner_user_ids(self, team_ids: Iterable[int], conn=None) -> List[str]:
        owners = []
        with self._conn(conn) as c:
            for team_id in sorted({int(t) for t in team_ids}):
                owner = c.execute(
                    text('SELECT "ownerUserId" FROM "Team" WHERE id = :team_id'),
                    {"team_id": team_id},
                ).scalar()
                if owner is not None:
                    owners.append(str(owner))
        return owners

    # ---------- Roster ----------

    def get_roster_players(self, team_id: int, conn=None) -> List[Dict[str, Any]]:
        with self._conn(conn) as c:
            rows = c.execute(
                text("""
                    SELECT "playerId", slot, "isLocked"
                    FROM "RosterSlot"
                    WHERE "teamId" = :team_id
                    ORDER BY "playerId"
                """),
                {"team_id": team_id},
            ).mappings().all()

        return [
            {"playerId": int(r["playerId"]), "slot": r["slot"], "locked": bool(r["isLocked"])}
            for r in rows
        ]

    def get_team_budget(self, team_id: int, conn=None) -> Dict[str, int]:
        team = self.get_team(team_id, conn=conn)
        if not team:
            raise SettlementError(ErrorKind.NOT_FOUND, f"Team {team_id} not found")

        return {"budget": int(team["faabBudget"]), "spent": int(team["faabSpent"])}

    def find_player_owner(self, league_id: int, player_id: int, conn=None) -> Optional[Dict[str, Any]]:
        """
        Returns { teamId, slot, locked } for the team rostering this player, or None
        if the player is a free agent in this league.
        """
        with self._conn(conn) as c:
            row = c.execute(
                text("""
                    SELECT "teamId", slot, "isLocked"
                    FROM "RosterSlot"
                    WHERE "leagueId" = :league_id
                      AND "playerId" = :player_id
                    LIMIT 1
                """),
                {"league_id": league_id, "player_id": player_id},
            ).fetchone()

        if not row:
            return None

        m = row._mapping
        return {"teamId": int(m["teamId"]), "slot": m["slot"], "locked": bool(m["isLocked"])}

    def get_draft_pick(self, pick_id: int, conn=None) -> Optional[Dict[str, Any]]:
        with self._conn(conn) as c:
            row = c.execute(
                text("""
                    SELECT id, "leagueId", "seasonYear", round, "originalTeamId", "ownerTeamId"
                    FROM "DraftPickAsset"
                    WHERE id = :pick_id
                """),
                {"pick_id": pick_id},
            ).fetchone()

        return dict(row._mapping) if row else None
