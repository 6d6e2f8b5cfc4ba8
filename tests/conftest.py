import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import jwt
import pytest
from sqlalchemy import create_engine, select, text
from sqlalchemy.pool import StaticPool

import schema
from api import create_app
from config import AppConfig
from endpoints.notification.notifier import Notifier
from endpoints.transaction.transactionModel import TransactionModel
from endpoints.waiver.waiverModel import WaiverModel
from utils.timeUtils import toDbTime

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
JWT_SECRET = "test-secret-for-settlement-service-0123456789"


class FixedClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def deliver(self, target, message):
        self.sent.append((target, message))

    def events(self):
        return [m["event"] for _, m in self.sent]

    def targets(self, event):
        return sorted({t for t, m in self.sent if m["event"] == event})


class Seeder:
    """Writes fixture rows straight through the schema tables."""

    def __init__(self, engine):
        self.engine = engine

    def _insert(self, table, **values):
        with self.engine.begin() as conn:
            return conn.execute(table.insert().values(**values)).inserted_primary_key[0]

    def league(self, settings=None, commissioner="user-1"):
        return self._insert(
            schema.league,
            name="Test League",
            settings=json.dumps(settings or {}),
            commissionerUserId=commissioner,
        )

    def team(self, league_id, owner, priority=1, budget=100, spent=0):
        return self._insert(
            schema.team,
            leagueId=league_id,
            ownerUserId=owner,
            name=f"Team {owner}",
            faabBudget=budget,
            faabSpent=spent,
            waiverPriority=priority,
        )

    def player(self, league_id, team_id, player_id, locked=False):
        self._insert(
            schema.roster_slot,
            leagueId=league_id,
            teamId=team_id,
            playerId=player_id,
            slot="BENCH",
            isLocked=locked,
            acquiredVia="DRAFT",
        )
        return player_id

    def pick(self, league_id, team_id, season=2027, round=1):
        return self._insert(
            schema.draft_pick_asset,
            leagueId=league_id,
            seasonYear=season,
            round=round,
            originalTeamId=team_id,
            ownerTeamId=team_id,
        )

    def build(self, settings=None, teams=3, players_per_team=2):
        """
        League with `teams` teams. Team i is owned by user-i, has waiver
        priority i and rosters players i*100+1 .. i*100+players_per_team.
        """
        league_id = self.league(settings)
        team_ids, users, players = [], [], {}
        for i in range(1, teams + 1):
            user = f"user-{i}"
            team_id = self.team(league_id, user, priority=i)
            team_ids.append(team_id)
            users.append(user)
            players[team_id] = [self.player(league_id, team_id, i * 100 + n) for n in range(1, players_per_team + 1)]
        return SimpleNamespace(league_id=league_id, team_ids=team_ids, users=users, players=players)

    # ---------- reads used by assertions ----------

    def roster(self, team_id):
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(schema.roster_slot.c.playerId).where(schema.roster_slot.c.teamId == team_id)
            ).scalars().all()
        return set(rows)

    def trade(self, trade_id):
        with self.engine.connect() as conn:
            row = conn.execute(select(schema.trade).where(schema.trade.c.id == trade_id)).fetchone()
        return dict(row._mapping) if row else None

    def claim(self, claim_id):
        with self.engine.connect() as conn:
            row = conn.execute(select(schema.waiver_claim).where(schema.waiver_claim.c.id == claim_id)).fetchone()
        return dict(row._mapping) if row else None

    def team_row(self, team_id):
        with self.engine.connect() as conn:
            row = conn.execute(select(schema.team).where(schema.team.c.id == team_id)).fetchone()
        return dict(row._mapping)

    def logs(self, **filters):
        query = select(schema.transaction_log).order_by(schema.transaction_log.c.id)
        for key, value in filters.items():
            query = query.where(schema.transaction_log.c[key] == value)
        with self.engine.connect() as conn:
            return [dict(r._mapping) for r in conn.execute(query).fetchall()]

    def set_trade_times(self, trade_id, **times):
        # timestamps are bound as strings, the same way the service writes them
        assignments = ", ".join(f'"{k}" = :{k}' for k in times)
        params = {k: toDbTime(v) for k, v in times.items()}
        params["id"] = trade_id
        with self.engine.begin() as conn:
            conn.execute(text(f'UPDATE "Trade" SET {assignments} WHERE id = :id'), params)

    def start_waiver_run(self, league_id, started_at):
        with self.engine.begin() as conn:
            conn.execute(
                text('UPDATE "League" SET "waiverRunStartedAt" = :ts WHERE id = :id'),
                {"ts": toDbTime(started_at), "id": league_id},
            )

    def lock_player(self, league_id, player_id, locked=True):
        with self.engine.begin() as conn:
            conn.execute(
                schema.roster_slot.update()
                .where(schema.roster_slot.c.leagueId == league_id)
                .where(schema.roster_slot.c.playerId == player_id)
                .values(isLocked=locked)
            )

    def move_player(self, league_id, player_id, team_id):
        with self.engine.begin() as conn:
            conn.execute(
                schema.roster_slot.update()
                .where(schema.roster_slot.c.leagueId == league_id)
                .where(schema.roster_slot.c.playerId == player_id)
                .values(teamId=team_id)
            )


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    schema.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def seed(engine):
    return Seeder(engine)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def trades(engine, notifier, clock):
    return TransactionModel(engine, notifier=notifier, clock=clock)


@pytest.fixture
def vetoes(trades):
    return trades.review


@pytest.fixture
def waivers(engine, notifier, clock):
    return WaiverModel(engine, notifier=notifier, clock=clock)


@pytest.fixture
def app_config():
    return AppConfig(
        db_url="sqlite://",
        supabase_project_id="testproject",
        supabase_jwt_secret=JWT_SECRET,
        app_env="test",
    )


@pytest.fixture
def app(engine, app_config, notifier, clock):
    flask_app = create_app(engine=engine, config=app_config, notifier=notifier, clock=clock)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_token(app_config):
    def _make(sub, **overrides):
        claims = {
            "sub": sub,
            "aud": "authenticated",
            "iss": app_config.jwt_issuer,
            "exp": datetime.now(timezone.utc) + timedelta(hours=1),
        }
        claims.update(overrides)
        return jwt.encode(claims, JWT_SECRET, algorithm="HS256")

    return _make


@pytest.fixture
def auth(make_token):
    def _headers(sub):
        return {"Authorization": f"Bearer {make_token(sub)}"}

    return _headers
